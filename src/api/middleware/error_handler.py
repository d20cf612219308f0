"""Chat error types and the middleware that renders them as ErrorResponse JSON."""

import logging
from typing import Any, Callable

from fastapi import HTTPException, Request, Response, status
from fastapi.responses import JSONResponse

from src.schemas.common import ErrorResponse

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Base class for errors surfaced to chat clients.

    Over HTTP these become an ``ErrorResponse`` with ``status_code``; over
    the conversation websocket they become an ``error`` frame built from
    ``to_payload()``.
    """

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type: str = "api_error"

    def __init__(self, message: str, details: list[dict[str, Any]] | None = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)

    def to_payload(self) -> dict[str, Any]:
        """Compact form used in websocket error frames."""
        return {"type": self.error_type, "message": self.message}


class NotAuthenticatedError(APIError):
    """No actor could be resolved for the operation."""

    status_code = status.HTTP_401_UNAUTHORIZED
    error_type = "not_authenticated"

    def __init__(self, message: str = "Not authenticated") -> None:
        super().__init__(message)


class InvalidArgumentError(APIError):
    """Caller supplied an argument that is rejected before any store call."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    error_type = "invalid_argument"

    def __init__(self, message: str = "Invalid argument") -> None:
        super().__init__(message)


class StoreError(APIError):
    """Failure reported by the record store, propagated verbatim.

    Carries the backend error code (e.g. a Postgres SQLSTATE such as
    ``23503``) so callers can tell constraint violations from outages.
    """

    status_code = status.HTTP_502_BAD_GATEWAY
    error_type = "store_error"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message, details=[{"msg": message, "type": code}] if code else None)
        self.code = code

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        if self.code:
            payload["code"] = self.code
        return payload


def create_error_response(
    error_type: str,
    message: str,
    status_code: int,
    details: list[dict[str, Any]] | None = None,
    request_id: str | None = None,
) -> JSONResponse:
    """Render an ``ErrorResponse`` envelope."""
    error_response = ErrorResponse.build(
        error_type=error_type,
        message=message,
        details=details,
        request_id=request_id,
    )
    return JSONResponse(
        status_code=status_code,
        content=error_response.model_dump(mode="json", exclude_none=True),
    )


async def error_handler_middleware(request: Request, call_next: Callable[[Request], Any]) -> Response:
    """Turn exceptions escaping the routes into ``ErrorResponse`` JSON.

    Store failures are logged at error level since they point at the
    backend; caller mistakes only at warning. Anything unexpected is logged
    with its traceback and returned as an opaque 500.

    Args:
        request: The incoming request.
        call_next: Next middleware or route handler.

    Returns:
        Response: The route's response, or the rendered error.
    """
    request_id = request.headers.get("X-Request-ID")

    try:
        return await call_next(request)

    except APIError as e:
        log = logger.error if isinstance(e, StoreError) else logger.warning
        log(
            "%s on %s: %s",
            e.error_type,
            request.url.path,
            e.message,
            extra={"request_id": request_id, "status_code": e.status_code},
        )
        return create_error_response(e.error_type, e.message, e.status_code, e.details, request_id)

    except HTTPException as e:
        logger.warning(
            "HTTP %s on %s: %s",
            e.status_code,
            request.url.path,
            e.detail,
            extra={"request_id": request_id},
        )
        return create_error_response("http_error", str(e.detail), e.status_code, request_id=request_id)

    except Exception:
        logger.exception("Unhandled exception on %s", request.url.path, extra={"request_id": request_id})
        return create_error_response(
            error_type="internal_error",
            message="An unexpected error occurred",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            request_id=request_id,
        )
