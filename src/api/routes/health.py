"""Health check endpoints for monitoring and deployment verification."""

import time

from fastapi import APIRouter, Response, status

from src.api.deps import CurrentUser
from src.core.record_store import check_store_connection
from src.schemas.auth import AuthenticatedResponse
from src.schemas.common import CheckResult, HealthResponse, HealthStatus, ReadinessResponse

router = APIRouter(tags=["health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Liveness check",
    description="Basic health check to verify the service is running. Used by the orchestrator liveness check.",
)
async def health_check() -> HealthResponse:
    """Return basic health status without touching dependencies."""
    return HealthResponse(status=HealthStatus.HEALTHY)


@router.get(
    "/health/ready",
    response_model=ReadinessResponse,
    responses={
        200: {"description": "Record store reachable"},
        503: {"description": "Record store unreachable"},
    },
    summary="Readiness check",
    description="Check if the record store is available. Used by the orchestrator readiness check.",
)
async def readiness_check(response: Response) -> ReadinessResponse:
    """Check readiness of the record store.

    Args:
        response: FastAPI response object for setting status code.

    Returns:
        ReadinessResponse: Status of all dependency checks.
    """
    start_time = time.perf_counter()
    store_result = await check_store_connection()
    latency_ms = (time.perf_counter() - start_time) * 1000

    readiness = ReadinessResponse.from_checks([CheckResult.from_check("record_store", store_result, latency_ms)])
    if not readiness.ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return readiness


@router.get(
    "/health/auth",
    response_model=AuthenticatedResponse,
    summary="Authenticated health check",
    description="Protected endpoint to verify authentication is working correctly.",
)
async def authenticated_check(user: CurrentUser) -> AuthenticatedResponse:
    """Echo the authenticated user's context."""
    return AuthenticatedResponse(
        authenticated=True,
        user_id=str(user.user_id),
        email=user.email,
    )
