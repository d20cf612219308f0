"""Health and error envelopes shared by every router."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class HealthStatus(str, Enum):
    """Health check status values."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class _Stamped(BaseModel):
    """Base for responses that report when they were produced."""

    model_config = ConfigDict(from_attributes=True)

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), description="UTC time the response was built"
    )


class HealthResponse(_Stamped):
    """Liveness answer; never touches the record store."""

    status: HealthStatus = Field(description="Current health status")
    version: str = Field(default="0.1.0", description="API version")


class CheckResult(BaseModel):
    """Outcome of one dependency check."""

    model_config = ConfigDict(from_attributes=True)

    name: str = Field(description="Dependency name, e.g. record_store")
    healthy: bool = Field(description="Whether the dependency answered")
    latency_ms: float | None = Field(default=None, description="Round trip in milliseconds")
    error: str | None = Field(default=None, description="Failure reason when unhealthy")

    @classmethod
    def from_check(cls, name: str, outcome: dict[str, Any], latency_ms: float | None = None) -> "CheckResult":
        """Build from a ``{"healthy": bool, "error": str}`` check outcome."""
        return cls(
            name=name,
            healthy=bool(outcome.get("healthy")),
            latency_ms=round(latency_ms, 2) if latency_ms is not None else None,
            error=outcome.get("error"),
        )


class ReadinessResponse(_Stamped):
    """Readiness answer aggregating the dependency checks."""

    status: HealthStatus = Field(description="Unhealthy if any check failed")
    checks: list[CheckResult] = Field(default_factory=list, description="Per-dependency results")

    @classmethod
    def from_checks(cls, checks: list[CheckResult]) -> "ReadinessResponse":
        healthy = all(check.healthy for check in checks)
        return cls(status=HealthStatus.HEALTHY if healthy else HealthStatus.UNHEALTHY, checks=checks)

    @property
    def ready(self) -> bool:
        return self.status is HealthStatus.HEALTHY


class ErrorDetail(BaseModel):
    """One entry of an error's detail list, such as a backend error code."""

    msg: str = Field(description="Human-readable detail")
    type: str = Field(default="error", description="Detail kind or backend code")


class ErrorResponse(_Stamped):
    """Error envelope returned by every failing HTTP endpoint."""

    error: str = Field(description="Error type, e.g. store_error or invalid_argument")
    message: str = Field(description="Human-readable error description")
    details: list[ErrorDetail] | None = Field(default=None, description="Additional error details")
    request_id: str | None = Field(default=None, description="X-Request-ID of the failing request")

    @classmethod
    def build(
        cls,
        error_type: str,
        message: str,
        details: list[dict[str, Any]] | None = None,
        request_id: str | None = None,
    ) -> "ErrorResponse":
        """Create the envelope, validating raw detail dicts.

        Detail dicts missing ``msg`` fall back to the top-level message.
        """
        return cls(
            error=error_type,
            message=message,
            details=[{"msg": message, **{k: v for k, v in d.items() if v is not None}} for d in details]
            if details
            else None,
            request_id=request_id,
        )
