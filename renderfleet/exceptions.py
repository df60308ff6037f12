"""Custom exceptions for renderfleet.

These exceptions carry machine-readable error codes (see
``renderfleet.constants.error_codes``) so the HTTP service and the CLI can
render the same structured failure result.
"""

from typing import Any

from renderfleet.constants.error_codes import get_error_spec, is_retryable
from renderfleet.schemas.envelope import ErrorInfo, ErrorLocation, SuggestedAction


class RenderfleetError(Exception):
    """Base exception for all renderfleet errors."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
        location: ErrorLocation | None = None,
        suggested_fix: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.location = location
        self.suggested_fix = suggested_fix
        self.details = details or {}
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return is_retryable(self.code)

    def to_error_info(self) -> ErrorInfo:
        """Convert exception to ErrorInfo for API/CLI output."""
        spec = get_error_spec(self.code)

        suggested_actions: list[SuggestedAction] = []
        if "suggested_action" in spec:
            suggested_actions.append(
                SuggestedAction(
                    action=spec["suggested_action"],
                    parameters=spec.get("parameters", {}),
                )
            )

        return ErrorInfo(
            code=self.code,
            message=self.message,
            location=self.location,
            retryable=spec.get("retryable", False),
            suggested_fix=self.suggested_fix or spec.get("suggested_fix"),
            suggested_actions=suggested_actions,
            details=self.details,
        )


# =============================================================================
# Input errors (400)
# =============================================================================


class InvalidConfigError(RenderfleetError):
    """Configuration is missing a field or a field is outside its domain."""

    code = "INVALID_CONFIG"
    status_code = 400
    message = "Invalid configuration"

    def __init__(self, message: str | None = None, *, field: str | None = None, value: Any = None):
        msg = message or self.message
        if message is None and field is not None:
            msg = f"Invalid value for field '{field}': {value!r}"
        location = ErrorLocation(field=field) if field else None
        super().__init__(msg, location=location)


class InputValidationError(RenderfleetError):
    """Request fields rejected by schema validation."""

    code = "VALIDATION_ERROR"
    status_code = 422
    message = "Request validation failed"

    @classmethod
    def from_errors(cls, errors: list[dict[str, Any]]) -> "InputValidationError":
        """Build from pydantic/FastAPI ``errors()``; the first error names the field."""
        if not errors:
            return cls()
        first_error = errors[0]
        loc = " -> ".join(str(x) for x in first_error.get("loc", []))
        msg = first_error.get("msg", "Validation error")
        location = ErrorLocation(field=loc) if loc else None
        return cls(f"{loc}: {msg}" if loc else msg, location=location, details={"error_count": len(errors)})


class UnsupportedConfigurationError(RenderfleetError):
    """Region/feature combination the platform does not offer."""

    code = "UNSUPPORTED_CONFIGURATION"
    status_code = 400
    message = "Unsupported configuration"

    def __init__(self, message: str | None = None, *, region: str | None = None, feature: str | None = None):
        msg = message or self.message
        if message is None and feature and region:
            msg = f"Feature '{feature}' is not available in region {region}"
        super().__init__(msg, details={"region": region, "feature": feature})


class InsufficientPermissionsError(RenderfleetError):
    """Pre-flight permission simulation reported missing capabilities."""

    code = "INSUFFICIENT_PERMISSIONS"
    status_code = 403
    message = "Insufficient permissions"

    def __init__(self, missing: list[str]):
        self.missing = list(missing)
        message = f"Missing required capabilities: {', '.join(self.missing)}"
        super().__init__(message, details={"missing": self.missing})


# =============================================================================
# Worker lifecycle errors
# =============================================================================


class ProvisioningFailedError(RenderfleetError):
    """Worker could not be provisioned after bounded retries."""

    code = "PROVISIONING_FAILED"
    status_code = 502
    message = "Worker provisioning failed"

    def __init__(self, worker_name: str, cause: Exception | str, attempts: int = 1):
        self.cause = cause
        self.attempts = attempts
        message = f"Provisioning {worker_name} failed after {attempts} attempt(s): {cause}"
        super().__init__(
            message,
            location=ErrorLocation(worker_name=worker_name),
            details={"cause": str(cause), "attempts": attempts},
        )


class QuotaExceededError(RenderfleetError):
    """Platform quota hit; surfaced as-is, the caller must raise the quota."""

    code = "QUOTA_EXCEEDED"
    status_code = 429
    message = "Platform quota exceeded"


# =============================================================================
# Invocation / render errors
# =============================================================================


class InvocationFailedError(RenderfleetError):
    """A chunk invocation returned a failure payload or a 5xx."""

    code = "INVOCATION_FAILED"
    status_code = 502
    message = "Chunk invocation failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        chunk_index: int | None = None,
        job_id: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        location = None
        if chunk_index is not None or job_id is not None:
            location = ErrorLocation(chunk_index=chunk_index, job_id=job_id)
        super().__init__(message, location=location, details=details)
        self.chunk_index = chunk_index


class InvocationTimeoutError(InvocationFailedError):
    """A chunk invocation did not answer before its deadline."""

    code = "INVOCATION_TIMEOUT"
    status_code = 504
    message = "Chunk invocation timed out"


class RenderTimeoutError(InvocationTimeoutError):
    """The job-level deadline passed before every chunk resolved."""

    code = "RENDER_TIMEOUT"
    message = "Render job deadline exceeded"


class RenderCancelledError(RenderfleetError):
    """The render was cancelled before every chunk resolved."""

    code = "RENDER_CANCELLED"
    status_code = 409
    message = "Render job was cancelled"


class StitchFailedError(RenderfleetError):
    """The muxer could not combine the chunk outputs."""

    code = "STITCH_FAILED"
    status_code = 500
    message = "Stitching chunk outputs failed"


# =============================================================================
# Storage errors
# =============================================================================


class NotFoundError(RenderfleetError):
    """Object, site, worker or job does not exist."""

    code = "NOT_FOUND"
    status_code = 404
    message = "Resource not found"

    def __init__(self, resource: str | None = None):
        message = f"Not found: {resource}" if resource else self.message
        super().__init__(message)


class AccessDeniedError(RenderfleetError):
    """The platform refused the call; message is passed through verbatim."""

    code = "ACCESS_DENIED"
    status_code = 403
    message = "Access denied"


class StorageError(RenderfleetError):
    """Storage error."""

    code = "STORAGE_ERROR"
    status_code = 500
    message = "Storage error"


# =============================================================================
# Platform (Cloud Run Admin API) errors
# =============================================================================


class PlatformError(RenderfleetError):
    """Raw failure from the hosting platform's management API.

    The deployment manager decides whether to retry (``transient``), treat
    the failure as a lost create race (``already_exists``), or surface it.
    """

    code = "PLATFORM_ERROR"
    status_code = 502
    message = "Platform API call failed"

    TRANSIENT_HTTP = frozenset({429, 500, 502, 503, 504})
    TRANSIENT_STATUS = frozenset({"ABORTED", "UNAVAILABLE", "RESOURCE_EXHAUSTED", "DEADLINE_EXCEEDED"})

    def __init__(self, message: str | None = None, *, http_status: int | None = None, status: str | None = None):
        self.http_status = http_status
        self.status = status
        super().__init__(message, details={"http_status": http_status, "status": status})

    @property
    def transient(self) -> bool:
        return self.http_status in self.TRANSIENT_HTTP or self.status in self.TRANSIENT_STATUS

    @property
    def already_exists(self) -> bool:
        return self.status == "ALREADY_EXISTS" or (self.http_status == 409 and self.status is None)
