"""Error codes dictionary for the render orchestration API and CLI.

This is the single source of truth for all error codes, their retryability,
and suggested recovery actions. Used by exception handlers to generate
machine-readable error responses and by the CLI to pick an exit status.
"""

from typing import Any, TypedDict


class ErrorCodeSpec(TypedDict, total=False):
    """Metadata for an error code."""

    retryable: bool
    validation: bool
    suggested_action: str
    suggested_fix: str
    parameters: dict[str, Any]


# Error codes dictionary - single source of truth
ERROR_CODES: dict[str, ErrorCodeSpec] = {
    # ==========================================================================
    # Input / configuration errors (not retryable, fix input)
    # ==========================================================================
    "INVALID_CONFIG": {
        "retryable": False,
        "validation": True,
    },
    "VALIDATION_ERROR": {
        "retryable": False,
        "validation": True,
    },
    "UNSUPPORTED_CONFIGURATION": {
        "retryable": False,
        "validation": True,
        "suggested_fix": "Pick another region or disable the unsupported feature",
    },
    "INSUFFICIENT_PERMISSIONS": {
        "retryable": False,
        "validation": True,
        "suggested_action": "grant_permissions",
        "suggested_fix": "Grant the missing capabilities to the calling service account",
    },
    # ==========================================================================
    # Worker lifecycle errors
    # ==========================================================================
    "PROVISIONING_FAILED": {
        "retryable": True,
        "suggested_action": "retry_with_backoff",
        "parameters": {"delay_ms": 5000, "max_retries": 2},
    },
    "PLATFORM_ERROR": {
        "retryable": True,
        "suggested_action": "retry_with_backoff",
        "parameters": {"delay_ms": 2000, "max_retries": 2},
    },
    "QUOTA_EXCEEDED": {
        "retryable": False,
        "suggested_action": "raise_quota",
        "suggested_fix": "Request a quota increase for the project and region",
    },
    # ==========================================================================
    # Chunk invocation errors (retried inside the orchestrator)
    # ==========================================================================
    "INVOCATION_TIMEOUT": {
        "retryable": True,
        "suggested_action": "retry_with_backoff",
        "parameters": {"delay_ms": 1000, "max_retries": 3},
    },
    "INVOCATION_FAILED": {
        "retryable": True,
        "suggested_action": "retry_with_backoff",
        "parameters": {"delay_ms": 1000, "max_retries": 3},
    },
    "RENDER_TIMEOUT": {
        "retryable": False,
        "suggested_fix": "Increase the job timeout or the concurrency ceiling",
    },
    "RENDER_CANCELLED": {
        "retryable": False,
    },
    "STITCH_FAILED": {
        "retryable": False,
        "suggested_fix": "Inspect the chunk outputs; the muxer rejected them",
    },
    # ==========================================================================
    # Storage errors
    # ==========================================================================
    "NOT_FOUND": {
        "retryable": False,
    },
    "ACCESS_DENIED": {
        "retryable": False,
    },
    "STORAGE_ERROR": {
        "retryable": True,
        "suggested_action": "retry_with_backoff",
        "parameters": {"delay_ms": 2000, "max_retries": 2},
    },
    # ==========================================================================
    # System errors
    # ==========================================================================
    "INTERNAL_ERROR": {
        "retryable": True,
        "suggested_action": "retry_with_backoff",
        "parameters": {"delay_ms": 2000, "max_retries": 2},
    },
}


def get_error_spec(code: str) -> ErrorCodeSpec:
    """Get error metadata by code.

    Args:
        code: The error code

    Returns:
        ErrorCodeSpec with retryable flag and suggested actions
    """
    return ERROR_CODES.get(code, {"retryable": False})


def is_retryable(code: str) -> bool:
    """Check if an error code is retryable."""
    return get_error_spec(code).get("retryable", False)


def is_validation_error(code: str) -> bool:
    """Check if an error code means the caller's input was rejected."""
    return get_error_spec(code).get("validation", False)
