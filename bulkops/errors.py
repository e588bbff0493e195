"""Structured error taxonomy for the bulk operations helper."""
#
# PURPOSE:
# Every failure the package can raise carries an ErrorCode, a human-readable
# message and an optional details dict, so the CLI and the HTTP API can
# report problems consistently.
#
# ERROR CODE FORMAT:
# - NET_XXX: Transport and remote API errors (per-target, retried locally)
# - CAPTURE_XXX: Traffic parsing errors (never escape the correlator)
# - RUN_XXX: Bulk run preconditions (raised before any call is made)
# - SPEC_XXX: Action specification errors
# - STORE_XXX: Persistence errors
#
# USAGE:
#   from bulkops.errors import HttpStatusError
#
#   raise HttpStatusError(404, "Twilio account not found")
#
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    # Network / remote API
    NET_TRANSPORT = "NET_001"
    NET_HTTP_STATUS = "NET_002"

    # Capture
    CAPTURE_PARSE = "CAPTURE_001"

    # Run preconditions
    RUN_MISSING_CREDENTIALS = "RUN_001"
    RUN_STALE_CREDENTIALS = "RUN_002"
    RUN_NO_TARGETS = "RUN_003"

    # Action specs
    SPEC_UNKNOWN_FEATURE = "SPEC_001"
    SPEC_INVALID = "SPEC_002"
    SPEC_NO_TEMPLATE = "SPEC_003"

    # Store
    STORE_WRITE_FAILED = "STORE_001"


class BulkOpsError(Exception):
    """
    Base exception with structured error information.

    Attributes:
        code: ErrorCode enum value
        message: Human-readable error message
        details: Optional dictionary with additional context
        http_status: Suggested HTTP status for API responses
    """

    HTTP_STATUS_MAP: Dict[ErrorCode, int] = {
        ErrorCode.NET_TRANSPORT: 502,
        ErrorCode.NET_HTTP_STATUS: 502,
        ErrorCode.CAPTURE_PARSE: 422,
        ErrorCode.RUN_MISSING_CREDENTIALS: 409,
        ErrorCode.RUN_STALE_CREDENTIALS: 409,
        ErrorCode.RUN_NO_TARGETS: 409,
        ErrorCode.SPEC_UNKNOWN_FEATURE: 404,
        ErrorCode.SPEC_INVALID: 400,
        ErrorCode.SPEC_NO_TEMPLATE: 409,
        ErrorCode.STORE_WRITE_FAILED: 500,
    }

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        http_status: Optional[int] = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        self.http_status = http_status or self.HTTP_STATUS_MAP.get(code, 500)
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "http_status": self.http_status,
        }


class TransportError(BulkOpsError):
    """Network-level failure (DNS, refused connection, timeout)."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCode.NET_TRANSPORT, message, details)


class HttpStatusError(BulkOpsError):
    """Non-2xx response from the mutation API. Carries the server message."""

    def __init__(self, status_code: int, message: str):
        super().__init__(
            ErrorCode.NET_HTTP_STATUS,
            message,
            details={"status_code": status_code},
        )
        self.status_code = status_code


class ParseError(BulkOpsError):
    """Malformed or unexpectedly shaped response body."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCode.CAPTURE_PARSE, message, details)


class MissingCredentialsError(BulkOpsError):
    def __init__(self, message: str = "No captured authorization header. Browse the app through the proxy first."):
        super().__init__(ErrorCode.RUN_MISSING_CREDENTIALS, message)


class StaleCredentialsError(BulkOpsError):
    def __init__(self, age_s: float, max_age_s: float):
        super().__init__(
            ErrorCode.RUN_STALE_CREDENTIALS,
            f"Captured credentials are {age_s:.0f}s old (limit {max_age_s:.0f}s). Reload the app to refresh them.",
            details={"age_s": age_s, "max_age_s": max_age_s},
        )


class NoTargetsError(BulkOpsError):
    def __init__(self, message: str = "No targets captured yet. Open the location switcher in the app."):
        super().__init__(ErrorCode.RUN_NO_TARGETS, message)


class UnknownFeatureError(BulkOpsError):
    def __init__(self, name: str):
        super().__init__(
            ErrorCode.SPEC_UNKNOWN_FEATURE,
            f"Unknown feature: {name}",
            details={"feature": name},
        )


class InvalidActionSpecError(BulkOpsError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCode.SPEC_INVALID, message, details)


class MissingTemplateError(BulkOpsError):
    def __init__(self, message: str = "No action template recorded. Enable recording and perform the action once."):
        super().__init__(ErrorCode.SPEC_NO_TEMPLATE, message)


__all__ = [
    "ErrorCode",
    "BulkOpsError",
    "TransportError",
    "HttpStatusError",
    "ParseError",
    "MissingCredentialsError",
    "StaleCredentialsError",
    "NoTargetsError",
    "UnknownFeatureError",
    "InvalidActionSpecError",
    "MissingTemplateError",
]
