"""Error taxonomy for the reconciliation layer.

Every failure raised by this package derives from ``DealBridgeError`` and
carries a machine-readable ``ErrorCode``. Callers (route handlers, scripts)
turn them into responses with ``to_response()``; choosing an HTTP status is
left to them.
"""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel


class ErrorCode(str, Enum):
    """Standardized error codes."""

    # Credential lifecycle
    CREDENTIAL_NOT_FOUND = "CREDENTIAL_NOT_FOUND"
    REFRESH_FAILED = "REFRESH_FAILED"
    OAUTH_ERROR = "OAUTH_ERROR"
    ENCRYPTION_ERROR = "ENCRYPTION_ERROR"

    # Remote APIs (QuickBooks, Pipedrive)
    UPSTREAM_ERROR = "UPSTREAM_ERROR"

    # Caller input
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NUMBERING_WARNING = "NUMBERING_WARNING"

    # General
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorResponse(BaseModel):
    """Serializable error description.

    Attributes:
        error_code: Machine-readable error code
        message: Human-readable error message
        details: Additional error details (identifiers, upstream status)
        suggested_action: Actionable suggestion for the operator
    """
    error_code: str
    message: str
    details: Optional[Dict[str, Any]] = None
    suggested_action: Optional[str] = None


SUGGESTED_ACTIONS = {
    ErrorCode.CREDENTIAL_NOT_FOUND: "Connect the QuickBooks company again to store a credential for this realm.",
    ErrorCode.REFRESH_FAILED: "The QuickBooks authorization could not be renewed. Reconnect the QuickBooks company.",
    ErrorCode.OAUTH_ERROR: "The QuickBooks authorization server rejected the request. Check the client id, secret and redirect URI.",
    ErrorCode.ENCRYPTION_ERROR: "Set ENCRYPTION_KEY to a valid Fernet key.",
    ErrorCode.UPSTREAM_ERROR: "The remote service returned an error. Check the details and try again later.",
    ErrorCode.VALIDATION_ERROR: "The submitted data is invalid. Correct the listed fields and try again.",
    ErrorCode.NUMBERING_WARNING: "The latest invoice number is not numeric. Supply an explicit invoice number.",
    ErrorCode.INTERNAL_ERROR: "An internal error occurred.",
}


class DealBridgeError(Exception):
    """Base exception for the reconciliation layer."""

    error_code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message or SUGGESTED_ACTIONS.get(self.error_code) or "An error occurred"
        self.details = details or {}
        super().__init__(self.message)

    def to_response(self) -> ErrorResponse:
        """Build the serializable description of this error."""
        return ErrorResponse(
            error_code=self.error_code.value,
            message=self.message,
            details=self.details or None,
            suggested_action=SUGGESTED_ACTIONS.get(self.error_code),
        )


class CredentialNotFoundError(DealBridgeError):
    """No stored credential exists for the realm."""

    error_code = ErrorCode.CREDENTIAL_NOT_FOUND

    def __init__(self, realm_id: str):
        self.realm_id = realm_id
        super().__init__(
            f"No QuickBooks credential stored for realm {realm_id}",
            details={"realm_id": realm_id},
        )


class RefreshFailedError(DealBridgeError):
    """The access token could not be refreshed."""

    error_code = ErrorCode.REFRESH_FAILED

    def __init__(self, realm_id: str, message: str):
        self.realm_id = realm_id
        super().__init__(
            f"Token refresh failed for realm {realm_id}: {message}",
            details={"realm_id": realm_id},
        )


class OAuthError(DealBridgeError):
    """The OAuth token endpoint rejected a request or was unreachable."""

    error_code = ErrorCode.OAUTH_ERROR

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message, details={"status_code": status_code})


class UpstreamError(DealBridgeError):
    """A QuickBooks or Pipedrive call failed.

    ``status_code`` is None when no HTTP response was received.
    """

    error_code = ErrorCode.UPSTREAM_ERROR

    def __init__(
        self,
        operation: str,
        status_code: Optional[int] = None,
        body: str = "",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.operation = operation
        self.status_code = status_code
        self.body = body
        status = f"HTTP {status_code}" if status_code is not None else "no response"
        message = f"{operation} failed ({status})"
        if body:
            message = f"{message}: {body}"
        super().__init__(
            message,
            details={
                "operation": operation,
                "status_code": status_code,
                "body": body,
                **(details or {}),
            },
        )


class ValidationError(DealBridgeError):
    """Caller input is malformed. Raised before any network call."""

    error_code = ErrorCode.VALIDATION_ERROR

    def __init__(self, message: str, errors: Optional[list[str]] = None):
        self.errors = errors or [message]
        super().__init__(message, details={"errors": self.errors})


class NumberingWarningError(DealBridgeError):
    """Strict numbering refused to restart the invoice sequence at 1."""

    error_code = ErrorCode.NUMBERING_WARNING

    def __init__(self, last_number: str, candidate: str):
        self.last_number = last_number
        self.candidate = candidate
        super().__init__(
            f"Latest invoice number {last_number!r} is not numeric; "
            f"refusing to restart the sequence at {candidate}",
            details={"last_number": last_number, "candidate": candidate},
        )


class EncryptionError(DealBridgeError):
    """Raised when token encryption or decryption fails."""

    error_code = ErrorCode.ENCRYPTION_ERROR
