"""Error taxonomy surfaced to callers.

Provider-side failures arrive as ``BackendError`` with a raw code. They are
translated into the classes below at each operation boundary so that no raw
code ever reaches the UI.
"""

from typing import Dict, Optional


class BackendError(Exception):
    """Raw failure raised by an external collaborator."""

    def __init__(self, code: str, message: str = "") -> None:
        super().__init__(message or code)
        self.code = code
        self.message = message or code


class MediMateError(Exception):
    """Base class for every error the application surfaces."""

    code = "error"
    http_status = 500
    default_message = "Something went wrong. Please try again."

    def __init__(self, message: Optional[str] = None, field: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.field = field

    def to_dict(self) -> dict:
        payload = {"code": self.code, "message": self.message}
        if self.field:
            payload["field"] = self.field
        return payload


class AuthInvalidCredential(MediMateError):
    code = "auth_invalid_credential"
    http_status = 401
    default_message = "Invalid email/username or password. Please check your details and try again."


class AuthEmailInUse(MediMateError):
    code = "auth_email_in_use"
    http_status = 409
    default_message = "This email is already registered."


class UsernameTaken(MediMateError):
    code = "username_taken"
    http_status = 409
    default_message = "Username is already taken."

    def __init__(self, message: Optional[str] = None, field: Optional[str] = "username") -> None:
        super().__init__(message, field)


class AuthUnverified(MediMateError):
    """Identity resolved but its email is not verified yet.

    This is a gating state rather than a failure; it is raised only where an
    operation needs a verified identity.
    """

    code = "auth_unverified"
    http_status = 403
    default_message = "Please verify your email address to continue."


class ReauthRequired(MediMateError):
    code = "reauth_required"
    http_status = 401
    default_message = "Security check: Please re-enter your current password to change it."

    def __init__(self, message: Optional[str] = None, field: Optional[str] = "current_password") -> None:
        super().__init__(message, field)


class PermissionDenied(MediMateError):
    code = "permission_denied"
    http_status = 403
    default_message = "Access denied."


class NotFound(MediMateError):
    code = "not_found"
    http_status = 404
    default_message = "The requested item was not found."


class ChatNotFound(NotFound):
    code = "chat_not_found"
    default_message = "Chat not found."


class NetworkUnavailable(MediMateError):
    code = "network_unavailable"
    http_status = 503
    default_message = "Network error. Please check your connection and try again."


class ConfigurationError(MediMateError):
    code = "configuration_error"
    http_status = 503
    default_message = "This feature is not configured on the server."


class ValidationFailed(MediMateError):
    """Form input rejected before any write; carries per-field messages."""

    code = "validation_failed"
    http_status = 422
    default_message = "Please correct the highlighted fields."

    def __init__(
        self,
        message: Optional[str] = None,
        field: Optional[str] = None,
        errors: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message, field)
        self.errors = dict(errors or {})
        if field and field not in self.errors:
            self.errors[field] = self.message

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["errors"] = self.errors
        return payload


class RenameFailed(MediMateError):
    code = "rename_failed"
    http_status = 400
    default_message = "Could not rename the chat."


class UploadFailed(MediMateError):
    code = "upload_failed"
    http_status = 502
    default_message = "Upload failed. Check the file and try again."


class ProfileSyncFailed(MediMateError):
    """The picture was stored but a profile reference could not be updated."""

    code = "profile_sync_failed"
    http_status = 502
    default_message = "Failed to save picture reference."


_CODE_MAP = {
    "auth/invalid-credential": AuthInvalidCredential,
    "auth/wrong-password": AuthInvalidCredential,
    "auth/user-not-found": AuthInvalidCredential,
    "auth/invalid-email": AuthInvalidCredential,
    "auth/email-already-in-use": AuthEmailInUse,
    "auth/requires-recent-login": ReauthRequired,
    "auth/network-request-failed": NetworkUnavailable,
    "auth/configuration-not-found": ConfigurationError,
    "auth/operation-not-allowed": ConfigurationError,
    "permission-denied": PermissionDenied,
    "unauthenticated": PermissionDenied,
    "not-found": NotFound,
    "unavailable": NetworkUnavailable,
    "deadline-exceeded": NetworkUnavailable,
    "storage/unauthorized": PermissionDenied,
    "storage/retry-limit-exceeded": NetworkUnavailable,
    "storage/object-not-found": NotFound,
}

_MESSAGES = {
    "auth/invalid-email": "Invalid email format.",
    "auth/weak-password": "Password is too weak. Please use at least 6 characters.",
    "unauthenticated": "Authentication expired. Please log in again.",
}


def translate_error(exc: BaseException, field: Optional[str] = None) -> MediMateError:
    """Map any exception raised below an operation boundary into the taxonomy."""
    if isinstance(exc, MediMateError):
        return exc
    if isinstance(exc, BackendError):
        if exc.code == "auth/weak-password":
            return ValidationFailed(_MESSAGES[exc.code], field=field or "password")
        error_class = _CODE_MAP.get(exc.code, MediMateError)
        message = _MESSAGES.get(exc.code)
        if field is None:
            return error_class(message)
        return error_class(message, field=field)
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return NetworkUnavailable()
    return MediMateError()
