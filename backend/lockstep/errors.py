"""Error taxonomy shared by the server routes and the client library.

Every failure that crosses a component boundary is one of these. The server
renders them as ``{"error": message, **details}`` with ``status_code``; the
client maps HTTP responses back onto the same classes with
:func:`error_for_response`.
"""

from typing import Any, Dict, Optional


class LockstepError(Exception):
    status_code = 500
    retryable = False

    def __init__(self, message: str, /, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, **self.details}


class TransportError(LockstepError):
    """Network failure, timeout or upstream 5xx."""

    status_code = 502
    retryable = True


class AuthorizationError(LockstepError):
    status_code = 401


class ValidationError(LockstepError):
    status_code = 400


class PayloadTooLarge(ValidationError):
    status_code = 413


class UnsupportedMediaType(ValidationError):
    status_code = 415


class RangeNotSatisfiable(ValidationError):
    status_code = 416


class IncompleteUploadError(ValidationError):
    pass


class NotFoundError(LockstepError):
    status_code = 404


class RoomNotFound(NotFoundError):
    pass


class UploadSessionNotFound(NotFoundError):
    pass


class ObjectNotFound(NotFoundError):
    pass


class UploadCancelled(LockstepError):
    """Raised when the caller aborted an upload. Not a failure."""

    status_code = 499


_BY_STATUS = {
    400: ValidationError,
    401: AuthorizationError,
    403: AuthorizationError,
    404: NotFoundError,
    413: PayloadTooLarge,
    415: UnsupportedMediaType,
    416: RangeNotSatisfiable,
}


def error_for_response(status_code: int, payload: Optional[Dict[str, Any]] = None) -> LockstepError:
    payload = dict(payload or {})
    message = str(payload.pop("error", None) or f"Request failed with status {status_code}")
    if status_code >= 500:
        payload.setdefault("status", status_code)
        return TransportError(message, **payload)
    if status_code == 400 and "uploadedChunks" in payload:
        return IncompleteUploadError(message, **payload)
    cls = _BY_STATUS.get(status_code, ValidationError)
    return cls(message, **payload)
