from enum import Enum
from typing import Optional

class ErrorKind(str, Enum):
    NO_SESSION = "no_session"
    NETWORK = "network"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    DECODING = "decoding"
    LOCAL_STORE = "local_store"

class ErrorPolicy(str, Enum):
    ABORT_PASS = "abort_pass"
    SKIP_RECORD = "skip_record"
    ACCEPT = "accept"  # treat as success

POLICY = {
    ErrorKind.NO_SESSION: ErrorPolicy.ABORT_PASS,
    ErrorKind.NETWORK: ErrorPolicy.SKIP_RECORD,
    ErrorKind.CONFLICT: ErrorPolicy.ACCEPT,
    ErrorKind.NOT_FOUND: ErrorPolicy.SKIP_RECORD,
    ErrorKind.VALIDATION: ErrorPolicy.SKIP_RECORD,
    ErrorKind.DECODING: ErrorPolicy.SKIP_RECORD,
    ErrorKind.LOCAL_STORE: ErrorPolicy.ABORT_PASS,
}

class SyncError(Exception):
    kind: ErrorKind = ErrorKind.NETWORK

    def __init__(self, message: str = "", status_code: Optional[int] = None):
        super().__init__(message or self.kind.value)
        self.message = message or self.kind.value
        self.status_code = status_code

    @property
    def policy(self) -> ErrorPolicy:
        return POLICY[self.kind]

class NoSession(SyncError):
    kind = ErrorKind.NO_SESSION

    def __init__(self, message: str = "Not logged in. Configure a sync server first.", status_code: Optional[int] = None):
        super().__init__(message, status_code)

class NetworkError(SyncError):
    kind = ErrorKind.NETWORK

class ConflictError(SyncError):
    kind = ErrorKind.CONFLICT

class NotFoundError(SyncError):
    kind = ErrorKind.NOT_FOUND

class ValidationError(SyncError):
    kind = ErrorKind.VALIDATION

class DecodingError(SyncError):
    kind = ErrorKind.DECODING

class LocalStoreError(SyncError):
    kind = ErrorKind.LOCAL_STORE

def error_for_status(status_code: int, message: str = "") -> SyncError:
    """Map an HTTP error status onto the sync error taxonomy."""
    if status_code in (401, 403):
        return NoSession(message or f"Server rejected the session ({status_code})", status_code)
    if status_code == 404:
        return NotFoundError(message or "Resource not found", status_code)
    if status_code == 409:
        return ConflictError(message or "Resource already exists", status_code)
    if status_code in (400, 422):
        return ValidationError(message or "Invalid request data", status_code)
    return NetworkError(message or f"Server error: {status_code}", status_code)
