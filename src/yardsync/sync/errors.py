"""Error taxonomy shared by the sync engine, the remote client and the API layer."""
from typing import Optional


class SyncError(RuntimeError):
    """Base class for all engine errors."""


class RemoteUnavailable(SyncError):
    """The remote system could not be reached, timed out, or is overloaded. Retryable."""


class RemoteRejected(SyncError):
    """The remote system refused the request (validation, permission, not found). Terminal."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class MappingError(SyncError):
    """A remote record could not be mapped onto local records. Terminal for that record only."""

    def __init__(self, message: str, external_id: Optional[str] = None):
        super().__init__(message)
        self.external_id = external_id


class SessionConflict(SyncError):
    """A bulk session for the same filter key is already active."""

    def __init__(self, filter_key: str, active_session_id: Optional[int] = None):
        super().__init__(f"A sync session for {filter_key!r} is already in progress")
        self.filter_key = filter_key
        self.active_session_id = active_session_id


class SessionNotFound(SyncError):
    """No sync session with the given id exists."""


class IntegrityViolation(SyncError):
    """Local records break a structural invariant (dangling parent, duplicate identity)."""
