"""
Migration error taxonomy.
Item-level errors stay inside the category loop, fatal errors end the job.
"""

from typing import Optional


class MigrationError(Exception):
    """Base migration error"""
    pass


class TransientRemoteError(MigrationError):
    """Network failure, timeout, throttling or 5xx. Retried with backoff."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class FatalAuthorizationError(MigrationError):
    """Credential revoked, scope insufficient or account gone. Aborts the job."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class MalformedItemError(MigrationError):
    """Remote item cannot be read or re-posted. The item is skipped."""

    def __init__(self, message: str, item_id: Optional[str] = None):
        super().__init__(message)
        self.item_id = item_id


class NotFoundError(MigrationError):
    """Unknown job or credential key"""
    pass


class ConflictError(MigrationError):
    """A different credential is already attached to the job"""
    pass


class JobCancelledError(MigrationError):
    """The job was deleted while a run was in flight"""
    pass
