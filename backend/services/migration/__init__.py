# Migration pipeline: moves one Tent entity's data to another
# Registry, queue and workers are built by MigrationService

from .errors import (
    MigrationError,
    TransientRemoteError,
    FatalAuthorizationError,
    MalformedItemError,
    NotFoundError,
    ConflictError,
    JobCancelledError,
)
from .job_registry import JobRegistry, JobStatus
from .orchestrator import MigrationOrchestrator
from .service import MigrationService, JobStatusReport

__all__ = [
    "MigrationError",
    "TransientRemoteError",
    "FatalAuthorizationError",
    "MalformedItemError",
    "NotFoundError",
    "ConflictError",
    "JobCancelledError",
    "JobRegistry",
    "JobStatus",
    "MigrationOrchestrator",
    "MigrationService",
    "JobStatusReport",
]
