"""
Tent Migrate - Database Models
"""
from .migration_models import (
    MigrationCredential,
    MigrationJob,
    MigrationProgress,
    MigrationJobStat,
    MigrationQueueEntry,
)

__all__ = [
    "MigrationCredential",
    "MigrationJob",
    "MigrationProgress",
    "MigrationJobStat",
    "MigrationQueueEntry",
]
