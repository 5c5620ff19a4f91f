"""
Job registry.
Single source of truth for migration jobs: identity, credential links,
lifecycle fields, named stats and the append-only progress sets.

Every call runs in its own session and commits independently, so progress
survives a crash between any two calls.
"""

import secrets
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Set

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.database import insert_ignore
from core.logging import get_logger
from models.migration_models import (
    MigrationCredential,
    MigrationJob,
    MigrationJobStat,
    MigrationProgress,
    MigrationQueueEntry,
)
from .errors import ConflictError, NotFoundError

logger = get_logger("tent_migrate.registry")


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


# Closed set of resource categories and the singular used in progress set names
RESOURCE_CATEGORIES = {
    "posts": "post",
    "profile": "profile",
    "followers": "follower",
    "followings": "following",
    "groups": "group",
    "permissions": "permission",
    "apps": "app",
    "secrets": "secret",
}

EXPORTED = "exported"
IMPORTED = "imported"

# Stats stored as typed columns on the job record; everything else is an extension row
TYPED_STATS = ("status", "started_at", "completed_at", "error")


def progress_set_name(direction: str, category: str) -> str:
    """exported_post_ids, imported_follower_ids, ..."""
    if direction not in (EXPORTED, IMPORTED):
        raise ValueError(f"Unknown progress direction: {direction}")
    try:
        return f"{direction}_{RESOURCE_CATEGORIES[category]}_ids"
    except KeyError as exc:
        raise ValueError(f"Unknown resource category: {category}") from exc


@dataclass
class JobRecord:
    """Typed snapshot of a job"""
    job_key: str
    status: JobStatus
    export_credential_id: Optional[str]
    import_credential_id: Optional[str]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    error: Optional[str]
    created_at: Optional[datetime]


class JobRegistry:
    """Persistent job state keyed by job key"""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    # ==================== JOBS ====================

    async def create_job(self) -> str:
        """Create a pending job under a fresh random key"""
        async with self._session_factory() as session:
            while True:
                job_key = secrets.token_hex(8)
                if await session.get(MigrationJob, job_key) is None:
                    break
            session.add(MigrationJob(job_key=job_key, status=JobStatus.PENDING.value))
            await session.commit()

        logger.info("Created migration job", job_key=job_key, action="job_created")
        return job_key

    async def get_job(self, job_key: str) -> JobRecord:
        async with self._session_factory() as session:
            job = await self._require_job(session, job_key)
            return JobRecord(
                job_key=job.job_key,
                status=JobStatus(job.status),
                export_credential_id=job.export_credential_id,
                import_credential_id=job.import_credential_id,
                started_at=job.started_at,
                completed_at=job.completed_at,
                error=job.error,
                created_at=job.created_at,
            )

    async def attach_export_credential(self, job_key: str, credential_ref: str) -> None:
        await self._attach_credential(job_key, "export", credential_ref)

    async def attach_import_credential(self, job_key: str, credential_ref: str) -> None:
        await self._attach_credential(job_key, "import", credential_ref)

    async def _attach_credential(self, job_key: str, side: str, credential_ref: str) -> None:
        """
        Fill the job's export or import slot.

        Raises:
            NotFoundError: unknown job or credential
            ConflictError: the slot holds another credential, the credential was
                issued for the other side, or it already belongs to another job
        """
        column = f"{side}_credential_id"
        async with self._session_factory() as session:
            await self._require_job(session, job_key)

            credential = await session.get(MigrationCredential, credential_ref)
            if credential is None:
                raise NotFoundError(f"Credential {credential_ref} not found")
            if credential.side != side:
                raise ConflictError(
                    f"Credential {credential_ref} was issued for {credential.side}, not {side}"
                )

            owner = (await session.execute(
                select(MigrationJob.job_key).where(
                    getattr(MigrationJob, column) == credential_ref,
                    MigrationJob.job_key != job_key,
                )
            )).scalar_one_or_none()
            if owner is not None:
                raise ConflictError(f"Credential {credential_ref} already belongs to another job")

            # Compare-and-set: only an empty slot may be filled
            try:
                result = await session.execute(
                    update(MigrationJob)
                    .where(MigrationJob.job_key == job_key, getattr(MigrationJob, column).is_(None))
                    .values({column: credential_ref, "updated_at": datetime.utcnow()})
                )
                await session.commit()
            except IntegrityError as e:
                # Unique slot: another job won the same credential concurrently
                await session.rollback()
                raise ConflictError(f"Credential {credential_ref} already belongs to another job") from e
            if result.rowcount == 1:
                logger.info(f"Attached {column}", job_key=job_key, action="credential_attached")
                return

            current = (await session.execute(
                select(getattr(MigrationJob, column)).where(MigrationJob.job_key == job_key)
            )).scalar_one_or_none()

        if current != credential_ref:
            raise ConflictError(f"Job {job_key} already has a different {column.replace('_id', '')}")

    async def delete_job(self, job_key: str) -> None:
        """Remove the job with its progress, stats, queue row and credentials"""
        async with self._session_factory() as session:
            job = await self._require_job(session, job_key)
            credential_ids = [c for c in (job.export_credential_id, job.import_credential_id) if c]

            await session.execute(delete(MigrationProgress).where(MigrationProgress.job_key == job_key))
            await session.execute(delete(MigrationJobStat).where(MigrationJobStat.job_key == job_key))
            await session.execute(delete(MigrationQueueEntry).where(MigrationQueueEntry.job_key == job_key))
            await session.execute(delete(MigrationJob).where(MigrationJob.job_key == job_key))
            if credential_ids:
                await session.execute(
                    delete(MigrationCredential).where(MigrationCredential.id.in_(credential_ids))
                )
            await session.commit()

        logger.info("Deleted migration job", job_key=job_key, action="job_deleted")

    # ==================== STATS ====================

    async def set_stat(self, job_key: str, name: str, value: Any) -> None:
        """Last write wins. Typed job fields are updated in place."""
        async with self._session_factory() as session:
            if name in TYPED_STATS:
                if isinstance(value, JobStatus):
                    value = value.value
                result = await session.execute(
                    update(MigrationJob)
                    .where(MigrationJob.job_key == job_key)
                    .values({name: value, "updated_at": datetime.utcnow()})
                )
                if result.rowcount == 0:
                    raise NotFoundError(f"Job {job_key} not found")
                await session.commit()
                return

            await self._require_job(session, job_key)
            stat = await session.get(MigrationJobStat, (job_key, name))
            if stat is None:
                session.add(MigrationJobStat(job_key=job_key, name=name, value=value))
            else:
                stat.value = value
            try:
                await session.commit()
            except IntegrityError:
                # Concurrent first write of the same stat, or the job vanished
                await session.rollback()
                await self._require_job(session, job_key)
                await session.execute(
                    update(MigrationJobStat)
                    .where(MigrationJobStat.job_key == job_key, MigrationJobStat.name == name)
                    .values(value=value)
                )
                await session.commit()

    async def get_stat(self, job_key: str, name: str) -> Optional[Any]:
        async with self._session_factory() as session:
            job = await self._require_job(session, job_key)
            if name in TYPED_STATS:
                return getattr(job, name)
            stat = await session.get(MigrationJobStat, (job_key, name))
            return stat.value if stat else None

    # ==================== PROGRESS SETS ====================

    async def add_to_set(self, job_key: str, set_name: str, item_id: str) -> None:
        """Idempotent: adding a present id is a no-op"""
        async with self._session_factory() as session:
            await self._require_job(session, job_key)
            insert_stmt = insert_ignore(session, MigrationProgress, {
                "job_key": job_key,
                "set_name": set_name,
                "item_id": str(item_id),
                "created_at": datetime.utcnow(),
            }, index_elements=["job_key", "set_name", "item_id"])
            try:
                await session.execute(insert_stmt)
                await session.commit()
            except IntegrityError as e:
                # Only reachable if the job was deleted after the existence check
                await session.rollback()
                raise NotFoundError(f"Job {job_key} not found") from e

    async def get_set(self, job_key: str, set_name: str) -> Set[str]:
        async with self._session_factory() as session:
            await self._require_job(session, job_key)
            result = await session.execute(
                select(MigrationProgress.item_id).where(
                    MigrationProgress.job_key == job_key,
                    MigrationProgress.set_name == set_name,
                )
            )
            return set(result.scalars().all())

    async def diff_sets(self, job_key: str, set_a: str, set_b: str) -> Set[str]:
        """Ids in set_a that are not in set_b"""
        async with self._session_factory() as session:
            await self._require_job(session, job_key)
            in_b = select(MigrationProgress.item_id).where(
                MigrationProgress.job_key == job_key,
                MigrationProgress.set_name == set_b,
            )
            result = await session.execute(
                select(MigrationProgress.item_id).where(
                    MigrationProgress.job_key == job_key,
                    MigrationProgress.set_name == set_a,
                    MigrationProgress.item_id.not_in(in_b),
                )
            )
            return set(result.scalars().all())

    async def list_sets(self, job_key: str) -> Dict[str, Set[str]]:
        """Every progress set of the job, keyed by set name"""
        async with self._session_factory() as session:
            await self._require_job(session, job_key)
            result = await session.execute(
                select(MigrationProgress.set_name, MigrationProgress.item_id).where(
                    MigrationProgress.job_key == job_key
                )
            )
            sets: Dict[str, Set[str]] = {}
            for set_name, item_id in result.all():
                sets.setdefault(set_name, set()).add(item_id)
            return sets

    # ==================== HELPERS ====================

    async def _require_job(self, session: AsyncSession, job_key: str) -> MigrationJob:
        job = await session.get(MigrationJob, job_key, populate_existing=True)
        if job is None:
            raise NotFoundError(f"Job {job_key} not found")
        return job
