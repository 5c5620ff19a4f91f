"""
Durable work queue of migration job keys.

Delivery is at-least-once: a claimed key stays in the queue until it is
acknowledged, and a claim whose lease is not renewed expires so another
worker can pick the job up again after a crash.
"""

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.database import insert_ignore
from core.logging import get_logger
from models.migration_models import MigrationQueueEntry

logger = get_logger("tent_migrate.queue")


class JobQueue:
    """Table-backed queue with claim / heartbeat / ack"""

    def __init__(self, session_factory: async_sessionmaker, lease_seconds: int = 300):
        self._session_factory = session_factory
        self.lease = timedelta(seconds=lease_seconds)

    async def enqueue(self, job_key: str) -> bool:
        """Add a job key. Returns False if it is already queued."""
        async with self._session_factory() as session:
            result = await session.execute(insert_ignore(session, MigrationQueueEntry, {
                "job_key": job_key,
                "enqueued_at": datetime.utcnow(),
                "attempts": 0,
            }, index_elements=["job_key"]))
            await session.commit()

        enqueued = result.rowcount == 1
        if enqueued:
            logger.info("Job enqueued", job_key=job_key, action="job_enqueued")
        return enqueued

    def _claimable(self, now: datetime):
        return or_(
            MigrationQueueEntry.claimed_at.is_(None),
            MigrationQueueEntry.claimed_at < now - self.lease,
        )

    async def claim(self, worker_id: str) -> Optional[str]:
        """Claim the oldest unclaimed (or expired) job key, or None if there is none"""
        now = datetime.utcnow()
        async with self._session_factory() as session:
            candidates = (await session.execute(
                select(MigrationQueueEntry.job_key)
                .where(self._claimable(now))
                .order_by(MigrationQueueEntry.enqueued_at)
                .limit(5)
            )).scalars().all()

            for job_key in candidates:
                # Compare-and-set so two workers never win the same key
                result = await session.execute(
                    update(MigrationQueueEntry)
                    .where(MigrationQueueEntry.job_key == job_key, self._claimable(now))
                    .values(
                        claimed_by=worker_id,
                        claimed_at=now,
                        attempts=MigrationQueueEntry.attempts + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                if result.rowcount == 1:
                    logger.info("Job claimed", job_key=job_key, worker_id=worker_id, action="job_claimed")
                    return job_key
        return None

    async def heartbeat(self, job_key: str, worker_id: str) -> bool:
        """Renew the lease. False if the claim was lost or the key is gone."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(MigrationQueueEntry)
                .where(MigrationQueueEntry.job_key == job_key, MigrationQueueEntry.claimed_by == worker_id)
                .values(claimed_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def ack(self, job_key: str) -> None:
        """Remove a key whose run reached a terminal state"""
        async with self._session_factory() as session:
            await session.execute(delete(MigrationQueueEntry).where(MigrationQueueEntry.job_key == job_key))
            await session.commit()
        logger.info("Job acknowledged", job_key=job_key, action="job_acked")

    async def release(self, job_key: str, worker_id: str) -> None:
        """Give a claim back so the key is redelivered without waiting for the lease"""
        async with self._session_factory() as session:
            await session.execute(
                update(MigrationQueueEntry)
                .where(MigrationQueueEntry.job_key == job_key, MigrationQueueEntry.claimed_by == worker_id)
                .values(claimed_by=None, claimed_at=None)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        logger.info("Job released", job_key=job_key, worker_id=worker_id, action="job_released")

    async def depth(self) -> int:
        """Number of queued keys, claimed or not"""
        async with self._session_factory() as session:
            return (await session.execute(select(func.count()).select_from(MigrationQueueEntry))).scalar_one()
