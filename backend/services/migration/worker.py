"""
Migration worker pool.
Each worker claims one job key at a time from the queue and runs it to a
terminal state before claiming the next.
"""

import asyncio
import contextlib
import os
import socket
from typing import Dict, List, Optional

from core.logging import get_logger
from .errors import JobCancelledError, NotFoundError
from .job_queue import JobQueue
from .job_registry import JobRecord
from .orchestrator import MigrationOrchestrator

logger = get_logger("tent_migrate.worker")


class MigrationWorkerPool:
    """Pool of asyncio workers draining the job queue"""

    def __init__(
        self,
        queue: JobQueue,
        orchestrator: MigrationOrchestrator,
        concurrency: int = 4,
        poll_interval: float = 2.0,
        heartbeat_interval: Optional[float] = None,
    ):
        self.queue = queue
        self.orchestrator = orchestrator
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.heartbeat_interval = heartbeat_interval or max(queue.lease.total_seconds() / 3, 1.0)
        self._prefix = f"{socket.gethostname()}:{os.getpid()}"
        self._tasks: List[asyncio.Task] = []
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._running = False

    @property
    def active_jobs(self) -> List[str]:
        return list(self._cancel_events)

    async def start(self):
        if self._running:
            return
        self._running = True
        for n in range(self.concurrency):
            worker_id = f"{self._prefix}:{n}"
            self._tasks.append(asyncio.create_task(self._worker_loop(worker_id), name=f"migration-worker-{n}"))
        logger.info(f"Started {self.concurrency} migration workers", action="workers_started")

    async def stop(self):
        """Stop all workers; jobs in flight are released for redelivery"""
        if not self._running:
            return
        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Migration workers stopped", action="workers_stopped")

    def cancel(self, job_key: str) -> bool:
        """Ask the run of a job in this process to stop at the next item"""
        event = self._cancel_events.get(job_key)
        if event is None:
            return False
        event.set()
        logger.info("Cancellation requested", job_key=job_key, action="job_cancel_requested")
        return True

    async def _worker_loop(self, worker_id: str):
        while self._running:
            try:
                job_key = await self.queue.claim(worker_id)
            except Exception as e:
                logger.error(f"Queue claim failed: {e}", worker_id=worker_id, action="queue_claim_failed")
                await asyncio.sleep(self.poll_interval)
                continue

            if job_key is None:
                await asyncio.sleep(self.poll_interval)
                continue

            await self.process(job_key, worker_id)

    async def process(self, job_key: str, worker_id: str) -> Optional[JobRecord]:
        """
        Run one claimed job.

        The key is acknowledged only once the job is completed or failed (or was
        deleted). Any other error leaves the claim to expire so the job is
        delivered again and resumes from its stored progress.
        """
        log = logger.bind(job_key=job_key, worker_id=worker_id)
        event = self._cancel_events.setdefault(job_key, asyncio.Event())
        heartbeat = asyncio.create_task(self._heartbeat(job_key, worker_id))
        try:
            record = await self.orchestrator.run(job_key, event)
        except (JobCancelledError, NotFoundError):
            await self.queue.ack(job_key)
            return None
        except asyncio.CancelledError:
            await self.queue.release(job_key, worker_id)
            raise
        except Exception as e:
            log.exception(f"Migration run crashed, leaving job for redelivery: {e}", action="job_run_crashed")
            return None
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat
            self._cancel_events.pop(job_key, None)

        if record.status.is_terminal:
            await self.queue.ack(job_key)
        return record

    async def _heartbeat(self, job_key: str, worker_id: str):
        log = logger.bind(job_key=job_key, worker_id=worker_id)
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                if not await self.queue.heartbeat(job_key, worker_id):
                    log.warning("Lost queue claim", action="job_claim_lost")
                    return
            except Exception as e:
                log.error(f"Heartbeat failed: {e}", action="heartbeat_failed")
