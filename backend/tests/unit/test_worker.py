"""
Migration Worker Pool Unit Tests
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from services.migration.errors import JobCancelledError
from services.migration.job_registry import JobStatus
from services.migration.service import MigrationService
from services.migration.worker import MigrationWorkerPool

pytestmark = pytest.mark.unit


class TestProcess:
    """Test running one claimed job."""

    @pytest.mark.asyncio
    async def test_terminal_run_is_acknowledged(self, job_queue, orchestrator, job_key):
        pool = MigrationWorkerPool(job_queue, orchestrator, concurrency=1, poll_interval=0.01)
        await job_queue.enqueue(job_key)
        await job_queue.claim("worker-1")

        record = await pool.process(job_key, "worker-1")

        assert record.status == JobStatus.COMPLETED
        assert await job_queue.depth() == 0
        assert pool.active_jobs == []

    @pytest.mark.asyncio
    async def test_crashed_run_keeps_claim(self, job_queue, job_key):
        orchestrator = MagicMock()
        orchestrator.run = AsyncMock(side_effect=RuntimeError("database went away"))
        pool = MigrationWorkerPool(job_queue, orchestrator, concurrency=1)
        await job_queue.enqueue(job_key)
        await job_queue.claim("worker-1")

        assert await pool.process(job_key, "worker-1") is None

        assert await job_queue.depth() == 1
        assert await job_queue.claim("worker-2") is None

    @pytest.mark.asyncio
    async def test_cancelled_job_is_acknowledged(self, job_queue, job_key):
        orchestrator = MagicMock()
        orchestrator.run = AsyncMock(side_effect=JobCancelledError("deleted"))
        pool = MigrationWorkerPool(job_queue, orchestrator, concurrency=1)
        await job_queue.enqueue(job_key)
        await job_queue.claim("worker-1")

        assert await pool.process(job_key, "worker-1") is None
        assert await job_queue.depth() == 0

    @pytest.mark.asyncio
    async def test_cancel_sets_event_of_running_job(self, job_queue, job_key):
        started = asyncio.Event()

        async def run(key, cancel_event):
            started.set()
            await cancel_event.wait()
            raise JobCancelledError("cancelled")

        orchestrator = MagicMock()
        orchestrator.run = run
        pool = MigrationWorkerPool(job_queue, orchestrator, concurrency=1)
        await job_queue.enqueue(job_key)
        await job_queue.claim("worker-1")

        task = asyncio.create_task(pool.process(job_key, "worker-1"))
        await started.wait()
        assert pool.active_jobs == [job_key]

        assert pool.cancel(job_key) is True
        await asyncio.wait_for(task, timeout=5)
        assert await job_queue.depth() == 0

    @pytest.mark.asyncio
    async def test_heartbeat_task_is_finished_when_run_returns(self, job_queue, job_key):
        heartbeats = []

        async def heartbeat(key, worker_id):
            heartbeats.append(asyncio.current_task())
            await asyncio.sleep(3600)

        async def run(key, cancel_event):
            await asyncio.sleep(0)
            raise JobCancelledError("deleted")

        orchestrator = MagicMock()
        orchestrator.run = run
        pool = MigrationWorkerPool(job_queue, orchestrator, concurrency=1)
        pool._heartbeat = heartbeat
        await job_queue.enqueue(job_key)
        await job_queue.claim("worker-1")

        await pool.process(job_key, "worker-1")

        assert len(heartbeats) == 1
        assert heartbeats[0].done()
        assert heartbeats[0].cancelled()

    def test_cancel_unknown_job(self):
        queue = MagicMock()
        queue.lease.total_seconds.return_value = 60
        pool = MigrationWorkerPool(queue, MagicMock(), concurrency=1)
        assert pool.cancel("missing") is False


class TestWorkerLoop:
    """Test the worker pool draining the queue."""

    @pytest_asyncio.fixture
    async def file_service(self, tmp_path, test_settings, fake_tent):
        """Service on a file database so concurrent workers get their own connections."""
        settings = test_settings.model_copy(update={"DATABASE_URL": f"sqlite+aiosqlite:///{tmp_path}/queue.db"})
        service = MigrationService(settings, client_factory=fake_tent.client_factory)
        await service.startup()
        yield service
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_workers_drain_queue(self, file_service, fake_tent, make_post):
        fake_tent.export_items["posts"] = [make_post("p1")]
        registry = file_service.registry
        job_queue = file_service.queue
        job_key = await file_service.begin_job()
        export_ref = await file_service.credentials.create("export", "https://alice.example.com", "e-id", "e-key")
        import_ref = await file_service.credentials.create("import", "https://alice.newhost.example", "i-id", "i-key")
        assert await file_service.on_import_authorization_complete(job_key, export_ref, import_ref) is True
        pool = MigrationWorkerPool(job_queue, file_service.orchestrator, concurrency=2, poll_interval=0.01)

        await pool.start()
        try:
            for _ in range(500):
                if (await registry.get_job(job_key)).status.is_terminal and await job_queue.depth() == 0:
                    break
                await asyncio.sleep(0.01)
        finally:
            await pool.stop()

        assert (await registry.get_job(job_key)).status == JobStatus.COMPLETED
        assert await job_queue.depth() == 0
        assert len(fake_tent.created["posts"]) == 1
