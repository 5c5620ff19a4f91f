"""
Migration service.
Composition root that owns the database engine, registry, credential store,
queue and worker pool for the lifetime of the process.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from core.database import create_engine, create_session_factory, create_tables
from core.logging import get_logger
from .credential_store import CredentialStore
from .job_queue import JobQueue
from .job_registry import JobRegistry, JobStatus
from .orchestrator import ClientFactory, MigrationOrchestrator
from .reconciliation import Reconciliation, reconcile
from .worker import MigrationWorkerPool

logger = get_logger("tent_migrate.service")


@dataclass
class JobStatusReport:
    """Status of a job with its reconciled progress"""
    job_key: str
    status: JobStatus
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    error: Optional[str]
    reconciliation: Reconciliation

    @property
    def exported_ids(self):
        return self.reconciliation.exported_ids

    @property
    def imported_ids(self):
        return self.reconciliation.imported_ids

    @property
    def failed_ids(self):
        return self.reconciliation.failed_ids


class MigrationService:
    """Entry points used by the authorization flow and the status API"""

    def __init__(
        self,
        settings,
        engine: Optional[AsyncEngine] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.settings = settings
        self.engine = engine or create_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
        self.session_factory = create_session_factory(self.engine)

        self.registry = JobRegistry(self.session_factory)
        self.credentials = CredentialStore(self.session_factory, settings.ENCRYPTION_KEY)
        self.queue = JobQueue(self.session_factory, lease_seconds=settings.MIGRATION_QUEUE_LEASE_SECONDS)
        self.orchestrator = MigrationOrchestrator.from_settings(
            self.registry, self.credentials, settings, client_factory=client_factory
        )
        self.workers = MigrationWorkerPool(
            self.queue,
            self.orchestrator,
            concurrency=settings.MIGRATION_WORKER_CONCURRENCY,
            poll_interval=settings.MIGRATION_QUEUE_POLL_INTERVAL,
        )

    async def startup(self):
        await create_tables(self.engine)
        if self.settings.MIGRATION_WORKERS_ENABLED:
            await self.workers.start()
        logger.info("Migration service started", action="service_startup")

    async def shutdown(self):
        await self.workers.stop()
        await self.engine.dispose()
        logger.info("Migration service stopped", action="service_shutdown")

    # ==================== AUTHORIZATION HOOKS ====================

    async def begin_job(self) -> str:
        """New job key, issued when the export authorization starts"""
        return await self.registry.create_job()

    async def on_export_authorization_complete(self, job_key: str, export_credential_ref: str) -> None:
        await self.registry.attach_export_credential(job_key, export_credential_ref)

    async def on_import_authorization_complete(
        self,
        job_key: str,
        export_credential_ref: str,
        import_credential_ref: str,
    ) -> bool:
        """
        Attach both credentials and hand the job to the workers.

        Returns True if the job was enqueued by this call. A repeated callback
        for the same job does not enqueue it again.
        """
        await self.registry.attach_export_credential(job_key, export_credential_ref)
        await self.registry.attach_import_credential(job_key, import_credential_ref)

        job = await self.registry.get_job(job_key)
        if job.status != JobStatus.PENDING:
            return False
        return await self.queue.enqueue(job_key)

    # ==================== STATUS ====================

    async def get_job_status(self, job_key: str) -> JobStatusReport:
        job = await self.registry.get_job(job_key)
        sets = await self.registry.list_sets(job_key)
        return JobStatusReport(
            job_key=job.job_key,
            status=job.status,
            started_at=job.started_at,
            completed_at=job.completed_at,
            error=job.error,
            reconciliation=reconcile(sets, job_key=job_key),
        )

    async def delete_job(self, job_key: str) -> None:
        """Stop any run of the job in this process and purge its state"""
        self.workers.cancel(job_key)
        await self.registry.delete_job(job_key)
