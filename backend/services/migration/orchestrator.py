"""
Migration orchestrator.
Runs one job: every resource category in the configured order, page by page,
item by item, recording progress in the job registry as it goes.

A run is safe to repeat. Progress sets are idempotent, each category resumes
from its last stored cursor, and items already confirmed on the import side
are not re-posted.
"""

import asyncio
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from core.logging import get_logger
from core.sentry import add_breadcrumb, capture_exception
from .credential_store import Credential, CredentialStore
from .errors import (
    FatalAuthorizationError,
    JobCancelledError,
    MalformedItemError,
    MigrationError,
    NotFoundError,
    TransientRemoteError,
)
from .job_registry import EXPORTED, IMPORTED, JobRecord, JobRegistry, JobStatus, progress_set_name
from .providers.base import BaseResourceClient
from .providers.tent_provider import TentResourceClient
from .translators import translate

logger = get_logger("tent_migrate.orchestrator")

ClientFactory = Callable[[Credential, str], BaseResourceClient]

CATEGORY_COMPLETED = "completed"


def cursor_stat(category: str) -> str:
    return f"cursor:{category}"


def category_stat(category: str) -> str:
    return f"category:{category}"


def idempotency_key(job_key: str, category: str, item_id: str) -> str:
    """Deterministic per (job, category, export id), stable across re-runs"""
    return hashlib.sha256(f"{job_key}:{category}:{item_id}".encode()).hexdigest()


@dataclass
class CategoryStats:
    """Counters for one category run, used for logging"""
    seen: int = 0
    imported: int = 0
    skipped: int = 0
    failed: int = 0


class MigrationOrchestrator:
    """Drive the remote clients for one job and record progress"""

    def __init__(
        self,
        registry: JobRegistry,
        credentials: CredentialStore,
        category_order: List[str],
        client_factory: Optional[ClientFactory] = None,
        max_attempts: int = 5,
        backoff_base: float = 0.5,
        backoff_max: float = 30.0,
        page_size: int = 50,
        http_timeout: float = 30.0,
        send_idempotency_keys: bool = True,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.registry = registry
        self.credentials = credentials
        self.category_order = list(category_order)
        self.client_factory = client_factory or self._tent_client
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.page_size = page_size
        self.http_timeout = http_timeout
        self.send_idempotency_keys = send_idempotency_keys
        self._sleep = sleep

    @classmethod
    def from_settings(cls, registry: JobRegistry, credentials: CredentialStore, settings, **kwargs) -> "MigrationOrchestrator":
        options = dict(
            category_order=settings.MIGRATION_CATEGORY_ORDER,
            max_attempts=settings.MIGRATION_MAX_ATTEMPTS,
            backoff_base=settings.MIGRATION_BACKOFF_BASE,
            backoff_max=settings.MIGRATION_BACKOFF_MAX,
            page_size=settings.MIGRATION_PAGE_SIZE,
            http_timeout=settings.MIGRATION_HTTP_TIMEOUT,
            send_idempotency_keys=settings.MIGRATION_SEND_IDEMPOTENCY_KEYS,
        )
        options.update(kwargs)
        return cls(registry, credentials, **options)

    def _tent_client(self, credential: Credential, category: str) -> BaseResourceClient:
        return TentResourceClient(credential, category, page_size=self.page_size, timeout=self.http_timeout)

    # ==================== JOB ====================

    async def run(self, job_key: str, cancel_event: Optional[asyncio.Event] = None) -> JobRecord:
        """
        Run a job to a terminal state.

        Returns the final job record. Terminal jobs are returned untouched.

        Raises:
            JobCancelledError: the job was deleted while running
            NotFoundError: the job does not exist
        """
        job = await self.registry.get_job(job_key)
        if job.status.is_terminal:
            logger.info(f"Job already {job.status.value}, nothing to do", job_key=job_key, action="job_run_noop")
            return job

        try:
            export_cred, import_cred = await self._load_credentials(job)

            await self.registry.set_stat(job_key, "status", JobStatus.RUNNING)
            if job.started_at is None:
                await self.registry.set_stat(job_key, "started_at", datetime.utcnow())
            logger.info("Migration started", job_key=job_key, action="job_running",
                        export_entity=export_cred.entity, import_entity=import_cred.entity)

            for category in self.category_order:
                self._check_cancelled(job_key, cancel_event)
                add_breadcrumb(f"Migrating {category}", data={"job_key": job_key})
                await self._migrate_category(job_key, category, export_cred, import_cred, cancel_event)

        except JobCancelledError:
            logger.info("Migration cancelled", job_key=job_key, action="job_cancelled")
            raise
        except NotFoundError as e:
            if await self._job_exists(job_key):
                await self._finish(job_key, JobStatus.FAILED, str(e))
                return await self.registry.get_job(job_key)
            logger.info("Job deleted during run", job_key=job_key, action="job_cancelled")
            raise JobCancelledError(f"Job {job_key} was deleted") from e
        except MigrationError as e:
            # Fatal authorization errors and pages that could not be read
            logger.error(f"Migration failed: {e}", job_key=job_key, action="job_failed")
            capture_exception(e, job_key=job_key)
            await self._finish(job_key, JobStatus.FAILED, str(e))
            return await self.registry.get_job(job_key)

        await self._finish(job_key, JobStatus.COMPLETED)
        logger.info("Migration completed", job_key=job_key, action="job_completed")
        return await self.registry.get_job(job_key)

    async def _load_credentials(self, job: JobRecord):
        if not job.export_credential_id or not job.import_credential_id:
            raise FatalAuthorizationError(f"Job {job.job_key} is missing a credential")
        export_cred = await self.credentials.get(job.export_credential_id)
        import_cred = await self.credentials.get(job.import_credential_id)
        return export_cred, import_cred

    async def _finish(self, job_key: str, status: JobStatus, error: Optional[str] = None):
        await self.registry.set_stat(job_key, "status", status)
        await self.registry.set_stat(job_key, "completed_at", datetime.utcnow())
        if error:
            await self.registry.set_stat(job_key, "error", error)

    async def _job_exists(self, job_key: str) -> bool:
        try:
            await self.registry.get_job(job_key)
            return True
        except NotFoundError:
            return False

    def _check_cancelled(self, job_key: str, cancel_event: Optional[asyncio.Event]):
        if cancel_event is not None and cancel_event.is_set():
            raise JobCancelledError(f"Job {job_key} was cancelled")

    # ==================== CATEGORY ====================

    async def _migrate_category(
        self,
        job_key: str,
        category: str,
        export_cred: Credential,
        import_cred: Credential,
        cancel_event: Optional[asyncio.Event],
    ):
        if await self.registry.get_stat(job_key, category_stat(category)) == CATEGORY_COMPLETED:
            logger.debug(f"{category} already migrated", job_key=job_key, category=category)
            return

        confirmed = await self.registry.get_set(job_key, progress_set_name(IMPORTED, category))
        cursor = await self.registry.get_stat(job_key, cursor_stat(category))
        stats = CategoryStats()

        logger.info(f"Migrating {category}", job_key=job_key, category=category,
                    action="category_started", resumed_from=cursor)

        export_client = self.client_factory(export_cred, category)
        import_client = self.client_factory(import_cred, category)
        try:
            while True:
                self._check_cancelled(job_key, cancel_event)
                page = await self._with_retries(
                    lambda: export_client.list_page(cursor), f"list {category}", job_key
                )

                for item in page.items:
                    self._check_cancelled(job_key, cancel_event)
                    await self._migrate_item(
                        job_key, category, item, import_client,
                        export_cred.entity, import_cred.entity, confirmed, stats,
                    )

                if page.next_cursor is None:
                    break
                if page.next_cursor == cursor:
                    # Category stays unmarked so the remaining pages are not reported as done
                    raise TransientRemoteError(f"{category} pagination did not advance past {cursor}")
                cursor = page.next_cursor
                await self.registry.set_stat(job_key, cursor_stat(category), cursor)

            await self.registry.set_stat(job_key, category_stat(category), CATEGORY_COMPLETED)
        finally:
            await export_client.close()
            await import_client.close()

        logger.info(
            f"Finished {category}: {stats.imported} imported, {stats.failed} failed, {stats.skipped} already done",
            job_key=job_key, category=category, action="category_completed",
            seen=stats.seen, imported=stats.imported, failed=stats.failed, skipped=stats.skipped,
        )

    # ==================== ITEM ====================

    async def _migrate_item(
        self,
        job_key: str,
        category: str,
        item: Any,
        import_client: BaseResourceClient,
        export_entity: str,
        import_entity: str,
        confirmed: Set[str],
        stats: CategoryStats,
    ):
        stats.seen += 1
        exported_set = progress_set_name(EXPORTED, category)

        item_id = item.get("id") if isinstance(item, dict) else None
        if not item_id:
            # Still counted so the failure shows up in the report
            item_id = self._synthetic_id(item)
            await self.registry.add_to_set(job_key, exported_set, item_id)
            stats.failed += 1
            logger.warning(f"Skipping {category} item without id", job_key=job_key,
                           category=category, action="item_malformed", item_id=item_id)
            return
        item_id = str(item_id)

        if item_id in confirmed:
            stats.skipped += 1
            return

        # Export id is recorded only for item-level outcomes; a fatal error leaves it out
        try:
            body = translate(category, item, export_entity, import_entity)
            key = idempotency_key(job_key, category, item_id) if self.send_idempotency_keys else None
            await self._with_retries(
                lambda: import_client.create(body, key), f"create {category} {item_id}", job_key
            )
        except TransientRemoteError as e:
            stats.failed += 1
            logger.warning(f"Giving up on {category} {item_id} after {self.max_attempts} attempts: {e}",
                           job_key=job_key, category=category, action="item_failed", item_id=item_id)
            await self.registry.add_to_set(job_key, exported_set, item_id)
            return
        except MalformedItemError as e:
            stats.failed += 1
            logger.warning(f"Skipping malformed {category} {item_id}: {e}",
                           job_key=job_key, category=category, action="item_malformed", item_id=item_id)
            await self.registry.add_to_set(job_key, exported_set, item_id)
            return

        await self.registry.add_to_set(job_key, exported_set, item_id)
        await self.registry.add_to_set(job_key, progress_set_name(IMPORTED, category), item_id)
        confirmed.add(item_id)
        stats.imported += 1

    @staticmethod
    def _synthetic_id(item: Any) -> str:
        digest = hashlib.sha1(json.dumps(item, sort_keys=True, default=str).encode()).hexdigest()
        return f"malformed:{digest[:16]}"

    async def _with_retries(self, operation: Callable[[], Awaitable[Any]], description: str, job_key: str) -> Any:
        """Retry transient failures with capped exponential backoff"""
        last_error: Optional[TransientRemoteError] = None
        for attempt in range(self.max_attempts):
            try:
                return await operation()
            except TransientRemoteError as e:
                last_error = e
                if attempt < self.max_attempts - 1:
                    delay = min(self.backoff_base * (2 ** attempt), self.backoff_max)
                    logger.warning(f"{description} failed (attempt {attempt + 1}): {e}, retrying in {delay}s",
                                   job_key=job_key, action="remote_retry")
                    await self._sleep(delay)
        raise last_error
