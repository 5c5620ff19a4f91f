"""
Migration Service Unit Tests
"""

import pytest

from services.migration.errors import ConflictError, NotFoundError
from services.migration.job_registry import JobStatus

pytestmark = pytest.mark.unit


class TestAuthorizationHooks:
    """Test the hooks called by the authorization flow."""

    @pytest.mark.asyncio
    async def test_import_authorization_enqueues_once(self, migration_service):
        job_key = await migration_service.begin_job()
        export_ref = await migration_service.credentials.create("export", "https://a.example.com", "e", "k")
        import_ref = await migration_service.credentials.create("import", "https://b.example.com", "i", "k")

        await migration_service.on_export_authorization_complete(job_key, export_ref)
        assert await migration_service.on_import_authorization_complete(job_key, export_ref, import_ref) is True
        assert await migration_service.on_import_authorization_complete(job_key, export_ref, import_ref) is False

        assert await migration_service.queue.depth() == 1

    @pytest.mark.asyncio
    async def test_finished_job_is_not_enqueued_again(self, migration_service):
        job_key = await migration_service.begin_job()
        export_ref = await migration_service.credentials.create("export", "https://a.example.com", "e", "k")
        import_ref = await migration_service.credentials.create("import", "https://b.example.com", "i", "k")
        await migration_service.on_import_authorization_complete(job_key, export_ref, import_ref)
        claimed = await migration_service.queue.claim("worker-1")
        await migration_service.workers.process(claimed, "worker-1")

        assert await migration_service.on_import_authorization_complete(job_key, export_ref, import_ref) is False
        assert await migration_service.queue.depth() == 0
        assert (await migration_service.registry.get_job(job_key)).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_different_export_credential_conflicts(self, migration_service):
        job_key = await migration_service.begin_job()
        first = await migration_service.credentials.create("export", "https://a.example.com", "e1", "k")
        second = await migration_service.credentials.create("export", "https://a.example.com", "e2", "k")
        import_ref = await migration_service.credentials.create("import", "https://b.example.com", "i", "k")

        await migration_service.on_export_authorization_complete(job_key, first)
        with pytest.raises(ConflictError):
            await migration_service.on_import_authorization_complete(job_key, second, import_ref)

        assert await migration_service.queue.depth() == 0


class TestStatus:
    """Test status reports."""

    @pytest.mark.asyncio
    async def test_status_of_unknown_job(self, migration_service):
        with pytest.raises(NotFoundError):
            await migration_service.get_job_status("missing")

    @pytest.mark.asyncio
    async def test_delete_job(self, migration_service):
        job_key = await migration_service.begin_job()

        await migration_service.delete_job(job_key)

        with pytest.raises(NotFoundError):
            await migration_service.get_job_status(job_key)
