"""
Pytest Configuration and Fixtures

This file contains shared fixtures and configuration for all tests.
"""

import inspect
import os
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional

import pytest
import pytest_asyncio
from cryptography.fernet import Fernet
from httpx import AsyncClient, ASGITransport

# Set test environment before importing app
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["MIGRATION_WORKERS_ENABLED"] = "false"
os.environ["LOG_FORMAT"] = "text"

from core.config import Settings
from core.database import create_engine, create_session_factory, create_tables
from services.migration.credential_store import Credential, CredentialStore
from services.migration.job_queue import JobQueue
from services.migration.job_registry import JobRegistry
from services.migration.orchestrator import MigrationOrchestrator
from services.migration.providers.base import BaseResourceClient, Page
from services.migration.service import MigrationService

EXPORT_ENTITY = "https://alice.example.com"
IMPORT_ENTITY = "https://alice.newhost.example"


# ===========================================
# Settings / Database Fixtures
# ===========================================

@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        ENCRYPTION_KEY=Fernet.generate_key().decode(),
        MIGRATION_WORKERS_ENABLED=False,
        MIGRATION_BACKOFF_BASE=0.0,
        MIGRATION_BACKOFF_MAX=0.0,
        MIGRATION_PAGE_SIZE=2,
        MIGRATION_QUEUE_POLL_INTERVAL=0.01,
    )


@pytest_asyncio.fixture(scope="function")
async def engine(test_settings):
    """
    Fresh in-memory database for each test.
    """
    engine = create_engine(test_settings.DATABASE_URL)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def registry(session_factory) -> JobRegistry:
    return JobRegistry(session_factory)


@pytest.fixture
def credential_store(session_factory, test_settings) -> CredentialStore:
    return CredentialStore(session_factory, test_settings.ENCRYPTION_KEY)


@pytest.fixture
def job_queue(session_factory) -> JobQueue:
    return JobQueue(session_factory, lease_seconds=60)


# ===========================================
# Fake Tent servers
# ===========================================

class FakeTent:
    """
    In-memory export and import entities.

    ``export_items`` holds what the export side lists per category, ``created``
    records every body the import side accepted. ``on_list`` and ``on_create``
    may raise (or be coroutines that raise) to simulate remote failures.
    """

    def __init__(self, page_size: int = 2):
        self.page_size = page_size
        self.export_items: Dict[str, List[Any]] = {}
        self.created: Dict[str, List[Dict[str, Any]]] = {}
        self.idempotency_keys: List[Optional[str]] = []
        self.list_calls: List[tuple] = []
        self.create_calls = 0
        self.on_create: Optional[Callable[[str, Dict[str, Any]], None]] = None
        self.on_list: Optional[Callable[[str, Optional[str]], None]] = None
        self.closed = 0

    @property
    def remote_calls(self) -> int:
        return len(self.list_calls) + self.create_calls

    def client_factory(self, credential: Credential, category: str) -> BaseResourceClient:
        return FakeResourceClient(self, credential, category)


class FakeResourceClient(BaseResourceClient):

    def __init__(self, tent: FakeTent, credential: Credential, category: str):
        self.tent = tent
        self.credential = credential
        self.category = category

    async def list_page(self, cursor: Optional[str] = None) -> Page:
        self.tent.list_calls.append((self.category, cursor))
        if self.tent.on_list:
            result = self.tent.on_list(self.category, cursor)
            if inspect.isawaitable(result):
                await result

        items = self.tent.export_items.get(self.category, [])
        start = 0
        if cursor is not None:
            ids = [item.get("id") if isinstance(item, dict) else None for item in items]
            start = ids.index(cursor) + 1
        page = items[start:start + self.tent.page_size]
        more = start + self.tent.page_size < len(items)
        return Page(items=page, next_cursor=page[-1]["id"] if more and page else None)

    async def create(self, item: Dict[str, Any], idempotency_key: Optional[str] = None) -> str:
        self.tent.create_calls += 1
        if self.tent.on_create:
            result = self.tent.on_create(self.category, item)
            if inspect.isawaitable(result):
                await result
        created = self.tent.created.setdefault(self.category, [])
        created.append(item)
        self.tent.idempotency_keys.append(idempotency_key)
        return f"new-{len(created)}"

    async def close(self):
        self.tent.closed += 1


@pytest.fixture
def fake_tent() -> FakeTent:
    return FakeTent()


async def _no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def orchestrator(registry, credential_store, test_settings, fake_tent) -> MigrationOrchestrator:
    return MigrationOrchestrator.from_settings(
        registry,
        credential_store,
        test_settings,
        client_factory=fake_tent.client_factory,
        sleep=_no_sleep,
    )


@pytest_asyncio.fixture
async def job_key(registry, credential_store) -> str:
    """
    Job with both credentials attached, still pending.
    """
    key = await registry.create_job()
    export_ref = await credential_store.create("export", EXPORT_ENTITY, "export-key-id", "export-secret")
    import_ref = await credential_store.create("import", IMPORT_ENTITY, "import-key-id", "import-secret")
    await registry.attach_export_credential(key, export_ref)
    await registry.attach_import_credential(key, import_ref)
    return key


# ===========================================
# Service / API Fixtures
# ===========================================

@pytest_asyncio.fixture
async def migration_service(test_settings, fake_tent) -> AsyncGenerator[MigrationService, None]:
    service = MigrationService(test_settings, client_factory=fake_tent.client_factory)
    service.orchestrator._sleep = _no_sleep
    await service.startup()
    yield service
    await service.shutdown()


@pytest_asyncio.fixture(scope="function")
async def client(migration_service: MigrationService) -> AsyncGenerator[AsyncClient, None]:
    """
    Test client bound to an app using the test migration service.
    """
    from main import create_app

    app = create_app(migration_service)
    # ASGITransport does not run the lifespan
    app.state.migration_service = migration_service

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client


# ===========================================
# Factory Fixtures
# ===========================================

@pytest.fixture
def make_post():
    """
    Factory fixture to create export post data.
    """
    def _make_post(post_id: str, text: str = None, entity: str = EXPORT_ENTITY, **extra) -> dict:
        post = {
            "id": post_id,
            "entity": entity,
            "type": "https://tent.io/types/post/status/v0.1.0",
            "content": {"text": text or post_id},
            "published_at": 1357000000,
            "received_at": 1357000001,
            "version": 1,
            "app": {"name": "Example", "url": "https://app.example.com"},
            "permissions": {"public": True},
        }
        post.update(extra)
        return post

    return _make_post
