"""Shared fixtures: temporary database, stub collaborators and a wired manager."""

from collections.abc import AsyncIterator
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import pytest_asyncio

from invoicehub.extraction.simulated_provider import SimulatedExtractionProvider
from invoicehub.lifecycle.manager import InvoiceLifecycleManager
from invoicehub.repository.database import Database
from invoicehub.repository.invoices import InvoiceRepository
from invoicehub.repository.templates import TemplateRepository
from invoicehub.shared.config import Settings
from invoicehub.shared.session import UserSession
from invoicehub.storage.service import StorageResult, StorageService

from fakes import RecordingExporter


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings pointing at a throwaway SQLite file with no artificial delays."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'invoices.db'}",
        storage_access_key="test-access-key",
        storage_secret_key="test-secret-key",
        extraction_provider="simulated",
        extraction_simulated_delay_seconds=0,
        extraction_simulated_seed=42,
        export_simulated_delay_seconds=0,
        auth_jwt_secret="test-jwt-secret",
    )


@pytest_asyncio.fixture
async def database(settings: Settings) -> AsyncIterator[Database]:
    db = Database(settings)
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def invoice_repo(database: Database, settings: Settings) -> InvoiceRepository:
    return InvoiceRepository(database, settings.field_write_concurrency)


@pytest.fixture
def template_repo(database: Database) -> TemplateRepository:
    return TemplateRepository(database)


@pytest.fixture
def fake_storage() -> MagicMock:
    """Storage gateway double where every object exists."""
    storage = MagicMock(spec=StorageService)
    storage.upload_document.side_effect = lambda data, name, content_type, on_progress=None: (
        StorageResult(success=True, object_name=name, bucket="invoices", size=len(data))
    )
    storage.exists.return_value = True
    storage.get_public_url.side_effect = lambda name: f"https://storage.example.com/invoices/{name}"
    storage.delete_object.side_effect = lambda name: StorageResult(success=True, object_name=name)
    storage.health_check.return_value = True
    return storage


@pytest.fixture
def exporter(settings: Settings) -> RecordingExporter:
    return RecordingExporter(settings)


@pytest.fixture
def manager(
    settings: Settings,
    fake_storage: MagicMock,
    invoice_repo: InvoiceRepository,
    template_repo: TemplateRepository,
    exporter: RecordingExporter,
) -> InvoiceLifecycleManager:
    return InvoiceLifecycleManager(
        settings=settings,
        storage=fake_storage,
        extraction=SimulatedExtractionProvider(settings),
        invoices=invoice_repo,
        templates=template_repo,
        exporter=exporter,
    )


@pytest.fixture
def user() -> UserSession:
    return UserSession(user_id="user-1", email="user1@example.com")


@pytest.fixture
def other_user() -> UserSession:
    return UserSession(user_id="user-2")
