"""Shared test fixtures and configuration for backend tests."""
import pytest
from fastapi.testclient import TestClient

from chunk_relay.activity import ActivityLog
from chunk_relay.config import AppSettings, ServerSettings, StorageSettings
from chunk_relay.main import create_app
from chunk_relay.storage import ChunkStore
from chunk_relay.transfer import TransferEngine


@pytest.fixture
def settings(tmp_path) -> AppSettings:
    """Settings with every directory under the test's tmp_path."""
    return AppSettings(
        server=ServerSettings(static_dir=str(tmp_path / "public")),
        storage=StorageSettings(
            temp_dir=str(tmp_path / "temp"),
            upload_dir=str(tmp_path / "uploads"),
            log_dir=str(tmp_path / "logs"),
        ),
    )


@pytest.fixture
def api_client(settings):
    """Provide a TestClient with the lifespan (and so the engine) running."""
    app = create_app(settings)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def chunk_store(tmp_path) -> ChunkStore:
    return ChunkStore(tmp_path / "temp")


@pytest.fixture
def activity_log(tmp_path) -> ActivityLog:
    return ActivityLog(tmp_path / "logs")


@pytest.fixture
def engine(chunk_store, activity_log) -> TransferEngine:
    return TransferEngine(chunk_store, activity=activity_log, cleanup_delay_seconds=3600.0)
