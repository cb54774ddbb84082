"""
Pytest configuration and shared fixtures.

Every test gets its own SQLite file under tmp_path, so tests never share
state and store work can run on several threads.
"""

import pytest
from fastapi.testclient import TestClient

from crm_bridge.config import Settings, get_settings
from crm_bridge.main import create_app
from crm_bridge.storage import create_db_engine, create_session_factory, init_db

# Clear settings cache so a developer's .env never leaks into tests
get_settings.cache_clear()

TEST_WEBHOOK_SECRET = "test-webhook-secret"


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'crm_bridge_test.db'}"


@pytest.fixture
def make_settings(database_url):
    """Build Settings isolated from the environment; keyword overrides win."""
    def _make(**overrides) -> Settings:
        values = {
            "DATABASE_URL": database_url,
            "WEBHOOK_SECRET": TEST_WEBHOOK_SECRET,
            "QUEUE_BACKEND": "none",
            "INGEST_MODE": "sync",
            "QUEUE_POLL_TIMEOUT": 0.05,
            "QUEUE_RETRY_BASE_DELAY": 0.0,
            "LOG_LEVEL": "WARNING",
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)
    return _make


@pytest.fixture
def settings(make_settings) -> Settings:
    return make_settings()


@pytest.fixture(scope="function")
def client(settings):
    """Test client with a fresh database, signatures enforced, no queue."""
    with TestClient(create_app(settings)) as test_client:
        yield test_client


@pytest.fixture
def session_factory(database_url):
    """Session factory on a fresh schema, for tests below the HTTP layer."""
    engine = create_db_engine(database_url, timeout=10.0)
    init_db(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def message_item():
    """Build one MESSAGES_UPSERT item in the gateway's shape."""
    def _make(
        message_id: str = "M1",
        jid: str = "5511999999999@s.whatsapp.net",
        push_name: str = "Ana",
        message: dict = None,
        from_me: bool = False,
        timestamp: int = 1700000000,
        participant: str = None,
    ) -> dict:
        key = {"remoteJid": jid, "fromMe": from_me, "id": message_id}
        if participant:
            key["participant"] = participant
        return {
            "key": key,
            "pushName": push_name,
            "messageTimestamp": timestamp,
            "message": message if message is not None else {"conversation": "hi"},
        }
    return _make
