"""Shared test fixtures and configuration for backend tests."""
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from filehost.chat.manager import manager
from filehost.config import AppConfig, reset_config, set_config
from filehost.files.service import reset_filehost
from filehost.main import app

TEST_SECRET = "test-signing-secret"
PUBLIC_URL = "https://host/files"


@pytest.fixture
def configure(tmp_path):
    """Install a configuration snapshot rooted in a temporary directory.

    Call with keyword overrides for the ``filehost`` settings section.
    """
    def _configure(**filehost_overrides) -> AppConfig:
        settings = {
            "storage_path": str(tmp_path / "uploads"),
            "mount_path": "/files",
            "hostname": "host",
            "ssl": True,
            "authenticate": True,
            "require_tls": False,
        }
        settings.update(filehost_overrides)
        config = AppConfig(
            filehost=settings,
            secrets={"tokens": {"secret_key": TEST_SECRET}},
        )
        set_config(config)
        return config

    return _configure


@pytest.fixture(autouse=True)
def default_config(configure):
    """Every test starts from the default test configuration."""
    config = configure()
    yield config
    reset_config()
    reset_filehost()


@pytest.fixture
def storage_dir(default_config):
    path = Path(default_config.filehost.storage_path)
    path.mkdir(parents=True, exist_ok=True)
    return path


@pytest.fixture(autouse=True)
def cleanup_rooms():
    """Clean up rooms after each test to avoid interference."""
    yield
    for room_id in set(manager.active_connections) | set(manager.message_history):
        manager.clear_room(room_id)
    manager.sessions.clear()


@pytest.fixture
def api_client():
    """Provide a TestClient for the main FastAPI app."""
    return TestClient(app)
