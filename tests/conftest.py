# tests/conftest.py

from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from taskflow.app.adapters.backend_local import LocalBackend
from taskflow.app.adapters.storage_local import LocalStorageService
from taskflow.app.config import Settings
from taskflow.app.views.registry import ControllerRegistry, set_registry

from .fakes import FakeBackend, make_session


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        backend="local",
        task_scope="shared",
        backend_timeout_seconds=1.0,
        upload_key_strategy="timestamp",
        _env_file=None,
    )


@pytest.fixture()
def backend() -> FakeBackend:
    """Fake backend with a signed-in user."""
    return FakeBackend(session=make_session())


@pytest.fixture()
def local_backend_factory(tmp_path: Path):
    database_url = f"sqlite:///{tmp_path / 'taskflow.sqlite3'}"
    storage_root = tmp_path / "storage"

    def factory() -> LocalBackend:
        return LocalBackend(
            storage=LocalStorageService(root_dir=str(storage_root)),
            database_url=database_url,
            secret="test-secret",
        )

    factory.storage_root = storage_root
    return factory


@pytest.fixture()
def client(local_backend_factory, monkeypatch, tmp_path: Path):
    """TestClient wired to a fresh local backend per test."""
    from taskflow.app.config import get_settings

    monkeypatch.setattr(get_settings(), "local_storage_root", str(local_backend_factory.storage_root))
    set_registry(ControllerRegistry(backend_factory=local_backend_factory))
    from taskflow.app.main import app

    with TestClient(app) as test_client:
        yield test_client
    set_registry(ControllerRegistry())
