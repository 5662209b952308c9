"""Shared fixtures for the webhook tests"""
import pytest
from fastapi.testclient import TestClient

from core.config import settings
from mocks import USER_EMAIL, USER_ID, WEBHOOK_SECRET, StubLedgerStore, StubUserDirectory, make_services


@pytest.fixture
def store():
    return StubLedgerStore()


@pytest.fixture
def directory():
    return StubUserDirectory({USER_EMAIL: USER_ID})


@pytest.fixture
def services(store, directory):
    return make_services(store, directory)


@pytest.fixture
def unsigned(monkeypatch):
    """Signature checks off: no secret, lenient mode"""
    monkeypatch.setattr(settings, "DODO_WEBHOOK_SECRET", None)
    monkeypatch.setattr(settings, "DODO_WEBHOOK_STRICT_VERIFY", False)


@pytest.fixture
def signed(monkeypatch):
    monkeypatch.setattr(settings, "DODO_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "DODO_WEBHOOK_STRICT_VERIFY", True)


@pytest.fixture
def client(services, monkeypatch):
    monkeypatch.setattr(settings, "EXPIRY_SWEEP_ENABLED", False)

    from main import app
    from routers import dodo_router

    app.dependency_overrides[dodo_router.get_webhook_services] = lambda: services
    try:
        yield TestClient(app, raise_server_exceptions=False)
    finally:
        app.dependency_overrides.clear()
