import pytest
from fastapi.testclient import TestClient

from voice_gateway.core.config import settings
from voice_gateway.main import app as fastapi_app


@pytest.fixture(autouse=True)
def no_upstream_credential(monkeypatch):
    """Keep tests off the network: without a key the relay never dials out."""
    monkeypatch.setattr(settings, "OPENAI_API_KEY", "")


@pytest.fixture
def client():
    """TestClient with the lifespan running (registry on app.state)."""
    with TestClient(fastapi_app) as test_client:
        yield test_client


@pytest.fixture
def registry(client):
    return client.app.state.registry
