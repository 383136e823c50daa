"""Test configuration for server test suite."""

import os

import httpx
import pytest

# The sidecar URL is startup-fatal when missing, so provide one before any
# application module builds its settings.
os.environ.setdefault("SidecarUrl", "http://sidecar.test")


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def sidecar_requests():
    """Requests captured by the fake sidecar transport."""
    return []


@pytest.fixture
def sidecar_handler(sidecar_requests):
    """Default fake sidecar: ready, and issues a ticket for any SPN."""

    def _handler(request: httpx.Request) -> httpx.Response:
        sidecar_requests.append(request)
        if request.url.path == "/health/ready":
            return httpx.Response(200, text="Healthy")
        if request.url.path == "/ticket":
            return httpx.Response(200, text=f"ticket-for:{request.url.params.get('spn')}")
        return httpx.Response(404, text="unknown sidecar route")

    return _handler


@pytest.fixture
def client(sidecar_handler):
    """TestClient with the sidecar replaced by an in-memory transport."""

    from fastapi.testclient import TestClient

    from app.api import routes
    from app.main import app
    from app.services.sidecar_client import SidecarClient

    fake_sidecar = SidecarClient(
        "http://sidecar.test", transport=httpx.MockTransport(sidecar_handler)
    )
    app.dependency_overrides[routes.get_sidecar_client] = lambda: fake_sidecar

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
