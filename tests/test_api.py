"""
/sync router through FastAPI's TestClient with the controller swapped for
one backed by the in-memory store and a fake Shopify.
"""
import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.services.connection_sync import get_sync_controller
from app.sync.types import SyncStatus

from tests.test_connection_sync import FakeShopify, _controller, gid_order


@pytest.fixture
def vendor():
    return FakeShopify(
        recent_orders=[1, 2],
        bulk_lines={"orders": [gid_order(i) for i in (1, 2, 3)]},
    )


@pytest.fixture
def client(store, vendor, settings):
    controller = _controller(store, vendor, settings)
    app.dependency_overrides[get_sync_controller] = lambda: controller
    yield TestClient(app)
    app.dependency_overrides.clear()


def _create(client, platform="shopify"):
    return client.post("/sync/connections", json={
        "platform": platform,
        "account_ref": "test-store.myshopify.com",
        "credential_handle": "shpat_test",
    })


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_create_and_sync_connection(client, store):
    created = _create(client)
    assert created.status_code == 201
    connection_id = created.json()["connection_id"]

    started = client.post(f"/sync/connections/{connection_id}/start")
    assert started.status_code == 202
    assert started.json()["quick_sync"]["inserted"] == 2

    # Background tasks run before TestClient returns the response
    status = client.get(f"/sync/connections/{connection_id}/status").json()
    assert status["status"] == "COMPLETED"
    assert len(status["jobs"]) == 3

    jobs = client.get(f"/sync/connections/{connection_id}/jobs").json()
    assert jobs["total"] == 3


def test_unsupported_platform(client):
    assert _create(client, platform="tiktok").status_code == 400


def test_start_unknown_connection(client):
    assert client.post("/sync/connections/999/start").status_code == 404
    assert client.get("/sync/connections/999/status").status_code == 404


def test_start_while_active_conflicts(client, store):
    connection_id = _create(client).json()["connection_id"]
    connection = store.get_connection(connection_id)
    connection.sync_status = SyncStatus.BULK_IMPORTING
    store.save_connection(connection)

    assert client.post(f"/sync/connections/{connection_id}/start").status_code == 409


def test_permanent_quick_sync_failure_is_bad_gateway(client, vendor, store):
    vendor.orders_error = (403, {"errors": "[API] This action requires merchant approval"})
    connection_id = _create(client).json()["connection_id"]

    response = client.post(f"/sync/connections/{connection_id}/start")

    assert response.status_code == 502
    assert response.json()["detail"]["upstream_status"] == 403
    assert store.get_connection(connection_id).sync_status == SyncStatus.FAILED


def test_root_lists_only_mounted_routes(client):
    endpoints = client.get("/").json()["endpoints"]
    mounted = {
        (method, route.path)
        for route in app.routes
        for method in getattr(route, "methods", None) or ()
    }

    for name, endpoint in endpoints.items():
        method, path = endpoint.split(" ", 1)
        assert (method, path.replace("{id}", "{connection_id}")) in mounted, name


def test_refresh_is_accepted(client):
    response = client.post("/sync/refresh")

    assert response.status_code == 202
