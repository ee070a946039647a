"""Tests for the registration HTTP endpoint."""

import pytest
from fastapi.testclient import TestClient

from conftest import MockDNSProvider, wait_for
from peerscanner.api import create_app
from peerscanner.hosts import HostState


@pytest.fixture
def registry(make_registry):
    return make_registry(probe_interval=60)


@pytest.fixture
def client(registry) -> TestClient:
    return TestClient(create_app(registry))


# =============================================================================
# /register
# =============================================================================


def test_register_creates_host(client: TestClient, registry) -> None:
    response = client.post("/register", params={"name": "peer-xyz", "ip": "5.5.5.5"})

    assert response.status_code == 200
    assert response.json()["name"] == "peer-xyz"
    assert response.json()["ip"] == "5.5.5.5"
    assert registry.get("peer-xyz", "5.5.5.5") is not None


def test_register_twice_resets_same_host(client: TestClient, registry) -> None:
    client.post("/register", params={"name": "peer-xyz", "ip": "5.5.5.5"})
    host = registry.get("peer-xyz", "5.5.5.5")

    response = client.get("/register", params={"name": "peer-xyz", "ip": "5.5.5.5"})

    assert response.status_code == 200
    assert registry.get("peer-xyz", "5.5.5.5") is host
    assert host.generation == 1
    assert len(registry) == 1


def test_register_uses_forwarded_for_when_ip_missing(client: TestClient, registry) -> None:
    response = client.post(
        "/register",
        params={"name": "fl-a"},
        headers={"X-Forwarded-For": "7.7.7.7, 10.0.0.1"},
    )

    assert response.status_code == 200
    assert response.json()["ip"] == "7.7.7.7"
    assert registry.get("fl-a", "7.7.7.7") is not None


def test_register_rejects_invalid_ip(client: TestClient, registry) -> None:
    response = client.post("/register", params={"name": "peer-xyz", "ip": "not-an-ip"})

    assert response.status_code == 400
    assert len(registry) == 0


@pytest.mark.parametrize("name", ["atest_apeers", "www", "atest_roundrobin"])
def test_register_rejects_names_that_are_not_hosts(client: TestClient, registry, name) -> None:
    response = client.post("/register", params={"name": name, "ip": "5.5.5.5"})

    assert response.status_code == 400
    assert len(registry) == 0


def test_register_requires_name(client: TestClient) -> None:
    response = client.post("/register", params={"ip": "5.5.5.5"})

    assert response.status_code == 422


# =============================================================================
# /unregister
# =============================================================================


def test_unregister_removes_host_and_records(
    client: TestClient, registry, dns: MockDNSProvider
) -> None:
    client.post("/register", params={"name": "peer-xyz", "ip": "5.5.5.5"})
    host = registry.get("peer-xyz", "5.5.5.5")
    assert wait_for(lambda: host.state is HostState.ACTIVE)

    response = client.post("/unregister", params={"name": "peer-xyz", "ip": "5.5.5.5"})
    host.join(1.0)

    assert response.status_code == 200
    assert response.json()["state"] == "removed"
    assert registry.get("peer-xyz", "5.5.5.5") is None
    assert dns.values_for("peer-xyz") == []


def test_unregister_unknown_host_is_404(client: TestClient) -> None:
    response = client.post("/unregister", params={"name": "peer-xyz", "ip": "5.5.5.5"})

    assert response.status_code == 404


# =============================================================================
# /healthz
# =============================================================================


def test_healthz_reports_host_count(client: TestClient) -> None:
    client.post("/register", params={"name": "peer-a", "ip": "1.1.1.1"})
    client.post("/register", params={"name": "peer-b", "ip": "2.2.2.2"})

    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "hosts": 2}
