# tests/test_health.py
from typing import Any

from fastapi.testclient import TestClient

from starknet_faucet.services.store import QuotaStoreError


def test_root_responds(client: Any) -> None:
    """Verify that the root endpoint describes the service."""
    r = client.get("/")
    assert r.status_code == 200
    assert r.json()["network"] == "sepolia"


def test_health_ok(client: Any, clock: Any) -> None:
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "timestamp": int(clock())}


def test_health_reports_store_outage(client: Any, store: Any, mocker: Any) -> None:
    mocker.patch.object(store, "ping", side_effect=QuotaStoreError("connection refused"))
    r = client.get("/health")
    assert r.status_code == 503
    assert r.json()["detail"] == {"error": "Quota store unavailable"}


def test_shutdown_closes_connections(app: Any, mocker: Any) -> None:
    chain_factory = mocker.patch("starknet_faucet.main.get_chain_client")
    store_factory = mocker.patch("starknet_faucet.main.get_quota_store")
    chain_factory.return_value.close = mocker.AsyncMock()
    store_factory.return_value.close = mocker.AsyncMock()

    with TestClient(app):
        pass

    chain_factory.return_value.close.assert_awaited_once()
    store_factory.return_value.close.assert_awaited_once()
