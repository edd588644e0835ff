# tests/v1/test_faucet_api.py
"""HTTP tests for the faucet endpoints."""

from __future__ import annotations

from decimal import Decimal
from typing import Any

import pytest
from fastapi.testclient import TestClient

from starknet_faucet.api.v1.dependencies import get_settings_dep
from starknet_faucet.core.pow import solution_satisfies, solve_challenge
from starknet_faucet.services.chain import to_base_units

from conftest import FAUCET_ADDRESS, make_settings

RECIPIENT = "0x0123abc"


def _challenge(client: TestClient, headers: dict[str, str] | None = None) -> dict[str, Any]:
    response = client.post("/api/v1/challenge", headers=headers)
    assert response.status_code == 200, response.text
    return response.json()


def _solved_body(
    client: TestClient, token: str = "STRK", headers: dict[str, str] | None = None
) -> dict[str, Any]:
    challenge = _challenge(client, headers)
    return {
        "address": RECIPIENT,
        "token": token,
        "challenge_id": challenge["challenge_id"],
        "nonce": solve_challenge(challenge["challenge"], challenge["difficulty"]),
    }


def test_issue_challenge(client: TestClient):
    body = _challenge(client)
    assert len(body["challenge_id"]) == 32
    assert len(body["challenge"]) == 64
    assert body["difficulty"] == 2
    assert body["expires_in"] == 300


def test_challenge_issuance_is_rate_limited(client: TestClient):
    for _ in range(8):
        _challenge(client)

    response = client.post("/api/v1/challenge")

    assert response.status_code == 429
    detail = response.json()["detail"]
    assert detail["gate"] == "challenge_issuance"
    assert detail["retry_at"].endswith("+00:00")


def test_request_single_token(client: TestClient, chain):
    response = client.post("/api/v1/request", json=_solved_body(client, "strk"))

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "Tokens sent successfully"
    assert body["token"] == "STRK"
    assert body["amount"] == "100"
    assert body["tx_hash"].startswith("0x")
    assert body["explorer_url"] == f"https://sepolia.voyager.online/tx/{body['tx_hash']}"
    assert "transactions" not in body
    assert len(chain.transfers) == 1


def test_faucet_alias_route(client: TestClient):
    response = client.post("/api/v1/faucet", json=_solved_body(client, "ETH"))
    assert response.status_code == 200, response.text
    assert response.json()["amount"] == "0.02"


def test_request_both_tokens(client: TestClient):
    response = client.post("/api/v1/request", json=_solved_body(client, "BOTH"))

    assert response.status_code == 200, response.text
    body = response.json()
    assert [tx["token"] for tx in body["transactions"]] == ["STRK", "ETH"]
    assert "tx_hash" not in body


def test_request_both_partial_success(client: TestClient, chain):
    chain.balances["ETH"] = to_base_units(Decimal("0.02"))

    response = client.post("/api/v1/request", json=_solved_body(client, "BOTH"))

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["success"] is True
    assert body["message"].startswith("Partially completed")
    assert [tx["token"] for tx in body["transactions"]] == ["STRK"]

    quota = client.get("/api/v1/quota").json()
    assert quota["daily_limit"]["used"] == 1
    assert quota["hourly_throttle"]["eth"]["available"] is True
    assert quota["hourly_throttle"]["strk"]["available"] is False


@pytest.mark.parametrize(
    ("overrides", "gate"),
    [
        ({"address": "not-an-address"}, "address"),
        ({"token": "DOGE"}, "token"),
        ({"challenge_id": "unknown"}, "challenge"),
    ],
)
def test_request_client_errors(client: TestClient, chain, overrides, gate):
    body = _solved_body(client)
    body.update(overrides)

    response = client.post("/api/v1/request", json=body)

    assert response.status_code == 400
    assert response.json()["detail"]["gate"] == gate
    assert chain.transfers == []


def test_request_bad_proof(client: TestClient):
    challenge = _challenge(client)
    nonce = 0
    while solution_satisfies(challenge["challenge"], nonce, challenge["difficulty"]):
        nonce += 1

    response = client.post(
        "/api/v1/request",
        json={
            "address": RECIPIENT,
            "token": "STRK",
            "challenge_id": challenge["challenge_id"],
            "nonce": nonce,
        },
    )

    assert response.status_code == 400
    assert response.json()["detail"] == {
        "error": "Invalid proof of work solution",
        "gate": "proof_of_work",
    }


def test_request_expired_challenge(client: TestClient, clock):
    body = _solved_body(client)
    clock.advance(301)

    response = client.post("/api/v1/request", json=body)

    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "Invalid or expired challenge"


def test_malformed_body_is_bad_request(client: TestClient):
    response = client.post("/api/v1/request", json={"address": RECIPIENT, "nonce": -1})

    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["gate"] == "validation"
    assert detail["errors"]


def test_replayed_challenge_rejected(client: TestClient):
    body = _solved_body(client, "STRK")
    assert client.post("/api/v1/request", json=body).status_code == 200

    body["token"] = "ETH"
    response = client.post("/api/v1/request", json=body)

    assert response.status_code == 400
    assert response.json()["detail"]["gate"] == "challenge"


def test_token_throttle(client: TestClient, clock):
    assert client.post("/api/v1/request", json=_solved_body(client, "STRK")).status_code == 200
    clock.advance(30 * 60)

    response = client.post("/api/v1/request", json=_solved_body(client, "STRK"))

    assert response.status_code == 429
    detail = response.json()["detail"]
    assert detail["gate"] == "token_throttle"
    assert detail["remaining_minutes"] == 30

    assert client.post("/api/v1/request", json=_solved_body(client, "ETH")).status_code == 200


def test_daily_limit_cooldown(client: TestClient, clock):
    for _ in range(5):
        assert client.post("/api/v1/request", json=_solved_body(client, "STRK")).status_code == 200
        clock.advance(3601)

    response = client.post("/api/v1/request", json=_solved_body(client, "ETH"))

    assert response.status_code == 429
    detail = response.json()["detail"]
    assert detail["gate"] == "daily_limit"
    assert detail["cooldown_end"] is not None
    assert detail["quota_total"] == 5

    clock.advance(60)
    retry = client.post("/api/v1/request", json=_solved_body(client, "ETH"))

    assert retry.status_code == 429
    assert retry.json()["detail"]["gate"] == "daily_limit"
    assert retry.json()["detail"]["cooldown_end"] == detail["cooldown_end"]


def test_reserve_protection_is_service_unavailable(client: TestClient, chain):
    chain.balances["STRK"] = to_base_units(Decimal("105"))

    response = client.post("/api/v1/request", json=_solved_body(client, "STRK"))

    assert response.status_code == 503
    assert response.json()["detail"]["gate"] == "reserve_protection"


def test_distribution_cap_is_service_unavailable(app, client: TestClient, clock):
    capped = make_settings(MAX_TOKENS_PER_DAY_STRK=150)
    app.dependency_overrides[get_settings_dep] = lambda: capped

    assert client.post("/api/v1/request", json=_solved_body(client, "STRK")).status_code == 200
    clock.advance(3601)

    response = client.post("/api/v1/request", json=_solved_body(client, "STRK"))

    assert response.status_code == 503
    assert response.json()["detail"]["gate"] == "distribution_cap"


def test_forwarded_ip_only_trusted_when_configured(app, client: TestClient):
    proxied = {"X-Forwarded-For": "2.2.2.2, 10.0.0.1"}
    assert client.post("/api/v1/request", json=_solved_body(client, "STRK")).status_code == 200

    # Without trusting the proxy the header is ignored and the throttle applies.
    response = client.post(
        "/api/v1/request", json=_solved_body(client, "STRK", proxied), headers=proxied
    )
    assert response.status_code == 429

    trusting = make_settings(TRUST_PROXY_HEADERS=True)
    app.dependency_overrides[get_settings_dep] = lambda: trusting
    response = client.post(
        "/api/v1/request", json=_solved_body(client, "STRK", proxied), headers=proxied
    )
    assert response.status_code == 200, response.text


def test_transfer_failure(client: TestClient, chain):
    chain.fail_transfer.add("ETH")

    response = client.post("/api/v1/request", json=_solved_body(client, "ETH"))

    assert response.status_code == 500
    assert response.json()["detail"]["gate"] == "transfer"
    assert client.get("/api/v1/quota").json()["daily_limit"]["used"] == 0


def test_status_endpoint(client: TestClient):
    response = client.get("/api/v1/status/0xABC")

    assert response.status_code == 200
    body = response.json()
    assert body["address"] == "0x" + "0" * 61 + "abc"
    assert body["can_request"] is True
    assert body["daily_limit"] == {"total": 5, "used": 0, "remaining": 5, "cooldown_end": None}


def test_status_invalid_address(client: TestClient):
    response = client.get("/api/v1/status/xyz")
    assert response.status_code == 400
    assert response.json()["detail"]["gate"] == "address"


def test_quota_after_request(client: TestClient, clock):
    assert client.post("/api/v1/request", json=_solved_body(client, "STRK")).status_code == 200

    body = client.get("/api/v1/quota").json()

    assert body["daily_limit"]["used"] == 1
    assert body["daily_limit"]["remaining"] == 4
    assert body["hourly_throttle"]["strk"]["available"] is False
    assert body["hourly_throttle"]["strk"]["next_request_at"] is not None
    assert body["hourly_throttle"]["eth"] == {"available": True, "next_request_at": None}


def test_info_reports_limits_and_balances(client: TestClient, chain):
    body = client.get("/api/v1/info").json()

    assert body["network"] == "sepolia"
    assert body["limits"]["strk_per_request"] == "100"
    assert body["limits"]["daily_requests_per_ip"] == 5
    assert body["limits"]["token_throttle_hours"] == 1
    assert body["pow"] == {"enabled": True, "difficulty": 2, "challenge_ttl_seconds": 300}
    assert body["distribution"]["min_balance_protect_pct"] == 20
    assert body["faucet_balance"] == {"strk": "10000.00", "eth": "10.0000"}


def test_info_tolerates_balance_failure(client: TestClient, chain):
    chain.fail_balance.add("ETH")

    body = client.get("/api/v1/info").json()

    assert body["faucet_balance"] == {"strk": "10000.00", "eth": None}


def test_info_reads_configured_faucet_address(client: TestClient, chain):
    client.get("/api/v1/info")
    assert chain.balance_reads == [(FAUCET_ADDRESS, "STRK"), (FAUCET_ADDRESS, "ETH")]
