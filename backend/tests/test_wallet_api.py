"""
Tests for wallet connect / disconnect / refresh.
"""
import httpx
import pytest

pytestmark = pytest.mark.unit

from mock_helpers import WALLET, add_session, rpc_balance_body
from models import Tier


def test_connect_caches_balance_and_tier(client, storage, rpc):
    rpc.respond(json_body=rpc_balance_body(320_000))

    response = client.post("/api/wallet/connect", json={"wallet_address": WALLET})

    assert response.status_code == 200
    assert response.json() == {
        "wallet_address": WALLET,
        "token_balance": 320_000,
        "tier": "Gold",
        "degraded": False,
    }
    session = next(iter(storage.sessions.values()))
    assert session.tier == Tier.GOLD
    assert session.wallet_address == WALLET

    # New tier applies to the next quota check
    assert client.get("/api/session").json()["message_limit"]["limit"] == 50


def test_connect_rejects_malformed_address(client, rpc):
    response = client.post("/api/wallet/connect", json={"wallet_address": "0xdeadbeef"})

    assert response.status_code == 422
    assert rpc.call_count == 0


def test_connect_during_rpc_outage_is_free_trial(client, rpc):
    rpc.fail_with(httpx.ConnectTimeout)

    response = client.post("/api/wallet/connect", json={"wallet_address": WALLET})

    assert response.status_code == 200
    assert response.json()["tier"] == "Free Trial"
    assert response.json()["degraded"] is True


def test_disconnect_resets_to_free_trial(client, storage):
    session = add_session(storage, wallet_address=WALLET, token_balance=250_000, tier=Tier.PRO)
    client.cookies.set("au_session", session.cookie_token)

    response = client.post("/api/wallet/disconnect")

    assert response.status_code == 200
    assert response.json()["wallet_address"] is None
    assert response.json()["tier"] == "Free Trial"
    assert storage.sessions[session.id].token_balance == 0


def test_refresh_updates_tier(client, storage, rpc):
    session = add_session(storage, wallet_address=WALLET, token_balance=0, tier=Tier.FREE_TRIAL)
    client.cookies.set("au_session", session.cookie_token)
    rpc.respond(json_body=rpc_balance_body(120_000))

    response = client.post("/api/wallet/refresh")

    assert response.status_code == 200
    assert response.json()["tier"] == "Electrum"
    assert storage.sessions[session.id].tier == Tier.ELECTRUM


def test_refresh_keeps_cached_tier_when_degraded(client, storage, rpc):
    session = add_session(storage, wallet_address=WALLET, token_balance=250_000, tier=Tier.PRO)
    client.cookies.set("au_session", session.cookie_token)
    rpc.fail_with(httpx.ReadTimeout)

    response = client.post("/api/wallet/refresh")

    assert response.status_code == 200
    assert response.json()["tier"] == "Pro"
    assert response.json()["token_balance"] == 250_000
    assert response.json()["degraded"] is True
    assert storage.sessions[session.id].tier == Tier.PRO


def test_refresh_without_wallet_is_400(client):
    response = client.post("/api/wallet/refresh")

    assert response.status_code == 400
    assert response.json()["detail"] == "No wallet connected"
