import pytest

pytestmark = pytest.mark.unit

from mock_helpers import add_admin, add_session
from models import Tier


def test_session_status_for_new_caller(client, storage):
    response = client.get("/api/session")

    assert response.status_code == 200
    data = response.json()
    assert data["tier"] == "Free Trial"
    assert data["token_balance"] == 0
    assert data["wallet_address"] is None
    assert data["message_limit"]["remaining"] == 5
    assert data["message_limit"]["limit"] == 5
    assert data["voice_limit"]["remaining"] == 1
    assert len(storage.sessions) == 1


def test_cookie_is_httponly_and_lax(client):
    response = client.get("/api/session")

    set_cookie = response.headers["set-cookie"].lower()
    assert set_cookie.startswith("au_session=")
    assert "httponly" in set_cookie
    assert "samesite=lax" in set_cookie
    assert "path=/" in set_cookie


def test_cookie_resumes_existing_session(client, storage):
    session = add_session(storage, tier=Tier.GOLD, token_balance=400_000)
    client.cookies.set("au_session", session.cookie_token)

    data = client.get("/api/session").json()

    assert data["tier"] == "Gold"
    assert data["message_limit"]["limit"] == 50
    assert data["voice_limit"]["limit"] == 240
    assert len(storage.sessions) == 1


def test_admin_session_reports_unlimited(client, storage):
    admin = add_admin(storage)
    session = add_session(storage, user_id=admin.id)
    client.cookies.set("au_session", session.cookie_token)

    data = client.get("/api/session").json()

    assert data["message_limit"]["remaining"] == 999_999
    assert data["voice_limit"]["limit"] == 999_999


def test_memory_bank_round_trip(client, storage):
    assert client.get("/api/memory-bank").json() == {"memory_bank": ""}

    response = client.post("/api/memory-bank", json={"memory_bank": "Prefers short answers"})

    assert response.status_code == 200
    assert response.json() == {"memory_bank": "Prefers short answers"}
    assert client.get("/api/memory-bank").json() == {"memory_bank": "Prefers short answers"}
    session = next(iter(storage.sessions.values()))
    assert session.memory_bank == "Prefers short answers"


def test_memory_bank_reaches_enrichment(client, webhook):
    client.post("/api/memory-bank", json={"memory_bank": "Holds since 2024"})
    client.post("/api/messages", json={"content": "hi"})

    assert webhook.last_json()["metadata"]["memoryBank"] == "Holds since 2024"


def test_request_id_is_propagated(client):
    response = client.get("/api/session", headers={"x-request-id": "req-123"})
    assert response.headers["x-request-id"] == "req-123"

    generated = client.get("/api/session")
    assert generated.headers["x-request-id"]


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
