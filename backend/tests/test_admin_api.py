"""
Tests for the Admin API: login, admin cookie, and the audio / webhook log
listings. Also covers admin-linked sessions being unmetered end to end.
"""
import jwt
import pytest

pytestmark = pytest.mark.unit

from auth import create_admin_token, get_api_token_secret, hash_password, verify_admin_token, verify_password
from mock_helpers import add_admin, add_conversation, add_session
from models import AudioCacheEntry, WebhookLog


@pytest.fixture
def admin(storage):
    return add_admin(storage, username="ops", password_hash=hash_password("correct-horse"))


def _login(client, password="correct-horse", username="ops"):
    return client.post("/api/admin/login", json={"username": username, "password": password})


def _add_audio(storage, session, conversation, token):
    entry = AudioCacheEntry(
        session_id=session.id,
        conversation_id=conversation.id,
        audio_url=f"/api/audio/{token}",
        secure_token=token,
        text="hello",
    )
    storage.audio_entries.append(entry)
    return entry


class TestAuthHelpers:
    def test_password_hash_round_trip(self):
        hashed = hash_password("s3cret-pass")
        assert hashed != "s3cret-pass"
        assert verify_password("s3cret-pass", hashed)
        assert not verify_password("wrong", hashed)

    def test_malformed_hash_does_not_verify(self):
        assert not verify_password("anything", "not-a-bcrypt-hash")

    def test_admin_token_round_trip(self):
        assert verify_admin_token(create_admin_token("user-1")) == "user-1"

    def test_token_with_other_purpose_is_rejected(self):
        token = jwt.encode({"user_id": "user-1", "purpose": "session"}, get_api_token_secret(), algorithm="HS256")
        assert verify_admin_token(token) is None

    def test_tampered_token_is_rejected(self):
        token = jwt.encode({"user_id": "user-1", "purpose": "admin"}, "some-other-secret", algorithm="HS256")
        assert verify_admin_token(token) is None
        assert verify_admin_token(None) is None


class TestLogin:
    def test_login_sets_cookie_and_links_session(self, client, storage, admin):
        response = _login(client)

        assert response.status_code == 200
        assert response.json()["username"] == "ops"
        assert client.cookies.get("au_admin")
        session = next(iter(storage.sessions.values()))
        assert session.user_id == admin.id

    def test_linked_session_is_unmetered(self, client, admin):
        _login(client)

        for i in range(7):
            assert client.post("/api/messages", json={"content": f"msg {i}"}).status_code == 200
        assert client.get("/api/session").json()["message_limit"]["remaining"] == 999_999

    def test_session_requests_renew_admin_cookie(self, client, admin):
        anonymous = client.get("/api/session")
        assert "au_admin=" not in anonymous.headers.get("set-cookie", "")

        _login(client)
        response = client.get("/api/session")

        set_cookie = response.headers.get("set-cookie", "")
        assert "au_session=" in set_cookie
        assert "au_admin=" in set_cookie

    def test_wrong_password_is_401(self, client, storage, admin):
        response = _login(client, password="wrong")

        assert response.status_code == 401
        assert client.cookies.get("au_admin") is None
        assert all(s.user_id is None for s in storage.sessions.values())

    def test_unknown_user_is_401(self, client, admin):
        assert _login(client, username="nobody").status_code == 401

    def test_non_admin_account_is_401(self, client, storage):
        add_admin(storage, username="viewer", password_hash=hash_password("correct-horse"), is_admin=False)
        assert _login(client, username="viewer").status_code == 401


class TestListings:
    def test_listings_require_admin_cookie(self, client):
        assert client.get("/api/admin/audio").status_code == 401
        assert client.get("/api/admin/webhooks").status_code == 401

    def test_audio_listing_filters(self, client, storage, admin):
        s1, s2 = add_session(storage), add_session(storage)
        c1, c2 = add_conversation(storage, s1), add_conversation(storage, s2)
        _add_audio(storage, s1, c1, "t1")
        _add_audio(storage, s2, c2, "t2")
        _add_audio(storage, s1, c1, "t3")
        _login(client)

        latest = client.get("/api/admin/audio", params={"limit": 2})
        by_session = client.get("/api/admin/audio", params={"session_id": s1.id})
        by_conversation = client.get("/api/admin/audio", params={"conversation_id": c2.id})

        assert latest.status_code == 200
        assert [e["secure_token"] for e in latest.json()] == ["t3", "t2"]
        assert [e["secure_token"] for e in by_session.json()] == ["t3", "t1"]
        assert [e["secure_token"] for e in by_conversation.json()] == ["t2"]

    def test_webhook_log_listing_newest_first(self, client, storage, admin):
        for i in range(3):
            storage.webhook_logs.append(WebhookLog(request_data={"n": i}, status="success"))
        _login(client)

        response = client.get("/api/admin/webhooks", params={"limit": 2})

        assert response.status_code == 200
        assert [log["request_data"]["n"] for log in response.json()] == [2, 1]

    def test_limit_is_bounded(self, client, admin):
        _login(client)
        assert client.get("/api/admin/audio", params={"limit": 0}).status_code == 422
