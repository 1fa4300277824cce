import pytest

pytestmark = pytest.mark.unit

from mock_helpers import add_admin, add_session
from models import Tier
from request_identity import compute_fingerprint
from services_session import SessionResolver


def test_fingerprint_is_deterministic():
    a = compute_fingerprint("1.2.3.4", "Mozilla/5.0", "en-US")
    b = compute_fingerprint("1.2.3.4", "Mozilla/5.0", "en-US")
    c = compute_fingerprint("1.2.3.4", "Mozilla/5.0", "de-DE")
    assert a == b
    assert a != c
    assert len(a) == 64


@pytest.mark.asyncio
async def test_new_caller_gets_free_trial_session(storage):
    resolved = await SessionResolver(storage).resolve(None, "fp-new")

    assert resolved.created
    assert resolved.session.tier == Tier.FREE_TRIAL
    assert resolved.session.fingerprint == "fp-new"
    assert len(resolved.cookie_token) == 128
    assert resolved.session.id in storage.sessions


@pytest.mark.asyncio
async def test_valid_cookie_resumes_and_renews(storage):
    session = add_session(storage)
    old_expiry = session.cookie_expiry

    resolved = await SessionResolver(storage).resolve(session.cookie_token, "some-other-fingerprint")

    assert resolved.session.id == session.id
    assert resolved.cookie_token == session.cookie_token
    assert not resolved.rotated
    assert resolved.session.cookie_expiry >= old_expiry


@pytest.mark.asyncio
async def test_expired_cookie_resumes_same_session_with_new_token(storage):
    session = add_session(storage, expired=True)

    resolved = await SessionResolver(storage).resolve(session.cookie_token, "fp-x")

    assert resolved.session.id == session.id
    assert resolved.rotated
    assert resolved.cookie_token != session.cookie_token
    assert len(storage.sessions) == 1


@pytest.mark.asyncio
async def test_fingerprint_fallback_when_cookie_missing(storage):
    session = add_session(storage, fingerprint="fp-known")

    resolved = await SessionResolver(storage).resolve(None, "fp-known")

    assert resolved.session.id == session.id
    assert not resolved.created


@pytest.mark.asyncio
async def test_unknown_cookie_falls_back_to_fingerprint(storage):
    session = add_session(storage, fingerprint="fp-known")

    resolved = await SessionResolver(storage).resolve("f" * 128, "fp-known")

    assert resolved.session.id == session.id


@pytest.mark.asyncio
async def test_admin_link_is_applied(storage):
    admin = add_admin(storage)
    session = add_session(storage)

    resolved = await SessionResolver(storage).resolve(session.cookie_token, session.fingerprint, admin_user_id=admin.id)

    assert resolved.session.user_id == admin.id
    assert storage.sessions[session.id].user_id == admin.id


@pytest.mark.asyncio
async def test_lookup_valid_is_strict(storage):
    live = add_session(storage)
    stale = add_session(storage, expired=True)
    resolver = SessionResolver(storage)

    assert (await resolver.lookup_valid(live.cookie_token)).id == live.id
    assert await resolver.lookup_valid(stale.cookie_token) is None
    assert await resolver.lookup_valid("missing") is None
    assert await resolver.lookup_valid(None) is None
    # Nothing was created or rotated
    assert len(storage.sessions) == 2
    assert storage.sessions[stale.id].cookie_token == stale.cookie_token
