"""
Tests for the rolling-window rate limiter.
"""
import logging
from datetime import datetime, timedelta, timezone

import pytest

pytestmark = pytest.mark.unit

from mock_helpers import add_admin, add_session
from models import Resource, Tier
from services_rate_limit import ADMIN_UNLIMITED, QuotaExceeded, RateLimiter

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def limiter(storage, clock):
    return RateLimiter(storage, clock=clock)


@pytest.mark.asyncio
async def test_first_check_opens_window_with_full_quota(storage, limiter):
    session = add_session(storage)

    result = await limiter.check_quota(session, Resource.MESSAGES)

    assert result.allowed
    assert result.remaining == 5
    assert result.limit == 5
    assert result.reset_time == T0 + timedelta(hours=4)
    assert len(storage.windows) == 1


@pytest.mark.asyncio
async def test_free_trial_sixth_message_denied(storage, limiter):
    session = add_session(storage)

    for _ in range(5):
        assert (await limiter.check_quota(session, Resource.MESSAGES)).allowed
        await limiter.commit(session, Resource.MESSAGES)

    result = await limiter.check_quota(session, Resource.MESSAGES)
    assert not result.allowed
    assert result.remaining == 0
    assert result.reset_time == T0 + timedelta(hours=4)


@pytest.mark.asyncio
async def test_expired_window_is_replaced_not_reset(storage, limiter, clock):
    session = add_session(storage)
    for _ in range(5):
        await limiter.commit(session, Resource.MESSAGES)
    first_window_id = next(iter(storage.windows))

    clock.advance(hours=4, seconds=1)
    result = await limiter.check_quota(session, Resource.MESSAGES)

    assert result.allowed
    assert result.remaining == 5
    assert len(storage.windows) == 2
    # The old window keeps its counters
    assert storage.windows[first_window_id].messages_used == 5


@pytest.mark.asyncio
async def test_window_length_comes_from_opening_resource(storage, limiter):
    session = add_session(storage, tier=Tier.ELECTRUM)

    voice = await limiter.check_quota(session, Resource.VOICE_MINUTES)
    messages = await limiter.check_quota(session, Resource.MESSAGES)

    assert voice.reset_time == T0 + timedelta(hours=24)
    # Both resources share the one open window
    assert messages.reset_time == voice.reset_time
    assert messages.limit == 20
    assert voice.limit == 60


@pytest.mark.asyncio
async def test_amount_is_checked_against_remaining(storage, limiter):
    session = add_session(storage)

    assert (await limiter.check_quota(session, Resource.VOICE_MINUTES, 1)).allowed
    assert not (await limiter.check_quota(session, Resource.VOICE_MINUTES, 2)).allowed


@pytest.mark.asyncio
async def test_require_raises_and_logs_at_info(storage, limiter, caplog):
    session = add_session(storage)
    await limiter.commit(session, Resource.VOICE_MINUTES, 1)

    with caplog.at_level(logging.INFO, logger="au_gold"):
        with pytest.raises(QuotaExceeded) as exc_info:
            await limiter.require(session, Resource.VOICE_MINUTES)

    assert exc_info.value.resource == Resource.VOICE_MINUTES
    assert exc_info.value.result.remaining == 0
    denials = [r for r in caplog.records if "quota_denied" in r.getMessage()]
    assert denials and all(r.levelno == logging.INFO for r in denials)


@pytest.mark.asyncio
async def test_admin_session_is_unmetered(storage, limiter):
    admin = add_admin(storage)
    session = add_session(storage, user_id=admin.id)

    result = await limiter.check_quota(session, Resource.MESSAGES)
    committed = await limiter.commit(session, Resource.MESSAGES, 10)

    assert result.allowed
    assert result.remaining == ADMIN_UNLIMITED
    assert result.limit == ADMIN_UNLIMITED
    assert result.reset_time == T0 + timedelta(days=365)
    assert committed is None
    assert storage.windows == {}


@pytest.mark.asyncio
async def test_non_admin_user_link_is_still_metered(storage, limiter):
    user = add_admin(storage, username="viewer", is_admin=False)
    session = add_session(storage, user_id=user.id)

    result = await limiter.check_quota(session, Resource.MESSAGES)

    assert result.limit == 5


@pytest.mark.asyncio
async def test_commit_zero_is_noop(storage, limiter):
    session = add_session(storage)

    assert await limiter.commit(session, Resource.MESSAGES, 0) is None
    assert storage.windows == {}
