"""
Per-session quota enforcement over a rolling window.

One RateLimitWindow per session tracks both resources (messages and
voice-minutes). The window is opened by the first check after the previous
one expired, and its length comes from the resource that opened it. An
expired window is never reset in place: the next check or commit opens a
fresh one with both counters at zero.

Check and commit are separate calls. Two concurrent requests can both pass
the check before either commits; counters themselves are incremented
atomically by the storage layer.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from models import RateLimitResult, RateLimitWindow, Resource, Session
from request_identity import structured_log_line
from services_tier import get_tier_limits
from storage import Storage
from utils.timestamp import utcnow

logger = logging.getLogger("au_gold")

ADMIN_UNLIMITED = 999_999
ADMIN_RESET_DELTA = timedelta(days=365)


class QuotaExceeded(Exception):
    """Raised by `require` when the caller has no quota left for a resource."""

    def __init__(self, resource: Resource, result: RateLimitResult):
        super().__init__(f"{resource.value} quota exhausted until {result.reset_time.isoformat()}")
        self.resource = resource
        self.result = result


class RateLimiter:
    def __init__(self, storage: Storage, clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.clock = clock

    async def is_privileged(self, session: Session) -> bool:
        if not session.user_id:
            return False
        user = await self.storage.get_user(session.user_id)
        return bool(user and user.is_admin)

    async def _active_or_new_window(self, session: Session, resource: Resource, now: datetime) -> RateLimitWindow:
        window = await self.storage.get_active_window(session.id, now)
        if window is not None:
            return window
        limits = get_tier_limits(session.tier)
        window = RateLimitWindow(
            session_id=session.id,
            period_start=now,
            period_end=now + timedelta(hours=limits.period_hours_for(resource)),
        )
        await self.storage.create_window(window)
        logger.info(
            f"[rate_limit] Opened window for session {session.id} via {resource.value} "
            f"until {window.period_end.isoformat()}"
        )
        return window

    async def check_quota(self, session: Session, resource: Resource, amount: int = 1) -> RateLimitResult:
        now = self.clock()
        if await self.is_privileged(session):
            return RateLimitResult(
                allowed=True,
                remaining=ADMIN_UNLIMITED,
                limit=ADMIN_UNLIMITED,
                reset_time=now + ADMIN_RESET_DELTA,
            )

        limit = get_tier_limits(session.tier).limit_for(resource)
        window = await self._active_or_new_window(session, resource, now)
        used = window.used(resource)
        return RateLimitResult(
            allowed=used + amount <= limit,
            remaining=max(0, limit - used),
            limit=limit,
            reset_time=window.period_end,
        )

    async def require(self, session: Session, resource: Resource, amount: int = 1) -> RateLimitResult:
        """check_quota, raising QuotaExceeded when denied."""
        result = await self.check_quota(session, resource, amount)
        if not result.allowed:
            # A denial is an expected outcome, not an error.
            logger.info(structured_log_line({
                "event": "quota_denied",
                "session_id": session.id,
                "tier": session.tier.value,
                "resource": resource.value,
                "requested": amount,
                "limit": result.limit,
                "reset_time": result.reset_time.isoformat(),
            }))
            raise QuotaExceeded(resource, result)
        return result

    async def commit(self, session: Session, resource: Resource, amount: int = 1) -> Optional[RateLimitWindow]:
        """Record usage after the chargeable action happened. No-op for admin sessions."""
        if amount <= 0 or await self.is_privileged(session):
            return None
        window = await self._active_or_new_window(session, resource, self.clock())
        return await self.storage.increment_window(window.id, resource, amount)
