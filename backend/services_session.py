"""
Session resolver: find or create the durable Session behind an HTTP caller.

Precedence:
  1. cookie token that matches a session and is not expired -> that session, expiry renewed
  2. cookie token that matches an expired session -> same session, new token
  3. no usable cookie -> most recent session with the same fingerprint (renewed, or
     rotated if its token is expired or missing)
  4. nothing matches -> new Free Trial session with a new token

Every resolution slides the cookie expiry forward. Two concurrent first
requests from one fingerprint can each create a session; that is accepted.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from config import SESSION_COOKIE_DAYS
from models import Session, Tier
from request_identity import new_cookie_token
from storage import Storage
from utils.timestamp import ensure_aware, utcnow

logger = logging.getLogger("au_gold")


@dataclass
class ResolvedSession:
    session: Session
    cookie_token: str
    created: bool = False
    rotated: bool = False


def _cookie_expired(session: Session, now: datetime) -> bool:
    return session.cookie_expiry is None or ensure_aware(session.cookie_expiry) <= now


class SessionResolver:
    def __init__(self, storage: Storage, cookie_days: int = SESSION_COOKIE_DAYS):
        self.storage = storage
        self.cookie_lifetime = timedelta(days=cookie_days)

    async def resolve(
        self,
        cookie_token: Optional[str],
        fingerprint: str,
        admin_user_id: Optional[str] = None,
    ) -> ResolvedSession:
        now = utcnow()
        session = None
        if cookie_token:
            session = await self.storage.get_session_by_cookie_token(cookie_token)
        if session is None:
            session = await self.storage.get_session_by_fingerprint(fingerprint)

        if session is None:
            token = new_cookie_token()
            session = Session(
                fingerprint=fingerprint,
                tier=Tier.FREE_TRIAL,
                user_id=admin_user_id,
                cookie_token=token,
                cookie_expiry=now + self.cookie_lifetime,
            )
            await self.storage.create_session(session)
            logger.info(f"[session] Created session {session.id}")
            return ResolvedSession(session=session, cookie_token=token, created=True)

        updates = {"cookie_expiry": now + self.cookie_lifetime}
        rotated = _cookie_expired(session, now) or not session.cookie_token
        if rotated:
            updates["cookie_token"] = new_cookie_token()
            logger.info(f"[session] Rotated cookie token for session {session.id}")
        if admin_user_id and session.user_id != admin_user_id:
            updates["user_id"] = admin_user_id
            logger.info(f"[session] Linked session {session.id} to admin user {admin_user_id}")

        session = await self.storage.update_session(session.id, **updates)
        return ResolvedSession(session=session, cookie_token=session.cookie_token, rotated=rotated)

    async def lookup_valid(self, cookie_token: Optional[str]) -> Optional[Session]:
        """
        Strict lookup for the voice stream: the cookie must name an existing,
        unexpired session. Nothing is created or rotated.
        """
        if not cookie_token:
            return None
        session = await self.storage.get_session_by_cookie_token(cookie_token)
        if session is None or _cookie_expired(session, utcnow()):
            return None
        return session
