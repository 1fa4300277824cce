"""
Authentication and authorization module.

Provides:
- Anonymous session resolution from the session cookie + request fingerprint
- Signed admin-link tokens (JWT, HS256) carried in the admin cookie
- Password hashing for admin accounts (passlib bcrypt)
- FastAPI dependencies for route protection
"""
import datetime
import logging
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request, Response
from passlib.context import CryptContext

from config import API_TOKEN_SECRET, SESSION_COOKIE_DAYS
from dependencies import get_storage
from models import Session, User
from request_identity import (
    fingerprint_for,
    get_admin_cookie,
    get_session_cookie,
    set_admin_cookie,
    set_session_cookie,
)
from services_session import SessionResolver
from storage import Storage

logger = logging.getLogger("au_gold")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

ADMIN_TOKEN_PURPOSE = "admin"


def get_api_token_secret() -> str:
    return API_TOKEN_SECRET or "dev-secret-key-change-in-production"


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        # Malformed hash in the users table
        return False


def create_admin_token(user_id: str, expires_in_days: int = SESSION_COOKIE_DAYS) -> str:
    now = datetime.datetime.now(datetime.timezone.utc)
    payload = {
        "user_id": user_id,
        "purpose": ADMIN_TOKEN_PURPOSE,
        "exp": now + datetime.timedelta(days=expires_in_days),
        "iat": now,
    }
    return jwt.encode(payload, get_api_token_secret(), algorithm="HS256")


def verify_admin_token(token: Optional[str]) -> Optional[str]:
    """User id carried by a valid admin token, else None."""
    if not token:
        return None
    try:
        payload = jwt.decode(token, get_api_token_secret(), algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        logger.info("[auth] Admin token expired")
        return None
    except jwt.InvalidTokenError:
        logger.warning("[auth] Invalid admin token presented")
        return None
    if payload.get("purpose") != ADMIN_TOKEN_PURPOSE:
        return None
    user_id = payload.get("user_id")
    return str(user_id) if user_id else None


async def _admin_user_from_cookie(request: Request, storage: Storage) -> Optional[User]:
    user_id = verify_admin_token(get_admin_cookie(request))
    if not user_id:
        return None
    user = await storage.get_user(user_id)
    if user is None or not user.is_admin:
        return None
    return user


async def get_current_session(
    request: Request,
    response: Response,
    storage: Storage = Depends(get_storage),
) -> Session:
    """
    Resolve (or create) the caller's session and slide its cookie forward.
    A valid admin cookie links the session to that admin account and is
    re-issued as well.
    """
    admin = await _admin_user_from_cookie(request, storage)
    resolved = await SessionResolver(storage).resolve(
        get_session_cookie(request),
        fingerprint_for(request),
        admin_user_id=admin.id if admin else None,
    )
    set_session_cookie(response, resolved.cookie_token)
    if admin is not None:
        set_admin_cookie(response, create_admin_token(admin.id))
    request.state.session_id = resolved.session.id
    return resolved.session


async def require_admin(
    request: Request,
    response: Response,
    storage: Storage = Depends(get_storage),
) -> User:
    """FastAPI dependency that requires a valid admin cookie; renews it on success."""
    admin = await _admin_user_from_cookie(request, storage)
    if admin is None:
        raise HTTPException(status_code=401, detail="Unauthorized - Admin access required")
    set_admin_cookie(response, create_admin_token(admin.id))
    return admin
