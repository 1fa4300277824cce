import hashlib
import json
import secrets
from typing import Optional

from fastapi import Response
from starlette.requests import HTTPConnection

from config import (
    ADMIN_COOKIE_NAME,
    ENVIRONMENT,
    SESSION_COOKIE_DAYS,
    SESSION_COOKIE_NAME,
)


def get_client_ip(conn: HTTPConnection) -> str:
    # Proxies add X-Forwarded-For; take the first hop
    xff = conn.headers.get("x-forwarded-for")
    if xff:
        return xff.split(",")[0].strip()
    return conn.client.host if conn.client else "unknown"


def compute_fingerprint(ip: str, user_agent: str, accept_language: str) -> str:
    """sha256 hex of `ip|user-agent|accept-language`. Deterministic for equal inputs."""
    raw = f"{ip}|{user_agent}|{accept_language}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def fingerprint_for(conn: HTTPConnection) -> str:
    return compute_fingerprint(
        get_client_ip(conn),
        conn.headers.get("user-agent", ""),
        conn.headers.get("accept-language", ""),
    )


def new_cookie_token() -> str:
    return secrets.token_hex(64)


def new_secure_token() -> str:
    """64 hex chars from 32 random bytes; the only credential for audio playback."""
    return secrets.token_hex(32)


def get_session_cookie(conn: HTTPConnection) -> Optional[str]:
    token = conn.cookies.get(SESSION_COOKIE_NAME)
    if token and len(token) <= 256:
        return token
    return None


def get_admin_cookie(conn: HTTPConnection) -> Optional[str]:
    return conn.cookies.get(ADMIN_COOKIE_NAME) or None


def _set_cookie(response: Response, key: str, value: str) -> None:
    response.set_cookie(
        key=key,
        value=value,
        httponly=True,
        secure=ENVIRONMENT == "production",
        samesite="lax",
        max_age=60 * 60 * 24 * SESSION_COOKIE_DAYS,
        path="/",
    )


def set_session_cookie(response: Response, cookie_token: str) -> None:
    _set_cookie(response, SESSION_COOKIE_NAME, cookie_token)


def set_admin_cookie(response: Response, admin_token: str) -> None:
    _set_cookie(response, ADMIN_COOKIE_NAME, admin_token)


def structured_log_line(payload: dict) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)
