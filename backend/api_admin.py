import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from auth import create_admin_token, require_admin, verify_password
from dependencies import get_storage
from models import AdminLoginRequest, AudioCacheEntry, User, WebhookLog
from request_identity import fingerprint_for, get_session_cookie, set_admin_cookie, set_session_cookie
from services_session import SessionResolver
from storage import Storage

router = APIRouter(prefix="/api/admin", tags=["admin"])
logger = logging.getLogger("au_gold")


@router.post("/login")
async def admin_login(
    payload: AdminLoginRequest,
    request: Request,
    response: Response,
    storage: Storage = Depends(get_storage),
):
    """
    Verify admin credentials, set the admin cookie, and link the caller's
    session so it becomes unmetered.
    """
    user = await storage.get_user_by_username(payload.username)
    if user is None or not user.is_admin or not verify_password(payload.password, user.password_hash):
        logger.warning(f"[admin] Failed login for username={payload.username!r}")
        raise HTTPException(status_code=401, detail="Invalid credentials")

    set_admin_cookie(response, create_admin_token(user.id))
    resolved = await SessionResolver(storage).resolve(
        get_session_cookie(request),
        fingerprint_for(request),
        admin_user_id=user.id,
    )
    set_session_cookie(response, resolved.cookie_token)
    request.state.session_id = resolved.session.id
    logger.info(f"[admin] {user.username} logged in, linked session {resolved.session.id}")
    return {"status": "ok", "user_id": user.id, "username": user.username}


@router.get("/audio", response_model=List[AudioCacheEntry])
async def list_audio(
    session_id: Optional[str] = Query(None),
    conversation_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    admin: User = Depends(require_admin),
    storage: Storage = Depends(get_storage),
):
    """Cached audio, newest first. Filter by session or conversation, or get the latest N."""
    return await storage.list_audio_entries(
        session_id=session_id,
        conversation_id=conversation_id,
        limit=limit,
    )


@router.get("/webhooks", response_model=List[WebhookLog])
async def list_webhooks(
    limit: int = Query(100, ge=1, le=1000),
    admin: User = Depends(require_admin),
    storage: Storage = Depends(get_storage),
):
    return await storage.list_webhook_logs(limit=limit)
