"""
WebSocket endpoint for real-time voice conversations.

Connect to `/api/voice-stream?conversation_id=...&personality=...` with the
session cookie. The connection is validated before any upstream socket is
opened and closed with a distinct code on failure:

  4401  no valid (existing, unexpired) session cookie
  4403  conversation missing or owned by another session
  4429  voice-minute quota exhausted
  4400  unknown personality

After `voice_ready` the client speaks the frame protocol documented in
services_voice_streaming.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from dependencies import get_rate_limiter, get_storage, get_voice_coordinator
from models import Personality, Resource
from request_identity import get_session_cookie, structured_log_line
from services_session import SessionResolver
from services_rate_limit import RateLimiter
from services_voice_streaming import VoiceStreamCoordinator
from storage import Storage

logger = logging.getLogger("au_gold")

router = APIRouter(prefix="/api", tags=["voice-stream"])

CLOSE_UNAUTHORIZED = 4401
CLOSE_FORBIDDEN = 4403
CLOSE_QUOTA = 4429
CLOSE_BAD_REQUEST = 4400


async def _reject(websocket: WebSocket, code: int, reason: str) -> None:
    # Accept first so browsers see the close code instead of a failed handshake.
    await websocket.accept()
    await websocket.close(code=code, reason=reason)
    logger.info(structured_log_line({"event": "voice_stream_rejected", "code": code, "reason": reason}))


@router.websocket("/voice-stream")
async def voice_stream_ws(
    websocket: WebSocket,
    storage: Storage = Depends(get_storage),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    coordinator: VoiceStreamCoordinator = Depends(get_voice_coordinator),
):
    session = await SessionResolver(storage).lookup_valid(get_session_cookie(websocket))
    if session is None:
        await _reject(websocket, CLOSE_UNAUTHORIZED, "session_required")
        return

    conversation_id = (websocket.query_params.get("conversation_id") or "").strip()
    conversation = await storage.get_conversation(conversation_id) if conversation_id else None
    if conversation is None or conversation.session_id != session.id:
        await _reject(websocket, CLOSE_FORBIDDEN, "conversation_not_found")
        return

    try:
        personality = Personality(websocket.query_params.get("personality") or Personality.AUTISTIC_AI.value)
    except ValueError:
        await _reject(websocket, CLOSE_BAD_REQUEST, "unknown_personality")
        return

    quota = await rate_limiter.check_quota(session, Resource.VOICE_MINUTES)
    if not quota.allowed:
        await _reject(websocket, CLOSE_QUOTA, "rate_limited")
        return

    await websocket.accept()

    send_lock = asyncio.Lock()

    async def _send_json(obj: Dict[str, Any]) -> None:
        async with send_lock:
            await websocket.send_text(json.dumps(obj))

    async def _close(code: int) -> None:
        await websocket.close(code=code)

    stream_id: Optional[str] = await coordinator.open_stream(
        _send_json,
        session,
        conversation.id,
        personality,
        close_client=_close,
    )
    if stream_id is None:
        await websocket.close(code=1011)
        return

    try:
        while True:
            message = await websocket.receive()
            if message.get("type") == "websocket.disconnect":
                break
            if message.get("text") is not None:
                await coordinator.handle_client_frame(stream_id, message["text"])
            elif message.get("bytes") is not None:
                await _send_json({
                    "type": "error",
                    "code": "invalid_frame",
                    "message": "Binary frames are not supported; send JSON text frames",
                })
    except WebSocketDisconnect:
        pass
    except RuntimeError as e:
        # Starlette raises RuntimeError on receive() after the socket was closed server-side.
        logger.info(f"[voice] Receive loop ended for {stream_id}: {e}")
    finally:
        await coordinator.close_stream(stream_id, notify_client=False)
