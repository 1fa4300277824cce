from fastapi import APIRouter, Depends
import logging

from auth import get_current_session
from dependencies import get_rate_limiter, get_storage
from models import MemoryBankUpdate, QuotaView, Resource, Session, SessionView
from services_rate_limit import RateLimiter
from storage import Storage

router = APIRouter(prefix="/api", tags=["session"])
logger = logging.getLogger("au_gold")


@router.get("/session", response_model=SessionView)
async def get_session_status(
    session: Session = Depends(get_current_session),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
):
    """Tier, cached balance, and remaining message/voice quota for the caller."""
    messages = await rate_limiter.check_quota(session, Resource.MESSAGES)
    voice = await rate_limiter.check_quota(session, Resource.VOICE_MINUTES)
    return SessionView(
        tier=session.tier,
        token_balance=session.token_balance,
        wallet_address=session.wallet_address,
        message_limit=QuotaView.from_result(messages),
        voice_limit=QuotaView.from_result(voice),
    )


@router.get("/memory-bank")
async def get_memory_bank(session: Session = Depends(get_current_session)):
    return {"memory_bank": session.memory_bank or ""}


@router.post("/memory-bank")
async def update_memory_bank(
    payload: MemoryBankUpdate,
    session: Session = Depends(get_current_session),
    storage: Storage = Depends(get_storage),
):
    updated = await storage.update_session(session.id, memory_bank=payload.memory_bank or None)
    logger.info(f"[session] Memory bank updated for session {session.id}")
    return {"memory_bank": updated.memory_bank or ""}
