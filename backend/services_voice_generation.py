"""
Batch voice generation: synthesize a whole text, store the mp3, and hand back
a secure-token URL. Charged as whole minutes of estimated speech; nothing is
charged or cached when synthesis fails.
"""
import asyncio
import logging
import math

from audio_files import audio_url_for, delete_audio, save_audio
from models import (
    AudioCacheEntry,
    QuotaView,
    Resource,
    Session,
    VoiceGenerateRequest,
    VoiceGenerateResponse,
)
from request_identity import new_secure_token
from services_chat import get_owned_conversation
from services_rate_limit import RateLimiter
from services_tts import SpeechSynthesizer, estimate_duration_seconds
from storage import Storage

logger = logging.getLogger("au_gold")


def minutes_for_duration(duration_seconds: int) -> int:
    return max(1, math.ceil(duration_seconds / 60))


class VoiceGenerationService:
    def __init__(self, storage: Storage, rate_limiter: RateLimiter, synthesizer: SpeechSynthesizer):
        self.storage = storage
        self.rate_limiter = rate_limiter
        self.synthesizer = synthesizer

    async def generate(self, session: Session, request: VoiceGenerateRequest) -> VoiceGenerateResponse:
        await get_owned_conversation(self.storage, session, request.conversation_id)

        minutes = minutes_for_duration(estimate_duration_seconds(request.text))
        quota = await self.rate_limiter.require(session, Resource.VOICE_MINUTES, minutes)

        # SynthesisError propagates: no file, no cache entry, no charge.
        synthesized = await self.synthesizer.synthesize(request.text)

        secure_token = new_secure_token()
        file_name, _ = await asyncio.to_thread(save_audio, synthesized.audio, secure_token)
        try:
            entry = await self.storage.add_audio_entry(AudioCacheEntry(
                session_id=session.id,
                conversation_id=request.conversation_id,
                message_id=request.message_id,
                audio_url=audio_url_for(secure_token),
                secure_token=secure_token,
                text=request.text,
                duration=synthesized.duration_seconds,
                voice_settings=synthesized.voice_settings,
            ))
        except Exception:
            # No entry means no token can ever reach the file.
            await asyncio.to_thread(delete_audio, file_name)
            raise
        await self.rate_limiter.commit(session, Resource.VOICE_MINUTES, minutes)
        logger.info(f"[voice] Batch synthesis for session {session.id}: {minutes} minute(s)")

        return VoiceGenerateResponse(
            audio_url=entry.audio_url,
            secure_token=entry.secure_token,
            duration=entry.duration,
            voice_limit=QuotaView.from_result(quota, consumed=minutes),
        )
