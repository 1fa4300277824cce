import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse

from audio_files import audio_file_name, audio_path_for
from auth import get_current_session
from dependencies import get_storage, get_voice_generation_service
from models import Session, VoiceGenerateRequest, VoiceGenerateResponse
from services_voice_generation import VoiceGenerationService
from storage import Storage

router = APIRouter(prefix="/api", tags=["voice"])
logger = logging.getLogger("au_gold")


@router.post("/voice/generate", response_model=VoiceGenerateResponse)
async def generate_voice(
    payload: VoiceGenerateRequest,
    session: Session = Depends(get_current_session),
    voice: VoiceGenerationService = Depends(get_voice_generation_service),
):
    return await voice.generate(session, payload)


@router.get("/audio/{secure_token}")
async def get_audio(secure_token: str, storage: Storage = Depends(get_storage)):
    """Playback by secure token. Holding the token is the only check."""
    entry = await storage.get_audio_entry_by_token(secure_token)
    if entry is None:
        raise HTTPException(status_code=404, detail="Audio not found")
    try:
        path = audio_path_for(audio_file_name(entry.secure_token))
    except ValueError:
        raise HTTPException(status_code=404, detail="Audio not found")
    if not path.is_file():
        logger.warning(f"[audio] Cache entry {entry.id} has no file on disk")
        raise HTTPException(status_code=404, detail="Audio not found")
    return FileResponse(path, media_type="audio/mpeg")
