"""
Local filesystem storage for synthesized audio.

Files are written under AUDIO_STORAGE_DIR with an unguessable name; the
public URL is `/api/audio/{secure_token}`, so the on-disk path never leaves
the server.
"""
import logging
import uuid
from pathlib import Path
from typing import Optional, Tuple

from config import AUDIO_STORAGE_DIR

logger = logging.getLogger("au_gold")

AUDIO_URL_PREFIX = "/api/audio"


def _ensure_local_dir() -> Path:
    upload_path = Path(AUDIO_STORAGE_DIR)
    upload_path.mkdir(parents=True, exist_ok=True)
    return upload_path


def audio_url_for(secure_token: str) -> str:
    return f"{AUDIO_URL_PREFIX}/{secure_token}"


def audio_file_name(secure_token: str, ext: str = ".mp3") -> str:
    return f"{secure_token}{ext}"


def save_audio(audio: bytes, secure_token: Optional[str] = None, ext: str = ".mp3") -> Tuple[str, str]:
    """
    Save audio bytes to local disk, named after the entry's secure token.

    Returns:
        (file_name, file_path) tuple
    """
    upload_path = _ensure_local_dir()
    file_name = audio_file_name(secure_token or uuid.uuid4().hex, ext)
    file_path = upload_path / file_name
    with open(file_path, "wb") as f:
        f.write(audio)
    logger.info(f"[audio] Saved {len(audio)} bytes to {file_name}")
    return file_name, str(file_path)


def audio_path_for(file_name: str) -> Path:
    """Resolve a stored file name to its path, refusing anything outside the audio dir."""
    base = Path(AUDIO_STORAGE_DIR).resolve()
    candidate = (base / file_name).resolve()
    if base not in candidate.parents:
        raise ValueError("audio file name escapes storage directory")
    return candidate


def delete_audio(file_name: str) -> None:
    """Remove a stored file that never got a cache entry. Missing files are ignored."""
    try:
        audio_path_for(file_name).unlink(missing_ok=True)
    except (OSError, ValueError) as e:
        logger.warning(f"[audio] Could not remove {file_name}: {e}")
