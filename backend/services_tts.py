"""
Text-to-speech over ElevenLabs.

Two paths:
- batch: one REST call returns a complete mp3 (used by /api/voice/generate)
- streaming: a stream-input WebSocket that takes text incrementally and emits
  base64 audio chunks (used by the voice stream coordinator)
"""

from __future__ import annotations

import json
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional

import httpx
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK, WebSocketException

from config import (
    ELEVENLABS_API_BASE,
    ELEVENLABS_API_KEY,
    ELEVENLABS_MODEL_ID,
    ELEVENLABS_VOICE_ID,
    ELEVENLABS_WS_BASE,
    TTS_TIMEOUT_SECONDS,
)

logger = logging.getLogger("au_gold")

BATCH_MODEL_ID = "eleven_monolingual_v1"
BATCH_VOICE_SETTINGS = {"stability": 0.5, "similarity_boost": 0.5}
STREAM_VOICE_SETTINGS = {"stability": 0.5, "similarity_boost": 0.8, "speed": 1.0}
WORDS_PER_MINUTE = 150


class SynthesisError(Exception):
    """Speech synthesis provider failed or is not configured."""


def estimate_duration_seconds(text: str) -> int:
    """Rough spoken length at 150 words per minute."""
    words = len((text or "").split())
    return math.ceil(words / WORDS_PER_MINUTE * 60)


def _api_key() -> str:
    key = (ELEVENLABS_API_KEY or "").strip().strip('"').strip("'")
    if not key:
        raise SynthesisError("ELEVENLABS_API_KEY not configured")
    return key


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SynthesizedAudio:
    audio: bytes
    duration_seconds: int
    voice_settings: Dict[str, Any]


class SpeechSynthesizer:
    def __init__(
        self,
        api_base: str = ELEVENLABS_API_BASE,
        voice_id: str = ELEVENLABS_VOICE_ID,
        timeout_seconds: float = TTS_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_base = api_base.rstrip("/")
        self.voice_id = voice_id
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def synthesize(self, text: str) -> SynthesizedAudio:
        value = (text or "").strip()
        if not value:
            raise SynthesisError("nothing to synthesize")
        headers = {
            "Accept": "audio/mpeg",
            "xi-api-key": _api_key(),
            "Content-Type": "application/json",
        }
        body = {"text": value, "model_id": BATCH_MODEL_ID, "voice_settings": BATCH_VOICE_SETTINGS}
        url = f"{self.api_base}/text-to-speech/{self.voice_id}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                resp = await client.post(url, json=body, headers=headers)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"[TTS] ElevenLabs batch synthesis failed: {e}")
            raise SynthesisError(str(e)) from e
        if not resp.content:
            raise SynthesisError("ElevenLabs returned empty audio")
        return SynthesizedAudio(
            audio=resp.content,
            duration_seconds=estimate_duration_seconds(value),
            voice_settings={"provider": "elevenlabs", "model": BATCH_MODEL_ID, **BATCH_VOICE_SETTINGS},
        )


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

class SynthesisStream(ABC):
    """One upstream text-in/audio-out synthesis connection."""

    voice_settings: Dict[str, Any] = {}

    @abstractmethod
    async def speak(self, text: str) -> None: ...

    @abstractmethod
    async def flush(self) -> None: ...

    @abstractmethod
    def messages(self) -> AsyncIterator[Dict[str, Any]]:
        """Decoded upstream messages. Ends on a normal close, raises SynthesisError otherwise."""

    @abstractmethod
    async def close(self) -> None: ...


class ElevenLabsSynthesisStream(SynthesisStream):
    voice_settings = {"provider": "elevenlabs", "model": ELEVENLABS_MODEL_ID, **STREAM_VOICE_SETTINGS}

    def __init__(self, ws: ClientConnection):
        self._ws = ws

    async def _send(self, payload: Dict[str, Any]) -> None:
        try:
            await self._ws.send(json.dumps(payload))
        except WebSocketException as e:
            raise SynthesisError(f"synthesis socket send failed: {e}") from e

    async def speak(self, text: str) -> None:
        await self._send({"text": text, "try_trigger_generation": True})

    async def flush(self) -> None:
        # An empty "text" ends the upstream stream; a space plus flush only drains the buffer.
        await self._send({"text": " ", "flush": True})

    async def messages(self) -> AsyncIterator[Dict[str, Any]]:
        try:
            async for raw in self._ws:
                try:
                    data = json.loads(raw)
                except (TypeError, ValueError):
                    logger.warning("[TTS] Ignoring non-JSON message from synthesis socket")
                    continue
                if isinstance(data, dict):
                    yield data
        except ConnectionClosedOK:
            return
        except (ConnectionClosedError, WebSocketException) as e:
            raise SynthesisError(f"synthesis socket closed abnormally: {e}") from e

    async def close(self) -> None:
        await self._ws.close()


def stream_input_url(voice_id: str = ELEVENLABS_VOICE_ID, model_id: str = ELEVENLABS_MODEL_ID) -> str:
    return f"{ELEVENLABS_WS_BASE.rstrip('/')}/text-to-speech/{voice_id}/stream-input?model_id={model_id}"


async def open_elevenlabs_stream() -> SynthesisStream:
    """Connect, authenticate and send the initial voice configuration."""
    key = _api_key()
    url = stream_input_url()
    try:
        ws = await connect(url, open_timeout=TTS_TIMEOUT_SECONDS)
    except (OSError, TimeoutError, WebSocketException) as e:
        logger.error(f"[TTS] Could not open ElevenLabs stream-input socket: {e}")
        raise SynthesisError(str(e)) from e

    stream = ElevenLabsSynthesisStream(ws)
    try:
        await stream._send({"xi_api_key": key})
        await stream._send({"text": " ", "voice_settings": STREAM_VOICE_SETTINGS})
    except SynthesisError:
        await ws.close()
        raise
    logger.info("[TTS] ElevenLabs stream-input socket connected")
    return stream
