"""
Speech understanding for the voice stream.

Audio frames from the client go to an UnderstandingChannel. The default
channel transcribes nothing (audio is acknowledged and dropped); the Whisper
channel transcribes base64 audio with OpenAI and hands the text back to the
coordinator, which then runs the normal text path.
"""

from __future__ import annotations

import base64
import binascii
import io
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI, OpenAIError

from config import MODEL_TRANSCRIBE, OPENAI_API_KEY
from models import Personality
from services_llm import PERSONALITY_SYSTEM_PROMPTS

logger = logging.getLogger("au_gold")


@dataclass(frozen=True)
class UnderstandingConfig:
    system_instruction: str
    response_modalities: List[str] = field(default_factory=lambda: ["TEXT"])
    activity_detection: Dict[str, Any] = field(default_factory=lambda: {
        "disabled": False,
        "start_of_speech_sensitivity": "START_SENSITIVITY_LOW",
        "end_of_speech_sensitivity": "END_SENSITIVITY_HIGH",
        "silence_duration_ms": 100,
    })


def build_understanding_config(personality: Personality) -> UnderstandingConfig:
    """Audio output comes from the synthesis socket, so understanding only answers in TEXT."""
    return UnderstandingConfig(system_instruction=PERSONALITY_SYSTEM_PROMPTS[personality])


class UnderstandingError(Exception):
    pass


class UnderstandingChannel(ABC):
    @abstractmethod
    async def transcribe(self, audio_b64: str, config: UnderstandingConfig) -> Optional[str]:
        """Text for one audio input, or None when nothing usable was heard."""


class NullUnderstanding(UnderstandingChannel):
    async def transcribe(self, audio_b64: str, config: UnderstandingConfig) -> Optional[str]:
        return None


class WhisperUnderstanding(UnderstandingChannel):
    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: str = MODEL_TRANSCRIBE,
        language: Optional[str] = "en",
        file_name: str = "audio.webm",
    ):
        if client is None:
            key = (OPENAI_API_KEY or "").strip().strip('"').strip("'")
            if not key:
                raise ValueError("OPENAI_API_KEY not configured")
            client = AsyncOpenAI(api_key=key)
        self.client = client
        self.model = model
        self.language = language
        self.file_name = file_name

    async def transcribe(self, audio_b64: str, config: UnderstandingConfig) -> Optional[str]:
        try:
            audio = base64.b64decode(audio_b64 or "", validate=True)
        except (binascii.Error, ValueError) as e:
            raise UnderstandingError(f"audio is not valid base64: {e}") from e
        if not audio:
            return None

        buf = io.BytesIO(audio)
        buf.name = self.file_name  # OpenAI SDK uses the file extension to determine format
        try:
            result = await self.client.audio.transcriptions.create(
                model=self.model,
                file=buf,
                language=self.language,
                prompt=config.system_instruction,
                response_format="text",
            )
        except OpenAIError as e:
            raise UnderstandingError(str(e)) from e
        text = result if isinstance(result, str) else (getattr(result, "text", None) or "")
        return text.strip() or None
