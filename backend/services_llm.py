import logging
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI, OpenAIError

from config import LLM_TIMEOUT_SECONDS, MODEL_CHAT, OPENAI_API_KEY
from models import Personality

logger = logging.getLogger("au_gold")

PERSONALITY_SYSTEM_PROMPTS: Dict[Personality, str] = {
    Personality.AUTISTIC_AI: (
        "You are AUtistic AI, specialized in meme coins and creative content. "
        "Be casual, fun, and knowledgeable about crypto culture."
    ),
    Personality.LEVEL1_ASD: (
        "You are Level 1 ASD, focused on learning, facts, and solving complex problems. "
        "Be analytical and educational."
    ),
    Personality.SAVANTIST: (
        "You are Savantist, the expert in advanced trading insights. "
        "Provide deep analysis with maximum detail and precision."
    ),
}

ERROR_REPLY = "I apologize, but I encountered an error processing your request. Please try again."
EMPTY_REPLY = "I apologize, but I couldn't generate a response."
EMPTY_IMAGE_REPLY = "I encountered an issue generating the image description."


def image_description_prompt(prompt: str) -> str:
    return (
        f'Based on this request: "{prompt}", provide a detailed description that could be used '
        "to generate an image. Focus on visual elements, composition, style, and mood."
    )


class GenerationError(Exception):
    """The LLM provider could not produce a reply."""


class ResponseGenerator:
    """Chat completions over the OpenAI API. Raises GenerationError; callers decide the fallback."""

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: str = MODEL_CHAT,
        timeout_seconds: float = LLM_TIMEOUT_SECONDS,
    ) -> None:
        self.model = model
        self.client = client
        if self.client is None and OPENAI_API_KEY:
            cleaned = OPENAI_API_KEY.strip().strip('"').strip("'")
            if cleaned:
                self.client = AsyncOpenAI(api_key=cleaned, timeout=timeout_seconds)
        if not self.client:
            logger.warning("[llm] OPENAI_API_KEY not set; generation calls will fail.")

    async def generate(
        self,
        prompt: str,
        *,
        image: bool = False,
        personality: Optional[Personality] = None,
    ) -> str:
        if not self.client:
            raise GenerationError("OpenAI client not initialised. Check OPENAI_API_KEY.")

        messages: List[Dict[str, Any]] = []
        if personality is not None:
            messages.append({"role": "system", "content": PERSONALITY_SYSTEM_PROMPTS[personality]})
        messages.append({"role": "user", "content": image_description_prompt(prompt) if image else prompt})

        try:
            response = await self.client.chat.completions.create(model=self.model, messages=messages)
        except OpenAIError as e:
            logger.error(f"[llm] completion failed (model={self.model}): {e}")
            raise GenerationError(str(e)) from e

        text = (response.choices[0].message.content or "").strip() if response.choices else ""
        if not text:
            return EMPTY_IMAGE_REPLY if image else EMPTY_REPLY
        return text
