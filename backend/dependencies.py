"""
Process-wide service instances, exposed as FastAPI dependencies.

Routers depend on these getters rather than constructing services, so tests
can swap any collaborator with `app.dependency_overrides[...]`.
"""
from typing import Optional

from fastapi import Depends

from config import VOICE_STT_ENABLED
from services_chat import ChatService
from services_enrichment import EnrichmentGateway
from services_llm import ResponseGenerator
from services_rate_limit import RateLimiter
from services_stt import NullUnderstanding, UnderstandingChannel, WhisperUnderstanding
from services_tier import BalanceOracle
from services_tts import SpeechSynthesizer
from services_voice_generation import VoiceGenerationService
from services_voice_streaming import VoiceStreamCoordinator
from services_wallet import WalletService
from storage import Storage, create_storage

_storage: Optional[Storage] = None
_balance_oracle: Optional[BalanceOracle] = None
_response_generator: Optional[ResponseGenerator] = None
_speech_synthesizer: Optional[SpeechSynthesizer] = None
_voice_coordinator: Optional[VoiceStreamCoordinator] = None


def get_storage() -> Storage:
    global _storage
    if _storage is None:
        _storage = create_storage()
    return _storage


def get_balance_oracle() -> BalanceOracle:
    global _balance_oracle
    if _balance_oracle is None:
        _balance_oracle = BalanceOracle()
    return _balance_oracle


def get_response_generator() -> ResponseGenerator:
    global _response_generator
    if _response_generator is None:
        _response_generator = ResponseGenerator()
    return _response_generator


def get_speech_synthesizer() -> SpeechSynthesizer:
    global _speech_synthesizer
    if _speech_synthesizer is None:
        _speech_synthesizer = SpeechSynthesizer()
    return _speech_synthesizer


def get_rate_limiter(storage: Storage = Depends(get_storage)) -> RateLimiter:
    return RateLimiter(storage)


def get_enrichment_gateway(storage: Storage = Depends(get_storage)) -> EnrichmentGateway:
    return EnrichmentGateway(storage)


def get_chat_service(
    storage: Storage = Depends(get_storage),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    enrichment: EnrichmentGateway = Depends(get_enrichment_gateway),
    generator: ResponseGenerator = Depends(get_response_generator),
) -> ChatService:
    return ChatService(storage, rate_limiter, enrichment, generator)


def get_wallet_service(
    storage: Storage = Depends(get_storage),
    oracle: BalanceOracle = Depends(get_balance_oracle),
) -> WalletService:
    return WalletService(storage, oracle)


def get_voice_generation_service(
    storage: Storage = Depends(get_storage),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    synthesizer: SpeechSynthesizer = Depends(get_speech_synthesizer),
) -> VoiceGenerationService:
    return VoiceGenerationService(storage, rate_limiter, synthesizer)


def _understanding_channel() -> UnderstandingChannel:
    if VOICE_STT_ENABLED:
        return WhisperUnderstanding()
    return NullUnderstanding()


def get_voice_coordinator(
    storage: Storage = Depends(get_storage),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    enrichment: EnrichmentGateway = Depends(get_enrichment_gateway),
) -> VoiceStreamCoordinator:
    # One registry per process; built from the first resolved collaborators.
    global _voice_coordinator
    if _voice_coordinator is None:
        _voice_coordinator = VoiceStreamCoordinator(
            storage,
            enrichment,
            rate_limiter,
            understanding=_understanding_channel(),
        )
    return _voice_coordinator


def current_voice_coordinator() -> Optional[VoiceStreamCoordinator]:
    return _voice_coordinator
