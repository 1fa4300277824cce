"""
Pytest configuration and fixtures for testing the AU Gold API.

This module provides:
- Environment variable overrides so nothing reaches a real provider
- An InMemoryStorage per test
- httpx.MockTransport upstreams for n8n, Solana RPC and ElevenLabs REST
- Fakes for the LLM and the synthesis socket
- A TestClient with app.dependency_overrides wired to all of the above
"""
import os
import tempfile

import pytest
from fastapi.testclient import TestClient

# Override environment variables to prevent real API calls
os.environ["STORAGE_BACKEND"] = "memory"
os.environ["N8N_BASE_URL"] = "https://n8n.test/webhook"
os.environ["VOICE_STT_ENABLED"] = "false"
os.environ["ENVIRONMENT"] = "test"
os.environ.setdefault("OPENAI_API_KEY", "test-key-sk-1234567890")
os.environ["ELEVENLABS_API_KEY"] = "test-elevenlabs-key"
os.environ["API_TOKEN_SECRET"] = "test-token-secret"
os.environ.setdefault("AUDIO_STORAGE_DIR", tempfile.mkdtemp(prefix="au-audio-"))

# Import app after env vars are set
from main import app  # noqa: E402

import audio_files  # noqa: E402
from config_webhooks import build_webhook_routes  # noqa: E402
from dependencies import (  # noqa: E402
    get_balance_oracle,
    get_enrichment_gateway,
    get_response_generator,
    get_speech_synthesizer,
    get_storage,
    get_voice_coordinator,
)
from mock_helpers import (  # noqa: E402
    FakeGenerator,
    FakeSynthesisFactory,
    FakeUnderstanding,
    MockUpstream,
    rpc_balance_body,
)
from services_enrichment import EnrichmentGateway  # noqa: E402
from services_rate_limit import RateLimiter  # noqa: E402
from services_tier import BalanceOracle  # noqa: E402
from services_tts import SpeechSynthesizer  # noqa: E402
from services_voice_streaming import VoiceStreamCoordinator  # noqa: E402
from storage import InMemoryStorage  # noqa: E402

ENRICHED_PROMPT = "ENRICHED PROMPT"


@pytest.fixture(autouse=True)
def audio_dir(tmp_path, monkeypatch):
    """Every test writes audio into its own directory."""
    path = tmp_path / "audio"
    monkeypatch.setattr(audio_files, "AUDIO_STORAGE_DIR", str(path))
    return path


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def webhook_routes():
    return build_webhook_routes("https://n8n.test/webhook", env={})


@pytest.fixture
def webhook():
    """n8n upstream; answers with a structured prompt unless reprogrammed."""
    return MockUpstream(json_body={
        "status": "ok",
        "delivery": "prompt",
        "prompt": {"full": ENRICHED_PROMPT},
    })


@pytest.fixture
def rpc():
    return MockUpstream(json_body=rpc_balance_body(0))


@pytest.fixture
def tts_http():
    return MockUpstream(content=b"ID3-fake-mp3-bytes")


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def synthesis_factory():
    return FakeSynthesisFactory()


@pytest.fixture
def understanding():
    return FakeUnderstanding()


@pytest.fixture
def enrichment(storage, webhook, webhook_routes):
    return EnrichmentGateway(storage, routes=webhook_routes, timeout_seconds=1.0, transport=webhook.transport)


@pytest.fixture
def rate_limiter(storage):
    return RateLimiter(storage)


@pytest.fixture
def balance_oracle(rpc):
    return BalanceOracle(rpc_url="https://rpc.test", mint="AUmint", timeout_seconds=1.0, transport=rpc.transport)


@pytest.fixture
def speech_synthesizer(tts_http):
    return SpeechSynthesizer(api_base="https://tts.test/v1", voice_id="voice-test", transport=tts_http.transport)


@pytest.fixture
def coordinator(storage, enrichment, rate_limiter, synthesis_factory, understanding):
    return VoiceStreamCoordinator(
        storage,
        enrichment,
        rate_limiter,
        synthesis_factory=synthesis_factory,
        understanding=understanding,
    )


@pytest.fixture
def test_app(storage, enrichment, generator, balance_oracle, speech_synthesizer, coordinator):
    """
    The app from main.py with every collaborator swapped for a test double.
    """
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_enrichment_gateway] = lambda: enrichment
    app.dependency_overrides[get_response_generator] = lambda: generator
    app.dependency_overrides[get_balance_oracle] = lambda: balance_oracle
    app.dependency_overrides[get_speech_synthesizer] = lambda: speech_synthesizer
    app.dependency_overrides[get_voice_coordinator] = lambda: coordinator
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(test_app):
    """
    Set raise_server_exceptions=False so that exceptions are caught by
    exception handlers and returned as responses (matching production behavior),
    rather than being raised and causing tests to fail.
    """
    return TestClient(test_app, raise_server_exceptions=False)
