import pytest

pytestmark = pytest.mark.unit

from config_webhooks import build_webhook_routes, default_webhook_url, personality_slug
from models import Modality, Personality


def test_every_pair_has_a_default_route():
    routes = build_webhook_routes("https://n8n.test/webhook/", env={})

    assert len(routes.urls) == len(Personality) * len(Modality)
    assert routes.url_for(Personality.LEVEL1_ASD, Modality.VOICE) == "https://n8n.test/webhook/level-1-asd-voice"
    assert routes.url_for(Personality.AUTISTIC_AI, Modality.TEXT) == "https://n8n.test/webhook/autistic-ai-text"


def test_env_override_wins_over_default():
    routes = build_webhook_routes(
        "https://n8n.test/webhook",
        env={"N8N_SAVANTIST_IMAGE": "https://hooks.example.com/savant-img"},
    )

    assert routes.url_for(Personality.SAVANTIST, Modality.IMAGE) == "https://hooks.example.com/savant-img"
    assert routes.url_for(Personality.SAVANTIST, Modality.TEXT) == default_webhook_url(
        "https://n8n.test/webhook", Personality.SAVANTIST, Modality.TEXT
    )


def test_missing_base_without_overrides_fails():
    with pytest.raises(ValueError, match="Invalid webhook routes"):
        build_webhook_routes("", env={})


def test_non_http_override_fails():
    with pytest.raises(ValueError, match="Level 1 ASD/TEXT"):
        build_webhook_routes("https://n8n.test/webhook", env={"N8N_LEVEL1_ASD_TEXT": "ftp://nope"})


def test_personality_slug():
    assert personality_slug(Personality.AUTISTIC_AI) == "autistic-ai"
    assert personality_slug(Personality.SAVANTIST) == "savantist"
