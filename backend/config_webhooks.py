import os
import threading
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Tuple
from urllib.parse import urlparse

from config import N8N_BASE_URL
from models import Modality, Personality

# Prefix of the per-route override variable, e.g. N8N_LEVEL1_ASD_VOICE
_ENV_PREFIX: Dict[Personality, str] = {
    Personality.AUTISTIC_AI: "N8N_AUTISTIC_AI",
    Personality.LEVEL1_ASD: "N8N_LEVEL1_ASD",
    Personality.SAVANTIST: "N8N_SAVANTIST",
}


@dataclass(frozen=True)
class WebhookRoutes:
    urls: Dict[Tuple[Personality, Modality], str]

    def url_for(self, personality: Personality, modality: Modality) -> str:
        return self.urls[(personality, modality)]


_LOCK = threading.Lock()
_CACHE: Optional[WebhookRoutes] = None


def personality_slug(personality: Personality) -> str:
    return "-".join(personality.value.lower().split())


def default_webhook_url(base_url: str, personality: Personality, modality: Modality) -> str:
    return f"{base_url.rstrip('/')}/{personality_slug(personality)}-{modality.value.lower()}"


def _is_http_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def build_webhook_routes(
    base_url: str = N8N_BASE_URL,
    env: Optional[Mapping[str, str]] = None,
) -> WebhookRoutes:
    """
    Build the (personality, modality) -> URL table. Every pair must resolve to
    an http(s) URL; anything else raises ValueError so startup fails loudly.
    """
    env = os.environ if env is None else env
    urls: Dict[Tuple[Personality, Modality], str] = {}
    missing = []
    for personality in Personality:
        for modality in Modality:
            override = (env.get(f"{_ENV_PREFIX[personality]}_{modality.value}") or "").strip()
            url = override or (default_webhook_url(base_url, personality, modality) if base_url else "")
            if not _is_http_url(url):
                missing.append(f"{personality.value}/{modality.value}={url!r}")
                continue
            urls[(personality, modality)] = url
    if missing:
        raise ValueError(f"Invalid webhook routes: {', '.join(missing)}")
    return WebhookRoutes(urls=urls)


def get_webhook_routes(*, force_reload: bool = False) -> WebhookRoutes:
    global _CACHE
    if _CACHE is not None and not force_reload:
        return _CACHE
    with _LOCK:
        if _CACHE is not None and not force_reload:
            return _CACHE
        _CACHE = build_webhook_routes()
        return _CACHE
