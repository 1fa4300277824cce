"""
Prompt enrichment through personality/modality-specific n8n webhooks.

The gateway posts the user's message plus a snapshot of the session to the
configured workflow and turns whatever comes back into a model prompt (TEXT,
IMAGE) or a spoken reply (VOICE). It never raises to its caller: on any
failure the original content is returned with `degraded=True`. Every call
writes exactly one WebhookLog.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from config import ENRICHMENT_TIMEOUT_SECONDS
from config_webhooks import WebhookRoutes, get_webhook_routes
from models import Modality, Personality, Session, WebhookLog
from storage import Storage
from utils.soft_result import SoftResult
from utils.timestamp import utcnow_ms

logger = logging.getLogger("au_gold")

USER_AGENT = "AU-Gold-Backend/1.0"


class ResponseKind(str, Enum):
    PROMPT = "prompt"              # {status: "ok", delivery: "prompt", prompt: {full}}
    FULL_PROMPT = "full_prompt"    # legacy {fullPrompt}
    SYSTEM_PROMPT = "system_prompt"  # legacy {systemPrompt}, prepended to the user text
    REPLY = "reply"                # voice workflows: {response} or {text}
    NONE = "none"                  # well-formed, but nothing usable


class WebhookResponseError(ValueError):
    """Body was not something a workflow is allowed to return."""


@dataclass(frozen=True)
class WebhookResponse:
    kind: ResponseKind
    text: str = ""

    def resolve(self, original: str) -> str:
        if self.kind == ResponseKind.SYSTEM_PROMPT:
            return f"{self.text}\n\nUser: {original}"
        if self.kind == ResponseKind.NONE:
            return original
        return self.text


def _non_empty_str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


def parse_webhook_response(body: Any, modality: Modality) -> WebhookResponse:
    """
    Classify a decoded response body. Prompt workflows must report
    `status: "ok"`; precedence is then structured prompt, fullPrompt,
    systemPrompt. Voice workflows read `response`, then `text`.
    """
    if not isinstance(body, dict):
        raise WebhookResponseError(f"expected a JSON object, got {type(body).__name__}")
    status = body.get("status")
    if status is not None and status != "ok":
        raise WebhookResponseError(f"workflow reported status={status!r}")

    if modality == Modality.VOICE:
        for key in ("response", "text"):
            reply = _non_empty_str(body.get(key))
            if reply:
                return WebhookResponse(ResponseKind.REPLY, reply)
        return WebhookResponse(ResponseKind.NONE)

    if status != "ok":
        # Prompt shapes are only trusted from a workflow that reports success.
        return WebhookResponse(ResponseKind.NONE)
    prompt = body.get("prompt")
    if body.get("delivery") == "prompt" and isinstance(prompt, dict):
        full = _non_empty_str(prompt.get("full"))
        if full:
            return WebhookResponse(ResponseKind.PROMPT, full)
    full_prompt = _non_empty_str(body.get("fullPrompt"))
    if full_prompt:
        return WebhookResponse(ResponseKind.FULL_PROMPT, full_prompt)
    system_prompt = _non_empty_str(body.get("systemPrompt"))
    if system_prompt:
        return WebhookResponse(ResponseKind.SYSTEM_PROMPT, system_prompt)
    return WebhookResponse(ResponseKind.NONE)


class EnrichmentGateway:
    def __init__(
        self,
        storage: Storage,
        routes: Optional[WebhookRoutes] = None,
        timeout_seconds: float = ENRICHMENT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.storage = storage
        self.routes = routes or get_webhook_routes()
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    @staticmethod
    def build_payload(
        personality: Personality,
        modality: Modality,
        session: Session,
        content: str,
        conversation_id: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        return {
            "personality": personality.value,
            "modality": modality.value,
            "sessionId": session.id,
            "conversationId": conversation_id,
            "messageId": message_id,
            "content": content,
            "metadata": {
                "tier": session.tier.value,
                "tokenBalance": session.token_balance,
                "walletAddress": session.wallet_address,
                "memoryBank": session.memory_bank,
                "timestamp": utcnow_ms(),
            },
        }

    async def _audit(
        self,
        session: Session,
        conversation_id: Optional[str],
        request_data: Dict[str, Any],
        response_data: Dict[str, Any],
        status: str,
    ) -> None:
        try:
            await self.storage.add_webhook_log(WebhookLog(
                session_id=session.id,
                conversation_id=conversation_id,
                request_data=request_data,
                response_data=response_data,
                status=status,
            ))
        except Exception as e:
            # Audit is best effort; enrichment already has its answer.
            logger.error(f"[n8n] Failed to write webhook log for session {session.id}: {e}")

    async def enrich(
        self,
        personality: Personality,
        modality: Modality,
        session: Session,
        content: str,
        conversation_id: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> SoftResult[str]:
        url = self.routes.url_for(personality, modality)
        payload = self.build_payload(personality, modality, session, content, conversation_id, message_id)
        request_data = {
            "personality": personality.value,
            "modality": modality.value,
            "content": content,
            "url": url,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                resp = await client.post(url, json=payload, headers={"User-Agent": USER_AGENT})
            resp.raise_for_status()
            body = resp.json()
            parsed = parse_webhook_response(body, modality)
        except httpx.TimeoutException as e:
            return await self._fail(session, conversation_id, request_data, content, "timeout", e)
        except httpx.HTTPStatusError as e:
            return await self._fail(session, conversation_id, request_data, content, "http_status", e)
        except httpx.HTTPError as e:
            return await self._fail(session, conversation_id, request_data, content, "transport_error", e)
        except ValueError as e:
            # JSON decode errors and WebhookResponseError are both ValueErrors
            return await self._fail(session, conversation_id, request_data, content, "malformed_response", e)

        await self._audit(session, conversation_id, request_data, body, "success")
        if parsed.kind == ResponseKind.NONE:
            logger.info(f"[n8n] {personality.value}/{modality.value} returned nothing usable; using original content")
            return SoftResult.fallback(content, "empty_response")
        logger.info(f"[n8n] {personality.value}/{modality.value} enriched via {parsed.kind.value}")
        return SoftResult.ok(parsed.resolve(content))

    async def _fail(
        self,
        session: Session,
        conversation_id: Optional[str],
        request_data: Dict[str, Any],
        content: str,
        reason: str,
        error: Exception,
    ) -> SoftResult[str]:
        logger.warning(
            f"[n8n] {request_data['personality']}/{request_data['modality']} failed ({reason}) "
            f"session={session.id} conversation={conversation_id}: {error}"
        )
        await self._audit(
            session,
            conversation_id,
            request_data,
            {"error": str(error) or reason, "reason": reason},
            "error",
        )
        return SoftResult.fallback(content, reason)
