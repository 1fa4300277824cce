"""
Message send flow and conversation history.

send_message:
  ownership check -> quota pre-check -> user turn -> enrichment -> generation
  -> assistant turn -> quota commit

A failed generation still produces an (apologetic) assistant turn and still
costs one message of quota.
"""
import logging
from typing import List, Optional

from models import (
    Conversation,
    Message,
    Modality,
    QuotaView,
    Resource,
    SendMessageRequest,
    SendMessageResponse,
    Session,
)
from services_enrichment import EnrichmentGateway
from services_llm import ERROR_REPLY, GenerationError, ResponseGenerator
from services_rate_limit import RateLimiter
from storage import Storage

logger = logging.getLogger("au_gold")

TITLE_MAX_CHARS = 50


class ConversationNotFound(Exception):
    """Conversation does not exist or belongs to another session."""


async def get_owned_conversation(storage: Storage, session: Session, conversation_id: str) -> Conversation:
    conversation = await storage.get_conversation(conversation_id)
    if conversation is None or conversation.session_id != session.id:
        raise ConversationNotFound(conversation_id)
    return conversation


class ChatService:
    def __init__(
        self,
        storage: Storage,
        rate_limiter: RateLimiter,
        enrichment: EnrichmentGateway,
        generator: ResponseGenerator,
    ):
        self.storage = storage
        self.rate_limiter = rate_limiter
        self.enrichment = enrichment
        self.generator = generator

    async def list_conversations(self, session: Session) -> List[Conversation]:
        return await self.storage.list_conversations(session.id)

    async def list_messages(self, session: Session, conversation_id: str) -> List[Message]:
        await get_owned_conversation(self.storage, session, conversation_id)
        return await self.storage.list_messages(conversation_id)

    async def send_message(self, session: Session, request: SendMessageRequest) -> SendMessageResponse:
        existing: Optional[Conversation] = None
        if request.conversation_id:
            existing = await get_owned_conversation(self.storage, session, request.conversation_id)

        quota = await self.rate_limiter.require(session, Resource.MESSAGES)

        conversation = existing
        if conversation is None:
            conversation = await self.storage.create_conversation(
                Conversation(session_id=session.id, title=request.content[:TITLE_MAX_CHARS])
            )

        user_message = await self.storage.add_message(Message(
            conversation_id=conversation.id,
            role="user",
            content=request.content,
        ))

        modality = Modality.IMAGE if request.request_image else Modality.TEXT
        enriched = await self.enrichment.enrich(
            request.personality,
            modality,
            session,
            request.content,
            conversation_id=conversation.id,
            message_id=user_message.id,
        )

        is_image = request.request_image
        try:
            reply = await self.generator.generate(enriched.value, image=request.request_image)
        except GenerationError as e:
            logger.error(
                f"[chat] Generation failed session={session.id} conversation={conversation.id}: {e}"
            )
            reply = ERROR_REPLY
            is_image = False

        ai_message = await self.storage.add_message(Message(
            conversation_id=conversation.id,
            role="assistant",
            content=reply,
            is_image=is_image,
            metadata={
                "personality": request.personality.value,
                "modality": modality.value,
                "enrichment_degraded": enriched.degraded,
            },
        ))

        # Charged even when generation failed, so retries are not free.
        await self.rate_limiter.commit(session, Resource.MESSAGES)

        refreshed = await self.storage.get_conversation(conversation.id) or conversation
        return SendMessageResponse(
            conversation=refreshed,
            user_message=user_message,
            ai_message=ai_message,
            rate_limit=QuotaView.from_result(quota, consumed=1),
            enrichment_degraded=enriched.degraded,
        )
