from typing import List

from fastapi import APIRouter, Depends

from auth import get_current_session
from dependencies import get_chat_service
from models import Conversation, Message, SendMessageRequest, SendMessageResponse, Session
from services_chat import ChatService

router = APIRouter(prefix="/api", tags=["messages"])


@router.get("/conversations", response_model=List[Conversation])
async def list_conversations(
    session: Session = Depends(get_current_session),
    chat: ChatService = Depends(get_chat_service),
):
    return await chat.list_conversations(session)


@router.get("/conversations/{conversation_id}/messages", response_model=List[Message])
async def list_messages(
    conversation_id: str,
    session: Session = Depends(get_current_session),
    chat: ChatService = Depends(get_chat_service),
):
    """Messages in creation order. 404 for missing or foreign conversations."""
    return await chat.list_messages(session, conversation_id)


@router.post("/messages", response_model=SendMessageResponse)
async def send_message(
    payload: SendMessageRequest,
    session: Session = Depends(get_current_session),
    chat: ChatService = Depends(get_chat_service),
):
    return await chat.send_message(session, payload)
