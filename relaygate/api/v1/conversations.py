"""Conversation endpoints for the signed-in user."""
from fastapi import APIRouter, Depends, HTTPException, status

from relaygate.api.deps import get_conversation_service
from relaygate.core.security import get_current_user_id
from relaygate.schemas.session import ConversationRead
from relaygate.services.conversation_service import ConversationService

router = APIRouter(prefix="/whatsapp/conversations", tags=["whatsapp"])


@router.get("", response_model=list[ConversationRead])
async def list_conversations(
    user_id: str = Depends(get_current_user_id),
    conversations: ConversationService = Depends(get_conversation_service),
):
    return [ConversationRead.model_validate(c) for c in await conversations.list_by_user(user_id)]


@router.delete("/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_conversation(
    conversation_id: int,
    user_id: str = Depends(get_current_user_id),
    conversations: ConversationService = Depends(get_conversation_service),
):
    conversation = await conversations.get(conversation_id)
    if conversation is None or conversation.user_id != user_id:
        raise HTTPException(status_code=404, detail="Conversation not found")
    await conversations.delete(conversation_id)
