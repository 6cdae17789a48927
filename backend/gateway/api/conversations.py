from fastapi import APIRouter, Depends, status

from gateway.api.deps import get_store
from gateway.core.relay import new_conversation_id
from gateway.db.store import ConversationStore
from gateway.errors import ConversationNotFound, InvalidInput
from gateway.models.chat import (
    DEFAULT_TITLE,
    Conversation,
    ConversationDetail,
    CreateConversationRequest,
    UpdateConversationRequest,
)

router = APIRouter(prefix="/api/conversations", tags=["conversations"])


@router.get("")
async def list_conversations(store: ConversationStore = Depends(get_store)):
    return {"conversations": await store.list_conversations()}


@router.post("", status_code=status.HTTP_201_CREATED, response_model=Conversation)
async def create_conversation(
    body: CreateConversationRequest,
    store: ConversationStore = Depends(get_store),
) -> Conversation:
    title = body.title.strip() or DEFAULT_TITLE
    return await store.create_conversation(new_conversation_id(), title, body.model)


@router.get("/{conversation_id}", response_model=ConversationDetail)
async def get_conversation(
    conversation_id: str,
    store: ConversationStore = Depends(get_store),
) -> ConversationDetail:
    conv = await store.get_conversation(conversation_id)
    if conv is None:
        raise ConversationNotFound(conversation_id)
    messages = await store.get_messages(conversation_id)
    return ConversationDetail(conversation=conv, messages=messages)


@router.patch("/{conversation_id}")
async def update_conversation(
    conversation_id: str,
    body: UpdateConversationRequest,
    store: ConversationStore = Depends(get_store),
):
    title = body.title.strip()
    if not title:
        raise InvalidInput("Title is required")
    if not await store.update_title(conversation_id, title):
        raise ConversationNotFound(conversation_id)
    return {"status": "updated"}


@router.delete("/{conversation_id}")
async def delete_conversation(
    conversation_id: str,
    store: ConversationStore = Depends(get_store),
):
    if not await store.delete_conversation(conversation_id):
        raise ConversationNotFound(conversation_id)
    return {"status": "deleted"}


@router.get("/{conversation_id}/messages")
async def get_messages(
    conversation_id: str,
    store: ConversationStore = Depends(get_store),
):
    if await store.get_conversation(conversation_id) is None:
        raise ConversationNotFound(conversation_id)
    return {"messages": await store.get_messages(conversation_id)}
