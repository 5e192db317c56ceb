"""Conversation history routes."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field

from switchboard.core.errors import ConversationNotFound
from switchboard.orchestration.compaction import ConversationCompactor
from switchboard.runtime import AppContext, get_app_context
from switchboard.services.storage import validate_identifier

router = APIRouter(prefix="/conversations", tags=["conversations"])


class CreateConversation(BaseModel):
    id: str = Field(..., min_length=1, description="Conversation id chosen by the client")


class CompactRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    preserve_recent: Optional[int] = Field(default=None, ge=0, alias="preserveRecent")
    prompt: Optional[str] = None
    model: Optional[str] = None


def _not_found(exc: ConversationNotFound) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


@router.get("")
async def list_conversations(ctx: AppContext = Depends(get_app_context)) -> List[Dict[str, Any]]:
    summaries = await ctx.storage.conversations.list()
    return [{"id": s.id, "messageCount": s.message_count, "updatedAt": s.updated_at} for s in summaries]


@router.post("")
async def create_conversation(body: CreateConversation, ctx: AppContext = Depends(get_app_context)) -> Dict[str, Any]:
    """Start an empty conversation, replacing any existing one with the same id."""
    conversation_id = validate_identifier(body.id, "conversation id")
    async with ctx.conversation_locks.hold(conversation_id):
        conversation = await ctx.storage.conversations.create(conversation_id)
    return conversation.to_dict()


@router.get("/{conversation_id}")
async def get_conversation(conversation_id: str, ctx: AppContext = Depends(get_app_context)) -> Dict[str, Any]:
    conversation = await ctx.storage.conversations.get(conversation_id)
    if conversation is None:
        raise _not_found(ConversationNotFound(conversation_id))
    return conversation.to_dict()


@router.delete("/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_conversation(conversation_id: str, ctx: AppContext = Depends(get_app_context)) -> None:
    async with ctx.conversation_locks.hold(conversation_id):
        deleted = await ctx.storage.conversations.delete(conversation_id)
    if not deleted:
        raise _not_found(ConversationNotFound(conversation_id))


@router.delete("/{conversation_id}/messages")
async def clear_messages(conversation_id: str, ctx: AppContext = Depends(get_app_context)) -> Dict[str, Any]:
    """Drop every message but keep the conversation."""
    store = ctx.storage.conversations
    async with ctx.conversation_locks.hold(conversation_id):
        if await store.get(conversation_id) is None:
            raise _not_found(ConversationNotFound(conversation_id))
        conversation = await store.clear(conversation_id)
    return conversation.to_dict()


@router.post("/{conversation_id}/compact")
async def compact_conversation(
    conversation_id: str,
    request: Optional[CompactRequest] = None,
    ctx: AppContext = Depends(get_app_context),
) -> Dict[str, Any]:
    """Summarize all but the most recent messages, regardless of the threshold."""
    request = request or CompactRequest()
    result = await ConversationCompactor(ctx).compact(
        conversation_id,
        force=True,
        preserve_recent=request.preserve_recent,
        prompt=request.prompt,
        model=request.model,
    )
    if result is None:
        raise _not_found(ConversationNotFound(conversation_id))
    return result.to_dict()
