"""Conversation compaction: summarize older turns, keep the recent tail verbatim."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

from switchboard.agents.runner import invoke_model
from switchboard.core.context import emit_status
from switchboard.core.events import StatusCode
from switchboard.core.models import Conversation, ConversationMessage
from switchboard.services.llm import ModelRequest

if TYPE_CHECKING:
    from switchboard.runtime import AppContext

logger = logging.getLogger(__name__)

COMPACTION_METADATA_KEY = "_compaction"

DEFAULT_COMPACTION_PROMPT = """You are a conversation summarizer. Given the following conversation messages, create a concise but comprehensive summary that preserves:
- Key facts, decisions, and outcomes
- User preferences and context established
- Important tool results and their implications
- Any ongoing tasks or commitments

Output ONLY the summary text, no preamble or formatting."""


@dataclass(frozen=True, slots=True)
class CompactionResult:
    summary: str
    summarized_count: int
    preserved_count: int
    new_message_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary,
            "summarizedCount": self.summarized_count,
            "preservedCount": self.preserved_count,
            "newMessageCount": self.new_message_count,
        }


def needs_compaction(conversation: Conversation, threshold: int) -> bool:
    return len(conversation.messages) > threshold


def is_summary(message: ConversationMessage) -> bool:
    return bool(message.metadata.get(COMPACTION_METADATA_KEY))


def format_messages_for_summary(messages: Sequence[ConversationMessage]) -> str:
    # earlier summaries are fed back in, labelled so they are not read as dialogue
    return "\n\n".join(
        f"{'[Previous Summary]' if is_summary(m) else m.role}: {m.content}" for m in messages
    )


class ConversationCompactor:
    """Replaces a conversation's history with ``[summary, *recent]``.

    Callers that already hold the conversation's lock use
    :meth:`compact_unlocked`; everyone else goes through :meth:`compact`.
    """

    def __init__(self, ctx: "AppContext") -> None:
        self._ctx = ctx
        self._config = ctx.config.compaction

    async def compact(
        self,
        conversation_id: str,
        *,
        force: bool = False,
        preserve_recent: Optional[int] = None,
        prompt: Optional[str] = None,
        model: Optional[str] = None,
    ) -> Optional[CompactionResult]:
        async with self._ctx.conversation_locks.hold(conversation_id):
            return await self.compact_unlocked(
                conversation_id,
                force=force,
                preserve_recent=preserve_recent,
                prompt=prompt,
                model=model,
            )

    async def compact_unlocked(
        self,
        conversation_id: str,
        *,
        force: bool = False,
        preserve_recent: Optional[int] = None,
        prompt: Optional[str] = None,
        model: Optional[str] = None,
    ) -> Optional[CompactionResult]:
        """Compact unless below the threshold (or the preserved tail when ``force``).

        Returns ``None`` when the conversation does not exist.
        """
        preserve = preserve_recent if preserve_recent is not None else self._config.preserve_recent
        instructions = prompt or self._config.prompt or DEFAULT_COMPACTION_PROMPT
        model = model or self._config.model

        store = self._ctx.storage.conversations
        conversation = await store.get(conversation_id)
        if conversation is None:
            return None

        messages = conversation.messages
        below_threshold = not force and not needs_compaction(conversation, self._config.threshold)
        if below_threshold or len(messages) <= preserve:
            return CompactionResult(
                summary="",
                summarized_count=0,
                preserved_count=len(messages),
                new_message_count=len(messages),
            )

        cut = len(messages) - preserve
        to_summarize, to_preserve = messages[:cut], messages[cut:]
        emit_status(
            StatusCode.COMPACTING,
            "Compacting conversation history",
            conversationId=conversation_id,
            summarizedCount=len(to_summarize),
            preservedCount=len(to_preserve),
        )

        request = ModelRequest(
            system="",
            prompt=f"{instructions}\n\n---\n\n{format_messages_for_summary(to_summarize)}",
            model=model,
        )
        summary = (await invoke_model(self._ctx, request)).text

        await store.clear(conversation_id)
        await store.append(
            conversation_id,
            ConversationMessage(
                role="assistant",
                content=summary,
                metadata={COMPACTION_METADATA_KEY: True, "summarizedCount": len(to_summarize)},
            ),
        )
        for message in to_preserve:
            await store.append(conversation_id, message)

        logger.info(
            "Compacted conversation %s: %d messages summarized, %d preserved",
            conversation_id,
            len(to_summarize),
            len(to_preserve),
        )
        return CompactionResult(
            summary=summary,
            summarized_count=len(to_summarize),
            preserved_count=len(to_preserve),
            new_message_count=1 + len(to_preserve),
        )


async def load_conversation_with_compaction(
    ctx: "AppContext",
    conversation_id: str,
    new_user_message: str,
) -> Optional[List[Dict[str, str]]]:
    """Load history (compacting first when due), then record the new user turn.

    Returns the model-ready history ending with the new message, or ``None``
    when the conversation does not exist yet.
    """
    emit_status(
        StatusCode.LOADING_CONTEXT,
        "Loading conversation history",
        conversationId=conversation_id,
    )
    store = ctx.storage.conversations
    async with ctx.conversation_locks.hold(conversation_id):
        conversation = await store.get(conversation_id)
        if conversation is None:
            return None

        settings = ctx.config.compaction
        if settings.enabled and needs_compaction(conversation, settings.threshold):
            await ConversationCompactor(ctx).compact_unlocked(conversation_id)
            conversation = await store.get(conversation_id)
            if conversation is None:
                return None

        await store.append(conversation_id, ConversationMessage(role="user", content=new_user_message))

    history = [{"role": m.role, "content": m.content} for m in conversation.messages]
    history.append({"role": "user", "content": new_user_message})
    return history


async def append_message(ctx: "AppContext", conversation_id: str, role: str, content: str) -> None:
    """Append one turn while holding the conversation's lock."""
    async with ctx.conversation_locks.hold(conversation_id):
        await ctx.storage.conversations.append(conversation_id, ConversationMessage(role=role, content=content))


async def start_or_resume_conversation(
    ctx: "AppContext",
    conversation_id: str,
    new_user_message: str,
) -> Optional[List[Dict[str, str]]]:
    """Load history for ``conversation_id``, starting the conversation when it is new.

    Returns ``None`` for a new conversation; the caller then sends the bare message.
    """
    history = await load_conversation_with_compaction(ctx, conversation_id, new_user_message)
    if history is None:
        await append_message(ctx, conversation_id, "user", new_user_message)
    return history
