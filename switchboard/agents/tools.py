"""Built-in tools attached to every delegated specialist."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Literal, Optional, Sequence

from pydantic import BaseModel, Field, ValidationError

from switchboard.core.models import ToolCall
from switchboard.core.registry import Tool
from switchboard.services.storage import MemoryStore

logger = logging.getLogger(__name__)

CLARIFY_TOOL_NAME = "clarify"
MEMORY_TOOL_NAME = "memory"

# Never reported in toolsUsed nor forwarded as tool events.
BUILT_IN_TOOLS = frozenset({CLARIFY_TOOL_NAME, MEMORY_TOOL_NAME})

MEMORY_PROMPT_SUFFIX = (
    "\n\nYou have access to a memory tool for storing and retrieving information. "
    "Use it to remember important facts, user preferences, or intermediate results. "
    "Actions: set (save), get (retrieve by key), list (show all), delete (remove)."
)

CLARIFY_PROMPT_SUFFIX = (
    "\n\nIMPORTANT: If the user's query is vague or lacks specifics needed to give a good answer, "
    "you MUST use the clarify tool to ask for more information. Do NOT guess, do NOT ask in plain text, "
    "and do NOT proceed without the needed details. Call clarify with items like: "
    '{items: [{type: "question", text: "Your question here", context: "Why you need this"}]}.'
)


class ClarifyItem(BaseModel):
    type: Literal["question", "option", "confirmation", "action", "warning", "info"]
    text: str
    choices: Optional[List[str]] = Field(default=None, description="Required when type is 'option'")
    context: Optional[str] = None


class ClarifyArgs(BaseModel):
    items: List[ClarifyItem] = Field(default_factory=list)
    # Older prompts emit {"questions": [...]}; normalised into question items.
    questions: Optional[List[Any]] = None

    def normalized_items(self) -> List[Dict[str, Any]]:
        if self.items:
            return [item.model_dump(exclude_none=True) for item in self.items]
        normalized: List[Dict[str, Any]] = []
        for question in self.questions or []:
            if isinstance(question, dict):
                text = question.get("question") or question.get("text") or str(question)
                item: Dict[str, Any] = {"type": "question", "text": str(text)}
                if question.get("context"):
                    item["context"] = str(question["context"])
            else:
                item = {"type": "question", "text": str(question)}
            normalized.append(item)
        return normalized


CLARIFY_TOOL = Tool(
    name=CLARIFY_TOOL_NAME,
    description=(
        "Use when you need information, confirmation, or approval from the user. "
        "Supports: question (free text), option (pick from choices), "
        "confirmation (yes/no), action (declare intent), warning (risk), info (status update). "
        "Only use when you genuinely cannot proceed without user interaction."
    ),
    args_model=ClarifyArgs,
)


def extract_clarify_items(calls: Sequence[ToolCall]) -> List[Dict[str, Any]]:
    """Collect clarification items from every ``clarify`` call, in call order."""
    items: List[Dict[str, Any]] = []
    for call in calls:
        if call.name != CLARIFY_TOOL_NAME:
            continue
        try:
            args = ClarifyArgs.model_validate(call.arguments)
        except ValidationError as exc:
            logger.warning("Ignoring malformed clarify call: %s", exc)
            continue
        items.extend(args.normalized_items())
    return items


class MemoryArgs(BaseModel):
    action: Literal["get", "set", "list", "delete"]
    key: Optional[str] = Field(default=None, description="Required for get, set, and delete actions")
    value: Optional[str] = Field(default=None, description="Required for set action, the value to store")
    context: Optional[str] = Field(default=None, description="Why this was stored (set action only)")
    namespace: Optional[str] = Field(default=None, description="Override the default namespace")


def create_memory_tool(store: MemoryStore, default_namespace: str) -> Tool:
    """Memory tool bound to ``store``; the namespace defaults to the agent name."""

    async def handle(args: MemoryArgs) -> Dict[str, Any]:
        namespace = args.namespace or default_namespace
        key = args.key or ""
        if args.action == "get":
            entry = await store.get_entry(namespace, key)
            if entry is None:
                return {"found": False, "key": key, "namespace": namespace}
            return {
                "found": True,
                "key": entry.key,
                "value": entry.value,
                "context": entry.context,
                "namespace": namespace,
            }
        if args.action == "set":
            entry = await store.save_entry(namespace, key, args.value or "", args.context)
            return {"saved": True, "key": entry.key, "namespace": namespace}
        if args.action == "list":
            entries = await store.list_entries(namespace)
            return {
                "namespace": namespace,
                "count": len(entries),
                "entries": [{"key": e.key, "value": e.value, "context": e.context} for e in entries],
            }
        deleted = await store.delete_entry(namespace, key)
        return {"deleted": deleted, "key": key, "namespace": namespace}

    return Tool(
        name=MEMORY_TOOL_NAME,
        description=(
            "Store and retrieve information across conversations. "
            "Actions: set (save key-value), get (retrieve by key), list (show all entries), "
            "delete (remove by key). Use to remember user preferences, intermediate results, or important facts."
        ),
        args_model=MemoryArgs,
        handler=handle,
    )
