"""Core data models shared across orchestration components."""
from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(slots=True)
class UsageInfo:
    """Token, cost and timing counters for one stage of a request.

    ``cost`` is ``None`` when the provider did not report one.
    """

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cost: Optional[float] = None
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "totalTokens": self.total_tokens,
            "cost": self.cost,
            "durationMs": self.duration_ms,
        }


def merge_usage(*usages: UsageInfo) -> UsageInfo:
    """Aggregate usage across stages.

    Tokens and non-null costs are summed. Durations overlap when stages run
    concurrently, so the merged duration is the maximum, not the sum.
    """
    merged = UsageInfo()
    for usage in usages:
        merged.input_tokens += usage.input_tokens
        merged.output_tokens += usage.output_tokens
        merged.total_tokens += usage.total_tokens
        if usage.cost is not None:
            merged.cost = (merged.cost or 0.0) + usage.cost
        merged.duration_ms = max(merged.duration_ms, usage.duration_ms)
    return merged


@dataclass(frozen=True, slots=True)
class Task:
    """A sub-request declared by the orchestrator for one specialist."""

    agent: str
    query: str
    skills: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"agent": self.agent, "query": self.query}
        if self.skills:
            data["skills"] = list(self.skills)
        return data


@dataclass(frozen=True, slots=True)
class AgentResponse:
    """Normalized output of a specialist run."""

    text: str
    items: Tuple[Dict[str, Any], ...] = ()
    tools_used: Tuple[str, ...] = ()
    usage: Optional[UsageInfo] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"response": self.text, "toolsUsed": list(self.tools_used)}
        if self.items:
            data["items"] = [dict(item) for item in self.items]
        if self.usage is not None:
            data["usage"] = self.usage.to_dict()
        return data


@dataclass(frozen=True, slots=True)
class TaskResult:
    """Outcome of one delegated task. ``error`` marks policy or execution failures."""

    agent: str
    query: str
    response: AgentResponse
    response_skills: Tuple[str, ...] = ()
    error: bool = False


@dataclass(frozen=True, slots=True)
class ToolCall:
    name: str
    arguments: Dict[str, Any]
    call_id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ToolResultRecord:
    name: str
    output: Any
    call_id: Optional[str] = None


@dataclass(slots=True)
class ModelResult:
    """Result of one model invocation, tool loop included."""

    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    tool_results: List[ToolResultRecord] = field(default_factory=list)
    usage: UsageInfo = field(default_factory=UsageInfo)


@dataclass(frozen=True, slots=True)
class GuardResult:
    allowed: bool
    reason: Optional[str] = None


@dataclass(slots=True)
class ConversationMessage:
    role: str
    content: str
    timestamp: str = field(default_factory=utc_now_iso)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationMessage":
        return cls(
            role=data["role"],
            content=data["content"],
            timestamp=data.get("timestamp") or utc_now_iso(),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(slots=True)
class Conversation:
    id: str
    messages: List[ConversationMessage] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "messages": [message.to_dict() for message in self.messages],
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Conversation":
        return cls(
            id=data["id"],
            messages=[ConversationMessage.from_dict(m) for m in data.get("messages", [])],
            created_at=data.get("createdAt") or utc_now_iso(),
            updated_at=data.get("updatedAt") or utc_now_iso(),
        )


@dataclass(frozen=True, slots=True)
class ConversationSummary:
    id: str
    message_count: int
    updated_at: str


@dataclass(slots=True)
class MemoryEntry:
    key: str
    value: str
    context: str = ""
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)
    namespace: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "key": self.key,
            "value": self.value,
            "context": self.context,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if self.namespace is not None:
            data["namespace"] = self.namespace
        return data


class SkillPhase(str, Enum):
    """When a skill's instructions are injected."""

    QUERY = "query"
    RESPONSE = "response"
    BOTH = "both"

    @property
    def affects_query(self) -> bool:
        return self in (SkillPhase.QUERY, SkillPhase.BOTH)

    @property
    def affects_response(self) -> bool:
        return self in (SkillPhase.RESPONSE, SkillPhase.BOTH)


@dataclass(frozen=True, slots=True)
class Skill:
    name: str
    description: str
    phase: SkillPhase
    content: str
    tags: Tuple[str, ...] = ()
    raw_content: str = ""
    updated_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "phase": self.phase.value,
            "content": self.content,
            "tags": list(self.tags),
            "rawContent": self.raw_content,
            "updatedAt": self.updated_at,
        }


@dataclass(frozen=True, slots=True)
class PromptOverride:
    prompt: str
    updated_at: str = field(default_factory=utc_now_iso)


@dataclass(frozen=True, slots=True)
class Command:
    """Named ad-hoc agent: instructions plus tool names and model settings."""

    name: str
    description: str
    system: str
    tools: Tuple[str, ...] = ()
    model: Optional[str] = None
    format: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "system": self.system,
            "tools": list(self.tools),
        }
        if self.model:
            data["model"] = self.model
        if self.format:
            data["format"] = self.format
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Command":
        return cls(
            name=data["name"],
            description=data.get("description", ""),
            system=data["system"],
            tools=tuple(data.get("tools") or ()),
            model=data.get("model"),
            format=data.get("format"),
        )


@dataclass(frozen=True, slots=True)
class AudioEntry:
    id: str
    mime_type: str
    size: int
    created_at: str = field(default_factory=utc_now_iso)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class WireEvent:
    """One event on a connection's output stream."""

    sequence_id: int
    event: str
    data: Dict[str, Any]


@dataclass(frozen=True, slots=True)
class BusEvent:
    """Event published on the in-process bus by nested calls."""

    type: str
    data: Dict[str, Any]
    timestamp: float = 0.0


def new_conversation_id() -> str:
    return f"conv_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


@dataclass(slots=True)
class AgentRequest:
    """Transport-independent shape of an inbound agent request."""

    message: str
    conversation_id: Optional[str] = None
    model: Optional[str] = None
    memory_ids: Tuple[str, ...] = ()
    plan_mode: bool = False
    approved_plan: Optional[List[Task]] = None
    autonomous: Optional[bool] = None
