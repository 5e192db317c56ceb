"""Event vocabularies for the internal bus and the client wire protocol."""
from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet


class WireEvents:
    """Event names written to client connections."""

    SESSION_START = "session:start"
    TEXT_DELTA = "text-delta"
    TOOL_CALL = "tool-call"
    TOOL_RESULT = "tool-result"
    DONE = "done"
    CANCELLED = "cancelled"
    ERROR = "error"
    AGENT_START = "agent:start"
    AGENT_END = "agent:end"
    AGENT_THINK = "agent:think"
    AGENT_PLAN = "agent:plan"
    ASK_USER = "ask:user"
    DELEGATE_START = "delegate:start"
    DELEGATE_END = "delegate:end"
    SKILL_INJECT = "skill:inject"
    STATUS = "status"


TERMINAL_EVENTS: FrozenSet[str] = frozenset(
    {WireEvents.DONE, WireEvents.CANCELLED, WireEvents.ERROR}
)


class BusEvents:
    """Event names published on the in-process event bus."""

    TEXT_DELTA = "text:delta"
    TOOL_CALL = "tool:call"
    TOOL_RESULT = "tool:result"
    AGENT_START = "agent:start"
    AGENT_END = "agent:end"
    DELEGATE_START = "delegate:start"
    DELEGATE_END = "delegate:end"
    SKILL_INJECT = "skill:inject"
    STATUS = "status"


# Bus events forwarded to a listening connection and the wire name they take.
BUS_TO_WIRE: Dict[str, str] = {
    BusEvents.AGENT_START: WireEvents.AGENT_START,
    BusEvents.AGENT_END: WireEvents.AGENT_END,
    BusEvents.DELEGATE_START: WireEvents.DELEGATE_START,
    BusEvents.DELEGATE_END: WireEvents.DELEGATE_END,
    BusEvents.TOOL_CALL: WireEvents.TOOL_CALL,
    BusEvents.TOOL_RESULT: WireEvents.TOOL_RESULT,
    BusEvents.SKILL_INJECT: WireEvents.SKILL_INJECT,
    BusEvents.STATUS: WireEvents.STATUS,
}


class StatusCode(str, Enum):
    """Machine-readable codes carried by ``status`` events."""

    THINKING = "thinking"
    PLANNING = "planning"
    EXECUTING_TASKS = "executing-tasks"
    SYNTHESIZING = "synthesizing"
    COMPACTING = "compacting"
    RETRYING = "retrying"
    FALLBACK = "fallback"
    GUARD_CHECK = "guard-check"
    LOADING_CONTEXT = "loading-context"
    PROCESSING = "processing"
