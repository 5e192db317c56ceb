"""Scripted stand-in for the model client used across the test-suite."""
from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from pydantic import BaseModel

from switchboard.config import CompactionConfig, Config, ResilienceConfig
from switchboard.core.context import CancellationToken, DelegationContext
from switchboard.core.message_bus import AgentEventBus
from switchboard.core.models import BusEvent, ModelResult, ToolCall, UsageInfo, merge_usage
from switchboard.core.registry import AgentRegistration, Tool
from switchboard.runtime import AppContext, build_app_context
from switchboard.services.llm import ModelRequest, StreamChunk, execute_tool_calls
from switchboard.services.storage import create_memory_storage


def usage(tokens: int = 10, cost: Optional[float] = None, duration_ms: int = 5) -> UsageInfo:
    return UsageInfo(
        input_tokens=tokens,
        output_tokens=tokens,
        total_tokens=tokens * 2,
        cost=cost,
        duration_ms=duration_ms,
    )


@dataclass
class Turn:
    """One model step: text and/or tool calls."""

    text: str = ""
    calls: List[ToolCall] = field(default_factory=list)
    usage: UsageInfo = field(default_factory=usage)


def call(name: str, call_id: Optional[str] = None, **arguments: Any) -> ToolCall:
    return ToolCall(name=name, arguments=arguments, call_id=call_id or f"call_{name}")


Responder = Callable[[ModelRequest, int], Any]


class ScriptedModel:
    """Runs the same tool loop as the real client with answers from ``responder``.

    ``responder(request, step)`` returns a :class:`Turn`, a plain string, an
    exception to raise, or an awaitable of one of those.
    """

    def __init__(self, responder: Responder) -> None:
        self.responder = responder
        self.requests: List[ModelRequest] = []

    async def _turn(self, request: ModelRequest, step: int) -> Turn:
        self.requests.append(request)
        if request.cancellation is not None:
            request.cancellation.raise_if_cancelled()
        outcome = self.responder(request, step)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, str):
            outcome = Turn(text=outcome)
        return outcome

    async def invoke(self, request: ModelRequest) -> ModelResult:
        result = ModelResult()
        for step in range(max(request.max_steps, 1)):
            turn = await self._turn(request, step)
            result.usage = merge_usage(result.usage, turn.usage)
            result.text = turn.text
            if not turn.calls:
                break
            result.tool_calls.extend(turn.calls)
            records, stop = await execute_tool_calls(request.tools, turn.calls)
            result.tool_results.extend(records)
            if stop:
                break
        return result

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamChunk]:
        result = await self.invoke(request)
        for tool_call in result.tool_calls:
            yield StreamChunk("tool-call", tool_call=tool_call)
        for record in result.tool_results:
            yield StreamChunk("tool-result", tool_result=record)
        for word in result.text.split(" "):
            if word:
                yield StreamChunk("text-delta", text=word + " ")
        yield StreamChunk("finish", usage=result.usage)

    def systems(self) -> List[str]:
        return [r.system for r in self.requests]


def scripted_config(**overrides: Any) -> Config:
    values: Dict[str, Any] = {
        "resilience": ResilienceConfig(max_retries=2, base_delay_ms=1, max_delay_ms=2, jitter_factor=0.0),
        "compaction": CompactionConfig(enabled=True, threshold=20, preserve_recent=4),
    }
    values.update(overrides)
    return Config(**values)


def make_context(responder: Responder, *agents: Any, config: Optional[Config] = None) -> AppContext:
    ctx = build_app_context(
        config or scripted_config(),
        model=ScriptedModel(responder),
        storage=create_memory_storage(),
    )
    ctx.registry.register_all(agents)
    return ctx


class LookupArgs(BaseModel):
    city: str


async def _lookup(args: LookupArgs) -> Dict[str, str]:
    return {"city": args.city, "forecast": "sunny"}


def lookup_tool() -> Tool:
    return Tool(name="lookup", description="Look up a forecast", args_model=LookupArgs, handler=_lookup)


def specialist(name: str, **overrides: Any) -> AgentRegistration:
    """Registration with one working tool; its prompt starts with ``You are <name>.``"""
    values: Dict[str, Any] = {
        "name": name,
        "description": f"{name} specialist",
        "instructions": f"You are {name}.",
        "tools": {"lookup": lookup_tool()},
    }
    values.update(overrides)
    return AgentRegistration(**values)


def addressed_to(request: ModelRequest, name: str) -> bool:
    return request.system.startswith(f"You are {name}.")


def root_context(originator: str = "supervisor") -> DelegationContext:
    return DelegationContext(cancellation=CancellationToken(), events=AgentEventBus(), originator=originator)


def recorded(bus: AgentEventBus) -> List[BusEvent]:
    events: List[BusEvent] = []
    bus.subscribe(events.append)
    return events


def planning(request: ModelRequest) -> bool:
    return "routeToAgent" in request.tools or "createTask" in request.tools


def synthesizing(request: ModelRequest) -> bool:
    return (request.prompt or "").startswith("Here are the results")
