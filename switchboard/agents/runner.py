"""Single-agent execution on top of the model client."""
from __future__ import annotations

from dataclasses import replace
from typing import TYPE_CHECKING, Dict, List, Mapping, Optional, Sequence

from switchboard.agents.tools import BUILT_IN_TOOLS, extract_clarify_items
from switchboard.core.context import emit, get_cancellation
from switchboard.core.events import BusEvents
from switchboard.core.models import AgentResponse, ModelResult
from switchboard.core.registry import Tool
from switchboard.services.llm import ModelRequest
from switchboard.services.resilience import with_resilience

if TYPE_CHECKING:
    from switchboard.runtime import AppContext


async def invoke_model(
    ctx: "AppContext",
    request: ModelRequest,
    agent_name: Optional[str] = None,
) -> ModelResult:
    """Invoke the model under the resilience policy and the current cancellation token."""
    token = request.cancellation or get_cancellation()
    request = replace(request, cancellation=token)

    async def attempt(override_model: Optional[str]) -> ModelResult:
        if override_model is None:
            return await ctx.model.invoke(request)
        return await ctx.model.invoke(replace(request, model=override_model))

    return await with_resilience(
        attempt,
        ctx.resilience,
        agent=agent_name,
        model_id=request.model,
        cancellation=token,
    )


async def run_agent(
    ctx: "AppContext",
    system: str,
    tools: Mapping[str, Tool],
    message: Optional[str] = None,
    *,
    messages: Optional[List[Dict[str, str]]] = None,
    model: Optional[str] = None,
    max_steps: Optional[int] = None,
    agent_name: Optional[str] = None,
) -> AgentResponse:
    """Run one agent to completion and normalize its output.

    Tool activity other than the built-in tools is re-published on the
    current event bus so a listening stream can show it.
    """
    request = ModelRequest(
        system=system,
        prompt=message,
        messages=messages,
        tools=dict(tools),
        max_steps=max_steps or ctx.default_max_steps,
        model=model,
    )
    result = await invoke_model(ctx, request, agent_name)

    tools_used: List[str] = []
    for call in result.tool_calls:
        if call.name in BUILT_IN_TOOLS:
            continue
        emit(BusEvents.TOOL_CALL, agent=agent_name, tool=call.name, args=call.arguments)
        if call.name not in tools_used:
            tools_used.append(call.name)
    for record in result.tool_results:
        if record.name not in BUILT_IN_TOOLS:
            emit(BusEvents.TOOL_RESULT, agent=agent_name, tool=record.name, result=record.output)

    return AgentResponse(
        text=result.text,
        items=tuple(extract_clarify_items(result.tool_calls)),
        tools_used=tuple(tools_used),
        usage=result.usage,
    )


async def build_memory_context(ctx: "AppContext", memory_ids: Sequence[str]) -> Optional[str]:
    """Render the requested memory namespaces as ``[namespace] key: value`` lines."""
    if not memory_ids:
        return None
    entries = await ctx.storage.memory.load_memories_for_ids(memory_ids)
    if not entries:
        return None
    return "\n".join(f"[{entry.namespace}] {entry.key}: {entry.value}" for entry in entries)


def with_memory_context(system: str, memory_context: Optional[str]) -> str:
    if not memory_context:
        return system
    return f"{system}\n\n## Memory Context\n{memory_context}"
