"""Direct (non-delegated) calls into a single specialist agent."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, List, Optional, Tuple

from switchboard.agents.runner import build_memory_context, run_agent, with_memory_context
from switchboard.agents.tools import BUILT_IN_TOOLS
from switchboard.core.context import get_cancellation
from switchboard.core.events import StatusCode, WireEvents
from switchboard.core.models import AgentRequest, UsageInfo, WireEvent, new_conversation_id
from switchboard.core.registry import AgentRegistration
from switchboard.orchestration.compaction import append_message, start_or_resume_conversation
from switchboard.services.llm import ModelRequest
from switchboard.streaming.sse import StreamWriter, run_json, stream_events

if TYPE_CHECKING:
    from switchboard.runtime import AppContext

logger = logging.getLogger(__name__)


class SpecialistRunner:
    """Serves requests addressed straight to one specialist.

    ``instructions`` replaces the registry prompt; ad-hoc command agents that
    are never registered pass their system prompt this way.
    """

    def __init__(self, ctx: "AppContext", registration: AgentRegistration, instructions: Optional[str] = None) -> None:
        self._ctx = ctx
        self.registration = registration
        self._instructions = instructions

    @property
    def name(self) -> str:
        return self.registration.name

    async def _prepare(self, request: AgentRequest) -> Tuple[str, Optional[List[Dict[str, str]]]]:
        system = with_memory_context(
            self._instructions or self._ctx.registry.resolved_prompt(self.name) or "",
            await build_memory_context(self._ctx, request.memory_ids),
        )
        conversation_id = request.conversation_id
        if not conversation_id:
            return system, None
        history = await start_or_resume_conversation(self._ctx, conversation_id, request.message)
        return system, history

    async def _save_reply(self, conversation_id: Optional[str], text: str) -> None:
        if conversation_id and text:
            await append_message(self._ctx, conversation_id, "assistant", text)

    async def handle_json(self, request: AgentRequest) -> Dict[str, Any]:
        conversation_id = request.conversation_id or new_conversation_id()

        async def handler() -> Dict[str, Any]:
            system, history = await self._prepare(request)
            response = await run_agent(
                self._ctx,
                system,
                self.registration.tools,
                None if history else request.message,
                messages=history,
                model=request.model,
                agent_name=self.name,
            )
            await self._save_reply(request.conversation_id, response.text)
            return response.to_dict()

        return await run_json(self._ctx, conversation_id, handler, originator=self.name)

    def handle_stream(self, request: AgentRequest) -> AsyncIterator[WireEvent]:
        conversation_id = request.conversation_id or new_conversation_id()

        async def handler(writer: StreamWriter) -> Dict[str, Any]:
            await writer.status(StatusCode.PROCESSING, "Processing request", agent=self.name)
            system, history = await self._prepare(request)
            model_request = ModelRequest(
                system=system,
                prompt=None if history else request.message,
                messages=history,
                tools=dict(self.registration.tools),
                max_steps=self._ctx.default_max_steps,
                model=request.model,
                cancellation=get_cancellation(),
            )

            parts: List[str] = []
            tools_used: List[str] = []
            usage = UsageInfo()
            async for chunk in self._ctx.model.stream(model_request):
                if chunk.type == "text-delta":
                    parts.append(chunk.text)
                    await writer.write(WireEvents.TEXT_DELTA, {"text": chunk.text})
                elif chunk.type == "tool-call" and chunk.tool_call is not None:
                    call = chunk.tool_call
                    if call.name not in BUILT_IN_TOOLS and call.name not in tools_used:
                        tools_used.append(call.name)
                    await writer.write(WireEvents.TOOL_CALL, {"toolName": call.name, "args": call.arguments})
                elif chunk.type == "tool-result" and chunk.tool_result is not None:
                    record = chunk.tool_result
                    await writer.write(WireEvents.TOOL_RESULT, {"toolName": record.name, "result": record.output})
                elif chunk.type == "finish" and chunk.usage is not None:
                    usage = chunk.usage

            await self._save_reply(request.conversation_id, "".join(parts))
            return {"toolsUsed": tools_used, "usage": usage.to_dict()}

        return stream_events(self._ctx, conversation_id, handler, originator=self.name)
