"""Model invocation: client pool, tool loop and streaming for OpenAI-compatible APIs."""
from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from openai import AsyncOpenAI
from pydantic import ValidationError

from switchboard.config import OpenAIConfig
from switchboard.core.context import CancellationToken
from switchboard.core.errors import RequestCancelled
from switchboard.core.models import ModelResult, ToolCall, ToolResultRecord, UsageInfo
from switchboard.core.registry import Tool

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ModelRequest:
    """Everything a model invocation needs. ``messages`` wins over ``prompt``."""

    system: str
    prompt: Optional[str] = None
    messages: Optional[List[Dict[str, str]]] = None
    tools: Mapping[str, Tool] = field(default_factory=dict)
    max_steps: int = 5
    model: Optional[str] = None
    cancellation: Optional[CancellationToken] = None

    def chat_messages(self) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = []
        if self.system:
            messages.append({"role": "system", "content": self.system})
        if self.messages:
            messages.extend(dict(m) for m in self.messages)
        else:
            messages.append({"role": "user", "content": self.prompt or ""})
        return messages


@dataclass(frozen=True, slots=True)
class StreamChunk:
    """Incremental output of a streaming invocation.

    ``type`` is one of ``text-delta``, ``tool-call``, ``tool-result`` or
    ``finish``; the finish chunk carries the aggregated usage.
    """

    type: str
    text: str = ""
    tool_call: Optional[ToolCall] = None
    tool_result: Optional[ToolResultRecord] = None
    usage: Optional[UsageInfo] = None


class ModelClient(Protocol):
    async def invoke(self, request: ModelRequest) -> ModelResult:
        ...

    def stream(self, request: ModelRequest) -> AsyncIterator[StreamChunk]:
        ...


async def execute_tool_calls(
    tools: Mapping[str, Tool],
    calls: Sequence[ToolCall],
) -> Tuple[List[ToolResultRecord], bool]:
    """Run handlers for one step of tool calls.

    Returns the produced results and whether the loop must stop because a
    declaration-only tool was called.
    """
    results: List[ToolResultRecord] = []
    stop = False
    for call in calls:
        tool = tools.get(call.name)
        if tool is None:
            results.append(ToolResultRecord(call.name, {"error": f"Unknown tool: {call.name}"}, call.call_id))
            continue
        if tool.declaration_only:
            stop = True
            continue
        try:
            arguments = tool.parse(call.arguments)
        except ValidationError as exc:
            results.append(ToolResultRecord(call.name, {"error": f"Invalid arguments: {exc}"}, call.call_id))
            continue
        try:
            output = await tool.handler(arguments)
        except (RequestCancelled, asyncio.CancelledError):
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("Tool %s failed: %s", call.name, exc)
            output = {"error": str(exc)}
        results.append(ToolResultRecord(call.name, output, call.call_id))
    return results, stop


def _parse_arguments(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Discarding malformed tool arguments: %r", raw[:200])
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _tool_specs(tools: Mapping[str, Tool]) -> Optional[List[Dict[str, Any]]]:
    if not tools:
        return None
    return [
        {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.json_schema(),
            },
        }
        for tool in tools.values()
    ]


def _add_usage(usage: UsageInfo, raw: Any) -> None:
    if raw is None:
        return
    prompt_tokens = getattr(raw, "prompt_tokens", 0) or 0
    completion_tokens = getattr(raw, "completion_tokens", 0) or 0
    usage.input_tokens += prompt_tokens
    usage.output_tokens += completion_tokens
    usage.total_tokens += getattr(raw, "total_tokens", None) or (prompt_tokens + completion_tokens)
    cost = getattr(raw, "cost", None)
    if isinstance(cost, (int, float)):
        usage.cost = (usage.cost or 0.0) + float(cost)


def _append_step(
    messages: List[Dict[str, Any]],
    content: Optional[str],
    calls: Sequence[ToolCall],
    results: Sequence[ToolResultRecord],
) -> None:
    messages.append(
        {
            "role": "assistant",
            "content": content,
            "tool_calls": [
                {
                    "id": call.call_id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                }
                for call in calls
            ],
        }
    )
    outputs = {result.call_id: result.output for result in results}
    for call in calls:
        output = outputs.get(call.call_id, {"recorded": True})
        messages.append(
            {"role": "tool", "tool_call_id": call.call_id, "content": json.dumps(output, default=str)}
        )


class LLMPool:
    """Manages a shared OpenAI client with per-model concurrency limiting."""

    def __init__(self, config: OpenAIConfig) -> None:
        self._config = config
        self._client: Optional[AsyncOpenAI] = None
        self._semaphores: Dict[str, asyncio.Semaphore] = {}

    @property
    def default_model(self) -> str:
        return self._config.default_model

    @asynccontextmanager
    async def acquire(self, model_name: str) -> AsyncIterator[AsyncOpenAI]:
        """Acquire access to the client with concurrency control."""
        semaphore = self._semaphores.get(model_name)
        if semaphore is None:
            semaphore = self._semaphores[model_name] = asyncio.Semaphore(self._config.max_concurrent)
        async with semaphore:
            if self._client is None:
                # Lazy initialization on first use
                self._client = AsyncOpenAI(api_key=self._config.api_key, base_url=self._config.base_url)
            yield self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


class OpenAIModelClient:
    """:class:`ModelClient` backed by the chat completions API."""

    def __init__(self, pool: LLMPool) -> None:
        self._pool = pool

    async def _complete(self, model: str, **kwargs: Any) -> Any:
        async with self._pool.acquire(model) as client:
            return await client.chat.completions.create(model=model, **kwargs)

    async def _call(self, request: ModelRequest, model: str, **kwargs: Any) -> Any:
        call = self._complete(model, **kwargs)
        if request.cancellation is not None:
            return await request.cancellation.run(call)
        return await call

    async def invoke(self, request: ModelRequest) -> ModelResult:
        model = request.model or self._pool.default_model
        messages = request.chat_messages()
        specs = _tool_specs(request.tools)
        result = ModelResult()
        start = time.perf_counter()

        for _ in range(max(request.max_steps, 1)):
            kwargs: Dict[str, Any] = {"messages": messages}
            if specs:
                kwargs["tools"] = specs
            response = await self._call(request, model, **kwargs)
            _add_usage(result.usage, response.usage)

            message = response.choices[0].message
            calls = [
                ToolCall(tc.function.name, _parse_arguments(tc.function.arguments), tc.id)
                for tc in (message.tool_calls or [])
            ]
            result.text = message.content or ""
            if not calls:
                break

            result.tool_calls.extend(calls)
            records, stop = await execute_tool_calls(request.tools, calls)
            result.tool_results.extend(records)
            if stop:
                break
            _append_step(messages, message.content, calls, records)

        result.usage.duration_ms = round((time.perf_counter() - start) * 1000)
        return result

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamChunk]:
        model = request.model or self._pool.default_model
        messages = request.chat_messages()
        specs = _tool_specs(request.tools)
        usage = UsageInfo()
        start = time.perf_counter()
        token = request.cancellation

        for _ in range(max(request.max_steps, 1)):
            pending: Dict[int, Dict[str, Any]] = {}
            text_parts: List[str] = []
            kwargs: Dict[str, Any] = {
                "messages": messages,
                "stream": True,
                "stream_options": {"include_usage": True},
            }
            if specs:
                kwargs["tools"] = specs

            async with self._pool.acquire(model) as client:
                create = client.chat.completions.create(model=model, **kwargs)
                response = await (token.run(create) if token is not None else create)
                async for chunk in response:
                    if token is not None:
                        token.raise_if_cancelled()
                    _add_usage(usage, getattr(chunk, "usage", None))
                    if not chunk.choices:
                        continue
                    delta = chunk.choices[0].delta
                    if delta.content:
                        text_parts.append(delta.content)
                        yield StreamChunk("text-delta", text=delta.content)
                    for tc in delta.tool_calls or []:
                        slot = pending.setdefault(tc.index, {"id": None, "name": "", "arguments": ""})
                        if tc.id:
                            slot["id"] = tc.id
                        if tc.function is not None:
                            slot["name"] += tc.function.name or ""
                            slot["arguments"] += tc.function.arguments or ""

            if not pending:
                break
            calls = [
                ToolCall(slot["name"], _parse_arguments(slot["arguments"]), slot["id"])
                for _, slot in sorted(pending.items())
            ]
            for call in calls:
                yield StreamChunk("tool-call", tool_call=call)
            records, stop = await execute_tool_calls(request.tools, calls)
            for record in records:
                yield StreamChunk("tool-result", tool_result=record)
            if stop:
                break
            _append_step(messages, "".join(text_parts) or None, calls, records)

        usage.duration_ms = round((time.perf_counter() - start) * 1000)
        yield StreamChunk("finish", usage=usage)
