"""Tests for stream writers, event bridging and request lifecycles."""
from __future__ import annotations

import asyncio

import pytest

from scripted import make_context
from switchboard.core.context import current_context, emit
from switchboard.core.errors import RequestCancelled
from switchboard.core.events import BusEvents, StatusCode
from switchboard.core.message_bus import AgentEventBus
from switchboard.core.models import WireEvent
from switchboard.orchestration.requests import RequestRegistry
from switchboard.streaming.sse import StreamWriter, bridge_bus, encode_sse, run_json, stream_events


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


async def drain(writer: StreamWriter):
    return [event async for event in writer.events()]


@pytest.mark.anyio
async def test_writer_numbers_events_and_closes_on_terminal() -> None:
    writer = StreamWriter()
    await writer.write("session:start", {})
    await writer.status(StatusCode.THINKING, "Thinking", agent="supervisor")
    await writer.write("done", {"ok": True})

    assert await writer.write("text-delta", {"text": "late"}) is False
    events = await drain(writer)
    assert [(e.sequence_id, e.event) for e in events] == [(0, "session:start"), (1, "status"), (2, "done")]
    assert events[1].data == {"code": "thinking", "message": "Thinking", "agent": "supervisor"}
    assert writer.closed


def test_encode_sse() -> None:
    event = WireEvent(sequence_id=3, event="text-delta", data={"text": "hi"})
    assert encode_sse(event) == 'id: 3\nevent: text-delta\ndata: {"text": "hi"}\n\n'


@pytest.mark.anyio
async def test_bridge_renames_events_and_adds_tool_name() -> None:
    bus = AgentEventBus()
    writer = StreamWriter()
    unsubscribe = bridge_bus(bus, writer)

    bus.emit(BusEvents.TOOL_CALL, agent="weather", tool="lookup", args={"city": "Paris"})
    bus.emit(BusEvents.TEXT_DELTA, text="not forwarded")
    bus.emit(BusEvents.DELEGATE_START, **{"from": "supervisor", "to": "weather", "query": "q"})
    unsubscribe()
    bus.emit(BusEvents.AGENT_START, agent="weather")
    writer.close()

    events = await drain(writer)
    assert [e.event for e in events] == ["tool-call", "delegate:start"]
    assert events[0].data["toolName"] == "lookup"


def test_registry_supersedes_previous_request() -> None:
    registry = RequestRegistry()
    first = registry.register("conv-1")
    second = registry.register("conv-1")

    assert first.cancelled and first.reason == "superseded"
    assert not second.cancelled

    registry.unregister("conv-1", first)
    assert "conv-1" in registry
    assert registry.cancel("conv-1") is True
    assert second.cancelled
    registry.unregister("conv-1", second)
    assert len(registry) == 0
    assert registry.cancel("conv-1") is False


@pytest.mark.anyio
async def test_stream_starts_with_session_and_ends_with_done() -> None:
    ctx = make_context(lambda request, step: "unused")

    async def handler(writer):
        emit(BusEvents.AGENT_START, agent="echo")
        await writer.write("text-delta", {"text": "hello"})
        assert current_context().originator == "echo"
        return {"toolsUsed": []}

    events = [e async for e in stream_events(ctx, "conv-1", handler, originator="echo")]

    assert [e.event for e in events] == ["session:start", "agent:start", "text-delta", "done"]
    assert events[-1].data == {"toolsUsed": [], "conversationId": "conv-1"}
    assert "conv-1" not in ctx.requests


@pytest.mark.anyio
async def test_handler_failure_ends_stream_with_error() -> None:
    ctx = make_context(lambda request, step: "unused")

    async def handler(writer):
        raise RuntimeError("exploded")

    events = [e async for e in stream_events(ctx, "conv-1", handler)]

    assert [e.event for e in events] == ["session:start", "error"]
    assert events[-1].data == {"conversationId": "conv-1", "error": "exploded"}
    assert len(ctx.requests) == 0


@pytest.mark.anyio
async def test_cancel_produces_exactly_one_cancelled_event() -> None:
    ctx = make_context(lambda request, step: "unused")
    started = asyncio.Event()

    async def handler(writer):
        await writer.write("text-delta", {"text": "working"})
        started.set()
        await asyncio.sleep(10)
        return {}

    async def cancel_when_started():
        await started.wait()
        assert ctx.requests.cancel("conv-1") is True

    canceller = asyncio.create_task(cancel_when_started())
    events = [e async for e in stream_events(ctx, "conv-1", handler)]
    await canceller

    names = [e.event for e in events]
    assert names == ["session:start", "text-delta", "cancelled"]
    assert "conv-1" not in ctx.requests


@pytest.mark.anyio
async def test_closing_the_stream_cancels_the_request() -> None:
    ctx = make_context(lambda request, step: "unused")
    finished = asyncio.Event()

    async def handler(writer):
        try:
            await writer.write("text-delta", {"text": "working"})
            await asyncio.sleep(10)
            return {}
        finally:
            finished.set()

    stream = stream_events(ctx, "conv-1", handler)
    assert (await stream.__anext__()).event == "session:start"
    assert (await stream.__anext__()).event == "text-delta"
    await stream.aclose()

    await asyncio.wait_for(finished.wait(), timeout=2)
    for _ in range(100):
        if not len(ctx.requests):
            break
        await asyncio.sleep(0.01)
    assert len(ctx.requests) == 0


@pytest.mark.anyio
async def test_json_request_reports_cancellation() -> None:
    ctx = make_context(lambda request, step: "unused")

    async def handler():
        ctx.requests.cancel("conv-1")
        raise RequestCancelled()

    body = await run_json(ctx, "conv-1", handler)

    assert body == {"conversationId": "conv-1", "cancelled": True}
    assert len(ctx.requests) == 0


@pytest.mark.anyio
async def test_json_request_adds_conversation_id() -> None:
    ctx = make_context(lambda request, step: "unused")

    async def handler():
        return {"response": "hi"}

    assert await run_json(ctx, "conv-9", handler) == {"response": "hi", "conversationId": "conv-9"}
