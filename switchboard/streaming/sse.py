"""Serialized, cancelable event streams and their Server-Sent Events encoding.

Each connection owns one :class:`StreamWriter`. Producers (the request
handler and every nested call publishing on the event bus) write through it;
sequence ids are assigned at write time, so the order in which events were
produced is the order the client sees. A terminal event closes the writer
and anything written afterwards is dropped.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from fastapi.responses import StreamingResponse

from switchboard.core.context import CancellationToken, DelegationContext, delegation_scope
from switchboard.core.errors import RequestCancelled
from switchboard.core.events import BUS_TO_WIRE, TERMINAL_EVENTS, BusEvents, StatusCode, WireEvents
from switchboard.core.message_bus import AgentEventBus
from switchboard.core.models import BusEvent, WireEvent

if TYPE_CHECKING:
    from switchboard.runtime import AppContext

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

# Produces the ``done`` payload; raising means the stream ends in error/cancelled.
StreamHandler = Callable[["StreamWriter"], Awaitable[Dict[str, Any]]]
JsonHandler = Callable[[], Awaitable[Dict[str, Any]]]


class StreamWriter:
    def __init__(self) -> None:
        self._queue: asyncio.Queue[Optional[WireEvent]] = asyncio.Queue()
        self._next_id = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def write_nowait(self, event: str, data: Dict[str, Any]) -> bool:
        """Enqueue one event. Returns ``False`` if the stream already ended."""
        if self._closed:
            return False
        self._queue.put_nowait(WireEvent(sequence_id=self._next_id, event=event, data=data))
        self._next_id += 1
        if event in TERMINAL_EVENTS:
            self.close()
        return True

    async def write(self, event: str, data: Dict[str, Any]) -> bool:
        return self.write_nowait(event, data)

    async def status(self, code: StatusCode, message: str, agent: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {"code": code.value, "message": message}
        if agent:
            payload["agent"] = agent
        await self.write(WireEvents.STATUS, payload)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    async def events(self) -> AsyncIterator[WireEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event


def bridge_bus(bus: AgentEventBus, writer: StreamWriter) -> Callable[[], None]:
    """Forward bus events to ``writer`` under their wire names."""

    def forward(event: BusEvent) -> None:
        wire_name = BUS_TO_WIRE.get(event.type)
        if wire_name is None:
            return
        data = dict(event.data)
        if event.type in (BusEvents.TOOL_CALL, BusEvents.TOOL_RESULT) and "tool" in data:
            data.setdefault("toolName", data["tool"])
        writer.write_nowait(wire_name, data)

    return bus.subscribe(forward)


def encode_sse(event: WireEvent) -> str:
    payload = json.dumps(event.data, default=str)
    return f"id: {event.sequence_id}\nevent: {event.event}\ndata: {payload}\n\n"


async def stream_events(
    ctx: "AppContext",
    conversation_id: str,
    handler: StreamHandler,
    *,
    originator: Optional[str] = None,
) -> AsyncIterator[WireEvent]:
    """Run ``handler`` for one connection and yield its wire events.

    The stream always starts with ``session:start`` and ends with exactly one
    of ``done``, ``cancelled`` or ``error``. Closing the iterator early (the
    client went away) cancels the request.
    """
    token = ctx.requests.register(conversation_id)
    bus = AgentEventBus()
    writer = StreamWriter()
    unsubscribe = bridge_bus(bus, writer)
    root = DelegationContext(cancellation=token, events=bus, originator=originator)
    writer.write_nowait(WireEvents.SESSION_START, {"conversationId": conversation_id})

    async def drive() -> None:
        try:
            with delegation_scope(root):
                done = await token.run(handler(writer))
            done.setdefault("conversationId", conversation_id)
            writer.write_nowait(WireEvents.DONE, done)
        except RequestCancelled:
            writer.write_nowait(WireEvents.CANCELLED, {"conversationId": conversation_id})
        except asyncio.CancelledError:
            writer.write_nowait(WireEvents.CANCELLED, {"conversationId": conversation_id})
            raise
        except Exception as exc:  # noqa: BLE001
            if token.cancelled:
                writer.write_nowait(WireEvents.CANCELLED, {"conversationId": conversation_id})
            else:
                logger.exception("Stream for conversation %s failed", conversation_id)
                writer.write_nowait(WireEvents.ERROR, {"conversationId": conversation_id, "error": str(exc)})
        finally:
            unsubscribe()
            ctx.requests.unregister(conversation_id, token)
            writer.close()

    task = asyncio.create_task(drive())
    try:
        async for event in writer.events():
            yield event
    finally:
        if not task.done():
            token.cancel("client disconnected")


async def run_json(
    ctx: "AppContext",
    conversation_id: str,
    handler: JsonHandler,
    *,
    originator: Optional[str] = None,
) -> Dict[str, Any]:
    """Non-streaming counterpart of :func:`stream_events`."""
    token: CancellationToken = ctx.requests.register(conversation_id)
    root = DelegationContext(cancellation=token, events=AgentEventBus(), originator=originator)
    try:
        with delegation_scope(root):
            body = await token.run(handler())
    except RequestCancelled:
        return {"conversationId": conversation_id, "cancelled": True}
    finally:
        ctx.requests.unregister(conversation_id, token)
    body.setdefault("conversationId", conversation_id)
    return body


def sse_response(events: AsyncIterator[WireEvent]) -> StreamingResponse:
    async def body() -> AsyncIterator[str]:
        async for event in events:
            yield encode_sse(event)

    return StreamingResponse(body(), media_type="text/event-stream", headers=SSE_HEADERS)
