"""Call-scoped delegation context carried across asynchronous work.

A :class:`DelegationContext` is installed in a :mod:`contextvars` variable so
that any coroutine started inside :func:`delegation_scope` (including tasks
spawned with ``asyncio.gather``/``create_task``, which copy the current
context) observes the nearest enclosing context without it being passed
explicitly. Leaving the scope restores the outer context.
"""
from __future__ import annotations

import asyncio
import contextvars
import inspect
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterator, Optional, Tuple, TypeVar

from .errors import RequestCancelled
from .events import BusEvents, StatusCode

if TYPE_CHECKING:
    from .message_bus import AgentEventBus

T = TypeVar("T")


class CancellationToken:
    """Request-wide cancellation signal shared by every derived context."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> bool:
        """Fire the token. Returns ``False`` if it had already fired."""
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        return True

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RequestCancelled()

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless the token fires first."""
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(seconds, 0.0))
        except asyncio.TimeoutError:
            return
        raise RequestCancelled()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable``, abandoning it if the token fires meanwhile."""
        if self._event.is_set():
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise RequestCancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            waiter.cancel()
            raise
        if work in done:
            waiter.cancel()
            return work.result()
        work.cancel()
        await asyncio.gather(work, return_exceptions=True)
        raise RequestCancelled()


@dataclass(frozen=True, slots=True)
class DelegationContext:
    """Immutable per-call context. ``depth`` always equals ``len(chain)``."""

    chain: Tuple[str, ...] = ()
    depth: int = 0
    cancellation: Optional[CancellationToken] = None
    events: Optional["AgentEventBus"] = None
    originator: Optional[str] = None

    def derive(self, agent_name: str) -> "DelegationContext":
        """Child context for a call into ``agent_name``; token and sink are shared."""
        return replace(self, chain=self.chain + (agent_name,), depth=self.depth + 1)

    @property
    def caller(self) -> Optional[str]:
        return self.chain[-1] if self.chain else self.originator


_current: contextvars.ContextVar[Optional[DelegationContext]] = contextvars.ContextVar(
    "switchboard_delegation_context", default=None
)


def current_context() -> Optional[DelegationContext]:
    return _current.get()


@contextmanager
def delegation_scope(context: DelegationContext) -> Iterator[DelegationContext]:
    token = _current.set(context)
    try:
        yield context
    finally:
        _current.reset(token)


async def run_with_context(
    context: DelegationContext,
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    **kwargs: Any,
) -> T:
    """Run ``fn`` so everything it awaits sees ``context``."""
    with delegation_scope(context):
        return await fn(*args, **kwargs)


def get_event_bus() -> Optional["AgentEventBus"]:
    context = _current.get()
    return context.events if context else None


def get_cancellation() -> Optional[CancellationToken]:
    context = _current.get()
    return context.cancellation if context else None


def emit(event_type: str, **data: Any) -> None:
    """Publish on the current context's bus, if one is attached."""
    bus = get_event_bus()
    if bus is not None:
        bus.emit(event_type, **data)


def emit_status(
    code: StatusCode,
    message: str,
    agent: Optional[str] = None,
    **metadata: Any,
) -> None:
    payload: dict = {"code": code.value, "message": message}
    if agent:
        payload["agent"] = agent
    if metadata:
        payload["metadata"] = metadata
    emit(BusEvents.STATUS, **payload)
