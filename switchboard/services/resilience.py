"""Retry with exponential backoff and model fallback for upstream calls."""
from __future__ import annotations

import asyncio
import inspect
import logging
import random
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, FrozenSet, Optional, TypeVar, Union

import openai

from switchboard.core.context import CancellationToken, emit_status, get_cancellation
from switchboard.core.errors import RequestCancelled
from switchboard.core.events import StatusCode

if TYPE_CHECKING:
    from switchboard.config import ResilienceConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES: FrozenSet[int] = frozenset({429, 500, 502, 503, 504})
NON_RETRYABLE_STATUS_CODES: FrozenSet[int] = frozenset({400, 401, 403, 404, 422})

_STATUS_IN_MESSAGE = re.compile(r"\b(\d{3})\b")
_TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "econnreset",
    "econnrefused",
    "connection reset",
    "connection refused",
    "network",
    "socket hang up",
    "overloaded",
    "capacity",
    "rate limit",
    "too many requests",
)


@dataclass(frozen=True, slots=True)
class FallbackContext:
    agent: Optional[str]
    current_model: str
    retry_count: int
    error: BaseException


FallbackHook = Callable[[FallbackContext], Union[Optional[str], Awaitable[Optional[str]]]]


@dataclass(frozen=True, slots=True)
class ResiliencePolicy:
    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    jitter_factor: float = 0.2
    on_fallback: Optional[FallbackHook] = None

    @classmethod
    def from_config(cls, config: "ResilienceConfig") -> "ResiliencePolicy":
        on_fallback: Optional[FallbackHook] = None
        if config.fallback_model:
            fallback_model = config.fallback_model

            def on_fallback(context: FallbackContext) -> Optional[str]:
                # never fall back onto the model that just failed
                return None if context.current_model == fallback_model else fallback_model

        return cls(
            max_retries=config.max_retries,
            base_delay_ms=config.base_delay_ms,
            max_delay_ms=config.max_delay_ms,
            jitter_factor=config.jitter_factor,
            on_fallback=on_fallback,
        )


def error_status(error: BaseException) -> Optional[int]:
    """Best-effort HTTP status carried by an exception."""
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def is_retryable_error(error: BaseException) -> bool:
    """Classify an upstream failure.

    Cancellation and auth/validation statuses never retry; 429/5xx, timeouts,
    connection resets and capacity/rate-limit markers do. Anything else fails
    fast.
    """
    if isinstance(error, (RequestCancelled, asyncio.CancelledError)):
        return False

    status = error_status(error)
    if status in RETRYABLE_STATUS_CODES:
        return True
    if status in NON_RETRYABLE_STATUS_CODES:
        return False

    message = str(error).lower()
    match = _STATUS_IN_MESSAGE.search(message)
    if match:
        code = int(match.group(1))
        if code in RETRYABLE_STATUS_CODES:
            return True
        if code in NON_RETRYABLE_STATUS_CODES:
            return False

    if isinstance(error, (openai.APIConnectionError, asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True

    return any(marker in message for marker in _TRANSIENT_MARKERS)


def compute_delay_ms(
    attempt: int,
    policy: ResiliencePolicy,
    rand: Callable[[], float] = random.random,
) -> float:
    """``min(base * 2**attempt, cap)`` plus up to ``jitter_factor`` of that again."""
    delay = min(policy.base_delay_ms * (2 ** attempt), policy.max_delay_ms)
    return delay + delay * policy.jitter_factor * rand()


async def with_resilience(
    operation: Callable[[Optional[str]], Awaitable[T]],
    policy: ResiliencePolicy,
    *,
    agent: Optional[str] = None,
    model_id: Optional[str] = None,
    cancellation: Optional[CancellationToken] = None,
) -> T:
    """Call ``operation`` with retries, then at most one fallback attempt.

    ``operation`` receives ``None`` for normal attempts and the substitute
    model identifier for the fallback attempt.
    """
    token = cancellation if cancellation is not None else get_cancellation()
    last_error: Optional[Exception] = None

    for attempt in range(policy.max_retries + 1):
        try:
            return await operation(None)
        except Exception as exc:  # noqa: BLE001
            if isinstance(exc, RequestCancelled) or (token is not None and token.cancelled):
                raise
            if not is_retryable_error(exc):
                raise
            last_error = exc
            if attempt == policy.max_retries:
                break
            delay_ms = compute_delay_ms(attempt, policy)
            logger.warning(
                "Upstream call failed for %s (attempt %d/%d), retrying in %.0fms: %s",
                agent or "orchestrator",
                attempt + 1,
                policy.max_retries,
                delay_ms,
                exc,
            )
            emit_status(
                StatusCode.RETRYING,
                f"Retrying (attempt {attempt + 1}/{policy.max_retries})",
                agent=agent,
                attempt=attempt + 1,
                maxRetries=policy.max_retries,
                delay=round(delay_ms),
            )
            if token is not None:
                await token.sleep(delay_ms / 1000)
            else:
                await asyncio.sleep(delay_ms / 1000)

    if last_error is None:
        raise ValueError(f"max_retries must be non-negative, got {policy.max_retries}")
    if policy.on_fallback is not None:
        context = FallbackContext(
            agent=agent,
            current_model=model_id or "default",
            retry_count=policy.max_retries,
            error=last_error,
        )
        substitute = policy.on_fallback(context)
        if inspect.isawaitable(substitute):
            substitute = await substitute
        if substitute:
            logger.warning("Retries exhausted for %s, falling back to %s", agent or "orchestrator", substitute)
            emit_status(
                StatusCode.FALLBACK,
                "Switching to fallback model",
                agent=agent,
                currentModel=context.current_model,
                fallbackModel=substitute,
            )
            if token is not None:
                token.raise_if_cancelled()
            return await operation(substitute)

    raise last_error
