"""Timeout and retry policy applied around every processor call."""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import httpx
from loguru import logger

from expertpay_api.core.errors import ProcessorUnavailable
from expertpay_api.core.settings import settings


T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    ProcessorUnavailable,
    asyncio.TimeoutError,
    ConnectionError,
    httpx.TransportError,
)


@dataclass(slots=True)
class RetryPolicy:
    timeout_seconds: float
    max_attempts: int
    initial_backoff_seconds: float
    max_backoff_seconds: float
    jitter: bool = True

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            timeout_seconds=settings.processor_timeout_seconds,
            max_attempts=settings.processor_max_attempts,
            initial_backoff_seconds=settings.processor_initial_backoff_seconds,
            max_backoff_seconds=settings.processor_max_backoff_seconds,
        )

    def backoff(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based), capped and jittered by +/-25%."""

        delay = min(self.max_backoff_seconds, self.initial_backoff_seconds * (2 ** (attempt - 1)))
        if self.jitter:
            delay += random.uniform(-delay * 0.25, delay * 0.25)
        return max(delay, 0.0)


async def call_processor(
    operation: str,
    func: Callable[[], Awaitable[T]],
    *,
    processor: str,
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``func`` with a per-attempt timeout, retrying transient failures.

    Adapters pass an idempotency key to the processor so a retried call never
    moves money twice. Non-transient errors such as ``PaymentDeclined`` are
    raised immediately; exhausting the attempts raises ``ProcessorUnavailable``.
    """

    policy = policy or RetryPolicy.from_settings()
    attempts = max(policy.max_attempts, 1)
    last_error: BaseException | None = None

    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_seconds)
        except TRANSIENT_ERRORS as exc:
            last_error = exc
            if isinstance(exc, ProcessorUnavailable) and not exc.transient:
                raise
            if attempt >= attempts:
                break
            delay = policy.backoff(attempt)
            logger.warning(
                "Processor call failed; retrying",
                processor=processor,
                operation=operation,
                attempt=attempt,
                delay=round(delay, 3),
                error=repr(exc),
            )
            await sleep(delay)

    logger.error(
        "Processor call exhausted retries",
        processor=processor,
        operation=operation,
        attempts=attempts,
        error=repr(last_error),
    )
    if isinstance(last_error, ProcessorUnavailable):
        raise last_error
    raise ProcessorUnavailable(f"{processor} {operation} failed: {last_error!r}") from last_error


__all__ = ["RetryPolicy", "TRANSIENT_ERRORS", "call_processor"]
