"""Retry/backoff policy around the single-attempt transport.

Only overloaded responses are retried.  Success and fatal failures
short-circuit immediately.  Cancellation is cooperative: the token is
checked before every attempt, so an attempt that has already started is
never interrupted.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Protocol

from trendmate.config import Settings, get_config
from trendmate.models import FailureReason, FatalFailure, RetryableFailure, Success

log = logging.getLogger(__name__)

Outcome = Success | RetryableFailure | FatalFailure


class SupportsSend(Protocol):
    async def send(self, operation_id: str, query: str | list[str]) -> Outcome: ...


class CancelToken:
    """Cooperative cancellation flag shared by one workflow sequence."""
    __slots__ = ("_cancelled",)

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


def backoff_delay(
    attempt: int,
    base: float,
    cap: float,
    rng: random.Random | None = None,
) -> float:
    """Delay after the given (1-based) failed attempt.

    Ceiling is ``min(base * 2**attempt, cap)``; equal jitter keeps the
    result in ``[ceiling / 2, ceiling]``.
    """
    ceiling = min(base * (2 ** attempt), cap)
    half = ceiling / 2
    return half + (rng or random).uniform(0, half)


class ResilientClient:
    """Wraps a transport with attempt budget, backoff and cancellation."""

    def __init__(
        self,
        transport: SupportsSend,
        config: Settings | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self.transport = transport
        self.config = config or get_config()
        self._sleep = sleep
        self._rng = rng or random.Random()

    async def send(
        self,
        operation_id: str,
        query: str | list[str],
        max_attempts: int | None = None,
        cancel: CancelToken | None = None,
    ) -> Success | FatalFailure:
        """Send with retries; always returns a terminal outcome."""
        attempts = self.config.max_attempts if max_attempts is None else max_attempts
        if attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {attempts}")
        last: RetryableFailure | None = None

        for attempt in range(1, attempts + 1):
            if cancel is not None and cancel.cancelled:
                log.debug("%s cancelled before attempt %d", operation_id, attempt)
                return FatalFailure(reason=FailureReason.CANCELLED, detail="superseded")

            outcome = await self.transport.send(operation_id, query)
            if not isinstance(outcome, RetryableFailure):
                return outcome

            last = outcome
            if attempt < attempts:
                wait = backoff_delay(
                    attempt, self.config.backoff_base, self.config.backoff_cap, self._rng,
                )
                log.warning(
                    "%s overloaded (%s), retrying in %.2fs (attempt %d/%d)",
                    operation_id, outcome.status, wait, attempt, attempts,
                )
                await self._sleep(wait)

        log.info("%s still overloaded after %d attempts, giving up", operation_id, attempts)
        return FatalFailure(
            reason=last.reason,
            status=last.status,
            detail=f"{last.detail} after {attempts} attempts",
        )
