"""Bounded exponential backoff for destination-store writes.

One parameterised policy object replaces the per-script retry loops:
``delay_for(n)`` is the pause after the n-th failed attempt,
``base_delay_s * factor ** (n - 1)`` capped at ``max_delay_s``.  With the
defaults (15 s, ×2, 3 attempts) an item is tried three times with 15 s
and 30 s pauses in between, and never a fourth time.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from .errors import TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    """Retry schedule for transient destination failures.

    Parameters
    ----------
    base_delay_s : float
        Pause after the first failed attempt.
    factor : float
        Multiplier applied to the pause after each further failure.
    max_attempts : int
        Maximum number of tries (including the first).
    max_delay_s : float
        Upper cap on any single pause, including ``Retry-After`` hints.
    sleep : callable
        Injected so tests can record pauses instead of waiting.
    """

    base_delay_s: float = 15.0
    factor: float = 2.0
    max_attempts: int = 3
    max_delay_s: float = 120.0
    sleep: Callable[[float], Any] = field(default=time.sleep, repr=False, compare=False)

    def delay_for(self, attempt: int) -> float:
        """Pause after the *attempt*-th failure (1-based)."""
        return min(self.base_delay_s * self.factor ** max(attempt - 1, 0), self.max_delay_s)

    def schedule(self) -> list[float]:
        """All pauses a fully failing item goes through."""
        return [self.delay_for(n) for n in range(1, self.max_attempts)]


class RetriesExhausted(Exception):
    """Every attempt allowed by the policy failed transiently."""

    def __init__(self, attempts: int, last_exc: BaseException):
        self.attempts = attempts
        self.last_exc = last_exc
        super().__init__(f"gave up after {attempts} attempt(s): {last_exc}")


def call_with_backoff(
    fn: Callable[[], T],
    policy: BackoffPolicy,
    *,
    label: str = "",
    retryable: tuple[type[BaseException], ...] = (TransientStoreError,),
) -> T:
    """Call *fn*, retrying *retryable* errors per *policy*.

    A ``retry_after`` hint on the exception can lengthen a pause (up to
    ``max_delay_s``) but never shorten it, and pauses never decrease
    from one retry to the next.  Non-retryable exceptions propagate
    untouched on the first occurrence.
    """
    prev_delay = 0.0
    attempts = max(policy.max_attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retryable as exc:
            if attempt >= attempts:
                raise RetriesExhausted(attempt, exc) from exc
            delay = policy.delay_for(attempt)
            hint = getattr(exc, "retry_after", None)
            if hint:
                delay = max(delay, min(float(hint), policy.max_delay_s))
            delay = max(delay, prev_delay)
            prev_delay = delay
            logger.warning(
                "%s: %s (attempt %d/%d) – retrying in %.1fs",
                label or getattr(fn, "__qualname__", "call"), exc, attempt, attempts, delay,
            )
            policy.sleep(delay)
    # unreachable: the loop either returns or raises
    raise AssertionError("call_with_backoff fell through")
