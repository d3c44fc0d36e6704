"""Bounded, stage-scoped retry helper."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeAlias, TypeVar

logger = logging.getLogger(__name__)

Sleeper: TypeAlias = Callable[[float], Awaitable[None]]
RetryPredicate: TypeAlias = Callable[[Exception], bool]

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """How many attempts to make, how long to wait, and which errors qualify."""

    max_attempts: int
    delay_seconds: float
    retryable: RetryPredicate

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            msg = "max_attempts must be at least 1"
            raise ValueError(msg)


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleeper: Sleeper | None = None,
    label: str = "operation",
) -> T:
    """Await ``operation`` until it succeeds or the policy gives up.

    Non-retryable errors and the error of the last attempt propagate as-is.
    """
    sleep = sleeper or asyncio.sleep
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as exc:
            if attempt >= policy.max_attempts or not policy.retryable(exc):
                raise
            logger.warning(
                "%s failed on attempt %d/%d, retrying in %.1fs: %s",
                label,
                attempt,
                policy.max_attempts,
                policy.delay_seconds,
                exc,
            )
            await sleep(policy.delay_seconds)
            attempt += 1
