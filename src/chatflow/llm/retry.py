from __future__ import annotations

import asyncio
import json
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from .errors import LLMError

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_s: float = 0.2
    max_delay_s: float = 2.0
    jitter: float = 0.2  # fraction of the delay


def backoff_delay(attempt: int, policy: RetryPolicy) -> float:
    delay = min(policy.max_delay_s, policy.base_delay_s * (2 ** (attempt - 1)))
    spread = delay * policy.jitter * (random.random() * 2 - 1)
    return max(0.0, delay + spread)


async def with_retries(
    fn: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    label: str = "llm_call",
) -> T:
    """
    Runs `fn` up to `policy.max_attempts` times.
    Only `LLMError`s flagged as retryable are retried; anything else propagates
    on the first failure.
    """
    attempt = 1
    while True:
        try:
            return await fn()
        except LLMError as e:
            if not e.retryable or attempt >= policy.max_attempts:
                raise
            delay = backoff_delay(attempt, policy)
            logging.getLogger(__name__).warning(
                json.dumps(
                    {
                        "event": "llm_retry",
                        "label": label,
                        "attempt": attempt,
                        "error_code": e.code,
                        "delay_s": round(delay, 3),
                    },
                    ensure_ascii=False,
                )
            )
            await asyncio.sleep(delay)
            attempt += 1
