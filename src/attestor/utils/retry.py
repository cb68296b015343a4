"""Bounded exponential backoff for retryable collaborator failures.

Only errors whose ``retryable`` attribute is true (``CAUnavailable``,
``LogUnavailable``, ``RegistryUnavailable``) are retried. Everything else
propagates on first raise.
The overall deadline caps the sum of attempts and sleeps; when it is hit the
last retryable error is surfaced.
"""
from __future__ import annotations

import random
from typing import Awaitable, Callable, Optional, TypeVar

import anyio

from .. import config
from ..errors import AttestorError
from ..obs.prom import RETRIES
from .logging import get_logger

T = TypeVar("T")
log = get_logger("attestor.retry")


def backoff_delay(attempt: int, base: float, max_delay: float, jitter: float = 0.0) -> float:
    delay = min(base * (2 ** attempt), max_delay)
    if jitter:
        delay += random.uniform(0, jitter * delay)
    return delay


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    op: str,
    attempts: Optional[int] = None,
    base: Optional[float] = None,
    max_delay: Optional[float] = None,
    deadline: Optional[float] = None,
) -> T:
    attempts = attempts if attempts is not None else config.RETRY_ATTEMPTS
    base = base if base is not None else config.RETRY_BASE
    max_delay = max_delay if max_delay is not None else config.RETRY_MAX_DELAY
    deadline = deadline if deadline is not None else config.RETRY_DEADLINE
    started = anyio.current_time()
    attempt = 0
    while True:
        try:
            return await fn()
        except AttestorError as e:
            if not e.retryable:
                raise
            attempt += 1
            delay = backoff_delay(attempt - 1, base, max_delay, jitter=0.1)
            elapsed = anyio.current_time() - started
            if attempt >= attempts or elapsed + delay > deadline:
                log.warning("%s: giving up after %d attempt(s): %s", op, attempt, e)
                raise
            RETRIES.labels(op=op, code=e.code).inc()
            log.info("%s: %s, retry %d/%d in %.2fs", op, e.code, attempt, attempts - 1, delay)
            await anyio.sleep(delay)
