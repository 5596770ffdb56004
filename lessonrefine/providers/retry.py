"""Per-call retry with exponential backoff and jitter.

Every capability call (judge, patcher, regenerator, fix verifier) goes
through ``call_with_retry``. Retries are scoped to the single call and never
to a whole batch. Timeouts and malformed responses are retried like
transport failures; non-retryable transport errors fail fast.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from lessonrefine.errors import MalformedResponseError, TransportError
from lessonrefine.providers.litellm_provider import short_error_reason

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MAX_RETRIES = 2
_BASE_BACKOFF = 1.0  # seconds


async def call_with_retry(
    call: Callable[[], Awaitable[T]],
    *,
    label: str,
    timeout: float,
    max_retries: int = _MAX_RETRIES,
    base_backoff: float = _BASE_BACKOFF,
) -> T:
    """Await ``call()`` with a timeout, retrying up to ``max_retries`` times.

    Args:
        call: Zero-argument factory returning a fresh awaitable per attempt.
        label: Name used in log lines (model or task).
        timeout: Seconds allowed per attempt.
        max_retries: Retries after the first attempt.
        base_backoff: First backoff delay; doubles per retry, plus jitter.

    Raises:
        TransportError: If every attempt failed on transport or timeout.
        MalformedResponseError: If the last attempt returned an invalid response.
    """
    attempts = max_retries + 1
    attempt = 0

    while True:
        error: TransportError | MalformedResponseError
        try:
            return await asyncio.wait_for(call(), timeout=timeout)
        except TimeoutError:
            error = TransportError(
                f"{label} timed out after {timeout:g}s "
                f"(attempt {attempt + 1}/{attempts})"
            )
        except TransportError as e:
            if not e.retryable:
                raise
            error = e
        except MalformedResponseError as e:
            error = e

        if attempt >= max_retries:
            raise error

        backoff = base_backoff * (2**attempt)
        backoff += random.uniform(0, backoff / 2) if backoff else 0.0
        logger.warning(
            "Retry %d/%d for %s (%s, backoff: %.1fs)",
            attempt + 1,
            max_retries,
            label,
            short_error_reason(error),
            backoff,
        )
        await asyncio.sleep(backoff)
        attempt += 1
