"""Tests for lessonrefine.providers.retry — per-call retry with backoff."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from lessonrefine.errors import MalformedResponseError, TransportError
from lessonrefine.providers.retry import call_with_retry

_SLEEP = "lessonrefine.providers.retry.asyncio.sleep"


class _Flaky:
    """Fails with the scripted errors, then returns ``result``."""

    def __init__(self, *errors, result="ok"):
        self._errors = list(errors)
        self._result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self._errors:
            raise self._errors.pop(0)
        return self._result


class TestCallWithRetry:
    async def test_first_attempt_succeeds(self):
        call = _Flaky()
        with patch(_SLEEP, new_callable=AsyncMock) as sleep:
            assert await call_with_retry(call, label="judge", timeout=5) == "ok"
        assert call.calls == 1
        sleep.assert_not_called()

    async def test_retries_then_succeeds(self):
        call = _Flaky(TransportError("connection reset"), MalformedResponseError("no JSON"))
        with patch(_SLEEP, new_callable=AsyncMock) as sleep:
            assert await call_with_retry(call, label="judge", timeout=5) == "ok"
        assert call.calls == 3
        assert sleep.await_count == 2

    async def test_backoff_doubles(self):
        call = _Flaky(TransportError("reset"), TransportError("reset"))
        with (
            patch(_SLEEP, new_callable=AsyncMock) as sleep,
            patch("lessonrefine.providers.retry.random.uniform", return_value=0.0),
        ):
            await call_with_retry(call, label="judge", timeout=5, base_backoff=1.0)
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    async def test_non_retryable_fails_fast(self):
        call = _Flaky(TransportError("bad key", retryable=False))
        with (
            patch(_SLEEP, new_callable=AsyncMock),
            pytest.raises(TransportError, match="bad key"),
        ):
            await call_with_retry(call, label="judge", timeout=5)
        assert call.calls == 1

    async def test_last_error_raised(self):
        call = _Flaky(
            TransportError("reset"), TransportError("reset"), MalformedResponseError("no JSON"),
        )
        with (
            patch(_SLEEP, new_callable=AsyncMock),
            pytest.raises(MalformedResponseError, match="no JSON"),
        ):
            await call_with_retry(call, label="judge", timeout=5)
        assert call.calls == 3

    async def test_max_retries_respected(self):
        call = _Flaky(*[TransportError("reset")] * 5)
        with (
            patch(_SLEEP, new_callable=AsyncMock),
            pytest.raises(TransportError),
        ):
            await call_with_retry(call, label="judge", timeout=5, max_retries=0)
        assert call.calls == 1

    async def test_no_backoff_after_last_attempt(self):
        call = _Flaky(*[TransportError("reset")] * 5)
        with (
            patch(_SLEEP, new_callable=AsyncMock) as sleep,
            pytest.raises(TransportError, match="reset"),
        ):
            await call_with_retry(call, label="judge", timeout=5, max_retries=2)
        assert call.calls == 3
        assert sleep.await_count == 2

    async def test_timeout_becomes_transport_error(self):
        calls = 0

        async def slow():
            nonlocal calls
            calls += 1
            await asyncio.sleep(1)

        with pytest.raises(TransportError, match="judge timed out after 0.01s"):
            await call_with_retry(
                slow, label="judge", timeout=0.01, max_retries=1, base_backoff=0.0
            )
        assert calls == 2

    async def test_unexpected_errors_propagate(self):
        call = _Flaky(ValueError("bug"))
        with pytest.raises(ValueError):
            await call_with_retry(call, label="judge", timeout=5)
        assert call.calls == 1
