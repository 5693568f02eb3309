"""
Unit tests for services.retry module.
"""
import asyncio

import pytest

from core.cancellation import CancellationToken
from core.exceptions import GenerationError
from core.models import ErrorKind
from services.retry import call_with_retry


class Flaky:
    """Coroutine factory failing with the given kinds before succeeding."""

    def __init__(self, *kinds):
        self.kinds = list(kinds)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.kinds:
            raise GenerationError(self.kinds.pop(0), "failed")
        return "ok"


class RecordingToken:
    """Token stand-in that records backoff delays without sleeping."""

    cancelled = False

    def __init__(self):
        self.delays = []

    async def sleep(self, delay):
        self.delays.append(delay)
        return False


class TestCallWithRetry:
    """Tests for call_with_retry."""

    def test_success_first_try(self):
        fn = Flaky()

        assert asyncio.run(call_with_retry(fn, initial_delay=0)) == "ok"
        assert fn.calls == 1

    def test_retries_rate_limit_and_unavailable(self):
        fn = Flaky(ErrorKind.RATE_LIMITED, ErrorKind.UNAVAILABLE)

        assert asyncio.run(call_with_retry(fn, initial_delay=0)) == "ok"
        assert fn.calls == 3

    @pytest.mark.parametrize("kind", [ErrorKind.QUOTA_EXCEEDED, ErrorKind.TIMEOUT, ErrorKind.OTHER])
    def test_non_retryable_raised_immediately(self, kind):
        fn = Flaky(kind)

        with pytest.raises(GenerationError) as exc_info:
            asyncio.run(call_with_retry(fn, initial_delay=0))

        assert exc_info.value.kind == kind
        assert fn.calls == 1

    def test_gives_up_after_max_retries(self):
        """Test the last error is raised after max_retries retries."""
        fn = Flaky(*[ErrorKind.RATE_LIMITED] * 5)

        with pytest.raises(GenerationError):
            asyncio.run(call_with_retry(fn, max_retries=3, initial_delay=0))

        assert fn.calls == 4

    def test_backoff_doubles(self):
        """Test delays grow 2s, 4s, 8s."""
        token = RecordingToken()
        fn = Flaky(*[ErrorKind.UNAVAILABLE] * 3)

        assert asyncio.run(call_with_retry(fn, token=token)) == "ok"
        assert token.delays == [2.0, 4.0, 8.0]

    def test_cancelled_token_stops_retries(self):
        token = CancellationToken()
        token.cancel()
        fn = Flaky(ErrorKind.RATE_LIMITED)

        with pytest.raises(GenerationError):
            asyncio.run(call_with_retry(fn, initial_delay=0, token=token))

        assert fn.calls == 1

    def test_cancel_during_backoff(self):
        """Test cancellation cuts a backoff sleep short and re-raises."""
        async def run():
            token = CancellationToken()
            fn = Flaky(ErrorKind.RATE_LIMITED, ErrorKind.RATE_LIMITED)
            asyncio.get_running_loop().call_later(0.01, token.cancel)
            try:
                await call_with_retry(fn, initial_delay=30, token=token)
            except GenerationError:
                return fn.calls
            return None

        assert asyncio.run(run()) == 1
