"""
Test suite for cooperative cancellation.
"""

import asyncio

import pytest

from ssekit.event_stream import CancellationToken, OperationCancelled


# ============================================================================
# CancellationToken Tests
# ============================================================================

class TestCancellationToken:
    """Tests for CancellationToken."""

    def test_initial_state(self):
        """Test that a new token has not fired."""
        assert not CancellationToken().cancelled

    def test_cancel_is_idempotent(self):
        """Test that cancelling twice runs callbacks once."""
        token = CancellationToken()
        calls = []
        token.register(lambda: calls.append(1))

        token.cancel()
        token.cancel()

        assert token.cancelled
        assert calls == [1]

    def test_register_after_cancel_runs_immediately(self):
        """Test that callbacks registered late still run."""
        token = CancellationToken()
        token.cancel()
        calls = []

        token.register(lambda: calls.append(1))

        assert calls == [1]

    def test_unregister(self):
        """Test that an unregistered callback does not run."""
        token = CancellationToken()
        calls = []
        unregister = token.register(lambda: calls.append(1))

        unregister()
        token.cancel()

        assert calls == []

    def test_failing_callback_does_not_stop_others(self):
        """Test that one failing callback does not block the rest."""
        token = CancellationToken()
        calls = []

        def fail():
            raise RuntimeError("boom")

        token.register(fail)
        token.register(lambda: calls.append(1))
        token.cancel()

        assert calls == [1]

    def test_composite_fires_on_any_source(self):
        """Test that a composite fires when any one source fires."""
        shutdown = CancellationToken()
        disconnected = CancellationToken()
        composite = CancellationToken.any(shutdown, disconnected)

        disconnected.cancel()

        assert composite.cancelled
        assert not shutdown.cancelled

    def test_composite_of_cancelled_source(self):
        """Test that a composite built from a fired source starts fired."""
        source = CancellationToken()
        source.cancel()

        assert CancellationToken.any(source).cancelled

    def test_cancelling_composite_leaves_sources(self):
        """Test that cancellation flows from sources to composite only."""
        source = CancellationToken()
        composite = CancellationToken.any(source)

        composite.cancel()

        assert not source.cancelled

    def test_close_detaches_from_sources(self):
        """Test that a closed composite no longer follows its sources."""
        source = CancellationToken()
        with CancellationToken.any(source) as composite:
            pass

        source.cancel()

        assert not composite.cancelled

    @pytest.mark.asyncio
    async def test_timeout(self):
        """Test that the timeout source fires the token."""
        token = CancellationToken(timeout=0.01)

        await asyncio.wait_for(token.wait(), timeout=1.0)

        assert token.cancelled

    @pytest.mark.asyncio
    async def test_zero_timeout(self):
        """Test that a zero timeout fires without an explicit cancel."""
        token = CancellationToken(timeout=0)

        assert await asyncio.wait_for(token.sleep(30), timeout=1.0) is True

    @pytest.mark.asyncio
    async def test_sleep_elapses(self):
        """Test that sleep returns False when the delay elapses."""
        assert await CancellationToken().sleep(0.01) is False

    @pytest.mark.asyncio
    async def test_sleep_interrupted(self):
        """Test that sleep returns early when the token fires."""
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel)

        interrupted = await asyncio.wait_for(token.sleep(30), timeout=1.0)

        assert interrupted is True

    @pytest.mark.asyncio
    async def test_sleep_already_cancelled(self):
        """Test that sleep returns immediately on a fired token."""
        token = CancellationToken()
        token.cancel()

        assert await token.sleep(30) is True

    @pytest.mark.asyncio
    async def test_guard_returns_result(self):
        """Test that guard passes the result through."""
        async def compute():
            return 42

        assert await CancellationToken().guard(compute()) == 42

    @pytest.mark.asyncio
    async def test_guard_propagates_errors(self):
        """Test that guard re-raises the operation's own error."""
        async def fail():
            raise ValueError("bad")

        with pytest.raises(ValueError):
            await CancellationToken().guard(fail())

    @pytest.mark.asyncio
    async def test_guard_aborts_pending_operation(self):
        """Test that firing the token abandons a pending operation."""
        token = CancellationToken()
        cancelled = []

        async def forever():
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                cancelled.append(True)
                raise

        asyncio.get_running_loop().call_later(0.01, token.cancel)

        with pytest.raises(OperationCancelled):
            await asyncio.wait_for(token.guard(forever()), timeout=1.0)

        assert cancelled == [True]

    @pytest.mark.asyncio
    async def test_guard_on_cancelled_token(self):
        """Test that guard never starts an operation on a fired token."""
        token = CancellationToken()
        token.cancel()
        started = []

        async def operation():
            started.append(True)

        with pytest.raises(OperationCancelled):
            await token.guard(operation())

        assert started == []
