"""
Debouncer Tests - Verify per-key coalescing of rapid events.

Tests:
- Only the latest action fires, once
- Keys are independent
- Cancel and cancel_all
- Async actions and failing actions
"""

import asyncio
import time

import pytest

from vaultindex.debounce import Debouncer


class TestDebouncer:
    """Tests for the Debouncer class."""

    @pytest.mark.asyncio
    async def test_only_latest_action_fires(self):
        """Second call within the window replaces the first action."""
        debouncer = Debouncer()
        fired = []

        debouncer.debounce("x", lambda: fired.append(("f1", time.monotonic())), 100)
        await asyncio.sleep(0.01)
        second_call = time.monotonic()
        debouncer.debounce("x", lambda: fired.append(("f2", time.monotonic())), 100)

        await asyncio.sleep(0.25)

        assert [name for name, _ in fired] == ["f2"]
        assert fired[0][1] - second_call >= 0.099

    @pytest.mark.asyncio
    async def test_keys_are_independent(self):
        """Different keys each fire their own action."""
        debouncer = Debouncer(default_delay_ms=20)
        fired = []

        debouncer.debounce("a", lambda: fired.append("a"))
        debouncer.debounce("b", lambda: fired.append("b"))

        await asyncio.sleep(0.1)

        assert sorted(fired) == ["a", "b"]
        assert debouncer.pending_count() == 0

    @pytest.mark.asyncio
    async def test_cancel_prevents_action(self):
        """Cancelled actions never run; cancel is idempotent."""
        debouncer = Debouncer()
        fired = []

        debouncer.debounce("x", lambda: fired.append("x"), 20)
        assert debouncer.is_pending("x")

        debouncer.cancel("x")
        debouncer.cancel("x")
        await asyncio.sleep(0.06)

        assert fired == []
        assert not debouncer.is_pending("x")

    @pytest.mark.asyncio
    async def test_cancel_all(self):
        """cancel_all drops every pending action."""
        debouncer = Debouncer()
        fired = []

        for key in ("a", "b", "c"):
            debouncer.debounce(key, lambda k=key: fired.append(k), 20)
        assert debouncer.pending_count() == 3

        debouncer.cancel_all()
        await asyncio.sleep(0.06)

        assert fired == []
        assert debouncer.pending_count() == 0

    @pytest.mark.asyncio
    async def test_awaits_coroutine_actions(self):
        """Actions returning awaitables are awaited."""
        debouncer = Debouncer()
        done = asyncio.Event()

        async def action():
            await asyncio.sleep(0)
            done.set()

        debouncer.debounce("x", action, 10)
        await asyncio.wait_for(done.wait(), 1.0)

        assert done.is_set()

    @pytest.mark.asyncio
    async def test_failing_action_is_logged(self, caplog):
        """An exception in an action does not escape."""
        debouncer = Debouncer()

        def boom():
            raise RuntimeError("boom")

        debouncer.debounce("x", boom, 10)
        await asyncio.sleep(0.05)

        assert "Debounced action failed for x" in caplog.text
        assert debouncer.pending_count() == 0
