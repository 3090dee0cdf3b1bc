"""
Work Queue Tests - Verify scheduling, retries and persistence.

Tests:
- Key uniqueness and priority upgrades
- HIGH before LOW, FIFO within priority, concurrency limit
- Retry with backoff, retry bound, terminal failures
- Pause / resume / stop / clear
- Save and load through the queue state store
"""

import asyncio

import pytest

from vaultindex.errors import EmbeddingProviderError, EmptyContentError
from vaultindex.models import Priority, QueueStatus
from vaultindex.persistence import MemoryStorage, QueueStateStore
from vaultindex.work_queue import QueueEventHandlers, WorkQueue


async def noop(item):
    pass


class TestEnqueue:
    """Tests for enqueue() and discard()."""

    @pytest.mark.asyncio
    async def test_one_item_per_key(self, test_config):
        """Repeated enqueues of a pending key never duplicate it."""
        queue = WorkQueue(noop, test_config)
        queue.pause()

        assert queue.enqueue("a.md")
        assert not queue.enqueue("a.md")
        assert not queue.enqueue("a.md", Priority.HIGH)
        assert not queue.enqueue("a.md", Priority.LOW)

        items = queue.get_items()
        assert len(items) == 1
        assert items[0].priority == Priority.HIGH  # never downgraded

    @pytest.mark.asyncio
    async def test_upgrade_moves_to_high_tier(self, test_config):
        order = []

        async def record(item):
            order.append(item.key)

        queue = WorkQueue(record, test_config)
        queue.pause()
        queue.enqueue("first.md")
        queue.enqueue("second.md")
        queue.enqueue("second.md", Priority.HIGH)

        queue.resume()
        await asyncio.wait_for(queue.join(), 2.0)

        assert order == ["second.md", "first.md"]

    @pytest.mark.asyncio
    async def test_enqueue_while_processing_is_dropped(self, test_config):
        started = asyncio.Event()
        release = asyncio.Event()
        calls = []

        async def slow(item):
            calls.append(item.key)
            started.set()
            await release.wait()

        queue = WorkQueue(slow, test_config)
        queue.enqueue("a.md")
        await asyncio.wait_for(started.wait(), 1.0)

        assert not queue.enqueue("a.md", Priority.HIGH)
        assert queue.get_items()[0].status == QueueStatus.PROCESSING

        release.set()
        await asyncio.wait_for(queue.join(), 1.0)
        assert calls == ["a.md"]

    @pytest.mark.asyncio
    async def test_discard(self, test_config):
        queue = WorkQueue(noop, test_config)
        queue.pause()
        queue.enqueue("a.md")
        queue.enqueue("b.md")

        assert queue.discard("a.md")
        assert not queue.discard("a.md")
        assert [i.key for i in queue.get_items()] == ["b.md"]
        assert queue.get_progress().pending == 1


class TestScheduling:
    """Tests for dispatch order and concurrency."""

    @pytest.mark.asyncio
    async def test_high_before_low_fifo(self, test_config):
        """Both HIGH items start before any LOW item; LOW keeps insertion order."""
        test_config.concurrency_limit = 2
        started = []

        async def record(item):
            started.append(item.key)
            await asyncio.sleep(0.01)

        queue = WorkQueue(record, test_config)
        for i in range(5):
            queue.enqueue(f"low{i}.md", Priority.LOW)
        queue.enqueue("high0.md", Priority.HIGH)
        queue.enqueue("high1.md", Priority.HIGH)

        await asyncio.wait_for(queue.join(), 2.0)

        assert set(started[:2]) == {"high0.md", "high1.md"}
        assert started[2:] == [f"low{i}.md" for i in range(5)]

    @pytest.mark.asyncio
    async def test_respects_concurrency_limit(self, test_config):
        test_config.concurrency_limit = 2
        running = 0
        peak = 0

        async def track(item):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1

        queue = WorkQueue(track, test_config)
        for i in range(6):
            queue.enqueue(f"{i}.md")

        await asyncio.wait_for(queue.join(), 2.0)

        assert peak == 2
        assert queue.get_progress().completed == 6

    @pytest.mark.asyncio
    async def test_progress_counts(self, test_config):
        async def maybe_fail(item):
            if item.key == "bad.md":
                raise EmptyContentError(item.key)

        queue = WorkQueue(maybe_fail, test_config)
        queue.enqueue("good.md")
        queue.enqueue("bad.md")
        await asyncio.wait_for(queue.join(), 2.0)

        progress = queue.get_progress()
        assert progress.total == 2
        assert progress.completed == 1
        assert progress.failed == 1
        assert progress.pending == 0
        assert progress.processing == 0
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, test_config):
        processed = []

        async def record(item):
            processed.append(item.key)

        queue = WorkQueue(record, test_config)
        queue.pause()
        queue.enqueue("a.md")
        await asyncio.sleep(0.03)

        assert processed == []
        assert queue.is_paused

        queue.resume()
        await asyncio.wait_for(queue.join(), 1.0)
        assert processed == ["a.md"]


class TestRetry:
    """Tests for failure classification and backoff."""

    @pytest.mark.asyncio
    async def test_503_twice_then_success(self, test_config):
        """Two retryable failures then success ends completed with retry_count 2."""
        attempts = []
        completed = []

        async def flaky(item):
            attempts.append(item.retry_count)
            if len(attempts) <= 2:
                raise EmbeddingProviderError(503, "Service Unavailable")

        queue = WorkQueue(
            flaky,
            test_config,
            handlers=QueueEventHandlers(on_item_complete=completed.append),
        )
        queue.enqueue("doc.md")
        await asyncio.wait_for(queue.join(), 2.0)

        assert attempts == [0, 1, 2]
        assert len(completed) == 1
        assert completed[0].status == QueueStatus.COMPLETED
        assert completed[0].retry_count == 2
        assert queue.get_progress().completed == 1
        assert queue.get_failures() == []

    @pytest.mark.asyncio
    async def test_retry_bound(self, test_config):
        """Always-retryable failures stop at max_retries."""
        test_config.max_retries = 3
        calls = []

        async def always_503(item):
            calls.append(item.key)
            raise EmbeddingProviderError(503)

        queue = WorkQueue(always_503, test_config)
        queue.enqueue("doc.md")
        await asyncio.wait_for(queue.join(), 2.0)

        failures = queue.get_failures()
        assert len(calls) == 3
        assert len(failures) == 1
        assert failures[0].retry_count == 3
        assert "503" in failures[0].last_error
        assert queue.get_progress().failed == 1

    @pytest.mark.asyncio
    async def test_terminal_failure_not_retried(self, test_config):
        calls = []
        failed = []

        async def unauthorized(item):
            calls.append(item.key)
            raise EmbeddingProviderError(401, "Unauthorized")

        queue = WorkQueue(
            unauthorized,
            test_config,
            handlers=QueueEventHandlers(on_item_fail=lambda item, error: failed.append(item)),
        )
        queue.enqueue("doc.md")
        await asyncio.wait_for(queue.join(), 1.0)

        assert calls == ["doc.md"]
        assert failed[0].status == QueueStatus.FAILED
        assert failed[0].retry_count == 0

    @pytest.mark.asyncio
    async def test_retry_failed(self, test_config):
        attempts = []

        async def fail_once(item):
            attempts.append(item.key)
            if len(attempts) == 1:
                raise EmptyContentError(item.key)

        queue = WorkQueue(fail_once, test_config)
        queue.enqueue("doc.md")
        await asyncio.wait_for(queue.join(), 1.0)
        assert len(queue.get_failures()) == 1

        assert queue.retry_failed() == 1
        await asyncio.wait_for(queue.join(), 1.0)

        assert attempts == ["doc.md", "doc.md"]
        assert queue.get_failures() == []
        assert queue.get_progress().completed == 1
        assert queue.get_progress().failed == 0

    @pytest.mark.asyncio
    async def test_failure_ledger_is_bounded(self, test_config):
        test_config.failure_ledger_size = 2

        async def fail(item):
            raise EmptyContentError(item.key)

        queue = WorkQueue(fail, test_config)
        for key in ("a.md", "b.md", "c.md"):
            queue.enqueue(key)
        await asyncio.wait_for(queue.join(), 1.0)

        assert [f.key for f in queue.get_failures()] == ["b.md", "c.md"]
        assert queue.get_progress().failed == 3

        queue.clear_failures()
        assert queue.get_failures() == []


class TestLifecycle:
    """Tests for handlers, stop() and clear()."""

    @pytest.mark.asyncio
    async def test_handler_errors_are_logged(self, test_config, caplog):
        def broken(progress):
            raise RuntimeError("observer bug")

        queue = WorkQueue(noop, test_config, handlers=QueueEventHandlers(on_progress=broken))
        queue.enqueue("a.md")
        await asyncio.wait_for(queue.join(), 1.0)

        assert queue.get_progress().completed == 1
        assert "Queue event handler failed" in caplog.text

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight(self, test_config):
        finished = []

        async def slow(item):
            await asyncio.sleep(0.02)
            finished.append(item.key)

        queue = WorkQueue(slow, test_config)
        queue.enqueue("a.md")
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        await queue.stop(timeout=1.0)

        assert finished == ["a.md"]
        assert not queue.is_running

    @pytest.mark.asyncio
    async def test_stop_timeout_returns_job_to_pending(self, test_config):
        started = asyncio.Event()

        async def hang(item):
            started.set()
            await asyncio.sleep(10)

        queue = WorkQueue(hang, test_config)
        queue.enqueue("a.md")
        await asyncio.wait_for(started.wait(), 1.0)

        await queue.stop(timeout=0.01)

        items = queue.get_items()
        assert [i.key for i in items] == ["a.md"]
        assert items[0].status == QueueStatus.PENDING

    @pytest.mark.asyncio
    async def test_clear(self, test_config):
        storage = MemoryStorage()
        store = QueueStateStore(storage)
        queue = WorkQueue(noop, test_config, state_store=store)
        queue.pause()
        queue.enqueue("a.md")
        queue.save()
        assert storage.exists("queue-state.json")

        queue.clear()

        assert len(queue) == 0
        assert queue.get_progress().total == 0
        assert not storage.exists("queue-state.json")
        await asyncio.wait_for(queue.join(), 0.1)


class TestPersistence:
    """Tests for save() and load()."""

    @pytest.mark.asyncio
    async def test_save_and_load(self, test_config):
        store = QueueStateStore(MemoryStorage())

        first = WorkQueue(noop, test_config, state_store=store)
        first.pause()
        first.enqueue("a.md", Priority.HIGH)
        first.enqueue("b.md")
        first.enqueue("gone.md")
        first.save()

        second = WorkQueue(noop, test_config, state_store=store)
        second.pause()
        second.enqueue("b.md")
        restored = second.load(exists=lambda key: key != "gone.md")

        items = {i.key: i for i in second.get_items()}
        assert restored == 1
        assert set(items) == {"a.md", "b.md"}
        assert items["a.md"].priority == Priority.HIGH
        assert all(i.status == QueueStatus.PENDING for i in items.values())

    @pytest.mark.asyncio
    async def test_load_starts_processing(self, test_config):
        store = QueueStateStore(MemoryStorage())
        first = WorkQueue(noop, test_config, state_store=store)
        first.pause()
        first.enqueue("a.md")
        first.save()

        processed = []

        async def record(item):
            processed.append(item.key)

        second = WorkQueue(record, test_config, state_store=store)
        assert second.load() == 1
        await asyncio.wait_for(second.join(), 1.0)

        assert processed == ["a.md"]

    def test_no_store(self, test_config):
        queue = WorkQueue(noop, test_config)

        queue.save()
        assert queue.load() == 0
