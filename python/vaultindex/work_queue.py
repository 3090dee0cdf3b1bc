"""
Work Queue - Priority queue of indexing jobs with bounded concurrency.

Jobs are keyed by document key; at most one live job exists per key.
HIGH items always dispatch before LOW ones, FIFO within each tier.
Failures are classified by the errors module: retryable ones back off
exponentially, terminal ones go straight to the failure ledger.

All state is owned by the event loop that runs the scheduler; nothing
here is thread-safe.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Deque, Dict, List, Optional

from .config import IndexerConfig, get_config
from .errors import ErrorAction, format_error, handle_error
from .models import FailureRecord, Priority, QueueItem, QueueProgress, QueueStatus


logger = logging.getLogger(__name__)

ProcessFn = Callable[[QueueItem], Awaitable[None]]


@dataclass
class QueueEventHandlers:
    """Optional observers. Exceptions raised by a handler are logged."""
    on_item_start: Optional[Callable[[QueueItem], None]] = None
    on_item_complete: Optional[Callable[[QueueItem], None]] = None
    on_item_fail: Optional[Callable[[QueueItem, BaseException], None]] = None
    on_progress: Optional[Callable[[QueueProgress], None]] = None


class WorkQueue:
    """
    Scheduler for indexing jobs.

    Usage:
        queue = WorkQueue(worker.process, config)
        queue.enqueue("notes/todo.md")
        await queue.join()
    """

    def __init__(
        self,
        process: ProcessFn,
        config: IndexerConfig | None = None,
        state_store=None,
        handlers: Optional[QueueEventHandlers] = None,
    ):
        self.config = config or get_config()
        self._process = process
        self._store = state_store
        self.handlers = handlers or QueueEventHandlers()

        # Live items: pending (queued or backing off) and processing
        self._items: Dict[str, QueueItem] = {}
        self._tiers: Dict[Priority, Deque[str]] = {
            Priority.HIGH: deque(),
            Priority.LOW: deque(),
        }
        self._backoff: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

        self._failures: Deque[FailureRecord] = deque(maxlen=self.config.failure_ledger_size)
        self._completed = 0
        self._failed = 0

        self._paused = False
        self._scheduler: Optional[asyncio.Task] = None
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()

    # ------------------------------------------------------------------
    # Enqueue / discard
    # ------------------------------------------------------------------

    def enqueue(self, key: str, priority: Priority = Priority.LOW) -> bool:
        """
        Add a job for `key`.

        Returns True if a new item was created. A pending item is upgraded
        to HIGH when asked (never downgraded); a processing item is left
        alone and the request is dropped.
        """
        item = self._items.get(key)
        if item is not None:
            if item.status == QueueStatus.PROCESSING:
                logger.debug(f"Already processing, dropped: {key}")
                return False

            if priority == Priority.HIGH and item.priority == Priority.LOW:
                item.priority = Priority.HIGH
                # Backing-off items move tiers when their timer fires
                if key not in self._backoff:
                    self._tiers[Priority.LOW].remove(key)
                    self._tiers[Priority.HIGH].append(key)
                logger.debug(f"Upgraded to high priority: {key}")
                self._wake()
            return False

        self._items[key] = QueueItem(key=key, priority=priority, added_at=time.time())
        self._tiers[priority].append(key)
        self._idle.clear()

        self._notify_progress()
        self._ensure_started()
        self._wake()
        return True

    def discard(self, key: str) -> bool:
        """Drop a pending or backing-off item. Processing items are kept."""
        item = self._items.get(key)
        if item is None or item.status == QueueStatus.PROCESSING:
            return False

        handle = self._backoff.pop(key, None)
        if handle is not None:
            handle.cancel()
        else:
            self._tiers[item.priority].remove(key)

        del self._items[key]
        logger.debug(f"Discarded: {key}")
        self._notify_progress()
        self._check_idle()
        return True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start dispatching. Needs a running event loop."""
        self._paused = False
        if not self.is_running:
            loop = asyncio.get_running_loop()
            self._scheduler = loop.create_task(self._run(), name="work-queue")

    def pause(self) -> None:
        """Stop dispatching new jobs. In-flight jobs run to completion."""
        self._paused = True
        self._wake()
        logger.info("Work queue paused")

    def resume(self) -> None:
        self._paused = False
        logger.info("Work queue resumed")
        self._ensure_started()
        self._wake()

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and not self._scheduler.done()

    async def join(self) -> None:
        """Wait until no item is pending, backing off or processing."""
        await self._idle.wait()

    async def stop(self, timeout: float = 10.0) -> None:
        """
        Pause, release backing-off items and wait for in-flight jobs.

        Jobs still running after `timeout` seconds are cancelled and
        return to pending, so a following save() keeps them.
        """
        self.pause()

        for key, handle in list(self._backoff.items()):
            handle.cancel()
            item = self._items[key]
            self._tiers[item.priority].append(key)
        self._backoff.clear()

        tasks = list(self._tasks.values())
        if tasks:
            logger.info(f"Waiting for {len(tasks)} in-flight job(s)")
            _, still_running = await asyncio.wait(tasks, timeout=timeout)
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)

        if self._scheduler is not None and not self._scheduler.done():
            self._scheduler.cancel()
            await asyncio.gather(self._scheduler, return_exceptions=True)
        self._scheduler = None

    def clear(self) -> None:
        """Drop every live item, timer and counter, and the persisted state."""
        keys = list(self._items)
        self._items.clear()

        for handle in self._backoff.values():
            handle.cancel()
        self._backoff.clear()
        for tier in self._tiers.values():
            tier.clear()
        for task in self._tasks.values():
            task.cancel()

        self._completed = 0
        self._failed = 0
        self._failures.clear()

        if self._store is not None:
            self._store.clear()

        logger.info(f"Work queue cleared ({len(keys)} live items dropped)")
        self._notify_progress()
        self._check_idle()

    # ------------------------------------------------------------------
    # Scheduler
    # ------------------------------------------------------------------

    def _ensure_started(self) -> None:
        if self._paused or self.is_running:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet; start() picks the items up later
            return
        self._scheduler = loop.create_task(self._run(), name="work-queue")

    def _wake(self) -> None:
        self._wakeup.set()

    async def _run(self) -> None:
        idle_wait = self.config.idle_poll_ms / 1000.0

        while not self._paused:
            while len(self._tasks) < self.config.concurrency_limit:
                key = self._next_key()
                if key is None:
                    break
                self._dispatch(key)

            if not self._items:
                break

            # At the limit, or only in-flight / backing-off work remains
            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), idle_wait)
            except asyncio.TimeoutError:
                pass

    def _next_key(self) -> Optional[str]:
        for priority in (Priority.HIGH, Priority.LOW):
            tier = self._tiers[priority]
            if tier:
                return tier.popleft()
        return None

    def _dispatch(self, key: str) -> None:
        item = self._items[key]
        item.status = QueueStatus.PROCESSING
        item.started_at = time.time()

        loop = asyncio.get_running_loop()
        self._tasks[key] = loop.create_task(self._execute(item), name=f"index:{key}")

        self._emit(self.handlers.on_item_start, item)
        self._notify_progress()

    async def _execute(self, item: QueueItem) -> None:
        try:
            await self._process(item)
        except asyncio.CancelledError:
            # Interrupted by stop(); keep the job unless it was cleared
            if self._items.get(item.key) is item:
                item.status = QueueStatus.PENDING
                item.started_at = None
                self._tiers[item.priority].appendleft(item.key)
            raise
        except Exception as e:
            if self._items.get(item.key) is item:
                self._handle_failure(item, e)
        else:
            if self._items.get(item.key) is item:
                self._complete(item)
        finally:
            self._tasks.pop(item.key, None)
            self._wake()
            self._check_idle()

    def _complete(self, item: QueueItem) -> None:
        item.status = QueueStatus.COMPLETED
        item.completed_at = time.time()
        del self._items[item.key]
        self._completed += 1

        logger.debug(f"Indexed: {item.key}")
        self._emit(self.handlers.on_item_complete, item)
        self._notify_progress()

    def _handle_failure(self, item: QueueItem, error: Exception) -> None:
        action = handle_error(error, item.key, context="queue")
        item.last_error = format_error(error)

        if action == ErrorAction.RETRY:
            item.retry_count += 1
            if item.retry_count < self.config.max_retries:
                self._schedule_retry(item)
                return

        self._fail(item, error)

    def _schedule_retry(self, item: QueueItem) -> None:
        steps = min(2 ** item.retry_count, self.config.max_backoff_seconds)
        delay = steps * self.config.backoff_unit_seconds

        item.status = QueueStatus.PENDING
        item.started_at = None

        loop = asyncio.get_running_loop()
        self._backoff[item.key] = loop.call_later(delay, self._reinsert, item.key)

        logger.info(
            f"Retrying {item.key} in {delay:.1f}s "
            f"(attempt {item.retry_count + 1}/{self.config.max_retries})"
        )
        self._notify_progress()

    def _reinsert(self, key: str) -> None:
        self._backoff.pop(key, None)
        item = self._items.get(key)
        if item is None or item.status != QueueStatus.PENDING:
            return
        self._tiers[item.priority].append(key)
        self._ensure_started()
        self._wake()

    def _fail(self, item: QueueItem, error: Exception) -> None:
        item.status = QueueStatus.FAILED
        item.completed_at = time.time()
        del self._items[item.key]
        self._failed += 1

        self._failures.append(FailureRecord(
            key=item.key,
            last_error=item.last_error or format_error(error),
            retry_count=item.retry_count,
            failed_at=item.completed_at,
        ))

        self._emit(self.handlers.on_item_fail, item, error)
        self._notify_progress()

    def _check_idle(self) -> None:
        if not self._items:
            self._idle.set()

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def get_progress(self) -> QueueProgress:
        processing = len(self._tasks)
        pending = sum(1 for item in self._items.values() if item.status == QueueStatus.PENDING)
        return QueueProgress(
            total=pending + processing + self._completed + self._failed,
            pending=pending,
            processing=processing,
            completed=self._completed,
            failed=self._failed,
        )

    def get_items(self) -> List[QueueItem]:
        """Copies of the live items."""
        return [replace(item) for item in self._items.values()]

    def get_failures(self) -> List[FailureRecord]:
        """Most recent failures, oldest first."""
        return list(self._failures)

    def clear_failures(self) -> None:
        self._failures.clear()

    def retry_failed(self) -> int:
        """Re-enqueue every ledger entry with HIGH priority."""
        records = list(self._failures)
        self._failures.clear()
        self._failed = max(0, self._failed - len(records))

        count = 0
        for record in records:
            if self.enqueue(record.key, Priority.HIGH):
                count += 1
        logger.info(f"Retrying {count} failed item(s)")
        return count

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key: str) -> bool:
        return key in self._items

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self) -> None:
        """Write pending and processing items to the state store."""
        if self._store is None:
            return
        self._store.save(list(self._items.values()))

    def load(self, exists: Optional[Callable[[str], bool]] = None) -> int:
        """
        Restore items from the state store.

        Processing items come back as pending. Keys already live are not
        duplicated, and keys for which `exists(key)` is False are dropped.

        Returns:
            Number of items restored
        """
        if self._store is None:
            return 0

        restored = 0
        for item in self._store.load():
            if item.key in self._items:
                continue
            if exists is not None and not exists(item.key):
                logger.debug(f"Skipping queued item for missing document: {item.key}")
                continue

            item.status = QueueStatus.PENDING
            item.started_at = None
            self._items[item.key] = item
            self._tiers[item.priority].append(item.key)
            restored += 1

        if restored:
            logger.info(f"Restored {restored} queued item(s)")
            self._idle.clear()
            self._notify_progress()
            self._ensure_started()
            self._wake()
        return restored

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _notify_progress(self) -> None:
        if self.handlers.on_progress is not None:
            self._emit(self.handlers.on_progress, self.get_progress())

    def _emit(self, handler, *args) -> None:
        if handler is None:
            return
        try:
            handler(*args)
        except Exception as e:
            logger.error(f"Queue event handler failed: {e}")
