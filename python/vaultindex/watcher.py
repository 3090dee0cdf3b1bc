"""
Watcher - Real-time vault change detection.

Uses watchdog for cross-platform file system monitoring. Events are
translated into ChangeEvents keyed by vault-relative POSIX paths and
handed to listeners on the event loop thread. Debouncing happens
downstream in the indexing service.
"""

import asyncio
import logging
from pathlib import Path
from typing import Callable, List, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .config import IndexerConfig, get_config
from .content import is_excluded
from .models import ChangeEvent, ChangeType


logger = logging.getLogger(__name__)

ChangeListener = Callable[[ChangeEvent], None]


class _VaultEventHandler(FileSystemEventHandler):
    """Runs on the observer thread; forwards to the change source."""

    def __init__(self, source: "FileSystemChangeSource"):
        super().__init__()
        self.source = source

    def on_created(self, event: FileSystemEvent):
        if not event.is_directory:
            self.source._translate(ChangeType.CREATE, event.src_path)

    def on_modified(self, event: FileSystemEvent):
        if not event.is_directory:
            self.source._translate(ChangeType.MODIFY, event.src_path)

    def on_deleted(self, event: FileSystemEvent):
        if not event.is_directory:
            self.source._translate(ChangeType.DELETE, event.src_path)

    def on_moved(self, event: FileSystemEvent):
        if not event.is_directory:
            self.source._translate_move(event.src_path, event.dest_path)


class FileSystemChangeSource:
    """
    Change source for a vault directory.

    Usage:
        source = FileSystemChangeSource(vault_root, config)
        source.on_change(service.handle_change)
        source.start()
    """

    def __init__(self, root: Path | None = None, config: IndexerConfig | None = None):
        self.config = config or get_config()
        self.root = Path(root or self.config.vault_root).expanduser().resolve()

        self._listeners: List[ChangeListener] = []
        self._observer: Optional[Observer] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def on_change(self, listener: ChangeListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def off(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def start(self) -> None:
        """Start watching. Must be called from the event loop thread."""
        if self._observer is not None:
            return

        if not self.root.is_dir():
            raise FileNotFoundError(f"Vault root not found: {self.root}")

        self._loop = asyncio.get_running_loop()
        self._observer = Observer()
        self._observer.schedule(_VaultEventHandler(self), str(self.root), recursive=True)
        self._observer.start()
        logger.info(f"Watching: {self.root}")

    def stop(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=2)
        self._observer = None
        self._loop = None
        logger.info("File watcher stopped")

    def is_watching(self) -> bool:
        return self._observer is not None

    # ------------------------------------------------------------------
    # Observer thread
    # ------------------------------------------------------------------

    def _key_for(self, path) -> Optional[str]:
        """Vault key for a watched path; None when it must be ignored."""
        if isinstance(path, bytes):
            path = path.decode()
        try:
            key = Path(path).relative_to(self.root).as_posix()
        except ValueError:
            return None
        if is_excluded(key, self.config):
            return None
        return key

    def _translate(self, change_type: ChangeType, path) -> None:
        key = self._key_for(path)
        if key is not None:
            self._dispatch(ChangeEvent(type=change_type, key=key))

    def _translate_move(self, src_path, dest_path) -> None:
        old_key = self._key_for(src_path)
        new_key = self._key_for(dest_path)

        if old_key is None and new_key is None:
            return
        if old_key is None:
            # Moved in from an ignored location
            event = ChangeEvent(type=ChangeType.CREATE, key=new_key)
        elif new_key is None:
            # Moved out to an ignored location
            event = ChangeEvent(type=ChangeType.DELETE, key=old_key)
        else:
            event = ChangeEvent(type=ChangeType.RENAME, key=new_key, old_key=old_key)
        self._dispatch(event)

    def _dispatch(self, event: ChangeEvent) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._emit, event)

    # ------------------------------------------------------------------
    # Event loop thread
    # ------------------------------------------------------------------

    def _emit(self, event: ChangeEvent) -> None:
        logger.debug(f"{event.type.value}: {event.key}")
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Change listener error for {event.key}: {e}")
