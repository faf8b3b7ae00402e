"""Cartridge Hot Reload

Watches a cartridge domains directory and republishes the catalog when YAML
files change.

Flow:
    watchdog Observer thread -> CartridgeFileEventHandler -> change queue
    reload worker thread     <- change queue (debounced) -> reload_callback()

The event handler never reloads inline; it only posts changed paths to a
queue. A single worker thread drains the queue, waits until no new events
arrive for debounce_seconds, then calls the reload callback once for the
whole burst. Readers are never blocked: the callback is expected to build a
complete catalog and publish it with registry.replace_all().

Usage:
    watcher = CartridgeWatcher(Path("domains/"), loader.reload)
    watcher.start()
    ...
    watcher.stop()
"""

import logging
import queue
import threading
from pathlib import Path
from typing import Any, Callable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from cartridge_engine.loader import CARTRIDGE_SUFFIXES

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 1.0

_STOP = object()


class CartridgeFileEventHandler(FileSystemEventHandler):
    """
    Forwards cartridge file changes to a queue.

    Only reacts to actual file changes (created, modified, deleted, moved)
    of .yml/.yaml files; directory events and other files are ignored.
    """

    def __init__(self, changes: "queue.Queue[Any]"):
        super().__init__()
        self.changes = changes

    def _should_process(self, event: FileSystemEvent) -> bool:
        if event.is_directory:
            return False
        paths = [event.src_path, getattr(event, "dest_path", "") or ""]
        return any(Path(str(p)).suffix.lower() in CARTRIDGE_SUFFIXES for p in paths if p)

    def _handle_event(self, event: FileSystemEvent):
        if not self._should_process(event):
            return
        logger.info(f"Cartridge file {event.event_type}: {Path(str(event.src_path)).name}")
        self.changes.put(str(event.src_path))

    def on_modified(self, event: FileSystemEvent):
        self._handle_event(event)

    def on_created(self, event: FileSystemEvent):
        self._handle_event(event)

    def on_deleted(self, event: FileSystemEvent):
        self._handle_event(event)

    def on_moved(self, event: FileSystemEvent):
        self._handle_event(event)


class CartridgeWatcher:
    """Owns the watchdog observer and the debounced reload worker."""

    def __init__(
        self,
        domains_path: Path,
        reload_callback: Callable[[], Any],
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
    ):
        """
        Args:
            domains_path: Directory holding cartridge YAML files
            reload_callback: Called once per burst of changes
            debounce_seconds: Quiet period before a reload fires
        """
        self.domains_path = Path(domains_path)
        self.reload_callback = reload_callback
        self.debounce_seconds = debounce_seconds
        self.changes: "queue.Queue[Any]" = queue.Queue()
        self.handler = CartridgeFileEventHandler(self.changes)
        self.reload_count = 0
        self._observer: Optional[Observer] = None
        self._worker: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def start(self) -> None:
        """Start watching. No-op if already running or the directory is missing."""
        if self.is_running:
            return
        if not self.domains_path.is_dir():
            logger.warning(f"Hot reload disabled: {self.domains_path} is not a directory")
            return

        self._worker = threading.Thread(
            target=self._run, name="cartridge-reload", daemon=True
        )
        self._worker.start()

        self._observer = Observer()
        self._observer.schedule(self.handler, str(self.domains_path), recursive=False)
        self._observer.start()
        logger.info(
            f"Watching {self.domains_path} for cartridge changes "
            f"(debounce {self.debounce_seconds}s)"
        )

    def stop(self, timeout: float = 5.0) -> None:
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=timeout)
            self._observer = None

        if self._worker is not None:
            self.changes.put(_STOP)
            self._worker.join(timeout=timeout)
            self._worker = None
        logger.info("Cartridge watcher stopped")

    def _run(self) -> None:
        while True:
            item = self.changes.get()
            if item is _STOP:
                return

            pending = {item}
            stopping = False
            while True:
                try:
                    item = self.changes.get(timeout=self.debounce_seconds)
                except queue.Empty:
                    break
                if item is _STOP:
                    stopping = True
                    break
                pending.add(item)

            if stopping:
                return
            self._trigger_reload(pending)

    def _trigger_reload(self, pending: set) -> None:
        logger.info(
            f"Debounce period complete - reloading cartridges ({len(pending)} file(s) changed)"
        )
        try:
            self.reload_callback()
            self.reload_count += 1
        except Exception as e:
            logger.error(f"Cartridge reload callback failed: {e}", exc_info=True)
