"""Filesystem watcher producing debounced discovery events.

Notifications come from watchdog. Any path it reports is only announced to the
dispatcher once its size and mtime held still across two polls one debounce
interval apart, so half-copied files are never picked up. When the
notification backend cannot be used the watcher keeps working by rescanning
the whole tree periodically.
"""

import logging
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from audiopipe.domain.errors import DiscoveryError
from audiopipe.domain.events import WatchModeChanged
from audiopipe.domain.models import DiscoveryEvent, DiscoveryKind, Fingerprint
from audiopipe.infrastructure.event_bus import EventBus
from audiopipe.infrastructure.file_scanner import FileScanner, compute_fingerprint
from audiopipe.pipeline.channel import DiscoveryChannel

MODE_NOTIFY = "notify"
MODE_POLLING = "polling"


class _WatchHandler(FileSystemEventHandler):
    def __init__(self, watcher: "Watcher"):
        super().__init__()
        self.watcher = watcher

    def on_created(self, event: FileSystemEvent):
        if not event.is_directory:
            self.watcher.notify_changed(Path(event.src_path))

    def on_modified(self, event: FileSystemEvent):
        if not event.is_directory:
            self.watcher.notify_changed(Path(event.src_path))

    def on_deleted(self, event: FileSystemEvent):
        self.watcher.notify_removed(Path(event.src_path), is_directory=event.is_directory)

    def on_moved(self, event: FileSystemEvent):
        self.watcher.notify_removed(Path(event.src_path), is_directory=event.is_directory)
        if event.is_directory:
            self.watcher.request_rescan()
        else:
            self.watcher.notify_changed(Path(event.dest_path))


class Watcher:
    """Watches `root` and writes DiscoveryEvents into `channel`.

    Args:
        root: Directory to watch.
        scanner: FileScanner holding the extension allow-list and excluded dirs.
        channel: Destination of discovery events; the only thing this class writes to.
        event_bus: Used to announce mode changes.
        debounce_seconds: Interval between the two stability polls.
        rescan_interval_seconds: Full-tree rescan period in polling mode.
        use_polling: Skip notifications entirely.
        hash_content: Add a sha256 to fingerprints.
        observer_factory: Builds the watchdog observer (tests inject fakes).
    """

    def __init__(
        self,
        root: Path,
        scanner: FileScanner,
        channel: DiscoveryChannel,
        event_bus: EventBus,
        debounce_seconds: float = 2.0,
        rescan_interval_seconds: float = 30.0,
        use_polling: bool = False,
        recursive: bool = True,
        hash_content: bool = False,
        observer_factory: Callable[[], object] = Observer,
    ):
        self.root = Path(root).absolute()
        self.scanner = scanner
        self.channel = channel
        self.event_bus = event_bus
        self.debounce_seconds = debounce_seconds
        self.rescan_interval_seconds = rescan_interval_seconds
        self.use_polling = use_polling
        self.recursive = recursive
        self.hash_content = hash_content
        self.observer_factory = observer_factory
        self.logger = logging.getLogger(__name__)

        self.mode = MODE_POLLING if use_polling else MODE_NOTIFY
        self._lock = threading.Lock()
        # path -> (size, mtime_ns) seen at the previous poll, None if not polled yet
        self._pending: Dict[Path, Optional[Tuple[int, int]]] = {}
        # path -> fingerprint last announced to the dispatcher
        self._known: Dict[Path, Fingerprint] = {}
        self._snapshot: Dict[Path, Tuple[int, int]] = {}
        self._rescan_requested = True
        self._initial_scan_done = False
        # stable paths popped from _pending whose event is not in the channel yet
        self._in_transit = 0
        self._observer = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    def start(self):
        if self._thread is not None:
            return
        self._stop_event.clear()
        if self.mode == MODE_NOTIFY:
            try:
                self._start_observer()
            except DiscoveryError as e:
                self._fallback(str(e))
        else:
            self.logger.info(f"Watcher polling {self.root} every {self.rescan_interval_seconds:.0f}s")
        self._thread = threading.Thread(target=self._run, name="watcher", daemon=True)
        self._thread.start()

    def stop(self):
        self._stop_event.set()
        self._stop_observer()
        if self._thread:
            self._thread.join(timeout=max(1.0, self.debounce_seconds * 2))
            self._thread = None
        self.logger.info("Watcher stopped")

    def _start_observer(self):
        try:
            observer = self.observer_factory()
            observer.schedule(_WatchHandler(self), str(self.root), recursive=self.recursive)
            observer.start()
        except OSError as e:
            raise DiscoveryError(f"Filesystem notifications unavailable: {e}") from e
        self._observer = observer
        self.logger.info(f"Watcher observing {self.root} (recursive={self.recursive})")

    def _stop_observer(self):
        observer, self._observer = self._observer, None
        if observer is None:
            return
        try:
            observer.stop()
            observer.join(timeout=2.0)
        except RuntimeError:
            # join() on an observer thread that never started
            pass

    def _fallback(self, reason: str):
        self.logger.warning(f"WATCH_FALLBACK: {reason}; rescanning every {self.rescan_interval_seconds:.0f}s")
        self._stop_observer()
        self.mode = MODE_POLLING
        self._rescan_requested = True
        self.event_bus.publish(WatchModeChanged(mode=MODE_POLLING, reason=reason))

    def is_settled(self) -> bool:
        """True once the initial scan ran and no path is waiting for stability."""
        with self._lock:
            return (
                self._initial_scan_done
                and not self._pending
                and not self._in_transit
                and not self._rescan_requested
            )

    def request_rescan(self):
        self._rescan_requested = True

    # ------------------------------------------------------------------
    # notification callbacks (observer thread)
    # ------------------------------------------------------------------
    def notify_changed(self, path: Path):
        path = Path(path).absolute()
        if not self.scanner.is_candidate(path):
            return
        with self._lock:
            self._pending[path] = None

    def notify_removed(self, path: Path, is_directory: bool = False):
        path = Path(path).absolute()
        with self._lock:
            if is_directory:
                removed = [p for p in list(self._known) + list(self._pending) if path in p.parents]
            elif self.scanner.is_candidate(path):
                removed = [path]
            else:
                removed = []
            for p in removed:
                self._pending.pop(p, None)
                self._known.pop(p, None)
                self._snapshot.pop(p, None)
        for p in dict.fromkeys(removed):
            self.logger.debug(f"Removed: {p}")
            self._emit(DiscoveryEvent(path=p, kind=DiscoveryKind.REMOVED))

    # ------------------------------------------------------------------
    # stabiliser loop
    # ------------------------------------------------------------------
    def _run(self):
        next_rescan = time.monotonic()
        while not self._stop_event.is_set():
            observer = self._observer
            if self.mode == MODE_NOTIFY and observer is not None and not observer.is_alive():
                self._fallback("observer thread stopped")

            now = time.monotonic()
            if self._rescan_requested or (self.mode == MODE_POLLING and now >= next_rescan):
                try:
                    self.rescan()
                except OSError as e:
                    self.logger.error(f"Rescan of {self.root} failed: {e}")
                next_rescan = now + self.rescan_interval_seconds

            self.check_pending()
            self._stop_event.wait(self.debounce_seconds)

    def rescan(self):
        """Full-tree scan: diff against the last snapshot into pending and removed paths."""
        self._rescan_requested = False
        current: Dict[Path, Tuple[int, int]] = {}
        for path in self.scanner.scan(self.root):
            try:
                st = path.stat()
            except OSError:
                continue
            current[path.absolute()] = (st.st_size, st.st_mtime_ns)

        with self._lock:
            previous = self._snapshot
            self._snapshot = current
            for path, sig in current.items():
                if previous.get(path) != sig:
                    known = self._known.get(path)
                    if known is None or (known.size_bytes, known.mtime_ns) != sig:
                        self._pending.setdefault(path, None)
            gone = [p for p in previous if p not in current]
            self._initial_scan_done = True

        for path in gone:
            self.notify_removed(path)

    def check_pending(self):
        """One stability poll over all pending paths."""
        with self._lock:
            items = list(self._pending.items())

        stable = []
        for path, previous in items:
            try:
                st = path.stat()
            except FileNotFoundError:
                with self._lock:
                    self._pending.pop(path, None)
                continue
            except OSError as e:
                self.logger.debug(f"Cannot stat {path}: {e}")
                continue

            current = (st.st_size, st.st_mtime_ns)
            with self._lock:
                if path not in self._pending:
                    continue
                if previous is not None and previous == current and self._pending[path] == previous:
                    del self._pending[path]
                    self._in_transit += 1
                    stable.append(path)
                else:
                    self._pending[path] = current

        for path in stable:
            try:
                self._announce(path)
            finally:
                with self._lock:
                    self._in_transit -= 1

    def _announce(self, path: Path):
        try:
            fingerprint = compute_fingerprint(path, with_hash=self.hash_content)
        except OSError as e:
            self.logger.debug(f"Fingerprint failed for {path}: {e}")
            return
        with self._lock:
            known = self._known.get(path)
            if known == fingerprint:
                return
            self._known[path] = fingerprint
        kind = DiscoveryKind.CREATED if known is None else DiscoveryKind.MODIFIED
        self.logger.debug(f"Stable: {path} ({kind.value}, {fingerprint.key})")
        self._emit(DiscoveryEvent(path=path, kind=kind, fingerprint=fingerprint))

    def _emit(self, event: DiscoveryEvent) -> bool:
        while not self._stop_event.is_set():
            if self.channel.put(event, timeout=0.5):
                return True
            if self.channel.closed:
                return False
        return False
