import threading
from collections import OrderedDict
from pathlib import Path
from typing import Callable, Optional
from audiopipe.domain.models import DiscoveryEvent


class DiscoveryChannel:
    """Bounded watcher → dispatcher buffer, coalesced per path.

    A newer event for a path that is still buffered replaces the stale one and
    moves to the back. When the buffer is full and the path is new, `put`
    blocks the producer instead of dropping anything, so the newest event for
    a path always gets through.
    """

    def __init__(self, capacity: int = 256):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._events: "OrderedDict[Path, DiscoveryEvent]" = OrderedDict()
        self._cond = threading.Condition()
        self._closed = False
        self.coalesced_count = 0

    def put(self, event: DiscoveryEvent, timeout: Optional[float] = None) -> bool:
        """Buffer an event. Returns False if the channel was closed or `timeout` expired."""
        key = Path(event.path)
        with self._cond:
            while True:
                if self._closed:
                    return False
                if key in self._events:
                    del self._events[key]
                    self.coalesced_count += 1
                    break
                if len(self._events) < self.capacity:
                    break
                if not self._cond.wait(timeout=timeout):
                    return False
            self._events[key] = event
            self._cond.notify_all()
            return True

    def get_nowait(self) -> Optional[DiscoveryEvent]:
        with self._cond:
            if not self._events:
                return None
            _, event = self._events.popitem(last=False)
            self._cond.notify_all()
            return event

    def take(self, predicate: Callable[[DiscoveryEvent], bool]) -> Optional[DiscoveryEvent]:
        """Remove and return the oldest buffered event matching predicate."""
        with self._cond:
            for key, event in self._events.items():
                if predicate(event):
                    del self._events[key]
                    self._cond.notify_all()
                    return event
            return None

    def wait(self, timeout: float) -> bool:
        """Block until at least one event is buffered. Returns True if one is."""
        with self._cond:
            if not self._events and not self._closed:
                self._cond.wait(timeout=timeout)
            return bool(self._events)

    def close(self):
        """Wake blocked producers; later puts are rejected."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def __len__(self) -> int:
        with self._cond:
            return len(self._events)
