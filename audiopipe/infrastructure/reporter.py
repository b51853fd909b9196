"""Best-effort delivery of job outcomes to a remote HTTP endpoint."""
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Deque, Optional

import httpx

from audiopipe.config.models import ReporterConfig
from audiopipe.domain.errors import ReportingError
from audiopipe.domain.events import ReportDelivered, ReportDropped
from audiopipe.domain.models import Outcome
from audiopipe.infrastructure.event_bus import EventBus


class Reporter:
    """Posts outcomes from a bounded queue on a background thread.

    `submit` never blocks the caller. Under sustained endpoint unavailability
    the queue drops its oldest entry to make room. Delivery failures are
    logged and never feed back into job state.
    """

    def __init__(
        self,
        config: ReporterConfig,
        event_bus: EventBus,
        *,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.config = config
        self.event_bus = event_bus
        self.logger = logging.getLogger(__name__)
        self._queue: Deque[Outcome] = deque()
        self._cond = threading.Condition()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._in_progress = False
        self._client = http_client
        self._owns_client = http_client is None
        self.delivered_count = 0
        self.dropped_count = 0

    @property
    def enabled(self) -> bool:
        return bool(self.config.url)

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        if self._thread is not None:
            return
        if not self.enabled:
            self.logger.info("Reporter disabled (no reporting URL configured)")
            return
        if self._client is None:
            self._client = httpx.Client(timeout=self.config.timeout_seconds)
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="reporter", daemon=True)
        self._thread.start()
        self.logger.info(f"Reporter started: {self.config.url}")

    def stop(self, timeout: float = 5.0) -> None:
        """Give queued outcomes up to `timeout` seconds to drain, then stop."""
        if self._thread is not None:
            deadline = time.monotonic() + timeout
            with self._cond:
                while (self._queue or self._in_progress) and time.monotonic() < deadline:
                    self._cond.wait(timeout=min(0.1, max(0.0, deadline - time.monotonic())))
                self._stop_event.set()
                self._cond.notify_all()
            self._thread.join(timeout=max(0.1, deadline - time.monotonic()))
            self._thread = None
            with self._cond:
                leftover = len(self._queue)
            if leftover:
                self.logger.warning(f"Reporter stopped with {leftover} undelivered outcome(s)")
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None

    # ------------------------------------------------------------------
    # queueing
    # ------------------------------------------------------------------
    def submit(self, outcome: Outcome) -> None:
        if not self.enabled:
            self.logger.info(
                f"OUTCOME: {outcome.identity} state={outcome.state.value} "
                f"duration_ms={outcome.duration_ms}"
            )
            return
        dropped = None
        with self._cond:
            if len(self._queue) >= self.config.queue_capacity:
                dropped = self._queue.popleft()
            self._queue.append(outcome)
            self._cond.notify_all()
        if dropped is not None:
            self._drop(dropped, "queue full")

    def pending(self) -> int:
        with self._cond:
            return len(self._queue)

    def _run(self) -> None:
        while True:
            with self._cond:
                while not self._queue and not self._stop_event.is_set():
                    self._cond.wait(timeout=0.5)
                if self._stop_event.is_set():
                    return
                outcome = self._queue.popleft()
                self._in_progress = True
            try:
                self.deliver(outcome)
            finally:
                with self._cond:
                    self._in_progress = False
                    self._cond.notify_all()

    # ------------------------------------------------------------------
    # delivery
    # ------------------------------------------------------------------
    def _post(self, outcome: Outcome) -> None:
        """Single POST attempt; raises ReportingError classified by retryability."""
        try:
            response = self._client.post(self.config.url, json=outcome.to_payload())
        except httpx.TimeoutException as exc:
            raise ReportingError(f"timeout: {exc}", retryable=True) from exc
        except httpx.TransportError as exc:
            raise ReportingError(f"transport error: {exc}", retryable=True) from exc

        status = response.status_code
        if 200 <= status < 300:
            return
        if 400 <= status < 500:
            raise ReportingError(f"rejected with HTTP {status}", retryable=False, status_code=status)
        raise ReportingError(f"HTTP {status}", retryable=True, status_code=status)

    def deliver(self, outcome: Outcome) -> bool:
        """Post one outcome with the bounded retry policy. Returns True when delivered."""
        attempts = self.config.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                self._post(outcome)
            except ReportingError as exc:
                if not exc.retryable:
                    self.logger.warning(f"REPORT_REJECTED: {outcome.identity}: {exc}")
                    self._drop(outcome, str(exc))
                    return False
                if attempt >= attempts:
                    self.logger.warning(
                        f"REPORT_FAILED: {outcome.identity} after {attempt} attempt(s): {exc}"
                    )
                    self._drop(outcome, str(exc))
                    return False
                delay = self.config.backoff_seconds * (2 ** (attempt - 1))
                self.logger.debug(f"REPORT_RETRY: {outcome.identity} in {delay:.2f}s ({exc})")
                if self._stop_event.wait(delay):
                    self._drop(outcome, "reporter stopped")
                    return False
                continue
            self.delivered_count += 1
            self.logger.debug(f"REPORT_DELIVERED: {outcome.identity}")
            self.event_bus.publish(ReportDelivered(outcome=outcome))
            return True
        return False

    def _drop(self, outcome: Outcome, reason: str) -> None:
        self.dropped_count += 1
        if reason == "queue full":
            self.logger.warning(f"REPORT_DROPPED: {outcome.identity} ({reason})")
        self.event_bus.publish(ReportDropped(outcome=outcome, reason=reason))
