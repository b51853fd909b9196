import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional
from pydantic import BaseModel, ConfigDict
from audiopipe.domain.events import (
    JobProgressUpdated,
    JobStateChanged,
    ProcessingFinished,
    ReportDelivered,
    ReportDropped,
    ShutdownRequested,
    WatchModeChanged,
)
from audiopipe.domain.models import JobState, TERMINAL_STATES
from audiopipe.infrastructure.event_bus import EventBus

THROUGHPUT_WINDOW_SECONDS = 60.0


class ActiveJob(BaseModel):
    model_config = ConfigDict(frozen=True)

    identity: str
    name: str
    attempts: int
    progress: float


class ProgressSnapshot(BaseModel):
    """Point-in-time view of the pipeline, safe to hand to any display."""

    model_config = ConfigDict(frozen=True)

    counts: Dict[JobState, int]
    throughput_per_minute: float
    active: List[ActiveJob]
    reports_delivered: int
    reports_dropped: int
    watch_mode: str
    shutdown_requested: bool
    finished: bool
    uptime_seconds: float

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    @property
    def in_progress(self) -> int:
        return sum(n for state, n in self.counts.items() if state not in TERMINAL_STATES)


class ProgressTracker:
    """Aggregates job state events into counts and a rolling throughput.

    Fed exclusively by the EventBus; it keeps its own per-identity view and
    never touches Job objects or the JobStore.
    """

    def __init__(self, bus: EventBus, clock: Callable[[], float] = time.monotonic):
        self.bus = bus
        self.clock = clock
        self._lock = threading.RLock()
        self._states: Dict[str, JobState] = {}
        self._names: Dict[str, str] = {}
        self._attempts: Dict[str, int] = {}
        self._progress: Dict[str, float] = {}
        self._completions: Deque[float] = deque()
        self.reports_delivered = 0
        self.reports_dropped = 0
        self.watch_mode = "notify"
        self.shutdown_requested = False
        self.finished = False
        self._started = clock()
        self._setup_subscriptions()

    def _setup_subscriptions(self):
        self.bus.subscribe(JobStateChanged, self.on_job_state_changed)
        self.bus.subscribe(JobProgressUpdated, self.on_job_progress)
        self.bus.subscribe(ReportDelivered, self.on_report_delivered)
        self.bus.subscribe(ReportDropped, self.on_report_dropped)
        self.bus.subscribe(WatchModeChanged, self.on_watch_mode_changed)
        self.bus.subscribe(ShutdownRequested, self.on_shutdown_requested)
        self.bus.subscribe(ProcessingFinished, self.on_processing_finished)

    def on_job_state_changed(self, event: JobStateChanged):
        job = event.job
        with self._lock:
            self._states[job.identity] = job.state
            self._names[job.identity] = job.source_path.name
            self._attempts[job.identity] = job.attempts
            if job.state == JobState.RUNNING:
                self._progress[job.identity] = 0.0
            else:
                self._progress.pop(job.identity, None)
            if job.state == JobState.SUCCEEDED:
                self._completions.append(self.clock())

    def on_job_progress(self, event: JobProgressUpdated):
        with self._lock:
            if self._states.get(event.identity) == JobState.RUNNING:
                self._progress[event.identity] = event.progress

    def on_report_delivered(self, event: ReportDelivered):
        with self._lock:
            self.reports_delivered += 1

    def on_report_dropped(self, event: ReportDropped):
        with self._lock:
            self.reports_dropped += 1

    def on_watch_mode_changed(self, event: WatchModeChanged):
        with self._lock:
            self.watch_mode = event.mode

    def on_shutdown_requested(self, event: ShutdownRequested):
        with self._lock:
            self.shutdown_requested = True

    def on_processing_finished(self, event: ProcessingFinished):
        with self._lock:
            self.finished = True

    def _throughput(self, now: float) -> float:
        cutoff = now - THROUGHPUT_WINDOW_SECONDS
        while self._completions and self._completions[0] < cutoff:
            self._completions.popleft()
        # a window shorter than a minute (fresh start) is scaled up
        window = min(THROUGHPUT_WINDOW_SECONDS, max(1.0, now - self._started))
        return len(self._completions) * 60.0 / window

    def snapshot(self, limit: Optional[int] = None) -> ProgressSnapshot:
        now = self.clock()
        with self._lock:
            counts = {state: 0 for state in JobState}
            for state in self._states.values():
                counts[state] += 1
            active = [
                ActiveJob(
                    identity=identity,
                    name=self._names.get(identity, identity),
                    attempts=self._attempts.get(identity, 0),
                    progress=progress,
                )
                for identity, progress in self._progress.items()
            ]
            if limit is not None:
                active = active[:limit]
            return ProgressSnapshot(
                counts=counts,
                throughput_per_minute=self._throughput(now),
                active=active,
                reports_delivered=self.reports_delivered,
                reports_dropped=self.reports_dropped,
                watch_mode=self.watch_mode,
                shutdown_requested=self.shutdown_requested,
                finished=self.finished,
                uptime_seconds=max(0.0, now - self._started),
            )
