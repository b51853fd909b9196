"""Job dispatcher: turns discovery events into encoder runs.

The dispatcher loop runs on the caller's thread. It drains the discovery
channel, admits new file versions into the JobStore, and keeps at most
`general.workers` encoder runs in flight on a thread pool (submit-on-demand).
Workers own their job while it runs; the loop only ever signals them through
a per-job cancel event.
"""

import concurrent.futures
import heapq
import itertools
import logging
import threading
import time
from collections import deque
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple
from audiopipe.config.models import AppConfig
from audiopipe.domain.errors import (
    EncodeCancelledError,
    EncodePermanentError,
    EncodeTransientError,
)
from audiopipe.domain.events import (
    JobProgressUpdated,
    JobStateChanged,
    ProcessingFinished,
    ShutdownRequested,
)
from audiopipe.domain.models import (
    DiscoveryEvent,
    DiscoveryKind,
    Fingerprint,
    Job,
    JobState,
    Outcome,
    derive_output_path,
)
from audiopipe.infrastructure.encoder import EncoderInvoker
from audiopipe.infrastructure.event_bus import EventBus
from audiopipe.infrastructure.job_store import JobStore
from audiopipe.infrastructure.reporter import Reporter
from audiopipe.pipeline.channel import DiscoveryChannel

POLL_INTERVAL_SECONDS = 0.1
REMOVED_REASON = "Source file removed"


class Dispatcher:
    """Schedules jobs for discovered files onto a bounded worker pool.

    Args:
        config: Application config (workers, queue capacity, retry policy, shutdown grace).
        event_bus: Receives JobStateChanged for every committed transition.
        job_store: Registry used for deduplication and state.
        encoder: Runs one job per call; raises the EncodeError family on failure.
        reporter: Receives the outcome of every terminal job except superseded ones.
        channel: Source of DiscoveryEvents.
        root: Watched directory, used to mirror relative paths into output_dir.
        output_dir: Destination root for encoded files.
        source_settled: Returns True once the watcher has nothing left to
            announce; consulted by one-shot mode only.
    """

    def __init__(
        self,
        config: AppConfig,
        event_bus: EventBus,
        job_store: JobStore,
        encoder: EncoderInvoker,
        reporter: Reporter,
        channel: DiscoveryChannel,
        root: Path,
        output_dir: Path,
        source_settled: Optional[Callable[[], bool]] = None,
    ):
        self.config = config
        self.event_bus = event_bus
        self.store = job_store
        self.encoder = encoder
        self.reporter = reporter
        self.channel = channel
        self.root = Path(root).absolute()
        self.output_dir = Path(output_dir).absolute()
        self.source_settled = source_settled or (lambda: True)
        self.logger = logging.getLogger(__name__)

        self.workers = config.general.workers
        self.queue_capacity = config.general.queue_capacity
        self.retry_policy = config.retry

        self._lock = threading.RLock()
        self._pending: Deque[str] = deque()
        # source path -> identity of its job waiting to run (queued or parked)
        self._queued_paths: Dict[Path, str] = {}
        # output path -> jobs waiting for the in-flight job writing that output
        self._parked: Dict[Path, Deque[str]] = {}
        # output path -> identity of the in-flight job writing it
        self._busy_outputs: Dict[Path, str] = {}
        # cancelled-on-removal identities whose file came back before the worker returned
        self._revive: Set[str] = set()
        self._cancel_events: Dict[str, threading.Event] = {}
        self._cancel_reasons: Dict[str, str] = {}
        self._retry_heap: List[Tuple[float, int, str]] = []
        self._retry_seq = itertools.count()
        self._in_flight: Dict[concurrent.futures.Future, str] = {}

        self._shutdown_requested = False
        self._shutdown_announced = False
        self.max_in_flight_seen = 0

        self._setup_subscriptions()

    def _setup_subscriptions(self):
        self.event_bus.subscribe(ShutdownRequested, self._on_shutdown_request)
        self.event_bus.subscribe(JobProgressUpdated, self._on_progress)

    def _on_shutdown_request(self, event: ShutdownRequested):
        self._shutdown_announced = True
        self.request_shutdown()

    def _on_progress(self, event: JobProgressUpdated):
        self.store.update_progress(event.identity, event.progress)

    def request_shutdown(self):
        """Stop admitting work; the loop drains in-flight jobs and returns.

        Only sets a flag, so it is safe to call from a signal handler. The loop
        publishes ShutdownRequested itself if nobody else did.
        """
        if self._shutdown_requested:
            return
        self._shutdown_requested = True
        self.logger.info("Shutdown requested: no new jobs will be started")

    def _announce_shutdown(self):
        if self._shutdown_requested and not self._shutdown_announced:
            self._shutdown_announced = True
            self.event_bus.publish(ShutdownRequested())

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_requested

    # ------------------------------------------------------------------
    # state helpers
    # ------------------------------------------------------------------
    def _transition(
        self,
        identity: str,
        state: JobState,
        expected: Optional[List[JobState]] = None,
        error: Optional[str] = None,
    ) -> Optional[Job]:
        with self._lock:
            before = self.store.get(identity)
            job = self.store.transition(identity, state, expected=expected, error=error)
            if job is None:
                return None
            previous = before.state if before else None
            self.logger.info(
                f"JOB_STATE: {job.source_path.name} "
                f"{previous.value if previous else '-'} -> {state.value}"
                + (f" ({error})" if error else "")
            )
            self.event_bus.publish(JobStateChanged(job=job, previous=previous))
            return job

    def _report(self, job: Job):
        if job.state == JobState.SUPERSEDED:
            return
        self.reporter.submit(Outcome.from_job(job))

    def _enqueue(self, identity: str, path: Path, front: bool = False):
        if front:
            self._pending.appendleft(identity)
        else:
            self._pending.append(identity)
        self._queued_paths[path] = identity

    def _unqueue(self, job: Job):
        if self._queued_paths.get(job.source_path) == job.identity:
            del self._queued_paths[job.source_path]
        try:
            self._pending.remove(job.identity)
        except ValueError:
            pass
        parked = self._parked.get(job.output_path)
        if parked is not None and job.identity in parked:
            parked.remove(job.identity)
            if not parked:
                del self._parked[job.output_path]

    def _parked_count(self) -> int:
        return sum(len(waiting) for waiting in self._parked.values())

    def _queue_full(self) -> bool:
        return len(self._pending) + self._parked_count() >= self.queue_capacity

    # ------------------------------------------------------------------
    # discovery handling
    # ------------------------------------------------------------------
    def handle_discovery(self, event: DiscoveryEvent):
        path = Path(event.path).absolute()
        if event.kind == DiscoveryKind.REMOVED:
            self._handle_removed(path)
            return
        if event.fingerprint is None:
            self.logger.warning(f"Discovery event without fingerprint ignored: {path}")
            return

        output_path = derive_output_path(
            path, self.root, self.output_dir, self.config.encoder.output_extension
        )
        self._admit(path, event.fingerprint, output_path)

    def _admit(self, path: Path, fingerprint: Fingerprint, output_path: Path):
        with self._lock:
            admission = self.store.admit(path, fingerprint, output_path)
            if not admission.created:
                existing = admission.job
                if self._cancel_reasons.get(existing.identity) == REMOVED_REASON:
                    # restored while its worker is still stopping; run it again afterwards
                    self.logger.info(f"RESTORED: {path.name} reappeared, re-queued after cancel")
                    self._revive.add(existing.identity)
                else:
                    self.logger.debug(
                        f"DEDUP: {path.name} already {existing.state.value} ({fingerprint.key})"
                    )
                return
            if admission.superseded is not None:
                self._handle_superseded(admission.superseded, admission.superseded_from)
            job = admission.job
            self.event_bus.publish(JobStateChanged(job=job, previous=None))
            queued = self._transition(job.identity, JobState.QUEUED, expected=[JobState.DISCOVERED])
            if queued is not None:
                self._enqueue(queued.identity, path)

    def _handle_superseded(self, old: Job, previous: Optional[JobState]):
        self.logger.info(
            f"JOB_STATE: {old.source_path.name} "
            f"{previous.value if previous else '-'} -> {JobState.SUPERSEDED.value}"
        )
        self.event_bus.publish(JobStateChanged(job=old, previous=previous))
        self._unqueue(old)
        self._revive.discard(old.identity)
        cancel_event = self._cancel_events.get(old.identity)
        if cancel_event is not None:
            self._cancel_reasons[old.identity] = "Superseded by a newer version"
            cancel_event.set()

    def _handle_removed(self, path: Path):
        with self._lock:
            job = self.store.latest_for_path(path)
            if job is None or job.is_terminal:
                return
            self._revive.discard(job.identity)
            cancel_event = self._cancel_events.get(job.identity)
            if cancel_event is not None:
                # the worker records the cancellation once the encoder is gone
                self._cancel_reasons[job.identity] = REMOVED_REASON
                cancel_event.set()
                return
            self._unqueue(job)
            cancelled = self._transition(job.identity, JobState.CANCELLED, error=REMOVED_REASON)
        if cancelled is not None:
            self._report(cancelled)

    def _shrinks_queue(self, event: DiscoveryEvent) -> bool:
        if event.kind == DiscoveryKind.REMOVED:
            return True
        path = Path(event.path).absolute()
        with self._lock:
            return path in self._queued_paths

    def _drain_channel(self):
        while not self._shutdown_requested:
            if self._queue_full():
                event = self.channel.take(self._shrinks_queue)
            else:
                event = self.channel.get_nowait()
            if event is None:
                return
            self.handle_discovery(event)

    # ------------------------------------------------------------------
    # scheduling
    # ------------------------------------------------------------------
    def _next_ready(self) -> Optional[Tuple[str, Path]]:
        with self._lock:
            while self._pending:
                identity = self._pending.popleft()
                job = self.store.get(identity)
                if job is None:
                    continue
                if job.is_terminal:
                    if self._queued_paths.get(job.source_path) == identity:
                        del self._queued_paths[job.source_path]
                    continue
                # one writer per output: a.wav and a.flac both map to a.mp3
                holder = self._busy_outputs.get(job.output_path)
                if holder is not None:
                    self.logger.debug(
                        f"OUTPUT_BUSY: {job.source_path.name} waits for {job.output_path.name}"
                    )
                    self._parked.setdefault(job.output_path, deque()).append(identity)
                    continue
                if self._queued_paths.get(job.source_path) == identity:
                    del self._queued_paths[job.source_path]
                return identity, job.output_path
            return None

    def _submit_ready(self, executor: concurrent.futures.Executor):
        while len(self._in_flight) < self.workers and not self._shutdown_requested:
            ready = self._next_ready()
            if ready is None:
                return
            identity, output_path = ready
            cancel_event = threading.Event()
            with self._lock:
                self._cancel_events[identity] = cancel_event
                self._busy_outputs[output_path] = identity
            future = executor.submit(self._run_job, identity, cancel_event)
            self._in_flight[future] = identity
            self.max_in_flight_seen = max(self.max_in_flight_seen, len(self._in_flight))

    def _promote_due_retries(self):
        now = time.monotonic()
        while self._retry_heap and self._retry_heap[0][0] <= now:
            _, _, identity = heapq.heappop(self._retry_heap)
            with self._lock:
                job = self.store.get(identity)
                if job is None or job.state != JobState.RETRYING:
                    continue
                self._enqueue(identity, job.source_path)

    def _collect(self, done):
        for future in done:
            identity = self._in_flight.pop(future)
            delay = None
            try:
                delay = future.result()
            except Exception as e:
                self.logger.error(f"Worker for {identity} failed with exception: {e}")
            cancelled = None
            with self._lock:
                cancel_event = self._cancel_events.pop(identity, None)
                reason = self._cancel_reasons.pop(identity, "Cancelled")
                if delay is not None and cancel_event is not None and cancel_event.is_set():
                    # cancelled between the failed attempt and its retry
                    delay = None
                    cancelled = self._transition(
                        identity, JobState.CANCELLED, expected=[JobState.RETRYING], error=reason
                    )
                job = self.store.get(identity)
                if job is None:
                    continue
                if self._busy_outputs.get(job.output_path) == identity:
                    del self._busy_outputs[job.output_path]
                # waiting jobs go back to the front; the first to run re-parks the rest
                waiting = self._parked.pop(job.output_path, None)
                if waiting:
                    self._pending.extendleft(reversed(waiting))
            if cancelled is not None:
                self._report(cancelled)
            if delay is not None:
                heapq.heappush(
                    self._retry_heap, (time.monotonic() + delay, next(self._retry_seq), identity)
                )
            self._revive_if_restored(identity)

    def _revive_if_restored(self, identity: str):
        with self._lock:
            if identity not in self._revive:
                return
            self._revive.discard(identity)
            job = self.store.get(identity)
            if job is None or job.state != JobState.CANCELLED:
                return
            self._admit(job.source_path, job.fingerprint, job.output_path)

    def is_idle(self) -> bool:
        """True when nothing is queued, parked, waiting to retry or running."""
        # read first: once settled, everything announced is already in the channel
        if not self.source_settled():
            return False
        with self._lock:
            busy = self._pending or self._parked or self._retry_heap or self._in_flight
        return not busy and len(self.channel) == 0

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending) + self._parked_count()

    # ------------------------------------------------------------------
    # worker
    # ------------------------------------------------------------------
    def _run_job(self, identity: str, cancel_event: threading.Event) -> Optional[float]:
        """Runs one encoder attempt. Returns the retry delay if the job should run again."""
        job = self._transition(
            identity, JobState.RUNNING, expected=[JobState.QUEUED, JobState.RETRYING]
        )
        if job is None:
            return None
        if cancel_event.is_set():
            self._finish(identity, JobState.CANCELLED, self._cancel_reason(identity))
            return None

        try:
            self.encoder.encode(job, cancel_event=cancel_event)
        except EncodeCancelledError:
            self._finish(identity, JobState.CANCELLED, self._cancel_reason(identity))
        except EncodeTransientError as e:
            if job.attempts < self.retry_policy.max_attempts:
                retrying = self._transition(
                    identity, JobState.RETRYING, expected=[JobState.RUNNING], error=str(e)
                )
                if retrying is None:
                    return None
                delay = self.retry_policy.delay_for(job.attempts)
                self.logger.info(
                    f"RETRY_SCHEDULED: {job.source_path.name} attempt={job.attempts} in {delay:.1f}s"
                )
                return delay
            self._finish(
                identity, JobState.FAILED, f"{e} (gave up after {job.attempts} attempt(s))"
            )
        except EncodePermanentError as e:
            self._finish(identity, JobState.FAILED, str(e))
        except Exception as e:
            # Log exception but don't crash the pool
            self.logger.error(f"Unexpected error while encoding {job.source_path}: {e}", exc_info=True)
            self._finish(identity, JobState.FAILED, f"Unexpected error: {e}")
        else:
            self._finish(identity, JobState.SUCCEEDED)
        return None

    def _cancel_reason(self, identity: str) -> str:
        with self._lock:
            return self._cancel_reasons.get(identity, "Cancelled")

    def _finish(self, identity: str, state: JobState, error: Optional[str] = None):
        job = self._transition(identity, state, expected=[JobState.RUNNING], error=error)
        if job is not None:
            self._report(job)

    # ------------------------------------------------------------------
    # main loop
    # ------------------------------------------------------------------
    def run(self, until_idle: bool = False):
        """Dispatch until shutdown (or, with until_idle, until nothing is left to do)."""
        self.logger.info(
            f"Dispatcher started: workers={self.workers}, queue_capacity={self.queue_capacity}, "
            f"mode={'once' if until_idle else 'watch'}"
        )
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=self.workers, thread_name_prefix="encoder"
        ) as executor:
            try:
                while True:
                    self._drain_channel()
                    self._promote_due_retries()
                    self._submit_ready(executor)

                    if self._shutdown_requested:
                        break
                    if until_idle and self.is_idle():
                        self.logger.info("All discovered files processed, exiting")
                        break

                    if self._in_flight:
                        done, _ = concurrent.futures.wait(
                            set(self._in_flight),
                            timeout=POLL_INTERVAL_SECONDS,
                            return_when=concurrent.futures.FIRST_COMPLETED,
                        )
                        self._collect(done)
                    else:
                        self.channel.wait(timeout=POLL_INTERVAL_SECONDS)
            except KeyboardInterrupt:
                self.logger.info("Ctrl+C detected - stopping new jobs")
                self.request_shutdown()
            finally:
                self._announce_shutdown()
                self._drain_in_flight()

        self.event_bus.publish(ProcessingFinished())
        self.logger.info("Dispatcher stopped")

    def _drain_in_flight(self):
        if not self._in_flight:
            return
        grace = self.config.general.shutdown_grace_seconds
        self.logger.info(f"Waiting up to {grace:.0f}s for {len(self._in_flight)} running job(s)...")
        deadline = time.monotonic() + grace
        while self._in_flight:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            done, _ = concurrent.futures.wait(
                set(self._in_flight),
                timeout=min(0.2, remaining),
                return_when=concurrent.futures.FIRST_COMPLETED,
            )
            self._collect(done)

        if self._in_flight:
            self.logger.warning(f"Grace period over, cancelling {len(self._in_flight)} job(s)")
            with self._lock:
                for identity in self._in_flight.values():
                    self._cancel_reasons[identity] = "Shutdown"
                    event = self._cancel_events.get(identity)
                    if event is not None:
                        event.set()
            done, _ = concurrent.futures.wait(set(self._in_flight))
            self._collect(done)
