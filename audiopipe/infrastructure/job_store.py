"""Registry of known jobs keyed by content identity.

The store is the single source of truth for deduplication. All access goes
through one re-entrant lock and every read returns a copy, so callers never
share a mutable Job. Optionally backed by a JSON file holding the terminal
succeeded/failed records, which is what makes a restart skip unchanged files.
"""

import json
import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional
from pydantic import BaseModel, ValidationError
from audiopipe.domain.models import Fingerprint, Job, JobState, TERMINAL_STATES, make_identity

STATE_FILE_VERSION = 1

PERSISTED_STATES = frozenset({JobState.SUCCEEDED, JobState.FAILED})

# Identical identities in these states are duplicates; anything else is re-admitted.
DEDUP_STATES = frozenset({
    JobState.DISCOVERED,
    JobState.QUEUED,
    JobState.RUNNING,
    JobState.RETRYING,
    JobState.SUCCEEDED,
    JobState.FAILED,
})

ALLOWED_TRANSITIONS = {
    JobState.DISCOVERED: {JobState.QUEUED, JobState.SUPERSEDED, JobState.CANCELLED},
    JobState.QUEUED: {JobState.RUNNING, JobState.SUPERSEDED, JobState.CANCELLED},
    JobState.RUNNING: {JobState.SUCCEEDED, JobState.FAILED, JobState.RETRYING,
                       JobState.SUPERSEDED, JobState.CANCELLED},
    JobState.RETRYING: {JobState.RUNNING, JobState.SUPERSEDED, JobState.CANCELLED},
}


class Admission(BaseModel):
    """Result of admitting a discovered file version."""

    job: Job
    created: bool
    superseded: Optional[Job] = None
    superseded_from: Optional[JobState] = None


class JobStore:
    def __init__(self, state_file: Optional[Path] = None):
        self.state_file = Path(state_file) if state_file else None
        self.logger = logging.getLogger(__name__)
        self._lock = threading.RLock()
        self._jobs: Dict[str, Job] = {}
        self._latest_by_path: Dict[Path, str] = {}

    @staticmethod
    def _path_key(path: Path) -> Path:
        return Path(path).absolute()

    def admit(self, path: Path, fingerprint: Fingerprint, output_path: Path) -> Admission:
        """Register a discovered file version.

        Returns the existing job with created=False when the identity is a
        duplicate. Otherwise creates a new DISCOVERED job and, if the path's
        current job is still pending, marks that one SUPERSEDED.
        """
        path_key = self._path_key(path)
        identity = make_identity(path_key, fingerprint)
        with self._lock:
            existing = self._jobs.get(identity)
            if existing is not None and existing.state in DEDUP_STATES:
                return Admission(job=existing.model_copy(), created=False)

            superseded = None
            superseded_from = None
            previous_id = self._latest_by_path.get(path_key)
            if previous_id is not None and previous_id != identity:
                previous = self._jobs.get(previous_id)
                if previous is not None and not previous.is_terminal:
                    superseded_from = previous.state
                    self._apply(previous, JobState.SUPERSEDED)
                    superseded = previous.model_copy()

            job = Job(
                identity=identity,
                source_path=path_key,
                fingerprint=fingerprint,
                output_path=Path(output_path),
            )
            self._jobs[identity] = job
            self._latest_by_path[path_key] = identity
            return Admission(
                job=job.model_copy(),
                created=True,
                superseded=superseded,
                superseded_from=superseded_from,
            )

    def transition(
        self,
        identity: str,
        state: JobState,
        expected: Optional[Iterable[JobState]] = None,
        error: Optional[str] = None,
    ) -> Optional[Job]:
        """Compare-and-set state change.

        Returns the updated job copy, or None when the job is unknown, not in
        one of the `expected` states, or the transition is not allowed (for
        instance because the job already reached a terminal state).
        """
        with self._lock:
            job = self._jobs.get(identity)
            if job is None:
                return None
            if expected is not None and job.state not in set(expected):
                return None
            if state not in ALLOWED_TRANSITIONS.get(job.state, ()):
                return None
            self._apply(job, state, error=error)
            snapshot = job.model_copy()
            persist = state in PERSISTED_STATES
        if persist:
            self.save()
        return snapshot

    def _apply(self, job: Job, state: JobState, error: Optional[str] = None):
        now = datetime.now().astimezone()
        if state == JobState.RUNNING:
            job.attempts += 1
            job.progress = 0.0
            if job.started_at is None:
                job.started_at = now
        if state in TERMINAL_STATES:
            job.finished_at = now
            if state == JobState.SUCCEEDED:
                job.progress = 1.0
        if error is not None:
            job.last_error = error
        job.state = state
        job.updated_at = now

    def update_progress(self, identity: str, progress: float) -> None:
        with self._lock:
            job = self._jobs.get(identity)
            if job is not None and job.state == JobState.RUNNING:
                job.progress = max(0.0, min(1.0, progress))

    def get(self, identity: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(identity)
            return job.model_copy() if job else None

    def latest_for_path(self, path: Path) -> Optional[Job]:
        with self._lock:
            identity = self._latest_by_path.get(self._path_key(path))
            if identity is None:
                return None
            return self._jobs[identity].model_copy()

    def jobs(self, states: Optional[Iterable[JobState]] = None) -> List[Job]:
        with self._lock:
            wanted = set(states) if states is not None else None
            return [
                job.model_copy() for job in self._jobs.values()
                if wanted is None or job.state in wanted
            ]

    def counts(self) -> Dict[JobState, int]:
        with self._lock:
            counts = {state: 0 for state in JobState}
            for job in self._jobs.values():
                counts[job.state] += 1
            return counts

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------
    def load(self, forget_failed: bool = False) -> int:
        """Load terminal records from the state file. Returns the number loaded."""
        if self.state_file is None or not self.state_file.exists():
            return 0
        try:
            with open(self.state_file, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            self.logger.warning(f"Ignoring unreadable state file {self.state_file}: {e}")
            return 0

        loaded = 0
        with self._lock:
            for raw in data.get("jobs", []):
                try:
                    job = Job.model_validate(raw)
                except ValidationError as e:
                    self.logger.warning(f"Skipping invalid job record in state file: {e}")
                    continue
                if job.state not in PERSISTED_STATES:
                    continue
                if forget_failed and job.state == JobState.FAILED:
                    continue
                self._jobs[job.identity] = job
                path_key = self._path_key(job.source_path)
                current_id = self._latest_by_path.get(path_key)
                current = self._jobs.get(current_id) if current_id else None
                if current is None or current.updated_at <= job.updated_at:
                    self._latest_by_path[path_key] = job.identity
                loaded += 1
        self.logger.info(f"Loaded {loaded} job record(s) from {self.state_file}")
        return loaded

    def save(self) -> None:
        """Atomically write succeeded/failed records (latest per path) to the state file."""
        if self.state_file is None:
            return
        with self._lock:
            records = []
            for identity in self._latest_by_path.values():
                job = self._jobs[identity]
                if job.state in PERSISTED_STATES:
                    records.append(job.model_dump(mode="json"))
            payload = {"version": STATE_FILE_VERSION, "jobs": records}
            tmp_path = self.state_file.with_suffix(".tmp")
            try:
                self.state_file.parent.mkdir(parents=True, exist_ok=True)
                with open(tmp_path, "w") as f:
                    json.dump(payload, f, indent=2)
                os.replace(tmp_path, self.state_file)
            except OSError as e:
                self.logger.error(f"Failed to write state file {self.state_file}: {e}")
