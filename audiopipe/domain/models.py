from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field


class JobState(str, Enum):
    DISCOVERED = "discovered"
    QUEUED = "queued"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SUPERSEDED = "superseded"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({
    JobState.SUCCEEDED,
    JobState.FAILED,
    JobState.SUPERSEDED,
    JobState.CANCELLED,
})


class DiscoveryKind(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    REMOVED = "removed"


class Fingerprint(BaseModel):
    """Cheap content-version identifier for a file."""

    model_config = ConfigDict(frozen=True)

    size_bytes: int
    mtime_ns: int
    content_hash: Optional[str] = None

    @property
    def key(self) -> str:
        if self.content_hash:
            return f"sha256:{self.content_hash}"
        return f"{self.size_bytes}-{self.mtime_ns}"


def make_identity(path: Path, fingerprint: Fingerprint) -> str:
    return f"{Path(path).absolute()}@{fingerprint.key}"


def derive_output_path(source: Path, root: Path, output_dir: Path, extension: str) -> Path:
    """Mirror the source's position under root into output_dir with a new extension."""
    try:
        rel_path = Path(source).relative_to(root)
    except ValueError:
        rel_path = Path(Path(source).name)
    return Path(output_dir) / rel_path.with_suffix(extension)


def _now() -> datetime:
    return datetime.now().astimezone()


class DiscoveryEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: Path
    kind: DiscoveryKind
    fingerprint: Optional[Fingerprint] = None
    timestamp: datetime = Field(default_factory=_now)


class Job(BaseModel):
    identity: str
    source_path: Path
    fingerprint: Fingerprint
    output_path: Path
    state: JobState = JobState.DISCOVERED
    attempts: int = 0
    last_error: Optional[str] = None
    progress: float = 0.0
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


class Outcome(BaseModel):
    """Final result of a job as delivered to the reporting endpoint."""

    model_config = ConfigDict(frozen=True)

    identity: str
    state: JobState
    error: Optional[str] = None
    duration_ms: int = 0
    output_path: Optional[Path] = None

    @classmethod
    def from_job(cls, job: Job) -> "Outcome":
        duration_ms = 0
        if job.started_at and job.finished_at:
            duration_ms = int((job.finished_at - job.started_at).total_seconds() * 1000)
        return cls(
            identity=job.identity,
            state=job.state,
            error=job.last_error if job.state != JobState.SUCCEEDED else None,
            duration_ms=max(0, duration_ms),
            output_path=job.output_path if job.state == JobState.SUCCEEDED else None,
        )

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
