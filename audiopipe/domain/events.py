"""Domain events for the audio pipeline.

Events represent state changes and notifications that flow through the EventBus,
decoupling the dispatcher from the progress tracker and the dashboard.

See `infrastructure/event_bus.py` for the pub/sub mechanism.
"""

from typing import Optional
from pydantic import BaseModel
from .models import Job, JobState, Outcome


class Event(BaseModel):
    """Base class for all domain events.

    Events are validated Pydantic models. They are not frozen by default.
    """

    pass


class JobStateChanged(Event):
    """Emitted by the dispatcher after every committed state transition.

    `job` is a snapshot taken right after the transition. `previous` is None
    when the job was just created.
    """

    job: Job
    previous: Optional[JobState] = None


class JobProgressUpdated(Event):
    """Emitted periodically while the encoder runs."""

    identity: str
    progress: float


class WatchModeChanged(Event):
    """Emitted when the watcher switches between notification and polling mode."""

    mode: str
    reason: Optional[str] = None


class ReportDelivered(Event):
    outcome: Outcome


class ReportDropped(Event):
    """Outcome given up on: permanent rejection, exhausted retries or queue overflow."""

    outcome: Outcome
    reason: str


class ShutdownRequested(Event):
    """Emitted when a graceful shutdown begins (signal or Ctrl+C)."""

    pass


class ProcessingFinished(Event):
    """Emitted when the dispatcher loop exits."""

    pass
