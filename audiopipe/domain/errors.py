"""Error taxonomy for the audio pipeline.

Only `StartupError` aborts the process. Everything else is scoped to a single
job (encoder errors), a single delivery (reporting) or degrades a component
(discovery).
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class StartupError(PipelineError):
    """Fatal configuration or environment problem detected before processing starts."""


class DiscoveryError(PipelineError):
    """Filesystem notification mechanism failed; the watcher degrades to polling."""


class EncodeError(PipelineError):
    """Base class for encoder failures."""

    def __init__(self, message: str, returncode: Optional[int] = None):
        super().__init__(message)
        self.returncode = returncode


class EncodeTransientError(EncodeError):
    """Recoverable failure (timeout, resource exhaustion); retried with backoff."""


class EncodePermanentError(EncodeError):
    """Malformed input or unsupported format; never retried."""


class EncodeCancelledError(EncodeError):
    """Encoder terminated because its job was cancelled or superseded."""


class ReportingError(PipelineError):
    """Outcome delivery failed."""

    def __init__(self, message: str, retryable: bool = True, status_code: Optional[int] = None):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code
