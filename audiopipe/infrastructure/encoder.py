import hashlib
import logging
import os
import queue
import re
import shutil
import subprocess
import threading
import time
from collections import deque
from pathlib import Path
from typing import List, Optional
from audiopipe.config.models import EncoderConfig
from audiopipe.domain.errors import (
    EncodeCancelledError,
    EncodePermanentError,
    EncodeTransientError,
)
from audiopipe.domain.events import JobProgressUpdated
from audiopipe.domain.models import Job
from audiopipe.infrastructure.event_bus import EventBus

# ffmpeg prints 'Duration: 00:03:12.45' for the input and 'time=00:00:05.00' while encoding
DURATION_REGEX = re.compile(r"Duration:\s*(\d+):(\d+):(\d+(?:\.\d+)?)")
TIME_REGEX = re.compile(r"time=\s*(\d+):(\d+):(\d+(?:\.\d+)?)")

TRANSIENT_MARKERS = (
    "Cannot allocate memory",
    "Resource temporarily unavailable",
    "No space left on device",
    "Too many open files",
)

OUTPUT_TAIL_LINES = 20
TERMINATE_GRACE_SECONDS = 3.0
PROGRESS_STEP = 0.01


def _to_seconds(h: str, m: str, s: str) -> float:
    return float(h) * 3600 + float(m) * 60 + float(s)


class EncoderInvoker:
    """Runs the external encoder for one job at a time per calling thread.

    Output is written to a per-job `<output stem>.<identity hash>.tmp` and
    renamed onto the final path only after a zero exit status, so a failed or
    cancelled run never leaves a discoverable file at the target.
    """

    def __init__(self, config: EncoderConfig, event_bus: EventBus):
        self.config = config
        self.event_bus = event_bus
        self.logger = logging.getLogger(__name__)

    def check_available(self) -> bool:
        """True if the configured encoder executable can be resolved."""
        executable = self.config.executable
        if self.config.command_template:
            executable = self.config.command_template[0]
        return shutil.which(executable) is not None or Path(executable).is_file()

    @staticmethod
    def temp_path_for(output_path: Path, identity: str) -> Path:
        digest = hashlib.sha1(identity.encode("utf-8")).hexdigest()[:8]
        return output_path.with_name(f"{output_path.stem}.{digest}.tmp")

    def _build_command(self, job: Job) -> List[str]:
        """Constructs the encoder command line arguments."""
        tmp_path = self.temp_path_for(job.output_path, job.identity)
        if self.config.command_template:
            cmd: List[str] = []
            for item in self.config.command_template:
                if item == "{options}":
                    cmd.extend(self.config.options)
                    continue
                cmd.append(
                    item.replace("{input}", str(job.source_path))
                    .replace("{output}", str(tmp_path))
                    .replace("{format}", self.config.output_format)
                )
            return cmd

        return [
            self.config.executable,
            "-hide_banner",
            "-nostdin",
            "-y",  # Overwrite leftovers from an earlier attempt
            "-i", str(job.source_path),
            *self.config.options,
            # Force the container since .tmp does not indicate a format
            "-f", self.config.output_format,
            str(tmp_path),
        ]

    def _terminate(self, process: subprocess.Popen):
        process.terminate()
        try:
            process.wait(timeout=TERMINATE_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()

    def _cleanup(self, tmp_path: Path):
        try:
            if tmp_path.exists():
                tmp_path.unlink()
        except OSError as e:
            self.logger.warning(f"Failed to remove temp output {tmp_path}: {e}")

    def classify(self, returncode: int, output_tail: List[str]) -> type:
        """Map an exit status onto the transient/permanent failure classes."""
        if returncode < 0 or returncode in self.config.transient_exit_codes:
            return EncodeTransientError
        text = "\n".join(output_tail)
        if any(marker in text for marker in TRANSIENT_MARKERS):
            return EncodeTransientError
        return EncodePermanentError

    def encode(self, job: Job, cancel_event: Optional[threading.Event] = None) -> Path:
        """Executes the encoder for `job` and returns the final output path.

        Raises:
            EncodeTransientError: timeout, transient exit code or resource exhaustion
            EncodePermanentError: any other failure
            EncodeCancelledError: cancel_event was set while the encoder ran
        """
        filename = job.source_path.name
        output_path = job.output_path
        tmp_path = self.temp_path_for(output_path, job.identity)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        cmd = self._build_command(job)
        self.logger.info(f"ENCODER_START: {filename} attempt={job.attempts}")
        self.logger.debug(f"ENCODER_CMD: {' '.join(cmd)}")

        start_time = time.monotonic()
        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                universal_newlines=True,
                errors="replace",
                bufsize=1
            )
        except FileNotFoundError as e:
            raise EncodePermanentError(f"Encoder executable not found: {e}")
        except OSError as e:
            # fork/exec failures (EAGAIN, ENOMEM) are resource problems
            raise EncodeTransientError(f"Failed to launch encoder: {e}")

        output_queue: "queue.Queue[Optional[str]]" = queue.Queue()

        def _reader():
            if not process.stdout:
                output_queue.put(None)
                return
            for line in process.stdout:
                output_queue.put(line)
            output_queue.put(None)

        reader_thread = threading.Thread(target=_reader, daemon=True)
        reader_thread.start()

        tail: deque = deque(maxlen=OUTPUT_TAIL_LINES)
        total_duration = 0.0
        last_progress = 0.0
        expected_seconds = max(1.0, job.fingerprint.size_bytes / self.config.estimate_bytes_per_second)
        stream_done = False

        def _publish(progress: float):
            nonlocal last_progress
            progress = max(0.0, min(1.0, progress))
            if progress - last_progress >= PROGRESS_STEP:
                last_progress = progress
                self.event_bus.publish(JobProgressUpdated(identity=job.identity, progress=progress))

        try:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    self.logger.info(f"ENCODER_CANCELLED: {filename}")
                    self._terminate(process)
                    self._cleanup(tmp_path)
                    raise EncodeCancelledError("Cancelled while encoding")

                elapsed = time.monotonic() - start_time
                if elapsed > self.config.timeout_seconds:
                    self.logger.warning(f"ENCODER_TIMEOUT: {filename} after {elapsed:.1f}s")
                    self._terminate(process)
                    self._cleanup(tmp_path)
                    raise EncodeTransientError(
                        f"Encoder timed out after {self.config.timeout_seconds:.0f}s"
                    )

                if stream_done:
                    if process.poll() is not None:
                        break
                    time.sleep(0.05)
                    continue

                try:
                    line = output_queue.get(timeout=0.1)
                except queue.Empty:
                    if total_duration <= 0:
                        _publish(min(0.99, elapsed / expected_seconds))
                    continue

                if line is None:
                    stream_done = True
                    continue

                line = line.rstrip()
                if line:
                    tail.append(line)

                if total_duration <= 0:
                    match = DURATION_REGEX.search(line)
                    if match:
                        total_duration = _to_seconds(*match.groups())
                match = TIME_REGEX.search(line)
                if match and total_duration > 0:
                    _publish(_to_seconds(*match.groups()) / total_duration)

            process.wait()
        except KeyboardInterrupt:
            self.logger.info(f"ENCODER_INTERRUPTED: {filename} (KeyboardInterrupt)")
            self._terminate(process)
            self._cleanup(tmp_path)
            raise

        elapsed = time.monotonic() - start_time
        returncode = process.returncode
        if returncode != 0:
            self._cleanup(tmp_path)
            error_class = self.classify(returncode, list(tail))
            detail = tail[-1] if tail else "no output"
            self.logger.info(
                f"ENCODER_END: {filename} status=failed code={returncode} "
                f"class={error_class.__name__} elapsed={elapsed:.2f}s"
            )
            raise error_class(f"Encoder exited with code {returncode}: {detail}", returncode=returncode)

        if not tmp_path.exists():
            raise EncodePermanentError("Encoder exited with code 0 but produced no output", returncode=0)

        os.replace(tmp_path, output_path)
        self.logger.info(f"ENCODER_END: {filename} status=completed elapsed={elapsed:.2f}s")
        return output_path
