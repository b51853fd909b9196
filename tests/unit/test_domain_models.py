from datetime import datetime, timedelta, timezone
from pathlib import Path
import pytest
from pydantic import ValidationError
from audiopipe.domain.models import (
    DiscoveryEvent,
    DiscoveryKind,
    Fingerprint,
    Job,
    JobState,
    Outcome,
    derive_output_path,
    make_identity,
)


def test_fingerprint_key_stat():
    fp = Fingerprint(size_bytes=10, mtime_ns=20)
    assert fp.key == "10-20"


def test_fingerprint_key_prefers_hash():
    fp = Fingerprint(size_bytes=10, mtime_ns=20, content_hash="abc")
    assert fp.key == "sha256:abc"


def test_fingerprint_is_frozen():
    fp = Fingerprint(size_bytes=10, mtime_ns=20)
    with pytest.raises(ValidationError):
        fp.size_bytes = 11


def test_identity_changes_with_fingerprint(tmp_path):
    path = tmp_path / "a.wav"
    a = make_identity(path, Fingerprint(size_bytes=1, mtime_ns=1))
    b = make_identity(path, Fingerprint(size_bytes=1, mtime_ns=2))
    assert a != b
    assert a.startswith(str(path.absolute()))


def test_derive_output_path_mirrors_tree(tmp_path):
    root = tmp_path / "in"
    out = tmp_path / "out"
    result = derive_output_path(root / "album" / "track.flac", root, out, ".mp3")
    assert result == out / "album" / "track.mp3"


def test_derive_output_path_outside_root(tmp_path):
    result = derive_output_path(Path("/elsewhere/x.wav"), tmp_path / "in", tmp_path / "out", ".ogg")
    assert result == tmp_path / "out" / "x.ogg"


def test_job_defaults(tmp_path, fingerprint):
    job = Job(
        identity="id",
        source_path=tmp_path / "a.wav",
        fingerprint=fingerprint,
        output_path=tmp_path / "a.mp3",
    )
    assert job.state == JobState.DISCOVERED
    assert job.attempts == 0
    assert job.progress == 0.0
    assert not job.is_terminal


def test_discovery_event_removed_has_no_fingerprint(tmp_path):
    event = DiscoveryEvent(path=tmp_path / "a.wav", kind=DiscoveryKind.REMOVED)
    assert event.fingerprint is None


def _finished_job(tmp_path, fingerprint, state, error=None):
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    return Job(
        identity="a@1",
        source_path=tmp_path / "a.wav",
        fingerprint=fingerprint,
        output_path=tmp_path / "a.mp3",
        state=state,
        attempts=1,
        last_error=error,
        started_at=start,
        finished_at=start + timedelta(seconds=2),
    )


def test_outcome_from_succeeded_job(tmp_path, fingerprint):
    job = _finished_job(tmp_path, fingerprint, JobState.SUCCEEDED, error="old transient error")
    outcome = Outcome.from_job(job)
    assert outcome.state == JobState.SUCCEEDED
    assert outcome.duration_ms == 2000
    assert outcome.error is None
    assert outcome.output_path == tmp_path / "a.mp3"


def test_outcome_from_failed_job(tmp_path, fingerprint):
    job = _finished_job(tmp_path, fingerprint, JobState.FAILED, error="bad input")
    payload = Outcome.from_job(job).to_payload()
    assert payload == {
        "identity": "a@1",
        "state": "failed",
        "error": "bad input",
        "duration_ms": 2000,
    }
