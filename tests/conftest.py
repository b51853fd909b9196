import sys
import textwrap
import pytest
import yaml
from pathlib import Path
from audiopipe.config.models import AppConfig, EncoderConfig
from audiopipe.domain.models import DiscoveryEvent, DiscoveryKind, Fingerprint
from audiopipe.infrastructure.event_bus import EventBus

# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def sample_config(tmp_path):
    """Returns a small, fast AppConfig for testing."""
    return AppConfig(
        general={
            "output_dir": str(tmp_path / "out"),
            "workers": 2,
            "queue_capacity": 64,
            "channel_capacity": 16,
            "shutdown_grace_seconds": 2.0,
        },
        watch={
            "root_dir": str(tmp_path / "in"),
            "extensions": [".wav", ".flac"],
            "debounce_seconds": 0.05,
            "rescan_interval_seconds": 0.2,
            "use_polling": True,
        },
        retry={"max_attempts": 3, "base_delay_seconds": 0.01, "factor": 2.0, "max_delay_seconds": 0.05},
        reporter={"max_retries": 2, "backoff_seconds": 0.0, "queue_capacity": 8},
        ui={"enabled": False},
    )


@pytest.fixture
def config_yaml_path(tmp_path):
    """Writes a YAML config file and returns its path."""
    data = {
        "general": {"workers": 3, "queue_capacity": 10, "fingerprint": "sha256"},
        "watch": {"extensions": ["WAV", ".Flac"], "debounce_seconds": 0.5},
        "encoder": {"executable": "ffmpeg", "timeout_seconds": 30},
        "retry": {"max_attempts": 5},
        "reporter": {"url": "http://localhost:9000/outcomes"},
        "ui": {"enabled": False},
    }
    path = tmp_path / "audiopipe.yaml"
    with open(path, "w") as f:
        yaml.dump(data, f)
    return path

# ============================================================================
# Infrastructure Fixtures
# ============================================================================

@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def fingerprint():
    return Fingerprint(size_bytes=1000, mtime_ns=1_700_000_000_000_000_000)


@pytest.fixture
def make_event():
    """Factory for DiscoveryEvents with a synthetic stat fingerprint."""
    def _make(path, size=1000, mtime_ns=1, kind=DiscoveryKind.CREATED):
        if kind == DiscoveryKind.REMOVED:
            return DiscoveryEvent(path=Path(path), kind=kind)
        return DiscoveryEvent(
            path=Path(path),
            kind=kind,
            fingerprint=Fingerprint(size_bytes=size, mtime_ns=mtime_ns),
        )
    return _make

# ============================================================================
# Fake encoder (a real subprocess standing in for ffmpeg)
# ============================================================================

FAKE_ENCODER_SOURCE = textwrap.dedent('''
    """Stand-in encoder. Behaviour is chosen by the first line of the input file:

    ok                  copy input to output
    sleep <s>           sleep, then copy
    fail-permanent      exit 1
    fail-transient <n>  exit 75 for the first n runs on this input, then copy
    no-output           exit 0 without writing anything
    """
    import os
    import shutil
    import sys
    import time

    state_dir, src, dst = sys.argv[1], sys.argv[2], sys.argv[3]
    with open(src) as f:
        words = (f.readline().split() or ["ok"])
    command = words[0]

    print("Duration: 00:00:01.00, start: 0.000000", flush=True)

    if command == "fail-permanent":
        print(f"{src}: Invalid data found when processing input", flush=True)
        sys.exit(1)

    if command == "fail-transient":
        counter = os.path.join(state_dir, os.path.basename(src) + ".count")
        runs = int(open(counter).read()) if os.path.exists(counter) else 0
        with open(counter, "w") as f:
            f.write(str(runs + 1))
        if runs < int(words[1]):
            print("Resource temporarily unavailable", flush=True)
            sys.exit(75)

    if command == "sleep":
        deadline = time.time() + float(words[1])
        while time.time() < deadline:
            time.sleep(0.05)

    if command == "no-output":
        sys.exit(0)

    print("size=   1kB time=00:00:00.50 bitrate= 128kbits/s", flush=True)
    shutil.copyfile(src, dst)
    print("size=   2kB time=00:00:01.00 bitrate= 128kbits/s", flush=True)
''')


@pytest.fixture
def fake_encoder_script(tmp_path):
    script_dir = tmp_path / "fake_encoder"
    script_dir.mkdir()
    script = script_dir / "fake_encoder.py"
    script.write_text(FAKE_ENCODER_SOURCE)
    return script


@pytest.fixture
def fake_encoder_config(fake_encoder_script):
    """EncoderConfig that runs the fake encoder script through command_template."""
    return EncoderConfig(
        command_template=[
            sys.executable,
            str(fake_encoder_script),
            str(fake_encoder_script.parent),
            "{input}",
            "{output}",
        ],
        output_extension=".mp3",
        timeout_seconds=10.0,
    )
