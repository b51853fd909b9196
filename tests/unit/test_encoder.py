import threading
import pytest
from pathlib import Path
from unittest.mock import patch, MagicMock
from audiopipe.config.models import EncoderConfig
from audiopipe.domain.errors import (
    EncodeCancelledError,
    EncodePermanentError,
    EncodeTransientError,
)
from audiopipe.domain.events import JobProgressUpdated
from audiopipe.domain.models import Fingerprint, Job
from audiopipe.infrastructure.encoder import EncoderInvoker


def make_job(tmp_path, name="input.wav", content="ok\n"):
    source = tmp_path / "in" / name
    source.parent.mkdir(parents=True, exist_ok=True)
    source.write_text(content)
    return Job(
        identity=f"{source}@1",
        source_path=source,
        fingerprint=Fingerprint(size_bytes=source.stat().st_size, mtime_ns=1),
        output_path=tmp_path / "out" / Path(name).with_suffix(".mp3"),
        attempts=1,
    )


def test_default_command_layout(tmp_path):
    job = make_job(tmp_path)
    invoker = EncoderInvoker(EncoderConfig(), event_bus=MagicMock())

    cmd = invoker._build_command(job)

    assert cmd[0] == "ffmpeg"
    assert cmd[cmd.index("-i") + 1] == str(job.source_path)
    assert "libmp3lame" in cmd
    assert cmd[-3:] == ["-f", "mp3", str(EncoderInvoker.temp_path_for(job.output_path, job.identity))]


def test_temp_path_unique_per_job(tmp_path):
    target = tmp_path / "out" / "a.mp3"

    wav_tmp = EncoderInvoker.temp_path_for(target, f"{tmp_path}/in/a.wav@10-1")
    flac_tmp = EncoderInvoker.temp_path_for(target, f"{tmp_path}/in/a.flac@10-1")

    assert wav_tmp != flac_tmp
    assert wav_tmp.parent == flac_tmp.parent == target.parent
    assert wav_tmp.suffix == flac_tmp.suffix == ".tmp"
    assert wav_tmp.name.startswith("a.")
    assert EncoderInvoker.temp_path_for(target, f"{tmp_path}/in/a.wav@10-1") == wav_tmp


def test_command_template_placeholders(tmp_path):
    job = make_job(tmp_path)
    config = EncoderConfig(
        command_template=["enc", "{options}", "--in={input}", "--out", "{output}", "--fmt", "{format}"],
        options=["-q", "5"],
        output_format="ogg",
    )
    invoker = EncoderInvoker(config, event_bus=MagicMock())

    cmd = invoker._build_command(job)

    assert cmd == [
        "enc", "-q", "5", f"--in={job.source_path}", "--out",
        str(EncoderInvoker.temp_path_for(job.output_path, job.identity)), "--fmt", "ogg",
    ]


def test_check_available(fake_encoder_config):
    assert EncoderInvoker(fake_encoder_config, MagicMock()).check_available()
    missing = EncoderConfig(executable="definitely-not-an-encoder-binary")
    assert not EncoderInvoker(missing, MagicMock()).check_available()


@pytest.mark.parametrize("code,output,expected", [
    (75, [], EncodeTransientError),
    (137, [], EncodeTransientError),
    (-9, [], EncodeTransientError),
    (1, ["Cannot allocate memory"], EncodeTransientError),
    (1, ["Invalid data found when processing input"], EncodePermanentError),
    (2, [], EncodePermanentError),
])
def test_classify(code, output, expected):
    invoker = EncoderInvoker(EncoderConfig(), event_bus=MagicMock())
    assert invoker.classify(code, output) is expected


def test_encode_success_renames_tmp(tmp_path):
    job = make_job(tmp_path)
    tmp_output = EncoderInvoker.temp_path_for(job.output_path, job.identity)

    with patch("subprocess.Popen") as mock_popen:
        process_instance = mock_popen.return_value
        process_instance.stdout = [
            "Duration: 00:00:10.00, start: 0.000000\n",
            "size= 100kB time=00:00:05.00 bitrate= 128.0kbits/s\n",
        ]
        process_instance.returncode = 0

        def fake_wait(timeout=None):
            tmp_output.write_bytes(b"encoded")
            return 0
        process_instance.wait.side_effect = fake_wait

        bus = MagicMock()
        invoker = EncoderInvoker(EncoderConfig(), event_bus=bus)
        result = invoker.encode(job)

    assert result == job.output_path
    assert job.output_path.read_bytes() == b"encoded"
    assert not tmp_output.exists()
    progress = [c.args[0] for c in bus.publish.call_args_list if isinstance(c.args[0], JobProgressUpdated)]
    assert progress and progress[-1].progress == pytest.approx(0.5)


def test_encode_permanent_failure(tmp_path):
    job = make_job(tmp_path)
    job.output_path.parent.mkdir(parents=True)
    tmp_output = EncoderInvoker.temp_path_for(job.output_path, job.identity)
    tmp_output.write_bytes(b"partial")

    with patch("subprocess.Popen") as mock_popen:
        process_instance = mock_popen.return_value
        process_instance.stdout = ["Invalid data found when processing input\n"]
        process_instance.wait.return_value = 1
        process_instance.returncode = 1

        invoker = EncoderInvoker(EncoderConfig(), event_bus=MagicMock())
        with pytest.raises(EncodePermanentError) as exc_info:
            invoker.encode(job)

    assert "code 1" in str(exc_info.value)
    assert "Invalid data" in str(exc_info.value)
    assert exc_info.value.returncode == 1
    assert not tmp_output.exists()
    assert not job.output_path.exists()


def test_encode_transient_exit_code(tmp_path):
    job = make_job(tmp_path)

    with patch("subprocess.Popen") as mock_popen:
        process_instance = mock_popen.return_value
        process_instance.stdout = []
        process_instance.wait.return_value = 75
        process_instance.returncode = 75

        invoker = EncoderInvoker(EncoderConfig(), event_bus=MagicMock())
        with pytest.raises(EncodeTransientError):
            invoker.encode(job)


def test_encode_zero_exit_without_output_is_permanent(tmp_path):
    job = make_job(tmp_path)

    with patch("subprocess.Popen") as mock_popen:
        process_instance = mock_popen.return_value
        process_instance.stdout = []
        process_instance.wait.return_value = 0
        process_instance.returncode = 0

        invoker = EncoderInvoker(EncoderConfig(), event_bus=MagicMock())
        with pytest.raises(EncodePermanentError):
            invoker.encode(job)


def test_encode_missing_executable_is_permanent(tmp_path):
    job = make_job(tmp_path)
    invoker = EncoderInvoker(EncoderConfig(executable="definitely-not-an-encoder-binary"), MagicMock())
    with pytest.raises(EncodePermanentError):
        invoker.encode(job)

# ----------------------------------------------------------------------------
# Real subprocess (fake encoder script)
# ----------------------------------------------------------------------------

def test_encode_real_subprocess_success(tmp_path, fake_encoder_config):
    job = make_job(tmp_path, content="ok\npayload\n")
    invoker = EncoderInvoker(fake_encoder_config, event_bus=MagicMock())

    result = invoker.encode(job)

    assert result.read_text() == "ok\npayload\n"
    assert not EncoderInvoker.temp_path_for(job.output_path, job.identity).exists()


def test_encode_real_subprocess_cancel(tmp_path, fake_encoder_config):
    job = make_job(tmp_path, content="sleep 30\n")
    invoker = EncoderInvoker(fake_encoder_config, event_bus=MagicMock())
    cancel_event = threading.Event()
    threading.Timer(0.3, cancel_event.set).start()

    with pytest.raises(EncodeCancelledError):
        invoker.encode(job, cancel_event=cancel_event)

    assert not job.output_path.exists()
    assert not EncoderInvoker.temp_path_for(job.output_path, job.identity).exists()


def test_encode_real_subprocess_timeout(tmp_path, fake_encoder_config):
    config = fake_encoder_config.model_copy(update={"timeout_seconds": 0.3})
    job = make_job(tmp_path, content="sleep 30\n")
    invoker = EncoderInvoker(config, event_bus=MagicMock())

    with pytest.raises(EncodeTransientError) as exc_info:
        invoker.encode(job)

    assert "timed out" in str(exc_info.value)
    assert not job.output_path.exists()


def test_encode_real_subprocess_transient_then_success(tmp_path, fake_encoder_config):
    job = make_job(tmp_path, content="fail-transient 1\n")
    invoker = EncoderInvoker(fake_encoder_config, event_bus=MagicMock())

    with pytest.raises(EncodeTransientError):
        invoker.encode(job)
    assert invoker.encode(job) == job.output_path
