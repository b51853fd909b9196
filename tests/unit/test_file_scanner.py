import hashlib
import pytest
from pathlib import Path
from audiopipe.infrastructure.file_scanner import FileScanner, compute_fingerprint

def test_file_scanner_basic(tmp_path):
    # Setup dummy directory structure
    (tmp_path / "track1.wav").write_text("dummy")
    (tmp_path / "track2.FLAC").write_text("dummy content")
    (tmp_path / "subdir").mkdir()
    (tmp_path / "subdir" / "track3.mp3").write_text("dummy mp3")
    (tmp_path / "ignored.txt").write_text("ignore me")

    scanner = FileScanner(extensions=[".wav", ".flac", ".mp3"])
    files = list(scanner.scan(tmp_path))

    names = {f.name for f in files}
    assert names == {"track1.wav", "track2.FLAC", "track3.mp3"}

def test_file_scanner_is_deterministic(tmp_path):
    for name in ("c.wav", "a.wav", "b.wav"):
        (tmp_path / name).write_text("x")
    scanner = FileScanner(extensions=["wav"])
    assert [f.name for f in scanner.scan(tmp_path)] == ["a.wav", "b.wav", "c.wav"]

def test_file_scanner_excludes_output_dir(tmp_path):
    (tmp_path / "song.wav").write_text("data")
    out_dir = tmp_path / "encoded"
    out_dir.mkdir()
    (out_dir / "song.wav").write_text("data")

    scanner = FileScanner(extensions=[".wav"], exclude_dirs=[out_dir])
    files = list(scanner.scan(tmp_path))

    assert files == [tmp_path / "song.wav"]

def test_file_scanner_skips_hidden_and_tmp(tmp_path):
    (tmp_path / ".partial.wav").write_text("data")
    (tmp_path / "song.tmp").write_text("data")
    (tmp_path / "song.wav").write_text("data")

    scanner = FileScanner(extensions=[".wav"])
    assert [f.name for f in scanner.scan(tmp_path)] == ["song.wav"]

def test_file_scanner_non_recursive(tmp_path):
    (tmp_path / "top.wav").write_text("data")
    (tmp_path / "sub").mkdir()
    (tmp_path / "sub" / "nested.wav").write_text("data")

    scanner = FileScanner(extensions=[".wav"], recursive=False)
    assert [f.name for f in scanner.scan(tmp_path)] == ["top.wav"]

def test_is_candidate(tmp_path):
    scanner = FileScanner(extensions=[".wav"], exclude_dirs=[tmp_path / "out"])
    assert scanner.is_candidate(tmp_path / "a.WAV")
    assert not scanner.is_candidate(tmp_path / "a.mp3")
    assert not scanner.is_candidate(tmp_path / "out" / "a.wav")

def test_compute_fingerprint_stat(tmp_path):
    f = tmp_path / "a.wav"
    f.write_bytes(b"12345")
    fp = compute_fingerprint(f)
    assert fp.size_bytes == 5
    assert fp.mtime_ns == f.stat().st_mtime_ns
    assert fp.content_hash is None

def test_compute_fingerprint_with_hash(tmp_path):
    f = tmp_path / "a.wav"
    f.write_bytes(b"audio")
    fp = compute_fingerprint(f, with_hash=True)
    assert fp.content_hash == hashlib.sha256(b"audio").hexdigest()

def test_compute_fingerprint_missing_file(tmp_path):
    with pytest.raises(OSError):
        compute_fingerprint(tmp_path / "missing.wav")
