import hashlib
import os
from pathlib import Path
from typing import Generator, List, Optional
from audiopipe.domain.models import Fingerprint

HASH_CHUNK_SIZE = 1024 * 1024


def compute_fingerprint(path: Path, with_hash: bool = False) -> Fingerprint:
    """Stat-based fingerprint, optionally upgraded with a sha256 of the content.

    Raises OSError if the file cannot be read.
    """
    stat = path.stat()
    content_hash = None
    if with_hash:
        digest = hashlib.sha256()
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
                digest.update(chunk)
        content_hash = digest.hexdigest()
    return Fingerprint(size_bytes=stat.st_size, mtime_ns=stat.st_mtime_ns, content_hash=content_hash)


class FileScanner:
    """Recursively scans for audio files in a directory."""

    def __init__(self, extensions: List[str], exclude_dirs: Optional[List[Path]] = None, recursive: bool = True):
        self.extensions = [(ext if ext.startswith(".") else f".{ext}").lower() for ext in extensions]
        self.exclude_dirs = [Path(p).absolute() for p in (exclude_dirs or [])]
        self.recursive = recursive

    def is_excluded(self, path: Path) -> bool:
        path = Path(path).absolute()
        for excluded in self.exclude_dirs:
            if path == excluded or excluded in path.parents:
                return True
        return False

    def is_candidate(self, path: Path) -> bool:
        """Extension allow-list and exclusion check; does not touch the filesystem."""
        path = Path(path)
        if path.suffix.lower() not in self.extensions:
            return False
        if path.name.startswith("."):
            return False
        return not self.is_excluded(path)

    def scan(self, root_dir: Path) -> Generator[Path, None, None]:
        """Scans the directory and yields candidate file paths."""
        for root, dirs, files in os.walk(str(root_dir)):
            root_path = Path(root)

            if self.is_excluded(root_path):
                dirs[:] = []  # stop recursion into this branch
                continue

            if not self.recursive:
                dirs[:] = []
            else:
                # Ensure deterministic traversal: sort directories and files
                dirs[:] = sorted(d for d in dirs if not self.is_excluded(root_path / d))
            files.sort()

            for file_name in files:
                file_path = root_path / file_name
                if not self.is_candidate(file_path):
                    continue
                if file_path.is_file():
                    yield file_path
