"""Checksums and crash-safe writes for archive files."""

import hashlib
import os
import shutil
import tempfile
from pathlib import Path


def sha256_bytes(content: str | bytes) -> str:
    """SHA-256 hex digest of a string (UTF-8) or bytes."""
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def sha256_file(file_path: Path | str, chunk_size: int = 8192) -> str:
    """
    Calculate SHA-256 hash of a file, reading it in chunks.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the path is not a regular file
    """
    file_path = Path(file_path)
    if not file_path.exists():
        raise FileNotFoundError(f"File not found: {file_path}")
    if not file_path.is_file():
        raise ValueError(f"Not a file: {file_path}")

    digest = hashlib.sha256()
    with open(file_path, "rb") as f:
        while chunk := f.read(chunk_size):
            digest.update(chunk)
    return digest.hexdigest()


def atomic_write_bytes(target: Path, payload: bytes) -> None:
    """
    Write ``payload`` to ``target`` so readers see either the old file or the
    complete new one, never a partial write.

    The data is written to a temp file in the same directory, fsynced, then
    moved into place with ``os.replace``.
    """
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", dir=target.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, target)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def atomic_copy_file(source: Path, target: Path) -> None:
    """Copy ``source`` to ``target`` through a temp file and atomic rename."""
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", dir=target.parent)
    try:
        with os.fdopen(fd, "wb") as out, open(source, "rb") as src:
            shutil.copyfileobj(src, out)
            out.flush()
            os.fsync(out.fileno())
        os.replace(tmp_name, target)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
