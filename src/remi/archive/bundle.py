"""
Archive bundle files.

A run directory holds::

    <archive_dir>/<run_id>/
        bundle.json     canonical entities of the archived sessions
        raw/...         copies of the raw source files
        manifest.json   SHA-256 and size of every file above

Checksums are taken from the bytes as they were meant to be written (the
in-memory payload, the source file before copying), so verification re-reading
the written files catches any write that went wrong.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional

from remi.exceptions import ArchiveVerificationError, BundleFormatError
from remi.identity import derive_id
from remi.models.canonical import NormalizedBatch, format_datetime, parse_datetime
from remi.utils.fileio import atomic_copy_file, atomic_write_bytes, sha256_bytes, sha256_file

logger = logging.getLogger(__name__)

BUNDLE_FILENAME = "bundle.json"
MANIFEST_FILENAME = "manifest.json"
RAW_DIRNAME = "raw"
FORMAT_VERSION = 1


@dataclass(frozen=True)
class ManifestEntry:
    """One checksummed file, path relative to the run directory."""

    path: str
    sha256: str
    size: int


@dataclass
class Manifest:
    run_id: str
    created_at: datetime
    session_ids: list[str] = field(default_factory=list)
    files: list[ManifestEntry] = field(default_factory=list)
    format_version: int = FORMAT_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "format_version": self.format_version,
            "run_id": self.run_id,
            "created_at": format_datetime(self.created_at),
            "session_ids": self.session_ids,
            "files": [
                {"path": f.path, "sha256": f.sha256, "size": f.size} for f in self.files
            ],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Manifest":
        return cls(
            run_id=data["run_id"],
            created_at=parse_datetime(data["created_at"]),
            session_ids=list(data.get("session_ids", [])),
            files=[
                ManifestEntry(path=f["path"], sha256=f["sha256"], size=int(f["size"]))
                for f in data.get("files", [])
            ],
            format_version=int(data.get("format_version", FORMAT_VERSION)),
        )


@dataclass(frozen=True)
class RawSource:
    """A raw source file to preserve, and where it goes under ``raw/``."""

    source: Path
    relative_path: str


@dataclass(frozen=True)
class VerifiedBundle:
    """
    Proof that every file of a run directory matched its manifest when
    re-read. Only :func:`verify_bundle` creates one; deleting archived
    sessions requires it.
    """

    directory: Path
    manifest: Manifest

    @property
    def bundle_path(self) -> Path:
        return self.directory / BUNDLE_FILENAME

    @property
    def manifest_path(self) -> Path:
        return self.directory / MANIFEST_FILENAME

    @property
    def session_ids(self) -> frozenset[str]:
        return frozenset(self.manifest.session_ids)


def raw_relative_path(agent: str, source: Path) -> str:
    """Stable, collision-free location under ``raw/`` for a source file."""
    digest = derive_id("raw_source", str(source))[:16]
    return f"{RAW_DIRNAME}/{agent}/{digest}-{source.name}"


def encode_bundle(run_id: str, batch: NormalizedBatch) -> bytes:
    document = {"format_version": FORMAT_VERSION, "run_id": run_id, **batch.to_dict()}
    return json.dumps(document, indent=2, sort_keys=True, ensure_ascii=False).encode(
        "utf-8"
    )


def write_bundle(
    directory: Path,
    run_id: str,
    batch: NormalizedBatch,
    raw_sources: Iterable[RawSource],
    created_at: datetime,
) -> Manifest:
    """
    Write bundle, raw copies and manifest into ``directory``.

    Every file goes through a temp file and atomic rename; the manifest is
    written last.

    Returns:
        The manifest that was written
    """
    directory.mkdir(parents=True, exist_ok=True)
    entries: list[ManifestEntry] = []

    payload = encode_bundle(run_id, batch)
    atomic_write_bytes(directory / BUNDLE_FILENAME, payload)
    entries.append(ManifestEntry(BUNDLE_FILENAME, sha256_bytes(payload), len(payload)))

    for raw in raw_sources:
        checksum = sha256_file(raw.source)
        size = raw.source.stat().st_size
        atomic_copy_file(raw.source, directory / raw.relative_path)
        entries.append(ManifestEntry(raw.relative_path, checksum, size))

    manifest = Manifest(
        run_id=run_id,
        created_at=created_at,
        session_ids=sorted(s.id for s in batch.sessions),
        files=entries,
    )
    atomic_write_bytes(
        directory / MANIFEST_FILENAME,
        json.dumps(manifest.to_dict(), indent=2, sort_keys=True).encode("utf-8"),
    )
    logger.info("Wrote archive bundle %s (%d files)", directory, len(entries))
    return manifest


def read_manifest(directory: Path) -> Manifest:
    path = directory / MANIFEST_FILENAME
    try:
        return Manifest.from_dict(json.loads(path.read_text(encoding="utf-8")))
    except FileNotFoundError as e:
        raise ArchiveVerificationError(str(path), "manifest", None) from e
    except (KeyError, TypeError, ValueError) as e:
        raise BundleFormatError(str(path), str(e)) from e


def verify_bundle(directory: Path) -> VerifiedBundle:
    """
    Re-read every file listed in the manifest and compare checksums.

    Raises:
        ArchiveVerificationError: On the first missing or mismatching file
    """
    manifest = read_manifest(directory)
    if not any(entry.path == BUNDLE_FILENAME for entry in manifest.files):
        raise ArchiveVerificationError(str(directory / BUNDLE_FILENAME), "listed", None)

    for entry in manifest.files:
        path = directory / entry.path
        actual: Optional[str] = sha256_file(path) if path.is_file() else None
        if actual != entry.sha256:
            logger.error("Archive file %s failed verification", path)
            raise ArchiveVerificationError(str(path), entry.sha256, actual)

    logger.debug("Verified %d archive files in %s", len(manifest.files), directory)
    return VerifiedBundle(directory=directory, manifest=manifest)


def load_bundle(bundle_path: Path) -> tuple[Optional[str], NormalizedBatch]:
    """
    Parse a bundle file.

    Returns:
        (run_id, batch)

    Raises:
        BundleFormatError: If the file is not a readable bundle
    """
    try:
        document = json.loads(bundle_path.read_text(encoding="utf-8"))
        if not isinstance(document, dict):
            raise ValueError("bundle is not a JSON object")
        return document.get("run_id"), NormalizedBatch.from_dict(document)
    except OSError as e:
        raise BundleFormatError(str(bundle_path), str(e)) from e
    except (KeyError, TypeError, ValueError) as e:
        raise BundleFormatError(str(bundle_path), str(e)) from e
