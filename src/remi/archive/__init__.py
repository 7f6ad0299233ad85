"""Archive: retention planning, verified bundles and restore."""

from remi.archive.bundle import VerifiedBundle, verify_bundle
from remi.archive.engine import (
    ArchiveEngine,
    ArchivePlan,
    ArchiveReport,
    ArchiveStatus,
    RestoreReport,
)

__all__ = [
    "ArchiveEngine",
    "ArchivePlan",
    "ArchiveReport",
    "ArchiveStatus",
    "RestoreReport",
    "VerifiedBundle",
    "verify_bundle",
]
