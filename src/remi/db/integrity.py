"""
Store integrity checks.

Detects structural corruption and derived-index drift. Never repairs
anything; a drifted index is reported with a rebuild hint.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import Engine, text

from remi.db.connection import get_engine
from remi.exceptions import IntegrityError

logger = logging.getLogger(__name__)


@dataclass
class IntegrityReport:
    """Result of :func:`check_integrity`."""

    integrity_check: list[str] = field(default_factory=list)
    foreign_key_violations: list[str] = field(default_factory=list)
    message_count: int = 0
    index_count: int = 0

    @property
    def index_drift(self) -> int:
        return self.index_count - self.message_count

    @property
    def ok(self) -> bool:
        """True when the database itself is sound (drift is not corruption)."""
        return self.integrity_check == ["ok"] and not self.foreign_key_violations

    @property
    def problems(self) -> list[str]:
        problems = [row for row in self.integrity_check if row != "ok"]
        problems.extend(self.foreign_key_violations)
        return problems

    def raise_for_problems(self) -> None:
        if not self.ok:
            raise IntegrityError(self.problems)

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "integrity_check": self.integrity_check,
            "foreign_key_violations": self.foreign_key_violations,
            "message_count": self.message_count,
            "index_count": self.index_count,
            "index_drift": self.index_drift,
        }


def check_integrity(engine: Optional[Engine] = None) -> IntegrityReport:
    """
    Run SQLite's integrity and foreign-key checks and compare the search
    index against the messages table.

    Args:
        engine: Store engine (default: configured store)

    Returns:
        IntegrityReport
    """
    report = IntegrityReport()
    with (engine or get_engine()).connect() as conn:
        report.integrity_check = [
            row[0] for row in conn.execute(text("PRAGMA integrity_check"))
        ]
        for table, rowid, parent, fkid in conn.execute(text("PRAGMA foreign_key_check")):
            report.foreign_key_violations.append(
                f"{table} row {rowid} references missing {parent} (fk {fkid})"
            )
        report.message_count = conn.execute(text("SELECT count(*) FROM messages")).scalar_one()
        report.index_count = conn.execute(
            text("SELECT count(*) FROM fts_messages")
        ).scalar_one()

    if not report.ok:
        logger.error("Integrity check failed: %s", report.problems)
    elif report.index_drift:
        logger.warning(
            "Search index drift: %d index rows for %d messages",
            report.index_count,
            report.message_count,
        )
    return report
