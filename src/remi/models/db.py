"""
SQLAlchemy database models for remi.

These models represent the canonical store: one SQLite file holding sessions,
messages, events, artifacts, provenance, checkpoints and archive runs. The
derived full-text index (``fts_messages``) is an FTS5 virtual table created
alongside the ORM tables; see :data:`FTS_CREATE_SQL`.
"""

import enum
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    DDL,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    TypeDecorator,
    event,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import JSON


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime stored as naive UTC.

    SQLite has no timezone support; values are normalized to UTC on the way in
    and re-tagged as UTC on the way out, so comparisons and ordering in SQL
    operate on a single clock.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class ArchiveRunStatus(str, enum.Enum):
    """Persisted state of an archive run."""

    PLANNED = "planned"
    EXECUTED = "executed"
    FAILED = "failed"


class ArchiveDisposition(str, enum.Enum):
    """What happened to a session selected by an archive run."""

    PLANNED = "planned"
    COPIED = "copied"
    COPIED_AND_DELETED = "copied_and_deleted"


class Agent(Base):
    """Source system (one per external coding-assistant tool)."""

    __tablename__ = "agents"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )

    def __repr__(self) -> str:
        return f"<Agent(id={self.id!r})>"


class AgentSession(Base):
    """One conversation thread captured from an agent."""

    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    agent: Mapped[str] = mapped_column(
        String(64), ForeignKey("agents.id"), nullable=False, index=True
    )
    native_key: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, index=True
    )

    messages: Mapped[list["Message"]] = relationship(
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Message.timestamp",
    )

    def __repr__(self) -> str:
        return (
            f"<AgentSession(id={self.id[:12]}, agent={self.agent!r}, "
            f"title={self.title!r})>"
        )


class Message(Base):
    """Individual message within a session."""

    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    session_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    role: Mapped[str] = mapped_column(String(32), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    native_id: Mapped[str] = mapped_column(Text, nullable=False)

    # Raw data for lossless capture (enables reprocessing)
    raw_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    session: Mapped["AgentSession"] = relationship(back_populates="messages")

    __table_args__ = (Index("ix_messages_session_ts", "session_id", "timestamp"),)

    def __repr__(self) -> str:
        return (
            f"<Message(id={self.id[:12]}, role={self.role!r}, "
            f"timestamp={self.timestamp})>"
        )


class Event(Base):
    """Structured occurrence tied to a session (tool calls and the like)."""

    __tablename__ = "events"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    session_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    message_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    kind: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class Artifact(Base):
    """File or blob referenced during a session."""

    __tablename__ = "artifacts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    session_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    path: Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    extra_data: Mapped[dict] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )


class Provenance(Base):
    """Maps a canonical entity id to its originating source location."""

    __tablename__ = "provenance"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    # No FK: provenance must survive for dropped records with no session row
    session_id: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True, index=True
    )
    agent: Mapped[str] = mapped_column(String(64), nullable=False)
    source_path: Mapped[str] = mapped_column(Text, nullable=False)
    source_offset: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    native_id: Mapped[str] = mapped_column(Text, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class Checkpoint(Base):
    """Per-agent ingestion watermark: (cursor_ts, cursor_native_id)."""

    __tablename__ = "checkpoints"

    agent: Mapped[str] = mapped_column(
        String(64), ForeignKey("agents.id"), primary_key=True
    )
    cursor_ts: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    cursor_native_id: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<Checkpoint(agent={self.agent!r}, cursor_ts={self.cursor_ts}, "
            f"cursor_native_id={self.cursor_native_id!r})>"
        )


class ArchiveRun(Base):
    """A planned (and possibly executed) retention action set."""

    __tablename__ = "archive_runs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    status: Mapped[ArchiveRunStatus] = mapped_column(
        Enum(
            ArchiveRunStatus,
            native_enum=False,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=ArchiveRunStatus.PLANNED,
    )
    # Policy snapshot: older_than_secs, keep_latest, cutoff
    policy: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    executed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    bundle_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    manifest_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    items: Mapped[list["ArchiveItem"]] = relationship(
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="ArchiveItem.session_id",
    )

    def __repr__(self) -> str:
        return f"<ArchiveRun(id={self.id[:12]}, status={self.status.value})>"


class ArchiveItem(Base):
    """One session selected by an archive run."""

    __tablename__ = "archive_items"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    run_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("archive_runs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # No FK: items must outlive the sessions they archived
    session_id: Mapped[str] = mapped_column(String(64), nullable=False)
    agent: Mapped[str] = mapped_column(String(64), nullable=False)
    disposition: Mapped[ArchiveDisposition] = mapped_column(
        Enum(
            ArchiveDisposition,
            native_enum=False,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=ArchiveDisposition.PLANNED,
    )

    run: Mapped["ArchiveRun"] = relationship(back_populates="items")


class MessageEmbedding(Base):
    """Derived per-message vector (float32 bytes); rebuildable, never authoritative."""

    __tablename__ = "message_embeddings"

    message_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("messages.id", ondelete="CASCADE"),
        primary_key=True,
    )
    model: Mapped[str] = mapped_column(String(255), nullable=False)
    dimension: Mapped[int] = mapped_column(Integer, nullable=False)
    vector: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)


# Identifier punctuation stays inside tokens so paths and names match whole
FTS_CREATE_SQL = (
    "CREATE VIRTUAL TABLE IF NOT EXISTS fts_messages USING fts5("
    "message_id UNINDEXED, "
    "session_id UNINDEXED, "
    "content, "
    "tokenize = 'unicode61 tokenchars ''_./:-'''"
    ")"
)

event.listen(
    Base.metadata,
    "after_create",
    DDL(FTS_CREATE_SQL).execute_if(dialect="sqlite"),
)
