"""
Canonical entity data models.

These are plain dataclasses shared by adapters, the ingestion engine, the
archive bundle format and restore. They are independent of any source format
and of the database schema in :mod:`remi.models.db`.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from dateutil import parser as date_parser


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime (naive input is taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    return ensure_utc(value).isoformat() if value else None


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return ensure_utc(date_parser.isoparse(value)) if value else None


@dataclass(frozen=True, order=True)
class Cursor:
    """
    Checkpoint watermark: (timestamp, native id).

    Ordering is by timestamp first, then by native id, so two records sharing
    a timestamp are still strictly ordered.
    """

    timestamp: datetime
    native_id: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "timestamp", ensure_utc(self.timestamp))

    def covers(self, timestamp: datetime, native_id: str) -> bool:
        """True if a record at (timestamp, native_id) is at or before this cursor."""
        return (ensure_utc(timestamp), native_id) <= (self.timestamp, self.native_id)


@dataclass
class NativeRecord:
    """A source-native record as yielded by an adapter scan."""

    native_id: str
    timestamp: datetime
    payload: dict
    location: str
    offset: Optional[int] = None  # line number within location, when known

    def __post_init__(self) -> None:
        self.timestamp = ensure_utc(self.timestamp)

    @property
    def cursor(self) -> Cursor:
        return Cursor(self.timestamp, self.native_id)


@dataclass
class Session:
    """One conversation thread from a single agent."""

    id: str
    agent: str
    native_key: str
    created_at: datetime
    updated_at: datetime
    title: Optional[str] = None
    source_path: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agent": self.agent,
            "native_key": self.native_key,
            "title": self.title,
            "source_path": self.source_path,
            "created_at": format_datetime(self.created_at),
            "updated_at": format_datetime(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        return cls(
            id=data["id"],
            agent=data["agent"],
            native_key=data["native_key"],
            title=data.get("title"),
            source_path=data.get("source_path"),
            created_at=parse_datetime(data["created_at"]),
            updated_at=parse_datetime(data["updated_at"]),
        )


@dataclass
class Message:
    """Single message in a session."""

    id: str
    session_id: str
    role: str
    content: str
    timestamp: datetime
    native_id: str
    raw_data: Optional[dict] = None  # original structured payload

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "role": self.role,
            "content": self.content,
            "timestamp": format_datetime(self.timestamp),
            "native_id": self.native_id,
            "raw_data": self.raw_data,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        return cls(
            id=data["id"],
            session_id=data["session_id"],
            role=data["role"],
            content=data["content"],
            timestamp=parse_datetime(data["timestamp"]),
            native_id=data["native_id"],
            raw_data=data.get("raw_data"),
        )


@dataclass
class Event:
    """Auxiliary structured occurrence (e.g., a tool invocation)."""

    id: str
    session_id: str
    kind: str
    timestamp: datetime
    payload: dict = field(default_factory=dict)
    message_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "message_id": self.message_id,
            "kind": self.kind,
            "payload": self.payload,
            "timestamp": format_datetime(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        return cls(
            id=data["id"],
            session_id=data["session_id"],
            message_id=data.get("message_id"),
            kind=data["kind"],
            payload=data.get("payload") or {},
            timestamp=parse_datetime(data["timestamp"]),
        )


@dataclass
class Artifact:
    """A file or blob referenced during a session."""

    id: str
    session_id: str
    path: str
    content_hash: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "path": self.path,
            "content_hash": self.content_hash,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Artifact":
        return cls(
            id=data["id"],
            session_id=data["session_id"],
            path=data["path"],
            content_hash=data.get("content_hash"),
            metadata=data.get("metadata") or {},
        )


@dataclass
class Provenance:
    """Maps a canonical entity back to the source location it came from."""

    id: str
    entity_type: str  # 'session', 'message', 'event', 'artifact', 'dropped_record'
    entity_id: str
    agent: str
    source_path: str
    native_id: str
    session_id: Optional[str] = None
    source_offset: Optional[int] = None
    note: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "session_id": self.session_id,
            "agent": self.agent,
            "source_path": self.source_path,
            "source_offset": self.source_offset,
            "native_id": self.native_id,
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Provenance":
        return cls(
            id=data["id"],
            entity_type=data["entity_type"],
            entity_id=data["entity_id"],
            session_id=data.get("session_id"),
            agent=data["agent"],
            source_path=data["source_path"],
            source_offset=data.get("source_offset"),
            native_id=data["native_id"],
            note=data.get("note"),
        )


@dataclass
class NormalizedBatch:
    """Canonical entities produced from one or more native records."""

    sessions: list[Session] = field(default_factory=list)
    messages: list[Message] = field(default_factory=list)
    events: list[Event] = field(default_factory=list)
    artifacts: list[Artifact] = field(default_factory=list)
    provenance: list[Provenance] = field(default_factory=list)

    def extend(self, other: "NormalizedBatch") -> None:
        self.sessions.extend(other.sessions)
        self.messages.extend(other.messages)
        self.events.extend(other.events)
        self.artifacts.extend(other.artifacts)
        self.provenance.extend(other.provenance)

    def is_empty(self) -> bool:
        return not (
            self.sessions
            or self.messages
            or self.events
            or self.artifacts
            or self.provenance
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessions": [s.to_dict() for s in self.sessions],
            "messages": [m.to_dict() for m in self.messages],
            "events": [e.to_dict() for e in self.events],
            "artifacts": [a.to_dict() for a in self.artifacts],
            "provenance": [p.to_dict() for p in self.provenance],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NormalizedBatch":
        return cls(
            sessions=[Session.from_dict(s) for s in data.get("sessions", [])],
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            events=[Event.from_dict(e) for e in data.get("events", [])],
            artifacts=[Artifact.from_dict(a) for a in data.get("artifacts", [])],
            provenance=[Provenance.from_dict(p) for p in data.get("provenance", [])],
        )


class ArchiveCapability(str, Enum):
    """How an adapter's raw sources are preserved during archival."""

    NATIVE = "native"  # Adapter exports its own bundle
    FALLBACK = "fallback"  # Engine copies the raw source files


@dataclass
class BundleDescriptor:
    """Files an adapter produced when archiving natively."""

    agent: str
    files: list[str] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)
