"""
JSONL transcript adapters.

Most coding assistants write one JSON object per line, one file per session.
:class:`JsonlAdapter` handles the common shape (``{"type": "message",
"message": {"role": ..., "content": ...}}``); :class:`ClaudeAdapter` accepts
the looser layout Claude transcripts use, where the message may sit at the top
level and the role may be carried in ``type``.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

from dateutil import parser as date_parser

from remi.adapters.base import AdapterMetadata
from remi.exceptions import (
    NativeArchiveUnsupportedError,
    NormalizationError,
    SourceReadError,
)
from remi.identity import canonical_json, derive_id
from remi.models.canonical import (
    ArchiveCapability,
    Artifact,
    BundleDescriptor,
    Cursor,
    Event,
    Message,
    NativeRecord,
    NormalizedBatch,
    Provenance,
    Session,
    ensure_utc,
)

logger = logging.getLogger(__name__)

# Timestamp for records that precede every timestamped record in their file
UNDATED = datetime(1970, 1, 1, tzinfo=timezone.utc)

MESSAGE_ROLES = frozenset({"user", "assistant", "system", "tool"})

# Tool input keys that name a file the tool touched
_PATH_KEYS = ("file_path", "path", "notebook_path")


def parse_record_timestamp(payload: dict[str, Any]) -> Optional[datetime]:
    """
    Extract a record timestamp.

    Supports an ISO 8601 ``timestamp`` field, or ``message.timestamp`` in
    epoch milliseconds.

    Returns:
        Aware UTC datetime, or None if the record has no usable timestamp
    """
    value = payload.get("timestamp")
    if isinstance(value, str):
        try:
            return ensure_utc(date_parser.isoparse(value))
        except (ValueError, OverflowError):
            return None

    message = payload.get("message")
    if isinstance(message, dict):
        millis = message.get("timestamp")
        if isinstance(millis, (int, float)) and not isinstance(millis, bool):
            try:
                return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
            except (ValueError, OverflowError, OSError):
                return None
    return None


def extract_content_text(content: Any) -> str:
    """
    Extract text from a message's content field.

    Content can be a plain string or a list of content items; ``text`` and
    ``thinking`` items are joined with newlines, everything else is ignored.
    """
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""

    parts: list[str] = []
    for item in content:
        if not isinstance(item, dict):
            continue
        for key in ("text", "thinking"):
            text = item.get(key)
            if isinstance(text, str) and text.strip():
                parts.append(text)
    return "\n".join(parts)


def extract_tool_uses(content: Any) -> list[dict[str, Any]]:
    """Return the ``tool_use`` items of a structured content list."""
    if not isinstance(content, list):
        return []
    return [
        item
        for item in content
        if isinstance(item, dict) and item.get("type") == "tool_use"
    ]


def _tool_input_path(tool_input: Any) -> Optional[str]:
    if not isinstance(tool_input, dict):
        return None
    for key in _PATH_KEYS:
        value = tool_input.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _first_str(payload: dict[str, Any], keys: Iterable[str]) -> Optional[str]:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return None


class JsonlAdapter:
    """
    Adapter for JSONL transcripts with ``type == "message"`` records.

    Example:
        >>> adapter = JsonlAdapter("pi", [Path.home() / ".pi/sessions"])
        >>> for location in sorted(adapter.discover()):
        ...     records = adapter.scan(location, cursor=None)
    """

    version = "1.0.0"
    native_id_keys: tuple[str, ...] = ("id",)
    session_keys: tuple[str, ...] = ("sessionId", "session")
    title_keys: tuple[str, ...] = ("sessionTitle",)

    def __init__(self, agent: str, roots: Iterable[Path | str], description: str = ""):
        self.roots = [Path(root).expanduser() for root in roots]
        self._metadata = AdapterMetadata(
            agent=agent,
            version=self.version,
            source_roots=[str(root) for root in self.roots],
            description=description,
        )

    @property
    def agent(self) -> str:
        return self._metadata.agent

    @property
    def metadata(self) -> AdapterMetadata:
        return self._metadata

    def discover(self) -> set[str]:
        found: set[str] = set()
        for root in self.roots:
            if not root.is_dir():
                logger.debug("Source root %s does not exist for %s", root, self.agent)
                continue
            found.update(str(path) for path in root.rglob("*.jsonl") if path.is_file())
        return found

    def scan(self, location: str, cursor: Optional[Cursor]) -> list[NativeRecord]:
        """
        Read the records of one JSONL file.

        Malformed lines are skipped. Records without a timestamp take the
        nearest earlier timestamp in the same file, or :data:`UNDATED` when
        none precedes them, so appending to a file never changes the ids of
        the records already in it.

        Raises:
            SourceReadError: If the file cannot be read
        """
        path = Path(location)
        parsed: list[tuple[int, dict[str, Any], Optional[datetime]]] = []
        try:
            with path.open(encoding="utf-8", errors="replace") as f:
                for line_no, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        payload = json.loads(line)
                    except (json.JSONDecodeError, RecursionError):
                        logger.debug("Skipping malformed line %d in %s", line_no, location)
                        continue
                    if not isinstance(payload, dict):
                        continue
                    parsed.append((line_no, payload, parse_record_timestamp(payload)))
        except OSError as e:
            raise SourceReadError(location, str(e)) from e

        carried = UNDATED

        records: list[NativeRecord] = []
        for line_no, payload, timestamp in parsed:
            if timestamp is None:
                timestamp = carried
            else:
                carried = timestamp
            native_id = _first_str(payload, self.native_id_keys) or derive_id(
                "line", location, canonical_json(payload)
            )
            if cursor is not None and cursor.covers(timestamp, native_id):
                continue
            records.append(
                NativeRecord(
                    native_id=native_id,
                    timestamp=timestamp,
                    payload=payload,
                    location=location,
                    offset=line_no,
                )
            )
        return records

    def is_message_record(self, payload: dict[str, Any]) -> bool:
        return payload.get("type") == "message"

    def message_node(self, payload: dict[str, Any]) -> Any:
        return payload.get("message")

    def role_for(self, payload: dict[str, Any], message: dict[str, Any]) -> str:
        role = message.get("role")
        return role if isinstance(role, str) and role else "user"

    def session_seed(self, record: NativeRecord) -> str:
        return _first_str(record.payload, self.session_keys) or Path(record.location).stem

    def normalize(self, record: NativeRecord) -> NormalizedBatch:
        """
        Map one record to a session, message, tool events and file artifacts.

        Raises:
            NormalizationError: If a message record has no message object
        """
        payload = record.payload
        batch = NormalizedBatch()
        if not self.is_message_record(payload):
            return batch

        message = self.message_node(payload)
        if not isinstance(message, dict):
            raise NormalizationError(record.native_id, "message is not an object")

        content_value = message.get("content")
        content = extract_content_text(content_value)
        tool_uses = extract_tool_uses(content_value)
        if not content and not tool_uses:
            return batch

        seed = self.session_seed(record)
        session_id = derive_id("session", self.agent, seed)
        batch.sessions.append(
            Session(
                id=session_id,
                agent=self.agent,
                native_key=seed,
                created_at=record.timestamp,
                updated_at=record.timestamp,
                title=_first_str(payload, self.title_keys),
                source_path=record.location,
            )
        )
        batch.provenance.append(self._provenance("session", session_id, session_id, record))

        message_id: Optional[str] = None
        if content:
            message_id = derive_id("message", session_id, record.native_id, record.timestamp)
            batch.messages.append(
                Message(
                    id=message_id,
                    session_id=session_id,
                    role=self.role_for(payload, message),
                    content=content,
                    timestamp=record.timestamp,
                    native_id=record.native_id,
                    raw_data=payload,
                )
            )
            batch.provenance.append(
                self._provenance("message", message_id, session_id, record)
            )

        for index, item in enumerate(tool_uses):
            tool_native_id = str(item.get("id") or f"{record.native_id}#{index}")
            event_id = derive_id("event", session_id, tool_native_id, "tool_use")
            tool_name = item.get("name")
            tool_input = item.get("input")
            batch.events.append(
                Event(
                    id=event_id,
                    session_id=session_id,
                    kind="tool_use",
                    timestamp=record.timestamp,
                    payload={"name": tool_name, "input": tool_input},
                    message_id=message_id,
                )
            )
            batch.provenance.append(self._provenance("event", event_id, session_id, record))

            path = _tool_input_path(tool_input)
            if path:
                artifact_id = derive_id("artifact", session_id, path)
                batch.artifacts.append(
                    Artifact(
                        id=artifact_id,
                        session_id=session_id,
                        path=path,
                        metadata={"tool": tool_name},
                    )
                )
                batch.provenance.append(
                    self._provenance("artifact", artifact_id, session_id, record)
                )
        return batch

    def _provenance(
        self, entity_type: str, entity_id: str, session_id: str, record: NativeRecord
    ) -> Provenance:
        return Provenance(
            id=derive_id("provenance", entity_type, entity_id),
            entity_type=entity_type,
            entity_id=entity_id,
            session_id=session_id,
            agent=self.agent,
            source_path=record.location,
            source_offset=record.offset,
            native_id=record.native_id,
        )

    def checkpoint_cursor_for(self, record: NativeRecord) -> Cursor:
        return record.cursor

    def archive_capability(self) -> ArchiveCapability:
        return ArchiveCapability.FALLBACK

    def execute_archive(self, session_ids: list[str]) -> BundleDescriptor:
        """Only NATIVE adapters export their own sources; these are copied."""
        raise NativeArchiveUnsupportedError(self.agent)


class ClaudeAdapter(JsonlAdapter):
    """
    Adapter for Claude transcripts.

    Every record may carry a message: the message object is ``message`` when
    that is an object, otherwise the record itself. The role falls back to
    the record ``type`` when that names a role.
    """

    native_id_keys = ("id", "uuid")
    session_keys = ("sessionId", "sessionID", "session")
    title_keys = ("slug",)

    def is_message_record(self, payload: dict[str, Any]) -> bool:
        return True

    def message_node(self, payload: dict[str, Any]) -> Any:
        message = payload.get("message")
        return message if isinstance(message, dict) else payload

    def role_for(self, payload: dict[str, Any], message: dict[str, Any]) -> str:
        role = message.get("role")
        if isinstance(role, str) and role:
            return role
        record_type = payload.get("type")
        if record_type in MESSAGE_ROLES:
            return record_type
        return "user"
