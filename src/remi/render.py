"""
Text renderings of a stored session for ``remi sessions show``.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from sqlalchemy.orm import Session

from remi.db.repositories import SessionRepository
from remi.models.db import AgentSession, Artifact, Event, Message, Provenance


class OutputFormat(str, Enum):
    PLAIN = "plain"
    MARKDOWN = "markdown"
    JSON = "json"


@dataclass
class SessionView:
    """A session with everything needed to render it."""

    session: AgentSession
    messages: list[Message] = field(default_factory=list)
    events: list[Event] = field(default_factory=list)
    artifacts: list[Artifact] = field(default_factory=list)
    provenance: list[Provenance] = field(default_factory=list)

    @classmethod
    def load(cls, db: Session, session: AgentSession) -> "SessionView":
        repo = SessionRepository(db)
        return cls(
            session=session,
            messages=repo.messages(session.id),
            events=repo.events(session.id),
            artifacts=repo.artifacts(session.id),
            provenance=repo.provenance(session.id),
        )

    @property
    def display_title(self) -> str:
        return self.session.title or self.session.native_key

    @property
    def source_paths(self) -> list[str]:
        paths = {p.source_path for p in self.provenance}
        if self.session.source_path:
            paths.add(self.session.source_path)
        return sorted(paths)


def _session_dict(view: SessionView) -> dict[str, Any]:
    s = view.session
    return {
        "id": s.id,
        "agent": s.agent,
        "native_key": s.native_key,
        "title": s.title,
        "source_path": s.source_path,
        "created_at": s.created_at.isoformat(),
        "updated_at": s.updated_at.isoformat(),
        "messages": [
            {
                "id": m.id,
                "role": m.role,
                "timestamp": m.timestamp.isoformat(),
                "native_id": m.native_id,
                "content": m.content,
            }
            for m in view.messages
        ],
        "events": [
            {
                "id": e.id,
                "message_id": e.message_id,
                "kind": e.kind,
                "timestamp": e.timestamp.isoformat(),
                "payload": e.payload,
            }
            for e in view.events
        ],
        "artifacts": [
            {"id": a.id, "path": a.path, "content_hash": a.content_hash}
            for a in view.artifacts
        ],
        "source_paths": view.source_paths,
    }


def render_json(view: SessionView) -> str:
    return json.dumps(_session_dict(view), indent=2, ensure_ascii=False)


def render_plain(view: SessionView) -> str:
    s = view.session
    lines = [
        f"Session: {s.id}",
        f"Agent:   {s.agent}",
        f"Title:   {view.display_title}",
        f"Created: {s.created_at.isoformat()}",
        f"Updated: {s.updated_at.isoformat()}",
    ]
    for path in view.source_paths:
        lines.append(f"Source:  {path}")
    lines.append("")
    for message in view.messages:
        lines.append(f"[{message.timestamp.isoformat()}] {message.role}:")
        lines.append(message.content)
        lines.append("")
    if view.events:
        lines.append(f"Events: {len(view.events)}")
        for e in view.events:
            name = e.payload.get("name") if isinstance(e.payload, dict) else None
            lines.append(f"  {e.timestamp.isoformat()} {e.kind} {name or ''}".rstrip())
    if view.artifacts:
        lines.append(f"Artifacts: {len(view.artifacts)}")
        lines.extend(f"  {a.path}" for a in view.artifacts)
    return "\n".join(lines).rstrip() + "\n"


def render_markdown(view: SessionView) -> str:
    s = view.session
    lines = [
        f"# {view.display_title}",
        "",
        f"- **Session:** `{s.id}`",
        f"- **Agent:** {s.agent}",
        f"- **Created:** {s.created_at.isoformat()}",
        f"- **Updated:** {s.updated_at.isoformat()}",
    ]
    lines.extend(f"- **Source:** `{path}`" for path in view.source_paths)
    for message in view.messages:
        lines.extend(
            [
                "",
                f"## {message.role} · {message.timestamp.isoformat()}",
                "",
                message.content,
            ]
        )
    if view.artifacts:
        lines.extend(["", "## Artifacts", ""])
        lines.extend(f"- `{a.path}`" for a in view.artifacts)
    return "\n".join(lines) + "\n"


RENDERERS = {
    OutputFormat.PLAIN: render_plain,
    OutputFormat.MARKDOWN: render_markdown,
    OutputFormat.JSON: render_json,
}


def render_session(view: SessionView, output_format: OutputFormat) -> str:
    return RENDERERS[OutputFormat(output_format)](view)
