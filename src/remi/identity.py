"""
Deterministic, content-addressed identifiers.

Every canonical entity id is a SHA-256 digest over a canonical byte encoding
of the entity kind and its natural key fields. Each field is type-tagged and
length-prefixed, so ``("a", "bc")`` and ``("ab", "c")`` never collide, and an
integer ``1`` never collides with the string ``"1"``.
"""

import hashlib
import json
from datetime import datetime, timezone
from typing import Any

ID_HEX_LENGTH = 64


def _encode_field(value: Any) -> bytes:
    if value is None:
        return b"n"
    # bool before int: bool is a subclass of int
    if isinstance(value, bool):
        return b"b" + (b"1" if value else b"0")
    if isinstance(value, int):
        body = str(value).encode("ascii")
        tag = b"i"
    elif isinstance(value, float):
        body = repr(value).encode("ascii")
        tag = b"f"
    elif isinstance(value, str):
        body = value.encode("utf-8")
        tag = b"s"
    elif isinstance(value, bytes):
        body = value
        tag = b"y"
    elif isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        body = value.astimezone(timezone.utc).isoformat().encode("ascii")
        tag = b"t"
    elif isinstance(value, (list, tuple)):
        body = b"".join(_encode_field(item) for item in value)
        tag = b"l"
    else:
        raise TypeError(f"Unsupported id field type: {type(value).__name__}")
    return tag + str(len(body)).encode("ascii") + b":" + body


def derive_id(kind: str, *fields: Any) -> str:
    """
    Derive a stable id for an entity from its natural key.

    Args:
        kind: Entity kind (e.g., "session", "message"); part of the hash so
            ids of different kinds never collide
        *fields: Natural key fields, in a fixed order per kind

    Returns:
        64-character lowercase hex digest

    Raises:
        TypeError: If a field has an unsupported type
        ValueError: If kind is empty

    Example:
        >>> derive_id("session", "claude", "abc") == derive_id("session", "claude", "abc")
        True
    """
    if not kind:
        raise ValueError("Entity kind cannot be empty")

    hasher = hashlib.sha256()
    hasher.update(_encode_field(kind))
    for field in fields:
        hasher.update(_encode_field(field))
    return hasher.hexdigest()


def canonical_json(value: Any) -> str:
    """Key-sorted, whitespace-free JSON used for hashing structured payloads."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
