"""
Source adapters for coding-assistant transcript formats.

Each adapter discovers one tool's log locations, scans native records past a
checkpoint and normalizes them into canonical entities.
"""

from remi.adapters.base import AdapterMetadata, SourceAdapter
from remi.adapters.jsonl import ClaudeAdapter, JsonlAdapter
from remi.adapters.registry import AdapterRegistry, build_default_registry

__all__ = [
    "AdapterMetadata",
    "AdapterRegistry",
    "ClaudeAdapter",
    "JsonlAdapter",
    "SourceAdapter",
    "build_default_registry",
]
