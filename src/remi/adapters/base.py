"""
Source adapter protocol.

An adapter knows one coding-assistant tool's on-disk format. The ingestion
engine only talks to adapters through this interface and never looks inside
native payloads itself.
"""

from dataclasses import dataclass, field
from typing import Iterable, Optional, Protocol, runtime_checkable

from remi.models.canonical import (
    ArchiveCapability,
    BundleDescriptor,
    Cursor,
    NativeRecord,
    NormalizedBatch,
)


@dataclass
class AdapterMetadata:
    """
    Descriptive information about an adapter.

    Attributes:
        agent: Agent name the adapter serves (e.g., 'claude', 'pi')
        version: Adapter version
        source_roots: Directories searched during discovery
        description: Optional human-readable description
    """

    agent: str
    version: str
    source_roots: list[str] = field(default_factory=list)
    description: str = ""

    def __post_init__(self) -> None:
        if not self.agent:
            raise ValueError("Adapter agent name cannot be empty")
        if not self.version:
            raise ValueError("Adapter version cannot be empty")


@runtime_checkable
class SourceAdapter(Protocol):
    """
    Protocol for per-tool source adapters.

    Implementations are registered in an
    :class:`~remi.adapters.registry.AdapterRegistry` under their agent name.
    """

    @property
    def agent(self) -> str:
        """Stable agent name; also the ``agents`` table key."""
        ...

    @property
    def metadata(self) -> AdapterMetadata:
        ...

    def discover(self) -> set[str]:
        """
        Find the source locations (usually files) holding this agent's logs.

        Returns:
            Set of location strings; missing roots yield an empty set
        """
        ...

    def scan(self, location: str, cursor: Optional[Cursor]) -> Iterable[NativeRecord]:
        """
        Read native records from one location.

        Args:
            location: A location returned by discover()
            cursor: Committed checkpoint; records at or before it are skipped

        Returns:
            Native records strictly after ``cursor``

        Raises:
            SourceReadError: If the location cannot be read
        """
        ...

    def normalize(self, record: NativeRecord) -> NormalizedBatch:
        """
        Map one native record to canonical entities.

        Records that carry no conversational content yield an empty batch.

        Raises:
            NormalizationError: If the record is malformed
        """
        ...

    def checkpoint_cursor_for(self, record: NativeRecord) -> Cursor:
        ...

    def archive_capability(self) -> ArchiveCapability:
        ...

    def execute_archive(self, session_ids: list[str]) -> BundleDescriptor:
        """
        Export the native sources of ``session_ids`` (NATIVE adapters only).
        """
        ...
