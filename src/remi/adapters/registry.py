"""
Adapter registry.

Adapters are variants selected at runtime by agent name. The default registry
holds the built-in JSONL adapters rooted under the configured home directory.
"""

import logging
from pathlib import Path
from typing import Optional

from remi.adapters.base import SourceAdapter
from remi.adapters.jsonl import ClaudeAdapter, JsonlAdapter
from remi.config import Settings
from remi.exceptions import UnknownAgentError

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """
    Registry of source adapters keyed by agent name.

    Example:
        >>> registry = AdapterRegistry()
        >>> registry.register(JsonlAdapter("pi", [Path.home() / ".pi/sessions"]))
        >>> registry.get("pi").discover()
    """

    def __init__(self) -> None:
        self._adapters: dict[str, SourceAdapter] = {}

    def register(self, adapter: SourceAdapter) -> None:
        """
        Register an adapter under its agent name.

        Raises:
            ValueError: If an adapter is already registered for that agent
        """
        if adapter.agent in self._adapters:
            raise ValueError(f"Adapter already registered for agent: {adapter.agent}")
        self._adapters[adapter.agent] = adapter
        logger.debug("Registered adapter: %s (%s)", adapter.agent, type(adapter).__name__)

    def get(self, agent: str) -> SourceAdapter:
        """
        Resolve the adapter for an agent.

        Raises:
            UnknownAgentError: If no adapter is registered for ``agent``
        """
        adapter = self._adapters.get(agent)
        if adapter is None:
            raise UnknownAgentError(agent, self.agents)
        return adapter

    def find(self, agent: str) -> Optional[SourceAdapter]:
        return self._adapters.get(agent)

    @property
    def agents(self) -> list[str]:
        """Registered agent names, sorted."""
        return sorted(self._adapters)

    def __iter__(self):
        return iter(self._adapters[name] for name in self.agents)

    def __len__(self) -> int:
        return len(self._adapters)


def build_default_registry(config: Settings) -> AdapterRegistry:
    """
    Build a registry with the built-in adapters.

    Args:
        config: Settings providing the home directory source roots live under

    Returns:
        AdapterRegistry with the pi, droid and claude adapters
    """
    home: Path = config.source_home_directory
    registry = AdapterRegistry()
    registry.register(
        JsonlAdapter(
            "pi",
            [home / ".pi" / "agent" / "sessions", home / ".pi" / "sessions"],
            description="pi coding agent sessions",
        )
    )
    registry.register(
        JsonlAdapter(
            "droid",
            [
                home / ".factory" / "sessions",
                home / ".local" / "share" / "factory-droid" / "sessions",
            ],
            description="Factory droid sessions",
        )
    )
    registry.register(
        ClaudeAdapter(
            "claude",
            [
                home / ".claude" / "transcripts",
                home / ".claude" / "projects",
                home / ".local" / "share" / "claude-code",
            ],
            description="Claude transcripts",
        )
    )
    return registry
