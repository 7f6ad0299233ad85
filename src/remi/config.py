"""
remi Configuration.

Centralized configuration management using Pydantic Settings.
Loads configuration from environment variables (prefixed with ``REMI_``)
and an optional ``.env`` file.
"""

import os
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


def _xdg_home(env_var: str, *home_parts: str) -> Path | None:
    """Base directory from an XDG variable, else under $HOME; None without either."""
    value = os.getenv(env_var)
    if value:
        return Path(value)
    home = os.getenv("HOME")
    if home:
        return Path(home).joinpath(*home_parts)
    return None


def get_xdg_data_dir() -> str:
    """Store and archive root: $XDG_DATA_HOME/remi or ~/.local/share/remi."""
    base = _xdg_home("XDG_DATA_HOME", ".local", "share")
    return str(base / "remi") if base else ".remi_data"


def get_xdg_state_dir() -> str:
    """Log directory: $XDG_STATE_HOME/remi/logs or ~/.local/state/remi/logs."""
    base = _xdg_home("XDG_STATE_HOME", ".local", "state")
    return str(base / "remi" / "logs") if base else "./logs"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="REMI_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    data_dir: str = ""  # Defaults to XDG data dir if empty
    db_filename: str = "remi.db"
    archive_subdir: str = "archive"

    # Source discovery (home directory adapters resolve their roots against)
    source_home: str = ""

    # Ingestion
    ingest_workers: int = 4  # Bounded pool for parallel source scanning
    ingest_batch_size: int = 500  # Records committed per transaction

    # Ranking (reciprocal rank fusion)
    rrf_k: float = 60.0
    weight_lexical: float = 1.0
    weight_recency: float = 0.3
    weight_semantic: float = 0.5
    search_candidate_limit: int = 200  # Max lexical/substring message rows considered
    semantic_top_k: int = 200
    search_default_limit: int = 20

    # Semantic search (optional, requires the `semantic` extra)
    semantic_enabled: bool = False
    semantic_model_name: str = "sentence-transformers/all-MiniLM-L6-v2"
    semantic_query_prefix: str = ""
    semantic_device: str = ""

    # Logging
    log_level: str = "INFO"
    log_dir: str = ""  # XDG-compliant log directory (defaults to XDG state dir if empty)
    log_format: str = "standard"  # standard or json
    log_console_enabled: bool = True
    log_file_enabled: bool = True
    log_max_bytes: int = 10_485_760  # 10MB per log file
    log_backup_count: int = 5

    @property
    def data_directory(self) -> Path:
        """Get the data directory path, using XDG default if not specified."""
        if self.data_dir:
            return Path(self.data_dir).expanduser()
        return Path(get_xdg_data_dir())

    @property
    def database_path(self) -> Path:
        """Location of the SQLite database file."""
        return self.data_directory / self.db_filename

    @property
    def archive_directory(self) -> Path:
        """Root of the per-run archive tree."""
        return self.data_directory / self.archive_subdir

    @property
    def source_home_directory(self) -> Path:
        """Home directory used to resolve agent source roots."""
        if self.source_home:
            return Path(self.source_home).expanduser()
        return Path.home()

    @property
    def log_directory(self) -> Path:
        """Get the log directory path, using XDG default if not specified."""
        if self.log_dir:
            return Path(self.log_dir).expanduser()
        return Path(get_xdg_state_dir())


# Global settings instance
settings = Settings()
