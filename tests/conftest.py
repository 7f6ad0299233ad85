"""
Pytest configuration and fixtures for remi tests.

Every test gets its own on-disk store under ``tmp_path`` and a source home
directory the built-in adapters discover transcripts in.
"""

from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Generator

import pytest
from sqlalchemy import Engine

from remi.adapters import build_default_registry
from remi.config import Settings
from remi.db.connection import create_store_engine, db_session, init_db
from remi.db.repositories import CanonicalRepository
from remi.models.canonical import NormalizedBatch
from remi.search.vectors import invalidate_vector_cache

from factories import BASE_TIME


@pytest.fixture(autouse=True)
def _fresh_vector_cache() -> Generator[None, None, None]:
    invalidate_vector_cache()
    yield
    invalidate_vector_cache()


@pytest.fixture
def source_home(tmp_path: Path) -> Path:
    home = tmp_path / "home"
    home.mkdir()
    return home


@pytest.fixture
def config(tmp_path: Path, source_home: Path) -> Settings:
    """Settings isolated from the environment and the user's home."""
    return Settings(
        _env_file=None,
        data_dir=str(tmp_path / "data"),
        source_home=str(source_home),
        log_file_enabled=False,
        ingest_batch_size=3,
        ingest_workers=2,
    )


@pytest.fixture
def store_engine(config: Settings) -> Generator[Engine, None, None]:
    engine = create_store_engine(config.database_path)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def registry(config: Settings):
    return build_default_registry(config)


@pytest.fixture
def pi_dir(source_home: Path) -> Path:
    return source_home / ".pi" / "agent" / "sessions"


@pytest.fixture
def claude_dir(source_home: Path) -> Path:
    return source_home / ".claude" / "projects"


@pytest.fixture
def save_batch(store_engine: Engine) -> Callable[[NormalizedBatch], None]:
    """Commit a batch through the canonical upsert path."""

    def _save(batch: NormalizedBatch) -> None:
        with db_session(store_engine) as db:
            CanonicalRepository(db).save_batch(batch)

    return _save


@pytest.fixture
def minutes() -> Callable[[int], datetime]:
    return lambda n: BASE_TIME + timedelta(minutes=n)
