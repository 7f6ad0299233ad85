"""
Message embedding pipeline.

Vectors are derived data: ingestion embeds new messages best effort, and
``rebuild_embeddings`` regenerates every vector from the messages table.
"""

import logging
from typing import Callable, Optional, Sequence

from sqlalchemy import Engine, select

from remi.db.connection import db_session, get_session
from remi.db.repositories import EmbeddingRepository
from remi.embeddings import TextEmbedder
from remi.models.db import Message
from remi.search.vectors import invalidate_vector_cache

logger = logging.getLogger(__name__)


def embed_messages(
    repo: EmbeddingRepository,
    embedder: TextEmbedder,
    messages: Sequence[tuple[str, str]],
    batch_size: int = 32,
) -> int:
    """
    Store vectors for the ``(message_id, content)`` pairs that have none.

    Args:
        repo: Embedding repository bound to an open transaction
        embedder: Embedder producing the vectors
        messages: Message ids with their text
        batch_size: Texts per embedder call

    Returns:
        Number of vectors written
    """
    missing = set(repo.missing_message_ids(message_id for message_id, _ in messages))
    todo = [
        (message_id, content)
        for message_id, content in messages
        if message_id in missing and content.strip()
    ]
    for start in range(0, len(todo), batch_size):
        chunk = todo[start : start + batch_size]
        vectors = embedder.embed_many([content for _, content in chunk], batch_size)
        for (message_id, _), vector in zip(chunk, vectors):
            repo.save(message_id, vector, embedder.model_name)
    if todo:
        invalidate_vector_cache()
    return len(todo)


def _embed_rows(
    engine: Engine,
    embedder: TextEmbedder,
    rows: Sequence[tuple[str, str]],
    batch_size: int,
    on_progress: Optional[Callable[[int, int], None]],
) -> int:
    written = 0
    for start in range(0, len(rows), batch_size):
        chunk = [(message_id, content) for message_id, content in rows[start : start + batch_size]]
        with db_session(engine) as db:
            written += embed_messages(EmbeddingRepository(db), embedder, chunk)
        if on_progress:
            on_progress(min(start + batch_size, len(rows)), len(rows))
    return written


def embed_pending(
    engine: Engine,
    embedder: TextEmbedder,
    batch_size: int = 256,
    on_progress: Optional[Callable[[int, int], None]] = None,
) -> int:
    """
    Embed the messages that have no vector yet.

    Returns:
        Number of vectors written
    """
    with get_session(engine) as db:
        rows = db.execute(select(Message.id, Message.content).order_by(Message.id)).all()
    return _embed_rows(engine, embedder, rows, batch_size, on_progress)


def rebuild_embeddings(
    engine: Engine,
    embedder: TextEmbedder,
    batch_size: int = 256,
    on_progress: Optional[Callable[[int, int], None]] = None,
) -> int:
    """
    Drop every stored vector and embed all messages again.

    Args:
        engine: Store engine
        embedder: Embedder producing the vectors
        batch_size: Messages committed per transaction
        on_progress: Called with (done, total) after each transaction

    Returns:
        Number of vectors written
    """
    with db_session(engine) as db:
        cleared = EmbeddingRepository(db).clear()
        rows = db.execute(select(Message.id, Message.content).order_by(Message.id)).all()
    invalidate_vector_cache()
    logger.info("Cleared %d embeddings; embedding %d messages", cleared, len(rows))
    return _embed_rows(engine, embedder, rows, batch_size, on_progress)
