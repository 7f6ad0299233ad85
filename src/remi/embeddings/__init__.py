"""
Text embedding abstractions for remi.

- TextEmbedder: protocol every embedder implements
- SentenceTransformerEmbedder: local model (``semantic`` extra)
- get_embedder: build the configured embedder, or None when disabled
"""

import logging
from typing import Optional

from remi.config import Settings
from remi.embeddings.protocol import TextEmbedder

logger = logging.getLogger(__name__)

__all__ = ["TextEmbedder", "get_embedder"]


def get_embedder(config: Settings) -> Optional[TextEmbedder]:
    """
    Build the embedder selected by settings.

    Returns:
        SentenceTransformerEmbedder when ``semantic_enabled`` is set, else None

    Raises:
        ImportError: If semantic search is enabled without the extra installed
    """
    if not config.semantic_enabled:
        return None

    from remi.embeddings.sentence_transformer import SentenceTransformerEmbedder

    return SentenceTransformerEmbedder(
        model_name=config.semantic_model_name,
        device=config.semantic_device or None,
        query_prefix=config.semantic_query_prefix,
    )
