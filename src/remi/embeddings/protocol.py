"""
Text embedding protocol for remi.

Embedders turn message text and search queries into dense vectors for the
optional semantic ranking signal.
"""

from typing import List, Protocol, runtime_checkable


@runtime_checkable
class TextEmbedder(Protocol):
    """
    Protocol for text embedding providers.

    Implementations must return deterministic vectors for the same input and
    should L2-normalize them; search scores vectors by cosine similarity.

    Example:
        >>> embedder = SentenceTransformerEmbedder()
        >>> vector = embedder.embed("cache invalidation")
        >>> len(vector) == embedder.dimension
        True
    """

    @property
    def dimension(self) -> int:
        """Number of elements in each vector."""
        ...

    @property
    def model_name(self) -> str:
        """Model identifier; stored with every vector."""
        ...

    def embed(self, text: str) -> List[float]:
        """
        Embed one message text.

        Raises:
            ValueError: If text is empty
        """
        ...

    def embed_query(self, text: str) -> List[float]:
        """Embed a search query (models may prefix queries differently)."""
        ...

    def embed_many(self, texts: List[str], batch_size: int = 32) -> List[List[float]]:
        """Embed several message texts, preserving order."""
        ...
