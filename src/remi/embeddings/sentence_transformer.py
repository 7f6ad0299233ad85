"""sentence-transformers embedding adapter for remi."""

import logging
from typing import List, Optional

logger = logging.getLogger(__name__)


class SentenceTransformerEmbedder:
    """
    Local embedder backed by a sentence-transformers model.

    Requires the ``semantic`` extra. The model is loaded when the embedder is
    constructed, so construct it only when semantic search is enabled.

    Example:
        >>> embedder = SentenceTransformerEmbedder(
        ...     model_name="sentence-transformers/all-MiniLM-L6-v2",
        ...     device="cpu",
        ... )
        >>> len(embedder.embed("hello"))
        384
    """

    def __init__(
        self,
        model_name: str = "sentence-transformers/all-MiniLM-L6-v2",
        device: Optional[str] = None,
        query_prefix: str = "",
        document_prefix: str = "",
        normalize_embeddings: bool = True,
    ):
        """
        Initialize the embedder.

        Args:
            model_name: HuggingFace model identifier
            device: "cuda", "cpu", or None for auto
            query_prefix: Prepended to queries (e.g., "query: " for E5 models)
            document_prefix: Prepended to message texts
            normalize_embeddings: L2-normalize vectors
        """
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as e:
            raise ImportError(
                "sentence-transformers is required for semantic search. "
                "Install with: pip install remi[semantic]"
            ) from e

        self._model_name = model_name
        self._query_prefix = query_prefix
        self._document_prefix = document_prefix
        self._normalize = normalize_embeddings

        logger.info("Loading embedding model: %s", model_name)
        self._model = SentenceTransformer(model_name, device=device or None)
        self._dimension = self._model.get_sentence_embedding_dimension()
        logger.info("Model loaded: %s (%d dimensions)", model_name, self._dimension)

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def model_name(self) -> str:
        return self._model_name

    def _encode(self, texts: List[str], batch_size: int = 32) -> List[List[float]]:
        embeddings = self._model.encode(
            texts,
            normalize_embeddings=self._normalize,
            show_progress_bar=False,
            batch_size=batch_size,
        )
        return embeddings.tolist()

    def embed(self, text: str) -> List[float]:
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")
        return self._encode([f"{self._document_prefix}{text}"])[0]

    def embed_query(self, text: str) -> List[float]:
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")
        return self._encode([f"{self._query_prefix}{text}"])[0]

    def embed_many(self, texts: List[str], batch_size: int = 32) -> List[List[float]]:
        if not texts:
            return []
        if any(not text or not text.strip() for text in texts):
            raise ValueError("Cannot embed empty texts in batch")
        return self._encode([f"{self._document_prefix}{t}" for t in texts], batch_size)
