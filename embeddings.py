"""Similarity engine and local embedding backend.

Embeddings drive three things in the scout service:
    - Cross-execution duplicate detection (summary vs. recent summaries)
    - In-batch deduplication of freshly extracted information units
    - Semantic search over a user's stored units

Remote embeddings come from the language-model collaborator. For offline or
self-hosted setups, EMBEDDING_MODEL='local:<hf-model>' selects the
sentence-transformers backend below, loaded lazily on first use.

Usage:
    >>> from embeddings import cosine_similarity, deduplicate
    >>> cosine_similarity([1, 0], [1, 0])
    1.0
    >>> kept = await deduplicate(["a", "b"], 0.75, llm.embed_batch)
"""

import logging
from typing import Awaitable, Callable, Sequence

import numpy as np

logger = logging.getLogger(__name__)

Vector = Sequence[float] | np.ndarray
BatchEmbedder = Callable[[list[str]], Awaitable[list[list[float]]]]


def cosine_similarity(a: Vector, b: Vector) -> float:
    """Compute cosine similarity between two vectors.

    Args:
        a: First vector
        b: Second vector

    Returns:
        Similarity in [-1, 1]; 0.0 when either vector has zero magnitude

    Raises:
        ValueError: If the vectors have different lengths
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError("Vectors must have the same length")

    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / norm, -1.0, 1.0))


def dedup_indices(embeddings: Sequence[Vector], threshold: float) -> list[int]:
    """Greedy first-wins deduplication over precomputed embeddings.

    An item is kept unless it is at least `threshold` similar to an item
    already kept. Returned indices preserve input order.
    """
    kept: list[int] = []
    for i, emb in enumerate(embeddings):
        if all(cosine_similarity(emb, embeddings[j]) < threshold for j in kept):
            kept.append(i)
    return kept


async def deduplicate(
    texts: list[str],
    threshold: float,
    embed_batch: BatchEmbedder,
) -> tuple[list[int], list[list[float]]]:
    """Embed texts in one batch call and drop near-duplicates.

    Args:
        texts: Candidate texts in priority order (earlier wins)
        threshold: Similarity at or above which a later text is dropped
        embed_batch: Async batch embedding function (one call for all texts)

    Returns:
        Tuple of (kept indices in input order, embeddings for all texts)
    """
    if not texts:
        return [], []

    embeddings = await embed_batch(texts)
    kept = dedup_indices(embeddings, threshold)
    if len(kept) < len(texts):
        logger.debug("Dedup dropped items | total=%d kept=%d threshold=%.2f", len(texts), len(kept), threshold)
    return kept, embeddings


class LocalEmbeddingModel:
    """Wrapper for a sentence-transformers embedding model.

    Provides lazy loading and caching of the model instance.
    The model is loaded on first use and reused for subsequent calls.

    Attributes:
        model_name: HuggingFace model identifier
    """

    def __init__(self, model_name: str):
        self.model_name = model_name
        self._model = None

    def _load_model(self):
        """Lazily load the sentence-transformers model."""
        if self._model is None:
            logger.info("Loading embedding model: %s", self.model_name)
            from sentence_transformers import SentenceTransformer
            self._model = SentenceTransformer(self.model_name)
            logger.info("Embedding model loaded | model=%s", self.model_name)
        return self._model

    def encode_batch(self, texts: list[str], batch_size: int = 32) -> list[list[float]]:
        """Encode multiple texts to embedding vectors.

        Args:
            texts: List of input texts
            batch_size: Batch size for encoding

        Returns:
            One float list per input text, in input order
        """
        if not texts:
            return []

        model = self._load_model()
        embeddings = model.encode(
            texts,
            convert_to_numpy=True,
            normalize_embeddings=True,
            batch_size=batch_size,
            show_progress_bar=False,
        )
        return embeddings.astype(np.float32).tolist()
