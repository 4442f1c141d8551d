"""
Embedding service backing semantic similarity scoring.
Vectors are normalized to unit length so cosine similarity is a dot product.
"""

import logging
import threading
from typing import Dict, List, Optional

import numpy as np
from sentence_transformers import SentenceTransformer

from .config import settings

logger = logging.getLogger(__name__)


class EmbeddingService:
    """
    Embedding service with a per-process vector cache.

    Key practices:
    - One embedding model per service instance
    - Deterministic preprocessing before encoding
    - Normalize vectors to unit length for cosine similarity
    """

    def __init__(self, model_name: Optional[str] = None, normalize: bool = True):
        self.model_name = model_name or settings.EMBEDDING_MODEL
        self.normalize = normalize
        self._model: Optional[SentenceTransformer] = None
        self._vectors: Dict[str, np.ndarray] = {}
        self._lock = threading.Lock()

    @property
    def model(self) -> SentenceTransformer:
        """Lazy load the model."""
        if self._model is None:
            logger.info(f"Loading embedding model: {self.model_name}")
            self._model = SentenceTransformer(self.model_name)
        return self._model

    def preprocess_text(self, text: str) -> str:
        """
        Deterministic text preprocessing.
        IMPORTANT: Keep this consistent across all embeddings.
        """
        text = " ".join(text.split())
        max_chars = 8192
        if len(text) > max_chars:
            text = text[:max_chars]
        return text

    def embed_batch(self, texts: List[str]) -> np.ndarray:
        """Embed texts, reusing cached vectors."""
        processed = [self.preprocess_text(t) for t in texts]

        with self._lock:
            missing = [t for t in dict.fromkeys(processed) if t not in self._vectors]

        if missing:
            vectors = self.model.encode(missing, show_progress_bar=False, convert_to_numpy=True)
            if self.normalize:
                norms = np.linalg.norm(vectors, axis=1, keepdims=True)
                vectors = vectors / (norms + 1e-10)  # Avoid division by zero
            with self._lock:
                for text, vector in zip(missing, vectors):
                    self._vectors.setdefault(text, vector)

        with self._lock:
            return np.stack([self._vectors[t] for t in processed])

    def cosine_similarity(self, a: str, b: str) -> float:
        """Cosine similarity between two texts."""
        vectors = self.embed_batch([a, b])
        return float(np.dot(vectors[0], vectors[1]))


# Global embedding service instance
_embedding_service: Optional[EmbeddingService] = None


def get_embedding_service() -> EmbeddingService:
    """Get or create the global embedding service."""
    global _embedding_service
    if _embedding_service is None:
        _embedding_service = EmbeddingService()
    return _embedding_service
