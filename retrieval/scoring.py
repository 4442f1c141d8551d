"""
Pluggable similarity scoring.

Every component that needs "how related are these two texts" is coded
against `ScoringStrategy`, so the lexical default can be swapped for
embedding similarity without touching callers.
"""

import logging
import re
from typing import FrozenSet, Iterable, Optional, Protocol

logger = logging.getLogger(__name__)

_TOKEN = re.compile(r"[a-z0-9]+")

STOPWORDS = frozenset({
    "a", "an", "and", "are", "as", "at", "be", "by", "for", "from", "how", "in",
    "is", "it", "me", "of", "on", "or", "show", "the", "to", "was", "were",
    "what", "which", "who", "with", "give", "get", "list", "all", "per", "our",
    "we", "i", "my", "do", "does", "did",
})


class ScoringStrategy(Protocol):
    """Similarity between two texts, normalized to [0, 1]."""

    def similarity(self, a: str, b: str) -> float: ...


def normalize_token(token: str) -> str:
    """Light singularization so 'deposits' and 'deposit' match."""
    if len(token) > 4 and token.endswith("ies"):
        return token[:-3] + "y"
    if len(token) > 3 and token.endswith("s") and not token.endswith("ss"):
        return token[:-1]
    return token


def tokenize(text: str, drop_stopwords: bool = True) -> FrozenSet[str]:
    """Lowercased, singularized content tokens of `text`."""
    tokens = _TOKEN.findall(text.lower().replace("_", " "))
    return frozenset(
        normalize_token(t) for t in tokens
        if not (drop_stopwords and t in STOPWORDS)
    )


def overlap_score(query_tokens: Iterable[str], doc_tokens: Iterable[str]) -> float:
    """Share of query tokens found in the document."""
    query = set(query_tokens)
    if not query:
        return 0.0
    return len(query & set(doc_tokens)) / len(query)


class LexicalSimilarity:
    """
    Deterministic token-overlap similarity.

    Blends query coverage with Jaccard so short descriptions that contain
    every question term still rank high.
    """

    def __init__(self, coverage_weight: float = 0.7):
        self.coverage_weight = coverage_weight

    def similarity(self, a: str, b: str) -> float:
        ta, tb = tokenize(a), tokenize(b)
        if not ta or not tb:
            return 0.0
        coverage = overlap_score(ta, tb)
        jaccard = len(ta & tb) / len(ta | tb)
        score = self.coverage_weight * coverage + (1 - self.coverage_weight) * jaccard
        return min(1.0, max(0.0, score))


class EmbeddingSimilarity:
    """
    Cosine similarity over sentence-transformer embeddings, clipped to [0, 1].
    """

    def __init__(self, service=None):
        if service is None:
            from app.embeddings import get_embedding_service

            service = get_embedding_service()
        self.service = service

    def similarity(self, a: str, b: str) -> float:
        if not a.strip() or not b.strip():
            return 0.0
        return min(1.0, max(0.0, self.service.cosine_similarity(a, b)))


def get_scoring_strategy(backend: Optional[str] = None) -> ScoringStrategy:
    """Build the configured scoring strategy."""
    from app.config import settings

    backend = (backend or settings.SIMILARITY_BACKEND).lower()
    if backend == "embedding":
        return EmbeddingSimilarity()
    if backend != "lexical":
        raise ValueError(f"Unknown similarity backend: {backend}")
    return LexicalSimilarity()
