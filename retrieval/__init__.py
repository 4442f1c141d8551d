"""
Metadata Retrieval Module.

Retrieval decides which slice of the warehouse the model gets to see.

This module implements:
- Pluggable similarity scoring (lexical or embedding)
- Four concurrent table-discovery strategies
- Weighted score fusion over normalized strategy scores
- Hard domain exclusion before ranking
- Column selection, relationship discovery and result caching

Usage:
    from retrieval import InMemoryMetadataStore, MetadataRetrievalEngine

    store = InMemoryMetadataStore.from_json("metadata.json")
    engine = MetadataRetrievalEngine(store)
    outcome = await engine.retrieve(profile, max_tables=5)
"""

from .engine import MetadataRetrievalEngine, RetrievalOutcome, SchemaChangeNotification
from .metadata_store import InMemoryMetadataStore, MetadataStore, RelationshipService
from .score_fusion import FusedScore, merge_strategy_scores, normalize_scores
from .scoring import EmbeddingSimilarity, LexicalSimilarity, ScoringStrategy, get_scoring_strategy

__all__ = [
    "MetadataRetrievalEngine",
    "RetrievalOutcome",
    "SchemaChangeNotification",
    "InMemoryMetadataStore",
    "MetadataStore",
    "RelationshipService",
    "FusedScore",
    "merge_strategy_scores",
    "normalize_scores",
    "EmbeddingSimilarity",
    "LexicalSimilarity",
    "ScoringStrategy",
    "get_scoring_strategy",
]
