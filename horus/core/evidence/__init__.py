"""
Evidence Layer

Embedding-backed evidence cache plus the external literature search it
falls back to.
"""
from .cache import CacheEntry, CacheHit, EvidenceCache, MERGE_SIMILARITY
from .embeddings import (
    EmbeddingClient,
    MAX_BATCH_SIZE,
    TaskType,
    cosine_similarity,
    normalize_text,
)
from .search import PubMedSearch, SearchResult, build_search_query, tier_from_domain

__all__ = [
    "CacheEntry",
    "CacheHit",
    "EvidenceCache",
    "MERGE_SIMILARITY",
    "EmbeddingClient",
    "MAX_BATCH_SIZE",
    "TaskType",
    "cosine_similarity",
    "normalize_text",
    "PubMedSearch",
    "SearchResult",
    "build_search_query",
    "tier_from_domain",
]
