"""
Evidence Cache

In-process store of quality-tiered research findings retrieved by
embedding similarity.

    lookup:  cosine rank -> tier filter (>= B by default) -> min similarity -> top N
             every returned entry gets hit_count += 1 and last_used = now
    insert:  an embedding within MERGE_SIMILARITY of an existing row (or the
             same citation) merges findings into that row instead of adding one

Entries are never deleted here; pruning is left to external housekeeping.
All mutation happens under a single store lock.
"""
from __future__ import annotations

import itertools
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from horus.core.metrics.registry import QualityTier, QUALITY_TIER_VALUES, tier_at_least
from horus.utils import get_logger, CacheUnavailableError, HorusError
from .embeddings import EmbeddingClient, TaskType, cosine_similarities, normalize_text

logger = get_logger(__name__)

# ── Thresholds ────────────────────────────────────────────────────────────────
DEFAULT_MIN_TIER = QualityTier.B
DEFAULT_MIN_SIMILARITY = 0.75
MERGE_SIMILARITY = 0.98
DEFAULT_LIMIT = 5


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class CacheEntry:
    """One cached piece of evidence."""
    entry_id: str
    embedding: List[float]
    tier: QualityTier
    citation: str
    findings: List[str]
    relevance_score: float
    search_terms: List[str] = field(default_factory=list)
    url: Optional[str] = None
    hit_count: int = 0
    last_used: Optional[int] = None
    cached_at: int = field(default_factory=_now_ms)

    def to_dict(self, include_embedding: bool = False) -> Dict[str, Any]:
        out = {
            "entry_id": self.entry_id,
            "tier": self.tier.value,
            "citation": self.citation,
            "url": self.url,
            "findings": list(self.findings),
            "relevance_score": self.relevance_score,
            "search_terms": list(self.search_terms),
            "hit_count": self.hit_count,
            "last_used": self.last_used,
            "cached_at": self.cached_at,
        }
        if include_embedding:
            out["embedding"] = list(self.embedding)
        return out


@dataclass
class CacheHit:
    entry: CacheEntry
    similarity: float


def _merge_unique(existing: List[str], extra: Sequence[str]) -> List[str]:
    seen = set(existing)
    merged = list(existing)
    for item in extra:
        if item and item not in seen:
            seen.add(item)
            merged.append(item)
    return merged


class EvidenceCache:
    """
    Append-only evidence store with similarity lookup.

    ``embedder`` is only needed for the text-level helpers
    (search_text / add_evidence); the vector-level API works without it.
    """

    def __init__(self, embedder: Optional[EmbeddingClient] = None):
        self.embedder = embedder
        self._entries: List[CacheEntry] = []
        self._matrix = np.zeros((0, 0))
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> List[CacheEntry]:
        with self._lock:
            return list(self._entries)

    # ── Vector API ──────────────────────────────────────────────────────────

    def search(
        self,
        query_embedding: Sequence[float],
        limit: int = DEFAULT_LIMIT,
        min_tier: QualityTier = DEFAULT_MIN_TIER,
        min_similarity: float = DEFAULT_MIN_SIMILARITY,
    ) -> List[CacheHit]:
        """Top-``limit`` entries at or above ``min_tier`` and ``min_similarity``, best first."""
        with self._lock:
            if not self._entries:
                return []
            try:
                sims = cosine_similarities(query_embedding, self._matrix)
            except HorusError:
                logger.warning("Cache search skipped: query embedding has wrong dimensions")
                return []

            order = np.argsort(-sims, kind="stable")
            hits: List[CacheHit] = []
            now = _now_ms()
            for idx in order:
                similarity = float(sims[idx])
                if similarity < min_similarity:
                    break
                entry = self._entries[idx]
                if not tier_at_least(entry.tier, min_tier):
                    continue
                entry.hit_count += 1
                entry.last_used = now
                hits.append(CacheHit(entry=entry, similarity=similarity))
                if len(hits) >= limit:
                    break
            return hits

    def insert(
        self,
        embedding: Sequence[float],
        tier: QualityTier,
        citation: str,
        findings: Sequence[str],
        relevance_score: float,
        search_terms: Sequence[str] = (),
        url: Optional[str] = None,
    ) -> CacheEntry:
        """Add an entry, or merge into a near-identical one (similarity > MERGE_SIMILARITY)."""
        tier = QualityTier(tier)
        vector = [float(x) for x in embedding]
        with self._lock:
            match = self._find_duplicate(vector, citation)
            if match is not None:
                self._merge(match, tier, findings, relevance_score, search_terms, url)
                logger.debug(f"Merged evidence into cache entry {match.entry_id}")
                return match

            entry = CacheEntry(
                entry_id=f"ev-{next(self._ids)}",
                embedding=vector,
                tier=tier,
                citation=citation,
                findings=_merge_unique([], findings),
                relevance_score=float(relevance_score),
                search_terms=_merge_unique([], search_terms),
                url=url,
            )
            row = np.asarray(vector, dtype=float)[None, :]
            if self._matrix.size == 0:
                self._matrix = row
            elif self._matrix.shape[1] != row.shape[1]:
                raise CacheUnavailableError(
                    "Embedding dimension mismatch",
                    details={"expected": int(self._matrix.shape[1]), "got": int(row.shape[1])},
                )
            else:
                self._matrix = np.vstack([self._matrix, row])
            self._entries.append(entry)
            logger.debug(f"Cached new evidence {entry.entry_id} ({tier.value}) {citation[:60]}")
            return entry

    def _find_duplicate(self, vector: List[float], citation: str) -> Optional[CacheEntry]:
        for entry in self._entries:
            if citation and entry.citation == citation:
                return entry
        if self._matrix.size == 0 or self._matrix.shape[1] != len(vector):
            return None
        sims = cosine_similarities(vector, self._matrix)
        best = int(np.argmax(sims))
        if float(sims[best]) > MERGE_SIMILARITY:
            return self._entries[best]
        return None

    @staticmethod
    def _merge(entry: CacheEntry, tier, findings, relevance_score, search_terms, url) -> None:
        entry.findings = _merge_unique(entry.findings, findings)
        entry.search_terms = _merge_unique(entry.search_terms, search_terms)
        if QUALITY_TIER_VALUES[tier] > QUALITY_TIER_VALUES[entry.tier]:
            entry.tier = tier
        entry.relevance_score = max(entry.relevance_score, float(relevance_score))
        entry.url = entry.url or url

    # ── Text API ────────────────────────────────────────────────────────────

    def _require_embedder(self) -> EmbeddingClient:
        if self.embedder is None:
            raise CacheUnavailableError("Evidence cache has no embedding client")
        return self.embedder

    def search_text(
        self,
        query: str,
        limit: int = 3,
        min_tier: QualityTier = DEFAULT_MIN_TIER,
        min_similarity: float = DEFAULT_MIN_SIMILARITY,
    ) -> List[CacheHit]:
        """Embed ``query`` (RETRIEVAL_QUERY) and search; raises CacheUnavailableError."""
        vector = self._require_embedder().embed(normalize_text(query), TaskType.RETRIEVAL_QUERY)
        return self.search(vector, limit=limit, min_tier=min_tier, min_similarity=min_similarity)

    def add_evidence(
        self,
        search_terms: Sequence[str],
        tier: QualityTier,
        citation: str,
        findings: Sequence[str],
        relevance_score: float,
        url: Optional[str] = None,
    ) -> CacheEntry:
        text = normalize_text(f"{' '.join(search_terms)} {citation} {' '.join(findings)}")
        vector = self._require_embedder().embed(text, TaskType.RETRIEVAL_DOCUMENT)
        return self.insert(vector, tier, citation, findings, relevance_score, search_terms, url)

    # ── Stats ───────────────────────────────────────────────────────────────

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            by_tier = {t.value: 0 for t in QualityTier}
            total_hits = 0
            relevance = 0.0
            for entry in self._entries:
                by_tier[entry.tier.value] += 1
                total_hits += entry.hit_count
                relevance += entry.relevance_score
            count = len(self._entries)
            return {
                "total_entries": count,
                "by_tier": by_tier,
                "total_hits": total_hits,
                "avg_relevance_score": relevance / count if count else 0.0,
                "oldest_entry": min((e.cached_at for e in self._entries), default=None),
                "newest_entry": max((e.cached_at for e in self._entries), default=None),
            }
