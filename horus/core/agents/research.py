"""
Research Agent

Finds evidence for each detected pattern, cheapest source first:

    1. evidence cache  (embedding similarity, tier >= B, limit 3)
    2. PubMed          (only for patterns still lacking tier >= B evidence)
    3. model knowledge (only for patterns with no evidence at all)

Per-pattern lookups are independent and fan out over a small thread
pool; results are re-assembled in pattern order so completion order
never changes the output. New tier S/A/B findings are written back to
the cache at the end of the stage.
"""
import json
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from horus.core.evidence.cache import EvidenceCache
from horus.core.evidence.search import PubMedSearch, build_search_query
from horus.core.llm.parser import parse_json, as_str, as_float, as_list, as_str_list, as_choice
from horus.core.metrics.registry import QualityTier, QUALITY_TIER_VALUES, tier_at_least
from horus.utils import get_logger, HorusError, CacheUnavailableError, EmbeddingError
from .base import DetectedPattern, ResearchEvidence, SourceType

logger = get_logger(__name__)

CACHE_LOOKUP_LIMIT = 3
SEARCH_RESULTS_PER_PATTERN = 3
CACHEABLE_TIERS = (QualityTier.S, QualityTier.A, QualityTier.B)

_TIERS = tuple(t.value for t in QualityTier)


@dataclass
class ResearchResult:
    evidence_by_pattern: Dict[str, List[ResearchEvidence]] = field(default_factory=dict)
    insufficient_evidence: List[str] = field(default_factory=list)
    new_cache_entries: List[ResearchEvidence] = field(default_factory=list)

    def all_evidence(self) -> List[ResearchEvidence]:
        return [e for items in self.evidence_by_pattern.values() for e in items]

    @property
    def citations(self) -> List[str]:
        return [e.citation for e in self.all_evidence()]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "evidence_by_pattern": {
                pid: [e.to_dict() for e in items] for pid, items in self.evidence_by_pattern.items()
            },
            "insufficient_evidence": list(self.insufficient_evidence),
            "new_cache_entries": [e.to_dict() for e in self.new_cache_entries],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResearchResult":
        return cls(
            evidence_by_pattern={
                pid: [ResearchEvidence.from_dict(e) for e in items]
                for pid, items in data.get("evidence_by_pattern", {}).items()
            },
            insufficient_evidence=list(data.get("insufficient_evidence", [])),
            new_cache_entries=[ResearchEvidence.from_dict(e) for e in data.get("new_cache_entries", [])],
        )


def best_tier(evidence: List[ResearchEvidence]) -> Optional[QualityTier]:
    if not evidence:
        return None
    return max((e.tier for e in evidence), key=lambda t: QUALITY_TIER_VALUES[t])


def dedupe_by_citation(evidence: List[ResearchEvidence]) -> List[ResearchEvidence]:
    """First occurrence of a citation wins (callers put cache evidence first)."""
    seen = set()
    out = []
    for e in evidence:
        key = e.citation.strip().lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(e)
    return out


def is_insufficient(evidence: List[ResearchEvidence]) -> bool:
    """Nothing at tier C or better."""
    top = best_tier(evidence)
    return top is None or not tier_at_least(top, QualityTier.C)


class ResearchAgent:
    """Evidence gatherer for detected patterns."""

    NAME = "research"

    SYSTEM_PROMPT = """You are a sports-medicine research assistant. For each pattern, cite
published evidence you are confident exists.

CRITICAL CONSTRAINTS:
1. Cite real, verifiable sources only; if unsure, lower the tier
2. Findings are short factual statements, no recommendations for a specific patient
3. Tiers: S systematic review/meta-analysis, A RCT or high-impact journal,
   B peer-reviewed study, C textbook/guideline/expert consensus, D anything else

Respond with JSON only:
{"evidence": [{"patternId": "...", "citation": "...", "url": null, "tier": "B",
  "findings": ["..."], "relevanceScore": 0}]}"""

    def __init__(
        self,
        invoker,
        cache: Optional[EvidenceCache] = None,
        search: Optional[PubMedSearch] = None,
        max_workers: int = 4,
    ):
        self.invoker = invoker
        self.cache = cache
        self.search = search
        self.max_workers = max(1, max_workers)

    # ── Stage entry ─────────────────────────────────────────────────────────

    def run(self, patterns: List[DetectedPattern], movement_type: Optional[str] = None) -> ResearchResult:
        gathered = self._gather_all(patterns, movement_type)

        missing = [p for p in patterns if not gathered[p.id]]
        if missing:
            try:
                for e in self._embedded_knowledge(missing):
                    gathered[e.pattern_id].append(e)
            except HorusError as e:
                if not any(gathered.values()):
                    raise
                logger.warning(f"Embedded-knowledge lookup failed, continuing with existing evidence: {e.message}")

        result = ResearchResult()
        for p in patterns:
            items = dedupe_by_citation(gathered[p.id])
            result.evidence_by_pattern[p.id] = items
            if is_insufficient(items):
                result.insufficient_evidence.append(p.id)
            result.new_cache_entries.extend(
                e for e in items
                if e.source_type != SourceType.CACHE and e.tier in CACHEABLE_TIERS and e.findings
            )

        self._persist(result.new_cache_entries)
        logger.info(
            f"Research gathered {len(result.all_evidence())} evidence item(s); "
            f"{len(result.insufficient_evidence)} pattern(s) insufficient"
        )
        return result

    # ── Per-pattern lookup ──────────────────────────────────────────────────

    def _gather_all(self, patterns: List[DetectedPattern], movement_type: Optional[str]) -> Dict[str, List[ResearchEvidence]]:
        gathered: Dict[str, List[ResearchEvidence]] = {p.id: [] for p in patterns}
        if not patterns:
            return gathered
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="horus-research") as pool:
            futures = {pool.submit(self._gather, p, movement_type): p.id for p in patterns}
            for future in as_completed(futures):
                gathered[futures[future]] = future.result()
        return gathered

    def _gather(self, pattern: DetectedPattern, movement_type: Optional[str]) -> List[ResearchEvidence]:
        evidence = self._from_cache(pattern)
        if any(tier_at_least(e.tier, QualityTier.B) for e in evidence):
            return evidence
        evidence.extend(self._from_search(pattern, movement_type))
        return evidence

    def _from_cache(self, pattern: DetectedPattern) -> List[ResearchEvidence]:
        if self.cache is None or not pattern.search_terms:
            return []
        try:
            hits = self.cache.search_text(" ".join(pattern.search_terms), limit=CACHE_LOOKUP_LIMIT)
        except (CacheUnavailableError, EmbeddingError) as e:
            logger.warning(f"Evidence cache unavailable for {pattern.id}: {e.message}")
            return []
        return [
            ResearchEvidence(
                id=f"cache-{hit.entry.entry_id}",
                pattern_id=pattern.id,
                tier=hit.entry.tier,
                source_type=SourceType.CACHE,
                citation=hit.entry.citation,
                findings=list(hit.entry.findings),
                relevance_score=round(hit.similarity * 100, 1),
                url=hit.entry.url,
                search_terms=list(hit.entry.search_terms),
            )
            for hit in hits
        ]

    def _from_search(self, pattern: DetectedPattern, movement_type: Optional[str]) -> List[ResearchEvidence]:
        if self.search is None:
            return []
        query = build_search_query(pattern.search_terms or pattern.metrics, movement_type)
        try:
            results = self.search.search(query, max_results=SEARCH_RESULTS_PER_PATTERN)
        except CacheUnavailableError as e:
            logger.warning(f"External search failed for {pattern.id}: {e.message}")
            return []
        evidence = []
        for i, r in enumerate(results, start=1):
            evidence.append(ResearchEvidence(
                id=f"web-{pattern.id}-{i}",
                pattern_id=pattern.id,
                tier=r.tier,
                source_type=SourceType.WEB_SEARCH,
                citation=r.citation,
                findings=[r.abstract] if r.abstract else [],
                relevance_score=max(0.0, 80.0 - 10.0 * (i - 1)),
                url=r.url,
                search_terms=list(pattern.search_terms),
            ))
        return evidence

    # ── Model knowledge ─────────────────────────────────────────────────────

    def _embedded_knowledge(self, patterns: List[DetectedPattern]) -> List[ResearchEvidence]:
        response = self.invoker.invoke(self.SYSTEM_PROMPT, self._build_prompt(patterns))
        data = parse_json(response, agent=self.NAME)
        known = {p.id: p for p in patterns}

        evidence = []
        for i, item in enumerate(as_list(data.get("evidence")), start=1):
            if not isinstance(item, dict):
                continue
            pattern_id = as_str(item.get("patternId", item.get("pattern_id")))
            citation = as_str(item.get("citation")).strip()
            if pattern_id not in known or not citation:
                continue
            evidence.append(ResearchEvidence(
                id=f"llm-{pattern_id}-{i}",
                pattern_id=pattern_id,
                tier=QualityTier(as_choice(item.get("tier"), _TIERS, QualityTier.C.value)),
                source_type=SourceType.EMBEDDED_KNOWLEDGE,
                citation=citation,
                findings=as_str_list(item.get("findings")),
                relevance_score=min(100.0, max(0.0, as_float(item.get("relevanceScore"), 50.0))),
                url=as_str(item.get("url")) or None,
                search_terms=list(known[pattern_id].search_terms),
            ))
        return evidence

    def _build_prompt(self, patterns: List[DetectedPattern]) -> str:
        payload = [
            {
                "id": p.id,
                "type": p.type.value,
                "description": p.description,
                "metrics": p.metrics,
                "searchTerms": p.search_terms,
            }
            for p in patterns
        ]
        return (
            "Find supporting evidence for these patterns:\n"
            f"{json.dumps(payload, indent=2)}\n\n"
            "Return 1-2 evidence items per pattern as JSON."
        )

    # ── Write-back ──────────────────────────────────────────────────────────

    def _persist(self, entries: List[ResearchEvidence]) -> None:
        if self.cache is None:
            return
        for e in entries:
            try:
                self.cache.add_evidence(
                    search_terms=e.search_terms,
                    tier=e.tier,
                    citation=e.citation,
                    findings=e.findings,
                    relevance_score=e.relevance_score,
                    url=e.url,
                )
            except HorusError as err:
                logger.warning(f"Could not cache evidence '{e.citation[:50]}': {err.message}")
