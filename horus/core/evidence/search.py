"""
External Literature Search
==========================
PubMed retrieval (NCBI E-Utilities) used when the evidence cache has no
tier-B-or-better coverage for a pattern, plus source-domain tiering.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse
from xml.parsers.expat import ExpatError

import requests
import xmltodict

from horus.config import Settings, settings as default_settings
from horus.core.metrics.registry import QualityTier
from horus.utils import get_logger, CacheUnavailableError

logger = get_logger(__name__)

PUBMED_ESEARCH_URL = "https://eutils.ncbi.nlm.nih.gov/entrez/eutils/esearch.fcgi"
PUBMED_EFETCH_URL = "https://eutils.ncbi.nlm.nih.gov/entrez/eutils/efetch.fcgi"

# Minimum relevance score per tier
TIER_MIN_SCORE = {
    QualityTier.S: 90,
    QualityTier.A: 75,
    QualityTier.B: 60,
    QualityTier.C: 40,
    QualityTier.D: 0,
}

PRIORITY_DOMAINS = (
    "pubmed.ncbi.nlm.nih.gov",
    "ncbi.nlm.nih.gov",
    "jospt.org",
    "bjsm.bmj.com",
    "cochranelibrary.com",
    "physio-pedia.com",
    "sportsmed.org",
)

_TIER_S = ("cochrane",)
_TIER_A = ("jospt", "bjsm", "ajsm", "sportsmed.org")
_TIER_B = ("pubmed", "ncbi.nlm.nih.gov", "springer", "wiley", "sciencedirect", "nature.com")


def tier_from_domain(url: Optional[str]) -> QualityTier:
    """Rank a source by its host: systematic-review libraries first, open web last."""
    if not url:
        return QualityTier.D
    host = (urlparse(url).netloc or url).lower()
    if any(k in host for k in _TIER_S):
        return QualityTier.S
    if any(k in host for k in _TIER_A):
        return QualityTier.A
    if any(k in host for k in _TIER_B):
        return QualityTier.B
    if host.endswith(".edu") or host.endswith(".gov"):
        return QualityTier.C
    return QualityTier.D


def build_search_query(search_terms: List[str], movement_type: Optional[str] = None) -> str:
    terms = [t.strip() for t in search_terms if t and t.strip()]
    query = " ".join(terms[:3])
    if movement_type and movement_type != "unknown":
        query += f" {movement_type.replace('_', ' ')}"
    return query.strip()


@dataclass
class SearchResult:
    title: str
    url: str
    abstract: str
    tier: QualityTier
    source: str = "PubMed"
    authors: List[str] = field(default_factory=list)
    year: Optional[str] = None

    @property
    def citation(self) -> str:
        lead = f"{self.authors[0]} et al. " if self.authors else ""
        year = f"({self.year}) " if self.year else ""
        return f"{lead}{year}{self.title}".strip()


def _text(node: Any) -> str:
    if node is None:
        return ""
    if isinstance(node, str):
        return node
    if isinstance(node, dict):
        return str(node.get("#text", ""))
    if isinstance(node, list):
        return " ".join(_text(n) for n in node)
    return str(node)


class PubMedSearch:
    """Minimal PubMed client: esearch for PMIDs, efetch for abstracts."""

    def __init__(self, config: Optional[Settings] = None, session: Optional[requests.Session] = None):
        self.config = config or default_settings
        self.session = session or requests.Session()

    def _params(self, extra: Dict[str, Any]) -> Dict[str, Any]:
        params = {"db": "pubmed", **extra}
        if self.config.ncbi_api_key:
            params["api_key"] = self.config.ncbi_api_key
        return params

    def search(self, query: str, max_results: int = 3) -> List[SearchResult]:
        """
        Search PubMed for ``query``.

        Raises:
            CacheUnavailableError: network failure, timeout or unreadable
                response (non-fatal to callers)
        """
        if not query:
            return []
        timeout = self.config.search_timeout_seconds
        try:
            resp = self.session.get(
                PUBMED_ESEARCH_URL,
                params=self._params({"term": query, "retmax": max_results, "retmode": "json", "sort": "relevance"}),
                timeout=timeout,
            )
            resp.raise_for_status()
            pmids: List[str] = resp.json().get("esearchresult", {}).get("idlist", [])
            if not pmids:
                return []

            fetch = self.session.get(
                PUBMED_EFETCH_URL,
                params=self._params({"id": ",".join(pmids), "retmode": "xml", "rettype": "abstract"}),
                timeout=timeout,
            )
            fetch.raise_for_status()
            return self._parse_articles(fetch.text)
        except requests.RequestException as e:
            raise CacheUnavailableError(f"PubMed search failed: {e}", details={"query": query}) from e
        except (ExpatError, ValueError, AttributeError, TypeError) as e:
            raise CacheUnavailableError(f"PubMed returned an unreadable response: {e}", details={"query": query}) from e

    def _parse_articles(self, xml_text: str) -> List[SearchResult]:
        parsed = xmltodict.parse(xml_text)
        articles = (parsed.get("PubmedArticleSet") or {}).get("PubmedArticle", [])
        if isinstance(articles, dict):
            articles = [articles]

        results: List[SearchResult] = []
        for article in articles:
            medline = article.get("MedlineCitation", {})
            info = medline.get("Article", {})
            pmid = _text(medline.get("PMID")) or "N/A"

            authors_raw = (info.get("AuthorList") or {}).get("Author", [])
            if isinstance(authors_raw, dict):
                authors_raw = [authors_raw]
            authors = [a.get("LastName") for a in authors_raw if isinstance(a, dict) and a.get("LastName")]

            year = _text(((info.get("Journal") or {}).get("JournalIssue") or {}).get("PubDate", {}).get("Year")) or None
            abstract = _text((info.get("Abstract") or {}).get("AbstractText"))
            url = f"https://pubmed.ncbi.nlm.nih.gov/{pmid}/"
            results.append(SearchResult(
                title=_text(info.get("ArticleTitle")) or "Untitled",
                url=url,
                abstract=abstract[:400] + "..." if len(abstract) > 400 else abstract,
                tier=tier_from_domain(url),
                authors=authors,
                year=year,
            ))
        logger.debug(f"PubMed returned {len(results)} article(s)")
        return results
