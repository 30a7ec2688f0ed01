"""
Hybrid search over the service catalog.

Stages:
1. Semantic: cosine similarity against the embedding index
2. Lexical: weighted substring match, when semantic is unavailable or empty
3. Fallback-all: every candidate with a neutral score

Whatever stage produced the results, they are reranked by business
priority before truncation, so priority dominates raw relevance.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from loguru import logger

from ..classification import ClassifierConfig
from ..errors import ValidationError
from ..registry import SearchResult, SearchSource, ServiceRecord, ServiceRegistry
from .documents import ENTITY_KEY_SEPARATOR
from .index import EmbeddingIndex
from .lexical import lexical_search

ALL_DOMAINS = "ALL"
NEUTRAL_SCORE = 0.5
SEMANTIC_OVERFETCH = 2


@dataclass
class SearchOutcome:
    """Ranked, truncated results plus provenance."""

    results: list[SearchResult]
    source: SearchSource
    total_found: int
    query: str
    domain: Optional[str]


def rerank(results: Iterable[SearchResult]) -> list[SearchResult]:
    """Stable sort by business priority, then descending search score."""
    return sorted(results, key=SearchResult.priority_key)


class HybridSearchEngine:
    """
    Resolves a free-text query and optional domain into ranked candidates.

    Never returns an empty list when the domain-filtered corpus is
    non-empty. Embedding failures demote the query to lexical search and
    are logged, never raised.
    """

    def __init__(
        self,
        registry: ServiceRegistry,
        config: ClassifierConfig,
        index: Optional[EmbeddingIndex] = None,
        semantic_min_score: float = 0.25,
        semantic_enabled: bool = True,
        default_limit: int = 20,
        max_limit: int = 100,
    ):
        self.registry = registry
        self.config = config
        self.index = index
        self.semantic_min_score = semantic_min_score
        self.semantic_enabled = semantic_enabled
        self.default_limit = default_limit
        self.max_limit = max_limit

    @property
    def semantic_ready(self) -> bool:
        return self.semantic_enabled and self.index is not None and self.index.is_ready

    @staticmethod
    def normalize_domain(domain: Optional[str]) -> Optional[str]:
        """Upper-cased domain filter; None means no filter."""
        if domain is None:
            return None
        domain = domain.strip().upper()
        if not domain or domain == ALL_DOMAINS:
            return None
        return domain

    def resolve_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.default_limit
        if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= self.max_limit:
            raise ValidationError(f"limit must be an integer in 1..{self.max_limit}, got {limit!r}")
        return limit

    def candidates(self, domain: Optional[str]) -> list[ServiceRecord]:
        if domain is None:
            return self.registry.all()
        return self.registry.by_domain(domain)

    async def semantic_search(
        self, query: str, candidates: list[ServiceRecord], limit: int
    ) -> list[SearchResult]:
        """
        Query the embedding index and map hits back to services.

        Entity-level hits ("<service>::<entity>") count toward their
        service; each service keeps its best hit.
        """
        if not self.semantic_ready:
            return []

        try:
            hits = await self.index.query(
                query, k=limit * SEMANTIC_OVERFETCH, min_score=self.semantic_min_score
            )
        except Exception as e:
            logger.warning(f"Semantic search unavailable, using lexical search: {e}")
            return []

        allowed = {record.service_id: record for record in candidates}
        best: dict[str, SearchResult] = {}
        for hit in hits:
            service_id = hit.metadata.get("serviceId") or hit.key.split(ENTITY_KEY_SEPARATOR)[0]
            record = allowed.get(service_id)
            if record is None:
                continue
            current = best.get(service_id)
            if current is not None and current.score >= hit.score:
                continue

            reason = f"semantic match ({hit.score:.0%})"
            entity_name = hit.metadata.get("entityName")
            if entity_name:
                reason += f" via {entity_name}"
            best[service_id] = SearchResult(
                service_id=service_id,
                score=hit.score,
                match_reason=reason,
                source=SearchSource.SEMANTIC,
                record=record,
            )

        return list(best.values())

    async def search(
        self,
        query: Optional[str] = None,
        domain: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> SearchOutcome:
        """
        Search the catalog.

        Args:
            query: Free text; empty returns the whole filtered catalog
            domain: Exact domain tag filter ("ALL" or None for none)
            limit: Maximum results, 1..max_limit

        Returns:
            SearchOutcome with results ranked by business priority

        Raises:
            ValidationError: If limit is out of range
        """
        query = (query or "").strip()
        domain_filter = self.normalize_domain(domain)
        limit = self.resolve_limit(limit)
        candidates = self.candidates(domain_filter)

        results: list[SearchResult] = []
        source = SearchSource.FALLBACK_ALL

        if query:
            results = await self.semantic_search(query, candidates, limit)
            source = SearchSource.SEMANTIC
            if not results:
                results = lexical_search(candidates, query, self.config)
                source = SearchSource.LEXICAL

        if not results:
            results = [
                SearchResult(
                    service_id=record.service_id,
                    score=NEUTRAL_SCORE,
                    match_reason="All services",
                    source=SearchSource.FALLBACK_ALL,
                    record=record,
                )
                for record in candidates
            ]
            source = SearchSource.FALLBACK_ALL

        ranked = rerank(results)
        logger.debug(
            f"Search '{query}' domain={domain_filter or ALL_DOMAINS}: "
            f"{len(ranked)} via {source.value}"
        )
        return SearchOutcome(
            results=ranked[:limit],
            source=source,
            total_found=len(ranked),
            query=query,
            domain=domain_filter,
        )
