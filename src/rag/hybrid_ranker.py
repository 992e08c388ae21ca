"""
Hybrid ranking and source diversification.

Every (sub-)query gets a vector branch (embed, then search) and a keyword
branch; keyword branches search the unmapped query text. All branches run concurrently, each under its own time box; a failed
or slow branch contributes nothing instead of failing the request. Results are
pooled globally, deduplicated by chunk id, scored with the configured weights
and diversified once so no single document crowds out the others.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import structlog

from src.services.logging_service import log_performance_metrics, preview_text

from .embedding_client import EmbeddingClient
from .keyword_search import KeywordQueryBuilder, KeywordSearchEngine, tokenize
from .search_models import HybridSearchOptions, HybridSearchResult, KeywordHit, RankedCandidate, VectorHit
from .vector_search import VectorSearchEngine

logger = structlog.get_logger(__name__)

MAX_OVERLAP_BOOST = 0.3
OVERLAP_BOOST_PER_TERM = 0.05
GUIDE_TITLE_BOOST = 0.05
TRAINING_TITLE_BOOST = 0.03
EARLY_CHUNK_BOOST = 0.02
EARLY_CHUNK_LIMIT = 3


@dataclass
class BranchOutcome:
    """What one search branch produced."""
    kind: str
    query: str
    ok: bool
    vector_hits: List[VectorHit] = field(default_factory=list)
    keyword_hits: List[KeywordHit] = field(default_factory=list)
    embedding: Optional[List[float]] = None
    error: Optional[str] = None


def _unique(queries: Sequence[str]) -> List[str]:
    return list(dict.fromkeys(query for query in queries if query and query.strip()))


def diversify(candidates: Sequence[RankedCandidate], limit: int) -> List[RankedCandidate]:
    """
    Select up to ``limit`` candidates spread across documents.

    Pass 1 takes the best candidate of every document in score order; each
    following pass takes the next best leftover of every document, again in
    score order, until ``limit`` is reached. No document contributes a second
    chunk before every document in the pool has contributed its first.
    """
    if limit < 1:
        return []

    per_document: Dict[str, List[RankedCandidate]] = {}
    for candidate in sorted(candidates, key=lambda item: item.sort_key):
        per_document.setdefault(candidate.chunk.document_id, []).append(candidate)

    selected: List[RankedCandidate] = []
    depth = 0
    while len(selected) < limit:
        tier = [items[depth] for items in per_document.values() if depth < len(items)]
        if not tier:
            break
        tier.sort(key=lambda item: item.sort_key)
        selected.extend(tier[:limit - len(selected)])
        depth += 1

    return selected


def rerank_boost(candidate: RankedCandidate, query_terms: Sequence[str]) -> float:
    """Heuristic boost: domain term overlap (capped) plus source quality signals."""
    chunk_tokens = set(tokenize(f"{candidate.chunk.document_title} {candidate.chunk.content}"))
    overlap = sum(1 for term in query_terms if term in chunk_tokens)
    boost = min(overlap * OVERLAP_BOOST_PER_TERM, MAX_OVERLAP_BOOST)

    title = candidate.chunk.document_title.lower()
    if "guide" in title:
        boost += GUIDE_TITLE_BOOST
    if "training" in title:
        boost += TRAINING_TITLE_BOOST
    if candidate.chunk.chunk_index < EARLY_CHUNK_LIMIT:
        boost += EARLY_CHUNK_BOOST
    return boost


class HybridRanker:
    """Runs vector and keyword search branches and merges them into one ranking."""

    def __init__(
        self,
        embedding_client: EmbeddingClient,
        vector_engine: VectorSearchEngine,
        keyword_engine: KeywordSearchEngine
    ):
        self.embedding_client = embedding_client
        self.vector_engine = vector_engine
        self.keyword_engine = keyword_engine
        self.logger = logger.bind(log_type="SYSTEM", component="hybrid_ranker")

    async def hybrid_search(
        self,
        queries: Sequence[str],
        options: HybridSearchOptions,
        keyword_queries: Optional[Sequence[str]] = None
    ) -> HybridSearchResult:
        """
        Search every query, pool the hits and return a diversified ranking.

        Args:
            queries: The processed query first, then any sub-queries
            options: Limits, thresholds, weights and time boxes
            keyword_queries: Texts for the keyword branches. Semantic mapping
                appends synonyms that only help the vector side, so callers
                pass the unmapped query here. Defaults to ``queries``.

        Returns:
            HybridSearchResult; empty (never an exception) when nothing matched
            or every branch failed
        """
        start_time = time.time()
        unique_queries = _unique(queries)
        if not unique_queries:
            return HybridSearchResult()
        lexical_queries = _unique(keyword_queries) if keyword_queries is not None else unique_queries

        pool_size = options.candidate_pool_size
        branches = []
        for query in unique_queries:
            branches.append(self._run_branch(
                "vector", query, self._vector_branch(query, pool_size, options.threshold), options.branch_timeout
            ))
        for query in lexical_queries:
            branches.append(self._run_branch(
                "keyword", query, self._keyword_branch(query, pool_size), options.branch_timeout
            ))

        outcomes: List[BranchOutcome] = list(await asyncio.gather(*branches))
        failed = sum(1 for outcome in outcomes if not outcome.ok)
        result = HybridSearchResult(branch_count=len(outcomes), failed_branches=failed)

        if result.all_branches_failed:
            self.logger.warning(
                "All search branches failed, returning no grounding",
                branch_count=len(outcomes),
                errors=[outcome.error for outcome in outcomes]
            )
            return result

        pool = self._pool(outcomes)

        if not pool and options.relaxed_threshold is not None:
            relaxed = await self._relaxed_vector_search(outcomes, pool_size, options)
            result.threshold_relaxed = True
            pool = self._pool(outcomes + relaxed)

        candidates = list(pool.values())
        query_terms = KeywordQueryBuilder.significant_terms(" ".join(unique_queries))
        for candidate in candidates:
            candidate.score = (
                options.vector_weight * (candidate.similarity or 0.0)
                + options.keyword_weight * (candidate.keyword_score or 0.0)
            )
            if options.rerank:
                candidate.boost = rerank_boost(candidate, query_terms)
                candidate.score += candidate.boost

        selected = diversify(candidates, options.limit)
        for candidate in selected:
            candidate.high_relevance = (
                candidate.similarity is not None
                and candidate.similarity >= options.high_relevance_threshold
            )

        result.candidates = selected
        result.pool_size = len(candidates)

        duration = time.time() - start_time
        log_performance_metrics(
            "hybrid_search",
            duration,
            success=True,
            query_count=len(unique_queries),
            branch_count=len(outcomes),
            failed_branches=failed,
            pool_size=len(candidates),
            result_count=len(selected),
            distinct_documents=len({candidate.chunk.document_id for candidate in selected}),
            threshold_relaxed=result.threshold_relaxed
        )
        return result

    async def _vector_branch(self, query: str, max_results: int, threshold: float) -> BranchOutcome:
        embedding = await self.embedding_client.embed(query)
        hits = await self.vector_engine.search(embedding, max_results, threshold)
        return BranchOutcome(kind="vector", query=query, ok=True, vector_hits=hits, embedding=embedding)

    async def _keyword_branch(self, query: str, max_results: int) -> BranchOutcome:
        hits = await self.keyword_engine.search(query, max_results)
        return BranchOutcome(kind="keyword", query=query, ok=True, keyword_hits=hits)

    async def _run_branch(self, kind: str, query: str, branch, timeout: float) -> BranchOutcome:
        """Time-box one branch; failure or timeout degrades it to an empty outcome."""
        try:
            return await asyncio.wait_for(branch, timeout=timeout)
        except asyncio.TimeoutError:
            self.logger.warning(
                "Search branch timed out",
                branch=kind,
                query=preview_text(query),
                timeout=timeout
            )
            return BranchOutcome(kind=kind, query=query, ok=False, error="timeout")
        except Exception as e:
            self.logger.warning(
                "Search branch failed",
                branch=kind,
                query=preview_text(query),
                error=str(e),
                error_type=type(e).__name__
            )
            return BranchOutcome(kind=kind, query=query, ok=False, error=type(e).__name__)

    async def _relaxed_vector_search(
        self,
        outcomes: List[BranchOutcome],
        pool_size: int,
        options: HybridSearchOptions
    ) -> List[BranchOutcome]:
        embedded = [outcome for outcome in outcomes if outcome.kind == "vector" and outcome.embedding is not None]
        self.logger.warning(
            "Strict search returned nothing, relaxing similarity threshold",
            strict_threshold=options.threshold,
            relaxed_threshold=options.relaxed_threshold,
            query_count=len(embedded)
        )

        async def search(outcome: BranchOutcome) -> BranchOutcome:
            hits = await self.vector_engine.search(outcome.embedding, pool_size, options.relaxed_threshold)
            return BranchOutcome(kind="vector", query=outcome.query, ok=True, vector_hits=hits)

        return list(await asyncio.gather(*[
            self._run_branch("vector_relaxed", outcome.query, search(outcome), options.branch_timeout)
            for outcome in embedded
        ]))

    @staticmethod
    def _pool(outcomes: Sequence[BranchOutcome]) -> Dict[str, RankedCandidate]:
        """Merge all hits by chunk id, keeping the best score from each engine."""
        pool: Dict[str, RankedCandidate] = {}
        for outcome in outcomes:
            for hit in outcome.vector_hits:
                candidate = pool.setdefault(hit.chunk.chunk_id, RankedCandidate(chunk=hit.chunk))
                if candidate.similarity is None or hit.similarity > candidate.similarity:
                    candidate.similarity = hit.similarity
            for hit in outcome.keyword_hits:
                candidate = pool.setdefault(hit.chunk.chunk_id, RankedCandidate(chunk=hit.chunk))
                if candidate.keyword_score is None or hit.score > candidate.keyword_score:
                    candidate.keyword_score = hit.score
        return pool
