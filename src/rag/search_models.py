"""
Internal result types shared by the search engines and the hybrid ranker.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from src.config.rag_config import RagConfig
from src.document_management.document_models import ChunkRecord

from . import MatchType


@dataclass(frozen=True)
class VectorHit:
    """A chunk accepted by vector search."""
    chunk: ChunkRecord
    similarity: float


@dataclass(frozen=True)
class KeywordHit:
    """A chunk matched by keyword search.

    ``rank`` is the raw backend score; ``score`` is normalized to [0, 1] with
    title matches in [0.5, 1] and body-only matches below 0.5.
    """
    chunk: ChunkRecord
    rank: float
    title_match: bool
    score: float


@dataclass
class RankedCandidate:
    """A pooled, deduplicated candidate carrying both engine scores."""
    chunk: ChunkRecord
    similarity: Optional[float] = None
    keyword_score: Optional[float] = None
    score: float = 0.0
    boost: float = 0.0
    high_relevance: bool = False

    @property
    def match_type(self) -> MatchType:
        if self.similarity is not None and self.keyword_score is not None:
            return MatchType.HYBRID
        if self.similarity is not None:
            return MatchType.VECTOR
        return MatchType.KEYWORD

    @property
    def sort_key(self):
        """Descending score, then a stable tiebreak on document and chunk index."""
        return (-self.score, self.chunk.document_id, self.chunk.chunk_index)


@dataclass(frozen=True)
class HybridSearchOptions:
    """Per-call options for the hybrid ranker."""
    limit: int
    threshold: float
    vector_weight: float = 0.6
    keyword_weight: float = 0.4
    rerank: bool = False
    high_relevance_threshold: float = 0.7
    candidate_multiplier: int = 3
    branch_timeout: float = 8.0
    relaxed_threshold: Optional[float] = None

    @property
    def candidate_pool_size(self) -> int:
        return self.limit * max(self.candidate_multiplier, 3)

    @classmethod
    def from_config(cls, config: RagConfig) -> "HybridSearchOptions":
        return cls(
            limit=config.max_chunks,
            threshold=config.similarity_threshold,
            vector_weight=config.vector_weight,
            keyword_weight=config.keyword_weight,
            rerank=config.rerank,
            high_relevance_threshold=config.high_relevance_threshold,
            candidate_multiplier=config.candidate_pool_multiplier,
            branch_timeout=config.branch_timeout_seconds,
            relaxed_threshold=config.relaxed_similarity_threshold,
        )


@dataclass
class HybridSearchResult:
    """Ranked, diversified candidates plus branch bookkeeping."""
    candidates: List[RankedCandidate] = field(default_factory=list)
    branch_count: int = 0
    failed_branches: int = 0
    pool_size: int = 0
    threshold_relaxed: bool = False

    @property
    def all_branches_failed(self) -> bool:
        return self.branch_count > 0 and self.failed_branches == self.branch_count
