"""
Keyword (lexical) search.

Queries are built as typed AND/OR term groups by ``KeywordQueryBuilder`` and
scored by a swappable ``LexicalBackend``. Chunks whose document title contains
a query term always rank above chunks that match only in their body.
"""

import asyncio
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, List, Optional, Sequence, Tuple

import structlog
from rank_bm25 import BM25Okapi

from src.document_management.chunk_store import ChunkStore
from src.document_management.document_models import ChunkRecord

from .search_models import KeywordHit

logger = structlog.get_logger(__name__)

MIN_TERM_LENGTH = 3
OR_TERM_LIMIT = 2
TITLE_SCORE_FLOOR = 0.5
BODY_SCORE_CEILING = 0.49

STOP_WORDS = frozenset({
    "a", "about", "after", "all", "also", "and", "any", "are", "because", "been", "before",
    "being", "best", "between", "both", "but", "can", "could", "did", "does", "doing", "during",
    "each", "for", "from", "further", "get", "give", "good", "had", "has", "have", "having",
    "her", "here", "him", "his", "how", "into", "its", "just", "like", "make", "more", "most",
    "much", "need", "not", "now", "off", "once", "only", "other", "our", "out", "over", "own",
    "please", "same", "she", "should", "some", "such", "tell", "than", "that", "the", "their",
    "them", "then", "there", "these", "they", "this", "those", "through", "too", "under",
    "until", "very", "want", "was", "way", "were", "what", "when", "where", "which", "while",
    "who", "whom", "why", "will", "with", "would", "you", "your",
})

_TOKEN_PATTERN = re.compile(r"[a-z0-9]+")


def normalize_token(token: str) -> str:
    """Lowercase and fold simple plurals so 'squats' matches 'squat'."""
    token = token.lower()
    if len(token) > 3 and token.endswith("s") and not token.endswith("ss"):
        return token[:-1]
    return token


def tokenize(text: str) -> List[str]:
    """Split text into normalized word tokens, punctuation stripped."""
    return [normalize_token(token) for token in _TOKEN_PATTERN.findall(text.lower())]


class Operator(str, Enum):
    AND = "and"
    OR = "or"


@dataclass(frozen=True)
class TermGroup:
    """A flat AND or OR group of normalized terms."""
    operator: Operator
    terms: Tuple[str, ...]

    def matches(self, tokens: FrozenSet[str]) -> bool:
        if not self.terms:
            return False
        if self.operator is Operator.AND:
            return all(term in tokens for term in self.terms)
        return any(term in tokens for term in self.terms)

    def render(self) -> str:
        """Full-text style rendering, e.g. ``chest & press`` or ``arm | biceps``."""
        joiner = " & " if self.operator is Operator.AND else " | "
        return joiner.join(self.terms)


@dataclass(frozen=True)
class DomainTermGroup:
    """Recognized topic: any trigger in the query swaps in an OR group of ``terms``."""
    name: str
    triggers: Tuple[str, ...]
    terms: Tuple[str, ...]


DOMAIN_TERM_GROUPS: Tuple[DomainTermGroup, ...] = (
    DomainTermGroup("arms", ("arm", "arms", "bicep", "biceps", "tricep", "triceps"), ("triceps", "arms", "biceps", "isolation")),
    DomainTermGroup("chest", ("chest", "pec", "pecs", "pectoral", "pectorals"), ("chest", "pectorals", "bench", "press", "fly")),
    DomainTermGroup("back", ("back", "lat", "lats", "latissimus"), ("back", "lats", "rows", "pulldowns", "pullups")),
    DomainTermGroup("shoulders", ("shoulder", "shoulders", "delt", "delts", "deltoids"), ("shoulders", "deltoids", "delts", "lateral", "overhead")),
    DomainTermGroup("legs", ("leg", "legs", "quad", "quads", "quadriceps", "hamstring", "hamstrings"), ("legs", "quadriceps", "hamstrings", "squats", "lunges")),
    DomainTermGroup("glutes", ("glute", "glutes", "gluteus", "hip"), ("glutes", "gluteus", "hip", "thrusts", "bridges")),
    DomainTermGroup("core", ("core", "abs", "abdominal", "abdominals"), ("core", "abs", "abdominals", "planks", "obliques")),
    DomainTermGroup("rest periods", ("rest", "recovery"), ("rest", "recovery", "periods", "seconds", "minutes")),
    DomainTermGroup("rep ranges", ("rep", "reps", "repetitions"), ("reps", "repetitions", "ranges", "sets", "hypertrophy")),
)


@dataclass(frozen=True)
class KeywordQuery:
    """A built lexical query and how it was derived."""
    group: TermGroup
    source: str
    topics: Tuple[str, ...] = ()


class KeywordQueryBuilder:
    """
    Builds typed lexical queries from free text.

    Significant terms are longer than two characters and not stop-words.
    Two or fewer terms combine with OR for recall; more combine with AND for
    precision. A recognized domain topic replaces the literal terms with its
    OR group.
    """

    def __init__(self, domain_groups: Sequence[DomainTermGroup] = DOMAIN_TERM_GROUPS, use_domain_groups: bool = True):
        self.domain_groups = tuple(domain_groups)
        self.use_domain_groups = use_domain_groups

    @staticmethod
    def significant_terms(text: str) -> List[str]:
        terms = []
        for raw in _TOKEN_PATTERN.findall(text.lower()):
            if len(raw) < MIN_TERM_LENGTH or raw in STOP_WORDS:
                continue
            term = normalize_token(raw)
            if term not in terms:
                terms.append(term)
        return terms

    def build(self, text: str) -> Optional[KeywordQuery]:
        """Return the lexical query for ``text`` or None when nothing is searchable."""
        if self.use_domain_groups:
            raw_tokens = set(_TOKEN_PATTERN.findall(text.lower()))
            topics = [group for group in self.domain_groups if raw_tokens & set(group.triggers)]
            if topics:
                terms: List[str] = []
                for group in topics:
                    for term in group.terms:
                        for normalized in tokenize(term):
                            if normalized not in terms:
                                terms.append(normalized)
                return KeywordQuery(
                    group=TermGroup(Operator.OR, tuple(terms)),
                    source="domain",
                    topics=tuple(group.name for group in topics)
                )

        terms = self.significant_terms(text)
        if not terms:
            return None
        operator = Operator.OR if len(terms) <= OR_TERM_LIMIT else Operator.AND
        return KeywordQuery(group=TermGroup(operator, tuple(terms)), source="literal")


class LexicalBackend(ABC):
    """Scores tokenized chunks against query terms."""

    name = "lexical"

    @abstractmethod
    def score(self, terms: Sequence[str], corpus: List[List[str]]) -> List[float]:
        """Return one non-negative rank per corpus entry."""


class BM25Backend(LexicalBackend):
    """Okapi BM25 ranking via rank_bm25, rebuilt over the corpus of each search."""

    name = "bm25"

    def __init__(self, k1: float = 1.5, b: float = 0.75):
        self.k1 = k1
        self.b = b

    def score(self, terms: Sequence[str], corpus: List[List[str]]) -> List[float]:
        if not corpus:
            return []
        # rank_bm25 divides by the average document length
        safe_corpus = [tokens if tokens else [""] for tokens in corpus]
        bm25 = BM25Okapi(safe_corpus, k1=self.k1, b=self.b)
        return [max(float(value), 0.0) for value in bm25.get_scores(list(terms))]


class SubstringBackend(LexicalBackend):
    """Term frequency scan; no index, no corpus statistics."""

    name = "substring"

    def score(self, terms: Sequence[str], corpus: List[List[str]]) -> List[float]:
        scores = []
        for tokens in corpus:
            length = max(len(tokens), 1)
            hits = sum(tokens.count(term) for term in terms)
            scores.append(hits / length)
        return scores


class KeywordSearchEngine:
    """Lexical search over the searchable chunks of a ChunkStore."""

    def __init__(
        self,
        store: ChunkStore,
        backend: Optional[LexicalBackend] = None,
        builder: Optional[KeywordQueryBuilder] = None
    ):
        self.store = store
        self.backend = backend or BM25Backend()
        self.builder = builder or KeywordQueryBuilder()
        self.logger = logger.bind(log_type="SYSTEM", component="keyword_search", backend=self.backend.name)

    async def search(self, query_text: str, max_results: int) -> List[KeywordHit]:
        """
        Return chunks matching the lexical query built from ``query_text``.

        Title matches come first; within each tier hits are ordered by backend
        rank, then document id and chunk index.
        """
        if max_results < 1:
            return []

        query = self.builder.build(query_text)
        if query is None:
            self.logger.debug("No searchable terms in query")
            return []

        records = await self.store.searchable_chunks()
        if not records:
            return []

        hits = await asyncio.get_running_loop().run_in_executor(None, self._rank, query, records)

        self.logger.debug(
            "Keyword search completed",
            lexical_query=query.group.render(),
            source=query.source,
            topics=list(query.topics),
            matched=len(hits),
            returned=min(len(hits), max_results)
        )
        return hits[:max_results]

    @staticmethod
    def _searchable_text(record: ChunkRecord) -> str:
        if record.document_title and record.content.startswith(record.document_title):
            return record.content
        return f"{record.document_title}\n\n{record.content}"

    def _rank(self, query: KeywordQuery, records: List[ChunkRecord]) -> List[KeywordHit]:
        corpus = [tokenize(self._searchable_text(record)) for record in records]
        matched = [index for index, tokens in enumerate(corpus) if query.group.matches(frozenset(tokens))]
        if not matched:
            return []

        ranks = self.backend.score(query.group.terms, corpus)
        max_rank = max(ranks[index] for index in matched)

        hits = []
        for index in matched:
            record = records[index]
            norm = ranks[index] / max_rank if max_rank > 0 else 0.0
            title_tokens = frozenset(tokenize(record.document_title))
            title_match = any(term in title_tokens for term in query.group.terms)
            score = TITLE_SCORE_FLOOR + (1 - TITLE_SCORE_FLOOR) * norm if title_match else BODY_SCORE_CEILING * norm
            hits.append(KeywordHit(chunk=record, rank=ranks[index], title_match=title_match, score=score))

        hits.sort(key=lambda hit: (not hit.title_match, -hit.rank, hit.chunk.document_id, hit.chunk.chunk_index))
        return hits
