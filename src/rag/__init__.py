"""
RAG (Retrieval-Augmented Generation) data models.

This module provides the public data models of the retrieval core:
- Processed query produced by the query processor
- Ranked snippets with match type and relevance tagging
- Citations attached to snippets for attribution
- The response returned by ``RetrievalService.retrieve``

Implementation classes live in the sibling modules:
- src/rag/text_chunker.py, embedding_client.py - ingestion side
- src/rag/query_processor.py, vector_search.py, keyword_search.py,
  hybrid_ranker.py, citations.py, retrieval_service.py - query side
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class MatchType(str, Enum):
    """Which search engine(s) surfaced a snippet."""
    VECTOR = "vector"
    KEYWORD = "keyword"
    HYBRID = "hybrid"


class ProcessedQuery(BaseModel):
    """A user query after translation, semantic mapping and fan-out decision."""
    original_query: str = Field(..., description="Query exactly as the user sent it")
    translated_query: str = Field(..., description="English query, or the original when no translation happened")
    is_translated: bool = Field(default=False)
    detected_language: str = Field(default="en", description="en|ar|fr")
    semantically_mapped_query: str = Field(..., description="Translated query with domain vocabulary appended")
    applied_mappings: List[str] = Field(default_factory=list, description="Semantic map terms found in the query")
    is_multi_query: bool = Field(default=False, description="Whether the query fans out into sub-queries")
    expanded_queries: List[str] = Field(..., min_length=1, description="Queries searched; first is always the mapped query")
    keyword_queries: List[str] = Field(
        default_factory=list,
        description="Keyword-branch queries; first is the translated query without mapped vocabulary"
    )


class Citation(BaseModel):
    """Stable attribution for a surfaced snippet."""
    reference_id: str = Field(..., description="'{document_id}:{chunk_index}'")
    citation_number: int = Field(..., ge=1, description="Shared by every snippet of the same document")
    document_id: str
    document_title: str
    chunk_index: int


class RetrievalSnippet(BaseModel):
    """A ranked knowledge snippet handed to the generation step."""
    chunk_id: str
    document_id: str
    document_title: str
    chunk_index: int
    content: str
    score: float = Field(..., description="Combined hybrid score")
    match_type: MatchType
    similarity: Optional[float] = Field(None, description="Cosine similarity when the vector engine matched")
    keyword_score: Optional[float] = Field(None, description="Normalized lexical score when the keyword engine matched")
    high_relevance: bool = Field(default=False, description="Similarity reached the high-relevance threshold")
    citation: Optional[Citation] = None


class RetrievalResponse(BaseModel):
    """Result of one retrieval call. An empty snippet list is a normal outcome."""
    snippets: List[RetrievalSnippet] = Field(default_factory=list)
    used_translation: bool = False
    used_multi_query: bool = False
    processed_query: Optional[ProcessedQuery] = None
    threshold_relaxed: bool = Field(default=False, description="Caller-allowed relaxed threshold was used")
    all_branches_failed: bool = Field(default=False, description="No search branch produced a usable answer")
    duration: float = 0.0

    @property
    def is_empty(self) -> bool:
        return not self.snippets

    @property
    def citations(self) -> List[Citation]:
        """Unique citations in citation-number order."""
        seen = {}
        for snippet in self.snippets:
            if snippet.citation is not None and snippet.citation.document_id not in seen:
                seen[snippet.citation.document_id] = snippet.citation
        return sorted(seen.values(), key=lambda citation: citation.citation_number)


__all__ = [
    'MatchType',
    'ProcessedQuery',
    'Citation',
    'RetrievalSnippet',
    'RetrievalResponse',
]
