"""
Retrieval entry point consumed by the generation layer.

``RetrievalService.retrieve(query, config)`` always resolves to a response:
provider failures shrink or empty the snippet list, and only an invalid
configuration is raised to the caller.
"""

import time
from typing import Any, Mapping, Optional, Union

import structlog

from src.config.rag_config import RagConfig, build_rag_config
from src.document_management.chunk_store import ChunkStore
from src.services.logging_service import log_performance_metrics, preview_text
from src.utils.error_handlers import ConfigurationError, handle_error

from . import RetrievalResponse, RetrievalSnippet
from .citations import attach_citations
from .embedding_client import EmbeddingClient, EmbeddingProvider
from .hybrid_ranker import HybridRanker
from .keyword_search import KeywordSearchEngine, LexicalBackend
from .query_processor import LLMSubQueryGenerator, LLMTranslator, QueryProcessor, SubQueryGenerator, Translator
from .search_models import HybridSearchOptions, RankedCandidate
from .vector_search import VectorSearchEngine

logger = structlog.get_logger(__name__)


def _to_snippet(candidate: RankedCandidate) -> RetrievalSnippet:
    chunk = candidate.chunk
    return RetrievalSnippet(
        chunk_id=chunk.chunk_id,
        document_id=chunk.document_id,
        document_title=chunk.document_title,
        chunk_index=chunk.chunk_index,
        content=chunk.content,
        score=round(candidate.score, 6),
        match_type=candidate.match_type,
        similarity=candidate.similarity,
        keyword_score=candidate.keyword_score,
        high_relevance=candidate.high_relevance,
    )


class RetrievalService:
    """Query processing, hybrid search and citation attachment for one query."""

    def __init__(self, query_processor: QueryProcessor, ranker: HybridRanker):
        self.query_processor = query_processor
        self.ranker = ranker
        self.logger = logger.bind(log_type="SYSTEM", component="retrieval_service")

    async def retrieve(self, query: str, config: Union[RagConfig, Mapping[str, Any]]) -> RetrievalResponse:
        """
        Retrieve ranked, cited snippets for ``query``.

        Args:
            query: User question in any supported language
            config: Request-scoped retrieval configuration

        Returns:
            RetrievalResponse; ``snippets`` is empty when nothing relevant exists

        Raises:
            ConfigurationError: If ``config`` is missing or invalid
        """
        config = self._resolve_config(config)
        start_time = time.time()

        if not query or not query.strip():
            self.logger.info("Empty query, nothing to retrieve")
            return RetrievalResponse()

        try:
            processed = await self.query_processor.process(query, config)
            result = await self.ranker.hybrid_search(
                processed.expanded_queries,
                HybridSearchOptions.from_config(config),
                keyword_queries=processed.keyword_queries or None
            )
        except ConfigurationError:
            raise
        except Exception as e:
            handle_error(e, context={"operation": "retrieve", "query": preview_text(query)})
            duration = time.time() - start_time
            log_performance_metrics("retrieve", duration, success=False)
            return RetrievalResponse(all_branches_failed=True, duration=duration)

        snippets = attach_citations([_to_snippet(candidate) for candidate in result.candidates])
        duration = time.time() - start_time

        response = RetrievalResponse(
            snippets=snippets,
            used_translation=processed.is_translated,
            used_multi_query=len(processed.expanded_queries) > 1,
            processed_query=processed,
            threshold_relaxed=result.threshold_relaxed,
            all_branches_failed=result.all_branches_failed,
            duration=duration,
        )

        self.logger.info(
            "Retrieval completed",
            query=preview_text(query),
            result_count=len(snippets),
            high_relevance_count=sum(1 for snippet in snippets if snippet.high_relevance),
            used_translation=response.used_translation,
            used_multi_query=response.used_multi_query,
            threshold_relaxed=response.threshold_relaxed,
            all_branches_failed=response.all_branches_failed
        )
        log_performance_metrics("retrieve", duration, success=True, result_count=len(snippets))
        return response

    @staticmethod
    def _resolve_config(config: Union[RagConfig, Mapping[str, Any], None]) -> RagConfig:
        if isinstance(config, RagConfig):
            return config
        if isinstance(config, Mapping):
            return build_rag_config(source="request", **dict(config))
        raise ConfigurationError("A RAG configuration must be passed to retrieve()", missing_config="config")


def create_retrieval_service(
    settings,
    store: ChunkStore,
    embedding_provider: Optional[EmbeddingProvider] = None,
    translator: Optional[Translator] = None,
    sub_query_generator: Optional[SubQueryGenerator] = None,
    lexical_backend: Optional[LexicalBackend] = None,
    use_llm: bool = True
) -> RetrievalService:
    """
    Wire a RetrievalService from settings.

    Translation and sub-query generation use the Azure OpenAI chat deployment
    when it is configured and ``use_llm`` is set; otherwise queries are not
    translated and broad queries use template sub-queries.
    """
    embedding_client = EmbeddingClient.from_settings(settings, provider=embedding_provider)

    if use_llm and (translator is None or sub_query_generator is None) and settings.has_azure_openai_config():
        from src.utils.azure_langchain import create_azure_chat_openai
        llm = create_azure_chat_openai(settings)
        translator = translator or LLMTranslator(llm)
        sub_query_generator = sub_query_generator or LLMSubQueryGenerator(llm)

    query_processor = QueryProcessor(
        translator=translator,
        sub_query_generator=sub_query_generator,
        translation_timeout=settings.rag_branch_timeout_seconds,
        sub_query_timeout=settings.rag_branch_timeout_seconds,
    )
    ranker = HybridRanker(
        embedding_client=embedding_client,
        vector_engine=VectorSearchEngine(store),
        keyword_engine=KeywordSearchEngine(store, backend=lexical_backend),
    )

    logger.info(
        "Retrieval service created",
        translator=type(translator).__name__ if translator else None,
        sub_query_generator=type(sub_query_generator).__name__ if sub_query_generator else None,
        keyword_backend=ranker.keyword_engine.backend.name
    )
    return RetrievalService(query_processor, ranker)
