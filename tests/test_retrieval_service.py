"""
Integration tests for RetrievalService.retrieve over the in-memory store.
"""

from unittest.mock import AsyncMock, Mock

import pytest

from src.document_management.document_manager import DocumentManager
from src.rag.query_processor import QueryProcessor, Translator
from src.rag.retrieval_service import RetrievalService, create_retrieval_service
from src.utils.error_handlers import ConfigurationError, TransientProviderError

KNOWLEDGE_BASE = [
    ("chest-guide", "Chest Training Guide",
     "Bench press and incline press build the pectorals. Chest fly adds a deep stretch for the chest."),
    ("arm-guide", "Arm Workouts",
     "Curls build bigger biceps. Tricep extensions build the triceps."),
    ("leg-guide", "Leg Day",
     "Squats and lunges build quadriceps and hamstrings. Lunges add volume safely."),
    ("nutrition", "Nutrition Basics",
     "Protein intake and calorie balance matter. Spread meals through the day."),
]


@pytest.fixture
def build_service(chunk_store, embedding_client, test_settings, fake_provider):
    """Ingest KNOWLEDGE_BASE and return a wired RetrievalService."""
    async def build(translator=None):
        manager = DocumentManager(chunk_store, embedding_client)
        for document_id, title, text in KNOWLEDGE_BASE:
            result = await manager.ingest_document(title=title, text=text, document_id=document_id)
            assert result.success
        return create_retrieval_service(
            test_settings,
            chunk_store,
            embedding_provider=fake_provider,
            translator=translator,
            use_llm=False,
        )

    return build


class TestRetrievalService:
    """Test cases for RetrievalService.retrieve."""

    @pytest.mark.asyncio
    async def test_topic_query_excludes_unrelated_documents(self, build_service, rag_config_factory):
        # Arrange
        service = await build_service()
        config = rag_config_factory(similarity_threshold=0.3)

        # Act
        response = await service.retrieve("how to train chest", config)

        # Assert
        assert response.snippets
        assert {snippet.document_id for snippet in response.snippets} == {"chest-guide"}
        assert all(snippet.similarity is None or snippet.similarity >= 0.3 for snippet in response.snippets)

    @pytest.mark.asyncio
    async def test_broad_query_uses_multi_query(self, build_service, rag_config_factory):
        service = await build_service()

        response = await service.retrieve("how to build bigger arms", rag_config_factory())

        assert response.used_multi_query is True
        assert response.used_translation is False
        assert 3 <= len(response.processed_query.expanded_queries) <= 5
        assert "arm-guide" in {snippet.document_id for snippet in response.snippets}

    @pytest.mark.asyncio
    async def test_multi_query_results_are_a_superset(self, build_service, rag_config_factory):
        service = await build_service()
        single_config = rag_config_factory(enable_multi_query=False, max_chunks=20)
        multi_config = rag_config_factory(enable_multi_query=True, max_chunks=20)

        single = await service.retrieve("how to build bigger arms", single_config)
        multi = await service.retrieve("how to build bigger arms", multi_config)

        assert single.used_multi_query is False
        assert {s.chunk_id for s in single.snippets} <= {s.chunk_id for s in multi.snippets}

    @pytest.mark.asyncio
    async def test_retrieval_is_deterministic(self, build_service, rag_config_factory):
        service = await build_service()
        config = rag_config_factory()

        first = await service.retrieve("leg day squats", config)
        second = await service.retrieve("leg day squats", config)

        assert [(s.chunk_id, s.score) for s in first.snippets] == [(s.chunk_id, s.score) for s in second.snippets]

    @pytest.mark.asyncio
    async def test_snippets_carry_citations(self, build_service, rag_config_factory):
        service = await build_service()

        response = await service.retrieve("build", rag_config_factory(max_chunks=10))

        assert response.snippets
        numbers = {}
        for snippet in response.snippets:
            assert snippet.citation is not None
            assert snippet.citation.reference_id == f"{snippet.document_id}:{snippet.chunk_index}"
            numbers.setdefault(snippet.document_id, snippet.citation.citation_number)
            assert numbers[snippet.document_id] == snippet.citation.citation_number
        assert sorted(numbers.values()) == list(range(1, len(numbers) + 1))

    @pytest.mark.asyncio
    async def test_snippet_content_is_title_prefixed(self, build_service, rag_config_factory):
        service = await build_service()

        response = await service.retrieve("how to train chest", rag_config_factory())

        assert response.snippets[0].content.startswith("Chest Training Guide\n\n")

    @pytest.mark.asyncio
    async def test_arabic_query_is_translated_before_search(self, build_service, rag_config_factory):
        # Arrange
        translator = Mock(spec=Translator)
        translator.translate = AsyncMock(return_value="what are the best chest exercises")
        service = await build_service(translator=translator)

        # Act
        response = await service.retrieve("ما هي أفضل تمارين الصدر", rag_config_factory())

        # Assert
        assert response.used_translation is True
        assert response.processed_query.detected_language == "ar"
        assert {snippet.document_id for snippet in response.snippets} == {"chest-guide"}

    @pytest.mark.asyncio
    async def test_nothing_relevant_returns_empty(self, build_service, rag_config_factory):
        service = await build_service()

        response = await service.retrieve("marathon pacing strategy tips for beginners", rag_config_factory())

        assert response.is_empty
        assert response.all_branches_failed is False

    @pytest.mark.asyncio
    async def test_mapping_config_is_accepted(self, build_service):
        service = await build_service()

        response = await service.retrieve("how to train chest", {"similarity_threshold": 0.3, "max_chunks": 3})

        assert len(response.snippets) <= 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("config", [None, {"similarity_threshold": 2.0}, {"unknown_option": True}])
    async def test_invalid_config_raises(self, build_service, config):
        service = await build_service()

        with pytest.raises(ConfigurationError):
            await service.retrieve("how to train chest", config)

    @pytest.mark.asyncio
    async def test_blank_query_returns_empty_response(self, build_service, rag_config_factory):
        service = await build_service()

        response = await service.retrieve("   ", rag_config_factory())

        assert response.is_empty
        assert response.processed_query is None

    @pytest.mark.asyncio
    async def test_unexpected_failure_degrades_to_empty(self, rag_config_factory):
        query_processor = Mock(spec=QueryProcessor)
        query_processor.process = AsyncMock(side_effect=RuntimeError("boom"))
        service = RetrievalService(query_processor, ranker=Mock())

        response = await service.retrieve("how to train chest", rag_config_factory())

        assert response.is_empty
        assert response.all_branches_failed is True

    @pytest.mark.asyncio
    async def test_embedding_outage_still_returns_keyword_matches(
        self, build_service, rag_config_factory, fake_provider
    ):
        service = await build_service()
        fake_provider.failures = [TransientProviderError("down") for _ in range(50)]

        response = await service.retrieve("what is a good chest press", rag_config_factory())

        assert response.all_branches_failed is False
        assert {snippet.document_id for snippet in response.snippets} == {"chest-guide"}
        assert all(snippet.match_type.value == "keyword" for snippet in response.snippets)

    @pytest.mark.asyncio
    async def test_keyword_branch_ignores_mapped_vocabulary(
        self, build_service, rag_config_factory, chunk_store, embedding_client, fake_provider
    ):
        # Arrange
        service = await build_service()
        manager = DocumentManager(chunk_store, embedding_client)
        result = await manager.ingest_document(
            title="Training Intensity",
            text="Intensity tips for beginners: start light and add weight slowly over the first weeks.",
            document_id="intensity-guide",
        )
        assert result.success
        fake_provider.failures = [TransientProviderError("down") for _ in range(50)]

        # Act
        response = await service.retrieve("intensity tips for beginners", rag_config_factory())

        # Assert
        assert response.processed_query.applied_mappings == ["intensity"]
        assert response.processed_query.keyword_queries[0] == "intensity tips for beginners"
        assert "intensity-guide" in {snippet.document_id for snippet in response.snippets}
