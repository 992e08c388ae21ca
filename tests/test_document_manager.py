"""
Unit tests for the chunk store and the document lifecycle.
"""

import pytest

from src.document_management.chunk_store import DocumentNotFoundError, InMemoryChunkStore
from src.document_management.document_manager import DocumentManager
from src.document_management.document_models import DocumentStatus, KnowledgeDocument, StoredChunk
from src.rag.embedding_client import EmbeddingClient, parse_embedding
from src.rag.text_chunker import ChunkingOptions, TextChunker
from src.utils.error_handlers import PermanentProviderError

from .conftest import FakeEmbeddingProvider, axis_vector

LONG_TEXT = "\n\n".join(
    f"Paragraph {index}. Bench press builds the chest. Squats build the legs. Rest between sets matters."
    for index in range(8)
)


class RecordingStore(InMemoryChunkStore):
    """Records the order of delete steps and what searches could see in between."""

    def __init__(self):
        super().__init__()
        self.events = []

    async def null_embeddings(self, document_id):
        nulled = await super().null_embeddings(document_id)
        self.events.append(("null_embeddings", document_id))
        return nulled

    async def _remove_document(self, document_id):
        visible = [record.chunk_id for record in await self.searchable_chunks() if record.document_id == document_id]
        self.events.append(("remove", document_id, visible))
        return await super()._remove_document(document_id)


class FlakyBatchProvider(FakeEmbeddingProvider):
    """Rejects every batch and every single item whose text contains ``poison``."""

    async def embed_batch(self, texts):
        raise PermanentProviderError("batch rejected")

    async def embed(self, text):
        self.calls.append(text)
        if "poison" in text:
            raise PermanentProviderError("item rejected")
        return self.vector_for(text)


def make_manager(store, provider=None, chunk_size=512):
    client = EmbeddingClient(provider or FakeEmbeddingProvider(), max_attempts=1, min_wait=0, max_wait=0, batch_size=4)
    chunker = TextChunker(ChunkingOptions(chunk_size=chunk_size, chunk_overlap=min(40, chunk_size // 4), min_chunk_size=20))
    return DocumentManager(store, client, chunker)


class TestInMemoryChunkStore:
    """Test cases for InMemoryChunkStore."""

    @pytest.mark.asyncio
    async def test_delete_nulls_embeddings_before_removing_rows(self, seed_document):
        # Arrange
        store = RecordingStore()
        await seed_document(store, "chest-guide", "Chest Guide", [
            ("Bench press.", axis_vector(("chest", 1.0))),
            ("Fly.", axis_vector(("fly", 1.0))),
        ])

        # Act
        result = await store.delete_document("chest-guide")

        # Assert
        assert [event[0] for event in store.events] == ["null_embeddings", "remove"]
        assert store.events[1][2] == []
        assert result.success is True
        assert result.nulled_embeddings == 2
        assert result.deleted_count == 2
        assert await store.get_document("chest-guide") is None
        assert await store.get_chunks("chest-guide") == []

    @pytest.mark.asyncio
    async def test_delete_unknown_document(self, chunk_store):
        result = await chunk_store.delete_document("missing")

        assert result.success is False
        assert "missing" in result.error

    @pytest.mark.asyncio
    async def test_delete_leaves_other_documents(self, chunk_store, seed_document):
        await seed_document(chunk_store, "a", "A", [("a", axis_vector(("chest", 1.0)))])
        await seed_document(chunk_store, "b", "B", [("b", axis_vector(("arm", 1.0)))])

        await chunk_store.delete_document("a")

        assert [record.document_id for record in await chunk_store.searchable_chunks()] == ["b"]

    @pytest.mark.asyncio
    async def test_searchable_chunks_filters_status_and_embedding(self, chunk_store, seed_document):
        await seed_document(chunk_store, "ready", "Ready", [
            ("with vector", axis_vector(("chest", 1.0))),
            ("without vector", None),
        ])
        await seed_document(chunk_store, "pending", "Pending", [
            ("with vector", axis_vector(("chest", 1.0))),
        ], status=DocumentStatus.PENDING)

        records = await chunk_store.searchable_chunks()

        assert [record.chunk_id for record in records] == ["ready:0"]
        assert records[0].document_title == "Ready"

    @pytest.mark.asyncio
    async def test_set_status_unknown_document(self, chunk_store):
        with pytest.raises(DocumentNotFoundError):
            await chunk_store.set_status("missing", DocumentStatus.READY)

    @pytest.mark.asyncio
    async def test_replace_chunks_rejects_foreign_chunks(self, chunk_store):
        await chunk_store.add_document(KnowledgeDocument(document_id="a", title="A"))

        with pytest.raises(ValueError):
            await chunk_store.replace_chunks("a", [
                StoredChunk(chunk_id="b:0", document_id="b", chunk_index=0, content="x")
            ])

    @pytest.mark.asyncio
    async def test_statistics(self, chunk_store, seed_document):
        await seed_document(chunk_store, "a", "A", [("a", axis_vector(("chest", 1.0))), ("b", None)])
        await seed_document(chunk_store, "b", "B", [("c", None)], status=DocumentStatus.FAILED)

        stats = await chunk_store.get_statistics()

        assert stats.total_documents == 2
        assert stats.documents_by_status == {"READY": 1, "FAILED": 1}
        assert stats.total_chunks == 3
        assert stats.embedded_chunks == 1
        assert stats.embedding_coverage == pytest.approx(0.3333)

    @pytest.mark.asyncio
    async def test_snapshot_round_trip(self, chunk_store, seed_document, tmp_path):
        await seed_document(chunk_store, "a", "A", [("body", axis_vector(("chest", 1.0)))])
        path = tmp_path / "store" / "snapshot.json"

        chunk_store.save(path)
        restored = InMemoryChunkStore.load(path)

        assert (await restored.get_document("a")).status is DocumentStatus.READY
        assert await restored.searchable_chunks() == await chunk_store.searchable_chunks()

    def test_load_missing_snapshot_is_empty(self, tmp_path):
        store = InMemoryChunkStore.load(tmp_path / "absent.json")
        assert store._documents == {}


class TestDocumentManager:
    """Test cases for DocumentManager."""

    @pytest.mark.asyncio
    async def test_ingest_makes_document_searchable(self, chunk_store):
        # Arrange
        manager = make_manager(chunk_store, chunk_size=200)

        # Act
        result = await manager.ingest_document("Training Basics", LONG_TEXT, document_id="basics")

        # Assert
        assert result.success is True
        assert result.status is DocumentStatus.READY
        assert result.chunk_count > 1
        assert result.fully_embedded
        records = await chunk_store.searchable_chunks()
        assert len(records) == result.chunk_count
        assert all(record.content.startswith("Training Basics\n\n") for record in records)
        assert [record.chunk_id for record in records] == [f"basics:{i}" for i in range(result.chunk_count)]

    @pytest.mark.asyncio
    async def test_embeddings_are_computed_on_prefixed_content(self, chunk_store):
        provider = FakeEmbeddingProvider()
        manager = make_manager(chunk_store, provider=provider)

        await manager.ingest_document("Chest", "Bench press basics.", document_id="chest")

        chunk = (await chunk_store.get_chunks("chest"))[0]
        assert parse_embedding(chunk.embedding).tolist() == provider.vector_for("Chest\n\nBench press basics.")

    @pytest.mark.asyncio
    async def test_failed_chunks_stay_without_embedding(self, chunk_store):
        # Arrange
        provider = FlakyBatchProvider()
        manager = make_manager(chunk_store, provider=provider, chunk_size=120)
        text = (
            "Bench press builds the chest and the front delts over many weeks.\n\n"
            "This poison paragraph cannot be embedded by the provider at all.\n\n"
            "Squats build the legs when performed with full depth and control."
        )

        # Act
        result = await manager.ingest_document("Mixed", text, document_id="mixed")

        # Assert
        assert result.success is True
        assert result.status is DocumentStatus.READY
        assert result.failed_chunk_indexes
        assert result.warnings
        chunks = await chunk_store.get_chunks("mixed")
        for chunk in chunks:
            if chunk.chunk_index in result.failed_chunk_indexes:
                assert chunk.embedding is None
            else:
                assert chunk.embedding is not None

    @pytest.mark.asyncio
    async def test_all_chunks_failing_marks_document_failed(self, chunk_store):
        provider = FlakyBatchProvider()
        manager = make_manager(chunk_store, provider=provider)

        result = await manager.ingest_document("Bad", "poison everywhere in this text.", document_id="bad")

        assert result.success is False
        assert result.status is DocumentStatus.FAILED
        assert (await chunk_store.get_document("bad")).status is DocumentStatus.FAILED
        assert await chunk_store.searchable_chunks() == []

    @pytest.mark.asyncio
    async def test_empty_document_fails(self, chunk_store):
        manager = make_manager(chunk_store)

        result = await manager.ingest_document("Empty", "   ", document_id="empty")

        assert result.success is False
        assert (await chunk_store.get_document("empty")).status is DocumentStatus.FAILED

    @pytest.mark.asyncio
    async def test_title_is_required(self, chunk_store):
        manager = make_manager(chunk_store)

        result = await manager.ingest_document("  ", "Some text.")

        assert result.success is False
        assert await chunk_store.list_documents() == []

    @pytest.mark.asyncio
    async def test_reembed_regenerates_vectors(self, chunk_store, seed_document):
        # Arrange
        await seed_document(chunk_store, "chest", "Chest", [("Bench press.", [9.0, 9.0])])
        provider = FakeEmbeddingProvider()
        manager = make_manager(chunk_store, provider=provider)

        # Act
        result = await manager.reembed_document("chest")

        # Assert
        assert result.success is True
        chunk = (await chunk_store.get_chunks("chest"))[0]
        assert parse_embedding(chunk.embedding).tolist() == provider.vector_for("Chest\n\nBench press.")

    @pytest.mark.asyncio
    async def test_reembed_with_rechunk(self, chunk_store):
        manager = make_manager(chunk_store, chunk_size=200)
        await manager.ingest_document("Training Basics", LONG_TEXT, document_id="basics")
        manager.chunker = TextChunker(ChunkingOptions(chunk_size=400, chunk_overlap=40, min_chunk_size=20))

        result = await manager.reembed_document("basics", rechunk=True)

        chunks = await chunk_store.get_chunks("basics")
        assert result.success is True
        assert len(chunks) == result.chunk_count
        assert all(chunk.embedding is not None for chunk in chunks)

    @pytest.mark.asyncio
    async def test_reembed_unknown_document(self, chunk_store):
        result = await make_manager(chunk_store).reembed_document("missing")
        assert result.success is False

    @pytest.mark.asyncio
    async def test_delete_through_manager(self, chunk_store):
        manager = make_manager(chunk_store)
        await manager.ingest_document("Chest", "Bench press basics.", document_id="chest")

        result = await manager.delete_document("chest")

        assert result.success is True
        assert result.nulled_embeddings == 1
        assert (await manager.get_statistics()).total_documents == 0
