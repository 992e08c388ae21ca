"""
Pytest configuration for retrieval core tests.

Provides a deterministic embedding provider, store seeding helpers and
RagConfig factories shared by all test modules.
"""

import logging
from typing import List, Optional, Sequence, Tuple

import pytest

from src.config.rag_config import RagConfig, build_rag_config
from src.config.settings import Settings
from src.document_management.chunk_store import InMemoryChunkStore
from src.document_management.document_models import DocumentStatus, KnowledgeDocument, StoredChunk
from src.rag.embedding_client import EmbeddingClient, EmbeddingProvider, format_embedding
from src.rag.keyword_search import tokenize
from src.rag.text_chunker import add_title_prefix

# Axes of the fake embedding space; a text's vector counts these tokens
VOCABULARY = (
    "chest", "pectoral", "bench", "press", "fly",
    "arm", "bicep", "tricep", "curl",
    "leg", "squat", "quadricep", "hamstring",
    "back", "row", "lat",
    "protein", "calorie", "meal", "nutrition",
    "rest", "recovery", "sleep",
    "hypertrophy", "volume", "frequency",
)


class FakeEmbeddingProvider(EmbeddingProvider):
    """Bag-of-words embedding over VOCABULARY, with scriptable failures."""

    name = "fake_embeddings"

    def __init__(self, vocabulary: Sequence[str] = VOCABULARY, failures: Optional[List[Exception]] = None):
        self.vocabulary = tuple(vocabulary)
        self.failures = list(failures or [])
        self.calls: List[str] = []
        self.batch_calls: List[List[str]] = []

    def vector_for(self, text: str) -> List[float]:
        tokens = tokenize(text)
        return [float(tokens.count(word)) for word in self.vocabulary]

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.failures:
            raise self.failures.pop(0)
        return self.vector_for(text)

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        self.batch_calls.append(list(texts))
        return [self.vector_for(text) for text in texts]


def axis_vector(*weights: Tuple[str, float]) -> List[float]:
    """Vector over VOCABULARY with the given (word, weight) components."""
    vector = [0.0] * len(VOCABULARY)
    for word, weight in weights:
        vector[VOCABULARY.index(word)] = weight
    return vector


@pytest.fixture(autouse=True)
def reset_logging_state():
    """Reset logging state before each test."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    root_logger.setLevel(logging.WARNING)

    yield

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)


@pytest.fixture
def test_settings(tmp_path):
    """Settings isolated from the developer's .env file."""
    return Settings(
        _env_file=None,
        azure_openai_endpoint=None,
        azure_openai_api_key=None,
        azure_openai_deployment=None,
        azure_embedding_deployment=None,
        key_vault_url=None,
        environment="dev",
        knowledge_store_path=str(tmp_path / "knowledge_store.json"),
        provider_retry_min_wait=0.0,
        provider_retry_max_wait=0.0,
    )


@pytest.fixture
def fake_provider():
    """Deterministic embedding provider."""
    return FakeEmbeddingProvider()


@pytest.fixture
def embedding_client(fake_provider):
    """EmbeddingClient without backoff delays."""
    return EmbeddingClient(fake_provider, max_attempts=3, min_wait=0, max_wait=0, batch_size=4)


@pytest.fixture
def chunk_store():
    """Empty in-memory chunk store."""
    return InMemoryChunkStore()


@pytest.fixture
def seed_document():
    """
    Return an async helper adding a document with pre-computed chunk vectors.

    ``chunks`` is a list of (body, vector) pairs; a None vector leaves the
    chunk without an embedding. Content is stored title-prefixed.
    """
    async def seed(
        store: InMemoryChunkStore,
        document_id: str,
        title: str,
        chunks: List[Tuple[str, Optional[List[float]]]],
        status: DocumentStatus = DocumentStatus.READY
    ) -> List[StoredChunk]:
        await store.add_document(KnowledgeDocument(document_id=document_id, title=title, status=status))
        stored = [
            StoredChunk(
                chunk_id=f"{document_id}:{index}",
                document_id=document_id,
                chunk_index=index,
                content=add_title_prefix(title, body),
                embedding=format_embedding(vector) if vector is not None else None,
            )
            for index, (body, vector) in enumerate(chunks)
        ]
        await store.replace_chunks(document_id, stored)
        return stored

    return seed


@pytest.fixture
def rag_config_factory():
    """Build validated RagConfig values from keyword overrides."""
    def factory(**overrides) -> RagConfig:
        return build_rag_config(**overrides)

    return factory


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test"
    )
    config.addinivalue_line(
        "markers", "unit: mark test as unit test"
    )


def pytest_collection_modifyitems(config, items):
    """Add markers to tests based on their location."""
    for item in items:
        if "integration" in item.fspath.basename or "retrieval_service" in item.fspath.basename:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)
