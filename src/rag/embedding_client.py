"""
Embedding client.

Wraps an embedding provider with bounded retries for transient failures,
batching with per-item fallback for ingestion, and the helpers that move
vectors in and out of the chunk store's textual format.
"""

import json
import math
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

import numpy as np
import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from src.utils.error_handlers import (
    MalformedEmbeddingError, PermanentProviderError, RetrievalBaseError,
    ValidationError, classify_provider_error, is_retryable_error
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class EmbeddingProvider(ABC):
    """External embedding model. Implementations raise the provider error taxonomy."""

    name = "embedding"

    @abstractmethod
    async def embed(self, text: str) -> List[float]:
        """Embed one text."""

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed several texts; providers with a native batch call override this."""
        return [await self.embed(text) for text in texts]


class AzureOpenAIEmbeddingProvider(EmbeddingProvider):
    """Embedding provider backed by LangChain's AzureOpenAIEmbeddings."""

    name = "azure_openai_embeddings"

    def __init__(self, embeddings):
        self._embeddings = embeddings

    @classmethod
    def from_settings(cls, settings) -> "AzureOpenAIEmbeddingProvider":
        from src.utils.azure_langchain import create_azure_embeddings
        return cls(create_azure_embeddings(settings))

    async def embed(self, text: str) -> List[float]:
        try:
            return await self._embeddings.aembed_query(text)
        except Exception as e:
            raise classify_provider_error(e, self.name) from e

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        try:
            return await self._embeddings.aembed_documents(list(texts))
        except Exception as e:
            raise classify_provider_error(e, self.name) from e


class EmbeddingClient:
    """
    Converts text into vectors through an ``EmbeddingProvider``.

    Transient provider errors are retried with exponential backoff up to
    ``max_attempts``; permanent errors are raised immediately. Used for live
    queries (``embed``) and offline chunk batches (``embed_many``).
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        max_attempts: int = 3,
        min_wait: float = 2.0,
        max_wait: float = 10.0,
        batch_size: int = 10,
        expected_dimensions: Optional[int] = None
    ):
        if max_attempts < 1:
            raise ValidationError("max_attempts must be at least 1", field="max_attempts", value=max_attempts)
        if batch_size < 1:
            raise ValidationError("batch_size must be at least 1", field="batch_size", value=batch_size)

        self.provider = provider
        self.max_attempts = max_attempts
        self.min_wait = min_wait
        self.max_wait = max_wait
        self.batch_size = batch_size
        self.expected_dimensions = expected_dimensions
        self.logger = logger.bind(log_type="SYSTEM", component="embedding_client", provider=provider.name)

    @classmethod
    def from_settings(cls, settings, provider: Optional[EmbeddingProvider] = None) -> "EmbeddingClient":
        return cls(
            provider=provider or AzureOpenAIEmbeddingProvider.from_settings(settings),
            max_attempts=settings.provider_max_attempts,
            min_wait=settings.provider_retry_min_wait,
            max_wait=settings.provider_retry_max_wait,
            batch_size=settings.embedding_batch_size,
            expected_dimensions=settings.embedding_dimensions,
        )

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        self.logger.warning(
            "Embedding call failed, retrying",
            attempt=retry_state.attempt_number,
            max_attempts=self.max_attempts,
            error=str(error),
            error_type=type(error).__name__
        )

    async def _with_retry(self, operation: Callable[..., Awaitable[T]], *args) -> T:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=1, min=self.min_wait, max=self.max_wait),
            retry=retry_if_exception(is_retryable_error),
            before_sleep=self._log_retry,
            reraise=True
        )
        async for attempt in retrying:
            with attempt:
                return await operation(*args)

    def _check_vector(self, vector: Sequence[float]) -> List[float]:
        values = [float(value) for value in vector]
        if not values:
            raise PermanentProviderError("Embedding provider returned an empty vector", provider=self.provider.name)
        if self.expected_dimensions and len(values) != self.expected_dimensions:
            raise PermanentProviderError(
                f"Embedding provider returned {len(values)} dimensions, expected {self.expected_dimensions}",
                provider=self.provider.name
            )
        if not all(math.isfinite(value) for value in values):
            raise PermanentProviderError("Embedding provider returned non-finite values", provider=self.provider.name)
        return values

    async def embed(self, text: str) -> List[float]:
        """
        Embed a single text.

        Raises:
            ValidationError: For empty text
            TransientProviderError: When retries are exhausted
            PermanentProviderError: When the provider rejects the request
        """
        if not text or not text.strip():
            raise ValidationError("Cannot embed empty text", field="text")
        vector = await self._with_retry(self.provider.embed, text)
        return self._check_vector(vector)

    async def embed_many(self, texts: Sequence[str]) -> List[Optional[List[float]]]:
        """
        Embed texts in batches.

        A failed batch falls back to embedding its items one at a time; an item
        that still fails yields None so the caller can leave its embedding
        absent without aborting the rest.
        """
        results: List[Optional[List[float]]] = []

        for offset in range(0, len(texts), self.batch_size):
            batch = list(texts[offset:offset + self.batch_size])
            try:
                vectors = await self._with_retry(self.provider.embed_batch, batch)
                if len(vectors) != len(batch):
                    raise PermanentProviderError(
                        f"Embedding provider returned {len(vectors)} vectors for {len(batch)} texts",
                        provider=self.provider.name
                    )
                checked = [self._check_vector(vector) for vector in vectors]
                results.extend(checked)
                continue
            except RetrievalBaseError as e:
                self.logger.warning(
                    "Embedding batch failed, falling back to single items",
                    batch_number=offset // self.batch_size + 1,
                    batch_size=len(batch),
                    error=e.message,
                    error_code=e.error_code
                )

            for position, text in enumerate(batch):
                try:
                    results.append(await self.embed(text))
                except RetrievalBaseError as e:
                    self.logger.error(
                        "Embedding failed for item",
                        item_index=offset + position,
                        error=e.message,
                        error_code=e.error_code
                    )
                    results.append(None)

        return results


def format_embedding(vector: Sequence[float]) -> str:
    """Serialize a vector into the store's textual format, e.g. ``[0.1,0.2]``."""
    return "[" + ",".join(repr(float(value)) for value in vector) + "]"


def parse_embedding(raw: Optional[str], chunk_id: Optional[str] = None) -> np.ndarray:
    """
    Parse a stored embedding.

    Raises:
        MalformedEmbeddingError: If the value is missing, not a JSON list of
            numbers, empty, or contains non-finite values
    """
    preview = raw[:50] if isinstance(raw, str) else repr(raw)[:50]
    if not isinstance(raw, str) or not raw.strip():
        raise MalformedEmbeddingError("Stored embedding is empty", chunk_id=chunk_id, raw_preview=preview)

    try:
        values = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MalformedEmbeddingError(
            f"Stored embedding is not valid JSON: {e.msg}",
            chunk_id=chunk_id,
            raw_preview=preview
        ) from e

    if not isinstance(values, list) or not values:
        raise MalformedEmbeddingError("Stored embedding is not a non-empty list", chunk_id=chunk_id, raw_preview=preview)
    if not all(isinstance(value, (int, float)) and not isinstance(value, bool) for value in values):
        raise MalformedEmbeddingError("Stored embedding contains non-numeric values", chunk_id=chunk_id, raw_preview=preview)

    vector = np.asarray(values, dtype=float)
    if not np.all(np.isfinite(vector)):
        raise MalformedEmbeddingError("Stored embedding contains non-finite values", chunk_id=chunk_id, raw_preview=preview)
    return vector


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity in [-1, 1].

    Returns 0.0 for zero-norm vectors and for vectors of different dimension.
    """
    vector_a = np.asarray(a, dtype=float)
    vector_b = np.asarray(b, dtype=float)
    if vector_a.shape != vector_b.shape or vector_a.size == 0:
        return 0.0

    norm_a = float(np.linalg.norm(vector_a))
    norm_b = float(np.linalg.norm(vector_b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0

    similarity = float(np.dot(vector_a, vector_b) / (norm_a * norm_b))
    return max(-1.0, min(1.0, similarity))
