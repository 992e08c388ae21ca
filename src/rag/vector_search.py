"""
Vector search over stored chunk embeddings.

Strict by design: chunks below the similarity threshold are never returned,
and an empty result stays empty.
"""

import asyncio
from typing import List, Sequence

import numpy as np
import structlog

from src.document_management.chunk_store import ChunkStore
from src.document_management.document_models import ChunkRecord
from src.utils.error_handlers import MalformedEmbeddingError

from .embedding_client import cosine_similarity, parse_embedding
from .search_models import VectorHit

logger = structlog.get_logger(__name__)


class VectorSearchEngine:
    """Cosine-similarity search over the searchable chunks of a ChunkStore."""

    def __init__(self, store: ChunkStore):
        self.store = store
        self.logger = logger.bind(log_type="SYSTEM", component="vector_search")

    async def search(
        self,
        query_embedding: Sequence[float],
        max_results: int,
        similarity_threshold: float
    ) -> List[VectorHit]:
        """
        Return chunks with similarity >= ``similarity_threshold``.

        Args:
            query_embedding: Query vector
            max_results: Maximum hits returned
            similarity_threshold: Minimum cosine similarity

        Returns:
            Hits ordered by descending similarity (ties by document id, chunk index)
        """
        if max_results < 1:
            return []

        records = await self.store.searchable_chunks()
        if not records:
            return []

        return await asyncio.get_running_loop().run_in_executor(
            None,
            self._rank,
            np.asarray(query_embedding, dtype=float),
            records,
            max_results,
            similarity_threshold
        )

    def _rank(
        self,
        query_vector: np.ndarray,
        records: List[ChunkRecord],
        max_results: int,
        similarity_threshold: float
    ) -> List[VectorHit]:
        hits = []
        malformed = 0
        mismatched = 0

        for record in records:
            try:
                vector = parse_embedding(record.embedding, chunk_id=record.chunk_id)
            except MalformedEmbeddingError as e:
                malformed += 1
                self.logger.warning(
                    "Skipping chunk with malformed embedding",
                    chunk_id=record.chunk_id,
                    document_id=record.document_id,
                    error=e.message,
                    raw_preview=e.context.get('raw_preview')
                )
                continue

            if vector.shape != query_vector.shape:
                mismatched += 1
                continue

            similarity = cosine_similarity(query_vector, vector)
            if similarity >= similarity_threshold:
                hits.append(VectorHit(chunk=record, similarity=similarity))

        hits.sort(key=lambda hit: (-hit.similarity, hit.chunk.document_id, hit.chunk.chunk_index))

        if mismatched:
            self.logger.warning(
                "Skipped chunks embedded with a different dimension",
                skipped=mismatched,
                query_dimensions=int(query_vector.shape[0]) if query_vector.ndim else 0
            )

        self.logger.debug(
            "Vector search completed",
            candidates=len(records),
            matched=len(hits),
            returned=min(len(hits), max_results),
            malformed=malformed,
            similarity_threshold=similarity_threshold
        )
        return hits[:max_results]
