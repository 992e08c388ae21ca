"""
DocumentManager - orchestrator for the knowledge document lifecycle.

Handles ingestion (clean, chunk, title-prefix, embed), re-embedding and
deletion independently from the query-time retrieval path.
"""

import time
import uuid
from typing import Any, Dict, List, Optional

import structlog

from src.rag.embedding_client import EmbeddingClient, EmbeddingProvider, format_embedding
from src.rag.text_chunker import TextChunker, add_title_prefix, clean_text
from src.utils.error_handlers import RetrievalBaseError

from .chunk_store import ChunkStore
from .document_models import (
    ChunkStoreStats, DeleteResult, DocumentStatus, IngestResult, KnowledgeDocument, StoredChunk
)

logger = structlog.get_logger(__name__)


class DocumentManager:
    """
    Orchestrator for knowledge document lifecycle management.

    Responsibilities:
    - Ingestion: PENDING -> PROCESSING -> READY (or FAILED)
    - Re-embedding after a model or chunking change
    - Deletion with embeddings nulled before rows are removed
    - Store statistics

    A chunk whose embedding fails stays in the store without a vector and is
    reported in the result; it never aborts the rest of the document.
    """

    def __init__(
        self,
        store: ChunkStore,
        embedding_client: EmbeddingClient,
        chunker: Optional[TextChunker] = None
    ):
        self.store = store
        self.embedding_client = embedding_client
        self.chunker = chunker or TextChunker()
        self.logger = logger.bind(log_type="SYSTEM", component="document_manager")

    @classmethod
    def from_settings(
        cls,
        settings,
        store: ChunkStore,
        embedding_provider: Optional[EmbeddingProvider] = None
    ) -> "DocumentManager":
        return cls(
            store=store,
            embedding_client=EmbeddingClient.from_settings(settings, provider=embedding_provider),
            chunker=TextChunker.from_settings(settings),
        )

    async def ingest_document(
        self,
        title: str,
        text: str,
        document_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> IngestResult:
        """
        Ingest a document into the store.

        Args:
            title: Human-readable title, prefixed to every chunk
            text: Raw document body
            document_id: Optional id; generated when omitted
            metadata: Extra document metadata

        Returns:
            IngestResult with the final status and per-chunk embedding outcome
        """
        document_id = document_id or str(uuid.uuid4())
        start_time = time.time()

        if not title or not title.strip():
            return IngestResult(
                success=False,
                document_id=document_id,
                status=DocumentStatus.FAILED,
                error="Document title is required"
            )

        cleaned = clean_text(text)
        document = KnowledgeDocument(
            document_id=document_id,
            title=title.strip(),
            content=cleaned,
            metadata=metadata or {}
        )
        await self.store.add_document(document)
        await self.store.set_status(document_id, DocumentStatus.PROCESSING)

        self.logger.info(
            "Starting document ingestion",
            document_id=document_id,
            title=document.title,
            text_length=len(cleaned)
        )

        try:
            text_chunks = self.chunker.chunk(cleaned)
            if not text_chunks:
                return await self._fail(document_id, "No content to index after cleaning", start_time)

            stored = [
                StoredChunk(
                    chunk_id=f"{document_id}:{chunk.index}",
                    document_id=document_id,
                    chunk_index=chunk.index,
                    content=add_title_prefix(document.title, chunk.content),
                    start_offset=chunk.start_offset,
                    end_offset=chunk.end_offset,
                )
                for chunk in text_chunks
            ]
            await self.store.replace_chunks(document_id, stored)
            return await self._embed_and_finish(document_id, stored, start_time)

        except RetrievalBaseError as e:
            return await self._fail(document_id, e.message, start_time)
        except Exception as e:
            self.logger.error(
                "Document ingestion failed",
                document_id=document_id,
                error=str(e),
                error_type=type(e).__name__
            )
            return await self._fail(document_id, str(e), start_time)

    async def reembed_document(self, document_id: str, rechunk: bool = False) -> IngestResult:
        """
        Regenerate a document's embeddings.

        All vectors are nulled first as a completed step, then regenerated;
        with ``rechunk`` the stored text is chunked again before embedding.
        """
        start_time = time.time()
        document = await self.store.get_document(document_id)
        if document is None:
            return IngestResult(
                success=False,
                document_id=document_id,
                status=DocumentStatus.FAILED,
                error=f"Document not found: {document_id}"
            )

        await self.store.set_status(document_id, DocumentStatus.PROCESSING)
        nulled = await self.store.null_embeddings(document_id)
        self.logger.info("Embeddings nulled for re-embedding", document_id=document_id, nulled_embeddings=nulled)

        try:
            if rechunk:
                stored = [
                    StoredChunk(
                        chunk_id=f"{document_id}:{chunk.index}",
                        document_id=document_id,
                        chunk_index=chunk.index,
                        content=add_title_prefix(document.title, chunk.content),
                        start_offset=chunk.start_offset,
                        end_offset=chunk.end_offset,
                    )
                    for chunk in self.chunker.chunk(document.content)
                ]
                await self.store.replace_chunks(document_id, stored)
            else:
                stored = await self.store.get_chunks(document_id)

            if not stored:
                return await self._fail(document_id, "Document has no chunks to embed", start_time)
            return await self._embed_and_finish(document_id, stored, start_time)

        except RetrievalBaseError as e:
            return await self._fail(document_id, e.message, start_time)
        except Exception as e:
            self.logger.error(
                "Document re-embedding failed",
                document_id=document_id,
                error=str(e),
                error_type=type(e).__name__
            )
            return await self._fail(document_id, str(e), start_time)

    async def delete_document(self, document_id: str) -> DeleteResult:
        """Delete a document; its embeddings are nulled before the rows go."""
        return await self.store.delete_document(document_id)

    async def list_documents(self) -> List[KnowledgeDocument]:
        return await self.store.list_documents()

    async def get_statistics(self) -> ChunkStoreStats:
        return await self.store.get_statistics()

    async def _embed_and_finish(
        self,
        document_id: str,
        chunks: List[StoredChunk],
        start_time: float
    ) -> IngestResult:
        vectors = await self.embedding_client.embed_many([chunk.content for chunk in chunks])

        failed_indexes = []
        for chunk, vector in zip(chunks, vectors):
            if vector is None:
                failed_indexes.append(chunk.chunk_index)
                continue
            await self.store.set_embedding(chunk.chunk_id, format_embedding(vector))

        embedded = len(chunks) - len(failed_indexes)
        if embedded == 0:
            return await self._fail(
                document_id,
                "No chunk could be embedded",
                start_time,
                chunk_count=len(chunks),
                failed_chunk_indexes=failed_indexes
            )

        await self.store.set_status(document_id, DocumentStatus.READY)
        warnings = []
        if failed_indexes:
            warnings.append(f"{len(failed_indexes)} chunk(s) stored without an embedding")

        processing_time = time.time() - start_time
        self.logger.info(
            "Document ingestion completed",
            document_id=document_id,
            chunk_count=len(chunks),
            embedded_count=embedded,
            failed_chunks=len(failed_indexes),
            duration=processing_time
        )

        return IngestResult(
            success=True,
            document_id=document_id,
            status=DocumentStatus.READY,
            chunk_count=len(chunks),
            embedded_count=embedded,
            failed_chunk_indexes=failed_indexes,
            warnings=warnings,
            processing_time=processing_time
        )

    async def _fail(
        self,
        document_id: str,
        error: str,
        start_time: float,
        chunk_count: int = 0,
        failed_chunk_indexes: Optional[List[int]] = None
    ) -> IngestResult:
        await self.store.set_status(document_id, DocumentStatus.FAILED, error_message=error)
        self.logger.warning("Document marked as failed", document_id=document_id, error=error)
        return IngestResult(
            success=False,
            document_id=document_id,
            status=DocumentStatus.FAILED,
            chunk_count=chunk_count,
            failed_chunk_indexes=failed_chunk_indexes or [],
            error=error,
            processing_time=time.time() - start_time
        )
