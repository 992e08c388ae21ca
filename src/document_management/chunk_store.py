"""
Document and chunk storage.

ChunkStore is the storage contract the retrieval core depends on: searches only
ever see chunks of READY documents that carry an embedding, and deleting a
document nulls every chunk embedding as a completed step before any row is
removed. InMemoryChunkStore is the bundled backend; it can snapshot itself to
JSON for the developer CLI.
"""

import json
import threading
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

import structlog

from .document_models import (
    ChunkRecord, ChunkStoreStats, DeleteResult, DocumentStatus, KnowledgeDocument, StoredChunk
)

logger = structlog.get_logger(__name__)


class DocumentNotFoundError(KeyError):
    """Raised when an operation targets an unknown document id."""


class ChunkStore(ABC):
    """Storage contract for knowledge documents and their chunks."""

    def __init__(self):
        self.logger = logger.bind(log_type="SYSTEM", component=type(self).__name__)

    @abstractmethod
    async def add_document(self, document: KnowledgeDocument) -> None:
        """Insert or replace a document row (chunks are left untouched)."""

    @abstractmethod
    async def get_document(self, document_id: str) -> Optional[KnowledgeDocument]:
        """Return a document or None."""

    @abstractmethod
    async def list_documents(self) -> List[KnowledgeDocument]:
        """Return every document regardless of status."""

    @abstractmethod
    async def set_status(
        self,
        document_id: str,
        status: DocumentStatus,
        error_message: Optional[str] = None
    ) -> None:
        """Move a document to a new processing status."""

    @abstractmethod
    async def replace_chunks(self, document_id: str, chunks: List[StoredChunk]) -> None:
        """Replace all chunks of a document."""

    @abstractmethod
    async def get_chunks(self, document_id: str) -> List[StoredChunk]:
        """Return a document's chunks ordered by chunk index."""

    @abstractmethod
    async def set_embedding(self, chunk_id: str, embedding: Optional[str]) -> None:
        """Set or clear one chunk's embedding."""

    @abstractmethod
    async def null_embeddings(self, document_id: str) -> int:
        """Clear every embedding of a document, returning how many were cleared."""

    @abstractmethod
    async def searchable_chunks(self) -> List[ChunkRecord]:
        """Chunks of READY documents with a non-null embedding."""

    @abstractmethod
    async def _remove_document(self, document_id: str) -> int:
        """Remove the document row and its chunk rows, returning removed chunk count."""

    @abstractmethod
    async def get_statistics(self) -> ChunkStoreStats:
        """Return store statistics."""

    async def delete_document(self, document_id: str) -> DeleteResult:
        """
        Delete a document in two ordered steps.

        Embeddings are nulled first so no concurrent search can match the
        document's vectors; the rows are removed only after that completes.

        Args:
            document_id: Document to delete

        Returns:
            DeleteResult describing both steps
        """
        if await self.get_document(document_id) is None:
            self.logger.warning("Delete requested for unknown document", document_id=document_id)
            return DeleteResult(
                success=False,
                document_id=document_id,
                error=f"Document not found: {document_id}"
            )

        nulled = await self.null_embeddings(document_id)
        self.logger.info("Document embeddings nulled", document_id=document_id, nulled_embeddings=nulled)

        removed = await self._remove_document(document_id)
        self.logger.info("Document deleted", document_id=document_id, deleted_chunks=removed)

        return DeleteResult(
            success=True,
            document_id=document_id,
            message=f"Deleted document {document_id}",
            deleted_count=removed,
            nulled_embeddings=nulled
        )


class InMemoryChunkStore(ChunkStore):
    """Thread-safe in-process ChunkStore."""

    def __init__(self):
        super().__init__()
        self._lock = threading.RLock()
        self._documents: Dict[str, KnowledgeDocument] = {}
        self._chunks: Dict[str, StoredChunk] = {}

    async def add_document(self, document: KnowledgeDocument) -> None:
        with self._lock:
            self._documents[document.document_id] = document

    async def get_document(self, document_id: str) -> Optional[KnowledgeDocument]:
        with self._lock:
            return self._documents.get(document_id)

    async def list_documents(self) -> List[KnowledgeDocument]:
        with self._lock:
            return sorted(self._documents.values(), key=lambda doc: doc.document_id)

    async def set_status(
        self,
        document_id: str,
        status: DocumentStatus,
        error_message: Optional[str] = None
    ) -> None:
        with self._lock:
            document = self._require_document(document_id)
            document.status = status
            document.error_message = error_message
            document.updated_at = datetime.now(timezone.utc).isoformat()

    async def replace_chunks(self, document_id: str, chunks: List[StoredChunk]) -> None:
        with self._lock:
            self._require_document(document_id)
            for chunk in chunks:
                if chunk.document_id != document_id:
                    raise ValueError(f"Chunk {chunk.chunk_id} belongs to {chunk.document_id}, not {document_id}")
            stale = [chunk_id for chunk_id, chunk in self._chunks.items() if chunk.document_id == document_id]
            for chunk_id in stale:
                del self._chunks[chunk_id]
            for chunk in chunks:
                self._chunks[chunk.chunk_id] = chunk

    async def get_chunks(self, document_id: str) -> List[StoredChunk]:
        with self._lock:
            chunks = [chunk for chunk in self._chunks.values() if chunk.document_id == document_id]
        return sorted(chunks, key=lambda chunk: chunk.chunk_index)

    async def set_embedding(self, chunk_id: str, embedding: Optional[str]) -> None:
        with self._lock:
            chunk = self._chunks.get(chunk_id)
            if chunk is None:
                raise KeyError(f"Chunk not found: {chunk_id}")
            chunk.embedding = embedding

    async def null_embeddings(self, document_id: str) -> int:
        with self._lock:
            nulled = 0
            for chunk in self._chunks.values():
                if chunk.document_id == document_id and chunk.embedding is not None:
                    chunk.embedding = None
                    nulled += 1
            return nulled

    async def searchable_chunks(self) -> List[ChunkRecord]:
        with self._lock:
            records = []
            for chunk in self._chunks.values():
                document = self._documents.get(chunk.document_id)
                if document is None or document.status is not DocumentStatus.READY:
                    continue
                if chunk.embedding is None:
                    continue
                records.append(ChunkRecord(
                    chunk_id=chunk.chunk_id,
                    document_id=chunk.document_id,
                    document_title=document.title,
                    chunk_index=chunk.chunk_index,
                    content=chunk.content,
                    embedding=chunk.embedding
                ))
        records.sort(key=lambda record: (record.document_id, record.chunk_index))
        return records

    async def _remove_document(self, document_id: str) -> int:
        with self._lock:
            chunk_ids = [chunk_id for chunk_id, chunk in self._chunks.items() if chunk.document_id == document_id]
            for chunk_id in chunk_ids:
                del self._chunks[chunk_id]
            self._documents.pop(document_id, None)
            return len(chunk_ids)

    async def get_statistics(self) -> ChunkStoreStats:
        with self._lock:
            by_status = Counter(document.status.value for document in self._documents.values())
            return ChunkStoreStats(
                total_documents=len(self._documents),
                documents_by_status=dict(by_status),
                total_chunks=len(self._chunks),
                embedded_chunks=sum(1 for chunk in self._chunks.values() if chunk.embedding is not None)
            )

    def _require_document(self, document_id: str) -> KnowledgeDocument:
        document = self._documents.get(document_id)
        if document is None:
            raise DocumentNotFoundError(document_id)
        return document

    def save(self, path: Union[str, Path]) -> None:
        """Write a JSON snapshot of the store."""
        snapshot_path = Path(path)
        snapshot_path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            payload = {
                "documents": [
                    {**asdict(document), "status": document.status.value}
                    for document in self._documents.values()
                ],
                "chunks": [asdict(chunk) for chunk in self._chunks.values()],
            }
        snapshot_path.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
        self.logger.info(
            "Chunk store snapshot saved",
            path=str(snapshot_path),
            documents=len(payload["documents"]),
            chunks=len(payload["chunks"])
        )

    @classmethod
    def load(cls, path: Union[str, Path]) -> "InMemoryChunkStore":
        """Create a store from a JSON snapshot; a missing file yields an empty store."""
        store = cls()
        snapshot_path = Path(path)
        if not snapshot_path.exists():
            return store

        payload = json.loads(snapshot_path.read_text(encoding="utf-8"))
        for raw_document in payload.get("documents", []):
            document = KnowledgeDocument(**raw_document)
            store._documents[document.document_id] = document
        for raw_chunk in payload.get("chunks", []):
            chunk = StoredChunk(**raw_chunk)
            store._chunks[chunk.chunk_id] = chunk

        store.logger.info(
            "Chunk store snapshot loaded",
            path=str(snapshot_path),
            documents=len(store._documents),
            chunks=len(store._chunks)
        )
        return store
