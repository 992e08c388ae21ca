"""
Data models for the knowledge document store.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, List, Optional


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class DocumentStatus(Enum):
    """Document processing status. Only READY documents are searchable."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    READY = "READY"
    FAILED = "FAILED"


@dataclass
class KnowledgeDocument:
    """An ingested knowledge item."""
    document_id: str
    title: str
    content: str = ""
    status: DocumentStatus = DocumentStatus.PENDING
    created_at: str = field(default_factory=_utc_now)
    updated_at: Optional[str] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if isinstance(self.status, str):
            self.status = DocumentStatus(self.status)


@dataclass
class StoredChunk:
    """A chunk row. ``embedding`` holds the textual vector format or None."""
    chunk_id: str
    document_id: str
    chunk_index: int
    content: str
    embedding: Optional[str] = None
    start_offset: Optional[int] = None
    end_offset: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None


@dataclass(frozen=True)
class ChunkRecord:
    """Read view of a searchable chunk joined with its document title."""
    chunk_id: str
    document_id: str
    document_title: str
    chunk_index: int
    content: str
    embedding: str


@dataclass
class DeleteResult:
    """Result of document deletion operation."""
    success: bool
    document_id: str
    message: Optional[str] = None
    error: Optional[str] = None
    deleted_count: int = 0
    nulled_embeddings: int = 0


@dataclass
class IngestResult:
    """Result of document ingestion."""
    success: bool
    document_id: str
    status: DocumentStatus
    chunk_count: int = 0
    embedded_count: int = 0
    failed_chunk_indexes: List[int] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None
    processing_time: Optional[float] = None

    @property
    def fully_embedded(self) -> bool:
        return self.chunk_count > 0 and self.embedded_count == self.chunk_count


@dataclass
class ChunkStoreStats:
    """Statistics about the store contents."""
    total_documents: int
    documents_by_status: Dict[str, int]
    total_chunks: int
    embedded_chunks: int

    @property
    def embedding_coverage(self) -> float:
        """Share of chunks that currently carry an embedding."""
        if self.total_chunks == 0:
            return 0.0
        return round(self.embedded_chunks / self.total_chunks, 4)
