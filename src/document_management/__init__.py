"""
Document Management - knowledge document lifecycle, separate from query-time retrieval.

This module handles:
- Document ingestion (cleaning, chunking, title-prefixing, embedding)
- Chunk storage with READY/non-null embedding filtered reads
- Re-embedding and deletion (embeddings nulled before rows are removed)
- Store statistics

Used by: the developer CLI and ingestion jobs
"""

from .document_models import (
    DocumentStatus, KnowledgeDocument, StoredChunk, ChunkRecord,
    DeleteResult, IngestResult, ChunkStoreStats
)
from .chunk_store import ChunkStore, InMemoryChunkStore, DocumentNotFoundError
from .document_manager import DocumentManager

__all__ = [
    'DocumentStatus',
    'KnowledgeDocument',
    'StoredChunk',
    'ChunkRecord',
    'DeleteResult',
    'IngestResult',
    'ChunkStoreStats',
    'ChunkStore',
    'InMemoryChunkStore',
    'DocumentNotFoundError',
    'DocumentManager',
]
