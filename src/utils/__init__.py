"""
Utilities module for the retrieval core.
"""

from .error_handlers import (
    RetrievalBaseError,
    ConfigurationError,
    TransientProviderError,
    PermanentProviderError,
    MalformedEmbeddingError,
    ValidationError,
)

__all__ = [
    "RetrievalBaseError",
    "ConfigurationError",
    "TransientProviderError",
    "PermanentProviderError",
    "MalformedEmbeddingError",
    "ValidationError",
]
