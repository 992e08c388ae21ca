"""
Custom exception classes and error handling utilities.
Retrieval error taxonomy with recovery suggestions and provider error classification.
"""

import asyncio
from typing import Optional, Dict, Any, List
import structlog

logger = structlog.get_logger(__name__)

# HTTP status codes that indicate a provider hiccup worth retrying
RETRYABLE_STATUS_CODES = [408, 409, 429, 500, 502, 503, 504]


class RetrievalBaseError(Exception):
    """Base exception class for the retrieval core."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        recovery_suggestions: Optional[List[str]] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize base error.

        Args:
            message: Error message
            error_code: Unique error code for identification
            recovery_suggestions: List of recovery suggestions for the operator
            context: Additional context information
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.recovery_suggestions = recovery_suggestions or []
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary format."""
        return {
            'error_type': self.__class__.__name__,
            'message': self.message,
            'error_code': self.error_code,
            'recovery_suggestions': self.recovery_suggestions,
            'context': self.context
        }

    def get_user_friendly_message(self) -> str:
        """Get user-friendly error message."""
        return self.message


class ConfigurationError(RetrievalBaseError):
    """Raised when the RAG configuration is missing or invalid."""

    def __init__(
        self,
        message: str,
        missing_config: Optional[str] = None,
        config_file: Optional[str] = None
    ):
        recovery_suggestions = [
            "Check your .env file for missing or incorrect RAG_* values",
            "Verify the RAG configuration file contains valid JSON",
            "Keep thresholds inside (0, 1) and weights summing to at most 1"
        ]

        if missing_config:
            recovery_suggestions.insert(0, f"Set the {missing_config} configuration value")

        super().__init__(
            message=message,
            error_code="CONFIG_ERROR",
            recovery_suggestions=recovery_suggestions,
            context={
                'missing_config': missing_config,
                'config_file': config_file
            }
        )


class TransientProviderError(RetrievalBaseError):
    """Raised when an embedding or translation provider is temporarily unavailable."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None
    ):
        recovery_suggestions = [
            "Wait a few moments before retrying",
            "Check the provider's rate limits and quota"
        ]

        if retry_after:
            recovery_suggestions.insert(0, f"Wait {retry_after} seconds before retrying")

        super().__init__(
            message=message,
            error_code=f"PROVIDER_TRANSIENT_{status_code}" if status_code else "PROVIDER_TRANSIENT",
            recovery_suggestions=recovery_suggestions,
            context={
                'provider': provider,
                'status_code': status_code,
                'retry_after': retry_after
            }
        )


class PermanentProviderError(RetrievalBaseError):
    """Raised when a provider rejects a request in a way retrying cannot fix."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None
    ):
        recovery_suggestions = []

        if status_code in (401, 403):
            recovery_suggestions.extend([
                "Check your Azure OpenAI API key",
                "Verify that the deployment name is correct"
            ])
        else:
            recovery_suggestions.extend([
                "Check the request payload sent to the provider",
                "Verify the provider configuration"
            ])

        super().__init__(
            message=message,
            error_code=f"PROVIDER_PERMANENT_{status_code}" if status_code else "PROVIDER_PERMANENT",
            recovery_suggestions=recovery_suggestions,
            context={
                'provider': provider,
                'status_code': status_code
            }
        )


class MalformedEmbeddingError(RetrievalBaseError):
    """Raised when a stored embedding vector cannot be parsed."""

    def __init__(
        self,
        message: str,
        chunk_id: Optional[str] = None,
        raw_preview: Optional[str] = None
    ):
        super().__init__(
            message=message,
            error_code="MALFORMED_EMBEDDING",
            recovery_suggestions=[
                "Re-embed the affected document",
                "Check the chunk store for corrupted embedding rows"
            ],
            context={
                'chunk_id': chunk_id,
                'raw_preview': raw_preview
            }
        )


class ValidationError(RetrievalBaseError):
    """Raised when input validation fails."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        expected_type: Optional[str] = None
    ):
        recovery_suggestions = [
            "Check your input format"
        ]

        if field:
            recovery_suggestions.insert(0, f"Check the '{field}' field")

        if expected_type:
            recovery_suggestions.append(f"Expected type: {expected_type}")

        super().__init__(
            message=message,
            error_code="VALIDATION_ERROR",
            recovery_suggestions=recovery_suggestions,
            context={
                'field': field,
                'value': str(value) if value is not None else None,
                'expected_type': expected_type
            }
        )


def _extract_status_code(error: Exception) -> Optional[int]:
    """Pull an HTTP status code off openai/httpx style exceptions."""
    status_code = getattr(error, 'status_code', None)
    if status_code is None:
        response = getattr(error, 'response', None)
        status_code = getattr(response, 'status_code', None)
    return status_code if isinstance(status_code, int) else None


def classify_provider_error(error: Exception, provider: str) -> RetrievalBaseError:
    """
    Map a raw provider exception onto the retrieval error taxonomy.

    Args:
        error: Exception raised by the embedding or translation provider
        provider: Provider name used in error context

    Returns:
        TransientProviderError or PermanentProviderError
    """
    if isinstance(error, (TransientProviderError, PermanentProviderError)):
        return error

    status_code = _extract_status_code(error)
    error_type = type(error).__name__.lower()

    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return TransientProviderError(
            message=f"{provider} request failed: {error}",
            provider=provider
        )

    if status_code is not None:
        if status_code in RETRYABLE_STATUS_CODES:
            return TransientProviderError(
                message=f"{provider} returned HTTP {status_code}: {error}",
                provider=provider,
                status_code=status_code
            )
        return PermanentProviderError(
            message=f"{provider} rejected the request with HTTP {status_code}: {error}",
            provider=provider,
            status_code=status_code
        )

    # openai.APIConnectionError / APITimeoutError / RateLimitError carry no usable status
    if any(marker in error_type for marker in ['timeout', 'connection', 'ratelimit', 'network']):
        return TransientProviderError(
            message=f"{provider} request failed: {error}",
            provider=provider
        )

    return PermanentProviderError(
        message=f"{provider} error: {error}",
        provider=provider
    )


def handle_error(
    error: Exception,
    context: Optional[Dict[str, Any]] = None,
    log_error: bool = True
) -> RetrievalBaseError:
    """
    Handle and convert various exceptions to retrieval-specific errors.

    Args:
        error: The original exception
        context: Additional context information
        log_error: Whether to log the error

    Returns:
        RetrievalBaseError instance
    """
    if isinstance(error, RetrievalBaseError):
        if log_error:
            logger.error(
                "Retrieval error occurred",
                error_type=error.__class__.__name__,
                message=error.message,
                error_code=error.error_code,
                context=error.context
            )
        return error

    error_context = context or {}
    error_type = str(type(error)).lower()

    if "openai" in error_type or "httpx" in error_type or isinstance(error, (asyncio.TimeoutError, ConnectionError)):
        converted_error = classify_provider_error(error, provider=error_context.get('provider', 'unknown'))
    elif "validation" in error_type or isinstance(error, ValueError):
        converted_error = ValidationError(
            message=f"Validation error: {str(error)}"
        )
    else:
        converted_error = RetrievalBaseError(
            message=f"Unexpected error: {str(error)}",
            error_code="GENERIC_ERROR",
            recovery_suggestions=[
                "Try the operation again",
                "Check the application logs for more details"
            ]
        )

    if error_context:
        converted_error.context.update(error_context)

    if log_error:
        logger.error(
            "Error handled and converted",
            original_error_type=type(error).__name__,
            original_error=str(error),
            converted_error_type=converted_error.__class__.__name__,
            error_code=converted_error.error_code,
            context=converted_error.context
        )

    return converted_error


def format_error_for_user(error: RetrievalBaseError) -> str:
    """
    Format error for console display.

    Args:
        error: RetrievalBaseError instance

    Returns:
        Formatted error message
    """
    lines = [
        f"Error: {error.get_user_friendly_message()}"
    ]

    if error.recovery_suggestions:
        lines.append("\nSuggestions:")
        for i, suggestion in enumerate(error.recovery_suggestions, 1):
            lines.append(f"  {i}. {suggestion}")

    if error.error_code:
        lines.append(f"\nError Code: {error.error_code}")

    return "\n".join(lines)


def is_retryable_error(error: BaseException) -> bool:
    """
    Check if an error is retryable.

    Args:
        error: Exception to check

    Returns:
        True if error is retryable, False otherwise
    """
    return isinstance(error, TransientProviderError)
