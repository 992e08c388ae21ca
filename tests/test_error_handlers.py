"""
Unit tests for the retrieval error taxonomy.
"""

import asyncio

import pytest

from src.utils.error_handlers import (
    ConfigurationError, MalformedEmbeddingError, PermanentProviderError, RetrievalBaseError,
    TransientProviderError, ValidationError, classify_provider_error, format_error_for_user,
    handle_error, is_retryable_error
)


class StatusError(Exception):
    """Mimics openai.APIStatusError."""

    def __init__(self, message, status_code):
        super().__init__(message)
        self.status_code = status_code


class APIConnectionError(Exception):
    """Same name as the openai connection error, without a status code."""


class TestClassifyProviderError:
    """Test cases for classify_provider_error."""

    @pytest.mark.parametrize("status_code", [408, 429, 500, 503])
    def test_retryable_status_codes_are_transient(self, status_code):
        error = classify_provider_error(StatusError("busy", status_code), provider="azure_openai")

        assert isinstance(error, TransientProviderError)
        assert error.context["status_code"] == status_code
        assert error.error_code == f"PROVIDER_TRANSIENT_{status_code}"

    @pytest.mark.parametrize("status_code", [400, 401, 404])
    def test_client_errors_are_permanent(self, status_code):
        error = classify_provider_error(StatusError("nope", status_code), provider="azure_openai")

        assert isinstance(error, PermanentProviderError)
        assert error.context["provider"] == "azure_openai"

    def test_timeouts_and_connection_errors_are_transient(self):
        assert isinstance(classify_provider_error(asyncio.TimeoutError(), "p"), TransientProviderError)
        assert isinstance(classify_provider_error(ConnectionError("reset"), "p"), TransientProviderError)
        assert isinstance(classify_provider_error(APIConnectionError("dns"), "p"), TransientProviderError)

    def test_unknown_errors_are_permanent(self):
        assert isinstance(classify_provider_error(RuntimeError("bad payload"), "p"), PermanentProviderError)

    def test_already_classified_errors_pass_through(self):
        original = TransientProviderError("busy")
        assert classify_provider_error(original, "p") is original

    def test_auth_failures_suggest_checking_credentials(self):
        error = PermanentProviderError("denied", status_code=401)
        assert "Check your Azure OpenAI API key" in error.recovery_suggestions


class TestHandleError:
    """Test cases for handle_error."""

    def test_retrieval_errors_are_returned_unchanged(self):
        original = MalformedEmbeddingError("bad vector", chunk_id="a:0")
        assert handle_error(original) is original

    def test_value_error_becomes_validation_error(self):
        error = handle_error(ValueError("bad"), context={"operation": "ingest"})

        assert isinstance(error, ValidationError)
        assert error.context["operation"] == "ingest"

    def test_connection_error_uses_provider_context(self):
        error = handle_error(ConnectionError("reset"), context={"provider": "translator"}, log_error=False)

        assert isinstance(error, TransientProviderError)
        assert error.context["provider"] == "translator"

    def test_unexpected_error(self):
        error = handle_error(RuntimeError("boom"), log_error=False)

        assert type(error) is RetrievalBaseError
        assert error.error_code == "GENERIC_ERROR"


class TestErrorHelpers:
    """Test cases for error formatting helpers."""

    def test_format_error_for_user(self):
        error = ConfigurationError("Invalid RAG configuration", missing_config="RAG_MAX_CHUNKS")

        text = format_error_for_user(error)

        assert text.startswith("Error: Invalid RAG configuration")
        assert "1. Set the RAG_MAX_CHUNKS configuration value" in text
        assert text.endswith("Error Code: CONFIG_ERROR")

    def test_to_dict(self):
        error = ValidationError("Cannot embed empty text", field="text")

        data = error.to_dict()

        assert data["error_type"] == "ValidationError"
        assert data["error_code"] == "VALIDATION_ERROR"
        assert data["context"]["field"] == "text"

    def test_only_transient_errors_are_retryable(self):
        assert is_retryable_error(TransientProviderError("busy")) is True
        assert is_retryable_error(PermanentProviderError("denied")) is False
        assert is_retryable_error(RuntimeError("boom")) is False
