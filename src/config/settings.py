"""
Configuration settings with optional Azure Key Vault integration.
Process-level settings: provider credentials, logging, ingestion and retrieval defaults.
"""

from typing import Optional
from pydantic import Field, field_validator, ConfigDict
from pydantic_settings import BaseSettings
from azure.identity import DefaultAzureCredential
from azure.keyvault.secrets import SecretClient
from azure.core.exceptions import AzureError
import structlog

logger = structlog.get_logger(__name__).bind(log_type="SECURITY")

# Key Vault secret name -> settings attribute
KEY_VAULT_SECRET_MAP = {
    "azure-openai-api-key": "azure_openai_api_key",
    "azure-openai-endpoint": "azure_openai_endpoint",
}


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables and an optional .env file.

    Secrets can be pulled from Azure Key Vault when KEY_VAULT_URL is set;
    environment values remain the fallback. Retrieval defaults here only seed
    RagConfig; retrieval code never reads Settings directly.
    """

    # Key Vault Configuration
    key_vault_url: Optional[str] = Field(
        None,
        env='KEY_VAULT_URL',
        description="Azure Key Vault URL (e.g., https://mykv.vault.azure.net/)"
    )

    # Azure OpenAI Configuration (can be overridden by Key Vault)
    azure_openai_endpoint: Optional[str] = Field(
        None,
        env='AZURE_OPENAI_ENDPOINT',
        description="Azure OpenAI endpoint URL"
    )
    azure_openai_api_key: Optional[str] = Field(
        None,
        env='AZURE_OPENAI_API_KEY',
        description="Azure OpenAI API key"
    )
    azure_openai_deployment: Optional[str] = Field(
        None,
        env='AZURE_OPENAI_DEPLOYMENT',
        description="Chat deployment used for translation and sub-query generation"
    )
    azure_embedding_deployment: Optional[str] = Field(
        None,
        env='AZURE_EMBEDDING_DEPLOYMENT',
        description="Azure OpenAI embedding deployment name"
    )
    azure_openai_api_version: str = Field(
        "2024-08-01-preview",
        env='AZURE_OPENAI_API_VERSION',
        description="Azure OpenAI API version"
    )
    embedding_dimensions: Optional[int] = Field(
        None,
        ge=1,
        le=8192,
        env='EMBEDDING_DIMENSIONS',
        description="Expected embedding dimension; vectors of other sizes are rejected"
    )
    request_timeout: float = Field(
        30.0,
        ge=1.0,
        le=300.0,
        env='AZURE_OPENAI_REQUEST_TIMEOUT',
        description="Provider request timeout in seconds"
    )

    # Provider retry configuration
    provider_max_attempts: int = Field(
        3,
        ge=1,
        le=10,
        env='PROVIDER_MAX_ATTEMPTS',
        description="Attempts for transient embedding/translation failures"
    )
    provider_retry_min_wait: float = Field(
        2.0,
        ge=0.0,
        le=60.0,
        env='PROVIDER_RETRY_MIN_WAIT',
        description="Minimum backoff between provider retries in seconds"
    )
    provider_retry_max_wait: float = Field(
        10.0,
        ge=0.0,
        le=120.0,
        env='PROVIDER_RETRY_MAX_WAIT',
        description="Maximum backoff between provider retries in seconds"
    )
    embedding_batch_size: int = Field(
        10,
        ge=1,
        le=256,
        env='EMBEDDING_BATCH_SIZE',
        description="Chunks embedded per provider call during ingestion"
    )

    # Logging Configuration
    log_level: str = Field(
        "INFO",
        env='LOG_LEVEL',
        description="Logging level"
    )
    log_file_path: str = Field(
        "logs/retrieval.log",
        env='LOG_FILE_PATH',
        description="Log file path"
    )
    enable_console_logging: bool = Field(
        True,
        env='ENABLE_CONSOLE_LOGGING',
        description="Log to stderr"
    )
    enable_file_logging: bool = Field(
        False,
        env='ENABLE_FILE_LOGGING',
        description="Log to a rotating file"
    )
    enable_json_logging: bool = Field(
        False,
        env='ENABLE_JSON_LOGGING',
        description="Emit JSON log lines instead of plain text"
    )

    # Environment Configuration
    environment: str = Field(
        "dev",
        env='ENVIRONMENT',
        description="Deployment environment (dev, staging, prod)"
    )

    # Storage Configuration
    knowledge_store_path: str = Field(
        "./data/knowledge_store.json",
        env='KNOWLEDGE_STORE_PATH',
        description="JSON snapshot used by the developer CLI"
    )

    # Document Processing Configuration
    document_chunk_size: int = Field(
        512,
        ge=100,
        le=4000,
        env='DOCUMENT_CHUNK_SIZE',
        description="Target chunk size in characters"
    )
    document_chunk_overlap: int = Field(
        100,
        ge=0,
        le=1000,
        env='DOCUMENT_CHUNK_OVERLAP',
        description="Characters carried from one chunk into the next"
    )
    document_min_chunk_size: int = Field(
        50,
        ge=1,
        le=1000,
        env='DOCUMENT_MIN_CHUNK_SIZE',
        description="Chunks shorter than this are merged into a neighbour"
    )

    # Retrieval defaults (seed values for RagConfig)
    rag_similarity_threshold: float = Field(
        0.3,
        gt=0.0,
        lt=1.0,
        env='RAG_SIMILARITY_THRESHOLD',
        description="Minimum cosine similarity for a vector match"
    )
    rag_high_relevance_threshold: float = Field(
        0.7,
        gt=0.0,
        le=1.0,
        env='RAG_HIGH_RELEVANCE_THRESHOLD',
        description="Similarity marking a confident match"
    )
    rag_max_chunks: int = Field(
        6,
        ge=1,
        le=50,
        env='RAG_MAX_CHUNKS',
        description="Maximum snippets returned per query"
    )
    rag_vector_weight: float = Field(
        0.6,
        ge=0.0,
        le=1.0,
        env='RAG_VECTOR_WEIGHT',
        description="Weight of the vector similarity in hybrid scoring"
    )
    rag_keyword_weight: float = Field(
        0.4,
        ge=0.0,
        le=1.0,
        env='RAG_KEYWORD_WEIGHT',
        description="Weight of the keyword rank in hybrid scoring"
    )
    rag_enable_multi_query: bool = Field(
        True,
        env='RAG_ENABLE_MULTI_QUERY',
        description="Allow broad queries to fan out into sub-queries"
    )
    rag_branch_timeout_seconds: float = Field(
        8.0,
        gt=0.0,
        le=120.0,
        env='RAG_BRANCH_TIMEOUT_SECONDS',
        description="Time box for each embedding/search branch"
    )
    rag_config_path: Optional[str] = Field(
        None,
        env='RAG_CONFIG_PATH',
        description="Optional JSON file with administrative RAG configuration"
    )
    rag_config_cache_ttl_seconds: float = Field(
        60.0,
        ge=0.0,
        le=3600.0,
        env='RAG_CONFIG_CACHE_TTL_SECONDS',
        description="How long a loaded RagConfig may be served from cache"
    )

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        validate_assignment=True,
        extra="ignore"
    )

    def __init__(self, **kwargs):
        """Initialize settings and load secrets from Key Vault if configured."""
        super().__init__(**kwargs)

        if self.key_vault_url:
            try:
                self._load_from_keyvault()
            except AzureError as e:
                logger.warning(
                    "Failed to load from Key Vault, using environment variables",
                    error=str(e),
                    error_type=type(e).__name__,
                    key_vault_url=self.key_vault_url
                )

    def _load_from_keyvault(self) -> None:
        """Overlay provider secrets stored in Key Vault onto environment values."""
        client = SecretClient(vault_url=self.key_vault_url, credential=DefaultAzureCredential())
        loaded = []

        for secret_name, attribute in KEY_VAULT_SECRET_MAP.items():
            try:
                secret = client.get_secret(secret_name)
            except AzureError as e:
                logger.debug("Key Vault secret unavailable", secret_name=secret_name, error=str(e))
                continue
            if secret.value:
                setattr(self, attribute, secret.value)
                loaded.append(secret_name)

        logger.info(
            "Loaded configuration from Key Vault",
            key_vault_url=self.key_vault_url,
            secrets_loaded=len(loaded)
        )

    @field_validator('azure_openai_endpoint')
    @classmethod
    def validate_endpoint(cls, v):
        """Validate Azure OpenAI endpoint format."""
        if v and not v.startswith('https://'):
            raise ValueError('Azure OpenAI endpoint must start with https://')
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f'Log level must be one of: {valid_levels}')
        return v.upper()

    @field_validator('environment')
    @classmethod
    def validate_environment(cls, v):
        """Validate environment."""
        valid_envs = ['dev', 'staging', 'prod']
        if v not in valid_envs:
            raise ValueError(f'Environment must be one of: {valid_envs}')
        return v

    def has_key_vault_config(self) -> bool:
        """Check if Key Vault configuration is available."""
        return bool(self.key_vault_url)

    def has_azure_openai_config(self) -> bool:
        """Check if the chat model configuration is complete."""
        return bool(
            self.azure_openai_endpoint and
            self.azure_openai_api_key and
            self.azure_openai_deployment
        )

    def has_embedding_config(self) -> bool:
        """Check if the embedding model configuration is complete."""
        return bool(
            self.azure_openai_endpoint and
            self.azure_openai_api_key and
            self.azure_embedding_deployment
        )

    def __repr__(self) -> str:
        """Secure string representation that doesn't expose secrets."""
        return (
            f"Settings("
            f"environment={self.environment}, "
            f"key_vault_configured={self.has_key_vault_config()}, "
            f"embedding_configured={self.has_embedding_config()}, "
            f"log_level={self.log_level}"
            f")"
        )


# Global settings instance, used only by process bootstrap (CLI, logging setup)
_settings: Optional[Settings] = None


def clear_settings_cache():
    """Clear the global settings cache to force reload."""
    global _settings
    _settings = None


def get_settings(reload: bool = False) -> Settings:
    """
    Get application settings instance (singleton pattern).

    Args:
        reload: Whether to reload settings from environment/Key Vault

    Returns:
        Settings instance
    """
    global _settings

    if _settings is None or reload:
        _settings = Settings()
        logger.info(
            "Settings loaded",
            environment=_settings.environment,
            key_vault_configured=_settings.has_key_vault_config(),
            embedding_configured=_settings.has_embedding_config()
        )

    return _settings
