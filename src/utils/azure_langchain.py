"""
Factories for the LangChain Azure OpenAI clients used by the retrieval core.
The chat model backs translation and sub-query generation; the embeddings
model backs chunk and query embedding.
"""

from langchain_openai import AzureChatOpenAI, AzureOpenAIEmbeddings
from src.config.settings import Settings
from src.utils.error_handlers import ConfigurationError
import structlog

logger = structlog.get_logger(__name__)


def create_azure_chat_openai(
    settings: Settings,
    temperature: float = 0.0,
    max_tokens: int = 500
) -> AzureChatOpenAI:
    """
    Create AzureChatOpenAI client directly from settings.

    Args:
        settings: Application settings
        temperature: Sampling temperature; helpers want stable output
        max_tokens: Completion budget

    Returns:
        Configured AzureChatOpenAI client

    Raises:
        ConfigurationError: If Azure OpenAI chat configuration is incomplete
    """
    if not settings.has_azure_openai_config():
        raise ConfigurationError(
            "Azure OpenAI chat configuration is incomplete",
            missing_config="AZURE_OPENAI_DEPLOYMENT"
        )

    client = AzureChatOpenAI(
        azure_endpoint=settings.azure_openai_endpoint,
        api_key=settings.azure_openai_api_key,
        api_version=settings.azure_openai_api_version,
        azure_deployment=settings.azure_openai_deployment,
        temperature=temperature,
        max_tokens=max_tokens,
        timeout=settings.request_timeout,
        # Retries are owned by the callers' tenacity policy
        max_retries=0,
    )

    logger.info(
        "AzureChatOpenAI client created",
        deployment=settings.azure_openai_deployment,
        endpoint=settings.azure_openai_endpoint,
        api_version=settings.azure_openai_api_version
    )

    return client


def create_azure_embeddings(settings: Settings) -> AzureOpenAIEmbeddings:
    """
    Create AzureOpenAIEmbeddings client from settings.

    Raises:
        ConfigurationError: If the embedding deployment is not configured
    """
    if not settings.has_embedding_config():
        raise ConfigurationError(
            "Azure OpenAI embedding configuration is incomplete",
            missing_config="AZURE_EMBEDDING_DEPLOYMENT"
        )

    kwargs = {}
    if settings.embedding_dimensions:
        kwargs["dimensions"] = settings.embedding_dimensions

    embeddings = AzureOpenAIEmbeddings(
        azure_endpoint=settings.azure_openai_endpoint,
        api_key=settings.azure_openai_api_key,
        api_version=settings.azure_openai_api_version,
        azure_deployment=settings.azure_embedding_deployment,
        chunk_size=settings.embedding_batch_size,
        max_retries=0,
        timeout=settings.request_timeout,
        **kwargs
    )

    logger.info(
        "Azure OpenAI embeddings initialized",
        embedding_deployment=settings.azure_embedding_deployment,
        endpoint=settings.azure_openai_endpoint,
        api_version=settings.azure_openai_api_version
    )

    return embeddings
