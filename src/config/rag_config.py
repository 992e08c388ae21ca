"""
Request-scoped RAG configuration and its TTL-bounded store.

RagConfig is an immutable value handed to every retrieval call. Administrative
changes reach running processes through RagConfigStore, whose cache expires
after a bounded TTL or on explicit invalidation.
"""

import json
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, model_validator

from src.utils.error_handlers import ConfigurationError

logger = structlog.get_logger(__name__)

WEIGHT_TOLERANCE = 1e-9


class RagConfig(BaseModel):
    """Tunable retrieval parameters, validated once and never mutated."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    similarity_threshold: float = Field(0.3, gt=0.0, lt=1.0, description="Minimum cosine similarity to accept a vector match")
    high_relevance_threshold: float = Field(0.7, gt=0.0, le=1.0, description="Similarity marking a confident match")
    max_chunks: int = Field(6, ge=1, le=50, description="Maximum snippets returned per query")
    vector_weight: float = Field(0.6, ge=0.0, le=1.0)
    keyword_weight: float = Field(0.4, ge=0.0, le=1.0)
    enable_multi_query: bool = Field(True, description="Allow broad queries to fan out")
    candidate_pool_multiplier: int = Field(3, ge=3, le=10, description="Candidate pool size relative to max_chunks")
    branch_timeout_seconds: float = Field(8.0, gt=0.0, le=120.0)
    relaxed_similarity_threshold: Optional[float] = Field(
        None,
        gt=0.0,
        lt=1.0,
        description="Looser threshold the caller explicitly allows when the strict run is empty"
    )
    rerank: bool = Field(False, description="Apply heuristic re-ranking boosts before diversification")
    max_sub_queries: int = Field(4, ge=2, le=4, description="Sub-queries generated for broad queries")

    @model_validator(mode="after")
    def check_consistency(self) -> "RagConfig":
        """Cross-field rules that single-field bounds cannot express."""
        if self.vector_weight + self.keyword_weight > 1.0 + WEIGHT_TOLERANCE:
            raise ValueError("vector_weight + keyword_weight must not exceed 1")
        if self.high_relevance_threshold < self.similarity_threshold:
            raise ValueError("high_relevance_threshold must be >= similarity_threshold")
        if (
            self.relaxed_similarity_threshold is not None
            and self.relaxed_similarity_threshold >= self.similarity_threshold
        ):
            raise ValueError("relaxed_similarity_threshold must be lower than similarity_threshold")
        return self

    @property
    def candidate_pool_size(self) -> int:
        """Number of candidates fetched per branch before diversification."""
        return self.max_chunks * self.candidate_pool_multiplier

    @classmethod
    def from_settings(cls, settings: Any) -> "RagConfig":
        """Seed a config from process settings (RAG_* environment values)."""
        return build_rag_config(
            similarity_threshold=settings.rag_similarity_threshold,
            high_relevance_threshold=settings.rag_high_relevance_threshold,
            max_chunks=settings.rag_max_chunks,
            vector_weight=settings.rag_vector_weight,
            keyword_weight=settings.rag_keyword_weight,
            enable_multi_query=settings.rag_enable_multi_query,
            branch_timeout_seconds=settings.rag_branch_timeout_seconds,
        )


def build_rag_config(source: Optional[str] = None, **values) -> RagConfig:
    """
    Validate raw values into a RagConfig.

    Args:
        source: Where the values came from, reported on failure
        **values: RagConfig fields

    Returns:
        Validated RagConfig

    Raises:
        ConfigurationError: If any value is missing or invalid
    """
    try:
        return RagConfig(**values)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field_name = ".".join(str(part) for part in first.get("loc", ())) or None
        raise ConfigurationError(
            f"Invalid RAG configuration: {first.get('msg', str(e))}",
            missing_config=field_name,
            config_file=source
        ) from e


def settings_config_loader(settings: Any) -> Callable[[], RagConfig]:
    """Loader that rebuilds RagConfig from settings on every cache miss."""
    def load() -> RagConfig:
        return RagConfig.from_settings(settings)
    return load


def json_file_config_loader(
    path: Union[str, Path],
    defaults: Optional[RagConfig] = None
) -> Callable[[], RagConfig]:
    """
    Loader reading administrative overrides from a JSON file.

    Keys in the file override ``defaults``; unknown keys are rejected.
    """
    config_path = Path(path)

    def load() -> RagConfig:
        if not config_path.exists():
            raise ConfigurationError(
                f"RAG configuration file not found: {config_path}",
                missing_config="RAG_CONFIG_PATH",
                config_file=str(config_path)
            )
        try:
            overrides = json.loads(config_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ConfigurationError(
                f"RAG configuration file is not valid JSON: {e}",
                config_file=str(config_path)
            ) from e
        if not isinstance(overrides, dict):
            raise ConfigurationError(
                "RAG configuration file must contain a JSON object",
                config_file=str(config_path)
            )

        values: Dict[str, Any] = defaults.model_dump() if defaults else {}
        values.update(overrides)
        return build_rag_config(source=str(config_path), **values)

    return load


class RagConfigStore:
    """
    Read-through cache for RagConfig with a bounded TTL.

    A ttl of 0 disables caching. ``invalidate()`` is the hook administrative
    writers call to make the next ``get()`` reload immediately.
    """

    def __init__(
        self,
        loader: Callable[[], Union[RagConfig, Mapping[str, Any]]],
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic
    ):
        if ttl_seconds < 0:
            raise ConfigurationError("RAG config cache TTL must not be negative", missing_config="ttl_seconds")
        self._loader = loader
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._cached: Optional[RagConfig] = None
        self._loaded_at: Optional[float] = None
        self.logger = logger.bind(log_type="SYSTEM", component="rag_config_store")

    @property
    def ttl_seconds(self) -> float:
        return self._ttl_seconds

    def get(self) -> RagConfig:
        """Return the current config, reloading when the cached copy expired."""
        with self._lock:
            now = self._clock()
            if (
                self._cached is not None
                and self._loaded_at is not None
                and now - self._loaded_at < self._ttl_seconds
            ):
                return self._cached

            loaded = self._loader()
            if isinstance(loaded, RagConfig):
                config = loaded
            elif isinstance(loaded, Mapping):
                config = build_rag_config(**dict(loaded))
            else:
                raise ConfigurationError(
                    f"RAG config loader returned {type(loaded).__name__}, expected RagConfig or mapping"
                )

            self._cached = config
            self._loaded_at = now
            self.logger.debug(
                "RAG configuration loaded",
                similarity_threshold=config.similarity_threshold,
                max_chunks=config.max_chunks,
                enable_multi_query=config.enable_multi_query
            )
            return config

    def invalidate(self) -> None:
        """Drop the cached config so the next read reloads it."""
        with self._lock:
            self._cached = None
            self._loaded_at = None
        self.logger.info("RAG configuration cache invalidated")
