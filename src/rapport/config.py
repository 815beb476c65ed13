"""Runtime settings for the search subsystem."""

from __future__ import annotations

from typing import Any

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SearchSettings(BaseSettings):
    """Every tunable of the search subsystem.

    Values come from keyword arguments, then ``RAPPORT_*`` environment
    variables (or a ``.env`` file), then the defaults below.  For example
    ``RAPPORT_BATCH_SIZE=20`` sets ``batch_size``.  Times are in seconds.
    """

    model_config = SettingsConfigDict(
        env_prefix="RAPPORT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Embedding model
    embedding_model: str = Field(
        default="text-embedding-3-small", description="Name of the remote embedding model"
    )
    embedding_dimensions: int = Field(
        default=768, gt=0, description="Fixed vector length for this deployment"
    )
    max_input_chars: int = Field(
        default=2000, gt=0, description="Preprocessed text is truncated to this length"
    )
    searchable_content_chars: int = Field(
        default=1000, ge=0, description="Cap on the text kept on each stored document"
    )
    embedding_timeout: float = Field(default=10.0, gt=0)
    transient_retries: int = Field(
        default=1, ge=0, description="Retries for retryable embedding failures"
    )
    retry_backoff: float = Field(
        default=0.5, ge=0, description="First wait between retries; doubles per attempt"
    )

    # Caches
    embedding_cache_size: int = Field(default=10_000, gt=0)
    embedding_cache_ttl: float = 3600.0
    query_cache_size: int = Field(default=1000, gt=0)
    query_cache_ttl: float = 1800.0

    # Search
    default_limit: int = 10
    max_limit: int = Field(default=100, gt=0, description="Hard cap on results from the store")
    default_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    fetch_multiplier: int = Field(
        default=2, ge=1, description="Over-fetch factor applied before post-filtering"
    )
    store_timeout: float = Field(default=30.0, gt=0)

    # Batching
    batch_size: int = Field(
        default=10, gt=0, description="Number of subjects re-indexed concurrently"
    )
    max_batch_texts: int = Field(
        default=100, gt=0, description="Most texts accepted by one batch embedding call"
    )
    embedding_batch_chunk: int = Field(
        default=10, gt=0, description="Texts sent to the model per batch request"
    )

    @model_validator(mode="after")
    def _check_default_limit(self) -> SearchSettings:
        if not 1 <= self.default_limit <= self.max_limit:
            msg = f"default_limit must be within 1..{self.max_limit}, got {self.default_limit}"
            raise ValueError(msg)
        return self

    def with_overrides(self, **changes: Any) -> SearchSettings:
        """Return a validated copy with *changes* applied."""
        return type(self)(**{**self.model_dump(), **changes})
