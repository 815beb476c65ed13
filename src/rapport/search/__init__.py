"""Vector search layer — caches, embedding client and generator, engine, stores, re-indexing."""

from rapport.search._engine import SearchStats, SimilaritySearchEngine
from rapport.search.cache import EmbeddingCache, QueryResultCache
from rapport.search.client import EmbeddingClient
from rapport.search.generator import EmbeddingGenerator
from rapport.search.hashing import content_hash, fingerprint
from rapport.search.protocols import EmbeddingProvider, SubjectSource, VectorStore
from rapport.search.reindex import BatchReindexer, build_relationship_context
from rapport.search.stores.database import DatabaseVectorStore
from rapport.search.types import (
    ALL_CONTENT_TYPES,
    QUERY_LABEL,
    BatchEmbedding,
    ContentType,
    EmbeddingMetadata,
    ReindexItem,
    ReindexResult,
    SearchOptions,
    SimilarityResult,
)

__all__ = [
    "ALL_CONTENT_TYPES",
    "QUERY_LABEL",
    "BatchEmbedding",
    "BatchReindexer",
    "ContentType",
    "DatabaseVectorStore",
    "EmbeddingCache",
    "EmbeddingClient",
    "EmbeddingGenerator",
    "EmbeddingMetadata",
    "EmbeddingProvider",
    "QueryResultCache",
    "ReindexItem",
    "ReindexResult",
    "SearchOptions",
    "SearchStats",
    "SimilarityResult",
    "SimilaritySearchEngine",
    "SubjectSource",
    "VectorStore",
    "build_relationship_context",
    "content_hash",
    "fingerprint",
]
