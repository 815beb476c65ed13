"""rapport: privacy-scoped semantic search over relationship notes.

Embedding, caching, nearest-neighbor search and batch re-indexing, partitioned
per owner and gated on consent.
"""

__version__ = "0.1.0"

from rapport._service import SemanticSearchService
from rapport.config import SearchSettings
from rapport.consent import ConsentProvider, StaticConsent
from rapport.exceptions import (
    ConsentRequiredError,
    EmbeddingUnavailableError,
    InvalidDimensionError,
    InvalidQueryError,
    RapportError,
    StoreUnavailableError,
)
from rapport.search.types import (
    BatchEmbedding,
    ContentType,
    ReindexItem,
    ReindexResult,
    SimilarityResult,
)

__all__ = [
    "BatchEmbedding",
    "ConsentProvider",
    "ConsentRequiredError",
    "ContentType",
    "EmbeddingUnavailableError",
    "InvalidDimensionError",
    "InvalidQueryError",
    "RapportError",
    "ReindexItem",
    "ReindexResult",
    "SearchSettings",
    "SemanticSearchService",
    "SimilarityResult",
    "StaticConsent",
    "StoreUnavailableError",
    "__version__",
]
