"""Search layer data types — content types, options, results and batch summaries."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterable

# ------------------------------------------------------------------
# Content types
# ------------------------------------------------------------------


class ContentType(str, Enum):
    """Closed set of content types a vector document may carry."""

    RELATIONSHIP_CONTEXT = "relationship_context"
    EMOTIONAL_SIGNAL = "emotional_signal"
    INTERACTION_SUMMARY = "interaction_summary"
    LIFE_EVENT = "life_event"


ALL_CONTENT_TYPES: frozenset[ContentType] = frozenset(ContentType)
"""Every content type.  A query over this whole set needs no content-type predicate."""

QUERY_LABEL = "query"
"""Label used when embedding search queries.  Never stored."""

SCHEMA_VERSION = "2.0"

CONTENT_PREFIXES: dict[str, str] = {
    ContentType.RELATIONSHIP_CONTEXT.value: "Relationship context: ",
    ContentType.EMOTIONAL_SIGNAL.value: "Emotional context: ",
    ContentType.INTERACTION_SUMMARY.value: "Interaction summary: ",
    ContentType.LIFE_EVENT.value: "Life event: ",
}


def label_of(content_type: ContentType | str) -> str:
    """Return the plain string label for a content type or the query label."""
    if isinstance(content_type, ContentType):
        return content_type.value
    return content_type


def coerce_content_types(
    content_types: Iterable[ContentType | str] | None,
) -> frozenset[ContentType]:
    """Normalise caller-supplied content types; ``None`` or empty means all of them.

    Raises ``ValueError`` for labels outside the closed set.
    """
    if not content_types:
        return ALL_CONTENT_TYPES
    return frozenset(ContentType(ct) for ct in content_types)


# ------------------------------------------------------------------
# Embedding metadata
# ------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class EmbeddingMetadata:
    """Provenance of an embedding vector.

    Attributes:
        model: Name of the embedding model.
        dimensions: Vector length.
        generated_at: When the vector was produced (cache insert time on a hit).
        content_hash: Fingerprint of the preprocessed text.
        schema_version: Document schema version for future migrations.
    """

    model: str
    dimensions: int
    generated_at: datetime
    content_hash: str
    schema_version: str = SCHEMA_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "dimensions": self.dimensions,
            "generated_at": self.generated_at.isoformat(),
            "content_hash": self.content_hash,
            "schema_version": self.schema_version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EmbeddingMetadata:
        generated_at = data["generated_at"]
        if isinstance(generated_at, str):
            generated_at = datetime.fromisoformat(generated_at)
        return cls(
            model=data["model"],
            dimensions=int(data["dimensions"]),
            generated_at=generated_at,
            content_hash=data["content_hash"],
            schema_version=data.get("schema_version", SCHEMA_VERSION),
        )


@dataclass(frozen=True, slots=True)
class Embedded:
    """A vector together with its metadata, as returned by the generator."""

    vector: list[float]
    metadata: EmbeddingMetadata
    cache_hit: bool = False


@dataclass(frozen=True, slots=True)
class BatchEmbedding:
    """Vectors for a list of texts, positionally aligned with the input.

    A text that could not be embedded has ``None`` in *vectors* and its
    error message in *errors* under the same index.
    """

    vectors: list[list[float] | None]
    errors: dict[int, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> int:
        return sum(v is not None for v in self.vectors)

    @property
    def failed(self) -> int:
        return len(self.errors)


# ------------------------------------------------------------------
# Search options and results
# ------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SearchOptions:
    """Normalised options for a single search call.

    Attributes:
        limit: Maximum number of results (already clamped to the store maximum).
        threshold: Similarity floor in [0, 1]; 0 disables it.
        content_types: Content types to search.
        exclude_subject_ids: Subjects dropped from the results regardless of score.
    """

    limit: int = 10
    threshold: float = 0.7
    content_types: frozenset[ContentType] = ALL_CONTENT_TYPES
    exclude_subject_ids: frozenset[str] = frozenset()

    def cache_key(self) -> tuple[Any, ...]:
        return (
            self.limit,
            self.threshold,
            tuple(sorted(ct.value for ct in self.content_types)),
            tuple(sorted(self.exclude_subject_ids)),
        )


@dataclass(frozen=True, slots=True)
class NeighborMatch:
    """A raw nearest-neighbor hit from a :class:`VectorStore`.

    Attributes:
        document_id: Store-assigned document id.
        subject_id: Domain entity the text came from.
        content_type: Content type of the stored text.
        distance: Cosine distance to the query vector (0 is identical).
        content: Truncated searchable content.
        metadata: Embedding metadata stored with the document.
        last_updated: When the document was last re-embedded.
    """

    document_id: str
    subject_id: str
    content_type: ContentType
    distance: float
    content: str
    metadata: EmbeddingMetadata
    last_updated: datetime


@dataclass(frozen=True, slots=True)
class SimilarityResult:
    """A single ranked search result.

    Attributes:
        vector_document_id: Id of the matched vector document.
        subject_id: Domain entity the match describes.
        content_type: Content type of the match.
        similarity_score: Cosine similarity (0-1, higher is more similar).
        content: The truncated text that matched.
        metadata: Embedding metadata of the match.
        last_updated: When the match was last re-embedded.
    """

    vector_document_id: str
    subject_id: str
    content_type: ContentType
    similarity_score: float
    content: str
    metadata: EmbeddingMetadata
    last_updated: datetime


# ------------------------------------------------------------------
# Batch re-indexing
# ------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ReindexItem:
    """One unit of re-indexing work: a subject's text under a content type."""

    subject_id: str
    content_type: ContentType
    text: str


@dataclass(frozen=True, slots=True)
class ReindexFailure:
    """A subject that failed to re-index, with the underlying error."""

    subject_id: str
    error: str
    timestamp: datetime
    exception: BaseException = field(compare=False, repr=False)


@dataclass(frozen=True, slots=True)
class ReindexResult:
    """Summary of a re-indexing run.

    Attributes:
        succeeded: Subjects embedded and stored.
        failed: Subjects whose fetch, embedding or upsert raised.
        skipped: Subjects whose source record no longer exists.
        total: Subjects requested.
        cancelled: True if the run stopped early at a chunk boundary.
        errors: One entry per failed subject.
    """

    succeeded: int
    failed: int
    skipped: int = 0
    total: int = 0
    cancelled: bool = False
    errors: list[ReindexFailure] = field(default_factory=list)


# ------------------------------------------------------------------
# Health
# ------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class EmbeddingHealth:
    """Outcome of probing the embedding model."""

    healthy: bool
    model: str
    dimensions: int
    response_time_ms: float
    error: str | None = None
