"""Search layer protocols — async-first interfaces for embedding, vector storage and sources."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Collection, Mapping

    from rapport.search.types import ContentType, EmbeddingMetadata, NeighborMatch


@runtime_checkable
class EmbeddingProvider(Protocol):
    """The text-to-vector model.

    Receives text that is already trimmed, prefixed and truncated, and returns
    vectors of a fixed length per deployment.
    """

    async def embed(self, text: str) -> list[float]:
        """Return the vector for *text*."""
        ...

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Return one vector per text, in input order."""
        ...

    @property
    def dimensions(self) -> int:
        """Vector length produced by this model."""
        ...

    @property
    def model_name(self) -> str:
        """Model identifier recorded in embedding metadata."""
        ...


@runtime_checkable
class VectorStore(Protocol):
    """Async protocol for owner-partitioned vector document storage.

    Every operation is scoped to exactly one owner.
    """

    async def upsert(
        self,
        owner_id: str,
        subject_id: str,
        content_type: ContentType,
        vector: list[float],
        searchable_content: str,
        metadata: EmbeddingMetadata,
    ) -> str:
        """Update the active document for the tuple, or insert one.  Returns its id."""
        ...

    async def nearest_neighbors(
        self,
        owner_id: str,
        vector: list[float],
        content_types: Collection[ContentType],
        limit: int,
    ) -> list[NeighborMatch]:
        """Return up to *limit* active documents closest to *vector* by cosine distance."""
        ...

    async def delete(self, owner_id: str, subject_id: str) -> int:
        """Hard-delete every document for the subject.  Returns the count deleted."""
        ...

    async def delete_all(self, owner_id: str) -> int:
        """Hard-delete every document for the owner.  Returns the count deleted."""
        ...

    async def connect(self) -> None:
        """Acquire whatever the backend needs before first use."""
        ...

    async def close(self) -> None:
        """Release backend resources."""
        ...


@runtime_checkable
class SubjectSource(Protocol):
    """Read-only view of the record store that owns subject data."""

    async def fetch(self, owner_id: str, subject_id: str) -> Mapping[str, Any] | None:
        """Return the subject's record, or ``None`` if it no longer exists."""
        ...
