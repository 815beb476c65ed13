"""DatabaseVectorStore — vector documents in any SQLAlchemy async database."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import numpy as np
from sqlalchemy import delete as sa_delete
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import SQLModel, select

from rapport.exceptions import InvalidDimensionError, StoreUnavailableError
from rapport.models.vectors import VectorDocument
from rapport.search.types import (
    ALL_CONTENT_TYPES,
    ContentType,
    EmbeddingMetadata,
    NeighborMatch,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Collection

    from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)


class _MalformedRowError(ValueError):
    pass


class DatabaseVectorStore:
    """Owner-partitioned vector store on SQLModel.

    Rows are filtered in SQL on ``owner_id``, ``is_active`` and, when the
    request does not span every content type, ``content_type``.  Cosine
    distance over the surviving rows is computed with numpy, which is
    adequate for tens of thousands of vectors per owner.

    Driver and connection failures surface as :class:`StoreUnavailableError`.
    """

    def __init__(
        self,
        engine: AsyncEngine | None = None,
        *,
        dimensions: int,
        session_factory: Callable[..., AsyncSession] | None = None,
        document_model: type[VectorDocument] = VectorDocument,
    ) -> None:
        if session_factory is None:
            if engine is None:
                msg = "DatabaseVectorStore requires an engine or a session_factory"
                raise ValueError(msg)
            session_factory = async_sessionmaker(
                engine, class_=AsyncSession, expire_on_commit=False
            )
        self._engine = engine
        self._session_factory = session_factory
        self._dimensions = dimensions
        self._model = document_model

    # ------------------------------------------------------------------
    # VectorStore protocol
    # ------------------------------------------------------------------

    async def upsert(
        self,
        owner_id: str,
        subject_id: str,
        content_type: ContentType,
        vector: list[float],
        searchable_content: str,
        metadata: EmbeddingMetadata,
    ) -> str:
        """Update the active document for the tuple in place, or insert one.

        The partial unique index on active rows rejects a second concurrent
        insert; the loser rolls back and applies its values as an update.
        """
        if len(vector) != self._dimensions:
            raise InvalidDimensionError(self._dimensions, len(vector))

        content_type = ContentType(content_type)
        values = {
            "embedding": list(vector),
            "searchable_content": searchable_content,
            "model_name": metadata.model,
            "dimensions": metadata.dimensions,
            "generated_at": metadata.generated_at,
            "content_hash": metadata.content_hash,
            "schema_version": metadata.schema_version,
            "last_updated": datetime.now(UTC),
        }
        async with self._session() as session:
            try:
                return await self._write(session, owner_id, subject_id, content_type, values)
            except IntegrityError:
                await session.rollback()
                logger.debug(
                    "Concurrent insert for subject %s (%s), retrying as update",
                    subject_id,
                    content_type.value,
                )
                return await self._write(session, owner_id, subject_id, content_type, values)

    async def nearest_neighbors(
        self,
        owner_id: str,
        vector: list[float],
        content_types: Collection[ContentType],
        limit: int,
    ) -> list[NeighborMatch]:
        """Return up to *limit* active documents ordered by ascending cosine distance."""
        if limit < 1:
            return []
        model = self._model
        conditions: list[Any] = [
            model.owner_id == owner_id,
            model.is_active.is_(True),  # type: ignore[union-attr]
        ]
        requested = frozenset(ContentType(ct) for ct in content_types)
        if requested and requested != ALL_CONTENT_TYPES:
            values = sorted(ct.value for ct in requested)
            conditions.append(model.content_type.in_(values))  # type: ignore[union-attr]
        else:
            logger.debug("Content-type filter skipped: full set requested")

        async with self._session() as session:
            result = await session.execute(select(model).where(*conditions))
            rows = list(result.scalars().all())

        candidates: list[tuple[VectorDocument, ContentType]] = []
        vectors: list[list[float]] = []
        for row in rows:
            try:
                ct, emb = self._validate_row(row)
            except _MalformedRowError as exc:
                logger.warning("Skipping malformed vector document %s: %s", row.id, exc)
                continue
            candidates.append((row, ct))
            vectors.append(emb)

        if not candidates:
            return []

        distances = cosine_distances(np.asarray(vector, dtype=np.float64), np.asarray(vectors))
        order = np.argsort(distances, kind="stable")[:limit]
        logger.debug("Nearest-neighbor query scanned %d rows", len(candidates))

        return [
            self._to_match(candidates[i][0], candidates[i][1], float(distances[i]))
            for i in order.tolist()
        ]

    async def delete(self, owner_id: str, subject_id: str) -> int:
        """Hard-delete every document for ``(owner_id, subject_id)``."""
        model = self._model
        async with self._session() as session:
            result = await session.execute(
                sa_delete(model).where(
                    model.owner_id == owner_id,  # type: ignore[arg-type]
                    model.subject_id == subject_id,  # type: ignore[arg-type]
                )
            )
            await session.commit()
            return result.rowcount or 0

    async def delete_all(self, owner_id: str) -> int:
        """Hard-delete every document belonging to *owner_id*."""
        model = self._model
        async with self._session() as session:
            result = await session.execute(
                sa_delete(model).where(model.owner_id == owner_id)  # type: ignore[arg-type]
            )
            await session.commit()
            return result.rowcount or 0

    async def connect(self) -> None:
        """No-op — connections are pooled by the engine."""

    async def close(self) -> None:
        """Dispose the engine if this store was given one."""
        if self._engine is not None:
            await self._engine.dispose()

    # ------------------------------------------------------------------
    # Store-specific methods
    # ------------------------------------------------------------------

    async def create_tables(self) -> None:
        """Create the vector document table if it does not exist."""
        if self._engine is None:
            msg = "create_tables requires the store to be built with an engine"
            raise RuntimeError(msg)
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)
        except (SQLAlchemyError, OSError) as exc:
            msg = f"Vector store unavailable: {exc}"
            raise StoreUnavailableError(msg) from exc

    async def get(
        self, owner_id: str, subject_id: str, content_type: ContentType
    ) -> VectorDocument | None:
        """Return the active document for the tuple, if any."""
        model = self._model
        async with self._session() as session:
            result = await session.execute(
                select(model).where(
                    model.owner_id == owner_id,
                    model.subject_id == subject_id,
                    model.content_type == ContentType(content_type).value,
                    model.is_active.is_(True),  # type: ignore[union-attr]
                )
            )
            return result.scalars().first()

    async def count(self, owner_id: str, *, active_only: bool = True) -> int:
        """Count the owner's documents."""
        model = self._model
        conditions: list[Any] = [model.owner_id == owner_id]
        if active_only:
            conditions.append(model.is_active.is_(True))  # type: ignore[union-attr]
        async with self._session() as session:
            result = await session.execute(
                select(func.count()).select_from(model).where(*conditions)
            )
            return int(result.scalar_one())

    async def deactivate(self, owner_id: str, subject_id: str) -> int:
        """Soft-delete the subject's documents so search no longer sees them."""
        model = self._model
        async with self._session() as session:
            result = await session.execute(
                update(model)
                .where(
                    model.owner_id == owner_id,  # type: ignore[arg-type]
                    model.subject_id == subject_id,  # type: ignore[arg-type]
                    model.is_active.is_(True),  # type: ignore[union-attr]
                )
                .values(is_active=False, last_updated=datetime.now(UTC))
            )
            await session.commit()
            return result.rowcount or 0

    async def purge_inactive(self, owner_id: str) -> int:
        """Physically delete the owner's soft-deleted documents."""
        model = self._model
        async with self._session() as session:
            result = await session.execute(
                sa_delete(model).where(
                    model.owner_id == owner_id,  # type: ignore[arg-type]
                    model.is_active.is_(False),  # type: ignore[union-attr]
                )
            )
            await session.commit()
            return result.rowcount or 0

    @property
    def dimensions(self) -> int:
        return self._dimensions

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        """Open a session, translating driver failures into StoreUnavailableError."""
        try:
            async with self._session_factory() as session:
                yield session
        except (SQLAlchemyError, OSError) as exc:
            msg = f"Vector store unavailable: {exc}"
            raise StoreUnavailableError(msg) from exc

    async def _write(
        self,
        session: AsyncSession,
        owner_id: str,
        subject_id: str,
        content_type: ContentType,
        values: dict[str, Any],
    ) -> str:
        model = self._model
        result = await session.execute(
            select(model).where(
                model.owner_id == owner_id,
                model.subject_id == subject_id,
                model.content_type == content_type.value,
                model.is_active.is_(True),  # type: ignore[union-attr]
            )
        )
        doc = result.scalars().first()
        if doc is None:
            doc = model(owner_id=owner_id, subject_id=subject_id, content_type=content_type.value)
            session.add(doc)
        for name, value in values.items():
            setattr(doc, name, value)
        await session.commit()
        return doc.id

    def _validate_row(self, row: VectorDocument) -> tuple[ContentType, list[float]]:
        try:
            ct = ContentType(row.content_type)
        except ValueError as exc:
            msg = f"unknown content type {row.content_type!r}"
            raise _MalformedRowError(msg) from exc
        emb = row.embedding
        if not isinstance(emb, list) or len(emb) != self._dimensions:
            size = len(emb) if isinstance(emb, list) else type(emb).__name__
            msg = f"embedding has {size} dimensions, expected {self._dimensions}"
            raise _MalformedRowError(msg)
        try:
            return ct, [float(x) for x in emb]
        except (TypeError, ValueError) as exc:
            msg = "embedding contains non-numeric values"
            raise _MalformedRowError(msg) from exc

    @staticmethod
    def _to_match(row: VectorDocument, content_type: ContentType, distance: float) -> NeighborMatch:
        return NeighborMatch(
            document_id=row.id,
            subject_id=row.subject_id,
            content_type=content_type,
            distance=distance,
            content=row.searchable_content,
            metadata=EmbeddingMetadata(
                model=row.model_name,
                dimensions=row.dimensions,
                generated_at=row.generated_at,
                content_hash=row.content_hash,
                schema_version=row.schema_version,
            ),
            last_updated=row.last_updated,
        )


def cosine_distances(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine distance from *query* to each row of *matrix*.

    Zero-norm vectors get distance 1.0 (no similarity).
    """
    matrix = np.atleast_2d(matrix).astype(np.float64, copy=False)
    q_norm = float(np.linalg.norm(query))
    row_norms = np.linalg.norm(matrix, axis=1)
    denom = row_norms * q_norm
    dots = matrix @ query
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(denom > 0, dots / denom, 0.0)
    return 1.0 - np.clip(sims, -1.0, 1.0)
