"""Shared fixtures and fakes for rapport tests."""

from __future__ import annotations

import asyncio
import hashlib
import math
import re
from typing import TYPE_CHECKING, Any

import numpy as np
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from rapport.search.stores.database import cosine_distances
from rapport.search.types import ALL_CONTENT_TYPES, ContentType, NeighborMatch

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Collection, Mapping

    from sqlalchemy.ext.asyncio import AsyncEngine

    from rapport.search.types import EmbeddingMetadata


# ------------------------------------------------------------------
# Clock
# ------------------------------------------------------------------


class FakeClock:
    """Controllable replacement for ``time.time``."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ------------------------------------------------------------------
# Embedding providers
# ------------------------------------------------------------------


class HashProvider:
    """Deterministic async provider: sha256 of the text, normalised."""

    def __init__(self, dimensions: int = 32) -> None:
        self._dimensions = dimensions
        self.calls: list[str] = []
        self.batches: list[list[str]] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        return self._hash_to_vector(text)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.batches.append(list(texts))
        return [await self.embed(t) for t in texts]

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def model_name(self) -> str:
        return "fake-hash"

    def _hash_to_vector(self, text: str) -> list[float]:
        raw: list[float] = []
        counter = 0
        while len(raw) < self._dimensions:
            digest = hashlib.sha256(f"{counter}:{text}".encode()).digest()
            raw.extend(float(b) for b in digest)
            counter += 1
        raw = raw[: self._dimensions]
        norm = math.sqrt(sum(x * x for x in raw))
        return [x / norm for x in raw]


# Word stem -> topic dimension.  Words outside the lexicon carry no signal.
_TOPICS: dict[str, int] = {
    "work": 0,
    "job": 0,
    "office": 0,
    "career": 0,
    "stres": 1,
    "anxi": 1,
    "worr": 1,
    "pressur": 1,
    "coffee": 2,
    "lunch": 2,
    "dinner": 2,
    "grandm": 3,
    "grandp": 3,
    "family": 3,
    "mother": 3,
    "birthday": 4,
    "party": 4,
    "celebrat": 4,
    "wonderful": 5,
    "happy": 5,
    "great": 5,
}
_WORD_RE = re.compile(r"[a-z]+")


class TopicProvider:
    """Maps words onto a handful of topic dimensions.

    Texts sharing topics get high cosine similarity; unrelated texts score 0.
    """

    def __init__(self, dimensions: int = 16) -> None:
        self._dimensions = dimensions
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        vec = [0.0] * self._dimensions
        for word in _WORD_RE.findall(text.lower()):
            for stem, dim in _TOPICS.items():
                if word.startswith(stem):
                    vec[dim] = 1.0
                    break
        return vec

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [await self.embed(t) for t in texts]

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def model_name(self) -> str:
        return "fake-topic"


def unit_at(similarity: float, dimensions: int = 4) -> list[float]:
    """A unit vector whose cosine similarity to ``e1`` is *similarity*."""
    vec = [0.0] * dimensions
    vec[0] = similarity
    vec[1] = math.sqrt(max(0.0, 1.0 - similarity * similarity))
    return vec


class MappingProvider:
    """Returns a fixed vector for any text ending with a registered key."""

    def __init__(self, mapping: Mapping[str, list[float]], dimensions: int = 4) -> None:
        self._mapping = dict(mapping)
        self._dimensions = dimensions
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        for key, vec in self._mapping.items():
            if text.endswith(key):
                return list(vec)
        msg = f"no vector registered for {text!r}"
        raise KeyError(msg)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [await self.embed(t) for t in texts]

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def model_name(self) -> str:
        return "fake-mapping"


class FailingProvider(HashProvider):
    """Raises *error* for texts containing any of *poison*; tracks concurrency."""

    def __init__(
        self,
        error: Exception,
        poison: Collection[str] = (),
        dimensions: int = 32,
        delay: float = 0.0,
    ) -> None:
        super().__init__(dimensions)
        self._error = error
        self._poison = tuple(poison)
        self._delay = delay
        self.in_flight = 0
        self.max_in_flight = 0

    async def embed(self, text: str) -> list[float]:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self._delay:
                await asyncio.sleep(self._delay)
            if not self._poison or any(p in text for p in self._poison):
                self.calls.append(text)
                raise self._error
            return await super().embed(text)
        finally:
            self.in_flight -= 1


# ------------------------------------------------------------------
# In-memory vector store and subject source
# ------------------------------------------------------------------


class MemoryVectorStore:
    """Dict-backed VectorStore used where SQL is beside the point."""

    def __init__(self) -> None:
        self.docs: dict[str, dict[str, Any]] = {}
        self._next = 0
        self.queries = 0

    async def upsert(
        self,
        owner_id: str,
        subject_id: str,
        content_type: ContentType,
        vector: list[float],
        searchable_content: str,
        metadata: EmbeddingMetadata,
    ) -> str:
        for doc_id, doc in self.docs.items():
            if (doc["owner_id"], doc["subject_id"], doc["content_type"]) == (
                owner_id,
                subject_id,
                ContentType(content_type),
            ):
                doc.update(vector=vector, content=searchable_content, metadata=metadata)
                return doc_id
        self._next += 1
        doc_id = f"doc-{self._next}"
        self.docs[doc_id] = {
            "owner_id": owner_id,
            "subject_id": subject_id,
            "content_type": ContentType(content_type),
            "vector": vector,
            "content": searchable_content,
            "metadata": metadata,
        }
        return doc_id

    async def nearest_neighbors(
        self,
        owner_id: str,
        vector: list[float],
        content_types: Collection[ContentType],
        limit: int,
    ) -> list[NeighborMatch]:
        self.queries += 1
        types = frozenset(content_types) or ALL_CONTENT_TYPES
        rows = [
            (doc_id, doc)
            for doc_id, doc in self.docs.items()
            if doc["owner_id"] == owner_id and doc["content_type"] in types
        ]
        if not rows:
            return []
        dists = cosine_distances(np.asarray(vector), np.asarray([d["vector"] for _, d in rows]))
        order = np.argsort(dists, kind="stable")[:limit]
        return [
            NeighborMatch(
                document_id=rows[i][0],
                subject_id=rows[i][1]["subject_id"],
                content_type=rows[i][1]["content_type"],
                distance=float(dists[i]),
                content=rows[i][1]["content"],
                metadata=rows[i][1]["metadata"],
                last_updated=rows[i][1]["metadata"].generated_at,
            )
            for i in order.tolist()
        ]

    async def delete(self, owner_id: str, subject_id: str) -> int:
        doomed = [
            k
            for k, d in self.docs.items()
            if d["owner_id"] == owner_id and d["subject_id"] == subject_id
        ]
        for k in doomed:
            del self.docs[k]
        return len(doomed)

    async def delete_all(self, owner_id: str) -> int:
        doomed = [k for k, d in self.docs.items() if d["owner_id"] == owner_id]
        for k in doomed:
            del self.docs[k]
        return len(doomed)

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    def subjects(self, owner_id: str) -> set[str]:
        return {d["subject_id"] for d in self.docs.values() if d["owner_id"] == owner_id}


class DictSource:
    """SubjectSource over a plain ``{(owner, subject): record}`` dict."""

    def __init__(self, records: Mapping[tuple[str, str], Mapping[str, Any]]) -> None:
        self._records = dict(records)

    async def fetch(self, owner_id: str, subject_id: str) -> Mapping[str, Any] | None:
        return self._records.get((owner_id, subject_id))


# ------------------------------------------------------------------
# Database fixtures
# ------------------------------------------------------------------


@pytest.fixture
async def async_engine() -> AsyncIterator[AsyncEngine]:
    """Async in-memory SQLite engine with all tables created."""
    eng = create_async_engine("sqlite+aiosqlite://", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
async def async_session(async_engine: AsyncEngine) -> AsyncIterator[AsyncSession]:
    """Async SQLModel session on the in-memory engine."""
    factory = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with factory() as session:
        yield session


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store() -> MemoryVectorStore:
    return MemoryVectorStore()
