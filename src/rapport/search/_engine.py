"""SimilaritySearchEngine — orchestrator wiring EmbeddingGenerator + VectorStore."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from rapport.config import SearchSettings
from rapport.exceptions import InvalidQueryError, RapportError, StoreUnavailableError
from rapport.search.types import (
    QUERY_LABEL,
    ContentType,
    SearchOptions,
    SimilarityResult,
    coerce_content_types,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from rapport.search.cache import QueryResultCache
    from rapport.search.generator import EmbeddingGenerator
    from rapport.search.protocols import VectorStore
    from rapport.search.types import NeighborMatch

logger = logging.getLogger(__name__)


@dataclass
class SearchStats:
    """Running counters for search calls on one engine."""

    total_searches: int = 0
    cache_hits: int = 0
    errors: int = 0
    total_response_ms: float = 0.0
    total_similarity: float = 0.0
    results_returned: int = 0
    content_type_counts: Counter[str] = field(default_factory=Counter)

    @property
    def cache_hit_rate(self) -> float:
        return self.cache_hits / self.total_searches if self.total_searches else 0.0

    @property
    def error_rate(self) -> float:
        return self.errors / self.total_searches if self.total_searches else 0.0

    @property
    def average_response_ms(self) -> float:
        return self.total_response_ms / self.total_searches if self.total_searches else 0.0

    @property
    def average_similarity(self) -> float:
        return self.total_similarity / self.results_returned if self.results_returned else 0.0

    def top_content_types(self, n: int = 4) -> list[tuple[str, int]]:
        return self.content_type_counts.most_common(n)


def _require_owner(owner_id: str) -> None:
    if not owner_id:
        msg = "owner_id is required"
        raise InvalidQueryError(msg)


class SimilaritySearchEngine:
    """Embeds queries, asks the store for neighbors, filters, ranks and caches.

    The engine also owns the write primitives (:meth:`store`, :meth:`remove`,
    :meth:`remove_all`) so that every write invalidates the owner's cached
    query results.
    """

    def __init__(
        self,
        generator: EmbeddingGenerator,
        store: VectorStore,
        query_cache: QueryResultCache,
        *,
        settings: SearchSettings | None = None,
    ) -> None:
        self._generator = generator
        self._store = store
        self._query_cache = query_cache
        self._settings = settings or SearchSettings()
        self._stats = SearchStats()

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def build_options(
        self,
        *,
        limit: int | None = None,
        threshold: float | None = None,
        content_types: Iterable[ContentType | str] | None = None,
        exclude_subject_ids: Iterable[str] | None = None,
    ) -> SearchOptions:
        """Validate caller options, fill defaults and clamp *limit* to the store maximum."""
        s = self._settings
        if limit is None:
            limit = s.default_limit
        if limit < 1:
            msg = f"limit must be at least 1, got {limit}"
            raise InvalidQueryError(msg)
        if threshold is None:
            threshold = s.default_threshold
        if not 0.0 <= threshold <= 1.0:
            msg = f"threshold must be within [0, 1], got {threshold}"
            raise InvalidQueryError(msg)
        try:
            types = coerce_content_types(content_types)
        except ValueError as exc:
            raise InvalidQueryError(str(exc)) from exc
        return SearchOptions(
            limit=min(limit, s.max_limit),
            threshold=float(threshold),
            content_types=types,
            exclude_subject_ids=frozenset(exclude_subject_ids or ()),
        )

    async def search(
        self,
        owner_id: str,
        query_text: str,
        options: SearchOptions | None = None,
    ) -> list[SimilarityResult]:
        """Return the owner's content most similar to *query_text*, best first.

        An empty list means nothing matched.  Failures raise; they are never
        reported as an empty list.
        """
        _require_owner(owner_id)
        if not query_text or not query_text.strip():
            msg = "Query text must not be empty"
            raise InvalidQueryError(msg)
        options = options or self.build_options()

        start = time.perf_counter()
        self._stats.total_searches += 1
        try:
            results = await self._search(owner_id, query_text.strip(), options)
        except RapportError:
            self._stats.errors += 1
            raise
        finally:
            self._stats.total_response_ms += (time.perf_counter() - start) * 1000
        return results

    async def _search(
        self, owner_id: str, query: str, options: SearchOptions
    ) -> list[SimilarityResult]:
        key = (owner_id, query, *options.cache_key())
        cached = self._query_cache.get(key)
        if cached is not None:
            logger.debug("Query cache hit (%d results)", len(cached))
            self._stats.cache_hits += 1
            return list(cached)

        generation = self._query_cache.generation(owner_id)
        embedded = await self._generator.embed(query, QUERY_LABEL)
        matches = await self._nearest(owner_id, embedded.vector, options)

        excluded = options.exclude_subject_ids
        results = [
            r
            for r in (_to_result(m) for m in matches)
            if r.similarity_score >= options.threshold and r.subject_id not in excluded
        ]
        # Stable: equal scores keep the store's order
        results.sort(key=lambda r: r.similarity_score, reverse=True)
        results = results[: options.limit]

        if not self._query_cache.put_if_current(key, results, generation):
            logger.debug("Owner data changed during search; results not cached")
        self._record(results)
        return list(results)

    async def _nearest(
        self, owner_id: str, vector: list[float], options: SearchOptions
    ) -> list[NeighborMatch]:
        s = self._settings
        fetch = max(
            options.limit * s.fetch_multiplier,
            options.limit + len(options.exclude_subject_ids),
        )
        fetch = min(fetch, s.max_limit)
        try:
            async with asyncio.timeout(s.store_timeout):
                return await self._store.nearest_neighbors(
                    owner_id, vector, options.content_types, fetch
                )
        except TimeoutError as exc:
            msg = f"Nearest-neighbor query timed out after {s.store_timeout}s"
            raise StoreUnavailableError(msg) from exc

    def _record(self, results: list[SimilarityResult]) -> None:
        self._stats.results_returned += len(results)
        for r in results:
            self._stats.total_similarity += r.similarity_score
            self._stats.content_type_counts[r.content_type.value] += 1

    # ------------------------------------------------------------------
    # Write primitives
    # ------------------------------------------------------------------

    async def store(
        self,
        owner_id: str,
        subject_id: str,
        content_type: ContentType | str,
        text: str,
    ) -> str:
        """Embed *text* and upsert the subject's document.  Returns the document id."""
        _require_owner(owner_id)
        try:
            content_type = ContentType(content_type)
        except ValueError as exc:
            raise InvalidQueryError(str(exc)) from exc

        embedded = await self._generator.embed(text, content_type)
        doc_id = await self._store.upsert(
            owner_id,
            subject_id,
            content_type,
            embedded.vector,
            text.strip()[: self._settings.searchable_content_chars],
            embedded.metadata,
        )
        self._query_cache.invalidate_owner(owner_id)
        return doc_id

    async def remove(self, owner_id: str, subject_id: str) -> int:
        """Hard-delete the subject's documents."""
        _require_owner(owner_id)
        deleted = await self._store.delete(owner_id, subject_id)
        self._query_cache.invalidate_owner(owner_id)
        return deleted

    async def remove_all(self, owner_id: str) -> int:
        """Hard-delete every document of the owner."""
        _require_owner(owner_id)
        deleted = await self._store.delete_all(owner_id)
        self._query_cache.invalidate_owner(owner_id)
        return deleted

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def generator(self) -> EmbeddingGenerator:
        return self._generator

    @property
    def store_backend(self) -> VectorStore:
        """Return the underlying :class:`VectorStore`."""
        return self._store

    @property
    def query_cache(self) -> QueryResultCache:
        return self._query_cache

    @property
    def settings(self) -> SearchSettings:
        return self._settings

    @property
    def stats(self) -> SearchStats:
        return self._stats


def _to_result(match: NeighborMatch) -> SimilarityResult:
    similarity = min(1.0, max(0.0, 1.0 - match.distance))
    return SimilarityResult(
        vector_document_id=match.document_id,
        subject_id=match.subject_id,
        content_type=match.content_type,
        similarity_score=similarity,
        content=match.content,
        metadata=match.metadata,
        last_updated=match.last_updated,
    )
