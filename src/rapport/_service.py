"""SemanticSearchService — consent-gated façade over the search subsystem."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from rapport.config import SearchSettings
from rapport.consent import require_consent
from rapport.exceptions import InvalidQueryError
from rapport.search._engine import SimilaritySearchEngine
from rapport.search.cache import EmbeddingCache, QueryResultCache
from rapport.search.client import EmbeddingClient
from rapport.search.generator import EmbeddingGenerator
from rapport.search.reindex import BatchReindexer
from rapport.search.types import ContentType, ReindexItem

if TYPE_CHECKING:
    import asyncio
    from collections.abc import Iterable, Sequence

    from sqlalchemy.ext.asyncio import AsyncEngine

    from rapport.consent import ConsentProvider
    from rapport.search._engine import SearchStats
    from rapport.search.protocols import EmbeddingProvider, SubjectSource, VectorStore
    from rapport.search.reindex import ProgressCallback
    from rapport.search.types import (
        BatchEmbedding,
        Embedded,
        EmbeddingHealth,
        ReindexResult,
        SimilarityResult,
    )

logger = logging.getLogger(__name__)


class SemanticSearchService:
    """Outbound interface of the search subsystem.

    Wires the embedding client, generator, caches, search engine and batch
    re-indexer from one :class:`SearchSettings`.  AI-backed entry points
    (:meth:`embed`, :meth:`search`, :meth:`index_subject`,
    :meth:`reindex_all`) check consent before touching the model or the
    store.  Removal never requires consent.

    Typical wiring::

        engine = create_async_engine("postgresql+asyncpg://...")
        service = SemanticSearchService.create(engine, consent=privacy_feed)
        await service.index_subject(owner_id, "p1", "life_event", "Moved to Lisbon")
        results = await service.search(owner_id, "relocation")
    """

    def __init__(
        self,
        *,
        provider: EmbeddingProvider,
        store: VectorStore,
        consent: ConsentProvider,
        settings: SearchSettings | None = None,
        source: SubjectSource | None = None,
        embedding_cache: EmbeddingCache | None = None,
        query_cache: QueryResultCache | None = None,
    ) -> None:
        s = settings or SearchSettings()
        self._settings = s
        self._consent = consent
        self._store = store

        self._client = EmbeddingClient(
            provider,
            dimensions=s.embedding_dimensions,
            max_input_chars=s.max_input_chars,
            timeout=s.embedding_timeout,
            transient_retries=s.transient_retries,
            retry_backoff=s.retry_backoff,
            max_batch_texts=s.max_batch_texts,
            batch_chunk_size=s.embedding_batch_chunk,
        )
        if embedding_cache is None:
            embedding_cache = EmbeddingCache(
                max_size=s.embedding_cache_size, ttl=s.embedding_cache_ttl
            )
        if query_cache is None:
            query_cache = QueryResultCache(max_size=s.query_cache_size, ttl=s.query_cache_ttl)

        self._generator = EmbeddingGenerator(self._client, embedding_cache)
        self._engine = SimilaritySearchEngine(self._generator, store, query_cache, settings=s)
        self._reindexer = BatchReindexer(self._engine, source=source, batch_size=s.batch_size)

    @classmethod
    def create(
        cls,
        engine: AsyncEngine,
        *,
        consent: ConsentProvider,
        settings: SearchSettings | None = None,
        provider: EmbeddingProvider | None = None,
        source: SubjectSource | None = None,
        api_key: str | None = None,
    ) -> SemanticSearchService:
        """Default wiring: OpenAI embeddings and a database-backed vector store."""
        from rapport.search.stores.database import DatabaseVectorStore

        s = settings or SearchSettings()
        if provider is None:
            from rapport.search.providers.openai import OpenAIEmbedding

            provider = OpenAIEmbedding.from_settings(s, api_key=api_key)
        store = DatabaseVectorStore(engine, dimensions=s.embedding_dimensions)
        return cls(provider=provider, store=store, consent=consent, settings=s, source=source)

    # ------------------------------------------------------------------
    # AI-backed operations
    # ------------------------------------------------------------------

    async def embed(self, owner_id: str, text: str, content_type: ContentType | str) -> Embedded:
        """Embed *text* for *owner_id* without storing it."""
        await require_consent(self._consent, owner_id)
        return await self._generator.embed(text, content_type)

    async def embed_batch(
        self, owner_id: str, texts: Sequence[str], content_type: ContentType | str
    ) -> BatchEmbedding:
        """Embed up to ``max_batch_texts`` texts without storing them.

        One text failing does not fail the others; see :class:`BatchEmbedding`.
        """
        await require_consent(self._consent, owner_id)
        return await self._generator.embed_many(texts, content_type)

    async def search(
        self,
        owner_id: str,
        query_text: str,
        *,
        limit: int | None = None,
        threshold: float | None = None,
        content_types: Iterable[ContentType | str] | None = None,
        exclude_subject_ids: Iterable[str] | None = None,
    ) -> list[SimilarityResult]:
        """Return the owner's content most similar to *query_text*, best first."""
        await require_consent(self._consent, owner_id)
        options = self._engine.build_options(
            limit=limit,
            threshold=threshold,
            content_types=content_types,
            exclude_subject_ids=exclude_subject_ids,
        )
        return await self._engine.search(owner_id, query_text, options)

    async def index_subject(
        self,
        owner_id: str,
        subject_id: str,
        content_type: ContentType | str,
        text: str,
    ) -> None:
        """Embed and store one subject's text as a one-item re-index.

        Raises the item's error if it failed.
        """
        await require_consent(self._consent, owner_id)
        try:
            item = ReindexItem(
                subject_id=subject_id, content_type=ContentType(content_type), text=text
            )
        except ValueError as exc:
            raise InvalidQueryError(str(exc)) from exc
        result = await self._reindexer.run(owner_id, [item])
        if result.errors:
            raise result.errors[0].exception

    async def reindex_all(
        self,
        owner_id: str,
        subject_ids: Sequence[str],
        on_progress: ProgressCallback | None = None,
        *,
        content_type: ContentType = ContentType.RELATIONSHIP_CONTEXT,
        cancel: asyncio.Event | None = None,
    ) -> ReindexResult:
        """Rebuild embeddings for *subject_ids* from the subject source."""
        await require_consent(self._consent, owner_id)
        return await self._reindexer.reindex(
            owner_id, subject_ids, on_progress, content_type=content_type, cancel=cancel
        )

    async def reindex_items(
        self,
        owner_id: str,
        items: Sequence[ReindexItem],
        on_progress: ProgressCallback | None = None,
        *,
        cancel: asyncio.Event | None = None,
    ) -> ReindexResult:
        """Rebuild embeddings for items whose text the caller already has."""
        await require_consent(self._consent, owner_id)
        return await self._reindexer.run(owner_id, items, on_progress, cancel=cancel)

    # ------------------------------------------------------------------
    # Removal (never consent-gated)
    # ------------------------------------------------------------------

    async def remove_subject(self, owner_id: str, subject_id: str) -> None:
        """Hard-delete every document for the subject."""
        await self._engine.remove(owner_id, subject_id)

    async def remove_all_for_owner(self, owner_id: str) -> int:
        """Erase all of the owner's vectors.  Returns the count for audit logging."""
        deleted = await self._engine.remove_all(owner_id)
        logger.info("Erased %d vector documents for owner", deleted)
        return deleted

    # ------------------------------------------------------------------
    # Health / lifecycle
    # ------------------------------------------------------------------

    async def health_check(self) -> EmbeddingHealth:
        """Check that the embedding model answers."""
        return await self._client.health_check()

    async def connect(self) -> None:
        await self._store.connect()

    async def close(self) -> None:
        """Close the store and the provider, if it holds resources."""
        await self._store.close()
        close = getattr(self._client.provider, "close", None)
        if close is not None:
            await close()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def engine(self) -> SimilaritySearchEngine:
        return self._engine

    @property
    def store(self) -> VectorStore:
        return self._store

    @property
    def settings(self) -> SearchSettings:
        return self._settings

    @property
    def stats(self) -> SearchStats:
        return self._engine.stats
