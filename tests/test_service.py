"""Tests for SemanticSearchService — consent gating, wiring and end-to-end search."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING
from unittest.mock import AsyncMock

import pytest

from rapport import SemanticSearchService, StaticConsent
from rapport.config import SearchSettings
from rapport.consent import ConsentProvider
from rapport.exceptions import (
    ConsentRequiredError,
    EmbeddingUnavailableError,
    InvalidQueryError,
)
from rapport.search.stores.database import DatabaseVectorStore
from rapport.search.types import ContentType, ReindexItem
from tests.conftest import (
    DictSource,
    FailingProvider,
    HashProvider,
    MemoryVectorStore,
    TopicProvider,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

_HASH_SETTINGS = SearchSettings(embedding_dimensions=32, batch_size=4)
_TOPIC_SETTINGS = SearchSettings(embedding_dimensions=16)


def _service(
    provider, store, consent, settings=_HASH_SETTINGS, **kwargs
) -> SemanticSearchService:
    return SemanticSearchService(
        provider=provider, store=store, consent=consent, settings=settings, **kwargs
    )


# ==================================================================
# Consent
# ==================================================================


class TestConsent:
    @pytest.mark.asyncio
    async def test_ai_operations_refused_without_consent(self):
        provider = HashProvider(32)
        store = AsyncMock(spec=MemoryVectorStore)
        service = _service(provider, store, StaticConsent(enabled=False))
        item = ReindexItem("p1", ContentType.LIFE_EVENT, "x")

        with pytest.raises(ConsentRequiredError):
            await service.search("u1", "anything")
        with pytest.raises(ConsentRequiredError):
            await service.embed("u1", "anything", ContentType.LIFE_EVENT)
        with pytest.raises(ConsentRequiredError):
            await service.embed_batch("u1", ["anything"], ContentType.LIFE_EVENT)
        with pytest.raises(ConsentRequiredError):
            await service.index_subject("u1", "p1", ContentType.LIFE_EVENT, "x")
        with pytest.raises(ConsentRequiredError):
            await service.reindex_all("u1", ["p1"])
        with pytest.raises(ConsentRequiredError):
            await service.reindex_items("u1", [item])

        assert provider.calls == []
        assert store.method_calls == []

    @pytest.mark.asyncio
    async def test_consent_checked_before_validation(self):
        service = _service(HashProvider(32), MemoryVectorStore(), StaticConsent(enabled=False))
        with pytest.raises(ConsentRequiredError):
            await service.search("u1", "", limit=0)

    @pytest.mark.asyncio
    async def test_removal_never_needs_consent(self):
        store = MemoryVectorStore()
        consent = StaticConsent(enabled=True)
        service = _service(HashProvider(32), store, consent)
        await service.index_subject("u1", "p1", ContentType.LIFE_EVENT, "moved")
        await service.index_subject("u1", "p2", ContentType.LIFE_EVENT, "graduated")

        consent.set("u1", False)
        await service.remove_subject("u1", "p1")
        assert store.subjects("u1") == {"p2"}
        assert await service.remove_all_for_owner("u1") == 1
        assert store.docs == {}

    @pytest.mark.asyncio
    async def test_per_owner_consent(self):
        store = MemoryVectorStore()
        consent = StaticConsent(enabled=False, overrides={"u1": True})
        service = _service(HashProvider(32), store, consent)

        await service.index_subject("u1", "p1", ContentType.LIFE_EVENT, "moved")
        with pytest.raises(ConsentRequiredError):
            await service.index_subject("u2", "p1", ContentType.LIFE_EVENT, "moved")
        assert store.subjects("u2") == set()

    def test_static_consent_satisfies_protocol(self):
        assert isinstance(StaticConsent(), ConsentProvider)


# ==================================================================
# End to end on the database store
# ==================================================================


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_query_finds_the_related_subject(self, async_engine: AsyncEngine):
        store = DatabaseVectorStore(async_engine, dimensions=16)
        service = _service(TopicProvider(16), store, StaticConsent(True), _TOPIC_SETTINGS)

        await service.index_subject(
            "U1",
            "P1",
            ContentType.INTERACTION_SUMMARY,
            "Had coffee with John, he seemed stressed about work",
        )
        await service.index_subject(
            "U1", "P2", ContentType.LIFE_EVENT, "Grandma's 80th birthday party was wonderful"
        )

        results = await service.search("U1", "work stress", threshold=0.5)

        assert [r.subject_id for r in results] == ["P1"]
        assert results[0].content_type is ContentType.INTERACTION_SUMMARY
        assert results[0].similarity_score == pytest.approx(2 / 6**0.5)
        assert results[0].metadata.model == "fake-topic"

    @pytest.mark.asyncio
    async def test_reindexing_keeps_one_active_document(self, async_engine: AsyncEngine):
        store = DatabaseVectorStore(async_engine, dimensions=16)
        service = _service(TopicProvider(16), store, StaticConsent(True), _TOPIC_SETTINGS)

        await service.index_subject("U1", "P1", ContentType.LIFE_EVENT, "new job")
        await service.index_subject("U1", "P1", ContentType.LIFE_EVENT, "new job, big party")

        assert await store.count("U1") == 1
        doc = await store.get("U1", "P1", ContentType.LIFE_EVENT)
        assert doc is not None
        assert doc.searchable_content == "new job, big party"

    @pytest.mark.asyncio
    async def test_owners_never_see_each_other(self, async_engine: AsyncEngine):
        store = DatabaseVectorStore(async_engine, dimensions=16)
        service = _service(TopicProvider(16), store, StaticConsent(True), _TOPIC_SETTINGS)
        text = "Worried about the office move"

        await service.index_subject("U1", "P1", ContentType.EMOTIONAL_SIGNAL, text)
        await service.index_subject("U2", "P9", ContentType.EMOTIONAL_SIGNAL, text + "!")

        results = await service.search("U1", "work worries", threshold=0.0)

        assert {r.subject_id for r in results} == {"P1"}

    @pytest.mark.asyncio
    async def test_search_sees_writes_immediately(self, async_engine: AsyncEngine):
        store = DatabaseVectorStore(async_engine, dimensions=16)
        service = _service(TopicProvider(16), store, StaticConsent(True), _TOPIC_SETTINGS)

        assert await service.search("U1", "work stress") == []
        await service.index_subject("U1", "P1", ContentType.LIFE_EVENT, "Work stress again")
        assert [r.subject_id for r in await service.search("U1", "work stress")] == ["P1"]


# ==================================================================
# Indexing and re-indexing
# ==================================================================


class TestIndexing:
    @pytest.mark.asyncio
    async def test_index_subject_raises_the_item_error(self):
        provider = FailingProvider(ValueError("bad payload"), dimensions=32)
        store = MemoryVectorStore()
        service = _service(provider, store, StaticConsent(True))

        with pytest.raises(EmbeddingUnavailableError):
            await service.index_subject("u1", "p1", ContentType.LIFE_EVENT, "moved")
        assert store.docs == {}

    @pytest.mark.asyncio
    async def test_index_subject_rejects_unknown_type(self):
        service = _service(HashProvider(32), MemoryVectorStore(), StaticConsent(True))
        with pytest.raises(InvalidQueryError):
            await service.index_subject("u1", "p1", "gossip", "moved")

    @pytest.mark.asyncio
    async def test_reindex_all_from_source(self):
        source = DictSource(
            {("u1", f"p{i}"): {"display_name": f"Friend {i}"} for i in range(6)}
        )
        store = MemoryVectorStore()
        service = _service(HashProvider(32), store, StaticConsent(True), source=source)
        seen: list[float] = []

        result = await service.reindex_all("u1", [f"p{i}" for i in range(7)], seen.append)

        assert (result.succeeded, result.skipped, result.failed) == (6, 1, 0)
        assert seen == pytest.approx([4 / 7, 1.0])
        assert len(store.subjects("u1")) == 6

    @pytest.mark.asyncio
    async def test_reindex_all_can_be_cancelled(self):
        source = DictSource({("u1", f"p{i}"): {"display_name": "x"} for i in range(8)})
        store = MemoryVectorStore()
        service = _service(HashProvider(32), store, StaticConsent(True), source=source)
        cancel = asyncio.Event()

        result = await service.reindex_all(
            "u1", [f"p{i}" for i in range(8)], lambda _: cancel.set(), cancel=cancel
        )

        assert result.cancelled
        assert result.succeeded == 4

    @pytest.mark.asyncio
    async def test_embed_returns_vector_and_metadata(self):
        service = _service(HashProvider(32), MemoryVectorStore(), StaticConsent(True))
        embedded = await service.embed("u1", "moved", ContentType.LIFE_EVENT)
        again = await service.embed("u1", "moved", "life_event")
        assert len(embedded.vector) == 32
        assert embedded.metadata.dimensions == 32
        assert again.cache_hit

    @pytest.mark.asyncio
    async def test_embed_batch_reports_per_text(self):
        service = _service(HashProvider(32), MemoryVectorStore(), StaticConsent(True))
        batch = await service.embed_batch("u1", ["moved", "", "new job"], "life_event")
        assert (batch.succeeded, batch.failed) == (2, 1)
        assert list(batch.errors) == [1]
        assert all(len(v) == 32 for v in batch.vectors if v is not None)

    @pytest.mark.asyncio
    async def test_embed_batch_enforces_size_limit(self):
        settings = _HASH_SETTINGS.with_overrides(max_batch_texts=2)
        service = _service(HashProvider(32), MemoryVectorStore(), StaticConsent(True), settings)
        with pytest.raises(InvalidQueryError, match="cannot exceed 2"):
            await service.embed_batch("u1", ["a", "b", "c"], "life_event")


# ==================================================================
# Wiring and lifecycle
# ==================================================================


class TestWiring:
    @pytest.mark.asyncio
    async def test_create_with_explicit_provider(self, async_engine: AsyncEngine):
        service = SemanticSearchService.create(
            async_engine,
            consent=StaticConsent(True),
            settings=_TOPIC_SETTINGS,
            provider=TopicProvider(16),
        )
        assert isinstance(service.store, DatabaseVectorStore)
        assert service.settings.embedding_dimensions == 16

        await service.index_subject("U1", "P1", ContentType.LIFE_EVENT, "new job")
        assert service.stats.total_searches == 0
        await service.search("U1", "career")
        assert service.stats.total_searches == 1

    def test_create_defaults_to_openai(self, async_engine: AsyncEngine):
        from rapport.search.providers.openai import OpenAIEmbedding

        service = SemanticSearchService.create(
            async_engine,
            consent=StaticConsent(True),
            settings=SearchSettings(),
            api_key="sk-test-key",
        )
        provider = service.engine.generator.client.provider
        assert isinstance(provider, OpenAIEmbedding)
        assert provider.dimensions == 768

    @pytest.mark.asyncio
    async def test_health_check(self):
        service = _service(HashProvider(32), MemoryVectorStore(), StaticConsent(False))
        health = await service.health_check()
        assert health.healthy
        assert health.model == "fake-hash"

    @pytest.mark.asyncio
    async def test_close_releases_store_and_provider(self):
        provider = HashProvider(32)
        provider.close = AsyncMock()
        store = AsyncMock(spec=MemoryVectorStore)
        service = _service(provider, store, StaticConsent(True))

        await service.connect()
        await service.close()

        store.connect.assert_awaited_once()
        store.close.assert_awaited_once()
        provider.close.assert_awaited_once()
