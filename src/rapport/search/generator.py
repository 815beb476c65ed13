"""EmbeddingGenerator — cache lookup, then the embedding client on a miss."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from rapport.exceptions import InvalidQueryError
from rapport.search.hashing import fingerprint
from rapport.search.types import BatchEmbedding, Embedded, EmbeddingMetadata, label_of

if TYPE_CHECKING:
    from collections.abc import Sequence

    from rapport.search.cache import EmbeddingCache
    from rapport.search.client import EmbeddingClient
    from rapport.search.types import ContentType

logger = logging.getLogger(__name__)


class EmbeddingGenerator:
    """Produces ``(vector, metadata)`` for a text under a content type.

    The generator never fabricates a vector: client failures propagate as
    :class:`~rapport.exceptions.EmbeddingUnavailableError`.  Two concurrent
    calls for the same fingerprint may both reach the client; the second
    write overwrites the first with an equivalent vector.
    """

    def __init__(self, client: EmbeddingClient, cache: EmbeddingCache) -> None:
        self._client = client
        self._cache = cache

    async def embed(self, text: str, content_type: ContentType | str) -> Embedded:
        if not text or not text.strip():
            msg = "Cannot embed empty text"
            raise InvalidQueryError(msg)

        processed = self._client.preprocess(text, content_type)
        key = fingerprint(content_type, processed)

        entry = self._cache.get_entry(key)
        if entry is not None:
            logger.debug("Embedding cache hit for %s", label_of(content_type))
            return Embedded(
                vector=entry.value,
                metadata=self._metadata(key, entry.inserted_at),
                cache_hit=True,
            )

        logger.debug("Embedding cache miss for %s", label_of(content_type))
        vector = await self._client.embed_text(processed)
        stored = self._cache.put(key, vector)
        return Embedded(vector=vector, metadata=self._metadata(key, stored.inserted_at))

    async def embed_many(
        self, texts: Sequence[str], content_type: ContentType | str
    ) -> BatchEmbedding:
        """Embed *texts* under one content type; failures are reported per index.

        Cached fingerprints are served without a model call, and each distinct
        uncached text is sent once.  Blank texts fail at their own index.
        """
        self._client.check_batch_size(len(texts))
        vectors: list[list[float] | None] = [None] * len(texts)
        errors: dict[int, str] = {}
        pending: dict[str, list[int]] = {}
        processed_of: dict[str, str] = {}
        hits = 0

        for i, text in enumerate(texts):
            if not text or not text.strip():
                errors[i] = "Cannot embed empty text"
                continue
            processed = self._client.preprocess(text, content_type)
            key = fingerprint(content_type, processed)
            cached = self._cache.get(key)
            if cached is not None:
                vectors[i] = cached
                hits += 1
            else:
                pending.setdefault(key, []).append(i)
                processed_of[key] = processed

        if pending:
            keys = list(pending)
            batch = await self._client.embed_texts([processed_of[k] for k in keys])
            for j, key in enumerate(keys):
                vector = batch.vectors[j]
                if vector is not None:
                    self._cache.put(key, vector)
                for i in pending[key]:
                    if vector is None:
                        errors[i] = batch.errors[j]
                    else:
                        vectors[i] = vector

        logger.debug(
            "Embedded %d texts for %s (%d from cache)",
            len(texts),
            label_of(content_type),
            hits,
        )
        return BatchEmbedding(vectors=vectors, errors=dict(sorted(errors.items())))

    @property
    def client(self) -> EmbeddingClient:
        return self._client

    @property
    def cache(self) -> EmbeddingCache:
        return self._cache

    def _metadata(self, key: str, timestamp: float) -> EmbeddingMetadata:
        return EmbeddingMetadata(
            model=self._client.model_name,
            dimensions=self._client.dimensions,
            generated_at=datetime.fromtimestamp(timestamp, UTC),
            content_hash=key,
        )
