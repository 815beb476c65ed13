"""EmbeddingClient — the single choke point for calls to the embedding model."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from rapport.exceptions import EmbeddingUnavailableError, InvalidDimensionError, InvalidQueryError
from rapport.search.types import CONTENT_PREFIXES, BatchEmbedding, EmbeddingHealth, label_of

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from rapport.search.protocols import EmbeddingProvider
    from rapport.search.types import ContentType

logger = logging.getLogger(__name__)

_HEALTH_CHECK_TEXT = "Health check test for embedding service"


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, EmbeddingUnavailableError) and exc.retryable


class EmbeddingClient:
    """Wraps an :class:`EmbeddingProvider` with preprocessing and validation.

    Every call to the model goes through :meth:`embed_text` or
    :meth:`embed_texts`, which enforce the per-call timeout, classify
    failures as retryable or not, retry retryable failures at most
    *transient_retries* times with exponential backoff starting at
    *retry_backoff* seconds, and reject vectors whose length differs from
    *dimensions*.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        *,
        dimensions: int,
        max_input_chars: int = 2000,
        timeout: float = 10.0,
        transient_retries: int = 1,
        retry_backoff: float = 0.5,
        max_batch_texts: int = 100,
        batch_chunk_size: int = 10,
    ) -> None:
        self._provider = provider
        self._dimensions = dimensions
        self._max_input_chars = max_input_chars
        self._timeout = timeout
        self._transient_retries = transient_retries
        self._retry_backoff = retry_backoff
        self._max_batch_texts = max_batch_texts
        self._batch_chunk_size = batch_chunk_size

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def preprocess(self, text: str, content_type: ContentType | str) -> str:
        """Trim, prefix with the content-type label, and truncate."""
        processed = text.strip()
        prefix = CONTENT_PREFIXES.get(label_of(content_type))
        if prefix is not None:
            processed = prefix + processed
        return processed[: self._max_input_chars]

    async def generate(self, text: str, content_type: ContentType | str) -> list[float]:
        """Preprocess *text* and embed it."""
        return await self.embed_text(self.preprocess(text, content_type))

    async def embed_text(self, processed: str) -> list[float]:
        """Embed already-preprocessed text, retrying transient failures."""
        return await self._retrying()(self._call, processed)

    async def generate_batch(
        self, texts: Sequence[str], content_type: ContentType | str
    ) -> BatchEmbedding:
        """Preprocess and embed many texts; failures are reported per index."""
        self.check_batch_size(len(texts))
        return await self.embed_texts([self.preprocess(t, content_type) for t in texts])

    async def embed_texts(self, processed: Sequence[str]) -> BatchEmbedding:
        """Embed already-preprocessed texts with one provider request per chunk.

        A chunk whose request fails marks each of its texts as failed; a
        malformed or wrong-sized vector fails only its own index.  Chunks run
        one after another.
        """
        self.check_batch_size(len(processed))
        vectors: list[list[float] | None] = [None] * len(processed)
        errors: dict[int, str] = {}
        size = self._batch_chunk_size
        for start in range(0, len(processed), size):
            chunk = list(processed[start : start + size])
            try:
                raws = await self._retrying()(self._call_batch, chunk)
            except EmbeddingUnavailableError as exc:
                logger.warning("Embedding chunk at %d failed: %s", start, exc)
                for offset in range(len(chunk)):
                    errors[start + offset] = str(exc)
                continue
            for offset, raw in enumerate(raws):
                try:
                    vectors[start + offset] = self._checked(raw)
                except EmbeddingUnavailableError as exc:
                    errors[start + offset] = str(exc)
        logger.info(
            "Batch embedding finished: %d of %d succeeded",
            len(processed) - len(errors),
            len(processed),
        )
        return BatchEmbedding(vectors=vectors, errors=errors)

    def check_batch_size(self, count: int) -> None:
        if count < 1:
            msg = "Batch must contain at least one text"
            raise InvalidQueryError(msg)
        if count > self._max_batch_texts:
            msg = f"Batch size cannot exceed {self._max_batch_texts} texts, got {count}"
            raise InvalidQueryError(msg)

    async def health_check(self) -> EmbeddingHealth:
        """Embed a fixed text once and report, never raising for model failures."""
        start = time.perf_counter()
        try:
            vector = await self._call(_HEALTH_CHECK_TEXT)
        except EmbeddingUnavailableError as exc:
            elapsed = (time.perf_counter() - start) * 1000
            logger.error("Embedding service health check failed: %s", exc)
            return EmbeddingHealth(
                healthy=False,
                model=self.model_name,
                dimensions=0,
                response_time_ms=elapsed,
                error=str(exc),
            )
        elapsed = (time.perf_counter() - start) * 1000
        logger.info("Embedding service healthy (%.1f ms)", elapsed)
        return EmbeddingHealth(
            healthy=True,
            model=self.model_name,
            dimensions=len(vector),
            response_time_ms=elapsed,
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def model_name(self) -> str:
        return self._provider.model_name

    @property
    def provider(self) -> EmbeddingProvider:
        return self._provider

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self._transient_retries + 1),
            wait=wait_exponential(multiplier=self._retry_backoff, max=10),
            retry=retry_if_exception(_is_transient),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    async def _call(self, processed: str) -> list[float]:
        """One attempt: timeout, error translation, dimension check."""
        raw = await self._guarded(lambda: self._provider.embed(processed))
        return self._checked(raw)

    async def _call_batch(self, chunk: list[str]) -> list[Any]:
        """One batch attempt; the provider must answer with one vector per text."""
        raws = await self._guarded(lambda: self._provider.embed_batch(chunk))
        if raws is None or isinstance(raws, (str, bytes)) or len(raws) != len(chunk):
            msg = "Malformed batch embedding response"
            raise EmbeddingUnavailableError(msg, retryable=False)
        return list(raws)

    async def _guarded(self, request: Callable[[], Awaitable[Any]]) -> Any:
        try:
            async with asyncio.timeout(self._timeout):
                return await request()
        except EmbeddingUnavailableError:
            raise
        except TimeoutError as exc:
            msg = f"Embedding request timed out after {self._timeout}s"
            raise EmbeddingUnavailableError(msg, retryable=True) from exc
        except OSError as exc:
            msg = f"Embedding request failed: {exc}"
            raise EmbeddingUnavailableError(msg, retryable=True) from exc
        except Exception as exc:
            msg = f"Embedding generation failed: {exc}"
            raise EmbeddingUnavailableError(msg, retryable=False) from exc

    def _checked(self, raw: Any) -> list[float]:
        if raw is None or isinstance(raw, (str, bytes)):
            msg = "Malformed embedding response"
            raise EmbeddingUnavailableError(msg, retryable=False)
        try:
            vector = [float(x) for x in raw]
        except (TypeError, ValueError) as exc:
            msg = "Malformed embedding response"
            raise EmbeddingUnavailableError(msg, retryable=False) from exc
        if len(vector) != self._dimensions:
            raise InvalidDimensionError(self._dimensions, len(vector))
        return vector
