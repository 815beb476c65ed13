"""OpenAI embeddings behind the EmbeddingProvider protocol."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any

from rapport.exceptions import EmbeddingUnavailableError

try:
    import openai
    from openai import AsyncOpenAI

    _HAS_OPENAI = True
except ImportError:  # pragma: no cover
    _HAS_OPENAI = False

if TYPE_CHECKING:
    from openai import AsyncOpenAI as AsyncOpenAIType

    from rapport.config import SearchSettings

# Native vector length of each model, used when no ``dimensions`` is requested.
_NATIVE_DIMENSIONS: dict[str, int] = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}

# HTTP statuses that warrant one more attempt.
_TRANSIENT_STATUS = frozenset({408, 409, 429, 500, 502, 503, 504})


def _translate(exc: Exception) -> EmbeddingUnavailableError:
    """Map an SDK exception onto :class:`EmbeddingUnavailableError`."""
    if isinstance(exc, openai.APIConnectionError):
        # APITimeoutError is a subclass
        return EmbeddingUnavailableError(
            f"OpenAI embeddings request failed: {exc}", retryable=True
        )
    if isinstance(exc, openai.APIStatusError):
        return EmbeddingUnavailableError(
            f"OpenAI embeddings request returned {exc.status_code}",
            retryable=exc.status_code in _TRANSIENT_STATUS,
        )
    return EmbeddingUnavailableError(f"OpenAI embeddings request failed: {exc}")


class OpenAIEmbedding:
    """Embeds text with ``AsyncOpenAI().embeddings.create``.

    The SDK's own retry loop is disabled by default because
    :class:`~rapport.search.client.EmbeddingClient` already retries
    transient failures once.  Connection errors, timeouts, 429 and 5xx
    responses come back as retryable :class:`EmbeddingUnavailableError`;
    other statuses and short responses are not retryable.

    Install with ``pip install rapport[openai]``.
    """

    def __init__(
        self,
        *,
        model: str = "text-embedding-3-small",
        dimensions: int | None = None,
        api_key: str | None = None,
        max_retries: int = 0,
        timeout: float = 60.0,
        batch_size: int = 512,
    ) -> None:
        if not _HAS_OPENAI:
            msg = "OpenAIEmbedding needs the openai package: pip install rapport[openai]"
            raise ImportError(msg)

        key = api_key or os.environ.get("OPENAI_API_KEY")
        if not key:
            msg = "No OpenAI API key: pass api_key= or export OPENAI_API_KEY"
            raise ValueError(msg)

        self._model = model
        self._requested_dimensions = dimensions
        self._batch_size = batch_size
        self._client: AsyncOpenAIType = AsyncOpenAI(
            api_key=key, max_retries=max_retries, timeout=timeout
        )

    @classmethod
    def from_settings(
        cls, settings: SearchSettings, *, api_key: str | None = None
    ) -> OpenAIEmbedding:
        """Provider for the model, dimensions and timeout in *settings*."""
        return cls(
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
            api_key=api_key,
            timeout=settings.embedding_timeout,
        )

    async def embed(self, text: str) -> list[float]:
        (vector,) = await self._request([text])
        return vector

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """One request per *batch_size* texts; output order follows input order."""
        vectors: list[list[float]] = []
        for offset in range(0, len(texts), self._batch_size):
            vectors += await self._request(texts[offset : offset + self._batch_size])
        return vectors

    @property
    def dimensions(self) -> int:
        if self._requested_dimensions is not None:
            return self._requested_dimensions
        try:
            return _NATIVE_DIMENSIONS[self._model]
        except KeyError:
            msg = f"Unknown default dimensions for {self._model!r}; pass dimensions="
            raise ValueError(msg) from None

    @property
    def model_name(self) -> str:
        return self._model

    async def close(self) -> None:
        await self._client.close()

    async def _request(self, texts: list[str]) -> list[list[float]]:
        params: dict[str, Any] = {"model": self._model, "input": texts}
        if self._requested_dimensions is not None:
            params["dimensions"] = self._requested_dimensions

        try:
            response = await self._client.embeddings.create(**params)
        except openai.OpenAIError as exc:
            raise _translate(exc) from exc

        items = getattr(response, "data", None) or []
        if len(items) != len(texts):
            msg = (
                "Malformed OpenAI embeddings response: "
                f"{len(items)} vectors for {len(texts)} inputs"
            )
            raise EmbeddingUnavailableError(msg)
        return [list(item.embedding) for item in sorted(items, key=lambda item: item.index)]
