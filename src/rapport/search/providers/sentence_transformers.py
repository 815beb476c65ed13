"""Local embeddings via sentence-transformers (all-mpnet-base-v2 gives 768 dims)."""

from __future__ import annotations

import asyncio
from typing import Any

try:
    from sentence_transformers import SentenceTransformer

    _HAS_SENTENCE_TRANSFORMERS = True
except ImportError:  # pragma: no cover
    _HAS_SENTENCE_TRANSFORMERS = False

DEFAULT_LOCAL_MODEL = "all-mpnet-base-v2"


class SentenceTransformerEmbedding:
    """Runs a sentence-transformers model in-process.

    Useful for development and for deployments that must not send notes to a
    remote API.  The model loads on first use; encoding is CPU-bound and is
    pushed to a worker thread with :func:`asyncio.to_thread`.  Output vectors
    are unit length.
    """

    def __init__(self, model_name: str = DEFAULT_LOCAL_MODEL) -> None:
        if not _HAS_SENTENCE_TRANSFORMERS:
            msg = (
                "SentenceTransformerEmbedding needs sentence-transformers: "
                "pip install rapport[search]"
            )
            raise ImportError(msg)
        self._model_name = model_name
        self._model: SentenceTransformer | None = None

    async def embed(self, text: str) -> list[float]:
        (vector,) = await asyncio.to_thread(self._encode, [text])
        return vector

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        return await asyncio.to_thread(self._encode, texts)

    @property
    def dimensions(self) -> int:
        size = self._loaded().get_sentence_embedding_dimension()
        if size is None:
            msg = f"Model {self._model_name!r} did not report its embedding size"
            raise RuntimeError(msg)
        return size

    @property
    def model_name(self) -> str:
        return self._model_name

    def _loaded(self) -> SentenceTransformer:
        if self._model is None:
            self._model = SentenceTransformer(self._model_name)
        return self._model

    def _encode(self, texts: list[str]) -> list[list[float]]:
        matrix: Any = self._loaded().encode(texts, normalize_embeddings=True)
        return [row.tolist() for row in matrix]
