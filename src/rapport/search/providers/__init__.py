"""Embedding providers — protocol and implementations."""

from rapport.search.protocols import EmbeddingProvider

__all__ = ["EmbeddingProvider"]

# Optional providers, exported only when their dependency is installed.
try:
    from rapport.search.providers.openai import OpenAIEmbedding

    __all__.append("OpenAIEmbedding")
except ImportError:  # pragma: no cover
    pass

try:
    from rapport.search.providers.sentence_transformers import SentenceTransformerEmbedding

    __all__.append("SentenceTransformerEmbedding")
except ImportError:  # pragma: no cover
    pass
