"""Vector store implementations."""

from rapport.search.stores.database import DatabaseVectorStore, cosine_distances

__all__ = [
    "DatabaseVectorStore",
    "cosine_distances",
]
