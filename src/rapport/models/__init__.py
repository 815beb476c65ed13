"""SQLModel database models for rapport."""

from rapport.models.vectors import VectorDocument, VectorDocumentBase

__all__ = [
    "VectorDocument",
    "VectorDocumentBase",
]
