"""VectorDocument model — one stored embedding per (owner, subject, content type)."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, Column, DateTime, Index, text
from sqlmodel import Field, SQLModel


class VectorDocumentBase(SQLModel):
    """Base fields for a vector document. Subclass with ``table=True`` for a concrete table.

    ``owner_id`` is the privacy partition: every read and delete filters on it.
    At most one active row exists per ``(owner_id, subject_id, content_type)``.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    owner_id: str = Field(index=True)
    subject_id: str = Field(index=True)
    content_type: str = Field(index=True)
    embedding: list[float] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    searchable_content: str = Field(default="")
    model_name: str = Field(default="")
    dimensions: int = Field(default=0)
    generated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    content_hash: str = Field(default="")
    schema_version: str = Field(default="")
    last_updated: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    is_active: bool = Field(default=True, index=True)


class VectorDocument(VectorDocumentBase, table=True):
    """Default vector document table — ``rapport_vectors``."""

    __tablename__ = "rapport_vectors"
    __table_args__ = (
        Index("ix_rapport_vectors_owner_subject_type", "owner_id", "subject_id", "content_type"),
        # Soft-deleted rows fall outside the index, so only one active row per tuple
        Index(
            "ux_rapport_vectors_active_tuple",
            "owner_id",
            "subject_id",
            "content_type",
            unique=True,
            sqlite_where=text("is_active"),
            postgresql_where=text("is_active"),
        ),
    )
