"""Content fingerprints used as cache keys and for dedup."""

from __future__ import annotations

import hashlib

from rapport.search.types import ContentType, label_of


def content_hash(content: str) -> str:
    """Return a deterministic fingerprint of *content*.

    Not a security primitive.  Callers hash text after preprocessing so that
    texts the model would see identically share a fingerprint.
    """
    return hashlib.sha256(content.encode()).hexdigest()


def fingerprint(content_type: ContentType | str, processed: str) -> str:
    """Fingerprint preprocessed text under its content type label."""
    return content_hash(f"{label_of(content_type)}:{processed}")
