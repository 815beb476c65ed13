"""Consent feed consumed from the privacy collaborator."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

from rapport.exceptions import ConsentRequiredError

if TYPE_CHECKING:
    from collections.abc import Mapping


@runtime_checkable
class ConsentProvider(Protocol):
    """Answers whether an owner has granted AI processing."""

    async def ai_processing_enabled(self, owner_id: str) -> bool: ...


class StaticConsent:
    """Same answer for every owner, with optional per-owner overrides."""

    def __init__(self, enabled: bool = False, overrides: Mapping[str, bool] | None = None) -> None:
        self._enabled = enabled
        self._overrides = dict(overrides or {})

    async def ai_processing_enabled(self, owner_id: str) -> bool:
        return self._overrides.get(owner_id, self._enabled)

    def set(self, owner_id: str, enabled: bool) -> None:
        self._overrides[owner_id] = enabled


async def require_consent(consent: ConsentProvider, owner_id: str) -> None:
    """Raise :class:`ConsentRequiredError` unless *owner_id* allows AI processing."""
    if not await consent.ai_processing_enabled(owner_id):
        msg = "AI processing is disabled for this account"
        raise ConsentRequiredError(msg)
