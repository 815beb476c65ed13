"""BatchReindexer — re-embeds subjects in bounded chunks with partial-failure tracking."""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from rapport.search.types import (
    ContentType,
    ReindexFailure,
    ReindexItem,
    ReindexResult,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping, Sequence

    from rapport.search._engine import SimilaritySearchEngine
    from rapport.search.protocols import SubjectSource

    ProgressCallback = Callable[[float], Awaitable[None] | None]

logger = logging.getLogger(__name__)


class _Outcome(Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"


# ------------------------------------------------------------------
# Context building
# ------------------------------------------------------------------


def _join(values: Any) -> str:
    if not values:
        return ""
    if isinstance(values, str):
        return values
    if isinstance(values, dict):
        values = values.values()
    return ", ".join(str(v) for v in values if v)


def build_relationship_context(record: Mapping[str, Any]) -> str:
    """Flatten a relationship record into ``"Label: value. Label: value"`` text.

    Empty parts are omitted, so a record with only a name yields
    ``"Person: Ada"``.
    """
    location = record.get("location") or {}
    demographics = record.get("demographics") or {}
    communication = record.get("communication") or {}
    city_country = " ".join(
        p for p in (location.get("city", ""), location.get("country", "")) if p
    )
    parts = [
        ("Person", record.get("display_name") or record.get("displayName") or ""),
        (
            "Relationship type",
            record.get("relationship_type") or record.get("relationshipType") or "",
        ),
        ("Roles", _join(record.get("roles"))),
        ("Tags", _join(record.get("tags"))),
        ("Notes", record.get("notes") or ""),
        ("Location", city_country),
        ("Interests", _join(demographics.get("interests"))),
        (
            "Communication preferences",
            _join(communication.get("preferred_methods") or communication.get("preferredMethods")),
        ),
        ("Important dates", _join(record.get("important_dates") or record.get("importantDates"))),
    ]
    return ". ".join(
        f"{label}: {str(value).strip()}" for label, value in parts if str(value).strip()
    )


# ------------------------------------------------------------------
# Pipeline
# ------------------------------------------------------------------


class BatchReindexer:
    """Runs embed-and-upsert over many subjects, *batch_size* at a time.

    Items within a chunk run concurrently; one item's failure is logged and
    counted without disturbing its siblings.  Progress is reported after
    each chunk, and an optional :class:`asyncio.Event` is checked before
    each chunk for cooperative cancellation.  Single-subject updates go
    through the same path as a one-element batch.
    """

    def __init__(
        self,
        engine: SimilaritySearchEngine,
        *,
        source: SubjectSource | None = None,
        batch_size: int | None = None,
    ) -> None:
        self._engine = engine
        self._source = source
        if batch_size is None:
            batch_size = engine.settings.batch_size
        if batch_size < 1:
            msg = f"batch_size must be positive, got {batch_size}"
            raise ValueError(msg)
        self._batch_size = batch_size

    async def reindex(
        self,
        owner_id: str,
        subject_ids: Sequence[str],
        progress: ProgressCallback | None = None,
        *,
        content_type: ContentType = ContentType.RELATIONSHIP_CONTEXT,
        cancel: asyncio.Event | None = None,
    ) -> ReindexResult:
        """Fetch each subject from the source, build its context and re-embed it.

        A subject id listed more than once is processed once.
        """
        if self._source is None:
            msg = "Cannot reindex by subject id: no subject source configured"
            raise RuntimeError(msg)
        source = self._source

        async def work(subject_id: str) -> _Outcome:
            record = await source.fetch(owner_id, subject_id)
            if record is None:
                return _Outcome.SKIPPED
            text = build_relationship_context(record)
            if not text:
                return _Outcome.SKIPPED
            await self._engine.store(owner_id, subject_id, content_type, text)
            return _Outcome.SUCCEEDED

        units = list(dict.fromkeys(subject_ids))
        return await self._run(owner_id, units, lambda s: s, work, progress, cancel)

    async def run(
        self,
        owner_id: str,
        items: Sequence[ReindexItem],
        progress: ProgressCallback | None = None,
        *,
        cancel: asyncio.Event | None = None,
    ) -> ReindexResult:
        """Re-embed items whose text the caller already has.

        Repeats of a (subject, content type) pair collapse to the last one given.
        """

        async def work(item: ReindexItem) -> _Outcome:
            await self._engine.store(owner_id, item.subject_id, item.content_type, item.text)
            return _Outcome.SUCCEEDED

        latest = {(item.subject_id, item.content_type): item for item in items}
        return await self._run(
            owner_id, list(latest.values()), lambda i: i.subject_id, work, progress, cancel
        )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _run(
        self,
        owner_id: str,
        units: list[Any],
        subject_of: Callable[[Any], str],
        work: Callable[[Any], Awaitable[_Outcome]],
        progress: ProgressCallback | None,
        cancel: asyncio.Event | None,
    ) -> ReindexResult:
        total = len(units)
        succeeded = failed = skipped = 0
        errors: list[ReindexFailure] = []
        cancelled = False
        if total > 1:
            logger.info("Re-indexing %d subjects in chunks of %d", total, self._batch_size)

        for start in range(0, total, self._batch_size):
            if cancel is not None and cancel.is_set():
                cancelled = True
                logger.info("Re-indexing cancelled after %d of %d subjects", start, total)
                break

            chunk = units[start : start + self._batch_size]
            outcomes = await asyncio.gather(*(self._attempt(work, u) for u in chunk))
            for unit, outcome in zip(chunk, outcomes, strict=True):
                if isinstance(outcome, Exception):
                    failed += 1
                    subject_id = subject_of(unit)
                    logger.warning(
                        "Failed to update embedding for subject %s",
                        subject_id,
                        exc_info=outcome,
                    )
                    errors.append(
                        ReindexFailure(
                            subject_id=subject_id,
                            error=str(outcome) or type(outcome).__name__,
                            timestamp=datetime.now(UTC),
                            exception=outcome,
                        )
                    )
                elif outcome is _Outcome.SKIPPED:
                    skipped += 1
                else:
                    succeeded += 1

            if progress is not None:
                result = progress(min(start + len(chunk), total) / total)
                if inspect.isawaitable(result):
                    await result

        if total > 1:
            logger.info(
                "Re-indexing finished: %d succeeded, %d failed, %d skipped",
                succeeded,
                failed,
                skipped,
            )
        return ReindexResult(
            succeeded=succeeded,
            failed=failed,
            skipped=skipped,
            total=total,
            cancelled=cancelled,
            errors=errors,
        )

    @staticmethod
    async def _attempt(
        work: Callable[[Any], Awaitable[_Outcome]], unit: Any
    ) -> _Outcome | Exception:
        try:
            return await work(unit)
        except Exception as exc:
            return exc
