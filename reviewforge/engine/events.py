"""
reviewforge.engine.events — RawEvent and its ordering key
==========================================================

Every piece of GitHub review activity is normalized into a :class:`RawEvent`
before the segmenter sees it.  The segmenter, scorer and classifier never
touch ORM rows or HTTP payloads directly.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from reviewforge.database.models import EventKind

if TYPE_CHECKING:
    from reviewforge.database.models import RawEventRow

__all__ = ["RawEvent", "EventKind", "ordering_key", "as_utc"]

# Commits sort before comments and reviews that share a timestamp, so a
# push at the exact moment of a comment still bounds the session.
_KIND_RANK: dict[str, int] = {
    EventKind.COMMIT_PUSHED: 0,
    EventKind.COMMENT_POSTED: 1,
    EventKind.REVIEW_STATE_CHANGED: 1,
}


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


# ---------------------------------------------------------------------------
# RawEvent — the normalized activity record
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class RawEvent:
    """One immutable piece of review activity on a pull request.

    ``source_event_id`` takes the form ``commit:<sha>``, ``review:<id>`` or
    ``comment:<id>`` and is unique per repository.  Kind-specific fields
    are ``None`` when they don't apply.
    """

    kind: EventKind
    source_event_id: str
    actor: str | None
    timestamp: datetime | None
    repository_id: int = 0
    pull_request_id: int = 0
    sequence: int = 0

    # COMMIT_PUSHED
    commit_sha: str | None = None

    # REVIEW_STATE_CHANGED
    review_state: str | None = None

    # COMMENT_POSTED and review bodies
    body: str | None = None
    body_length: int = 0
    path: str | None = None
    line: int | None = None
    in_reply_to: int | None = None

    # Stored categorization (comments only)
    category: str | None = None
    quality_score: int | None = None

    @property
    def trimmed_body(self) -> str:
        return (self.body or "").strip()

    @classmethod
    def from_row(cls, row: RawEventRow) -> RawEvent:
        """Build a RawEvent from a ``raw_events`` ORM row."""
        return cls(
            kind=EventKind(row.kind),
            source_event_id=row.source_event_id,
            actor=row.actor,
            timestamp=as_utc(row.timestamp),
            repository_id=row.repository_id,
            pull_request_id=row.pull_request_id,
            sequence=row.sequence or 0,
            commit_sha=row.commit_sha,
            review_state=row.review_state,
            body=row.body,
            body_length=row.body_length or 0,
            path=row.path,
            line=row.line,
            in_reply_to=row.in_reply_to,
            category=row.category,
            quality_score=row.quality_score,
        )


def ordering_key(event: RawEvent) -> tuple[datetime, int, int, str]:
    """Total order over events of one pull request.

    ``(timestamp, kind_rank, sequence, source_event_id)``.  Only call on
    events that have a timestamp.
    """
    assert event.timestamp is not None
    return (
        event.timestamp,
        _KIND_RANK.get(event.kind, 1),
        event.sequence,
        event.source_event_id,
    )
