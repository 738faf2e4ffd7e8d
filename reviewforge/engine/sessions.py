"""
reviewforge.engine.sessions — Review Session Segmenter
=======================================================

Folds the ordered event stream of ONE pull request into bounded review
sessions, one stream per reviewer.

A reviewer's session ends when:

* the PR author pushes a commit (the code under review changed), or
* the reviewer has been idle for longer than :data:`IDLE_GAP`.

Sessions with nothing to credit (no substantive comment and no state
change) and rubber-stamp approvals are discarded rather than scored at
zero.  Bot accounts (``*[bot]``) still bound sessions with their commits
but never review.  The fold is pure: no I/O, no shared state between pull
requests.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from reviewforge.constants import (
    BOT_LOGIN_SUFFIX,
    IDLE_GAP,
    RUBBER_STAMP_WINDOW,
    SUBSTANTIVE_COMMENT_CHARS,
)
from reviewforge.database.models import EventKind, ReviewState
from reviewforge.engine.events import RawEvent, ordering_key

logger = logging.getLogger(__name__)

__all__ = ["ReviewSession", "segment_pull_request", "is_substantive", "is_bot_login"]

_STATE_CHANGES = frozenset({ReviewState.APPROVED, ReviewState.CHANGES_REQUESTED})


def is_substantive(body: str | None) -> bool:
    """A comment is substantive when its trimmed body exceeds the threshold."""
    return len((body or "").strip()) > SUBSTANTIVE_COMMENT_CHARS


# ---------------------------------------------------------------------------
# Output type
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ReviewSession:
    """One bounded unit of a reviewer's activity on a pull request."""

    pull_request_id: int
    reviewer: str
    window_start: datetime
    window_end: datetime
    comment_count: int
    substantive_comment_count: int
    state_change: str | None
    elapsed_since_last_commit: timedelta | None
    comment_ids: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Accumulator
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class _SessionDraft:
    reviewer: str
    window_start: datetime
    window_end: datetime
    last_commit_at: datetime | None
    comment_count: int = 0
    substantive_count: int = 0
    state_change: str | None = None
    comment_ids: list[str] = field(default_factory=list)

    def absorb(self, event: RawEvent) -> None:
        self.window_end = max(self.window_end, event.timestamp)

        if event.kind == EventKind.COMMENT_POSTED:
            counts_as_comment = True
        else:
            # A review only counts as a comment when it carries a body
            counts_as_comment = bool(event.trimmed_body)
            if event.review_state in _STATE_CHANGES:
                self.state_change = event.review_state

        if counts_as_comment:
            self.comment_count += 1
            if is_substantive(event.body):
                self.substantive_count += 1
                self.comment_ids.append(event.source_event_id)

    def is_eligible(self) -> bool:
        if self.substantive_count == 0 and self.state_change is None:
            return False
        rubber_stamp = (
            self.state_change == ReviewState.APPROVED
            and self.comment_count == 0
            and self.window_end - self.window_start < RUBBER_STAMP_WINDOW
        )
        return not rubber_stamp

    def freeze(self, pull_request_id: int) -> ReviewSession:
        elapsed = None
        if self.last_commit_at is not None:
            elapsed = self.window_start - self.last_commit_at
        return ReviewSession(
            pull_request_id=pull_request_id,
            reviewer=self.reviewer,
            window_start=self.window_start,
            window_end=self.window_end,
            comment_count=self.comment_count,
            substantive_comment_count=self.substantive_count,
            state_change=str(self.state_change) if self.state_change else None,
            elapsed_since_last_commit=elapsed,
            comment_ids=tuple(self.comment_ids),
        )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def _usable(event: RawEvent) -> bool:
    if event.timestamp is None:
        logger.warning("Dropping event %s: no timestamp", event.source_event_id)
        return False
    # Commits without a linked account still move the fast-review baseline
    if event.actor is None and event.kind != EventKind.COMMIT_PUSHED:
        logger.warning("Dropping event %s: no actor", event.source_event_id)
        return False
    return True


def is_bot_login(login: str | None) -> bool:
    """GitHub App accounts end in ``[bot]`` and are never credited."""
    return login is not None and login.lower().endswith(BOT_LOGIN_SUFFIX)


def _same_login(a: str | None, b: str | None) -> bool:
    return a is not None and b is not None and a.lower() == b.lower()


def segment_pull_request(
    events: Iterable[RawEvent],
    *,
    pull_request_id: int,
    pr_author: str | None,
) -> list[ReviewSession]:
    """Segment one pull request's events into eligible review sessions.

    Parameters
    ----------
    events:
        All stored events of the pull request, in any order.
    pull_request_id:
        Copied onto every produced session.
    pr_author:
        Login of the PR author.  When ``None`` every commit is treated as
        an author push.

    Returns
    -------
    list[ReviewSession]
        Ordered by ``(window_start, reviewer)``.  Sessions of the same
        reviewer never overlap.
    """
    ordered = sorted((e for e in events if _usable(e)), key=ordering_key)

    drafts: dict[str, _SessionDraft] = {}
    finished: list[_SessionDraft] = []
    last_commit_at: datetime | None = None

    for event in ordered:
        if event.kind == EventKind.COMMIT_PUSHED:
            last_commit_at = event.timestamp
            if pr_author is None or _same_login(event.actor, pr_author):
                finished.extend(drafts.values())
                drafts.clear()
            continue

        reviewer = event.actor
        if _same_login(reviewer, pr_author) or is_bot_login(reviewer):
            continue

        draft = drafts.get(reviewer)
        if draft is not None and event.timestamp - draft.window_end > IDLE_GAP:
            finished.append(draft)
            draft = None
        if draft is None:
            draft = _SessionDraft(
                reviewer=reviewer,
                window_start=event.timestamp,
                window_end=event.timestamp,
                last_commit_at=last_commit_at,
            )
            drafts[reviewer] = draft
        draft.absorb(event)

    finished.extend(drafts.values())

    sessions = [d.freeze(pull_request_id) for d in finished if d.is_eligible()]
    sessions.sort(key=lambda s: (s.window_start, s.reviewer))
    return sessions
