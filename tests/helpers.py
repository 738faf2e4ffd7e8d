"""
tests/helpers.py — Event factories shared by the test modules
==============================================================
"""

from __future__ import annotations

import dataclasses
from datetime import UTC, datetime

from reviewforge.database.models import EventKind
from reviewforge.engine.events import RawEvent
from reviewforge.github.client import GitHubPullRequest, GitHubUser
from reviewforge.services.sync_service import insert_events, track_repository, upsert_pull_request

# ---------------------------------------------------------------------------
# Event factories
# ---------------------------------------------------------------------------
T0 = datetime(2026, 3, 2, 12, 0, 0, tzinfo=UTC)

LONG = "This branch misses the empty-list case entirely."   # substantive
SHORT = "nit: typo"                                          # not substantive


def commit(sha: str, at: datetime, actor: str | None = "author", seq: int = 0) -> RawEvent:
    return RawEvent(
        kind=EventKind.COMMIT_PUSHED,
        source_event_id=f"commit:{sha}",
        actor=actor,
        timestamp=at,
        sequence=seq,
        commit_sha=sha,
    )


def comment(cid: int, actor: str | None, at: datetime | None, body: str = LONG, **kw) -> RawEvent:
    return RawEvent(
        kind=EventKind.COMMENT_POSTED,
        source_event_id=f"comment:{cid}",
        actor=actor,
        timestamp=at,
        sequence=cid,
        body=body,
        body_length=len(body.strip()),
        **kw,
    )


def review(rid: int, actor: str, at: datetime, state: str, body: str = "") -> RawEvent:
    return RawEvent(
        kind=EventKind.REVIEW_STATE_CHANGED,
        source_event_id=f"review:{rid}",
        actor=actor,
        timestamp=at,
        sequence=rid,
        review_state=state,
        body=body,
        body_length=len(body.strip()),
    )


# ---------------------------------------------------------------------------
# Database fixtures built from events
# ---------------------------------------------------------------------------
def ingest(engine, full_name: str, number: int, author: str | None, events: list[RawEvent]) -> int:
    """Track *full_name*, store one pull request with *events*; return the PR id."""
    repo = track_repository(engine, full_name)
    pr_id = upsert_pull_request(engine, repo.id, GitHubPullRequest(
        id=number,
        number=number,
        user=GitHubUser(id=1, login=author) if author else None,
        created_at=T0,
        updated_at=T0,
    ))
    insert_events(engine, [
        dataclasses.replace(e, repository_id=repo.id, pull_request_id=pr_id) for e in events
    ])
    return pr_id
