"""
reviewforge.services.recalc_service — Reset-and-replay recalculation
=====================================================================

Rebuilds every derived row from the stored event log:

1. Take every repository lock (ascending id) so no sync pass interleaves.
2. In ONE transaction: zero all user aggregates, delete all review
   sessions, re-segment and re-score every pull request, refold every
   user and evaluate achievements.

Any exception rolls the whole transaction back and the previous aggregates
stay in place.  Unlock records are never deleted; they are only added.

Running it twice over an unchanged event log produces identical sessions,
aggregates and unlocks.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import delete, select

from reviewforge.database.engine import get_session, run_db
from reviewforge.database.models import PullRequest, Repository, ReviewSessionRow, User
from reviewforge.engine.classifier import CommentClassifier, StoredQualityClassifier
from reviewforge.services.pipeline_service import (
    refresh_users,
    rescore_pull_request,
    reset_aggregate,
)

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from reviewforge.services.locks import RepoLocks

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RecalculationReport:
    repositories: int
    pull_requests: int
    sessions: int
    users: int
    new_unlocks: int
    started_at: datetime
    finished_at: datetime


def replay_all(
    engine: Engine,
    classifier: CommentClassifier | None = None,
    *,
    now: datetime | None = None,
) -> RecalculationReport:
    """Synchronous body of :func:`recalculate_all`.  Caller holds the locks."""
    classifier = classifier or StoredQualityClassifier()
    started_at = now or datetime.now(UTC)

    with get_session(engine) as session:
        repo_count = len(session.scalars(select(Repository.id)).all())

        users = session.scalars(select(User).order_by(User.id)).all()
        for user in users:
            reset_aggregate(user)
        session.execute(delete(ReviewSessionRow))
        session.flush()

        pull_requests = session.scalars(select(PullRequest).order_by(PullRequest.id)).all()
        session_count = 0
        for pr in pull_requests:
            scored, _ = rescore_pull_request(session, pr, classifier)
            session_count += len(scored)

        all_user_ids = session.scalars(select(User.id)).all()
        user_count, unlocks = refresh_users(session, all_user_ids, now=started_at)

    report = RecalculationReport(
        repositories=repo_count,
        pull_requests=len(pull_requests),
        sessions=session_count,
        users=user_count,
        new_unlocks=len(unlocks),
        started_at=started_at,
        finished_at=datetime.now(UTC),
    )
    logger.info(
        "Recalculated %d repositories: %d PRs, %d sessions, %d users, %d new unlocks",
        report.repositories, report.pull_requests, report.sessions,
        report.users, report.new_unlocks,
    )
    return report


async def recalculate_all(
    engine: Engine,
    locks: RepoLocks,
    classifier: CommentClassifier | None = None,
) -> RecalculationReport:
    """Reset and replay every repository under all repository locks."""
    repo_ids = await run_db(_repository_ids, engine)
    async with locks.hold_all(repo_ids):
        return await run_db(replay_all, engine, classifier)


def _repository_ids(engine: Engine) -> list[int]:
    with get_session(engine) as session:
        return list(session.scalars(select(Repository.id)).all())
