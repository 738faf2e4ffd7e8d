"""
reviewforge.services.pipeline_service — Segment → Score → Aggregate → Unlock
=============================================================================

Glues the pure engines to the database.  Given a set of pull requests it:

1. Loads each pull request's stored events.
2. Segments them into review sessions and scores each one.
3. Replaces the pull request's ``review_sessions`` rows.
4. Refolds the aggregate of every reviewer whose sessions changed, and of
   the pull request author (bot accounts are never credited).
5. Evaluates achievements and persists new unlocks.

Everything for one call runs inside the caller's session so a failure
leaves no partial state.  Sessions are a pure function of the event log,
so reprocessing the same pull request twice is harmless.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from reviewforge.database.engine import get_session
from reviewforge.database.models import (
    EventKind,
    PullRequest,
    RawEventRow,
    ReviewSessionRow,
    User,
)
from reviewforge.engine.achievements import AchievementRule, UnlockRecord, evaluate_achievements
from reviewforge.engine.aggregate import UserAggregate, fold_sessions
from reviewforge.engine.classifier import CommentClassifier, NoopClassifier, build_quality_map
from reviewforge.engine.events import RawEvent, as_utc
from reviewforge.engine.scoring import ScoredSession, score_session
from reviewforge.engine.sessions import ReviewSession, is_bot_login, segment_pull_request
from reviewforge.services.achievement_service import (
    get_unlocked_ids,
    load_rules,
    persist_unlocks,
    reward_xp_for,
)

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

# UserAggregate field → users column (identical names)
_AGGREGATE_COLUMNS = (
    "xp",
    "level",
    "session_xp",
    "review_sessions",
    "fast_sessions",
    "night_sessions",
    "substantive_comments",
    "approvals",
    "changes_requested",
    "max_sessions_in_day",
    "current_streak_days",
    "longest_streak_days",
    "last_review_day",
    "prs_authored",
    "prs_merged",
)


@dataclass(slots=True)
class PipelineResult:
    pull_requests: int = 0
    sessions_scored: int = 0
    users_refreshed: int = 0
    unlocks: list[UnlockRecord] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Row ↔ value conversions
# ---------------------------------------------------------------------------
def get_or_create_user(session: Session, login: str) -> User:
    """Fetch or insert the User row keyed by GitHub login."""
    user = session.scalar(select(User).where(User.login == login))
    if user is None:
        user = User(login=login)
        session.add(user)
        session.flush()
    return user


def row_to_scored(row: ReviewSessionRow, reviewer: str) -> ScoredSession:
    elapsed = None
    if row.elapsed_since_last_commit_seconds is not None:
        elapsed = timedelta(seconds=row.elapsed_since_last_commit_seconds)
    return ScoredSession(
        session=ReviewSession(
            pull_request_id=row.pull_request_id,
            reviewer=reviewer,
            window_start=as_utc(row.window_start),
            window_end=as_utc(row.window_end),
            comment_count=row.comment_count,
            substantive_comment_count=row.substantive_comment_count,
            state_change=row.state_change,
            elapsed_since_last_commit=elapsed,
        ),
        xp_earned=row.xp_earned,
        repository_id=row.repository_id,
    )


def write_aggregate(user: User, aggregate: UserAggregate) -> None:
    for name in _AGGREGATE_COLUMNS:
        setattr(user, name, getattr(aggregate, name))


def reset_aggregate(user: User) -> None:
    write_aggregate(user, UserAggregate())


# ---------------------------------------------------------------------------
# Per pull request
# ---------------------------------------------------------------------------
def load_events(session: Session, pull_request_id: int) -> list[RawEvent]:
    rows = session.scalars(
        select(RawEventRow)
        .where(RawEventRow.pull_request_id == pull_request_id)
        .order_by(RawEventRow.timestamp, RawEventRow.id)
    ).all()
    return [RawEvent.from_row(r) for r in rows]


def rescore_pull_request(
    session: Session,
    pr: PullRequest,
    classifier: CommentClassifier,
) -> tuple[list[ScoredSession], set[int]]:
    """Replace *pr*'s session rows with a fresh segmentation.

    Returns the new scored sessions and the ids of every user whose
    counters may have changed (previous and new reviewers, and the author).
    """
    previous_reviewers = set(session.scalars(
        select(ReviewSessionRow.reviewer_id).where(ReviewSessionRow.pull_request_id == pr.id)
    ).all())
    session.execute(delete(ReviewSessionRow).where(ReviewSessionRow.pull_request_id == pr.id))

    events = load_events(session, pr.id)
    sessions = segment_pull_request(events, pull_request_id=pr.id, pr_author=pr.author)

    comments = [e for e in events if e.kind != EventKind.COMMIT_PUSHED]
    quality = build_quality_map(classifier, comments)

    scored: list[ScoredSession] = []
    touched = set(previous_reviewers)
    for s in sessions:
        xp = score_session(s, quality)
        user = get_or_create_user(session, s.reviewer)
        elapsed = s.elapsed_since_last_commit
        session.add(ReviewSessionRow(
            repository_id=pr.repository_id,
            pull_request_id=pr.id,
            reviewer_id=user.id,
            window_start=s.window_start,
            window_end=s.window_end,
            comment_count=s.comment_count,
            substantive_comment_count=s.substantive_comment_count,
            state_change=s.state_change,
            elapsed_since_last_commit_seconds=(
                int(elapsed.total_seconds()) if elapsed is not None else None
            ),
            xp_earned=xp,
        ))
        scored.append(ScoredSession(session=s, xp_earned=xp, repository_id=pr.repository_id))
        touched.add(user.id)

    if pr.author is not None and not is_bot_login(pr.author):
        touched.add(get_or_create_user(session, pr.author).id)

    session.flush()
    logger.debug("PR %d (#%d): %d sessions scored", pr.id, pr.number, len(scored))
    return scored, touched


# ---------------------------------------------------------------------------
# Per user
# ---------------------------------------------------------------------------
def refresh_user(
    session: Session,
    user: User,
    rules: Iterable[AchievementRule],
    *,
    now: datetime,
) -> list[UnlockRecord]:
    """Refold *user*'s reviewer and author counters and evaluate unlocks."""
    rows = session.scalars(
        select(ReviewSessionRow)
        .where(ReviewSessionRow.reviewer_id == user.id)
        .order_by(ReviewSessionRow.window_start, ReviewSessionRow.id)
    ).all()
    authored = session.scalars(
        select(PullRequest.merged_at).where(func.lower(PullRequest.author) == user.login.lower())
    ).all()
    aggregate = fold_sessions((row_to_scored(r, user.login) for r in rows), authored=authored)

    candidates = evaluate_achievements(
        user.id, aggregate, rules, get_unlocked_ids(session, user.id), now=now,
    )
    unlocked = persist_unlocks(session, candidates)

    aggregate.apply_rewards(reward_xp_for(session, user.id))
    write_aggregate(user, aggregate)
    return unlocked


def refresh_users(
    session: Session,
    user_ids: Iterable[int],
    *,
    now: datetime,
) -> tuple[int, list[UnlockRecord]]:
    rules = load_rules(session)
    unlocks: list[UnlockRecord] = []
    count = 0
    for user_id in sorted(set(user_ids)):
        user = session.get(User, user_id)
        if user is None:
            continue
        unlocks.extend(refresh_user(session, user, rules, now=now))
        count += 1
    return count, unlocks


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def reprocess_pull_requests(
    engine: Engine,
    pull_request_ids: Iterable[int],
    classifier: CommentClassifier | None = None,
    *,
    now: datetime | None = None,
) -> PipelineResult:
    """Rescore *pull_request_ids* and refresh every affected reviewer.

    Runs as one transaction.  Unknown ids are ignored.
    """
    classifier = classifier or NoopClassifier()
    now = now or datetime.now(UTC)
    result = PipelineResult()

    with get_session(engine) as session:
        touched: set[int] = set()
        for pr_id in sorted(set(pull_request_ids)):
            pr = session.get(PullRequest, pr_id)
            if pr is None:
                logger.warning("Skipping unknown pull request id %d", pr_id)
                continue
            scored, users = rescore_pull_request(session, pr, classifier)
            result.pull_requests += 1
            result.sessions_scored += len(scored)
            touched |= users

        result.users_refreshed, result.unlocks = refresh_users(session, touched, now=now)

    if result.unlocks:
        logger.info(
            "Pipeline: %d PRs, %d sessions, %d new unlocks",
            result.pull_requests, result.sessions_scored, len(result.unlocks),
        )
    return result
