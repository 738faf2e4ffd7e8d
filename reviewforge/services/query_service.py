"""
reviewforge.services.query_service — Read-side queries
=======================================================

What the API, bot and frontend read.  Nothing here writes.

Periods are trailing windows ending now (``week`` = last 7 days), compared
against each session's ``window_start``.

Leaderboards rank by XP, then session count, then login.  Bot accounts
(``*[bot]``) never appear.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import func, select

from reviewforge.constants import BOT_LOGIN_SUFFIX, level_for_xp
from reviewforge.database.engine import get_session
from reviewforge.database.models import Repository, ReviewSessionRow, User, UserAchievement
from reviewforge.engine.events import as_utc
from reviewforge.engine.scoring import ScoredSession
from reviewforge.services.pipeline_service import row_to_scored
from reviewforge.services.sync_service import RepositoryNotTrackedError, find_repository

if TYPE_CHECKING:
    from sqlalchemy import Engine
    from sqlalchemy.orm import Session

    from reviewforge.services.locks import RepoLocks


class Period(enum.StrEnum):
    ALL = "all"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


_PERIOD_SPAN: dict[Period, timedelta] = {
    Period.DAY: timedelta(days=1),
    Period.WEEK: timedelta(days=7),
    Period.MONTH: timedelta(days=30),
    Period.YEAR: timedelta(days=365),
}

DEFAULT_LEADERBOARD_LIMIT = 25


def period_start(period: Period, now: datetime | None = None) -> datetime | None:
    """Start of the trailing window, or ``None`` for :attr:`Period.ALL`."""
    span = _PERIOD_SPAN.get(Period(period))
    if span is None:
        return None
    return (now or datetime.now(UTC)) - span


@dataclass(frozen=True, slots=True)
class UserSummary:
    login: str
    xp: int
    level: int
    sessions: int
    achievements: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class LeaderboardEntry:
    rank: int
    login: str
    xp: int
    level: int
    sessions: int
    substantive_comments: int


@dataclass(frozen=True, slots=True)
class SyncStatus:
    repository: str
    last_synced_at: datetime | None
    tracked_since: datetime | None
    is_sync_in_progress: bool


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _session_rows(
    session: Session,
    user: User,
    repo: str | None,
    period: Period,
    now: datetime | None,
) -> list[ReviewSessionRow]:
    stmt = select(ReviewSessionRow).where(ReviewSessionRow.reviewer_id == user.id)
    if repo is not None:
        repository = find_repository(session, repo)
        if repository is None:
            raise RepositoryNotTrackedError(repo)
        stmt = stmt.where(ReviewSessionRow.repository_id == repository.id)
    start = period_start(period, now)
    if start is not None:
        stmt = stmt.where(ReviewSessionRow.window_start >= start)
    stmt = stmt.order_by(ReviewSessionRow.window_start, ReviewSessionRow.id)
    return list(session.scalars(stmt).all())


def _not_bot(login_column):
    return ~login_column.like(f"%{BOT_LOGIN_SUFFIX}")


def _ranking(
    session: Session,
    repo: str | None,
    start: datetime | None,
    end: datetime | None,
    limit: int | None,
) -> list[LeaderboardEntry]:
    """Ranked reviewers with at least one session in scope."""
    if repo is None and start is None and end is None:
        # All-time across repositories: the persisted aggregate, rewards included
        stmt = (
            select(User.login, User.xp, User.review_sessions, User.substantive_comments)
            .where(User.review_sessions > 0, _not_bot(User.login))
            .order_by(User.xp.desc(), User.review_sessions.desc(), User.login)
        )
    else:
        xp_col = func.coalesce(func.sum(ReviewSessionRow.xp_earned), 0).label("xp")
        sessions_col = func.count(ReviewSessionRow.id).label("sessions")
        comments_col = func.coalesce(
            func.sum(ReviewSessionRow.substantive_comment_count), 0
        ).label("substantive_comments")
        stmt = (
            select(User.login, xp_col, sessions_col, comments_col)
            .join(ReviewSessionRow, ReviewSessionRow.reviewer_id == User.id)
            .where(_not_bot(User.login))
            .group_by(User.id, User.login)
            .order_by(xp_col.desc(), sessions_col.desc(), User.login)
        )
        if repo is not None:
            repository = find_repository(session, repo)
            if repository is None:
                raise RepositoryNotTrackedError(repo)
            stmt = stmt.where(ReviewSessionRow.repository_id == repository.id)
        if start is not None:
            stmt = stmt.where(ReviewSessionRow.window_start >= start)
        if end is not None:
            stmt = stmt.where(ReviewSessionRow.window_start < end)

    if limit is not None:
        stmt = stmt.limit(limit)

    return [
        LeaderboardEntry(
            rank=rank,
            login=login,
            xp=int(xp),
            level=level_for_xp(int(xp)),
            sessions=int(sessions),
            substantive_comments=int(comments),
        )
        for rank, (login, xp, sessions, comments) in enumerate(session.execute(stmt).all(), start=1)
    ]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def get_sessions(
    engine: Engine,
    login: str,
    *,
    repo: str | None = None,
    period: Period = Period.ALL,
    now: datetime | None = None,
) -> list[ScoredSession]:
    """Scored sessions of *login*, oldest first.  Empty for unknown users."""
    with get_session(engine) as session:
        user = session.scalar(select(User).where(User.login == login))
        if user is None:
            return []
        rows = _session_rows(session, user, repo, period, now)
        return [row_to_scored(r, user.login) for r in rows]


def get_user_aggregate(
    engine: Engine,
    login: str,
    *,
    repo: str | None = None,
    period: Period = Period.ALL,
    now: datetime | None = None,
) -> UserSummary | None:
    """Summary for *login*, or ``None`` for an unknown login.

    Unfiltered, this is the persisted aggregate including achievement
    rewards.  With a repository or period filter it sums session XP in scope.
    """
    with get_session(engine) as session:
        user = session.scalar(select(User).where(User.login == login))
        if user is None:
            return None
        achievements = tuple(sorted(session.scalars(
            select(UserAchievement.achievement_id).where(UserAchievement.user_id == user.id)
        ).all()))

        if repo is None and Period(period) is Period.ALL:
            return UserSummary(
                login=user.login,
                xp=user.xp,
                level=user.level,
                sessions=user.review_sessions,
                achievements=achievements,
            )

        rows = _session_rows(session, user, repo, period, now)
        xp = sum(r.xp_earned for r in rows)
        return UserSummary(
            login=user.login,
            xp=xp,
            level=level_for_xp(xp),
            sessions=len(rows),
            achievements=achievements,
        )


def get_sync_status(engine: Engine, locks: RepoLocks, repo: str) -> SyncStatus:
    with get_session(engine) as session:
        repository: Repository | None = find_repository(session, repo)
        if repository is None:
            raise RepositoryNotTrackedError(repo)
        return SyncStatus(
            repository=repository.full_name,
            last_synced_at=as_utc(repository.last_synced_at),
            tracked_since=as_utc(repository.tracked_since),
            is_sync_in_progress=locks.is_locked(repository.id),
        )


def get_leaderboard(
    engine: Engine,
    *,
    repo: str | None = None,
    period: Period = Period.ALL,
    limit: int = DEFAULT_LEADERBOARD_LIMIT,
    now: datetime | None = None,
) -> list[LeaderboardEntry]:
    """Top *limit* reviewers for the period, optionally within one repository.

    Unfiltered, XP is the persisted total including achievement rewards;
    with a repository or period filter it is session XP in scope.
    """
    if limit <= 0:
        return []
    with get_session(engine) as session:
        return _ranking(session, repo, period_start(period, now), None, limit)


def get_season_leaderboard(
    engine: Engine,
    starts_at: datetime,
    ends_at: datetime,
    *,
    repo: str | None = None,
    limit: int = DEFAULT_LEADERBOARD_LIMIT,
) -> list[LeaderboardEntry]:
    """Leaderboard over sessions starting in ``[starts_at, ends_at)``."""
    if limit <= 0 or ends_at <= starts_at:
        return []
    with get_session(engine) as session:
        return _ranking(session, repo, starts_at, ends_at, limit)


def get_user_rank(
    engine: Engine,
    login: str,
    *,
    repo: str | None = None,
    period: Period = Period.ALL,
    now: datetime | None = None,
) -> int | None:
    """1-based position of *login* on the leaderboard, ``None`` if absent."""
    with get_session(engine) as session:
        ranking = _ranking(session, repo, period_start(period, now), None, None)
    wanted = login.lower()
    return next((entry.rank for entry in ranking if entry.login.lower() == wanted), None)
