"""
tests/test_query_service.py — Read-side queries
================================================
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from helpers import T0, comment, commit, ingest, review
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from reviewforge.database.models import Repository, User
from reviewforge.services.locks import RepoLocks
from reviewforge.services.pipeline_service import reprocess_pull_requests
from reviewforge.services.query_service import (
    Period,
    get_leaderboard,
    get_season_leaderboard,
    get_sessions,
    get_sync_status,
    get_user_aggregate,
    get_user_rank,
    period_start,
)
from reviewforge.services.sync_service import RepositoryNotTrackedError

NOW = T0 + timedelta(days=1)


@pytest.fixture
def populated(seeded_engine):
    recent = ingest(seeded_engine, "acme/api", 1, "author", [
        commit("a1", T0),
        *[comment(i, "alice", T0 + timedelta(minutes=30)) for i in range(1, 4)],
    ])
    old = ingest(seeded_engine, "acme/web", 2, "author", [
        comment(10, "alice", T0 - timedelta(days=10)),
    ])
    reprocess_pull_requests(seeded_engine, [recent, old], now=NOW)
    return seeded_engine


@pytest.fixture
def board(seeded_engine):
    api = ingest(seeded_engine, "acme/api", 1, "author", [
        commit("a1", T0),
        *[comment(i, "alice", T0 + timedelta(minutes=30)) for i in range(1, 4)],
        comment(20, "bob", T0 + timedelta(hours=2)),
        comment(21, "renovate[bot]", T0 + timedelta(hours=3)),
    ])
    web = ingest(seeded_engine, "acme/web", 2, "dependabot[bot]", [
        comment(30, "bob", T0 - timedelta(days=10)),
        review(31, "bob", T0 - timedelta(days=10, minutes=-5), "approved"),
    ])
    reprocess_pull_requests(seeded_engine, [api, web], now=NOW)
    return seeded_engine


class TestPeriods:
    def test_trailing_windows(self):
        assert period_start(Period.ALL, NOW) is None
        assert period_start(Period.DAY, NOW) == NOW - timedelta(days=1)
        assert period_start(Period.WEEK, NOW) == NOW - timedelta(days=7)
        assert period_start(Period.MONTH, NOW) == NOW - timedelta(days=30)
        assert period_start("year", NOW) == NOW - timedelta(days=365)

    def test_unknown_period(self):
        with pytest.raises(ValueError):
            period_start("fortnight", NOW)


class TestGetSessions:
    def test_all_sessions_oldest_first(self, populated):
        sessions = get_sessions(populated, "alice")
        assert [s.xp_earned for s in sessions] == [15, 35]
        assert sessions[1].session.elapsed_since_last_commit == timedelta(minutes=30)
        assert sessions[1].session.window_start == T0 + timedelta(minutes=30)

    def test_repository_filter(self, populated):
        sessions = get_sessions(populated, "alice", repo="acme/web")
        assert [s.xp_earned for s in sessions] == [15]

    def test_period_filter(self, populated):
        sessions = get_sessions(populated, "alice", period=Period.WEEK, now=NOW)
        assert [s.xp_earned for s in sessions] == [35]

    def test_unknown_user_is_empty(self, populated):
        assert get_sessions(populated, "nobody") == []

    def test_untracked_repository(self, populated):
        with pytest.raises(RepositoryNotTrackedError):
            get_sessions(populated, "alice", repo="acme/ghost")


class TestGetUserAggregate:
    def test_unfiltered_includes_rewards(self, populated):
        summary = get_user_aggregate(populated, "alice")
        assert summary.xp == 50 + 50       # sessions + first_review
        assert summary.level == 2
        assert summary.sessions == 2
        assert summary.achievements == ("first_review",)

    def test_filtered_sums_session_xp(self, populated):
        summary = get_user_aggregate(populated, "alice", period=Period.WEEK, now=NOW)
        assert summary.xp == 35
        assert summary.sessions == 1

    def test_unknown_user(self, populated):
        assert get_user_aggregate(populated, "nobody") is None


class TestSyncStatus:
    def test_idle_repository(self, populated):
        with Session(populated) as session:
            session.execute(
                update(Repository).where(Repository.name == "api").values(last_synced_at=NOW)
            )
            session.commit()

        status = get_sync_status(populated, RepoLocks(), "acme/api")
        assert status.repository == "acme/api"
        assert status.last_synced_at == NOW
        assert status.tracked_since is not None
        assert not status.is_sync_in_progress

    def test_in_progress_while_lock_held(self, populated):
        async def go():
            locks = RepoLocks()
            async with locks.hold(1):
                during = get_sync_status(populated, locks, "acme/api")
            after = get_sync_status(populated, locks, "acme/api")
            return during, after

        during, after = asyncio.run(go())
        assert during.is_sync_in_progress
        assert not after.is_sync_in_progress

    def test_untracked(self, populated):
        with pytest.raises(RepositoryNotTrackedError):
            get_sync_status(populated, RepoLocks(), "acme/ghost")


def _board(entries):
    return [(e.rank, e.login, e.xp, e.sessions) for e in entries]


class TestLeaderboard:
    def test_all_time_uses_persisted_xp(self, board):
        # alice 35 + first_review; bob 15 + 15 + first_review
        assert _board(get_leaderboard(board)) == [
            (1, "alice", 85, 1),
            (2, "bob", 80, 2),
        ]

    def test_bots_and_non_reviewers_are_absent(self, board):
        entries = get_leaderboard(board)
        assert all(not e.login.endswith("[bot]") for e in entries)
        assert "author" not in {e.login for e in entries}
        with Session(board) as session:
            logins = set(session.scalars(select(User.login)).all())
        assert logins == {"alice", "bob", "author"}

    def test_period_sums_session_xp(self, board):
        entries = get_leaderboard(board, period=Period.WEEK, now=NOW)
        assert _board(entries) == [(1, "alice", 35, 1), (2, "bob", 15, 1)]
        assert entries[0].level == 1
        assert entries[0].substantive_comments == 3

    def test_repository_filter(self, board):
        assert _board(get_leaderboard(board, repo="acme/web")) == [(1, "bob", 15, 1)]

    def test_limit(self, board):
        assert [e.login for e in get_leaderboard(board, limit=1)] == ["alice"]
        assert get_leaderboard(board, limit=0) == []

    def test_untracked_repository(self, board):
        with pytest.raises(RepositoryNotTrackedError):
            get_leaderboard(board, repo="acme/ghost")

    def test_season_window_is_half_open(self, board):
        season = get_season_leaderboard(board, T0 - timedelta(days=11), T0 - timedelta(days=9))
        assert _board(season) == [(1, "bob", 15, 1)]
        assert get_season_leaderboard(board, T0, T0 + timedelta(minutes=30)) == []
        assert get_season_leaderboard(board, T0, T0) == []


class TestUserRank:
    def test_rank_follows_the_leaderboard(self, board):
        assert get_user_rank(board, "alice") == 1
        assert get_user_rank(board, "Bob") == 2
        assert get_user_rank(board, "bob", repo="acme/web") == 1
        assert get_user_rank(board, "alice", repo="acme/web") is None

    def test_absent_users(self, board):
        assert get_user_rank(board, "nobody") is None
        assert get_user_rank(board, "author") is None
        assert get_user_rank(board, "renovate[bot]") is None
