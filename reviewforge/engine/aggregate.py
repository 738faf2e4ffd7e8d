"""
reviewforge.engine.aggregate — Scored sessions → UserAggregate
===============================================================

Folds every scored session of one reviewer into the cumulative counters
the achievement evaluator and the leaderboard read.  Author counters come
from the pull requests the same user opened.

Everything is derived: the fold is pure and gives the same result for the
same sessions regardless of input order.  Days are UTC calendar days.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta

from reviewforge.constants import NIGHT_HOURS, level_for_xp
from reviewforge.database.models import ReviewState
from reviewforge.engine.scoring import ScoredSession, is_fast

__all__ = ["UserAggregate", "fold_sessions", "streaks"]


@dataclass(slots=True)
class UserAggregate:
    """Cumulative per-user counters, reviewer and author side.

    ``session_xp`` is the sum of session XP only.  ``xp`` adds the rewards of
    unlocked achievements; achievement predicates never read ``xp`` so an
    unlock can't trigger another unlock through its own reward.
    """

    xp: int = 0
    level: int = 1
    session_xp: int = 0
    review_sessions: int = 0
    fast_sessions: int = 0
    night_sessions: int = 0
    substantive_comments: int = 0
    approvals: int = 0
    changes_requested: int = 0
    max_sessions_in_day: int = 0
    current_streak_days: int = 0
    longest_streak_days: int = 0
    last_review_day: date | None = None
    prs_authored: int = 0
    prs_merged: int = 0

    def apply_rewards(self, reward_xp: int) -> None:
        """Set ``xp`` / ``level`` from session XP plus achievement rewards."""
        self.xp = self.session_xp + max(reward_xp, 0)
        self.level = level_for_xp(self.xp)


def streaks(days: Iterable[date]) -> tuple[int, int]:
    """Return ``(current, longest)`` runs of consecutive days.

    ``current`` is the run ending on the latest day present.
    """
    ordered = sorted(set(days))
    if not ordered:
        return 0, 0

    longest = run = 1
    for prev, day in zip(ordered, ordered[1:]):
        run = run + 1 if day - prev == timedelta(days=1) else 1
        longest = max(longest, run)
    return run, longest


def fold_sessions(
    sessions: Iterable[ScoredSession],
    reward_xp: int = 0,
    *,
    authored: Iterable[datetime | None] = (),
) -> UserAggregate:
    """Fold one user's scored sessions into a :class:`UserAggregate`.

    *authored* holds the ``merged_at`` of every pull request the user opened
    (``None`` while unmerged) and feeds the author counters.
    """
    agg = UserAggregate()
    per_day: Counter[date] = Counter()

    for scored in sessions:
        s = scored.session
        start = s.window_start.astimezone(UTC)

        agg.review_sessions += 1
        agg.session_xp += scored.xp_earned
        agg.substantive_comments += s.substantive_comment_count
        if is_fast(s):
            agg.fast_sessions += 1
        if start.hour in NIGHT_HOURS:
            agg.night_sessions += 1
        if s.state_change == ReviewState.APPROVED:
            agg.approvals += 1
        elif s.state_change == ReviewState.CHANGES_REQUESTED:
            agg.changes_requested += 1
        per_day[start.date()] += 1

    if per_day:
        agg.max_sessions_in_day = max(per_day.values())
        agg.current_streak_days, agg.longest_streak_days = streaks(per_day)
        agg.last_review_day = max(per_day)

    for merged_at in authored:
        agg.prs_authored += 1
        if merged_at is not None:
            agg.prs_merged += 1

    agg.apply_rewards(reward_xp)
    return agg
