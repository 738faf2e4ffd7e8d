"""
reviewforge.engine.achievements — Achievement Evaluator
========================================================

Handler-registry implementation of the achievement rule table.  Each
``rule_type`` maps to a pure handler that receives the definition's
``rule_params`` and the reviewer's :class:`UserAggregate`.

This module is pure calculation — no database I/O.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from reviewforge.database.models import RuleType
from reviewforge.engine.aggregate import UserAggregate

if TYPE_CHECKING:
    from reviewforge.database.models import AchievementDefinition

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Counters a rule may read.  ``xp`` and ``level`` include achievement
# rewards and are excluded so one evaluation pass is a fixpoint.
# ---------------------------------------------------------------------------
VALID_METRICS: frozenset[str] = frozenset({
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
    "prs_authored",
    "prs_merged",
})

# special_condition name → aggregate counter
SPECIAL_CONDITIONS: dict[str, str] = {
    "sessions_in_one_day": "max_sessions_in_day",
    "night_sessions": "night_sessions",
    "fast_sessions": "fast_sessions",
}


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class AchievementRule:
    """Evaluator-side view of one catalog entry."""

    id: str
    rule_type: str
    rule_params: dict[str, Any] = field(default_factory=dict)
    name: str = ""
    xp_reward: int = 0
    active: bool = True

    @classmethod
    def from_row(cls, row: AchievementDefinition) -> AchievementRule:
        return cls(
            id=row.id,
            rule_type=row.rule_type,
            rule_params=dict(row.rule_params or {}),
            name=row.name,
            xp_reward=row.xp_reward or 0,
            active=bool(row.active),
        )


@dataclass(frozen=True, slots=True)
class UnlockRecord:
    user_id: int
    achievement_id: str
    unlocked_at: datetime


# ---------------------------------------------------------------------------
# Rule handlers: (params, aggregate) → bool
# ---------------------------------------------------------------------------
def _metric(aggregate: UserAggregate, name: str) -> int:
    if name not in VALID_METRICS:
        raise ValueError(f"Unknown achievement metric {name!r}")
    return getattr(aggregate, name)


def _check_milestone_count(params: dict, aggregate: UserAggregate) -> bool:
    """Fires when a counter reaches a threshold.

    Params: {"metric": "review_sessions", "threshold": 10}
    """
    return _metric(aggregate, params["metric"]) >= int(params["threshold"])


def _check_streak(params: dict, aggregate: UserAggregate) -> bool:
    """Fires when the reviewer has reviewed on N consecutive UTC days.

    Params: {"days": 7}
    """
    metric = params.get("metric", "longest_streak_days")
    return _metric(aggregate, metric) >= int(params["days"])


def _check_special_condition(params: dict, aggregate: UserAggregate) -> bool:
    """Fires on a named condition reaching a count.

    Params: {"condition": "sessions_in_one_day", "count": 5}
    """
    condition = params["condition"]
    metric = SPECIAL_CONDITIONS.get(condition)
    if metric is None:
        raise ValueError(f"Unknown special condition {condition!r}")
    return _metric(aggregate, metric) >= int(params["count"])


# ---------------------------------------------------------------------------
# Handler registry
# ---------------------------------------------------------------------------
RULE_HANDLERS: dict[str, Callable[[dict, UserAggregate], bool]] = {
    RuleType.MILESTONE_COUNT: _check_milestone_count,
    RuleType.STREAK: _check_streak,
    RuleType.SPECIAL_CONDITION: _check_special_condition,
}


# ---------------------------------------------------------------------------
# Main evaluation function
# ---------------------------------------------------------------------------
def evaluate_achievements(
    user_id: int,
    aggregate: UserAggregate,
    definitions: Iterable[AchievementRule],
    unlocked: Collection[str],
    *,
    now: datetime,
) -> list[UnlockRecord]:
    """Return unlocks newly earned by *aggregate*.

    Parameters
    ----------
    user_id : Reviewer the unlocks belong to.
    aggregate : The reviewer's current counters.
    definitions : Achievement rules to evaluate.
    unlocked : Ids the reviewer already holds; these are never re-emitted.
    now : Timestamp stamped on every returned record.

    A handler that raises is skipped for this cycle; the remaining rules are
    still evaluated.
    """
    newly: list[UnlockRecord] = []

    for rule in definitions:
        if not rule.active or rule.id in unlocked:
            continue

        handler = RULE_HANDLERS.get(rule.rule_type)
        if handler is None:
            logger.warning(
                "Achievement %s has unknown rule_type %r — skipped",
                rule.id, rule.rule_type,
            )
            continue

        try:
            earned = handler(rule.rule_params or {}, aggregate)
        except Exception:
            logger.warning(
                "Achievement %s failed to evaluate for user %d — skipped this cycle",
                rule.id, user_id,
                exc_info=True,
            )
            continue

        if earned:
            newly.append(UnlockRecord(user_id=user_id, achievement_id=rule.id, unlocked_at=now))
            logger.info("Achievement unlocked: %s for user %d", rule.id, user_id)

    return newly
