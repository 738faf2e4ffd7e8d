"""
reviewforge.services.achievement_service — Unlock persistence & notifications
==============================================================================

Bridges the pure evaluator (:mod:`reviewforge.engine.achievements`) and the
``user_achievements`` table.

* Unlocks are inserted with SAVEPOINT + ``IntegrityError`` on the
  ``(user_id, achievement_id)`` primary key, so a racing or repeated
  evaluation never creates a second row.
* Unlocks are never deleted.
* Delivery is external: a bot polls :func:`get_pending_notifications` and
  acknowledges with :func:`mark_notified`.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from reviewforge.database.engine import get_session
from reviewforge.database.models import AchievementDefinition, User, UserAchievement
from reviewforge.engine.achievements import AchievementRule, UnlockRecord
from reviewforge.engine.events import as_utc

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PendingNotification:
    user_id: int
    login: str
    achievement_id: str
    name: str
    description: str
    emoji: str
    rarity: str
    xp_reward: int
    unlocked_at: datetime


# ---------------------------------------------------------------------------
# Session-level helpers (called inside a caller's transaction)
# ---------------------------------------------------------------------------
def load_rules(session: Session) -> list[AchievementRule]:
    """Active catalog entries in id order."""
    rows = session.scalars(
        select(AchievementDefinition)
        .where(AchievementDefinition.active.is_(True))
        .order_by(AchievementDefinition.id)
    ).all()
    return [AchievementRule.from_row(r) for r in rows]


def get_unlocked_ids(session: Session, user_id: int) -> set[str]:
    rows = session.scalars(
        select(UserAchievement.achievement_id).where(UserAchievement.user_id == user_id)
    ).all()
    return set(rows)


def reward_xp_for(session: Session, user_id: int) -> int:
    """Sum of ``xp_reward`` over everything *user_id* has unlocked."""
    total = session.scalar(
        select(func.coalesce(func.sum(AchievementDefinition.xp_reward), 0))
        .join(UserAchievement, UserAchievement.achievement_id == AchievementDefinition.id)
        .where(UserAchievement.user_id == user_id)
    )
    return int(total or 0)


def persist_unlocks(session: Session, unlocks: Iterable[UnlockRecord]) -> list[UnlockRecord]:
    """Insert unlock rows idempotently; return those actually inserted."""
    inserted: list[UnlockRecord] = []
    for unlock in unlocks:
        row = UserAchievement(
            user_id=unlock.user_id,
            achievement_id=unlock.achievement_id,
            unlocked_at=unlock.unlocked_at,
            notified=False,
        )
        try:
            with session.begin_nested():   # SAVEPOINT
                session.add(row)
                session.flush()
        except IntegrityError:
            # Already unlocked; the SAVEPOINT was rolled back, outer txn lives
            logger.debug(
                "Duplicate unlock skipped: user=%d achievement=%s",
                unlock.user_id, unlock.achievement_id,
            )
            continue
        inserted.append(unlock)
    return inserted


# ---------------------------------------------------------------------------
# Notification queue
# ---------------------------------------------------------------------------
def get_pending_notifications(engine: Engine, limit: int = 50) -> list[PendingNotification]:
    """Unnotified unlocks, oldest first."""
    with get_session(engine) as session:
        rows = session.execute(
            select(UserAchievement, User, AchievementDefinition)
            .join(User, User.id == UserAchievement.user_id)
            .join(AchievementDefinition, AchievementDefinition.id == UserAchievement.achievement_id)
            .where(UserAchievement.notified.is_(False))
            .order_by(UserAchievement.unlocked_at, UserAchievement.user_id, UserAchievement.achievement_id)
            .limit(limit)
        ).all()
        return [
            PendingNotification(
                user_id=user.id,
                login=user.login,
                achievement_id=defn.id,
                name=defn.name,
                description=defn.description,
                emoji=defn.emoji,
                rarity=defn.rarity,
                xp_reward=defn.xp_reward,
                unlocked_at=as_utc(ua.unlocked_at),
            )
            for ua, user, defn in rows
        ]


def mark_notified(engine: Engine, pairs: Iterable[tuple[int, str]]) -> int:
    """Flag ``(user_id, achievement_id)`` unlocks as delivered.

    Returns the number of rows that changed.  Unknown or already-notified
    pairs are ignored.
    """
    changed = 0
    with get_session(engine) as session:
        for user_id, achievement_id in pairs:
            result = session.execute(
                update(UserAchievement)
                .where(
                    UserAchievement.user_id == user_id,
                    UserAchievement.achievement_id == achievement_id,
                    UserAchievement.notified.is_(False),
                )
                .values(notified=True)
            )
            changed += result.rowcount or 0
    if changed:
        logger.info("Marked %d achievement notifications as delivered", changed)
    return changed
