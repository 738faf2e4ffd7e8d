"""
tests/test_achievement_service.py — Unlock persistence & notification queue
============================================================================
"""

from __future__ import annotations

from datetime import timedelta

from helpers import T0, comment, ingest
from sqlalchemy.orm import Session

from reviewforge.database.models import AchievementDefinition
from reviewforge.engine.achievements import UnlockRecord
from reviewforge.services.achievement_service import (
    get_pending_notifications,
    get_unlocked_ids,
    load_rules,
    mark_notified,
    persist_unlocks,
    reward_xp_for,
)
from reviewforge.services.pipeline_service import get_or_create_user, reprocess_pull_requests

NOW = T0 + timedelta(days=1)


class TestPersistUnlocks:
    def test_duplicate_insert_is_dropped(self, seeded_engine):
        with Session(seeded_engine) as session:
            user = get_or_create_user(session, "alice")
            record = UnlockRecord(user_id=user.id, achievement_id="first_review", unlocked_at=NOW)
            assert persist_unlocks(session, [record]) == [record]
            session.commit()

        with Session(seeded_engine) as session:
            second = UnlockRecord(user_id=record.user_id, achievement_id="first_review", unlocked_at=NOW)
            other = UnlockRecord(user_id=record.user_id, achievement_id="marathon", unlocked_at=NOW)
            assert persist_unlocks(session, [second, other]) == [other]
            assert get_unlocked_ids(session, record.user_id) == {"first_review", "marathon"}
            assert reward_xp_for(session, record.user_id) == 50 + 200
            session.commit()

    def test_load_rules_skips_inactive(self, seeded_engine):
        with Session(seeded_engine) as session:
            session.get(AchievementDefinition, "marathon").active = False
            session.flush()
            ids = [r.id for r in load_rules(session)]
        assert "marathon" not in ids
        assert ids == sorted(ids)
        assert len(ids) == 10


class TestNotificationQueue:
    def test_pending_then_acknowledged(self, seeded_engine):
        pr = ingest(seeded_engine, "acme/api", 1, None, [comment(1, "alice", T0)])
        reprocess_pull_requests(seeded_engine, [pr], now=NOW)

        (pending,) = get_pending_notifications(seeded_engine)
        assert pending.login == "alice"
        assert pending.achievement_id == "first_review"
        assert pending.xp_reward == 50
        assert pending.unlocked_at == NOW

        assert mark_notified(seeded_engine, [(pending.user_id, pending.achievement_id)]) == 1
        assert mark_notified(seeded_engine, [(pending.user_id, pending.achievement_id)]) == 0
        assert mark_notified(seeded_engine, [(999, "nope")]) == 0
        assert get_pending_notifications(seeded_engine) == []

    def test_reprocessing_does_not_requeue(self, seeded_engine):
        pr = ingest(seeded_engine, "acme/api", 1, None, [comment(1, "alice", T0)])
        reprocess_pull_requests(seeded_engine, [pr], now=NOW)
        (pending,) = get_pending_notifications(seeded_engine)
        mark_notified(seeded_engine, [(pending.user_id, pending.achievement_id)])

        reprocess_pull_requests(seeded_engine, [pr], now=NOW + timedelta(hours=1))
        assert get_pending_notifications(seeded_engine) == []
