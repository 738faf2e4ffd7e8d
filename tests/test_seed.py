"""
tests/test_seed.py — Achievement catalog seeding
=================================================
"""

from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from reviewforge.database.models import AchievementDefinition
from reviewforge.database.seed import seed_achievements


def test_seed_is_idempotent(db_engine):
    assert seed_achievements(db_engine) == 11
    assert seed_achievements(db_engine) == 0
    with Session(db_engine) as session:
        assert session.scalar(select(func.count()).select_from(AchievementDefinition)) == 11


def test_seed_never_overwrites_edits(db_engine):
    seed_achievements(db_engine)
    with Session(db_engine) as session:
        session.get(AchievementDefinition, "review_10").xp_reward = 999
        session.commit()

    seed_achievements(db_engine)
    with Session(db_engine) as session:
        row = session.get(AchievementDefinition, "review_10")
        assert row.xp_reward == 999
        assert row.rule_params == {"metric": "review_sessions", "threshold": 10}


def test_missing_file_seeds_nothing(db_engine, tmp_path):
    assert seed_achievements(db_engine, tmp_path / "absent.yaml") == 0
