"""
reviewforge.database.seed — Achievement Catalog Seeder
=======================================================

Loads the achievement catalog from ``reviewforge/seeds/achievements.yaml``
into the ``achievements`` table.

Idempotent — only inserts ids that don't already exist.  Definitions edited
in the database afterwards are never overwritten.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from sqlalchemy import Engine

from reviewforge.database.engine import get_session
from reviewforge.database.models import AchievementDefinition, RuleType

logger = logging.getLogger(__name__)

# Resolve the seeds directory relative to the package root
_SEEDS_DIR = Path(__file__).resolve().parent.parent / "seeds"


def load_achievement_catalog(path: str | Path | None = None) -> list[dict[str, Any]]:
    """Read the achievement catalog YAML and return its entries.

    Entries with an unknown ``rule_type`` are rejected with ``ValueError``
    so a typo in the catalog fails at startup instead of never unlocking.
    """
    catalog_path = Path(path) if path is not None else _SEEDS_DIR / "achievements.yaml"
    if not catalog_path.exists():
        logger.warning("Seed file not found: %s", catalog_path)
        return []

    with open(catalog_path, encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}

    entries: list[dict[str, Any]] = list(data.get("achievements") or [])
    valid_rules = {r.value for r in RuleType}
    for entry in entries:
        if entry.get("rule_type") not in valid_rules:
            raise ValueError(
                f"Achievement {entry.get('id')!r} has unknown rule_type "
                f"{entry.get('rule_type')!r}"
            )
    return entries


def seed_achievements(engine: Engine, path: str | Path | None = None) -> int:
    """Insert catalog definitions that don't yet exist.

    Returns the number of rows inserted.
    """
    entries = load_achievement_catalog(path)
    inserted = 0
    with get_session(engine) as session:
        for a in entries:
            if session.get(AchievementDefinition, a["id"]) is not None:
                continue
            session.add(AchievementDefinition(
                id=a["id"],
                name=a["name"],
                description=a.get("description", ""),
                emoji=a.get("emoji", ""),
                xp_reward=int(a.get("xp_reward", 0)),
                rarity=a.get("rarity", "common"),
                rule_type=a["rule_type"],
                rule_params=dict(a.get("rule_params") or {}),
                active=bool(a.get("active", True)),
            ))
            inserted += 1

    if inserted:
        logger.info("Seeded %d achievement definitions.", inserted)
    return inserted
