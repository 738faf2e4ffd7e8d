"""
reviewforge.constants — Shared Constants & Helpers
===================================================

Single source of truth for scoring constants and the leveling formula.
Import from here instead of duplicating in services and engines.

These values are deliberately NOT runtime-tunable: a full recalculation
must reproduce the exact same XP totals from the same event log.
"""

from __future__ import annotations

import math
from datetime import timedelta


# ---------------------------------------------------------------------------
# Session segmentation
# ---------------------------------------------------------------------------
IDLE_GAP = timedelta(hours=24)
RUBBER_STAMP_WINDOW = timedelta(minutes=1)
SUBSTANTIVE_COMMENT_CHARS = 20

# Hours (UTC, half-open) that count as "night" for the night_owl achievement
NIGHT_HOURS = range(0, 6)

# GitHub App accounts (dependabot[bot], renovate[bot]) never earn credit
BOT_LOGIN_SUFFIX = "[bot]"


# ---------------------------------------------------------------------------
# Session XP
# ---------------------------------------------------------------------------
BASE_SESSION_XP = 10
FLAT_COMMENT_XP = 5

FAST_REVIEW_WINDOW = timedelta(hours=1)
FAST_REVIEW_BONUS = 10

THOROUGH_COMMENT_COUNT = 5
THOROUGH_BONUS = 5
DEEP_COMMENT_COUNT = 10
DEEP_BONUS = 10

# (lowest score, highest score, xp), inclusive bounds
QUALITY_TIERS: tuple[tuple[int, int, int], ...] = (
    (1, 3, 2),
    (4, 6, 5),
    (7, 10, 8),
)

CATEGORY_BONUS: dict[str, int] = {
    "logic": 3,
    "structural": 2,
    "cosmetic": 0,
    "nit": 0,
    "question": 0,
}


# ---------------------------------------------------------------------------
# Leveling formula
# ---------------------------------------------------------------------------
XP_PER_LEVEL_UNIT = 100


def level_for_xp(total_xp: int) -> int:
    """Level reached with *total_xp* experience.

    Uses the square-root curve::

        level = floor(sqrt(total_xp / 100)) + 1

    Computed with integer arithmetic so the result is exact at every
    threshold (``level_for_xp(400) == 3``, ``level_for_xp(399) == 2``).
    Negative input is treated as zero.
    """
    if total_xp <= 0:
        return 1
    return math.isqrt(total_xp // XP_PER_LEVEL_UNIT) + 1


def xp_for_level(level: int) -> int:
    """Minimum total XP required to reach *level* (inverse of :func:`level_for_xp`)."""
    if level <= 1:
        return 0
    return XP_PER_LEVEL_UNIT * (level - 1) ** 2
