"""
reviewforge.engine.scoring — Session XP calculation
====================================================

Pure calculation.  No DB I/O, no HTTP I/O.

Layers, all additive::

    base
    + per substantive comment  (quality tier + category bonus, or flat rate)
    + fast review bonus        (started < 1h after the latest push)
    + thorough bonus           (> 5 comments)
    + deep bonus               (> 10 comments, on top of thorough)
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass

from reviewforge.constants import (
    BASE_SESSION_XP,
    CATEGORY_BONUS,
    DEEP_BONUS,
    DEEP_COMMENT_COUNT,
    FAST_REVIEW_BONUS,
    FAST_REVIEW_WINDOW,
    FLAT_COMMENT_XP,
    QUALITY_TIERS,
    THOROUGH_BONUS,
    THOROUGH_COMMENT_COUNT,
)
from reviewforge.engine.classifier import CommentQuality
from reviewforge.engine.sessions import ReviewSession

logger = logging.getLogger(__name__)

__all__ = ["ScoredSession", "score_session", "comment_xp", "is_fast"]


# ---------------------------------------------------------------------------
# ScoredSession — a session plus its XP
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ScoredSession:
    session: ReviewSession
    xp_earned: int
    repository_id: int = 0


# ---------------------------------------------------------------------------
# Per-comment XP
# ---------------------------------------------------------------------------
def _quality_tier_xp(score: int) -> int | None:
    for low, high, xp in QUALITY_TIERS:
        if low <= score <= high:
            return xp
    return None


def comment_xp(quality: CommentQuality | None) -> int:
    """XP for one substantive comment.

    Falls back to the flat rate when *quality* is missing or malformed
    (unknown category, score outside 1..10, non-integer score).
    """
    if quality is None:
        return FLAT_COMMENT_XP

    score = quality.score
    if isinstance(score, bool) or not isinstance(score, int):
        return FLAT_COMMENT_XP
    category_bonus = CATEGORY_BONUS.get(quality.category)
    tier_xp = _quality_tier_xp(score)
    if category_bonus is None or tier_xp is None:
        logger.debug("Malformed comment quality %r — using flat rate", quality)
        return FLAT_COMMENT_XP
    return tier_xp + category_bonus


def is_fast(session: ReviewSession) -> bool:
    elapsed = session.elapsed_since_last_commit
    return elapsed is not None and elapsed < FAST_REVIEW_WINDOW


# ---------------------------------------------------------------------------
# Main scoring function
# ---------------------------------------------------------------------------
def score_session(
    session: ReviewSession,
    comment_quality: Mapping[str, CommentQuality] | None = None,
) -> int:
    """Compute the XP earned by *session*.

    Parameters
    ----------
    session:
        An eligible review session.
    comment_quality:
        Optional quality judgements keyed by comment ``source_event_id``.
        Comments without an entry score at the flat rate.

    Returns
    -------
    int
        Non-negative XP.  Never raises on bad quality data.
    """
    quality = comment_quality or {}
    xp = BASE_SESSION_XP

    for comment_id in session.comment_ids:
        xp += comment_xp(quality.get(comment_id))

    # Sessions built without ids still carry a substantive count
    xp += FLAT_COMMENT_XP * max(
        0, session.substantive_comment_count - len(session.comment_ids)
    )

    if is_fast(session):
        xp += FAST_REVIEW_BONUS
    if session.comment_count > THOROUGH_COMMENT_COUNT:
        xp += THOROUGH_BONUS
    if session.comment_count > DEEP_COMMENT_COUNT:
        xp += DEEP_BONUS

    return max(xp, 0)
