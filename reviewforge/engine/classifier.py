"""
reviewforge.engine.classifier — Comment quality classification
===============================================================

Scoring can weight each substantive comment by an external quality
judgement ``(category, score)``.  The judgement is optional: a classifier
that has nothing to say returns ``None`` and the scorer falls back to the
flat per-comment rate.

Two implementations ship here:

* :class:`NoopClassifier` — never classifies.
* :class:`StoredQualityClassifier` — reads the ``category`` /
  ``quality_score`` written onto comment rows by
  :mod:`reviewforge.services.categorize_service`.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from reviewforge.engine.events import RawEvent

logger = logging.getLogger(__name__)

__all__ = [
    "CommentQuality",
    "CommentClassifier",
    "NoopClassifier",
    "StoredQualityClassifier",
    "build_quality_map",
]


@dataclass(frozen=True, slots=True)
class CommentQuality:
    category: str
    score: int


@runtime_checkable
class CommentClassifier(Protocol):
    def classify(self, comment: RawEvent) -> CommentQuality | None:
        ...


class NoopClassifier:
    """Always returns ``None`` so every comment scores at the flat rate."""

    def classify(self, comment: RawEvent) -> CommentQuality | None:
        return None


class StoredQualityClassifier:
    """Uses the categorization already persisted on the event."""

    def classify(self, comment: RawEvent) -> CommentQuality | None:
        if comment.category is None or comment.quality_score is None:
            return None
        return CommentQuality(category=comment.category, score=comment.quality_score)


def build_quality_map(
    classifier: CommentClassifier,
    comments: Iterable[RawEvent],
) -> dict[str, CommentQuality]:
    """Classify *comments*, keyed by ``source_event_id``.

    A classifier failure on one comment is logged and that comment is left
    out of the map, so it scores at the flat rate.
    """
    result: dict[str, CommentQuality] = {}
    for comment in comments:
        try:
            quality = classifier.classify(comment)
        except Exception:
            logger.warning(
                "Classifier failed on %s — falling back to flat scoring",
                comment.source_event_id,
                exc_info=True,
            )
            continue
        if quality is not None:
            result[comment.source_event_id] = quality
    return result
