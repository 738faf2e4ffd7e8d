"""
reviewforge.services.categorize_service — LLM comment categorization
=====================================================================

Optional batch job.  Picks up substantive comments (inline comments and
review bodies) that have no category yet, asks an OpenAI-compatible chat
completions endpoint to classify them, and stores ``(category,
quality_score)`` on the event rows.  The affected pull requests are then
rescored so quality-weighted XP takes effect.

Categories:

* ``cosmetic``   — style, formatting, naming, typos
* ``logic``      — bugs, correctness, edge cases, error handling
* ``structural`` — architecture, design, refactoring
* ``nit``        — minor suggestions, opinions
* ``question``   — clarifying questions

Quality score 1–10: 1–3 superficial, 4–6 standard, 7–10 insightful.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Literal

import httpx
from pydantic import BaseModel, ValidationError
from sqlalchemy import func, select

from reviewforge.constants import SUBSTANTIVE_COMMENT_CHARS
from reviewforge.database.engine import get_session, run_db
from reviewforge.database.models import EventKind, RawEventRow
from reviewforge.engine.classifier import StoredQualityClassifier
from reviewforge.services.pipeline_service import reprocess_pull_requests

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from reviewforge.services.locks import RepoLocks

logger = logging.getLogger(__name__)

OPENAI_API = "https://api.openai.com/v1"
MAX_BODY_CHARS = 500

SYSTEM_PROMPT = """You are a code review comment classifier. Analyze each review comment and classify it.

Categories:
- cosmetic: Style, formatting, naming conventions, typos
- logic: Bug fixes, correctness issues, edge cases, error handling
- structural: Architecture, design patterns, refactoring, code organization
- nit: Minor suggestions, nice-to-haves, opinions
- question: Clarifying questions, understanding requests

Quality score (1-10):
- 1-3: Brief/superficial (e.g., "nit: typo", "LGTM")
- 4-6: Standard helpful feedback with clear reasoning
- 7-10: Detailed, insightful, educational, catches subtle bugs

Respond with valid JSON only. Format:
{
  "results": [
    {"index": 0, "category": "logic", "quality_score": 7},
    {"index": 1, "category": "nit", "quality_score": 3}
  ]
}
"""


class CategorizeError(Exception):
    """The categorization endpoint failed or answered garbage."""


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------
class CommentClassification(BaseModel):
    index: int
    category: Literal["cosmetic", "logic", "structural", "nit", "question"]
    quality_score: int


class _ChatMessage(BaseModel):
    content: str = ""


class _ChatChoice(BaseModel):
    message: _ChatMessage


class _ChatResponse(BaseModel):
    choices: list[_ChatChoice]


@dataclass(slots=True)
class CategorizeStats:
    processed: int = 0
    skipped: int = 0
    errors: int = 0
    pull_requests_rescored: int = 0


@dataclass(frozen=True, slots=True)
class CategoryStats:
    total: int
    categorized: int
    by_category: dict[str, int]
    avg_quality: float


@dataclass(frozen=True, slots=True)
class _Pending:
    row_id: int
    pull_request_id: int
    repository_id: int
    body: str


# ---------------------------------------------------------------------------
# DB steps
# ---------------------------------------------------------------------------
def _uncategorized_filter():
    return (
        RawEventRow.kind.in_([EventKind.COMMENT_POSTED.value, EventKind.REVIEW_STATE_CHANGED.value]),
        RawEventRow.category.is_(None),
        RawEventRow.body_length > SUBSTANTIVE_COMMENT_CHARS,
    )


def fetch_uncategorized(engine: Engine, limit: int) -> list[_Pending]:
    """Newest substantive comments without a category."""
    with get_session(engine) as session:
        rows = session.scalars(
            select(RawEventRow)
            .where(*_uncategorized_filter())
            .order_by(RawEventRow.timestamp.desc(), RawEventRow.id.desc())
            .limit(limit)
        ).all()
        return [
            _Pending(
                row_id=r.id,
                pull_request_id=r.pull_request_id,
                repository_id=r.repository_id,
                body=r.body or "",
            )
            for r in rows
        ]


def store_classifications(
    engine: Engine,
    pending: list[_Pending],
    classifications: list[CommentClassification],
) -> CategorizeStats:
    stats = CategorizeStats()
    now = datetime.now(UTC)
    with get_session(engine) as session:
        for c in classifications:
            if not 0 <= c.index < len(pending):
                logger.warning("Invalid index %d in categorization response", c.index)
                stats.errors += 1
                continue
            row = session.get(RawEventRow, pending[c.index].row_id)
            if row is None:
                stats.errors += 1
                continue
            row.category = c.category
            row.quality_score = min(max(c.quality_score, 1), 10)
            row.categorized_at = now
            stats.processed += 1
    stats.skipped = max(len(pending) - stats.processed - stats.errors, 0)
    return stats


def get_category_stats(engine: Engine) -> CategoryStats:
    """Totals over every comment-bearing event."""
    with get_session(engine) as session:
        kinds = [EventKind.COMMENT_POSTED.value, EventKind.REVIEW_STATE_CHANGED.value]
        total = session.scalar(
            select(func.count()).select_from(RawEventRow).where(
                RawEventRow.kind.in_(kinds), RawEventRow.body_length > 0,
            )
        ) or 0
        rows = session.execute(
            select(RawEventRow.category, func.count())
            .where(RawEventRow.category.is_not(None))
            .group_by(RawEventRow.category)
        ).all()
        avg = session.scalar(
            select(func.avg(RawEventRow.quality_score)).where(RawEventRow.quality_score.is_not(None))
        )
    by_category = {category: count for category, count in rows}
    return CategoryStats(
        total=int(total),
        categorized=sum(by_category.values()),
        by_category=by_category,
        avg_quality=float(avg or 0.0),
    )


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------
def build_prompt(bodies: list[str]) -> str:
    parts = ["Classify these code review comments:\n"]
    for i, body in enumerate(bodies):
        text = body if len(body) <= MAX_BODY_CHARS else body[:MAX_BODY_CHARS] + "..."
        parts.append(f"[{i}] {text}\n")
    return "\n".join(parts)


def parse_classifications(content: str) -> list[CommentClassification]:
    """Parse the model's JSON answer.  Malformed entries are dropped."""
    try:
        payload = json.loads(content)
    except json.JSONDecodeError as exc:
        raise CategorizeError(f"JSON parse error: {exc} - content: {content[:200]}") from exc

    results = payload.get("results") if isinstance(payload, dict) else None
    if not isinstance(results, list):
        raise CategorizeError(f"Response has no 'results' list: {content[:200]}")

    parsed: list[CommentClassification] = []
    for item in results:
        try:
            parsed.append(CommentClassification.model_validate(item))
        except ValidationError:
            logger.warning("Dropping malformed classification %r", item)
    return parsed


class CommentCategorizer:
    """Client for an OpenAI-compatible chat completions endpoint."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "gpt-4o-mini",
        base_url: str = OPENAI_API,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 60.0,
    ) -> None:
        self.model = model
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def classify(self, bodies: list[str]) -> list[CommentClassification]:
        request = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_prompt(bodies)},
            ],
            "temperature": 0.3,
            "response_format": {"type": "json_object"},
        }
        response = await self._client.post("/chat/completions", json=request)
        if response.is_error:
            raise CategorizeError(
                f"Categorization API error {response.status_code}: {response.text[:200]}"
            )
        try:
            chat = _ChatResponse.model_validate(response.json())
        except (ValidationError, ValueError) as exc:
            raise CategorizeError(f"Unexpected chat response: {exc}") from exc
        content = chat.choices[0].message.content if chat.choices else ""
        return parse_classifications(content)


# ---------------------------------------------------------------------------
# Batch job
# ---------------------------------------------------------------------------
async def categorize_batch(
    engine: Engine,
    locks: RepoLocks,
    categorizer: CommentCategorizer,
    batch_size: int = 20,
) -> CategorizeStats:
    """Classify one batch of comments and rescore their pull requests."""
    pending = await run_db(fetch_uncategorized, engine, batch_size)
    if not pending:
        logger.info("No uncategorized comments to process")
        return CategorizeStats()

    logger.info("Processing %d uncategorized comments", len(pending))
    classifications = await categorizer.classify([p.body for p in pending])

    repo_ids = {p.repository_id for p in pending}
    async with locks.hold_all(repo_ids):
        stats = await run_db(store_classifications, engine, pending, classifications)
        pr_ids = sorted({p.pull_request_id for p in pending})
        result = await run_db(
            reprocess_pull_requests, engine, pr_ids, StoredQualityClassifier(),
        )
    stats.pull_requests_rescored = result.pull_requests

    logger.info(
        "Categorization complete: %d processed, %d skipped, %d errors",
        stats.processed, stats.skipped, stats.errors,
    )
    return stats
