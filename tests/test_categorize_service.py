"""
tests/test_categorize_service.py — LLM comment categorization
==============================================================
The chat completions endpoint is faked with ``httpx.MockTransport``.
"""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta

import httpx
import pytest
from helpers import SHORT, T0, comment, commit, ingest
from sqlalchemy import select
from sqlalchemy.orm import Session

from reviewforge.database.models import RawEventRow, ReviewSessionRow
from reviewforge.services.categorize_service import (
    CategorizeError,
    CommentCategorizer,
    build_prompt,
    categorize_batch,
    fetch_uncategorized,
    get_category_stats,
    parse_classifications,
)
from reviewforge.services.locks import RepoLocks
from reviewforge.services.pipeline_service import reprocess_pull_requests


def _chat(results) -> httpx.Response:
    content = json.dumps({"results": results})
    return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})


def _categorize(engine, handler, batch_size=20):
    async def go():
        categorizer = CommentCategorizer("sk-test", transport=httpx.MockTransport(handler))
        try:
            return await categorize_batch(engine, RepoLocks(), categorizer, batch_size)
        finally:
            await categorizer.aclose()

    return asyncio.run(go())


@pytest.fixture
def reviewed(db_engine):
    pr = ingest(db_engine, "acme/api", 1, "author", [
        commit("a1", T0),
        comment(1, "alice", T0 + timedelta(minutes=30)),
        comment(2, "alice", T0 + timedelta(minutes=30)),
        comment(3, "alice", T0 + timedelta(minutes=30)),
        comment(4, "alice", T0 + timedelta(minutes=31), body=SHORT),
    ])
    reprocess_pull_requests(db_engine, [pr])
    return db_engine


class TestParsing:
    def test_prompt_numbers_and_truncates(self):
        prompt = build_prompt(["short one", "x" * 600])
        assert "[0] short one" in prompt
        assert "[1] " + "x" * 500 + "..." in prompt
        assert "x" * 501 not in prompt

    def test_malformed_items_are_dropped(self):
        content = json.dumps({"results": [
            {"index": 0, "category": "logic", "quality_score": 8},
            {"index": 1, "category": "praise", "quality_score": 9},
            {"index": 2},
        ]})
        parsed = parse_classifications(content)
        assert [(c.index, c.category) for c in parsed] == [(0, "logic")]

    @pytest.mark.parametrize("content", ["not json", '["a list"]', '{"results": 3}'])
    def test_garbage_raises(self, content):
        with pytest.raises(CategorizeError):
            parse_classifications(content)


class TestBatch:
    def test_only_substantive_uncategorized_comments(self, reviewed):
        pending = fetch_uncategorized(reviewed, 10)
        assert len(pending) == 3
        # Newest first; equal timestamps fall back to newest row
        assert [p.row_id for p in pending] == sorted((p.row_id for p in pending), reverse=True)

    def test_stores_clamps_and_rescores(self, reviewed):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return _chat([
                {"index": 0, "category": "logic", "quality_score": 15},
                {"index": 1, "category": "structural", "quality_score": 5},
                {"index": 7, "category": "nit", "quality_score": 2},
            ])

        with Session(reviewed) as session:
            assert session.scalar(select(ReviewSessionRow.xp_earned)) == 35

        stats = _categorize(reviewed, handler)

        assert seen["auth"] == "Bearer sk-test"
        assert seen["body"]["response_format"] == {"type": "json_object"}
        assert stats.processed == 2
        assert stats.errors == 1
        assert stats.skipped == 0
        assert stats.pull_requests_rescored == 1

        with Session(reviewed) as session:
            rows = session.scalars(
                select(RawEventRow).where(RawEventRow.category.is_not(None))
            ).all()
            assert sorted((r.category, r.quality_score) for r in rows) == [
                ("logic", 10),
                ("structural", 5),
            ]
            # 10 base + (8+3) + (5+2) + 5 flat + 10 fast
            assert session.scalar(select(ReviewSessionRow.xp_earned)) == 43

        stats = get_category_stats(reviewed)
        assert stats.total == 4
        assert stats.categorized == 2
        assert stats.by_category == {"logic": 1, "structural": 1}
        assert stats.avg_quality == 7.5

    def test_nothing_to_do(self, db_engine):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        stats = _categorize(db_engine, handler)
        assert stats.processed == 0

    def test_api_error_leaves_rows_untouched(self, reviewed):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="upstream exploded")

        with pytest.raises(CategorizeError):
            _categorize(reviewed, handler)
        assert len(fetch_uncategorized(reviewed, 10)) == 3
