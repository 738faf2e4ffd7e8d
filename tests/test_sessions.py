"""
tests/test_sessions.py — Review Session Segmenter
==================================================
Covers commit and idle-gap boundaries, eligibility, rubber-stamp exclusion,
the commit-first tie-break, and per-reviewer disjointness.
"""

from __future__ import annotations

import logging
import random
from datetime import timedelta

from helpers import LONG, SHORT, T0, comment, commit, review

from reviewforge.engine.sessions import is_bot_login, is_substantive, segment_pull_request


def _segment(events, pr_author="author"):
    return segment_pull_request(events, pull_request_id=7, pr_author=pr_author)


class TestSubstantive:
    def test_threshold_is_strictly_greater_than_20(self):
        assert not is_substantive("x" * 20)
        assert is_substantive("x" * 21)

    def test_whitespace_is_trimmed(self):
        assert not is_substantive("   " + "x" * 20 + "\n\n")
        assert not is_substantive(None)


class TestBasicSegmentation:
    def test_two_reviewers_get_separate_sessions(self):
        events = [
            commit("a1", T0),
            *[comment(i, "alice", T0 + timedelta(minutes=30)) for i in range(1, 4)],
            *[comment(i, "bob", T0 + timedelta(minutes=45)) for i in range(10, 17)],
        ]
        sessions = _segment(events)
        assert [(s.reviewer, s.comment_count) for s in sessions] == [("alice", 3), ("bob", 7)]
        assert sessions[0].elapsed_since_last_commit == timedelta(minutes=30)
        assert sessions[1].elapsed_since_last_commit == timedelta(minutes=45)
        assert all(s.pull_request_id == 7 for s in sessions)

    def test_input_order_does_not_matter(self):
        events = [
            commit("a1", T0),
            comment(1, "alice", T0 + timedelta(minutes=5)),
            comment(2, "alice", T0 + timedelta(minutes=9)),
            commit("a2", T0 + timedelta(minutes=20)),
            comment(3, "alice", T0 + timedelta(minutes=40)),
        ]
        shuffled = list(events)
        random.Random(4).shuffle(shuffled)
        assert _segment(events) == _segment(shuffled)

    def test_window_spans_first_to_last_activity(self):
        events = [
            comment(1, "alice", T0),
            comment(2, "alice", T0 + timedelta(hours=3)),
        ]
        (s,) = _segment(events)
        assert s.window_start == T0
        assert s.window_end == T0 + timedelta(hours=3)

    def test_no_prior_commit_means_unknown_elapsed(self):
        (s,) = _segment([comment(1, "alice", T0)])
        assert s.elapsed_since_last_commit is None

    def test_comment_ids_are_the_substantive_ones(self):
        events = [
            comment(1, "alice", T0),
            comment(2, "alice", T0 + timedelta(minutes=1), body=SHORT),
        ]
        (s,) = _segment(events)
        assert s.comment_count == 2
        assert s.substantive_comment_count == 1
        assert s.comment_ids == ("comment:1",)

    def test_output_sorted_by_start_then_reviewer(self):
        events = [
            comment(1, "zed", T0),
            comment(2, "amy", T0),
            comment(3, "bob", T0 - timedelta(minutes=1)),
        ]
        assert [s.reviewer for s in _segment(events)] == ["bob", "amy", "zed"]


class TestBoundaries:
    def test_author_commit_splits_session_within_idle_gap(self):
        events = [
            commit("a1", T0),
            comment(1, "alice", T0 + timedelta(hours=1)),
            commit("a2", T0 + timedelta(hours=2)),
            comment(2, "alice", T0 + timedelta(hours=3)),
        ]
        sessions = _segment(events)
        assert len(sessions) == 2
        assert sessions[0].window_end < sessions[1].window_start
        assert sessions[1].elapsed_since_last_commit == timedelta(hours=1)

    def test_non_author_commit_does_not_split_but_moves_baseline(self):
        events = [
            commit("a1", T0),
            comment(1, "alice", T0 + timedelta(hours=1)),
            commit("c1", T0 + timedelta(hours=2), actor="helper"),
            comment(2, "alice", T0 + timedelta(hours=3)),
            comment(3, "carol", T0 + timedelta(hours=2, minutes=10)),
        ]
        sessions = _segment(events)
        alice = [s for s in sessions if s.reviewer == "alice"]
        carol = [s for s in sessions if s.reviewer == "carol"]
        assert len(alice) == 1
        assert alice[0].comment_count == 2
        assert carol[0].elapsed_since_last_commit == timedelta(minutes=10)

    def test_unknown_author_treats_every_commit_as_boundary(self):
        events = [
            comment(1, "alice", T0),
            commit("c1", T0 + timedelta(minutes=10), actor="anyone"),
            comment(2, "alice", T0 + timedelta(minutes=20)),
        ]
        assert len(_segment(events, pr_author=None)) == 2

    def test_idle_gap_over_24h_splits(self):
        events = [
            comment(1, "alice", T0),
            comment(2, "alice", T0 + timedelta(hours=24, minutes=1)),
        ]
        assert len(_segment(events)) == 2

    def test_activity_within_24h_stays_together(self):
        events = [
            comment(1, "alice", T0),
            comment(2, "alice", T0 + timedelta(hours=23)),
            comment(3, "alice", T0 + timedelta(hours=46)),
        ]
        (s,) = _segment(events)
        assert s.comment_count == 3

    def test_commit_sorts_before_comment_at_same_instant(self):
        events = [
            comment(1, "alice", T0 - timedelta(minutes=5)),
            comment(2, "alice", T0),
            commit("a2", T0),
        ]
        sessions = _segment(events)
        assert len(sessions) == 2
        assert sessions[1].window_start == T0
        assert sessions[1].elapsed_since_last_commit == timedelta(0)


class TestEligibility:
    def test_only_short_comments_is_not_a_session(self):
        events = [comment(1, "alice", T0, body=SHORT), comment(2, "alice", T0, body="LGTM")]
        assert _segment(events) == []

    def test_rubber_stamp_is_discarded(self):
        events = [
            commit("a1", T0),
            review(1, "alice", T0 + timedelta(minutes=10), "approved"),
        ]
        assert _segment(events) == []

    def test_slow_bare_approval_is_kept(self):
        events = [
            review(1, "alice", T0, "commented"),
            review(2, "alice", T0 + timedelta(minutes=2), "approved"),
        ]
        (s,) = _segment(events)
        assert s.state_change == "approved"
        assert s.comment_count == 0

    def test_approval_with_comment_is_kept(self):
        events = [review(1, "alice", T0, "approved", body="Looks good, the retry loop is solid now.")]
        (s,) = _segment(events)
        assert s.comment_count == 1
        assert s.substantive_comment_count == 1

    def test_changes_requested_alone_is_eligible(self):
        (s,) = _segment([review(1, "alice", T0, "changes_requested")])
        assert s.state_change == "changes_requested"

    def test_latest_state_change_wins(self):
        events = [
            review(1, "alice", T0, "changes_requested", body=LONG),
            review(2, "alice", T0 + timedelta(minutes=30), "commented"),
            review(3, "alice", T0 + timedelta(minutes=40), "approved"),
        ]
        (s,) = _segment(events)
        assert s.state_change == "approved"

    def test_empty_review_body_is_not_a_comment(self):
        events = [
            comment(1, "alice", T0),
            review(2, "alice", T0 + timedelta(minutes=1), "commented", body="   "),
        ]
        (s,) = _segment(events)
        assert s.comment_count == 1

    def test_pr_author_activity_is_ignored(self):
        events = [
            comment(1, "author", T0),
            review(2, "Author", T0 + timedelta(minutes=1), "approved", body=LONG),
        ]
        assert _segment(events) == []

    def test_bot_reviewers_earn_nothing(self):
        events = [
            commit("a1", T0),
            comment(1, "renovate[bot]", T0 + timedelta(minutes=5)),
            review(2, "Dependabot[bot]", T0 + timedelta(minutes=6), "approved", body=LONG),
            comment(3, "alice", T0 + timedelta(minutes=10)),
        ]
        assert [s.reviewer for s in _segment(events)] == ["alice"]

    def test_bot_author_commits_still_bound_sessions(self):
        events = [
            comment(1, "alice", T0),
            commit("b1", T0 + timedelta(minutes=10), actor="dependabot[bot]"),
            comment(2, "alice", T0 + timedelta(minutes=20)),
        ]
        sessions = _segment(events, pr_author="dependabot[bot]")
        assert len(sessions) == 2
        assert sessions[1].elapsed_since_last_commit == timedelta(minutes=10)


class TestBotLogins:
    def test_suffix_is_case_insensitive(self):
        assert is_bot_login("dependabot[bot]")
        assert is_bot_login("Renovate[BOT]")
        assert not is_bot_login("robot")
        assert not is_bot_login(None)


class TestAnomalies:
    def test_missing_actor_or_timestamp_is_dropped_with_warning(self, caplog):
        events = [
            comment(1, None, T0),
            comment(2, "alice", None),
            comment(3, "alice", T0),
        ]
        with caplog.at_level(logging.WARNING, logger="reviewforge.engine.sessions"):
            (s,) = _segment(events)
        assert s.comment_ids == ("comment:3",)
        assert "comment:1" in caplog.text
        assert "comment:2" in caplog.text


class TestDisjointness:
    def test_sessions_per_reviewer_never_overlap(self):
        rng = random.Random(20260302)
        reviewers = ["alice", "bob", "carol"]
        events = []
        for i in range(300):
            at = T0 + timedelta(minutes=rng.randrange(0, 60 * 24 * 10))
            roll = rng.random()
            if roll < 0.1:
                events.append(commit(f"c{i}", at, actor=rng.choice(["author", "bot"])))
            elif roll < 0.3:
                state = rng.choice(["approved", "changes_requested", "commented"])
                events.append(review(i, rng.choice(reviewers), at, state, body=rng.choice(["", LONG])))
            else:
                events.append(comment(i, rng.choice(reviewers), at, body=rng.choice([LONG, SHORT])))

        sessions = _segment(events)
        assert sessions
        for reviewer in reviewers:
            mine = [s for s in sessions if s.reviewer == reviewer]
            for earlier, later in zip(mine, mine[1:]):
                assert earlier.window_end < later.window_start
