"""
reviewforge.database.models — SQLAlchemy 2.0 Data Models
=========================================================

Tables:
- repositories       — Tracked repositories + sync cursor
- pull_requests      — PR metadata (author needed for session boundaries)
- raw_events         — Append-only review activity log with idempotent insert
- users              — Reviewer profiles + cumulative aggregate counters
- review_sessions    — Derived, scored review sessions (fully recomputable)
- achievements       — Static achievement catalog (rule table)
- user_achievements  — Unlock records with an unnotified flag
"""

from __future__ import annotations

import enum
from datetime import date, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all ReviewForge ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class EventKind(enum.StrEnum):
    """The three kinds of raw review activity."""
    COMMIT_PUSHED = "commit_pushed"
    COMMENT_POSTED = "comment_posted"
    REVIEW_STATE_CHANGED = "review_state_changed"


class ReviewState(enum.StrEnum):
    """Review states as reported by GitHub (lower-cased)."""
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    COMMENTED = "commented"
    DISMISSED = "dismissed"
    PENDING = "pending"


class RuleType(enum.StrEnum):
    """Predicate variants an achievement can be unlocked by."""
    MILESTONE_COUNT = "milestone_count"
    STREAK = "streak"
    SPECIAL_CONDITION = "special_condition"


# ---------------------------------------------------------------------------
# Repository — one row per tracked repository
# ---------------------------------------------------------------------------
class Repository(Base):
    """A tracked repository and its sync cursor.

    ``last_synced_at`` and ``sync_cursor`` are written together, exactly
    once per successful sync pass.
    """
    __tablename__ = "repositories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    github_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    owner: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    tracked_since: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    last_synced_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    sync_cursor: Mapped[str | None] = mapped_column(Text, nullable=True)

    pull_requests: Mapped[list[PullRequest]] = relationship(
        back_populates="repository", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("owner", "name", name="uq_repositories_owner_name"),
        Index("ix_repositories_last_synced", "last_synced_at"),
    )

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def __repr__(self) -> str:
        return f"<Repository id={self.id} name={self.full_name!r}>"


# ---------------------------------------------------------------------------
# PullRequest — PR metadata
# ---------------------------------------------------------------------------
class PullRequest(Base):
    __tablename__ = "pull_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    repository_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False
    )
    github_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    number: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    author: Mapped[str | None] = mapped_column(String(39), nullable=True)
    state: Mapped[str] = mapped_column(String(20), nullable=False, default="open")
    created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    merged_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    repository: Mapped[Repository] = relationship(back_populates="pull_requests")

    __table_args__ = (
        UniqueConstraint("repository_id", "number", name="uq_pull_requests_repo_number"),
    )

    def __repr__(self) -> str:
        return f"<PullRequest id={self.id} number={self.number} author={self.author!r}>"


# ---------------------------------------------------------------------------
# RawEventRow — append-only review activity log
# ---------------------------------------------------------------------------
class RawEventRow(Base):
    """Immutable record of one piece of review activity.

    Only the categorization columns (``category``, ``quality_score``,
    ``categorized_at``) are ever written after insert.
    """
    __tablename__ = "raw_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    repository_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False
    )
    pull_request_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("pull_requests.id", ondelete="CASCADE"), nullable=False
    )
    source_event_id: Mapped[str] = mapped_column(String(100), nullable=False)
    kind: Mapped[str] = mapped_column(String(30), nullable=False)
    actor: Mapped[str | None] = mapped_column(String(39), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sequence: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Type-specific payload
    commit_sha: Mapped[str | None] = mapped_column(String(40), nullable=True)
    review_state: Mapped[str | None] = mapped_column(String(20), nullable=True)
    body: Mapped[str | None] = mapped_column(Text, nullable=True)
    body_length: Mapped[int] = mapped_column(Integer, default=0)
    path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    line: Mapped[int | None] = mapped_column(Integer, nullable=True)
    in_reply_to: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # External quality classification (comments only)
    category: Mapped[str | None] = mapped_column(String(20), nullable=True)
    quality_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    categorized_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    ingested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        # Idempotent insert: duplicate delivery hits this constraint
        UniqueConstraint(
            "repository_id", "source_event_id", name="uq_raw_events_repo_source",
        ),
        Index("ix_raw_events_pr_time", "pull_request_id", "timestamp"),
        Index("ix_raw_events_uncategorized", "kind", "category"),
    )

    def __repr__(self) -> str:
        return (
            f"<RawEventRow id={self.id} kind={self.kind} "
            f"actor={self.actor!r} ts={self.timestamp}>"
        )


# ---------------------------------------------------------------------------
# User — reviewer profile + cumulative aggregate
# ---------------------------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    login: Mapped[str] = mapped_column(String(39), nullable=False, unique=True)
    avatar_url: Mapped[str | None] = mapped_column(String(500), default=None)

    # Aggregate counters: derived, zeroed and refolded by recalculation
    xp: Mapped[int] = mapped_column(Integer, default=0)
    level: Mapped[int] = mapped_column(Integer, default=1)
    session_xp: Mapped[int] = mapped_column(Integer, default=0)
    review_sessions: Mapped[int] = mapped_column(Integer, default=0)
    fast_sessions: Mapped[int] = mapped_column(Integer, default=0)
    night_sessions: Mapped[int] = mapped_column(Integer, default=0)
    substantive_comments: Mapped[int] = mapped_column(Integer, default=0)
    approvals: Mapped[int] = mapped_column(Integer, default=0)
    changes_requested: Mapped[int] = mapped_column(Integer, default=0)
    max_sessions_in_day: Mapped[int] = mapped_column(Integer, default=0)
    current_streak_days: Mapped[int] = mapped_column(Integer, default=0)
    longest_streak_days: Mapped[int] = mapped_column(Integer, default=0)
    last_review_day: Mapped[date | None] = mapped_column(Date, nullable=True)
    prs_authored: Mapped[int] = mapped_column(Integer, default=0)
    prs_merged: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    sessions: Mapped[list[ReviewSessionRow]] = relationship(
        back_populates="reviewer", cascade="all, delete-orphan"
    )
    achievements: Mapped[list[UserAchievement]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_users_xp_desc", "xp"),
        Index("ix_users_sessions_desc", "review_sessions"),
    )

    def __repr__(self) -> str:
        return f"<User id={self.id} login={self.login!r} lvl={self.level}>"


# ---------------------------------------------------------------------------
# ReviewSessionRow — scored review session
# ---------------------------------------------------------------------------
class ReviewSessionRow(Base):
    """One scored review session.

    Never mutated after creation; sessions for a pull request are deleted
    and re-inserted whenever that pull request is reprocessed.
    """
    __tablename__ = "review_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    repository_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False
    )
    pull_request_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("pull_requests.id", ondelete="CASCADE"), nullable=False
    )
    reviewer_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    window_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    comment_count: Mapped[int] = mapped_column(Integer, default=0)
    substantive_comment_count: Mapped[int] = mapped_column(Integer, default=0)
    state_change: Mapped[str | None] = mapped_column(String(20), nullable=True)
    elapsed_since_last_commit_seconds: Mapped[int | None] = mapped_column(
        Integer, nullable=True
    )
    xp_earned: Mapped[int] = mapped_column(Integer, default=0)

    reviewer: Mapped[User] = relationship(back_populates="sessions")

    __table_args__ = (
        Index("ix_review_sessions_reviewer_time", "reviewer_id", "window_start"),
        Index("ix_review_sessions_pr", "pull_request_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<ReviewSessionRow id={self.id} pr={self.pull_request_id} "
            f"reviewer={self.reviewer_id} xp={self.xp_earned}>"
        )


# ---------------------------------------------------------------------------
# AchievementDefinition — static catalog entry
# ---------------------------------------------------------------------------
class AchievementDefinition(Base):
    __tablename__ = "achievements"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    emoji: Mapped[str] = mapped_column(String(10), nullable=False, default="")
    xp_reward: Mapped[int] = mapped_column(Integer, default=0)
    rarity: Mapped[str] = mapped_column(String(20), nullable=False, default="common")
    rule_type: Mapped[str] = mapped_column(String(30), nullable=False)
    rule_params: Mapped[dict | None] = mapped_column(JSONB, default=dict)
    active: Mapped[bool] = mapped_column(Boolean, default=True)

    unlocked_by: Mapped[list[UserAchievement]] = relationship(back_populates="achievement")

    def __repr__(self) -> str:
        return f"<AchievementDefinition id={self.id!r} rule={self.rule_type}>"


# ---------------------------------------------------------------------------
# UserAchievement — unlock record
# ---------------------------------------------------------------------------
class UserAchievement(Base):
    """Created at most once per (user, achievement); never revoked."""
    __tablename__ = "user_achievements"

    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    achievement_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("achievements.id", ondelete="CASCADE"), primary_key=True
    )
    unlocked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    notified: Mapped[bool] = mapped_column(Boolean, default=False)

    user: Mapped[User] = relationship(back_populates="achievements")
    achievement: Mapped[AchievementDefinition] = relationship(back_populates="unlocked_by")

    __table_args__ = (
        Index("ix_user_achievements_unlocked", "unlocked_at"),
        Index("ix_user_achievements_pending", "notified"),
    )

    def __repr__(self) -> str:
        return f"<UserAchievement user={self.user_id} achievement={self.achievement_id!r}>"
