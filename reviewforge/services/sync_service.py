"""
reviewforge.services.sync_service — Incremental repository sync
================================================================

One sync pass per repository:

1. Read the cursor (``last_synced_at`` + first-page ETag).
2. List pull requests updated since the cursor (or the lookback window).
3. For each one: upsert the PR row, fetch commits / reviews / comments and
   insert them idempotently.
4. Reprocess the touched pull requests through the scoring pipeline, then
   advance the cursor in a single transaction.

A failed pass never moves the cursor.  Events inserted before the failure
stay; a retry re-delivers them and the unique constraint drops duplicates.

Every adapter call goes through :meth:`SyncCoordinator._call_with_backoff`,
which retries rate limits and transport errors with exponential backoff and
jitter.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import random
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Protocol, TypeVar

import httpx
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from reviewforge.config import ReviewForgeConfig
from reviewforge.database.engine import get_session, run_db
from reviewforge.database.models import PullRequest, RawEventRow, Repository
from reviewforge.engine.classifier import CommentClassifier, StoredQualityClassifier
from reviewforge.github.client import GitHubError, PullRequestListing, RateLimitedError
from reviewforge.services.locks import RepoLocks
from reviewforge.services.pipeline_service import reprocess_pull_requests

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from reviewforge.engine.events import RawEvent
    from reviewforge.github.client import GitHubPullRequest

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class SyncError(Exception):
    """A sync pass failed; the cursor is unchanged."""


class RepositoryNotTrackedError(SyncError):
    def __init__(self, full_name: str) -> None:
        super().__init__(f"Repository {full_name!r} is not tracked")
        self.full_name = full_name


class SyncRateLimitedError(SyncError):
    def __init__(self, message: str, retry_after: float) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class SyncNetworkError(SyncError):
    pass


# ---------------------------------------------------------------------------
# Event source protocol (satisfied by GitHubClient)
# ---------------------------------------------------------------------------
class EventSource(Protocol):
    async def list_pull_requests(
        self, owner: str, name: str, *, since: datetime, etag: str | None = None,
    ) -> PullRequestListing: ...

    async def list_commits(
        self, owner: str, name: str, number: int, since: datetime | None = None,
    ) -> list[RawEvent]: ...

    async def list_reviews(self, owner: str, name: str, number: int) -> list[RawEvent]: ...

    async def list_review_comments(self, owner: str, name: str, number: int) -> list[RawEvent]: ...


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class SyncReport:
    repository: str
    started_at: datetime
    finished_at: datetime | None = None
    pull_requests_seen: int = 0
    events_fetched: int = 0
    events_inserted: int = 0
    sessions_scored: int = 0
    not_modified: bool = False
    forced: bool = False


@dataclass(slots=True)
class SyncFailure:
    repository: str
    error: str


@dataclass(frozen=True, slots=True)
class _Cursor:
    repository_id: int
    owner: str
    name: str
    last_synced_at: datetime | None
    etag: str | None


# ---------------------------------------------------------------------------
# Repository registration
# ---------------------------------------------------------------------------
def split_full_name(full_name: str) -> tuple[str, str]:
    owner, _, name = full_name.strip().partition("/")
    if not owner or not name or "/" in name:
        raise ValueError(f"Repository must be 'owner/name', got {full_name!r}")
    return owner, name


def find_repository(session: Session, full_name: str) -> Repository | None:
    owner, name = split_full_name(full_name)
    return session.scalar(
        select(Repository).where(Repository.owner == owner, Repository.name == name)
    )


def track_repository(engine: Engine, full_name: str) -> Repository:
    """Register *full_name* for syncing.  Idempotent."""
    owner, name = split_full_name(full_name)
    with get_session(engine) as session:
        repo = find_repository(session, full_name)
        if repo is None:
            repo = Repository(owner=owner, name=name, tracked_since=datetime.now(UTC))
            session.add(repo)
            session.flush()
            logger.info("Now tracking %s (id=%d)", full_name, repo.id)
        session.refresh(repo)
        session.expunge(repo)
        return repo


def list_tracked_repositories(engine: Engine) -> list[Repository]:
    with get_session(engine) as session:
        repos = session.scalars(select(Repository).order_by(Repository.id)).all()
        for repo in repos:
            session.expunge(repo)
        return list(repos)


# ---------------------------------------------------------------------------
# DB steps (run through run_db)
# ---------------------------------------------------------------------------
def _read_cursor(engine: Engine, full_name: str) -> _Cursor:
    with get_session(engine) as session:
        repo = find_repository(session, full_name)
        if repo is None:
            raise RepositoryNotTrackedError(full_name)
        return _Cursor(
            repository_id=repo.id,
            owner=repo.owner,
            name=repo.name,
            last_synced_at=repo.last_synced_at,
            etag=repo.sync_cursor,
        )


def upsert_pull_request(engine: Engine, repository_id: int, pr: GitHubPullRequest) -> int:
    """Insert or refresh a PR row; return its id."""
    with get_session(engine) as session:
        row = session.scalar(
            select(PullRequest).where(
                PullRequest.repository_id == repository_id,
                PullRequest.number == pr.number,
            )
        )
        if row is None:
            row = PullRequest(repository_id=repository_id, number=pr.number)
            session.add(row)
        row.github_id = pr.id
        row.title = pr.title
        row.author = pr.user.login if pr.user else None
        row.state = "merged" if pr.merged_at else pr.state
        row.created_at = pr.created_at
        row.updated_at = pr.updated_at
        row.merged_at = pr.merged_at
        session.flush()
        return row.id


def insert_events(engine: Engine, events: Sequence[RawEvent]) -> int:
    """Insert events idempotently; return how many were new."""
    inserted = 0
    with get_session(engine) as session:
        for event in events:
            if event.timestamp is None:
                logger.warning("Dropping event %s: no timestamp", event.source_event_id)
                continue
            row = RawEventRow(
                repository_id=event.repository_id,
                pull_request_id=event.pull_request_id,
                source_event_id=event.source_event_id,
                kind=str(event.kind),
                actor=event.actor,
                timestamp=event.timestamp,
                sequence=event.sequence,
                commit_sha=event.commit_sha,
                review_state=event.review_state,
                body=event.body,
                body_length=event.body_length,
                path=event.path,
                line=event.line,
                in_reply_to=event.in_reply_to,
            )
            try:
                with session.begin_nested():   # SAVEPOINT
                    session.add(row)
                    session.flush()
            except IntegrityError:
                continue
            inserted += 1
    return inserted


def advance_cursor(
    engine: Engine, repository_id: int, synced_at: datetime, etag: str | None,
) -> None:
    """Write both cursor columns in one transaction."""
    with get_session(engine) as session:
        repo = session.get(Repository, repository_id)
        repo.last_synced_at = synced_at
        repo.sync_cursor = etag


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------
class SyncCoordinator:
    """Runs incremental sync passes against an :class:`EventSource`.

    Parameters
    ----------
    engine:
        Database engine.
    source:
        The GitHub adapter (or a fake in tests).
    locks:
        Shared per-repository locks and the global concurrency bound.
    config:
        Lookback window and backoff settings.
    classifier:
        Comment classifier used when rescoring touched pull requests.
    sleep:
        Awaitable sleep, injectable so tests don't wait.
    """

    def __init__(
        self,
        engine: Engine,
        source: EventSource,
        locks: RepoLocks,
        config: ReviewForgeConfig | None = None,
        *,
        classifier: CommentClassifier | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.engine = engine
        self.source = source
        self.locks = locks
        self.config = config or ReviewForgeConfig()
        self.classifier = classifier or StoredQualityClassifier()
        self._sleep = sleep
        self._clock = clock

    # -- backoff ------------------------------------------------------------
    def _backoff(self, attempt: int) -> float:
        cfg = self.config
        backoff = min(cfg.rate_limit_base_backoff * (2 ** (attempt - 1)), cfg.rate_limit_max_backoff)
        jitter = random.uniform(0, backoff * 0.5)
        return backoff + jitter

    async def _call_with_backoff(
        self, what: str, func: Callable[..., Awaitable[T]], *args, **kwargs,
    ) -> T:
        """Call *func*, retrying rate limits and transport errors."""
        cfg = self.config
        attempts = max(cfg.rate_limit_max_attempts, 1)
        for attempt in range(1, attempts + 1):
            try:
                return await func(*args, **kwargs)
            except RateLimitedError as exc:
                if exc.retry_after > cfg.rate_limit_max_backoff:
                    raise SyncRateLimitedError(
                        f"{what}: rate limit resets in {exc.retry_after:.0f}s", exc.retry_after,
                    ) from exc
                if attempt == attempts:
                    raise SyncRateLimitedError(
                        f"{what}: still rate limited after {attempts} attempts", exc.retry_after,
                    ) from exc
                delay = max(self._backoff(attempt), exc.retry_after)
                logger.warning(
                    "%s rate limited (attempt %d/%d) — retrying in %.1fs",
                    what, attempt, attempts, delay,
                )
            except httpx.TransportError as exc:
                if attempt == attempts:
                    raise SyncNetworkError(f"{what}: {exc!r} after {attempts} attempts") from exc
                delay = self._backoff(attempt)
                logger.warning(
                    "%s network error %r (attempt %d/%d) — retrying in %.1fs",
                    what, exc, attempt, attempts, delay,
                )
            except GitHubError as exc:
                raise SyncError(f"{what}: {exc}") from exc
            await self._sleep(delay)
        raise AssertionError("unreachable")

    # -- public -------------------------------------------------------------
    async def sync(self, repo_full_name: str, *, force: bool = False) -> SyncReport:
        """Run one sync pass for *repo_full_name*.

        Raises
        ------
        RepositoryNotTrackedError
            If the repository was never registered.
        SyncError
            On any adapter or database failure.  The cursor is left unchanged.
        """
        try:
            async with self.locks.sync_slots:
                cursor = await run_db(_read_cursor, self.engine, repo_full_name)
                async with self.locks.hold(cursor.repository_id):
                    # Re-read under the lock: a concurrent pass may have advanced it
                    cursor = await run_db(_read_cursor, self.engine, repo_full_name)
                    return await self._run_pass(repo_full_name, cursor, force=force)
        except SQLAlchemyError as exc:
            raise SyncError(f"{repo_full_name}: database error: {exc}") from exc

    async def _run_pass(self, full_name: str, cursor: _Cursor, *, force: bool) -> SyncReport:
        started_at = self._clock()
        report = SyncReport(repository=full_name, started_at=started_at, forced=force)

        if cursor.last_synced_at is not None and not force:
            window_from = cursor.last_synced_at
            if window_from.tzinfo is None:
                window_from = window_from.replace(tzinfo=UTC)
        else:
            window_from = started_at - timedelta(days=self.config.lookback_days)
        etag = None if force else cursor.etag

        logger.info("Sync %s: window from %s%s", full_name, window_from.isoformat(), " (forced)" if force else "")

        listing = await self._call_with_backoff(
            f"{full_name} pull requests",
            self.source.list_pull_requests,
            cursor.owner, cursor.name, since=window_from, etag=etag,
        )

        touched: list[int] = []
        if listing.not_modified:
            report.not_modified = True
        else:
            for pr in listing.pull_requests:
                pr_id = await run_db(upsert_pull_request, self.engine, cursor.repository_id, pr)
                events = await self._fetch_pull_request(cursor, pr.number)
                events = [
                    dataclasses.replace(e, repository_id=cursor.repository_id, pull_request_id=pr_id)
                    for e in events
                ]
                report.events_fetched += len(events)
                report.events_inserted += await run_db(insert_events, self.engine, events)
                report.pull_requests_seen += 1
                touched.append(pr_id)

        if touched:
            result = await run_db(
                reprocess_pull_requests, self.engine, touched, self.classifier,
            )
            report.sessions_scored = result.sessions_scored

        # Last step: the cursor only moves once everything above succeeded
        await run_db(advance_cursor, self.engine, cursor.repository_id, started_at, listing.etag)

        report.finished_at = self._clock()
        logger.info(
            "Sync %s done: %d PRs, %d/%d events new, %d sessions%s",
            full_name, report.pull_requests_seen, report.events_inserted,
            report.events_fetched, report.sessions_scored,
            " (not modified)" if report.not_modified else "",
        )
        return report

    async def _fetch_pull_request(self, cursor: _Cursor, number: int) -> list[RawEvent]:
        label = f"{cursor.owner}/{cursor.name}#{number}"
        commits = await self._call_with_backoff(
            f"{label} commits", self.source.list_commits, cursor.owner, cursor.name, number,
        )
        reviews = await self._call_with_backoff(
            f"{label} reviews", self.source.list_reviews, cursor.owner, cursor.name, number,
        )
        comments = await self._call_with_backoff(
            f"{label} comments", self.source.list_review_comments, cursor.owner, cursor.name, number,
        )
        return [*commits, *reviews, *comments]

    async def sync_all(self, *, force: bool = False) -> tuple[list[SyncReport], list[SyncFailure]]:
        """Sync every tracked repository concurrently.

        A failure in one repository is logged and reported; the others
        still run to completion.
        """
        repos = await run_db(list_tracked_repositories, self.engine)
        names = [r.full_name for r in repos]
        results = await asyncio.gather(
            *(self.sync(name, force=force) for name in names),
            return_exceptions=True,
        )

        reports: list[SyncReport] = []
        failures: list[SyncFailure] = []
        for name, result in zip(names, results):
            if isinstance(result, SyncReport):
                reports.append(result)
            elif isinstance(result, Exception):
                logger.error("Sync %s failed: %s", name, result)
                failures.append(SyncFailure(repository=name, error=str(result)))
            else:
                raise result
        return reports, failures
