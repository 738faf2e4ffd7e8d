"""
reviewforge.github.client — Async GitHub REST adapter
======================================================

Thin ``httpx.AsyncClient`` wrapper that fetches exactly what the sync
coordinator needs: pull requests, and per pull request its commits,
reviews and inline review comments.

* Payloads are validated with pydantic models.
* Commits, reviews and comments come back already normalized into
  :class:`~reviewforge.engine.events.RawEvent` (ids left at 0; the sync
  service fills them in).
* Rate limiting surfaces as :class:`RateLimitedError` carrying the number
  of seconds to wait.  Retrying is the caller's job.

Usage::

    async with GitHubClient(token=os.getenv("GITHUB_TOKEN")) as gh:
        listing = await gh.list_pull_requests("acme", "api", since=cutoff)
        for pr in listing.pull_requests:
            commits = await gh.list_commits("acme", "api", pr.number)
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from reviewforge import __version__
from reviewforge.database.models import EventKind, ReviewState
from reviewforge.engine.events import RawEvent

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"
USER_AGENT = f"reviewforge/{__version__}"

PER_PAGE = 100
MAX_PR_PAGES = 50          # 5000 pull requests per pass
DEFAULT_RETRY_AFTER = 60

# GitHub review state → stored state.  DISMISSED / PENDING are not activity.
_REVIEW_STATES: dict[str, ReviewState] = {
    "APPROVED": ReviewState.APPROVED,
    "CHANGES_REQUESTED": ReviewState.CHANGES_REQUESTED,
    "COMMENTED": ReviewState.COMMENTED,
}

M = TypeVar("M", bound=BaseModel)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class GitHubError(Exception):
    """Base class for adapter errors."""


class RateLimitedError(GitHubError):
    def __init__(self, retry_after: float) -> None:
        super().__init__(f"Rate limited, retry after {retry_after:.0f} seconds")
        self.retry_after = retry_after


class NotFoundError(GitHubError):
    def __init__(self, url: str) -> None:
        super().__init__(f"Not found: {url}")
        self.url = url


class GitHubAPIError(GitHubError):
    def __init__(self, status: int, message: str) -> None:
        super().__init__(f"GitHub API error: {status} - {message}")
        self.status = status
        self.message = message


# ---------------------------------------------------------------------------
# Payload models
# ---------------------------------------------------------------------------
class GitHubUser(BaseModel):
    id: int
    login: str
    avatar_url: str | None = None


class GitHubRepo(BaseModel):
    id: int
    name: str
    full_name: str
    owner: GitHubUser


class GitHubPullRequest(BaseModel):
    id: int
    number: int
    title: str = ""
    state: str = "open"
    user: GitHubUser | None = None
    created_at: datetime
    updated_at: datetime
    merged_at: datetime | None = None
    closed_at: datetime | None = None


class GitHubReview(BaseModel):
    id: int
    user: GitHubUser | None = None
    state: str
    body: str | None = None
    submitted_at: datetime | None = None


class GitHubReviewComment(BaseModel):
    id: int
    user: GitHubUser | None = None
    body: str = ""
    created_at: datetime
    path: str | None = None
    line: int | None = None
    in_reply_to_id: int | None = None
    pull_request_review_id: int | None = None


class GitHubCommitSignature(BaseModel):
    name: str | None = None
    email: str | None = None
    date: datetime | None = None


class GitHubCommitDetail(BaseModel):
    message: str = ""
    author: GitHubCommitSignature | None = None
    committer: GitHubCommitSignature | None = None


class GitHubCommit(BaseModel):
    sha: str
    commit: GitHubCommitDetail
    author: GitHubUser | None = None


@dataclass(slots=True)
class PullRequestListing:
    """Result of one pull-request listing pass."""

    pull_requests: list[GitHubPullRequest] = field(default_factory=list)
    etag: str | None = None
    not_modified: bool = False


def validate_items(model: type[M], payload: Iterable[Any], what: str) -> Iterator[M]:
    """Parse each payload item as *model*, skipping malformed ones.

    One bad item (a missing ``created_at``, a non-object) is logged and
    dropped; the rest of the page still comes through.
    """
    for raw in payload:
        try:
            yield model.model_validate(raw)
        except ValidationError as exc:
            item_id = raw.get("id") if isinstance(raw, dict) else None
            logger.warning(
                "Dropping malformed %s %r: %d validation error(s)",
                what, item_id, exc.error_count(),
            )


# ---------------------------------------------------------------------------
# Payload → RawEvent
# ---------------------------------------------------------------------------
def commit_to_event(commit: GitHubCommit, sequence: int) -> RawEvent:
    # Committer date tracks when the commit landed on the branch; author
    # date survives rebases unchanged.
    detail = commit.commit
    when = None
    if detail.committer is not None and detail.committer.date is not None:
        when = detail.committer.date
    elif detail.author is not None:
        when = detail.author.date
    return RawEvent(
        kind=EventKind.COMMIT_PUSHED,
        source_event_id=f"commit:{commit.sha}",
        actor=commit.author.login if commit.author else None,
        timestamp=when,
        sequence=sequence,
        commit_sha=commit.sha,
    )


def review_to_event(review: GitHubReview) -> RawEvent | None:
    """Map a review; ``None`` for dismissed, pending or unattributed reviews."""
    state = _REVIEW_STATES.get(review.state.upper())
    if state is None:
        return None
    if review.user is None:
        logger.warning("Dropping review %d: no author", review.id)
        return None
    if review.submitted_at is None:
        logger.warning("Dropping review %d: no submitted_at", review.id)
        return None
    body = review.body or ""
    return RawEvent(
        kind=EventKind.REVIEW_STATE_CHANGED,
        source_event_id=f"review:{review.id}",
        actor=review.user.login,
        timestamp=review.submitted_at,
        sequence=review.id,
        review_state=state.value,
        body=body,
        body_length=len(body.strip()),
    )


def comment_to_event(comment: GitHubReviewComment) -> RawEvent:
    return RawEvent(
        kind=EventKind.COMMENT_POSTED,
        source_event_id=f"comment:{comment.id}",
        actor=comment.user.login if comment.user else None,
        timestamp=comment.created_at,
        sequence=comment.id,
        body=comment.body,
        body_length=len(comment.body.strip()),
        path=comment.path,
        line=comment.line,
        in_reply_to=comment.in_reply_to_id,
    )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------
def _retry_after_seconds(response: httpx.Response) -> float:
    header = response.headers.get("retry-after")
    if header is not None:
        try:
            return max(float(header), 0.0)
        except ValueError:
            pass
    reset = response.headers.get("x-ratelimit-reset")
    if reset is not None:
        try:
            return max(float(reset) - time.time(), 0.0)
        except ValueError:
            pass
    return float(DEFAULT_RETRY_AFTER)


def _is_rate_limited(response: httpx.Response) -> bool:
    if response.status_code == 429:
        return True
    if response.status_code == 403:
        return (
            response.headers.get("x-ratelimit-remaining") == "0"
            or "retry-after" in response.headers
        )
    return False


class GitHubClient:
    """Async GitHub REST client.

    Parameters
    ----------
    token:
        Personal access / app token.  Anonymous when ``None``.
    base_url:
        API root, overridable for GitHub Enterprise.
    transport:
        Optional ``httpx`` transport (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        token: str | None = None,
        *,
        base_url: str = GITHUB_API,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 20.0,
    ) -> None:
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": USER_AGENT,
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> GitHubClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # -- transport ----------------------------------------------------------
    async def _get(
        self,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        logger.debug("GET %s %s", url, params or "")
        response = await self._client.get(url, params=params, headers=headers)

        if response.status_code == 304:
            return response
        if response.status_code == 404:
            raise NotFoundError(str(response.request.url))
        if _is_rate_limited(response):
            raise RateLimitedError(_retry_after_seconds(response))
        if response.is_error:
            raise GitHubAPIError(response.status_code, response.text[:500])
        return response

    async def _get_paginated(
        self,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        max_pages: int | None = None,
    ) -> list[dict[str, Any]]:
        """Follow ``Link: rel="next"`` until exhausted."""
        items: list[dict[str, Any]] = []
        next_url: str | None = url
        next_params = {"per_page": PER_PAGE, **(params or {})}
        pages = 0
        while next_url is not None:
            response = await self._get(next_url, params=next_params)
            items.extend(response.json())
            pages += 1
            if max_pages is not None and pages >= max_pages:
                logger.warning("Hit pagination limit of %d pages for %s", max_pages, url)
                break
            next_link = response.links.get("next")
            next_url = next_link["url"] if next_link else None
            next_params = None  # the next URL already carries the query
        return items

    # -- endpoints ----------------------------------------------------------
    async def get_repo(self, owner: str, name: str) -> GitHubRepo:
        response = await self._get(f"/repos/{owner}/{name}")
        return GitHubRepo.model_validate(response.json())

    async def list_pull_requests(
        self,
        owner: str,
        name: str,
        *,
        since: datetime,
        etag: str | None = None,
    ) -> PullRequestListing:
        """Pull requests updated at or after *since*, newest first.

        When *etag* still matches the first page GitHub answers ``304`` and
        the listing comes back with ``not_modified=True`` and no pull
        requests.
        """
        listing = PullRequestListing()
        url: str | None = f"/repos/{owner}/{name}/pulls"
        params: dict[str, Any] | None = {
            "state": "all",
            "sort": "updated",
            "direction": "desc",
            "per_page": PER_PAGE,
        }
        headers = {"If-None-Match": etag} if etag else None

        for page in range(1, MAX_PR_PAGES + 1):
            response = await self._get(url, params=params, headers=headers)
            if page == 1:
                if response.status_code == 304:
                    logger.info("%s/%s pull requests not modified since last sync", owner, name)
                    listing.etag = etag
                    listing.not_modified = True
                    return listing
                listing.etag = response.headers.get("etag")
            headers = None

            reached_cutoff = False
            for pr in validate_items(GitHubPullRequest, response.json(), "pull request"):
                if pr.updated_at < since:
                    # Sorted by updated desc: everything after is older
                    reached_cutoff = True
                    break
                listing.pull_requests.append(pr)

            next_link = response.links.get("next")
            if reached_cutoff or not next_link:
                break
            url, params = next_link["url"], None
        else:
            logger.warning("Hit pagination limit of %d pages for %s/%s", MAX_PR_PAGES, owner, name)

        logger.info(
            "Fetched %d pull requests for %s/%s", len(listing.pull_requests), owner, name,
        )
        return listing

    async def list_commits(
        self,
        owner: str,
        name: str,
        number: int,
        since: datetime | None = None,
    ) -> list[RawEvent]:
        """Commits of a pull request, in branch order.

        The endpoint has no server-side ``since`` filter, so it is applied
        here.  ``sequence`` is the commit's index among the well-formed ones.
        """
        payload = await self._get_paginated(f"/repos/{owner}/{name}/pulls/{number}/commits")
        events = []
        for index, commit in enumerate(validate_items(GitHubCommit, payload, "commit")):
            event = commit_to_event(commit, index)
            if since is not None and event.timestamp is not None and event.timestamp < since:
                continue
            events.append(event)
        return events

    async def list_reviews(self, owner: str, name: str, number: int) -> list[RawEvent]:
        payload = await self._get_paginated(f"/repos/{owner}/{name}/pulls/{number}/reviews")
        events = []
        for review in validate_items(GitHubReview, payload, "review"):
            event = review_to_event(review)
            if event is not None:
                events.append(event)
        return events

    async def list_review_comments(self, owner: str, name: str, number: int) -> list[RawEvent]:
        payload = await self._get_paginated(f"/repos/{owner}/{name}/pulls/{number}/comments")
        return [
            comment_to_event(c)
            for c in validate_items(GitHubReviewComment, payload, "review comment")
        ]
