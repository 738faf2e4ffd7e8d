"""
reviewforge.worker.scheduler — Periodic background jobs
=========================================================

Jobs run inside the worker process on plain ``asyncio`` loops:

- **Sync** — every ``sync_interval_minutes``, runs
  :meth:`SyncCoordinator.sync_all` over every tracked repository.
- **Categorization** — every ``categorize_interval_minutes``, classifies one
  batch of comments.  Only scheduled when ``OPENAI_API_KEY`` is set.

A failing tick is logged and the loop keeps going; the next tick retries.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from reviewforge.services.categorize_service import categorize_batch

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from reviewforge.config import ReviewForgeConfig
    from reviewforge.services.categorize_service import CommentCategorizer
    from reviewforge.services.locks import RepoLocks
    from reviewforge.services.sync_service import SyncCoordinator

logger = logging.getLogger(__name__)


async def run_periodically(
    name: str,
    interval_seconds: float,
    job: Callable[[], Awaitable[object]],
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    max_ticks: int | None = None,
) -> None:
    """Run *job* now and then every *interval_seconds* until cancelled."""
    ticks = 0
    while max_ticks is None or ticks < max_ticks:
        try:
            await job()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Periodic task %s failed", name, extra={"task": name})
        ticks += 1
        if max_ticks is not None and ticks >= max_ticks:
            break
        await sleep(interval_seconds)


class Scheduler:
    """Owns the worker's background loops."""

    def __init__(
        self,
        cfg: ReviewForgeConfig,
        engine: Engine,
        locks: RepoLocks,
        coordinator: SyncCoordinator,
        categorizer: CommentCategorizer | None = None,
    ) -> None:
        self.cfg = cfg
        self.engine = engine
        self.locks = locks
        self.coordinator = coordinator
        self.categorizer = categorizer

    async def sync_tick(self) -> None:
        reports, failures = await self.coordinator.sync_all()
        logger.info(
            "Sync round finished: %d ok, %d failed",
            len(reports), len(failures),
        )

    async def categorize_tick(self) -> None:
        if self.categorizer is None:
            return
        await categorize_batch(
            self.engine, self.locks, self.categorizer, self.cfg.categorize_batch_size,
        )

    async def run(self) -> None:
        loops = [
            run_periodically("sync", self.cfg.sync_interval_minutes * 60, self.sync_tick),
        ]
        if self.categorizer is not None:
            loops.append(run_periodically(
                "categorize", self.cfg.categorize_interval_minutes * 60, self.categorize_tick,
            ))
        else:
            logger.info("OPENAI_API_KEY not set — comment categorization disabled")
        await asyncio.gather(*loops)
