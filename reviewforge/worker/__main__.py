"""
reviewforge.worker.__main__ — Entry point for ``python -m reviewforge.worker``
==============================================================================

Wiring:
1. Load .env (secrets).
2. Load config.yaml (infrastructure settings).
3. Create the SQLAlchemy engine, ensure tables exist, seed achievements.
4. Register the configured repositories as tracked.
5. Optionally run a full recalculation.
6. Start the sync loop (and the categorization loop if OPENAI_API_KEY is set).

Run with::

    python -m reviewforge.worker
"""

from __future__ import annotations

import asyncio
import logging
import os

from dotenv import load_dotenv

from reviewforge.config import ReviewForgeConfig, load_config
from reviewforge.database.engine import create_db_engine, init_db
from reviewforge.engine.classifier import StoredQualityClassifier
from reviewforge.github.client import GitHubClient
from reviewforge.services.categorize_service import CommentCategorizer
from reviewforge.services.locks import RepoLocks
from reviewforge.services.recalc_service import recalculate_all
from reviewforge.services.sync_service import SyncCoordinator, track_repository
from reviewforge.worker.scheduler import Scheduler

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("reviewforge")


async def run_worker(cfg: ReviewForgeConfig) -> None:
    engine = create_db_engine()
    init_db(engine)

    for full_name in cfg.repositories:
        track_repository(engine, full_name)

    locks = RepoLocks(cfg.max_concurrent_syncs)
    classifier = StoredQualityClassifier()

    if cfg.recalculate_on_start:
        await recalculate_all(engine, locks, classifier)

    token = os.getenv("GITHUB_TOKEN")
    if not token:
        logger.warning("GITHUB_TOKEN is not set — using unauthenticated GitHub API (60 req/h)")

    api_key = os.getenv("OPENAI_API_KEY")
    categorizer = (
        CommentCategorizer(api_key, model=cfg.categorize_model) if api_key else None
    )

    async with GitHubClient(token=token) as github:
        coordinator = SyncCoordinator(engine, github, locks, cfg, classifier=classifier)
        scheduler = Scheduler(cfg, engine, locks, coordinator, categorizer)
        try:
            await scheduler.run()
        finally:
            if categorizer is not None:
                await categorizer.aclose()


def main() -> None:
    """Bootstrap and run the ReviewForge worker."""

    # 1. Environment variables (secrets).
    load_dotenv()

    # 2. Infrastructure configuration.
    cfg = load_config(os.getenv("REVIEWFORGE_CONFIG", "config.yaml"))
    logger.info("Config loaded — tracking %d repositories", len(cfg.repositories))

    # 3. Run (blocks until Ctrl+C or SIGTERM).
    logger.info("Starting ReviewForge worker…")
    try:
        asyncio.run(run_worker(cfg))
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully…")


if __name__ == "__main__":
    main()
