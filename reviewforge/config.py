"""
reviewforge.config — YAML Configuration Loader
===============================================

**Why this file exists:**
This module reads ``config.yaml`` for **infrastructure-only** settings
(tracked repositories, sync cadence, rate-limit backoff, categorization
batching).  Secrets (``DATABASE_URL``, ``GITHUB_TOKEN``, ``OPENAI_API_KEY``)
stay in the environment / ``.env``.

Scoring rules are NOT configurable here — they live in
:mod:`reviewforge.constants` so recalculation is reproducible.

Usage::

    from reviewforge.config import load_config

    cfg = load_config()              # reads ./config.yaml by default
    print(cfg.repositories)          # ("acme/api", "acme/web")
    print(cfg.sync_interval_minutes) # 360
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml


# ---------------------------------------------------------------------------
# Typed settings object (infrastructure only)
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ReviewForgeConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Repositories to register as tracked on startup ("owner/name")
    repositories: tuple[str, ...] = ()

    # Sync
    sync_interval_minutes: int = 360
    lookback_days: int = 365
    max_concurrent_syncs: int = 4

    # Rate-limit backoff
    rate_limit_max_attempts: int = 5
    rate_limit_base_backoff: float = 2.0
    rate_limit_max_backoff: float = 300.0

    # Comment categorization (only runs when OPENAI_API_KEY is set)
    categorize_interval_minutes: int = 60
    categorize_batch_size: int = 20
    categorize_model: str = "gpt-4o-mini"

    # Run a full reset-and-replay once at worker startup
    recalculate_on_start: bool = False


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> ReviewForgeConfig:
    """Read *path* and return a :class:`ReviewForgeConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    ValueError
        If a repository entry is not of the form ``owner/name``.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    repositories = tuple(str(r).strip() for r in raw.get("repositories") or ())
    for full_name in repositories:
        owner, _, name = full_name.partition("/")
        if not owner or not name:
            raise ValueError(f"Repository must be 'owner/name', got {full_name!r}")

    defaults = ReviewForgeConfig()
    return ReviewForgeConfig(
        repositories=repositories,
        sync_interval_minutes=int(
            raw.get("sync_interval_minutes", defaults.sync_interval_minutes)
        ),
        lookback_days=int(raw.get("lookback_days", defaults.lookback_days)),
        max_concurrent_syncs=int(
            raw.get("max_concurrent_syncs", defaults.max_concurrent_syncs)
        ),
        rate_limit_max_attempts=int(
            raw.get("rate_limit_max_attempts", defaults.rate_limit_max_attempts)
        ),
        rate_limit_base_backoff=float(
            raw.get("rate_limit_base_backoff", defaults.rate_limit_base_backoff)
        ),
        rate_limit_max_backoff=float(
            raw.get("rate_limit_max_backoff", defaults.rate_limit_max_backoff)
        ),
        categorize_interval_minutes=int(
            raw.get("categorize_interval_minutes", defaults.categorize_interval_minutes)
        ),
        categorize_batch_size=int(
            raw.get("categorize_batch_size", defaults.categorize_batch_size)
        ),
        categorize_model=str(raw.get("categorize_model", defaults.categorize_model)),
        recalculate_on_start=bool(
            raw.get("recalculate_on_start", defaults.recalculate_on_start)
        ),
    )
