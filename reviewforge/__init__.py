"""
ReviewForge — Gamified Code Review Scoring
==========================================
Pulls review activity (reviews, inline comments, commit pushes) from GitHub,
folds it into bounded review sessions, awards XP per session, and tracks
levels and achievements for every reviewer.

Package layout::

    reviewforge/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Scoring constants + leveling formula
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   ├── models.py      # All ORM models
    │   └── seed.py        # Achievement catalog seeder
    ├── github/
    │   └── client.py      # Async GitHub REST adapter (httpx)
    ├── engine/
    │   ├── events.py      # RawEvent dataclass + ordering key
    │   ├── sessions.py    # Review session segmenter
    │   ├── classifier.py  # CommentClassifier implementations
    │   ├── scoring.py     # Session XP calculation
    │   ├── aggregate.py   # ScoredSession → UserAggregate fold
    │   └── achievements.py # Rule-table achievement evaluator
    ├── services/
    │   ├── sync_service.py      # Incremental repository sync
    │   ├── pipeline_service.py  # Segment → score → aggregate → unlock
    │   ├── recalc_service.py    # Reset-and-replay recalculation
    │   ├── query_service.py     # Read-side queries
    │   ├── achievement_service.py # Unlock persistence + notifications
    │   ├── categorize_service.py  # LLM comment categorization batch
    │   └── locks.py             # Per-repository exclusion
    ├── seeds/
    │   └── achievements.yaml # Achievement catalog
    └── worker/
        ├── scheduler.py   # Periodic sync + categorization loops
        └── __main__.py    # ``python -m reviewforge.worker``
"""

__version__ = "0.1.0"
