"""
tests/test_config.py — YAML configuration loader
=================================================
"""

from __future__ import annotations

import pytest

from reviewforge.config import ReviewForgeConfig, load_config


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml")


def test_empty_file_gives_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("", encoding="utf-8")
    assert load_config(path) == ReviewForgeConfig()


def test_values_are_read_and_coerced(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "repositories:\n"
        "  - acme/api\n"
        "  - ' acme/web '\n"
        "sync_interval_minutes: '30'\n"
        "lookback_days: 90\n"
        "rate_limit_max_backoff: 60\n"
        "recalculate_on_start: true\n",
        encoding="utf-8",
    )
    cfg = load_config(path)
    assert cfg.repositories == ("acme/api", "acme/web")
    assert cfg.sync_interval_minutes == 30
    assert cfg.lookback_days == 90
    assert cfg.rate_limit_max_backoff == 60.0
    assert cfg.recalculate_on_start is True
    assert cfg.categorize_batch_size == ReviewForgeConfig().categorize_batch_size


def test_bad_repository_name(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("repositories: [justaname]\n", encoding="utf-8")
    with pytest.raises(ValueError, match="justaname"):
        load_config(path)
