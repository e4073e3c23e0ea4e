# tests/unit/test_config.py
"""
Tests for configuration loading and the backing-store factory.
"""

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from plansync.backend.factory import create_backing_store
from plansync.backend.memory import InMemoryBackingStore
from plansync.backend.sqlite_store import SQLiteBackingStore
from plansync.config.loader import load_config
from plansync.config.schema import PlanSyncConfig


def test_missing_file_is_created_with_defaults(tmp_path: Path):
    """Test that a first run writes the default YAML and returns defaults."""
    path = tmp_path / "nested" / "config.yaml"

    config = load_config(path)

    assert path.exists()
    assert config == PlanSyncConfig()
    written = yaml.safe_load(path.read_text())
    assert written["sync"]["debounce_seconds"] == 1.0
    assert written["presence"]["channel"] == "online-users"


def test_values_are_read_and_unknown_keys_ignored(tmp_path: Path):
    """Test that YAML overrides apply and unknown keys don't crash."""
    path = tmp_path / "config.yaml"
    path.write_text(
        "sync:\n"
        "  debounce_seconds: 0.3\n"
        "  surprise: true\n"
        "backend:\n"
        "  kind: sqlite\n"
        "  db_path: /tmp/plans.db\n"
        "legacy_section:\n"
        "  x: 1\n"
    )

    config = load_config(path)

    assert config.sync.debounce_seconds == 0.3
    assert config.backend.kind == "sqlite"
    assert config.presence.coalesce_seconds == 0.25


def test_empty_file_yields_defaults(tmp_path: Path):
    """Test that an empty YAML file is treated as no overrides."""
    path = tmp_path / "config.yaml"
    path.write_text("")

    assert load_config(path) == PlanSyncConfig()


def test_out_of_range_values_rejected(tmp_path: Path):
    """Test that validation bounds are enforced."""
    path = tmp_path / "config.yaml"
    path.write_text("sync:\n  debounce_seconds: -1\n")

    with pytest.raises(ValidationError):
        load_config(path)


@pytest.mark.asyncio
async def test_factory_builds_configured_store(tmp_path: Path):
    """Test that the factory honours backend.kind."""
    memory = await create_backing_store(PlanSyncConfig())
    sqlite = await create_backing_store(
        PlanSyncConfig(backend={"kind": "sqlite", "db_path": str(tmp_path / "db" / "p.db")})
    )

    assert isinstance(memory, InMemoryBackingStore)
    assert isinstance(sqlite, SQLiteBackingStore)
    assert (tmp_path / "db" / "p.db").exists()
    await sqlite.close()
