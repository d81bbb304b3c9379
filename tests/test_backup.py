"""Tests for backup snapshots."""

import itertools
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable
from unittest.mock import MagicMock

import pytest

from notebook_transfer.backend import DataLayer
from notebook_transfer.backup import BackupManager, BackupReason
from notebook_transfer.errors import BackupError, ConnectivityError
from notebook_transfer.models import EntityCollection


def _ids(prefix: str = "backup") -> Callable[[], str]:
    counter = itertools.count(1)
    return lambda: f"{prefix}-{next(counter)}"


def _clock() -> datetime:
    return datetime(2024, 3, 1, tzinfo=timezone.utc)


def test_create_in_memory(make_layer: Callable[..., DataLayer], sample_collection: EntityCollection) -> None:
    """Test a snapshot dumps every store."""
    manager = BackupManager(id_factory=_ids(), clock=_clock)

    snapshot = manager.create(make_layer(sample_collection), "user-1", reason=BackupReason.PRE_IMPORT)

    assert snapshot.id == "backup-1"
    assert snapshot.reason == BackupReason.PRE_IMPORT
    assert snapshot.created_at == "2024-03-01T00:00:00+00:00"
    assert snapshot.data == sample_collection
    assert snapshot.entity_counts["tasks"] == 2
    assert snapshot.total_items == 9
    assert manager.load("backup-1") is snapshot


def test_create_on_disk(
    tmp_path: Path, make_layer: Callable[..., DataLayer], sample_collection: EntityCollection
) -> None:
    """Test snapshots are written to and read back from the directory."""
    BackupManager(tmp_path, id_factory=_ids(), clock=_clock).create(make_layer(sample_collection), "user-1")

    assert (tmp_path / "backup-1.json").exists()
    fresh = BackupManager(tmp_path)
    loaded = fresh.load("backup-1")
    assert loaded.data == sample_collection
    assert loaded.reason == BackupReason.MANUAL
    assert [s.id for s in fresh.list()] == ["backup-1"]


def test_backups_are_write_once(tmp_path: Path, make_layer: Callable[..., DataLayer]) -> None:
    """Test an existing snapshot file is never overwritten."""
    (tmp_path / "backup-1.json").write_text("{}")
    manager = BackupManager(tmp_path, id_factory=lambda: "backup-1")

    with pytest.raises(BackupError, match="already exists"):
        manager.create(make_layer(), "user-1")
    assert (tmp_path / "backup-1.json").read_text() == "{}"


def test_list_is_ordered_by_creation(make_layer: Callable[..., DataLayer]) -> None:
    """Test snapshots list oldest first."""
    times = iter([datetime(2024, 3, 2, tzinfo=timezone.utc), datetime(2024, 3, 1, tzinfo=timezone.utc)])
    manager = BackupManager(id_factory=_ids(), clock=lambda: next(times))
    layer = make_layer()
    manager.create(layer, "user-1")
    manager.create(layer, "user-1")

    assert [s.id for s in manager.list()] == ["backup-2", "backup-1"]


def test_load_missing_backup(tmp_path: Path) -> None:
    """Test loading an unknown id raises BackupError."""
    with pytest.raises(BackupError, match="not found"):
        BackupManager(tmp_path).load("nope")
    with pytest.raises(BackupError, match="not found"):
        BackupManager().load("nope")


def test_unreadable_stores() -> None:
    """Test store read failures surface as BackupError."""
    layer = MagicMock(spec=DataLayer)
    layer.snapshot.side_effect = ConnectivityError("offline")

    with pytest.raises(BackupError, match="offline"):
        BackupManager().create(layer, "user-1")
