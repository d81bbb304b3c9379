"""Tests for import progress tracking."""

from unittest.mock import MagicMock

from notebook_transfer.models import EntityKind
from notebook_transfer.progress import (
    EntityImportError,
    ImportPhase,
    ImportProgress,
    ProgressTracker,
)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_importing_phase_per_kind() -> None:
    """Test each kind has its own importing phase."""
    assert ImportPhase.importing(EntityKind.FOCUS_SESSIONS) == ImportPhase.IMPORTING_FOCUS_SESSIONS
    assert ImportPhase.CANCELLED.is_terminal
    assert not ImportPhase.UPDATING_REFERENCES.is_terminal


def test_overall_progress_weighted_by_item_counts() -> None:
    """Test overall progress counts items, not kinds."""
    tracker = ProgressTracker()
    tracker.set_totals({EntityKind.GOALS: 1, EntityKind.TASKS: 3})

    tracker.finish_entity(EntityKind.GOALS, "imported")
    assert tracker.overall_progress() == 25.0

    tracker.finish_entity(EntityKind.TASKS, "skipped")
    snapshot = tracker.snapshot()
    assert snapshot.items_processed == 2
    assert snapshot.items_total == 4
    assert snapshot.overall_progress == 50.0
    assert snapshot.per_kind[EntityKind.TASKS].skipped == 1
    assert snapshot.per_kind[EntityKind.GOALS].percent == 100.0


def test_completed_is_full_progress() -> None:
    """Test a completed run reports 100% even with nothing to import."""
    tracker = ProgressTracker()
    tracker.enter(ImportPhase.COMPLETED)
    assert tracker.overall_progress() == 100.0


def test_eta_from_moving_average() -> None:
    """Test the remaining time uses the recent items per second."""
    clock = FakeClock()
    tracker = ProgressTracker(clock=clock)
    tracker.set_totals({EntityKind.TASKS: 10})

    tracker.finish_entity(EntityKind.TASKS, "imported")
    assert tracker.estimated_remaining() is None

    clock.now += 1.0
    tracker.finish_entity(EntityKind.TASKS, "imported")
    clock.now += 1.0
    tracker.finish_entity(EntityKind.TASKS, "imported")

    # 1 item/s, 7 items left
    assert tracker.estimated_remaining() == 7.0
    assert tracker.elapsed == 2.0


def test_callback_receives_snapshots() -> None:
    """Test every phase change and entity emits an immutable snapshot."""
    callback = MagicMock()
    tracker = ProgressTracker(callback)
    tracker.set_totals({EntityKind.TASKS: 1})

    tracker.enter(ImportPhase.IMPORTING_TASKS)
    tracker.begin_entity(EntityKind.TASKS, "T1")
    tracker.finish_entity(EntityKind.TASKS, "imported")

    assert callback.call_count == 2
    snapshot = callback.call_args[0][0]
    assert isinstance(snapshot, ImportProgress)
    assert snapshot.current_entity_id == "T1"
    assert snapshot.to_dict()["phase"] == "importing_tasks"


def test_callback_failure_does_not_interrupt() -> None:
    """Test a raising callback is swallowed."""
    callback = MagicMock(side_effect=RuntimeError("ui gone"))
    tracker = ProgressTracker(callback)
    tracker.set_totals({EntityKind.TASKS: 1})

    tracker.finish_entity(EntityKind.TASKS, "imported")

    assert tracker.items_processed == 1
    callback.assert_called_once()


def test_errors_are_logged() -> None:
    """Test recorded errors also appear in the log tail."""
    tracker = ProgressTracker(log_tail=2)
    tracker.log("info", "one")
    tracker.log("info", "two")
    tracker.error(EntityImportError("boom", ImportPhase.IMPORTING_TASKS, kind=EntityKind.TASKS, entity_id="T1"))

    snapshot = tracker.snapshot()
    assert [entry.message for entry in snapshot.logs] == ["two", "boom"]
    assert snapshot.errors[0].to_dict()["entityId"] == "T1"
