"""Tests for conflict detection and resolution."""

import pytest

from notebook_transfer.conflicts import ConflictDetector, ConflictReport, ConflictResolution, ConflictType
from notebook_transfer.models import EntityCollection, EntityKind, FocusSession, FocusTask, Project, Task


def test_no_conflicts_against_empty_store(sample_collection: EntityCollection) -> None:
    """Test a self-contained bundle into an empty store is clean."""
    report = ConflictDetector().detect(sample_collection, EntityCollection())

    assert report.total_conflicts == 0
    assert not report.has_blocking_conflicts
    assert report.conflicts_by_type == {conflict_type: 0 for conflict_type in ConflictType}


def test_duplicate_id_suggests_merge_when_newer() -> None:
    """Test duplicate ids suggest merge for newer incoming data, skip otherwise."""
    incoming = EntityCollection(
        tasks=[
            Task(id="T1", title="New", updated_at="2024-02-01T00:00:00Z"),
            Task(id="T2", title="Old", updated_at="2024-01-01T00:00:00Z"),
        ]
    )
    existing = EntityCollection(
        tasks=[
            Task(id="T1", title="Stored", updated_at="2024-01-15T00:00:00Z"),
            Task(id="T2", title="Stored", updated_at="2024-01-15T00:00:00Z"),
        ]
    )

    report = ConflictDetector().detect(incoming, existing)

    assert [c.type for c in report.conflicts] == [ConflictType.DUPLICATE_ID, ConflictType.DUPLICATE_ID]
    assert report.get("tasks:T1:duplicate_id").suggested_resolution == ConflictResolution.MERGE
    assert report.get("tasks:T2:duplicate_id").suggested_resolution == ConflictResolution.SKIP


def test_version_mismatch_supersedes_duplicate() -> None:
    """Test an older incoming version raises only a version mismatch."""
    incoming = EntityCollection(tasks=[Task(id="T1", title="Old", version=1)])
    existing = EntityCollection(tasks=[Task(id="T1", title="Current", version=2)])

    report = ConflictDetector().detect(incoming, existing)

    assert report.total_conflicts == 1
    conflict = report.conflicts[0]
    assert conflict.type == ConflictType.VERSION_MISMATCH
    assert conflict.suggested_resolution == ConflictResolution.SKIP
    assert conflict.is_entity_level


def test_duplicate_ids_only_within_same_kind() -> None:
    """Test the same id under a different kind is not a duplicate."""
    incoming = EntityCollection(tasks=[Task(id="X1", title="Task")])
    existing = EntityCollection(projects=[Project(id="X1", title="Project")])

    assert ConflictDetector().detect(incoming, existing).total_conflicts == 0


def test_broken_optional_reference() -> None:
    """Test a reference absent from both sides is one broken_reference conflict."""
    incoming = EntityCollection(tasks=[Task(id="T1", title="Orphan", project_id="P9")])

    report = ConflictDetector().detect(incoming, EntityCollection())

    assert report.total_conflicts == 1
    conflict = report.conflicts[0]
    assert conflict.type == ConflictType.BROKEN_REFERENCE
    assert conflict.id == "tasks:T1:broken_reference:projectId:P9"
    assert conflict.suggested_resolution == ConflictResolution.CLEAR_REFERENCE
    assert conflict.referenced_kind == EntityKind.PROJECTS
    assert conflict.to_dict()["details"] == {
        "fieldName": "projectId",
        "referencedEntity": "projects",
        "referencedId": "P9",
    }


def test_reference_satisfied_by_existing_data() -> None:
    """Test a referent already in the store is not broken."""
    incoming = EntityCollection(tasks=[Task(id="T1", title="Child", project_id="P1")])
    existing = EntityCollection(projects=[Project(id="P1", title="Parent")])

    assert ConflictDetector().detect(incoming, existing).total_conflicts == 0


def test_broken_required_reference_suggests_skip() -> None:
    """Test a focus session pointing at a missing task suggests skipping it."""
    incoming = EntityCollection(focus_sessions=[FocusSession(id="FS1", duration=25, tasks=[FocusTask(id="T9")])])

    report = ConflictDetector().detect(incoming, EntityCollection())

    assert report.conflicts[0].required
    assert report.conflicts[0].suggested_resolution == ConflictResolution.SKIP


def test_detection_is_repeatable(sample_collection: EntityCollection) -> None:
    """Test detection has no side effects on its inputs."""
    existing = EntityCollection(tasks=[Task(id="T1", title="Stored")])
    detector = ConflictDetector()

    first = detector.detect(sample_collection, existing)
    second = detector.detect(sample_collection, existing)

    assert first == second
    assert sample_collection.tasks[0].title == "Buy shoes"


@pytest.fixture
def report() -> ConflictReport:
    """A report with one duplicate and one broken reference."""
    incoming = EntityCollection(tasks=[Task(id="T1", title="Dup", project_id="P9")])
    existing = EntityCollection(tasks=[Task(id="T1", title="Stored")])
    return ConflictDetector().detect(incoming, existing)


def test_unresolved_report_is_blocking(report: ConflictReport) -> None:
    """Test conflicts without a decision block."""
    assert report.has_blocking_conflicts
    assert len(report.needing_resolution()) == 2


def test_resolve_uses_suggestions(report: ConflictReport) -> None:
    """Test auto resolution applies suggested resolutions."""
    resolved = report.resolve()

    assert not resolved.has_blocking_conflicts
    assert resolved.get("tasks:T1:duplicate_id").resolution == ConflictResolution.SKIP
    assert resolved.get("tasks:T1:broken_reference:projectId:P9").resolution == ConflictResolution.CLEAR_REFERENCE


def test_resolve_precedence(report: ConflictReport) -> None:
    """Test explicit resolutions win over suggestions and defaults."""
    resolved = report.resolve(
        {"tasks:T1:duplicate_id": ConflictResolution.REPLACE},
        default=ConflictResolution.MERGE,
        auto_resolve=False,
    )

    assert resolved.get("tasks:T1:duplicate_id").resolution == ConflictResolution.REPLACE
    # merge does not apply to a reference, so the suggestion is used
    assert resolved.get("tasks:T1:broken_reference:projectId:P9").resolution == ConflictResolution.CLEAR_REFERENCE


def test_default_applies_before_suggestion(report: ConflictReport) -> None:
    """Test an applicable default beats the suggestion even with auto resolution on."""
    resolved = report.resolve(default=ConflictResolution.REPLACE, auto_resolve=True)

    assert resolved.get("tasks:T1:duplicate_id").resolution == ConflictResolution.REPLACE
    # replace does not apply to a reference, so the suggestion is used
    assert resolved.get("tasks:T1:broken_reference:projectId:P9").resolution == ConflictResolution.CLEAR_REFERENCE


def test_for_entity(report: ConflictReport) -> None:
    """Test conflicts are looked up by kind and entity id."""
    assert [c.id for c in report.for_entity(EntityKind.TASKS, "T1")] == [
        "tasks:T1:duplicate_id",
        "tasks:T1:broken_reference:projectId:P9",
    ]
    assert report.for_entity(EntityKind.PROJECTS, "T1") == []
    assert report.for_entity(EntityKind.TASKS, "T2") == []


def test_ask_user_without_default_blocks(report: ConflictReport) -> None:
    """Test deferring to the user without a default leaves the conflict blocking."""
    resolved = report.resolve({"tasks:T1:duplicate_id": ConflictResolution.ASK_USER}, auto_resolve=False)

    assert resolved.has_blocking_conflicts
    assert [c.id for c in resolved.needing_resolution()] == [
        "tasks:T1:duplicate_id",
        "tasks:T1:broken_reference:projectId:P9",
    ]


def test_resolve_rejects_inapplicable_resolution(report: ConflictReport) -> None:
    """Test an explicit resolution that makes no sense for the conflict type raises."""
    with pytest.raises(ValueError, match="does not apply"):
        report.resolve({"tasks:T1:broken_reference:projectId:P9": ConflictResolution.MERGE})


def test_report_to_dict(report: ConflictReport) -> None:
    """Test the wire summary of a report."""
    data = report.to_dict()

    assert data["totalConflicts"] == 2
    assert data["conflictsByType"]["duplicate_id"] == 1
    assert data["conflictsByType"]["version_mismatch"] == 0
    assert data["hasBlockingConflicts"] is True
