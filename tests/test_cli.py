"""Tests for the nbt command line."""

import json
from pathlib import Path

import pytest

from notebook_transfer import backup_commands, cli, graph_commands
from notebook_transfer.backends import open_directory
from notebook_transfer.config import Config
from notebook_transfer.conflicts import ConflictResolution
from notebook_transfer.models import EntityCollection, EntityKind, Project


@pytest.fixture
def store_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, sample_collection: EntityCollection) -> Path:
    """A configured JSON store pre-filled with the sample data."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setattr(Path, "home", lambda: home)
    monkeypatch.chdir(tmp_path)

    data = tmp_path / "data"
    Config().set("store.path", str(data))
    layer = open_directory(data)
    for kind, entity in sample_collection.items():
        layer.store(kind).add(entity)
    layer.flush()
    return data


@pytest.fixture
def bundle_file(tmp_path: Path, store_dir: Path, capsys: pytest.CaptureFixture[str]) -> Path:
    """The sample store exported to a bundle file."""
    path = tmp_path / "bundle.json"
    cli.export(output=path)
    capsys.readouterr()
    return path


def test_export(tmp_path: Path, store_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Test export writes a bundle and prints per-kind counts."""
    path = tmp_path / "out.json"

    cli.export(output=path, kinds="tasks,projects")

    out = capsys.readouterr().out
    assert f"Exported 4 item(s) to {path}" in out
    assert "  tasks: 2" in out
    data = json.loads(path.read_text())
    assert data["metadata"]["userId"] == "local"
    assert data["data"]["goals"] == []


def test_export_until_covers_whole_day(tmp_path: Path, store_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Test a bare end date includes entities created during that day."""
    path = tmp_path / "out.json"

    cli.export(output=path, kinds="goals", until="2024-01-01")

    assert "Exported 1 item(s)" in capsys.readouterr().out


def test_summary(store_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Test the store summary lists every kind with its breakdowns."""
    cli.summary()

    out = capsys.readouterr().out
    assert "tasks: 2 (active 1, completed 1)" in out
    assert "projects: 2 (active 2)" in out
    assert "people: 1\n" in out


def test_summary_json(store_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Test the JSON summary."""
    cli.summary(json_=True)

    data = json.loads(capsys.readouterr().out)
    assert data["goals"]["total"] == 1
    assert data["tasks"]["completed"] == 1


def test_analyze_reports_duplicates(bundle_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Test analyzing a bundle against the store it came from finds every duplicate."""
    cli.analyze(bundle_file)

    out = capsys.readouterr().out
    assert "Items: 9" in out
    assert "Found 9 conflict(s)" in out
    assert "tasks:T1:duplicate_id" in out


def test_analyze_json(bundle_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Test the JSON preview."""
    cli.analyze(bundle_file, json_=True)

    preview = json.loads(capsys.readouterr().out)
    assert preview["conflicts"]["totalConflicts"] == 9


def test_import_into_new_store(tmp_path: Path, bundle_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Test importing the bundle into an empty store."""
    target = tmp_path / "target"
    Config().set("store.path", str(target))

    cli.import_bundle(bundle_file, backup=True, verbose=True)

    out = capsys.readouterr().out
    assert "[  0.0%] parsing" in out
    assert "Import completed: 9 imported, 9 processed" in out
    assert "Backup: " in out
    assert open_directory(target).snapshot().total == 9
    assert list((target / "backups").glob("*.json"))


def test_import_with_resolution(bundle_file: Path, store_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Test explicit resolutions and kind filters reach the executor."""
    cli.import_bundle(
        bundle_file,
        kinds="tasks",
        resolve=["tasks:T1:duplicate_id=create_new"],
        default_resolution=ConflictResolution.SKIP,
    )

    out = capsys.readouterr().out
    assert "tasks: 1 imported, 1 skipped, 0 failed" in out
    assert "Remapped 1 id(s)" in out
    assert len(open_directory(store_dir).store(EntityKind.TASKS).list_entities()) == 3


def test_parse_helpers() -> None:
    """Test kind and resolution parsing."""
    assert cli.parse_kinds("tasks, focusSessions") == {EntityKind.TASKS, EntityKind.FOCUS_SESSIONS}
    with pytest.raises(ValueError, match="Unknown entity kind"):
        cli.parse_kinds("tasks,notes")

    assert cli.parse_resolutions(["tasks:T1:duplicate_id=merge"]) == {
        "tasks:T1:duplicate_id": ConflictResolution.MERGE
    }
    with pytest.raises(ValueError, match="Invalid resolution"):
        cli.parse_resolutions(["merge"])


def test_graph_order(bundle_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Test the import order listing puts parents first."""
    graph_commands.order(bundle_file)

    out = capsys.readouterr().out
    assert out.index("P1 Health") < out.index("P2 Gym plan")
    assert "  1. G1 Get fit" in out


def test_graph_refs(store_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Test references in both directions, read from the store."""
    graph_commands.refs("P1")

    out = capsys.readouterr().out
    assert "Entity: P1 Health (projects)" in out
    assert "goalId:" in out
    assert "  - G1 Get fit" in out
    assert "  - T1 Buy shoes" in out

    with pytest.raises(ValueError, match="not found"):
        graph_commands.refs("nope")


def test_graph_cycles(store_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Test cycle listing."""
    graph_commands.cycles()
    assert "No cycles found" in capsys.readouterr().out

    layer = open_directory(store_dir)
    projects = layer.store(EntityKind.PROJECTS)
    projects.update(Project(id="P1", title="Health", parent_project_id="P2"))
    layer.flush()

    graph_commands.cycles()
    assert "Found 1 cycle(s)" in capsys.readouterr().out


def test_backup_commands(store_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Test creating, listing and showing a backup."""
    backup_commands.create()
    out = capsys.readouterr().out
    assert "with 9 item(s)" in out
    backup_id = out.split()[2]

    backup_commands.list_backups()
    assert backup_id in capsys.readouterr().out

    backup_commands.show(backup_id)
    out = capsys.readouterr().out
    assert "Reason: manual" in out
    assert "  tasks: 2" in out


def test_no_backups(store_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Test listing when nothing was backed up."""
    backup_commands.list_backups()

    assert "No backups found" in capsys.readouterr().out
