"""CLI for notebook transfer."""

import json
from pathlib import Path
from typing import Annotated, Literal

import structlog
from cyclopts import App, Parameter

from notebook_transfer.backend import DataLayer
from notebook_transfer.backends import open_directory
from notebook_transfer.backup import BackupManager
from notebook_transfer.backup_commands import backup_app
from notebook_transfer.config import get_config
from notebook_transfer.config_commands import config_app
from notebook_transfer.conflicts import ConflictResolution
from notebook_transfer.export import (
    ExportFilterEngine,
    ExportFilterOptions,
    default_filename,
    parse_date,
    read_bundle,
    write_bundle,
)
from notebook_transfer.graph_commands import graph_app
from notebook_transfer.importer import ImportExecutor, ImportOptions, ImportSelection
from notebook_transfer.models import KIND_ORDER, EntityKind
from notebook_transfer.progress import ImportPhase, ImportProgress

logger = structlog.get_logger()

app = App(
    help="Notebook Transfer - Bulk export and import of notebook data",
)

app.command(graph_app)
app.command(backup_app)
app.command(config_app)


def configure_logging(log_level: str) -> None:
    """Configure structlog with the specified log level."""
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(min_level=log_level.lower()))


def get_data_layer() -> DataLayer:
    """Open the configured JSON store directory."""
    config = get_config()
    store_path = config.get("store.path")
    if not store_path:
        raise ValueError("Store path not configured. Set it using:\n  nbt config set store.path <directory>")
    return open_directory(Path(store_path))


def get_backup_manager() -> BackupManager:
    config = get_config()
    backup_path = config.get("backup.path") or Path(config.get("store.path")) / "backups"
    return BackupManager(directory=Path(backup_path))


def get_user_id() -> str:
    return str(get_config().get("user.id"))


def parse_kinds(kinds: str) -> frozenset[EntityKind]:
    """Parse a comma separated list of kind names, e.g. "tasks,projects"."""
    parsed = set()
    for name in kinds.split(","):
        name = name.strip()
        if not name:
            continue
        try:
            parsed.add(EntityKind(name))
        except ValueError as e:
            choices = ", ".join(kind.value for kind in KIND_ORDER)
            raise ValueError(f"Unknown entity kind '{name}'. Choose from: {choices}") from e
    return frozenset(parsed)


def _split(values: str | None) -> frozenset[str] | None:
    if not values:
        return None
    return frozenset(v.strip() for v in values.split(",") if v.strip())


def parse_resolutions(items: list[str]) -> dict[str, ConflictResolution]:
    """Parse ``<conflict id>=<resolution>`` pairs."""
    resolutions = {}
    for item in items:
        conflict_id, sep, resolution = item.rpartition("=")
        if not sep or not conflict_id:
            raise ValueError(f"Invalid resolution '{item}'. Use <conflict-id>=<resolution>")
        resolutions[conflict_id] = ConflictResolution(resolution)
    return resolutions


@app.command
def export(
    output: Path | None = None,
    kinds: str | None = None,
    since: str | None = None,
    until: str | None = None,
    status: str | None = None,
    tags: str | None = None,
    categories: str | None = None,
    exclude_completed: bool = False,
) -> None:
    """Export notebook data to a JSON bundle.

    Args:
        output: Bundle file to write (default notebook-export-<date>.json)
        kinds: Comma separated kinds to include (default all)
        since: Only entities created on or after this ISO date
        until: Only entities created on or before this ISO date
        status: Comma separated statuses to keep
        tags: Keep entities carrying any of these comma separated tags
        categories: Comma separated categories to keep
        exclude_completed: Leave out done tasks and completed goals and projects
    """
    end = parse_date(until) if until else None
    if end is not None and len(until) == 10:
        # A bare date includes the whole day.
        end = end.replace(hour=23, minute=59, second=59, microsecond=999999)
    options = ExportFilterOptions(
        kinds=parse_kinds(kinds) if kinds else None,
        start=parse_date(since) if since else None,
        end=end,
        statuses=_split(status),
        include_completed=not exclude_completed,
        tags=_split(tags),
        categories=_split(categories),
    )
    data_layer = get_data_layer()
    bundle = ExportFilterEngine().export(data_layer.snapshot(), get_user_id(), options)
    path = write_bundle(bundle, output or Path(default_filename()))

    print(f"Exported {bundle.metadata.total_items} item(s) to {path}")
    for kind in KIND_ORDER:
        count = bundle.metadata.entity_counts.get(kind.value, 0)
        if count:
            print(f"  {kind.value}: {count}")


@app.command
def summary(json_: Annotated[bool, Parameter(name="--json")] = False) -> None:
    """Show how many entities of each kind the store holds.

    Args:
        json_: Print the counts as JSON
    """
    counts = ExportFilterEngine().summary(get_data_layer().snapshot())

    if json_:
        print(json.dumps({kind.value: item.to_dict() for kind, item in counts.items()}, indent=2))
        return

    for kind, item in counts.items():
        details = ", ".join(f"{key} {value}" for key, value in item.to_dict().items() if key != "total" and value)
        print(f"{kind.value}: {item.total}" + (f" ({details})" if details else ""))


@app.command
def analyze(bundle: Path, json_: Annotated[bool, Parameter(name="--json")] = False) -> None:
    """Preview an import: validation, conflicts and import order.

    Args:
        bundle: Bundle file to analyze
        json_: Print the full preview as JSON
    """
    executor = ImportExecutor(get_data_layer())
    preview = executor.analyze(read_bundle(bundle))

    if json_:
        print(json.dumps(preview.to_dict(), indent=2, default=str))
        return

    metadata = preview.validation.metadata
    print(f"Bundle version {metadata.version}, exported {metadata.exported_at} by {metadata.user_id}")
    print(f"Items: {preview.validation.entities.total} (estimated import time {preview.estimated_ms / 1000:.1f}s)\n")

    for issue in preview.validation.issues:
        where = f" {issue.kind.value}/{issue.entity_id}" if issue.kind else ""
        print(f"[{issue.severity.value}]{where}: {issue.message}")

    report = preview.conflicts
    if not report.total_conflicts:
        print("No conflicts found")
        return
    print(f"\nFound {report.total_conflicts} conflict(s):\n")
    for conflict in report.conflicts:
        print(f"  {conflict.id}")
        print(f"    {conflict.message} (suggested: {conflict.suggested_resolution.value})")


@app.command(name="import")
def import_bundle(
    bundle: Path,
    kinds: str | None = None,
    resolve: list[str] | None = None,
    default_resolution: ConflictResolution | None = None,
    preserve_ids: bool | None = None,
    backup: bool | None = None,
    error_threshold: int | None = None,
    auto_resolve: bool = True,
    verbose: bool = False,
) -> None:
    """Import a JSON bundle into the store.

    Args:
        bundle: Bundle file to import
        kinds: Comma separated kinds to import (default all)
        resolve: Conflict resolution as <conflict-id>=<resolution>; repeatable
        default_resolution: Resolution for conflicts without an explicit one, where it applies
        preserve_ids: Keep the bundle's ids (config import.preserve_ids)
        backup: Snapshot the store first (config import.create_backup)
        error_threshold: Refuse the import above this many validation errors
        auto_resolve: Apply suggested resolutions to conflicts still undecided
        verbose: Print every phase change
    """
    config = get_config()
    options = ImportOptions(
        preserve_ids=config.get_bool("import.preserve_ids") if preserve_ids is None else preserve_ids,
        create_backup=config.get_bool("import.create_backup") if backup is None else backup,
        auto_resolve_conflicts=auto_resolve,
        default_conflict_resolution=default_resolution or config.get_resolution(),
        error_threshold=config.get_int("import.error_threshold") if error_threshold is None else error_threshold,
    )
    selection = ImportSelection(
        items={kind: None for kind in parse_kinds(kinds)} if kinds else None,
        resolutions=parse_resolutions(resolve or []),
    )

    last_phase: list[ImportPhase] = []

    def on_progress(progress: ImportProgress) -> None:
        if verbose and (not last_phase or last_phase[-1] != progress.phase):
            last_phase.append(progress.phase)
            print(f"[{progress.overall_progress:5.1f}%] {progress.phase.value}")

    executor = ImportExecutor(get_data_layer(), backup_manager=get_backup_manager(), user_id=get_user_id())
    result = executor.run(read_bundle(bundle), selection, options, on_progress=on_progress)

    print(f"Import {result.phase.value}: {result.total_imported} imported, {result.items_processed} processed")
    for kind in KIND_ORDER:
        if result.imported[kind] or result.skipped[kind] or result.failed[kind]:
            print(
                f"  {kind.value}: {result.imported[kind]} imported, "
                f"{result.skipped[kind]} skipped, {result.failed[kind]} failed"
            )
    if result.references_patched:
        print(f"Patched references on {result.references_patched} item(s)")
    if result.backup_id:
        print(f"Backup: {result.backup_id}")
    if result.id_mapping.old_to_new:
        print(f"Remapped {len(result.id_mapping)} id(s)")
    for warning in result.warnings:
        print(f"Warning: {warning.message}")
    for error in result.errors:
        print(f"Error: {error.message}")


@app.meta.default
def main(
    *tokens: Annotated[str, Parameter(show=False, allow_leading_hyphen=True)],
    log_level: Literal["debug", "info", "warning", "error", "critical"] = "critical",
) -> None:
    """Main entry point with global options."""
    configure_logging(log_level)
    app(tokens)


if __name__ == "__main__":
    app.meta()
