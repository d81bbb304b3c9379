"""Phased, cancellable replay of a bundle into the stores."""

import copy
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

import structlog

from notebook_transfer.backend import DataLayer
from notebook_transfer.backup import BackupManager, BackupReason
from notebook_transfer.conflicts import Conflict, ConflictDetector, ConflictReport, ConflictResolution
from notebook_transfer.errors import BackupError, BundleFormatError, StoreError, UnrecoverableStoreError
from notebook_transfer.export import parse_bundle
from notebook_transfer.models import (
    ENTITY_TYPES,
    KIND_ORDER,
    REFERENCE_FIELDS,
    Entity,
    EntityCollection,
    EntityKind,
    ExportedBundle,
    ReferenceField,
)
from notebook_transfer.progress import (
    EntityImportError,
    EntityImportWarning,
    ImportPhase,
    LogEntry,
    ProgressCallback,
    ProgressTracker,
)
from notebook_transfer.relationships import RelationshipMap, RelationshipMapper
from notebook_transfer.validation import (
    IssueType,
    Severity,
    ValidationReport,
    Validator,
    data_size,
    estimate_import_time,
)

logger = structlog.get_logger()


@dataclass
class ImportOptions:
    """Caller choices for one import run.

    ``error_threshold`` is the number of validation errors tolerated; more
    than that refuses the whole import before anything is written. None
    means validation errors only ever block their own entity.
    """

    preserve_ids: bool = True
    update_references: bool = True
    create_backup: bool = False
    auto_resolve_conflicts: bool = True
    default_conflict_resolution: ConflictResolution | None = None
    error_threshold: int | None = None


@dataclass
class ImportSelection:
    """Which entities to import and how to resolve their conflicts.

    ``items`` maps a kind to the ids selected for it; a kind mapped to None
    is imported in full, and a kind left out of the mapping is not imported.
    With ``items`` None everything is selected. ``resolutions`` is keyed by
    conflict id.
    """

    items: dict[EntityKind, set[str] | None] | None = None
    resolutions: dict[str, ConflictResolution] = field(default_factory=dict)

    def includes(self, kind: EntityKind, entity_id: str) -> bool:
        if self.items is None:
            return True
        if kind not in self.items:
            return False
        ids = self.items[kind]
        return ids is None or entity_id in ids

    def apply(self, collection: EntityCollection) -> EntityCollection:
        selected = EntityCollection()
        for kind, entity in collection.items():
            if self.includes(kind, entity.id):
                selected.of(kind).append(entity)
        return selected


class CancellationToken:
    """Cooperative cancel signal, checked by the executor between entities."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled


@dataclass
class IdMapping:
    """Original id <-> written id, for ids that changed during one run."""

    old_to_new: dict[str, str] = field(default_factory=dict)
    new_to_old: dict[str, str] = field(default_factory=dict)
    preserved: set[str] = field(default_factory=set)
    generated: set[str] = field(default_factory=set)

    def record(self, old_id: str, new_id: str) -> None:
        if old_id == new_id:
            self.preserved.add(old_id)
            return
        self.old_to_new[old_id] = new_id
        self.new_to_old[new_id] = old_id
        self.generated.add(new_id)

    def get(self, old_id: str) -> str:
        return self.old_to_new.get(old_id, old_id)

    def __len__(self) -> int:
        return len(self.old_to_new)

    def to_dict(self) -> dict[str, Any]:
        return {
            "oldToNew": dict(self.old_to_new),
            "newToOld": dict(self.new_to_old),
            "preserved": sorted(self.preserved),
            "generated": sorted(self.generated),
        }


@dataclass
class ImportResult:
    """Terminal outcome of an import run, whatever the terminal state."""

    phase: ImportPhase
    imported: dict[EntityKind, int]
    skipped: dict[EntityKind, int]
    failed: dict[EntityKind, int]
    items_processed: int
    references_patched: int
    errors: list[EntityImportError]
    warnings: list[EntityImportWarning]
    logs: list[LogEntry]
    duration: float
    id_mapping: IdMapping
    conflicts: ConflictReport | None = None
    backup_id: str | None = None

    @property
    def completed(self) -> bool:
        return self.phase == ImportPhase.COMPLETED

    @property
    def cancelled(self) -> bool:
        return self.phase == ImportPhase.CANCELLED

    @property
    def is_failed(self) -> bool:
        return self.phase == ImportPhase.FAILED

    @property
    def success(self) -> bool:
        return self.completed and not any(self.failed.values())

    @property
    def total_imported(self) -> int:
        return sum(self.imported.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "phase": self.phase.value,
            "cancelled": self.cancelled,
            "importedCounts": {kind.value: n for kind, n in self.imported.items()},
            "skippedCounts": {kind.value: n for kind, n in self.skipped.items()},
            "failedCounts": {kind.value: n for kind, n in self.failed.items()},
            "totalImported": self.total_imported,
            "itemsProcessed": self.items_processed,
            "referencesPatched": self.references_patched,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "duration": self.duration,
            "backupId": self.backup_id,
            "idMapping": self.id_mapping.to_dict(),
        }


@dataclass
class ImportPreview:
    """What an import would do, computed without writing anything."""

    validation: ValidationReport
    relationships: RelationshipMap
    conflicts: ConflictReport
    data_size: int
    estimated_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "metadata": self.validation.metadata.to_dict(),
            "entityCounts": {k.value: n for k, n in self.validation.entities.counts().items()},
            "totalItems": self.validation.entities.total,
            "dataSize": self.data_size,
            "estimatedImportTime": self.estimated_ms,
            "validationErrors": [i.to_dict() for i in self.validation.errors],
            "validationWarnings": [i.to_dict() for i in self.validation.warnings],
            "importOrder": self.relationships.import_order,
            "conflicts": self.conflicts.to_dict(),
        }


def _union(newer: list[Any], older: list[Any]) -> list[Any]:
    merged = list(newer)
    for item in older:
        if item not in merged:
            merged.append(item)
    return merged


def _merge_values(newer: dict[str, Any], older: dict[str, Any]) -> dict[str, Any]:
    merged = dict(older)
    for key, value in newer.items():
        previous = older.get(key)
        if isinstance(value, list) and isinstance(previous, list):
            merged[key] = _union(value, previous)
        elif isinstance(value, dict) and isinstance(previous, dict):
            merged[key] = _merge_values(value, previous)
        else:
            merged[key] = value
    return merged


def merge_entities(stored: Entity, incoming: Entity) -> Entity:
    """Field-wise union of two versions of one entity.

    Scalar fields take the value of whichever side has the newer
    ``updatedAt`` (the incoming side on a tie or when either is unknown);
    lists are unioned and nested objects are merged the same way. The result
    keeps the stored id.
    """
    incoming_updated, stored_updated = incoming.updated, stored.updated
    incoming_newer = incoming_updated is None or stored_updated is None or incoming_updated >= stored_updated
    newer, older = (incoming, stored) if incoming_newer else (stored, incoming)
    merged = ENTITY_TYPES[stored.kind].from_dict(_merge_values(newer.to_dict(), older.to_dict()))
    merged.id = stored.id
    versions = [v for v in (stored.version, incoming.version) if v is not None]
    merged.version = max(versions) if versions else None
    return merged


class _Failed(Exception):
    """Internal signal that the run must stop in the failed state."""


class ImportExecutor:
    """Replays a bundle through the stores.

    The run moves through the phases parsing, validating, detecting
    conflicts, preparing, one importing phase per kind, updating references
    and completing, ending completed, failed or cancelled. Each entity is
    written with exactly one store call and the next entity starts only once
    that call has returned.
    """

    def __init__(
        self,
        data_layer: DataLayer,
        id_generator: Callable[[], str] | None = None,
        mapper: RelationshipMapper | None = None,
        detector: ConflictDetector | None = None,
        validator: Validator | None = None,
        backup_manager: BackupManager | None = None,
        clock: Callable[[], float] = time.monotonic,
        user_id: str = "unknown",
    ) -> None:
        self.data_layer = data_layer
        self.id_generator = id_generator or (lambda: uuid.uuid4().hex)
        self.mapper = mapper or RelationshipMapper()
        self.detector = detector or ConflictDetector()
        self.validator = validator or Validator()
        self.backup_manager = backup_manager or BackupManager()
        self.clock = clock
        self.user_id = user_id

    def analyze(self, raw: Any, selection: ImportSelection | None = None) -> ImportPreview:
        """Validate a bundle and detect conflicts against the current stores.

        Raises:
            BundleFormatError: If ``raw`` is JSON text that cannot be decoded
        """
        raw = self._decode(raw)
        validation = self.validator.validate(raw)
        incoming = (selection or ImportSelection()).apply(validation.entities)
        relationships = self.mapper.map(incoming)
        conflicts = self.detector.detect(incoming, self.data_layer.snapshot(), extra=relationships.conflicts)
        size = data_size(raw)
        return ImportPreview(
            validation=validation,
            relationships=relationships,
            conflicts=conflicts,
            data_size=size,
            estimated_ms=estimate_import_time(incoming.total, size),
        )

    @staticmethod
    def _decode(raw: Any) -> Any:
        if isinstance(raw, ExportedBundle):
            return raw.to_dict()
        if isinstance(raw, bytes):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise BundleFormatError(f"Bundle is not valid UTF-8: {e}") from e
        if isinstance(raw, str):
            return parse_bundle(raw)
        return raw

    def run(
        self,
        raw: Any,
        selection: ImportSelection | None = None,
        options: ImportOptions | None = None,
        cancel: CancellationToken | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ImportResult:
        """Import a bundle (JSON text, decoded dict or ExportedBundle).

        Never raises for data or store problems; the outcome, including every
        error and warning, is reported in the returned ImportResult.
        """
        return _ImportRun(
            self,
            selection or ImportSelection(),
            options or ImportOptions(),
            cancel or CancellationToken(),
            ProgressTracker(on_progress, clock=self.clock),
        ).execute(raw)


class _ImportRun:
    """State for a single execution of ImportExecutor.run."""

    def __init__(
        self,
        executor: ImportExecutor,
        selection: ImportSelection,
        options: ImportOptions,
        cancel: CancellationToken,
        tracker: ProgressTracker,
    ) -> None:
        self.executor = executor
        self.data_layer = executor.data_layer
        self.selection = selection
        self.options = options
        self.cancel = cancel
        self.tracker = tracker
        self.id_mapping = IdMapping()
        self.conflicts: ConflictReport | None = None
        self.backup_id: str | None = None
        self.references_patched = 0
        self.incoming = EntityCollection()
        self.incoming_by_id: dict[EntityKind, dict[str, Entity]] = {kind: {} for kind in KIND_ORDER}
        # (kind, original id) of every entity whose outcome is already decided
        self.processed: set[tuple[EntityKind, str]] = set()
        self.existing_ids: dict[EntityKind, set[str]] = {kind: set() for kind in KIND_ORDER}
        # (kind, original id) -> id the entity now lives under
        self.final_ids: dict[tuple[EntityKind, str], str] = {}
        # (kind, written id) -> the entity as written
        self.written: dict[tuple[EntityKind, str], Entity] = {}
        self.needs_patch: list[tuple[EntityKind, str]] = []

    def execute(self, raw: Any) -> ImportResult:
        try:
            raw = self._parse(raw)
            validation = self._validate(raw)
            relationships = self._detect(validation)
            self._prepare(relationships)
            for kind in relationships.plan.kind_order:
                if not self._import_kind(kind, relationships.plan.ids(kind)):
                    return self._finish(ImportPhase.CANCELLED)
            if self.options.update_references:
                self._update_references()
            self.tracker.enter(ImportPhase.COMPLETING)
            self._flush()
        except _Failed as e:
            logger.error("Import failed", phase=self.tracker.phase.value, error=str(e))
            return self._finish(ImportPhase.FAILED)
        return self._finish(ImportPhase.COMPLETED)

    def _fail(self, message: str, kind: EntityKind | None = None, entity_id: str | None = None) -> _Failed:
        self.tracker.error(
            EntityImportError(message, self.tracker.phase, kind=kind, entity_id=entity_id, recoverable=False)
        )
        return _Failed(message)

    def _parse(self, raw: Any) -> Any:
        self.tracker.enter(ImportPhase.PARSING)
        try:
            return ImportExecutor._decode(raw)
        except BundleFormatError as e:
            raise self._fail(str(e)) from e

    def _validate(self, raw: Any) -> ValidationReport:
        self.tracker.enter(ImportPhase.VALIDATING)
        report = self.executor.validator.validate(raw)
        for issue in report.issues:
            if issue.severity == Severity.ERROR:
                self.tracker.error(
                    EntityImportError(issue.message, ImportPhase.VALIDATING, kind=issue.kind, entity_id=issue.entity_id)
                )
            else:
                self.tracker.warning(EntityImportWarning(issue.message, kind=issue.kind, entity_id=issue.entity_id))

        errors = report.errors
        if any(issue.type == IssueType.SCHEMA_VERSION for issue in errors):
            raise self._fail("Bundle schema version is not supported; nothing was imported")
        if not isinstance(raw, dict) or not isinstance(raw.get("data"), dict):
            raise self._fail("Bundle has no data to import")
        threshold = self.options.error_threshold
        if threshold is not None and len(errors) > threshold:
            raise self._fail(f"{len(errors)} validation errors exceed the threshold of {threshold}")
        return report

    def _detect(self, validation: ValidationReport) -> RelationshipMap:
        self.tracker.enter(ImportPhase.DETECTING_CONFLICTS)
        self.incoming = self.selection.apply(validation.entities)
        for kind, entity in self.incoming.items():
            self.incoming_by_id[kind].setdefault(entity.id, entity)
        relationships = self.executor.mapper.map(self.incoming)
        try:
            existing = self.data_layer.snapshot()
        except StoreError as e:
            raise self._fail(f"Could not read current data: {e}") from e
        self.existing_ids = {kind: existing.ids(kind) for kind in KIND_ORDER}

        # Always against the stores as they are now, not as they were at preview time.
        report = self.executor.detector.detect(self.incoming, existing, extra=relationships.conflicts)
        try:
            self.conflicts = report.resolve(
                self.selection.resolutions,
                default=self.options.default_conflict_resolution,
                auto_resolve=self.options.auto_resolve_conflicts,
            )
        except ValueError as e:
            self.conflicts = report
            raise self._fail(str(e)) from e
        self.tracker.log("info", f"Found {self.conflicts.total_conflicts} conflicts")
        return relationships

    def _prepare(self, relationships: RelationshipMap) -> None:
        self.tracker.enter(ImportPhase.PREPARING)
        self.tracker.set_totals({kind: len(relationships.plan.ids(kind)) for kind in KIND_ORDER})
        if self.options.create_backup:
            try:
                snapshot = self.executor.backup_manager.create(
                    self.data_layer, self.executor.user_id, reason=BackupReason.PRE_IMPORT
                )
            except BackupError as e:
                raise self._fail(f"Backup failed: {e}") from e
            self.backup_id = snapshot.id
            self.tracker.log("info", f"Created backup {snapshot.id}")

    def _import_kind(self, kind: EntityKind, ids: tuple[str, ...]) -> bool:
        """Import every planned entity of ``kind``; False when cancelled."""
        self.tracker.enter(ImportPhase.importing(kind), f"Importing {kind.value}")
        for entity_id in ids:
            if self.cancel.is_cancelled:
                self.tracker.log("warning", "Import cancelled by user", kind=kind, entity_id=entity_id)
                return False
            self.tracker.begin_entity(kind, entity_id)
            outcome = self._import_entity(kind, self.incoming_by_id[kind][entity_id])
            self.processed.add((kind, entity_id))
            self.tracker.finish_entity(kind, outcome)
        return True

    def _import_entity(self, kind: EntityKind, original: Entity) -> str:
        entity = copy.deepcopy(original)
        conflicts = self.conflicts.for_entity(kind, entity.id) if self.conflicts else []

        blocking = [c for c in conflicts if c.blocking]
        if blocking:
            self.tracker.warning(
                EntityImportWarning(
                    f"Skipped {kind.label} {entity.id}: conflict {blocking[0].id} needs a resolution",
                    kind=kind,
                    entity_id=entity.id,
                )
            )
            return self._skip(kind, original)

        identity: Conflict | None = None
        for conflict in conflicts:
            if conflict.resolution == ConflictResolution.SKIP:
                self.tracker.log("info", f"Skipped {kind.label}: {conflict.message}", kind=kind, entity_id=entity.id)
                return self._skip(kind, original, keeps_existing=conflict.is_entity_level)
            if conflict.is_entity_level:
                identity = conflict
            elif conflict.resolution == ConflictResolution.CLEAR_REFERENCE:
                self._clear_reference(kind, entity, conflict)

        pending, missing, cleared = self._rewrite_references(kind, entity)
        if missing:
            self.tracker.warning(
                EntityImportWarning(
                    f"Skipped {kind.label} {original.id}: required reference {missing[0]} was not imported",
                    kind=kind,
                    entity_id=original.id,
                )
            )
            return self._skip(kind, original)
        for item in cleared:
            self.tracker.warning(
                EntityImportWarning(
                    f"Cleared reference {item} on {kind.label} {original.id}: referent was not imported",
                    kind=kind,
                    entity_id=original.id,
                )
            )

        store = self.data_layer.store(kind)
        resolution = identity.resolution if identity else None
        try:
            if resolution == ConflictResolution.REPLACE:
                store.update(entity)
                written_id = entity.id
            elif resolution == ConflictResolution.MERGE:
                stored = store.get(entity.id)
                if stored is None:
                    written_id = store.add(entity)
                else:
                    entity = merge_entities(stored, entity)
                    store.update(entity)
                    written_id = entity.id
            else:
                if resolution == ConflictResolution.CREATE_NEW or not self.options.preserve_ids:
                    entity.id = self.executor.id_generator()
                written_id = store.add(entity)
        except UnrecoverableStoreError as e:
            raise self._fail(f"Store stopped accepting writes: {e}", kind=kind, entity_id=original.id) from e
        except StoreError as e:
            self.tracker.error(
                EntityImportError(
                    f"Failed to import {kind.label} {original.id}: {e}",
                    self.tracker.phase,
                    kind=kind,
                    entity_id=original.id,
                    title=original.label,
                )
            )
            logger.warning("Entity import failed", kind=kind.value, entity_id=original.id, error=str(e))
            return "failed"

        entity.id = written_id
        self.final_ids[(kind, original.id)] = written_id
        self.id_mapping.record(original.id, written_id)
        self.written[(kind, written_id)] = entity
        if pending:
            self.needs_patch.append((kind, written_id))
        self.tracker.log("info", f"Imported {kind.label}: {original.label}", kind=kind, entity_id=written_id)
        return "imported"

    def _skip(self, kind: EntityKind, entity: Entity, keeps_existing: bool = False) -> str:
        if keeps_existing:
            # The stored record stays and answers references to this id.
            self.final_ids[(kind, entity.id)] = entity.id
        return "skipped"

    def _clear_reference(self, kind: EntityKind, entity: Entity, conflict: Conflict) -> None:
        for ref in REFERENCE_FIELDS[kind]:
            if ref.wire == conflict.field:
                ref.rewrite(entity, lambda value: None if value == conflict.referenced_id else value)
        self.tracker.warning(
            EntityImportWarning(
                f"Cleared {conflict.field} reference to {conflict.referenced_id} on {kind.label} {entity.id}",
                kind=kind,
                entity_id=entity.id,
            )
        )

    def _rewrite_references(self, kind: EntityKind, entity: Entity) -> tuple[bool, list[str], list[str]]:
        """Point references at already written ids.

        Returns whether some referent is not final yet, the required
        references whose referent was decided but never written, and the
        optional references cleared for the same reason.
        """
        pending = False
        missing: list[str] = []
        cleared: list[str] = []

        def resolve(ref: ReferenceField, target_id: str) -> str | None:
            nonlocal pending
            key = (ref.target, target_id)
            if key in self.final_ids:
                return self.final_ids[key]
            if key in self.processed:
                if target_id in self.existing_ids[ref.target]:
                    return target_id
                if ref.required:
                    missing.append(f"{ref.wire}={target_id}")
                    return target_id
                cleared.append(f"{ref.wire}={target_id}")
                return None
            if target_id in self.incoming_by_id[ref.target]:
                pending = True
            return target_id

        for ref in REFERENCE_FIELDS[kind]:
            ref.rewrite(entity, lambda target_id, ref=ref: resolve(ref, target_id))
        return pending, missing, cleared

    def _exists(self, kind: EntityKind, entity_id: str) -> bool:
        return entity_id in self.existing_ids[kind] or (kind, entity_id) in self.written

    def _update_references(self) -> None:
        """Patch references whose referent got its final id after the referrer was written."""
        self.tracker.enter(ImportPhase.UPDATING_REFERENCES)
        for kind, entity_id in self.needs_patch:
            entity = copy.deepcopy(self.written[(kind, entity_id)])
            cleared: list[str] = []

            def resolve(ref: ReferenceField, target_id: str) -> str | None:
                key = (ref.target, target_id)
                if key in self.final_ids:
                    return self.final_ids[key]
                if self._exists(ref.target, target_id) or ref.required:
                    return target_id
                cleared.append(f"{ref.wire}={target_id}")
                return None

            changed = False
            for ref in REFERENCE_FIELDS[kind]:
                changed |= ref.rewrite(entity, lambda target_id, ref=ref: resolve(ref, target_id))
            if not changed:
                continue

            try:
                self.data_layer.store(kind).update(entity)
            except UnrecoverableStoreError as e:
                raise self._fail(f"Store stopped accepting writes: {e}", kind=kind, entity_id=entity_id) from e
            except StoreError as e:
                self.tracker.error(
                    EntityImportError(
                        f"Failed to update references of {kind.label} {entity_id}: {e}",
                        ImportPhase.UPDATING_REFERENCES,
                        kind=kind,
                        entity_id=entity_id,
                    )
                )
                continue

            self.written[(kind, entity_id)] = entity
            self.references_patched += 1
            for item in cleared:
                self.tracker.warning(
                    EntityImportWarning(
                        f"Cleared reference {item} on {kind.label} {entity_id}: referent was not imported",
                        kind=kind,
                        entity_id=entity_id,
                    )
                )
        logger.debug("References updated", patched=self.references_patched)

    def _flush(self) -> None:
        try:
            self.data_layer.flush()
        except StoreError as e:
            raise self._fail(f"Could not persist writes: {e}") from e

    def _finish(self, phase: ImportPhase) -> ImportResult:
        if phase != ImportPhase.COMPLETED:
            # Writes made before the stop are kept.
            try:
                self.data_layer.flush()
            except StoreError as e:
                logger.error("Flush after stopped import failed", error=str(e))
        self.tracker.enter(phase, f"Import {phase.value}")
        per_kind = self.tracker.per_kind
        result = ImportResult(
            phase=phase,
            imported={kind: p.imported for kind, p in per_kind.items()},
            skipped={kind: p.skipped for kind, p in per_kind.items()},
            failed={kind: p.failed for kind, p in per_kind.items()},
            items_processed=self.tracker.items_processed,
            references_patched=self.references_patched,
            errors=list(self.tracker.errors),
            warnings=list(self.tracker.warnings),
            logs=list(self.tracker.logs),
            duration=self.tracker.elapsed,
            id_mapping=self.id_mapping,
            conflicts=self.conflicts,
            backup_id=self.backup_id,
        )
        logger.info(
            "Import finished",
            phase=phase.value,
            imported=result.total_imported,
            processed=result.items_processed,
            errors=len(result.errors),
        )
        return result
