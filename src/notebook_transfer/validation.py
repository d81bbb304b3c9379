"""Structural validation of raw bundle data."""

import json
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from notebook_transfer.models import (
    ENTITY_TYPES,
    KIND_ORDER,
    REFERENCE_FIELDS,
    EntityCollection,
    EntityKind,
    ExportMetadata,
)

logger = structlog.get_logger()

CURRENT_VERSION = "1.0.0"
SUPPORTED_MAJOR_VERSIONS = (1,)


class IssueType(str, Enum):
    MISSING_FIELD = "missing_field"
    INVALID_TYPE = "invalid_type"
    INVALID_REFERENCE = "invalid_reference"
    SCHEMA_VERSION = "schema_version"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class ValidationIssue:
    """One problem found in the bundle. Errors block the entity, warnings do not."""

    type: IssueType
    severity: Severity
    message: str
    kind: EntityKind | None = None
    entity_id: str | None = None
    field: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "entityType": self.kind.value if self.kind else None,
            "entityId": self.entity_id,
            "field": self.field,
            "message": self.message,
        }


@dataclass
class ValidationReport:
    """Outcome of validating a raw bundle."""

    metadata: ExportMetadata
    entities: EntityCollection
    issues: list[ValidationIssue] = field(default_factory=list)

    @property
    def errors(self) -> list[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity == Severity.ERROR]

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity == Severity.WARNING]

    @property
    def is_valid(self) -> bool:
        return self.entities.total > 0 and not self.errors


def is_supported_version(version: Any) -> bool:
    """Return True when the bundle format version can be interpreted."""
    if not isinstance(version, str) or not version:
        return False
    major = version.split(".", 1)[0]
    return major.isdigit() and int(major) in SUPPORTED_MAJOR_VERSIONS


def estimate_import_time(total_items: int, data_size: int) -> int:
    """Rough import duration in milliseconds: ~100 items/s plus 500 ms per MB."""
    base = total_items / 100 * 1000
    size_adjustment = data_size / 1024 / 1024 * 500
    return math.ceil(base + size_adjustment)


def data_size(raw: Any) -> int:
    """Size in bytes of the JSON encoding of ``raw``."""
    try:
        return len(json.dumps(raw, default=str).encode("utf-8"))
    except (TypeError, ValueError):
        return 0


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class Validator:
    """Validates a decoded bundle and extracts the entities that passed."""

    def validate(self, raw: Any) -> ValidationReport:
        """Validate the whole bundle.

        Entities with at least one error are left out of ``report.entities``.
        An unsupported format version is an error that blocks every entity.
        """
        issues: list[ValidationIssue] = []
        default_metadata = ExportMetadata(
            version=CURRENT_VERSION, exported_at="", user_id="unknown", total_items=0, entity_counts={}
        )

        if not isinstance(raw, dict):
            issues.append(
                ValidationIssue(IssueType.INVALID_TYPE, Severity.ERROR, "Import data must be a valid object")
            )
            return ValidationReport(default_metadata, EntityCollection(), issues)

        metadata_issues, version_ok = self._validate_metadata(raw.get("metadata"))
        issues.extend(metadata_issues)
        metadata = ExportMetadata.from_dict(raw["metadata"]) if isinstance(raw.get("metadata"), dict) else default_metadata

        data = raw.get("data")
        if not isinstance(data, dict):
            issues.append(
                ValidationIssue(
                    IssueType.MISSING_FIELD,
                    Severity.ERROR,
                    'Import data must contain a "data" object',
                    field="data",
                )
            )
            return ValidationReport(metadata, EntityCollection(), issues)

        entities = EntityCollection()
        seen: dict[EntityKind, set[str]] = {kind: set() for kind in KIND_ORDER}
        for kind in KIND_ORDER:
            collection = data.get(kind.value)
            if collection is None:
                continue
            if not isinstance(collection, list):
                issues.append(
                    ValidationIssue(
                        IssueType.INVALID_TYPE, Severity.ERROR, f"{kind.value} must be an array", kind=kind
                    )
                )
                continue
            for item in collection:
                item_issues = self.validate_entity(kind, item)
                entity_id = item.get("id") if isinstance(item, dict) else None
                if isinstance(entity_id, str) and entity_id in seen[kind]:
                    item_issues.append(
                        ValidationIssue(
                            IssueType.INVALID_TYPE,
                            Severity.ERROR,
                            f'{kind.label} ID "{entity_id}" appears more than once in the bundle',
                            kind=kind,
                            entity_id=entity_id,
                            field="id",
                        )
                    )
                issues.extend(item_issues)
                if version_ok and not any(i.severity == Severity.ERROR for i in item_issues):
                    seen[kind].add(entity_id)
                    entities.of(kind).append(ENTITY_TYPES[kind].from_dict(item))

        report = ValidationReport(metadata, entities, issues)
        logger.info(
            "Bundle validated",
            entities=entities.total,
            errors=len(report.errors),
            warnings=len(report.warnings),
        )
        return report

    def _validate_metadata(self, metadata: Any) -> tuple[list[ValidationIssue], bool]:
        issues: list[ValidationIssue] = []
        if not isinstance(metadata, dict):
            issues.append(
                ValidationIssue(
                    IssueType.MISSING_FIELD,
                    Severity.ERROR,
                    "Import data must contain metadata",
                    entity_id="metadata",
                    field="metadata",
                )
            )
            return issues, False

        version = metadata.get("version")
        version_ok = False
        if not version:
            issues.append(
                ValidationIssue(
                    IssueType.MISSING_FIELD,
                    Severity.ERROR,
                    "Metadata must contain version",
                    entity_id="metadata",
                    field="version",
                )
            )
        elif not is_supported_version(version):
            issues.append(
                ValidationIssue(
                    IssueType.SCHEMA_VERSION,
                    Severity.ERROR,
                    f"Unsupported schema version: {version}. Supported major versions: "
                    + ", ".join(str(v) for v in SUPPORTED_MAJOR_VERSIONS),
                    entity_id="metadata",
                    field="version",
                )
            )
        else:
            version_ok = True

        if not metadata.get("exportedAt"):
            issues.append(
                ValidationIssue(
                    IssueType.MISSING_FIELD,
                    Severity.WARNING,
                    "Metadata must contain exportedAt timestamp",
                    entity_id="metadata",
                    field="exportedAt",
                )
            )
        return issues, version_ok

    def validate_entity(self, kind: EntityKind, item: Any) -> list[ValidationIssue]:
        """Validate one wire record of ``kind``."""
        if not isinstance(item, dict):
            return [ValidationIssue(IssueType.INVALID_TYPE, Severity.ERROR, "Entity must be a valid object", kind=kind)]

        issues: list[ValidationIssue] = []
        entity_id = item.get("id")
        if not entity_id or not isinstance(entity_id, str):
            issues.append(
                ValidationIssue(
                    IssueType.MISSING_FIELD,
                    Severity.ERROR,
                    "Entity must have a valid string ID",
                    kind=kind,
                    entity_id=str(entity_id) if entity_id else None,
                    field="id",
                )
            )
            entity_id = None

        def issue(issue_type: IssueType, severity: Severity, message: str, field_name: str) -> None:
            issues.append(ValidationIssue(issue_type, severity, message, kind=kind, entity_id=entity_id, field=field_name))

        if kind in (EntityKind.TASKS, EntityKind.PROJECTS, EntityKind.GOALS):
            if not item.get("title") or not isinstance(item.get("title"), str):
                issue(IssueType.MISSING_FIELD, Severity.ERROR, f"{kind.label} must have a title", "title")
        if kind == EntityKind.TASKS and "done" in item and not isinstance(item["done"], bool):
            issue(IssueType.INVALID_TYPE, Severity.WARNING, "Task done field must be a boolean", "done")
        if kind == EntityKind.THOUGHTS and (not item.get("text") or not isinstance(item.get("text"), str)):
            issue(IssueType.MISSING_FIELD, Severity.ERROR, "Thought must have text content", "text")
        if kind == EntityKind.PEOPLE and (not item.get("name") or not isinstance(item.get("name"), str)):
            issue(IssueType.MISSING_FIELD, Severity.ERROR, "Person must have a name", "name")
        if kind == EntityKind.MOODS:
            value = item.get("value")
            if not _is_number(value):
                issue(IssueType.MISSING_FIELD, Severity.ERROR, "Mood must have a numeric value", "value")
            elif not 1 <= value <= 10:
                issue(IssueType.INVALID_TYPE, Severity.WARNING, "Mood value must be between 1 and 10", "value")
        if kind == EntityKind.FOCUS_SESSIONS:
            if not _is_number(item.get("duration")) or not item.get("duration"):
                issue(IssueType.MISSING_FIELD, Severity.ERROR, "Focus session must have a duration", "duration")
            if not isinstance(item.get("tasks"), list):
                issue(IssueType.INVALID_TYPE, Severity.WARNING, "Focus session tasks must be an array", "tasks")
        if "version" in item and item["version"] is not None and not (
            isinstance(item["version"], int) and not isinstance(item["version"], bool)
        ):
            issue(IssueType.INVALID_TYPE, Severity.ERROR, "Entity version must be an integer", "version")

        issues.extend(self._validate_references(kind, item, entity_id))
        return issues

    def _validate_references(self, kind: EntityKind, item: dict[str, Any], entity_id: str | None) -> list[ValidationIssue]:
        issues = []
        for ref in REFERENCE_FIELDS[kind]:
            if "[]." in ref.attr:
                raw = item.get(ref.wire)
                values = [t.get("id") for t in raw if isinstance(t, dict)] if isinstance(raw, list) else []
                bad = [v for v in values if v is not None and not isinstance(v, str)]
            else:
                parent, _, key = ref.wire.rpartition(".")
                container = item.get(parent) if parent else item
                raw = container.get(key) if isinstance(container, dict) else None
                if raw is None:
                    continue
                if ref.many:
                    bad = [raw] if not isinstance(raw, list) else [v for v in raw if not isinstance(v, str)]
                    values = raw if isinstance(raw, list) else []
                else:
                    bad = [] if isinstance(raw, str) else [raw]
                    values = [raw]
            if bad:
                expected = "a list of string IDs" if ref.many else "a string ID"
                issues.append(
                    ValidationIssue(
                        IssueType.INVALID_TYPE,
                        Severity.ERROR,
                        f"{kind.label} field {ref.wire} must be {expected}",
                        kind=kind,
                        entity_id=entity_id,
                        field=ref.wire,
                    )
                )
            elif ref.target == kind and entity_id and entity_id in values:
                issues.append(
                    ValidationIssue(
                        IssueType.INVALID_REFERENCE,
                        Severity.WARNING,
                        f"{kind.label} {entity_id} references itself through {ref.wire}",
                        kind=kind,
                        entity_id=entity_id,
                        field=ref.wire,
                    )
                )
        return issues
