"""Filtered export of a user's dataset into a versioned bundle."""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable

import structlog

from notebook_transfer.errors import BundleFormatError
from notebook_transfer.models import (
    KIND_ORDER,
    Entity,
    EntityCollection,
    EntityKind,
    ExportedBundle,
    ExportMetadata,
    parse_timestamp,
)

logger = structlog.get_logger()

BUNDLE_VERSION = "1.0.0"

_COMPLETED_STATUSES = {"completed", "done"}
_ACTIVE_STATUSES = {"active", "in-progress"}
_ON_HOLD_STATUSES = {"on-hold", "paused"}


@dataclass(frozen=True)
class ExportFilterOptions:
    """Which entities go into an export.

    Every criterion is optional. Status, tag and category criteria only apply
    to kinds that carry the corresponding field. When a date range is given,
    entities without a creation timestamp are left out.
    """

    kinds: frozenset[EntityKind] | None = None
    start: datetime | None = None
    end: datetime | None = None
    statuses: frozenset[str] | None = None
    include_completed: bool = True
    tags: frozenset[str] | None = None
    categories: frozenset[str] | None = None

    @property
    def has_date_range(self) -> bool:
        return self.start is not None or self.end is not None

    def matches(self, kind: EntityKind, entity: Entity) -> bool:
        """Per-entity predicate; never looks at other entities."""
        if self.kinds is not None and kind not in self.kinds:
            return False

        if self.statuses and hasattr(entity, "status") and entity.status not in self.statuses:
            return False

        if self.categories and hasattr(entity, "category") and entity.category not in self.categories:
            return False

        if self.tags and hasattr(entity, "tags") and not set(entity.tags or []) & self.tags:
            return False

        if not self.include_completed and _is_completed(kind, entity):
            return False

        if self.has_date_range:
            created = entity.timestamp
            if created is None:
                return False
            if self.start is not None and created < _aware(self.start):
                return False
            if self.end is not None and created > _aware(self.end):
                return False

        return True


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _is_completed(kind: EntityKind, entity: Entity) -> bool:
    if kind == EntityKind.TASKS:
        return bool(entity.done) or entity.status in _COMPLETED_STATUSES
    if kind in (EntityKind.GOALS, EntityKind.PROJECTS):
        return entity.status in _COMPLETED_STATUSES
    return False


@dataclass(frozen=True)
class KindSummary:
    """Entity counts of one kind. Breakdowns a kind has no field for stay 0."""

    total: int = 0
    active: int = 0
    completed: int = 0
    high_priority: int = 0
    on_hold: int = 0
    short_term: int = 0
    long_term: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "active": self.active,
            "completed": self.completed,
            "highPriority": self.high_priority,
            "onHold": self.on_hold,
            "shortTerm": self.short_term,
            "longTerm": self.long_term,
        }


def _buckets(kind: EntityKind, entity: Entity) -> list[str]:
    if kind not in (EntityKind.GOALS, EntityKind.PROJECTS, EntityKind.TASKS):
        return []
    buckets = []
    if _is_completed(kind, entity):
        buckets.append("completed")
    elif entity.status in _ACTIVE_STATUSES:
        buckets.append("active")
    if kind == EntityKind.TASKS and entity.priority == "high":
        buckets.append("high_priority")
    if kind == EntityKind.PROJECTS and entity.status in _ON_HOLD_STATUSES:
        buckets.append("on_hold")
    if kind == EntityKind.GOALS and entity.timeframe == "short-term":
        buckets.append("short_term")
    if kind == EntityKind.GOALS and entity.timeframe == "long-term":
        buckets.append("long_term")
    return buckets


class ExportFilterEngine:
    """Builds immutable export bundles from a collection."""

    def __init__(
        self,
        clock: Callable[[], datetime] | None = None,
        app_version: str | None = None,
    ) -> None:
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.app_version = app_version

    def export(
        self,
        collection: EntityCollection,
        user_id: str,
        options: ExportFilterOptions | None = None,
    ) -> ExportedBundle:
        """Export the entities of ``collection`` that pass ``options``.

        With no options every entity of every kind is exported.
        """
        options = options or ExportFilterOptions()
        filtered = EntityCollection()
        for kind, entity in collection.items():
            if options.matches(kind, entity):
                filtered.of(kind).append(entity)
        return self._bundle(filtered, user_id)

    def export_selected(
        self,
        collection: EntityCollection,
        user_id: str,
        ids_by_kind: dict[EntityKind, Iterable[str]],
    ) -> ExportedBundle:
        """Export exactly the listed ids; kinds not listed are left out."""
        filtered = EntityCollection()
        for kind, ids in ids_by_kind.items():
            wanted = set(ids)
            filtered.of(kind).extend(e for e in collection.of(kind) if e.id in wanted)
        return self._bundle(filtered, user_id)

    def _bundle(self, filtered: EntityCollection, user_id: str) -> ExportedBundle:
        # Counts come from the filtered collection only.
        data = filtered.copy()
        counts = {kind.value: count for kind, count in data.counts().items()}
        metadata = ExportMetadata(
            version=BUNDLE_VERSION,
            exported_at=self.clock().isoformat(),
            user_id=user_id,
            total_items=data.total,
            entity_counts=counts,
            app_version=self.app_version,
        )
        logger.info("Export bundle created", user_id=user_id, total_items=metadata.total_items)
        return ExportedBundle(metadata=metadata, data=data)

    def summary(self, collection: EntityCollection) -> dict[EntityKind, "KindSummary"]:
        """Count entities per kind, with status breakdowns where the kind has them."""
        result = {}
        for kind in KIND_ORDER:
            entities = collection.of(kind)
            counts: dict[str, int] = {}
            for entity in entities:
                for bucket in _buckets(kind, entity):
                    counts[bucket] = counts.get(bucket, 0) + 1
            result[kind] = KindSummary(total=len(entities), **counts)
        return result


def default_filename(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"notebook-export-{now.date().isoformat()}.json"


def write_bundle(bundle: ExportedBundle, path: str | Path) -> Path:
    """Write ``bundle`` as pretty-printed JSON to ``path``."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(bundle.to_json(), encoding="utf-8")
    logger.debug("Bundle written", path=str(path), total_items=bundle.metadata.total_items)
    return path


def parse_bundle(text: str) -> Any:
    """Decode bundle JSON text without validating its structure.

    Raises:
        BundleFormatError: If the text is not valid JSON
    """
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise BundleFormatError(f"Bundle is not valid JSON: {e}") from e


def read_bundle(path: str | Path) -> Any:
    """Read and decode a bundle file.

    Raises:
        BundleFormatError: If the file cannot be read or is not valid JSON
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise BundleFormatError(f"Cannot read bundle {path}: {e}") from e
    return parse_bundle(text)


def load_bundle(raw: dict[str, Any]) -> ExportedBundle:
    """Build a bundle from already validated raw data."""
    return ExportedBundle(
        metadata=ExportMetadata.from_dict(raw.get("metadata") or {}),
        data=EntityCollection.from_dict(raw.get("data") or {}),
    )


def parse_date(value: str) -> datetime:
    """Parse a date or datetime given on the command line.

    Raises:
        ValueError: If the value is not an ISO date
    """
    parsed = parse_timestamp(value)
    if parsed is None:
        raise ValueError(f"Invalid date '{value}'. Use ISO format, e.g. 2024-01-31")
    return parsed

