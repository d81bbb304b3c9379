"""Conflict detection between an incoming dataset and the current stores."""

from collections import Counter
from dataclasses import dataclass, replace
from enum import Enum
from functools import cached_property
from typing import Any, Iterable

import structlog

from notebook_transfer.models import KIND_ORDER, REFERENCE_FIELDS, Entity, EntityCollection, EntityKind

logger = structlog.get_logger()


class ConflictType(str, Enum):
    DUPLICATE_ID = "duplicate_id"
    BROKEN_REFERENCE = "broken_reference"
    VERSION_MISMATCH = "version_mismatch"
    DATA_CONSTRAINT = "data_constraint"


class ConflictResolution(str, Enum):
    SKIP = "skip"
    REPLACE = "replace"
    MERGE = "merge"
    CREATE_NEW = "create_new"
    CLEAR_REFERENCE = "clear_reference"
    ASK_USER = "ask_user"


# Conflicts about the entity's identity vs. conflicts about one reference value.
ENTITY_LEVEL_TYPES = frozenset({ConflictType.DUPLICATE_ID, ConflictType.VERSION_MISMATCH})

_ALLOWED = {
    ConflictType.DUPLICATE_ID: frozenset(
        {ConflictResolution.SKIP, ConflictResolution.REPLACE, ConflictResolution.MERGE, ConflictResolution.CREATE_NEW}
    ),
    ConflictType.VERSION_MISMATCH: frozenset(
        {ConflictResolution.SKIP, ConflictResolution.REPLACE, ConflictResolution.MERGE, ConflictResolution.CREATE_NEW}
    ),
    ConflictType.BROKEN_REFERENCE: frozenset({ConflictResolution.SKIP, ConflictResolution.CLEAR_REFERENCE}),
    ConflictType.DATA_CONSTRAINT: frozenset({ConflictResolution.SKIP, ConflictResolution.CLEAR_REFERENCE}),
}


@dataclass(frozen=True)
class Conflict:
    """A structural problem with one incoming entity."""

    id: str
    type: ConflictType
    kind: EntityKind
    entity_id: str
    message: str
    suggested_resolution: ConflictResolution
    resolution: ConflictResolution | None = None
    title: str | None = None
    field: str | None = None
    referenced_kind: EntityKind | None = None
    referenced_id: str | None = None
    required: bool = False

    @property
    def is_entity_level(self) -> bool:
        return self.type in ENTITY_LEVEL_TYPES

    @property
    def blocking(self) -> bool:
        """True while no usable resolution has been decided."""
        return self.resolution is None or self.resolution == ConflictResolution.ASK_USER

    def allows(self, resolution: ConflictResolution) -> bool:
        return resolution == ConflictResolution.ASK_USER or resolution in _ALLOWED[self.type]

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "type": self.type.value,
            "entityType": self.kind.value,
            "entityId": self.entity_id,
            "message": self.message,
            "suggestedResolution": self.suggested_resolution.value,
        }
        if self.resolution is not None:
            data["resolution"] = self.resolution.value
        if self.title:
            data["itemTitle"] = self.title
        if self.field:
            data["details"] = {
                "fieldName": self.field,
                "referencedEntity": self.referenced_kind.value if self.referenced_kind else None,
                "referencedId": self.referenced_id,
            }
        return data


@dataclass(frozen=True)
class ConflictReport:
    """Ordered conflicts plus summary counts."""

    conflicts: tuple[Conflict, ...] = ()

    @property
    def total_conflicts(self) -> int:
        return len(self.conflicts)

    @property
    def conflicts_by_type(self) -> dict[ConflictType, int]:
        counts = Counter(conflict.type for conflict in self.conflicts)
        return {conflict_type: counts.get(conflict_type, 0) for conflict_type in ConflictType}

    @property
    def has_blocking_conflicts(self) -> bool:
        return any(conflict.blocking for conflict in self.conflicts)

    def get(self, conflict_id: str) -> Conflict | None:
        for conflict in self.conflicts:
            if conflict.id == conflict_id:
                return conflict
        return None

    @cached_property
    def _by_entity(self) -> dict[tuple[EntityKind, str], list[Conflict]]:
        index: dict[tuple[EntityKind, str], list[Conflict]] = {}
        for conflict in self.conflicts:
            index.setdefault((conflict.kind, conflict.entity_id), []).append(conflict)
        return index

    def for_entity(self, kind: EntityKind, entity_id: str) -> list[Conflict]:
        return list(self._by_entity.get((kind, entity_id), ()))

    def needing_resolution(self) -> list[Conflict]:
        """Conflicts the user still has to decide."""
        return [c for c in self.conflicts if c.blocking]

    def resolve(
        self,
        resolutions: dict[str, ConflictResolution] | None = None,
        default: ConflictResolution | None = None,
        auto_resolve: bool = True,
    ) -> "ConflictReport":
        """Return a copy with a final resolution decided for each conflict.

        Precedence: an explicit entry in ``resolutions`` (keyed by conflict id),
        then ``default`` where it applies to the conflict type, then the
        suggested resolution when ``auto_resolve`` is set. A default that does
        not apply falls back to the suggestion. A conflict left at
        ``ask_user`` or unset stays blocking.

        Raises:
            ValueError: If an explicit resolution does not apply to its conflict
        """
        resolutions = resolutions or {}
        unknown = set(resolutions) - {c.id for c in self.conflicts}
        if unknown:
            logger.warning("Resolutions given for unknown conflicts", conflict_ids=sorted(unknown))

        resolved = []
        for conflict in self.conflicts:
            chosen = resolutions.get(conflict.id)
            if chosen is not None:
                chosen = ConflictResolution(chosen)
                if not conflict.allows(chosen):
                    raise ValueError(
                        f"Resolution '{chosen.value}' does not apply to {conflict.type.value} conflict {conflict.id}"
                    )
            if chosen in (None, ConflictResolution.ASK_USER) and default not in (None, ConflictResolution.ASK_USER):
                if conflict.allows(default):
                    chosen = default
                elif not auto_resolve:
                    # Defaults that make no sense for a reference fall back to the suggestion.
                    chosen = conflict.suggested_resolution
            if chosen in (None, ConflictResolution.ASK_USER) and auto_resolve:
                if conflict.suggested_resolution != ConflictResolution.ASK_USER:
                    chosen = conflict.suggested_resolution
            resolved.append(replace(conflict, resolution=chosen))
        return ConflictReport(tuple(resolved))

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalConflicts": self.total_conflicts,
            "conflictsByType": {k.value: v for k, v in self.conflicts_by_type.items()},
            "conflicts": [conflict.to_dict() for conflict in self.conflicts],
            "hasBlockingConflicts": self.has_blocking_conflicts,
        }


class ConflictDetector:
    """Compares incoming entities with the existing stores.

    Detection is a pure function of its inputs and may be repeated freely;
    the importer runs it again right before writing.
    """

    def detect(
        self,
        incoming: EntityCollection,
        existing: EntityCollection,
        extra: Iterable[Conflict] = (),
    ) -> ConflictReport:
        """Detect duplicate ids, version mismatches and broken references.

        Args:
            incoming: Entities about to be imported
            existing: Current contents of the stores
            extra: Additional conflicts to append (e.g. reference cycles)

        Returns:
            An unresolved conflict report
        """
        incoming_ids = {kind: incoming.ids(kind) for kind in KIND_ORDER}
        existing_by_kind = {kind: {e.id: e for e in existing.of(kind)} for kind in KIND_ORDER}

        conflicts: list[Conflict] = []
        seen: set[str] = set()

        def add(conflict: Conflict) -> None:
            if conflict.id not in seen:
                seen.add(conflict.id)
                conflicts.append(conflict)

        for kind, entity in incoming.items():
            stored = existing_by_kind[kind].get(entity.id)
            if stored is not None:
                add(self._identity_conflict(kind, entity, stored))

            for ref in REFERENCE_FIELDS[kind]:
                for target_id in ref.values(entity):
                    if target_id in incoming_ids[ref.target] or target_id in existing_by_kind[ref.target]:
                        continue
                    add(
                        Conflict(
                            id=f"{kind.value}:{entity.id}:{ConflictType.BROKEN_REFERENCE.value}:{ref.wire}:{target_id}",
                            type=ConflictType.BROKEN_REFERENCE,
                            kind=kind,
                            entity_id=entity.id,
                            title=entity.label,
                            message=(
                                f'{kind.label} "{entity.label}" references non-existent '
                                f"{ref.target.label.lower()} ({target_id})"
                            ),
                            suggested_resolution=(
                                ConflictResolution.SKIP if ref.required else ConflictResolution.CLEAR_REFERENCE
                            ),
                            field=ref.wire,
                            referenced_kind=ref.target,
                            referenced_id=target_id,
                            required=ref.required,
                        )
                    )

        for conflict in extra:
            add(conflict)

        report = ConflictReport(tuple(conflicts))
        logger.info(
            "Conflict detection finished",
            total=report.total_conflicts,
            by_type={k.value: v for k, v in report.conflicts_by_type.items() if v},
        )
        return report

    def _identity_conflict(self, kind: EntityKind, incoming: Entity, stored: Entity) -> Conflict:
        if incoming.version is not None and stored.version is not None and incoming.version < stored.version:
            return Conflict(
                id=f"{kind.value}:{incoming.id}:{ConflictType.VERSION_MISMATCH.value}",
                type=ConflictType.VERSION_MISMATCH,
                kind=kind,
                entity_id=incoming.id,
                title=incoming.label,
                message=(
                    f'{kind.label} "{incoming.label}" is version {incoming.version}, '
                    f"older than the stored version {stored.version}"
                ),
                suggested_resolution=ConflictResolution.SKIP,
            )

        incoming_updated, stored_updated = incoming.updated, stored.updated
        newer = incoming_updated is not None and stored_updated is not None and incoming_updated > stored_updated
        return Conflict(
            id=f"{kind.value}:{incoming.id}:{ConflictType.DUPLICATE_ID.value}",
            type=ConflictType.DUPLICATE_ID,
            kind=kind,
            entity_id=incoming.id,
            title=incoming.label,
            message=f'{kind.label} with ID "{incoming.id}" already exists',
            suggested_resolution=ConflictResolution.MERGE if newer else ConflictResolution.SKIP,
        )
