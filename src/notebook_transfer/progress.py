"""Import phases and the progress accumulator threaded through one import run."""

import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

import structlog

from notebook_transfer.models import KIND_ORDER, EntityKind

logger = structlog.get_logger()

LOG_TAIL = 50
RATE_WINDOW = 10


class ImportPhase(str, Enum):
    PARSING = "parsing"
    VALIDATING = "validating"
    DETECTING_CONFLICTS = "detecting_conflicts"
    PREPARING = "preparing"
    IMPORTING_GOALS = "importing_goals"
    IMPORTING_PROJECTS = "importing_projects"
    IMPORTING_TASKS = "importing_tasks"
    IMPORTING_THOUGHTS = "importing_thoughts"
    IMPORTING_MOODS = "importing_moods"
    IMPORTING_FOCUS_SESSIONS = "importing_focus_sessions"
    IMPORTING_PEOPLE = "importing_people"
    UPDATING_REFERENCES = "updating_references"
    COMPLETING = "completing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @classmethod
    def importing(cls, kind: EntityKind) -> "ImportPhase":
        return _IMPORTING[EntityKind(kind)]

    @property
    def is_terminal(self) -> bool:
        return self in (ImportPhase.COMPLETED, ImportPhase.FAILED, ImportPhase.CANCELLED)


_IMPORTING = {
    EntityKind.GOALS: ImportPhase.IMPORTING_GOALS,
    EntityKind.PROJECTS: ImportPhase.IMPORTING_PROJECTS,
    EntityKind.TASKS: ImportPhase.IMPORTING_TASKS,
    EntityKind.THOUGHTS: ImportPhase.IMPORTING_THOUGHTS,
    EntityKind.MOODS: ImportPhase.IMPORTING_MOODS,
    EntityKind.FOCUS_SESSIONS: ImportPhase.IMPORTING_FOCUS_SESSIONS,
    EntityKind.PEOPLE: ImportPhase.IMPORTING_PEOPLE,
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class LogEntry:
    level: str
    message: str
    phase: ImportPhase
    timestamp: str = field(default_factory=_now)
    kind: EntityKind | None = None
    entity_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "level": self.level,
            "message": self.message,
            "phase": self.phase.value,
            "entityType": self.kind.value if self.kind else None,
            "entityId": self.entity_id,
        }


@dataclass(frozen=True)
class EntityImportError:
    """A failure to import one entity (or the whole run when ``kind`` is None)."""

    message: str
    phase: ImportPhase
    kind: EntityKind | None = None
    entity_id: str | None = None
    title: str | None = None
    recoverable: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "entityType": self.kind.value if self.kind else None,
            "entityId": self.entity_id,
            "itemTitle": self.title,
            "message": self.message,
            "phase": self.phase.value,
            "recoverable": self.recoverable,
        }


@dataclass(frozen=True)
class EntityImportWarning:
    message: str
    kind: EntityKind | None = None
    entity_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "entityType": self.kind.value if self.kind else None,
            "entityId": self.entity_id,
            "message": self.message,
        }


@dataclass
class KindProgress:
    total: int = 0
    processed: int = 0
    imported: int = 0
    skipped: int = 0
    failed: int = 0

    @property
    def percent(self) -> float:
        return 100.0 if self.total == 0 else round(self.processed / self.total * 100, 1)


@dataclass(frozen=True)
class ImportProgress:
    """Immutable snapshot handed to progress callbacks."""

    phase: ImportPhase
    overall_progress: float
    items_processed: int
    items_total: int
    per_kind: dict[EntityKind, KindProgress]
    elapsed: float
    estimated_remaining: float | None
    current_kind: EntityKind | None
    current_entity_id: str | None
    logs: tuple[LogEntry, ...]
    errors: tuple[EntityImportError, ...]
    warnings: tuple[EntityImportWarning, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "overallProgress": self.overall_progress,
            "itemsProcessed": self.items_processed,
            "itemsTotal": self.items_total,
            "perKindProgress": {
                kind.value: {"total": p.total, "processed": p.processed, "percent": p.percent}
                for kind, p in self.per_kind.items()
            },
            "elapsedTime": self.elapsed,
            "estimatedTimeRemaining": self.estimated_remaining,
            "currentEntityType": self.current_kind.value if self.current_kind else None,
            "currentEntityId": self.current_entity_id,
            "logs": [entry.to_dict() for entry in self.logs],
            "errors": [error.to_dict() for error in self.errors],
            "warnings": [warning.to_dict() for warning in self.warnings],
        }


ProgressCallback = Callable[[ImportProgress], Any]


class ProgressTracker:
    """Accumulates progress for one import run and emits snapshots.

    A raising callback is logged and otherwise ignored so that reporting can
    never interrupt the import loop.
    """

    def __init__(
        self,
        callback: ProgressCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
        log_tail: int = LOG_TAIL,
    ) -> None:
        self.callback = callback
        self.clock = clock
        self.log_tail = log_tail
        self.started = clock()
        self.phase = ImportPhase.PARSING
        self.per_kind: dict[EntityKind, KindProgress] = {kind: KindProgress() for kind in KIND_ORDER}
        self.logs: list[LogEntry] = []
        self.errors: list[EntityImportError] = []
        self.warnings: list[EntityImportWarning] = []
        self.current_kind: EntityKind | None = None
        self.current_entity_id: str | None = None
        self._samples: deque[tuple[float, int]] = deque(maxlen=RATE_WINDOW)

    def set_totals(self, totals: dict[EntityKind, int]) -> None:
        for kind in KIND_ORDER:
            self.per_kind[kind].total = totals.get(kind, 0)

    @property
    def items_total(self) -> int:
        return sum(p.total for p in self.per_kind.values())

    @property
    def items_processed(self) -> int:
        return sum(p.processed for p in self.per_kind.values())

    @property
    def elapsed(self) -> float:
        return self.clock() - self.started

    def overall_progress(self) -> float:
        if self.phase == ImportPhase.COMPLETED:
            return 100.0
        total = self.items_total
        if total == 0:
            return 0.0
        return round(self.items_processed / total * 100, 1)

    def estimated_remaining(self) -> float | None:
        """Seconds left, from the items/second rate over the recent samples."""
        if len(self._samples) < 2:
            return None
        (first_time, first_count), (last_time, last_count) = self._samples[0], self._samples[-1]
        if last_time <= first_time or last_count <= first_count:
            return None
        rate = (last_count - first_count) / (last_time - first_time)
        return max(self.items_total - self.items_processed, 0) / rate

    def enter(self, phase: ImportPhase, message: str | None = None) -> None:
        self.phase = phase
        if phase.is_terminal or phase in (ImportPhase.UPDATING_REFERENCES, ImportPhase.COMPLETING):
            self.current_kind = None
            self.current_entity_id = None
        self.log("info", message or f"Entering phase {phase.value}")
        logger.debug("Import phase changed", phase=phase.value)
        self.emit()

    def log(
        self, level: str, message: str, kind: EntityKind | None = None, entity_id: str | None = None
    ) -> None:
        self.logs.append(LogEntry(level, message, self.phase, kind=kind, entity_id=entity_id))

    def error(self, error: EntityImportError) -> None:
        self.errors.append(error)
        self.log("error", error.message, kind=error.kind, entity_id=error.entity_id)

    def warning(self, warning: EntityImportWarning) -> None:
        self.warnings.append(warning)
        self.log("warning", warning.message, kind=warning.kind, entity_id=warning.entity_id)

    def begin_entity(self, kind: EntityKind, entity_id: str) -> None:
        self.current_kind = kind
        self.current_entity_id = entity_id

    def finish_entity(self, kind: EntityKind, outcome: str) -> None:
        """Count one processed entity; ``outcome`` is imported, skipped or failed."""
        progress = self.per_kind[kind]
        progress.processed += 1
        setattr(progress, outcome, getattr(progress, outcome) + 1)
        self._samples.append((self.clock(), self.items_processed))
        self.emit()

    def snapshot(self) -> ImportProgress:
        return ImportProgress(
            phase=self.phase,
            overall_progress=self.overall_progress(),
            items_processed=self.items_processed,
            items_total=self.items_total,
            per_kind={
                kind: KindProgress(p.total, p.processed, p.imported, p.skipped, p.failed)
                for kind, p in self.per_kind.items()
            },
            elapsed=self.elapsed,
            estimated_remaining=self.estimated_remaining(),
            current_kind=self.current_kind,
            current_entity_id=self.current_entity_id,
            logs=tuple(self.logs[-self.log_tail :]),
            errors=tuple(self.errors),
            warnings=tuple(self.warnings),
        )

    def emit(self) -> None:
        if self.callback is None:
            return
        try:
            self.callback(self.snapshot())
        except Exception as e:
            logger.warning("Progress callback failed", phase=self.phase.value, error=str(e))
