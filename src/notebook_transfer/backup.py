"""Write-once snapshots of the stores, taken before an import."""

import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable

import structlog

from notebook_transfer.backend import DataLayer
from notebook_transfer.errors import BackupError
from notebook_transfer.models import EntityCollection

logger = structlog.get_logger()


class BackupReason(str, Enum):
    PRE_IMPORT = "pre_import"
    MANUAL = "manual"


@dataclass(frozen=True)
class BackupSnapshot:
    """A full dump of every store at one point in time."""

    id: str
    created_at: str
    user_id: str
    reason: BackupReason
    data: EntityCollection
    entity_counts: dict[str, int]

    @property
    def total_items(self) -> int:
        return sum(self.entity_counts.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "createdAt": self.created_at,
            "userId": self.user_id,
            "reason": self.reason.value,
            "entityCounts": dict(self.entity_counts),
            "data": self.data.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BackupSnapshot":
        return cls(
            id=data["id"],
            created_at=data["createdAt"],
            user_id=data.get("userId", "unknown"),
            reason=BackupReason(data.get("reason", BackupReason.MANUAL.value)),
            data=EntityCollection.from_dict(data.get("data") or {}),
            entity_counts=dict(data.get("entityCounts") or {}),
        )


class BackupManager:
    """Creates and reads backup snapshots.

    With a ``directory`` every snapshot is written to ``<id>.json`` using an
    exclusive create, so an existing snapshot is never overwritten. Without
    one, snapshots are only kept in memory for the life of the manager.
    """

    def __init__(
        self,
        directory: str | Path | None = None,
        id_factory: Callable[[], str] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.directory = Path(directory) if directory is not None else None
        self.id_factory = id_factory or (lambda: f"backup-{uuid.uuid4().hex[:12]}")
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._memory: dict[str, BackupSnapshot] = {}

    def create(
        self,
        data_layer: DataLayer,
        user_id: str,
        reason: BackupReason = BackupReason.MANUAL,
    ) -> BackupSnapshot:
        """Dump every store and persist the result.

        Raises:
            BackupError: If the stores cannot be read or the snapshot cannot be written
        """
        try:
            data = data_layer.snapshot()
        except Exception as e:
            raise BackupError(f"Could not read stores for backup: {e}") from e

        snapshot = BackupSnapshot(
            id=self.id_factory(),
            created_at=self.clock().isoformat(),
            user_id=user_id,
            reason=BackupReason(reason),
            data=data,
            entity_counts={kind.value: count for kind, count in data.counts().items()},
        )
        self._save(snapshot)
        logger.info(
            "Backup created",
            backup_id=snapshot.id,
            reason=snapshot.reason.value,
            total_items=snapshot.total_items,
        )
        return snapshot

    def _path(self, backup_id: str) -> Path:
        return self.directory / f"{backup_id}.json"

    def _save(self, snapshot: BackupSnapshot) -> None:
        if snapshot.id in self._memory:
            raise BackupError(f"Backup {snapshot.id} already exists")
        if self.directory is not None:
            path = self._path(snapshot.id)
            try:
                self.directory.mkdir(parents=True, exist_ok=True)
                with open(path, "x", encoding="utf-8") as f:
                    json.dump(snapshot.to_dict(), f, indent=2, default=str)
            except FileExistsError as e:
                raise BackupError(f"Backup {snapshot.id} already exists at {path}") from e
            except OSError as e:
                raise BackupError(f"Could not write backup {path}: {e}") from e
        self._memory[snapshot.id] = snapshot

    def list(self) -> list[BackupSnapshot]:
        """All known snapshots, oldest first."""
        snapshots = dict(self._memory)
        if self.directory is not None and self.directory.exists():
            for path in self.directory.glob("*.json"):
                if path.stem not in snapshots:
                    snapshots[path.stem] = self.load(path.stem)
        return sorted(snapshots.values(), key=lambda s: (s.created_at, s.id))

    def load(self, backup_id: str) -> BackupSnapshot:
        """Read one snapshot by id.

        Raises:
            BackupError: If the snapshot does not exist or is unreadable
        """
        if backup_id in self._memory:
            return self._memory[backup_id]
        if self.directory is None:
            raise BackupError(f"Backup {backup_id} not found")
        path = self._path(backup_id)
        try:
            with open(path, encoding="utf-8") as f:
                return BackupSnapshot.from_dict(json.load(f))
        except FileNotFoundError as e:
            raise BackupError(f"Backup {backup_id} not found") from e
        except (OSError, ValueError, KeyError) as e:
            raise BackupError(f"Could not read backup {path}: {e}") from e
