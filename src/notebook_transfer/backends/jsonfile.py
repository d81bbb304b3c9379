"""JSON directory backend: one ``<kind>.json`` file per entity kind."""

import json
import os
import tempfile
from pathlib import Path

import structlog

from notebook_transfer.backend import DataLayer, Store
from notebook_transfer.errors import (
    AuthorizationError,
    ConnectivityError,
    EntityNotFoundError,
    StoreError,
)
from notebook_transfer.models import ENTITY_TYPES, Entity, EntityKind

logger = structlog.get_logger()

# Largest number of operations the document database accepts in one batch.
MAX_BATCH_SIZE = 500


class JsonFileStore(Store):
    """File-backed store that buffers writes and commits them in batches.

    Writes are held in memory and committed to disk once ``batch_size``
    operations are pending, or when :meth:`flush` is called. Reads always see
    buffered writes.
    """

    def __init__(self, kind: EntityKind, directory: str | Path, batch_size: int = MAX_BATCH_SIZE) -> None:
        """Initialize the store.

        Args:
            kind: Entity kind this store holds
            directory: Directory holding the per-kind JSON files
            batch_size: Pending operations that trigger a commit (1 to 500)
        """
        super().__init__(kind)
        if not 1 <= batch_size <= MAX_BATCH_SIZE:
            raise ValueError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}, got {batch_size}")
        self.directory = Path(directory)
        self.path = self.directory / f"{self.kind.value}.json"
        self.batch_size = batch_size
        self._pending = 0
        self._entities: dict[str, Entity] = self._load()
        logger.debug("JSON store initialized", kind=self.kind.value, path=str(self.path), count=len(self._entities))

    def _load(self) -> dict[str, Entity]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                records = json.load(f)
        except PermissionError as e:
            raise AuthorizationError(f"Cannot read {self.path}: {e}") from e
        except (OSError, json.JSONDecodeError) as e:
            logger.error("Failed to load store file", path=str(self.path), error=str(e))
            raise ConnectivityError(f"Cannot load {self.path}: {e}") from e
        entity_type = ENTITY_TYPES[self.kind]
        return {record["id"]: entity_type.from_dict(record) for record in records or [] if isinstance(record, dict)}

    def _commit(self) -> None:
        """Write the full collection atomically."""
        records = [entity.to_dict() for entity in self._entities.values()]
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f".{self.kind.value}.", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(records, f, indent=2, default=str)
            os.replace(tmp_name, self.path)
        except PermissionError as e:
            raise AuthorizationError(f"Cannot write {self.path}: {e}") from e
        except OSError as e:
            logger.error("Failed to commit store batch", path=str(self.path), error=str(e))
            raise ConnectivityError(f"Cannot write {self.path}: {e}") from e
        logger.debug("Store batch committed", kind=self.kind.value, operations=self._pending)
        self._pending = 0

    def _record_write(self) -> None:
        self._pending += 1
        if self._pending >= self.batch_size:
            self._commit()

    def add(self, entity: Entity) -> str:
        """Add a new entity."""
        if not entity.id:
            raise StoreError(f"{self.kind.label} has no id")
        if entity.id in self._entities:
            raise StoreError(f"{self.kind.label} {entity.id} already exists")
        self._entities[entity.id] = ENTITY_TYPES[self.kind].from_dict(entity.to_dict())
        self._record_write()
        return entity.id

    def update(self, entity: Entity) -> None:
        """Overwrite an existing entity."""
        if entity.id not in self._entities:
            raise EntityNotFoundError(f"{self.kind.label} {entity.id} not found")
        self._entities[entity.id] = ENTITY_TYPES[self.kind].from_dict(entity.to_dict())
        self._record_write()

    def list_entities(self) -> list[Entity]:
        entity_type = ENTITY_TYPES[self.kind]
        return [entity_type.from_dict(entity.to_dict()) for entity in self._entities.values()]

    def flush(self) -> None:
        if self._pending:
            self._commit()


def open_directory(directory: str | Path, batch_size: int = MAX_BATCH_SIZE) -> DataLayer:
    """Open a data layer backed by JSON files in ``directory``."""
    return DataLayer.from_factory(lambda kind: JsonFileStore(kind, directory, batch_size=batch_size))
