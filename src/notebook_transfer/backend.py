"""Store interface the transfer engine writes through."""

from abc import ABC, abstractmethod
from typing import Callable

import structlog

from notebook_transfer.models import KIND_ORDER, Entity, EntityCollection, EntityKind

logger = structlog.get_logger()


class Store(ABC):
    """Abstract base class for the per-kind entity stores.

    Each store is the sole writer for its kind. The engine never talks to the
    underlying database directly.
    """

    def __init__(self, kind: EntityKind) -> None:
        self.kind = EntityKind(kind)

    @abstractmethod
    def add(self, entity: Entity) -> str:
        """Create an entity and return the id it was stored under."""
        pass

    @abstractmethod
    def update(self, entity: Entity) -> None:
        """Overwrite the stored entity that has ``entity.id``."""
        pass

    @abstractmethod
    def list_entities(self) -> list[Entity]:
        """Return the current contents of the store."""
        pass

    def get(self, entity_id: str) -> Entity | None:
        """Read one entity by id, or None if it does not exist."""
        for entity in self.list_entities():
            if entity.id == entity_id:
                return entity
        return None

    def flush(self) -> None:
        """Persist any buffered writes. Stores that write through need not override this."""
        pass


class DataLayer:
    """The seven stores, addressed by kind."""

    def __init__(self, stores: dict[EntityKind, Store]) -> None:
        missing = [kind.value for kind in KIND_ORDER if kind not in stores]
        if missing:
            raise ValueError(f"No store configured for: {', '.join(missing)}")
        self.stores = {EntityKind(kind): store for kind, store in stores.items()}

    @classmethod
    def from_factory(cls, factory: Callable[[EntityKind], Store]) -> "DataLayer":
        """Build a data layer by calling ``factory`` once per kind."""
        return cls({kind: factory(kind) for kind in KIND_ORDER})

    def store(self, kind: EntityKind) -> Store:
        return self.stores[EntityKind(kind)]

    def snapshot(self) -> EntityCollection:
        """Dump every store into a detached collection."""
        collection = EntityCollection()
        for kind in KIND_ORDER:
            collection.of(kind).extend(self.store(kind).list_entities())
        logger.debug("Data layer snapshot taken", counts={k.value: v for k, v in collection.counts().items()})
        return collection.copy()

    def flush(self) -> None:
        for kind in KIND_ORDER:
            self.store(kind).flush()
