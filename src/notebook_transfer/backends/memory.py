"""In-memory store backend."""

import copy
from typing import Callable

import structlog

from notebook_transfer.backend import Store
from notebook_transfer.errors import EntityNotFoundError, StoreError
from notebook_transfer.models import Entity, EntityKind

logger = structlog.get_logger()


class MemoryStore(Store):
    """Store that keeps entities in a dict, in insertion order.

    Stored entities are copies, so callers cannot mutate store contents
    through the objects they passed in or read out.
    """

    def __init__(
        self,
        kind: EntityKind,
        entities: list[Entity] | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            kind: Entity kind this store holds
            entities: Initial contents
            id_factory: Called to mint an id when an entity arrives without one
        """
        super().__init__(kind)
        self.entities: dict[str, Entity] = {}
        self.id_factory = id_factory
        for entity in entities or []:
            self.entities[entity.id] = copy.deepcopy(entity)
        logger.debug("Memory store initialized", kind=self.kind.value, count=len(self.entities))

    def add(self, entity: Entity) -> str:
        """Add a new entity."""
        stored = copy.deepcopy(entity)
        if not stored.id:
            if self.id_factory is None:
                raise StoreError(f"{self.kind.label} has no id and the store cannot mint one")
            stored.id = self.id_factory()
        if stored.id in self.entities:
            raise StoreError(f"{self.kind.label} {stored.id} already exists")
        self.entities[stored.id] = stored
        logger.debug("Entity added", kind=self.kind.value, entity_id=stored.id)
        return stored.id

    def update(self, entity: Entity) -> None:
        """Overwrite an existing entity."""
        if entity.id not in self.entities:
            raise EntityNotFoundError(f"{self.kind.label} {entity.id} not found")
        self.entities[entity.id] = copy.deepcopy(entity)
        logger.debug("Entity updated", kind=self.kind.value, entity_id=entity.id)

    def list_entities(self) -> list[Entity]:
        return [copy.deepcopy(entity) for entity in self.entities.values()]

    def get(self, entity_id: str) -> Entity | None:
        entity = self.entities.get(entity_id)
        return copy.deepcopy(entity) if entity else None
