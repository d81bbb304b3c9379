"""Dependency graph and import ordering across entity references."""

from collections import deque
from dataclasses import dataclass, field
from typing import Any

import structlog

from notebook_transfer.conflicts import Conflict, ConflictResolution, ConflictType
from notebook_transfer.models import (
    KIND_ORDER,
    REFERENCE_FIELDS,
    Entity,
    EntityCollection,
    EntityKind,
    Link,
)

logger = structlog.get_logger()


@dataclass
class DependencyGraph:
    """Entity ids tagged with their kind, and one link per non-empty reference.

    Links point from the referrer to the referenced id. A link target may be
    absent from ``nodes`` when the referent is not part of the collection.
    """

    nodes: dict[str, EntityKind]
    links: list[Link]
    _outgoing: dict[str, list[Link]] = field(default_factory=dict, init=False, repr=False)
    _incoming: dict[str, list[Link]] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        for link in self.links:
            self._outgoing.setdefault(link.source_id, []).append(link)
            self._incoming.setdefault(link.target_id, []).append(link)

    @property
    def edges(self) -> dict[str, set[str]]:
        """Referrer id -> referenced ids, with an entry for every node."""
        edges: dict[str, set[str]] = {node: set() for node in self.nodes}
        for link in self.links:
            edges.setdefault(link.source_id, set()).add(link.target_id)
        return edges

    def links_from(self, entity_id: str) -> list[Link]:
        return list(self._outgoing.get(entity_id, []))

    def referrers(self, entity_id: str) -> list[Link]:
        """Links pointing at ``entity_id``."""
        return list(self._incoming.get(entity_id, []))

    def dependencies(self, entity_id: str) -> list[str]:
        """Distinct ids referenced by ``entity_id``, in field order."""
        return list(dict.fromkeys(link.target_id for link in self._outgoing.get(entity_id, [])))

    def dangling(self) -> list[Link]:
        """Links whose target is not a node of this graph."""
        return [link for link in self.links if link.target_id not in self.nodes]


@dataclass(frozen=True)
class ImportPlan:
    """Processing order: kinds in fixed order, ids ordered within each kind."""

    order: dict[EntityKind, tuple[str, ...]]

    @property
    def kind_order(self) -> list[EntityKind]:
        return [kind for kind in KIND_ORDER if self.order.get(kind)]

    def ids(self, kind: EntityKind) -> tuple[str, ...]:
        return self.order.get(kind, ())

    def flat(self) -> list[str]:
        return [entity_id for kind in self.kind_order for entity_id in self.order[kind]]


@dataclass
class RelationshipMap:
    """Everything the mapper derives from one collection."""

    collection: EntityCollection
    graph: DependencyGraph
    plan: ImportPlan
    conflicts: tuple[Conflict, ...] = ()
    broken_links: tuple[Link, ...] = ()

    @property
    def import_order(self) -> list[str]:
        return self.plan.flat()

    def _single(self, kind: EntityKind, link_type: str) -> dict[str, str]:
        return {
            link.source_id: link.target_id
            for link in self.graph.links
            if link.source_kind == kind and link.link_type == link_type
        }

    def _many(self, kind: EntityKind, link_type: str) -> dict[str, list[str]]:
        mapping: dict[str, list[str]] = {}
        for link in self.graph.links:
            if link.source_kind == kind and link.link_type == link_type:
                mapping.setdefault(link.source_id, []).append(link.target_id)
        return mapping

    @property
    def task_to_project(self) -> dict[str, str]:
        return self._single(EntityKind.TASKS, "projectId")

    @property
    def task_to_thought(self) -> dict[str, str]:
        return self._single(EntityKind.TASKS, "thoughtId")

    @property
    def project_to_goal(self) -> dict[str, str]:
        return self._single(EntityKind.PROJECTS, "goalId")

    @property
    def project_to_parent(self) -> dict[str, str]:
        return self._single(EntityKind.PROJECTS, "parentProjectId")

    @property
    def thought_to_tasks(self) -> dict[str, list[str]]:
        """Thought id -> tasks linked from the thought or pointing back at it."""
        mapping = self._many(EntityKind.THOUGHTS, "linkedTaskIds")
        for task_id, thought_id in self.task_to_thought.items():
            tasks = mapping.setdefault(thought_id, [])
            if task_id not in tasks:
                tasks.append(task_id)
        return mapping

    @property
    def thought_to_projects(self) -> dict[str, list[str]]:
        return self._many(EntityKind.THOUGHTS, "linkedProjectIds")

    @property
    def thought_to_moods(self) -> dict[str, list[str]]:
        return self._many(EntityKind.THOUGHTS, "linkedMoodIds")

    @property
    def thought_to_people(self) -> dict[str, list[str]]:
        mapping: dict[str, list[str]] = {}
        for person_id, thought_ids in self._many(EntityKind.PEOPLE, "linkedThoughtIds").items():
            for thought_id in thought_ids:
                mapping.setdefault(thought_id, []).append(person_id)
        return mapping

    def referrers(self, entity_id: str) -> list[Link]:
        return self.graph.referrers(entity_id)

    def back_references(self, entity_id: str) -> dict[EntityKind, list[str]]:
        """Kind -> ids of the entities that reference ``entity_id``."""
        result: dict[EntityKind, list[str]] = {}
        for link in self.graph.referrers(entity_id):
            ids = result.setdefault(link.source_kind, [])
            if link.source_id not in ids:
                ids.append(link.source_id)
        return result

    def validate_dependencies(self, entity_id: str, imported_ids: set[str]) -> tuple[bool, list[str]]:
        """Check that every dependency of ``entity_id`` is in ``imported_ids``."""
        missing = [dep for dep in self.graph.dependencies(entity_id) if dep not in imported_ids]
        return not missing, missing

    def link_tree(self, entity_id: str) -> dict[str, Any]:
        """Get the link tree for an entity.

        Returns:
            Dictionary with structure:
            {
                "entity": {"id": str, "title": str, "kind": str},
                "links": {"<field>": [{"id": str, "title": str}], "referenced_by <field>": [...]}
            }

        Raises:
            KeyError: If the entity is not part of the collection
        """
        found = self.collection.find(entity_id)
        if found is None:
            raise KeyError(entity_id)
        kind, entity = found

        def describe(target_id: str) -> dict[str, str]:
            target = self.collection.find(target_id)
            return {"id": target_id, "title": target[1].label if target else "(missing)"}

        links: dict[str, list[dict[str, str]]] = {}
        for link in self.graph.links_from(entity_id):
            links.setdefault(link.link_type, []).append(describe(link.target_id))
        for link in self.graph.referrers(entity_id):
            links.setdefault(f"referenced_by {link.link_type}", []).append(describe(link.source_id))
        return {"entity": {"id": entity.id, "title": entity.label, "kind": kind.value}, "links": links}


class RelationshipMapper:
    """Builds the dependency graph and the safe processing order.

    Kinds are processed in the fixed order goals, projects, tasks, thoughts,
    moods, focus sessions, people. Within a kind, entities that reference
    other entities of the same kind (a project's parent) are ordered with
    Kahn's algorithm. Entities with no pending parent keep their bundle
    order; children released by a parent are queued sorted by creation time,
    then bundle position, with undated entities last. A reference cycle is
    broken by setting aside the reference held by the lexicographically
    largest id in the cycle and is reported as a data-constraint conflict.
    """

    def map(self, collection: EntityCollection) -> RelationshipMap:
        graph = self.build_graph(collection)
        order: dict[EntityKind, tuple[str, ...]] = {}
        conflicts: list[Conflict] = []
        broken: list[Link] = []
        for kind in KIND_ORDER:
            entities = collection.of(kind)
            if not entities:
                continue
            ids, kind_conflicts, kind_broken = self._order_kind(kind, entities)
            order[kind] = tuple(ids)
            conflicts.extend(kind_conflicts)
            broken.extend(kind_broken)

        logger.debug(
            "Relationship map built",
            nodes=len(graph.nodes),
            links=len(graph.links),
            cycles_broken=len(broken),
        )
        return RelationshipMap(
            collection=collection,
            graph=graph,
            plan=ImportPlan(order),
            conflicts=tuple(conflicts),
            broken_links=tuple(broken),
        )

    def build_graph(self, collection: EntityCollection) -> DependencyGraph:
        nodes: dict[str, EntityKind] = {}
        links: list[Link] = []
        for kind, entity in collection.items():
            nodes.setdefault(entity.id, kind)
            for ref in REFERENCE_FIELDS[kind]:
                for target_id in ref.values(entity):
                    links.append(Link(entity.id, target_id, ref.wire, source_kind=kind, target_kind=ref.target))
        return DependencyGraph(nodes=nodes, links=links)

    def _order_kind(
        self, kind: EntityKind, entities: list[Entity]
    ) -> tuple[list[str], list[Conflict], list[Link]]:
        by_id: dict[str, Entity] = {}
        position: dict[str, int] = {}
        for index, entity in enumerate(entities):
            if entity.id not in by_id:
                by_id[entity.id] = entity
                position[entity.id] = index

        # child id -> {parent id: reference field}
        parents: dict[str, dict[str, str]] = {entity_id: {} for entity_id in by_id}
        for ref in REFERENCE_FIELDS[kind]:
            if ref.target != kind:
                continue
            for entity_id, entity in by_id.items():
                for target_id in ref.values(entity):
                    if target_id in by_id:
                        parents[entity_id].setdefault(target_id, ref.wire)

        children: dict[str, list[str]] = {entity_id: [] for entity_id in by_id}
        for child, refs in parents.items():
            for parent in refs:
                children[parent].append(child)
        waiting = {entity_id: set(refs) for entity_id, refs in parents.items()}

        def sort_key(entity_id: str) -> tuple:
            ts = by_id[entity_id].timestamp
            return (0, ts, position[entity_id]) if ts else (1, position[entity_id])

        queue = deque(entity_id for entity_id in by_id if not waiting[entity_id])
        emitted: list[str] = []
        done: set[str] = set()
        conflicts: list[Conflict] = []
        broken: list[Link] = []

        while len(emitted) < len(by_id):
            if not queue:
                cycle = self._find_cycle(waiting, done)
                loser = max(cycle)
                target = cycle[(cycle.index(loser) + 1) % len(cycle)]
                wire = parents[loser][target]
                waiting[loser].discard(target)
                children[target].remove(loser)
                broken.append(Link(loser, target, wire, source_kind=kind, target_kind=kind))
                conflicts.append(
                    Conflict(
                        id=f"{kind.value}:{loser}:{ConflictType.DATA_CONSTRAINT.value}:{wire}:{target}",
                        type=ConflictType.DATA_CONSTRAINT,
                        kind=kind,
                        entity_id=loser,
                        title=by_id[loser].label,
                        message=(
                            f"{kind.label} {loser} is part of a reference cycle "
                            f"({' -> '.join(cycle + [cycle[0]])}); its {wire} reference to {target} was set aside"
                        ),
                        suggested_resolution=ConflictResolution.CLEAR_REFERENCE,
                        field=wire,
                        referenced_kind=kind,
                        referenced_id=target,
                    )
                )
                logger.warning("Reference cycle broken", kind=kind.value, cycle=cycle, entity_id=loser, target=target)
                if not waiting[loser]:
                    queue.append(loser)
                continue

            entity_id = queue.popleft()
            emitted.append(entity_id)
            done.add(entity_id)
            released = []
            for child in children[entity_id]:
                waiting[child].discard(entity_id)
                if not waiting[child] and child not in done:
                    released.append(child)
            # Siblings released by the same parent are tied: oldest first.
            queue.extend(sorted(released, key=sort_key))

        return emitted, conflicts, broken

    @staticmethod
    def _find_cycle(waiting: dict[str, set[str]], done: set[str]) -> list[str]:
        """Walk unresolved parent references from the smallest pending id until one repeats."""
        current = min(entity_id for entity_id in waiting if entity_id not in done)
        path: list[str] = []
        index: dict[str, int] = {}
        while current not in index:
            index[current] = len(path)
            path.append(current)
            current = min(waiting[current])
        return path[index[current]:]
