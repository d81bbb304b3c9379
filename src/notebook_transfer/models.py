"""Data models for notebook transfer."""

import copy
import json
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, ClassVar, Iterator


class EntityKind(str, Enum):
    """The seven record kinds, declared in their fixed import order."""

    GOALS = "goals"
    PROJECTS = "projects"
    TASKS = "tasks"
    THOUGHTS = "thoughts"
    MOODS = "moods"
    FOCUS_SESSIONS = "focusSessions"
    PEOPLE = "people"

    @property
    def label(self) -> str:
        """Human readable singular name, e.g. "Focus session"."""
        return _KIND_LABELS[self]


KIND_ORDER: tuple[EntityKind, ...] = tuple(EntityKind)

_KIND_LABELS = {
    EntityKind.GOALS: "Goal",
    EntityKind.PROJECTS: "Project",
    EntityKind.TASKS: "Task",
    EntityKind.THOUGHTS: "Thought",
    EntityKind.MOODS: "Mood",
    EntityKind.FOCUS_SESSIONS: "Focus session",
    EntityKind.PEOPLE: "Person",
}


def parse_timestamp(value: Any) -> datetime | None:
    """Parse the timestamp shapes found in stored records.

    Accepts datetimes, ISO-8601 strings (with or without a trailing "Z") and
    epoch numbers (milliseconds when large enough, seconds otherwise). Naive
    values are taken as UTC. Returns None for anything unparseable.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        seconds = value / 1000 if abs(value) > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _wire(f: Any) -> str:
    return f.metadata.get("wire", f.name)


def _dump(value: Any) -> Any:
    if isinstance(value, list):
        return [_dump(item) for item in value]
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return copy.deepcopy(value)


def _pop_path(data: dict[str, Any], path: str) -> tuple[bool, Any]:
    *parents, key = path.split(".")
    node: Any = data
    for parent in parents:
        node = node.get(parent) if isinstance(node, dict) else None
    if isinstance(node, dict) and key in node:
        return True, node.pop(key)
    return False, None


def _set_path(data: dict[str, Any], path: str, value: Any) -> None:
    *parents, key = path.split(".")
    node = data
    for parent in parents:
        node = node.setdefault(parent, {})
    node[key] = value


@dataclass
class Entity:
    """Base record shared by every entity kind.

    Fields carry their wire (camelCase) name in the dataclass field metadata.
    Wire keys this model does not know about are kept in ``extra`` so that an
    export/import round trip is lossless.
    """

    kind: ClassVar[EntityKind]

    id: str
    created_at: Any = field(default=None, metadata={"wire": "createdAt"})
    updated_at: Any = field(default=None, metadata={"wire": "updatedAt"})
    version: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def _wire_fields(cls) -> list[Any]:
        # Dotted paths first so their parents are still intact when popped.
        wired = [f for f in fields(cls) if f.name != "extra"]
        return sorted(wired, key=lambda f: "." not in _wire(f))

    @classmethod
    def _load(cls, name: str, value: Any) -> Any:
        """Convert a wire value for field ``name``; overridden for nested records."""
        return copy.deepcopy(value)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Entity":
        """Build an entity from its wire representation."""
        remaining = copy.deepcopy(data)
        values: dict[str, Any] = {}
        for f in cls._wire_fields():
            found, value = _pop_path(remaining, _wire(f))
            if found:
                values[f.name] = cls._load(f.name, value)
        return cls(**values, extra=remaining)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the wire representation, omitting unset fields."""
        data = copy.deepcopy(self.extra)
        for f in reversed(self._wire_fields()):
            value = getattr(self, f.name)
            if value is None or value == {}:
                continue
            _set_path(data, _wire(f), _dump(value))
        return data

    @property
    def label(self) -> str:
        """Short display name used in logs and conflict messages."""
        return getattr(self, "title", None) or "Untitled"

    @property
    def timestamp(self) -> datetime | None:
        """Creation time, parsed."""
        return parse_timestamp(self.created_at)

    @property
    def updated(self) -> datetime | None:
        """Last update time, parsed."""
        return parse_timestamp(self.updated_at)


@dataclass
class Goal(Entity):
    """A long- or short-term goal."""

    kind: ClassVar[EntityKind] = EntityKind.GOALS

    title: str = ""
    objective: str | None = None
    status: str = "active"
    timeframe: str | None = None
    priority: str | None = None
    progress: int | None = None
    tags: list[str] = field(default_factory=list)


@dataclass
class Project(Entity):
    """A project, optionally nested under a parent project and a goal."""

    kind: ClassVar[EntityKind] = EntityKind.PROJECTS

    title: str = ""
    objective: str | None = None
    status: str = "active"
    category: str | None = None
    priority: str | None = None
    progress: int | None = None
    tags: list[str] = field(default_factory=list)
    goal_id: str | None = field(default=None, metadata={"wire": "goalId"})
    parent_project_id: str | None = field(default=None, metadata={"wire": "parentProjectId"})
    linked_task_ids: list[str] = field(default_factory=list, metadata={"wire": "linkedTaskIds"})
    linked_thought_ids: list[str] = field(default_factory=list, metadata={"wire": "linkedThoughtIds"})


@dataclass
class Task(Entity):
    """A to-do item."""

    kind: ClassVar[EntityKind] = EntityKind.TASKS

    title: str = ""
    done: bool = False
    status: str = "active"
    priority: str | None = None
    category: str | None = None
    tags: list[str] = field(default_factory=list)
    due_date: str | None = field(default=None, metadata={"wire": "dueDate"})
    completed_at: str | None = field(default=None, metadata={"wire": "completedAt"})
    notes: str | None = None
    estimated_minutes: int | None = field(default=None, metadata={"wire": "estimatedMinutes"})
    project_id: str | None = field(default=None, metadata={"wire": "projectId"})
    thought_id: str | None = field(default=None, metadata={"wire": "thoughtId"})


@dataclass
class Thought(Entity):
    """A journal thought, linked to the tasks, projects and moods it spawned."""

    kind: ClassVar[EntityKind] = EntityKind.THOUGHTS

    text: str = ""
    tags: list[str] = field(default_factory=list)
    is_deep_thought: bool | None = field(default=None, metadata={"wire": "isDeepThought"})
    linked_task_ids: list[str] = field(default_factory=list, metadata={"wire": "linkedTaskIds"})
    linked_project_ids: list[str] = field(default_factory=list, metadata={"wire": "linkedProjectIds"})
    linked_mood_ids: list[str] = field(default_factory=list, metadata={"wire": "linkedMoodIds"})

    @property
    def label(self) -> str:
        return self.text[:50] if self.text else "No text"


@dataclass
class Mood(Entity):
    """A mood entry. The source thought lives inside the wire ``metadata`` object."""

    kind: ClassVar[EntityKind] = EntityKind.MOODS

    value: int | float | None = None
    note: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    source_thought_id: str | None = field(default=None, metadata={"wire": "metadata.sourceThoughtId"})

    @property
    def label(self) -> str:
        return f"Mood: {self.value}"


@dataclass
class FocusTask:
    """One task entry inside a focus session."""

    id: str
    title: str | None = None
    completed: bool | None = None
    time_spent: int | None = None
    notes: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    _WIRE: ClassVar[dict[str, str]] = {"time_spent": "timeSpent"}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FocusTask":
        remaining = copy.deepcopy(data)
        values = {}
        for f in fields(cls):
            if f.name == "extra":
                continue
            key = cls._WIRE.get(f.name, f.name)
            if key in remaining:
                values[f.name] = remaining.pop(key)
        values.setdefault("id", "")
        return cls(**values, extra=remaining)

    def to_dict(self) -> dict[str, Any]:
        data = copy.deepcopy(self.extra)
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "extra" or value is None:
                continue
            data[self._WIRE.get(f.name, f.name)] = value
        return data


@dataclass
class FocusSession(Entity):
    """A timed focus session over a list of tasks."""

    kind: ClassVar[EntityKind] = EntityKind.FOCUS_SESSIONS

    duration: int | float | None = None
    start_time: str | None = field(default=None, metadata={"wire": "startTime"})
    end_time: str | None = field(default=None, metadata={"wire": "endTime"})
    feedback: str | None = None
    rating: int | None = None
    tasks: list[FocusTask] = field(default_factory=list)

    @classmethod
    def _load(cls, name: str, value: Any) -> Any:
        if name == "tasks" and isinstance(value, list):
            return [FocusTask.from_dict(item) if isinstance(item, dict) else FocusTask(id=str(item)) for item in value]
        return super()._load(name, value)

    @property
    def label(self) -> str:
        return f"Session: {self.duration}min"

    @property
    def timestamp(self) -> datetime | None:
        return parse_timestamp(self.created_at) or parse_timestamp(self.start_time)


@dataclass
class Person(Entity):
    """Someone in the user's relationships list."""

    kind: ClassVar[EntityKind] = EntityKind.PEOPLE

    name: str = ""
    relationship_type: str | None = field(default=None, metadata={"wire": "relationshipType"})
    notes: str | None = None
    tags: list[str] = field(default_factory=list)
    linked_thought_ids: list[str] = field(default_factory=list, metadata={"wire": "linkedThoughtIds"})

    @property
    def label(self) -> str:
        return self.name or "Unnamed"


AnyEntity = Goal | Project | Task | Thought | Mood | FocusSession | Person

ENTITY_TYPES: dict[EntityKind, type[Entity]] = {
    EntityKind.GOALS: Goal,
    EntityKind.PROJECTS: Project,
    EntityKind.TASKS: Task,
    EntityKind.THOUGHTS: Thought,
    EntityKind.MOODS: Mood,
    EntityKind.FOCUS_SESSIONS: FocusSession,
    EntityKind.PEOPLE: Person,
}


@dataclass(frozen=True)
class ReferenceField:
    """A field on one kind that holds the id(s) of another entity.

    ``attr`` is the attribute on the entity. The form ``"tasks[].id"`` addresses
    the ``id`` of every element of a list attribute.
    """

    kind: EntityKind
    attr: str
    wire: str
    target: EntityKind
    many: bool = False
    required: bool = False

    def values(self, entity: Entity) -> list[str]:
        """Return the non-empty referenced ids held by ``entity``."""
        if "[]." in self.attr:
            list_attr, item_attr = self.attr.split("[].")
            items = getattr(entity, list_attr) or []
            return [getattr(item, item_attr) for item in items if getattr(item, item_attr, None)]
        value = getattr(entity, self.attr)
        if self.many:
            return [item for item in (value or []) if item]
        return [value] if value else []

    def rewrite(self, entity: Entity, resolve: Callable[[str], str | None]) -> bool:
        """Replace every referenced id with ``resolve(id)``.

        A ``None`` result clears a singular reference or drops the element from
        a list. Returns True when anything changed.
        """
        if "[]." in self.attr:
            list_attr, item_attr = self.attr.split("[].")
            items = getattr(entity, list_attr) or []
            kept = []
            changed = False
            for item in items:
                old = getattr(item, item_attr, None)
                new = resolve(old) if old else old
                if old and new is None:
                    changed = True
                    continue
                if new != old:
                    setattr(item, item_attr, new)
                    changed = True
                kept.append(item)
            setattr(entity, list_attr, kept)
            return changed

        value = getattr(entity, self.attr)
        if self.many:
            new_values = []
            for item in value or []:
                new = resolve(item) if item else item
                if new is not None:
                    new_values.append(new)
            changed = new_values != list(value or [])
            if changed:
                setattr(entity, self.attr, new_values)
            return changed

        if not value:
            return False
        new = resolve(value)
        if new != value:
            setattr(entity, self.attr, new)
            return True
        return False


@dataclass(frozen=True)
class Link:
    """Represents a reference from one entity to another.

    ``link_type`` is the wire name of the reference field, e.g. ``projectId``.
    """

    source_id: str
    target_id: str
    link_type: str
    source_kind: EntityKind | None = None
    target_kind: EntityKind | None = None


def _ref(kind: EntityKind, attr: str, wire: str, target: EntityKind, **kwargs: bool) -> ReferenceField:
    return ReferenceField(kind=kind, attr=attr, wire=wire, target=target, **kwargs)


REFERENCE_FIELDS: dict[EntityKind, tuple[ReferenceField, ...]] = {
    EntityKind.GOALS: (),
    EntityKind.PROJECTS: (
        _ref(EntityKind.PROJECTS, "goal_id", "goalId", EntityKind.GOALS),
        _ref(EntityKind.PROJECTS, "parent_project_id", "parentProjectId", EntityKind.PROJECTS),
        _ref(EntityKind.PROJECTS, "linked_task_ids", "linkedTaskIds", EntityKind.TASKS, many=True),
        _ref(EntityKind.PROJECTS, "linked_thought_ids", "linkedThoughtIds", EntityKind.THOUGHTS, many=True),
    ),
    EntityKind.TASKS: (
        _ref(EntityKind.TASKS, "project_id", "projectId", EntityKind.PROJECTS),
        _ref(EntityKind.TASKS, "thought_id", "thoughtId", EntityKind.THOUGHTS),
    ),
    EntityKind.THOUGHTS: (
        _ref(EntityKind.THOUGHTS, "linked_task_ids", "linkedTaskIds", EntityKind.TASKS, many=True),
        _ref(EntityKind.THOUGHTS, "linked_project_ids", "linkedProjectIds", EntityKind.PROJECTS, many=True),
        _ref(EntityKind.THOUGHTS, "linked_mood_ids", "linkedMoodIds", EntityKind.MOODS, many=True),
    ),
    EntityKind.MOODS: (_ref(EntityKind.MOODS, "source_thought_id", "metadata.sourceThoughtId", EntityKind.THOUGHTS),),
    EntityKind.FOCUS_SESSIONS: (
        _ref(EntityKind.FOCUS_SESSIONS, "tasks[].id", "tasks", EntityKind.TASKS, many=True, required=True),
    ),
    EntityKind.PEOPLE: (
        _ref(EntityKind.PEOPLE, "linked_thought_ids", "linkedThoughtIds", EntityKind.THOUGHTS, many=True),
    ),
}

_COLLECTION_ATTRS = {
    EntityKind.GOALS: "goals",
    EntityKind.PROJECTS: "projects",
    EntityKind.TASKS: "tasks",
    EntityKind.THOUGHTS: "thoughts",
    EntityKind.MOODS: "moods",
    EntityKind.FOCUS_SESSIONS: "focus_sessions",
    EntityKind.PEOPLE: "people",
}


@dataclass
class EntityCollection:
    """A user's dataset: one list of entities per kind."""

    goals: list[Goal] = field(default_factory=list)
    projects: list[Project] = field(default_factory=list)
    tasks: list[Task] = field(default_factory=list)
    thoughts: list[Thought] = field(default_factory=list)
    moods: list[Mood] = field(default_factory=list)
    focus_sessions: list[FocusSession] = field(default_factory=list)
    people: list[Person] = field(default_factory=list)

    def of(self, kind: EntityKind) -> list[Entity]:
        """Return the (live) list holding entities of ``kind``."""
        return getattr(self, _COLLECTION_ATTRS[EntityKind(kind)])

    def items(self) -> Iterator[tuple[EntityKind, Entity]]:
        """Iterate ``(kind, entity)`` pairs in kind order."""
        for kind in KIND_ORDER:
            for entity in self.of(kind):
                yield kind, entity

    def ids(self, kind: EntityKind) -> set[str]:
        return {entity.id for entity in self.of(kind)}

    def get(self, kind: EntityKind, entity_id: str) -> Entity | None:
        for entity in self.of(kind):
            if entity.id == entity_id:
                return entity
        return None

    def find(self, entity_id: str) -> tuple[EntityKind, Entity] | None:
        """Locate an entity of any kind by id."""
        for kind, entity in self.items():
            if entity.id == entity_id:
                return kind, entity
        return None

    def counts(self) -> dict[EntityKind, int]:
        return {kind: len(self.of(kind)) for kind in KIND_ORDER}

    @property
    def total(self) -> int:
        return sum(self.counts().values())

    def copy(self) -> "EntityCollection":
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, list[dict[str, Any]]]:
        return {kind.value: [entity.to_dict() for entity in self.of(kind)] for kind in KIND_ORDER}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EntityCollection":
        """Build a collection from wire data; kinds that are absent stay empty."""
        collection = cls()
        for kind in KIND_ORDER:
            entity_type = ENTITY_TYPES[kind]
            collection.of(kind).extend(entity_type.from_dict(item) for item in data.get(kind.value) or [])
        return collection


@dataclass(frozen=True)
class ExportMetadata:
    """Envelope describing an exported bundle."""

    version: str
    exported_at: str
    user_id: str
    total_items: int
    entity_counts: dict[str, int]
    app_version: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "version": self.version,
            "exportedAt": self.exported_at,
            "userId": self.user_id,
            "totalItems": self.total_items,
            "entityCounts": dict(self.entity_counts),
        }
        if self.app_version:
            data["appVersion"] = self.app_version
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExportMetadata":
        counts = data.get("entityCounts") or {}
        return cls(
            version=str(data.get("version", "")),
            exported_at=str(data.get("exportedAt", "")),
            user_id=str(data.get("userId", "unknown")),
            total_items=int(data.get("totalItems") or 0),
            entity_counts={str(k): int(v) for k, v in counts.items() if isinstance(v, (int, float))},
            app_version=data.get("appVersion"),
        )


@dataclass(frozen=True)
class ExportedBundle:
    """An exported dataset with its metadata. Never mutated after creation."""

    metadata: ExportMetadata
    data: EntityCollection

    def to_dict(self) -> dict[str, Any]:
        return {"metadata": self.metadata.to_dict(), "data": self.data.to_dict()}

    def to_json(self, indent: int | None = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, default=str)
