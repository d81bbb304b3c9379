"""Shared fixtures."""

from typing import Any, Callable

import pytest

from notebook_transfer.backend import DataLayer
from notebook_transfer.backends import MemoryStore
from notebook_transfer.cli import configure_logging
from notebook_transfer.models import (
    EntityCollection,
    FocusSession,
    FocusTask,
    Goal,
    Mood,
    Person,
    Project,
    Task,
    Thought,
)


@pytest.fixture(autouse=True)
def quiet_logging() -> None:
    """Keep log output out of captured stdout."""
    configure_logging("critical")


@pytest.fixture
def sample_collection() -> EntityCollection:
    """A small dataset touching every kind and every reference field."""
    return EntityCollection(
        goals=[Goal(id="G1", title="Get fit", created_at="2024-01-01T00:00:00Z")],
        projects=[
            Project(id="P2", title="Gym plan", parent_project_id="P1", created_at="2024-01-03T00:00:00Z"),
            Project(id="P1", title="Health", goal_id="G1", created_at="2024-01-02T00:00:00Z"),
        ],
        tasks=[
            Task(id="T1", title="Buy shoes", project_id="P1", thought_id="TH1", created_at="2024-01-04T00:00:00Z"),
            Task(
                id="T2",
                title="Sign up",
                project_id="P2",
                done=True,
                status="completed",
                tags=["gym"],
                created_at="2024-02-01T00:00:00Z",
            ),
        ],
        thoughts=[
            Thought(id="TH1", text="I should run more", linked_task_ids=["T1"], created_at="2024-01-05T00:00:00Z")
        ],
        moods=[Mood(id="M1", value=7, source_thought_id="TH1", created_at="2024-01-06T00:00:00Z")],
        focus_sessions=[
            FocusSession(id="FS1", duration=25, start_time="2024-01-07T09:00:00Z", tasks=[FocusTask(id="T1")])
        ],
        people=[Person(id="PE1", name="Coach", linked_thought_ids=["TH1"], created_at="2024-01-08T00:00:00Z")],
    )


@pytest.fixture
def sample_bundle(sample_collection: EntityCollection) -> dict[str, Any]:
    """Raw bundle dict wrapping the sample collection."""
    return {
        "metadata": {
            "version": "1.0.0",
            "exportedAt": "2024-03-01T00:00:00+00:00",
            "userId": "user-1",
            "totalItems": sample_collection.total,
            "entityCounts": {k.value: v for k, v in sample_collection.counts().items()},
        },
        "data": sample_collection.to_dict(),
    }


@pytest.fixture
def make_layer() -> Callable[..., DataLayer]:
    """Build a data layer of memory stores, optionally pre-filled."""

    def factory(collection: EntityCollection | None = None) -> DataLayer:
        contents = collection or EntityCollection()
        return DataLayer.from_factory(lambda kind: MemoryStore(kind, contents.of(kind)))

    return factory
