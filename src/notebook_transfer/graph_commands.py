"""Reference graph commands for the nbt CLI."""

from pathlib import Path

from cyclopts import App

from notebook_transfer.export import read_bundle
from notebook_transfer.relationships import RelationshipMap, RelationshipMapper
from notebook_transfer.validation import Validator

graph_app = App(name="graph", help="Inspect references between entities")


def _load(bundle: Path | None) -> RelationshipMap:
    """Map a bundle file, or the current store when no bundle is given."""
    if bundle is not None:
        collection = Validator().validate(read_bundle(bundle)).entities
    else:
        from notebook_transfer.cli import get_data_layer

        collection = get_data_layer().snapshot()
    return RelationshipMapper().map(collection)


@graph_app.command
def order(bundle: Path | None = None) -> None:
    """Print the order entities would be imported in.

    Args:
        bundle: Bundle file to read instead of the store
    """
    mapping = _load(bundle)
    plan = mapping.plan
    if not plan.kind_order:
        print("No entities found")
        return

    position = 1
    for kind in plan.kind_order:
        print(f"{kind.value}:")
        for entity_id in plan.ids(kind):
            entity = mapping.collection.get(kind, entity_id)
            print(f"  {position}. {entity_id} {entity.label}")
            position += 1


@graph_app.command
def refs(entity_id: str, bundle: Path | None = None) -> None:
    """Display what an entity references and what references it.

    Args:
        entity_id: Entity to inspect
        bundle: Bundle file to read instead of the store
    """
    try:
        tree = _load(bundle).link_tree(entity_id)
    except KeyError as e:
        raise ValueError(f"Entity {entity_id} not found") from e

    entity = tree["entity"]
    print(f"Entity: {entity['id']} {entity['title']} ({entity['kind']})\n")

    if not tree["links"]:
        print("No references")
        return
    for link_type, targets in tree["links"].items():
        print(f"{link_type}:")
        for item in targets:
            print(f"  - {item['id']} {item['title']}")
        print()


@graph_app.command
def cycles(bundle: Path | None = None) -> None:
    """Find reference cycles between entities of the same kind.

    Args:
        bundle: Bundle file to read instead of the store
    """
    mapping = _load(bundle)
    if not mapping.conflicts:
        print("No cycles found")
        return

    print(f"Found {len(mapping.conflicts)} cycle(s):\n")
    for i, conflict in enumerate(mapping.conflicts, 1):
        print(f"{i}. {conflict.message}")
