import math
from concurrent.futures import ThreadPoolExecutor

import pytest

from repgraph.errors import (
    InvalidEdge, InvalidEntityRef, InvalidGraphState, InvalidParameter, InvalidStrength, InvalidWeight,
    NodeNotFound, UnknownNode,
)
from repgraph.graph.model import EdgeMetadata, EntityRef, NodeMetadata
from repgraph.graph.neo4j_store import _edge_from_props, _node_from_props

from tests.conftest import add_node


def test_new_node_defaults_weight_and_keeps_identity(store) -> None:
    node = add_node(store, "User", "u1")

    assert node.weight == 0.5
    assert store.get_node(EntityRef("u1", "User")).id == node.id
    assert store.find_user_node("u1").id == node.id


def test_upsert_merges_metadata_and_overwrites_weight(store) -> None:
    first = store.upsert_node(
        "Mission", EntityRef("m1", "Mission"),
        NodeMetadata(name="Quest", description="old", attributes={"a": 1, "b": 2}),
        0.3,
    )
    second = store.upsert_node(
        "Mission", EntityRef("m1", "Mission"),
        NodeMetadata(description="new", attributes={"b": 3}),
        0.9,
    )

    assert second.id == first.id
    assert second.seq == first.seq
    assert second.created_at == first.created_at
    assert second.metadata.name == "Quest"
    assert second.metadata.description == "new"
    assert second.metadata.attributes == {"a": 1, "b": 3}
    assert second.weight == 0.9
    assert len(store.list_nodes()) == 1


def test_upsert_without_weight_keeps_existing_weight(store) -> None:
    add_node(store, "Tag", "python", 0.7)
    again = store.upsert_node("Tag", EntityRef("python", "Tag"), NodeMetadata(description="lang"))

    assert again.weight == 0.7


@pytest.mark.parametrize("weight", [-0.1, 1.01, math.nan, math.inf, True, "0.5"])
def test_invalid_weight_rejected_before_any_write(store, weight) -> None:
    with pytest.raises(InvalidWeight):
        add_node(store, "User", "u1", weight)

    assert store.list_nodes() == []


def test_name_required_on_create(store) -> None:
    with pytest.raises(InvalidParameter):
        store.upsert_node("User", EntityRef("u1", "User"), NodeMetadata())


def test_node_type_cannot_change(store) -> None:
    add_node(store, "User", "x")
    with pytest.raises(InvalidEntityRef) as exc:
        store.upsert_node("Mission", EntityRef("x", "User"), NodeMetadata(name="x"))

    assert exc.value.details["type"] == "User"
    assert store.get_node(EntityRef("x", "User")).type.value == "User"


def test_unknown_node_type_rejected(store) -> None:
    with pytest.raises(InvalidParameter):
        add_node(store, "Planet", "p")


def test_empty_entity_ref_rejected() -> None:
    with pytest.raises(InvalidEntityRef):
        EntityRef("", "User")


def test_get_node_missing_raises(store) -> None:
    with pytest.raises(NodeNotFound):
        store.get_node(EntityRef("ghost", "User"))


def test_edge_unique_per_source_target_type(store) -> None:
    a = add_node(store, "User", "a")
    b = add_node(store, "User", "b")

    first = store.upsert_edge(a, b, "Follow", 0.2, metadata=EdgeMetadata(attributes={"k": 1}))
    second = store.upsert_edge(a, b, "Follow", 0.6, metadata=EdgeMetadata(description="again"))
    other = store.upsert_edge(a, b, "Like")

    assert second.id == first.id
    assert second.strength == 0.6
    assert second.metadata.attributes == {"k": 1}
    assert second.metadata.description == "again"
    assert other.id != first.id
    assert other.strength == 0.5
    assert other.directed is True
    assert [e.id for e in store.get_edges_from(a)] == [first.id, other.id]
    assert [e.id for e in store.get_edges_to(b, ["Like"])] == [other.id]
    assert store.get_edges_from(b) == []


def test_edge_to_unknown_node_rejected(store) -> None:
    a = add_node(store, "User", "a")
    with pytest.raises(UnknownNode):
        store.upsert_edge(a, "n_missing", "Follow")


@pytest.mark.parametrize("strength", [-0.01, 1.5, math.nan])
def test_invalid_strength_rejected(store, strength) -> None:
    a = add_node(store, "User", "a")
    b = add_node(store, "User", "b")
    with pytest.raises(InvalidStrength):
        store.upsert_edge(a, b, "Follow", strength)

    assert store.get_edges_from(a) == []


def test_self_loop_only_for_association(store) -> None:
    tag = add_node(store, "Tag", "t")
    with pytest.raises(InvalidEdge):
        store.upsert_edge(tag, tag, "Follow")

    loop = store.upsert_edge(tag, tag, "Association", 0.3)
    assert loop.source_id == loop.target_id == tag.id


def test_concurrent_upserts_never_duplicate(store) -> None:
    hub = add_node(store, "Mission", "hub")

    def work(i: int) -> None:
        user = store.upsert_node("User", EntityRef("same", "User"), NodeMetadata(name="same"), (i % 10) / 10)
        store.upsert_edge(user, hub, "Participation", (i % 10) / 10)

    with ThreadPoolExecutor(max_workers=16) as pool:
        list(pool.map(work, range(200)))

    users = store.list_nodes("User")
    assert len(users) == 1
    assert len(store.get_edges_to(hub)) == 1
    assert 0.0 <= users[0].weight <= 1.0


def test_stats_group_by_type(store, community) -> None:
    stats = store.stats()

    assert stats["nodes"]["total"] == 5
    assert stats["nodes"]["byType"] == {"User": 3, "Mission": 1, "Community": 1}
    assert stats["edges"]["byType"] == {"Participation": 3, "Follow": 1}


_NODE_PROPS = {"id": "n_1", "type": "User", "entity_id": "u1", "entity_type": "User", "name": "u1"}
_EDGE_PROPS = {"id": "e_1", "type": "Follow", "directed": True}


def test_stored_node_maps_back_with_its_weight() -> None:
    node = _node_from_props({**_NODE_PROPS, "weight": 0.25, "seq": 3})

    assert node.weight == 0.25
    assert node.entity_ref == EntityRef("u1", "User")


@pytest.mark.parametrize("props", [{}, {"weight": None}, {"weight": math.nan}, {"weight": 2.0}])
def test_stored_node_with_missing_or_corrupt_weight(props) -> None:
    with pytest.raises(InvalidGraphState) as exc:
        _node_from_props({**_NODE_PROPS, **props})

    assert exc.value.details["id"] == "n_1"


@pytest.mark.parametrize("props", [{}, {"strength": math.inf}, {"strength": -0.2}])
def test_stored_edge_with_missing_or_corrupt_strength(props) -> None:
    with pytest.raises(InvalidGraphState):
        _edge_from_props({**_EDGE_PROPS, **props}, "n_1", "n_2")

    assert _edge_from_props({**_EDGE_PROPS, "strength": 0.0}, "n_1", "n_2").strength == 0.0
