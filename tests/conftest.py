from dataclasses import replace
from datetime import datetime, timezone

import pytest

from repgraph.compute.manager import ComputationJobManager
from repgraph.config import DOMAIN_FACTOR_WEIGHTS
from repgraph.graph.model import EntityRef, NodeMetadata
from repgraph.graph.store import InMemoryGraphStore
from repgraph.scoring.engine import ScoreEngine, ScoringConfig
from repgraph.scoring.store import InMemoryScoreStore
from repgraph.service import ReputationGraphService

FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def add_node(store, node_type, entity_id, weight=None, **attributes):
    return store.upsert_node(
        node_type,
        EntityRef(entity_id, node_type),
        NodeMetadata(name=entity_id, attributes=attributes),
        weight,
    )


def corrupt(store, record, **changes):
    """Overwrite a stored node or edge behind the validating upsert path."""
    table = store._edges if record.id in store._edges else store._nodes
    table[record.id] = replace(record, **changes)
    return table[record.id]


@pytest.fixture
def store() -> InMemoryGraphStore:
    return InMemoryGraphStore()


@pytest.fixture
def scores() -> InMemoryScoreStore:
    return InMemoryScoreStore()


@pytest.fixture
def engine() -> ScoreEngine:
    return ScoreEngine(ScoringConfig(domain_weights=DOMAIN_FACTOR_WEIGHTS), clock=lambda: FIXED_NOW)


@pytest.fixture
def manager(store, scores, engine) -> ComputationJobManager:
    return ComputationJobManager(store, scores, engine, max_workers=2)


@pytest.fixture
def service(store, scores, manager) -> ReputationGraphService:
    return ReputationGraphService(store, scores, manager)


@pytest.fixture
def community(store):
    """
    Three users around one mission and one community.

        alice -Participation(0.8)-> quest
        bob   -Participation(0.4)-> quest
        bob   -Follow(0.9)->        alice
        alice -Participation(0.7)-> guild
        carol (no edges)
    """
    alice = add_node(store, "User", "alice", 0.6)
    bob = add_node(store, "User", "bob")
    carol = add_node(store, "User", "carol")
    quest = add_node(store, "Mission", "quest", 0.5)
    guild = add_node(store, "Community", "guild", 0.8)
    store.upsert_edge(alice, quest, "Participation", 0.8)
    store.upsert_edge(bob, quest, "Participation", 0.4)
    store.upsert_edge(bob, alice, "Follow", 0.9)
    store.upsert_edge(alice, guild, "Participation", 0.7)
    return {"alice": alice, "bob": bob, "carol": carol, "quest": quest, "guild": guild}
