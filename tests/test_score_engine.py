import math
from datetime import timedelta

import pytest

from repgraph.config import DOMAIN_FACTOR_WEIGHTS
from repgraph.errors import InvalidGraphState, InvalidParameter
from repgraph.graph.model import (
    Edge, EdgeMetadata, EdgeType, EntityRef, Node, NodeMetadata, NodeType, Subgraph,
)
from repgraph.graph.traversal import GraphTraversal
from repgraph.scoring.engine import ReputationDomain, ScoreEngine, ScoringConfig

from tests.conftest import FIXED_NOW, add_node


def _node(node_id, node_type=NodeType.USER, weight=0.5, **attributes):
    return Node(
        id=node_id,
        type=node_type,
        entity_ref=EntityRef(node_id, node_type.value),
        metadata=NodeMetadata(name=node_id, attributes=attributes),
        weight=weight,
    )


def _edge(edge_id, source, target, edge_type=EdgeType.PARTICIPATION, strength=0.5, **attributes):
    return Edge(
        id=edge_id,
        source_id=source,
        target_id=target,
        type=edge_type,
        strength=strength,
        metadata=EdgeMetadata(attributes=attributes),
    )


def _mission_user(store, strengths):
    user = add_node(store, "User", "u")
    for i, strength in enumerate(strengths):
        mission = add_node(store, "Mission", f"m{i}", 0.5)
        store.upsert_edge(user, mission, "Participation", strength)
    return user


def test_participation_in_mission_domain(store, engine) -> None:
    user = _mission_user(store, [0.8, 0.6, 0.4])
    sub = GraphTraversal(store).expand(user, depth=1, max_nodes=100)

    score = engine.compute_score(user, ReputationDomain.MISSION, None, sub)

    assert score.score == pytest.approx(100 * 0.9 / 3.9)
    assert round(score.score, 1) == 23.1
    assert [f.name for f in score.factors] == ["Participation"]
    assert score.factors[0].contribution == pytest.approx(0.9)
    assert score.factors[0].weight == 1.0
    assert score.raw_score == pytest.approx(0.9)
    assert 0.5 < score.confidence <= 1.0
    assert score.user_id == "u"


@pytest.mark.parametrize("domain", list(ReputationDomain))
def test_no_evidence_is_neutral(store, engine, domain) -> None:
    user = add_node(store, "User", "lonely")
    sub = GraphTraversal(store).expand(user, depth=1, max_nodes=10)

    score = engine.compute_score(user, domain, None, sub)

    assert score.score == 50.0
    assert score.confidence == 0.5
    assert score.factors == []


def test_more_evidence_never_lowers_score(store, engine) -> None:
    traversal = GraphTraversal(store)
    user = _mission_user(store, [0.8, 0.6, 0.4])
    before = engine.compute_score(user, "Mission", None, traversal.expand(user, 1, 100))

    extra = add_node(store, "Mission", "m-extra", 0.5)
    store.upsert_edge(user, extra, "Participation", 0.3)
    after = engine.compute_score(user, "Mission", None, traversal.expand(user, 1, 100))

    assert after.factors[0].contribution > before.factors[0].contribution
    assert after.score > before.score
    assert after.confidence >= before.confidence


def test_repeated_interactions_compound() -> None:
    user = _node("u")
    other = _node("m", NodeType.MISSION, weight=1.0)
    sub = Subgraph(root_id="u", nodes=[user, other], edges=[
        _edge("e1", "u", "m", strength=0.5),
        _edge("e2", "u", "m", strength=0.5),
    ])

    score = ScoreEngine(ScoringConfig(domain_weights=DOMAIN_FACTOR_WEIGHTS)).compute_score(user, "Mission", None, sub)

    assert score.factors[0].contribution == pytest.approx(1.0)
    assert score.metadata["edgeCount"] == 2


def test_node_type_factors_for_configured_domain(store, engine, community) -> None:
    sub = GraphTraversal(store).expand(community["alice"], depth=1, max_nodes=100)

    score = engine.compute_score(community["alice"], ReputationDomain.COMMUNITY, None, sub)

    names = [f.name for f in score.factors]
    assert names == ["Participation", "Follow", "UserConnections", "CommunityConnections"]
    follow = score.factors[1]
    assert follow.contribution == pytest.approx(0.9 * 0.5)
    assert follow.weight == DOMAIN_FACTOR_WEIGHTS["Community"]["edges"]["Follow"]


def test_unlisted_domain_falls_back_to_unit_weight(store, community) -> None:
    engine = ScoreEngine(ScoringConfig(), clock=lambda: FIXED_NOW)
    sub = GraphTraversal(store).expand(community["bob"], depth=1, max_nodes=100)

    score = engine.compute_score(community["bob"], "Trust", None, sub)

    assert {f.weight for f in score.factors} == {1.0}


def test_sub_domain_filters_evidence() -> None:
    user = _node("u")
    m1 = _node("m1", NodeType.MISSION, weight=1.0, category="defi")
    m2 = _node("m2", NodeType.MISSION, weight=1.0)
    sub = Subgraph(root_id="u", nodes=[user, m1, m2], edges=[
        _edge("e1", "u", "m1", strength=0.5),
        _edge("e2", "u", "m2", strength=0.5, tags=["defi", "nft"]),
        _edge("e3", "u", "m2", edge_type=EdgeType.LIKE, strength=0.5),
    ])
    engine = ScoreEngine()

    score = engine.compute_score(user, "Overall", "defi", sub)

    assert score.sub_domain == "defi"
    assert score.metadata["edgeCount"] == 2
    assert engine.compute_score(user, "Overall", "gaming", sub).score == 50.0


def test_linear_decay() -> None:
    config = ScoringConfig(decay_half_life_days=10)
    engine = ScoreEngine(config, clock=lambda: FIXED_NOW)
    user = _node("u")
    fresh = _node("a", NodeType.ACTIVITY, weight=1.0)
    half = _node("b", NodeType.ACTIVITY, weight=1.0)
    gone = _node("c", NodeType.ACTIVITY, weight=1.0)
    sub = Subgraph(root_id="u", nodes=[user, fresh, half, gone], edges=[
        _edge("e1", "u", "a", EdgeType.CREATION, 1.0, timestamp=FIXED_NOW.isoformat()),
        _edge("e2", "u", "b", EdgeType.COMMENT, 1.0,
              occurredAt=(FIXED_NOW - timedelta(days=10)).isoformat().replace("+00:00", "Z")),
        _edge("e3", "u", "c", EdgeType.LIKE, 1.0,
              timestamp=(FIXED_NOW - timedelta(days=25)).timestamp()),
    ])

    score = engine.compute_score(user, "Content", None, sub)

    contributions = {f.name: f.contribution for f in score.factors}
    assert contributions["Creation"] == pytest.approx(1.0)
    assert contributions["Comment"] == pytest.approx(0.5)
    assert contributions["Like"] == 0.0


def test_unreadable_timestamp_is_graph_state_error() -> None:
    engine = ScoreEngine(ScoringConfig(decay_half_life_days=5), clock=lambda: FIXED_NOW)
    user = _node("u")
    other = _node("m", NodeType.MISSION)
    sub = Subgraph(root_id="u", nodes=[user, other], edges=[
        _edge("e1", "u", "m", timestamp="last tuesday"),
    ])

    with pytest.raises(InvalidGraphState):
        engine.compute_score(user, "Overall", None, sub)


@pytest.mark.parametrize("bad", [math.nan, math.inf, 1.5])
def test_corrupt_strength_rejected(bad) -> None:
    user = _node("u")
    other = _node("m", NodeType.MISSION)
    sub = Subgraph(root_id="u", nodes=[user, other], edges=[_edge("e1", "u", "m", strength=bad)])

    with pytest.raises(InvalidGraphState):
        ScoreEngine().compute_score(user, "Overall", None, sub)


def test_corrupt_weight_rejected() -> None:
    user = _node("u")
    other = _node("m", NodeType.MISSION, weight=math.nan)
    sub = Subgraph(root_id="u", nodes=[user, other], edges=[_edge("e1", "m", "u")])

    with pytest.raises(InvalidGraphState):
        ScoreEngine().compute_score(user, "Overall", None, sub)


def test_self_loop_carries_no_evidence() -> None:
    user = _node("u")
    sub = Subgraph(root_id="u", nodes=[user], edges=[_edge("e1", "u", "u", EdgeType.ASSOCIATION, 1.0)])

    assert ScoreEngine().compute_score(user, "Overall", None, sub).score == 50.0


def test_scores_stay_bounded_under_heavy_activity() -> None:
    user = _node("u")
    others = [_node(f"m{i}", NodeType.MISSION, weight=1.0) for i in range(300)]
    edges = [_edge(f"e{i}", "u", f"m{i}", strength=1.0) for i in range(300)]
    sub = Subgraph(root_id="u", nodes=[user] + others, edges=edges)

    score = ScoreEngine().compute_score(user, "Mission", None, sub)

    assert 0.0 <= score.score < 100.0
    assert 0.0 <= score.confidence <= 1.0


def test_rejects_non_user_and_missing_subgraph() -> None:
    mission = _node("m", NodeType.MISSION)
    engine = ScoreEngine()
    with pytest.raises(InvalidParameter):
        engine.compute_score(mission, "Overall", None, Subgraph(root_id="m", nodes=[mission]))
    with pytest.raises(InvalidParameter):
        engine.compute_score(_node("u"), "Overall", None, None)


def test_invalid_config_rejected() -> None:
    with pytest.raises(InvalidParameter):
        ScoringConfig(squash_k=0)
    with pytest.raises(InvalidParameter):
        ScoringConfig(decay_half_life_days=-1)
