import asyncio

import pytest

from repgraph.auth import ANONYMOUS, Caller
from repgraph.compute.jobs import JobStatus
from repgraph.errors import Forbidden, InvalidParameter, JobNotFound, NodeNotFound
from repgraph.scoring.engine import ReputationDomain

ALICE = Caller(user_id="alice")
BOB = Caller(user_id="bob")
OPERATOR = Caller(user_id="ops", is_operator=True)


def _compute_everything(service) -> None:
    async def scenario():
        job = await service.submit_computation("Full", caller=OPERATOR)
        return await service.manager.wait(job.job_id)

    assert asyncio.run(scenario()).status == JobStatus.COMPLETED


# ── graph queries ──

def test_user_graph_uses_defaults(service, community) -> None:
    subgraph = service.get_user_graph("alice")

    assert subgraph.root_id == community["alice"].id
    assert {n.id for n in subgraph.nodes} == {c.id for c in community.values() if c is not community["carol"]}


def test_user_graph_rejects_out_of_range_instead_of_clamping(service, community) -> None:
    with pytest.raises(InvalidParameter):
        service.get_user_graph("alice", max_nodes=5)
    with pytest.raises(InvalidParameter):
        service.get_user_graph("alice", max_nodes=501)
    with pytest.raises(InvalidParameter):
        service.get_user_graph("alice", depth=4)
    with pytest.raises(InvalidParameter):
        service.get_user_graph("alice", min_strength=1.5)


def test_user_graph_filters(service, community) -> None:
    subgraph = service.get_user_graph("alice", edge_types=["Follow"])

    assert [e.type.value for e in subgraph.edges] == ["Follow"]
    assert {n.id for n in subgraph.nodes} == {community["alice"].id, community["bob"].id}


def test_unknown_user(service) -> None:
    with pytest.raises(NodeNotFound):
        service.get_user_graph("nobody")
    with pytest.raises(NodeNotFound):
        service.get_user_scores("nobody")


def test_visualization_bounds(service, community) -> None:
    positioned, subgraph = service.get_visualization("alice", algorithm="radial")

    assert len(positioned.positions) == len(subgraph.nodes)
    with pytest.raises(InvalidParameter):
        service.get_visualization("alice", max_nodes=301)
    with pytest.raises(InvalidParameter):
        service.get_visualization("alice", algorithm="hive")


# ── scores ──

def test_factor_breakdown_is_private(service, community) -> None:
    _compute_everything(service)

    assert len(service.get_user_scores("alice")) == len(ReputationDomain)
    assert service.get_user_scores("alice", ALICE, include_factors=True)
    assert service.get_user_scores("alice", OPERATOR, include_factors=True)
    with pytest.raises(Forbidden):
        service.get_user_scores("alice", BOB, include_factors=True)
    with pytest.raises(Forbidden):
        service.get_user_scores("alice", ANONYMOUS, include_factors=True)


def test_top_users_ranking(service, community) -> None:
    _compute_everything(service)

    rows = service.top_users_by_domain("Community", limit=3)
    ranked = [r["userId"] for r in rows]

    assert [r["rank"] for r in rows] == [1, 2, 3]
    assert [r["score"] for r in rows] == sorted((r["score"] for r in rows), reverse=True)
    # carol has no evidence and keeps the neutral prior
    assert ranked[0] == "carol"
    assert ranked.index("alice") < ranked.index("bob")
    assert len(service.top_users_by_domain("Community", limit=2)) == 2
    with pytest.raises(InvalidParameter):
        service.top_users_by_domain("Community", limit=0)
    with pytest.raises(InvalidParameter):
        service.top_users_by_domain("Karma")


def test_compare_to_average(service, community) -> None:
    _compute_everything(service)

    alice = {c.domain: c for c in service.compare_to_average("alice")}
    bob = {c.domain: c for c in service.compare_to_average("bob")}
    row = alice[ReputationDomain.COMMUNITY]

    assert set(alice) == set(ReputationDomain)
    assert row.difference == pytest.approx(row.user_score - row.average_score)
    assert row.percentile == 50.0
    assert bob[ReputationDomain.COMMUNITY].percentile < row.percentile

    carol = {c.domain: c for c in service.compare_to_average("carol")}
    assert carol[ReputationDomain.OVERALL].user_score == 50.0


def test_compare_without_baseline_falls_back_to_self(service, scores, community) -> None:
    service.baseline()
    _compute_everything(service)

    [first, *_] = service.compare_to_average("bob")

    assert first.average_score == first.user_score
    assert first.percentile == 50.0
    assert service.baseline(refresh=True).for_domain(first.domain) is not None


# ── computations ──

def test_submit_permissions(service, community) -> None:
    for caller, job_type, target in [
        (ANONYMOUS, "PerUser", "alice"),
        (BOB, "PerUser", "alice"),
        (ALICE, "Full", None),
        (ALICE, "PerDomain", "Trust"),
    ]:
        with pytest.raises(Forbidden):
            asyncio.run(service.submit_computation(job_type, target, caller=caller))
    assert service.manager.jobs.list_jobs() == []


def test_owner_recomputes_self(service, community) -> None:
    async def scenario():
        job = await service.submit_computation("PerUser", "alice", caller=ALICE)
        assert job.status == JobStatus.QUEUED
        assert job.requested_by == "alice"
        return await service.manager.wait(job.job_id)

    done = asyncio.run(scenario())

    assert done.status == JobStatus.COMPLETED
    assert service.get_computation_status(done.job_id).result.generated_scores == len(ReputationDomain)


def test_cancel_permissions(service, community) -> None:
    job = service.manager.submit("PerUser", "alice", requested_by="alice")

    with pytest.raises(Forbidden):
        service.cancel_computation(job.job_id, BOB)
    assert service.cancel_computation(job.job_id, ALICE).status == JobStatus.FAILED


def test_cancel_does_not_reveal_which_jobs_exist(service, community) -> None:
    real = service.manager.submit("PerUser", "alice", requested_by="alice")

    for caller in (ANONYMOUS, BOB):
        for job_id in (real.job_id, "job_doesnotexist"):
            with pytest.raises(Forbidden):
                service.cancel_computation(job_id, caller)

    with pytest.raises(JobNotFound):
        service.cancel_computation("job_doesnotexist", OPERATOR)
    assert service.manager.status(real.job_id).status == JobStatus.QUEUED


def test_stats_are_operator_only(service, community) -> None:
    with pytest.raises(Forbidden):
        service.graph_stats(ALICE)

    stats = service.graph_stats(OPERATOR)

    assert stats["nodes"]["total"] == 5
    assert stats["edges"]["total"] == 4
    assert stats["computations"] == {"byStatus": {}}
