import asyncio

import pytest
from fastapi.testclient import TestClient

from repgraph.api.reputation import get_service
from repgraph.auth import create_access_token
from repgraph.compute.manager import ComputationJobManager
from repgraph.main import app
from repgraph.service import ReputationGraphService

BASE = "/v1/reputation"


async def _hold_in_queue(job) -> None:
    """Dispatcher that accepts the job and never runs it."""


def _auth(user_id: str, operator: bool = False) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id, operator=operator)}"}


@pytest.fixture
def api_service(store, scores, engine, community) -> ReputationGraphService:
    manager = ComputationJobManager(store, scores, engine, dispatcher=_hold_in_queue)
    return ReputationGraphService(store, scores, manager)


@pytest.fixture
def client(api_service):
    app.dependency_overrides[get_service] = lambda: api_service
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client) -> None:
    response = client.get(f"{BASE}/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert "X-Request-Id" in response.headers


def test_user_graph(client, community) -> None:
    response = client.get(f"{BASE}/users/alice/graph", params={"edgeTypes": "Follow,Participation"})

    assert response.status_code == 200
    body = response.json()
    assert body["root"] == community["alice"].id
    assert len(body["nodes"]) == 4


def test_validation_errors_are_422(client) -> None:
    response = client.get(f"{BASE}/users/alice/graph", params={"depth": 7})

    assert response.status_code == 422
    assert response.json()["error"] == "invalid_parameter"
    assert client.get(f"{BASE}/users/alice/graph", params={"maxNodes": 5}).status_code == 422
    assert client.get(f"{BASE}/users/alice/graph", params={"nodeTypes": "Planet"}).status_code == 422
    assert client.get(f"{BASE}/top/Karma").status_code == 422


def test_unknown_user_is_404(client) -> None:
    response = client.get(f"{BASE}/users/nobody/graph")

    assert response.status_code == 404
    assert response.json()["error"] == "node_not_found"
    assert "request_id" in response.json()


def test_visualization(client) -> None:
    response = client.get(f"{BASE}/users/alice/visualization", params={"layout": "circular"})

    assert response.status_code == 200
    body = response.json()
    assert body["layout"]["algorithm"] == "circular"
    assert len(body["layout"]["positions"]) == len(body["graph"]["nodes"])


def test_submit_requires_owner_or_operator(client) -> None:
    body = {"type": "PerUser", "target": "alice"}

    assert client.post(f"{BASE}/computations", json=body).status_code == 403
    assert client.post(f"{BASE}/computations", json=body, headers=_auth("bob")).status_code == 403
    assert client.post(f"{BASE}/computations", json={"type": "Full"}, headers=_auth("alice")).status_code == 403


def test_submit_status_and_duplicate(client) -> None:
    body = {"type": "PerUser", "target": "alice"}

    accepted = client.post(f"{BASE}/computations", json=body, headers=_auth("alice"))
    assert accepted.status_code == 202
    job_id = accepted.json()["jobId"]
    assert accepted.json()["status"] == "Queued"

    duplicate = client.post(f"{BASE}/computations", json=body, headers=_auth("ops", operator=True))
    assert duplicate.status_code == 409
    assert duplicate.json()["details"]["active_job_id"] == job_id

    status = client.get(f"{BASE}/computations/{job_id}")
    assert status.status_code == 200
    assert status.json()["type"] == "PerUser"
    assert status.json()["requestedBy"] == "alice"


def test_cancel_and_unknown_job(client) -> None:
    job_id = client.post(
        f"{BASE}/computations", json={"type": "Full"}, headers=_auth("ops", operator=True),
    ).json()["jobId"]

    assert client.post(f"{BASE}/computations/{job_id}/cancel", headers=_auth("bob")).status_code == 403
    cancelled = client.post(f"{BASE}/computations/{job_id}/cancel", headers=_auth("ops", operator=True))
    assert cancelled.json()["status"] == "Failed"
    assert cancelled.json()["error"]["details"]["cancelled"] is True
    assert client.get(f"{BASE}/computations/job_missing").status_code == 404
    assert client.post(f"{BASE}/computations/job_missing/cancel").status_code == 403
    assert client.post(f"{BASE}/computations/job_missing/cancel", headers=_auth("bob")).status_code == 403


def test_scores_hide_factors_from_strangers(client, api_service) -> None:
    job = api_service.manager.submit("PerUser", "alice")
    asyncio.run(api_service.manager.run(job.job_id))

    public = client.get(f"{BASE}/users/alice/scores")
    assert public.status_code == 200
    assert "factors" not in public.json()["scores"][0]

    assert client.get(f"{BASE}/users/alice/scores", params={"includeFactors": "true"}).status_code == 403
    own = client.get(f"{BASE}/users/alice/scores", params={"includeFactors": "true"}, headers=_auth("alice"))
    assert own.status_code == 200
    assert "factors" in own.json()["scores"][0]


def test_stats_operator_only(client) -> None:
    assert client.get(f"{BASE}/stats", headers=_auth("alice")).status_code == 403

    response = client.get(f"{BASE}/stats", headers=_auth("ops", operator=True))

    assert response.status_code == 200
    assert response.json()["nodes"]["total"] == 5
