import json

import httpx
import pytest

from sdk.repgraph_client import (
    ComputationInFlight, NotAllowed, NotFound, ReputationAPIError, ReputationClient,
)


def _client(handler, token=None) -> ReputationClient:
    return ReputationClient(token=token, base_url="http://rep.test/", transport=httpx.MockTransport(handler))


def test_scores_and_headers() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={"userId": "alice", "scores": [
            {"user": "alice", "domain": "Overall", "score": 50.0, "confidence": 0.5,
             "subDomain": None, "calculatedAt": "2026-03-01T12:00:00+00:00"},
            {"user": "alice", "domain": "Trust", "score": 61.2, "confidence": 0.71,
             "factors": [{"name": "Rating", "contribution": 1.2, "weight": 1.0}]},
        ]})

    with _client(handler, token="tok") as rep:
        overall, trust = rep.scores("alice", include_factors=True)

    assert seen["url"] == "http://rep.test/v1/reputation/users/alice/scores?includeFactors=true"
    assert seen["auth"] == "Bearer tok"
    assert overall.is_neutral
    assert not trust.is_neutral
    assert trust.factors[0]["name"] == "Rating"


def test_submit_and_poll() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST" and request.url.path.endswith("/computations"):
            body = json.loads(request.content)
            assert body == {"type": "PerUser", "target": "alice", "parameters": {"depth": 2}}
            return httpx.Response(202, json={"jobId": "job_1", "status": "Queued"})
        if request.url.path.endswith("/cancel"):
            return httpx.Response(200, json={
                "jobId": "job_1", "type": "PerUser", "status": "Failed",
                "error": {"message": "cancelled", "details": {"cancelled": True}},
            })
        return httpx.Response(200, json={"jobId": "job_1", "type": "PerUser", "status": "Running",
                                         "target": "alice", "result": None})

    rep = _client(handler)
    job_id = rep.submit("PerUser", target="alice", parameters={"depth": 2})
    running = rep.computation(job_id)
    cancelled = rep.cancel(job_id)
    rep.close()

    assert job_id == "job_1"
    assert not running.is_finished and running.result == {}
    assert cancelled.is_finished and cancelled.was_cancelled


@pytest.mark.parametrize("status, error", [
    (404, NotFound),
    (403, NotAllowed),
    (409, ComputationInFlight),
    (503, ReputationAPIError),
])
def test_error_mapping(status, error) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json={
            "error": "x", "message": "nope", "details": {"active_job_id": "job_9"},
        })

    with pytest.raises(error) as exc:
        _client(handler).top("Trust")

    assert exc.value.status_code == status
    assert str(exc.value) == "nope"
    if error is ComputationInFlight:
        assert exc.value.active_job_id == "job_9"


def test_non_json_error_body() -> None:
    with pytest.raises(ReputationAPIError) as exc:
        _client(lambda request: httpx.Response(502, text="bad gateway")).compare("alice")

    assert str(exc.value) == "API error: 502"
