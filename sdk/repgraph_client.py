"""
RepGraph — Python Client

Thin client for the reputation API, for downstream readers of committed
scores (dashboards, the insight generator, trust gates).

Usage:
    from sdk.repgraph_client import ReputationClient

    with ReputationClient(token="eyJ...") as rep:
        for score in rep.scores("user-42"):
            print(score.domain, score.score)

        job = rep.submit("PerUser", target="user-42")
        status = rep.computation(job)
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

__version__ = "1.0.0"
CLIENT_USER_AGENT = f"repgraph-python/{__version__}"


# =============================================
# RESULT TYPES
# =============================================

@dataclass
class ScoreView:
    user: str
    domain: str
    score: float                # 0-100
    confidence: float           # 0-1
    sub_domain: Optional[str] = None
    calculated_at: Optional[str] = None
    factors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_neutral(self) -> bool:
        """No evidence yet: the neutral prior."""
        return self.score == 50.0 and self.confidence == 0.5 and not self.factors

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "ScoreView":
        return ScoreView(
            user=data["user"],
            domain=data["domain"],
            score=data["score"],
            confidence=data["confidence"],
            sub_domain=data.get("subDomain"),
            calculated_at=data.get("calculatedAt"),
            factors=data.get("factors", []),
        )


@dataclass
class ComputationStatus:
    job_id: str
    status: str
    type: str
    target: Optional[str] = None
    result: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None

    @property
    def is_finished(self) -> bool:
        return self.status in ("Completed", "Failed")

    @property
    def was_cancelled(self) -> bool:
        return bool(self.error and self.error.get("details", {}).get("cancelled"))


# =============================================
# EXCEPTIONS
# =============================================

class ReputationAPIError(Exception):
    def __init__(self, message: str, status_code: int = 0, detail: dict = None):
        self.status_code = status_code
        self.detail = detail or {}
        super().__init__(message)


class NotFound(ReputationAPIError):
    pass


class NotAllowed(ReputationAPIError):
    pass


class ComputationInFlight(ReputationAPIError):
    @property
    def active_job_id(self) -> Optional[str]:
        return self.detail.get("details", {}).get("active_job_id")


# =============================================
# CLIENT
# =============================================

class ReputationClient:
    """
    Args:
        token: JWT bearer token; anonymous when omitted
        base_url: API base URL
        timeout: Request timeout in seconds
        transport: optional httpx transport (tests)
    """

    def __init__(
        self,
        token: Optional[str] = None,
        base_url: str = "http://localhost:8000",
        timeout: float = 15.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        headers = {"User-Agent": CLIENT_USER_AGENT}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            base_url=base_url.rstrip("/") + "/v1/reputation",
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def scores(self, user_id: str, include_factors: bool = False) -> List[ScoreView]:
        response = self._client.get(
            f"/users/{user_id}/scores",
            params={"includeFactors": str(include_factors).lower()},
        )
        data = self._json(response)
        return [ScoreView.from_dict(s) for s in data["scores"]]

    def compare(self, user_id: str) -> List[Dict[str, Any]]:
        return self._json(self._client.get(f"/users/{user_id}/comparison"))["comparisons"]

    def top(self, domain: str = "Overall", limit: int = 10) -> List[Dict[str, Any]]:
        return self._json(self._client.get(f"/top/{domain}", params={"limit": limit}))["users"]

    def submit(self, job_type: str, target: Optional[str] = None,
               parameters: Optional[Dict[str, Any]] = None) -> str:
        """Submit a computation. Returns the job id."""
        response = self._client.post(
            "/computations",
            json={"type": job_type, "target": target, "parameters": parameters or {}},
        )
        return self._json(response)["jobId"]

    def computation(self, job_id: str) -> ComputationStatus:
        return self._status(self._json(self._client.get(f"/computations/{job_id}")))

    def cancel(self, job_id: str) -> ComputationStatus:
        """Request cancellation (requester or operator)."""
        return self._status(self._json(self._client.post(f"/computations/{job_id}/cancel")))

    @staticmethod
    def _status(data: Dict[str, Any]) -> ComputationStatus:
        return ComputationStatus(
            job_id=data["jobId"],
            status=data["status"],
            type=data["type"],
            target=data.get("target"),
            result=data.get("result") or {},
            error=data.get("error"),
        )

    def _json(self, response: httpx.Response) -> Dict[str, Any]:
        if response.status_code in (200, 202):
            return response.json()
        detail = {}
        if response.headers.get("content-type", "").startswith("application/json"):
            detail = response.json()
        message = detail.get("message") or f"API error: {response.status_code}"
        if response.status_code == 404:
            raise NotFound(message, status_code=404, detail=detail)
        if response.status_code == 403:
            raise NotAllowed(message, status_code=403, detail=detail)
        if response.status_code == 409:
            raise ComputationInFlight(message, status_code=409, detail=detail)
        raise ReputationAPIError(message, status_code=response.status_code, detail=detail)

    def close(self):
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
