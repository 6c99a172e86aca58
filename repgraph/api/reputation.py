"""
RepGraph — Reputation API

Thin HTTP binding over ReputationGraphService. No business rules live here;
handlers parse query strings, call the service, and render.

Public endpoints:
    GET  /v1/reputation/health
    GET  /v1/reputation/users/{user_id}/scores          - Scores (factors: owner/operator)
    GET  /v1/reputation/users/{user_id}/graph           - Bounded neighborhood
    GET  /v1/reputation/users/{user_id}/visualization   - Positioned neighborhood
    GET  /v1/reputation/users/{user_id}/comparison      - User vs population
    GET  /v1/reputation/top/{domain}                    - Leaderboard
    GET  /v1/reputation/computations/{job_id}           - Job status

Authenticated endpoints (JWT bearer):
    POST /v1/reputation/computations                    - Submit (owner or operator)
    POST /v1/reputation/computations/{job_id}/cancel    - Cancel (requester or operator)
    GET  /v1/reputation/stats                           - Graph stats (operator)

Errors render as {"error", "message", "details"}:
    validation → 422, not found → 404, forbidden → 403,
    duplicate job → 409, store unavailable → 503, anything else → 500
"""
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from repgraph.auth import Caller, get_caller
from repgraph.errors import (
    DuplicateActiveJob, Forbidden, NotFoundError, ReputationGraphError,
    StoreUnavailable, ValidationError,
)
from repgraph.service import ReputationGraphService

logger = structlog.get_logger()

router = APIRouter(prefix="/v1/reputation", tags=["reputation"])


# =============================================
# REQUEST/RESPONSE MODELS
# =============================================

class ComputationRequest(BaseModel):
    type: str
    target: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)


class ComputationAccepted(BaseModel):
    jobId: str
    status: str


class TopUserEntry(BaseModel):
    rank: int
    userId: str
    score: float
    confidence: float


class TopUsersResponse(BaseModel):
    domain: str
    users: List[TopUserEntry]


# =============================================
# ERROR MAPPING
# =============================================

def error_status(exc: ReputationGraphError) -> int:
    if isinstance(exc, ValidationError):
        return 422
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, Forbidden):
        return 403
    if isinstance(exc, DuplicateActiveJob):
        return 409
    if isinstance(exc, StoreUnavailable):
        return 503
    return 500


async def reputation_error_handler(request: Request, exc: ReputationGraphError):
    status = error_status(exc)
    log = logger.error if status >= 500 else logger.info
    log("reputation_request_failed", path=request.url.path, status=status,
        error=exc.code, message=exc.message)
    body = exc.to_dict()
    body["request_id"] = getattr(request.state, "request_id", "unknown")
    return JSONResponse(status_code=status, content=body)


# =============================================
# DEPENDENCIES
# =============================================

def get_service(request: Request) -> ReputationGraphService:
    return request.app.state.service


def _csv(value: Optional[str]) -> Optional[List[str]]:
    if value is None:
        return None
    return [v.strip() for v in value.split(",") if v.strip()]


# =============================================
# ENDPOINTS
# =============================================

@router.get("/health")
async def health():
    return {"status": "ok"}


@router.get("/users/{user_id}/scores")
async def get_user_scores(
    user_id: str,
    includeFactors: bool = Query(False),
    service: ReputationGraphService = Depends(get_service),
    caller: Caller = Depends(get_caller),
):
    scores = service.get_user_scores(user_id, caller, include_factors=includeFactors)
    return {
        "userId": user_id,
        "scores": [s.to_dict() if includeFactors else s.to_compact() for s in scores],
    }


@router.get("/users/{user_id}/graph")
async def get_user_graph(
    user_id: str,
    depth: Optional[int] = Query(None),
    maxNodes: Optional[int] = Query(None),
    nodeTypes: Optional[str] = Query(None, description="Comma-separated node types"),
    edgeTypes: Optional[str] = Query(None, description="Comma-separated edge types"),
    minStrength: Optional[float] = Query(None),
    service: ReputationGraphService = Depends(get_service),
):
    subgraph = service.get_user_graph(
        user_id,
        depth=depth,
        max_nodes=maxNodes,
        node_types=_csv(nodeTypes),
        edge_types=_csv(edgeTypes),
        min_strength=minStrength,
    )
    return subgraph.to_dict()


@router.get("/users/{user_id}/visualization")
async def get_visualization(
    user_id: str,
    layout: str = Query("force"),
    maxNodes: Optional[int] = Query(None),
    colorScheme: Optional[str] = Query(None),
    includeLabels: bool = Query(True),
    depth: Optional[int] = Query(None),
    service: ReputationGraphService = Depends(get_service),
):
    positioned, subgraph = service.get_visualization(
        user_id,
        algorithm=layout,
        max_nodes=maxNodes,
        color_scheme=colorScheme,
        include_labels=includeLabels,
        depth=depth,
    )
    return {"layout": positioned.to_dict(), "graph": subgraph.to_dict()}


@router.get("/users/{user_id}/comparison")
async def compare_to_average(
    user_id: str,
    service: ReputationGraphService = Depends(get_service),
):
    return {
        "userId": user_id,
        "comparisons": [c.to_dict() for c in service.compare_to_average(user_id)],
    }


@router.get("/top/{domain}", response_model=TopUsersResponse)
async def top_users(
    domain: str,
    limit: Optional[int] = Query(None),
    subDomain: Optional[str] = Query(None),
    service: ReputationGraphService = Depends(get_service),
):
    rows = service.top_users_by_domain(domain, limit=limit, sub_domain=subDomain)
    return TopUsersResponse(domain=domain, users=[TopUserEntry(**r) for r in rows])


@router.post("/computations", status_code=202, response_model=ComputationAccepted)
async def submit_computation(
    body: ComputationRequest,
    service: ReputationGraphService = Depends(get_service),
    caller: Caller = Depends(get_caller),
):
    job = await service.submit_computation(body.type, body.target, body.parameters, caller=caller)
    return ComputationAccepted(jobId=job.job_id, status=job.status.value)


@router.get("/computations/{job_id}")
async def get_computation_status(
    job_id: str,
    service: ReputationGraphService = Depends(get_service),
):
    return service.get_computation_status(job_id).to_dict()


@router.post("/computations/{job_id}/cancel")
async def cancel_computation(
    job_id: str,
    service: ReputationGraphService = Depends(get_service),
    caller: Caller = Depends(get_caller),
):
    return service.cancel_computation(job_id, caller).to_dict()


@router.get("/stats")
async def graph_stats(
    service: ReputationGraphService = Depends(get_service),
    caller: Caller = Depends(get_caller),
):
    return service.graph_stats(caller)
