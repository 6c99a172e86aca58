"""
RepGraph — Reputation Graph Service

The engine object handed to request handlers and job runners. Constructed
with explicit stores and configuration; there is no module-level instance,
so tests (or tenants) can run several side by side.

Operations:
    get_user_scores        → []Score
    get_user_graph         → Subgraph (bounded, filtered)
    submit_computation     → ComputationJob (Queued), owner or operator only
    get_computation_status → ComputationJob
    cancel_computation     → ComputationJob
    get_visualization      → GraphLayout + Subgraph
    compare_to_average     → per-domain user vs population
    top_users_by_domain    → ranked leaderboard
    graph_stats            → operator-only totals

Query surfaces reject out-of-range values with InvalidParameter instead of
clamping them; only absent values fall back to defaults.
"""
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog

from repgraph.auth import ANONYMOUS, Caller
from repgraph.config import (
    GRAPH_QUERY_LIMITS, TOP_USERS_LIMITS, VISUALIZATION_LIMITS, Settings,
)
from repgraph.compute.jobs import ComputationJob, JobType
from repgraph.compute.manager import ComputationJobManager
from repgraph.errors import Forbidden, InvalidParameter, JobNotFound
from repgraph.graph.model import Subgraph
from repgraph.graph.store import GraphStore, is_unit_interval
from repgraph.graph.traversal import GraphTraversal
from repgraph.scoring.engine import ReputationDomain, Score, ScoreEngine, ScoringConfig
from repgraph.scoring.store import PopulationBaseline, ScoreStore
from repgraph.visualization.layout import GraphLayout, layout

logger = structlog.get_logger()


@dataclass
class Comparison:
    domain: ReputationDomain
    user_score: float
    average_score: float
    difference: float
    percentile: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "domain": self.domain.value,
            "userScore": round(self.user_score, 2),
            "averageScore": round(self.average_score, 2),
            "difference": round(self.difference, 2),
            "percentile": self.percentile,
        }


def _bounded_int(name: str, value: Any, limits: Dict[str, Any]) -> int:
    if value is None:
        return limits["default"]
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidParameter(name, value, "must be an integer")
    if not limits["min"] <= value <= limits["max"]:
        raise InvalidParameter(name, value, f"must be within [{limits['min']}, {limits['max']}]")
    return value


class ReputationGraphService:
    def __init__(
        self,
        graph: GraphStore,
        scores: ScoreStore,
        manager: ComputationJobManager,
        traversal: Optional[GraphTraversal] = None,
        baseline_ttl_seconds: float = 300,
    ):
        self.graph = graph
        self.scores = scores
        self.manager = manager
        self.traversal = traversal or manager.traversal
        self.baseline_ttl_seconds = baseline_ttl_seconds
        self._baseline: Optional[PopulationBaseline] = None
        self._baseline_taken: float = 0.0

    # =============================================
    # SCORES
    # =============================================

    def get_user_scores(self, user_id: str, caller: Caller = ANONYMOUS, include_factors: bool = False) -> List[Score]:
        """
        All stored scores for a user. The factor breakdown is private to the
        user and operators; callers render the compact view otherwise.
        """
        if include_factors and not caller.can_act_for(user_id):
            raise Forbidden("Factor breakdowns are visible to the user and operators only")
        self.graph.find_user_node(user_id)
        return self.scores.get_user_scores(user_id)

    def top_users_by_domain(
        self, domain: Any = ReputationDomain.OVERALL, limit: Optional[int] = None, sub_domain: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        domain = ReputationDomain.parse(domain)
        limit = _bounded_int("limit", limit, TOP_USERS_LIMITS)
        rows = self.scores.top_users(domain, limit, sub_domain)
        return [
            {
                "rank": rank,
                "userId": s.user_id,
                "score": round(s.score, 2),
                "confidence": round(s.confidence, 4),
            }
            for rank, s in enumerate(rows, start=1)
        ]

    def baseline(self, refresh: bool = False) -> PopulationBaseline:
        """Population snapshot, reused until it is older than the TTL."""
        now = time.monotonic()
        if refresh or self._baseline is None or now - self._baseline_taken > self.baseline_ttl_seconds:
            self._baseline = self.scores.baseline(taken_at=datetime.now(timezone.utc).isoformat())
            self._baseline_taken = now
            logger.debug("baseline_refreshed", domains=len(self._baseline.domains))
        return self._baseline

    def compare_to_average(self, user_id: str) -> List[Comparison]:
        self.graph.find_user_node(user_id)
        baseline = self.baseline()
        comparisons = []
        for score in self.scores.get_user_scores(user_id):
            if score.sub_domain:
                continue
            domain_baseline = baseline.for_domain(score.domain)
            if domain_baseline is None:
                # Score landed after the snapshot; compare against itself
                average, percentile = score.score, 50.0
            else:
                average, percentile = domain_baseline.average, domain_baseline.percentile(score.score)
            comparisons.append(Comparison(
                domain=score.domain,
                user_score=score.score,
                average_score=average,
                difference=score.score - average,
                percentile=percentile,
            ))
        return comparisons

    # =============================================
    # GRAPH QUERIES
    # =============================================

    def get_user_graph(
        self,
        user_id: str,
        depth: Optional[int] = None,
        max_nodes: Optional[int] = None,
        node_types: Optional[Iterable[Any]] = None,
        edge_types: Optional[Iterable[Any]] = None,
        min_strength: Optional[float] = None,
    ) -> Subgraph:
        depth = _bounded_int("depth", depth, GRAPH_QUERY_LIMITS["depth"])
        max_nodes = _bounded_int("maxNodes", max_nodes, GRAPH_QUERY_LIMITS["max_nodes"])
        min_strength = self._min_strength(min_strength)
        user = self.graph.find_user_node(user_id)
        return self.traversal.expand(user, depth, max_nodes, node_types, edge_types, min_strength)

    def get_visualization(
        self,
        user_id: str,
        algorithm: str = "force",
        max_nodes: Optional[int] = None,
        color_scheme: Optional[str] = None,
        include_labels: bool = True,
        depth: Optional[int] = None,
        min_strength: Optional[float] = None,
    ) -> Tuple[GraphLayout, Subgraph]:
        max_nodes = _bounded_int("maxNodes", max_nodes, VISUALIZATION_LIMITS["max_nodes"])
        subgraph = self.get_user_graph(user_id, depth=depth, max_nodes=max_nodes, min_strength=min_strength)
        positioned = layout(subgraph, algorithm, color_scheme or "default", include_labels)
        return positioned, subgraph

    @staticmethod
    def _min_strength(value: Optional[float]) -> float:
        if value is None:
            return GRAPH_QUERY_LIMITS["min_strength"]["default"]
        if not is_unit_interval(value):
            raise InvalidParameter("minStrength", value, "must be within [0, 1]")
        return float(value)

    def graph_stats(self, caller: Caller = ANONYMOUS) -> Dict[str, Any]:
        if not caller.is_operator:
            raise Forbidden()
        stats = self.graph.stats()
        stats["scores"] = self.scores.stats()
        stats["computations"] = {"byStatus": self.manager.jobs.count_by_status()}
        return stats

    # =============================================
    # COMPUTATIONS
    # =============================================

    def _authorize_computation(self, caller: Caller, job_type: JobType, target: Optional[str]) -> None:
        if caller.is_anonymous:
            raise Forbidden()
        if caller.is_operator:
            return
        # Non-operators may only recompute themselves
        if job_type != JobType.PER_USER or not caller.owns(target):
            raise Forbidden()

    async def submit_computation(
        self,
        job_type: Any,
        target: Optional[str] = None,
        parameters: Optional[Dict[str, Any]] = None,
        caller: Caller = ANONYMOUS,
    ) -> ComputationJob:
        parsed = JobType.parse(job_type)
        self._authorize_computation(caller, parsed, target)
        job = self.manager.submit(parsed, target, parameters, requested_by=caller.user_id)
        await self.manager.dispatch(job)
        return job

    def get_computation_status(self, job_id: str) -> ComputationJob:
        return self.manager.status(job_id)

    def cancel_computation(self, job_id: str, caller: Caller = ANONYMOUS) -> ComputationJob:
        """Requester or operator. Non-operators cannot tell a foreign job from a missing one."""
        if caller.is_anonymous:
            raise Forbidden()
        try:
            job = self.manager.status(job_id)
        except JobNotFound:
            if caller.is_operator:
                raise
            raise Forbidden()
        if not (caller.is_operator or caller.owns(job.requested_by)):
            raise Forbidden()
        return self.manager.cancel(job_id)


# =============================================
# WIRING
# =============================================

def build_service(settings: Settings) -> ReputationGraphService:
    """Assemble the service for the configured backends."""
    engine = ScoreEngine(ScoringConfig.from_settings(settings))

    if settings.GRAPH_BACKEND == "neo4j":
        from repgraph.compute.persistence import Neo4jJobStore, Neo4jScoreStore
        from repgraph.graph.neo4j_store import Neo4jGraphStore
        graph, scores, jobs = Neo4jGraphStore(), Neo4jScoreStore(), Neo4jJobStore()
    elif settings.GRAPH_BACKEND == "memory":
        from repgraph.compute.jobs import InMemoryJobStore
        from repgraph.graph.store import InMemoryGraphStore
        from repgraph.scoring.store import InMemoryScoreStore
        graph, scores, jobs = InMemoryGraphStore(), InMemoryScoreStore(), InMemoryJobStore()
    else:
        raise RuntimeError(f"Unknown GRAPH_BACKEND {settings.GRAPH_BACKEND!r} (memory | neo4j)")

    if settings.COMPUTE_QUEUE_MODE == "arq":
        if settings.GRAPH_BACKEND != "neo4j":
            raise RuntimeError("COMPUTE_QUEUE_MODE=arq needs GRAPH_BACKEND=neo4j so workers share job state")
        from repgraph.compute.claims import RedisJobClaims
        from repgraph.workers.computation_runner import queue_computation
        claims = RedisJobClaims(settings.REDIS_URL, settings.COMPUTE_CLAIM_TTL_SECONDS)
        dispatcher = queue_computation
    elif settings.COMPUTE_QUEUE_MODE == "inline":
        from repgraph.compute.claims import InMemoryJobClaims
        claims, dispatcher = InMemoryJobClaims(), None
    else:
        raise RuntimeError(f"Unknown COMPUTE_QUEUE_MODE {settings.COMPUTE_QUEUE_MODE!r} (inline | arq)")

    manager = ComputationJobManager(
        graph=graph,
        scores=scores,
        engine=engine,
        jobs=jobs,
        claims=claims,
        max_workers=settings.COMPUTE_MAX_WORKERS,
        traversal_depth=settings.COMPUTE_TRAVERSAL_DEPTH,
        traversal_max_nodes=settings.COMPUTE_TRAVERSAL_MAX_NODES,
        dispatcher=dispatcher,
    )
    logger.info("reputation_service_built", graph_backend=settings.GRAPH_BACKEND,
                queue_mode=settings.COMPUTE_QUEUE_MODE, max_workers=settings.COMPUTE_MAX_WORKERS)
    return ReputationGraphService(graph, scores, manager,
                                  baseline_ttl_seconds=settings.BASELINE_TTL_SECONDS)
