"""
RepGraph — Computation Job Manager

Owns the ComputationJob state machine and runs (re)computations without
blocking request paths.

    submit()  → claims (type, target) atomically, stores the job as Queued
    run()     → Queued → Running → Completed | Failed
    dispatch()→ hands the job to the configured runner (inline task or arq)
    cancel()  → cooperative: checked between units, in-flight units finish

Cancellation requests and the single-active-job claim both live in the
claims backend, so an API process and an arq worker see the same state. A
running job refreshes its claim before every unit; submit() also checks the
job store for an active job with the same key, so a claim that lapsed while
its job sat in the queue cannot admit a duplicate.

A run is a set of independent units (one per User node). Each unit pulls a
bounded subgraph via GraphTraversal, scores every requested domain with the
ScoreEngine, and only then writes its Score rows. Units run concurrently up
to `max_workers`.

Failure policy:
    one unit fails            → counted in result.performance, run continues
    more than half fail       → Failed
    store unavailable/planning→ Failed (fatal, not per-unit)
There is no automatic retry. Retrying means submitting a new job; Score
upserts are keyed by (user, domain, subDomain) so re-runs overwrite safely.
"""
import asyncio
import threading
import time
import traceback
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import structlog

from repgraph.errors import (
    DuplicateActiveJob, InvalidJobTransition, InvalidParameter, JobNotFound,
    ReputationGraphError, StoreUnavailable,
)
from repgraph.graph.model import Node, NodeType
from repgraph.graph.store import GraphStore, is_unit_interval
from repgraph.graph.traversal import MAX_DEPTH, MAX_NODES_CAP, MIN_DEPTH, GraphTraversal
from repgraph.compute.claims import InMemoryJobClaims
from repgraph.compute.jobs import (
    ComputationJob, InMemoryJobStore, JobError, JobResult, JobStatus, JobStore, JobType,
)
from repgraph.scoring.engine import ReputationDomain, ScoreEngine
from repgraph.scoring.store import ScoreStore

logger = structlog.get_logger()

Dispatcher = Callable[[ComputationJob], Awaitable[None]]


@dataclass
class UnitOutcome:
    user_id: str
    node_ids: Set[str] = field(default_factory=set)
    edge_ids: Set[str] = field(default_factory=set)
    scores: int = 0
    duration_ms: float = 0.0


@dataclass
class RunPlan:
    users: List[Node]
    domains: List[ReputationDomain]
    sub_domain: Optional[str]
    depth: int
    max_nodes: int
    min_strength: float


class ComputationJobManager:
    def __init__(
        self,
        graph: GraphStore,
        scores: ScoreStore,
        engine: ScoreEngine,
        traversal: Optional[GraphTraversal] = None,
        jobs: Optional[JobStore] = None,
        claims=None,
        max_workers: int = 4,
        traversal_depth: int = 1,
        traversal_max_nodes: int = MAX_NODES_CAP,
        dispatcher: Optional[Dispatcher] = None,
    ):
        if max_workers < 1:
            raise InvalidParameter("max_workers", max_workers, "must be >= 1")
        self.graph = graph
        self.scores = scores
        self.engine = engine
        self.traversal = traversal or GraphTraversal(graph)
        self.jobs = jobs or InMemoryJobStore()
        self.claims = claims or InMemoryJobClaims()
        self.max_workers = max_workers
        self.traversal_depth = traversal_depth
        self.traversal_max_nodes = traversal_max_nodes
        self._dispatcher = dispatcher
        self._tasks: Dict[str, asyncio.Task] = {}
        self._state_lock = threading.Lock()

    # =============================================
    # SUBMISSION
    # =============================================

    def submit(
        self,
        job_type: Any,
        target: Optional[str] = None,
        parameters: Optional[Dict[str, Any]] = None,
        requested_by: Optional[str] = None,
    ) -> ComputationJob:
        """Create a Queued job. Raises DuplicateActiveJob if (type, target) is already in flight."""
        job = ComputationJob.new(job_type, target, parameters, requested_by=requested_by)
        self._validate_parameters(job)

        holder = self.claims.claim(job.claim_key, job.job_id)
        if holder is not None and self._is_stale_claim(holder):
            self.claims.release(job.claim_key, holder)
            holder = self.claims.claim(job.claim_key, job.job_id)
        if holder is None:
            holder = self._active_job_for(job)
            if holder is not None:
                # The claim lapsed but its job is still queued or running
                self.claims.release(job.claim_key, job.job_id)
        if holder is not None:
            logger.info("computation_job_rejected_duplicate",
                        type=job.type.value, target=job.target, active_job_id=holder)
            raise DuplicateActiveJob(job.type.value, job.target, holder)

        self.jobs.save(job)
        logger.info("computation_job_queued", job_id=job.job_id, type=job.type.value,
                    target=job.target, requested_by=requested_by)
        return self.jobs.get(job.job_id)

    def _is_stale_claim(self, holder: str) -> bool:
        """A claim whose job already reached a terminal state (crashed runner)."""
        try:
            return self.jobs.get(holder).status.is_terminal
        except JobNotFound:
            return False

    def _active_job_for(self, job: ComputationJob) -> Optional[str]:
        for status in (JobStatus.QUEUED, JobStatus.RUNNING):
            for other in self.jobs.list_jobs(status):
                if other.claim_key == job.claim_key and other.job_id != job.job_id:
                    return other.job_id
        return None

    @staticmethod
    def _validate_parameters(job: ComputationJob) -> None:
        params = job.parameters
        domains = params.get("domains")
        if domains is not None:
            if job.type == JobType.PER_DOMAIN:
                raise InvalidParameter("domains", domains, "PerDomain jobs take their domain from target")
            if not isinstance(domains, (list, tuple)) or not domains:
                raise InvalidParameter("domains", domains, "must be a non-empty list")
            for d in domains:
                ReputationDomain.parse(d)
        depth = params.get("depth")
        if depth is not None and (isinstance(depth, bool) or not isinstance(depth, int)
                                  or not MIN_DEPTH <= depth <= MAX_DEPTH):
            raise InvalidParameter("depth", depth, f"must be within [{MIN_DEPTH}, {MAX_DEPTH}]")
        max_nodes = params.get("maxNodes")
        if max_nodes is not None and (isinstance(max_nodes, bool) or not isinstance(max_nodes, int)
                                      or not 1 <= max_nodes <= MAX_NODES_CAP):
            raise InvalidParameter("maxNodes", max_nodes, f"must be within [1, {MAX_NODES_CAP}]")
        min_strength = params.get("minStrength")
        if min_strength is not None and not is_unit_interval(min_strength):
            raise InvalidParameter("minStrength", min_strength, "must be within [0, 1]")
        sub_domain = params.get("subDomain")
        if sub_domain is not None and (not isinstance(sub_domain, str) or not sub_domain.strip()):
            raise InvalidParameter("subDomain", sub_domain, "must be a non-empty string")

    # =============================================
    # STATUS / CANCEL / DISPATCH
    # =============================================

    def status(self, job_id: str) -> ComputationJob:
        return self.jobs.get(job_id)

    def cancel(self, job_id: str) -> ComputationJob:
        """Request cancellation. Queued jobs fail immediately; running jobs stop between units."""
        job = self.jobs.get(job_id)
        if job.status.is_terminal:
            return job
        self.claims.request_cancel(job_id)
        with self._state_lock:
            job = self.jobs.get(job_id)
            if job.status == JobStatus.QUEUED:
                job.mark_failed(JobError(
                    message="Computation cancelled before it started",
                    details={"cancelled": True},
                ))
                self.jobs.save(job)
                self.claims.release(job.claim_key, job.job_id)
                if self._dispatcher is None:
                    self.claims.clear_cancel(job_id)
                # Otherwise the request stays up for a worker that already
                # picked the job up; it expires with the claim TTL
                logger.info("computation_job_cancelled", job_id=job_id, while_status="Queued")
            else:
                logger.info("computation_job_cancel_requested", job_id=job_id, while_status=job.status.value)
        return self.jobs.get(job_id)

    def is_cancelled(self, job_id: str) -> bool:
        return self.claims.is_cancel_requested(job_id)

    async def dispatch(self, job: ComputationJob) -> None:
        """Hand the job to the runner: arq when configured, else an in-process task."""
        if self._dispatcher is not None:
            try:
                await self._dispatcher(job)
            except Exception as e:
                # Never leave a Queued job holding its claim with no runner
                with self._state_lock:
                    current = self.jobs.get(job.job_id)
                    if current.status == JobStatus.QUEUED:
                        current.mark_failed(JobError(
                            message="Could not hand the computation to a worker",
                            details={"cause": type(e).__name__, "error": str(e)},
                        ))
                        self.jobs.save(current)
                self.claims.release(job.claim_key, job.job_id)
                logger.error("computation_dispatch_failed", job_id=job.job_id, error=str(e))
                raise StoreUnavailable("Computation queue unavailable", {"job_id": job.job_id, "cause": str(e)}) from e
            return
        self._tasks[job.job_id] = asyncio.get_running_loop().create_task(self.run(job.job_id))

    async def wait(self, job_id: str) -> ComputationJob:
        """Completion signal for inline-dispatched jobs."""
        task = self._tasks.get(job_id)
        if task is not None:
            await task
        return self.jobs.get(job_id)

    # =============================================
    # EXECUTION
    # =============================================

    async def run(self, job_id: str) -> ComputationJob:
        with self._state_lock:
            job = self.jobs.get(job_id)
            if job.status.is_terminal:
                logger.info("computation_job_already_finished", job_id=job_id, status=job.status.value)
                self.claims.clear_cancel(job_id)
                self._tasks.pop(job_id, None)
                return job
            if job.status != JobStatus.QUEUED:
                raise InvalidJobTransition(
                    f"Job {job_id} is already {job.status.value}",
                    {"job_id": job_id, "status": job.status.value},
                )
            job.mark_running()
            self.jobs.save(job)

        logger.info("computation_job_started", job_id=job_id, type=job.type.value, target=job.target)
        await asyncio.to_thread(self._refresh_claim, job)
        started = time.perf_counter()
        result = JobResult()

        try:
            try:
                plan = await asyncio.to_thread(self._plan, job)
            except Exception as e:
                self._finish_failed(job, result, started, "Could not plan computation", e)
                return self.jobs.get(job_id)

            outcomes, unit_errors, fatal, skipped = await self._run_units(job, plan)

            node_ids: Set[str] = set()
            edge_ids: Set[str] = set()
            for outcome in outcomes:
                node_ids |= outcome.node_ids
                edge_ids |= outcome.edge_ids
                result.generated_scores += outcome.scores
            result.processed_nodes = len(node_ids)
            result.processed_edges = len(edge_ids)
            result.unit_errors = unit_errors

            total = len(plan.users)
            elapsed_ms = (time.perf_counter() - started) * 1000
            result.performance = {
                "durationMs": round(elapsed_ms, 2),
                "units": float(total),
                "succeededUnits": float(len(outcomes)),
                "failedUnits": float(len(unit_errors)),
                "skippedUnits": float(skipped),
                "avgUnitMs": round(sum(o.duration_ms for o in outcomes) / len(outcomes), 2) if outcomes else 0.0,
                "scoresPerSecond": round(result.generated_scores / (elapsed_ms / 1000), 2) if elapsed_ms > 0 else 0.0,
            }

            if fatal is not None:
                self._finish_failed(job, result, started, "Graph store unavailable during computation", fatal)
            elif skipped and self.is_cancelled(job_id):
                self._fail(job, result, JobError(
                    message="Computation cancelled",
                    details={"cancelled": True, "completedUnits": len(outcomes), "skippedUnits": skipped},
                ))
            elif total and len(unit_errors) * 2 > total:
                self._fail(job, result, JobError(
                    message=f"{len(unit_errors)} of {total} units failed",
                    details={"failedUnits": len(unit_errors), "units": total, "errors": unit_errors[:10]},
                ))
            else:
                with self._state_lock:
                    job.mark_completed(result)
                    self.jobs.save(job)
                if unit_errors:
                    logger.warning("computation_job_partial", job_id=job_id,
                                   failed_units=len(unit_errors), units=total)
                logger.info("computation_job_completed", job_id=job_id,
                            generated_scores=result.generated_scores,
                            processed_nodes=result.processed_nodes,
                            duration_ms=result.performance["durationMs"])
        except Exception as e:
            self._finish_failed(job, result, started, "Computation aborted", e)
        finally:
            self.claims.release(job.claim_key, job.job_id)
            self.claims.clear_cancel(job_id)
            self._tasks.pop(job_id, None)

        return self.jobs.get(job_id)

    async def _run_units(self, job: ComputationJob, plan: RunPlan):
        semaphore = asyncio.Semaphore(self.max_workers)
        fatal: List[BaseException] = []
        skipped = 0

        async def run_single(user: Node) -> Optional[UnitOutcome]:
            nonlocal skipped
            async with semaphore:
                if fatal or await asyncio.to_thread(self._between_units, job):
                    skipped += 1
                    return None
                try:
                    return await asyncio.to_thread(self._compute_unit, user, plan)
                except StoreUnavailable as e:
                    # Stop handing out further units
                    fatal.append(e)
                    raise

        results = await asyncio.gather(*[run_single(u) for u in plan.users], return_exceptions=True)

        outcomes: List[UnitOutcome] = []
        unit_errors: List[Dict[str, Any]] = []
        for user, res in zip(plan.users, results):
            if res is None:
                continue
            if isinstance(res, StoreUnavailable):
                continue
            if isinstance(res, BaseException):
                unit_errors.append(self._unit_error(job, user, res))
                continue
            outcomes.append(res)
        return outcomes, unit_errors, (fatal[0] if fatal else None), skipped

    def _refresh_claim(self, job: ComputationJob) -> None:
        if not self.claims.refresh(job.claim_key, job.job_id):
            logger.warning("job_claim_lost", job_id=job.job_id, claim_key=job.claim_key,
                           holder=self.claims.holder(job.claim_key))

    def _between_units(self, job: ComputationJob) -> bool:
        """Heartbeat the claim, then report whether the job was cancelled."""
        if self.is_cancelled(job.job_id):
            return True
        self._refresh_claim(job)
        return False

    def _plan(self, job: ComputationJob) -> RunPlan:
        params = job.parameters
        if job.type == JobType.PER_USER:
            users = [self.graph.find_user_node(job.target)]
        else:
            users = self.graph.list_nodes(NodeType.USER)

        if job.type == JobType.PER_DOMAIN:
            domains = [ReputationDomain.parse(job.target)]
        elif params.get("domains"):
            domains = [ReputationDomain.parse(d) for d in params["domains"]]
        else:
            domains = list(ReputationDomain)

        return RunPlan(
            users=users,
            domains=domains,
            sub_domain=params.get("subDomain"),
            depth=params.get("depth", self.traversal_depth),
            max_nodes=params.get("maxNodes", self.traversal_max_nodes),
            min_strength=params.get("minStrength", 0.0),
        )

    def _compute_unit(self, user: Node, plan: RunPlan) -> UnitOutcome:
        started = time.perf_counter()
        subgraph = self.traversal.expand(
            user, plan.depth, plan.max_nodes, min_strength=plan.min_strength,
        )
        root = subgraph.root
        # All domains are computed before anything is written for this unit
        computed = [
            self.engine.compute_score(root, domain, plan.sub_domain, subgraph)
            for domain in plan.domains
        ]
        for score in computed:
            self.scores.upsert(score)
        return UnitOutcome(
            user_id=user.entity_ref.entity_id,
            node_ids={n.id for n in subgraph.nodes},
            edge_ids={e.id for e in subgraph.edges},
            scores=len(computed),
            duration_ms=(time.perf_counter() - started) * 1000,
        )

    # ── failure bookkeeping ──

    @staticmethod
    def _unit_error(job: ComputationJob, user: Node, exc: BaseException) -> Dict[str, Any]:
        entry = {
            "userId": user.entity_ref.entity_id,
            "nodeId": user.id,
            "error": type(exc).__name__,
            "message": str(exc),
        }
        if isinstance(exc, ReputationGraphError):
            entry["details"] = exc.details
        logger.error("computation_unit_failed", job_id=job.job_id, user_id=entry["userId"],
                     node_id=user.id, error_type=entry["error"], error=entry["message"])
        return entry

    def _fail(self, job: ComputationJob, result: JobResult, error: JobError) -> None:
        with self._state_lock:
            job.mark_failed(error, result)
            self.jobs.save(job)
        logger.error("computation_job_failed", job_id=job.job_id, message=error.message,
                     details=error.details)

    def _finish_failed(self, job: ComputationJob, result: JobResult, started: float,
                       message: str, exc: BaseException) -> None:
        result.performance.setdefault("durationMs", round((time.perf_counter() - started) * 1000, 2))
        details: Dict[str, Any] = {"cause": type(exc).__name__, "error": str(exc)}
        if isinstance(exc, ReputationGraphError):
            details.update(exc.details)
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        self._fail(job, result, JobError(message=message, stack=stack, details=details))
