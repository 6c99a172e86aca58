"""
RepGraph — Computation Job Model

A ComputationJob (re)computes one or more Scores from the graph.

Types:
    Full       → every User node, every requested domain
    PerUser    → one user (target = user id), every requested domain
    PerDomain  → every User node, one domain (target = domain name)

Status lifecycle:
    Queued -> Running -> Completed
                      -> Failed
    Queued -> Failed               (cancelled before pickup)
    Completed / Failed are terminal. A retry is a new job.
"""
import copy
import json
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from repgraph.errors import InvalidJobTransition, InvalidParameter, JobNotFound
from repgraph.scoring.engine import ReputationDomain


class JobType(str, Enum):
    FULL = "Full"
    PER_USER = "PerUser"
    PER_DOMAIN = "PerDomain"

    @classmethod
    def parse(cls, value: Any) -> "JobType":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise InvalidParameter("type", value, f"must be one of {[t.value for t in cls]}")


class JobStatus(str, Enum):
    QUEUED = "Queued"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)

    @property
    def is_active(self) -> bool:
        return self in (JobStatus.QUEUED, JobStatus.RUNNING)


_ALLOWED = {
    JobStatus.QUEUED: {JobStatus.RUNNING, JobStatus.FAILED},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_target(job_type: JobType, target: Optional[str]) -> Optional[str]:
    """Validate the (type, target) pair and return the canonical target."""
    if job_type == JobType.FULL:
        if target not in (None, ""):
            raise InvalidParameter("target", target, "Full computations take no target")
        return None
    if target is None or not str(target).strip():
        raise InvalidParameter("target", target, f"{job_type.value} computations require a target")
    if job_type == JobType.PER_DOMAIN:
        return ReputationDomain.parse(target).value
    return str(target).strip()


@dataclass
class JobResult:
    processed_nodes: int = 0
    processed_edges: int = 0
    generated_scores: int = 0
    performance: Dict[str, float] = field(default_factory=dict)
    unit_errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processedNodes": self.processed_nodes,
            "processedEdges": self.processed_edges,
            "generatedScores": self.generated_scores,
            "performance": dict(self.performance),
            "unitErrors": list(self.unit_errors),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "JobResult":
        return JobResult(
            processed_nodes=data.get("processedNodes", 0),
            processed_edges=data.get("processedEdges", 0),
            generated_scores=data.get("generatedScores", 0),
            performance=dict(data.get("performance", {})),
            unit_errors=list(data.get("unitErrors", [])),
        )


@dataclass
class JobError:
    message: str
    stack: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "stack": self.stack, "details": dict(self.details)}

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "JobError":
        return JobError(
            message=data.get("message", ""),
            stack=data.get("stack"),
            details=dict(data.get("details", {})),
        )


@dataclass
class ComputationJob:
    job_id: str
    type: JobType
    target: Optional[str] = None
    status: JobStatus = JobStatus.QUEUED
    parameters: Dict[str, Any] = field(default_factory=dict)
    result: JobResult = field(default_factory=JobResult)
    error: Optional[JobError] = None
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    requested_by: Optional[str] = None

    @staticmethod
    def new(job_type: Any, target: Optional[str] = None, parameters: Optional[Dict[str, Any]] = None,
            requested_by: Optional[str] = None) -> "ComputationJob":
        parsed = JobType.parse(job_type)
        return ComputationJob(
            job_id=f"job_{uuid.uuid4().hex[:16]}",
            type=parsed,
            target=normalize_target(parsed, target),
            parameters=dict(parameters or {}),
            created_at=_now(),
            requested_by=requested_by,
        )

    @property
    def claim_key(self) -> str:
        return f"{self.type.value}:{self.target or '*'}"

    # ── state machine ──

    def _transition(self, new_status: JobStatus) -> None:
        if new_status not in _ALLOWED[self.status]:
            raise InvalidJobTransition(
                f"Job {self.job_id} cannot move from {self.status.value} to {new_status.value}",
                {"job_id": self.job_id, "from": self.status.value, "to": new_status.value},
            )
        self.status = new_status

    def mark_running(self) -> None:
        self._transition(JobStatus.RUNNING)
        self.started_at = _now()

    def mark_completed(self, result: JobResult) -> None:
        self._transition(JobStatus.COMPLETED)
        self.result = result
        self.completed_at = _now()

    def mark_failed(self, error: JobError, result: Optional[JobResult] = None) -> None:
        self._transition(JobStatus.FAILED)
        self.error = error
        if result is not None:
            self.result = result
        self.completed_at = _now()

    # ── serialization ──

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobId": self.job_id,
            "type": self.type.value,
            "target": self.target,
            "status": self.status.value,
            "parameters": dict(self.parameters),
            "result": self.result.to_dict(),
            "error": self.error.to_dict() if self.error else None,
            "createdAt": self.created_at,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "requestedBy": self.requested_by,
        }

    @staticmethod
    def from_record(record: dict) -> "ComputationJob":
        """Rebuild from a flat storage record (JSON-encoded nested fields)."""
        def _json(value, default):
            if value in (None, ""):
                return default
            return json.loads(value) if isinstance(value, str) else value

        error = _json(record.get("error"), None)
        return ComputationJob(
            job_id=record["job_id"],
            type=JobType(record["type"]),
            target=record.get("target"),
            status=JobStatus(record.get("status", JobStatus.QUEUED.value)),
            parameters=_json(record.get("parameters"), {}),
            result=JobResult.from_dict(_json(record.get("result"), {})),
            error=JobError.from_dict(error) if error else None,
            created_at=record.get("created_at"),
            started_at=record.get("started_at"),
            completed_at=record.get("completed_at"),
            requested_by=record.get("requested_by"),
        )

    def to_record(self) -> dict:
        return {
            "job_id": self.job_id,
            "type": self.type.value,
            "target": self.target,
            "status": self.status.value,
            "parameters": json.dumps(self.parameters, sort_keys=True, default=str),
            "result": json.dumps(self.result.to_dict(), sort_keys=True, default=str),
            "error": json.dumps(self.error.to_dict(), default=str) if self.error else None,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "requested_by": self.requested_by,
        }


# =============================================
# JOB STORE
# =============================================

class JobStore(ABC):

    @abstractmethod
    def save(self, job: ComputationJob) -> None:
        ...

    @abstractmethod
    def get(self, job_id: str) -> ComputationJob:
        """Raises JobNotFound."""

    @abstractmethod
    def list_jobs(self, status: Optional[JobStatus] = None) -> List[ComputationJob]:
        ...

    def count_by_status(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for job in self.list_jobs():
            counts[job.status.value] = counts.get(job.status.value, 0) + 1
        return counts


class InMemoryJobStore(JobStore):
    """In-process job records. Hands out copies so readers never see a half-applied transition."""

    def __init__(self):
        self._jobs: Dict[str, ComputationJob] = {}

    def save(self, job: ComputationJob) -> None:
        self._jobs[job.job_id] = copy.deepcopy(job)

    def get(self, job_id: str) -> ComputationJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(f"Computation job {job_id} not found", {"job_id": job_id})
        return copy.deepcopy(job)

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[ComputationJob]:
        jobs = list(self._jobs.values())
        if status is not None:
            jobs = [j for j in jobs if j.status == status]
        return [copy.deepcopy(j) for j in sorted(jobs, key=lambda j: j.created_at or "")]
