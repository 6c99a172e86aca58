"""
RepGraph — Error Taxonomy

    validation   → rejected before any mutation, never partially applied
    not-found    → surfaced as-is to the caller
    authorization→ Forbidden, never leaks whether the target exists
    graph-state  → fatal to the affected unit of work only
    job-level    → the job ends Failed with a readable message + details
"""
from typing import Any, Dict, Optional


class ReputationGraphError(Exception):
    code = "reputation_graph_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


# ── Validation ────────────────────────────────────

class ValidationError(ReputationGraphError):
    code = "validation_error"


class InvalidWeight(ValidationError):
    code = "invalid_weight"

    def __init__(self, weight: Any):
        super().__init__(f"Node weight must be within [0, 1], got {weight!r}", {"weight": weight})


class InvalidStrength(ValidationError):
    code = "invalid_strength"

    def __init__(self, strength: Any):
        super().__init__(f"Edge strength must be within [0, 1], got {strength!r}", {"strength": strength})


class InvalidDepth(ValidationError):
    code = "invalid_depth"

    def __init__(self, depth: Any, low: int, high: int):
        super().__init__(
            f"Traversal depth must be within [{low}, {high}], got {depth!r}",
            {"depth": depth, "min": low, "max": high},
        )


class InvalidParameter(ValidationError):
    code = "invalid_parameter"

    def __init__(self, name: str, value: Any, reason: str):
        super().__init__(f"Invalid {name}: {reason}", {"parameter": name, "value": value})


class InvalidEntityRef(ValidationError):
    code = "invalid_entity_ref"


class InvalidEdge(ValidationError):
    code = "invalid_edge"


# ── Not found ─────────────────────────────────────

class NotFoundError(ReputationGraphError):
    code = "not_found"


class NodeNotFound(NotFoundError):
    code = "node_not_found"


class UnknownNode(NotFoundError):
    code = "unknown_node"


class JobNotFound(NotFoundError):
    code = "job_not_found"


# ── Authorization ─────────────────────────────────

class Forbidden(ReputationGraphError):
    code = "forbidden"

    def __init__(self, message: str = "Not authorized for this operation"):
        super().__init__(message)


# ── Graph state / jobs / storage ──────────────────

class InvalidGraphState(ReputationGraphError):
    code = "invalid_graph_state"


class DuplicateActiveJob(ReputationGraphError):
    code = "duplicate_active_job"

    def __init__(self, job_type: str, target: Optional[str], active_job_id: Optional[str] = None):
        self.active_job_id = active_job_id
        super().__init__(
            f"A {job_type} computation for target {target!r} is already queued or running",
            {"type": job_type, "target": target, "active_job_id": active_job_id},
        )


class InvalidJobTransition(ReputationGraphError):
    code = "invalid_job_transition"


class StoreUnavailable(ReputationGraphError):
    code = "store_unavailable"
