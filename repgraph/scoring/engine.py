"""
RepGraph — Reputation Score Engine
Explainable, bounded per-domain reputation from graph structure.

Score = f(behavior edges incident on a user)

Evidence is every edge touching the user in the subgraph, whichever way it
points: a Participation edge user→mission counts the same as a Follow edge
follower→user.

    1. Group evidence edges into factors: one per edge type present, plus one
       per other-endpoint node type when the domain asks for that split.
    2. contribution(factor) = Σ strength × other.weight × decay
    3. weight(factor)       = domain-specific constant from configuration
    4. raw   = Σ contribution × weight
       score = 100 · raw / (raw + k)          (diminishing returns, [0, 100))
    5. confidence grows with edge count and neighborhood coverage.

A user with no incoming evidence is "unknown", not "bad":
    score = 50, confidence = 0.5

Corrupt inputs (NaN, infinities, out-of-range strengths/weights, unreadable
timestamps) raise InvalidGraphState. Nothing is coerced to a default.

The engine is pure: it reads a Subgraph and returns a Score. Persisting the
result is the job manager's business.
"""
import math
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from repgraph.errors import InvalidGraphState, InvalidParameter
from repgraph.graph.model import Edge, EdgeType, Node, NodeType, Subgraph
from repgraph.graph.store import is_unit_interval

NEUTRAL_SCORE = 50.0
NEUTRAL_CONFIDENCE = 0.5
TIMESTAMP_KEYS = ("timestamp", "occurredAt")
SUB_DOMAIN_KEYS = ("subDomain", "category")


# =============================================
# ENUMS
# =============================================

class ReputationDomain(str, Enum):
    OVERALL = "Overall"
    COMMUNITY = "Community"
    MISSION = "Mission"
    CONTENT = "Content"
    TRUST = "Trust"

    @classmethod
    def parse(cls, value: Any) -> "ReputationDomain":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise InvalidParameter("domain", value, f"must be one of {[d.value for d in cls]}")


# =============================================
# OUTPUT
# =============================================

@dataclass
class Factor:
    name: str
    description: str
    contribution: float
    weight: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "contribution": self.contribution,
            "weight": self.weight,
        }


@dataclass
class Score:
    user_id: str
    domain: ReputationDomain
    sub_domain: Optional[str]
    score: float                      # 0-100
    confidence: float                 # 0-1
    factors: List[Factor] = field(default_factory=list)
    calculated_at: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> tuple:
        return (self.user_id, self.domain.value, self.sub_domain or "")

    @property
    def raw_score(self) -> float:
        return sum(f.contribution * f.weight for f in self.factors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user": self.user_id,
            "domain": self.domain.value,
            "subDomain": self.sub_domain,
            "score": round(self.score, 2),
            "confidence": round(self.confidence, 4),
            "factors": [f.to_dict() for f in self.factors],
            "calculatedAt": self.calculated_at,
            "metadata": dict(self.metadata),
        }

    def to_compact(self) -> Dict[str, Any]:
        """Public view without the factor breakdown."""
        return {
            "user": self.user_id,
            "domain": self.domain.value,
            "subDomain": self.sub_domain,
            "score": round(self.score, 2),
            "confidence": round(self.confidence, 4),
            "calculatedAt": self.calculated_at,
        }


# =============================================
# CONFIGURATION
# =============================================

@dataclass
class ScoringConfig:
    squash_k: float = 3.0
    decay_half_life_days: float = 0.0          # 0 disables recency decay
    confidence_scale: float = 10.0
    domain_weights: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def __post_init__(self):
        if not (math.isfinite(self.squash_k) and self.squash_k > 0):
            raise InvalidParameter("squash_k", self.squash_k, "must be a positive number")
        if not (math.isfinite(self.decay_half_life_days) and self.decay_half_life_days >= 0):
            raise InvalidParameter("decay_half_life_days", self.decay_half_life_days, "must be >= 0")
        if not (math.isfinite(self.confidence_scale) and self.confidence_scale > 0):
            raise InvalidParameter("confidence_scale", self.confidence_scale, "must be a positive number")

    @classmethod
    def from_settings(cls, settings) -> "ScoringConfig":
        return cls(
            squash_k=settings.SCORE_SQUASH_K,
            decay_half_life_days=settings.SCORE_DECAY_HALF_LIFE_DAYS,
            confidence_scale=settings.SCORE_CONFIDENCE_SCALE,
            domain_weights=settings.domain_factor_weights,
        )

    def edge_weight(self, domain: ReputationDomain, edge_type: EdgeType) -> float:
        table = self.domain_weights.get(domain.value, {})
        return float(table.get("edges", {}).get(edge_type.value, table.get("default", 1.0)))

    def node_weights(self, domain: ReputationDomain) -> Optional[Dict[str, float]]:
        table = self.domain_weights.get(domain.value, {})
        nodes = table.get("nodes")
        return {k: float(v) for k, v in nodes.items()} if nodes else None


# =============================================
# THE ENGINE
# =============================================

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if not math.isfinite(value):
            raise ValueError("non-finite epoch")
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"unsupported timestamp type {type(value).__name__}")


class ScoreEngine:
    def __init__(self, config: Optional[ScoringConfig] = None, clock: Optional[Callable[[], datetime]] = None):
        self.config = config or ScoringConfig()
        self._clock = clock or _utcnow

    def compute_score(
        self,
        user: Node,
        domain: Any = ReputationDomain.OVERALL,
        sub_domain: Optional[str] = None,
        subgraph: Optional[Subgraph] = None,
    ) -> Score:
        domain = ReputationDomain.parse(domain)
        if subgraph is None:
            raise InvalidParameter("subgraph", None, "a traversal subgraph is required")
        if user.type != NodeType.USER:
            raise InvalidParameter("user", user.id, "scores are computed for User nodes only")

        index = subgraph.node_index()
        if user.id not in index:
            raise InvalidParameter("user", user.id, "user is not part of the subgraph")
        self._check_node(index[user.id])

        now = self._clock()
        evidence = []
        for edge in subgraph.edges:
            other_id = self._evidence_other_end(edge, user.id)
            if other_id is None:
                continue
            other = index.get(other_id)
            if other is None:
                raise InvalidGraphState(
                    f"Edge {edge.id} references node {other_id} missing from the subgraph",
                    {"edge_id": edge.id, "node_id": other_id},
                )
            self._check_edge(edge)
            self._check_node(other)
            if sub_domain and not self._matches_sub_domain(edge, other, sub_domain):
                continue
            value = edge.strength * other.weight * self._decay(edge, now)
            evidence.append((edge, other, value))

        calculated_at = now.isoformat()
        if not evidence:
            return Score(
                user_id=user.entity_ref.entity_id,
                domain=domain,
                sub_domain=sub_domain,
                score=NEUTRAL_SCORE,
                confidence=NEUTRAL_CONFIDENCE,
                factors=[],
                calculated_at=calculated_at,
                metadata={"edgeCount": 0, "rawScore": 0.0, "subgraphNodes": len(subgraph.nodes)},
            )

        factors = self._build_factors(domain, evidence)
        raw = sum(f.contribution * f.weight for f in factors)
        k = self.config.squash_k
        score = min(max(100.0 * raw / (raw + k), 0.0), 100.0)
        confidence = self._confidence(evidence, subgraph)

        return Score(
            user_id=user.entity_ref.entity_id,
            domain=domain,
            sub_domain=sub_domain,
            score=score,
            confidence=confidence,
            factors=factors,
            calculated_at=calculated_at,
            metadata={
                "edgeCount": len(evidence),
                "rawScore": raw,
                "subgraphNodes": len(subgraph.nodes),
            },
        )

    # ── factor assembly ──

    def _build_factors(self, domain: ReputationDomain, evidence) -> List[Factor]:
        by_edge_type: "OrderedDict[EdgeType, list]" = OrderedDict((t, []) for t in EdgeType)
        for edge, _, value in evidence:
            by_edge_type[edge.type].append(value)

        factors = []
        for edge_type, values in by_edge_type.items():
            if not values:
                continue
            factors.append(Factor(
                name=edge_type.value,
                description=f"{len(values)} {edge_type.value} edge(s)",
                contribution=sum(values),
                weight=self.config.edge_weight(domain, edge_type),
            ))

        node_weights = self.config.node_weights(domain)
        if node_weights:
            by_node_type: "OrderedDict[NodeType, list]" = OrderedDict((t, []) for t in NodeType)
            for _, other, value in evidence:
                by_node_type[other.type].append(value)
            for node_type, values in by_node_type.items():
                if not values or node_type.value not in node_weights:
                    continue
                factors.append(Factor(
                    name=f"{node_type.value}Connections",
                    description=f"{len(values)} edge(s) from {node_type.value} nodes",
                    contribution=sum(values),
                    weight=node_weights[node_type.value],
                ))
        return factors

    def _confidence(self, evidence, subgraph: Subgraph) -> float:
        n = len(evidence)
        others = max(len(subgraph.nodes) - 1, 1)
        contributors = len({other.id for _, other, _ in evidence})
        coverage = min(contributors / others, 1.0)
        volume = 1.0 - math.exp(-n / self.config.confidence_scale)
        confidence = NEUTRAL_CONFIDENCE + 0.5 * volume * (0.5 + 0.5 * coverage)
        return min(max(confidence, 0.0), 1.0)

    # ── edge semantics ──

    @staticmethod
    def _evidence_other_end(edge: Edge, user_id: str) -> Optional[str]:
        """Other endpoint when `edge` touches the user, in either direction."""
        if edge.source_id == edge.target_id:
            return None   # self-endorsement carries no evidence
        if edge.target_id == user_id:
            return edge.source_id
        if edge.source_id == user_id:
            return edge.target_id
        return None

    @staticmethod
    def _matches_sub_domain(edge: Edge, other: Node, sub_domain: str) -> bool:
        for attrs in (edge.metadata.attributes, other.metadata.attributes):
            if any(attrs.get(key) == sub_domain for key in SUB_DOMAIN_KEYS):
                return True
            tags = attrs.get("tags")
            if isinstance(tags, (list, tuple)) and sub_domain in tags:
                return True
        return other.type == NodeType.TAG and other.metadata.name == sub_domain

    def _decay(self, edge: Edge, now: datetime) -> float:
        half_life = self.config.decay_half_life_days
        if half_life <= 0:
            return 1.0
        raw = next((edge.metadata.attributes[k] for k in TIMESTAMP_KEYS if k in edge.metadata.attributes), None)
        if raw is None:
            return 1.0
        try:
            occurred = _parse_timestamp(raw)
        except (TypeError, ValueError, OverflowError, OSError) as e:
            raise InvalidGraphState(
                f"Edge {edge.id} carries an unreadable timestamp",
                {"edge_id": edge.id, "timestamp": repr(raw), "cause": str(e)},
            )
        age_days = max((now - occurred).total_seconds() / 86400.0, 0.0)
        # Linear: 0.5 at one half-life, zero at two
        return max(0.0, 1.0 - age_days / (2.0 * half_life))

    @staticmethod
    def _check_edge(edge: Edge) -> None:
        if not is_unit_interval(edge.strength):
            raise InvalidGraphState(
                f"Edge {edge.id} has corrupt strength {edge.strength!r}",
                {"edge_id": edge.id, "strength": repr(edge.strength)},
            )

    @staticmethod
    def _check_node(node: Node) -> None:
        if not is_unit_interval(node.weight):
            raise InvalidGraphState(
                f"Node {node.id} has corrupt weight {node.weight!r}",
                {"node_id": node.id, "weight": repr(node.weight)},
            )
