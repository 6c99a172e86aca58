"""
RepGraph — Graph Store

Durable node/edge storage. The sole writer of Node and Edge records; activity
ingestion calls upsert_node / upsert_edge, everything else only reads.

Uniqueness:
    Node  → (entityRef.id, entityRef.type)
    Edge  → (source, target, type)

Upserts are per-key atomic: concurrent producers writing the same key end in
a last-write-wins merge, never a duplicate. Reads take no locks.

Backends:
    InMemoryGraphStore   : tests, single-process deployments
    Neo4jGraphStore      : repgraph.graph.neo4j_store
"""
import itertools
import math
import threading
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

import structlog

from repgraph.errors import (
    InvalidEdge, InvalidEntityRef, InvalidParameter, InvalidStrength, InvalidWeight,
    NodeNotFound, UnknownNode,
)
from repgraph.graph.model import (
    Edge, EdgeMetadata, EdgeType, EntityRef, Node, NodeMetadata, NodeType,
    make_edge_id, make_node_id,
)

logger = structlog.get_logger()

DEFAULT_WEIGHT = 0.5
DEFAULT_STRENGTH = 0.5

NodeLike = Union[Node, str]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def is_unit_interval(value: Any) -> bool:
    """True for a finite real number within [0, 1]."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and 0.0 <= value <= 1.0


def _node_id(node: NodeLike) -> str:
    return node.id if isinstance(node, Node) else node


def _edge_type_set(edge_types: Optional[Iterable[Any]]) -> Optional[set]:
    if edge_types is None:
        return None
    return {EdgeType.parse(t) for t in edge_types}


class GraphStore(ABC):
    """Storage-agnostic contract. Every other component depends only on this."""

    @abstractmethod
    def upsert_node(
        self,
        node_type: Any,
        entity_ref: EntityRef,
        metadata: Optional[NodeMetadata] = None,
        weight: Optional[float] = None,
    ) -> Node:
        ...

    @abstractmethod
    def upsert_edge(
        self,
        source: NodeLike,
        target: NodeLike,
        edge_type: Any,
        strength: Optional[float] = None,
        directed: Optional[bool] = None,
        metadata: Optional[EdgeMetadata] = None,
    ) -> Edge:
        ...

    @abstractmethod
    def get_node(self, entity_ref: EntityRef) -> Node:
        """Raises NodeNotFound."""

    @abstractmethod
    def get_node_by_id(self, node_id: str) -> Node:
        """Raises NodeNotFound."""

    @abstractmethod
    def get_edges_from(self, node: NodeLike, edge_types: Optional[Iterable[Any]] = None) -> List[Edge]:
        ...

    @abstractmethod
    def get_edges_to(self, node: NodeLike, edge_types: Optional[Iterable[Any]] = None) -> List[Edge]:
        ...

    @abstractmethod
    def list_nodes(self, node_type: Optional[Any] = None) -> List[Node]:
        """All nodes (optionally of one type) in insertion order."""

    @abstractmethod
    def stats(self) -> Dict[str, Any]:
        """Node/edge totals grouped by type."""

    def find_user_node(self, user_id: str) -> Node:
        return self.get_node(EntityRef(user_id, "User"))

    # ── shared validation (runs before any mutation) ──

    @staticmethod
    def _validate_node_input(node_type: Any, weight: Optional[float]) -> NodeType:
        parsed = NodeType.parse(node_type)
        if weight is not None and not is_unit_interval(weight):
            raise InvalidWeight(weight)
        return parsed

    @staticmethod
    def _validate_edge_input(
        source_id: str, target_id: str, edge_type: Any, strength: Optional[float],
    ) -> EdgeType:
        parsed = EdgeType.parse(edge_type)
        if strength is not None and not is_unit_interval(strength):
            raise InvalidStrength(strength)
        if source_id == target_id and parsed != EdgeType.ASSOCIATION:
            raise InvalidEdge(
                f"Self-loops are only permitted for Association edges, got {parsed.value}",
                {"node_id": source_id, "type": parsed.value},
            )
        return parsed


class InMemoryGraphStore(GraphStore):
    """
    Dict-backed store. Records are replaced, never mutated in place, so a
    reader holding a Node/Edge always sees a consistent snapshot.
    """

    def __init__(self):
        self._nodes: Dict[str, Node] = {}
        self._edges: Dict[str, Edge] = {}
        # node_id -> {edge_id: None}; dicts keep insertion order
        self._out: Dict[str, Dict[str, None]] = {}
        self._in: Dict[str, Dict[str, None]] = {}
        self._seq = itertools.count(1)
        self._key_locks: Dict[str, threading.Lock] = {}
        self._key_locks_guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._key_locks_guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    # ── writes ──

    def upsert_node(self, node_type, entity_ref, metadata=None, weight=None) -> Node:
        parsed_type = self._validate_node_input(node_type, weight)
        node_id = make_node_id(entity_ref)

        with self._lock_for(node_id):
            existing = self._nodes.get(node_id)
            now = _now()
            if existing is None:
                merged = NodeMetadata().merged(metadata)
                if not merged.name:
                    raise InvalidParameter("metadata.name", merged.name, "name is required")
                node = Node(
                    id=node_id,
                    type=parsed_type,
                    entity_ref=entity_ref,
                    metadata=merged,
                    weight=DEFAULT_WEIGHT if weight is None else float(weight),
                    seq=next(self._seq),
                    created_at=now,
                    updated_at=now,
                )
                self._out.setdefault(node_id, {})
                self._in.setdefault(node_id, {})
                logger.debug("graph_node_created", node_id=node_id, type=parsed_type.value)
            else:
                if existing.type != parsed_type:
                    raise InvalidEntityRef(
                        f"Entity {entity_ref.key} is already a {existing.type.value} node",
                        {"entity": entity_ref.key, "type": existing.type.value, "requested": parsed_type.value},
                    )
                node = replace(
                    existing,
                    metadata=existing.metadata.merged(metadata),
                    weight=existing.weight if weight is None else float(weight),
                    updated_at=now,
                )
            self._nodes[node_id] = node
            return node

    def upsert_edge(self, source, target, edge_type, strength=None, directed=None, metadata=None) -> Edge:
        source_id, target_id = _node_id(source), _node_id(target)
        parsed_type = self._validate_edge_input(source_id, target_id, edge_type, strength)
        for endpoint in (source_id, target_id):
            if endpoint not in self._nodes:
                raise UnknownNode(f"Edge endpoint {endpoint} does not exist", {"node_id": endpoint})

        edge_id = make_edge_id(source_id, target_id, parsed_type)
        with self._lock_for(edge_id):
            existing = self._edges.get(edge_id)
            now = _now()
            if existing is None:
                edge = Edge(
                    id=edge_id,
                    source_id=source_id,
                    target_id=target_id,
                    type=parsed_type,
                    strength=DEFAULT_STRENGTH if strength is None else float(strength),
                    directed=True if directed is None else bool(directed),
                    metadata=EdgeMetadata().merged(metadata),
                    seq=next(self._seq),
                    created_at=now,
                    updated_at=now,
                )
                self._edges[edge_id] = edge
                self._out.setdefault(source_id, {})[edge_id] = None
                self._in.setdefault(target_id, {})[edge_id] = None
                logger.debug("graph_edge_created", edge_id=edge_id, type=parsed_type.value)
            else:
                edge = replace(
                    existing,
                    strength=existing.strength if strength is None else float(strength),
                    directed=existing.directed if directed is None else bool(directed),
                    metadata=existing.metadata.merged(metadata),
                    updated_at=now,
                )
                self._edges[edge_id] = edge
            return edge

    # ── reads ──

    def get_node(self, entity_ref: EntityRef) -> Node:
        return self.get_node_by_id(make_node_id(entity_ref))

    def get_node_by_id(self, node_id: str) -> Node:
        node = self._nodes.get(node_id)
        if node is None:
            raise NodeNotFound(f"Node {node_id} not found", {"node_id": node_id})
        return node

    def _edges_for(self, index: Dict[str, Dict[str, None]], node: NodeLike, edge_types) -> List[Edge]:
        wanted = _edge_type_set(edge_types)
        edge_ids = list(index.get(_node_id(node), {}))
        edges = [self._edges[eid] for eid in edge_ids]
        if wanted is not None:
            edges = [e for e in edges if e.type in wanted]
        return edges

    def get_edges_from(self, node, edge_types=None) -> List[Edge]:
        return self._edges_for(self._out, node, edge_types)

    def get_edges_to(self, node, edge_types=None) -> List[Edge]:
        return self._edges_for(self._in, node, edge_types)

    def list_nodes(self, node_type=None) -> List[Node]:
        nodes = sorted(self._nodes.values(), key=lambda n: n.seq)
        if node_type is not None:
            parsed = NodeType.parse(node_type)
            nodes = [n for n in nodes if n.type == parsed]
        return nodes

    def stats(self) -> Dict[str, Any]:
        node_counts = Counter(n.type.value for n in list(self._nodes.values()))
        edge_counts = Counter(e.type.value for e in list(self._edges.values()))
        return {
            "nodes": {"total": sum(node_counts.values()), "byType": dict(node_counts)},
            "edges": {"total": sum(edge_counts.values()), "byType": dict(edge_counts)},
        }
