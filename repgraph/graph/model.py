"""
RepGraph — Graph Data Model

Nodes are users, missions, communities, tags and activities. Edges are the
behavior linking them (participation, comments, votes, follows...).

    (:User)-[:Participation {strength}]->(:Mission)
    (:User)-[:Follow]->(:User)
    (:Tag)-[:Association]->(:Tag)          # self-loops only for Association

Node identity is the external record it mirrors (EntityRef). The graph holds
a non-owning pointer; the record itself belongs to its own subsystem.

Type fields are closed enums. Anything a variant needs beyond the typed
fields lives in the metadata `attributes` bag.
"""
import copy
import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from repgraph.errors import InvalidEntityRef, InvalidParameter


# =============================================
# ENUMS
# =============================================

class NodeType(str, Enum):
    USER = "User"
    MISSION = "Mission"
    COMMUNITY = "Community"
    TAG = "Tag"
    ACTIVITY = "Activity"

    @classmethod
    def parse(cls, value: Any) -> "NodeType":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise InvalidParameter("nodeType", value, f"must be one of {[t.value for t in cls]}")


class EdgeType(str, Enum):
    PARTICIPATION = "Participation"
    CREATION = "Creation"
    COMMENT = "Comment"
    RATING = "Rating"
    LIKE = "Like"
    FOLLOW = "Follow"
    VOTE = "Vote"
    ASSOCIATION = "Association"

    @classmethod
    def parse(cls, value: Any) -> "EdgeType":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise InvalidParameter("edgeType", value, f"must be one of {[t.value for t in cls]}")


# =============================================
# VALUE TYPES
# =============================================

@dataclass(frozen=True)
class EntityRef:
    """Pointer to the external record a node represents."""
    entity_id: str
    entity_type: str

    def __post_init__(self):
        if not isinstance(self.entity_id, str) or not self.entity_id.strip():
            raise InvalidEntityRef("entityRef.id must be a non-empty string", {"entity_id": self.entity_id})
        if not isinstance(self.entity_type, str) or not self.entity_type.strip():
            raise InvalidEntityRef("entityRef.type must be a non-empty string", {"entity_type": self.entity_type})

    @property
    def key(self) -> str:
        return f"{self.entity_type}:{self.entity_id}"

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.entity_id, "type": self.entity_type}


@dataclass
class NodeMetadata:
    name: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    def merged(self, update: Optional["NodeMetadata"]) -> "NodeMetadata":
        """Last-write-wins per field; attributes merge key by key."""
        if update is None:
            return copy.deepcopy(self)
        attributes = copy.deepcopy(self.attributes)
        attributes.update(copy.deepcopy(update.attributes))
        return NodeMetadata(
            name=update.name if update.name is not None else self.name,
            description=update.description if update.description is not None else self.description,
            image_url=update.image_url if update.image_url is not None else self.image_url,
            attributes=attributes,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "imageUrl": self.image_url,
            "attributes": dict(self.attributes),
        }


@dataclass
class EdgeMetadata:
    description: Optional[str] = None
    originating_activity_ref: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    def merged(self, update: Optional["EdgeMetadata"]) -> "EdgeMetadata":
        if update is None:
            return copy.deepcopy(self)
        attributes = copy.deepcopy(self.attributes)
        attributes.update(copy.deepcopy(update.attributes))
        return EdgeMetadata(
            description=update.description if update.description is not None else self.description,
            originating_activity_ref=(
                update.originating_activity_ref
                if update.originating_activity_ref is not None
                else self.originating_activity_ref
            ),
            attributes=attributes,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "originatingActivityRef": self.originating_activity_ref,
            "attributes": dict(self.attributes),
        }


# =============================================
# NODE / EDGE
# =============================================

def make_node_id(entity_ref: EntityRef) -> str:
    """Stable node id derived from the unique key."""
    return "n_" + hashlib.sha256(entity_ref.key.encode("utf-8")).hexdigest()[:24]


def make_edge_id(source_id: str, target_id: str, edge_type: EdgeType) -> str:
    raw = f"{source_id}|{target_id}|{edge_type.value}"
    return "e_" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:24]


@dataclass
class Node:
    id: str
    type: NodeType
    entity_ref: EntityRef
    metadata: NodeMetadata
    weight: float = 0.5
    seq: int = 0                        # insertion order, used for tie-breaking
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "entityRef": self.entity_ref.to_dict(),
            "metadata": self.metadata.to_dict(),
            "weight": self.weight,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class Edge:
    id: str
    source_id: str
    target_id: str
    type: EdgeType
    strength: float = 0.5
    directed: bool = True
    metadata: EdgeMetadata = field(default_factory=EdgeMetadata)
    seq: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def other_end(self, node_id: str) -> str:
        return self.target_id if self.source_id == node_id else self.source_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source_id,
            "target": self.target_id,
            "type": self.type.value,
            "strength": self.strength,
            "directed": self.directed,
            "metadata": self.metadata.to_dict(),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


# =============================================
# SUBGRAPH (traversal output)
# =============================================

@dataclass
class Subgraph:
    """
    Bounded neighborhood around `root_id`. Nodes and edges are unique and
    appear in discovery order; the root is always first.
    """
    root_id: str
    nodes: List[Node] = field(default_factory=list)
    edges: List[Edge] = field(default_factory=list)
    hops: Dict[str, int] = field(default_factory=dict)
    parents: Dict[str, Optional[str]] = field(default_factory=dict)

    @property
    def root(self) -> Optional[Node]:
        return self.get_node(self.root_id)

    def get_node(self, node_id: str) -> Optional[Node]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def node_index(self) -> Dict[str, Node]:
        return {n.id: n for n in self.nodes}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "root": self.root_id,
            "nodes": [dict(n.to_dict(), hop=self.hops.get(n.id)) for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
            "nodeCount": len(self.nodes),
            "edgeCount": len(self.edges),
        }
