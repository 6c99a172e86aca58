"""
RepGraph — Neo4j Graph Store

GraphStore backed by Neo4j. Uniqueness lives in the schema
(repgraph.db.neo4j.init_schema), so MERGE on the unique key is the per-key
compare-and-swap: concurrent writers of one key serialize on the node or
relationship lock and end in a last-write-wins merge.

Schema:
    (:GraphNode {
        id, type, entity_id, entity_type,
        name, description, image_url,
        attributes,        # JSON object
        weight, seq, created_at, updated_at
    })

    (:GraphNode)-[:LINK {
        id, edge_key, type, strength, directed,
        description, originating_activity_ref,
        attributes,        # JSON object
        seq, created_at, updated_at
    }]->(:GraphNode)

    (:GraphSequence {name: 'graph', value})   # insertion order counter
"""
import json
from typing import Any, Dict, List, Optional

import structlog

from repgraph.db.neo4j import get_session
from repgraph.errors import (
    InvalidEntityRef, InvalidGraphState, InvalidParameter, NodeNotFound, UnknownNode,
)
from repgraph.graph.model import (
    Edge, EdgeMetadata, EdgeType, EntityRef, Node, NodeMetadata, NodeType,
    make_edge_id, make_node_id,
)
from repgraph.graph.store import (
    DEFAULT_STRENGTH, DEFAULT_WEIGHT, GraphStore, _edge_type_set, _node_id, _now,
    is_unit_interval,
)

logger = structlog.get_logger()

_NEXT_SEQ = """
MERGE (c:GraphSequence {name: 'graph'})
SET c.value = coalesce(c.value, 0) + 1
RETURN c.value AS seq
"""


def _stored_unit(props: Dict[str, Any], key: str) -> float:
    """A weight/strength read back from the store; missing or corrupt is a graph-state error."""
    value = props.get(key)
    if not is_unit_interval(value):
        raise InvalidGraphState(
            f"Stored {key} for {props.get('id')} is missing or corrupt: {value!r}",
            {"id": props.get("id"), key: value},
        )
    return float(value)


def _node_from_props(props: Dict[str, Any]) -> Node:
    return Node(
        id=props["id"],
        type=NodeType(props["type"]),
        entity_ref=EntityRef(props["entity_id"], props["entity_type"]),
        metadata=NodeMetadata(
            name=props.get("name"),
            description=props.get("description"),
            image_url=props.get("image_url"),
            attributes=json.loads(props.get("attributes") or "{}"),
        ),
        weight=_stored_unit(props, "weight"),
        seq=props.get("seq", 0),
        created_at=props.get("created_at"),
        updated_at=props.get("updated_at"),
    )


def _edge_from_props(props: Dict[str, Any], source_id: str, target_id: str) -> Edge:
    return Edge(
        id=props["id"],
        source_id=source_id,
        target_id=target_id,
        type=EdgeType(props["type"]),
        strength=_stored_unit(props, "strength"),
        directed=props.get("directed", True),
        metadata=EdgeMetadata(
            description=props.get("description"),
            originating_activity_ref=props.get("originating_activity_ref"),
            attributes=json.loads(props.get("attributes") or "{}"),
        ),
        seq=props.get("seq", 0),
        created_at=props.get("created_at"),
        updated_at=props.get("updated_at"),
    )


class Neo4jGraphStore(GraphStore):

    # ── writes ──

    def upsert_node(self, node_type, entity_ref, metadata=None, weight=None) -> Node:
        parsed_type = self._validate_node_input(node_type, weight)
        node_id = make_node_id(entity_ref)
        with get_session() as session:
            node = session.execute_write(
                self._upsert_node_tx, node_id, parsed_type, entity_ref, metadata, weight,
            )
        return node

    @staticmethod
    def _upsert_node_tx(tx, node_id, parsed_type, entity_ref, metadata, weight) -> Node:
        # Taking the write lock first makes the read-merge-write below atomic per key
        record = tx.run("""
            MERGE (n:GraphNode {entity_id: $entity_id, entity_type: $entity_type})
            ON CREATE SET n.id = $id
            SET n._lock = true
            REMOVE n._lock
            RETURN properties(n) AS props
        """, entity_id=entity_ref.entity_id, entity_type=entity_ref.entity_type, id=node_id).single()

        props = record["props"]
        now = _now()
        if props.get("type") is None:
            merged = NodeMetadata().merged(metadata)
            if not merged.name:
                # Raising inside the transaction function rolls the stub back
                raise InvalidParameter("metadata.name", merged.name, "name is required")
            seq = tx.run(_NEXT_SEQ).single()["seq"]
            node = Node(
                id=node_id,
                type=parsed_type,
                entity_ref=entity_ref,
                metadata=merged,
                weight=DEFAULT_WEIGHT if weight is None else float(weight),
                seq=seq,
                created_at=now,
                updated_at=now,
            )
            logger.debug("graph_node_created", node_id=node_id, type=parsed_type.value)
        else:
            existing = _node_from_props(props)
            if existing.type != parsed_type:
                raise InvalidEntityRef(
                    f"Entity {entity_ref.key} is already a {existing.type.value} node",
                    {"entity": entity_ref.key, "type": existing.type.value, "requested": parsed_type.value},
                )
            node = Node(
                id=existing.id,
                type=existing.type,
                entity_ref=existing.entity_ref,
                metadata=existing.metadata.merged(metadata),
                weight=existing.weight if weight is None else float(weight),
                seq=existing.seq,
                created_at=existing.created_at,
                updated_at=now,
            )

        tx.run("""
            MATCH (n:GraphNode {id: $id})
            SET n.type = $type,
                n.name = $name,
                n.description = $description,
                n.image_url = $image_url,
                n.attributes = $attributes,
                n.weight = $weight,
                n.seq = $seq,
                n.created_at = $created_at,
                n.updated_at = $updated_at
        """,
            id=node.id,
            type=node.type.value,
            name=node.metadata.name,
            description=node.metadata.description,
            image_url=node.metadata.image_url,
            attributes=json.dumps(node.metadata.attributes, sort_keys=True, default=str),
            weight=node.weight,
            seq=node.seq,
            created_at=node.created_at,
            updated_at=node.updated_at,
        )
        return node

    def upsert_edge(self, source, target, edge_type, strength=None, directed=None, metadata=None) -> Edge:
        source_id, target_id = _node_id(source), _node_id(target)
        parsed_type = self._validate_edge_input(source_id, target_id, edge_type, strength)
        edge_id = make_edge_id(source_id, target_id, parsed_type)
        with get_session() as session:
            edge = session.execute_write(
                self._upsert_edge_tx, edge_id, source_id, target_id, parsed_type,
                strength, directed, metadata,
            )
        return edge

    @staticmethod
    def _upsert_edge_tx(tx, edge_id, source_id, target_id, parsed_type, strength, directed, metadata) -> Edge:
        found = {
            r["id"] for r in tx.run(
                "MATCH (n:GraphNode) WHERE n.id IN $ids RETURN n.id AS id",
                ids=[source_id, target_id],
            )
        }
        for endpoint in (source_id, target_id):
            if endpoint not in found:
                raise UnknownNode(f"Edge endpoint {endpoint} does not exist", {"node_id": endpoint})

        record = tx.run("""
            MATCH (a:GraphNode {id: $source_id}), (b:GraphNode {id: $target_id})
            MERGE (a)-[r:LINK {edge_key: $edge_key}]->(b)
            ON CREATE SET r.id = $edge_key
            SET r._lock = true
            REMOVE r._lock
            RETURN properties(r) AS props
        """, source_id=source_id, target_id=target_id, edge_key=edge_id).single()

        props = record["props"]
        now = _now()
        if props.get("type") is None:
            seq = tx.run(_NEXT_SEQ).single()["seq"]
            edge = Edge(
                id=edge_id,
                source_id=source_id,
                target_id=target_id,
                type=parsed_type,
                strength=DEFAULT_STRENGTH if strength is None else float(strength),
                directed=True if directed is None else bool(directed),
                metadata=EdgeMetadata().merged(metadata),
                seq=seq,
                created_at=now,
                updated_at=now,
            )
            logger.debug("graph_edge_created", edge_id=edge_id, type=parsed_type.value)
        else:
            existing = _edge_from_props(props, source_id, target_id)
            edge = Edge(
                id=existing.id,
                source_id=source_id,
                target_id=target_id,
                type=existing.type,
                strength=existing.strength if strength is None else float(strength),
                directed=existing.directed if directed is None else bool(directed),
                metadata=existing.metadata.merged(metadata),
                seq=existing.seq,
                created_at=existing.created_at,
                updated_at=now,
            )

        tx.run("""
            MATCH ()-[r:LINK {edge_key: $edge_key}]->()
            SET r.type = $type,
                r.strength = $strength,
                r.directed = $directed,
                r.description = $description,
                r.originating_activity_ref = $originating_activity_ref,
                r.attributes = $attributes,
                r.seq = $seq,
                r.created_at = $created_at,
                r.updated_at = $updated_at
        """,
            edge_key=edge.id,
            type=edge.type.value,
            strength=edge.strength,
            directed=edge.directed,
            description=edge.metadata.description,
            originating_activity_ref=edge.metadata.originating_activity_ref,
            attributes=json.dumps(edge.metadata.attributes, sort_keys=True, default=str),
            seq=edge.seq,
            created_at=edge.created_at,
            updated_at=edge.updated_at,
        )
        return edge

    # ── reads ──

    def get_node(self, entity_ref: EntityRef) -> Node:
        return self.get_node_by_id(make_node_id(entity_ref))

    def get_node_by_id(self, node_id: str) -> Node:
        with get_session() as session:
            record = session.run(
                "MATCH (n:GraphNode {id: $id}) WHERE n.type IS NOT NULL RETURN properties(n) AS props",
                id=node_id,
            ).single()
        if record is None:
            raise NodeNotFound(f"Node {node_id} not found", {"node_id": node_id})
        return _node_from_props(record["props"])

    def _edges(self, pattern: str, node, edge_types) -> List[Edge]:
        wanted = _edge_type_set(edge_types)
        with get_session() as session:
            result = session.run(f"""
                MATCH {pattern}
                WHERE $types IS NULL OR r.type IN $types
                RETURN properties(r) AS props, a.id AS source_id, b.id AS target_id
                ORDER BY r.seq
            """, id=_node_id(node), types=[t.value for t in wanted] if wanted is not None else None)
            return [_edge_from_props(r["props"], r["source_id"], r["target_id"]) for r in result]

    def get_edges_from(self, node, edge_types=None) -> List[Edge]:
        return self._edges("(a:GraphNode {id: $id})-[r:LINK]->(b:GraphNode)", node, edge_types)

    def get_edges_to(self, node, edge_types=None) -> List[Edge]:
        return self._edges("(a:GraphNode)-[r:LINK]->(b:GraphNode {id: $id})", node, edge_types)

    def list_nodes(self, node_type: Optional[Any] = None) -> List[Node]:
        parsed = NodeType.parse(node_type).value if node_type is not None else None
        with get_session() as session:
            result = session.run("""
                MATCH (n:GraphNode)
                WHERE n.type IS NOT NULL AND ($type IS NULL OR n.type = $type)
                RETURN properties(n) AS props
                ORDER BY n.seq
            """, type=parsed)
            return [_node_from_props(r["props"]) for r in result]

    def stats(self) -> Dict[str, Any]:
        with get_session() as session:
            nodes = {
                r["type"]: r["count"] for r in session.run(
                    "MATCH (n:GraphNode) WHERE n.type IS NOT NULL RETURN n.type AS type, count(n) AS count"
                )
            }
            edges = {
                r["type"]: r["count"] for r in session.run(
                    "MATCH ()-[r:LINK]->() RETURN r.type AS type, count(r) AS count"
                )
            }
        return {
            "nodes": {"total": sum(nodes.values()), "byType": nodes},
            "edges": {"total": sum(edges.values()), "byType": edges},
        }
