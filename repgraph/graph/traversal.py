"""
RepGraph — Graph Traversal

Bounded, filtered breadth-first neighborhood expansion. Feeds both the score
engine (who interacted with this user?) and the visualization layer.

Per hop:
    1. collect edges touching the frontier, in both directions
    2. drop edges failing the edge-type filter or strength < min_strength
    3. drop candidate nodes failing the node-type filter or already visited
    4. if the candidates overflow the node budget, keep the most salient:
       cumulative strength desc → node weight desc → discovery order

No randomness anywhere: the same graph snapshot and parameters always give
the same nodes and edges in the same order. A visited set guarantees
termination on cyclic graphs (Follow / Association loops).
"""
from typing import Any, Dict, Iterable, List, Optional, Set

import structlog

from repgraph.errors import InvalidDepth, InvalidGraphState, InvalidParameter
from repgraph.graph.model import Edge, EdgeType, Node, NodeType, Subgraph
from repgraph.graph.store import GraphStore, NodeLike, is_unit_interval

logger = structlog.get_logger()

MIN_DEPTH = 1
MAX_DEPTH = 3
MAX_NODES_CAP = 500


def _parse_filter(values: Optional[Iterable[Any]], enum_cls) -> Optional[Set]:
    if values is None:
        return None
    return {enum_cls.parse(v) for v in values}


class GraphTraversal:
    def __init__(self, store: GraphStore):
        self.store = store

    def expand(
        self,
        root: NodeLike,
        depth: int,
        max_nodes: int,
        node_type_filter: Optional[Iterable[Any]] = None,
        edge_type_filter: Optional[Iterable[Any]] = None,
        min_strength: float = 0.0,
    ) -> Subgraph:
        """
        Expand up to `depth` hops from `root`.

        `max_nodes` caps the nodes discovered beyond the root; the root itself
        is always part of the result.
        """
        if isinstance(depth, bool) or not isinstance(depth, int) or not MIN_DEPTH <= depth <= MAX_DEPTH:
            raise InvalidDepth(depth, MIN_DEPTH, MAX_DEPTH)
        if isinstance(max_nodes, bool) or not isinstance(max_nodes, int) or not 1 <= max_nodes <= MAX_NODES_CAP:
            raise InvalidParameter("maxNodes", max_nodes, f"must be an integer within [1, {MAX_NODES_CAP}]")
        if not is_unit_interval(min_strength):
            raise InvalidParameter("minStrength", min_strength, "must be within [0, 1]")

        node_types = _parse_filter(node_type_filter, NodeType)
        edge_types = _parse_filter(edge_type_filter, EdgeType)

        root_node = self.store.get_node_by_id(root.id if isinstance(root, Node) else root)

        subgraph = Subgraph(root_id=root_node.id, nodes=[root_node])
        subgraph.hops[root_node.id] = 0
        subgraph.parents[root_node.id] = None

        visited: Set[str] = {root_node.id}
        seen_edges: Dict[str, Edge] = {}
        frontier: List[str] = [root_node.id]
        budget = max_nodes

        for hop in range(1, depth + 1):
            if not frontier or budget <= 0:
                break

            # candidate id -> [cumulative strength, weight, discovery order, parent, node]
            candidates: Dict[str, list] = {}
            order = 0
            for node_id in frontier:
                for edge in self._qualifying_edges(node_id, edge_types, min_strength):
                    other_id = edge.other_end(node_id)
                    if other_id in visited:
                        if edge.id not in seen_edges:
                            seen_edges[edge.id] = edge
                        continue
                    entry = candidates.get(other_id)
                    if entry is None:
                        other = self.store.get_node_by_id(other_id)
                        if not is_unit_interval(other.weight):
                            raise InvalidGraphState(
                                f"Node {other_id} has corrupt weight {other.weight!r}",
                                {"node_id": other_id, "weight": other.weight},
                            )
                        if node_types is not None and other.type not in node_types:
                            continue
                        entry = candidates[other_id] = [0.0, other.weight, order, node_id, other]
                        order += 1
                    entry[0] += edge.strength
                    if edge.id not in seen_edges:
                        seen_edges[edge.id] = edge

            ranked = sorted(candidates.items(), key=lambda kv: (-kv[1][0], -kv[1][1], kv[1][2]))
            if len(ranked) > budget:
                logger.debug("traversal_truncated", root=root_node.id, hop=hop,
                             candidates=len(ranked), kept=budget)
                ranked = ranked[:budget]

            next_frontier = []
            for other_id, (_, _, _, parent_id, other) in ranked:
                visited.add(other_id)
                subgraph.nodes.append(other)
                subgraph.hops[other_id] = hop
                subgraph.parents[other_id] = parent_id
                next_frontier.append(other_id)
            budget -= len(ranked)
            frontier = next_frontier

        subgraph.edges = [
            e for e in seen_edges.values()
            if e.source_id in visited and e.target_id in visited
        ]
        return subgraph

    def _qualifying_edges(self, node_id: str, edge_types, min_strength: float) -> List[Edge]:
        edges = self.store.get_edges_from(node_id, edge_types) + self.store.get_edges_to(node_id, edge_types)
        qualifying = []
        seen = set()
        for edge in edges:
            if edge.id in seen:
                continue   # Association self-loop shows up in both directions
            seen.add(edge.id)
            # A corrupt strength must not be mistaken for a weak edge
            if not is_unit_interval(edge.strength):
                raise InvalidGraphState(
                    f"Edge {edge.id} has corrupt strength {edge.strength!r}",
                    {"edge_id": edge.id, "strength": edge.strength},
                )
            if edge.strength >= min_strength:
                qualifying.append(edge)
        return qualifying
