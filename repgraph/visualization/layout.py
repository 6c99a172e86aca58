"""
RepGraph — Visualization Layout

Positions a traversal Subgraph for rendering. Produces layout DATA only;
drawing is the client's business.

    force    → spring/repulsion simulation, fixed iteration budget
    radial   → root at center, BFS layers on concentric rings
    circular → one ring, neighbors grouped greedily by edge strength

Every algorithm is a pure function of (subgraph, algorithm). Initial force
positions are seeded from a hash of the node id, never from a RNG, so the
same subgraph always lays out the same way.

Coordinates are centered on (0, 0); one ring / spring unit is RING_SPACING.
"""
import hashlib
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from repgraph.errors import InvalidParameter
from repgraph.graph.model import Edge, NodeType, Subgraph

ALGORITHMS = ("force", "radial", "circular")

RING_SPACING = 120.0
FORCE_ITERATIONS = 200
MIN_NODE_SIZE = 8.0
MAX_NODE_SIZE = 32.0

# Color per node type
COLOR_SCHEMES: Dict[str, Dict[NodeType, str]] = {
    "default": {
        NodeType.USER: "#1890ff",
        NodeType.MISSION: "#52c41a",
        NodeType.COMMUNITY: "#722ed1",
        NodeType.TAG: "#fa8c16",
        NodeType.ACTIVITY: "#eb2f96",
    },
    "pastel": {
        NodeType.USER: "#a0c4ff",
        NodeType.MISSION: "#b9fbc0",
        NodeType.COMMUNITY: "#cdb4db",
        NodeType.TAG: "#ffd6a5",
        NodeType.ACTIVITY: "#ffadad",
    },
    "dark": {
        NodeType.USER: "#003a8c",
        NodeType.MISSION: "#135200",
        NodeType.COMMUNITY: "#22075e",
        NodeType.TAG: "#873800",
        NodeType.ACTIVITY: "#780650",
    },
}


@dataclass
class PositionedNode:
    node_id: str
    x: float
    y: float
    type: NodeType
    size: float
    color: str
    label: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "nodeId": self.node_id,
            "x": self.x,
            "y": self.y,
            "type": self.type.value,
            "size": self.size,
            "color": self.color,
        }
        if self.label is not None:
            data["label"] = self.label
        return data


@dataclass
class GraphLayout:
    algorithm: str
    color_scheme: str
    positions: List[PositionedNode]

    def position_of(self, node_id: str) -> Optional[PositionedNode]:
        for p in self.positions:
            if p.node_id == node_id:
                return p
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "algorithm": self.algorithm,
            "colorScheme": self.color_scheme,
            "positions": [p.to_dict() for p in self.positions],
        }


def node_size(weight: float) -> float:
    return round(MIN_NODE_SIZE + (MAX_NODE_SIZE - MIN_NODE_SIZE) * weight, 2)


def layout(
    subgraph: Subgraph,
    algorithm: str = "force",
    color_scheme: str = "default",
    include_labels: bool = True,
) -> GraphLayout:
    if algorithm not in ALGORITHMS:
        raise InvalidParameter("layout", algorithm, f"must be one of {list(ALGORITHMS)}")
    if color_scheme not in COLOR_SCHEMES:
        raise InvalidParameter("colorScheme", color_scheme, f"must be one of {sorted(COLOR_SCHEMES)}")

    if algorithm == "force":
        coords = force_layout(subgraph)
    elif algorithm == "radial":
        coords = radial_layout(subgraph)
    else:
        coords = circular_layout(subgraph)

    palette = COLOR_SCHEMES[color_scheme]
    positions = []
    for node in subgraph.nodes:
        x, y = coords[node.id]
        positions.append(PositionedNode(
            node_id=node.id,
            x=round(x, 3),
            y=round(y, 3),
            type=node.type,
            size=node_size(node.weight),
            color=palette[node.type],
            label=node.metadata.name if include_labels else None,
        ))
    return GraphLayout(algorithm=algorithm, color_scheme=color_scheme, positions=positions)


# =============================================
# FORCE
# =============================================

def _seed_position(node_id: str, spread: float) -> Tuple[float, float]:
    digest = hashlib.sha256(node_id.encode("utf-8")).hexdigest()
    fx = int(digest[:8], 16) / 0xFFFFFFFF
    fy = int(digest[8:16], 16) / 0xFFFFFFFF
    return (fx - 0.5) * 2 * spread, (fy - 0.5) * 2 * spread


def _rest_length(edge: Edge) -> float:
    # Stronger edges settle closer together
    return RING_SPACING * (0.25 + (1.0 - edge.strength))


def force_layout(subgraph: Subgraph, iterations: int = FORCE_ITERATIONS) -> Dict[str, Tuple[float, float]]:
    """
    Fruchterman-Reingold style simulation.

    repulsion  = R² / d²           between every pair
    attraction = (d - rest) / rest  along each edge, rest shrinking with strength
    Displacement per step is capped by a temperature that decays linearly.
    """
    ids = [n.id for n in subgraph.nodes]
    n = len(ids)
    if n == 0:
        return {}
    if n == 1:
        return {ids[0]: (0.0, 0.0)}

    spread = RING_SPACING * math.sqrt(n)
    xs, ys = [], []
    for node_id in ids:
        x, y = _seed_position(node_id, spread)
        xs.append(x)
        ys.append(y)
    index = {node_id: i for i, node_id in enumerate(ids)}
    springs = [
        (index[e.source_id], index[e.target_id], _rest_length(e))
        for e in subgraph.edges
        if e.source_id != e.target_id and e.source_id in index and e.target_id in index
    ]

    k2 = RING_SPACING * RING_SPACING
    start_temp = spread / 4
    for step in range(iterations):
        temp = start_temp * (1.0 - step / iterations) + 0.5
        dx = [0.0] * n
        dy = [0.0] * n

        for i in range(n):
            xi, yi = xs[i], ys[i]
            for j in range(i + 1, n):
                ddx = xi - xs[j]
                ddy = yi - ys[j]
                dist2 = ddx * ddx + ddy * ddy
                if dist2 < 1e-9:
                    angle = float(i + j)
                    ddx, ddy, dist2 = math.cos(angle), math.sin(angle), 1.0
                dist = math.sqrt(dist2)
                force = k2 / dist2
                fx = ddx / dist * force
                fy = ddy / dist * force
                dx[i] += fx
                dy[i] += fy
                dx[j] -= fx
                dy[j] -= fy

        for a, b, rest in springs:
            ddx = xs[a] - xs[b]
            ddy = ys[a] - ys[b]
            dist = math.sqrt(ddx * ddx + ddy * ddy) or 1e-6
            force = (dist - rest) / rest * RING_SPACING
            fx = ddx / dist * force
            fy = ddy / dist * force
            dx[a] -= fx
            dy[a] -= fy
            dx[b] += fx
            dy[b] += fy

        for i in range(n):
            disp = math.sqrt(dx[i] * dx[i] + dy[i] * dy[i])
            if disp > 0:
                scale = min(disp, temp) / disp
                xs[i] += dx[i] * scale
                ys[i] += dy[i] * scale

    # Recenter on the root
    root = index.get(subgraph.root_id, 0)
    ox, oy = xs[root], ys[root]
    return {node_id: (xs[i] - ox, ys[i] - oy) for i, node_id in enumerate(ids)}


# =============================================
# RADIAL
# =============================================

def radial_layout(subgraph: Subgraph) -> Dict[str, Tuple[float, float]]:
    """
    Each node owns an angular sector; its BFS children split that sector
    evenly by sibling count. A node sits at the middle of its sector on the
    ring for its hop distance.
    """
    if not subgraph.nodes:
        return {}
    root_id = subgraph.root_id
    children: Dict[str, List[str]] = {n.id: [] for n in subgraph.nodes}
    for node in subgraph.nodes:
        if node.id == root_id:
            continue
        parent = subgraph.parents.get(node.id)
        if parent not in children:
            parent = root_id
        children[parent].append(node.id)

    coords = {root_id: (0.0, 0.0)}
    stack = [(root_id, 0.0, 2 * math.pi)]
    while stack:
        node_id, start, span = stack.pop()
        kids = children.get(node_id, [])
        if not kids:
            continue
        share = span / len(kids)
        for i, kid in enumerate(kids):
            kid_start = start + i * share
            angle = kid_start + share / 2
            radius = RING_SPACING * subgraph.hops.get(kid, 1)
            coords[kid] = (radius * math.cos(angle), radius * math.sin(angle))
            stack.append((kid, kid_start, share))

    # Nodes without a recorded parent chain (not produced by expand) land on the outer ring
    stray = [n.id for n in subgraph.nodes if n.id not in coords]
    if stray:
        radius = RING_SPACING * (max(subgraph.hops.values(), default=0) + 1)
        for i, node_id in enumerate(stray):
            angle = 2 * math.pi * i / len(stray)
            coords[node_id] = (radius * math.cos(angle), radius * math.sin(angle))
    return coords


# =============================================
# CIRCULAR
# =============================================

def _circular_order(subgraph: Subgraph) -> List[str]:
    """
    Greedy adjacency grouping: start at the root, then repeatedly take the
    unplaced node most strongly tied to the last placed node (ties: to any
    placed node, then subgraph order). Strongly linked nodes end up adjacent
    on the ring, which keeps their edges short and uncrossed.
    """
    ids = [n.id for n in subgraph.nodes]
    order_of = {node_id: i for i, node_id in enumerate(ids)}
    ties: Dict[str, Dict[str, float]] = {node_id: {} for node_id in ids}
    for e in subgraph.edges:
        if e.source_id == e.target_id or e.source_id not in ties or e.target_id not in ties:
            continue
        ties[e.source_id][e.target_id] = ties[e.source_id].get(e.target_id, 0.0) + e.strength
        ties[e.target_id][e.source_id] = ties[e.target_id].get(e.source_id, 0.0) + e.strength

    start = subgraph.root_id if subgraph.root_id in ties else ids[0]
    placed = [start]
    placed_set = {start}
    to_placed = dict(ties[start])
    while len(placed) < len(ids):
        last = placed[-1]
        best = None
        best_key = None
        for node_id in ids:
            if node_id in placed_set:
                continue
            key = (-ties[last].get(node_id, 0.0), -to_placed.get(node_id, 0.0), order_of[node_id])
            if best_key is None or key < best_key:
                best, best_key = node_id, key
        placed.append(best)
        placed_set.add(best)
        for other, strength in ties[best].items():
            to_placed[other] = to_placed.get(other, 0.0) + strength
    return placed


def circular_layout(subgraph: Subgraph) -> Dict[str, Tuple[float, float]]:
    if not subgraph.nodes:
        return {}
    order = _circular_order(subgraph)
    n = len(order)
    if n == 1:
        return {order[0]: (0.0, 0.0)}
    radius = max(RING_SPACING, n * RING_SPACING / (2 * math.pi) / 2)
    return {
        node_id: (radius * math.cos(2 * math.pi * i / n), radius * math.sin(2 * math.pi * i / n))
        for i, node_id in enumerate(order)
    }
