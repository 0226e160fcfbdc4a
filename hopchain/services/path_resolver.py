"""
Path resolution over a tunnel graph
Finds the path from the start node that passes through the most SSH-capable nodes
"""

import logging
from typing import Dict, List, Optional, Tuple

from hopchain.core.exceptions import NoPathError
from hopchain.models.tunnel_graph import (
    HopPlan,
    NodeKind,
    PlanEntry,
    TunnelNode,
    TunnelProfile,
)
from hopchain.services.graph_validator import reachable_from

logger = logging.getLogger(__name__)


class _Frame:
    """DFS stack frame: a node on the current path and its next edge to try"""

    __slots__ = ("index", "next_edge", "descended")

    def __init__(self, index: int):
        self.index = index
        self.next_edge = 0
        self.descended = False


def _build_arena(profile: TunnelProfile) -> Tuple[List[TunnelNode], Dict[str, int], List[List[int]]]:
    nodes = list(profile.nodes)
    index = {node.id: i for i, node in enumerate(nodes)}
    adjacency: List[List[int]] = [[] for _ in nodes]
    for edge in profile.edges:
        src = index.get(edge.source_node_id)
        dst = index.get(edge.target_node_id)
        if src is None or dst is None or src == dst:
            continue
        adjacency[src].append(dst)
    return nodes, index, adjacency


def find_best_path(profile: TunnelProfile, start_node_id: str) -> List[TunnelNode]:
    """
    Depth-first search over every simple path from the start node.

    Candidates are compared at dead ends on (SSH-capable node count, path length);
    the first path found wins a tie. A node already on the current path is never
    re-entered, so cycles terminate.

    Returns:
        Nodes of the best path, start node first
    """
    nodes, index, adjacency = _build_arena(profile)
    start = index.get(start_node_id)
    if start is None:
        raise NoPathError(f"Start node not found: {start_node_id}")

    ssh_capable = [n.kind.is_ssh_capable for n in nodes]

    path: List[int] = [start]
    on_path = [False] * len(nodes)
    on_path[start] = True
    ssh_count = int(ssh_capable[start])

    best: List[int] = []
    best_key = (-1, -1)

    frames = [_Frame(start)]
    while frames:
        frame = frames[-1]
        children = adjacency[frame.index]

        while frame.next_edge < len(children) and on_path[children[frame.next_edge]]:
            frame.next_edge += 1

        if frame.next_edge < len(children):
            child = children[frame.next_edge]
            frame.next_edge += 1
            frame.descended = True

            path.append(child)
            on_path[child] = True
            ssh_count += ssh_capable[child]
            frames.append(_Frame(child))
            continue

        if not frame.descended:
            key = (ssh_count, len(path))
            if key > best_key:
                best_key = key
                best = list(path)

        # Backtrack
        frames.pop()
        path.pop()
        on_path[frame.index] = False
        ssh_count -= ssh_capable[frame.index]

    return [nodes[i] for i in best]


def _forward_hosts(profile: TunnelProfile, forwards: List[TunnelNode]) -> Dict[str, str]:
    hosts: Dict[str, str] = {}
    for node in forwards:
        for neighbour in profile.neighbours(node.id):
            if neighbour.kind == NodeKind.TARGET_HOST and neighbour.remote_host:
                hosts[node.id] = neighbour.remote_host
                break
    return hosts


def resolve(profile: TunnelProfile, start_node_id: Optional[str] = None) -> HopPlan:
    """
    Resolve a profile into an ordered hop plan.

    Args:
        profile: The tunnel graph
        start_node_id: Node to start from; defaults to the LocalMachine node

    Returns:
        HopPlan with the best path (start node excluded) and attached forward nodes

    Raises:
        NoPathError: if no SSH-capable node is reachable from the start node
    """
    if start_node_id is None:
        local_nodes = profile.local_machine_nodes()
        if not local_nodes:
            raise NoPathError("Tunnel profile has no LocalMachine node")
        start_node_id = local_nodes[0].id

    path = find_best_path(profile, start_node_id)
    if not any(node.kind.is_ssh_capable for node in path):
        raise NoPathError(f"No SSH host reachable from node {start_node_id}")

    on_path = {node.id for node in path}
    reachable = reachable_from(profile, start_node_id)
    attached = [
        node for node in profile.nodes
        if node.kind.is_forward and node.id in reachable and node.id not in on_path
    ]

    path_forwards = [node for node in path if node.kind.is_forward]
    plan = HopPlan(
        profile_id=profile.id,
        start_node_id=start_node_id,
        entries=tuple(PlanEntry(node=node) for node in path[1:]),
        attached_forwards=tuple(attached),
        forward_hosts=_forward_hosts(profile, path_forwards + attached),
    )

    logger.debug(
        f"Resolved profile '{profile.name}': "
        f"{' -> '.join(e.node.display_name for e in plan.hops)}"
    )
    return plan
