"""
Structural validation of tunnel profiles
Collects every error and warning so a caller can show all problems at once
"""

import ipaddress
import logging
import re
from collections import deque
from typing import Dict, List, Set

from hopchain.core.constants import PORT_MIN, PORT_MAX
from hopchain.models.tunnel_graph import (
    NodeKind,
    TunnelNode,
    TunnelProfile,
    ValidationResult,
)

logger = logging.getLogger(__name__)

# RFC 1123 label: alphanumeric at both ends, hyphens inside, 63 chars max
_HOST_LABEL = re.compile(r"^[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def is_valid_host(value: str) -> bool:
    """
    Check whether a string is a hostname or IP literal.

    Accepts RFC 1123 hostnames, IPv4, IPv6 and bracketed IPv6.
    """
    if not value or not value.strip():
        return False

    candidate = value.strip()
    if candidate.startswith("[") and candidate.endswith("]"):
        candidate = candidate[1:-1]

    try:
        ipaddress.ip_address(candidate)
        return True
    except ValueError:
        pass

    if len(candidate) > 253:
        return False

    return all(_HOST_LABEL.match(label) for label in candidate.split("."))


def _port_in_range(port: int) -> bool:
    return PORT_MIN <= port <= PORT_MAX


def _check_port(node: TunnelNode, field: str, what: str, errors: List[str]):
    value = getattr(node, field)
    if value is None:
        errors.append(f"{what} node '{node.display_name}' must have a {field}.")
    elif not _port_in_range(value):
        errors.append(f"{what} node '{node.display_name}' has invalid {field}: {value}")


def _adjacent_target_host(profile: TunnelProfile, node: TunnelNode) -> bool:
    return any(
        n.kind == NodeKind.TARGET_HOST and n.remote_host
        for n in profile.neighbours(node.id)
    )


def _validate_node(profile: TunnelProfile, node: TunnelNode, result: ValidationResult):
    errors = result.errors

    match node.kind:
        case NodeKind.LOCAL_MACHINE:
            pass

        case NodeKind.SSH_HOST:
            if not node.host_ref:
                errors.append(f"SSH host node '{node.display_name}' must have a host reference.")

        case NodeKind.TARGET_HOST:
            if not node.host_ref:
                errors.append(f"Target host node '{node.display_name}' must have a host reference.")

        case NodeKind.LOCAL_PORT_FORWARD:
            _check_port(node, "local_port", "Local port forward", errors)
            _check_port(node, "remote_port", "Local port forward", errors)
            if not node.remote_host and not _adjacent_target_host(profile, node):
                result.add_warning(
                    f"Local port forward node '{node.display_name}' should specify a remote_host "
                    f"or connect to a TargetHost node (defaults to loopback)."
                )

        case NodeKind.REMOTE_PORT_FORWARD:
            _check_port(node, "remote_port", "Remote port forward", errors)
            _check_port(node, "local_port", "Remote port forward", errors)
            if not node.remote_host and not _adjacent_target_host(profile, node):
                result.add_warning(
                    f"Remote port forward node '{node.display_name}' should specify a remote_host "
                    f"or connect to a TargetHost node (defaults to loopback)."
                )

        case NodeKind.DYNAMIC_PROXY:
            _check_port(node, "local_port", "SOCKS proxy", errors)

    if node.remote_host and not is_valid_host(node.remote_host):
        errors.append(
            f"Node '{node.display_name}' has invalid remote_host format: '{node.remote_host}'. "
            f"Must be a valid hostname or IP address."
        )
    if node.bind_address and not is_valid_host(node.bind_address):
        errors.append(
            f"Node '{node.display_name}' has invalid bind_address: '{node.bind_address}'."
        )


def _successors(profile: TunnelProfile) -> Dict[str, List[str]]:
    adjacency: Dict[str, List[str]] = {n.id: [] for n in profile.nodes}
    for edge in profile.edges:
        if edge.source_node_id in adjacency and edge.target_node_id in adjacency:
            adjacency[edge.source_node_id].append(edge.target_node_id)
    return adjacency


def reachable_from(profile: TunnelProfile, start_id: str) -> Set[str]:
    """All node ids reachable from start_id, start included"""
    adjacency = _successors(profile)
    reachable: Set[str] = set()
    queue = deque([start_id])
    while queue:
        current = queue.popleft()
        if current in reachable:
            continue
        reachable.add(current)
        queue.extend(adjacency.get(current, ()))
    return reachable


def _has_reachable_cycle(profile: TunnelProfile, start_id: str) -> bool:
    adjacency = _successors(profile)
    done: Set[str] = set()
    on_stack: Set[str] = set()
    stack = [(start_id, iter(adjacency.get(start_id, ())))]
    on_stack.add(start_id)

    while stack:
        node_id, children = stack[-1]
        child = next(children, None)
        if child is None:
            stack.pop()
            on_stack.discard(node_id)
            done.add(node_id)
        elif child in on_stack:
            return True
        elif child not in done:
            on_stack.add(child)
            stack.append((child, iter(adjacency.get(child, ()))))
    return False


def validate_profile(profile: TunnelProfile) -> ValidationResult:
    """Validate a tunnel profile, returning every error and warning found"""
    result = ValidationResult()

    local_nodes = profile.local_machine_nodes()
    if not local_nodes:
        result.add_error("Tunnel profile must have a LocalMachine node as the starting point.")
    elif len(local_nodes) > 1:
        result.add_error("Tunnel profile can only have one LocalMachine node.")

    seen: Set[str] = set()
    for node in profile.nodes:
        if node.id in seen:
            result.add_error(f"Duplicate node id: {node.id}")
        seen.add(node.id)
        _validate_node(profile, node, result)

    for edge in profile.edges:
        if edge.source_node_id not in seen:
            result.add_error(f"Edge references non-existent source node: {edge.source_node_id}")
        if edge.target_node_id not in seen:
            result.add_error(f"Edge references non-existent target node: {edge.target_node_id}")
        if edge.source_node_id == edge.target_node_id:
            result.add_error(f"Edge cannot connect a node to itself: {edge.source_node_id}")

    if len(local_nodes) == 1:
        start = local_nodes[0]
        reachable = reachable_from(profile, start.id)

        for node in profile.nodes:
            if node.id not in reachable:
                result.add_warning(f"Node '{node.display_name}' is not reachable from LocalMachine.")

        if not any(
            n.kind.is_ssh_capable for n in profile.nodes if n.id in reachable
        ):
            result.add_error("No SSH host is reachable from LocalMachine.")

        if _has_reachable_cycle(profile, start.id):
            result.add_warning("Tunnel graph contains a cycle; it will be traversed once per path.")

    if result.errors:
        logger.debug(f"Profile '{profile.name}' failed validation with {len(result.errors)} error(s)")

    return result
