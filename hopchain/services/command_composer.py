"""
SSH command composition
Renders a resolved hop plan as a portable OpenSSH command line
"""

import ipaddress
import logging
from typing import Dict, List, Optional

from hopchain.core.constants import (
    LOOPBACK_ADDRESS,
    PORT_MAX,
    PORT_MIN,
    SSH_DEFAULT_PORT,
    is_identifier_char,
)
from hopchain.core.exceptions import CommandValidationError
from hopchain.models.ssh_tunnel import HostCredential
from hopchain.models.tunnel_graph import HopPlan, NodeKind, PlanEntry, TunnelNode

logger = logging.getLogger(__name__)


def sanitize_identifier(value: Optional[str], field: str) -> str:
    """
    Check that a username or hostname is safe to embed in a command.

    Args:
        value: The identifier to check
        field: Name of the field, for error messages

    Returns:
        The identifier, unchanged

    Raises:
        CommandValidationError: if the value is empty or contains a character
            outside letters, digits and . - _ @ : [ ]
    """
    if value is None or value == "":
        raise CommandValidationError(f"{field} cannot be empty", value=value, field=field)

    for ch in value:
        if not is_identifier_char(ch):
            raise CommandValidationError(
                f"Invalid character '{ch}' in {field}: '{value}'",
                value=value,
                field=field,
                character=ch,
            )
    return value


def validate_port(port: Optional[int], field: str) -> int:
    """Return the port if it is in [1, 65535], raise CommandValidationError otherwise"""
    if port is None:
        raise CommandValidationError(f"{field} is required", field=field)
    if isinstance(port, bool) or not isinstance(port, int) or not (PORT_MIN <= port <= PORT_MAX):
        raise CommandValidationError(
            f"{field} must be between {PORT_MIN} and {PORT_MAX}, got {port}",
            value=str(port),
            field=field,
        )
    return port


def _is_bare_ipv6(host: str) -> bool:
    try:
        return isinstance(ipaddress.ip_address(host), ipaddress.IPv6Address)
    except ValueError:
        return False


def _bracket(host: str) -> str:
    """Bracket a bare IPv6 literal so a following ':port' stays unambiguous"""
    return f"[{host}]" if _is_bare_ipv6(host) else host


def _credential_for(entry: PlanEntry) -> HostCredential:
    if entry.credential is None:
        raise CommandValidationError(
            f"No credential resolved for node {entry.node.id}",
            field="credential",
        )
    return entry.credential


def _user_host(credential: HostCredential) -> str:
    host = sanitize_identifier(credential.hostname, "hostname")
    if credential.username:
        user = sanitize_identifier(credential.username, "username")
        return f"{user}@{host}"
    return host


def format_host(credential: HostCredential) -> str:
    """Format one host as [user@]host[:port]"""
    validate_port(credential.port, "port")
    if credential.port == SSH_DEFAULT_PORT:
        return _user_host(credential)

    host = sanitize_identifier(credential.hostname, "hostname")
    host = _bracket(host)
    if credential.username:
        user = sanitize_identifier(credential.username, "username")
        return f"{user}@{host}:{credential.port}"
    return f"{host}:{credential.port}"


def _forward_host(node: TunnelNode, forward_hosts: Dict[str, str]) -> str:
    host = node.remote_host or forward_hosts.get(node.id) or LOOPBACK_ADDRESS
    return _bracket(sanitize_identifier(host, "remote_host"))


def _bind_address(node: TunnelNode) -> str:
    bind = node.bind_address or LOOPBACK_ADDRESS
    return _bracket(sanitize_identifier(bind, "bind_address"))


def format_forward(node: TunnelNode, forward_hosts: Dict[str, str]) -> List[str]:
    """
    Format a forward node as command arguments.

    -L bind:local_port:host:remote_port
    -R bind:remote_port:host:local_port
    -D bind:local_port
    """
    bind = _bind_address(node)

    match node.kind:
        case NodeKind.LOCAL_PORT_FORWARD:
            local_port = validate_port(node.local_port, "local_port")
            remote_port = validate_port(node.remote_port, "remote_port")
            host = _forward_host(node, forward_hosts)
            return ["-L", f"{bind}:{local_port}:{host}:{remote_port}"]

        case NodeKind.REMOTE_PORT_FORWARD:
            remote_port = validate_port(node.remote_port, "remote_port")
            local_port = validate_port(node.local_port, "local_port")
            host = _forward_host(node, forward_hosts)
            return ["-R", f"{bind}:{remote_port}:{host}:{local_port}"]

        case NodeKind.DYNAMIC_PROXY:
            local_port = validate_port(node.local_port, "local_port")
            return ["-D", f"{bind}:{local_port}"]

        case _:
            return []


def compose(plan: HopPlan) -> str:
    """
    Render a hop plan as an ssh command.

    Output shape: ssh [-J p1,p2,...] target [-L ...] [-R ...] [-D ...]

    Every host is [user@]host[:port]; a target with a port is written as
    ssh://[user@]host:port

    Raises:
        CommandValidationError: on a missing credential, an unsafe identifier
            or a port out of range
    """
    hops = plan.hops
    if not hops:
        raise CommandValidationError("Hop plan has no SSH host", field="entries")

    parts = ["ssh"]

    proxies = [format_host(_credential_for(entry)) for entry in plan.proxies]
    if proxies:
        parts += ["-J", ",".join(proxies)]

    # A destination only carries a port in URI form
    target = _credential_for(plan.target)
    destination = format_host(target)
    if target.port != SSH_DEFAULT_PORT:
        destination = f"ssh://{destination}"
    parts.append(destination)

    forwards = plan.forward_nodes
    for kind in (NodeKind.LOCAL_PORT_FORWARD, NodeKind.REMOTE_PORT_FORWARD, NodeKind.DYNAMIC_PROXY):
        for node in forwards:
            if node.kind == kind:
                parts += format_forward(node, plan.forward_hosts)

    command = " ".join(parts)
    logger.debug(f"Composed command for profile {plan.profile_id}: {command}")
    return command
