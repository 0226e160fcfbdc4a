"""
Credential stage
Materialises a HostCredential for every SSH-capable node of a hop plan
"""

import logging
from typing import Dict, Mapping, Protocol, runtime_checkable

from hopchain.core.exceptions import MissingCredentialError
from hopchain.models.ssh_tunnel import HostCredential
from hopchain.models.tunnel_graph import HopPlan

logger = logging.getLogger(__name__)


@runtime_checkable
class CredentialResolver(Protocol):
    """Looks up connection parameters for a host reference"""

    async def resolve(self, host_ref: str) -> HostCredential:
        ...


class StaticCredentialResolver:
    """Credential resolver backed by an in-memory mapping"""

    def __init__(self, credentials: Mapping[str, HostCredential] = None):
        self._credentials: Dict[str, HostCredential] = dict(credentials or {})

    def add(self, host_ref: str, credential: HostCredential):
        self._credentials[host_ref] = credential

    async def resolve(self, host_ref: str) -> HostCredential:
        try:
            return self._credentials[host_ref]
        except KeyError:
            raise LookupError(f"Unknown host reference: {host_ref}") from None


async def fetch_credentials(plan: HopPlan, resolver: CredentialResolver) -> HopPlan:
    """
    Resolve credentials for every SSH-capable entry of a plan.

    Entries that already carry a credential are left alone.

    Returns:
        A new plan with credentials attached

    Raises:
        MissingCredentialError: if a node has no host_ref or the resolver fails
    """
    resolved: Dict[str, HostCredential] = {}

    for entry in plan.hops:
        node = entry.node
        if entry.credential is not None:
            continue
        if not node.host_ref:
            raise MissingCredentialError(node.id, node.label, "no host reference")

        try:
            credential = await resolver.resolve(node.host_ref)
        except Exception as e:
            logger.error(f"Failed to resolve credential for node {node.display_name}: {e}")
            raise MissingCredentialError(node.id, node.label, str(e)) from e

        if credential is None:
            raise MissingCredentialError(node.id, node.label, f"host '{node.host_ref}' not found")

        logger.debug(f"Resolved credential for {node.display_name}: {credential.get_masked_config()}")
        resolved[node.id] = credential

    return plan.with_credentials(resolved)
