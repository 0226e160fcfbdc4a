"""
Tunnel graph models
A saved tunnel is a directed graph of nodes (local machine, SSH hosts, port forwards)
"""

from pydantic import BaseModel, ConfigDict, Field, computed_field
from typing import Optional, List, Dict, Tuple
from datetime import datetime
from enum import Enum
import uuid

from hopchain.models.ssh_tunnel import HostCredential


def _new_id() -> str:
    return str(uuid.uuid4())


class NodeKind(str, Enum):
    """Closed set of node types in a tunnel graph"""
    LOCAL_MACHINE = "local_machine"
    SSH_HOST = "ssh_host"
    TARGET_HOST = "target_host"
    LOCAL_PORT_FORWARD = "local_port_forward"
    REMOTE_PORT_FORWARD = "remote_port_forward"
    DYNAMIC_PROXY = "dynamic_proxy"

    @property
    def is_ssh_capable(self) -> bool:
        return self in (NodeKind.SSH_HOST, NodeKind.TARGET_HOST)

    @property
    def is_forward(self) -> bool:
        return self in (
            NodeKind.LOCAL_PORT_FORWARD,
            NodeKind.REMOTE_PORT_FORWARD,
            NodeKind.DYNAMIC_PROXY,
        )


class TunnelNode(BaseModel):
    """A point in the tunnel chain"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    kind: NodeKind
    host_ref: Optional[str] = Field(default=None, description="Reference into the host store")
    label: str = ""

    # Port forwarding fields.
    # LOCAL_PORT_FORWARD: local_port listens locally, traffic goes to remote_host:remote_port.
    # REMOTE_PORT_FORWARD: remote_port listens on the SSH server, traffic goes to remote_host:local_port.
    # DYNAMIC_PROXY: local_port is the SOCKS listener.
    local_port: Optional[int] = None
    remote_port: Optional[int] = None
    remote_host: Optional[str] = None
    bind_address: Optional[str] = None

    # Canvas position
    x: float = 0.0
    y: float = 0.0

    @property
    def display_name(self) -> str:
        return self.label or self.id


class TunnelEdge(BaseModel):
    """Directed adjacency between two nodes"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    source_node_id: str
    target_node_id: str


class TunnelProfile(BaseModel):
    """A saved tunnel configuration"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    name: str = Field(..., max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    nodes: List[TunnelNode] = Field(default_factory=list)
    edges: List[TunnelEdge] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    def get_node(self, node_id: str) -> Optional[TunnelNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def local_machine_nodes(self) -> List[TunnelNode]:
        return [n for n in self.nodes if n.kind == NodeKind.LOCAL_MACHINE]

    def neighbours(self, node_id: str) -> List[TunnelNode]:
        """Nodes joined to node_id by an edge in either direction"""
        ids = [e.target_node_id for e in self.edges if e.source_node_id == node_id]
        ids += [e.source_node_id for e in self.edges if e.target_node_id == node_id]
        return [n for n in (self.get_node(i) for i in ids) if n is not None]


class ValidationResult(BaseModel):
    """All problems found in a profile"""
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    @computed_field
    @property
    def is_valid(self) -> bool:
        return not self.errors

    def add_error(self, error: str):
        """Add error message"""
        self.errors.append(error)

    def add_warning(self, warning: str):
        """Add warning message"""
        self.warnings.append(warning)


class PlanEntry(BaseModel):
    """One node on the resolved path, with its credential once fetched"""
    model_config = ConfigDict(frozen=True)

    node: TunnelNode
    credential: Optional[HostCredential] = None


class HopPlan(BaseModel):
    """Resolver output: the best path from the start node, in order"""
    model_config = ConfigDict(frozen=True)

    profile_id: str
    start_node_id: str
    entries: Tuple[PlanEntry, ...]
    # Forward nodes reachable from the start node but not on the path
    attached_forwards: Tuple[TunnelNode, ...] = ()
    # Forward node id -> remote host supplied by an adjacent TargetHost node
    forward_hosts: Dict[str, str] = Field(default_factory=dict)

    @property
    def hops(self) -> List[PlanEntry]:
        """SSH-capable entries in path order"""
        return [e for e in self.entries if e.node.kind.is_ssh_capable]

    @property
    def proxies(self) -> List[PlanEntry]:
        return self.hops[:-1]

    @property
    def target(self) -> PlanEntry:
        return self.hops[-1]

    @property
    def forward_nodes(self) -> List[TunnelNode]:
        """Forward nodes on the path followed by attached ones"""
        on_path = [e.node for e in self.entries if e.node.kind.is_forward]
        return on_path + list(self.attached_forwards)

    @property
    def has_credentials(self) -> bool:
        return all(e.credential is not None for e in self.hops)

    def with_credentials(self, credentials: Dict[str, HostCredential]) -> "HopPlan":
        """Return a copy with credentials attached, keyed by node id"""
        entries = tuple(
            PlanEntry(node=e.node, credential=credentials.get(e.node.id, e.credential))
            for e in self.entries
        )
        return self.model_copy(update={"entries": entries})


# ============================================================================
# API request/response models
# ============================================================================

class TunnelRequest(BaseModel):
    """A profile plus the credentials for its host references"""
    profile: TunnelProfile
    credentials: Dict[str, HostCredential] = Field(
        default_factory=dict,
        description="host_ref -> credential",
    )


class PlanSummary(BaseModel):
    """Resolved hop order of a profile"""
    profile_id: str
    hops: List[TunnelNode]
    forwards: List[TunnelNode]
    warnings: List[str] = Field(default_factory=list)

    @classmethod
    def from_plan(cls, plan: HopPlan, warnings: Optional[List[str]] = None) -> "PlanSummary":
        return cls(
            profile_id=plan.profile_id,
            hops=[e.node for e in plan.hops],
            forwards=plan.forward_nodes,
            warnings=warnings or [],
        )


class CommandResponse(BaseModel):
    command: str
