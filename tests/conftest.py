"""
Shared fixtures: profile builders and an in-memory stand-in for asyncssh connections
"""

import asyncio
from typing import Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

import pytest

from hopchain.models.ssh_tunnel import HostCredential
from hopchain.models.tunnel_graph import NodeKind, TunnelEdge, TunnelNode, TunnelProfile
from hopchain.services.credentials import StaticCredentialResolver


# ============================================================================
# Graph builders
# ============================================================================

def node(node_id: str, kind: NodeKind, **fields) -> TunnelNode:
    return TunnelNode(id=node_id, kind=kind, **fields)


def local(node_id: str = "local") -> TunnelNode:
    return node(node_id, NodeKind.LOCAL_MACHINE, label="Local")


def ssh_host(node_id: str, host_ref: Optional[str] = None, label: str = "") -> TunnelNode:
    return node(node_id, NodeKind.SSH_HOST, host_ref=host_ref or node_id, label=label)


def target_host(node_id: str, host_ref: Optional[str] = None, label: str = "", **fields) -> TunnelNode:
    return node(node_id, NodeKind.TARGET_HOST, host_ref=host_ref or node_id, label=label, **fields)


def edges(*pairs: Tuple[str, str]) -> List[TunnelEdge]:
    return [
        TunnelEdge(id=f"e{i}", source_node_id=src, target_node_id=dst)
        for i, (src, dst) in enumerate(pairs)
    ]


def profile(nodes: List[TunnelNode], *pairs: Tuple[str, str], name: str = "test") -> TunnelProfile:
    return TunnelProfile(id=f"profile-{name}", name=name, nodes=nodes, edges=edges(*pairs))


@pytest.fixture
def e2e_profile() -> TunnelProfile:
    """Local -> BastionA -> BastionB -> Target"""
    return profile(
        [
            local(),
            ssh_host("bastion-a", "host-a", label="BastionA"),
            ssh_host("bastion-b", "host-b", label="BastionB"),
            target_host("target", "host-c", label="Target"),
        ],
        ("local", "bastion-a"),
        ("bastion-a", "bastion-b"),
        ("bastion-b", "target"),
        name="e2e",
    )


@pytest.fixture
def e2e_credentials() -> Dict[str, HostCredential]:
    return {
        "host-a": HostCredential(hostname="hostA", port=2222, username="user1"),
        "host-b": HostCredential(hostname="hostB", username="user2"),
        "host-c": HostCredential(hostname="hostC", username="user3"),
    }


@pytest.fixture
def e2e_resolver(e2e_credentials) -> StaticCredentialResolver:
    return StaticCredentialResolver(e2e_credentials)


# ============================================================================
# Fake transport
# ============================================================================

class FakeListener:
    """Stands in for an asyncssh SSHListener"""

    def __init__(self, name: str, port: int, log: List[Tuple[str, str]]):
        self.name = name
        self.port = port
        self.log = log
        self.close_count = 0

    def get_port(self) -> int:
        return self.port

    def close(self):
        self.close_count += 1
        self.log.append(("close", self.name))

    async def wait_closed(self):
        pass


class FakeProcess:
    """Stands in for an asyncssh SSHClientProcess running a shell"""

    def __init__(self, name: str, log: List[Tuple[str, str]], term_type=None, term_size=None):
        self.name = name
        self.log = log
        self.term_type = term_type
        self.term_size = term_size
        self.sizes: List[Tuple[int, int]] = []
        self.close_count = 0
        self._closed = asyncio.Event()

    def change_terminal_size(self, cols: int, rows: int):
        self.sizes.append((cols, rows))

    def close(self):
        self.close_count += 1
        self.log.append(("close", self.name))
        self._closed.set()

    def remote_exit(self):
        """Simulate the remote shell exiting on its own"""
        self._closed.set()

    async def wait_closed(self):
        await self._closed.wait()


class FakeConnection:
    """Stands in for an asyncssh SSHClientConnection"""

    def __init__(self, name: str, log: List[Tuple[str, str]], on_lost=None, ports=None):
        self.name = name
        self.log = log
        self.on_lost = on_lost
        self.close_count = 0
        self.listeners: List[FakeListener] = []
        self.processes: List[FakeProcess] = []
        self._ports = ports
        self.fail_forward: Optional[Exception] = None
        self.run = AsyncMock(return_value=MagicMock(stdout="ok\n"))

    def _next_port(self) -> int:
        return next(self._ports)

    def _listener(self, name: str) -> FakeListener:
        listener = FakeListener(name, self._next_port(), self.log)
        self.listeners.append(listener)
        self.log.append(("open", name))
        return listener

    async def forward_local_port(self, listen_host, listen_port, dest_host, dest_port):
        if self.fail_forward is not None:
            raise self.fail_forward
        return self._listener(f"{self.name}:L:{listen_host}:{listen_port}->{dest_host}:{dest_port}")

    async def forward_remote_port(self, listen_host, listen_port, dest_host, dest_port):
        return self._listener(f"{self.name}:R:{listen_host}:{listen_port}->{dest_host}:{dest_port}")

    async def forward_socks(self, listen_host, listen_port):
        return self._listener(f"{self.name}:D:{listen_host}:{listen_port}")

    async def create_process(self, term_type=None, term_size=None):
        process = FakeProcess(f"{self.name}:shell", self.log, term_type, term_size)
        self.processes.append(process)
        self.log.append(("open", process.name))
        return process

    def close(self):
        self.close_count += 1
        self.log.append(("close", self.name))

    async def wait_closed(self):
        pass

    def lose(self, exc: Optional[Exception] = None):
        """Simulate the transport dropping"""
        if self.on_lost is not None:
            self.on_lost(exc)


def _port_counter(start: int = 40000):
    port = start
    while True:
        port += 1
        yield port


class FakeConnector:
    """
    SingleHopConnector that hands out FakeConnections.

    failures maps a 1-based hop index to the exception its connect raises;
    hangs lists hop indexes whose connect never completes.
    """

    def __init__(self, failures: Optional[Dict[int, Exception]] = None, hangs=()):
        self.failures = failures or {}
        self.hangs = set(hangs)
        self.log: List[Tuple[str, str]] = []
        self.calls: List[Tuple[HostCredential, Optional[Tuple[str, int]]]] = []
        self.connections: List[FakeConnection] = []
        self._ports = _port_counter()

    async def connect(self, credential: HostCredential, via=None, on_lost=None):
        index = len(self.calls) + 1
        self.calls.append((credential, via))
        self.log.append(("connect", credential.hostname))

        if index in self.failures:
            raise self.failures[index]
        if index in self.hangs:
            await asyncio.Event().wait()

        conn = FakeConnection(credential.hostname, self.log, on_lost, self._ports)
        self.connections.append(conn)
        return conn


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()
