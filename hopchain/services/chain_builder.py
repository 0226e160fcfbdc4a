"""
Chain Builder Service
Builds a live nested SSH tunnel from a hop plan, rolling back everything on failure
"""

import asyncio
import logging
from typing import Any, Awaitable, Dict, List, Optional, Tuple

from hopchain.core.config import settings
from hopchain.core.constants import (
    HOP_FORWARD_LISTEN_HOST,
    HOP_FORWARD_LISTEN_PORT,
    LOOPBACK_ADDRESS,
)
from hopchain.core.exceptions import (
    ChainCancelledError,
    HopConnectionError,
    MissingCredentialError,
    NoPathError,
)
from hopchain.models.ssh_tunnel import HostCredential
from hopchain.models.tunnel_graph import HopPlan, NodeKind, TunnelNode
from hopchain.services.command_composer import validate_port
from hopchain.services.connection_handle import ConnectionHandle, SignalRelay, close_resource
from hopchain.services.credentials import CredentialResolver, fetch_credentials
from hopchain.services.ssh_connector import AsyncsshConnector, SingleHopConnector, classify_exception

logger = logging.getLogger(__name__)


class _TokenCancelled(Exception):
    """Internal: the cancellation token fired while a step was in flight"""


class _HopLost(Exception):
    """Internal: an already connected hop dropped before the build finished"""

    def __init__(self, hop_index: int, host: str, reason: str):
        self.hop_index = hop_index
        self.host = host
        super().__init__(f"Transport lost during build ({reason})")


async def _abandon(task: asyncio.Future) -> None:
    """Cancel a step; if it completed anyway, close what it produced"""
    task.cancel()
    try:
        result = await task
    except (asyncio.CancelledError, Exception):
        return
    if result is not None:
        await close_resource(result)


async def _run_step(aw: Awaitable, timeout: float, cancel_token: Optional[asyncio.Event]) -> Any:
    """Await one build step, bounded by timeout and raced against the cancellation token"""
    task = asyncio.ensure_future(aw)
    waiter = asyncio.ensure_future(cancel_token.wait()) if cancel_token is not None else None
    pending = {task} if waiter is None else {task, waiter}

    try:
        done, _ = await asyncio.wait(pending, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        await _abandon(task)
        raise
    finally:
        if waiter is not None:
            waiter.cancel()

    if task in done:
        return task.result()

    await _abandon(task)
    if waiter is not None and waiter in done:
        raise _TokenCancelled()
    raise asyncio.TimeoutError(f"step did not complete within {timeout}s")


def _forward_target(node: TunnelNode, plan: HopPlan) -> Tuple[str, str]:
    bind = node.bind_address or settings.DEFAULT_BIND_ADDRESS
    host = node.remote_host or plan.forward_hosts.get(node.id) or LOOPBACK_ADDRESS
    return bind, host


def _check_forwards(plan: HopPlan) -> None:
    """Reject bad forward ports before anything is opened"""
    for node in plan.forward_nodes:
        match node.kind:
            case NodeKind.LOCAL_PORT_FORWARD | NodeKind.REMOTE_PORT_FORWARD:
                validate_port(node.local_port, "local_port")
                validate_port(node.remote_port, "remote_port")
            case NodeKind.DYNAMIC_PROXY:
                validate_port(node.local_port, "local_port")
            case _:
                pass


class ChainBuilder:
    """Connects hop after hop through loopback forwards and hands back a ConnectionHandle"""

    def __init__(self, connector: Optional[SingleHopConnector] = None):
        self.connector = connector or AsyncsshConnector()

    async def build(
        self,
        plan: HopPlan,
        credential_resolver: Optional[CredentialResolver] = None,
        cancel_token: Optional[asyncio.Event] = None,
        *,
        term_size: Optional[Tuple[int, int]] = None,
    ) -> ConnectionHandle:
        """
        Build the chain described by plan.

        Hop 1 connects directly. For every following hop a local forward is
        opened through the previous hop on an ephemeral loopback port, and the
        next hop connects to it. The target gets an interactive shell and any
        forward nodes of the plan.

        Args:
            plan: Resolved hop plan
            credential_resolver: Used when the plan has no credentials yet
            cancel_token: Setting this event aborts the build
            term_size: (cols, rows) of the shell; settings defaults when None

        Raises:
            MissingCredentialError: if a hop has no credential
            HopConnectionError: if any hop fails; everything opened is closed first
            ChainCancelledError: if cancel_token is set before the build completes
            asyncio.CancelledError: if the calling task is cancelled, after rollback
        """
        if not plan.hops:
            raise NoPathError(f"Hop plan for profile {plan.profile_id} has no SSH host")

        if not plan.has_credentials:
            if credential_resolver is None:
                missing = next(e for e in plan.hops if e.credential is None)
                raise MissingCredentialError(missing.node.id, missing.node.label)
            plan = await fetch_credentials(plan, credential_resolver)

        _check_forwards(plan)

        hops = plan.hops
        credentials: List[HostCredential] = [entry.credential for entry in hops]
        cols, rows = term_size or (settings.DEFAULT_TERM_COLS, settings.DEFAULT_TERM_ROWS)

        logger.info(f"Building chain for profile {plan.profile_id}: {len(hops)} hop(s)")

        resources: List[Any] = []
        relay = SignalRelay()
        # relay reason -> (hop index, address) of the hop that reports it
        lost_reasons: Dict[str, Tuple[int, str]] = {}
        shell = None
        hop_index, host = 1, credentials[0].address

        def check_lost() -> None:
            reason = relay.pending
            if reason is not None:
                raise _HopLost(*lost_reasons[reason], reason)

        try:
            via: Optional[Tuple[str, int]] = None
            target = None

            for hop_index, credential in enumerate(credentials, start=1):
                host = credential.address
                if cancel_token is not None and cancel_token.is_set():
                    raise _TokenCancelled()

                timeout = credential.connect_timeout or settings.HOP_CONNECT_TIMEOUT
                is_target = hop_index == len(credentials)
                lost_reason = "target_lost" if is_target else f"hop_{hop_index}_lost"
                lost_reasons[lost_reason] = (hop_index, host)

                conn = await _run_step(
                    self.connector.connect(credential, via=via, on_lost=relay.bind(lost_reason)),
                    timeout,
                    cancel_token,
                )
                resources.append(conn)
                check_lost()
                logger.info(f"Hop {hop_index} connected: {credential.get_connection_string()}")

                if is_target:
                    target = conn
                    break

                next_hop = credentials[hop_index]
                listener = await _run_step(
                    conn.forward_local_port(
                        HOP_FORWARD_LISTEN_HOST,
                        HOP_FORWARD_LISTEN_PORT,
                        next_hop.hostname,
                        next_hop.port,
                    ),
                    timeout,
                    cancel_token,
                )
                resources.append(listener)
                check_lost()
                via = (HOP_FORWARD_LISTEN_HOST, listener.get_port())
                logger.debug(f"Hop {hop_index} forwarding {via[0]}:{via[1]} -> {next_hop.address}")

            timeout = credentials[-1].connect_timeout or settings.HOP_CONNECT_TIMEOUT
            shell = await _run_step(
                target.create_process(term_type=settings.DEFAULT_TERM_TYPE, term_size=(cols, rows)),
                timeout,
                cancel_token,
            )

            local_forwards = {}
            for node in plan.forward_nodes:
                listener = await _run_step(self._start_forward(target, node, plan), timeout, cancel_token)
                resources.append(listener)
                local_forwards[node.id] = listener.get_port()
                logger.info(f"Forward {node.kind.value} ({node.display_name}) listening on port {local_forwards[node.id]}")

            # Nothing awaits between this check and the handle attaching to the relay
            check_lost()

        except _TokenCancelled:
            logger.info(f"Chain build for profile {plan.profile_id} cancelled at hop {hop_index}")
            await self._rollback(shell, resources)
            raise ChainCancelledError(hop_index) from None
        except _HopLost as e:
            logger.error(f"Hop {e.hop_index} ({e.host}) dropped while building profile {plan.profile_id}")
            await self._rollback(shell, resources)
            raise HopConnectionError(e.hop_index, e.host, "transport", str(e)) from None
        except asyncio.CancelledError:
            await self._rollback(shell, resources)
            raise
        except Exception as e:
            reason = classify_exception(e)
            logger.error(f"Hop {hop_index} ({host}) failed [{reason}]: {e}")
            await self._rollback(shell, resources)
            raise HopConnectionError(hop_index, host, reason, str(e) or type(e).__name__) from e

        return ConnectionHandle(
            plan.profile_id,
            target,
            shell,
            resources,
            relay=relay,
            local_forwards=local_forwards,
            hop_count=len(hops),
        )

    async def _start_forward(self, target: Any, node: TunnelNode, plan: HopPlan) -> Any:
        bind, host = _forward_target(node, plan)

        match node.kind:
            case NodeKind.LOCAL_PORT_FORWARD:
                return await target.forward_local_port(bind, node.local_port, host, node.remote_port)
            case NodeKind.REMOTE_PORT_FORWARD:
                return await target.forward_remote_port(bind, node.remote_port, host, node.local_port)
            case NodeKind.DYNAMIC_PROXY:
                return await target.forward_socks(bind, node.local_port)
            case _:
                raise ValueError(f"Node {node.id} is not a forward node")

    async def _rollback(self, shell: Any, resources: List[Any]) -> None:
        """Close everything opened so far, newest first"""
        if shell is not None:
            await close_resource(shell)
        for resource in reversed(resources):
            await close_resource(resource)
        resources.clear()
