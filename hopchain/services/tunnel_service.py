"""
Tunnel Service
Validates, previews and executes tunnel profiles, and tracks the tunnels that are running
"""

import asyncio
import logging
import uuid
from typing import Callable, Dict, List, Optional, Set, Tuple

from hopchain.core.config import settings
from hopchain.core.exceptions import InvalidProfileError
from hopchain.models.ssh_tunnel import ActiveTunnel, TunnelStatus
from hopchain.models.tunnel_graph import HopPlan, TunnelProfile, ValidationResult
from hopchain.services import command_composer, path_resolver
from hopchain.services.chain_builder import ChainBuilder
from hopchain.services.connection_handle import ConnectionHandle
from hopchain.services.credentials import CredentialResolver, fetch_credentials
from hopchain.services.graph_validator import validate_profile
from hopchain.services.ssh_connector import AsyncsshConnector, HostKeyVerifier, SingleHopConnector

logger = logging.getLogger(__name__)


class TunnelService:
    """Runs tunnel profiles and keeps one live chain per profile"""

    def __init__(
        self,
        connector: Optional[SingleHopConnector] = None,
        builder: Optional[ChainBuilder] = None,
    ):
        self._connector = connector
        self._builder = builder

        self.active_tunnels: Dict[str, ActiveTunnel] = {}
        self._handles: Dict[str, ConnectionHandle] = {}
        self._unsubscribers: Dict[str, Callable[[], None]] = {}
        self._cleanup_tasks: Set[asyncio.Task] = set()
        self._locks: Dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Preview
    # ------------------------------------------------------------------

    def validate(self, profile: TunnelProfile) -> ValidationResult:
        """Validate a profile without touching the network"""
        return validate_profile(profile)

    def resolve(self, profile: TunnelProfile) -> HopPlan:
        """Validate and resolve a profile into a hop plan"""
        result = validate_profile(profile)
        if not result.is_valid:
            raise InvalidProfileError(result)
        for warning in result.warnings:
            logger.warning(f"Profile '{profile.name}': {warning}")
        return path_resolver.resolve(profile)

    async def generate_command(self, profile: TunnelProfile, resolver: CredentialResolver) -> str:
        """Render the ssh command equivalent to a profile"""
        plan = self.resolve(profile)
        plan = await fetch_credentials(plan, resolver)
        return command_composer.compose(plan)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _get_builder(self, host_key_verifier: Optional[HostKeyVerifier]) -> ChainBuilder:
        if self._builder is not None:
            return self._builder
        return ChainBuilder(self._connector or AsyncsshConnector(host_key_verifier))

    async def execute(
        self,
        profile: TunnelProfile,
        resolver: CredentialResolver,
        cancel_token: Optional[asyncio.Event] = None,
        host_key_verifier: Optional[HostKeyVerifier] = None,
        term_size: Optional[Tuple[int, int]] = None,
    ) -> ActiveTunnel:
        """
        Build the live chain for a profile and register it.

        A tunnel already running for the same profile is stopped first.

        Raises:
            InvalidProfileError: if the profile fails validation
            HopConnectionError: if a hop fails
            ChainCancelledError: if cancel_token is set during the build
        """
        plan = self.resolve(profile)
        plan = await fetch_credentials(plan, resolver)

        # One build at a time per profile
        lock = self._locks.setdefault(profile.id, asyncio.Lock())
        async with lock:
            if profile.id in self._handles:
                logger.info(f"Replacing running tunnel for profile '{profile.name}'")
                await self.stop(profile.id)

            builder = self._get_builder(host_key_verifier)
            handle = await builder.build(plan, resolver, cancel_token, term_size=term_size)

            tunnel = ActiveTunnel(
                profile_id=profile.id,
                session_id=str(uuid.uuid4()),
                display_name=profile.name,
                status=TunnelStatus.CONNECTED,
                hop_count=handle.hop_count,
                local_forwards=handle.local_forwards,
            )
            self.active_tunnels[profile.id] = tunnel
            self._handles[profile.id] = handle
            self._unsubscribers[profile.id] = handle.subscribe_disconnected(self._on_disconnected)

        logger.info(f"Tunnel established for profile '{profile.name}' ({tunnel.session_id})")
        return tunnel

    def _on_disconnected(self, handle: ConnectionHandle, reason: str) -> None:
        if reason == "disposed":
            return
        profile_id = handle.profile_id
        if self._handles.get(profile_id) is not handle:
            return

        logger.warning(f"Tunnel for profile {profile_id} disconnected: {reason}")
        self._deregister(profile_id)

        task = asyncio.get_running_loop().create_task(handle.dispose())
        self._cleanup_tasks.add(task)
        task.add_done_callback(self._cleanup_tasks.discard)

    def _deregister(self, profile_id: str) -> Optional[ConnectionHandle]:
        handle = self._handles.pop(profile_id, None)
        unsubscribe = self._unsubscribers.pop(profile_id, None)
        if unsubscribe is not None:
            unsubscribe()
        tunnel = self.active_tunnels.pop(profile_id, None)
        if tunnel is not None:
            tunnel.status = TunnelStatus.DISCONNECTED
        return handle

    async def stop(self, profile_id: str) -> bool:
        """Stop a running tunnel; False if none is running for the profile"""
        handle = self._deregister(profile_id)
        if handle is None:
            return False

        try:
            await asyncio.wait_for(handle.dispose(), timeout=settings.DISPOSE_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning(f"Timed out disposing tunnel for profile {profile_id}")

        logger.info(f"Tunnel stopped for profile {profile_id}")
        return True

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def list_active(self) -> List[ActiveTunnel]:
        return list(self.active_tunnels.values())

    def get_handle(self, profile_id: str) -> Optional[ConnectionHandle]:
        return self._handles.get(profile_id)

    def is_running(self, profile_id: str) -> bool:
        handle = self._handles.get(profile_id)
        return handle is not None and handle.is_connected

    async def shutdown(self):
        """Stop every tunnel"""
        logger.info("Shutting down tunnel service...")

        for profile_id in list(self._handles.keys()):
            await self.stop(profile_id)

        if self._cleanup_tasks:
            await asyncio.gather(*self._cleanup_tasks, return_exceptions=True)

        logger.info("Tunnel service shutdown complete")


# Global tunnel service instance
tunnel_service = TunnelService()
