"""
Single-hop SSH connector
Opens one SSH client connection, directly or through a local forward of the previous hop
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

import asyncssh

from hopchain.core.config import settings
from hopchain.core.constants import classify_failure
from hopchain.models.ssh_tunnel import HostCredential, SSHAuthMethod

logger = logging.getLogger(__name__)


# (hostname, port, algorithm, fingerprint) -> accept?
HostKeyVerifier = Callable[[str, int, str, str], bool]

# Called with the exception (or None) when an established connection drops
LostCallback = Callable[[Optional[Exception]], None]


class SingleHopConnector(Protocol):
    """Opens one SSH connection for a hop"""

    async def connect(
        self,
        credential: HostCredential,
        via: Optional[Tuple[str, int]] = None,
        on_lost: Optional[LostCallback] = None,
    ) -> Any:
        ...


def classify_exception(exc: BaseException) -> str:
    """Map a connect failure to auth, host_key, timeout, refused or transport"""
    if isinstance(exc, asyncssh.PermissionDenied):
        return "auth"
    if isinstance(exc, asyncssh.HostKeyNotVerifiable):
        return "host_key"
    if isinstance(exc, asyncio.TimeoutError):
        return "timeout"
    if isinstance(exc, ConnectionRefusedError):
        return "refused"
    return classify_failure(str(exc))


class _HopClient(asyncssh.SSHClient):
    """SSH client that reports connection loss and optionally checks host keys"""

    def __init__(
        self,
        credential: HostCredential,
        verifier: Optional[HostKeyVerifier] = None,
        on_lost: Optional[LostCallback] = None,
    ):
        super().__init__()
        self._credential = credential
        self._verifier = verifier
        self._on_lost = on_lost

    def validate_host_public_key(self, host: str, addr: str, port: int, key: asyncssh.SSHKey) -> bool:
        if self._verifier is None:
            return False
        # Report the real hop address, not the loopback forward it was reached through
        accepted = self._verifier(
            self._credential.hostname,
            self._credential.port,
            key.get_algorithm(),
            key.get_fingerprint(),
        )
        if not accepted:
            logger.warning(f"Host key rejected for {self._credential.address}")
        return accepted

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if self._on_lost is not None:
            self._on_lost(exc)


class AsyncsshConnector:
    """SingleHopConnector backed by asyncssh"""

    def __init__(self, host_key_verifier: Optional[HostKeyVerifier] = None):
        self.host_key_verifier = host_key_verifier

    def _prepare_auth_options(self, credential: HostCredential) -> Dict[str, Any]:
        """Prepare SSH authentication and host key options for asyncssh.connect"""
        options: Dict[str, Any] = {}
        secret = credential.secret.get_secret_value() if credential.secret else None

        if credential.auth_method == SSHAuthMethod.PASSWORD:
            if secret is None:
                raise ValueError("Password authentication selected but no password provided")
            options['password'] = secret

        elif credential.auth_method == SSHAuthMethod.PRIVATE_KEY:
            if not credential.private_key_path or not credential.private_key_path.strip():
                logger.error("Private key authentication selected but no key path provided")
                raise ValueError("Private key path is required for key authentication")
            options['client_keys'] = [credential.private_key_path.strip()]
            if secret is not None:
                options['passphrase'] = secret

        elif credential.auth_method == SSHAuthMethod.SSH_AGENT:
            # asyncssh picks up SSH_AUTH_SOCK by default
            logger.debug("Using SSH agent for authentication")

        # Host key verification
        if credential.skip_host_key_verification or not settings.STRICT_HOST_KEY_CHECKING:
            options['known_hosts'] = None
            logger.warning(
                f"SECURITY: host key verification disabled for {credential.address}; "
                f"the connection is open to man-in-the-middle attacks"
            )
        elif self.host_key_verifier is not None:
            # Empty known_hosts routes every key through validate_host_public_key
            options['known_hosts'] = ()
        else:
            known_hosts = credential.known_hosts_path or settings.KNOWN_HOSTS_PATH
            if known_hosts and known_hosts.strip():
                options['known_hosts'] = known_hosts.strip()
                logger.debug(f"Using known_hosts file: {known_hosts.strip()}")
            else:
                logger.debug("No known_hosts_path specified, using asyncssh default")

        return options

    async def connect(
        self,
        credential: HostCredential,
        via: Optional[Tuple[str, int]] = None,
        on_lost: Optional[LostCallback] = None,
    ) -> asyncssh.SSHClientConnection:
        """
        Connect to one hop.

        Args:
            credential: Connection parameters of the hop
            via: Loopback (host, port) of a forward opened on the previous hop;
                None connects directly
            on_lost: Called once the established connection drops
        """
        options = self._prepare_auth_options(credential)

        keepalive = credential.keepalive_interval
        if keepalive is None:
            keepalive = settings.KEEPALIVE_INTERVAL

        if via is None:
            host, port = credential.hostname, credential.port
        else:
            host, port = via
            # Match known_hosts entries against the real hop, not the loopback address
            options['host_key_alias'] = credential.hostname

        logger.debug(
            f"asyncssh.connect to {credential.get_connection_string()}"
            f"{f' via {host}:{port}' if via else ''}, auth options: {list(options.keys())}"
        )

        def create_client() -> _HopClient:
            return _HopClient(credential, self.host_key_verifier, on_lost)

        return await asyncssh.connect(
            host,
            port=port,
            username=credential.username or None,
            keepalive_interval=keepalive,
            client_factory=create_client,
            **options,
        )


__all__ = [
    "HostKeyVerifier",
    "LostCallback",
    "SingleHopConnector",
    "AsyncsshConnector",
    "classify_exception",
]
