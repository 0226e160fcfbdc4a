"""
Connection handle
Owns a live hop chain: the interactive shell on the target plus every connection
and forward opened to reach it
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, List, Optional

from hopchain.core.config import settings

logger = logging.getLogger(__name__)


# listener(handle, reason)
DisconnectListener = Callable[["ConnectionHandle", str], None]


async def close_resource(resource: Any) -> None:
    """Close a connection, listener or process and wait for it; errors are logged, never raised"""
    try:
        resource.close()
        wait_closed = getattr(resource, "wait_closed", None)
        if wait_closed is not None:
            result = wait_closed()
            if inspect.isawaitable(result):
                await result
    except Exception as e:
        logger.debug(f"Error closing {type(resource).__name__}: {e}")


class SignalRelay:
    """
    Forwards transport-loss callbacks to a handle once it exists.

    Hops are connected before the handle is created, so their callbacks are
    wired to a relay that is attached to the handle afterwards.
    """

    def __init__(self):
        self._target: Optional[Callable[[str], None]] = None
        self._pending: Optional[str] = None

    def bind(self, reason: str) -> Callable[[Optional[Exception]], None]:
        """Callback for one hop that reports the given reason"""
        def _on_lost(exc: Optional[Exception] = None) -> None:
            if exc is not None:
                logger.debug(f"Transport lost ({reason}): {exc}")
            self.fire(reason)
        return _on_lost

    def fire(self, reason: str) -> None:
        if self._target is not None:
            self._target(reason)
        elif self._pending is None:
            self._pending = reason

    @property
    def pending(self) -> Optional[str]:
        """Reason of a loss reported before any target was attached"""
        return self._pending

    def attach(self, target: Callable[[str], None]) -> None:
        self._target = target
        if self._pending is not None:
            reason, self._pending = self._pending, None
            target(reason)

    def detach(self) -> None:
        self._target = None
        self._pending = None


class ConnectionHandle:
    """
    A live multi-hop connection.

    resources is the ordered list of everything opened while building the
    chain (hop clients interleaved with their loopback forwards, then the
    target's own forward listeners). dispose() closes it in reverse.
    """

    def __init__(
        self,
        profile_id: str,
        target: Any,
        shell: Any,
        resources: List[Any],
        relay: Optional[SignalRelay] = None,
        local_forwards: Optional[Dict[str, int]] = None,
        hop_count: int = 1,
    ):
        self.profile_id = profile_id
        self._target = target
        self._shell = shell
        self._resources = list(resources)
        self._relay = relay
        self._local_forwards = dict(local_forwards or {})
        self._hop_count = hop_count

        self._listeners: List[DisconnectListener] = []
        self._disposed = False
        self._lost = False
        self._disconnected_fired = False
        self._unreported: Optional[str] = None

        self._shell_watch: Optional[asyncio.Task] = None
        if shell is not None and callable(getattr(shell, "wait_closed", None)):
            self._shell_watch = asyncio.get_running_loop().create_task(self._watch_shell())

        if relay is not None:
            relay.attach(self._on_signal)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return not self._disposed and not self._lost

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    @property
    def shell(self) -> Any:
        """Primary interactive stream"""
        return self._shell

    @property
    def local_forwards(self) -> Dict[str, int]:
        """Forward node id -> listening port"""
        return dict(self._local_forwards)

    @property
    def hop_count(self) -> int:
        return self._hop_count

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def resize(self, cols: int, rows: int) -> bool:
        """Resize the remote terminal; False if the handle is not usable"""
        if not self.is_connected or self._shell is None:
            return False
        if cols <= 0 or rows <= 0:
            return False
        try:
            self._shell.change_terminal_size(cols, rows)
            return True
        except Exception as e:
            logger.debug(f"Terminal resize failed for {self.profile_id}: {e}")
            return False

    async def run_command(self, command: str, timeout: Optional[float] = None) -> Optional[str]:
        """
        Run a command on a separate channel of the target connection.

        Returns:
            The command's stdout, or None if the handle is disposed or
            disconnected, or the command failed or timed out
        """
        if not self.is_connected:
            return None
        if timeout is None:
            timeout = settings.RUN_COMMAND_TIMEOUT

        try:
            result = await asyncio.wait_for(
                self._target.run(command, check=False),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.debug(f"Command timed out after {timeout}s on {self.profile_id}")
            return None
        except Exception as e:
            logger.debug(f"Command failed on {self.profile_id}: {e}")
            return None

        stdout = result.stdout
        if stdout is None:
            return ""
        if isinstance(stdout, bytes):
            return stdout.decode("utf-8", errors="replace")
        return stdout

    def subscribe_disconnected(self, listener: DisconnectListener) -> Callable[[], None]:
        """
        Register a listener for the one-shot disconnected event; returns an unsubscribe handle.

        A disconnect that happened while nobody was subscribed is delivered
        to the first listener right away.
        """
        self._listeners.append(listener)
        if self._unreported is not None:
            self._fire_disconnected(self._unreported)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def dispose(self) -> None:
        """Tear the chain down; safe to call more than once"""
        if self._disposed:
            return
        self._disposed = True

        logger.debug(f"Disposing connection handle for profile {self.profile_id}")

        # Stop listening for transport signals before anything is closed
        if self._relay is not None:
            self._relay.detach()
        if self._shell_watch is not None and not self._shell_watch.done():
            self._shell_watch.cancel()
            try:
                await self._shell_watch
            except asyncio.CancelledError:
                pass

        if self._shell is not None:
            await close_resource(self._shell)

        for resource in reversed(self._resources):
            await close_resource(resource)
        self._resources.clear()

        self._fire_disconnected("disposed")
        self._listeners.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _watch_shell(self) -> None:
        try:
            await self._shell.wait_closed()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"Shell wait failed for {self.profile_id}: {e}")
        if not self._disposed:
            self._on_signal("shell_closed")

    def _on_signal(self, reason: str) -> None:
        if self._disposed:
            return
        self._lost = True
        logger.info(f"Connection for profile {self.profile_id} lost: {reason}")
        self._fire_disconnected(reason)

    def _fire_disconnected(self, reason: str) -> None:
        if self._disconnected_fired:
            return
        if not self._listeners:
            if self._unreported is None:
                self._unreported = reason
            return
        self._disconnected_fired = True
        self._unreported = None
        for listener in tuple(self._listeners):
            try:
                listener(self, reason)
            except Exception as e:
                logger.error(f"Disconnected listener failed: {e}")
