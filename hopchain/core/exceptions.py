"""
Error taxonomy for tunnel resolution, command composition and chain building
"""

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from hopchain.models.tunnel_graph import ValidationResult


class TunnelError(Exception):
    """Base class for all hopchain errors"""


# ============================================================================
# Structural errors - raised before any I/O
# ============================================================================

class StructuralError(TunnelError):
    """The tunnel graph cannot be used as given"""


class NoPathError(StructuralError):
    """No SSH-capable node is reachable from the start node"""


class InvalidProfileError(StructuralError):
    """Profile failed validation; carries every error found"""

    def __init__(self, result: "ValidationResult"):
        self.result = result
        super().__init__(f"Tunnel validation failed: {', '.join(result.errors)}")


class MissingCredentialError(StructuralError):
    """An SSH-capable node has no resolvable credential"""

    def __init__(self, node_id: str, label: str = "", reason: str = "no credential"):
        self.node_id = node_id
        self.label = label
        super().__init__(f"Node '{label or node_id}': {reason}")


# ============================================================================
# Validation errors - raised while composing a command
# ============================================================================

class CommandValidationError(TunnelError, ValueError):
    """A value cannot be embedded safely in a generated command"""

    def __init__(
        self,
        message: str,
        value: Optional[str] = None,
        field: Optional[str] = None,
        character: Optional[str] = None,
    ):
        self.value = value
        self.field = field
        self.character = character
        super().__init__(message)


# ============================================================================
# Runtime errors - raised while building a live chain
# ============================================================================

class HopConnectionError(TunnelError):
    """A hop failed while the chain was being built"""

    def __init__(self, hop_index: int, host: str, reason: str, message: str):
        self.hop_index = hop_index
        self.host = host
        self.reason = reason
        super().__init__(f"Hop {hop_index} ({host}) failed [{reason}]: {message}")


class ChainCancelledError(TunnelError):
    """The build was cancelled through its cancellation token"""

    def __init__(self, hop_index: int):
        self.hop_index = hop_index
        super().__init__(f"Chain build cancelled at hop {hop_index}")
