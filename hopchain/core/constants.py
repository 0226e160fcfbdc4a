"""
Constants for hopchain.
Guido says: "Explicit is better than implicit."
"""

from typing import Tuple, FrozenSet


# ============================================================================
# Protocol Defaults
# ============================================================================

SSH_DEFAULT_PORT: int = 22
PORT_MIN: int = 1
PORT_MAX: int = 65535

LOOPBACK_ADDRESS: str = "127.0.0.1"

# Ephemeral listener used for each intermediate hop; port 0 lets the OS pick
HOP_FORWARD_LISTEN_HOST: str = "127.0.0.1"
HOP_FORWARD_LISTEN_PORT: int = 0


# ============================================================================
# Identifier Sanitization
# ============================================================================
# Characters allowed in usernames/hostnames embedded in a generated command,
# in addition to ASCII letters and digits. Brackets and colon cover IPv6 literals.

IDENTIFIER_EXTRA_CHARS: FrozenSet[str] = frozenset({".", "-", "_", "@", ":", "[", "]"})


def is_identifier_char(ch: str) -> bool:
    """
    Check whether a single character may appear in an SSH identifier.

    Args:
        ch: The character to check

    Returns:
        True if the character is on the allow-list
    """
    return (ch.isascii() and ch.isalnum()) or ch in IDENTIFIER_EXTRA_CHARS


# ============================================================================
# Hop Failure Classification
# ============================================================================
# Used to tag a failed hop with a coarse reason when the transport only
# gives us a message

AUTH_FAILURE_PATTERNS: Tuple[str, ...] = (
    "permission denied",
    "authentication failed",
    "auth failed",
    "no more authentication methods",
)

HOST_KEY_FAILURE_PATTERNS: Tuple[str, ...] = (
    "host key",
    "hostkey",
    "not verifiable",
)

REFUSED_PATTERNS: Tuple[str, ...] = (
    "connection refused",
    "no route to host",
    "network is unreachable",
)


def classify_failure(error_message: str) -> str:
    """
    Classify a hop failure message into a coarse reason.

    Args:
        error_message: The error message to check

    Returns:
        One of "auth", "host_key", "refused" or "transport"
    """
    error_lower = error_message.lower()
    if any(pattern in error_lower for pattern in HOST_KEY_FAILURE_PATTERNS):
        return "host_key"
    if any(pattern in error_lower for pattern in AUTH_FAILURE_PATTERNS):
        return "auth"
    if any(pattern in error_lower for pattern in REFUSED_PATTERNS):
        return "refused"
    return "transport"
