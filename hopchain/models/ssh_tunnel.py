"""
SSH hop credential models
Connection parameters for one SSH-capable node, as handed over by a credential resolver
"""

from pydantic import BaseModel, ConfigDict, Field, SecretStr, computed_field, field_validator
from typing import Optional, Dict, Any
from datetime import datetime
from enum import Enum
import logging

from hopchain.core.constants import SSH_DEFAULT_PORT

logger = logging.getLogger(__name__)


class SSHAuthMethod(str, Enum):
    """SSH authentication methods"""
    PASSWORD = "password"
    PRIVATE_KEY = "private_key"
    SSH_AGENT = "ssh_agent"


class TunnelStatus(str, Enum):
    """Lifecycle status of an executed tunnel"""
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


class HostCredential(BaseModel):
    """Resolved connection parameters for one SshHost/TargetHost node"""
    model_config = ConfigDict(frozen=True)

    hostname: str = Field(..., description="SSH server hostname or IP")
    port: int = Field(default=SSH_DEFAULT_PORT, ge=1, le=65535)
    username: str = Field(default="", description="SSH username, empty for the client default")

    # Authentication
    auth_method: SSHAuthMethod = SSHAuthMethod.SSH_AGENT
    secret: Optional[SecretStr] = Field(
        default=None,
        description="Password, or passphrase for the private key",
    )
    private_key_path: Optional[str] = Field(default=None, description="Path to SSH private key")

    # Host key verification
    known_hosts_path: Optional[str] = Field(default=None, description="Path to known_hosts file")
    skip_host_key_verification: bool = False

    # Connection options; None falls back to settings
    connect_timeout: Optional[float] = Field(default=None, gt=0)
    keepalive_interval: Optional[int] = Field(default=None, ge=0)

    @field_validator('hostname')
    @classmethod
    def validate_hostname(cls, v: str) -> str:
        """Hostname must be non-empty; character checks happen at composition time"""
        if not v or not v.strip():
            raise ValueError("Hostname cannot be empty")
        return v.strip()

    @field_validator('username')
    @classmethod
    def strip_username(cls, v: str) -> str:
        return v.strip()

    @property
    def address(self) -> str:
        return f"{self.hostname}:{self.port}"

    def get_masked_config(self) -> Dict[str, Any]:
        """Get credential with sensitive data masked for logging"""
        config = self.model_dump()
        if config.get('secret'):
            config['secret'] = '***masked***'
        return config

    def get_connection_string(self) -> str:
        """Get connection description for display"""
        if self.username:
            return f"{self.username}@{self.hostname}:{self.port}"
        return f"{self.hostname}:{self.port}"


class ActiveTunnel(BaseModel):
    """Status of an executed tunnel profile"""
    profile_id: str
    session_id: str
    display_name: str
    started_at: datetime = Field(default_factory=datetime.now)
    status: TunnelStatus = TunnelStatus.CONNECTED
    hop_count: int = 0
    local_forwards: Dict[str, int] = Field(default_factory=dict)

    @computed_field
    @property
    def is_active(self) -> bool:
        return self.status == TunnelStatus.CONNECTED


__all__ = [
    "SSHAuthMethod",
    "TunnelStatus",
    "HostCredential",
    "ActiveTunnel",
]
