from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List
import os


class Settings(BaseSettings):
    # API Settings
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "hopchain"
    VERSION: str = "1.0.0"

    # Logging
    LOG_LEVEL: str = "INFO"

    # Hop connection
    HOP_CONNECT_TIMEOUT: float = 30.0  # seconds, per handshake
    KEEPALIVE_INTERVAL: int = 0  # 0 disables keepalive
    STRICT_HOST_KEY_CHECKING: bool = True
    KNOWN_HOSTS_PATH: Optional[str] = None

    # Interactive shell on the target hop
    DEFAULT_TERM_TYPE: str = "xterm-256color"
    DEFAULT_TERM_COLS: int = 80
    DEFAULT_TERM_ROWS: int = 24

    # Handle lifecycle
    RUN_COMMAND_TIMEOUT: float = 5.0
    DISPOSE_TIMEOUT: float = 30.0

    # Port forwarding
    DEFAULT_BIND_ADDRESS: str = "127.0.0.1"

    # CORS
    BACKEND_CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:8000",
    ]

    @property
    def cors_origins(self) -> List[str]:
        """Get CORS origins from environment or use defaults"""
        origins = os.getenv("BACKEND_CORS_ORIGINS", "")
        if origins:
            return [origin.strip() for origin in origins.split(",")]
        return self.BACKEND_CORS_ORIGINS

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env")


settings = Settings()
