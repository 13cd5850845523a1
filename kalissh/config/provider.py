"""Configuration provider following Black Box Design principles."""
import os
from dataclasses import dataclass
from typing import List, Optional, Protocol

DEFAULT_BACKEND_URL = "https://openrouter.ai/api/v1/chat/completions"


@dataclass
class BackendConfig:
    """Model backend configuration."""
    api_key: Optional[str]
    api_url: str

    @property
    def is_configured(self) -> bool:
        """Check if a backend credential is present."""
        return bool(self.api_key)


@dataclass
class SSHConfig:
    """Remote channel configuration."""
    host: str
    user: str
    password: str
    proxy_host: Optional[str]
    connect_timeout: float
    command_timeout: float
    connect_attempts: int


@dataclass
class APIConfig:
    """API configuration."""
    port: int
    host: str
    debug: bool
    cors_origins: List[str]


class ConfigProvider(Protocol):
    """Protocol for configuration providers."""

    def get_backend_config(self) -> BackendConfig:
        """Get model backend configuration."""
        ...

    def get_ssh_config(self) -> SSHConfig:
        """Get remote channel configuration."""
        ...

    def get_api_config(self) -> APIConfig:
        """Get API configuration."""
        ...


class EnvConfigProvider:
    """Environment-based configuration provider."""

    def get_backend_config(self) -> BackendConfig:
        """Get model backend configuration from environment variables."""
        return BackendConfig(
            api_key=os.getenv("OPENROUTER_API_KEY") or None,
            api_url=os.getenv("OPENROUTER_API_URL", DEFAULT_BACKEND_URL),
        )

    def get_ssh_config(self) -> SSHConfig:
        """Get remote channel configuration from environment variables."""
        # An empty SSH_PROXY_HOST disables the jump host
        proxy_host = os.getenv("SSH_PROXY_HOST", "serveo.net")

        return SSHConfig(
            host=os.getenv("SSH_HOST", "t-shell"),
            user=os.getenv("SSH_USER", "travis"),
            password=os.getenv("SSH_PASSWORD", ""),
            proxy_host=proxy_host or None,
            connect_timeout=float(os.getenv("SSH_CONNECT_TIMEOUT", "20")),
            command_timeout=float(os.getenv("SSH_COMMAND_TIMEOUT", "30")),
            connect_attempts=int(os.getenv("SSH_CONNECT_ATTEMPTS", "2")),
        )

    def get_api_config(self) -> APIConfig:
        """Get API configuration from environment variables."""
        return APIConfig(
            port=int(os.getenv("API_PORT", "8080")),
            host=os.getenv("API_HOST", "0.0.0.0"),
            debug=os.getenv("DEBUG", "false").lower() == "true",
            cors_origins=[
                origin.strip()
                for origin in os.getenv("CORS_ORIGINS", "*").split(",")
                if origin.strip()
            ],
        )
