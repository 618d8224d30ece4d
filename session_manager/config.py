"""
Configuration for the session manager.

Defaults live here as module constants. An optional config.yaml (project root)
overrides them, and environment variables override both.
"""

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

# Path to the optional config file (project root)
CONFIG_PATH = Path(__file__).parent.parent / "config.yaml"

# Runtime image contract
RUNTIME_IMAGE = "remote-chrome:latest"
CONTAINER_PREFIX = "browser-session-"
DISPLAY_PORT = 5901  # remote-display (VNC/noVNC) port inside the runtime
RUNTIME_PROFILE_MOUNT = "/home/chrome/profile"
RUNTIME_DISPLAY = ":1"
RUNTIME_MEMORY_BYTES = 2147483648  # 2GB

# Lifecycle policy
IDLE_TIMEOUT_SECONDS = 30 * 60  # pause after 30 minutes
GRACE_TIMEOUT_SECONDS = 3 * 24 * 60 * 60  # destroy container after 3 days, keep profile
SWEEP_INTERVAL_SECONDS = 60

# Docker call bounds
DOCKER_TIMEOUT_SECONDS = 30
PORT_WAIT_SECONDS = 10
STOP_GRACE_SECONDS = 10

DATA_DIR = Path(__file__).parent.parent / "data"

# env var -> settings field
ENV_OVERRIDES = {
    "SESSION_MANAGER_HOST": "host",
    "PORT": "port",
    "SESSION_MANAGER_IMAGE": "runtime_image",
    "SESSION_MANAGER_NETWORK": "runtime_network",
    "SESSION_API_URL": "callback_url",
    "SESSION_MANAGER_PUBLIC_URL": "public_base_url",
    "SESSION_MANAGER_DISPLAY_HOST": "display_host",
    "SESSION_MANAGER_DATA_DIR": "data_dir",
    "SESSION_IDLE_TIMEOUT": "idle_timeout_seconds",
    "SESSION_GRACE_TIMEOUT": "grace_timeout_seconds",
    "SESSION_SWEEP_INTERVAL": "sweep_interval_seconds",
    "DOCKER_TIMEOUT": "docker_timeout_seconds",
    "PORT_WAIT_TIMEOUT": "port_wait_seconds",
    "SESSION_MANAGER_ALLOWED_ORIGINS": "allowed_origins",
}


@dataclass
class Settings:
    host: str = "127.0.0.1"  # 0.0.0.0 only allowed when auth is enabled
    port: int = 3000

    runtime_image: str = RUNTIME_IMAGE
    container_prefix: str = CONTAINER_PREFIX
    runtime_network: Optional[str] = None
    display_port: int = DISPLAY_PORT
    runtime_display: str = RUNTIME_DISPLAY
    runtime_profile_mount: str = RUNTIME_PROFILE_MOUNT
    runtime_memory_bytes: int = RUNTIME_MEMORY_BYTES

    # Base address the runtime posts download notifications to
    callback_url: str = "http://172.17.0.1:3000"
    # Base address clients use to reach this service
    public_base_url: str = "http://localhost:3000"
    # Host clients use to reach the runtime's display port (default: request Host)
    display_host: Optional[str] = None

    data_dir: Path = DATA_DIR
    default_start_url: str = "https://google.com"
    allowed_origins: tuple[str, ...] = ("portal2.ai",)

    idle_timeout_seconds: float = float(IDLE_TIMEOUT_SECONDS)
    grace_timeout_seconds: float = float(GRACE_TIMEOUT_SECONDS)
    sweep_interval_seconds: float = float(SWEEP_INTERVAL_SECONDS)

    docker_timeout_seconds: float = float(DOCKER_TIMEOUT_SECONDS)
    port_wait_seconds: float = float(PORT_WAIT_SECONDS)
    stop_grace_seconds: int = STOP_GRACE_SECONDS

    def __post_init__(self):
        self.data_dir = Path(self.data_dir)
        if isinstance(self.allowed_origins, str):
            self.allowed_origins = tuple(
                o.strip() for o in self.allowed_origins.split(",") if o.strip()
            )
        else:
            self.allowed_origins = tuple(self.allowed_origins)
        self.public_base_url = self.public_base_url.rstrip("/")
        if self.grace_timeout_seconds <= self.idle_timeout_seconds:
            raise ValueError(
                f"grace timeout ({self.grace_timeout_seconds}s) must be greater "
                f"than idle timeout ({self.idle_timeout_seconds}s)"
            )

    @property
    def profiles_dir(self) -> Path:
        return self.data_dir / "user-profiles"

    @property
    def profile_index_path(self) -> Path:
        return self.data_dir / "profiles.json"

    @classmethod
    def load(cls, config_path: Path = CONFIG_PATH, environ=None) -> "Settings":
        """Build settings from defaults, config.yaml and environment variables."""
        environ = os.environ if environ is None else environ
        values: dict = {}

        if config_path.is_file():
            with open(config_path) as f:
                config = yaml.safe_load(f) or {}
            if not isinstance(config, dict):
                raise ValueError(f"config.yaml must be a YAML mapping, got {type(config)}")
            values.update(config)
            logger.info("Loaded configuration from %s", config_path)

        for env_name, field_name in ENV_OVERRIDES.items():
            raw = environ.get(env_name)
            if raw:
                values[field_name] = raw

        known = {f.name: f for f in fields(cls)}
        kwargs = {}
        for name, value in values.items():
            if name not in known:
                logger.warning("Ignoring unknown configuration key: %s", name)
                continue
            kwargs[name] = _coerce(known[name].default, value)
        return cls(**kwargs)


def _coerce(default, value):
    """Convert a raw config/env value to the type of the field's default."""
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return value
