"""
agent-relay Configuration

Relay address and tuning knobs, taken from AGENT_RELAY_* environment
variables (a ``.env`` file is honoured by the CLI via python-dotenv).
"""

import os
from dataclasses import dataclass, fields
from typing import Mapping, Optional

from .exceptions import ConfigError
from .protocol import DEFAULT_API_PORT, DEFAULT_RELAY_HOST, DEFAULT_RELAY_PORT


ENV_PREFIX = "AGENT_RELAY_"


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(ENV_PREFIX + name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}")
    if not 0 <= value <= 65535:
        raise ConfigError(f"{ENV_PREFIX}{name} out of range: {value}")
    return value


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(ENV_PREFIX + name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}")
    if value <= 0:
        raise ConfigError(f"{ENV_PREFIX}{name} must be positive, got {value}")
    return value


def _env_flag(env: Mapping[str, str], name: str) -> bool:
    return env.get(ENV_PREFIX + name, "").lower() in ("1", "true", "yes", "on")


@dataclass
class RelayConfig:
    """agent-relay configuration"""

    # Relay server settings
    host: str = DEFAULT_RELAY_HOST
    port: int = DEFAULT_RELAY_PORT

    # Status API settings
    api_port: int = DEFAULT_API_PORT
    api_enabled: bool = True

    # Transport settings (seconds)
    ping_interval: float = 30.0
    ping_timeout: float = 10.0
    connect_timeout: float = 10.0

    # General settings
    log_level: str = "INFO"

    @property
    def relay_url(self) -> str:
        return f"ws://{self.host}:{self.port}"

    @property
    def api_url(self) -> str:
        return f"http://{self.host}:{self.api_port}"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> 'RelayConfig':
        """Build a config from AGENT_RELAY_* variables.

        Raises:
            ConfigError: If a variable holds a malformed value
        """
        env = os.environ if env is None else env
        defaults = cls()
        return cls(
            host=env.get(ENV_PREFIX + "HOST") or defaults.host,
            port=_env_int(env, "PORT", defaults.port),
            api_port=_env_int(env, "API_PORT", defaults.api_port),
            api_enabled=not _env_flag(env, "NO_API"),
            ping_interval=_env_float(env, "PING_INTERVAL", defaults.ping_interval),
            ping_timeout=_env_float(env, "PING_TIMEOUT", defaults.ping_timeout),
            connect_timeout=_env_float(env, "CONNECT_TIMEOUT", defaults.connect_timeout),
            log_level=(env.get(ENV_PREFIX + "LOG_LEVEL") or defaults.log_level).upper(),
        )

    def as_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


# Singleton instance
_config: Optional[RelayConfig] = None


def get_config() -> RelayConfig:
    """Get or create the global config instance."""
    global _config
    if _config is None:
        _config = RelayConfig.from_env()
    return _config


def reset_config():
    """Forget the cached config (the next get_config() re-reads the environment)."""
    global _config
    _config = None
