"""Configuration management for MQTT Shell.

Built once at startup and handed to the agent and controller constructors;
nothing below the entry points reads the environment.
"""

import logging
import os
import socket
import ssl
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

import yaml
from dotenv import load_dotenv

from .errors import ConfigurationError
from .protocol import Topics

ROLE_SERVER = "server"
ROLE_CLIENT = "client"

DEFAULT_BROKER_URL = "tcp://localhost:1883"
DEFAULT_TOPIC_PREFIX = "mqtt-shell"
DEFAULT_EXEC_TIMEOUT = 30.0
DEFAULT_RESPONSE_TIMEOUT = 15.0

# The controller stays quiet so log lines do not interleave with the shell
DEFAULT_LOG_LEVELS = {ROLE_SERVER: "INFO", ROLE_CLIENT: "WARNING"}

_PLAIN_SCHEMES = {"tcp": 1883, "mqtt": 1883}
_TLS_SCHEMES = {"ssl": 8883, "tls": 8883, "mqtts": 8883}
_WS_SCHEMES = {"ws": 80, "wss": 443}


@dataclass(frozen=True)
class BrokerAddress:
    """Broker endpoint parsed from the broker URL."""

    host: str
    port: int
    transport: str = "tcp"  # tcp or websockets
    tls: bool = False
    path: str = "/mqtt"


def parse_broker_url(url: str) -> BrokerAddress:
    """Split a broker URL such as tcp://host:1883 or wss://host/mqtt."""
    if "://" not in url:
        url = f"tcp://{url}"
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError as exc:
        raise ConfigurationError(f"invalid broker URL {url!r}: {exc}") from exc

    scheme = parts.scheme.lower()
    if not parts.hostname:
        raise ConfigurationError(f"broker URL {url!r} has no host")

    if scheme in _PLAIN_SCHEMES:
        return BrokerAddress(parts.hostname, port or _PLAIN_SCHEMES[scheme])
    if scheme in _TLS_SCHEMES:
        return BrokerAddress(parts.hostname, port or _TLS_SCHEMES[scheme], tls=True)
    if scheme in _WS_SCHEMES:
        return BrokerAddress(
            parts.hostname,
            port or _WS_SCHEMES[scheme],
            transport="websockets",
            tls=scheme == "wss",
            path=parts.path or "/mqtt",
        )
    raise ConfigurationError(f"unsupported broker URL scheme {scheme!r}")


def _default_client_id(role: str) -> str:
    hostname = socket.gethostname() or role
    return f"mqtt-shell-{role}-{hostname}"


def _getenv(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(key, "").strip()
    return value if value else default


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


def _as_float(key: str, value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{key} must be a number, got {value!r}") from exc


@dataclass
class ShellConfig:
    """MQTT Shell configuration."""

    role: str = ROLE_SERVER

    # Broker connection
    broker_url: str = DEFAULT_BROKER_URL
    client_id: str = ""
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)

    # Topics
    topic_prefix: str = DEFAULT_TOPIC_PREFIX

    # TLS settings
    use_tls: bool = False
    ca_file: Optional[str] = None

    # Shared secret
    exec_key: Optional[str] = field(default=None, repr=False)

    # Timeouts (seconds)
    exec_timeout: float = DEFAULT_EXEC_TIMEOUT
    response_timeout: float = DEFAULT_RESPONSE_TIMEOUT

    # Logging (defaults per role)
    log_level: str = ""

    def __post_init__(self) -> None:
        if not self.client_id:
            self.client_id = _default_client_id(self.role)
        if not self.log_level:
            self.log_level = DEFAULT_LOG_LEVELS.get(self.role, "INFO")

    @classmethod
    def from_env(cls, role: str = ROLE_SERVER, env_file: Optional[str] = ".env") -> "ShellConfig":
        """Load configuration from environment variables.

        A .env file, when present, fills in variables that are not already
        set in the environment.
        """
        if env_file:
            load_dotenv(env_file, override=False)

        return cls(
            role=role,
            broker_url=_getenv("MQTT_BROKER_URL", DEFAULT_BROKER_URL),
            client_id=_getenv("MQTT_CLIENT_ID", ""),
            username=_getenv("MQTT_USERNAME"),
            password=_getenv("MQTT_PASSWORD"),
            topic_prefix=_getenv("MQTT_TOPIC_PREFIX", DEFAULT_TOPIC_PREFIX),
            use_tls=_as_bool(_getenv("MQTT_USE_TLS", "false")),
            ca_file=_getenv("MQTT_CA_FILE"),
            exec_key=_getenv("EXEC_KEY"),
            exec_timeout=_as_float(
                "EXEC_TIMEOUT", _getenv("EXEC_TIMEOUT", str(DEFAULT_EXEC_TIMEOUT))
            ),
            response_timeout=_as_float(
                "RESPONSE_TIMEOUT",
                _getenv("RESPONSE_TIMEOUT", str(DEFAULT_RESPONSE_TIMEOUT)),
            ),
            log_level=_getenv("MQTT_LOG_LEVEL", ""),
        )

    @classmethod
    def from_file(
        cls,
        config_file: str,
        role: str = ROLE_SERVER,
        env_file: Optional[str] = ".env",
    ) -> "ShellConfig":
        """Load configuration from a YAML file layered over the environment."""
        base = cls.from_env(role, env_file=env_file)
        path = Path(config_file)
        if not path.exists():
            raise ConfigurationError(f"config file not found: {config_file}")

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigurationError(f"cannot read {config_file}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigurationError(f"{config_file} must contain a mapping")

        return base.merged(data)

    def merged(self, overrides: Dict[str, Any]) -> "ShellConfig":
        """Return a copy with the given non-None keys replaced."""
        known = {
            "broker_url", "client_id", "username", "password", "topic_prefix",
            "use_tls", "ca_file", "exec_key", "exec_timeout",
            "response_timeout", "log_level",
        }
        unknown = set(overrides) - known
        if unknown:
            raise ConfigurationError(f"unknown config keys: {', '.join(sorted(unknown))}")

        changes: Dict[str, Any] = {}
        for key, value in overrides.items():
            if value is None:
                continue
            if key == "use_tls":
                value = _as_bool(value)
            elif key in ("exec_timeout", "response_timeout"):
                value = _as_float(key, value)
            else:
                value = str(value)
            changes[key] = value
        return replace(self, **changes)

    @property
    def topics(self) -> Topics:
        return Topics.from_prefix(self.topic_prefix)

    @property
    def broker(self) -> BrokerAddress:
        return parse_broker_url(self.broker_url)

    @property
    def tls_enabled(self) -> bool:
        return self.use_tls or self.broker.tls

    def validate(self) -> None:
        """Raise ConfigurationError for anything that must stop startup."""
        if not self.exec_key:
            raise ConfigurationError(
                "EXEC_KEY is required! Set it in environment or .env file"
            )
        if not self.topic_prefix.strip("/"):
            raise ConfigurationError("topic prefix must not be empty")
        if self.exec_timeout <= 0:
            raise ConfigurationError("exec timeout must be positive")
        if self.response_timeout <= 0:
            raise ConfigurationError("response timeout must be positive")
        parse_broker_url(self.broker_url)
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ConfigurationError(f"unknown log level {self.log_level!r}")
        if self.ca_file and not Path(self.ca_file).is_file():
            raise ConfigurationError(f"CA file not found: {self.ca_file}")

    def tls_context(self) -> ssl.SSLContext:
        """Build the client TLS context, trusting ca_file when set."""
        try:
            context = ssl.create_default_context(cafile=self.ca_file or None)
        except ssl.SSLError as exc:
            raise ConfigurationError(f"failed to parse CA certificate: {exc}") from exc
        except OSError as exc:
            raise ConfigurationError(f"failed to read CA file: {exc}") from exc
        return context
