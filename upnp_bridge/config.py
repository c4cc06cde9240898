"""
UPnP Bridge Configuration System.

Priority order (highest to lowest):
1. Command-line arguments
2. Environment variables
3. Configuration file (YAML)
4. Default values
"""

import logging
import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)


DEFAULT_SEARCH_TARGET = "urn:schemas-upnp-org:service:AVTransport:1"
DEFAULT_COMMAND_SCHEMAS = ["upnp.audio", "upnp.AVTransport", "upnp.RenderingControl"]

# Valid log levels
VALID_LOG_LEVELS = {"debug", "info", "warning", "error"}

# Environment variable mappings
ENV_MAPPINGS = {
    # Bus
    "UPNPBRIDGE_XPL_SOURCE": ("bus", "source"),
    "UPNPBRIDGE_XPL_BROADCAST": ("bus", "broadcast_address"),
    "UPNPBRIDGE_XPL_PORT": ("bus", "port"),
    # Server
    "UPNPBRIDGE_CALLBACK_PORT": ("server", "callback_port"),
    # Polling
    "UPNPBRIDGE_POLL_INTERVAL_MS": ("polling", "avtransport_interval_ms"),
    # Devices
    "UPNPBRIDGE_DEVICE_ALIASES": ("devices", "aliases"),
    # Logging
    "UPNPBRIDGE_LOG_LEVEL": ("logging", "level"),
}

INT_ENV_VARS = (
    "UPNPBRIDGE_XPL_PORT",
    "UPNPBRIDGE_CALLBACK_PORT",
    "UPNPBRIDGE_POLL_INTERVAL_MS",
)


class ConfigError(Exception):
    """Configuration error."""

    pass


def default_source() -> str:
    """xPL source name ``upnp-avtransport.<short hostname>``."""
    host = socket.gethostname().split(".")[0].lower() or "localhost"
    # xPL instance ids are limited to [a-z0-9-]
    host = "".join(c if c.isalnum() or c == "-" else "-" for c in host)[:16]
    return f"upnp-avtransport.{host}"


@dataclass
class BusConfig:
    """xPL bus configuration."""

    source: str = ""  # Derived from the hostname if empty
    broadcast_address: str = "255.255.255.255"
    port: int = 3865
    bind_address: str = "0.0.0.0"
    hbeat_interval: int = 5  # minutes
    command_schemas: list[str] = field(default_factory=lambda: list(DEFAULT_COMMAND_SCHEMAS))

    def __post_init__(self) -> None:
        if not self.source:
            self.source = default_source()


@dataclass
class DiscoveryConfig:
    """SSDP search configuration."""

    search_target: str = DEFAULT_SEARCH_TARGET
    search_interval: float = 5.0
    mx: int = 3


@dataclass
class PollingConfig:
    """Polling intervals (0 disables a loop)."""

    avtransport_interval_ms: int = 1000
    full_avtransport_poll: bool = False
    rendering_control_interval_ms: int = 0
    connection_manager_interval_ms: int = 0


@dataclass
class SubscriptionConfig:
    """Event subscription configuration."""

    timeout_seconds: int = 1800


@dataclass
class ServerConfig:
    """Event callback server configuration."""

    bind_address: str = "0.0.0.0"
    callback_port: int = 0  # 0 = ephemeral
    request_timeout: float = 10.0


@dataclass
class DevicesConfig:
    """Per-device configuration."""

    aliases: dict[str, str] = field(default_factory=dict)


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "info"


@dataclass
class Config:
    """Complete UPnP Bridge configuration."""

    bus: BusConfig = field(default_factory=BusConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    subscription: SubscriptionConfig = field(default_factory=SubscriptionConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    devices: DevicesConfig = field(default_factory=DevicesConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def validate_port(port: int, allow_zero: bool = False) -> bool:
    """Validate port number."""
    if allow_zero and port == 0:
        return True
    return 1 <= port <= 65535


def validate_config(config: Config) -> None:
    """
    Validate configuration.

    Raises:
        ConfigError: If configuration is invalid
    """
    errors = []

    # Bus
    if "." not in config.bus.source or "-" not in config.bus.source.split(".")[0]:
        errors.append(f"Invalid xPL source (expected vendor-device.instance): {config.bus.source}")
    if not validate_port(config.bus.port):
        errors.append(f"Invalid xPL port: {config.bus.port}")
    if config.bus.hbeat_interval < 0:
        errors.append(f"Invalid heartbeat interval: {config.bus.hbeat_interval}")
    if not config.bus.command_schemas:
        errors.append("At least one command schema is required")

    # Discovery
    if not config.discovery.search_target:
        errors.append("Search target is required")
    if config.discovery.search_interval <= 0:
        errors.append(f"Invalid search interval: {config.discovery.search_interval}")
    if not 1 <= config.discovery.mx <= 5:
        errors.append(f"Invalid MX value: {config.discovery.mx}. Valid range: 1-5")

    # Polling
    for name in (
        "avtransport_interval_ms",
        "rendering_control_interval_ms",
        "connection_manager_interval_ms",
    ):
        if getattr(config.polling, name) < 0:
            errors.append(f"Invalid polling interval {name}: {getattr(config.polling, name)}")

    # Subscription
    if config.subscription.timeout_seconds <= 0:
        errors.append(f"Invalid subscription timeout: {config.subscription.timeout_seconds}")

    # Server
    if not validate_port(config.server.callback_port, allow_zero=True):
        errors.append(f"Invalid callback port: {config.server.callback_port}")
    if config.server.request_timeout <= 0:
        errors.append(f"Invalid request timeout: {config.server.request_timeout}")

    # Logging
    if config.logging.level.lower() not in VALID_LOG_LEVELS:
        errors.append(
            f"Invalid log level: {config.logging.level}. "
            f"Valid values: {sorted(VALID_LOG_LEVELS)}"
        )

    if errors:
        raise ConfigError("Configuration validation failed:\n  - " + "\n  - ".join(errors))


def load_yaml_config(path: Path) -> dict:
    """
    Load configuration from YAML file.

    Args:
        path: Path to YAML file

    Returns:
        Configuration dictionary

    Raises:
        ConfigError: If file cannot be read or parsed
    """
    if not path.exists():
        logger.debug(f"Config file not found: {path}")
        return {}

    try:
        with open(path) as f:
            data = yaml.safe_load(f)
            return data if data else {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Error parsing YAML config: {e}")
    except IOError as e:
        raise ConfigError(f"Error reading config file: {e}")


def parse_aliases(value: str) -> dict[str, str]:
    """Parse ``usn=alias,usn=alias`` into a mapping."""
    aliases: dict[str, str] = {}
    for item in value.split(","):
        if "=" not in item:
            continue
        # USNs contain ':' but never '='
        usn, alias = item.split("=", 1)
        if usn.strip() and alias.strip():
            aliases[usn.strip()] = alias.strip()
    return aliases


def _set_nested(d: dict, path: tuple, value: Any) -> None:
    """Set a nested dictionary value using a path tuple."""
    for key in path[:-1]:
        d = d.setdefault(key, {})
    d[path[-1]] = value


def load_env_config() -> dict:
    """
    Load configuration from environment variables.

    Returns:
        Configuration dictionary with values from environment
    """
    result: dict = {}

    for env_var, path in ENV_MAPPINGS.items():
        value: Any = os.environ.get(env_var)
        if value is None:
            continue

        if env_var in INT_ENV_VARS:
            try:
                value = int(value)
            except ValueError:
                logger.warning(f"Invalid integer for {env_var}: {value}")
                continue
        elif env_var == "UPNPBRIDGE_DEVICE_ALIASES":
            value = parse_aliases(value)

        _set_nested(result, path, value)

    return result


def _deep_merge(base: dict, override: dict) -> None:
    """Recursively merge override into base."""
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


def merge_configs(*configs: dict) -> dict:
    """
    Deep merge multiple configuration dictionaries.
    Later configs override earlier ones.
    """
    result: dict = {}
    for config in configs:
        _deep_merge(result, config)
    return result


def _update_section(section: Any, values: dict) -> None:
    for key, value in values.items():
        if not hasattr(section, key):
            logger.warning(f"Unknown configuration key: {key}")
            continue
        setattr(section, key, value)


def dict_to_config(d: dict) -> Config:
    """Convert a dictionary to Config dataclass."""
    config = Config()

    for name in ("bus", "discovery", "polling", "subscription", "server", "logging"):
        if isinstance(d.get(name), dict):
            _update_section(getattr(config, name), d[name])

    if isinstance(d.get("devices"), dict):
        aliases = d["devices"].get("aliases") or {}
        config.devices.aliases = {str(k): str(v) for k, v in aliases.items()}

    # An explicit empty source falls back to the hostname default
    if not config.bus.source:
        config.bus.source = default_source()

    return config


def load_config(
    config_path: Optional[Path] = None,
    cli_args: Optional[dict] = None,
) -> Config:
    """
    Load configuration from all sources.

    Priority (highest to lowest):
    1. CLI arguments
    2. Environment variables
    3. Config file
    4. Defaults

    Args:
        config_path: Path to YAML config file
        cli_args: Dictionary of CLI arguments

    Returns:
        Merged Config object

    Raises:
        ConfigError: If configuration is invalid
    """
    configs = []

    if config_path:
        file_config = load_yaml_config(config_path)
        if file_config:
            configs.append(file_config)
            logger.debug(f"Loaded config from {config_path}")

    env_config = load_env_config()
    if env_config:
        configs.append(env_config)
        logger.debug("Loaded config from environment variables")

    if cli_args:
        configs.append(cli_args)
        logger.debug("Loaded config from CLI arguments")

    merged = merge_configs(*configs) if configs else {}
    config = dict_to_config(merged)
    validate_config(config)

    return config
