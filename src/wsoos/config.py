"""
=============================================================================
PROXY CONFIGURATION
=============================================================================

Centralized configuration for the tunnel proxy.

=============================================================================
CONFIGURATION SOURCES
=============================================================================

    Priority (highest to lowest):

    1. Command-line flags        wsoos --dst-addr 10.0.0.5:22
    2. Environment variables     WSOOS_DST_ADDRESS=10.0.0.5:22
    3. YAML configuration file   /etc/wsoos/config.yaml
    4. Defaults                  ProxyConfig()

load_config() resolves layers 2-4 and validates the result. The CLI applies
layer 1 on top with apply_overrides() and validates again.

=============================================================================
ADDRESSES
=============================================================================

Listen and backend addresses use the "host:port" form. An empty host
(":2086") means all interfaces. IPv6 hosts go in brackets ("[::1]:22").

=============================================================================
"""

import os
import logging
from dataclasses import dataclass, fields
from enum import Enum
from typing import Optional, Tuple

import yaml


logger = logging.getLogger(__name__)


ENV_PREFIX = "WSOOS_"

DEFAULT_CONFIG_PATHS = (
    "/etc/wsoos/config.yaml",
    "/etc/wsoos/config.yml",
    "~/.wsoos/config.yaml",
    "~/.wsoos/config.yml",
    "./config.yaml",
    "./config.yml",
)


class ConfigError(ValueError):
    """Raised when configuration cannot be loaded or is invalid."""


class TLSMode(str, Enum):
    """
    How connections arriving on the TLS listener are treated.

    HANDSHAKE: same as plaintext, handshake response then payload discard.
    STUNNEL:   handshake response, then relay directly without discarding.
    """
    HANDSHAKE = "handshake"
    STUNNEL = "stunnel"


@dataclass
class ProxyConfig:
    """
    Resolved configuration consumed read-only by the server and handlers.

    =========================================================================
    CONFIGURATION GROUPS
    =========================================================================

    LISTENERS
    - address, tls_address, tls_enabled, tls_mode
    - tls_private_key, tls_public_key

    BACKEND
    - dst_address, timeout

    HANDSHAKE
    - handshake_code ("" = WebSocket upgrade response)

    SOCKET TUNING
    - buffer_size, keep_alive, no_delay, max_connections

    OBSERVABILITY
    - log_level, log_format, metrics_enabled, metrics_port

    =========================================================================
    """

    # ─────────────────────────────────────────────────────────────────────
    # LISTENERS
    # ─────────────────────────────────────────────────────────────────────

    address: str = ":2086"
    """Plaintext listen address."""

    tls_address: str = ":443"
    """TLS listen address (only used when tls_enabled)."""

    tls_enabled: bool = False

    tls_private_key: str = "/etc/wsoos/tls/private.pem"
    """PEM file holding the certificate chain (loaded as the cert file)."""

    tls_public_key: str = "/etc/wsoos/tls/public.key"
    """PEM file holding the private key (loaded as the key file)."""

    tls_mode: TLSMode = TLSMode.HANDSHAKE

    # ─────────────────────────────────────────────────────────────────────
    # BACKEND
    # ─────────────────────────────────────────────────────────────────────

    dst_address: str = "127.0.0.1:22"
    """Fixed backend every client is spliced to (usually sshd)."""

    timeout: int = 30
    """Backend dial timeout in seconds."""

    # ─────────────────────────────────────────────────────────────────────
    # HANDSHAKE
    # ─────────────────────────────────────────────────────────────────────

    handshake_code: str = ""
    """
    Custom HTTP status code for the response line.
    Empty = "101 Switching Protocols" WebSocket upgrade.
    """

    # ─────────────────────────────────────────────────────────────────────
    # SOCKET TUNING
    # ─────────────────────────────────────────────────────────────────────

    max_connections: int = 1000
    """Validated but not enforced by the accept loops."""

    buffer_size: int = 32768
    """Chunk size used by the relay copy loops."""

    keep_alive: bool = True
    no_delay: bool = True

    # ─────────────────────────────────────────────────────────────────────
    # OBSERVABILITY
    # ─────────────────────────────────────────────────────────────────────

    log_level: str = "info"
    log_format: str = "text"
    """'text' or 'json'."""

    metrics_enabled: bool = False
    metrics_port: str = ":9090"
    """Listen address of the Prometheus /metrics endpoint."""

    config_file: Optional[str] = None
    """Path of the YAML file this config was loaded from, if any."""

    def __post_init__(self):
        # Accept plain strings from YAML, env and CLI.
        if not isinstance(self.tls_mode, TLSMode):
            try:
                self.tls_mode = TLSMode(str(self.tls_mode).strip().lower())
            except ValueError:
                raise ConfigError(
                    f"invalid tls_mode: {self.tls_mode} (must be 'handshake' or 'stunnel')"
                ) from None

    @classmethod
    def defaults(cls) -> "ProxyConfig":
        """Configuration with every field at its built-in default."""
        return cls()

    @property
    def is_stunnel(self) -> bool:
        return self.tls_mode == TLSMode.STUNNEL

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            ConfigError: On the first invalid value found.
        """
        if self.tls_mode not in (TLSMode.HANDSHAKE, TLSMode.STUNNEL):
            raise ConfigError(
                f"invalid tls_mode: {self.tls_mode} (must be 'handshake' or 'stunnel')"
            )

        if self.tls_enabled:
            if not self.tls_private_key:
                raise ConfigError("tls_private_key is required when TLS is enabled")
            if not self.tls_public_key:
                raise ConfigError("tls_public_key is required when TLS is enabled")

        if self.max_connections <= 0:
            raise ConfigError("max_connections must be positive")

        if self.timeout <= 0:
            raise ConfigError("timeout must be positive")

        if self.buffer_size <= 0:
            raise ConfigError("buffer_size must be positive")

        if self.log_format not in ("text", "json"):
            raise ConfigError(f"invalid log_format: {self.log_format} (must be 'text' or 'json')")

        for name in ("address", "dst_address"):
            try:
                parse_address(getattr(self, name))
            except ValueError as e:
                raise ConfigError(f"invalid {name}: {e}") from None

    def apply_overrides(self, **values) -> "ProxyConfig":
        """
        Overwrite fields with explicitly provided values.

        Unknown names raise ConfigError so typos in callers are caught.
        """
        known = {f.name: f for f in fields(self)}
        for name, value in values.items():
            if name not in known:
                raise ConfigError(f"unknown configuration field: {name}")
            setattr(self, name, _coerce(known[name].type, value, name))
        self.__post_init__()
        return self

    def log_level_value(self) -> int:
        """Map the textual log level onto a logging module constant."""
        return {
            "debug": logging.DEBUG,
            "info": logging.INFO,
            "warn": logging.WARNING,
            "warning": logging.WARNING,
            "error": logging.ERROR,
        }.get(str(self.log_level).strip().lower(), logging.INFO)


def parse_address(address: str) -> Tuple[str, int]:
    """
    Split a "host:port" string.

    Examples:
        ":2086"          -> ("", 2086)
        "127.0.0.1:22"   -> ("127.0.0.1", 22)
        "[::1]:22"       -> ("::1", 22)

    Raises:
        ValueError: If there is no port or it is out of range.
    """
    if not isinstance(address, str) or ":" not in address:
        raise ValueError(f"missing port in address {address!r}")

    host, _, port_str = address.rpartition(":")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]

    try:
        port = int(port_str)
    except ValueError:
        raise ValueError(f"invalid port in address {address!r}") from None

    if not 0 <= port < 65536:
        raise ValueError(f"port out of range in address {address!r}")

    return host, port


def _coerce(field_type, value, name: str):
    """Convert a raw YAML/env/CLI value to the declared field type."""
    if value is None:
        return None

    type_name = field_type if isinstance(field_type, str) else getattr(field_type, "__name__", "")

    if type_name == "bool":
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in ("1", "true", "yes", "on")

    if type_name == "int":
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"{name} must be an integer, got {value!r}") from None

    if type_name == "TLSMode":
        return value

    return str(value)


def _find_config_file(path: Optional[str]) -> Optional[str]:
    if path:
        expanded = os.path.expanduser(path)
        if not os.path.isfile(expanded):
            raise ConfigError(f"config file not found: {path}")
        return expanded

    for candidate in DEFAULT_CONFIG_PATHS:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            return expanded
    return None


def _read_yaml(path: str) -> dict:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"error reading config file {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"config file {path} must contain a mapping")
    return raw


def load_config(path: Optional[str] = None, environ: Optional[dict] = None) -> ProxyConfig:
    """
    Build a validated ProxyConfig from defaults, YAML and environment.

    Args:
        path: Explicit YAML file. When None, DEFAULT_CONFIG_PATHS are tried
              in order and a missing file simply means "use defaults".
        environ: Environment mapping (defaults to os.environ).

    Raises:
        ConfigError: Unreadable file, bad values, or failed validation.
    """
    environ = os.environ if environ is None else environ
    config = ProxyConfig.defaults()
    known = {f.name for f in fields(config)} - {"config_file"}

    # ENV=production switches the default log format, matching the deploy setup.
    if environ.get("ENV") == "production":
        config.log_format = "json"

    config_file = _find_config_file(path)
    if config_file:
        values = {}
        for key, value in _read_yaml(config_file).items():
            if key in known:
                values[key] = value
            else:
                logger.warning(f"Ignoring unknown config key {key!r} in {config_file}")
        config.apply_overrides(**values)
        config.config_file = config_file
        logger.debug(f"Loaded configuration from {config_file}")

    env_values = {}
    for name in known:
        env_name = ENV_PREFIX + name.upper()
        if env_name in environ:
            env_values[name] = environ[env_name]
    if env_values:
        config.apply_overrides(**env_values)

    config.validate()
    return config
