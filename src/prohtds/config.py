"""Configuration loading and merging for prohtds."""

import logging
import os
import socket
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Mapping, Optional

import yaml
from dotenv import find_dotenv, load_dotenv

from .errors import ConfigError


DEFAULT_ETCD_SERVER = "localhost:2379"
PRESENCE_CATEGORY = "discovery"
PRESENCE_JOB = "prohtds"


@dataclass
class ProhtdsConfig:
    # Store
    etcd_servers: list[str] = field(default_factory=lambda: [DEFAULT_ETCD_SERVER])
    key_prefix: str = "/"
    connect_timeout: float = 5.0

    # HTTP listener
    host: str = "0.0.0.0"
    port: int = 8080
    drain_timeout: float = 5.0

    # Lease; renew_interval must stay below half of lease_ttl
    lease_ttl: int = 10
    renew_interval: float = 3.0
    max_renewal_failures: int = 3

    # This process's own registration
    presence_key: Optional[str] = None
    presence_metrics_port: Optional[int] = None
    presence_metrics_url: str = "/metrics"

    log_level: str = "INFO"

    @property
    def effective_presence_key(self) -> str:
        """Presence key, defaulting to /discovery/prohtds/<hostname>."""
        if self.presence_key:
            return self.presence_key
        return f"/{PRESENCE_CATEGORY}/{PRESENCE_JOB}/{socket.gethostname()}"


# Environment variable -> config field. ETCD_SERVERS and PORT are the names
# existing deployments already set.
ENV_VARS = {
    "ETCD_SERVERS": "etcd_servers",
    "HOST": "host",
    "PORT": "port",
    "LOG_LEVEL": "log_level",
    "PROHTDS_KEY_PREFIX": "key_prefix",
    "PROHTDS_CONNECT_TIMEOUT": "connect_timeout",
    "PROHTDS_DRAIN_TIMEOUT": "drain_timeout",
    "PROHTDS_LEASE_TTL": "lease_ttl",
    "PROHTDS_RENEW_INTERVAL": "renew_interval",
    "PROHTDS_MAX_RENEWAL_FAILURES": "max_renewal_failures",
    "PROHTDS_PRESENCE_KEY": "presence_key",
    "PROHTDS_PRESENCE_METRICS_PORT": "presence_metrics_port",
    "PROHTDS_PRESENCE_METRICS_URL": "presence_metrics_url",
}

_INT_FIELDS = {"port", "lease_ttl", "max_renewal_failures", "presence_metrics_port"}
_FLOAT_FIELDS = {"connect_timeout", "drain_timeout", "renew_interval"}


def split_servers(value: str) -> list[str]:
    """Split a comma-separated endpoint list, dropping blanks."""
    return [s.strip() for s in value.split(",") if s.strip()]


def _coerce(name: str, value, source: str):
    if name == "etcd_servers":
        if isinstance(value, str):
            return split_servers(value)
        return [str(v) for v in value]
    try:
        if name in _INT_FIELDS:
            return int(value)
        if name in _FLOAT_FIELDS:
            return float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{source}: expected a number, got {value!r}") from None
    return value


def load_config(path: str | Path) -> ProhtdsConfig:
    """Load a ProhtdsConfig from a YAML file. Unknown keys are ignored."""
    path = Path(path)
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping at the top level")

    valid_fields = {f.name for f in fields(ProhtdsConfig)}
    filtered = {
        k: _coerce(k, v, f"{path}:{k}")
        for k, v in data.items() if k in valid_fields and v is not None
    }
    return ProhtdsConfig(**filtered)


def merge_env(config: ProhtdsConfig, environ: Optional[Mapping[str, str]] = None,
              dotenv_path: Optional[str] = None) -> ProhtdsConfig:
    """Overlay environment variables onto a config.

    A ``.env`` file is loaded into the process environment first (existing
    variables win). Pass *environ* to read from a plain mapping instead.
    """
    if environ is None:
        load_dotenv(dotenv_path or find_dotenv(usecwd=True))
        environ = os.environ
    for var, name in ENV_VARS.items():
        raw = environ.get(var)
        if raw is None or raw == "":
            continue
        setattr(config, name, _coerce(name, raw, var))
    return config


def merge_cli_args(config: ProhtdsConfig, args) -> ProhtdsConfig:
    """Overlay CLI arguments onto an existing config. CLI values take precedence."""
    for f in fields(ProhtdsConfig):
        cli_val = getattr(args, f.name, None)
        if cli_val is not None:
            setattr(config, f.name, _coerce(f.name, cli_val, f"--{f.name.replace('_', '-')}"))
    return config


def validate_config(config: ProhtdsConfig) -> ProhtdsConfig:
    if not config.etcd_servers:
        raise ConfigError("no etcd servers configured (set ETCD_SERVERS)")
    if not 0 <= config.port <= 65535:
        raise ConfigError(f"port out of range: {config.port}")
    if config.renew_interval <= 0:
        raise ConfigError("renew_interval must be positive")
    if config.lease_ttl <= 2 * config.renew_interval:
        raise ConfigError(
            f"lease_ttl ({config.lease_ttl}s) must be more than twice "
            f"renew_interval ({config.renew_interval}s)"
        )
    if config.max_renewal_failures < 1:
        raise ConfigError("max_renewal_failures must be at least 1")
    if not isinstance(logging.getLevelName(config.log_level.upper()), int):
        raise ConfigError(f"unknown log level {config.log_level!r}")
    return config


def config_to_yaml(config: ProhtdsConfig) -> str:
    """Serialize the effective config, e.g. for `prohtds config`."""
    data: dict = {
        "etcd_servers": list(config.etcd_servers),
        "key_prefix": config.key_prefix,
        "connect_timeout": config.connect_timeout,
        "host": config.host,
        "port": config.port,
        "drain_timeout": config.drain_timeout,
        "lease_ttl": config.lease_ttl,
        "renew_interval": config.renew_interval,
        "max_renewal_failures": config.max_renewal_failures,
        "presence_key": config.effective_presence_key,
        "presence_metrics_port": (
            config.presence_metrics_port
            if config.presence_metrics_port is not None else config.port
        ),
        "presence_metrics_url": config.presence_metrics_url,
        "log_level": config.log_level,
    }
    return yaml.dump(data, default_flow_style=False, sort_keys=False)
