"""Frozen dataclasses for configuration and YAML loader with env-var interpolation."""

from __future__ import annotations

import ipaddress
import os
import re
import types
import typing
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigError

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")

BACKEND_KINDS = ("f5", "keepalived")
ALLOCATION_STORES = ("configmap", "memory")


def _interpolate_env(value: str) -> str:
    """Replace ${ENV_VAR} placeholders with environment variable values."""

    def _replace(match: re.Match) -> str:
        env_key = match.group(1)
        env_val = os.environ.get(env_key)
        if env_val is None:
            raise ConfigError(f"Environment variable '{env_key}' is not set")
        return env_val

    return _ENV_PATTERN.sub(_replace, value)


def _walk_and_interpolate(obj: Any) -> Any:
    """Recursively interpolate env vars in strings throughout a nested structure."""
    if isinstance(obj, str):
        return _interpolate_env(obj)
    if isinstance(obj, dict):
        return {k: _walk_and_interpolate(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_walk_and_interpolate(v) for v in obj]
    return obj


@dataclass(frozen=True)
class KubernetesConfig:
    in_cluster: bool = True
    kubeconfig: str | None = None  # None = default kubeconfig location
    namespace: str = "default"  # where the allocation table lives
    watch_namespace: str = ""  # "" watches all namespaces
    config_label_key: str = "loadbalancer"
    config_label_value: str = "configmap"
    watch_timeout_seconds: int = 300

    @property
    def config_label_selector(self) -> str:
        return f"{self.config_label_key}={self.config_label_value}"


@dataclass(frozen=True)
class AllocationConfig:
    start_ip: str = ""
    end_ip: str = ""
    config_map_name: str = "ip-manager-configmap"
    store: str = "configmap"  # "configmap" or "memory"


@dataclass(frozen=True)
class BackendConfig:
    kind: str = "f5"  # "f5" or "keepalived"
    name_separator: str = "-"


@dataclass(frozen=True)
class F5Config:
    base_url: str = "https://localhost"
    username: str = "admin"
    password: str = ""
    partition: str = "Common"
    timeout: int = 10
    verify_ssl: bool = True
    monitor_interval: int = 5
    monitor_timeout: int = 16


@dataclass(frozen=True)
class KeepalivedConfig:
    interface: str = "eth0"
    config_path: str = "/etc/keepalived/keepalived.conf"
    reload_command: str = "service keepalived reload"
    start_command: str = "service keepalived start"
    virtual_router_id: int = 50
    priority: int = 100
    state: str = "BACKUP"  # "MASTER" or "BACKUP"


@dataclass(frozen=True)
class ControllerConfig:
    workers: int = 8
    strict_group_fields: bool = False


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    format: str = "json"  # "json" or "text"


@dataclass(frozen=True)
class AppConfig:
    kubernetes: KubernetesConfig = field(default_factory=KubernetesConfig)
    allocation: AllocationConfig = field(default_factory=AllocationConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    f5: F5Config | None = None
    keepalived: KeepalivedConfig | None = None
    controller: ControllerConfig = field(default_factory=ControllerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _get_dataclass_type(ft: Any) -> type | None:
    """Return the underlying dataclass type from a type annotation (handles Optional/X|None)."""
    if isinstance(ft, type) and hasattr(ft, "__dataclass_fields__"):
        return ft
    if isinstance(ft, types.UnionType):
        args = [a for a in ft.__args__ if a is not type(None)]
        if len(args) == 1 and isinstance(args[0], type) and hasattr(args[0], "__dataclass_fields__"):
            return args[0]
    origin = getattr(ft, "__origin__", None)
    if origin is typing.Union:
        args = [a for a in ft.__args__ if a is not type(None)]
        if len(args) == 1 and isinstance(args[0], type) and hasattr(args[0], "__dataclass_fields__"):
            return args[0]
    return None


def _build_nested(cls: type, data: dict[str, Any]) -> Any:
    """Construct a frozen dataclass, recursively building nested dataclass fields."""
    if not isinstance(data, dict):
        return data
    field_types = typing.get_type_hints(cls)
    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        if key not in field_types:
            continue
        dc_type = _get_dataclass_type(field_types[key])
        if dc_type is not None and isinstance(value, dict):
            kwargs[key] = _build_nested(dc_type, value)
        elif dc_type is not None and value is None:
            kwargs[key] = dc_type()
        else:
            kwargs[key] = value
    return cls(**kwargs)


def load_config(path: str | Path) -> AppConfig:
    """Load and validate configuration from a YAML file."""
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"Configuration file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        raise ConfigError("Configuration file must be a YAML mapping")

    raw = _walk_and_interpolate(raw)
    config = _build_nested(AppConfig, raw)
    _validate(config)
    return config


def _parse_ipv4(value: str, setting: str) -> ipaddress.IPv4Address:
    try:
        return ipaddress.IPv4Address(value)
    except ValueError as exc:
        raise ConfigError(f"{setting} must be a valid IPv4 address, got '{value}'") from exc


def _validate(config: AppConfig) -> None:
    """Validate configuration values."""
    if config.backend.kind not in BACKEND_KINDS:
        raise ConfigError(f"backend.kind must be one of {', '.join(BACKEND_KINDS)}")

    if config.backend.kind == "f5" and config.f5 is None:
        raise ConfigError("backend.kind is 'f5' but no 'f5' section is configured")
    if config.backend.kind == "keepalived" and config.keepalived is None:
        raise ConfigError("backend.kind is 'keepalived' but no 'keepalived' section is configured")

    if not config.backend.name_separator:
        raise ConfigError("backend.name_separator must not be empty")

    if not config.allocation.start_ip or not config.allocation.end_ip:
        raise ConfigError("allocation.start_ip and allocation.end_ip are required")
    start = _parse_ipv4(config.allocation.start_ip, "allocation.start_ip")
    end = _parse_ipv4(config.allocation.end_ip, "allocation.end_ip")
    if int(start) > int(end):
        raise ConfigError("allocation.start_ip must not be greater than allocation.end_ip")

    if config.allocation.store not in ALLOCATION_STORES:
        raise ConfigError(f"allocation.store must be one of {', '.join(ALLOCATION_STORES)}")

    if config.controller.workers < 1:
        raise ConfigError("controller.workers must be >= 1")

    if config.kubernetes.watch_timeout_seconds < 10:
        raise ConfigError("kubernetes.watch_timeout_seconds must be >= 10")

    if config.keepalived is not None:
        if config.keepalived.state not in ("MASTER", "BACKUP"):
            raise ConfigError("keepalived.state must be 'MASTER' or 'BACKUP'")
        if not 1 <= config.keepalived.virtual_router_id <= 255:
            raise ConfigError("keepalived.virtual_router_id must be between 1 and 255")

    if config.logging.format not in ("json", "text"):
        raise ConfigError("logging.format must be 'json' or 'text'")
