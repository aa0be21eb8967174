"""Data models for configuration groups, services and cluster nodes."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field

from ..exceptions import InvalidGroupError, NodeAddressError

logger = logging.getLogger(__name__)

GROUP_SEPARATOR = "."

# Node address types in selection priority order
NODE_ADDRESS_PRIORITY = ("ExternalIP", "LegacyHostIP", "InternalIP")

_TRUE_VALUES = frozenset({"1", "t", "T", "true", "TRUE", "True"})
_FALSE_VALUES = frozenset({"0", "f", "F", "false", "FALSE", "False"})


@dataclass(frozen=True)
class ConfigGroup:
    """A named load-balanced endpoint assembled from ``<group>.<field>`` keys."""

    name: str
    namespace: str = ""
    host: str = ""
    bind_ip: str = ""
    bind_port: int = 0
    target_service_name: str = ""
    target_service_id: str = ""
    target_port: int = 0
    ssl: bool = False
    ssl_port: int = 0
    path: str = ""
    tls_cert: str | None = None
    tls_key: str | None = None

    def validate(self) -> None:
        """Raise InvalidGroupError when the group cannot be provisioned."""
        if self.bind_port <= 0:
            raise InvalidGroupError(self.name, "bind-port is required")
        if not self.target_service_name:
            raise InvalidGroupError(self.name, "target-service-name is required")

    def target_ports(self, service: Service) -> list[ServicePort]:
        """Service ports this group balances.

        A port matches when its number (or target port) equals target-port or
        its name equals target-service-id. With neither set, every port matches.
        """
        if self.target_port <= 0 and not self.target_service_id:
            return list(service.ports)
        return [
            p for p in service.ports
            if (self.target_port > 0 and (p.port == self.target_port or p.target_port == self.target_port))
            or (self.target_service_id and p.name == self.target_service_id)
        ]


@dataclass(frozen=True)
class ServicePort:
    name: str
    port: int
    node_port: int = 0
    target_port: int | str | None = None


@dataclass(frozen=True)
class Service:
    name: str
    namespace: str
    ports: tuple[ServicePort, ...] = ()

    @property
    def key(self) -> tuple[str, str]:
        return (self.namespace, self.name)

    @property
    def port_signature(self) -> tuple[tuple[str, int, int], ...]:
        """Stable summary of the ports, used to detect meaningful service changes."""
        return tuple(sorted((p.name, p.port, p.node_port) for p in self.ports))

    def port_qualifier(self, port: ServicePort) -> str:
        """Per-port resource name qualifier ('' for a single unnamed port)."""
        if port.name:
            return port.name
        if len(self.ports) > 1:
            return str(port.port)
        return ""


@dataclass(frozen=True)
class NodeAddress:
    type: str
    address: str


@dataclass(frozen=True)
class Node:
    """A cluster member as seen by the controller."""

    name: str
    ready: bool = True
    addresses: tuple[NodeAddress, ...] = field(default_factory=tuple)

    @property
    def host_ip(self) -> str:
        """The node's selected address. Raises NodeAddressError when none is usable."""
        return select_node_address(self)


def select_node_address(node: Node) -> str:
    """Pick one address per node: ExternalIP, then LegacyHostIP, then InternalIP."""
    by_type: dict[str, list[str]] = {}
    for addr in node.addresses:
        by_type.setdefault(addr.type, []).append(addr.address)
    for addr_type in NODE_ADDRESS_PRIORITY:
        if by_type.get(addr_type):
            return by_type[addr_type][0]
    raise NodeAddressError(node.name, [(a.type, a.address) for a in node.addresses])


# ── Group parsing ───────────────────────────────────────────────────


def _parse_int(group: str, key: str, raw: str, strict: bool) -> int:
    if raw == "":
        return 0
    try:
        return int(raw)
    except ValueError:
        if strict:
            raise InvalidGroupError(group, f"{key} is not an integer: '{raw}'") from None
        logger.warning("Group %s has non-integer %s '%s', using 0", group, key, raw, extra={"group": group})
        return 0


def _parse_bool(group: str, key: str, raw: str, strict: bool) -> bool:
    if raw == "" or raw in _FALSE_VALUES:
        return False
    if raw in _TRUE_VALUES:
        return True
    if strict:
        raise InvalidGroupError(group, f"{key} is not a boolean: '{raw}'")
    logger.warning("Group %s has non-boolean %s '%s', using false", group, key, raw, extra={"group": group})
    return False


def parse_group(
    snapshot: Mapping[str, str],
    name: str,
    default_namespace: str = "",
    strict: bool = False,
) -> ConfigGroup:
    """Build a ConfigGroup from the ``<name>.<field>`` keys of a snapshot.

    Missing fields default to empty/zero/false. Malformed numbers and booleans
    fall back to their zero value unless ``strict`` is set, in which case
    InvalidGroupError is raised.
    """

    def value(field_name: str) -> str:
        return snapshot.get(f"{name}{GROUP_SEPARATOR}{field_name}", "")

    return ConfigGroup(
        name=name,
        namespace=value("namespace") or default_namespace,
        host=value("host"),
        bind_ip=value("bind-ip"),
        bind_port=_parse_int(name, "bind-port", value("bind-port"), strict),
        target_service_name=value("target-service-name"),
        target_service_id=value("target-service-id"),
        target_port=_parse_int(name, "target-port", value("target-port"), strict),
        ssl=_parse_bool(name, "SSL", value("SSL"), strict),
        ssl_port=_parse_int(name, "ssl-port", value("ssl-port"), strict),
        path=value("path"),
    )
