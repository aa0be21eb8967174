"""Monitor/pool/virtual-server reconciliation against an F5 BIG-IP."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from ..allocation import VirtualIPAllocator
from ..cluster import ClusterClient
from ..cluster.models import ConfigGroup, Node, Service, ServicePort
from ..config import BackendConfig, F5Config
from ..exceptions import (
    BackendAPIError,
    LBControllerError,
    NodeAddressError,
    ResourceConflict,
    ResourceNotFound,
    ValidationError,
)
from .compensation import Compensation
from .icontrol_client import IControlClient

logger = logging.getLogger(__name__)

VIRTUAL_SERVER = "virtualserver"
POOL = "pool"
MONITOR = "monitor"

# Deletion order: a virtual server references its pool, a pool its monitor
DELETION_ORDER = (VIRTUAL_SERVER, POOL, MONITOR)


@dataclass(frozen=True)
class PoolTarget:
    """One provisioned service port of a group."""

    qualifier: str
    pool: str
    node_port: int


@dataclass
class ProvisionedGroup:
    group: ConfigGroup
    vip: str
    targets: list[PoolTarget] = field(default_factory=list)


class F5Backend:
    """Maps configuration groups onto BIG-IP monitors, pools and virtual servers."""

    def __init__(
        self,
        config: F5Config,
        backend_cfg: BackendConfig,
        cluster: ClusterClient,
        allocator: VirtualIPAllocator,
        client: IControlClient | None = None,
    ):
        self._config = config
        self._sep = backend_cfg.name_separator
        self._cluster = cluster
        self._allocator = allocator
        self._client = client or IControlClient(config)
        self._groups: dict[str, ProvisionedGroup] = {}
        # Pools of provisions still running, so node events reach them too
        self._in_flight: dict[str, list[PoolTarget]] = {}
        self._lock = threading.Lock()

    def start(self) -> None:
        logger.info("F5 backend ready (partition %s)", self._client.partition)

    def shutdown(self) -> None:
        # Remote resources stay in place; they are rediscovered by name on restart
        logger.info("F5 backend shutting down")
        self._client.close()

    def resource_name(self, group: str, kind: str, qualifier: str = "") -> str:
        """Deterministic name: group, optional port qualifier, resource kind."""
        parts = [group, qualifier, kind] if qualifier else [group, kind]
        return self._sep.join(parts)

    def provisioned(self, group: str) -> ProvisionedGroup | None:
        with self._lock:
            return self._groups.get(group)

    # ── Provisioning ────────────────────────────────────────────────

    def provision(self, group: ConfigGroup) -> None:
        """Create or converge every resource of ``group``.

        Raises ProvisionError (after undoing what this call created) on failure.
        """
        group.validate()
        logger.info("Provisioning group %s", group.name, extra={"group": group.name})

        try:
            vip, targets = self._provision_ports(group)
            with self._lock:
                previous = self._groups.get(group.name)
                self._groups[group.name] = ProvisionedGroup(group, vip, targets)
        finally:
            with self._lock:
                self._in_flight.pop(group.name, None)

        if previous is not None:
            current = {t.qualifier for t in targets}
            for stale in previous.targets:
                if stale.qualifier not in current:
                    logger.info(
                        "Service port %s no longer targeted by group %s, removing its resources",
                        stale.qualifier or "(default)", group.name, extra={"group": group.name},
                    )
                    self._delete_port_resources(group.name, stale.qualifier)

        logger.info(
            "Group %s provisioned on %s with %d pool(s)", group.name, vip, len(targets),
            extra={"group": group.name, "vip": vip},
        )

    def _provision_ports(self, group: ConfigGroup) -> tuple[str, list[PoolTarget]]:
        with Compensation(group.name) as comp:
            service = self._cluster.get_service(group.namespace, group.target_service_name)
            if service is None:
                raise ValidationError(
                    f"Service {group.namespace}/{group.target_service_name} not found"
                )
            ports = self._target_ports(group, service)
            nodes = [n for n in self._cluster.list_nodes() if n.ready]
            members = self._usable_nodes(nodes)
            vip = self._ensure_vip(comp, group)

            targets: list[PoolTarget] = []
            for port in ports:
                qualifier = service.port_qualifier(port)
                monitor_name = self.resource_name(group.name, MONITOR, qualifier)
                pool_name = self.resource_name(group.name, POOL, qualifier)
                vs_name = self.resource_name(group.name, VIRTUAL_SERVER, qualifier)

                self._ensure_monitor(comp, monitor_name)
                self._ensure_pool(comp, pool_name, monitor_name)

                target = PoolTarget(qualifier, pool_name, port.node_port)
                targets.append(target)
                # Registered before the member sync so concurrent node hooks see this pool
                with self._lock:
                    self._in_flight.setdefault(group.name, []).append(target)
                self._sync_members(pool_name, port.node_port, members)

                bind_port = group.bind_port if len(ports) == 1 else port.port
                self._ensure_virtual_server(comp, vs_name, pool_name, f"{vip}:{bind_port}")

        return vip, targets

    @staticmethod
    def _target_ports(group: ConfigGroup, service: Service) -> list[ServicePort]:
        if not service.ports:
            raise ValidationError(f"Could not find any port from service {service.name}")
        ports = group.target_ports(service)
        if not ports:
            raise ValidationError(
                f"Service {service.name} has no port matching target-port {group.target_port}"
            )
        for p in ports:
            if p.node_port == 0:
                raise ValidationError(
                    f"Service {service.name} port {p.name or p.port} has no node port"
                )
        return ports

    def _ensure_monitor(self, comp: Compensation, name: str) -> None:
        if self._client.get_monitor(name) is not None:
            return
        try:
            self._client.create_monitor(name, self._config.monitor_interval, self._config.monitor_timeout)
        except ResourceConflict:
            logger.debug("Monitor %s already exists", name)
            return
        comp.record(f"{MONITOR} {name}", lambda: self._client.delete_monitor(name))
        logger.info("Monitor %s created", name, extra={"resource": name})

    def _ensure_pool(self, comp: Compensation, name: str, monitor: str) -> None:
        if self._client.get_pool(name) is not None:
            return
        try:
            self._client.create_pool(name, monitor)
        except ResourceConflict:
            logger.debug("Pool %s already exists", name)
            return
        comp.record(f"{POOL} {name}", lambda: self._client.delete_pool(name))
        logger.info("Pool %s created", name, extra={"pool": name})

    def _ensure_vip(self, comp: Compensation, group: ConfigGroup) -> str:
        if group.bind_ip:
            return group.bind_ip
        existing = self._allocator.lookup(group.name)
        if existing is not None:
            return existing
        vip = self._allocator.allocate(group.name)
        comp.record(f"virtual IP {vip}", lambda: self._allocator.release(group.name))
        return vip

    def _ensure_virtual_server(self, comp: Compensation, name: str, pool: str, destination: str) -> None:
        vs = self._client.get_virtual_server(name)
        if vs is None:
            self._client.create_virtual_server(name, pool, destination)
            comp.record(f"{VIRTUAL_SERVER} {name}", lambda: self._client.delete_virtual_server(name))
            logger.info("Virtual server %s created on %s", name, destination, extra={"resource": name})
            return

        if format_destination(vs.get("destination", "")) != destination:
            self._client.modify_virtual_server_destination(name, destination)
            logger.info(
                "Virtual server %s has updated its destination to %s", name, destination,
                extra={"resource": name},
            )

    # ── Pool membership ─────────────────────────────────────────────

    def _usable_nodes(self, nodes: list[Node]) -> list[str]:
        """Names of nodes whose BIG-IP node object exists with the right address."""
        usable: list[str] = []
        for node in nodes:
            if self._ensure_node(node):
                usable.append(node.name)
        return usable

    def _ensure_node(self, node: Node) -> bool:
        try:
            address = node.host_ip
        except NodeAddressError as exc:
            logger.error("Skipping node %s: %s", node.name, exc, extra={"node": node.name})
            return False

        try:
            existing = self._client.get_node(node.name)
            if existing is None:
                self._client.create_node(node.name, address)
                logger.info("Node %s created with address %s", node.name, address, extra={"node": node.name})
            elif existing.get("address") != address:
                self._client.modify_node(node.name, address)
                logger.info("Node %s has updated its IP to %s", node.name, address, extra={"node": node.name})
        except BackendAPIError as exc:
            logger.error("Error ensuring node %s with IP %s: %s", node.name, address, exc, extra={"node": node.name})
            return False
        return True

    def _sync_members(self, pool: str, node_port: int, node_names: list[str]) -> None:
        desired = {member_name(n, node_port) for n in node_names}
        existing = {m["name"] for m in self._client.list_pool_members(pool)}

        for member in sorted(desired - existing):
            try:
                self._client.add_pool_member(pool, member)
                logger.info("Member %s added to pool %s", member, pool, extra={"pool": pool})
            except ResourceConflict:
                logger.debug("Member %s already in pool %s", member, pool)
            except BackendAPIError as exc:
                logger.warning("Could not add member %s to pool %s: %s", member, pool, exc, extra={"pool": pool})

        for member in sorted(existing - desired):
            try:
                self._client.delete_pool_member(pool, member)
                logger.info("Member %s removed from pool %s", member, pool, extra={"pool": pool})
            except ResourceNotFound:
                pass
            except BackendAPIError as exc:
                logger.warning(
                    "Could not remove member %s from pool %s: %s", member, pool, exc, extra={"pool": pool},
                )

    # ── Deprovisioning ──────────────────────────────────────────────

    def deprovision(self, group_name: str) -> None:
        """Delete every resource of the group and release its virtual IP. Never raises."""
        with self._lock:
            entry = self._groups.pop(group_name, None)

        if entry is not None:
            qualifiers = [t.qualifier for t in entry.targets]
        else:
            qualifiers = self._discover_qualifiers(group_name)

        logger.info(
            "Deprovisioning group %s (%d port(s))", group_name, len(qualifiers),
            extra={"group": group_name},
        )
        for qualifier in qualifiers:
            self._delete_port_resources(group_name, qualifier)

        try:
            self._allocator.release(group_name)
        except LBControllerError as exc:
            logger.error("Error deleting virtual IP of group %s: %s", group_name, exc, extra={"group": group_name})

    def _delete_port_resources(self, group_name: str, qualifier: str) -> None:
        for kind in DELETION_ORDER:
            self._delete_resource(kind, self.resource_name(group_name, kind, qualifier))

    def _delete_resource(self, kind: str, name: str) -> None:
        deleters = {
            VIRTUAL_SERVER: self._client.delete_virtual_server,
            POOL: self._client.delete_pool,
            MONITOR: self._client.delete_monitor,
        }
        try:
            deleters[kind](name)
        except ResourceNotFound:
            logger.debug("%s %s does not exist, nothing to delete", kind, name)
            return
        except BackendAPIError as exc:
            logger.error("Could not delete %s %s: %s", kind, name, exc, extra={"resource": name})
            return
        logger.info("%s %s deleted", kind, name, extra={"resource": name})

    def _discover_qualifiers(self, group_name: str) -> list[str]:
        """Recover port qualifiers of a group not provisioned by this process from resource names."""
        try:
            names = [m["name"] for m in self._client.list_monitors()]
            names += [p["name"] for p in self._client.list_pools()]
            names += [v["name"] for v in self._client.list_virtual_servers()]
        except BackendAPIError as exc:
            logger.error(
                "Could not list resources of group %s: %s", group_name, exc, extra={"group": group_name},
            )
            return [""]

        with self._lock:
            others = [g for g in self._groups if g != group_name]

        qualifiers: set[str] = set()
        for name in names:
            for kind in DELETION_ORDER:
                qualifier = self._qualifier_from_name(group_name, kind, name)
                if qualifier is None:
                    continue
                # A longer group name sharing our prefix owns this resource
                if qualifier and any(name.startswith(f"{o}{self._sep}") for o in others if len(o) > len(group_name)):
                    continue
                qualifiers.add(qualifier)
        return sorted(qualifiers) or [""]

    def _qualifier_from_name(self, group_name: str, kind: str, name: str) -> str | None:
        if name == self.resource_name(group_name, kind):
            return ""
        prefix = f"{group_name}{self._sep}"
        suffix = f"{self._sep}{kind}"
        if name.startswith(prefix) and name.endswith(suffix) and len(name) > len(prefix) + len(suffix):
            return name[len(prefix):-len(suffix)]
        return None

    # ── Node membership ─────────────────────────────────────────────

    def on_node_added(self, node: Node) -> None:
        if not node.ready:
            logger.debug("Node %s is not ready, not adding members", node.name)
            return
        if not self._ensure_node(node):
            return
        self._add_members(node.name)

    def on_node_removed(self, node: Node) -> None:
        self._remove_members(node.name)
        try:
            self._client.delete_node(node.name)
            logger.info("Node %s deleted", node.name, extra={"node": node.name})
        except ResourceNotFound:
            pass
        except BackendAPIError as exc:
            logger.error("Could not delete node %s: %s", node.name, exc, extra={"node": node.name})

    def on_node_updated(self, old: Node, new: Node) -> None:
        if not new.ready:
            if old.ready:
                logger.info("Node %s is no longer ready", new.name, extra={"node": new.name})
            self._remove_members(new.name)
            return
        if not self._ensure_node(new):
            return
        self._add_members(new.name)

    def _pool_targets(self) -> list[PoolTarget]:
        with self._lock:
            targets = {t.pool: t for entry in self._groups.values() for t in entry.targets}
            for pending in self._in_flight.values():
                targets.update((t.pool, t) for t in pending)
        return list(targets.values())

    def _add_members(self, node_name: str) -> None:
        for target in self._pool_targets():
            member = member_name(node_name, target.node_port)
            try:
                self._client.add_pool_member(target.pool, member)
                logger.info("Created member %s in pool %s", member, target.pool, extra={"pool": target.pool})
            except ResourceConflict:
                logger.debug("Member %s already in pool %s", member, target.pool)
            except BackendAPIError as exc:
                logger.error(
                    "Could not add member %s to pool %s: %s", member, target.pool, exc,
                    extra={"pool": target.pool, "node": node_name},
                )

    def _remove_members(self, node_name: str) -> None:
        for target in self._pool_targets():
            member = member_name(node_name, target.node_port)
            try:
                self._client.delete_pool_member(target.pool, member)
                logger.info("Deleted member %s for pool %s", member, target.pool, extra={"pool": target.pool})
            except ResourceNotFound:
                logger.debug("Member %s not in pool %s", member, target.pool)
            except BackendAPIError as exc:
                logger.error(
                    "Could not delete member %s from pool %s: %s", member, target.pool, exc,
                    extra={"pool": target.pool, "node": node_name},
                )


def member_name(node_name: str, node_port: int) -> str:
    return f"{node_name}:{node_port}"


def format_destination(destination: str) -> str:
    """``/Common/10.0.0.1:80`` -> ``10.0.0.1:80``."""
    return destination.rsplit("/", 1)[-1]
