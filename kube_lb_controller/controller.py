"""Event-driven reconciliation loop: watch events in, backend calls out."""

from __future__ import annotations

import atexit
import logging
import signal
import threading
import time
from collections.abc import Callable, Mapping
from types import FrameType
from typing import Any

from .allocation import build_allocator
from .backend import Backend, build_backend
from .cluster.change_detector import GroupChange, diff_snapshots
from .cluster.kube_client import KubeClient, config_map_data, config_map_key, node_from_api, service_from_api
from .cluster.models import ConfigGroup, Node, parse_group, select_node_address
from .cluster.watcher import ResourceWatcher
from .config import AppConfig
from .dispatcher import KeyedDispatcher
from .exceptions import FatalError, InvalidGroupError, LBControllerError, NodeAddressError, ProvisionError

logger = logging.getLogger(__name__)

WATCHER_JOIN_SECONDS = 5.0


class Controller:
    """Turns ConfigMap, Node and Service events into backend calls.

    Config changes are diffed per ConfigMap and dispatched with key
    ``group:<name>``; node changes with key ``node:<name>``. The dispatcher runs
    tasks of one key in order and tasks of different keys in parallel.
    """

    def __init__(
        self,
        config: AppConfig,
        backend: Backend,
        kube: KubeClient | None = None,
        dispatcher: KeyedDispatcher | None = None,
    ):
        self._config = config
        self._backend = backend
        self._kube = kube
        self._dispatcher = dispatcher or KeyedDispatcher(config.controller.workers)
        self._strict = config.controller.strict_group_fields

        self._lock = threading.Lock()
        self._config_maps: dict[str, tuple[str, dict[str, str]]] = {}
        self._nodes: dict[str, Node] = {}
        self._nodes_synced = False
        self._service_ports: dict[tuple[str, str], tuple] = {}
        self._services_synced = False
        self._active: dict[str, ConfigGroup] = {}

        self._stop_event = threading.Event()
        self._resync_requested = threading.Event()
        self._watchers: list[ResourceWatcher] = []
        self._fatal = False
        self._shutdown_lock = threading.Lock()
        self._shutdown_done = False

    @classmethod
    def from_config(cls, config: AppConfig) -> Controller:
        kube = KubeClient(config.kubernetes)
        allocator = build_allocator(config.allocation, kube.core_api, config.kubernetes.namespace)
        backend = build_backend(config, kube, allocator)
        return cls(config, backend, kube)

    @property
    def active_groups(self) -> dict[str, ConfigGroup]:
        with self._lock:
            return dict(self._active)

    # ── Lifecycle ───────────────────────────────────────────────────

    def run(self) -> int:
        """Watch until a shutdown signal or a fatal error. Returns the exit code."""
        self._install_signal_handlers()
        atexit.register(self.shutdown)
        try:
            self._backend.start()
            self._watchers = self._build_watchers()
            for watcher in self._watchers:
                watcher.start()
            logger.info("Controller started with %d watchers", len(self._watchers))

            while not self._stop_event.is_set():
                if self._resync_requested.is_set():
                    self._resync_requested.clear()
                    self.resync()
                self._stop_event.wait(timeout=1.0)
        finally:
            self.shutdown()

        logger.info("Controller stopped")
        return 1 if self._fatal else 0

    def run_once(self) -> int:
        """List every watched resource once, reconcile, drain and exit."""
        try:
            self._backend.start()
            for watcher in self._build_watchers():
                watcher.relist()
        finally:
            self.shutdown()
        return 1 if self._fatal else 0

    def stop(self, fatal: bool = False) -> None:
        if fatal:
            self._fatal = True
        self._stop_event.set()

    def shutdown(self) -> None:
        """Stop watchers, drain queued tasks and release backend state. Runs once."""
        with self._shutdown_lock:
            if self._shutdown_done:
                return
            self._shutdown_done = True
        atexit.unregister(self.shutdown)

        logger.info("Shutting down")
        self._stop_event.set()
        for watcher in self._watchers:
            watcher.stop()
        for watcher in self._watchers:
            if watcher.is_alive():
                watcher.join(timeout=WATCHER_JOIN_SECONDS)

        self._dispatcher.shutdown(wait=True)

        try:
            self._backend.shutdown()
        except LBControllerError as exc:
            logger.error("Backend shutdown failed: %s", exc)
            if isinstance(exc, FatalError):
                self._fatal = True

    def resync(self) -> None:
        """Provision every active group again."""
        groups = self.active_groups
        logger.info("Resyncing %d group(s)", len(groups))
        for group in groups.values():
            self._dispatch_provision(group)

    def _build_watchers(self) -> list[ResourceWatcher]:
        if self._kube is None:
            raise RuntimeError("A Kubernetes client is required to watch resources")
        timeout = self._config.kubernetes.watch_timeout_seconds
        return [
            ResourceWatcher(
                "nodes", self._kube.node_list_call(), self.handle_node_event,
                self._stop_event, sync=self.sync_nodes, timeout_seconds=timeout,
            ),
            ResourceWatcher(
                "services", self._kube.service_list_call(), self.handle_service_event,
                self._stop_event, sync=self.sync_services, timeout_seconds=timeout,
            ),
            ResourceWatcher(
                "configmaps", self._kube.config_map_list_call(), self.handle_config_map_event,
                self._stop_event, sync=self.sync_config_maps, timeout_seconds=timeout,
            ),
        ]

    def _install_signal_handlers(self) -> None:
        signal.signal(signal.SIGTERM, self._handle_shutdown)
        signal.signal(signal.SIGINT, self._handle_shutdown)
        signal.signal(signal.SIGHUP, self._handle_resync)

    def _handle_shutdown(self, signum: int, frame: FrameType | None) -> None:
        sig_name = signal.Signals(signum).name
        logger.info("Received %s, shutting down", sig_name)
        self.stop()

    def _handle_resync(self, signum: int, frame: FrameType | None) -> None:
        # Only flags the request; the run loop submits the work outside the handler
        if self._stop_event.is_set():
            logger.info("Received SIGHUP while shutting down, ignoring")
            return
        logger.info("Received SIGHUP, re-provisioning all groups")
        self._resync_requested.set()

    # ── Configuration ───────────────────────────────────────────────

    def handle_config_map_event(self, event_type: str, obj: Any) -> None:
        key = config_map_key(obj)
        namespace = obj.metadata.namespace
        if event_type == "DELETED":
            with self._lock:
                _, old = self._config_maps.pop(key, (namespace, {}))
            logger.info("ConfigMap %s deleted", key, extra={"event": event_type})
            self.apply_config_change(namespace, old, {})
            return

        new = config_map_data(obj)
        with self._lock:
            _, old = self._config_maps.get(key, (namespace, {}))
            self._config_maps[key] = (namespace, new)
        self.apply_config_change(namespace, old, new)

    def sync_config_maps(self, items: list[Any]) -> None:
        """Reconcile a full ConfigMap listing against the cache."""
        listed = {config_map_key(obj): obj for obj in items}
        with self._lock:
            vanished = {k: v for k, v in self._config_maps.items() if k not in listed}
            for k in vanished:
                del self._config_maps[k]

        for key, (namespace, old) in sorted(vanished.items()):
            logger.info("ConfigMap %s disappeared while not watching", key)
            self.apply_config_change(namespace, old, {})
        for obj in listed.values():
            self.handle_config_map_event("ADDED", obj)

    def apply_config_change(self, namespace: str, old: Mapping[str, str], new: Mapping[str, str]) -> None:
        """Diff two snapshots of one ConfigMap and dispatch per-group work."""
        for diff in diff_snapshots(old, new):
            if diff.change is GroupChange.REMOVED:
                logger.info(
                    "Group %s removed", diff.group, extra={"group": diff.group, "event": diff.change.value},
                )
                with self._lock:
                    self._active.pop(diff.group, None)
                self._dispatcher.submit(
                    f"group:{diff.group}", self._run_task,
                    f"Deprovisioning group {diff.group}", self._backend.deprovision, diff.group,
                )
                continue

            try:
                group = parse_group(new, diff.group, namespace, strict=self._strict)
                group.validate()
            except InvalidGroupError as exc:
                logger.error(
                    "Skipping group %s: %s", diff.group, exc.reason,
                    extra={"group": diff.group, "event": diff.change.value},
                )
                continue

            logger.info(
                "Group %s %s", diff.group, diff.change.value,
                extra={"group": diff.group, "event": diff.change.value},
            )
            with self._lock:
                self._active[group.name] = group
            self._dispatch_provision(group)

    def _dispatch_provision(self, group: ConfigGroup) -> None:
        self._dispatcher.submit(
            f"group:{group.name}", self._run_task,
            f"Provisioning group {group.name}", self._backend.provision, group,
        )

    # ── Nodes ───────────────────────────────────────────────────────

    def handle_node_event(self, event_type: str, obj: Any) -> None:
        node = node_from_api(obj)
        with self._lock:
            if event_type == "DELETED":
                old = self._nodes.pop(node.name, None)
            else:
                old = self._nodes.get(node.name)
                self._nodes[node.name] = node
        self._dispatch_node_change(event_type, old, node)

    def sync_nodes(self, items: list[Any]) -> None:
        """Reconcile a full node listing. The first listing only seeds the cache."""
        listed = {n.name: n for n in (node_from_api(obj) for obj in items)}
        with self._lock:
            first = not self._nodes_synced
            self._nodes_synced = True
            previous = self._nodes
            self._nodes = dict(listed)
        if first:
            logger.info("Seeded %d node(s)", len(listed))
            return

        for name, old in sorted(previous.items()):
            if name not in listed:
                self._dispatch_node_change("DELETED", old, old)
        for name, node in sorted(listed.items()):
            self._dispatch_node_change("MODIFIED", previous.get(name), node)

    def _dispatch_node_change(self, event_type: str, old: Node | None, node: Node) -> None:
        key = f"node:{node.name}"
        extra = {"node": node.name, "event": event_type}
        if event_type == "DELETED":
            logger.info("Node %s removed", node.name, extra=extra)
            self._dispatcher.submit(
                key, self._run_task, f"Removing node {node.name}", self._backend.on_node_removed, node,
            )
        elif old is None:
            logger.info("Node %s added", node.name, extra=extra)
            self._dispatcher.submit(
                key, self._run_task, f"Adding node {node.name}", self._backend.on_node_added, node,
            )
        elif old.ready != node.ready or _node_address(old) != _node_address(node):
            logger.info("Node %s updated (ready=%s)", node.name, node.ready, extra=extra)
            self._dispatcher.submit(
                key, self._run_task, f"Updating node {node.name}", self._backend.on_node_updated, old, node,
            )

    # ── Services ────────────────────────────────────────────────────

    def handle_service_event(self, event_type: str, obj: Any) -> None:
        service = service_from_api(obj)
        if event_type == "DELETED":
            with self._lock:
                self._service_ports.pop(service.key, None)
            logger.info(
                "Service %s/%s deleted; groups targeting it keep their resources",
                service.namespace, service.name, extra={"event": event_type},
            )
            return

        signature = service.port_signature
        with self._lock:
            old = self._service_ports.get(service.key)
            self._service_ports[service.key] = signature
        if old == signature:
            return
        self._reprovision_targets(service.namespace, service.name)

    def sync_services(self, items: list[Any]) -> None:
        """Reconcile a full service listing. The first listing only seeds the cache."""
        services = [service_from_api(obj) for obj in items]
        with self._lock:
            first = not self._services_synced
            self._services_synced = True
            previous = self._service_ports
            self._service_ports = {s.key: s.port_signature for s in services}
        if first:
            logger.info("Seeded %d service(s)", len(services))
            return
        for service in services:
            if previous.get(service.key) != service.port_signature:
                self._reprovision_targets(service.namespace, service.name)

    def _reprovision_targets(self, namespace: str, name: str) -> None:
        with self._lock:
            targets = [
                g for g in self._active.values()
                if g.namespace == namespace and g.target_service_name == name
            ]
        for group in targets:
            logger.info(
                "Service %s/%s changed, re-provisioning group %s", namespace, name, group.name,
                extra={"group": group.name},
            )
            self._dispatch_provision(group)

    # ── Task execution ──────────────────────────────────────────────

    def _run_task(self, description: str, fn: Callable[..., Any], *args: Any) -> None:
        start = time.monotonic()
        try:
            fn(*args)
        except FatalError as exc:
            logger.critical("%s failed fatally: %s", description, exc)
            self.stop(fatal=True)
            return
        except ProvisionError as exc:
            logger.error("%s failed: %s", description, exc, extra={"group": exc.group})
            for err in exc.compensation_errors:
                logger.error("Cleanup error: %s", err, extra={"group": exc.group})
            return
        except LBControllerError as exc:
            logger.error("%s failed: %s", description, exc)
            return
        except Exception:
            logger.exception("%s failed unexpectedly", description)
            return
        logger.info(
            "%s complete", description,
            extra={"elapsed_seconds": round(time.monotonic() - start, 2)},
        )


def _node_address(node: Node) -> str | None:
    try:
        return select_node_address(node)
    except NodeAddressError:
        return None
