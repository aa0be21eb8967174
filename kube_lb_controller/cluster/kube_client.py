"""Kubernetes API access: service/node lookups and list calls for the watchers."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, CoreV1Api

from ..config import KubernetesConfig
from ..exceptions import ClusterAPIError
from .models import Node, NodeAddress, Service, ServicePort

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ListCall:
    """A list function plus the keyword arguments to call (and watch) it with."""

    func: Callable[..., Any]
    kwargs: dict[str, Any] = field(default_factory=dict)


class KubeClient:
    """Thin wrapper around CoreV1Api returning the controller's own models."""

    def __init__(self, kube_config: KubernetesConfig, core_api: CoreV1Api | None = None):
        self._config = kube_config
        if core_api is None:
            self._load_config()
            core_api = client.CoreV1Api()
        self._core = core_api

    def _load_config(self) -> None:
        if self._config.in_cluster:
            try:
                config.load_incluster_config()
                logger.info("Using in-cluster Kubernetes config")
                return
            except config.ConfigException:
                logger.warning("In-cluster config unavailable, falling back to kubeconfig")
        config.load_kube_config(config_file=self._config.kubeconfig)
        logger.info("Using kubeconfig %s", self._config.kubeconfig or "(default)")

    @property
    def core_api(self) -> CoreV1Api:
        return self._core

    # ── Lookups ─────────────────────────────────────────────────────

    def get_service(self, namespace: str, name: str) -> Service | None:
        try:
            obj = self._core.read_namespaced_service(name=name, namespace=namespace)
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise ClusterAPIError(
                f"Error getting service {namespace}/{name}: {exc.reason}", status_code=exc.status,
            ) from exc
        return service_from_api(obj)

    def list_nodes(self) -> list[Node]:
        try:
            result = self._core.list_node()
        except ApiException as exc:
            raise ClusterAPIError(f"Error listing nodes: {exc.reason}", status_code=exc.status) from exc
        return [node_from_api(item) for item in (result.items or [])]

    # ── List calls for watchers ─────────────────────────────────────

    def config_map_list_call(self) -> ListCall:
        selector = self._config.config_label_selector
        if self._config.watch_namespace:
            return ListCall(
                self._core.list_namespaced_config_map,
                {"namespace": self._config.watch_namespace, "label_selector": selector},
            )
        return ListCall(self._core.list_config_map_for_all_namespaces, {"label_selector": selector})

    def service_list_call(self) -> ListCall:
        if self._config.watch_namespace:
            return ListCall(self._core.list_namespaced_service, {"namespace": self._config.watch_namespace})
        return ListCall(self._core.list_service_for_all_namespaces)

    def node_list_call(self) -> ListCall:
        return ListCall(self._core.list_node)


# ── API object conversion ───────────────────────────────────────────


def node_from_api(obj: Any) -> Node:
    """Convert a V1Node into a Node."""
    status = obj.status
    addresses = tuple(
        NodeAddress(type=a.type, address=a.address)
        for a in ((status.addresses if status else None) or [])
    )
    ready = False
    for condition in ((status.conditions if status else None) or []):
        if condition.type == "Ready":
            ready = condition.status == "True"
            break
    return Node(name=obj.metadata.name, ready=ready, addresses=addresses)


def service_from_api(obj: Any) -> Service:
    """Convert a V1Service into a Service."""
    ports = tuple(
        ServicePort(
            name=p.name or "",
            port=p.port,
            node_port=p.node_port or 0,
            target_port=p.target_port,
        )
        for p in ((obj.spec.ports if obj.spec else None) or [])
    )
    return Service(name=obj.metadata.name, namespace=obj.metadata.namespace, ports=ports)


def config_map_key(obj: Any) -> str:
    """``namespace/name`` of a ConfigMap."""
    return f"{obj.metadata.namespace}/{obj.metadata.name}"


def config_map_data(obj: Any) -> dict[str, str]:
    """Coerce ConfigMap ``data`` into a plain ``dict[str, str]``."""
    raw = getattr(obj, "data", None) or {}
    return {str(k): "" if v is None else str(v) for k, v in raw.items()}
