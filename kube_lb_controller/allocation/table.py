"""Persisted virtual IP allocation tables with compare-and-swap writes."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Protocol

from kubernetes import client
from kubernetes.client import ApiException, CoreV1Api

from ..exceptions import AllocationConflict, ClusterAPIError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TableSnapshot:
    """Allocation entries (``ip -> group``) and the version they were read at."""

    entries: dict[str, str] = field(default_factory=dict)
    version: str | None = None


class AllocationTable(Protocol):
    def read(self) -> TableSnapshot:
        """Return the full table and its current version."""
        ...

    def write(self, entries: dict[str, str], version: str | None) -> None:
        """Replace the table. Raises AllocationConflict if ``version`` is stale."""
        ...


class MemoryAllocationTable:
    """Process-local table for single-controller deployments."""

    def __init__(self, entries: dict[str, str] | None = None):
        self._lock = threading.Lock()
        self._entries = dict(entries or {})
        self._version = 0

    def read(self) -> TableSnapshot:
        with self._lock:
            return TableSnapshot(dict(self._entries), str(self._version))

    def write(self, entries: dict[str, str], version: str | None) -> None:
        with self._lock:
            if version != str(self._version):
                raise AllocationConflict(
                    f"Allocation table version {version} is stale (current {self._version})"
                )
            self._entries = dict(entries)
            self._version += 1


class ConfigMapAllocationTable:
    """Allocation table stored as the ``data`` of a ConfigMap.

    Writes are full replaces carrying the ``resourceVersion`` observed at read
    time, so the API server rejects a write racing another controller with 409.
    """

    def __init__(self, core_api: CoreV1Api, namespace: str, name: str):
        self._core = core_api
        self._namespace = namespace
        self._name = name

    def read(self) -> TableSnapshot:
        try:
            cm = self._core.read_namespaced_config_map(name=self._name, namespace=self._namespace)
        except ApiException as exc:
            if exc.status != 404:
                raise ClusterAPIError(
                    f"Error reading allocation table {self._namespace}/{self._name}: {exc.reason}",
                    status_code=exc.status,
                ) from exc
            cm = self._create()
        return TableSnapshot(dict(cm.data or {}), cm.metadata.resource_version)

    def write(self, entries: dict[str, str], version: str | None) -> None:
        body = client.V1ConfigMap(
            metadata=client.V1ObjectMeta(
                name=self._name, namespace=self._namespace, resource_version=version,
            ),
            data=dict(entries),
        )
        try:
            self._core.replace_namespaced_config_map(name=self._name, namespace=self._namespace, body=body)
        except ApiException as exc:
            if exc.status == 409:
                raise AllocationConflict(
                    f"Allocation table {self._namespace}/{self._name} changed since version {version}"
                ) from exc
            raise ClusterAPIError(
                f"Error updating allocation table {self._namespace}/{self._name}: {exc.reason}",
                status_code=exc.status,
            ) from exc

    def _create(self):
        logger.info("ConfigMap %s/%s does not exist. Creating...", self._namespace, self._name)
        body = client.V1ConfigMap(
            metadata=client.V1ObjectMeta(name=self._name, namespace=self._namespace),
            data={},
        )
        try:
            return self._core.create_namespaced_config_map(namespace=self._namespace, body=body)
        except ApiException as exc:
            if exc.status == 409:
                # Another controller created it first
                try:
                    return self._core.read_namespaced_config_map(name=self._name, namespace=self._namespace)
                except ApiException as reread_exc:
                    raise ClusterAPIError(
                        f"Error reading allocation table {self._namespace}/{self._name}: {reread_exc.reason}",
                        status_code=reread_exc.status,
                    ) from reread_exc
            raise ClusterAPIError(
                f"Error creating allocation table {self._namespace}/{self._name}: {exc.reason}",
                status_code=exc.status,
            ) from exc
