"""Cluster state package and the read-side Protocol used by backends."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .models import Node, Service


@runtime_checkable
class ClusterClient(Protocol):
    """Protocol for the cluster lookups a backend needs while provisioning."""

    def get_service(self, namespace: str, name: str) -> Service | None:
        """Return the named service, or None when it does not exist."""
        ...

    def list_nodes(self) -> list[Node]:
        """Return every node currently registered in the cluster."""
        ...
