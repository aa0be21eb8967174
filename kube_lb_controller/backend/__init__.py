"""Load-balancer backends: the capability Protocol and backend selection."""

from __future__ import annotations

import enum
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..allocation import VirtualIPAllocator
    from ..cluster import ClusterClient
    from ..cluster.models import ConfigGroup, Node
    from ..config import AppConfig


class BackendKind(enum.Enum):
    F5 = "f5"
    KEEPALIVED = "keepalived"


@runtime_checkable
class Backend(Protocol):
    """Protocol that every load-balancer backend must satisfy.

    ``provision`` must be idempotent: it is called again for every update of a
    group that is still configured.
    """

    def start(self) -> None:
        ...

    def shutdown(self) -> None:
        """Release anything that must not outlive the controller process."""
        ...

    def provision(self, group: ConfigGroup) -> None:
        ...

    def deprovision(self, group_name: str) -> None:
        ...

    def on_node_added(self, node: Node) -> None:
        ...

    def on_node_removed(self, node: Node) -> None:
        ...

    def on_node_updated(self, old: Node, new: Node) -> None:
        ...


def build_backend(config: AppConfig, cluster: ClusterClient, allocator: VirtualIPAllocator) -> Backend:
    """Instantiate the backend selected by ``backend.kind``."""
    kind = BackendKind(config.backend.kind)
    if kind is BackendKind.F5:
        from .f5 import F5Backend
        return F5Backend(config.f5, config.backend, cluster, allocator)
    from .keepalived import KeepalivedBackend, KeepalivedController
    return KeepalivedBackend(KeepalivedController(config.keepalived), allocator)
