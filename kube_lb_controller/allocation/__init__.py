"""Virtual IP allocation package."""

from __future__ import annotations

from ..config import AllocationConfig
from .table import AllocationTable, ConfigMapAllocationTable, MemoryAllocationTable, TableSnapshot
from .vip_allocator import VirtualIPAllocator

__all__ = [
    "AllocationTable",
    "ConfigMapAllocationTable",
    "MemoryAllocationTable",
    "TableSnapshot",
    "VirtualIPAllocator",
    "build_allocator",
]


def build_allocator(config: AllocationConfig, core_api=None, namespace: str = "default") -> VirtualIPAllocator:
    """Instantiate the allocator over the configured table store."""
    if config.store == "memory":
        table: AllocationTable = MemoryAllocationTable()
    else:
        if core_api is None:
            raise ValueError("A Kubernetes CoreV1Api is required for the configmap allocation store")
        table = ConfigMapAllocationTable(core_api, namespace, config.config_map_name)
    return VirtualIPAllocator(config.start_ip, config.end_ip, table)
