"""Virtual IP allocation from a bounded IPv4 range."""

from __future__ import annotations

import ipaddress
import logging
import threading
from collections.abc import Callable
from typing import TypeVar

from ..exceptions import AllocationConflict, RangeExhausted
from .table import AllocationTable, TableSnapshot

logger = logging.getLogger(__name__)

MAX_CONFLICT_RETRIES = 3

T = TypeVar("T")


class VirtualIPAllocator:
    """Hands out addresses from ``[start_ip, end_ip]`` (inclusive) to groups.

    The allocation table is the only record of which addresses are in use. Each
    operation reads the whole table, mutates it in memory and writes it back with
    the version it read; a concurrent writer makes the write fail and the
    operation is retried against a fresh read.
    """

    def __init__(self, start_ip: str, end_ip: str, table: AllocationTable):
        self._start = ipaddress.IPv4Address(start_ip)
        self._end = ipaddress.IPv4Address(end_ip)
        if self._start > self._end:
            raise ValueError(f"start_ip {start_ip} is greater than end_ip {end_ip}")
        self._table = table
        self._lock = threading.Lock()

    @property
    def start_ip(self) -> str:
        return str(self._start)

    @property
    def end_ip(self) -> str:
        return str(self._end)

    def lookup(self, group: str) -> str | None:
        """Return the address held by ``group``, if any."""
        return _address_of(self._table.read().entries, group)

    def allocate(self, group: str) -> str:
        """Allocate an address for ``group`` (returns its existing one if it already holds one)."""
        return self._with_retries(lambda: self._try_allocate(group))

    def release(self, group: str) -> str | None:
        """Free the address held by ``group``. Returns it, or None if it held none."""
        return self._with_retries(lambda: self._try_release(group))

    # ── Internals ───────────────────────────────────────────────────

    def _with_retries(self, operation: Callable[[], T]) -> T:
        with self._lock:
            for attempt in range(1, MAX_CONFLICT_RETRIES + 1):
                try:
                    return operation()
                except AllocationConflict:
                    if attempt < MAX_CONFLICT_RETRIES:
                        logger.warning(
                            "Allocation table conflict on attempt %d/%d, retrying",
                            attempt, MAX_CONFLICT_RETRIES,
                        )
                    else:
                        logger.error("Allocation table conflict persisted after %d attempts", MAX_CONFLICT_RETRIES)
                        raise
        raise AssertionError("unreachable")

    def _try_allocate(self, group: str) -> str:
        snapshot = self._table.read()
        existing = _address_of(snapshot.entries, group)
        if existing is not None:
            logger.debug("Group %s already holds %s", group, existing, extra={"group": group, "vip": existing})
            return existing

        address = self._free_address(snapshot)
        entries = dict(snapshot.entries)
        entries[address] = group
        self._table.write(entries, snapshot.version)
        logger.info("Allocated virtual IP %s to group %s", address, group, extra={"group": group, "vip": address})
        return address

    def _try_release(self, group: str) -> str | None:
        snapshot = self._table.read()
        held = [ip for ip, owner in snapshot.entries.items() if owner == group]
        if not held:
            logger.debug("Group %s holds no virtual IP", group, extra={"group": group})
            return None

        entries = {ip: owner for ip, owner in snapshot.entries.items() if owner != group}
        self._table.write(entries, snapshot.version)
        for ip in held:
            logger.info("Released virtual IP %s from group %s", ip, group, extra={"group": group, "vip": ip})
        return held[0]

    def _free_address(self, snapshot: TableSnapshot) -> str:
        """First address in scan order from start that is not a key of the table."""
        used = snapshot.entries
        if str(self._start) not in used:
            return str(self._start)

        candidate = int(self._start) + 1
        while candidate <= int(self._end):
            address = str(ipaddress.IPv4Address(candidate))
            if address not in used:
                return address
            candidate += 1
        raise RangeExhausted(str(self._start), str(self._end))


def _address_of(entries: dict[str, str], group: str) -> str | None:
    for ip in sorted(entries, key=_ip_sort_key):
        if entries[ip] == group:
            return ip
    return None


def _ip_sort_key(value: str) -> tuple[int, str]:
    try:
        return (int(ipaddress.IPv4Address(value)), value)
    except ValueError:
        return (-1, value)
