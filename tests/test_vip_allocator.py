"""Tests for the virtual IP allocator."""

from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import pytest

from kube_lb_controller.allocation import MemoryAllocationTable, TableSnapshot, VirtualIPAllocator
from kube_lb_controller.allocation.vip_allocator import MAX_CONFLICT_RETRIES
from kube_lb_controller.exceptions import AllocationConflict, RangeExhausted


def _allocator(start="10.0.0.1", end="10.0.0.3", entries=None):
    return VirtualIPAllocator(start, end, MemoryAllocationTable(entries))


class TestAllocate:
    def test_allocates_in_scan_order_then_exhausts(self):
        alloc = _allocator()
        assert alloc.allocate("a") == "10.0.0.1"
        assert alloc.allocate("b") == "10.0.0.2"
        assert alloc.allocate("c") == "10.0.0.3"
        with pytest.raises(RangeExhausted):
            alloc.allocate("d")

    def test_released_address_is_reused_first(self):
        alloc = _allocator()
        for g in ("a", "b", "c"):
            alloc.allocate(g)
        assert alloc.release("b") == "10.0.0.2"
        assert alloc.allocate("d") == "10.0.0.2"

    def test_single_address_range(self):
        alloc = _allocator("10.0.0.5", "10.0.0.5")
        assert alloc.allocate("a") == "10.0.0.5"
        with pytest.raises(RangeExhausted):
            alloc.allocate("b")

    def test_idempotent_per_group(self):
        alloc = _allocator()
        assert alloc.allocate("a") == "10.0.0.1"
        assert alloc.allocate("a") == "10.0.0.1"
        assert alloc.allocate("b") == "10.0.0.2"

    def test_carries_across_octets(self):
        alloc = _allocator("10.0.0.255", "10.0.1.1", entries={"10.0.0.255": "x"})
        assert alloc.allocate("a") == "10.0.1.0"
        assert alloc.allocate("b") == "10.0.1.1"

    def test_ignores_entries_outside_range(self):
        alloc = _allocator(entries={"192.168.0.1": "old"})
        assert alloc.allocate("a") == "10.0.0.1"

    def test_inverted_range_rejected(self):
        with pytest.raises(ValueError):
            _allocator("10.0.0.9", "10.0.0.1")

    def test_concurrent_allocations_are_distinct(self):
        alloc = _allocator("10.0.0.1", "10.0.0.50")
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(alloc.allocate, [f"g{i}" for i in range(50)]))
        assert len(set(results)) == 50


class TestReleaseAndLookup:
    def test_release_unknown_group(self):
        assert _allocator().release("nobody") is None

    def test_lookup(self):
        alloc = _allocator()
        assert alloc.lookup("a") is None
        alloc.allocate("a")
        assert alloc.lookup("a") == "10.0.0.1"
        alloc.release("a")
        assert alloc.lookup("a") is None


class TestConflictRetry:
    def test_retries_after_conflict(self):
        table = MagicMock()
        table.read.return_value = TableSnapshot({}, "1")
        table.write.side_effect = [AllocationConflict("stale"), None]
        alloc = VirtualIPAllocator("10.0.0.1", "10.0.0.3", table)
        assert alloc.allocate("a") == "10.0.0.1"
        assert table.write.call_count == 2

    def test_gives_up_after_max_retries(self):
        table = MagicMock()
        table.read.return_value = TableSnapshot({}, "1")
        table.write.side_effect = AllocationConflict("stale")
        alloc = VirtualIPAllocator("10.0.0.1", "10.0.0.3", table)
        with pytest.raises(AllocationConflict):
            alloc.allocate("a")
        assert table.write.call_count == MAX_CONFLICT_RETRIES

    def test_rereads_table_on_retry(self):
        table = MagicMock()
        table.read.side_effect = [
            TableSnapshot({}, "1"),
            TableSnapshot({"10.0.0.1": "other"}, "2"),
        ]
        table.write.side_effect = [AllocationConflict("stale"), None]
        alloc = VirtualIPAllocator("10.0.0.1", "10.0.0.3", table)
        assert alloc.allocate("a") == "10.0.0.2"
        table.write.assert_called_with({"10.0.0.1": "other", "10.0.0.2": "a"}, "2")
