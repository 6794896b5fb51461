"""Tests for the memory manager and transfer events."""

from __future__ import annotations

import threading

import numpy as np
import pytest
from graphgrad import MemoryManager, TransferEvent, default_memory_manager
from graphgrad.backend import to_host_array


def test_unrecorded_event_is_complete() -> None:
    event = TransferEvent("idle")
    assert event.query()
    event.wait()
    assert "done" in repr(event)


def test_event_tracks_recorded_transfer(memory: MemoryManager) -> None:
    gate = threading.Event()
    event = TransferEvent("gated")
    event.record(memory.launch_host_func(gate.wait))
    assert not event.query()
    assert "pending" in repr(event)

    gate.set()
    event.wait()
    assert event.query()


def test_event_guard_waits_on_exit(memory: MemoryManager) -> None:
    gate = threading.Event()
    event = TransferEvent("guard")
    with event:
        event.record(memory.launch_host_func(gate.wait))
        threading.Timer(0.05, gate.set).start()
    assert event.query()


def test_event_reraises_transfer_failure(memory: MemoryManager) -> None:
    def fail() -> None:
        raise ValueError("transfer failed")

    event = TransferEvent("failing")
    event.record(memory.launch_host_func(fail))
    with pytest.raises(ValueError, match="transfer failed"):
        event.wait()


def test_wait_for_event_blocks_until_transfer_completes(memory: MemoryManager) -> None:
    gate = threading.Event()
    order: list[str] = []
    event = TransferEvent("waited")
    memory.launch_host_func(gate.wait)
    event.record(memory.launch_host_func(order.append, "transfer"))

    threading.Timer(0.05, gate.set).start()
    memory.wait_for_event(event)
    order.append("after wait")

    assert event.query()
    assert order == ["transfer", "after wait"]


def test_transfers_run_in_issue_order(memory: MemoryManager) -> None:
    host = np.arange(4, dtype=np.float32)
    device = memory.allocate_device(4, "device")
    back = memory.allocate_host(4, "back")
    prefetched, offloaded = TransferEvent(), TransferEvent()

    memory.prefetch(device, host, prefetched)
    memory.offload(back, device, offloaded)
    memory.synchronize()

    assert prefetched.query()
    assert offloaded.query()
    assert np.array_equal(back, host)
    assert np.array_equal(to_host_array(device), host)
    assert memory.prefetches_issued == 1
    assert memory.offloads_issued == 1


def test_allocations_are_accounted(memory: MemoryManager) -> None:
    host = memory.allocate_host(10, "host")
    device = memory.allocate_device(6, "device")
    assert memory.host_bytes == 40
    assert memory.device_bytes == 24
    assert memory.device_allocations == 1
    assert not host.any()

    memory.release_host(host)
    memory.release_device(device)
    assert memory.host_bytes == 0
    assert memory.device_bytes == 0
    assert memory.device_allocations == 0


def test_default_manager_is_shared() -> None:
    assert default_memory_manager() is default_memory_manager()
