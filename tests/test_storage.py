"""Tests for the host/device residency automaton of `Storage`."""

from __future__ import annotations

import threading

import numpy as np
import pytest
from graphgrad import InvariantViolation, Location, MemoryManager, Storage, StorageType, xp
from graphgrad.backend import to_host_array


def _device_values(storage: Storage) -> np.ndarray:
    return to_host_array(storage.device_data())[: storage.size]


def _close_gate(memory: MemoryManager) -> threading.Event:
    """Block the transfer stream until the returned event is set."""
    gate = threading.Event()
    memory.launch_host_func(gate.wait)
    return gate


# =============================================================================
# Residency automaton
# =============================================================================


def test_new_storage_is_unallocated(memory: MemoryManager) -> None:
    storage = Storage(8, name="s", memory=memory)
    assert storage.location is Location.NONE
    assert not storage.is_host_allocated
    assert not storage.is_device_allocated
    assert memory.host_bytes == 0


def test_host_device_round_trip(memory: MemoryManager) -> None:
    storage = Storage(4, name="s", memory=memory)
    storage.allocate_on_host()
    assert storage.location is Location.HOST

    storage.override_host()
    storage.host_data()[:] = [1.0, 2.0, 3.0, 4.0]
    storage.copy_to_device()
    assert storage.location is Location.DEVICE
    assert np.array_equal(_device_values(storage), [1.0, 2.0, 3.0, 4.0])

    storage.device_data()[...] *= 2
    storage.copy_to_host()
    assert storage.location is Location.HOST
    assert np.array_equal(storage.host_data(), [2.0, 4.0, 6.0, 8.0])


def test_copy_to_host_of_unallocated_storage_allocates_zeros(memory: MemoryManager) -> None:
    storage = Storage(3, name="s", memory=memory)
    storage.copy_to_host()
    assert storage.location is Location.HOST
    assert np.array_equal(storage.host_data(), np.zeros(3))

    other = Storage(3, name="o", memory=memory)
    other.copy_to_device()
    assert other.location is Location.DEVICE
    assert np.array_equal(_device_values(other), np.zeros(3))


def test_device_allocation_implies_host_allocation(memory: MemoryManager) -> None:
    storage = Storage(5, name="s", memory=memory)
    storage.allocate_on_device()
    assert storage.is_host_allocated
    assert storage.is_device_allocated
    assert memory.device_allocations == 1

    with pytest.raises(InvariantViolation, match="only on device") as exc_info:
        storage.free_on_host()
    assert exc_info.value.entity == "s"


def test_free_on_device_keeps_device_values(memory: MemoryManager) -> None:
    storage = Storage(3, name="s", memory=memory)
    storage.override_device()
    storage.device_data()[...] = 5.0

    storage.free_on_device()

    assert not storage.is_device_allocated
    assert storage.location is Location.HOST
    assert np.array_equal(storage.host_data(), [5.0, 5.0, 5.0])
    assert memory.device_bytes == 0


def test_device_data_requires_device_location(memory: MemoryManager) -> None:
    storage = Storage(3, name="s", memory=memory)
    with pytest.raises(InvariantViolation, match="unallocated device memory"):
        storage.device_data()

    storage.allocate_on_device()
    with pytest.raises(InvariantViolation, match="not located on device"):
        storage.device_data()


def test_resize_reuses_capacity(memory: MemoryManager) -> None:
    storage = Storage(6, name="s", memory=memory)
    storage.override_host()
    storage.host_data()[:] = np.arange(6)
    buffer = storage.host_data()

    storage.resize(4)
    assert storage.size == 4
    assert storage.alloc_size == 6
    assert storage.host_data() is buffer

    storage.resize(10)
    assert storage.size == storage.alloc_size == 10
    assert storage.host_data() is not buffer
    assert memory.host_bytes == 10 * 4


def test_empty_storage_ignores_transfers(memory: MemoryManager) -> None:
    storage = Storage(0, name="empty", memory=memory)
    storage.allocate_on_device()
    storage.offload()
    storage.prefetch()
    storage.copy_to_device()
    assert not storage.is_host_allocated
    assert not storage.is_device_allocated


def test_change_type_only_while_unallocated(memory: MemoryManager) -> None:
    storage = Storage(2, name="s", memory=memory)
    storage.change_type(StorageType.OFFLOADABLE)
    assert storage.type is StorageType.OFFLOADABLE

    storage.allocate_on_host()
    with pytest.raises(InvariantViolation, match="Changing type"):
        storage.change_type(StorageType.DEFAULT)


def test_negative_size_is_rejected(memory: MemoryManager) -> None:
    with pytest.raises(ValueError, match="non-negative"):
        Storage(-1, memory=memory)


# =============================================================================
# Asynchronous transfers
# =============================================================================


def test_copy_to_host_blocks_on_pending_offload(memory: MemoryManager) -> None:
    storage = Storage(4, StorageType.OFFLOADABLE, name="s", memory=memory)
    storage.override_host()
    storage.host_data()[:] = 1.0
    storage.override_device()
    storage.device_data()[:4] = xp.arange(4, dtype=xp.float32)

    gate = _close_gate(memory)
    storage.offload()
    assert not storage.offload_event.query()
    assert storage.location is Location.DEVICE

    opener = threading.Timer(0.05, gate.set)
    opener.start()
    storage.copy_to_host()
    opener.join()

    assert gate.is_set()
    assert storage.offload_event.query()
    assert storage.location is Location.HOST
    assert np.array_equal(storage.host_data()[:4], [0.0, 1.0, 2.0, 3.0])


def test_offload_is_idempotent_while_pending(memory: MemoryManager) -> None:
    storage = Storage(4, StorageType.OFFLOADABLE, name="s", memory=memory)
    storage.override_device()
    storage.device_data()[...] = 3.0

    gate = _close_gate(memory)
    storage.offload()
    storage.offload()
    storage.offload()
    assert memory.offloads_issued == 1

    gate.set()
    storage.copy_to_host()
    assert np.array_equal(storage.host_data(), np.full(4, 3.0))

    # nothing left to offload once the host copy is authoritative
    storage.offload()
    assert memory.offloads_issued == 1


def test_prefetch_is_idempotent_while_pending(memory: MemoryManager) -> None:
    storage = Storage(3, StorageType.OFFLOADABLE, name="s", memory=memory)
    storage.override_host()
    storage.host_data()[:] = [4.0, 5.0, 6.0]

    gate = _close_gate(memory)
    storage.prefetch()
    storage.prefetch()
    assert memory.prefetches_issued == 1
    assert not storage.prefetch_event.query()

    gate.set()
    storage.copy_to_device()
    assert storage.location is Location.DEVICE
    assert np.array_equal(_device_values(storage), [4.0, 5.0, 6.0])

    storage.prefetch()
    assert memory.prefetches_issued == 1


def test_completed_offload_satisfies_copy_to_host(memory: MemoryManager) -> None:
    storage = Storage(2, StorageType.OFFLOADABLE, name="s", memory=memory)
    storage.override_device()
    storage.device_data()[...] = 9.0
    storage.offload()
    storage.offload_event.wait()

    storage.copy_to_host()
    assert np.array_equal(storage.host_data(), [9.0, 9.0])


def test_non_offloadable_storage_copies_synchronously(memory: MemoryManager) -> None:
    storage = Storage(2, name="s", memory=memory)
    storage.override_device()
    storage.device_data()[...] = 2.0

    storage.offload()
    assert storage.location is Location.HOST
    assert memory.offloads_issued == 0
    assert np.array_equal(storage.host_data(), [2.0, 2.0])

    storage.prefetch()
    assert storage.location is Location.DEVICE
    assert memory.prefetches_issued == 0


def test_offload_requires_host_buffer(memory: MemoryManager) -> None:
    storage = Storage(2, StorageType.OFFLOADABLE, name="s", memory=memory)
    storage.allocate_on_host()
    storage.free_on_host()
    with pytest.raises(InvariantViolation, match="deallocated host storage"):
        storage.offload()


def test_free_on_device_waits_for_offload(memory: MemoryManager) -> None:
    storage = Storage(3, StorageType.OFFLOADABLE, name="s", memory=memory)
    storage.override_device()
    storage.device_data()[...] = 1.5

    gate = _close_gate(memory)
    storage.offload()
    opener = threading.Timer(0.05, gate.set)
    opener.start()
    storage.free_on_device()
    opener.join()

    assert storage.offload_event.query()
    assert not storage.is_device_allocated
    assert np.array_equal(storage.host_data(), np.full(3, 1.5))


# =============================================================================
# Reference counting and retention
# =============================================================================


def test_shared_device_memory_freed_with_last_reference(memory: MemoryManager) -> None:
    storage = Storage(4, StorageType.DEVICE_REF_COUNTED, name="shared", memory=memory)
    storage.allocate_on_device()

    storage.inc_device_ref()
    storage.inc_device_ref()
    storage.dec_device_ref()
    assert storage.device_ref_count == 1
    assert storage.is_device_allocated

    storage.dec_device_ref()
    assert storage.device_ref_count == 0
    assert not storage.is_device_allocated
    assert memory.device_allocations == 0


def test_repeated_ref_count_cycles_do_not_leak(memory: MemoryManager) -> None:
    storage = Storage(4, StorageType.DEVICE_REF_COUNTED, name="cycled", memory=memory)

    for cycle in range(3):
        storage.allocate_on_device()
        assert memory.device_allocations == 1
        storage.inc_device_ref()
        storage.inc_device_ref()
        storage.dec_device_ref()
        assert storage.is_device_allocated
        storage.dec_device_ref()

        assert storage.device_ref_count == 0, f"cycle {cycle}"
        assert not storage.is_device_allocated
        assert memory.device_allocations == 0
        assert memory.device_bytes == 0

    # no device buffer to free once the count drops again
    storage.inc_device_ref()
    storage.dec_device_ref()
    assert storage.device_ref_count == 0
    assert memory.device_allocations == 0
    assert memory.device_bytes == 0
    assert storage.location is Location.HOST


def test_ref_counting_requires_flag(memory: MemoryManager) -> None:
    storage = Storage(4, name="s", memory=memory)
    with pytest.raises(InvariantViolation, match="non-refcounted"):
        storage.inc_device_ref()
    with pytest.raises(InvariantViolation, match="non-refcounted"):
        storage.dec_device_ref()


def test_over_decrease_fails(memory: MemoryManager) -> None:
    storage = Storage(4, StorageType.DEVICE_REF_COUNTED, name="s", memory=memory)
    storage.inc_device_ref(2)
    with pytest.raises(InvariantViolation, match="Over-decreasing"):
        storage.dec_device_ref(3)
    assert storage.device_ref_count == 2


def test_keep_device_memory(memory: MemoryManager) -> None:
    storage_type = StorageType.DEVICE_REF_COUNTED | StorageType.KEEP_DEVICE_MEMORY
    storage = Storage(4, storage_type, name="kept", memory=memory)
    storage.allocate_on_device()
    storage.inc_device_ref()

    storage.dec_device_ref()
    storage.free_on_device()
    assert storage.is_device_allocated

    storage.release()
    assert not storage.is_device_allocated
    assert not storage.is_host_allocated
    assert storage.location is Location.NONE
    assert memory.host_bytes == memory.device_bytes == 0


def test_copy_from_other_storage(memory: MemoryManager) -> None:
    source = Storage(3, name="src", memory=memory)
    source.override_device()
    source.device_data()[...] = 4.0

    target = Storage(1, name="dst", memory=memory)
    target.copy_from(source)

    assert target.size == 3
    assert target.location is Location.HOST
    assert np.array_equal(target.host_data(), np.full(3, 4.0))
    assert source.location is Location.HOST
