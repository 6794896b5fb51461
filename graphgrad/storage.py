"""Owning value buffers with host/device residency tracking.

A `Storage` keeps a host buffer and, once needed, a device buffer of the
same capacity. Its `location` names the buffer holding the authoritative
copy; the other one may exist but is possibly stale. All location and
reference count changes go through the methods of this class.
"""

from __future__ import annotations

import logging
from enum import Enum, IntFlag
from typing import Any

import numpy as np

from .backend.ops import copy_device_to_host, copy_host_to_device
from .errors import check
from .memory import MemoryManager, TransferEvent, default_memory_manager

logger = logging.getLogger(__name__)


class StorageType(IntFlag):
    """Storage capabilities, combinable as a bitset.

    Attributes:
        OFFLOADABLE: Supports asynchronous offload/prefetch with completion
            tracking. Host memory is page-locked where possible.
        DEVICE_REF_COUNTED: The device buffer is shared by several owners and
            freed when the last of them releases it.
        KEEP_DEVICE_MEMORY: The device buffer is never freed once allocated
            (only `Storage.release` tears it down).
    """

    DEFAULT = 0
    OFFLOADABLE = 1
    DEVICE_REF_COUNTED = 2
    KEEP_DEVICE_MEMORY = 4


class Location(Enum):
    """Memory space holding the authoritative copy of the values."""

    NONE = "none"
    HOST = "host"
    DEVICE = "device"


class Storage:
    """A flat float32 buffer living in host and/or device memory.

    Buffers are allocated lazily. Asynchronous transfers are tracked with one
    `TransferEvent` per direction; any read of a buffer that such a transfer
    writes blocks on the event first.

    Args:
        size (int): Number of elements. Defaults to 0.
        storage_type (StorageType): Capability flags.
            Defaults to `StorageType.DEFAULT`.
        name (str): Name used in log messages and errors. Defaults to "".
        memory (MemoryManager | None): Allocator and transfer stream.
            Defaults to None, meaning the process default manager.
    """

    def __init__(
        self,
        size: int = 0,
        storage_type: StorageType = StorageType.DEFAULT,
        name: str = "",
        memory: MemoryManager | None = None,
    ) -> None:
        if size < 0:
            raise ValueError(f"Storage size must be non-negative, got {size}")
        self.name = name
        self._type = StorageType(storage_type)
        self._memory = memory if memory is not None else default_memory_manager()
        self._size = size
        self._alloc_size = size
        self._host: np.ndarray | None = None
        self._device: Any = None
        self._location = Location.NONE
        self._device_ref_count = 0
        self._offload_event = TransferEvent(f"{name}:offload")
        self._prefetch_event = TransferEvent(f"{name}:prefetch")
        # set while an issued async transfer will leave the target buffer current
        self._offload_covers_host = False
        self._prefetch_covers_device = False

    @property
    def size(self) -> int:
        """Number of usable elements."""
        return self._size

    @property
    def alloc_size(self) -> int:
        """Capacity of the buffers in elements."""
        return self._alloc_size

    @property
    def type(self) -> StorageType:
        return self._type

    @property
    def location(self) -> Location:
        """Where the authoritative copy currently lives."""
        return self._location

    @property
    def device_ref_count(self) -> int:
        return self._device_ref_count

    @property
    def memory(self) -> MemoryManager:
        return self._memory

    @property
    def is_host_allocated(self) -> bool:
        return self._host is not None

    @property
    def is_device_allocated(self) -> bool:
        return self._device is not None

    @property
    def offload_event(self) -> TransferEvent:
        return self._offload_event

    @property
    def prefetch_event(self) -> TransferEvent:
        return self._prefetch_event

    def _is_offloadable(self) -> bool:
        return bool(self._type & StorageType.OFFLOADABLE)

    def _host_view(self) -> np.ndarray:
        assert self._host is not None
        return self._host[: self._size]

    def _device_view(self) -> Any:
        assert self._device is not None
        return self._device[: self._size]

    def allocate_on_host(self) -> None:
        """Allocate the host buffer if it does not exist yet."""
        if self._alloc_size == 0:
            return
        if self._host is not None:
            logger.debug(f'Allocating on host "{self.name}" <<< already allocated')
            return
        logger.debug(f'Allocating on host "{self.name}" <<< allocating')
        self._host = self._memory.allocate_host(
            self._alloc_size, self.name, pinned=self._is_offloadable()
        )
        self._location = Location.HOST

    def allocate_on_device(self) -> None:
        """Allocate the device buffer, allocating the host buffer first.

        A device buffer never exists without its host counterpart.
        """
        if self._alloc_size == 0:
            return
        if self._host is None:
            self.allocate_on_host()
        if self._device is not None:
            logger.debug(f'Allocating on device "{self.name}" <<< already allocated')
            return
        logger.debug(f'Allocating on device "{self.name}" <<< allocating')
        self._device = self._memory.allocate_device(self._alloc_size, self.name)

    def free_on_host(self) -> None:
        """Free the host buffer.

        Raises:
            InvariantViolation: If a device buffer is still allocated.
        """
        check(self._device is None, "Data cannot be only on device", self.name)
        if self._host is None:
            logger.debug(f'Releasing on host "{self.name}" <<< not allocated')
            return
        logger.debug(f'Releasing on host "{self.name}" <<< release incoming')
        with self._prefetch_event:
            self._memory.release_host(self._host)
            self._host = None
        self._prefetch_covers_device = False
        self._offload_covers_host = False
        self._location = Location.NONE

    def free_on_device(self) -> None:
        """Free the device buffer unless the storage keeps device memory.

        Device-authoritative values are copied back to the host first, and
        the buffer is only released once no transfer from it is in flight.
        """
        if self._device is None:
            logger.debug(f'Releasing on device "{self.name}" <<< not allocated')
            return
        if self._type & StorageType.KEEP_DEVICE_MEMORY:
            logger.debug(f'Releasing on device "{self.name}" <<< not allowed')
            return
        if self._location is Location.DEVICE:
            self.copy_to_host()
        logger.debug(f'Releasing on device "{self.name}" <<< release incoming')
        self._drop_device()

    def _drop_device(self) -> None:
        with self._offload_event, self._prefetch_event:
            self._memory.release_device(self._device)
            self._device = None
        self._prefetch_covers_device = False
        self._offload_covers_host = False
        # the only place values are stored now is host memory
        self._location = Location.HOST if self._host is not None else Location.NONE

    def resize(self, size: int) -> None:
        """Change the usable length, growing the buffers only when needed.

        Shrinking (or growing within capacity) keeps the existing buffers.
        Growing beyond capacity reallocates them and discards their values.

        Args:
            size (int): New number of elements.
        """
        if size < 0:
            raise ValueError(f"Storage size must be non-negative, got {size}")
        if size <= self._alloc_size:
            self._size = size
            return

        logger.debug(f'Resizing "{self.name}" from {self._alloc_size} to {size} elements')
        had_device = self._device is not None
        had_host = self._host is not None
        if had_device:
            self._drop_device()
        if had_host:
            self.free_on_host()

        self._alloc_size = self._size = size

        if had_host:
            self.allocate_on_host()
        if had_device:
            self.allocate_on_device()

    def release(self) -> None:
        """Tear down both buffers, regardless of type flags or ref count."""
        logger.debug(f'Releasing "{self.name}"')
        if self._device is not None:
            self._drop_device()
        self.free_on_host()
        self._location = Location.NONE
        self._device_ref_count = 0

    def copy_to_device(self) -> None:
        """Make the device copy authoritative, blocking until it is current.

        Waits for any in-flight transfer first. The copy itself is skipped
        when a completed prefetch already brought the current host values.
        """
        if self._location is Location.DEVICE or self._alloc_size == 0:
            return
        if self._location is Location.NONE:
            self.allocate_on_host()

        self.allocate_on_device()
        self._memory.wait_for_event(self._offload_event)
        if self._prefetch_covers_device:
            if not self._prefetch_event.query():
                logger.debug(f'Copy to device "{self.name}" <<< waiting for prefetch')
            self._memory.wait_for_event(self._prefetch_event)
            logger.debug(f'Copy to device "{self.name}" <<< prefetch completed')
        else:
            self._memory.wait_for_event(self._prefetch_event)
            logger.debug(f'Copy to device "{self.name}"')
            copy_host_to_device(self._device_view(), self._host_view())
        self._location = Location.DEVICE

    def copy_to_host(self) -> None:
        """Make the host copy authoritative, blocking until it is current.

        Waits for any in-flight transfer first. The copy itself is skipped
        when a completed offload already brought the current device values.
        """
        if self._location is Location.HOST:
            return
        if self._location is Location.NONE:
            self.allocate_on_host()
            return

        self._memory.wait_for_event(self._prefetch_event)
        if self._offload_covers_host:
            if not self._offload_event.query():
                logger.debug(f'Copy to host "{self.name}" <<< waiting for offload')
            self._memory.wait_for_event(self._offload_event)
            logger.debug(f'Copy to host "{self.name}" <<< offload completed')
        else:
            self._memory.wait_for_event(self._offload_event)
            logger.debug(f'Copy to host "{self.name}"')
            copy_device_to_host(self._host_view(), self._device_view())
        self._location = Location.HOST

    def offload(self) -> None:
        """Start an asynchronous device to host copy.

        A no-op while a previous offload is still in flight. Storage that is
        not offloadable copies synchronously instead.

        Raises:
            InvariantViolation: If the host buffer has been freed.
        """
        if self._alloc_size == 0:
            return
        check(
            self._host is not None, "Attempting to offload to deallocated host storage", self.name
        )

        if not self._is_offloadable():
            logger.debug(f'Offloading "{self.name}" <<< not supported, copying synchronously')
            self.copy_to_host()
            return
        if self._device is None or self._location is not Location.DEVICE:
            logger.debug(f'Offloading "{self.name}" <<< nothing to offload')
            return
        if not self._offload_event.query():
            logger.debug(f'Offloading "{self.name}" <<< requested already')
            return

        logger.debug(f'Offloading "{self.name}" <<< requested')
        self._memory.offload(self._host_view(), self._device_view(), self._offload_event)
        self._offload_covers_host = True

    def prefetch(self) -> None:
        """Start an asynchronous host to device copy.

        A no-op while a previous prefetch is still in flight. Storage that is
        not offloadable copies synchronously instead.

        Raises:
            InvariantViolation: If the host buffer has been freed.
        """
        if self._alloc_size == 0:
            return

        if not self._is_offloadable():
            logger.debug(f'Prefetching "{self.name}" <<< not supported, copying synchronously')
            self.copy_to_device()
            return
        check(
            self._host is not None,
            "Attempting to prefetch from deallocated host storage",
            self.name,
        )
        if self._location is Location.DEVICE:
            logger.debug(f'Prefetching "{self.name}" <<< already on device')
            return

        self.allocate_on_device()
        if not self._prefetch_event.query():
            logger.debug(f'Prefetching "{self.name}" <<< requested already')
            return

        logger.debug(f'Prefetching "{self.name}" <<< requested')
        self._memory.prefetch(self._device_view(), self._host_view(), self._prefetch_event)
        self._prefetch_covers_device = True

    def override_host(self) -> None:
        """Mark the host copy authoritative without copying.

        Use when the caller is about to overwrite all host values.
        """
        if self._host is None:
            self.allocate_on_host()
        # an in-flight offload would clobber the new host values
        self._memory.wait_for_event(self._offload_event)
        self._offload_covers_host = False
        self._prefetch_covers_device = False
        self._location = Location.HOST
        logger.debug(f'Override host "{self.name}"')

    def override_device(self) -> None:
        """Mark the device copy authoritative without copying.

        Use when the caller is about to overwrite all device values.
        """
        if self._device is None:
            self.allocate_on_device()
        self._memory.wait_for_event(self._prefetch_event)
        self._memory.wait_for_event(self._offload_event)
        self._offload_covers_host = False
        self._prefetch_covers_device = False
        self._location = Location.DEVICE
        logger.debug(f'Override device "{self.name}"')

    def inc_device_ref(self, n: int = 1) -> None:
        """Register `n` more owners of the device buffer.

        Raises:
            InvariantViolation: If the storage is not device ref counted.
        """
        check(
            bool(self._type & StorageType.DEVICE_REF_COUNTED),
            "Increasing ref count for non-refcounted storage",
            self.name,
        )
        self._device_ref_count += n

    def dec_device_ref(self, n: int = 1) -> None:
        """Drop `n` owners of the device buffer, freeing it at zero.

        Raises:
            InvariantViolation: If the storage is not device ref counted or
                the count would drop below zero.
        """
        check(
            bool(self._type & StorageType.DEVICE_REF_COUNTED),
            "Decreasing ref count for non-refcounted storage",
            self.name,
        )
        check(n <= self._device_ref_count, "Over-decreasing ref count", self.name)
        self._device_ref_count -= n

        if self._device_ref_count == 0:
            logger.debug(f'Ref count zeroed "{self.name}" <<< deallocating device memory')
            self.free_on_device()

    def change_type(self, storage_type: StorageType) -> None:
        """Change the capability flags of an unallocated storage.

        Raises:
            InvariantViolation: If a buffer is allocated.
        """
        if storage_type == self._type:
            return
        check(
            self._host is None and self._device is None,
            "Changing type of allocated storage is not allowed",
            self.name,
        )
        self._type = StorageType(storage_type)

    def host_data(self) -> np.ndarray:
        """The host buffer (full capacity), allocated on first access.

        Callers read it after `copy_to_host` or fill it after
        `override_host`.
        """
        if self._host is None:
            self.allocate_on_host()
        # host values may change, a previous prefetch no longer covers them
        self._prefetch_covers_device = False
        assert self._host is not None
        return self._host

    def device_data(self) -> Any:
        """The device buffer (full capacity).

        Raises:
            InvariantViolation: If the buffer is unallocated or not the
                authoritative copy.
        """
        check(self._device is not None, "Attempting to access unallocated device memory", self.name)
        check(
            self._location is Location.DEVICE,
            "Attempting to write to data not located on device",
            self.name,
        )
        self._offload_covers_host = False
        return self._device

    def copy_from(self, other: Storage) -> None:
        """Copy the values of `other` into this storage's host buffer.

        Args:
            other (Storage): Source storage; its values are synchronized to
                the host first.
        """
        if other is self:
            return
        self.resize(other.size)
        if other.location is Location.NONE:
            if self._host is not None:
                self.override_host()
                self._host_view().fill(0)
            return
        other.copy_to_host()
        self.override_host()
        np.copyto(self._host_view(), other._host_view())

    def __repr__(self) -> str:
        return (
            f"Storage(name={self.name!r}, size={self._size}, type={self._type!r}, "
            f"location={self._location.name})"
        )


__all__ = [
    "Location",
    "Storage",
    "StorageType",
]
