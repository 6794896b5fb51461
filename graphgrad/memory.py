"""Host/device allocations and the asynchronous transfer stream.

Offloads (device to host) and prefetches (host to device) are queued on a
single worker thread, the "stream", so transfers execute in issue order and
overlap with computation on the calling thread. Each transfer is tracked by
a `TransferEvent` completion token.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from types import TracebackType
from typing import Any, Self

import numpy as np

from .backend.ops import (
    allocate_device_array,
    allocate_host_array,
    copy_device_to_host,
    copy_host_to_device,
)
from .errors import InvariantViolation

logger = logging.getLogger(__name__)


class TransferEvent:
    """Completion token of the most recent transfer issued against it.

    An event that never recorded a transfer counts as completed.

    The event is also a scoped guard: entering a `with` block waits for the
    recorded transfer, and leaving it waits for any transfer recorded inside
    the block, so no transfer is left in flight past the block.

    Args:
        name (str): Debug name. Defaults to "".
    """

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._future: Future[None] | None = None

    def record(self, future: Future[None]) -> None:
        """Track `future` as the transfer this event signals."""
        self._future = future

    def query(self) -> bool:
        """Whether the recorded transfer has completed, without blocking.

        Returns:
            bool: `True` if no transfer is in flight.
        """
        return self._future is None or self._future.done()

    def wait(self) -> None:
        """Block until the recorded transfer has completed.

        Raises:
            Exception: Whatever the transfer raised on the stream.
        """
        if self._future is not None:
            self._future.result()

    def __enter__(self) -> Self:
        self.wait()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.wait()

    def __repr__(self) -> str:
        state = "done" if self.query() else "pending"
        return f"TransferEvent(name={self.name!r}, {state})"


class MemoryManager:
    """Allocates buffers and runs asynchronous transfers on a private stream.

    Args:
        name (str): Name used for the stream thread and log messages.
            Defaults to "default".

    Attributes:
        offloads_issued (int): Number of device to host transfers queued.
        prefetches_issued (int): Number of host to device transfers queued.
    """

    def __init__(self, name: str = "default") -> None:
        self.name = name
        self._stream = ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix=f"graphgrad-{name}-stream",
        )
        self._lock = threading.Lock()
        self._host_bytes = 0
        self._device_bytes = 0
        self._device_allocations = 0
        self.offloads_issued = 0
        self.prefetches_issued = 0

    @property
    def host_bytes(self) -> int:
        """Bytes currently allocated in host memory by this manager."""
        return self._host_bytes

    @property
    def device_bytes(self) -> int:
        """Bytes currently allocated in device memory by this manager."""
        return self._device_bytes

    @property
    def device_allocations(self) -> int:
        """Number of live device allocations."""
        return self._device_allocations

    def allocate_host(self, size: int, name: str, *, pinned: bool = False) -> np.ndarray:
        """Allocate a flat host buffer of `size` elements.

        Args:
            size (int): Number of elements.
            name (str): Owner name, for diagnostics.
            pinned (bool): Use page-locked memory. Defaults to False.

        Raises:
            InvariantViolation: If the allocation fails.

        Returns:
            np.ndarray: The buffer.
        """
        try:
            array = allocate_host_array(size, pinned=pinned)
        except MemoryError as exc:
            logger.critical(f'Host allocation of {size} elements for "{name}" failed')
            raise InvariantViolation("Host allocation failed", name) from exc
        with self._lock:
            self._host_bytes += array.nbytes
        return array

    def release_host(self, array: np.ndarray) -> None:
        """Account for a released host buffer."""
        with self._lock:
            self._host_bytes -= array.nbytes

    def allocate_device(self, size: int, name: str) -> Any:
        """Allocate a flat device buffer of `size` elements.

        Args:
            size (int): Number of elements.
            name (str): Owner name, for diagnostics.

        Raises:
            InvariantViolation: If the allocation fails.

        Returns:
            Any: The device buffer.
        """
        try:
            array = allocate_device_array(size)
        except MemoryError as exc:
            logger.critical(f'Device allocation of {size} elements for "{name}" failed')
            raise InvariantViolation("Device allocation failed", name) from exc
        with self._lock:
            self._device_bytes += array.nbytes
            self._device_allocations += 1
        return array

    def release_device(self, array: Any) -> None:
        """Account for a released device buffer."""
        with self._lock:
            self._device_bytes -= array.nbytes
            self._device_allocations -= 1

    def offload(self, host_array: np.ndarray, device_array: Any, event: TransferEvent) -> None:
        """Queue a device to host copy and record it on `event`.

        Args:
            host_array (np.ndarray): Destination host buffer.
            device_array (Any): Source device buffer.
            event (TransferEvent): Token signalled once the copy completed.
        """
        event.record(self._stream.submit(copy_device_to_host, host_array, device_array))
        self.offloads_issued += 1

    def prefetch(self, device_array: Any, host_array: np.ndarray, event: TransferEvent) -> None:
        """Queue a host to device copy and record it on `event`.

        Args:
            device_array (Any): Destination device buffer.
            host_array (np.ndarray): Source host buffer.
            event (TransferEvent): Token signalled once the copy completed.
        """
        event.record(self._stream.submit(copy_host_to_device, device_array, host_array))
        self.prefetches_issued += 1

    def wait_for_event(self, event: TransferEvent) -> None:
        """Block until `event` has signalled."""
        event.wait()

    def launch_host_func(self, fn: Callable[..., Any], *args: Any) -> Future[Any]:
        """Enqueue `fn(*args)` on the stream, ordered with the transfers.

        Args:
            fn (Callable[..., Any]): The callback.
            *args (Any): Arguments for `fn`.

        Returns:
            Future[Any]: Resolves once `fn` has run.
        """
        return self._stream.submit(fn, *args)

    def synchronize(self) -> None:
        """Block until every transfer queued so far has completed."""
        self._stream.submit(lambda: None).result()

    def shutdown(self, *, wait: bool = True) -> None:
        """Stop the stream thread.

        Args:
            wait (bool): Wait for queued transfers first. Defaults to True.
        """
        self._stream.shutdown(wait=wait)


_DEFAULT_MEMORY_MANAGER: MemoryManager | None = None
_DEFAULT_LOCK = threading.Lock()


def default_memory_manager() -> MemoryManager:
    """The process wide memory manager used when none is passed explicitly.

    Returns:
        MemoryManager: The (lazily created) default manager.
    """
    global _DEFAULT_MEMORY_MANAGER
    with _DEFAULT_LOCK:
        if _DEFAULT_MEMORY_MANAGER is None:
            _DEFAULT_MEMORY_MANAGER = MemoryManager()
        return _DEFAULT_MEMORY_MANAGER


__all__ = [
    "MemoryManager",
    "TransferEvent",
    "default_memory_manager",
]
