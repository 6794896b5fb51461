"""Raw buffer copies between host and device memory."""

from __future__ import annotations

from typing import Any

import numpy as np

from .backend import BACKEND, DTYPE, xp


def allocate_host_array(size: int, *, pinned: bool = False) -> np.ndarray:
    """Allocate a zeroed, flat host buffer.

    Args:
        size (int): Number of elements.
        pinned (bool): Whether to use page-locked memory, which makes
            asynchronous device transfers possible. Ignored when the
            device is simulated. Defaults to False.

    Returns:
        np.ndarray: The buffer.
    """
    if pinned and BACKEND == "cupy":
        import cupyx

        return cupyx.zeros_pinned(size, dtype=DTYPE)
    return np.zeros(size, dtype=DTYPE)


def allocate_device_array(size: int) -> Any:
    """Allocate a zeroed, flat device buffer.

    Args:
        size (int): Number of elements.

    Returns:
        Any: A cupy array, or a numpy array when the device is simulated.
    """
    return xp.zeros(size, dtype=DTYPE)


def copy_host_to_device(device_array: Any, host_array: np.ndarray) -> None:
    """Copy `host_array` into the equally sized `device_array`.

    Args:
        device_array (Any): Destination device buffer.
        host_array (np.ndarray): Source host buffer.

    Raises:
        ValueError: If the buffer sizes differ.
    """
    if device_array.size != host_array.size:
        raise ValueError(
            f"Buffer size mismatch: device {device_array.size} vs host {host_array.size}"
        )
    if BACKEND == "numpy":
        np.copyto(device_array, host_array)
        return
    # cupy:
    device_array.set(host_array)


def copy_device_to_host(host_array: np.ndarray, device_array: Any) -> None:
    """Copy `device_array` into the equally sized `host_array`.

    Args:
        host_array (np.ndarray): Destination host buffer.
        device_array (Any): Source device buffer.

    Raises:
        ValueError: If the buffer sizes differ.
    """
    if device_array.size != host_array.size:
        raise ValueError(
            f"Buffer size mismatch: host {host_array.size} vs device {device_array.size}"
        )
    if BACKEND == "numpy":
        np.copyto(host_array, device_array)
        return
    # cupy:
    device_array.get(out=host_array)


def to_host_array(array: Any) -> np.ndarray:
    """Return `array` as a numpy array, copying from the device if needed."""
    if BACKEND == "numpy" or isinstance(array, np.ndarray):
        return np.asarray(array)
    return xp.asnumpy(array)


__all__ = [
    "allocate_device_array",
    "allocate_host_array",
    "copy_device_to_host",
    "copy_host_to_device",
    "to_host_array",
]
