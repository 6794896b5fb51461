from __future__ import annotations

import logging
from typing import Literal, TypeAlias

import numpy as np

logger = logging.getLogger(__name__)


def _validate_cupy_available() -> None:
    """Validate that CuPy is available with working CUDA devices.

    Raises:
        RuntimeError: If CUDA is unavailable or no devices are found.
    """
    try:
        _device_count = xp.cuda.runtime.getDeviceCount()
    except Exception as exc:
        raise RuntimeError("Cupy is installed but CUDA is unavailable") from exc

    if _device_count < 1:
        raise RuntimeError("Cupy is installed but no CUDA devices are available")


try:
    import cupy as xp

    _validate_cupy_available()

    BACKEND = "cupy"
    logger.debug("Using cupy for device buffers")
except (ImportError, RuntimeError) as err:
    import numpy as xp

    BACKEND = "numpy"
    logger.warning("Cupy backend unavailable; device buffers are simulated in host memory")
    logger.debug(f"Falling back to numpy because: {err!r}")


ArrayModuleName: TypeAlias = Literal["numpy", "cupy"]

# element type of every storage buffer
DTYPE = np.float32


def is_device_simulated() -> bool:
    """Whether device buffers live in host memory (no usable CUDA device).

    Returns:
        bool: `True` if `xp` is numpy.
    """
    return BACKEND == "numpy"


__all__ = [
    "BACKEND",
    "DTYPE",
    "ArrayModuleName",
    "is_device_simulated",
    "xp",
]
