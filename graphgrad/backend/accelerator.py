"""Accelerator backend running the kernels on device buffers."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .backend import BACKEND, xp
from .compute import ComputeBackend

if TYPE_CHECKING:
    from ..tensor import Tensor

logger = logging.getLogger(__name__)


class AcceleratorBackend(ComputeBackend):
    """Kernels executed with `xp` on the device copies of tensors.

    Inputs are copied to the device (blocking on pending transfers) before a
    kernel reads them and outputs become device authoritative. Without a
    usable CUDA device, `xp` is numpy and device buffers are simulated in
    host memory, which keeps the residency bookkeeping identical.

    Args:
        seed (int | None): Seed for dropout masks. Defaults to None.
    """

    xp = xp

    def __init__(self, seed: int | None = None) -> None:
        super().__init__(seed=seed)
        if BACKEND == "numpy":
            logger.debug("Accelerator backend runs on simulated device buffers")

    def _read(self, t: Tensor) -> Any:
        return t.device_values()

    def _write(self, t: Tensor) -> Any:
        return t.device_values(overwrite=True)


__all__ = [
    "AcceleratorBackend",
]
