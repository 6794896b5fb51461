"""Array module selection, buffer copies and compute backends."""

from .backend import (
    BACKEND,
    DTYPE,
    ArrayModuleName,
    is_device_simulated,
    xp,
)
from .compute import (
    Activation,
    BatchNormMode,
    ComputeBackend,
    CpuBackend,
    PoolingMode,
)
from .op_mode import (
    OpMode,
    get_backend,
    get_default_backend,
    get_default_op_mode,
    op_mode,
    op_mode_fn,
    set_default_op_mode,
)
from .ops import (
    allocate_device_array,
    allocate_host_array,
    copy_device_to_host,
    copy_host_to_device,
    to_host_array,
)

__all__ = [
    "BACKEND",
    "DTYPE",
    "Activation",
    "ArrayModuleName",
    "BatchNormMode",
    "ComputeBackend",
    "CpuBackend",
    "OpMode",
    "PoolingMode",
    "allocate_device_array",
    "allocate_host_array",
    "copy_device_to_host",
    "copy_host_to_device",
    "get_backend",
    "get_default_backend",
    "get_default_op_mode",
    "is_device_simulated",
    "op_mode",
    "op_mode_fn",
    "set_default_op_mode",
    "to_host_array",
    "xp",
]
