"""graphgrad: computation graphs with reverse-mode gradients.

Graphs of tensor operations are built explicitly, executed by a `Session`
and differentiated in reverse mode. Tensor buffers move between host and
device memory through an asynchronous residency manager.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("graphgrad")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"  # Fallback for uninstalled package
from .backend import (
    BACKEND,
    Activation,
    BatchNormMode,
    ComputeBackend,
    OpMode,
    PoolingMode,
    get_default_op_mode,
    op_mode,
    op_mode_fn,
    set_default_op_mode,
    xp,
)
from .config import Config, get_config, reload_config
from .disk import load, load_into, save
from .errors import InvariantViolation
from .graph import (
    Constant,
    Graph,
    Operation,
    Placeholder,
    Session,
    TensorLike,
    Variable,
    functional,
)
from .memory import MemoryManager, TransferEvent, default_memory_manager
from .optimizer import SGD, Adam, Optimizer
from .shape import Axis, DataFormat, Shape
from .storage import Location, Storage, StorageType
from .tensor import Tensor, tensor

__all__ = [
    "BACKEND",
    "SGD",
    "Activation",
    "Adam",
    "Axis",
    "BatchNormMode",
    "ComputeBackend",
    "Config",
    "Constant",
    "DataFormat",
    "Graph",
    "InvariantViolation",
    "Location",
    "MemoryManager",
    "OpMode",
    "Operation",
    "Optimizer",
    "Placeholder",
    "PoolingMode",
    "Session",
    "Shape",
    "Storage",
    "StorageType",
    "Tensor",
    "TensorLike",
    "TransferEvent",
    "Variable",
    "__version__",
    "default_memory_manager",
    "functional",
    "get_config",
    "get_default_op_mode",
    "load",
    "load_into",
    "op_mode",
    "op_mode_fn",
    "reload_config",
    "save",
    "set_default_op_mode",
    "tensor",
    "xp",
]
