"""Selection of the compute backend that executes tensor primitives."""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum
from types import TracebackType
from typing import TYPE_CHECKING, ParamSpec, Self, TypeVar

from ..config import get_config

if TYPE_CHECKING:
    from .compute import ComputeBackend

P = ParamSpec("P")
T = TypeVar("T")

logger = logging.getLogger(__name__)


class OpMode(Enum):
    """Available compute backends."""

    CPU = "cpu"
    MULTI_CPU = "multi_cpu"
    ACCELERATOR = "accelerator"


_DEFAULT_OP_MODE: OpMode | None = None
_BACKENDS: dict[OpMode, ComputeBackend] = {}


def get_backend(mode: OpMode) -> ComputeBackend:
    """The shared backend instance for `mode`, created on first use.

    Args:
        mode (OpMode): The requested backend.

    Returns:
        ComputeBackend: The backend.
    """
    backend = _BACKENDS.get(mode)
    if backend is not None:
        return backend

    if mode is OpMode.CPU:
        from .compute import CpuBackend

        backend = CpuBackend()
    elif mode is OpMode.MULTI_CPU:
        from .multi_cpu import MultiCpuBackend

        backend = MultiCpuBackend(num_threads=get_config().num_threads)
    else:
        from .accelerator import AcceleratorBackend

        backend = AcceleratorBackend()

    logger.debug(f"Created {type(backend).__name__} for op mode {mode.value}")
    _BACKENDS[mode] = backend
    return backend


def get_default_op_mode() -> OpMode:
    """The op mode used by tensors without an override.

    Initialized from `GRAPHGRAD_OP_MODE` on first use.

    Returns:
        OpMode: The current default.
    """
    global _DEFAULT_OP_MODE
    if _DEFAULT_OP_MODE is None:
        _DEFAULT_OP_MODE = OpMode(get_config().op_mode)
    return _DEFAULT_OP_MODE


def set_default_op_mode(mode: OpMode) -> None:
    """Sets the process wide default op mode to `mode`.

    Args:
        mode (OpMode): The backend used by tensors without an override.
    """
    global _DEFAULT_OP_MODE
    _DEFAULT_OP_MODE = OpMode(mode)
    logger.debug(f"Default op mode set to {_DEFAULT_OP_MODE.value}")


def get_default_backend() -> ComputeBackend:
    """The backend instance of the default op mode."""
    return get_backend(get_default_op_mode())


class op_mode:  # noqa: N801
    """Context manager that switches the default op mode inside the context.

    Args:
        mode (OpMode): The op mode to use inside the context.

    Example:
        >>> with op_mode(OpMode.MULTI_CPU):
        ...     session.run([loss], feeds)
    """

    def __init__(self, mode: OpMode) -> None:
        self.mode = OpMode(mode)

    def __enter__(self) -> Self:
        self.prev = get_default_op_mode()
        set_default_op_mode(self.mode)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        set_default_op_mode(self.prev)


def op_mode_fn(mode: OpMode) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """Runs the annotated function with `mode` as the default op mode.

    Args:
        mode (OpMode): The op mode to use during the call.

    Returns:
        Callable[[Callable[P, T]], Callable[P, T]]: Decorator preserving the
            signature of the wrapped function.
    """

    def decorator(fn: Callable[P, T]) -> Callable[P, T]:
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            with op_mode(mode):
                return fn(*args, **kwargs)

        return wrapper

    return decorator


__all__ = [
    "OpMode",
    "get_backend",
    "get_default_backend",
    "get_default_op_mode",
    "op_mode",
    "op_mode_fn",
    "set_default_op_mode",
]
