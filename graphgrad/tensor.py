"""Dense four dimensional tensors: a `Shape` plus a `Storage`."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import numpy as np

from .backend.backend import DTYPE
from .backend.op_mode import OpMode, get_backend, get_default_op_mode
from .shape import Axis, Shape
from .storage import Location, Storage, StorageType

if TYPE_CHECKING:
    from .backend.compute import ComputeBackend
    from .memory import MemoryManager

logger = logging.getLogger(__name__)


def broadcast_shape(a: Shape, b: Shape) -> Shape:
    """Shape of an elementwise result of `a` and `b`.

    Dimensions must be equal or have length 1 in one of the operands.

    Raises:
        ValueError: If the shapes are not broadcast compatible.

    Returns:
        Shape: The broadcast shape.
    """
    dims = []
    for dim_a, dim_b in zip(a.dims, b.dims, strict=True):
        if dim_a != dim_b and 1 not in (dim_a, dim_b):
            raise ValueError(f"Shapes {a} and {b} cannot be broadcast together")
        dims.append(max(dim_a, dim_b))
    return Shape(*dims)


class Tensor:
    """Values of a fixed shape held in a `Storage`.

    Only the batch dimension is expected to change over the life of a
    tensor; `resize` reuses the storage whenever the new length fits.

    Args:
        shape (Shape | None): The shape. Defaults to None, meaning
            `Shape()` (a single value).
        name (str): Name used in logs and errors. Defaults to "".
        storage_type (StorageType): Flags of the underlying storage.
            Defaults to `StorageType.DEFAULT`.
        memory (MemoryManager | None): Memory manager of the storage.
            Defaults to None, meaning the process default.
        op_mode (OpMode | None): Per-tensor compute backend override.
            Defaults to None, meaning the process default op mode.
    """

    def __init__(
        self,
        shape: Shape | None = None,
        *,
        name: str = "",
        storage_type: StorageType = StorageType.DEFAULT,
        memory: MemoryManager | None = None,
        op_mode: OpMode | None = None,
    ) -> None:
        self.name = name
        self._shape = shape if shape is not None else Shape()
        self._storage = Storage(self._shape.length, storage_type, name, memory)
        self.op_mode = op_mode

    @classmethod
    def from_array(
        cls,
        values: Any,
        shape: Shape | None = None,
        *,
        name: str = "",
        storage_type: StorageType = StorageType.DEFAULT,
        memory: MemoryManager | None = None,
        op_mode: OpMode | None = None,
    ) -> Tensor:
        """Create a tensor holding a copy of `values`.

        Args:
            values (Any): Array-like in `(batch, depth, height, width)` order;
                fewer dims are right aligned (see `Shape.from_array_shape`).
            shape (Shape | None): Explicit shape with the same number of
                elements. Defaults to None, meaning derived from `values`.
            name (str): Tensor name. Defaults to "".
            storage_type (StorageType): Storage flags.
            memory (MemoryManager | None): Memory manager of the storage.
            op_mode (OpMode | None): Per-tensor compute backend override.

        Returns:
            Tensor: The new tensor.
        """
        array = np.asarray(values, dtype=DTYPE)
        if shape is None:
            shape = Shape.from_array_shape(array.shape)
        result = cls(shape, name=name, storage_type=storage_type, memory=memory, op_mode=op_mode)
        result.set_values(array)
        return result

    @property
    def shape(self) -> Shape:
        return self._shape

    @property
    def batch(self) -> int:
        return self._shape.batch

    @property
    def length(self) -> int:
        return self._shape.length

    @property
    def storage(self) -> Storage:
        return self._storage

    @property
    def location(self) -> Location:
        return self._storage.location

    @property
    def op(self) -> ComputeBackend:
        """The compute backend executing primitives on this tensor."""
        return get_backend(self.op_mode if self.op_mode is not None else get_default_op_mode())

    def resize(self, shape: Shape) -> None:
        """Change the shape, reusing the storage when the length fits."""
        if shape == self._shape:
            return
        self._storage.resize(shape.length)
        self._shape = shape

    def resize_batch(self, batch: int) -> None:
        """Change only the batch size."""
        self.resize(self._shape.with_batch(batch))

    def reshape(self, shape: Shape) -> None:
        """Reinterpret the values with a different shape of equal length.

        Raises:
            ValueError: If the lengths differ.
        """
        if shape.length != self._shape.length:
            raise ValueError(f"Cannot reshape {self._shape} into {shape}")
        self._shape = shape

    def host_values(self, *, overwrite: bool = False) -> np.ndarray:
        """Host array view of the values, in `(n, d, h, w)` layout.

        Args:
            overwrite (bool): Whether the caller is about to overwrite every
                value. Skips synchronizing the host copy. Defaults to False.

        Returns:
            np.ndarray: A view into the host buffer.
        """
        if overwrite:
            self._storage.override_host()
        else:
            self._storage.copy_to_host()
        return self._storage.host_data()[: self.length].reshape(self._shape.array_shape)

    def device_values(self, *, overwrite: bool = False) -> Any:
        """Device array view of the values, in `(n, d, h, w)` layout.

        Args:
            overwrite (bool): Whether the caller is about to overwrite every
                value. Skips synchronizing the device copy. Defaults to False.

        Returns:
            Any: A view into the device buffer.
        """
        if overwrite:
            self._storage.override_device()
        else:
            self._storage.copy_to_device()
        return self._storage.device_data()[: self.length].reshape(self._shape.array_shape)

    def to_numpy(self) -> np.ndarray:
        """A host copy of the values, in `(n, d, h, w)` layout."""
        return self.host_values().copy()

    def set_values(self, values: Any) -> None:
        """Overwrite all values from an array-like of matching length.

        Raises:
            ValueError: If the number of values does not match.
        """
        array = np.asarray(values, dtype=DTYPE)
        if array.size != self.length:
            raise ValueError(
                f'Cannot assign {array.size} values to tensor "{self.name}" of shape {self._shape}'
            )
        self.host_values(overwrite=True)[...] = array.reshape(self._shape.array_shape)

    def copy_from(self, other: Tensor) -> None:
        """Take over shape and values of `other`."""
        self._storage.copy_from(other.storage)
        self._shape = other.shape

    def copy_to_host(self) -> None:
        self._storage.copy_to_host()

    def copy_to_device(self) -> None:
        self._storage.copy_to_device()

    def offload(self) -> None:
        self._storage.offload()

    def prefetch(self) -> None:
        self._storage.prefetch()

    def override_host(self) -> None:
        self._storage.override_host()

    def override_device(self) -> None:
        self._storage.override_device()

    def release(self) -> None:
        self._storage.release()

    def zero(self) -> Tensor:
        self.op.zero(self)
        return self

    def one(self) -> Tensor:
        self.op.one(self)
        return self

    def fill(self, value: float) -> Tensor:
        self.op.fill(self, value)
        return self

    def fill_with_rand(
        self,
        low: float = -1.0,
        high: float = 1.0,
        rng: np.random.Generator | None = None,
    ) -> Tensor:
        """Fill with uniformly distributed values in `[low, high)`.

        Args:
            low (float): Lower bound. Defaults to -1.
            high (float): Upper bound. Defaults to 1.
            rng (np.random.Generator | None): Generator to draw from.
                Defaults to None, meaning a fresh unseeded generator.

        Returns:
            Tensor: self, for method chaining.
        """
        rng = rng if rng is not None else np.random.default_rng()
        self.host_values(overwrite=True)[...] = rng.uniform(low, high, self._shape.array_shape)
        return self

    def _like(self, shape: Shape, suffix: str) -> Tensor:
        name = f"{self.name}_{suffix}" if self.name else ""
        return Tensor(shape, name=name, op_mode=self.op_mode)

    def _broadcast_like(self, other: Tensor, suffix: str) -> Tensor:
        return self._like(broadcast_shape(self._shape, other.shape), suffix)

    def add(self, other: Tensor | float, out: Tensor | None = None) -> Tensor:
        if not isinstance(other, Tensor):
            out = out if out is not None else self._like(self._shape, "add")
            self.op.add_scalar(self, float(other), out)
            return out
        out = out if out is not None else self._broadcast_like(other, "add")
        self.op.add(1.0, self, 1.0, other, out)
        return out

    def sub(self, other: Tensor, out: Tensor | None = None) -> Tensor:
        out = out if out is not None else self._broadcast_like(other, "sub")
        self.op.sub(self, other, out)
        return out

    def mul(self, other: Tensor | float, out: Tensor | None = None) -> Tensor:
        """Elementwise product with a tensor or a scalar."""
        if not isinstance(other, Tensor):
            out = out if out is not None else self._like(self._shape, "mul")
            self.op.mul_scalar(self, float(other), out)
            return out
        out = out if out is not None else self._broadcast_like(other, "mul")
        self.op.mul_elem(self, other, out)
        return out

    def div(self, other: Tensor | float, out: Tensor | None = None) -> Tensor:
        if not isinstance(other, Tensor):
            return self.mul(1.0 / float(other), out)
        out = out if out is not None else self._broadcast_like(other, "div")
        self.op.div(self, other, out)
        return out

    def negated(self, out: Tensor | None = None) -> Tensor:
        out = out if out is not None else self._like(self._shape, "neg")
        self.op.negate(self, out)
        return out

    def matmul(
        self,
        other: Tensor,
        *,
        transpose_self: bool = False,
        transpose_other: bool = False,
        out: Tensor | None = None,
    ) -> Tensor:
        """Matrix product over the `(height, width)` planes.

        Raises:
            ValueError: If the inner dimensions or depths do not match.
        """
        rows = self._shape.width if transpose_self else self._shape.height
        inner = self._shape.height if transpose_self else self._shape.width
        other_inner = other.shape.width if transpose_other else other.shape.height
        cols = other.shape.height if transpose_other else other.shape.width
        if inner != other_inner or self._shape.depth != other.shape.depth:
            raise ValueError(f"Cannot multiply matrices of shapes {self._shape} and {other.shape}")
        shape = Shape(cols, rows, self._shape.depth, max(self.batch, other.batch))
        out = out if out is not None else self._like(shape, "matmul")
        self.op.matmul(self, transpose_self, other, transpose_other, out)
        return out

    def transposed(self, out: Tensor | None = None) -> Tensor:
        shape = Shape(self._shape.height, self._shape.width, self._shape.depth, self.batch)
        out = out if out is not None else self._like(shape, "transpose")
        self.op.transpose(self, out)
        return out

    def sum(self, axis: Axis = Axis.GLOBAL, out: Tensor | None = None) -> Tensor:
        out = out if out is not None else self._like(self._shape.reduced(axis), "sum")
        self.op.sum(self, axis, out)
        return out

    def mean(self, axis: Axis = Axis.GLOBAL, out: Tensor | None = None) -> Tensor:
        out = out if out is not None else self._like(self._shape.reduced(axis), "mean")
        self.op.mean(self, axis, out)
        return out

    def map(self, fn: Callable[[Any], Any], out: Tensor | None = None) -> Tensor:
        out = out if out is not None else self._like(self._shape, "map")
        self.op.map(fn, self, out)
        return out

    def __add__(self, other: Tensor | float) -> Tensor:
        return self.add(other)

    def __sub__(self, other: Tensor) -> Tensor:
        return self.sub(other)

    def __mul__(self, other: Tensor | float) -> Tensor:
        return self.mul(other)

    def __truediv__(self, other: Tensor | float) -> Tensor:
        return self.div(other)

    def __neg__(self) -> Tensor:
        return self.negated()

    def __matmul__(self, other: Tensor) -> Tensor:
        return self.matmul(other)

    def __repr__(self) -> str:
        return f"Tensor(name={self.name!r}, shape={self._shape}, location={self.location.name})"


def tensor(
    values: Any,
    *,
    name: str = "",
    storage_type: StorageType = StorageType.DEFAULT,
    op_mode: OpMode | None = None,
) -> Tensor:
    """Create a tensor from array-like `values`.

    Args:
        values (Any): Array-like in `(batch, depth, height, width)` order,
            fewer dims are right aligned.
        name (str): Tensor name. Defaults to "".
        storage_type (StorageType): Storage flags.
            Defaults to `StorageType.DEFAULT`.
        op_mode (OpMode | None): Per-tensor compute backend override.

    Returns:
        Tensor: The new tensor.
    """
    return Tensor.from_array(values, name=name, storage_type=storage_type, op_mode=op_mode)


__all__ = [
    "Tensor",
    "broadcast_shape",
    "tensor",
]
