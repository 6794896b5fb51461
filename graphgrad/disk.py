"""Code for serializing and deserializing variable values."""

from __future__ import annotations

import logging
import struct
from collections import OrderedDict
from collections.abc import Sequence
from typing import TYPE_CHECKING

import numpy as np

from .backend.backend import DTYPE
from .errors import check
from .shape import Shape
from .tensor import Tensor

if TYPE_CHECKING:
    from .graph.context import Graph
    from .graph.node import Variable

logger = logging.getLogger(__name__)

_GGRD_MAGIC = b"GGRD"
_GGRD_VERSION = 1
_SUFFIX = ".ggrd"


def _check_path(file_path: str) -> None:
    if not str(file_path).endswith(_SUFFIX):
        raise ValueError(f'file_path must end with "{_SUFFIX}"')


def _normalize(data: Sequence[Variable] | OrderedDict[str, Tensor]) -> OrderedDict[str, Tensor]:
    if isinstance(data, OrderedDict):
        if not all(isinstance(v, Tensor) for v in data.values()):
            raise ValueError("If an OrderedDict is passed, all values must be Tensors.")
        return data
    return OrderedDict((variable.name, variable.value) for variable in data)


def save(data: Sequence[Variable] | OrderedDict[str, Tensor], file_path: str) -> None:
    """Save tensor values to disk using a custom binary format.

    Every entry stores its key, its four dimensions
    `(width, height, depth, batch)` and the float32 values in
    `(batch, depth, height, width)` order.

    Args:
        data (Sequence[Variable] | OrderedDict[str, Tensor]): Variables,
            saved under their names, or tensors keyed by name.
        file_path (str): The file path to which to store the data. Must
            end with ".ggrd".

    Raises:
        ValueError: If an OrderedDict with non-Tensor values is passed.
        ValueError: If file_path doesn't end with ".ggrd".
    """
    _check_path(file_path)
    tensors = _normalize(data)

    with open(file_path, "wb") as f:
        f.write(_GGRD_MAGIC)
        f.write(struct.pack("<B", _GGRD_VERSION))  # uint8 version
        f.write(struct.pack("<I", len(tensors)))  # uint32 num entries

        for key, tensor in tensors.items():
            arr = np.ascontiguousarray(tensor.to_numpy(), dtype=DTYPE)

            key_bytes = key.encode("utf-8")
            f.write(struct.pack("<I", len(key_bytes)))  # uint32 key length
            f.write(key_bytes)

            f.writelines(struct.pack("<Q", dim) for dim in tensor.shape.dims)  # uint64 per dim

            f.write(arr.astype("<f4", copy=False).tobytes())

    logger.debug(f'Saved {len(tensors)} tensors to "{file_path}"')


def load(file_path: str) -> OrderedDict[str, Tensor]:
    """Load tensor values from disk.

    Args:
        file_path (str): The file path from which to read the data. Must
            end with ".ggrd".

    Raises:
        ValueError: If file_path doesn't end with ".ggrd".
        ValueError: If the file has invalid magic bytes, an unsupported
            version or is truncated.

    Returns:
        OrderedDict[str, Tensor]: The loaded tensors, keyed by name.
    """
    _check_path(file_path)

    with open(file_path, "rb") as f:
        magic = f.read(4)
        if magic != _GGRD_MAGIC:
            raise ValueError(f"Invalid file format. Expected GGRD magic bytes, got {magic!r}")

        version = struct.unpack("<B", f.read(1))[0]
        if version != _GGRD_VERSION:
            raise ValueError(f"Unsupported version {version}. Expected {_GGRD_VERSION}")

        num_tensors = struct.unpack("<I", f.read(4))[0]

        tensors: OrderedDict[str, Tensor] = OrderedDict()
        for _ in range(num_tensors):
            key_length = struct.unpack("<I", f.read(4))[0]
            key = f.read(key_length).decode("utf-8")

            dims = tuple(struct.unpack("<Q", f.read(8))[0] for _ in range(4))
            shape = Shape(*dims)

            num_bytes = shape.length * 4
            data_bytes = f.read(num_bytes)
            if len(data_bytes) != num_bytes:
                raise ValueError(f'Truncated data for "{key}" in "{file_path}"')
            arr = np.frombuffer(data_bytes, dtype="<f4")

            tensors[key] = Tensor.from_array(arr, shape, name=key)

    logger.debug(f'Loaded {len(tensors)} tensors from "{file_path}"')
    return tensors


def load_into(graph: Graph, file_path: str, *, strict: bool = True) -> list[Variable]:
    """Assign saved values to the same-named variables of `graph`.

    Args:
        graph (Graph): Graph holding the variables.
        file_path (str): File written by `save`.
        strict (bool): Whether every saved entry must match a variable.
            Defaults to True.

    Raises:
        KeyError: If `strict` and an entry has no matching variable.
        InvariantViolation: If a saved shape differs from the variable's.

    Returns:
        list[Variable]: The assigned variables.
    """
    from .graph.node import Variable

    assigned: list[Variable] = []
    for key, tensor in load(file_path).items():
        node = graph.find(key)
        if not isinstance(node, Variable):
            if strict:
                raise KeyError(f'No variable named "{key}" in graph "{graph.name}"')
            continue
        check(
            node.shape == tensor.shape,
            f"Saved shape {tensor.shape} does not match variable shape {node.shape}",
            node.name,
        )
        node.assign(tensor)
        assigned.append(node)
    return assigned


__all__ = [
    "load",
    "load_into",
    "save",
]
