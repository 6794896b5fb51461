"""Computation graphs: nodes, operations and their execution."""

from . import functional
from .context import Graph
from .node import Constant, Placeholder, TensorLike, Variable
from .operation import (
    OpInputs,
    OpType,
    Operation,
    OperationSpec,
    get_operation_spec,
    reduce_to_shape,
    register_operation,
    registered_operations,
)
from .ops import *  # noqa: F403
from .ops import __all__ as _ops_all
from .session import Session

__all__ = [
    "Constant",
    "Graph",
    "OpInputs",
    "OpType",
    "Operation",
    "OperationSpec",
    "Placeholder",
    "Session",
    "TensorLike",
    "Variable",
    "functional",
    "get_operation_spec",
    "reduce_to_shape",
    "register_operation",
    "registered_operations",
    *_ops_all,
]
