"""The `Operation` node base class and the operation registry.

The OpType/OpInputs categorization and the registry decorator follow the
same scheme as the gradient op registry of the array backend: every concrete
operation registers itself with enough metadata (input shapes, constraints)
for the finite difference test suite to exercise it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from ..errors import check
from ..shape import Axis, Shape
from ..tensor import Tensor
from .node import TensorLike

if TYPE_CHECKING:
    from ..backend.compute import ComputeBackend

logger = logging.getLogger(__name__)


_SINGLE_AXES = (Axis.WIDTH, Axis.HEIGHT, Axis.DEPTH, Axis.BATCH)


def broadcast_node_shape(*nodes: TensorLike) -> Shape:
    """Elementwise result shape of `nodes`.

    Raises:
        InvariantViolation: If a dimension differs and is not 1 in one of
            the operands.
    """
    dims = list(nodes[0].shape.dims)
    for node in nodes[1:]:
        for i, dim in enumerate(node.shape.dims):
            check(
                dim == dims[i] or 1 in (dim, dims[i]),
                f"Shape {node.shape} cannot be broadcast to {Shape(*dims)}",
                node.name,
            )
            dims[i] = max(dims[i], dim)
    return Shape(*dims)


def reduce_to_shape(grad: Tensor, target: Tensor) -> None:
    """Sum `grad` over the dimensions that were broadcast to reach its shape.

    Writes into `target`, whose shape is the pre-broadcast input shape.

    Raises:
        InvariantViolation: If `target` is not a broadcast source of `grad`.
    """
    op = target.op
    src, dst = grad.shape, target.shape
    if src == dst:
        op.copy(grad, target)
        return
    # bias over batch
    if dst == src.reduced(Axis.BATCH):
        op.sum(grad, Axis.BATCH, target)
        return
    # bias over channel and batch
    if dst == src.reduced(Axis.WHN):
        op.sum(grad, Axis.WHN, target)
        return
    # bias over channel, per sample
    if dst == src.reduced(Axis.WH):
        op.sum(grad, Axis.WH, target)
        return

    current = grad
    for axis in _SINGLE_AXES:
        if current.shape.len(axis) == dst.len(axis):
            continue
        check(
            dst.len(axis) == 1,
            f"Gradient of shape {src} cannot be reduced to {dst}",
            target.name,
        )
        reduced = Tensor(current.shape.reduced(axis), op_mode=target.op_mode)
        op.sum(current, axis, reduced)
        current = reduced
    op.copy(current, target)


class Operation(TensorLike):
    """A node computing its output from the outputs of its input nodes.

    Subclasses compute and validate their output shape before calling
    `Operation.__init__`, so a node with incompatible inputs is never
    registered. They implement `_compute` and `_compute_gradient`; input
    gradients are requested through `_input_grad`, which allocates them only
    for inputs that care about gradients.

    Args:
        inputs (Sequence[TensorLike]): Input nodes, all from the same graph.
        shape (Shape): The output shape.
        name (str): Unique name. Defaults to "", meaning a generated name.
    """

    prefix = "op"

    def __init__(self, inputs: Sequence[TensorLike], shape: Shape, name: str = "") -> None:
        check(len(inputs) > 0, "An operation needs at least one input", name)
        graph = inputs[0].graph
        for node in inputs:
            check(node.graph is graph, "Operation inputs belong to different graphs", node.name)
        super().__init__(graph, shape, name)
        self.input_ids = tuple(node.id for node in inputs)
        for node in inputs:
            node.consumer_ids.append(self.id)
        self._input_grads: list[Tensor | None] = [None] * len(inputs)
        self._scratch_tensors: dict[str, Tensor] = {}
        self.training = False

    @property
    def op(self) -> ComputeBackend:
        """Backend executing this operation."""
        return self._output.op

    def compute(self, training: bool = False) -> None:
        """Compute the output from the current input outputs.

        Args:
            training (bool): Whether this is a training pass.
                Defaults to False.
        """
        self.training = training
        self._compute()

    def compute_gradient(self, grad: Tensor) -> None:
        """Compute the gradients of all gradient-caring inputs.

        Args:
            grad (Tensor): Gradient of the loss w.r.t. this node's output.
        """
        self._compute_gradient(grad)

    def _compute(self) -> None:
        raise NotImplementedError(f"{type(self).__name__} does not implement _compute")

    def _compute_gradient(self, grad: Tensor) -> None:
        raise NotImplementedError(f"{type(self).__name__} does not implement _compute_gradient")

    def _output_batch(self) -> int:
        return max(node.shape.batch for node in self.inputs)

    def _resize_output_batch(self, batch: int) -> None:
        self._output.resize_batch(batch)

    def _input_grad(self, idx: int) -> Tensor | None:
        """Gradient buffer of input `idx`, or `None` if it does not care."""
        node = self.graph.node(self.input_ids[idx])
        if not node.care_about_gradient:
            return None
        grad = self._input_grads[idx]
        if grad is None:
            grad = Tensor(node.shape, name=f"{self.name}_grad{idx}", op_mode=self._output.op_mode)
            self._input_grads[idx] = grad
        else:
            grad.resize(node.shape)
        return grad

    def input_grad(self, idx: int) -> Tensor:
        """Gradient written for input `idx` by the last `compute_gradient` call."""
        grad = self._input_grads[idx]
        check(grad is not None, f"No gradient was computed for input {idx}", self.name)
        return grad  # type: ignore[return-value]

    def _scratch(self, key: str, shape: Shape) -> Tensor:
        """Temporary tensor reused across runs."""
        tmp = self._scratch_tensors.get(key)
        if tmp is None:
            tmp = Tensor(shape, name=f"{self.name}_{key}", op_mode=self._output.op_mode)
            self._scratch_tensors[key] = tmp
        else:
            tmp.resize(shape)
        return tmp

    def _reduce_grad(self, idx: int, grad: Tensor) -> None:
        """Pass `grad` (output shaped) to input `idx`, undoing broadcasting."""
        target = self._input_grad(idx)
        if target is not None:
            reduce_to_shape(grad, target)


class OpType(Enum):
    """Operation category by computational behavior."""

    ELEMENTWISE = "elementwise"  # Point-wise: add, mul, sigmoid, etc.
    REDUCTION = "reduction"  # Dimension reduction: sum, mean
    MOVEMENT = "movement"  # Data movement: reshape, concatenate, transpose
    LINALG = "linalg"  # Linear algebra: matmul
    CONVOLUTION = "convolution"  # Spatial windows: conv2d, pooling, upsampling
    REGULARIZATION = "regularization"  # Dropout, batch norm


class OpInputs(Enum):
    """Number of node inputs to an operation.

    The enum value equals the input count, e.g. `OpInputs.BINARY.value == 2`.
    """

    UNARY = 1
    BINARY = 2
    TERNARY = 3


@dataclass(frozen=True)
class OperationSpec:
    """Registration of an operation variant.

    Attributes:
        op_class (type[Operation]): The operation class.
        op_type (OpType): Operation category.
        op_inputs (OpInputs): Number of node inputs.
        input_shapes (tuple[Shape, ...]): Sample input shapes for testing.
        params (dict[str, Any]): Keyword arguments passed after the inputs.
        constraints (dict[str, str] | None): Input constraints for testing.
            Maps input name ("x", "y", "z" by position) to a constraint type,
            e.g. ``{"x": "positive"}``.
        training (bool): Whether to test the operation in training mode.
        skip_test (bool): Whether to skip automated finite difference testing.
        skip_reason (str | None): Reason for skipping. Required if skip_test=True.
    """

    op_class: type[Operation]
    op_type: OpType
    op_inputs: OpInputs
    input_shapes: tuple[Shape, ...]
    params: dict[str, Any] = field(default_factory=dict)
    constraints: dict[str, str] | None = None
    training: bool = False
    skip_test: bool = False
    skip_reason: str | None = None

    def __post_init__(self) -> None:
        """Validate the registration.

        Raises:
            ValueError: If skip_test is True but skip_reason is missing, or
                the number of input shapes does not match `op_inputs`.
        """
        if self.skip_test and not self.skip_reason:
            raise ValueError("skip_reason is required when skip_test=True")
        if len(self.input_shapes) != self.op_inputs.value:
            raise ValueError(
                f"{self.op_class.__name__} takes {self.op_inputs.value} inputs, "
                f"got {len(self.input_shapes)} input shapes"
            )

    def build(self, *inputs: TensorLike) -> Operation:
        return self.op_class(*inputs, **self.params)


# The registry maps variant names to their specifications
_OPERATIONS_REGISTRY: dict[str, OperationSpec] = {}

OperationT = TypeVar("OperationT", bound=type[Operation])


def register_operation(  # noqa: PLR0913
    *,
    name: str,
    op_type: OpType,
    op_inputs: OpInputs,
    input_shapes: tuple[Shape, ...],
    params: dict[str, Any] | None = None,
    constraints: dict[str, str] | None = None,
    training: bool = False,
    skip_test: bool = False,
    skip_reason: str | None = None,
) -> Callable[[OperationT], OperationT]:
    """Decorator factory to register an operation variant with metadata.

    Decorators can be stacked to register several variants (parameters or
    input shapes) of the same class.

    Args:
        name (str): Unique variant name.
        op_type (OpType): Operation category.
        op_inputs (OpInputs): Number of node inputs.
        input_shapes (tuple[Shape, ...]): Sample input shapes for testing.
        params (dict[str, Any] | None): Keyword arguments of the variant.
        constraints (dict[str, str] | None): Input constraints for testing.
        training (bool): Whether to test in training mode.
        skip_test (bool): Whether to skip automated finite difference testing.
        skip_reason (str | None): Reason for skipping. Required if skip_test=True.

    Returns:
        Callable[[OperationT], OperationT]: Decorator that registers the class.

    Raises:
        ValueError: If the name is already registered or skip_test=True
            without a skip_reason.
    """
    if skip_test and not skip_reason:
        raise ValueError("skip_reason is required when skip_test=True")
    if name in _OPERATIONS_REGISTRY:
        raise ValueError(f'Operation "{name}" is already registered')

    def decorator(op_class: OperationT) -> OperationT:
        _OPERATIONS_REGISTRY[name] = OperationSpec(
            op_class=op_class,
            op_type=op_type,
            op_inputs=op_inputs,
            input_shapes=input_shapes,
            params=params or {},
            constraints=constraints,
            training=training,
            skip_test=skip_test,
            skip_reason=skip_reason,
        )
        return op_class

    return decorator


def get_operation_spec(name: str) -> OperationSpec:
    """Specification of the registered variant `name`.

    Raises:
        KeyError: If no variant with that name is registered.
    """
    return _OPERATIONS_REGISTRY[name]


def registered_operations() -> dict[str, OperationSpec]:
    """A copy of the registry, including all operation modules."""
    from . import ops  # noqa: F401

    return dict(_OPERATIONS_REGISTRY)


__all__ = [
    "OpInputs",
    "OpType",
    "Operation",
    "OperationSpec",
    "broadcast_node_shape",
    "get_operation_spec",
    "reduce_to_shape",
    "register_operation",
    "registered_operations",
]
