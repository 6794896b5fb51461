"""Operations that only move values: concatenation and reshaping."""

from __future__ import annotations

import logging

from ...errors import check
from ...shape import Axis, Shape
from ...tensor import Tensor
from ..node import TensorLike
from ..operation import OpInputs, OpType, Operation, register_operation

logger = logging.getLogger(__name__)

_CONCAT_AXES = (Axis.WIDTH, Axis.HEIGHT, Axis.DEPTH, Axis.BATCH)


def _concat_shape(shapes: list[Shape], axis: Axis, name: str) -> Shape:
    """Shape of `shapes` joined along `axis`.

    Raises:
        InvariantViolation: If any other dimension differs.
    """
    first = shapes[0]
    for shape in shapes[1:]:
        for other_axis in _CONCAT_AXES:
            if other_axis is axis:
                continue
            check(
                shape.len(other_axis) == first.len(other_axis),
                f"Cannot concatenate shapes {first} and {shape} along {axis.name}",
                name,
            )
    dims = list(first.dims)
    dims[axis] = sum(shape.len(axis) for shape in shapes)
    return Shape(*dims)


@register_operation(
    name="concatenate_depth",
    op_type=OpType.MOVEMENT,
    op_inputs=OpInputs.BINARY,
    input_shapes=(Shape(3, 2, 1, 2), Shape(3, 2, 2, 2)),
)
@register_operation(
    name="concatenate_width",
    op_type=OpType.MOVEMENT,
    op_inputs=OpInputs.TERNARY,
    input_shapes=(Shape(1, 2, 2, 2), Shape(3, 2, 2, 2), Shape(2, 2, 2, 2)),
    params={"axis": Axis.WIDTH},
)
class ConcatenateOp(Operation):
    """Join the inputs along a single dimension `axis`."""

    prefix = "concatenate"

    def __init__(self, *inputs: TensorLike, axis: Axis = Axis.DEPTH, name: str = "") -> None:
        check(axis in _CONCAT_AXES, f"Cannot concatenate along {axis.name}", name)
        self.axis = axis
        super().__init__(inputs, _concat_shape([x.shape for x in inputs], axis, name), name)

    def _compute(self) -> None:
        inputs = [node.output for node in self.inputs]
        self._output.resize(_concat_shape([x.shape for x in inputs], self.axis, self.name))
        self.op.concat(self.axis, inputs, self._output)

    def _compute_gradient(self, grad: Tensor) -> None:
        sizes = [node.shape.len(self.axis) for node in self.inputs]
        outs = [self._input_grad(idx) for idx in range(len(sizes))]
        self.op.split(self.axis, grad, sizes, outs)


@register_operation(
    name="reshape",
    op_type=OpType.MOVEMENT,
    op_inputs=OpInputs.UNARY,
    input_shapes=(Shape(3, 2, 2, 2),),
    params={"shape": Shape(12, 1, 1, 1)},
)
class ReshapeOp(Operation):
    """Reinterpret every batch entry with a different sample shape.

    The batch size of `shape` is ignored; the output keeps the input batch.
    """

    prefix = "reshape"

    def __init__(self, x: TensorLike, shape: Shape, name: str = "") -> None:
        check(
            shape.batch_length == x.shape.batch_length,
            f"Cannot reshape {x.shape} into {shape}: sample lengths differ",
            x.name,
        )
        super().__init__((x,), shape.with_batch(x.shape.batch), name)

    def _compute(self) -> None:
        x = self.inputs[0].output
        self._resize_output_batch(x.batch)
        self.op.reshape(x, self._output)

    def _compute_gradient(self, grad: Tensor) -> None:
        x_grad = self._input_grad(0)
        if x_grad is not None:
            self.op.reshape(grad, x_grad)


__all__ = [
    "ConcatenateOp",
    "ReshapeOp",
]
