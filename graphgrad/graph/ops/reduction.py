"""Sum and mean reductions."""

from __future__ import annotations

import logging

from ...shape import Axis, Shape
from ...tensor import Tensor
from ..node import TensorLike
from ..operation import OpInputs, OpType, Operation, register_operation

logger = logging.getLogger(__name__)

_SHAPE = Shape(3, 2, 2, 2)


@register_operation(
    name="sum",
    op_type=OpType.REDUCTION,
    op_inputs=OpInputs.UNARY,
    input_shapes=(_SHAPE,),
)
@register_operation(
    name="sum_batch",
    op_type=OpType.REDUCTION,
    op_inputs=OpInputs.UNARY,
    input_shapes=(_SHAPE,),
    params={"axis": Axis.BATCH},
)
@register_operation(
    name="sum_per_channel",
    op_type=OpType.REDUCTION,
    op_inputs=OpInputs.UNARY,
    input_shapes=(_SHAPE,),
    params={"axis": Axis.WHN},
)
class SumOp(Operation):
    """Sum along `axis`; reduced dimensions keep length 1."""

    prefix = "sum"

    def __init__(self, x: TensorLike, axis: Axis = Axis.GLOBAL, name: str = "") -> None:
        self.axis = axis
        super().__init__((x,), x.shape.reduced(axis), name)

    def _compute(self) -> None:
        x = self.inputs[0].output
        self._output.resize(x.shape.reduced(self.axis))
        self._reduce(x)

    def _reduce(self, x: Tensor) -> None:
        self.op.sum(x, self.axis, self._output)

    def _compute_gradient(self, grad: Tensor) -> None:
        x_grad = self._input_grad(0)
        if x_grad is not None:
            # every summed value contributed with weight 1
            self.op.copy(grad, x_grad)


@register_operation(
    name="mean",
    op_type=OpType.REDUCTION,
    op_inputs=OpInputs.UNARY,
    input_shapes=(_SHAPE,),
)
@register_operation(
    name="mean_per_sample",
    op_type=OpType.REDUCTION,
    op_inputs=OpInputs.UNARY,
    input_shapes=(_SHAPE,),
    params={"axis": Axis.WHD},
)
class MeanOp(SumOp):
    prefix = "mean"

    def _reduce(self, x: Tensor) -> None:
        self.op.mean(x, self.axis, self._output)

    def _compute_gradient(self, grad: Tensor) -> None:
        x_grad = self._input_grad(0)
        if x_grad is not None:
            self.op.copy(grad, x_grad)
            self.op.mul_scalar(x_grad, self._output.length / x_grad.length, x_grad)


__all__ = [
    "MeanOp",
    "SumOp",
]
