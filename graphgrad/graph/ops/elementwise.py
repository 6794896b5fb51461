"""Pointwise arithmetic operations with broadcasting."""

from __future__ import annotations

import logging

from ...shape import Shape
from ...tensor import Tensor
from ..node import TensorLike
from ..operation import (
    OpInputs,
    OpType,
    Operation,
    broadcast_node_shape,
    register_operation,
)

logger = logging.getLogger(__name__)

_SHAPE = Shape(3, 2, 2, 2)


@register_operation(
    name="add",
    op_type=OpType.ELEMENTWISE,
    op_inputs=OpInputs.BINARY,
    input_shapes=(_SHAPE, _SHAPE),
)
@register_operation(
    name="add_bias_over_batch",
    op_type=OpType.ELEMENTWISE,
    op_inputs=OpInputs.BINARY,
    input_shapes=(_SHAPE, _SHAPE.with_batch(1)),
)
@register_operation(
    name="add_bias_over_channel",
    op_type=OpType.ELEMENTWISE,
    op_inputs=OpInputs.BINARY,
    input_shapes=(_SHAPE, Shape(1, 1, 2, 1)),
)
@register_operation(
    name="add_row_broadcast",
    op_type=OpType.ELEMENTWISE,
    op_inputs=OpInputs.BINARY,
    input_shapes=(Shape(1, 2, 2, 2), Shape(3, 1, 2, 1)),
)
@register_operation(
    name="add_scalar",
    op_type=OpType.ELEMENTWISE,
    op_inputs=OpInputs.UNARY,
    input_shapes=(_SHAPE,),
    params={"y": 1.5},
)
class AddOp(Operation):
    """`x + y` for a node or a scalar `y`."""

    prefix = "add"

    def __init__(self, x: TensorLike, y: TensorLike | float, name: str = "") -> None:
        if isinstance(y, TensorLike):
            self.scalar: float | None = None
            super().__init__((x, y), broadcast_node_shape(x, y), name)
        else:
            self.scalar = float(y)
            super().__init__((x,), x.shape, name)

    def _compute(self) -> None:
        inputs = self.inputs
        x = inputs[0].output
        if self.scalar is not None:
            self._resize_output_batch(x.batch)
            self.op.add_scalar(x, self.scalar, self._output)
            return
        self._output.resize(broadcast_node_shape(*inputs))
        self.op.add(1.0, x, 1.0, inputs[1].output, self._output)

    def _compute_gradient(self, grad: Tensor) -> None:
        for idx in range(len(self.input_ids)):
            self._reduce_grad(idx, grad)


@register_operation(
    name="subtract",
    op_type=OpType.ELEMENTWISE,
    op_inputs=OpInputs.BINARY,
    input_shapes=(_SHAPE, _SHAPE.with_batch(1)),
)
class SubtractOp(Operation):
    prefix = "subtract"

    def __init__(self, x: TensorLike, y: TensorLike, name: str = "") -> None:
        super().__init__((x, y), broadcast_node_shape(x, y), name)

    def _compute(self) -> None:
        x, y = self.inputs
        self._output.resize(broadcast_node_shape(x, y))
        self.op.sub(x.output, y.output, self._output)

    def _compute_gradient(self, grad: Tensor) -> None:
        self._reduce_grad(0, grad)
        y_grad = self._input_grad(1)
        if y_grad is not None:
            self._reduce_grad(1, grad)
            self.op.negate(y_grad, y_grad)


@register_operation(
    name="multiply",
    op_type=OpType.ELEMENTWISE,
    op_inputs=OpInputs.BINARY,
    input_shapes=(_SHAPE, _SHAPE),
)
@register_operation(
    name="multiply_broadcast",
    op_type=OpType.ELEMENTWISE,
    op_inputs=OpInputs.BINARY,
    input_shapes=(_SHAPE, Shape(3, 1, 1, 1)),
)
@register_operation(
    name="multiply_scalar",
    op_type=OpType.ELEMENTWISE,
    op_inputs=OpInputs.UNARY,
    input_shapes=(_SHAPE,),
    params={"y": -0.75},
)
class MultiplyOp(Operation):
    """`x * y` for a node or a scalar `y`."""

    prefix = "multiply"

    def __init__(self, x: TensorLike, y: TensorLike | float, name: str = "") -> None:
        if isinstance(y, TensorLike):
            self.scalar: float | None = None
            super().__init__((x, y), broadcast_node_shape(x, y), name)
        else:
            self.scalar = float(y)
            super().__init__((x,), x.shape, name)

    def _compute(self) -> None:
        inputs = self.inputs
        x = inputs[0].output
        if self.scalar is not None:
            self._resize_output_batch(x.batch)
            self.op.mul_scalar(x, self.scalar, self._output)
            return
        self._output.resize(broadcast_node_shape(*inputs))
        self.op.mul_elem(x, inputs[1].output, self._output)

    def _compute_gradient(self, grad: Tensor) -> None:
        inputs = self.inputs
        if self.scalar is not None:
            x_grad = self._input_grad(0)
            if x_grad is not None:
                self.op.mul_scalar(grad, self.scalar, x_grad)
            return
        # d(x*y)/dx = y and d(x*y)/dy = x
        for idx, other in ((0, inputs[1]), (1, inputs[0])):
            if self._input_grad(idx) is None:
                continue
            tmp = self._scratch("product", grad.shape)
            self.op.mul_elem(grad, other.output, tmp)
            self._reduce_grad(idx, tmp)


@register_operation(
    name="divide",
    op_type=OpType.ELEMENTWISE,
    op_inputs=OpInputs.BINARY,
    input_shapes=(_SHAPE, _SHAPE),
    constraints={"y": "positive"},
)
@register_operation(
    name="divide_broadcast",
    op_type=OpType.ELEMENTWISE,
    op_inputs=OpInputs.BINARY,
    input_shapes=(_SHAPE, Shape(1, 1, 2, 1)),
    constraints={"y": "positive"},
)
class DivideOp(Operation):
    prefix = "divide"

    def __init__(self, x: TensorLike, y: TensorLike, name: str = "") -> None:
        super().__init__((x, y), broadcast_node_shape(x, y), name)

    def _compute(self) -> None:
        x, y = self.inputs
        self._output.resize(broadcast_node_shape(x, y))
        self.op.div(x.output, y.output, self._output)

    def _compute_gradient(self, grad: Tensor) -> None:
        x, y = self.inputs
        if self._input_grad(0) is not None:
            tmp = self._scratch("quotient", grad.shape)
            self.op.div(grad, y.output, tmp)
            self._reduce_grad(0, tmp)
        y_grad = self._input_grad(1)
        if y_grad is not None:
            # -grad * x / y^2 == -grad * out / y
            tmp = self._scratch("quotient", grad.shape)
            self.op.mul_elem(grad, self._output, tmp)
            self.op.div(tmp, y.output, tmp)
            self._reduce_grad(1, tmp)
            self.op.negate(y_grad, y_grad)


@register_operation(
    name="negative",
    op_type=OpType.ELEMENTWISE,
    op_inputs=OpInputs.UNARY,
    input_shapes=(_SHAPE,),
)
class NegativeOp(Operation):
    prefix = "negative"

    def __init__(self, x: TensorLike, name: str = "") -> None:
        super().__init__((x,), x.shape, name)

    def _compute(self) -> None:
        x = self.inputs[0].output
        self._resize_output_batch(x.batch)
        self.op.negate(x, self._output)

    def _compute_gradient(self, grad: Tensor) -> None:
        x_grad = self._input_grad(0)
        if x_grad is not None:
            self.op.negate(grad, x_grad)


class _UnaryOp(Operation):
    """Shape preserving operation of a single input."""

    def __init__(self, x: TensorLike, name: str = "") -> None:
        super().__init__((x,), x.shape, name)

    def _compute(self) -> None:
        x = self.inputs[0].output
        self._resize_output_batch(x.batch)
        self._apply(x)

    def _compute_gradient(self, grad: Tensor) -> None:
        x_grad = self._input_grad(0)
        if x_grad is not None:
            self._apply_gradient(grad, x_grad)

    def _apply(self, x: Tensor) -> None:
        raise NotImplementedError

    def _apply_gradient(self, grad: Tensor, x_grad: Tensor) -> None:
        raise NotImplementedError


@register_operation(
    name="log",
    op_type=OpType.ELEMENTWISE,
    op_inputs=OpInputs.UNARY,
    input_shapes=(_SHAPE,),
    constraints={"x": "positive"},
)
class LogOp(_UnaryOp):
    prefix = "log"

    def _apply(self, x: Tensor) -> None:
        self.op.log(x, self._output)

    def _apply_gradient(self, grad: Tensor, x_grad: Tensor) -> None:
        self.op.div(grad, self.inputs[0].output, x_grad)


@register_operation(
    name="exp",
    op_type=OpType.ELEMENTWISE,
    op_inputs=OpInputs.UNARY,
    input_shapes=(_SHAPE,),
)
class ExpOp(_UnaryOp):
    prefix = "exp"

    def _apply(self, x: Tensor) -> None:
        self.op.exp(x, self._output)

    def _apply_gradient(self, grad: Tensor, x_grad: Tensor) -> None:
        self.op.mul_elem(grad, self._output, x_grad)


@register_operation(
    name="sqrt",
    op_type=OpType.ELEMENTWISE,
    op_inputs=OpInputs.UNARY,
    input_shapes=(_SHAPE,),
    constraints={"x": "positive"},
)
class SqrtOp(_UnaryOp):
    prefix = "sqrt"

    def _apply(self, x: Tensor) -> None:
        self.op.sqrt(x, self._output)

    def _apply_gradient(self, grad: Tensor, x_grad: Tensor) -> None:
        self.op.div(grad, self._output, x_grad)
        self.op.mul_scalar(x_grad, 0.5, x_grad)


@register_operation(
    name="pow",
    op_type=OpType.ELEMENTWISE,
    op_inputs=OpInputs.UNARY,
    input_shapes=(_SHAPE,),
    params={"power": 3.0},
)
@register_operation(
    name="pow_fractional",
    op_type=OpType.ELEMENTWISE,
    op_inputs=OpInputs.UNARY,
    input_shapes=(_SHAPE,),
    params={"power": 1.5},
    constraints={"x": "positive"},
)
class PowOp(Operation):
    """`x ** power` for a constant exponent."""

    prefix = "pow"

    def __init__(self, x: TensorLike, power: float, name: str = "") -> None:
        self.power = float(power)
        super().__init__((x,), x.shape, name)

    def _compute(self) -> None:
        x = self.inputs[0].output
        self._resize_output_batch(x.batch)
        self.op.pow(x, self.power, self._output)

    def _compute_gradient(self, grad: Tensor) -> None:
        x_grad = self._input_grad(0)
        if x_grad is not None:
            self.op.pow_gradient(self.inputs[0].output, self.power, grad, x_grad)


__all__ = [
    "AddOp",
    "DivideOp",
    "ExpOp",
    "LogOp",
    "MultiplyOp",
    "NegativeOp",
    "PowOp",
    "SqrtOp",
    "SubtractOp",
]
