"""Activation functions.

Gradients are computed from the activation output, so the input values are
not needed in the backward pass.
"""

from __future__ import annotations

import logging

from ...backend.compute import Activation
from ...shape import Shape
from ...tensor import Tensor
from ..node import TensorLike
from ..operation import OpInputs, OpType, Operation, register_operation

logger = logging.getLogger(__name__)

_SHAPE = Shape(3, 2, 2, 2)


class _ActivationOp(Operation):
    kind: Activation = Activation.LINEAR

    def __init__(self, x: TensorLike, alpha: float = 0.0, name: str = "") -> None:
        self.alpha = float(alpha)
        super().__init__((x,), x.shape, name)

    def _compute(self) -> None:
        x = self.inputs[0].output
        self._resize_output_batch(x.batch)
        self.op.activation(self.kind, x, self.alpha, self._output)

    def _compute_gradient(self, grad: Tensor) -> None:
        x_grad = self._input_grad(0)
        if x_grad is not None:
            self.op.activation_gradient(self.kind, self._output, self.alpha, grad, x_grad)


@register_operation(
    name="sigmoid",
    op_type=OpType.ELEMENTWISE,
    op_inputs=OpInputs.UNARY,
    input_shapes=(_SHAPE,),
)
class SigmoidOp(_ActivationOp):
    prefix = "sigmoid"
    kind = Activation.SIGMOID

    def __init__(self, x: TensorLike, name: str = "") -> None:
        super().__init__(x, name=name)


@register_operation(
    name="tanh",
    op_type=OpType.ELEMENTWISE,
    op_inputs=OpInputs.UNARY,
    input_shapes=(_SHAPE,),
)
class TanhOp(_ActivationOp):
    prefix = "tanh"
    kind = Activation.TANH

    def __init__(self, x: TensorLike, name: str = "") -> None:
        super().__init__(x, name=name)


@register_operation(
    name="relu",
    op_type=OpType.ELEMENTWISE,
    op_inputs=OpInputs.UNARY,
    input_shapes=(_SHAPE,),
    constraints={"x": "nonzero"},
)
class ReLUOp(_ActivationOp):
    prefix = "relu"
    kind = Activation.RELU

    def __init__(self, x: TensorLike, name: str = "") -> None:
        super().__init__(x, name=name)


@register_operation(
    name="leaky_relu",
    op_type=OpType.ELEMENTWISE,
    op_inputs=OpInputs.UNARY,
    input_shapes=(_SHAPE,),
    params={"alpha": 0.1},
    constraints={"x": "nonzero"},
)
class LeakyReLUOp(_ActivationOp):
    """ReLU with slope `alpha` for negative inputs (`alpha` must be positive)."""

    prefix = "leaky_relu"
    kind = Activation.LEAKY_RELU

    def __init__(self, x: TensorLike, alpha: float = 0.01, name: str = "") -> None:
        super().__init__(x, alpha, name)


@register_operation(
    name="elu",
    op_type=OpType.ELEMENTWISE,
    op_inputs=OpInputs.UNARY,
    input_shapes=(_SHAPE,),
    constraints={"x": "nonzero"},
)
class EluOp(_ActivationOp):
    prefix = "elu"
    kind = Activation.ELU

    def __init__(self, x: TensorLike, alpha: float = 1.0, name: str = "") -> None:
        super().__init__(x, alpha, name)


@register_operation(
    name="softmax",
    op_type=OpType.ELEMENTWISE,
    op_inputs=OpInputs.UNARY,
    input_shapes=(Shape(5, 1, 1, 3),),
)
class SoftmaxOp(_ActivationOp):
    """Softmax over all values of each batch entry."""

    prefix = "softmax"
    kind = Activation.SOFTMAX

    def __init__(self, x: TensorLike, name: str = "") -> None:
        super().__init__(x, name=name)


__all__ = [
    "EluOp",
    "LeakyReLUOp",
    "ReLUOp",
    "SigmoidOp",
    "SoftmaxOp",
    "TanhOp",
]
