"""Dropout and batch normalization.

Both behave differently in training and inference passes; the mode of the
last forward pass decides how gradients are computed.
"""

from __future__ import annotations

import logging

from ...backend.compute import BatchNormMode
from ...errors import check
from ...shape import Shape
from ...tensor import Tensor
from ..node import TensorLike
from ..operation import OpInputs, OpType, Operation, register_operation

logger = logging.getLogger(__name__)


@register_operation(
    name="dropout_inference",
    op_type=OpType.REGULARIZATION,
    op_inputs=OpInputs.UNARY,
    input_shapes=(Shape(3, 2, 2, 2),),
    params={"prob": 0.3},
)
class DropoutOp(Operation):
    """Inverted dropout.

    In training passes every value is zeroed with probability `prob` and the
    remaining ones are scaled by `1 / (1 - prob)`. The sampled mask is kept
    for the backward pass. Inference passes copy the input.
    """

    prefix = "dropout"

    def __init__(self, x: TensorLike, prob: float = 0.5, name: str = "") -> None:
        check(0.0 <= prob < 1.0, f"Dropout probability must be in [0, 1), got {prob}", x.name)
        self.prob = prob
        super().__init__((x,), x.shape, name)
        self.mask = Tensor(x.shape, name=f"{self.name}_mask", op_mode=self._output.op_mode)
        self._mask_applied = False

    def _compute(self) -> None:
        x = self.inputs[0].output
        self._resize_output_batch(x.batch)
        if self.training:
            self.mask.resize(x.shape)
            self.op.dropout(x, self.prob, self.mask, self._output)
            self._mask_applied = True
        else:
            self.op.copy(x, self._output)
            self._mask_applied = False

    def _compute_gradient(self, grad: Tensor) -> None:
        x_grad = self._input_grad(0)
        if x_grad is None:
            return
        if self._mask_applied:
            self.op.dropout_gradient(grad, self.mask, x_grad)
        else:
            self.op.copy(grad, x_grad)


def batch_norm_param_shape(x_shape: Shape, mode: BatchNormMode) -> Shape:
    """Shape of scale, shift and statistics for normalizing `x_shape`."""
    if mode is BatchNormMode.PER_ACTIVATION:
        return x_shape.with_batch(1)
    return Shape(1, 1, x_shape.depth, 1)


@register_operation(
    name="batch_norm_spatial",
    op_type=OpType.REGULARIZATION,
    op_inputs=OpInputs.TERNARY,
    input_shapes=(Shape(3, 3, 2, 2), Shape(1, 1, 2, 1), Shape(1, 1, 2, 1)),
    training=True,
)
@register_operation(
    name="batch_norm_per_activation",
    op_type=OpType.REGULARIZATION,
    op_inputs=OpInputs.TERNARY,
    input_shapes=(Shape(3, 2, 1, 8), Shape(3, 2, 1, 1), Shape(3, 2, 1, 1)),
    params={"mode": BatchNormMode.PER_ACTIVATION},
    training=True,
)
@register_operation(
    name="batch_norm_inference",
    op_type=OpType.REGULARIZATION,
    op_inputs=OpInputs.TERNARY,
    input_shapes=(Shape(3, 3, 2, 2), Shape(1, 1, 2, 1), Shape(1, 1, 2, 1)),
)
class BatchNormOp(Operation):
    """Batch normalization with learned scale `gamma` and shift `beta`.

    Training passes normalize with the batch statistics and move the
    running statistics towards them by `momentum`; inference passes use
    the running statistics.

    Args:
        x (TensorLike): Input, in NCHW layout for `SPATIAL` mode.
        gamma (TensorLike): Scale of shape `batch_norm_param_shape(x.shape, mode)`.
        beta (TensorLike): Shift of the same shape as `gamma`.
        mode (BatchNormMode): Statistics mode. Defaults to `SPATIAL`.
        momentum (float): Update rate of the running statistics.
            Defaults to 0.1.
        epsilon (float): Added to the variance. Defaults to 1e-5.
        name (str): Unique name. Defaults to "", meaning a generated name.
    """

    prefix = "batch_norm"

    def __init__(  # noqa: PLR0913
        self,
        x: TensorLike,
        gamma: TensorLike,
        beta: TensorLike,
        mode: BatchNormMode = BatchNormMode.SPATIAL,
        momentum: float = 0.1,
        epsilon: float = 1e-5,
        name: str = "",
    ) -> None:
        param_shape = batch_norm_param_shape(x.shape, mode)
        for param in (gamma, beta):
            check(
                param.shape == param_shape,
                f"Parameter of shape {param.shape} does not match expected shape {param_shape}",
                param.name,
            )
        self.mode = mode
        self.momentum = momentum
        self.epsilon = epsilon
        super().__init__((x, gamma, beta), x.shape, name)

        self.running_mean = self._param_tensor(param_shape, "running_mean").zero()
        self.running_var = self._param_tensor(param_shape, "running_var").one()
        self.save_mean = self._param_tensor(param_shape, "save_mean")
        self.save_inv_std = self._param_tensor(param_shape, "save_inv_std")
        self._used_batch_statistics = False

    def _param_tensor(self, shape: Shape, suffix: str) -> Tensor:
        return Tensor(shape, name=f"{self.name}_{suffix}", op_mode=self._output.op_mode)

    def _compute(self) -> None:
        x, gamma, beta = (node.output for node in self.inputs)
        self._resize_output_batch(x.batch)
        if self.training:
            self.op.batch_norm_train(
                x,
                self.mode,
                gamma,
                beta,
                self.momentum,
                self.epsilon,
                self.running_mean,
                self.running_var,
                self.save_mean,
                self.save_inv_std,
                self._output,
            )
        else:
            self.op.batch_norm(
                x,
                self.mode,
                gamma,
                beta,
                self.epsilon,
                self.running_mean,
                self.running_var,
                self._output,
                self.save_mean,
                self.save_inv_std,
            )
        self._used_batch_statistics = self.training

    def _compute_gradient(self, grad: Tensor) -> None:
        x, gamma, _ = (node.output for node in self.inputs)
        self.op.batch_norm_gradient(
            x,
            self.mode,
            gamma,
            grad,
            self.save_mean,
            self.save_inv_std,
            training=self._used_batch_statistics,
            input_grad=self._input_grad(0),
            gamma_grad=self._input_grad(1),
            beta_grad=self._input_grad(2),
        )


__all__ = [
    "BatchNormOp",
    "DropoutOp",
    "batch_norm_param_shape",
]
