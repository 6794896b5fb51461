"""Free functions building operation nodes.

Each builder creates the matching `Operation` in the graph of its inputs
and returns it, so expressions read like array code:

    hidden = relu(add(matmul(x, w), b))
"""

from __future__ import annotations

from ..backend.compute import Activation, BatchNormMode, PoolingMode
from ..shape import Axis, DataFormat, Shape
from .node import TensorLike
from .operation import Operation
from .ops import (
    AddOp,
    BatchNormOp,
    ConcatenateOp,
    Conv2dBiasActivationOp,
    Conv2dOp,
    DivideOp,
    DropoutOp,
    EluOp,
    ExpOp,
    LeakyReLUOp,
    LogOp,
    MatMulOp,
    MeanOp,
    MultiplyOp,
    NegativeOp,
    Pool2dOp,
    PowOp,
    ReLUOp,
    ReshapeOp,
    SigmoidOp,
    SoftmaxOp,
    SqrtOp,
    SubtractOp,
    SumOp,
    TanhOp,
    TransposeOp,
    UpSample2dOp,
)


def add(x: TensorLike, y: TensorLike | float, name: str = "") -> Operation:
    return AddOp(x, y, name)


def subtract(x: TensorLike, y: TensorLike, name: str = "") -> Operation:
    return SubtractOp(x, y, name)


def multiply(x: TensorLike, y: TensorLike | float, name: str = "") -> Operation:
    return MultiplyOp(x, y, name)


def divide(x: TensorLike, y: TensorLike, name: str = "") -> Operation:
    return DivideOp(x, y, name)


def negative(x: TensorLike, name: str = "") -> Operation:
    return NegativeOp(x, name)


def log(x: TensorLike, name: str = "") -> Operation:
    return LogOp(x, name)


def exp(x: TensorLike, name: str = "") -> Operation:
    return ExpOp(x, name)


def pow(x: TensorLike, power: float, name: str = "") -> Operation:  # noqa: A001
    return PowOp(x, power, name)


def sqrt(x: TensorLike, name: str = "") -> Operation:
    return SqrtOp(x, name)


def matmul(x: TensorLike, y: TensorLike, name: str = "") -> Operation:
    return MatMulOp(x, y, name)


def transpose(x: TensorLike, name: str = "") -> Operation:
    return TransposeOp(x, name)


def sum(x: TensorLike, axis: Axis = Axis.GLOBAL, name: str = "") -> Operation:  # noqa: A001
    return SumOp(x, axis, name)


def mean(x: TensorLike, axis: Axis = Axis.GLOBAL, name: str = "") -> Operation:
    return MeanOp(x, axis, name)


def sigmoid(x: TensorLike, name: str = "") -> Operation:
    return SigmoidOp(x, name)


def tanh(x: TensorLike, name: str = "") -> Operation:
    return TanhOp(x, name)


def relu(x: TensorLike, name: str = "") -> Operation:
    return ReLUOp(x, name)


def leaky_relu(x: TensorLike, alpha: float = 0.01, name: str = "") -> Operation:
    return LeakyReLUOp(x, alpha, name)


def elu(x: TensorLike, alpha: float = 1.0, name: str = "") -> Operation:
    return EluOp(x, alpha, name)


def softmax(x: TensorLike, name: str = "") -> Operation:
    return SoftmaxOp(x, name)


def conv2d(  # noqa: PLR0913
    x: TensorLike,
    kernels: TensorLike,
    stride: int = 1,
    padding: int | tuple[int, int] = 0,
    data_format: DataFormat = DataFormat.NCHW,
    name: str = "",
) -> Operation:
    return Conv2dOp(x, kernels, stride, padding, data_format, name)


def conv2d_bias_activation(  # noqa: PLR0913
    x: TensorLike,
    kernels: TensorLike,
    bias: TensorLike,
    stride: int = 1,
    padding: int | tuple[int, int] = 0,
    data_format: DataFormat = DataFormat.NCHW,
    activation: Activation = Activation.LINEAR,
    alpha: float = 0.0,
    name: str = "",
) -> Operation:
    """Convolution, bias and activation as a single fused node."""
    return Conv2dBiasActivationOp(
        x, kernels, bias, stride, padding, data_format, activation, alpha, name
    )


def max_pool2d(  # noqa: PLR0913
    x: TensorLike,
    filter_size: int = 2,
    stride: int = 2,
    padding: int | tuple[int, int] = 0,
    data_format: DataFormat = DataFormat.NCHW,
    name: str = "",
) -> Operation:
    return Pool2dOp(x, PoolingMode.MAX, filter_size, stride, padding, data_format, name)


def avg_pool2d(  # noqa: PLR0913
    x: TensorLike,
    filter_size: int = 2,
    stride: int = 2,
    padding: int | tuple[int, int] = 0,
    data_format: DataFormat = DataFormat.NCHW,
    name: str = "",
) -> Operation:
    return Pool2dOp(x, PoolingMode.AVG, filter_size, stride, padding, data_format, name)


def upsample2d(x: TensorLike, scale_factor: int = 2, name: str = "") -> Operation:
    return UpSample2dOp(x, scale_factor, name)


def dropout(x: TensorLike, prob: float = 0.5, name: str = "") -> Operation:
    return DropoutOp(x, prob, name)


def batch_norm(  # noqa: PLR0913
    x: TensorLike,
    gamma: TensorLike,
    beta: TensorLike,
    mode: BatchNormMode = BatchNormMode.SPATIAL,
    momentum: float = 0.1,
    epsilon: float = 1e-5,
    name: str = "",
) -> Operation:
    return BatchNormOp(x, gamma, beta, mode, momentum, epsilon, name)


def concatenate(*inputs: TensorLike, axis: Axis = Axis.DEPTH, name: str = "") -> Operation:
    return ConcatenateOp(*inputs, axis=axis, name=name)


def reshape(x: TensorLike, shape: Shape, name: str = "") -> Operation:
    return ReshapeOp(x, shape, name)


__all__ = [
    "add",
    "avg_pool2d",
    "batch_norm",
    "concatenate",
    "conv2d",
    "conv2d_bias_activation",
    "divide",
    "dropout",
    "elu",
    "exp",
    "leaky_relu",
    "log",
    "matmul",
    "max_pool2d",
    "mean",
    "multiply",
    "negative",
    "pow",
    "relu",
    "reshape",
    "sigmoid",
    "softmax",
    "sqrt",
    "subtract",
    "sum",
    "tanh",
    "transpose",
    "upsample2d",
]
