"""2D convolution, pooling and upsampling operations."""

from __future__ import annotations

import logging

from ...backend.compute import Activation, PoolingMode
from ...errors import check
from ...shape import DataFormat, Shape, conv_output_shape, image_dims, pooling_output_shape
from ...tensor import Tensor
from ..node import TensorLike
from ..operation import OpInputs, OpType, Operation, register_operation

logger = logging.getLogger(__name__)


def _paddings(padding: int | tuple[int, int]) -> tuple[int, int]:
    if isinstance(padding, tuple):
        return padding
    return padding, padding


def _conv_shape(  # noqa: PLR0913
    x: TensorLike,
    kernels: TensorLike,
    stride: int,
    padding_x: int,
    padding_y: int,
    data_format: DataFormat,
) -> Shape:
    """Output shape of convolving `x` with `kernels` of shape `(kw, kh, c, k)`.

    Raises:
        InvariantViolation: If channels differ or the kernel does not fit.
    """
    width, height, channels = image_dims(x.shape, data_format)
    k = kernels.shape
    check(stride >= 1, f"Stride must be positive, got {stride}", x.name)
    check(
        k.depth == channels,
        f"Kernels of shape {k} do not match the {channels} input channels of {x.shape}",
        kernels.name,
    )
    check(
        width + 2 * padding_x >= k.width and height + 2 * padding_y >= k.height,
        f"Kernels of shape {k} do not fit input {x.shape}",
        kernels.name,
    )
    return conv_output_shape(
        x.shape, k.batch, k.width, k.height, stride, padding_x, padding_y, data_format
    )


def bias_shape(kernels_num: int, data_format: DataFormat = DataFormat.NCHW) -> Shape:
    """Shape of a per-output-channel bias of a convolution."""
    if data_format is DataFormat.NCHW:
        return Shape(1, 1, kernels_num, 1)
    return Shape(kernels_num, 1, 1, 1)


@register_operation(
    name="conv2d",
    op_type=OpType.CONVOLUTION,
    op_inputs=OpInputs.BINARY,
    input_shapes=(Shape(5, 5, 2, 2), Shape(3, 3, 2, 3)),
    params={"stride": 1, "padding": 1},
)
@register_operation(
    name="conv2d_strided",
    op_type=OpType.CONVOLUTION,
    op_inputs=OpInputs.BINARY,
    input_shapes=(Shape(6, 5, 2, 2), Shape(2, 3, 2, 2)),
    params={"stride": 2, "padding": (1, 0)},
)
@register_operation(
    name="conv2d_nhwc",
    op_type=OpType.CONVOLUTION,
    op_inputs=OpInputs.BINARY,
    input_shapes=(Shape(2, 4, 5, 2), Shape(3, 2, 2, 3)),
    params={"stride": 1, "padding": 0, "data_format": DataFormat.NHWC},
)
class Conv2dOp(Operation):
    """2D cross-correlation of `x` with `kernels`.

    Args:
        x (TensorLike): Input images.
        kernels (TensorLike): Kernels of shape
            `(kernel_width, kernel_height, input_channels, kernels_num)`.
        stride (int): Stride in both spatial directions. Defaults to 1.
        padding (int | tuple[int, int]): Zero padding, either one value or
            `(padding_x, padding_y)`. Defaults to 0.
        data_format (DataFormat): Layout of input and output.
            Defaults to NCHW.
        name (str): Unique name. Defaults to "", meaning a generated name.
    """

    prefix = "conv2d"

    def __init__(  # noqa: PLR0913
        self,
        x: TensorLike,
        kernels: TensorLike,
        stride: int = 1,
        padding: int | tuple[int, int] = 0,
        data_format: DataFormat = DataFormat.NCHW,
        name: str = "",
        *,
        extra_inputs: tuple[TensorLike, ...] = (),
    ) -> None:
        self.stride = stride
        self.padding_x, self.padding_y = _paddings(padding)
        self.data_format = data_format
        shape = _conv_shape(x, kernels, stride, self.padding_x, self.padding_y, data_format)
        super().__init__((x, kernels, *extra_inputs), shape, name)

    def _compute(self) -> None:
        x, kernels = self.inputs[:2]
        self._resize_output_batch(x.shape.batch)
        self.op.conv2d(
            x.output,
            kernels.output,
            self.stride,
            self.padding_x,
            self.padding_y,
            self.data_format,
            self._output,
        )

    def _compute_gradient(self, grad: Tensor) -> None:
        x, kernels = self.inputs[:2]
        kernels_grad = self._input_grad(1)
        if kernels_grad is not None:
            self.op.conv2d_kernels_gradient(
                x.output,
                grad,
                self.stride,
                self.padding_x,
                self.padding_y,
                self.data_format,
                kernels_grad,
            )
        x_grad = self._input_grad(0)
        if x_grad is not None:
            self.op.conv2d_input_gradient(
                grad,
                kernels.output,
                self.stride,
                self.padding_x,
                self.padding_y,
                self.data_format,
                x_grad,
            )


@register_operation(
    name="conv2d_bias_sigmoid",
    op_type=OpType.CONVOLUTION,
    op_inputs=OpInputs.TERNARY,
    input_shapes=(Shape(4, 4, 2, 2), Shape(3, 3, 2, 3), bias_shape(3)),
    params={"padding": 1, "activation": Activation.SIGMOID},
)
@register_operation(
    name="conv2d_bias_linear_nhwc",
    op_type=OpType.CONVOLUTION,
    op_inputs=OpInputs.TERNARY,
    input_shapes=(Shape(2, 4, 4, 2), Shape(2, 2, 2, 3), bias_shape(3, DataFormat.NHWC)),
    params={"stride": 2, "data_format": DataFormat.NHWC},
)
class Conv2dBiasActivationOp(Conv2dOp):
    """Convolution, per-channel bias and activation fused into one node.

    Args:
        x (TensorLike): Input images.
        kernels (TensorLike): Kernels of shape
            `(kernel_width, kernel_height, input_channels, kernels_num)`.
        bias (TensorLike): Bias of shape `bias_shape(kernels_num, data_format)`.
        stride (int): Stride in both spatial directions. Defaults to 1.
        padding (int | tuple[int, int]): Zero padding. Defaults to 0.
        data_format (DataFormat): Layout of input and output.
            Defaults to NCHW.
        activation (Activation): Applied to the biased convolution.
            Defaults to `Activation.LINEAR`.
        alpha (float): Parameter of leaky ReLU and ELU activations.
            Defaults to 0.
        name (str): Unique name. Defaults to "", meaning a generated name.
    """

    prefix = "conv2d_bias_activation"

    def __init__(  # noqa: PLR0913
        self,
        x: TensorLike,
        kernels: TensorLike,
        bias: TensorLike,
        stride: int = 1,
        padding: int | tuple[int, int] = 0,
        data_format: DataFormat = DataFormat.NCHW,
        activation: Activation = Activation.LINEAR,
        alpha: float = 0.0,
        name: str = "",
    ) -> None:
        expected = bias_shape(kernels.shape.batch, data_format)
        check(
            bias.shape == expected,
            f"Bias of shape {bias.shape} does not match expected shape {expected}",
            bias.name,
        )
        self.activation = activation
        self.alpha = float(alpha)
        super().__init__(x, kernels, stride, padding, data_format, name, extra_inputs=(bias,))

    def _compute(self) -> None:
        super()._compute()
        bias = self.inputs[2].output
        self.op.add(1.0, self._output, 1.0, bias, self._output)
        self.op.activation(self.activation, self._output, self.alpha, self._output)

    def _compute_gradient(self, grad: Tensor) -> None:
        pre_activation_grad = self._scratch("pre_activation_grad", grad.shape)
        self.op.activation_gradient(
            self.activation, self._output, self.alpha, grad, pre_activation_grad
        )
        bias_grad = self._input_grad(2)
        if bias_grad is not None:
            self.op.conv2d_bias_gradient(pre_activation_grad, self.data_format, bias_grad)
        super()._compute_gradient(pre_activation_grad)


@register_operation(
    name="max_pool2d",
    op_type=OpType.CONVOLUTION,
    op_inputs=OpInputs.UNARY,
    input_shapes=(Shape(4, 4, 2, 2),),
    constraints={"x": "distinct"},
)
@register_operation(
    name="max_pool2d_overlapping",
    op_type=OpType.CONVOLUTION,
    op_inputs=OpInputs.UNARY,
    input_shapes=(Shape(5, 5, 2, 2),),
    params={"filter_size": 3, "stride": 2, "padding": 1},
    constraints={"x": "distinct"},
)
@register_operation(
    name="max_pool2d_asymmetric_padding",
    op_type=OpType.CONVOLUTION,
    op_inputs=OpInputs.UNARY,
    input_shapes=(Shape(4, 5, 2, 2),),
    params={"padding": (0, 1)},
    constraints={"x": "distinct"},
)
@register_operation(
    name="avg_pool2d",
    op_type=OpType.CONVOLUTION,
    op_inputs=OpInputs.UNARY,
    input_shapes=(Shape(5, 5, 2, 2),),
    params={"mode": PoolingMode.AVG, "filter_size": 3, "stride": 2, "padding": 1},
)
@register_operation(
    name="avg_pool2d_asymmetric_padding",
    op_type=OpType.CONVOLUTION,
    op_inputs=OpInputs.UNARY,
    input_shapes=(Shape(5, 4, 2, 2),),
    params={"mode": PoolingMode.AVG, "filter_size": 3, "stride": 1, "padding": (1, 0)},
)
@register_operation(
    name="avg_pool2d_nhwc",
    op_type=OpType.CONVOLUTION,
    op_inputs=OpInputs.UNARY,
    input_shapes=(Shape(3, 4, 4, 2),),
    params={"mode": PoolingMode.AVG, "data_format": DataFormat.NHWC},
)
class Pool2dOp(Operation):
    """Max or average pooling with a square window.

    Max pooling passes the gradient to every input equal to the window
    maximum. Average pooling counts padded positions in the divisor.

    Args:
        x (TensorLike): Input images.
        mode (PoolingMode): Max or average pooling. Defaults to MAX.
        filter_size (int): Side length of the window. Defaults to 2.
        stride (int): Stride in both spatial directions. Defaults to 2.
        padding (int | tuple[int, int]): Padding, either one value or
            `(padding_x, padding_y)`. Defaults to 0.
        data_format (DataFormat): Layout of input and output.
            Defaults to NCHW.
        name (str): Unique name. Defaults to "", meaning a generated name.
    """

    prefix = "pool2d"

    def __init__(  # noqa: PLR0913
        self,
        x: TensorLike,
        mode: PoolingMode = PoolingMode.MAX,
        filter_size: int = 2,
        stride: int = 2,
        padding: int | tuple[int, int] = 0,
        data_format: DataFormat = DataFormat.NCHW,
        name: str = "",
    ) -> None:
        padding_x, padding_y = _paddings(padding)
        width, height, _ = image_dims(x.shape, data_format)
        check(filter_size >= 1 and stride >= 1, "Filter size and stride must be positive", x.name)
        check(
            max(padding_x, padding_y) < filter_size,
            f"Padding {padding} must be smaller than the filter size {filter_size}",
            x.name,
        )
        check(
            width + 2 * padding_x >= filter_size and height + 2 * padding_y >= filter_size,
            f"Pooling window {filter_size} does not fit input {x.shape}",
            x.name,
        )
        self.mode = mode
        self.filter_size = filter_size
        self.stride = stride
        self.padding_x, self.padding_y = padding_x, padding_y
        self.data_format = data_format
        shape = pooling_output_shape(
            x.shape, filter_size, stride, padding_x, padding_y, data_format
        )
        super().__init__((x,), shape, name)

    def _compute(self) -> None:
        x = self.inputs[0].output
        self._resize_output_batch(x.batch)
        self.op.pool2d(
            x,
            self.mode,
            self.filter_size,
            self.stride,
            self.padding_x,
            self.padding_y,
            self.data_format,
            self._output,
        )

    def _compute_gradient(self, grad: Tensor) -> None:
        x_grad = self._input_grad(0)
        if x_grad is None:
            return
        self.op.pool2d_gradient(
            self._output,
            self.inputs[0].output,
            grad,
            self.mode,
            self.filter_size,
            self.stride,
            self.padding_x,
            self.padding_y,
            self.data_format,
            x_grad,
        )


@register_operation(
    name="upsample2d",
    op_type=OpType.CONVOLUTION,
    op_inputs=OpInputs.UNARY,
    input_shapes=(Shape(3, 2, 2, 2),),
)
@register_operation(
    name="upsample2d_by_3",
    op_type=OpType.CONVOLUTION,
    op_inputs=OpInputs.UNARY,
    input_shapes=(Shape(2, 2, 1, 3),),
    params={"scale_factor": 3},
)
class UpSample2dOp(Operation):
    """Nearest neighbour upsampling of NCHW images.

    Every value is repeated `scale_factor` times along width and height; the
    gradient of an input value is the sum over its block of output gradients.
    """

    prefix = "upsample2d"

    def __init__(self, x: TensorLike, scale_factor: int = 2, name: str = "") -> None:
        check(scale_factor >= 1, f"Scale factor must be positive, got {scale_factor}", x.name)
        self.scale_factor = scale_factor
        s = x.shape
        shape = Shape(s.width * scale_factor, s.height * scale_factor, s.depth, s.batch)
        super().__init__((x,), shape, name)

    def _compute(self) -> None:
        x = self.inputs[0].output
        self._resize_output_batch(x.batch)
        self.op.upsample2d(x, self.scale_factor, self._output)

    def _compute_gradient(self, grad: Tensor) -> None:
        x_grad = self._input_grad(0)
        if x_grad is not None:
            self.op.upsample2d_gradient(grad, self.scale_factor, x_grad)


__all__ = [
    "Conv2dBiasActivationOp",
    "Conv2dOp",
    "Pool2dOp",
    "UpSample2dOp",
    "bias_shape",
]
