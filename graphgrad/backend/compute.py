"""Compute backends executing the numeric primitives used by operations.

All tensor values are arrays in `(batch, depth, height, width)` layout.
A backend reads its inputs and writes its outputs through `_read` and
`_write`, which decide the memory space the kernel runs in and keep the
residency state of the involved storages consistent. The kernels themselves
are written against the array module `xp` of the backend, so the same code
runs on numpy host buffers and on cupy device buffers.

Output tensors are always sized by the caller.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING, Any

import numpy as np

from ..config import get_config
from ..shape import Axis, DataFormat, array_axes

if TYPE_CHECKING:
    from ..tensor import Tensor

logger = logging.getLogger(__name__)


class PoolingMode(Enum):
    MAX = "max"
    AVG = "avg"


class Activation(Enum):
    """Activation functions available to fused operations."""

    LINEAR = "linear"
    SIGMOID = "sigmoid"
    TANH = "tanh"
    RELU = "relu"
    LEAKY_RELU = "leaky_relu"
    ELU = "elu"
    SOFTMAX = "softmax"


class BatchNormMode(Enum):
    """Which statistics batch normalization computes.

    `PER_ACTIVATION` normalizes every activation over the batch, `SPATIAL`
    normalizes every channel over batch and both spatial dimensions.
    """

    PER_ACTIVATION = "per_activation"
    SPATIAL = "spatial"


def _window(offset: int, out_len: int, stride: int) -> slice:
    """Input positions read by kernel offset `offset` for all outputs."""
    return slice(offset, offset + stride * (out_len - 1) + 1, stride)


def _to_nchw(x: Any, data_format: DataFormat) -> Any:
    # NHWC arrays are (n, image height, image width, channels)
    return x if data_format is DataFormat.NCHW else x.transpose(0, 3, 1, 2)


def _from_nchw(x: Any, data_format: DataFormat) -> Any:
    return x if data_format is DataFormat.NCHW else x.transpose(0, 2, 3, 1)


def _image_hw(array_shape: tuple[int, int, int, int], data_format: DataFormat) -> tuple[int, int]:
    _, d, h, w = array_shape
    return (h, w) if data_format is DataFormat.NCHW else (d, h)


def _pad(xp: Any, x: Any, padding_x: int, padding_y: int, fill: float = 0.0) -> Any:
    if padding_x == 0 and padding_y == 0:
        return x
    return xp.pad(
        x,
        ((0, 0), (0, 0), (padding_y, padding_y), (padding_x, padding_x)),
        constant_values=fill,
    )


def _conv2d(xp: Any, x: Any, kernels: Any, stride: int, padding_x: int, padding_y: int) -> Any:
    """Cross-correlation of NCHW `x` with `(k, c, kh, kw)` kernels."""
    n, _, height, width = x.shape
    kernels_num, _, kernel_h, kernel_w = kernels.shape
    out_h = (height - kernel_h + 2 * padding_y) // stride + 1
    out_w = (width - kernel_w + 2 * padding_x) // stride + 1

    padded = _pad(xp, x, padding_x, padding_y)
    out = xp.zeros((n, kernels_num, out_h, out_w), dtype=x.dtype)
    for i in range(kernel_h):
        for j in range(kernel_w):
            window = padded[:, :, _window(i, out_h, stride), _window(j, out_w, stride)]
            out += xp.einsum("nchw,kc->nkhw", window, kernels[:, :, i, j])
    return out


def _conv2d_input_gradient(  # noqa: PLR0913
    xp: Any,
    grad: Any,
    kernels: Any,
    stride: int,
    padding_x: int,
    padding_y: int,
    input_hw: tuple[int, int],
) -> Any:
    n, _, out_h, out_w = grad.shape
    _, channels, kernel_h, kernel_w = kernels.shape
    height, width = input_hw

    padded = xp.zeros(
        (n, channels, height + 2 * padding_y, width + 2 * padding_x), dtype=grad.dtype
    )
    for i in range(kernel_h):
        for j in range(kernel_w):
            padded[:, :, _window(i, out_h, stride), _window(j, out_w, stride)] += xp.einsum(
                "nkhw,kc->nchw", grad, kernels[:, :, i, j]
            )
    return padded[:, :, padding_y : padding_y + height, padding_x : padding_x + width]


def _conv2d_kernels_gradient(  # noqa: PLR0913
    xp: Any,
    x: Any,
    grad: Any,
    stride: int,
    padding_x: int,
    padding_y: int,
    kernel_hw: tuple[int, int],
) -> Any:
    _, kernels_num, out_h, out_w = grad.shape
    channels = x.shape[1]
    kernel_h, kernel_w = kernel_hw

    padded = _pad(xp, x, padding_x, padding_y)
    kernels_grad = xp.zeros((kernels_num, channels, kernel_h, kernel_w), dtype=grad.dtype)
    for i in range(kernel_h):
        for j in range(kernel_w):
            window = padded[:, :, _window(i, out_h, stride), _window(j, out_w, stride)]
            kernels_grad[:, :, i, j] = xp.einsum("nkhw,nchw->kc", grad, window)
    return kernels_grad


def _pool2d(  # noqa: PLR0913
    xp: Any,
    x: Any,
    mode: PoolingMode,
    filter_size: int,
    stride: int,
    padding_x: int,
    padding_y: int,
) -> Any:
    n, channels, height, width = x.shape
    out_h = (height - filter_size + 2 * padding_y) // stride + 1
    out_w = (width - filter_size + 2 * padding_x) // stride + 1

    if mode is PoolingMode.MAX:
        padded = _pad(xp, x, padding_x, padding_y, fill=-np.inf)
        out = xp.full((n, channels, out_h, out_w), -np.inf, dtype=x.dtype)
        for i in range(filter_size):
            for j in range(filter_size):
                window = padded[:, :, _window(i, out_h, stride), _window(j, out_w, stride)]
                out = xp.maximum(out, window)
        return out

    padded = _pad(xp, x, padding_x, padding_y)
    out = xp.zeros((n, channels, out_h, out_w), dtype=x.dtype)
    for i in range(filter_size):
        for j in range(filter_size):
            out += padded[:, :, _window(i, out_h, stride), _window(j, out_w, stride)]
    return out / (filter_size * filter_size)


def _pool2d_gradient(  # noqa: PLR0913
    xp: Any,
    x: Any,
    y: Any,
    grad: Any,
    mode: PoolingMode,
    filter_size: int,
    stride: int,
    padding_x: int,
    padding_y: int,
) -> Any:
    """Route `grad` back to the pooled inputs.

    Max pooling passes the gradient to every input equal to the window max.
    """
    n, channels, height, width = x.shape
    _, _, out_h, out_w = grad.shape

    fill = -np.inf if mode is PoolingMode.MAX else 0.0
    padded_x = _pad(xp, x, padding_x, padding_y, fill=fill)
    padded_grad = xp.zeros(
        (n, channels, height + 2 * padding_y, width + 2 * padding_x), dtype=grad.dtype
    )
    for i in range(filter_size):
        for j in range(filter_size):
            rows, cols = _window(i, out_h, stride), _window(j, out_w, stride)
            region = (slice(None), slice(None), rows, cols)
            if mode is PoolingMode.MAX:
                padded_grad[region] += (padded_x[region] == y) * grad
            else:
                padded_grad[region] += grad / (filter_size * filter_size)
    return padded_grad[:, :, padding_y : padding_y + height, padding_x : padding_x + width]


def _upsample2d(xp: Any, x: Any, scale_factor: int) -> Any:
    """Nearest neighbour upsampling of the `(height, width)` planes."""
    return xp.repeat(xp.repeat(x, scale_factor, axis=2), scale_factor, axis=3)


def _upsample2d_gradient(grad: Any, scale_factor: int) -> Any:
    """Sum every `scale_factor` x `scale_factor` block of `grad`."""
    n, channels, out_h, out_w = grad.shape
    blocks = grad.reshape(
        n, channels, out_h // scale_factor, scale_factor, out_w // scale_factor, scale_factor
    )
    return blocks.sum(axis=(3, 5))


def _batch_norm_axes(mode: BatchNormMode) -> tuple[int, ...]:
    if mode is BatchNormMode.PER_ACTIVATION:
        return array_axes(Axis.BATCH)
    return array_axes(Axis.WHN)


def _sigmoid(xp: Any, x: Any) -> Any:
    return xp.exp(-xp.logaddexp(0, -x))


def _softmax(xp: Any, x: Any) -> Any:
    axes = array_axes(Axis.WHD)
    shifted = xp.exp(x - x.max(axis=axes, keepdims=True))
    return shifted / shifted.sum(axis=axes, keepdims=True)


class ComputeBackend(ABC):
    """The primitive set every compute backend provides.

    Subclasses choose the memory space by implementing `_read` and `_write`,
    and the array module by setting `xp`. Batch parallel backends override
    `_map_batch` and `_reduce_batch`.
    """

    xp: Any = np

    def __init__(self, seed: int | None = None) -> None:
        self._rng = np.random.default_rng(seed if seed is not None else get_config().seed)

    @abstractmethod
    def _read(self, t: Tensor) -> Any:
        """Current values of `t` in this backend's memory space."""

    @abstractmethod
    def _write(self, t: Tensor) -> Any:
        """Buffer of `t` in this backend's memory space, about to be overwritten."""

    def _map_batch(self, fn: Callable[..., Any], out: Any, *arrays: Any) -> None:
        """Store `fn(*arrays)` in `out`; `fn` must treat batch entries independently."""
        out[...] = fn(*arrays)

    def _reduce_batch(self, fn: Callable[..., Any], *arrays: Any) -> Any:
        """`fn(*arrays)` for an `fn` that sums its result over the batch."""
        return fn(*arrays)

    def seed(self, seed: int | None) -> None:
        """Reseed the generator used for dropout masks."""
        self._rng = np.random.default_rng(seed)

    # -- initialization -----------------------------------------------------

    def zero(self, t: Tensor) -> None:
        self._write(t)[...] = 0

    def one(self, t: Tensor) -> None:
        self._write(t)[...] = 1

    def fill(self, t: Tensor, value: float) -> None:
        self._write(t)[...] = value

    def copy(self, src: Tensor, out: Tensor) -> None:
        """Copy the values of `src` into `out`, broadcasting dimensions of length 1."""
        if src is out:
            return
        values = self._read(src)
        self._write(out)[...] = values

    def reshape(self, src: Tensor, out: Tensor) -> None:
        """Copy the values of `src` into the differently shaped `out` of equal length."""
        values = self._read(src)
        self._write(out)[...] = values.reshape(out.shape.array_shape)

    def concat(self, axis: Axis, inputs: list[Tensor], out: Tensor) -> None:
        """Join `inputs` along the single dimension `axis`."""
        arrays = [self._read(t) for t in inputs]
        self._write(out)[...] = self.xp.concatenate(arrays, axis=array_axes(axis)[0])

    def split(self, axis: Axis, t: Tensor, sizes: list[int], outs: list[Tensor | None]) -> None:
        """Inverse of `concat`: cut `t` along `axis` into pieces of `sizes`.

        Entries of `outs` that are `None` are skipped.
        """
        array_axis = array_axes(axis)[0]
        x = self._read(t)
        start = 0
        for size, out in zip(sizes, outs, strict=True):
            if out is not None:
                index = [slice(None)] * 4
                index[array_axis] = slice(start, start + size)
                self._write(out)[...] = x[tuple(index)]
            start += size

    # -- elementwise --------------------------------------------------------

    def add(self, alpha: float, t1: Tensor, beta: float, t2: Tensor, out: Tensor) -> None:
        """`out = alpha * t1 + beta * t2`, broadcasting dimensions of length 1."""
        a, b = self._read(t1), self._read(t2)
        self._map_batch(lambda a_, b_: alpha * a_ + beta * b_, self._write(out), a, b)

    def add_scalar(self, t: Tensor, value: float, out: Tensor) -> None:
        x = self._read(t)
        self._map_batch(lambda x_: x_ + value, self._write(out), x)

    def sub(self, t1: Tensor, t2: Tensor, out: Tensor) -> None:
        self.add(1.0, t1, -1.0, t2, out)

    def mul_elem(self, t1: Tensor, t2: Tensor, out: Tensor) -> None:
        """Elementwise product, broadcasting dimensions of length 1."""
        a, b = self._read(t1), self._read(t2)
        self._map_batch(lambda a_, b_: a_ * b_, self._write(out), a, b)

    def mul_scalar(self, t: Tensor, factor: float, out: Tensor) -> None:
        x = self._read(t)
        self._map_batch(lambda x_: x_ * factor, self._write(out), x)

    def div(self, t1: Tensor, t2: Tensor, out: Tensor) -> None:
        """Elementwise quotient, broadcasting dimensions of length 1."""
        a, b = self._read(t1), self._read(t2)
        self._map_batch(lambda a_, b_: a_ / b_, self._write(out), a, b)

    def negate(self, t: Tensor, out: Tensor) -> None:
        x = self._read(t)
        self._map_batch(lambda x_: -x_, self._write(out), x)

    def pow(self, t: Tensor, power: float, out: Tensor) -> None:
        xp = self.xp
        x = self._read(t)
        self._map_batch(lambda x_: xp.power(x_, power), self._write(out), x)

    def pow_gradient(self, t: Tensor, power: float, grad: Tensor, out: Tensor) -> None:
        xp = self.xp
        x, g = self._read(t), self._read(grad)
        self._map_batch(lambda x_, g_: g_ * power * xp.power(x_, power - 1), self._write(out), x, g)

    def log(self, t: Tensor, out: Tensor) -> None:
        x = self._read(t)
        self._map_batch(self.xp.log, self._write(out), x)

    def exp(self, t: Tensor, out: Tensor) -> None:
        x = self._read(t)
        self._map_batch(self.xp.exp, self._write(out), x)

    def sqrt(self, t: Tensor, out: Tensor) -> None:
        x = self._read(t)
        self._map_batch(self.xp.sqrt, self._write(out), x)

    def map(self, fn: Callable[[Any], Any], t: Tensor, out: Tensor) -> None:
        """Apply the array function `fn` to every value of `t`."""
        x = self._read(t)
        self._map_batch(fn, self._write(out), x)

    def map2(self, fn: Callable[[Any, Any], Any], t1: Tensor, t2: Tensor, out: Tensor) -> None:
        """Apply the binary array function `fn` to `t1` and `t2`."""
        a, b = self._read(t1), self._read(t2)
        self._map_batch(fn, self._write(out), a, b)

    # -- linear algebra -----------------------------------------------------

    def matmul(  # noqa: PLR0913
        self, t1: Tensor, transpose_t1: bool, t2: Tensor, transpose_t2: bool, out: Tensor
    ) -> None:
        """Matrix product over the `(height, width)` planes.

        Depth slices are multiplied pairwise; a batch of 1 broadcasts.
        """
        xp = self.xp
        a, b = self._read(t1), self._read(t2)
        if transpose_t1:
            a = xp.swapaxes(a, -2, -1)
        if transpose_t2:
            b = xp.swapaxes(b, -2, -1)
        self._map_batch(xp.matmul, self._write(out), a, b)

    def transpose(self, t: Tensor, out: Tensor) -> None:
        """Swap width and height."""
        x = self._read(t)
        self._write(out)[...] = self.xp.swapaxes(x, -2, -1)

    def sum(self, t: Tensor, axis: Axis, out: Tensor) -> None:
        """Sum along `axis`, keeping reduced dimensions with length 1."""
        x = self._read(t)
        self._write(out)[...] = x.sum(axis=array_axes(axis), keepdims=True)

    def mean(self, t: Tensor, axis: Axis, out: Tensor) -> None:
        x = self._read(t)
        self._write(out)[...] = x.mean(axis=array_axes(axis), keepdims=True)

    # -- activations --------------------------------------------------------

    def sigmoid(self, t: Tensor, out: Tensor) -> None:
        xp = self.xp
        x = self._read(t)
        self._map_batch(lambda x_: _sigmoid(xp, x_), self._write(out), x)

    def sigmoid_gradient(self, output: Tensor, grad: Tensor, out: Tensor) -> None:
        y, g = self._read(output), self._read(grad)
        self._map_batch(lambda y_, g_: g_ * y_ * (1 - y_), self._write(out), y, g)

    def tanh(self, t: Tensor, out: Tensor) -> None:
        x = self._read(t)
        self._map_batch(self.xp.tanh, self._write(out), x)

    def tanh_gradient(self, output: Tensor, grad: Tensor, out: Tensor) -> None:
        y, g = self._read(output), self._read(grad)
        self._map_batch(lambda y_, g_: g_ * (1 - y_ * y_), self._write(out), y, g)

    def relu(self, t: Tensor, out: Tensor) -> None:
        xp = self.xp
        x = self._read(t)
        self._map_batch(lambda x_: xp.maximum(x_, 0), self._write(out), x)

    def relu_gradient(self, output: Tensor, grad: Tensor, out: Tensor) -> None:
        y, g = self._read(output), self._read(grad)
        self._map_batch(lambda y_, g_: g_ * (y_ > 0), self._write(out), y, g)

    def leaky_relu(self, t: Tensor, alpha: float, out: Tensor) -> None:
        xp = self.xp
        x = self._read(t)
        self._map_batch(lambda x_: xp.where(x_ > 0, x_, alpha * x_), self._write(out), x)

    def leaky_relu_gradient(self, output: Tensor, alpha: float, grad: Tensor, out: Tensor) -> None:
        xp = self.xp
        y, g = self._read(output), self._read(grad)
        self._map_batch(lambda y_, g_: xp.where(y_ > 0, g_, alpha * g_), self._write(out), y, g)

    def elu(self, t: Tensor, alpha: float, out: Tensor) -> None:
        xp = self.xp
        x = self._read(t)
        self._map_batch(
            lambda x_: xp.where(x_ > 0, x_, alpha * (xp.exp(xp.minimum(x_, 0)) - 1)),
            self._write(out),
            x,
        )

    def elu_gradient(self, output: Tensor, alpha: float, grad: Tensor, out: Tensor) -> None:
        xp = self.xp
        y, g = self._read(output), self._read(grad)
        self._map_batch(
            lambda y_, g_: xp.where(y_ > 0, g_, g_ * (y_ + alpha)), self._write(out), y, g
        )

    def softmax(self, t: Tensor, out: Tensor) -> None:
        """Softmax over all values of every batch entry."""
        xp = self.xp
        x = self._read(t)
        self._map_batch(lambda x_: _softmax(xp, x_), self._write(out), x)

    def softmax_gradient(self, output: Tensor, grad: Tensor, out: Tensor) -> None:
        axes = array_axes(Axis.WHD)
        y, g = self._read(output), self._read(grad)
        self._map_batch(
            lambda y_, g_: y_ * (g_ - (g_ * y_).sum(axis=axes, keepdims=True)),
            self._write(out),
            y,
            g,
        )

    def activation(self, kind: Activation, t: Tensor, alpha: float, out: Tensor) -> None:
        """Apply the activation `kind`; `alpha` is used by leaky ReLU and ELU."""
        if kind is Activation.LINEAR:
            self.copy(t, out)
        elif kind is Activation.SIGMOID:
            self.sigmoid(t, out)
        elif kind is Activation.TANH:
            self.tanh(t, out)
        elif kind is Activation.RELU:
            self.relu(t, out)
        elif kind is Activation.LEAKY_RELU:
            self.leaky_relu(t, alpha, out)
        elif kind is Activation.ELU:
            self.elu(t, alpha, out)
        else:
            self.softmax(t, out)

    def activation_gradient(  # noqa: PLR0913
        self, kind: Activation, output: Tensor, alpha: float, grad: Tensor, out: Tensor
    ) -> None:
        """Gradient of the activation `kind`, computed from its `output`."""
        if kind is Activation.LINEAR:
            self.copy(grad, out)
        elif kind is Activation.SIGMOID:
            self.sigmoid_gradient(output, grad, out)
        elif kind is Activation.TANH:
            self.tanh_gradient(output, grad, out)
        elif kind is Activation.RELU:
            self.relu_gradient(output, grad, out)
        elif kind is Activation.LEAKY_RELU:
            self.leaky_relu_gradient(output, alpha, grad, out)
        elif kind is Activation.ELU:
            self.elu_gradient(output, alpha, grad, out)
        else:
            self.softmax_gradient(output, grad, out)

    # -- convolution and pooling -------------------------------------------

    def conv2d(  # noqa: PLR0913
        self,
        t: Tensor,
        kernels: Tensor,
        stride: int,
        padding_x: int,
        padding_y: int,
        data_format: DataFormat,
        out: Tensor,
    ) -> None:
        """2D cross-correlation.

        Args:
            t (Tensor): Input images.
            kernels (Tensor): Kernels of shape
                `(kernel_width, kernel_height, input_channels, kernels_num)`.
            stride (int): Stride in both spatial directions.
            padding_x (int): Symmetric zero padding along width.
            padding_y (int): Symmetric zero padding along height.
            data_format (DataFormat): Layout of input and output.
            out (Tensor): Output images.
        """
        xp = self.xp
        x, k = self._read(t), self._read(kernels)

        def fn(x_: Any) -> Any:
            y = _conv2d(xp, _to_nchw(x_, data_format), k, stride, padding_x, padding_y)
            return _from_nchw(y, data_format)

        self._map_batch(fn, self._write(out), x)

    def conv2d_input_gradient(  # noqa: PLR0913
        self,
        grad: Tensor,
        kernels: Tensor,
        stride: int,
        padding_x: int,
        padding_y: int,
        data_format: DataFormat,
        input_grad: Tensor,
    ) -> None:
        xp = self.xp
        g, k = self._read(grad), self._read(kernels)
        input_hw = _image_hw(input_grad.shape.array_shape, data_format)

        def fn(g_: Any) -> Any:
            dx = _conv2d_input_gradient(
                xp, _to_nchw(g_, data_format), k, stride, padding_x, padding_y, input_hw
            )
            return _from_nchw(dx, data_format)

        self._map_batch(fn, self._write(input_grad), g)

    def conv2d_kernels_gradient(  # noqa: PLR0913
        self,
        t: Tensor,
        grad: Tensor,
        stride: int,
        padding_x: int,
        padding_y: int,
        data_format: DataFormat,
        kernels_grad: Tensor,
    ) -> None:
        xp = self.xp
        x, g = self._read(t), self._read(grad)
        kernel_hw = kernels_grad.shape.array_shape[2:]

        def fn(x_: Any, g_: Any) -> Any:
            return _conv2d_kernels_gradient(
                xp,
                _to_nchw(x_, data_format),
                _to_nchw(g_, data_format),
                stride,
                padding_x,
                padding_y,
                kernel_hw,
            )

        kernels_values = self._reduce_batch(fn, x, g)
        self._write(kernels_grad)[...] = kernels_values

    def conv2d_bias_gradient(
        self, grad: Tensor, data_format: DataFormat, bias_grad: Tensor
    ) -> None:
        """Sum the output gradient over everything but the channels."""
        g = _to_nchw(self._read(grad), data_format)
        summed = g.sum(axis=(0, 2, 3), keepdims=True)
        self._write(bias_grad)[...] = _from_nchw(summed, data_format)

    def pool2d(  # noqa: PLR0913
        self,
        t: Tensor,
        mode: PoolingMode,
        filter_size: int,
        stride: int,
        padding_x: int,
        padding_y: int,
        data_format: DataFormat,
        out: Tensor,
    ) -> None:
        """2D pooling with a square `filter_size` window.

        Max pooling pads with negative infinity, average pooling with zeros
        that count in the divisor.
        """
        xp = self.xp
        x = self._read(t)

        def fn(x_: Any) -> Any:
            y = _pool2d(
                xp, _to_nchw(x_, data_format), mode, filter_size, stride, padding_x, padding_y
            )
            return _from_nchw(y, data_format)

        self._map_batch(fn, self._write(out), x)

    def pool2d_gradient(  # noqa: PLR0913
        self,
        output: Tensor,
        t: Tensor,
        grad: Tensor,
        mode: PoolingMode,
        filter_size: int,
        stride: int,
        padding_x: int,
        padding_y: int,
        data_format: DataFormat,
        input_grad: Tensor,
    ) -> None:
        xp = self.xp
        y, x, g = self._read(output), self._read(t), self._read(grad)

        def fn(y_: Any, x_: Any, g_: Any) -> Any:
            dx = _pool2d_gradient(
                xp,
                _to_nchw(x_, data_format),
                _to_nchw(y_, data_format),
                _to_nchw(g_, data_format),
                mode,
                filter_size,
                stride,
                padding_x,
                padding_y,
            )
            return _from_nchw(dx, data_format)

        self._map_batch(fn, self._write(input_grad), y, x, g)

    def upsample2d(self, t: Tensor, scale_factor: int, out: Tensor) -> None:
        """Repeat every value `scale_factor` times along width and height."""
        xp = self.xp
        x = self._read(t)
        self._map_batch(lambda x_: _upsample2d(xp, x_, scale_factor), self._write(out), x)

    def upsample2d_gradient(self, grad: Tensor, scale_factor: int, input_grad: Tensor) -> None:
        g = self._read(grad)
        self._map_batch(
            lambda g_: _upsample2d_gradient(g_, scale_factor), self._write(input_grad), g
        )

    # -- normalization and regularization ----------------------------------

    def batch_norm(  # noqa: PLR0913
        self,
        t: Tensor,
        mode: BatchNormMode,
        gamma: Tensor,
        beta: Tensor,
        epsilon: float,
        running_mean: Tensor,
        running_var: Tensor,
        out: Tensor,
        save_mean: Tensor | None = None,
        save_inv_std: Tensor | None = None,
    ) -> None:
        """Normalize with the running statistics (inference).

        When given, `save_mean` and `save_inv_std` receive the statistics
        used, for `batch_norm_gradient`.
        """
        xp = self.xp
        x, g, b = self._read(t), self._read(gamma), self._read(beta)
        mean, var = self._read(running_mean), self._read(running_var)
        inv_std = 1 / xp.sqrt(var + epsilon)
        self._write(out)[...] = g * (x - mean) * inv_std + b
        if save_mean is not None:
            self._write(save_mean)[...] = mean
        if save_inv_std is not None:
            self._write(save_inv_std)[...] = inv_std

    def batch_norm_train(  # noqa: PLR0913
        self,
        t: Tensor,
        mode: BatchNormMode,
        gamma: Tensor,
        beta: Tensor,
        momentum: float,
        epsilon: float,
        running_mean: Tensor,
        running_var: Tensor,
        save_mean: Tensor,
        save_inv_std: Tensor,
        out: Tensor,
    ) -> None:
        """Normalize with the batch statistics and update the running ones.

        Running statistics move towards the batch statistics by `momentum`;
        the running variance uses the unbiased batch variance.
        """
        xp = self.xp
        axes = _batch_norm_axes(mode)
        x, g, b = self._read(t), self._read(gamma), self._read(beta)

        mean = x.mean(axis=axes, keepdims=True)
        var = x.var(axis=axes, keepdims=True)
        inv_std = 1 / xp.sqrt(var + epsilon)
        count = x.size // mean.size
        unbiased_var = var * count / (count - 1) if count > 1 else var

        running_mean_values = self._read(running_mean)
        running_mean_values *= 1 - momentum
        running_mean_values += momentum * mean
        running_var_values = self._read(running_var)
        running_var_values *= 1 - momentum
        running_var_values += momentum * unbiased_var

        self._write(save_mean)[...] = mean
        self._write(save_inv_std)[...] = inv_std
        self._write(out)[...] = g * (x - mean) * inv_std + b

    def batch_norm_gradient(  # noqa: PLR0913
        self,
        t: Tensor,
        mode: BatchNormMode,
        gamma: Tensor,
        grad: Tensor,
        save_mean: Tensor,
        save_inv_std: Tensor,
        *,
        training: bool,
        input_grad: Tensor | None = None,
        gamma_grad: Tensor | None = None,
        beta_grad: Tensor | None = None,
    ) -> None:
        """Gradients of batch normalization.

        Args:
            t (Tensor): The normalized input.
            mode (BatchNormMode): Statistics mode used in the forward pass.
            gamma (Tensor): Scale parameter.
            grad (Tensor): Gradient of the output.
            save_mean (Tensor): Mean used in the forward pass.
            save_inv_std (Tensor): Inverse standard deviation used in the
                forward pass.
            training (bool): Whether the forward pass used batch statistics,
                which then depend on the input as well.
            input_grad (Tensor | None): Receives the input gradient.
            gamma_grad (Tensor | None): Receives the scale gradient.
            beta_grad (Tensor | None): Receives the shift gradient.
        """
        axes = _batch_norm_axes(mode)
        x, g, dy = self._read(t), self._read(gamma), self._read(grad)
        mean, inv_std = self._read(save_mean), self._read(save_inv_std)
        x_hat = (x - mean) * inv_std

        if gamma_grad is not None:
            self._write(gamma_grad)[...] = (dy * x_hat).sum(axis=axes, keepdims=True)
        if beta_grad is not None:
            self._write(beta_grad)[...] = dy.sum(axis=axes, keepdims=True)
        if input_grad is None:
            return

        if not training:
            self._write(input_grad)[...] = dy * g * inv_std
            return

        count = x.size // mean.size
        dx_hat = dy * g
        dx = (inv_std / count) * (
            count * dx_hat
            - dx_hat.sum(axis=axes, keepdims=True)
            - x_hat * (dx_hat * x_hat).sum(axis=axes, keepdims=True)
        )
        self._write(input_grad)[...] = dx

    def dropout(self, t: Tensor, prob: float, mask: Tensor, out: Tensor) -> None:
        """Inverted dropout: zero values with probability `prob`, scale the rest.

        A fresh mask is sampled into `mask`, which `dropout_gradient` reuses.
        """
        x = self._read(t)
        keep = self._rng.random(mask.shape.array_shape) >= prob
        mask_values = (keep / (1 - prob)).astype(np.float32)
        self._write(mask)[...] = self.xp.asarray(mask_values)
        m = self._read(mask)
        self._map_batch(lambda x_, m_: x_ * m_, self._write(out), x, m)

    def dropout_gradient(self, grad: Tensor, mask: Tensor, input_grad: Tensor) -> None:
        g, m = self._read(grad), self._read(mask)
        self._map_batch(lambda g_, m_: g_ * m_, self._write(input_grad), g, m)

    # -- optimizer steps ----------------------------------------------------

    def sgd_step(  # noqa: PLR0913
        self,
        parameter: Tensor,
        gradient: Tensor,
        batch_size: int,
        lr: float,
        *,
        weight_decay: float = 0.0,
        momentum: Tensor | None = None,
        friction: float = 1.0,
    ) -> None:
        """In-place gradient descent step on the batch averaged gradient.

        Args:
            parameter (Tensor): Updated in place.
            gradient (Tensor): Gradient summed over `batch_size` samples.
            batch_size (int): Number of samples the gradient was summed over.
            lr (float): Learning rate.
            weight_decay (float): Decoupled weight decay. Defaults to 0.
            momentum (Tensor | None): Momentum state, updated in place.
                Defaults to None, meaning plain SGD.
            friction (float): Fraction of momentum lost every step.
                Defaults to 1.
        """
        grad = self._read(gradient) / batch_size
        if momentum is not None:
            m = self._read(momentum)
            m *= 1 - friction
            m += grad
            grad = m
        param = self._read(parameter)
        param *= 1 - lr * weight_decay
        param -= lr * grad

    def adam_step(  # noqa: PLR0913
        self,
        parameter: Tensor,
        gradient: Tensor,
        m: Tensor,
        v: Tensor,
        batch_size: int,
        lr: float,
        beta_1: float,
        beta_2: float,
        epsilon: float,
        t: int,
        *,
        weight_decay: float = 0.0,
    ) -> None:
        """In-place Adam step on the batch averaged gradient.

        Uses the variant from the end of section 2 in
        https://arxiv.org/pdf/1412.6980. `m` and `v` are updated in place;
        `t` is the 1-based step count.
        """
        xp = self.xp
        grad = self._read(gradient) / batch_size
        m_values = self._read(m)
        m_values *= beta_1
        m_values += (1 - beta_1) * grad
        v_values = self._read(v)
        v_values *= beta_2
        v_values += (1 - beta_2) * grad * grad

        lr_t = lr * np.sqrt(1 - beta_2**t) / (1 - beta_1**t)
        epsilon_hat = epsilon * np.sqrt(1 - beta_2**t)

        param = self._read(parameter)
        param *= 1 - lr * weight_decay
        param -= lr_t * m_values / (xp.sqrt(v_values) + epsilon_hat)


class CpuBackend(ComputeBackend):
    """Single threaded numpy kernels on host buffers."""

    xp = np

    def _read(self, t: Tensor) -> np.ndarray:
        return t.host_values()

    def _write(self, t: Tensor) -> np.ndarray:
        return t.host_values(overwrite=True)


__all__ = [
    "Activation",
    "BatchNormMode",
    "ComputeBackend",
    "CpuBackend",
    "PoolingMode",
]
