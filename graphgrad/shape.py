"""Four dimensional tensor shapes and reduction axes.

A shape is `(width, height, depth, batch)`. Tensor values are laid out as
arrays of shape `(batch, depth, height, width)`, so width is the fastest
changing dimension.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum


class Axis(IntEnum):
    """Reduction axes.

    The combined members reduce several dimensions at once, e.g. `WHN`
    collapses everything but depth (per-channel statistics).
    """

    WIDTH = 0
    HEIGHT = 1
    DEPTH = 2
    BATCH = 3
    GLOBAL = 4
    WH = 5
    WHN = 6
    WHD = 7


# shape dims are (w, h, d, n), array dims are (n, d, h, w)
_ARRAY_AXES: dict[Axis, tuple[int, ...]] = {
    Axis.WIDTH: (3,),
    Axis.HEIGHT: (2,),
    Axis.DEPTH: (1,),
    Axis.BATCH: (0,),
    Axis.GLOBAL: (0, 1, 2, 3),
    Axis.WH: (2, 3),
    Axis.WHN: (0, 2, 3),
    Axis.WHD: (1, 2, 3),
}

_SHAPE_DIMS: dict[Axis, tuple[int, ...]] = {
    axis: tuple(3 - a for a in array_axes) for axis, array_axes in _ARRAY_AXES.items()
}


class DataFormat(Enum):
    """Memory layout of image-like tensors used by convolution and pooling."""

    NCHW = "nchw"
    NHWC = "nhwc"


@dataclass(frozen=True)
class Shape:
    """Dense four dimensional shape.

    Attributes:
        width (int): Innermost dimension.
        height (int): Second dimension.
        depth (int): Third dimension (channels for NCHW data).
        batch (int): Outermost dimension, the only one allowed to vary
            between runs of the same graph node.
    """

    width: int = 1
    height: int = 1
    depth: int = 1
    batch: int = 1

    def __post_init__(self) -> None:
        for dim in self.dims:
            if not isinstance(dim, int) or dim < 0:
                raise ValueError(f"Shape dimensions must be non-negative ints, got {self.dims}")

    @property
    def dims(self) -> tuple[int, int, int, int]:
        """Dimensions in `(width, height, depth, batch)` order."""
        return (self.width, self.height, self.depth, self.batch)

    @property
    def array_shape(self) -> tuple[int, int, int, int]:
        """Dimensions in array order `(batch, depth, height, width)`."""
        return (self.batch, self.depth, self.height, self.width)

    @property
    def batch_length(self) -> int:
        """Number of elements of a single batch entry."""
        return self.width * self.height * self.depth

    @property
    def length(self) -> int:
        """Total number of elements."""
        return self.batch_length * self.batch

    def len(self, axis: Axis) -> int:
        """Length along a single axis.

        Args:
            axis (Axis): One of `WIDTH`, `HEIGHT`, `DEPTH` or `BATCH`.

        Returns:
            int: The length of the dimension.
        """
        if axis > Axis.BATCH:
            raise ValueError(f"len() expects a single dimension axis, got {axis.name}")
        return self.dims[axis]

    def with_batch(self, batch: int) -> Shape:
        """Copy of this shape with a different batch size."""
        return Shape(self.width, self.height, self.depth, batch)

    def same_sample_shape(self, other: Shape) -> bool:
        """Whether `other` matches this shape in every dimension but batch."""
        return self.dims[:3] == other.dims[:3]

    def reduced(self, axis: Axis) -> Shape:
        """The shape left after summing along `axis` (reduced dims become 1).

        Args:
            axis (Axis): The reduction axis.

        Returns:
            Shape: The reduced shape.
        """
        dims = list(self.dims)
        for dim in _SHAPE_DIMS[axis]:
            dims[dim] = 1
        return Shape(*dims)

    @classmethod
    def from_array_shape(cls, array_shape: tuple[int, ...]) -> Shape:
        """Build a shape from an array shape of up to 4 dims.

        Missing leading dims are treated as 1, so `(5,)` becomes width 5
        and `(5, 2)` becomes height 5, width 2.

        Args:
            array_shape (tuple[int, ...]): Array shape in `(n, d, h, w)` order.

        Raises:
            ValueError: If more than 4 dimensions are given.

        Returns:
            Shape: The matching shape.
        """
        if len(array_shape) > 4:
            raise ValueError(f"At most 4 dimensions are supported, got {array_shape}")
        padded = (1,) * (4 - len(array_shape)) + tuple(int(d) for d in array_shape)
        n, d, h, w = padded
        return cls(w, h, d, n)

    def __str__(self) -> str:
        return f"({self.width}, {self.height}, {self.depth}, {self.batch})"


def array_axes(axis: Axis) -> tuple[int, ...]:
    """Array axes (in `(n, d, h, w)` order) reduced by `axis`."""
    return _ARRAY_AXES[axis]


def shape_dims(axis: Axis) -> tuple[int, ...]:
    """Shape dimension indices (in `(w, h, d, n)` order) reduced by `axis`."""
    return _SHAPE_DIMS[axis]


def image_dims(shape: Shape, data_format: DataFormat) -> tuple[int, int, int]:
    """Return `(width, height, channels)` of an image shape."""
    if data_format is DataFormat.NCHW:
        return shape.width, shape.height, shape.depth
    # NHWC: channels are innermost, image rows are the depth dimension
    return shape.height, shape.depth, shape.width


def _image_shape(
    width: int, height: int, channels: int, batch: int, data_format: DataFormat
) -> Shape:
    if data_format is DataFormat.NCHW:
        return Shape(width, height, channels, batch)
    return Shape(channels, width, height, batch)


def conv_output_shape(  # noqa: PLR0913
    input_shape: Shape,
    kernels_num: int,
    kernel_width: int,
    kernel_height: int,
    stride: int,
    padding_x: int,
    padding_y: int,
    data_format: DataFormat = DataFormat.NCHW,
) -> Shape:
    """Output shape of a 2D convolution.

    Args:
        input_shape (Shape): Shape of the convolved input.
        kernels_num (int): Number of kernels, i.e. output channels.
        kernel_width (int): Kernel width.
        kernel_height (int): Kernel height.
        stride (int): Stride in both spatial directions.
        padding_x (int): Symmetric padding along width.
        padding_y (int): Symmetric padding along height.
        data_format (DataFormat): Layout of input and output.
            Defaults to NCHW.

    Raises:
        ValueError: If the kernel does not fit into the padded input.

    Returns:
        Shape: The output shape, with the batch size of `input_shape`.
    """
    width, height, _ = image_dims(input_shape, data_format)
    out_width = (width - kernel_width + 2 * padding_x) // stride + 1
    out_height = (height - kernel_height + 2 * padding_y) // stride + 1
    if out_width < 1 or out_height < 1:
        raise ValueError(
            f"Kernel {kernel_width}x{kernel_height} does not fit input {input_shape} "
            f"with padding ({padding_x}, {padding_y})"
        )
    return _image_shape(out_width, out_height, kernels_num, input_shape.batch, data_format)


def pooling_output_shape(  # noqa: PLR0913
    input_shape: Shape,
    filter_size: int,
    stride: int,
    padding_x: int,
    padding_y: int,
    data_format: DataFormat = DataFormat.NCHW,
) -> Shape:
    """Output shape of a 2D pooling with a square filter.

    Args:
        input_shape (Shape): Shape of the pooled input.
        filter_size (int): Side length of the pooling window.
        stride (int): Stride in both spatial directions.
        padding_x (int): Symmetric padding along width.
        padding_y (int): Symmetric padding along height.
        data_format (DataFormat): Layout of input and output.
            Defaults to NCHW.

    Returns:
        Shape: The output shape (channel count is preserved).
    """
    _, _, channels = image_dims(input_shape, data_format)
    return conv_output_shape(
        input_shape, channels, filter_size, filter_size, stride, padding_x, padding_y, data_format
    )


__all__ = [
    "Axis",
    "DataFormat",
    "Shape",
    "array_axes",
    "conv_output_shape",
    "image_dims",
    "pooling_output_shape",
    "shape_dims",
]
