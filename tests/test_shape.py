"""Tests for shapes, axes and output shape helpers."""

from __future__ import annotations

import pytest
from graphgrad import Axis, DataFormat, Shape
from graphgrad.shape import array_axes, conv_output_shape, image_dims, pooling_output_shape


def test_dimensions() -> None:
    shape = Shape(2, 3, 4, 5)
    assert shape.dims == (2, 3, 4, 5)
    assert shape.array_shape == (5, 4, 3, 2)
    assert shape.batch_length == 24
    assert shape.length == 120
    assert shape.len(Axis.DEPTH) == 4
    assert str(shape) == "(2, 3, 4, 5)"


def test_defaults_and_validation() -> None:
    assert Shape() == Shape(1, 1, 1, 1)
    assert Shape(3).length == 3
    with pytest.raises(ValueError, match="non-negative"):
        Shape(-1)
    with pytest.raises(ValueError, match="single dimension"):
        Shape(2).len(Axis.GLOBAL)


def test_batch_helpers() -> None:
    shape = Shape(2, 3, 4, 5)
    assert shape.with_batch(1) == Shape(2, 3, 4, 1)
    assert shape.same_sample_shape(Shape(2, 3, 4, 9))
    assert not shape.same_sample_shape(Shape(3, 2, 4, 5))


@pytest.mark.parametrize(
    ("axis", "expected"),
    [
        (Axis.WIDTH, Shape(1, 3, 4, 5)),
        (Axis.BATCH, Shape(2, 3, 4, 1)),
        (Axis.WH, Shape(1, 1, 4, 5)),
        (Axis.WHN, Shape(1, 1, 4, 1)),
        (Axis.WHD, Shape(1, 1, 1, 5)),
        (Axis.GLOBAL, Shape()),
    ],
)
def test_reduced(axis: Axis, expected: Shape) -> None:
    assert Shape(2, 3, 4, 5).reduced(axis) == expected


def test_array_axes() -> None:
    assert array_axes(Axis.WIDTH) == (3,)
    assert array_axes(Axis.BATCH) == (0,)
    assert array_axes(Axis.WHN) == (0, 2, 3)
    assert array_axes(Axis.WHD) == (1, 2, 3)


def test_from_array_shape() -> None:
    assert Shape.from_array_shape((5,)) == Shape(5)
    assert Shape.from_array_shape((5, 2)) == Shape(2, 5)
    assert Shape.from_array_shape((4, 3, 2, 1)) == Shape(1, 2, 3, 4)
    with pytest.raises(ValueError, match="At most 4"):
        Shape.from_array_shape((1, 1, 1, 1, 1))


def test_image_dims() -> None:
    # NHWC arrays are (n, image height, image width, channels)
    nhwc = Shape.from_array_shape((2, 6, 5, 3))
    assert image_dims(nhwc, DataFormat.NHWC) == (5, 6, 3)
    assert image_dims(Shape(5, 6, 3, 2), DataFormat.NCHW) == (5, 6, 3)


def test_conv_output_shape() -> None:
    assert conv_output_shape(Shape(5, 5, 2, 4), 3, 3, 3, 1, 1, 1) == Shape(5, 5, 3, 4)
    assert conv_output_shape(Shape(6, 5, 2, 1), 2, 2, 3, 2, 1, 0) == Shape(4, 2, 2, 1)
    nhwc = conv_output_shape(Shape(2, 4, 5, 2), 3, 3, 2, 1, 0, 0, DataFormat.NHWC)
    assert nhwc == Shape(3, 2, 4, 2)
    with pytest.raises(ValueError, match="does not fit"):
        conv_output_shape(Shape(2, 2, 1, 1), 1, 3, 3, 1, 0, 0)


def test_pooling_output_shape() -> None:
    assert pooling_output_shape(Shape(4, 4, 3, 2), 2, 2, 0, 0) == Shape(2, 2, 3, 2)
    assert pooling_output_shape(Shape(5, 5, 1, 1), 3, 2, 1, 1) == Shape(3, 3, 1, 1)
    assert pooling_output_shape(Shape(5, 4, 1, 1), 3, 1, 1, 0) == Shape(5, 2, 1, 1)
    nhwc = pooling_output_shape(Shape(3, 4, 4, 1), 2, 2, 0, 0, DataFormat.NHWC)
    assert nhwc == Shape(3, 2, 2, 1)
