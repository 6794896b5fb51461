"""Matrix operations over the `(height, width)` planes of tensors."""

from __future__ import annotations

import logging

from ...errors import check
from ...shape import Shape
from ...tensor import Tensor
from ..node import TensorLike
from ..operation import OpInputs, OpType, Operation, reduce_to_shape, register_operation

logger = logging.getLogger(__name__)


def _matmul_shape(x: Shape, y: Shape, name: str) -> Shape:
    check(
        x.width == y.height,
        f"Cannot multiply matrices of shapes {x} and {y}: inner dimensions differ",
        name,
    )
    check(
        x.depth == y.depth,
        f"Cannot multiply matrices of shapes {x} and {y}: depths differ",
        name,
    )
    check(
        x.batch == y.batch or 1 in (x.batch, y.batch),
        f"Cannot multiply matrices of shapes {x} and {y}: batches differ",
        name,
    )
    return Shape(y.width, x.height, x.depth, max(x.batch, y.batch))


@register_operation(
    name="matmul",
    op_type=OpType.LINALG,
    op_inputs=OpInputs.BINARY,
    input_shapes=(Shape(3, 4, 2, 2), Shape(5, 3, 2, 2)),
)
@register_operation(
    name="matmul_shared_weights",
    op_type=OpType.LINALG,
    op_inputs=OpInputs.BINARY,
    input_shapes=(Shape(3, 4, 1, 3), Shape(2, 3, 1, 1)),
)
class MatMulOp(Operation):
    """Matrix product `x @ y`.

    Depth slices are multiplied pairwise. A batch size of 1 in either input
    broadcasts over the other's batch, e.g. weights shared by all samples.
    """

    prefix = "matmul"

    def __init__(self, x: TensorLike, y: TensorLike, name: str = "") -> None:
        super().__init__((x, y), _matmul_shape(x.shape, y.shape, name or x.name), name)

    def _compute(self) -> None:
        x, y = self.inputs
        self._output.resize(_matmul_shape(x.shape, y.shape, self.name))
        self.op.matmul(x.output, False, y.output, False, self._output)

    def _compute_gradient(self, grad: Tensor) -> None:
        x, y = self.inputs
        # dx = grad @ y^T, dy = x^T @ grad
        self._matmul_grad(0, grad, False, y.output, True)
        self._matmul_grad(1, x.output, True, grad, False)

    def _matmul_grad(  # noqa: PLR0913
        self, idx: int, a: Tensor, transpose_a: bool, b: Tensor, transpose_b: bool
    ) -> None:
        target = self._input_grad(idx)
        if target is None:
            return
        full_shape = target.shape.with_batch(self._output.batch)
        if full_shape == target.shape:
            self.op.matmul(a, transpose_a, b, transpose_b, target)
            return
        tmp = self._scratch(f"grad{idx}", full_shape)
        self.op.matmul(a, transpose_a, b, transpose_b, tmp)
        reduce_to_shape(tmp, target)


@register_operation(
    name="transpose",
    op_type=OpType.MOVEMENT,
    op_inputs=OpInputs.UNARY,
    input_shapes=(Shape(3, 4, 2, 2),),
)
class TransposeOp(Operation):
    """Swap width and height."""

    prefix = "transpose"

    def __init__(self, x: TensorLike, name: str = "") -> None:
        shape = x.shape
        super().__init__((x,), Shape(shape.height, shape.width, shape.depth, shape.batch), name)

    def _compute(self) -> None:
        x = self.inputs[0].output
        self._resize_output_batch(x.batch)
        self.op.transpose(x, self._output)

    def _compute_gradient(self, grad: Tensor) -> None:
        x_grad = self._input_grad(0)
        if x_grad is not None:
            self.op.transpose(grad, x_grad)


__all__ = [
    "MatMulOp",
    "TransposeOp",
]
