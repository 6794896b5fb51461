"""Graph nodes: the common `TensorLike` base and the leaf node types."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from ..errors import check
from ..shape import Shape
from ..storage import StorageType
from ..tensor import Tensor

if TYPE_CHECKING:
    from .context import Graph

logger = logging.getLogger(__name__)


class TensorLike:
    """A node of a computation graph producing one output tensor.

    Nodes register with their graph on construction and keep their edges as
    arena indices: `input_ids` point at producers, `consumer_ids` at the
    operations reading this node's output.

    Args:
        graph (Graph): The owning graph.
        shape (Shape): Output shape. Only its batch size may change later.
        name (str): Unique name within the graph. Defaults to "", meaning
            a generated name.
        storage_type (StorageType): Flags of the output storage.
            Defaults to `StorageType.DEFAULT`.
    """

    prefix = "node"

    def __init__(
        self,
        graph: Graph,
        shape: Shape,
        name: str = "",
        *,
        storage_type: StorageType = StorageType.DEFAULT,
    ) -> None:
        self._graph: Graph | None = graph
        self.name = name or graph.unique_name(self.prefix)
        self.input_ids: tuple[int, ...] = ()
        self.consumer_ids: list[int] = []
        self.care_about_gradient = False
        self._output = Tensor(shape, name=self.name, storage_type=storage_type)
        self._output_grad: Tensor | None = None
        self._has_output_grad = False
        self.id = graph.register(self)

    @property
    def graph(self) -> Graph:
        """The owning graph.

        Raises:
            InvariantViolation: If the graph was reset since this node was built.
        """
        check(self._graph is not None, "Node belongs to a graph that was reset", self.name)
        return self._graph  # type: ignore[return-value]

    @property
    def shape(self) -> Shape:
        """Current output shape."""
        return self._output.shape

    @property
    def output(self) -> Tensor:
        """The output tensor, valid after the node was computed."""
        return self._output

    @property
    def inputs(self) -> list[TensorLike]:
        graph = self.graph
        return [graph.node(idx) for idx in self.input_ids]

    @property
    def consumers(self) -> list[TensorLike]:
        graph = self.graph
        return [graph.node(idx) for idx in self.consumer_ids]

    @property
    def has_output_grad(self) -> bool:
        return self._has_output_grad

    @property
    def output_grad(self) -> Tensor:
        """Gradient of the loss w.r.t. the output, summed over all consumers.

        Raises:
            InvariantViolation: If no gradient reached this node in the last pass.
        """
        check(self._has_output_grad, "No gradient was accumulated for node", self.name)
        return self._output_grad  # type: ignore[return-value]

    def accumulate_output_grad(self, grad: Tensor) -> None:
        """Add one consumer's contribution to the output gradient.

        The first contribution of a pass is copied, later ones are summed.

        Raises:
            InvariantViolation: If `grad` does not match the output shape.
        """
        check(
            grad.shape == self.shape,
            f"Gradient of shape {grad.shape} does not match output shape {self.shape}",
            self.name,
        )
        if not self._has_output_grad:
            if self._output_grad is None:
                self._output_grad = Tensor(
                    grad.shape, name=f"{self.name}_grad", op_mode=self._output.op_mode
                )
            else:
                self._output_grad.resize(grad.shape)
            self._output_grad.op.copy(grad, self._output_grad)
            self._has_output_grad = True
            return
        total = self._output_grad
        assert total is not None
        total.op.add(1.0, total, 1.0, grad, total)

    def reset_output_grad(self) -> None:
        self._has_output_grad = False

    def detach(self) -> None:
        """Cut the node from its graph."""
        self._graph = None

    def __add__(self, other: TensorLike | float) -> TensorLike:
        from .ops.elementwise import AddOp

        return AddOp(self, other)

    def __sub__(self, other: TensorLike) -> TensorLike:
        from .ops.elementwise import SubtractOp

        return SubtractOp(self, other)

    def __mul__(self, other: TensorLike | float) -> TensorLike:
        from .ops.elementwise import MultiplyOp

        return MultiplyOp(self, other)

    def __truediv__(self, other: TensorLike) -> TensorLike:
        from .ops.elementwise import DivideOp

        return DivideOp(self, other)

    def __neg__(self) -> TensorLike:
        from .ops.elementwise import NegativeOp

        return NegativeOp(self)

    def __matmul__(self, other: TensorLike) -> TensorLike:
        from .ops.linalg import MatMulOp

        return MatMulOp(self, other)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, shape={self.shape})"


class Placeholder(TensorLike):
    """Input node fed with a tensor on every run.

    Fed values must match the declared width, height and depth; the batch
    size may differ from run to run.
    """

    prefix = "placeholder"

    def __init__(self, graph: Graph, shape: Shape, name: str = "") -> None:
        super().__init__(graph, shape, name)
        self.declared_shape = shape

    def feed(self, value: Tensor | Any) -> None:
        """Copy `value` into the placeholder's output.

        Args:
            value (Tensor | Any): A tensor or an array-like in
                `(batch, depth, height, width)` order.

        Raises:
            InvariantViolation: If the sample shape does not match.
        """
        fed = value if isinstance(value, Tensor) else Tensor.from_array(value)
        check(
            self.declared_shape.same_sample_shape(fed.shape),
            f"Fed tensor of shape {fed.shape} does not match placeholder shape "
            f"{self.declared_shape}",
            self.name,
        )
        self._output.resize(fed.shape)
        self._output.op.copy(fed, self._output)


class Variable(TensorLike):
    """Persistent tensor, trainable unless created as a `Constant`.

    Args:
        graph (Graph): The owning graph.
        initial_value (Tensor | Any): Initial values, as a tensor or an
            array-like in `(batch, depth, height, width)` order.
        name (str): Unique name. Defaults to "", meaning a generated name.
        trainable (bool): Whether gradients flow into this variable.
            Defaults to True.
        storage_type (StorageType): Flags of the value storage.
            Defaults to `StorageType.DEFAULT`.
    """

    prefix = "variable"

    def __init__(
        self,
        graph: Graph,
        initial_value: Tensor | Any,
        name: str = "",
        trainable: bool = True,
        storage_type: StorageType = StorageType.DEFAULT,
    ) -> None:
        initial = (
            initial_value
            if isinstance(initial_value, Tensor)
            else Tensor.from_array(initial_value)
        )
        super().__init__(graph, initial.shape, name, storage_type=storage_type)
        self.trainable = trainable
        self._output.op.copy(initial, self._output)

    @property
    def value(self) -> Tensor:
        return self._output

    def assign(self, value: Tensor | Any) -> None:
        """Overwrite the values, keeping the shape.

        Raises:
            InvariantViolation: If the shape differs.
        """
        new = value if isinstance(value, Tensor) else Tensor.from_array(value, self.shape)
        check(
            new.shape == self.shape,
            f"Cannot assign a value of shape {new.shape} to a variable of shape {self.shape}",
            self.name,
        )
        self._output.op.copy(new, self._output)

    @property
    def has_gradient(self) -> bool:
        return self._has_output_grad

    @property
    def gradient(self) -> Tensor:
        """Gradient of the last `Session.compute_gradients` call.

        Raises:
            InvariantViolation: If the variable received no gradient.
        """
        check(self._has_output_grad, "Variable has no gradient", self.name)
        return self._output_grad  # type: ignore[return-value]


class Constant(Variable):
    """A non-trainable variable."""

    prefix = "constant"

    def __init__(self, graph: Graph, value: Tensor | Any, name: str = "") -> None:
        super().__init__(graph, value, name, trainable=False)


__all__ = [
    "Constant",
    "Placeholder",
    "TensorLike",
    "Variable",
]
