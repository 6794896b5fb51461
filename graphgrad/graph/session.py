"""Forward scheduling and reverse-mode differentiation of a graph."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from ..errors import check
from ..tensor import Tensor
from .context import Graph
from .node import Placeholder, TensorLike, Variable
from .operation import Operation

logger = logging.getLogger(__name__)


class Session:
    """Executes the nodes of one graph.

    Args:
        graph (Graph): The graph to run.
    """

    def __init__(self, graph: Graph) -> None:
        self.graph = graph

    def build_forward_graph(self, ends: Sequence[TensorLike]) -> list[TensorLike]:
        """Topologically sort all nodes the `ends` depend on.

        Every node appears after all of its inputs. The order only depends on
        the graph structure and on the order of `ends`: inputs are visited in
        their declared order.

        Args:
            ends (Sequence[TensorLike]): The nodes to compute.

        Raises:
            InvariantViolation: If a node belongs to another graph or the
                graph contains a cycle.

        Returns:
            list[TensorLike]: The ordered nodes.
        """
        ordered_nodes: list[TensorLike] = []
        currently_visiting: set[int] = set()
        done: set[int] = set()

        for end in ends:
            check(end.graph is self.graph, "Node does not belong to the session's graph", end.name)
            stack: list[tuple[int, bool]] = [(end.id, False)]
            while stack:
                idx, visited = stack.pop()
                if idx in done:
                    continue

                if visited:
                    ordered_nodes.append(self.graph.node(idx))
                    currently_visiting.discard(idx)
                    done.add(idx)
                    continue

                stack.append((idx, True))
                currently_visiting.add(idx)
                node = self.graph.node(idx)
                for input_id in reversed(node.input_ids):
                    if input_id in done:
                        continue
                    check(
                        input_id not in currently_visiting,
                        "Cycle in computation graph detected, but only DAG allowed",
                        node.name,
                    )
                    stack.append((input_id, False))

        return ordered_nodes

    def _resolve_feeds(
        self, feeds: Mapping[TensorLike | str, Tensor | Any]
    ) -> dict[int, Tensor | Any]:
        resolved: dict[int, Tensor | Any] = {}
        for key, value in feeds.items():
            node = self.graph.find(key) if isinstance(key, str) else key
            check(node is not None, "Fed node does not exist", str(key))
            assert node is not None
            check(isinstance(node, Placeholder), "Only placeholders can be fed", node.name)
            check(node.graph is self.graph, "Fed node belongs to another graph", node.name)
            resolved[node.id] = value
        return resolved

    def run(
        self,
        fetches: Sequence[TensorLike],
        feeds: Mapping[TensorLike | str, Tensor | Any] | None = None,
        *,
        training: bool = False,
    ) -> list[Tensor]:
        """Compute `fetches`.

        All placeholders the fetches depend on are fed first, then every
        needed operation runs once in topological order.

        Args:
            fetches (Sequence[TensorLike]): Nodes whose outputs to return.
            feeds (Mapping[TensorLike | str, Tensor | Any] | None): Values of
                placeholders, keyed by node or node name. Defaults to None.
            training (bool): Whether operations run in training mode
                (dropout masks, batch statistics). Defaults to False.

        Raises:
            InvariantViolation: If a needed placeholder is not fed or a fed
                value does not match its placeholder's shape.

        Returns:
            list[Tensor]: The output tensors, in the order of `fetches`.
        """
        fetches = list(fetches)
        order = self.build_forward_graph(fetches)
        resolved = self._resolve_feeds(feeds or {})

        placeholders = [node for node in order if isinstance(node, Placeholder)]
        for node in placeholders:
            check(node.id in resolved, "Placeholder was not fed", node.name)
            node.feed(resolved[node.id])

        operations = [node for node in order if isinstance(node, Operation)]
        logger.debug(
            f"Running {len(operations)} operations for {len(fetches)} fetches "
            f"(training={training})"
        )
        for node in operations:
            node.compute(training)

        return [node.output for node in fetches]

    def compute_gradients(self, loss: TensorLike) -> list[Variable]:
        """Back-propagate from `loss` to all trainable variables it depends on.

        Expects the forward values of `loss` to be computed by a preceding
        `run`. The gradient of `loss` is seeded with ones, so a non-scalar
        loss behaves like the sum of its values. Only nodes on a path from
        a trainable variable to `loss` are visited; a node's gradient is the
        sum of the contributions of all its consumers.

        Args:
            loss (TensorLike): The node to differentiate.

        Returns:
            list[Variable]: The variables that received a gradient, in
                topological order.
        """
        order = self.build_forward_graph([loss])

        for node in self.graph:
            node.reset_output_grad()
            node.care_about_gradient = False

        for node in order:
            if isinstance(node, Variable):
                node.care_about_gradient = node.trainable
            elif isinstance(node, Operation):
                node.care_about_gradient = any(inp.care_about_gradient for inp in node.inputs)

        if not loss.care_about_gradient:
            logger.debug(
                f'Gradient pass of "{loss.name}" skipped, no trainable variable reaches it'
            )
            return []

        seed = Tensor(loss.shape, name=f"{loss.name}_seed", op_mode=loss.output.op_mode).one()
        loss.accumulate_output_grad(seed)

        visited = 0
        for node in reversed(order):
            if not isinstance(node, Operation) or not node.care_about_gradient:
                continue

            logger.debug(f'Computing gradient of "{node.name}"')
            node.compute_gradient(node.output_grad)
            visited += 1

            for idx, inp in enumerate(node.inputs):
                if inp.care_about_gradient:
                    inp.accumulate_output_grad(node.input_grad(idx))

        variables = [
            node
            for node in order
            if isinstance(node, Variable) and node.trainable and node.has_gradient
        ]
        logger.debug(
            f'Gradient pass of "{loss.name}" visited {visited} of {len(order)} nodes, '
            f"{len(variables)} variables received gradients"
        )
        return variables


__all__ = [
    "Session",
]
