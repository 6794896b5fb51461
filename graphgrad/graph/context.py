"""The graph context: an index based arena owning all nodes of a graph."""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterator
from typing import TYPE_CHECKING

from ..errors import check

if TYPE_CHECKING:
    from .node import Placeholder, TensorLike, Variable

logger = logging.getLogger(__name__)


class Graph:
    """Owns the nodes of one computation graph.

    Nodes are registered at construction and addressed by their index in
    the arena; edges between nodes are stored as indices. `reset` tears the
    whole graph down at once and detaches every node from it.

    Args:
        name (str): Graph name, for logs. Defaults to "graph".
    """

    def __init__(self, name: str = "graph") -> None:
        self.name = name
        self._nodes: list[TensorLike] = []
        self._ids_by_name: dict[str, int] = {}
        self._name_counters: defaultdict[str, int] = defaultdict(int)

    def register(self, node: TensorLike) -> int:
        """Add `node` to the arena.

        Args:
            node (TensorLike): The new node, with its name already set.

        Raises:
            InvariantViolation: If the name is already used in this graph.

        Returns:
            int: The node's index.
        """
        check(node.name not in self._ids_by_name, "Node name is already used", node.name)
        idx = len(self._nodes)
        self._nodes.append(node)
        self._ids_by_name[node.name] = idx
        logger.debug(f'Registered node "{node.name}" as #{idx} in graph "{self.name}"')
        return idx

    def unique_name(self, prefix: str) -> str:
        """A node name starting with `prefix` that is not used yet."""
        while True:
            self._name_counters[prefix] += 1
            name = f"{prefix}_{self._name_counters[prefix]}"
            if name not in self._ids_by_name:
                return name

    def node(self, idx: int) -> TensorLike:
        """The node registered under index `idx`."""
        check(0 <= idx < len(self._nodes), f"No node with index {idx}", self.name)
        return self._nodes[idx]

    def find(self, name: str) -> TensorLike | None:
        """The node called `name`, or `None`."""
        idx = self._ids_by_name.get(name)
        return self._nodes[idx] if idx is not None else None

    @property
    def nodes(self) -> tuple[TensorLike, ...]:
        return tuple(self._nodes)

    def variables(self, *, trainable_only: bool = False) -> list[Variable]:
        """All variables of the graph, in registration order."""
        from .node import Variable

        return [
            node
            for node in self._nodes
            if isinstance(node, Variable) and (node.trainable or not trainable_only)
        ]

    def placeholders(self) -> list[Placeholder]:
        from .node import Placeholder

        return [node for node in self._nodes if isinstance(node, Placeholder)]

    def reset(self) -> None:
        """Drop all nodes. Using a node of the old graph afterwards is an error."""
        logger.debug(f'Resetting graph "{self.name}" with {len(self._nodes)} nodes')
        for node in self._nodes:
            node.detach()
        self._nodes.clear()
        self._ids_by_name.clear()
        self._name_counters.clear()

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[TensorLike]:
        return iter(self._nodes)

    def __repr__(self) -> str:
        return f"Graph(name={self.name!r}, nodes={len(self._nodes)})"


__all__ = [
    "Graph",
]
