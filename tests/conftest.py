"""Shared fixtures."""

from __future__ import annotations

from collections.abc import Iterator

import numpy as np
import pytest
from graphgrad import Graph, MemoryManager, OpMode, Session, set_default_op_mode


@pytest.fixture(autouse=True)
def _default_op_mode() -> Iterator[None]:
    """Every test starts and ends on the single threaded CPU backend."""
    set_default_op_mode(OpMode.CPU)
    yield
    set_default_op_mode(OpMode.CPU)


@pytest.fixture
def graph() -> Graph:
    return Graph("test")


@pytest.fixture
def session(graph: Graph) -> Session:
    return Session(graph)


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(seed=42)


@pytest.fixture
def memory() -> Iterator[MemoryManager]:
    manager = MemoryManager("test")
    yield manager
    manager.shutdown()
