"""Tests for saving and loading variable values."""

from __future__ import annotations

import struct
from collections import OrderedDict
from pathlib import Path

import numpy as np
import pytest
from graphgrad import Graph, InvariantViolation, Shape, Tensor, Variable, load, load_into, save


def test_save_and_load_variables(graph: Graph, tmp_path: Path) -> None:
    rng = np.random.default_rng(seed=0)
    w = Variable(graph, rng.uniform(-1.0, 1.0, (2, 3, 4, 5)), name="w")
    b = Variable(graph, np.array([0.5, -0.5]), name="b")
    file_path = str(tmp_path / "weights.ggrd")

    save([w, b], file_path)
    loaded = load(file_path)

    assert list(loaded) == ["w", "b"]
    assert loaded["w"].shape == Shape(5, 4, 3, 2)
    assert loaded["b"].shape == Shape(2)
    assert np.array_equal(loaded["w"].to_numpy(), w.value.to_numpy())
    assert np.array_equal(loaded["b"].to_numpy(), b.value.to_numpy())


def test_save_tensor_dict(tmp_path: Path) -> None:
    tensors = OrderedDict(
        [
            ("first", Tensor.from_array(np.arange(6.0).reshape(2, 3))),
            ("second", Tensor(Shape(1, 1, 1, 3)).fill(2.0)),
        ]
    )
    file_path = str(tmp_path / "tensors.ggrd")

    save(tensors, file_path)
    loaded = load(file_path)

    assert loaded["first"].shape == Shape(3, 2)
    assert np.array_equal(loaded["second"].to_numpy(), np.full((3, 1, 1, 1), 2.0))


def test_file_layout(tmp_path: Path) -> None:
    file_path = tmp_path / "layout.ggrd"
    save(OrderedDict([("k", Tensor.from_array([1.0, 2.0]))]), str(file_path))

    raw = file_path.read_bytes()
    assert raw[:4] == b"GGRD"
    assert raw[4] == 1
    assert struct.unpack("<I", raw[5:9])[0] == 1
    assert struct.unpack("<I", raw[9:13])[0] == 1
    assert raw[13:14] == b"k"
    assert struct.unpack("<4Q", raw[14:46]) == (2, 1, 1, 1)
    assert np.array_equal(np.frombuffer(raw[46:], dtype="<f4"), [1.0, 2.0])


def test_invalid_files(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match=".ggrd"):
        save(OrderedDict(), str(tmp_path / "weights.npz"))
    with pytest.raises(ValueError, match="must be Tensors"):
        save(OrderedDict([("x", np.zeros(2))]), str(tmp_path / "bad.ggrd"))

    bad_magic = tmp_path / "magic.ggrd"
    bad_magic.write_bytes(b"NOPE\x01\x00\x00\x00\x00")
    with pytest.raises(ValueError, match="magic"):
        load(str(bad_magic))

    file_path = tmp_path / "truncated.ggrd"
    save(OrderedDict([("x", Tensor.from_array(np.ones(8)))]), str(file_path))
    file_path.write_bytes(file_path.read_bytes()[:-4])
    with pytest.raises(ValueError, match="Truncated"):
        load(str(file_path))


def test_load_into_graph(graph: Graph, tmp_path: Path) -> None:
    file_path = str(tmp_path / "model.ggrd")
    source = Graph("source")
    save([Variable(source, np.full((2, 2), 3.0), name="w")], file_path)

    w = Variable(graph, np.zeros((2, 2)), name="w")
    assert load_into(graph, file_path) == [w]
    assert np.array_equal(w.value.to_numpy(), np.full((1, 1, 2, 2), 3.0))


def test_load_into_validation(graph: Graph, tmp_path: Path) -> None:
    file_path = str(tmp_path / "model.ggrd")
    source = Graph("source")
    save([Variable(source, np.ones(3), name="w")], file_path)

    with pytest.raises(KeyError, match="No variable"):
        load_into(graph, file_path)
    assert load_into(graph, file_path, strict=False) == []

    Variable(graph, np.ones(4), name="w")
    with pytest.raises(InvariantViolation, match="does not match"):
        load_into(graph, file_path)
