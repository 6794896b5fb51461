"""Tests for `Tensor` and its arithmetic helpers."""

from __future__ import annotations

import numpy as np
import pytest
from graphgrad import Axis, Location, MemoryManager, Shape, StorageType, Tensor, tensor
from graphgrad.tensor import broadcast_shape


def test_from_array_layout() -> None:
    t = tensor([[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]], name="t")
    assert t.shape == Shape(3, 2)
    assert t.location is Location.HOST
    assert t.to_numpy().dtype == np.float32
    assert np.array_equal(t.to_numpy()[0, 0], [[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]])


def test_lazy_allocation(memory: MemoryManager) -> None:
    t = Tensor(Shape(4, 4), memory=memory)
    assert t.location is Location.NONE
    assert memory.host_bytes == 0
    assert np.array_equal(t.to_numpy(), np.zeros((1, 1, 4, 4)))
    assert memory.host_bytes == 64


def test_set_values_checks_length() -> None:
    t = Tensor(Shape(3))
    with pytest.raises(ValueError, match="Cannot assign 4 values"):
        t.set_values(np.ones(4))


def test_resize_batch_reuses_storage() -> None:
    t = Tensor(Shape(2, 1, 1, 4)).fill(1.0)
    storage = t.storage
    t.resize_batch(2)
    assert t.shape == Shape(2, 1, 1, 2)
    assert t.storage is storage
    assert t.storage.alloc_size == 8
    t.resize_batch(6)
    assert t.storage.alloc_size == 12


def test_reshape_keeps_values() -> None:
    t = tensor(np.arange(6.0))
    t.reshape(Shape(3, 2))
    assert np.array_equal(t.to_numpy()[0, 0], [[0.0, 1.0, 2.0], [3.0, 4.0, 5.0]])
    with pytest.raises(ValueError, match="Cannot reshape"):
        t.reshape(Shape(4))


def test_arithmetic() -> None:
    a = tensor([[1.0, 2.0], [3.0, 4.0]])
    b = tensor([[10.0, 20.0]])

    assert np.array_equal((a + b).to_numpy()[0, 0], [[11.0, 22.0], [13.0, 24.0]])
    assert np.array_equal((a - b).to_numpy()[0, 0], [[-9.0, -18.0], [-7.0, -16.0]])
    assert np.array_equal((a * 2.0).to_numpy()[0, 0], [[2.0, 4.0], [6.0, 8.0]])
    assert np.allclose((b / a).to_numpy()[0, 0], [[10.0, 10.0], [10 / 3, 5.0]])
    assert np.array_equal((a + 1.0).to_numpy()[0, 0], [[2.0, 3.0], [4.0, 5.0]])
    assert np.array_equal((-a).to_numpy(), -a.to_numpy())


def test_matmul_and_transpose() -> None:
    a = tensor(np.arange(6.0).reshape(2, 3))
    b = tensor(np.arange(12.0).reshape(3, 4))

    product = a @ b
    expected = np.arange(6.0).reshape(2, 3) @ np.arange(12.0).reshape(3, 4)
    assert product.shape == Shape(4, 2)
    assert np.array_equal(product.to_numpy()[0, 0], expected)

    transposed = a.matmul(a, transpose_other=True)
    assert transposed.shape == Shape(2, 2)
    assert a.transposed().shape == Shape(2, 3)
    with pytest.raises(ValueError, match="Cannot multiply"):
        _ = a @ a


def test_reductions() -> None:
    values = np.arange(24.0).reshape(2, 3, 2, 2)
    t = tensor(values)
    assert np.array_equal(t.sum().to_numpy().ravel(), [values.sum()])
    assert np.array_equal(
        t.sum(Axis.WHN).to_numpy(), values.sum(axis=(0, 2, 3), keepdims=True)
    )
    assert np.allclose(t.mean(Axis.BATCH).to_numpy(), values.mean(axis=0, keepdims=True))


def test_broadcast_shape() -> None:
    assert broadcast_shape(Shape(3, 1, 2, 4), Shape(1, 5, 2, 1)) == Shape(3, 5, 2, 4)
    with pytest.raises(ValueError, match="cannot be broadcast"):
        broadcast_shape(Shape(3), Shape(2))


def test_copy_from_takes_shape_and_values() -> None:
    source = tensor(np.arange(4.0).reshape(2, 2))
    target = Tensor(Shape(1))
    target.copy_from(source)
    assert target.shape == source.shape
    assert np.array_equal(target.to_numpy(), source.to_numpy())


def test_offloadable_tensor_round_trip(memory: MemoryManager) -> None:
    t = Tensor(Shape(3), storage_type=StorageType.OFFLOADABLE, memory=memory)
    t.set_values([1.0, 2.0, 3.0])
    t.prefetch()
    t.copy_to_device()
    assert t.location is Location.DEVICE
    assert memory.prefetches_issued == 1

    t.device_values()[...] *= 10
    t.offload()
    assert np.array_equal(t.to_numpy().ravel(), [10.0, 20.0, 30.0])
    assert memory.offloads_issued == 1


def test_fill_with_rand_bounds() -> None:
    t = Tensor(Shape(10, 10)).fill_with_rand(0.0, 0.5, np.random.default_rng(seed=0))
    values = t.to_numpy()
    assert values.min() >= 0.0
    assert values.max() <= 0.5
