"""Tests for the compute backends and op mode selection.

The multi-threaded and accelerator backends must agree with the single
threaded reference backend on every registered operation, forward and
backward.
"""

from __future__ import annotations

from collections.abc import Iterator

import numpy as np
import pytest
from graphgrad import (
    Axis,
    Constant,
    DataFormat,
    Graph,
    Location,
    OpMode,
    PoolingMode,
    Session,
    Shape,
    Variable,
    get_default_op_mode,
    op_mode,
    op_mode_fn,
    set_default_op_mode,
)
from graphgrad.backend import CpuBackend, get_backend
from graphgrad.backend.accelerator import AcceleratorBackend
from graphgrad.backend.multi_cpu import MultiCpuBackend, _batch_chunks
from graphgrad.backend.op_mode import _BACKENDS
from graphgrad.graph.operation import get_operation_spec, registered_operations
from graphgrad.graph.ops import Conv2dOp, MultiplyOp, Pool2dOp, SumOp, UpSample2dOp
from graphgrad.tensor import Tensor

_INPUT_NAMES = ("x", "y", "z")


@pytest.fixture
def multi_cpu(monkeypatch: pytest.MonkeyPatch) -> Iterator[MultiCpuBackend]:
    """A three thread backend installed for `OpMode.MULTI_CPU`."""
    backend = MultiCpuBackend(num_threads=3)
    monkeypatch.setitem(_BACKENDS, OpMode.MULTI_CPU, backend)
    yield backend
    backend.shutdown()


def _input_values(shape: Shape, constraint: str | None, rng: np.random.Generator) -> np.ndarray:
    if constraint == "positive":
        return rng.uniform(0.5, 2.0, shape.array_shape)
    if constraint == "distinct":
        return rng.permutation(np.arange(shape.length) * 0.1).reshape(shape.array_shape)
    return rng.uniform(-1.0, 1.0, shape.array_shape)


def _run_operation(op_name: str, mode: OpMode) -> tuple[np.ndarray, list[np.ndarray]]:
    """Forward and backward pass of a registered operation under `mode`."""
    spec = get_operation_spec(op_name)
    constraints = spec.constraints or {}
    rng = np.random.default_rng(seed=0)

    graph = Graph(op_name)
    session = Session(graph)
    inputs = [
        Variable(graph, _input_values(shape, constraints.get(name), rng), name=name)
        for name, shape in zip(_INPUT_NAMES, spec.input_shapes, strict=False)
    ]
    op = spec.build(*inputs)
    weights = Constant(graph, rng.uniform(-1.0, 1.0, op.shape.array_shape), name="weights")
    loss = SumOp(MultiplyOp(op, weights), Axis.GLOBAL)

    with op_mode(mode):
        (out, _) = session.run([op, loss], training=spec.training)
        session.compute_gradients(loss)
        grads = [variable.gradient.to_numpy() for variable in inputs]
        return out.to_numpy(), grads


@pytest.mark.parametrize("op_name", sorted(registered_operations()))
@pytest.mark.parametrize("mode", [OpMode.MULTI_CPU, OpMode.ACCELERATOR])
def test_backends_agree_with_cpu(op_name: str, mode: OpMode, multi_cpu: MultiCpuBackend) -> None:
    expected_out, expected_grads = _run_operation(op_name, OpMode.CPU)
    out, grads = _run_operation(op_name, mode)

    assert np.allclose(out, expected_out, rtol=1e-5, atol=1e-6), (
        f"Forward mismatch for {op_name} on {mode.value}:\n"
        f"Max diff: {np.max(np.abs(out - expected_out))}"
    )
    for name, grad, expected in zip(_INPUT_NAMES, grads, expected_grads, strict=False):
        assert np.allclose(grad, expected, rtol=1e-5, atol=1e-6), (
            f"Gradient mismatch for {op_name} w.r.t. {name} on {mode.value}:\n"
            f"Max diff: {np.max(np.abs(grad - expected))}"
        )


# =============================================================================
# Multi-threaded CPU
# =============================================================================


def test_batch_chunks() -> None:
    assert _batch_chunks(7, 3) == [(0, 2), (2, 4), (4, 7)]
    assert _batch_chunks(2, 8) == [(0, 1), (1, 2)]
    assert _batch_chunks(5, 1) == [(0, 5)]


def test_multi_cpu_is_reproducible(multi_cpu: MultiCpuBackend) -> None:
    rng = np.random.default_rng(seed=0)
    x = Tensor.from_array(rng.uniform(-1.0, 1.0, (9, 2, 4, 4)))
    kernels = Tensor.from_array(rng.uniform(-1.0, 1.0, (3, 2, 3, 3)))
    grad = Tensor.from_array(rng.uniform(-1.0, 1.0, (9, 3, 2, 2)))

    results = []
    for _ in range(2):
        kernels_grad = Tensor(kernels.shape)
        multi_cpu.conv2d_kernels_gradient(x, grad, 1, 0, 0, DataFormat.NCHW, kernels_grad)
        results.append(kernels_grad.to_numpy())
    assert np.array_equal(results[0], results[1])

    reference = Tensor(kernels.shape)
    get_backend(OpMode.CPU).conv2d_kernels_gradient(
        x, grad, 1, 0, 0, DataFormat.NCHW, reference
    )
    assert np.allclose(results[0], reference.to_numpy(), rtol=1e-5, atol=1e-5)


def test_multi_cpu_broadcasts_batch_one_operands(multi_cpu: MultiCpuBackend) -> None:
    a = Tensor.from_array(np.arange(12.0).reshape(6, 1, 1, 2))
    b = Tensor.from_array(np.array([[[[10.0, 20.0]]]]))
    out = Tensor(a.shape)
    multi_cpu.add(1.0, a, 1.0, b, out)
    assert np.array_equal(out.to_numpy(), a.to_numpy() + b.to_numpy())


def test_multi_cpu_rejects_invalid_thread_count() -> None:
    with pytest.raises(ValueError, match="num_threads"):
        MultiCpuBackend(num_threads=0)


# =============================================================================
# Accelerator
# =============================================================================


def test_accelerator_leaves_results_on_device() -> None:
    x = Tensor.from_array(np.array([1.0, 4.0, 9.0]))
    out = Tensor(x.shape)
    assert x.location is Location.HOST

    get_backend(OpMode.ACCELERATOR).sqrt(x, out)

    assert x.location is Location.DEVICE
    assert out.location is Location.DEVICE
    assert np.allclose(out.to_numpy(), [[[[1.0, 2.0, 3.0]]]])
    assert out.location is Location.HOST


def test_backend_instances_are_shared() -> None:
    assert isinstance(get_backend(OpMode.CPU), CpuBackend)
    assert isinstance(get_backend(OpMode.ACCELERATOR), AcceleratorBackend)
    assert get_backend(OpMode.CPU) is get_backend(OpMode.CPU)


# =============================================================================
# Kernels
# =============================================================================


def _reference_conv2d(x: np.ndarray, k: np.ndarray, stride: int, px: int, py: int) -> np.ndarray:
    x = np.pad(x, ((0, 0), (0, 0), (py, py), (px, px)))
    n, _, h, w = x.shape
    kernels_num, _, kh, kw = k.shape
    out_h, out_w = (h - kh) // stride + 1, (w - kw) // stride + 1
    out = np.zeros((n, kernels_num, out_h, out_w))
    for i in range(out_h):
        for j in range(out_w):
            patch = x[:, :, i * stride : i * stride + kh, j * stride : j * stride + kw]
            out[:, :, i, j] = np.einsum("nchw,kchw->nk", patch, k)
    return out


@pytest.mark.parametrize(("stride", "padding"), [(1, 0), (1, 1), (2, (1, 0))])
def test_conv2d_matches_reference(
    graph: Graph, session: Session, stride: int, padding: int | tuple[int, int]
) -> None:
    rng = np.random.default_rng(seed=0)
    x_values = rng.uniform(-1.0, 1.0, (2, 3, 6, 5))
    k_values = rng.uniform(-1.0, 1.0, (4, 3, 3, 2))
    x = Variable(graph, x_values, name="x")
    kernels = Variable(graph, k_values, name="kernels")

    (out,) = session.run([Conv2dOp(x, kernels, stride=stride, padding=padding)])

    px, py = padding if isinstance(padding, tuple) else (padding, padding)
    expected = _reference_conv2d(x_values, k_values, stride, px, py)
    assert out.shape == Shape.from_array_shape(expected.shape)
    assert np.allclose(out.to_numpy(), expected, rtol=1e-5, atol=1e-5)


def test_conv2d_nhwc_matches_nchw(graph: Graph, session: Session) -> None:
    rng = np.random.default_rng(seed=0)
    x_values = rng.uniform(-1.0, 1.0, (2, 3, 6, 5))
    x_nchw = Variable(graph, x_values, name="x_nchw")
    x_nhwc = Variable(graph, x_values.transpose(0, 2, 3, 1), name="x_nhwc")
    kernels = Variable(graph, rng.uniform(-1.0, 1.0, (4, 3, 3, 2)), name="kernels")

    nchw, nhwc = session.run(
        [
            Conv2dOp(x_nchw, kernels, padding=1),
            Conv2dOp(x_nhwc, kernels, padding=1, data_format=DataFormat.NHWC),
        ]
    )
    assert nhwc.shape == Shape(4, 6, 6, 2)
    assert np.allclose(nhwc.to_numpy(), nchw.to_numpy().transpose(0, 2, 3, 1), rtol=1e-5)


def test_pooling(graph: Graph, session: Session) -> None:
    x = Variable(graph, np.arange(16.0).reshape(1, 1, 4, 4), name="x")
    max_pool, avg_pool = session.run(
        [Pool2dOp(x, mode=PoolingMode.MAX), Pool2dOp(x, mode=PoolingMode.AVG)]
    )
    assert np.array_equal(max_pool.to_numpy()[0, 0], [[5.0, 7.0], [13.0, 15.0]])
    assert np.array_equal(avg_pool.to_numpy()[0, 0], [[2.5, 4.5], [10.5, 12.5]])


def test_pooling_asymmetric_padding(graph: Graph, session: Session) -> None:
    x = Variable(graph, np.arange(12.0).reshape(1, 1, 3, 4), name="x")
    padded_rows = Pool2dOp(x, mode=PoolingMode.AVG, padding=(0, 1))
    padded_cols = Pool2dOp(x, mode=PoolingMode.MAX, padding=(1, 0))
    assert padded_rows.shape == Shape(2, 2, 1, 1)
    assert padded_cols.shape == Shape(3, 1, 1, 1)

    avg_pool, max_pool = session.run([padded_rows, padded_cols])
    assert np.array_equal(avg_pool.to_numpy()[0, 0], [[0.25, 1.25], [6.5, 8.5]])
    assert np.array_equal(max_pool.to_numpy()[0, 0], [[4.0, 6.0, 7.0]])


def test_upsample_repeats_values_and_sums_gradient(graph: Graph, session: Session) -> None:
    x = Variable(graph, np.array([[[[1.0, 2.0], [3.0, 4.0]]]]), name="x")
    upsampled = UpSample2dOp(x)
    weights = Constant(graph, np.arange(16.0).reshape(1, 1, 4, 4), name="weights")
    loss = SumOp(MultiplyOp(upsampled, weights))
    assert upsampled.shape == Shape(4, 4, 1, 1)

    (out, _) = session.run([upsampled, loss])
    assert np.array_equal(
        out.to_numpy()[0, 0],
        [[1.0, 1.0, 2.0, 2.0], [1.0, 1.0, 2.0, 2.0], [3.0, 3.0, 4.0, 4.0], [3.0, 3.0, 4.0, 4.0]],
    )

    session.compute_gradients(loss)
    assert np.array_equal(x.gradient.to_numpy()[0, 0], [[10.0, 18.0], [42.0, 50.0]])


def test_max_pool_ties_share_gradient(graph: Graph, session: Session) -> None:
    x = Variable(graph, np.ones((1, 1, 2, 2)), name="x")
    loss = SumOp(Pool2dOp(x))

    session.run([loss])
    session.compute_gradients(loss)
    assert np.array_equal(x.gradient.to_numpy(), np.ones((1, 1, 2, 2)))


# =============================================================================
# Op mode selection
# =============================================================================


def test_op_mode_context_restores_default() -> None:
    set_default_op_mode(OpMode.CPU)
    with op_mode(OpMode.ACCELERATOR):
        assert get_default_op_mode() is OpMode.ACCELERATOR
        with op_mode(OpMode.MULTI_CPU):
            assert get_default_op_mode() is OpMode.MULTI_CPU
        assert get_default_op_mode() is OpMode.ACCELERATOR
    assert get_default_op_mode() is OpMode.CPU


def test_op_mode_fn_decorator() -> None:
    @op_mode_fn(OpMode.ACCELERATOR)
    def current() -> OpMode:
        return get_default_op_mode()

    assert current() is OpMode.ACCELERATOR
    assert get_default_op_mode() is OpMode.CPU


def test_per_tensor_override() -> None:
    pinned = Tensor(Shape(2), op_mode=OpMode.ACCELERATOR)
    default = Tensor(Shape(2))
    assert isinstance(pinned.op, AcceleratorBackend)
    assert isinstance(default.op, CpuBackend)
    assert not isinstance(default.op, MultiCpuBackend)
