"""Tests for the SGD and Adam optimizers."""

from __future__ import annotations

from collections import OrderedDict

import numpy as np
import pytest
from graphgrad import SGD, Adam, Graph, Placeholder, Session, Shape, Tensor, TensorLike, Variable
from graphgrad.graph import functional as F


def _quadratic(graph: Graph, values: list[float]) -> tuple[Variable, TensorLike]:
    """`w` and the loss `sum(w * w)`, whose gradient is `2 * w`."""
    w = Variable(graph, np.array(values), name="w")
    return w, F.sum(F.multiply(w, w))


def _values(variable: Variable) -> np.ndarray:
    return variable.value.to_numpy().ravel()


def test_sgd_step(graph: Graph, session: Session) -> None:
    w, loss = _quadratic(graph, [1.0, -2.0])
    session.run([loss])
    updated = SGD(lr=0.1).minimize(session, loss)

    assert updated == [w]
    assert np.allclose(_values(w), [0.8, -1.6])


def test_sgd_averages_over_batch(graph: Graph, session: Session) -> None:
    w, loss = _quadratic(graph, [1.0, -2.0])
    session.run([loss])
    SGD(lr=0.1).minimize(session, loss, batch_size=4)
    assert np.allclose(_values(w), [0.95, -1.9])


def test_sgd_momentum_and_weight_decay(graph: Graph, session: Session) -> None:
    w, loss = _quadratic(graph, [1.0])
    optimizer = SGD(lr=0.1, friction=0.5, weight_decay=0.1)

    expected, momentum = 1.0, 0.0
    for _ in range(3):
        session.run([loss])
        optimizer.minimize(session, loss)
        momentum = 0.5 * momentum + 2 * expected
        expected = expected * (1 - 0.1 * 0.1) - 0.1 * momentum
    assert np.allclose(_values(w), [expected], rtol=1e-5)
    assert list(optimizer.get_state()) == ["m.w"]


def test_adam_first_step_moves_by_lr(graph: Graph, session: Session) -> None:
    w, loss = _quadratic(graph, [1.0, -2.0, 0.5])
    optimizer = Adam(lr=0.01)

    session.run([loss])
    optimizer.minimize(session, loss)

    assert optimizer.t == 1
    assert np.allclose(_values(w), [0.99, -1.99, 0.49], rtol=1e-5)


def test_minimize_restricts_to_given_variables(graph: Graph, session: Session) -> None:
    a = Variable(graph, np.ones(2), name="a")
    b = Variable(graph, np.ones(2), name="b")
    loss = F.sum(F.multiply(a, b))

    session.run([loss])
    updated = SGD(lr=0.5).minimize(session, loss, variables=[b])

    assert updated == [b]
    assert np.allclose(_values(a), 1.0)
    assert np.allclose(_values(b), 0.5)


def test_non_trainable_variables_are_rejected(graph: Graph) -> None:
    frozen = Variable(graph, np.ones(2), name="frozen", trainable=False)
    with pytest.raises(ValueError, match="not trainable"):
        SGD().step([frozen])


@pytest.mark.parametrize("optimizer", [SGD(lr=0.2), Adam(lr=0.05)], ids=["sgd", "adam"])
def test_linear_regression_converges(graph: Graph, session: Session, optimizer: SGD | Adam) -> None:
    rng = np.random.default_rng(seed=0)
    true_w = np.array([[0.5], [-1.5], [2.0]])
    features = rng.uniform(-1.0, 1.0, (32, 1, 1, 3))
    targets = features @ true_w

    x = Placeholder(graph, Shape(3, 1), name="x")
    y = Placeholder(graph, Shape(1, 1), name="y")
    w = Variable(graph, np.zeros((3, 1)), name="w")
    diff = F.subtract(F.matmul(x, w), y)
    loss = F.mean(F.multiply(diff, diff))

    for _ in range(400):
        session.run([loss], {x: features, y: targets})
        optimizer.minimize(session, loss)

    (final,) = session.run([loss], {x: features, y: targets})
    assert final.to_numpy().item() < 1e-4
    assert np.allclose(w.value.to_numpy()[0, 0], true_w, atol=1e-2)


# =============================================================================
# State
# =============================================================================


def test_adam_state_round_trip(graph: Graph, session: Session) -> None:
    w, loss = _quadratic(graph, [1.0, -2.0])
    trained = Adam(lr=0.1)
    for _ in range(2):
        session.run([loss])
        trained.minimize(session, loss)

    state = trained.get_state()
    assert list(state) == ["t", "m.w", "v.w"]

    restored = Adam(lr=0.1).load_state(state=state)
    assert restored.t == 2
    for key in ("m.w", "v.w"):
        assert np.array_equal(restored.get_state()[key].to_numpy(), state[key].to_numpy())
        assert restored.get_state()[key] is not state[key]

    # continuing from the restored state matches continuing the original
    other_graph = Graph("copy")
    w_copy = Variable(other_graph, w.value, name="w")
    other_loss = F.sum(F.multiply(w_copy, w_copy))
    other_session = Session(other_graph)
    session.run([loss])
    trained.minimize(session, loss)
    other_session.run([other_loss])
    restored.minimize(other_session, other_loss)
    assert np.allclose(_values(w_copy), _values(w))


def test_load_state_validation(graph: Graph, session: Session) -> None:
    w, loss = _quadratic(graph, [1.0, -2.0])
    optimizer = SGD(lr=0.1, friction=0.5)
    session.run([loss])
    optimizer.minimize(session, loss)

    with pytest.raises(KeyError, match="m.w"):
        optimizer.load_state(state=OrderedDict())
    optimizer.load_state(state=OrderedDict(), partial=True)

    with pytest.raises(TypeError, match="Tensor"):
        optimizer.load_state(state=OrderedDict([("m.w", np.zeros(2))]))  # type: ignore[list-item]
    with pytest.raises(ValueError, match="does not align"):
        optimizer.load_state(state=OrderedDict([("m.w", Tensor(Shape(3)))]))
    with pytest.raises(KeyError, match="Unknown SGD state"):
        optimizer.load_state(state=OrderedDict([("v.w", Tensor(Shape(2)))]), partial=True)


def test_invalid_hyperparameters() -> None:
    with pytest.raises(ValueError, match="lr"):
        SGD(lr=0)
    with pytest.raises(ValueError, match="friction"):
        SGD(friction=1.5)
