"""Optimizers updating graph variables from their accumulated gradients."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from collections.abc import Sequence
from typing import TYPE_CHECKING

from .tensor import Tensor

if TYPE_CHECKING:
    from .graph.node import TensorLike, Variable
    from .graph.session import Session

logger = logging.getLogger(__name__)


class Optimizer(ABC):
    """Abstract base class for all optimizers.

    Optimizer state is created lazily, one set of tensors per variable name,
    the first time a variable is updated. **All state must be of type
    `Tensor`**, so that `get_state` and `load_state` can round-trip it.

    Args:
        lr (float): The learning rate. Defaults to 1e-3.
    """

    def __init__(self, *, lr: float = 1e-3) -> None:
        if lr <= 0:
            raise ValueError(f"lr must be positive, got {lr}")
        self.lr = lr

    def minimize(
        self,
        session: Session,
        loss: TensorLike,
        variables: Sequence[Variable] | None = None,
        batch_size: int = 1,
    ) -> list[Variable]:
        """Back-propagate from `loss` and update the variables.

        Expects the forward values of `loss` to be computed already.

        Args:
            session (Session): Session of the graph containing `loss`.
            loss (TensorLike): The node to minimize.
            variables (Sequence[Variable] | None): Variables to update.
                Defaults to None, meaning all that received a gradient.
            batch_size (int): Number of samples the gradients are summed
                over. Defaults to 1.

        Returns:
            list[Variable]: The updated variables.
        """
        with_gradient = session.compute_gradients(loss)
        if variables is None:
            targets = with_gradient
        else:
            wanted = {id(variable) for variable in variables}
            targets = [variable for variable in with_gradient if id(variable) in wanted]
        self.step(targets, batch_size)
        return targets

    def _check_variables(self, variables: Sequence[Variable]) -> None:
        for variable in variables:
            if not variable.trainable:
                raise ValueError(f'Variable "{variable.name}" is not trainable')

    @abstractmethod
    def step(self, variables: Sequence[Variable], batch_size: int = 1) -> None:
        """The step function to update the variables.

        Must be implemented by the specific optimizer.

        Raises:
            InvariantViolation: If a variable has no gradient.
        """

    @abstractmethod
    def get_state(self) -> OrderedDict[str, Tensor]:
        """The state of the optimizer, keyed by `<kind>.<variable name>`."""

    def load_state(
        self, *, state: OrderedDict[str, Tensor], partial: bool = False
    ) -> Optimizer:
        """Load/initialize the state of the optimizer.

        Args:
            state (OrderedDict[str, Tensor]): The state, as returned by
                `get_state`.
            partial (bool): If True, allow keys of the current state to be
                missing in `state`. If False, raises on missing keys.
                Defaults to False.

        Raises:
            KeyError: If a current key is missing and `partial` is False.
            TypeError: If a value is not a `Tensor`.
            ValueError: If a value does not match the current shape.

        Returns:
            Optimizer: self, for method chaining.
        """
        current = self.get_state()
        if not partial:
            for key in current:
                if key not in state:
                    raise KeyError(f'Optimizer state "{key}" not found in passed state!')

        for key, value in state.items():
            if not isinstance(value, Tensor):
                raise TypeError(
                    'Data in passed state must be of type "Tensor", '
                    f'found "{type(value).__name__}" ({value})'
                )
            target = current.get(key)
            if target is not None and target.shape != value.shape:
                raise ValueError(
                    f'Shape of state "{key}" does not align. Found "{value.shape}", '
                    f'expected "{target.shape}".'
                )
            self._set_state(key, value)
        return self

    @abstractmethod
    def _set_state(self, key: str, value: Tensor) -> None:
        """Copy `value` into the state entry `key`, creating it if needed."""


def _state_like(variable: Variable, kind: str) -> Tensor:
    return Tensor(
        variable.shape, name=f"{kind}.{variable.name}", op_mode=variable.value.op_mode
    ).zero()


def _copy_state(value: Tensor) -> Tensor:
    result = Tensor(value.shape, name=value.name, op_mode=value.op_mode)
    result.op.copy(value, result)
    return result


class SGD(Optimizer):
    """Stochastic gradient descent optimizer.

    Note: By default, vanilla SGD is used. However, when setting
    the arguments accordingly, it can become SGD with momentum and also
    apply weight decay.

    **Standard SGD:** `friction=1, weight_decay=0`
    **SGD w/ momentum:** `friction<1, weight_decay=0`
    **SGDW:** `friction<1, weight_decay>0`

    Args:
        lr (float, optional): The learning rate. Defaults to 1e-3.
        friction (float, optional): How much friction to apply on the
            momentum. If friction is 1 (100%), then we do not use momentum,
            as in every step all previous momentum is lost.
            A typical value is `0.1`. Defaults to 1.
        weight_decay (float, optional): Decay rate of the variables.
            Defaults to `0`.
    """

    def __init__(self, *, lr: float = 1e-3, friction: float = 1, weight_decay: float = 0) -> None:
        super().__init__(lr=lr)
        if not 0 <= friction <= 1:
            raise ValueError(f"friction must be in [0, 1], got {friction}")
        self.friction = friction
        self.weight_decay = weight_decay
        self.m: OrderedDict[str, Tensor] = OrderedDict()

    @property
    def uses_momentum(self) -> bool:
        return self.friction < 1

    def step(self, variables: Sequence[Variable], batch_size: int = 1) -> None:
        """Performs a single gradient descent step."""
        self._check_variables(variables)
        for variable in variables:
            momentum = None
            if self.uses_momentum:
                momentum = self.m.get(variable.name)
                if momentum is None:
                    momentum = self.m[variable.name] = _state_like(variable, "m")
            variable.value.op.sgd_step(
                variable.value,
                variable.gradient,
                batch_size,
                self.lr,
                weight_decay=self.weight_decay,
                momentum=momentum,
                friction=self.friction,
            )
        logger.debug(f"SGD step on {len(variables)} variables")

    def get_state(self) -> OrderedDict[str, Tensor]:
        return OrderedDict((f"m.{name}", m) for name, m in self.m.items())

    def _set_state(self, key: str, value: Tensor) -> None:
        kind, _, name = key.partition(".")
        if kind != "m":
            raise KeyError(f'Unknown SGD state "{key}"')
        current = self.m.get(name)
        if current is None:
            self.m[name] = _copy_state(value)
        else:
            current.op.copy(value, current)


class Adam(Optimizer):
    """The Adam optimizer.

    Note: By setting `weight_decay` > 0 this becomes `AdamW`.

    Args:
        lr (float, optional): The learning rate, also called `alpha`
            in the paper. Defaults to 1e-3.
        beta_1 (float, optional): Exponential decay rate for
            the momentum. Defaults to 0.9.
        beta_2 (float, optional): Exponential decay rate for
            the noise. Defaults to 0.999.
        epsilon (float, optional): Value added to `v` to improve
            numerical stability and avoid division by zero. Defaults to 1e-8.
        weight_decay (float, optional): Decay rate of the variables.
            Defaults to `0`, meaning vanilla Adam is used.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        lr: float = 1e-3,
        beta_1: float = 0.9,
        beta_2: float = 0.999,
        epsilon: float = 1e-8,
        weight_decay: float = 0,
    ) -> None:
        super().__init__(lr=lr)
        self.beta_1 = beta_1
        self.beta_2 = beta_2
        self.epsilon = epsilon
        self.weight_decay = weight_decay
        self.t = 0
        self.m: OrderedDict[str, Tensor] = OrderedDict()
        self.v: OrderedDict[str, Tensor] = OrderedDict()

    def step(self, variables: Sequence[Variable], batch_size: int = 1) -> None:
        """Performs a single Adam step."""
        self._check_variables(variables)
        self.t += 1
        for variable in variables:
            if variable.name not in self.m:
                self.m[variable.name] = _state_like(variable, "m")
            if variable.name not in self.v:
                self.v[variable.name] = _state_like(variable, "v")
            variable.value.op.adam_step(
                variable.value,
                variable.gradient,
                self.m[variable.name],
                self.v[variable.name],
                batch_size,
                self.lr,
                self.beta_1,
                self.beta_2,
                self.epsilon,
                self.t,
                weight_decay=self.weight_decay,
            )
        logger.debug(f"Adam step {self.t} on {len(variables)} variables")

    def get_state(self) -> OrderedDict[str, Tensor]:
        state: OrderedDict[str, Tensor] = OrderedDict()
        state["t"] = Tensor.from_array([float(self.t)], name="t")
        for name, m in self.m.items():
            state[f"m.{name}"] = m
        for name, v in self.v.items():
            state[f"v.{name}"] = v
        return state

    def _set_state(self, key: str, value: Tensor) -> None:
        if key == "t":
            self.t = int(value.to_numpy().item())
            return
        kind, _, name = key.partition(".")
        if kind not in ("m", "v"):
            raise KeyError(f'Unknown Adam state "{key}"')
        states = self.m if kind == "m" else self.v
        current = states.get(name)
        if current is None:
            states[name] = _copy_state(value)
        else:
            current.op.copy(value, current)


__all__ = [
    "SGD",
    "Adam",
    "Optimizer",
]
