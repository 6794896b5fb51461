"""Process configuration read from environment variables."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from functools import lru_cache

logger = logging.getLogger(__name__)

_OP_MODES = ("cpu", "multi_cpu", "accelerator")


@dataclass(frozen=True)
class Config:
    """Library defaults.

    Attributes:
        op_mode (str): Default compute backend, one of
            `cpu`, `multi_cpu` or `accelerator`.
        num_threads (int): Worker count of the multi-threaded CPU backend.
        seed (int | None): Seed for random initializers and dropout masks.
            `None` means non-deterministic seeding.
    """

    op_mode: str = "cpu"
    num_threads: int = 1
    seed: int | None = None


def load_config(environ: Mapping[str, str] | None = None) -> Config:
    """Build a `Config` from environment variables.

    Recognized variables are `GRAPHGRAD_OP_MODE`, `GRAPHGRAD_NUM_THREADS`
    and `GRAPHGRAD_SEED`.

    Args:
        environ (Mapping[str, str] | None): Variables to read from.
            Defaults to None, meaning `os.environ`.

    Raises:
        ValueError: If a variable holds an unsupported value.

    Returns:
        Config: The parsed configuration.
    """
    env = os.environ if environ is None else environ

    op_mode = env.get("GRAPHGRAD_OP_MODE", "cpu").strip().lower()
    if op_mode not in _OP_MODES:
        raise ValueError(f'GRAPHGRAD_OP_MODE must be one of {_OP_MODES}, got "{op_mode}"')

    num_threads = int(env.get("GRAPHGRAD_NUM_THREADS", os.cpu_count() or 1))
    if num_threads < 1:
        raise ValueError(f"GRAPHGRAD_NUM_THREADS must be positive, got {num_threads}")

    raw_seed = env.get("GRAPHGRAD_SEED")
    seed = int(raw_seed) if raw_seed not in (None, "") else None

    config = Config(op_mode=op_mode, num_threads=num_threads, seed=seed)
    logger.debug(f"Loaded config: {config}")
    return config


@lru_cache(maxsize=1)
def get_config() -> Config:
    """The cached process configuration."""
    return load_config()


def reload_config() -> Config:
    """Drop the cached configuration and read the environment again.

    Returns:
        Config: The freshly loaded configuration.
    """
    get_config.cache_clear()
    return get_config()


__all__ = [
    "Config",
    "get_config",
    "load_config",
    "reload_config",
]
