"""Multi-threaded CPU backend with fork-join parallelism over the batch."""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import numpy as np

from .compute import CpuBackend

logger = logging.getLogger(__name__)


def _batch_chunks(batch: int, num_chunks: int) -> list[tuple[int, int]]:
    """Split `range(batch)` into at most `num_chunks` contiguous ranges."""
    num_chunks = max(1, min(batch, num_chunks))
    bounds = np.linspace(0, batch, num_chunks + 1).astype(int)
    return [(int(start), int(stop)) for start, stop in zip(bounds[:-1], bounds[1:], strict=True)]


def _is_batched(value: Any, batch: int) -> bool:
    return isinstance(value, np.ndarray) and value.ndim == 4 and value.shape[0] == batch


class MultiCpuBackend(CpuBackend):
    """Numpy kernels split along the batch dimension across a thread pool.

    Every parallel loop is joined before the primitive returns, so
    parallelism never spans more than one primitive invocation. Chunk
    boundaries depend only on the batch size and `num_threads`, which keeps
    results reproducible between runs.

    Args:
        num_threads (int): Number of worker threads. Defaults to 2.
        seed (int | None): Seed for dropout masks. Defaults to None.
    """

    def __init__(self, num_threads: int = 2, seed: int | None = None) -> None:
        super().__init__(seed=seed)
        if num_threads < 1:
            raise ValueError(f"num_threads must be positive, got {num_threads}")
        self.num_threads = num_threads
        self._pool = ThreadPoolExecutor(
            max_workers=num_threads,
            thread_name_prefix="graphgrad-cpu",
        )

    def _parallel_for(
        self, fn: Callable[[int, int], Any], chunks: list[tuple[int, int]]
    ) -> list[Any]:
        futures = [self._pool.submit(fn, start, stop) for start, stop in chunks]
        # result() re-raises worker exceptions
        return [future.result() for future in futures]

    def _map_batch(self, fn: Callable[..., Any], out: Any, *arrays: Any) -> None:
        batch = out.shape[0]
        chunks = _batch_chunks(batch, self.num_threads)
        if len(chunks) == 1:
            super()._map_batch(fn, out, *arrays)
            return

        def run(start: int, stop: int) -> None:
            sliced = [a[start:stop] if _is_batched(a, batch) else a for a in arrays]
            out[start:stop] = fn(*sliced)

        self._parallel_for(run, chunks)

    def _reduce_batch(self, fn: Callable[..., Any], *arrays: Any) -> Any:
        batch = max(a.shape[0] for a in arrays if isinstance(a, np.ndarray))
        chunks = _batch_chunks(batch, self.num_threads)
        if len(chunks) == 1:
            return super()._reduce_batch(fn, *arrays)

        def run(start: int, stop: int) -> Any:
            return fn(*[a[start:stop] if _is_batched(a, batch) else a for a in arrays])

        partials = self._parallel_for(run, chunks)
        total = partials[0]
        for partial in partials[1:]:
            total = total + partial
        return total

    def shutdown(self) -> None:
        """Stop the worker threads."""
        self._pool.shutdown(wait=True)


__all__ = [
    "MultiCpuBackend",
]
