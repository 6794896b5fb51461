"""Tests for configuration and error reporting."""

from __future__ import annotations

import logging
from collections.abc import Iterator

import pytest
from graphgrad import InvariantViolation, get_config, reload_config
from graphgrad.config import Config, load_config
from graphgrad.errors import check


@pytest.fixture
def _restore_config() -> Iterator[None]:
    yield
    reload_config()


def test_defaults() -> None:
    config = load_config({})
    assert config.op_mode == "cpu"
    assert config.num_threads >= 1
    assert config.seed is None


def test_environment_overrides() -> None:
    config = load_config(
        {
            "GRAPHGRAD_OP_MODE": " Multi_CPU ",
            "GRAPHGRAD_NUM_THREADS": "3",
            "GRAPHGRAD_SEED": "7",
        }
    )
    assert config == Config(op_mode="multi_cpu", num_threads=3, seed=7)


@pytest.mark.parametrize(
    ("environ", "match"),
    [
        ({"GRAPHGRAD_OP_MODE": "gpu"}, "GRAPHGRAD_OP_MODE"),
        ({"GRAPHGRAD_NUM_THREADS": "0"}, "GRAPHGRAD_NUM_THREADS"),
        ({"GRAPHGRAD_NUM_THREADS": "many"}, "invalid literal"),
    ],
)
def test_invalid_values(environ: dict[str, str], match: str) -> None:
    with pytest.raises(ValueError, match=match):
        load_config(environ)


@pytest.mark.usefixtures("_restore_config")
def test_reload_reads_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GRAPHGRAD_SEED", "11")
    assert reload_config().seed == 11
    assert get_config() is get_config()

    monkeypatch.delenv("GRAPHGRAD_SEED")
    assert get_config().seed == 11
    assert reload_config().seed is None


def test_check_logs_and_raises(caplog: pytest.LogCaptureFixture) -> None:
    check(True, "never raised")

    with caplog.at_level(logging.CRITICAL, logger="graphgrad.errors"):
        with pytest.raises(InvariantViolation, match="broken") as exc_info:
            check(False, "Something is broken", "node_1")

    assert exc_info.value.entity == "node_1"
    assert isinstance(exc_info.value, RuntimeError)
    assert 'broken (entity: "node_1")' in caplog.text
