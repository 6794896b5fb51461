"""Fatal invariant violations.

Graph construction mistakes (incompatible shapes, missing feeds, reading a
gradient that was never accumulated, over-releasing device references) are
programmer errors. They are reported by raising `InvariantViolation`, which
library code never catches.
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


class InvariantViolation(RuntimeError):  # noqa: N818
    """Raised when an invariant of the graph, tensor or storage layer is broken.

    Attributes:
        entity (str): Name of the offending node, tensor or storage.
            Empty if the violation is not tied to a named entity.
    """

    def __init__(self, message: str, entity: str = "") -> None:
        self.entity = entity
        full_message = f'{message} (entity: "{entity}")' if entity else message
        super().__init__(full_message)


def check(condition: bool, message: str, entity: str = "") -> None:
    """Abort with an `InvariantViolation` unless `condition` holds.

    Args:
        condition (bool): The invariant to check.
        message (str): Diagnostic naming the violated invariant.
        entity (str): Name of the offending entity. Defaults to "".

    Raises:
        InvariantViolation: If `condition` is falsy.
    """
    if condition:
        return
    error = InvariantViolation(message, entity)
    logger.critical(str(error))
    raise error


__all__ = [
    "InvariantViolation",
    "check",
]
