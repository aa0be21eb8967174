"""Compensating-transaction context manager for multi-step provisioning."""

from __future__ import annotations

import logging
from collections.abc import Callable

from ..exceptions import FatalError, LBControllerError, ProvisionError

logger = logging.getLogger(__name__)


class Compensation:
    """Records an undo step for every resource created inside the block.

    Usage:
        with Compensation(group) as comp:
            client.create_monitor(...)
            comp.record("monitor m1", lambda: client.delete_monitor("m1"))
        # On an LBControllerError the recorded undo steps run newest-first and a
        # ProvisionError carrying the cause and any undo failures is raised.
    """

    def __init__(self, group: str):
        self.group = group
        self._steps: list[tuple[str, Callable[[], object]]] = []

    @property
    def recorded(self) -> list[str]:
        return [label for label, _ in self._steps]

    def record(self, label: str, undo: Callable[[], object]) -> None:
        """Register ``undo`` to run if the block fails."""
        self._steps.append((label, undo))

    def __enter__(self) -> Compensation:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_type is None:
            self._steps.clear()
            return False

        logger.warning(
            "Provisioning of group %s failed, undoing %d step(s): %s",
            self.group, len(self._steps), exc_val, extra={"group": self.group},
        )
        errors = self._rollback()

        if isinstance(exc_val, FatalError):
            return False
        if isinstance(exc_val, ProvisionError):
            exc_val.compensation_errors.extend(errors)
            return False
        if isinstance(exc_val, LBControllerError):
            raise ProvisionError(self.group, exc_val, errors) from exc_val
        return False  # Re-raise unexpected exceptions untouched

    def _rollback(self) -> list[BaseException]:
        errors: list[BaseException] = []
        while self._steps:
            label, undo = self._steps.pop()
            try:
                undo()
                logger.info("Undid %s", label, extra={"group": self.group, "resource": label})
            except Exception as exc:
                logger.error(
                    "Could not undo %s: %s", label, exc, extra={"group": self.group, "resource": label},
                )
                errors.append(exc)
        return errors
