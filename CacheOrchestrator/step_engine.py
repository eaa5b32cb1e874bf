"""Provisioning Step Engine — probe, act, and unwind on failure.

For every step in order the engine runs the step's probe. A satisfied probe
skips the forward action, but the step still counts as completed so that its
compensating action runs if a later step fails. The first failure stops the
run; completed steps are compensated in strict reverse order, best effort.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field

from .exceptions import CompensationFailure, RollbackPartial, StepFailed, WorkflowCancelled

logger = logging.getLogger(__name__)


class ProvisioningStep(ABC):
    """One idempotent unit of remote work."""

    name: str = "step"

    def probe(self) -> bool:
        """Return True when the forward action's effect is already in place."""
        return False

    @abstractmethod
    def apply(self) -> None:
        """Forward action. Raises on failure."""

    def compensate(self) -> None:
        """Undo this step's effect. Default: nothing to undo."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


@dataclass
class ExecutionTrace:
    """In-memory record of one workflow run."""

    performed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def completed(self) -> list[str]:
        return self.performed + self.skipped


class StepEngine:
    """Runs an ordered list of steps with reverse-order rollback.

    Args:
        cancel_event: When set, the engine refuses to start the next step and
            unwinds as if that step had failed with ``WorkflowCancelled``.
            A step already in flight always runs to completion.
    """

    def __init__(self, cancel_event: threading.Event | None = None) -> None:
        self._cancel_event = cancel_event

    def run(self, steps: Sequence[ProvisioningStep]) -> ExecutionTrace:
        trace = ExecutionTrace()
        completed: list[ProvisioningStep] = []

        for step in steps:
            if self._cancel_event is not None and self._cancel_event.is_set():
                cause = WorkflowCancelled(f"Cancelled before step '{step.name}'")
                logger.warning("Workflow cancelled before step %s", step.name)
                self._fail(step, cause, completed)

            try:
                if step.probe():
                    logger.info("Step %s: already satisfied, skipped", step.name)
                    trace.skipped.append(step.name)
                    completed.append(step)
                    continue
                logger.info("Step %s: applying", step.name)
                step.apply()
            except Exception as exc:
                logger.error("Step %s failed: %s", step.name, exc)
                self._fail(step, exc, completed)

            trace.performed.append(step.name)
            completed.append(step)
            logger.info("Step %s: done", step.name)

        return trace

    def _fail(
        self,
        step: ProvisioningStep,
        cause: BaseException,
        completed: list[ProvisioningStep],
    ) -> None:
        failures = self._unwind(completed)
        if failures:
            error = RollbackPartial(step.name, cause, failures)
            logger.critical("%s", error)
            raise error from cause
        raise StepFailed(step.name, cause) from cause

    def _unwind(self, completed: list[ProvisioningStep]) -> list[CompensationFailure]:
        """Compensate *completed* in reverse order, collecting failures."""
        failures: list[CompensationFailure] = []
        for step in reversed(completed):
            try:
                logger.info("Step %s: compensating", step.name)
                step.compensate()
            except Exception as exc:
                logger.error("Compensation of step %s failed: %s", step.name, exc)
                failures.append(CompensationFailure(step.name, exc))
        return failures
