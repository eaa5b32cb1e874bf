"""Tests for StepEngine — ordering, skip-on-probe and reverse rollback."""

from __future__ import annotations

import threading

import pytest

from CacheOrchestrator.exceptions import RollbackPartial, StepFailed, WorkflowCancelled
from CacheOrchestrator.step_engine import ProvisioningStep, StepEngine


class RecordingStep(ProvisioningStep):
    def __init__(
        self,
        name: str,
        log: list[str],
        satisfied: bool = False,
        fail_apply: bool = False,
        fail_probe: bool = False,
        fail_compensate: bool = False,
        on_apply=None,
    ) -> None:
        self.name = name
        self.log = log
        self.satisfied = satisfied
        self.fail_apply = fail_apply
        self.fail_probe = fail_probe
        self.fail_compensate = fail_compensate
        self.on_apply = on_apply

    def probe(self) -> bool:
        if self.fail_probe:
            raise RuntimeError(f"probe {self.name} broke")
        return self.satisfied

    def apply(self) -> None:
        self.log.append(f"apply:{self.name}")
        if self.on_apply is not None:
            self.on_apply()
        if self.fail_apply:
            raise RuntimeError(f"{self.name} broke")

    def compensate(self) -> None:
        self.log.append(f"undo:{self.name}")
        if self.fail_compensate:
            raise RuntimeError(f"undo {self.name} broke")


class TestForwardRun:
    def test_runs_in_order(self) -> None:
        log: list[str] = []
        trace = StepEngine().run([RecordingStep(n, log) for n in "abc"])
        assert log == ["apply:a", "apply:b", "apply:c"]
        assert trace.performed == ["a", "b", "c"]
        assert trace.skipped == []

    def test_satisfied_probe_skips_apply(self) -> None:
        log: list[str] = []
        trace = StepEngine().run([
            RecordingStep("a", log),
            RecordingStep("b", log, satisfied=True),
        ])
        assert log == ["apply:a"]
        assert trace.skipped == ["b"]
        assert trace.completed == ["a", "b"]

    def test_empty(self) -> None:
        assert StepEngine().run([]).completed == []


class TestRollback:
    def test_reverse_order(self) -> None:
        log: list[str] = []
        with pytest.raises(StepFailed) as excinfo:
            StepEngine().run([
                RecordingStep("a", log),
                RecordingStep("b", log),
                RecordingStep("c", log, fail_apply=True),
                RecordingStep("d", log),
            ])
        assert log == ["apply:a", "apply:b", "apply:c", "undo:b", "undo:a"]
        assert excinfo.value.step_name == "c"
        assert isinstance(excinfo.value.cause, RuntimeError)
        assert not isinstance(excinfo.value, RollbackPartial)

    def test_skipped_steps_are_compensated(self) -> None:
        log: list[str] = []
        with pytest.raises(StepFailed):
            StepEngine().run([
                RecordingStep("a", log, satisfied=True),
                RecordingStep("b", log, fail_apply=True),
            ])
        assert log == ["apply:b", "undo:a"]

    def test_probe_failure_is_step_failure(self) -> None:
        log: list[str] = []
        with pytest.raises(StepFailed) as excinfo:
            StepEngine().run([
                RecordingStep("a", log),
                RecordingStep("b", log, fail_probe=True),
            ])
        assert excinfo.value.step_name == "b"
        assert log == ["apply:a", "undo:a"]

    def test_compensation_failure_continues_and_reports(self) -> None:
        log: list[str] = []
        with pytest.raises(RollbackPartial) as excinfo:
            StepEngine().run([
                RecordingStep("a", log),
                RecordingStep("b", log, fail_compensate=True),
                RecordingStep("c", log, fail_apply=True),
            ])
        assert log == ["apply:a", "apply:b", "apply:c", "undo:b", "undo:a"]
        err = excinfo.value
        assert err.step_name == "c"
        assert [f.step_name for f in err.failures] == ["b"]
        assert "rollback incomplete" in str(err)


class TestCancellation:
    def test_cancel_between_steps(self) -> None:
        log: list[str] = []
        cancel = threading.Event()
        with pytest.raises(StepFailed) as excinfo:
            StepEngine(cancel).run([
                RecordingStep("a", log, on_apply=cancel.set),
                RecordingStep("b", log),
            ])
        assert log == ["apply:a", "undo:a"]
        assert excinfo.value.step_name == "b"
        assert isinstance(excinfo.value.cause, WorkflowCancelled)

    def test_cancelled_before_start(self) -> None:
        cancel = threading.Event()
        cancel.set()
        log: list[str] = []
        with pytest.raises(StepFailed):
            StepEngine(cancel).run([RecordingStep("a", log)])
        assert log == []
