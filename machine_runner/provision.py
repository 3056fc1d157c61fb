"""Ordered provisioning steps with rollback on failure."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from machine_runner.cleanup import CleanupStack
from machine_runner.models import InitResult
from machine_runner.utils import log


@dataclass
class ProvisionStep:
    description: str
    action: Callable[[], Any]
    undo: Optional[Callable[[], None]] = None


class ProvisioningPipeline:
    """Runs steps in order, unwinding completed ones if a later step fails.

    The undo of a step is pushed only once the step has succeeded, so a
    failure in step k unwinds steps 1..k-1, newest first, and then re-raises
    the original exception. A step returning ``InitResult.PENDING`` stops the
    run early; whatever was already done is unwound the same way, since the
    resumed invocation starts over from the first step.
    """

    def __init__(self, name: str, cleanup: Optional[CleanupStack] = None) -> None:
        self.name = name
        self.cleanup = cleanup or CleanupStack()
        self.steps: List[ProvisionStep] = []

    def add_step(
        self,
        description: str,
        action: Callable[[], Any],
        undo: Optional[Callable[[], None]] = None,
    ) -> None:
        self.steps.append(ProvisionStep(description, action, undo))

    def run(self) -> InitResult:
        with self.cleanup.clean_on_signal():
            try:
                for step in self.steps:
                    log("INFO", step.description)
                    outcome = step.action()
                    if outcome is InitResult.PENDING:
                        log("DEBUG", f"Provisioning of {self.name} paused at: {step.description}")
                        self.cleanup.clean()
                        return InitResult.PENDING
                    if step.undo is not None:
                        self.cleanup.add(step.undo, step.description)
            except Exception:
                log("WARN", f"Provisioning {self.name} failed; rolling back completed steps")
                self.cleanup.clean()
                raise
        self.cleanup.discard()
        return InitResult.COMPLETE
