from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Optional


@dataclass
class TurnStep:
    """Step descriptor: the turn state it represents and the coroutine that runs it."""
    state: str
    fn: Callable[[object], Awaitable[None]]
    skip_if: Optional[Callable[[object], bool]] = None


class TurnRunner:
    """Async step runner that drives a turn through its states in order."""

    def __init__(self, steps: list[TurnStep], error_state: str = "ERROR") -> None:
        """Purpose: Initialize the runner with an ordered list of steps.
        Inputs/Outputs: Input is a list of TurnStep and the absorbing error state name.
        Side Effects / State: Stores the step list for later execution.
        Dependencies: None beyond TurnStep definitions.
        Failure Modes: None; assumes valid coroutine functions in steps.
        If Removed: Orchestrator states are never executed.
        Testing Notes: Provide a minimal step list and ensure order is preserved.
        """
        # Store the pipeline steps for deterministic execution.
        self._steps = steps
        self._error_state = error_state

    async def run(self, context: object) -> None:
        """Purpose: Await steps in order, recording the current state on the context.
        Inputs/Outputs: Input is a mutable context with a `state` attribute; no return.
        Side Effects / State: Sets context.state before each step; sets the error state
            when a step raises.
        Dependencies: Depends on TurnStep.fn and TurnStep.skip_if semantics.
        Failure Modes: Exceptions in steps propagate after the error state is recorded.
        If Removed: The turn pipeline cannot run.
        Testing Notes: Verify skip_if and the error state with simple async steps.
        """
        # Iterate steps and honor skip_if guards evaluated at step time.
        for step in self._steps:
            if step.skip_if and step.skip_if(context):
                continue
            setattr(context, "state", step.state)
            try:
                await step.fn(context)
            except BaseException:
                setattr(context, "failed_state", step.state)
                setattr(context, "state", self._error_state)
                raise
