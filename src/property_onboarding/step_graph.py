"""Step Graph Engine: wizard navigation over the Draft Store."""

from __future__ import annotations

from .draft_store import DraftStore
from .models import StepId, WizardMode, step_sequence


class StepGraph:
    """Navigation for the onboarding wizard.

    The step sequence is a fixed function of the draft's mode. Every
    transition is written back through the store so that the position
    survives a reload. Moves never suspend and never touch the network.
    """

    def __init__(self, store: DraftStore):
        self.store = store

    @property
    def mode(self) -> WizardMode:
        return self.store.draft.mode

    @property
    def steps(self) -> tuple[StepId, ...]:
        return step_sequence(self.mode)

    @property
    def current_step(self) -> StepId:
        return self.store.draft.current_step

    @property
    def step_index(self) -> int:
        return self.steps.index(self.current_step)

    @property
    def is_first(self) -> bool:
        return self.step_index == 0

    @property
    def is_last(self) -> bool:
        return self.step_index == len(self.steps) - 1

    def set_mode(self, mode: WizardMode) -> StepId:
        """Switch mode, keeping the current step when the new sequence has it.

        Returns:
            The current step after the switch
        """
        sequence = step_sequence(mode)
        step = self.current_step if self.current_step in sequence else sequence[0]
        self.store.set_position(mode, step)
        return step

    def next(self) -> StepId:
        """Advance one step. No-op on the last step."""
        if not self.is_last:
            self.store.set_position(self.mode, self.steps[self.step_index + 1])
        return self.current_step

    def prev(self) -> StepId:
        """Go back one step. No-op on the first step."""
        if not self.is_first:
            self.store.set_position(self.mode, self.steps[self.step_index - 1])
        return self.current_step

    def go_to(self, step: StepId) -> StepId:
        """Jump directly to a step of the active sequence.

        Raises:
            ValueError: If the step is not in the active sequence
        """
        if step not in self.steps:
            raise ValueError(f"Step {step!r} is not available in {self.mode} mode")
        self.store.set_position(self.mode, step)
        return step

    def progress_fraction(self) -> float:
        """Position within the sequence, for display only."""
        return (self.step_index + 1) / len(self.steps)
