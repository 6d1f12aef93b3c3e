"""
Step selection for partial runs.

An `ExecutionContext` restricts a run to a contiguous range of step ids
(`--start-at` / `--stop-after`).
"""

from __future__ import annotations

import contextlib
from typing import Optional, Sequence


class ExecutionContext:
    """Selects a contiguous range within an ordered step sequence."""

    def __init__(
        self,
        order: Sequence[str],
        start_at: Optional[str] = None,
        stop_after: Optional[str] = None,
    ):
        """
        Args:
            order: All step ids in execution order.
            start_at: First step to execute. None starts at the beginning.
            stop_after: Last step to execute. None runs to the end.

        Raises:
            ValueError: for unknown step ids or an empty range.
        """
        self.order = list(order)
        for step_id in (start_at, stop_after):
            if step_id is not None and step_id not in self.order:
                raise ValueError(f"Unknown step: {step_id} (expected one of {', '.join(self.order)})")
        self.start_at = start_at
        self.stop_after = stop_after
        self._first = self.order.index(start_at) if start_at else 0
        self._last = self.order.index(stop_after) if stop_after else len(self.order) - 1
        if self._first > self._last:
            raise ValueError(f"Step {start_at} comes after {stop_after}.")

    @property
    def starts_at_beginning(self) -> bool:
        return self._first == 0

    def is_subtask_active(self, subtask_id: str) -> bool:
        if subtask_id not in self.order:
            return False
        index = self.order.index(subtask_id)
        return self._first <= index <= self._last

    def should_continue_after_subtask(self, subtask_id: str) -> bool:
        return subtask_id != self.stop_after


# Global execution context (screg runs one session per process)
_execution_context: Optional[ExecutionContext] = None


def set_execution_context(context: Optional[ExecutionContext]) -> None:
    global _execution_context
    _execution_context = context


def get_execution_context() -> Optional[ExecutionContext]:
    return _execution_context


@contextlib.contextmanager
def subtask_context(subtask_id: str):
    """
    Mark a block as the execution of one step.

    Yields False when the step is outside the selected range; the caller is
    expected to skip its body in that case.
    """
    context = get_execution_context()
    if context is None:
        yield True
        return

    yield context.is_subtask_active(subtask_id)


def should_exit_after_subtask(subtask_id: str) -> bool:
    context = get_execution_context()
    if context is None:
        return False
    return not context.should_continue_after_subtask(subtask_id)
