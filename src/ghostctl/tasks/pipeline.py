"""Sequential task runner shared by doctor checks, setup stages and migrations."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Sequence
from typing import TYPE_CHECKING

from ..errors import TaskPipelineError, is_recoverable
from .models import PipelineResult, Task, TaskContext, TaskHandle, TaskOutcome, TaskStatus

if TYPE_CHECKING:
    from ..ui import UI

log = logging.getLogger(__name__)

OutcomeCallback = Callable[[TaskOutcome], None]


def _duration_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def select_tasks(tasks: Iterable[Task], categories: Iterable[str] | None) -> list[Task]:
    """Return the tasks sharing at least one of *categories*, in catalog order.

    ``None`` disables filtering. An empty category set selects nothing.
    """
    catalog = list(tasks)
    if categories is None:
        return catalog
    wanted = frozenset(categories)
    return [task for task in catalog if task.in_categories(wanted)]


class TaskPipeline:
    """Run tasks one at a time against a shared mutable context."""

    def __init__(
        self,
        ui: UI | None = None,
        *,
        allow_prompt: bool = True,
        on_outcome: OutcomeCallback | None = None,
    ) -> None:
        """Bind the UI used for "continue anyway?" prompts."""
        self.ui = ui
        self.allow_prompt = allow_prompt
        self.on_outcome = on_outcome

    def run(
        self,
        tasks: Iterable[Task],
        context: TaskContext,
        *,
        categories: Iterable[str] | None = None,
        exit_on_first_failure: bool = True,
    ) -> PipelineResult:
        """Run *tasks* and return their outcomes in catalog order.

        Raises :class:`TaskPipelineError` when a task fails; the error carries
        the partial (``exit_on_first_failure``) or complete result.
        """
        selected = select_tasks(tasks, categories)
        planned = [
            task for task in selected if task.defer_enabled or self._is_enabled(task, context)
        ]
        log.debug("pipeline planned %d of %d task(s)", len(planned), len(selected))

        outcomes: list[TaskOutcome] = []
        for task in planned:
            outcome = self._run_task(task, context)
            if outcome is None:
                continue
            outcomes.append(outcome)
            self._emit(outcome)

            if outcome.is_failure and exit_on_first_failure:
                result = PipelineResult(tuple(outcomes), aborted=True)
                raise TaskPipelineError(result) from outcome.error

        result = PipelineResult(tuple(outcomes))
        if not result.ok:
            raise TaskPipelineError(result)
        return result

    def _is_enabled(self, task: Task, context: TaskContext) -> bool:
        if task.enabled is None:
            return True
        return bool(task.enabled(context))

    def _run_task(self, task: Task, context: TaskContext) -> TaskOutcome | None:
        """Run one task; ``None`` means a deferred predicate disabled it.

        Errors raised by the deferred ``enabled`` or the ``skip`` predicate
        fail the task the same way an error from its action does.
        """
        handle = TaskHandle(task.title)
        start = time.perf_counter()

        try:
            if task.defer_enabled and not self._is_enabled(task, context):
                log.debug("task %r disabled by deferred predicate", task.title)
                return None
            skipped = task.skip(context) if task.skip is not None else None
            if skipped:
                reason = skipped if isinstance(skipped, str) else None
                log.debug("task %r skipped before running", task.title)
                return TaskOutcome(handle.title, TaskStatus.SKIPPED, reason, None, _duration_ms(start))
            task.action(context, handle)
        except Exception as exc:
            if handle.skipped:
                return TaskOutcome(
                    handle.title, TaskStatus.SKIPPED, handle.skip_reason, None, _duration_ms(start)
                )
            if self._continue_anyway(exc):
                return TaskOutcome(
                    handle.title, TaskStatus.SKIPPED, str(exc), exc, _duration_ms(start)
                )
            log.debug("task %r failed: %s", task.title, exc)
            return TaskOutcome(handle.title, TaskStatus.FAILED, str(exc), exc, _duration_ms(start))

        if handle.skipped:
            return TaskOutcome(
                handle.title, TaskStatus.SKIPPED, handle.skip_reason, None, _duration_ms(start)
            )
        return TaskOutcome(handle.title, TaskStatus.SUCCESS, None, None, _duration_ms(start))

    def _continue_anyway(self, error: Exception) -> bool:
        if not is_recoverable(error) or not self.allow_prompt or self.ui is None:
            return False
        self.ui.log(str(error), "yellow")
        return self.ui.confirm("Continue anyway?", False)

    def _emit(self, outcome: TaskOutcome) -> None:
        if self.on_outcome is not None:
            self.on_outcome(outcome)


def run_tasks(
    tasks: Sequence[Task],
    context: TaskContext,
    *,
    ui: UI | None = None,
    allow_prompt: bool = False,
    categories: Iterable[str] | None = None,
    exit_on_first_failure: bool = True,
) -> PipelineResult:
    """Convenience wrapper around :class:`TaskPipeline` without rendering."""
    pipeline = TaskPipeline(ui, allow_prompt=allow_prompt)
    return pipeline.run(
        tasks,
        context,
        categories=categories,
        exit_on_first_failure=exit_on_first_failure,
    )


__all__ = ["OutcomeCallback", "TaskPipeline", "run_tasks", "select_tasks"]
