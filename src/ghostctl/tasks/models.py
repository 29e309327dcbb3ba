"""Data models for task pipelines (install steps, doctor checks, migrations)."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, MutableMapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..errors import UsageError

TaskContext = MutableMapping[str, Any]
TaskAction = Callable[[TaskContext, "TaskHandle"], object]
TaskPredicate = Callable[[TaskContext], object]


class TaskStatus(str, Enum):
    """Terminal status recorded for a task that was attempted."""

    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


def _normalise_categories(value: object) -> frozenset[str]:
    if value is None:
        return frozenset()
    if isinstance(value, str):
        return frozenset({value})
    if isinstance(value, Iterable):
        return frozenset(str(item) for item in value)
    raise UsageError(f"Task categories must be a string or iterable, got {type(value).__name__}.")


@dataclass(slots=True, frozen=True)
class Task:
    """A single step of a pipeline.

    ``enabled`` decides whether the task belongs to the run at all: a task
    whose predicate is false produces no outcome. ``skip`` is evaluated when
    the task is reached; a truthy value records the task as skipped (a string
    return value becomes the skip reason).

    Enabled predicates are normally evaluated once, before any task runs.
    Set ``defer_enabled`` when the predicate reads context written by an
    earlier task; it is then evaluated when the pipeline reaches the task.
    ``reads``/``writes`` name the context keys a task depends on or fills.
    """

    title: str
    action: TaskAction
    categories: frozenset[str] = field(default_factory=frozenset)
    enabled: TaskPredicate | None = None
    skip: TaskPredicate | None = None
    defer_enabled: bool = False
    reads: tuple[str, ...] = ()
    writes: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        """Validate required fields and normalise categories."""
        if not isinstance(self.title, str) or not self.title.strip():
            raise UsageError("Task title must be a non-empty string.")
        if not callable(self.action):
            raise UsageError(f"Task '{self.title}' must provide a callable action.")
        for label, predicate in (("enabled", self.enabled), ("skip", self.skip)):
            if predicate is not None and not callable(predicate):
                raise UsageError(f"Task '{self.title}' {label} predicate must be callable.")
        object.__setattr__(self, "categories", _normalise_categories(self.categories))
        object.__setattr__(self, "reads", tuple(self.reads))
        object.__setattr__(self, "writes", tuple(self.writes))

    def in_categories(self, categories: Iterable[str]) -> bool:
        """Return ``True`` when the task shares at least one category."""
        return not self.categories.isdisjoint(categories)


class TaskHandle:
    """Per-execution handle passed to a task action."""

    __slots__ = ("title", "skip_reason", "skipped")

    def __init__(self, title: str) -> None:
        """Start with the task's declared title."""
        self.title = title
        self.skipped = False
        self.skip_reason: str | None = None

    def skip(self, reason: str | None = None) -> None:
        """Record the running task as skipped once the action returns."""
        self.skipped = True
        self.skip_reason = reason


@dataclass(slots=True, frozen=True)
class TaskOutcome:
    """Terminal result of an attempted task."""

    title: str
    status: TaskStatus
    message: str | None = None
    error: BaseException | None = None
    duration_ms: int | None = None

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the task failed."""
        return self.status is TaskStatus.FAILED

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        payload: dict[str, object] = {"title": self.title, "status": self.status.value}
        if self.message:
            payload["message"] = self.message
        if self.error is not None:
            payload["error"] = {"type": type(self.error).__name__, "message": str(self.error)}
        if self.duration_ms is not None:
            payload["duration_ms"] = self.duration_ms
        return payload


@dataclass(slots=True, frozen=True)
class PipelineResult:
    """Ordered outcomes of a pipeline run."""

    outcomes: Sequence[TaskOutcome] = ()
    aborted: bool = False

    @property
    def ok(self) -> bool:
        """Return ``True`` when no task failed."""
        return not self.failures

    @property
    def failures(self) -> tuple[TaskOutcome, ...]:
        """Return failed outcomes in run order."""
        return tuple(outcome for outcome in self.outcomes if outcome.is_failure)

    @property
    def titles(self) -> tuple[str, ...]:
        """Return the titles of all recorded outcomes."""
        return tuple(outcome.title for outcome in self.outcomes)

    def statuses(self) -> dict[str, TaskStatus]:
        """Return a title → status mapping (later duplicates win)."""
        return {outcome.title: outcome.status for outcome in self.outcomes}

    def totals(self) -> Mapping[str, int]:
        """Return counts per status value."""
        totals = {status.value: 0 for status in TaskStatus}
        for outcome in self.outcomes:
            totals[outcome.status.value] += 1
        return totals

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "ok": self.ok,
            "aborted": self.aborted,
            "totals": dict(self.totals()),
            "tasks": [outcome.to_dict() for outcome in self.outcomes],
        }


__all__ = [
    "PipelineResult",
    "Task",
    "TaskAction",
    "TaskContext",
    "TaskHandle",
    "TaskOutcome",
    "TaskPredicate",
    "TaskStatus",
]
