"""Task pipeline primitives and the built-in check catalog."""

from .models import PipelineResult, Task, TaskContext, TaskHandle, TaskOutcome, TaskStatus
from .pipeline import TaskPipeline, run_tasks, select_tasks

__all__ = [
    "PipelineResult",
    "Task",
    "TaskContext",
    "TaskHandle",
    "TaskOutcome",
    "TaskPipeline",
    "TaskStatus",
    "run_tasks",
    "select_tasks",
]
