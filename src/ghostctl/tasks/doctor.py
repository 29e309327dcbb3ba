"""Doctor check catalog composition."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING, Any

from ..errors import UsageError
from .checks import BUILTIN_CHECKS
from .models import PipelineResult, Task, TaskContext
from .pipeline import select_tasks

if TYPE_CHECKING:
    from ..extensions import ExtensionHost
    from ..ui import UI


def flatten_checks(contributed: Iterable[Any]) -> list[Task]:
    """Flatten extension results into tasks, dropping empty entries."""
    tasks: list[Task] = []
    for entry in contributed:
        if not entry:
            continue
        if isinstance(entry, Task):
            tasks.append(entry)
        elif isinstance(entry, Iterable) and not isinstance(entry, (str, bytes)):
            tasks.extend(flatten_checks(entry))
        else:
            raise UsageError(f"Extensions must contribute Task objects, got {entry!r}.")
    return tasks


def collect_checks(
    context: TaskContext,
    extensions: ExtensionHost | None = None,
    builtin: Sequence[Task] = BUILTIN_CHECKS,
) -> list[Task]:
    """Return built-in checks followed by checks from the ``doctor`` extension hook."""
    contributed = extensions.hook("doctor", context) if extensions is not None else []
    return [*builtin, *flatten_checks(contributed)]


def run_doctor(
    ui: UI,
    context: TaskContext,
    categories: Iterable[str] | None = None,
    *,
    extensions: ExtensionHost | None = None,
    builtin: Sequence[Task] = BUILTIN_CHECKS,
    run_all: bool = False,
) -> PipelineResult | None:
    """Run the checks matching *categories*; ``None`` when nothing matches.

    ``categories=None`` runs every check. With *run_all* every check runs
    even after a failure and the failures are raised together at the end.
    """
    checks = select_tasks(collect_checks(context, extensions, builtin), categories)
    if not checks:
        return None
    return ui.listr(checks, context, exit_on_first_failure=not run_all)


__all__ = ["collect_checks", "flatten_checks", "run_doctor"]
