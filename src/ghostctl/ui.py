"""Console interaction for ghostctl commands."""
from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, MutableMapping
from typing import Any, TypeVar

from rich.console import Console
from rich.markup import escape
from rich.prompt import Confirm

from .errors import GhostctlError
from .tasks.models import PipelineResult, Task, TaskOutcome, TaskStatus
from .tasks.pipeline import TaskPipeline

T = TypeVar("T")

_OUTCOME_STYLE = {
    TaskStatus.SUCCESS: "[green]✔[/green]",
    TaskStatus.SKIPPED: "[yellow]↓[/yellow]",
    TaskStatus.FAILED: "[red]✖[/red]",
}


class UI:
    """Rich-backed logging, prompting and task rendering."""

    def __init__(
        self,
        console: Console | None = None,
        *,
        verbose: bool = False,
        allow_prompt: bool = True,
        quiet: bool = False,
    ) -> None:
        """Create a UI writing to *console* (stdout by default)."""
        self.console = console or Console()
        self.verbose = verbose
        self.allow_prompt = allow_prompt
        self.quiet = quiet

    def log(self, message: str, style: str | None = None) -> None:
        """Print *message* verbatim, optionally styled (e.g. ``"yellow"``)."""
        self.console.print(message, style=style, markup=False, highlight=False)

    def success(self, message: str) -> None:
        """Print a green message."""
        self.log(message, "green")

    def confirm(self, prompt: str, default: bool = False) -> bool:
        """Ask a yes/no question; returns *default* when prompting is disabled."""
        if not self.allow_prompt:
            return default
        return Confirm.ask(prompt, default=default, console=self.console)

    def run(self, action: Callable[[], T], text: str) -> T:
        """Run *action* behind a status spinner and report the outcome."""
        with self.console.status(escape(text)):
            try:
                result = action()
            except Exception:
                if not self.quiet:
                    self.console.print(f"{_OUTCOME_STYLE[TaskStatus.FAILED]} {escape(text)}")
                raise
        if not self.quiet:
            self.console.print(f"{_OUTCOME_STYLE[TaskStatus.SUCCESS]} {escape(text)}")
        return result

    def listr(
        self,
        tasks: Iterable[Task],
        context: MutableMapping[str, Any] | None = None,
        *,
        categories: Iterable[str] | None = None,
        exit_on_first_failure: bool = True,
    ) -> PipelineResult:
        """Run *tasks* through a :class:`TaskPipeline`, printing each outcome."""
        pipeline = TaskPipeline(
            self,
            allow_prompt=self.allow_prompt,
            on_outcome=None if self.quiet else self.render_outcome,
        )
        return pipeline.run(
            tasks,
            context if context is not None else {},
            categories=categories,
            exit_on_first_failure=exit_on_first_failure,
        )

    def render_outcome(self, outcome: TaskOutcome) -> None:
        """Print a single task outcome line."""
        line = f"{_OUTCOME_STYLE[outcome.status]} {escape(outcome.title)}"
        if outcome.status is TaskStatus.SKIPPED and outcome.message:
            line += f" [grey50]({escape(outcome.message)})[/grey50]"
        if self.verbose and outcome.duration_ms is not None:
            line += f" [grey50]{outcome.duration_ms} ms[/grey50]"
        self.console.print(line)

    def error(self, error: BaseException) -> None:
        """Render *error* using its own formatting when available."""
        if isinstance(error, GhostctlError):
            self.console.print(error.render(self.verbose))
        else:
            self.console.print(f"[red]{escape(type(error).__name__)}:[/red] {escape(str(error))}")

    def summary(self, result: PipelineResult) -> Mapping[str, int]:
        """Return and print status totals for a finished run."""
        totals = result.totals()
        if not self.quiet:
            self.console.print(
                f"ok={totals[TaskStatus.SUCCESS.value]} "
                f"skipped={totals[TaskStatus.SKIPPED.value]} "
                f"failed={totals[TaskStatus.FAILED.value]}"
            )
        return totals


__all__ = ["UI"]
