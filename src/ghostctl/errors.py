"""Error taxonomy shared by every ghostctl component.

Errors fall into four families:

* :class:`UsageError` - the API or CLI was misused. Always fatal.
* :class:`SystemCheckError` (and :class:`ConfigError`) - an environment or
  configuration precondition is violated. The operator may choose to
  continue past these when a task pipeline allows prompting.
* :class:`ProcessError` / :class:`GhostError` - an external command or the
  managed application failed.
* :class:`TaskPipelineError` - aggregate failure raised by a pipeline run.

:func:`is_recoverable` is the single policy used to decide whether a failure
may be downgraded to a skip. Individual checks never re-derive it.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import TYPE_CHECKING, Any

from rich.markup import escape

from .exit_codes import ExitCode

if TYPE_CHECKING:
    from .tasks.models import PipelineResult, TaskOutcome


class GhostctlError(RuntimeError):
    """Base class for all errors raised deliberately by ghostctl."""

    exit_code: int = ExitCode.FAILURE
    recoverable: bool = False

    def __init__(
        self,
        message: str = "An error occurred.",
        *,
        hint: str | None = None,
        context: Mapping[str, Any] | None = None,
        task: str | None = None,
        log_to_file: bool | None = None,
    ) -> None:
        """Store the message plus optional remediation hint and context."""
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.context: dict[str, Any] = dict(context or {})
        self.task = task
        self._log_to_file = log_to_file

    @property
    def kind(self) -> str:
        """Return the class name, used in logs and JSON payloads."""
        return type(self).__name__

    @property
    def log_to_file(self) -> bool:
        """Return ``True`` when the error should be kept in the debug log."""
        if self._log_to_file is not None:
            return self._log_to_file
        return True

    def render(self, verbose: bool = False) -> str:
        """Return Rich markup describing the error for the console."""
        lines = [f"[yellow]Message:[/yellow] {escape(self.message)}"]
        if self.hint:
            lines.append(f"[blue]Help:[/blue] {escape(self.hint)}")
        if self.task:
            lines.append(f"[grey50]Task:[/grey50] {escape(self.task)}")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        payload: dict[str, object] = {
            "type": self.kind,
            "message": self.message,
            "exit_code": int(self.exit_code),
        }
        if self.hint:
            payload["hint"] = self.hint
        if self.task:
            payload["task"] = self.task
        if self.context:
            payload["context"] = {str(key): str(value) for key, value in self.context.items()}
        return payload


class UsageError(GhostctlError):
    """Raised when the API or CLI is used incorrectly."""

    exit_code = ExitCode.VALIDATION


class SystemCheckError(GhostctlError):
    """Raised when a host or environment precondition is not met."""

    exit_code = ExitCode.ENVIRONMENT
    recoverable = True

    @property
    def log_to_file(self) -> bool:
        """Operator-facing problems are not written to the debug log."""
        if self._log_to_file is not None:
            return self._log_to_file
        return False


class ConfigError(SystemCheckError):
    """Raised when the instance configuration holds an invalid value."""

    def __init__(
        self,
        message: str,
        *,
        config_key: str | None = None,
        config_value: object | None = None,
        environment: str | None = None,
        **kwargs: Any,
    ) -> None:
        """Record the offending key/value alongside the message."""
        super().__init__(message, **kwargs)
        self.config_key = config_key
        self.config_value = config_value
        self.environment = environment

    def render(self, verbose: bool = False) -> str:
        """Explain which key is wrong and how to change it."""
        environment = self.environment or "current"
        lines = [
            f"[red]Error detected in the {escape(environment)} configuration.[/red]",
            f"[grey50]Message:[/grey50] {escape(self.message)}",
        ]
        if self.config_key:
            lines.append(f"[grey50]Configuration Key:[/grey50] {escape(self.config_key)}")
            lines.append(f"[grey50]Current Value:[/grey50] {escape(str(self.config_value))}")
            lines.append(
                f"[blue]Run `ghostctl config set {escape(self.config_key)} <new value>` "
                "to fix it.[/blue]"
            )
        if self.hint:
            lines.append(f"[blue]Help:[/blue] {escape(self.hint)}")
        return "\n".join(lines)


class ProcessError(GhostctlError):
    """Raised when an external command fails."""

    exit_code = ExitCode.PROVIDER

    def __init__(
        self,
        message: str,
        *,
        command: Sequence[str] | str | None = None,
        returncode: int | None = None,
        stdout: str | None = None,
        stderr: str | None = None,
        killed: bool = False,
        **kwargs: Any,
    ) -> None:
        """Capture the command, exit status and output for rendering."""
        super().__init__(message, **kwargs)
        if command is None or isinstance(command, str):
            self.command = command
        else:
            self.command = " ".join(command)
        self.returncode = returncode
        self.stdout = stdout or ""
        self.stderr = stderr or ""
        self.killed = killed

    def render(self, verbose: bool = False) -> str:
        """Render the failing command with optional captured output."""
        lines = [f"[red]Error occurred running command: '{escape(str(self.command))}'[/red]"]
        if self.killed:
            lines.append(
                "[yellow]Process was killed, meaning your system ran out of memory.\n"
                "You should either increase the amount of RAM in your system, "
                "or add swap space.[/yellow]"
            )
        elif self.returncode:
            lines.append(f"[yellow]Exit code: {self.returncode}[/yellow]")
        lines.append(f"[yellow]Message:[/yellow] {escape(self.message)}")
        if verbose and (self.stdout or self.stderr):
            lines.append("[grey50]--------------- stdout ---------------[/grey50]")
            lines.append(escape(self.stdout))
            lines.append("[grey50]--------------- stderr ---------------[/grey50]")
            lines.append(escape(self.stderr))
        return "\n".join(lines)


class GhostError(GhostctlError):
    """Raised when the managed Ghost process itself reports a failure."""

    exit_code = ExitCode.PROVIDER


class TaskPipelineError(GhostctlError):
    """Aggregate failure raised when one or more pipeline tasks failed."""

    def __init__(self, result: PipelineResult, message: str | None = None) -> None:
        """Wrap the pipeline result and summarise the failed tasks."""
        failures = result.failures
        if message is None:
            titles = ", ".join(outcome.title for outcome in failures) or "unknown"
            message = f"{len(failures)} task(s) failed: {titles}"
        super().__init__(message)
        self.result = result

    @property
    def failures(self) -> Sequence[TaskOutcome]:
        """Return the failed outcomes in pipeline order."""
        return self.result.failures

    @property
    def errors(self) -> list[BaseException]:
        """Return the underlying exceptions of the failed tasks."""
        return [outcome.error for outcome in self.failures if outcome.error is not None]

    @property
    def exit_code(self) -> int:  # type: ignore[override]
        """Return the most severe exit code among the failures."""
        codes = [exit_code_for(error) for error in self.errors]
        return max(codes, default=int(ExitCode.FAILURE))

    def render(self, verbose: bool = False) -> str:
        """Render each failed task with its own error text."""
        lines = [f"[red]{escape(self.message)}[/red]"]
        for outcome in self.failures:
            lines.append(f"[red]x[/red] {escape(outcome.title)}")
            if isinstance(outcome.error, GhostctlError):
                lines.append(outcome.error.render(verbose))
            elif outcome.error is not None:
                lines.append(f"[yellow]Message:[/yellow] {escape(str(outcome.error))}")
        return "\n".join(lines)


def is_recoverable(error: BaseException) -> bool:
    """Return ``True`` when *error* may be downgraded to a skipped task."""
    return isinstance(error, GhostctlError) and error.recoverable


def exit_code_for(error: BaseException) -> int:
    """Map any exception to a CLI exit code."""
    if isinstance(error, GhostctlError):
        return int(error.exit_code)
    return int(ExitCode.FAILURE)


def join_missing(names: Iterable[str]) -> str:
    """Return a comma separated list of names for error messages."""
    return ", ".join(names)


__all__ = [
    "ConfigError",
    "GhostError",
    "GhostctlError",
    "ProcessError",
    "SystemCheckError",
    "TaskPipelineError",
    "UsageError",
    "exit_code_for",
    "is_recoverable",
    "join_missing",
]
