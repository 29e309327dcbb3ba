"""Tests for doctor catalog composition."""
from __future__ import annotations

import pytest
from conftest import RecordingUI

from ghostctl.errors import TaskPipelineError, UsageError
from ghostctl.extensions import Extension, ExtensionHost
from ghostctl.tasks import Task, TaskHandle, TaskStatus
from ghostctl.tasks.doctor import collect_checks, flatten_checks, run_doctor
from ghostctl.tasks.models import TaskContext


def _ok(context: TaskContext, handle: TaskHandle) -> None:
    context.setdefault("ran", []).append(handle.title)


def _fail(context: TaskContext, handle: TaskHandle) -> None:
    context.setdefault("ran", []).append(handle.title)
    raise RuntimeError("broken")


BUILTIN = (
    Task("builtin install", _ok, categories={"install"}),
    Task("builtin start", _ok, categories={"start"}),
)


class ExtraChecks(Extension):
    name = "extra"

    def doctor(self, context: TaskContext | None = None) -> list[object]:
        return [
            Task("extension start", _ok, categories={"start"}),
            [Task("extension nested", _ok, categories={"start", "install"})],
            None,
        ]


def _host(ui: RecordingUI, *extensions: type[Extension]) -> ExtensionHost:
    return ExtensionHost(ui, extensions=list(extensions), discover=False)


def test_collect_checks_puts_builtins_first(ui: RecordingUI) -> None:
    """Built-in checks precede extension checks; nested lists are flattened."""
    checks = collect_checks({}, _host(ui, ExtraChecks), BUILTIN)

    assert [task.title for task in checks] == [
        "builtin install",
        "builtin start",
        "extension start",
        "extension nested",
    ]


def test_flatten_checks_rejects_foreign_entries() -> None:
    """Extensions may only contribute tasks."""
    with pytest.raises(UsageError, match="must contribute Task objects"):
        flatten_checks([["check me"]])


def test_run_doctor_filters_by_category(ui: RecordingUI) -> None:
    """Only checks sharing a requested category run."""
    context: TaskContext = {}

    result = run_doctor(ui, context, ["start"], extensions=_host(ui, ExtraChecks), builtin=BUILTIN)

    assert result is not None
    assert result.titles == ("builtin start", "extension start", "extension nested")
    assert context["ran"] == list(result.titles)


def test_run_doctor_returns_none_when_nothing_matches(ui: RecordingUI) -> None:
    """An unmatched category selection is not an error."""
    assert run_doctor(ui, {}, ["update"], builtin=BUILTIN) is None


def test_run_doctor_without_categories_runs_everything(ui: RecordingUI) -> None:
    """``None`` selects the full catalog."""
    result = run_doctor(ui, {}, None, extensions=_host(ui, ExtraChecks), builtin=BUILTIN)

    assert result is not None
    assert len(result.outcomes) == 4
    assert "builtin start" in ui.output


def test_run_all_keeps_checking_after_failure(ui: RecordingUI) -> None:
    """``run_all`` collects every failure before raising."""
    builtin = (
        Task("first", _fail, categories={"install"}),
        Task("second", _ok, categories={"install"}),
    )
    context: TaskContext = {}

    with pytest.raises(TaskPipelineError) as excinfo:
        run_doctor(ui, context, ["install"], builtin=builtin, run_all=True)

    assert context["ran"] == ["first", "second"]
    assert excinfo.value.result.statuses() == {
        "first": TaskStatus.FAILED,
        "second": TaskStatus.SUCCESS,
    }


def test_first_failure_stops_by_default(ui: RecordingUI) -> None:
    """Without ``run_all`` the first failure aborts the run."""
    builtin = (
        Task("first", _fail, categories={"install"}),
        Task("second", _ok, categories={"install"}),
    )
    context: TaskContext = {}

    with pytest.raises(TaskPipelineError):
        run_doctor(ui, context, ["install"], builtin=builtin)

    assert context["ran"] == ["first"]
