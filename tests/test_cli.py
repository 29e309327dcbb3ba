"""Tests for the ghostctl command line."""
from __future__ import annotations

import json
import os
import signal
import subprocess
from pathlib import Path

import pytest
from conftest import write_instance
from typer.testing import CliRunner

import ghostctl.cli as cli_module
import ghostctl.extensions as extensions_module
from ghostctl import __version__
from ghostctl.cli import app
from ghostctl.exit_codes import ExitCode
from ghostctl.instance import Instance
from ghostctl.services.local import LocalProcessManager
from ghostctl.services.systemd import SystemdProcessManager
from ghostctl.tasks import checks

runner = CliRunner()


class FakeChild:
    """Stand-in for ``subprocess.Popen``."""

    def __init__(self, pid: int) -> None:
        self.pid = pid


class DummyCompleted:
    """Stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int) -> None:
        self.returncode = returncode


def _extract_json(output: str) -> dict[str, object]:
    """Extract the first JSON object embedded in *output*."""
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, f"No JSON payload found in output: {output}"
    return json.loads(output[start : end + 1])


def _prepare_environment(tmp_path: Path) -> dict[str, str]:
    """Write a ghostctl config pointing every host path into *tmp_path*."""
    config_file = tmp_path / "ghostctl.yml"
    config_file.write_text(
        "\n".join(
            [
                f"logs_dir: {tmp_path / 'logs'}",
                "systemd:",
                f"  unit_dir: {tmp_path / 'units'}",
                "nginx:",
                f"  sites_available: {tmp_path / 'nginx' / 'sites-available'}",
                f"  sites_enabled: {tmp_path / 'nginx' / 'sites-enabled'}",
                "",
            ]
        ),
        encoding="utf-8",
    )
    return {"GHOSTCTL_CONFIG_FILE": str(config_file)}


def _flat(output: str) -> str:
    """Collapse the line wrapping Rich applies to long messages."""
    return " ".join(output.split())


def _operations(tmp_path: Path) -> list[dict[str, object]]:
    path = tmp_path / "logs" / "operations.jsonl"
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


@pytest.fixture
def env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Return CLI environment variables and isolate host lookups."""
    monkeypatch.setattr(extensions_module, "iter_entry_points", lambda: [])
    monkeypatch.setattr(checks, "available_memory_mb", lambda: 4096.0)
    monkeypatch.setattr(checks, "free_space_mb", lambda path: 10240.0)
    return _prepare_environment(tmp_path)


@pytest.fixture
def local_instance(tmp_path: Path) -> Instance:
    """Return an installed instance run by the local process manager."""
    return write_instance(tmp_path / "ghost", config={"process": "local"})


@pytest.fixture
def processes(monkeypatch: pytest.MonkeyPatch) -> set[int]:
    """Fake process table backing ``_spawn`` and ``os.kill``."""
    table: set[int] = set()

    def fake_spawn(self: LocalProcessManager, command: list[str], cwd: Path, env: dict[str, str]):
        table.add(4242)
        return FakeChild(4242)

    def fake_kill(pid: int, sig: int) -> None:
        if pid not in table:
            raise ProcessLookupError(pid)
        if sig == signal.SIGTERM:
            table.discard(pid)

    monkeypatch.setattr(LocalProcessManager, "_spawn", fake_spawn)
    monkeypatch.setattr(os, "kill", fake_kill)
    return table


def test_version_option_outputs_package_version(tmp_path: Path, env: dict[str, str]) -> None:
    """CLI ``--version`` flag emits the package version."""
    result = runner.invoke(app, ["--version"], env=env)

    assert result.exit_code == 0
    assert __version__ in result.stdout
    assert _operations(tmp_path)[-1]["command"] == "root --version"


def test_invocation_without_subcommand_shows_help(env: dict[str, str]) -> None:
    """Calling the CLI without a subcommand shows help output."""
    result = runner.invoke(app, env=env)

    assert result.exit_code == 0
    assert "Ghost instance lifecycle manager" in result.stdout


def test_invalid_tool_config_exits_with_validation_code(tmp_path: Path) -> None:
    """A broken ghostctl config file is reported before any command runs."""
    config_file = tmp_path / "ghostctl.yml"
    config_file.write_text("default_process: pm2\n", encoding="utf-8")

    result = runner.invoke(app, ["version"], env={"GHOSTCTL_CONFIG_FILE": str(config_file)})

    assert result.exit_code == ExitCode.VALIDATION
    assert "pm2" in result.stdout


def test_config_get_and_set(local_instance: Instance, env: dict[str, str]) -> None:
    """``config set`` parses YAML scalars and ``config get`` reads them back."""
    base = ["--dir", str(local_instance.dir)]

    set_result = runner.invoke(app, [*base, "config", "set", "server.port", "2369"], env=env)
    assert set_result.exit_code == 0

    stored = json.loads(local_instance.config_path.read_text(encoding="utf-8"))
    assert stored["server"]["port"] == 2369

    get_result = runner.invoke(app, [*base, "config", "get", "url"], env=env)
    assert get_result.exit_code == 0
    assert "http://myblog.example.com" in get_result.stdout

    missing = runner.invoke(app, [*base, "config", "get", "mail.transport"], env=env)
    assert missing.exit_code == ExitCode.FAILURE


def test_doctor_json_reports_start_checks(
    tmp_path: Path, local_instance: Instance, env: dict[str, str]
) -> None:
    """``doctor start --json`` runs the start checks and emits a JSON report."""
    result = runner.invoke(
        app,
        ["--dir", str(local_instance.dir), "--no-prompt", "doctor", "start", "--json"],
        env=env,
    )

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    assert payload["ok"] is True
    assert [task["title"] for task in payload["tasks"]] == [
        checks.VALIDATE_CONFIG_TITLE,
        checks.MEMORY_TITLE,
    ]
    record = _operations(tmp_path)[-1]
    assert record["command"] == "doctor"
    assert record["result"]["status"] == "success"


def test_doctor_unmatched_category(local_instance: Instance, env: dict[str, str]) -> None:
    """Categories without checks are reported, not treated as failures."""
    result = runner.invoke(
        app, ["--dir", str(local_instance.dir), "doctor", "uninstall"], env=env
    )

    assert result.exit_code == 0
    assert "No checks matched" in _flat(result.stdout)


def test_doctor_failure_sets_environment_exit_code(
    local_instance: Instance, env: dict[str, str], monkeypatch: pytest.MonkeyPatch
) -> None:
    """Failed recoverable checks exit with the environment code when prompting is off."""
    monkeypatch.setattr(checks, "available_memory_mb", lambda: 32.0)

    result = runner.invoke(
        app,
        ["--dir", str(local_instance.dir), "--no-prompt", "doctor", "start"],
        env=env,
    )

    assert result.exit_code == ExitCode.ENVIRONMENT
    assert "failed=1" in result.stdout


def test_doctor_can_skip_memory_check(
    local_instance: Instance, env: dict[str, str], monkeypatch: pytest.MonkeyPatch
) -> None:
    """``--no-check-mem`` removes the memory check from the run."""
    monkeypatch.setattr(checks, "available_memory_mb", lambda: 32.0)

    result = runner.invoke(
        app,
        [
            "--dir",
            str(local_instance.dir),
            "--no-prompt",
            "doctor",
            "start",
            "--no-check-mem",
            "--json",
        ],
        env=env,
    )

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    assert [task["title"] for task in payload["tasks"]] == [checks.VALIDATE_CONFIG_TITLE]


def test_start_and_stop_with_local_process_manager(
    local_instance: Instance, env: dict[str, str], processes: set[int]
) -> None:
    """``start`` spawns the local process and ``stop`` terminates it."""
    base = ["--dir", str(local_instance.dir), "--no-prompt"]

    started = runner.invoke(app, [*base, "start"], env=env)

    assert started.exit_code == 0, started.stdout
    assert processes == {4242}
    assert Instance(local_instance.dir).running_environment == "production"
    assert (local_instance.dir / ".ghostpid").read_text(encoding="utf-8").strip() == "4242"

    stopped = runner.invoke(app, [*base, "stop"], env=env)

    assert stopped.exit_code == 0, stopped.stdout
    assert processes == set()
    assert Instance(local_instance.dir).running_environment is None
    assert not (local_instance.dir / ".ghostpid").exists()


def test_start_is_a_no_op_when_already_running(
    local_instance: Instance, env: dict[str, str], processes: set[int]
) -> None:
    """A running instance is not started twice."""
    local_instance.set_running("production")

    result = runner.invoke(app, ["--dir", str(local_instance.dir), "start"], env=env)

    assert result.exit_code == 0
    assert "already running" in result.stdout
    assert processes == set()


def test_start_fails_when_start_checks_fail(
    local_instance: Instance,
    env: dict[str, str],
    processes: set[int],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Start checks gate the process manager."""
    monkeypatch.setattr(checks, "available_memory_mb", lambda: 32.0)

    result = runner.invoke(
        app, ["--dir", str(local_instance.dir), "--no-prompt", "start"], env=env
    )

    assert result.exit_code == ExitCode.ENVIRONMENT
    assert processes == set()
    assert Instance(local_instance.dir).running_environment is None


def test_commands_require_an_installation(tmp_path: Path, env: dict[str, str]) -> None:
    """Lifecycle commands refuse to run outside a Ghost install."""
    empty = tmp_path / "empty"
    empty.mkdir()

    result = runner.invoke(app, ["--dir", str(empty), "start"], env=env)

    assert result.exit_code == ExitCode.VALIDATION
    assert "not a recognisable Ghost installation" in _flat(result.stdout)


def test_restart_starts_a_stopped_instance(
    local_instance: Instance, env: dict[str, str], processes: set[int]
) -> None:
    """Restarting a stopped instance falls through to ``start``."""
    result = runner.invoke(
        app, ["--dir", str(local_instance.dir), "--no-prompt", "restart"], env=env
    )

    assert result.exit_code == 0, result.stdout
    assert "Starting..." in result.stdout
    assert processes == {4242}
    assert Instance(local_instance.dir).running_environment == "production"


def test_setup_falls_back_to_local_without_systemctl(
    tmp_path: Path,
    instance: Instance,
    env: dict[str, str],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Setup on a host without systemd persists the local backend."""
    monkeypatch.setattr(
        SystemdProcessManager, "will_run", classmethod(lambda cls, settings=None: False)
    )
    monkeypatch.setattr("shutil.which", lambda name: None)

    result = runner.invoke(app, ["--dir", str(instance.dir), "setup"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "defaulting to 'local'" in _flat(result.stdout)
    assert "Nginx is not installed" in _flat(result.stdout)
    stored = json.loads(instance.config_path.read_text(encoding="utf-8"))
    assert stored["process"] == "local"
    record = _operations(tmp_path)[-1]
    assert record["command"] == "setup"
    assert [step["name"] for step in record["steps"]] == ["services.setup", "extensions.setup"]


def test_migrate_applies_needed_migrations(
    local_instance: Instance, env: dict[str, str]
) -> None:
    """Old installs get the settings folder and a refreshed CLI version."""
    local_instance.cli_config.set("cli-version", "1.6.0").save()

    result = runner.invoke(app, ["--dir", str(local_instance.dir), "migrate"], env=env)

    assert result.exit_code == 0, result.stdout
    assert (local_instance.dir / "content" / "settings").is_dir()
    assert Instance(local_instance.dir).cli_version == __version__


@pytest.mark.parametrize(
    ("returncode", "exit_code"),
    [(0, ExitCode.OK), (1, ExitCode.PROVIDER)],
)
def test_run_reports_ghost_exit_status(
    local_instance: Instance,
    env: dict[str, str],
    monkeypatch: pytest.MonkeyPatch,
    returncode: int,
    exit_code: int,
) -> None:
    """``run`` executes Ghost in the foreground and maps its exit status."""
    launched: list[list[str]] = []

    def fake_run(command: list[str], **kwargs: object) -> DummyCompleted:
        launched.append(command)
        return DummyCompleted(returncode)

    monkeypatch.setattr(subprocess, "run", fake_run)

    result = runner.invoke(app, ["--dir", str(local_instance.dir), "run"], env=env)

    assert result.exit_code == exit_code
    assert launched == [["node", "current/index.js"]]


def test_runtime_context_builds_task_context(
    local_instance: Instance, env: dict[str, str], monkeypatch: pytest.MonkeyPatch
) -> None:
    """The shared context carries the instance, settings and process name."""
    captured: dict[str, object] = {}

    def fake_run_doctor(ui, context, categories=None, **kwargs):  # type: ignore[no-untyped-def]
        captured.update(context)
        return None

    monkeypatch.setattr(cli_module, "run_doctor", fake_run_doctor)
    result = runner.invoke(app, ["--dir", str(local_instance.dir), "doctor"], env=env)

    assert result.exit_code == 0
    assert captured["process_name"] == "local"
    assert captured["is_doctor_command"] is True
    assert captured["argv"] == {"check_mem": True}
    assert isinstance(captured["instance"], Instance)
