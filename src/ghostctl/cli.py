"""Typer command line for ``ghostctl``.

Every command runs inside :meth:`StructuredLogger.operation` so the outcome
is appended to ``operations.jsonl``. :class:`~ghostctl.errors.GhostctlError`
failures are rendered by the UI and turned into their exit code.
"""
from __future__ import annotations

import json
import os
import subprocess
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, NoReturn

import typer
import yaml
from rich.console import Console

from . import __version__
from .config import AppConfig, load_config
from .errors import GhostctlError, GhostError, TaskPipelineError, exit_code_for
from .exit_codes import ExitCode
from .extensions import ExtensionHost
from .instance import Instance
from .logging import OperationScope, StructuredLogger, configure_diagnostics
from .migrations import CORE_MIGRATIONS, select_needed
from .services import Hook, ServiceRegistry, supports_enable_behavior
from .tasks.doctor import run_doctor
from .tasks.models import PipelineResult, TaskContext
from .ui import UI

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    "-c",
    help="Path to the ghostctl YAML configuration file.",
)
DIR_OPTION = typer.Option(
    None,
    "--dir",
    "-d",
    help="Ghost instance directory (defaults to the current directory).",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Ghost instance lifecycle manager.

        Runs preflight checks, starts and stops instances through systemd or a
        local child process, wires nginx during setup and applies CLI migrations.
        """
    ).strip(),
)
config_app = typer.Typer(help="Read and write the instance configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    settings: AppConfig
    logger: StructuredLogger
    ui: UI
    instance: Instance
    _registry: ServiceRegistry | None = field(default=None, repr=False)
    _extensions: ExtensionHost | None = field(default=None, repr=False)

    @property
    def registry(self) -> ServiceRegistry:
        """Load the service registry on first use."""
        if self._registry is None:
            self._registry = ServiceRegistry.load(
                self.instance.config,
                self.ui,
                instance=self.instance,
                settings=self.settings,
            )
        return self._registry

    @property
    def extensions(self) -> ExtensionHost:
        """Discover extensions on first use."""
        if self._extensions is None:
            self._extensions = ExtensionHost(
                self.ui,
                instance=self.instance,
                settings=self.settings,
            )
        return self._extensions

    @property
    def process_name(self) -> str:
        """Return the configured process manager name."""
        return self.instance.config.get("process") or self.settings.default_process

    def task_context(self, **extra: Any) -> TaskContext:
        """Build the shared context handed to pipelines and hooks."""
        context: TaskContext = {
            "instance": self.instance if self.instance.is_installed() else None,
            "ui": self.ui,
            "settings": self.settings,
            "argv": {},
            "local": self.settings.development,
            "process_name": self.process_name,
            "is_doctor_command": False,
        }
        context.update(extra)
        return context


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    *,
    directory: Path | None = None,
    verbose: bool = False,
    no_prompt: bool = False,
    development: bool = False,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if verbose:
        overrides["verbose"] = True
    if no_prompt:
        overrides["allow_prompt"] = False
    if development:
        overrides["environment"] = "development"

    try:
        settings = load_config(config_file=config_file, overrides=overrides)
    except GhostctlError as exc:
        console.print(exc.render(verbose))
        raise typer.Exit(code=exit_code_for(exc)) from exc

    configure_diagnostics(settings.verbose, console)
    runtime = RuntimeContext(
        settings=settings,
        logger=StructuredLogger(settings.logs_dir),
        ui=UI(console, verbose=settings.verbose, allow_prompt=settings.allow_prompt),
        instance=Instance((directory or Path.cwd()).resolve(), settings.environment),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the ghostctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    directory: Path | None = DIR_OPTION,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output."),
    no_prompt: bool = typer.Option(
        False,
        "--no-prompt",
        help="Never prompt; answer every question with its default.",
    ),
    development: bool = typer.Option(
        False,
        "--development",
        "-D",
        help="Operate on the development environment.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    runtime = _ensure_runtime(
        ctx,
        config_file,
        directory=directory,
        verbose=verbose,
        no_prompt=no_prompt,
        development=development,
    )
    if version:
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"ghostctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _fail(runtime: RuntimeContext, op: OperationScope, exc: GhostctlError) -> NoReturn:
    """Render *exc*, record it and exit with its code."""
    runtime.ui.error(exc)
    code = exit_code_for(exc)
    op.error(exc.message, rc=code, context={"type": exc.kind})
    raise typer.Exit(code=code) from exc


def _require_instance(runtime: RuntimeContext, op: OperationScope) -> Instance:
    instance = runtime.instance
    if not instance.is_installed():
        _command_error(
            op,
            f"{instance.dir} is not a recognisable Ghost installation "
            f"(missing {Instance.CLI_CONFIG_FILE}).",
        )
    return instance


def _instance_target(runtime: RuntimeContext) -> dict[str, object]:
    return {
        "kind": "instance",
        "dir": runtime.instance.dir,
        "environment": runtime.instance.environment,
    }


def _run_start_checks(runtime: RuntimeContext, op: OperationScope) -> None:
    result = run_doctor(
        runtime.ui,
        runtime.task_context(),
        ["start"],
        extensions=runtime.extensions,
    )
    op.add_step("doctor", detail=_totals_detail(result))


def _totals_detail(result: PipelineResult | None) -> str:
    if result is None:
        return "no checks"
    return ", ".join(f"{status}={count}" for status, count in result.totals().items())


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def version(ctx: typer.Context) -> None:
    """Print the ghostctl version."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("version", target={"kind": "meta"}) as op:
        console.print(f"ghostctl {__version__}")
        cli_version = runtime.instance.cli_version if runtime.instance.is_installed() else None
        if cli_version:
            console.print(f"Instance last touched by ghostctl {cli_version}")
        op.success("Reported CLI version.", context={"instance_cli_version": cli_version})


@app.command()
def doctor(
    ctx: typer.Context,
    categories: list[str] | None = typer.Argument(
        None,
        help="Only run checks in these categories (install, start, update, ...).",
    ),
    json_output: bool = typer.Option(False, "--json", help="Emit results as JSON."),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only print the summary."),
    run_all: bool = typer.Option(
        True,
        "--run-all/--exit-on-first-failure",
        help="Keep checking after a failure.",
    ),
    check_mem: bool = typer.Option(
        True,
        "--check-mem/--no-check-mem",
        help="Enable/disable the memory availability check.",
    ),
) -> None:
    """Check the system for problems before installing, starting or updating Ghost."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "doctor",
        args={
            "categories": categories,
            "json": json_output,
            "quiet": quiet,
            "run_all": run_all,
            "check_mem": check_mem,
        },
        target={"kind": "system", "scope": "health"},
    ) as op:
        ui = runtime.ui
        ui.quiet = quiet or json_output
        if json_output:
            ui.allow_prompt = False
        failure: TaskPipelineError | None = None
        try:
            context = runtime.task_context(
                argv={"check_mem": check_mem},
                is_doctor_command=True,
            )
            result = run_doctor(
                ui,
                context,
                categories or None,
                extensions=runtime.extensions,
                run_all=run_all,
            )
        except TaskPipelineError as exc:
            failure = exc
            result = exc.result
        except GhostctlError as exc:
            _fail(runtime, op, exc)

        if result is None:
            if json_output:
                console.print_json(data={"ok": True, "totals": {}, "tasks": []})
            else:
                console.print("[yellow]No checks matched the requested categories.[/yellow]")
            op.success("No checks matched.", context={"categories": categories})
            return

        payload = result.to_dict()
        if json_output:
            console.print_json(data=payload)
        else:
            ui.quiet = False
            ui.summary(result)

        if failure is not None:
            if not json_output:
                ui.error(failure)
            code = exit_code_for(failure)
            op.error(
                failure.message,
                errors=[outcome.title for outcome in failure.failures],
                rc=code,
                context={"report": payload},
            )
            raise typer.Exit(code=code)
        op.success("Doctor checks passed.", context={"report": payload})


@app.command()
def start(
    ctx: typer.Context,
    enable: bool = typer.Option(
        True,
        "--enable/--no-enable",
        help="Enable start on boot when the process manager supports it.",
    ),
) -> None:
    """Start the Ghost instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "start",
        args={"enable": enable},
        target=_instance_target(runtime),
    ) as op:
        instance = _require_instance(runtime, op)
        if instance.running_environment:
            console.print("[green]Ghost is already running.[/green]")
            op.success("Instance already running.")
            return
        try:
            _run_start_checks(runtime, op)
            process_manager = runtime.registry.process_manager
            runtime.ui.run(
                lambda: process_manager.start(instance.dir, instance.environment),
                "Starting Ghost",
            )
            op.add_step("process-manager.start", detail=process_manager.name)
            changed = 1
            if enable and supports_enable_behavior(process_manager):
                if not process_manager.is_enabled():
                    process_manager.enable()
                    op.add_step("process-manager.enable", detail=process_manager.name)
                    changed += 1
            runtime.registry.call_hook(Hook.START, runtime.task_context())
            instance.set_running(instance.environment)
        except GhostctlError as exc:
            _fail(runtime, op, exc)
        op.success("Ghost started.", changed=changed, context={"process": process_manager.name})


@app.command()
def stop(
    ctx: typer.Context,
    disable: bool = typer.Option(
        False,
        "--disable",
        help="Also disable start on boot when the process manager supports it.",
    ),
) -> None:
    """Stop the Ghost instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "stop",
        args={"disable": disable},
        target=_instance_target(runtime),
    ) as op:
        instance = _require_instance(runtime, op)
        if not instance.running_environment:
            console.print("[green]Ghost is already stopped.[/green]")
            op.success("Instance already stopped.")
            return
        try:
            process_manager = runtime.registry.process_manager
            runtime.ui.run(lambda: process_manager.stop(instance.dir), "Stopping Ghost")
            op.add_step("process-manager.stop", detail=process_manager.name)
            if disable and supports_enable_behavior(process_manager):
                if process_manager.is_enabled():
                    process_manager.disable()
                    op.add_step("process-manager.disable", detail=process_manager.name)
            runtime.registry.call_hook(Hook.STOP, runtime.task_context())
            instance.set_running(None)
        except GhostctlError as exc:
            _fail(runtime, op, exc)
        op.success("Ghost stopped.", changed=1, context={"process": process_manager.name})


@app.command()
def restart(ctx: typer.Context) -> None:
    """Restart the Ghost instance, starting it when it is stopped."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("restart", target=_instance_target(runtime)) as op:
        instance = _require_instance(runtime, op)
        if not instance.running_environment:
            op.add_step("restart", status="skipped", detail="not running")
            op.success("Instance not running; delegating to start.")
            runtime.ui.log("Ghost instance is not running! Starting...", "yellow")
            start(ctx, enable=True)
            return
        try:
            process_manager = runtime.registry.process_manager
            runtime.ui.run(
                lambda: process_manager.restart(instance.dir, instance.environment),
                "Restarting Ghost",
            )
        except GhostctlError as exc:
            _fail(runtime, op, exc)
        op.success("Ghost restarted.", changed=1, context={"process": process_manager.name})


@app.command()
def setup(
    ctx: typer.Context,
    stages: list[str] | None = typer.Option(
        None,
        "--stages",
        "-s",
        help="Only run these setup stages (e.g. systemd, nginx).",
    ),
    no_nginx: bool = typer.Option(False, "--no-nginx", help="Skip nginx configuration."),
) -> None:
    """Run the setup hooks of every service and extension."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "setup",
        args={"stages": stages, "no_nginx": no_nginx},
        target=_instance_target(runtime),
    ) as op:
        _require_instance(runtime, op)
        context = runtime.task_context(nginx=not no_nginx, stages=list(stages or []))
        try:
            runtime.registry.call_hook(Hook.SETUP, context)
            op.add_step("services.setup", detail=", ".join(runtime.registry.hooks.subscribers(Hook.SETUP)))
            runtime.extensions.hook("setup", context)
            op.add_step("extensions.setup", detail=", ".join(runtime.extensions.names))
        except GhostctlError as exc:
            _fail(runtime, op, exc)
        runtime.ui.success("Setup complete.")
        op.success("Setup complete.")


@app.command()
def migrate(
    ctx: typer.Context,
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Do not report when nothing is needed."),
) -> None:
    """Run the CLI migrations needed by this instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "migrate",
        args={"quiet": quiet},
        target=_instance_target(runtime),
    ) as op:
        instance = _require_instance(runtime, op)
        try:
            catalogs = runtime.ui.run(
                lambda: runtime.extensions.hook("migrations"),
                "Checking for available migrations",
            )
            needed = select_needed(instance.cli_version, __version__, CORE_MIGRATIONS, catalogs)
            if needed:
                runtime.ui.listr(
                    [migration.as_task() for migration in needed],
                    runtime.task_context(),
                )
            elif not quiet:
                runtime.ui.log("No migrations needed :)", "green")
            instance.cli_config.set("cli-version", __version__).save()
        except GhostctlError as exc:
            _fail(runtime, op, exc)
        op.success(
            f"Applied {len(needed)} migration(s).",
            changed=len(needed),
            context={"migrations": [migration.title for migration in needed]},
        )


@app.command()
def run(ctx: typer.Context) -> None:
    """Run Ghost in the foreground (used by process managers)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("run", target=_instance_target(runtime)) as op:
        instance = _require_instance(runtime, op)
        node_bin = instance.cli_config.get("node-binary") or "node"
        command = [node_bin, "current/index.js"]
        env = dict(os.environ)
        env["NODE_ENV"] = instance.environment
        try:
            runtime.registry.call_hook(Hook.RUN, runtime.task_context())
            process_manager = runtime.registry.process_manager
            failure: GhostError | None = None
            try:
                completed = subprocess.run(command, cwd=str(instance.dir), env=env, check=False)  # noqa: S603
            except FileNotFoundError as exc:
                failure = GhostError(f"{node_bin} not found: {exc}")
            else:
                if completed.returncode != 0:
                    failure = GhostError(f"Ghost process exited with code: {completed.returncode}")
            if failure is not None:
                process_manager.error(failure)
            else:
                process_manager.success()
        except GhostctlError as exc:
            _fail(runtime, op, exc)
        op.success("Ghost exited.", context={"command": command})


@config_app.command("get")
def config_get(ctx: typer.Context, key: str = typer.Argument(..., help="Dotted key.")) -> None:
    """Print a value from the instance configuration."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config get",
        args={"key": key},
        target=_instance_target(runtime),
    ) as op:
        try:
            value = runtime.instance.config.get(key)
        except GhostctlError as exc:
            _fail(runtime, op, exc)
        if value is None:
            _command_error(op, f"Config key '{key}' is not set.", rc=ExitCode.FAILURE)
        if isinstance(value, str):
            console.print(value, markup=False, highlight=False)
        else:
            console.print_json(data=value)
        op.success("Read config value.", context={"key": key})


@config_app.command("set")
def config_set(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Dotted key."),
    value: str = typer.Argument(..., help="New value (parsed as YAML: 2368, true, ...)."),
) -> None:
    """Write a value into the instance configuration."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config set",
        args={"key": key, "value": value},
        target=_instance_target(runtime),
    ) as op:
        parsed = _coerce_value(value)
        try:
            runtime.instance.config.set(key, parsed).save()
        except GhostctlError as exc:
            _fail(runtime, op, exc)
        console.print(f"[green]Set {key}[/green] = {json.dumps(parsed)}")
        op.success("Updated config value.", changed=1, context={"key": key})


def _coerce_value(raw: str) -> object:
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
