"""Built-in systemd extension: unit file checks and node binary migration."""

from __future__ import annotations

import configparser
from pathlib import Path

from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.version import InvalidVersion, Version

from ..errors import SystemCheckError
from ..migrations import Migration
from ..services.systemd import unit_name_for
from ..tasks import checks
from ..tasks.models import Task, TaskContext, TaskHandle
from . import Extension

UNIT_FILE_TITLE = "Checking systemd unit file"
NODE_VERSION_TITLE = "Checking systemd node version"


def unit_file_name(instance_name: str | None, *, environment: str | None = None) -> str:
    """Return the unit file name for an instance; a missing name is a ConfigError."""
    return f"{unit_name_for(instance_name, environment=environment)}.service"


def parse_unit(text: str) -> dict[str, dict[str, str]]:
    """Parse a systemd unit file into ``{section: {key: value}}``."""
    parser = configparser.ConfigParser(strict=False, interpolation=None)
    parser.optionxform = str  # type: ignore[assignment, method-assign]
    parser.read_string(text)
    return {section: dict(parser.items(section)) for section in parser.sections()}


def check_unit_file(context: TaskContext, handle: TaskHandle) -> None:
    """Read and parse the instance unit file into ``context["systemd"]``."""
    instance = context["instance"]
    settings = checks.settings_from(context)
    name = unit_file_name(instance.name, environment=instance.environment)
    path = settings.systemd.unit_dir / name
    state: dict[str, object] = {"unit_file_path": path}
    context["systemd"] = state
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise SystemCheckError(
            f"Unable to read systemd unit file {path}: {exc}",
            hint="Run `ghostctl setup` to install the unit file.",
            task=UNIT_FILE_TITLE,
        ) from exc
    try:
        state["unit"] = parse_unit(text)
    except configparser.Error as exc:
        raise SystemCheckError(
            f"Unable to parse systemd unit file {path}: {exc}",
            task=UNIT_FILE_TITLE,
        ) from exc


def check_node_version(context: TaskContext, handle: TaskHandle) -> None:
    """Check the Node.js binary the unit runs against the supported range."""
    state = context["systemd"]
    exec_start = state["unit"].get("Service", {}).get("ExecStart")
    if not exec_start:
        raise SystemCheckError(
            f"ExecStart not found in {state['unit_file_path']}.",
            task=NODE_VERSION_TITLE,
        )
    node_bin = exec_start.split()[0]
    raw = checks.detect_node_version(node_bin)
    if raw is None:
        raise SystemCheckError(f"Unable to get the version of {node_bin}.", task=NODE_VERSION_TITLE)
    try:
        version = Version(raw)
    except InvalidVersion as exc:
        raise SystemCheckError(
            f"{node_bin} reported an invalid version: {raw}", task=NODE_VERSION_TITLE
        ) from exc

    handle.title = f"{NODE_VERSION_TITLE} - found v{raw}"
    supported = checks.settings_from(context).doctor.node_versions
    try:
        ok = version in SpecifierSet(supported)
    except InvalidSpecifier as exc:
        raise SystemCheckError(f"Invalid supported range {supported}: {exc}") from exc
    if not ok:
        raise SystemCheckError(
            f"The Node.js version used by systemd ({raw}) is not supported.",
            hint=f"Supported: {supported}.",
            task=NODE_VERSION_TITLE,
        )


def save_node_exec_path(context: TaskContext) -> None:
    """Record the node binary named by the rendered unit file in ``.ghost-cli``."""
    instance = context["instance"]
    name = unit_file_name(instance.name, environment=instance.environment)
    path = Path(instance.dir) / "system" / "files" / name
    if not path.exists():
        return
    exec_start = parse_unit(path.read_text(encoding="utf-8")).get("Service", {}).get("ExecStart")
    if not exec_start:
        return
    instance.cli_config.set("node-binary", exec_start.split()[0]).save()


def _uses_systemd(context: TaskContext) -> bool:
    return context.get("instance") is not None and context.get("process_name") == "systemd"


def _unit_parsed(context: TaskContext) -> bool:
    state = context.get("systemd")
    return isinstance(state, dict) and "unit" in state


class SystemdExtension(Extension):
    """Doctor checks and migrations for instances managed by systemd."""

    name = "systemd"

    def doctor(self, context: TaskContext | None = None) -> list[Task]:
        return [
            Task(
                title=UNIT_FILE_TITLE,
                action=check_unit_file,
                categories=frozenset({"start"}),
                enabled=_uses_systemd,
                reads=("instance", "process_name", "settings"),
                writes=("systemd",),
            ),
            Task(
                title=NODE_VERSION_TITLE,
                action=check_node_version,
                categories=frozenset({"start"}),
                enabled=_unit_parsed,
                defer_enabled=True,
                reads=("systemd", "settings"),
            ),
        ]

    def migrations(self) -> list[Migration]:
        return [
            Migration(
                title="Record node binary used by systemd",
                action=save_node_exec_path,
            )
        ]


__all__ = [
    "SystemdExtension",
    "check_node_version",
    "check_unit_file",
    "parse_unit",
    "save_node_exec_path",
    "unit_file_name",
]
