"""Built-in doctor checks.

Every check is a :class:`~ghostctl.tasks.models.Task` reading the run
context. Checks raise :class:`~ghostctl.errors.SystemCheckError` (or
:class:`~ghostctl.errors.ConfigError`) for problems the operator may choose
to ignore; the pipeline decides whether to prompt.

Context keys read here:

``instance``
    :class:`~ghostctl.instance.Instance` or ``None`` before install.
``settings``
    :class:`~ghostctl.config.AppConfig`.
``argv``
    Mapping of command options (``stack``, ``db``, ``dbhost``, ``check_mem``).
``local``
    ``True`` for local/development installs.
``process_name``
    Name of the active process manager, when known.
``is_doctor_command``
    ``True`` when running ``ghostctl doctor`` itself.
"""

from __future__ import annotations

import logging
import os
import platform
import shutil
import subprocess
from collections.abc import Mapping
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.version import InvalidVersion, Version

from ..config import AppConfig, default_config
from ..errors import ConfigError, SystemCheckError
from ..instance import InstanceConfig
from .models import Task, TaskContext, TaskHandle

log = logging.getLogger(__name__)

MB_IN_BYTES = 1048576
NODE_VERSION_CHECK_ENV = "GHOSTCTL_NODE_VERSION_CHECK"
LOCAL_DB_HOSTS = ("localhost", "127.0.0.1")

NODE_VERSION_TITLE = "Checking system Node.js version"
FOLDER_PERMISSIONS_TITLE = "Checking folder permissions"
SYSTEM_STACK_TITLE = "Checking operating system compatibility"
MYSQL_TITLE = "Checking for a MySQL installation"
VALIDATE_CONFIG_TITLE = "Validating config"
MEMORY_TITLE = "Checking memory availability"
FREE_SPACE_TITLE = "Checking free space"


def settings_from(context: TaskContext) -> AppConfig:
    settings = context.get("settings")
    return settings if isinstance(settings, AppConfig) else default_config()


def _argv(context: TaskContext) -> Mapping[str, Any]:
    return context.get("argv") or {}


def _instance_dir(context: TaskContext) -> Path:
    instance = context.get("instance")
    return instance.dir if instance is not None else Path.cwd()


# ---------------------------------------------------------------------------
# Host lookups (patched in tests)
# ---------------------------------------------------------------------------


def detect_node_version(node_bin: str = "node") -> str | None:
    """Return the version printed by ``node --version`` without the ``v``."""
    try:
        result = subprocess.run(  # noqa: S603
            [node_bin, "--version"],
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError:
        return None
    output = (result.stdout or result.stderr or "").strip()
    if result.returncode != 0 or not output:
        return None
    return output.lstrip("v").strip()


def available_memory_mb() -> float | None:
    """Return available memory in MB, or ``None`` when it cannot be read."""
    try:
        with open("/proc/meminfo", encoding="utf-8") as handle:
            for line in handle:
                if line.startswith("MemAvailable:"):
                    return int(line.split()[1]) / 1024
    except OSError:
        pass
    try:
        pages = os.sysconf("SC_AVPHYS_PAGES")
        page_size = os.sysconf("SC_PAGE_SIZE")
    except (AttributeError, OSError, ValueError):
        return None
    return pages * page_size / MB_IN_BYTES


def free_space_mb(path: Path) -> float:
    """Return free space in MB on the filesystem holding *path*."""
    return shutil.disk_usage(path).free / MB_IN_BYTES


def read_os_release(path: Path = Path("/etc/os-release")) -> dict[str, str]:
    """Parse ``/etc/os-release`` into a mapping."""
    values: dict[str, str] = {}
    try:
        text = path.read_text(encoding="utf-8")
    except OSError:
        return values
    for line in text.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            values[key.strip()] = value.strip().strip('"')
    return values


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------


def check_node_version(context: TaskContext, handle: TaskHandle) -> None:
    """Fail when the installed Node.js is outside the supported range."""
    if os.environ.get(NODE_VERSION_CHECK_ENV) == "false":
        handle.skip(f"{NODE_VERSION_CHECK_ENV}=false")
        return
    supported = settings_from(context).doctor.node_versions
    version = detect_node_version()
    if version is None:
        raise SystemCheckError(
            "Node.js could not be found.",
            hint=f"Install a Node.js version matching {supported}.",
            task=NODE_VERSION_TITLE,
        )
    handle.title = f"{NODE_VERSION_TITLE} - found v{version}"
    try:
        ok = Version(version) in SpecifierSet(supported)
    except (InvalidVersion, InvalidSpecifier) as exc:
        raise SystemCheckError(
            f"Unable to compare Node.js version {version} with {supported}: {exc}",
            task=NODE_VERSION_TITLE,
        ) from exc
    if not ok:
        raise SystemCheckError(
            "The version of Node.js you are using is not supported.",
            hint=f"Supported: {supported}. Installed: {version}.",
            context={"supported": supported, "installed": version},
            task=NODE_VERSION_TITLE,
        )


def check_folder_permissions(context: TaskContext, handle: TaskHandle) -> None:
    """Fail when the instance folder is not writable by the current user."""
    directory = _instance_dir(context)
    problems = [
        str(path)
        for path in (directory, directory / "content")
        if path.exists() and not os.access(path, os.W_OK | os.X_OK)
    ]
    if problems:
        raise SystemCheckError(
            "Your installation folder contains directories with incorrect permissions: "
            + ", ".join(problems),
            hint="Fix ownership of the install directory and try again.",
            task=FOLDER_PERMISSIONS_TITLE,
        )


def _system_stack_problem(context: TaskContext) -> str | None:
    if platform.system() != "Linux":
        return "Operating system is not Linux"
    release = read_os_release()
    if release.get("ID") != "ubuntu":
        return "Linux distribution is not Ubuntu"
    missing = [
        name
        for name, binary in (
            ("systemd", settings_from(context).systemd.systemctl_bin),
            ("nginx", settings_from(context).nginx.nginx_bin),
        )
        if shutil.which(binary) is None
    ]
    if missing:
        return f"Missing package(s): {', '.join(missing)}"
    return None


def check_system_stack(context: TaskContext, handle: TaskHandle) -> None:
    """Fail when the host is not the recommended Ubuntu + systemd + nginx stack."""
    problem = _system_stack_problem(context)
    if problem is not None:
        raise SystemCheckError(
            f"System stack checks failed with message: '{problem}'",
            hint="Some features may not work without additional configuration. "
            "For local installs use a development setup instead.",
            task=SYSTEM_STACK_TITLE,
        )


def check_mysql(context: TaskContext, handle: TaskHandle) -> None:
    """Fail when no local ``mysqld`` binary can be found."""
    search_path = os.pathsep.join(("/usr/sbin", os.environ.get("PATH", "")))
    if shutil.which("mysqld", path=search_path) is None:
        raise SystemCheckError(
            "Local MySQL install not found. "
            "You can ignore this if you are using a remote MySQL host.",
            hint="Install MySQL locally or configure sqlite3 for development installs.",
            task=MYSQL_TITLE,
        )


def _validate_url(value: object) -> str | None:
    parsed = urlparse(str(value))
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return "Invalid URL. Your URL should include a protocol, e.g. http://my-ghost-blog.com"
    try:
        parsed.port
    except ValueError:
        return "Invalid URL. The port must be a number between 0 and 65535."
    return None


def _validate_port(value: object) -> str | None:
    if isinstance(value, bool) or not isinstance(value, int) or not 0 < value < 65536:
        return "Port must be an integer between 1 and 65535."
    return None


def _validate_db_client(value: object) -> str | None:
    if value not in ("mysql", "sqlite3"):
        return "Database client must be 'mysql' or 'sqlite3'."
    return None


CONFIG_VALIDATORS = (
    ("url", _validate_url),
    ("server.port", _validate_port),
    ("database.client", _validate_db_client),
)


def check_config(context: TaskContext, handle: TaskHandle) -> None:
    """Validate the instance config file unless the instance is running."""
    instance = context.get("instance")
    if instance is None:
        handle.skip("Instance not set")
        return
    if instance.running_environment:
        handle.skip("Instance is currently running")
        return

    config = InstanceConfig(instance.config_path, environment=instance.environment)
    for key, validator in CONFIG_VALIDATORS:
        value = config.get(key)
        if value is None:
            continue
        message = validator(value)
        if message is not None:
            raise ConfigError(
                message,
                config_key=key,
                config_value=value,
                environment=instance.environment,
                task=VALIDATE_CONFIG_TITLE,
            )


def check_memory(context: TaskContext, handle: TaskHandle) -> None:
    """Fail when less memory is available than recommended."""
    minimum = settings_from(context).doctor.min_memory_mb
    available = available_memory_mb()
    if available is None:
        handle.skip("Unable to determine available memory")
        return
    if available < minimum:
        raise SystemCheckError(
            f"Ghost recommends you have at least {minimum} MB of memory available "
            f"for smooth operation. It looks like you have {int(available)} MB available.",
            task=MEMORY_TITLE,
        )


def check_free_space(context: TaskContext, handle: TaskHandle) -> None:
    """Fail when the install filesystem has less free space than recommended."""
    minimum = settings_from(context).doctor.min_free_space_mb
    directory = _instance_dir(context)
    try:
        available = free_space_mb(directory)
    except FileNotFoundError:
        handle.skip(f"{directory} does not exist")
        return
    if available < minimum:
        raise SystemCheckError(
            f"You are recommended to have at least {minimum} MB of free storage space "
            f"available for smooth operation. It looks like you have ~{int(available)} MB available.",
            task=FREE_SPACE_TITLE,
        )


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------


def _not_local_process(context: TaskContext) -> bool:
    return context.get("instance") is not None and context.get("process_name") != "local"


def _stack_enabled(context: TaskContext) -> bool:
    return not context.get("local") and context.get("process_name") != "local"


def _stack_skipped(context: TaskContext) -> bool:
    return not context.get("is_doctor_command") and not _argv(context).get("stack")


def _mysql_enabled(context: TaskContext) -> bool:
    instance = context.get("instance")
    if instance is not None:
        return (
            instance.config.get("database.client") != "sqlite3"
            and instance.config.get("database.connection.host") in LOCAL_DB_HOSTS
        )
    argv = _argv(context)
    dbhost = argv.get("dbhost")
    return (
        not context.get("local")
        and argv.get("db") != "sqlite3"
        and (not dbhost or dbhost in LOCAL_DB_HOSTS)
    )


def _memory_enabled(context: TaskContext) -> bool:
    return bool(_argv(context).get("check_mem", True))


BUILTIN_CHECKS: tuple[Task, ...] = (
    Task(
        title=NODE_VERSION_TITLE,
        action=check_node_version,
        categories=frozenset({"install", "update"}),
        reads=("settings",),
    ),
    Task(
        title=FOLDER_PERMISSIONS_TITLE,
        action=check_folder_permissions,
        categories=frozenset({"start", "update"}),
        enabled=_not_local_process,
        reads=("instance", "process_name"),
    ),
    Task(
        title=SYSTEM_STACK_TITLE,
        action=check_system_stack,
        categories=frozenset({"install"}),
        enabled=_stack_enabled,
        skip=_stack_skipped,
        reads=("local", "process_name", "is_doctor_command", "argv", "settings"),
    ),
    Task(
        title=MYSQL_TITLE,
        action=check_mysql,
        categories=frozenset({"install"}),
        enabled=_mysql_enabled,
        reads=("instance", "argv", "local"),
    ),
    Task(
        title=VALIDATE_CONFIG_TITLE,
        action=check_config,
        categories=frozenset({"start"}),
        reads=("instance",),
    ),
    Task(
        title=MEMORY_TITLE,
        action=check_memory,
        categories=frozenset({"install", "start", "update"}),
        enabled=_memory_enabled,
        reads=("argv", "settings"),
    ),
    Task(
        title=FREE_SPACE_TITLE,
        action=check_free_space,
        categories=frozenset({"install", "update"}),
        reads=("instance", "settings"),
    ),
)


__all__ = [
    "BUILTIN_CHECKS",
    "available_memory_mb",
    "check_config",
    "check_folder_permissions",
    "check_free_space",
    "check_memory",
    "check_mysql",
    "check_node_version",
    "check_system_stack",
    "detect_node_version",
    "free_space_mb",
    "read_os_release",
    "settings_from",
]
