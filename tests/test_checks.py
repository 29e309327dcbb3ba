"""Tests for the built-in doctor checks with host lookups patched out."""
from __future__ import annotations

import json

import pytest

from ghostctl.config import AppConfig
from ghostctl.errors import ConfigError, SystemCheckError
from ghostctl.instance import Instance
from ghostctl.tasks import TaskHandle, TaskStatus, checks, run_tasks


@pytest.fixture
def context(instance: Instance, settings: AppConfig) -> dict[str, object]:
    """Return a run context for an installed, stopped instance."""
    return {
        "instance": instance,
        "settings": settings,
        "argv": {},
        "local": False,
        "process_name": "systemd",
        "is_doctor_command": True,
    }


@pytest.fixture
def healthy_host(monkeypatch: pytest.MonkeyPatch) -> None:
    """Patch every host lookup to describe a well-provisioned Ubuntu host."""
    monkeypatch.delenv(checks.NODE_VERSION_CHECK_ENV, raising=False)
    monkeypatch.setattr(checks, "detect_node_version", lambda node_bin="node": "20.11.0")
    monkeypatch.setattr(checks, "available_memory_mb", lambda: 2048.0)
    monkeypatch.setattr(checks, "free_space_mb", lambda path: 10240.0)
    monkeypatch.setattr(checks, "read_os_release", lambda: {"ID": "ubuntu"})
    monkeypatch.setattr(checks.platform, "system", lambda: "Linux")
    monkeypatch.setattr(checks.shutil, "which", lambda name, path=None: f"/usr/bin/{name}")


def test_node_version_in_range_updates_title(
    context: dict[str, object], healthy_host: None
) -> None:
    """A supported Node.js passes and reports the version found."""
    handle = TaskHandle(checks.NODE_VERSION_TITLE)

    checks.check_node_version(context, handle)

    assert handle.title == "Checking system Node.js version - found v20.11.0"
    assert handle.skipped is False


def test_node_version_out_of_range_fails(
    context: dict[str, object], healthy_host: None, monkeypatch: pytest.MonkeyPatch
) -> None:
    """An unsupported Node.js raises a recoverable system check error."""
    monkeypatch.setattr(checks, "detect_node_version", lambda node_bin="node": "16.20.0")

    with pytest.raises(SystemCheckError, match="not supported") as excinfo:
        checks.check_node_version(context, TaskHandle("node"))

    assert excinfo.value.context["installed"] == "16.20.0"


def test_node_missing_fails(
    context: dict[str, object], healthy_host: None, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A host without Node.js fails the check."""
    monkeypatch.setattr(checks, "detect_node_version", lambda node_bin="node": None)

    with pytest.raises(SystemCheckError, match="could not be found"):
        checks.check_node_version(context, TaskHandle("node"))


def test_node_version_check_can_be_disabled(
    context: dict[str, object], healthy_host: None, monkeypatch: pytest.MonkeyPatch
) -> None:
    """The opt-out environment variable skips the check."""
    monkeypatch.setenv(checks.NODE_VERSION_CHECK_ENV, "false")
    handle = TaskHandle("node")

    checks.check_node_version(context, handle)

    assert handle.skipped is True


def test_memory_check_thresholds(
    context: dict[str, object], healthy_host: None, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Low memory fails; unknown memory skips."""
    monkeypatch.setattr(checks, "available_memory_mb", lambda: 100.0)
    with pytest.raises(SystemCheckError, match="at least 150 MB"):
        checks.check_memory(context, TaskHandle("mem"))

    monkeypatch.setattr(checks, "available_memory_mb", lambda: None)
    handle = TaskHandle("mem")
    checks.check_memory(context, handle)
    assert handle.skipped is True


def test_free_space_check_fails_below_threshold(
    context: dict[str, object], healthy_host: None, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Less than the configured free space fails."""
    monkeypatch.setattr(checks, "free_space_mb", lambda path: 12.0)

    with pytest.raises(SystemCheckError, match="~12 MB available"):
        checks.check_free_space(context, TaskHandle("space"))


def test_config_check_reports_invalid_url(context: dict[str, object], instance: Instance) -> None:
    """An invalid URL raises a ConfigError naming the key."""
    instance.config_path.write_text(json.dumps({"url": "myblog.example.com"}), encoding="utf-8")

    with pytest.raises(ConfigError) as excinfo:
        checks.check_config(context, TaskHandle("config"))

    assert excinfo.value.config_key == "url"
    assert excinfo.value.environment == "production"


def test_config_check_reports_non_numeric_url_port(
    context: dict[str, object], instance: Instance
) -> None:
    """A URL whose port is not a number is a config error, not a crash."""
    instance.config_path.write_text(
        json.dumps({"url": "http://myblog.example.com:abc"}), encoding="utf-8"
    )

    with pytest.raises(ConfigError, match="port must be a number") as excinfo:
        checks.check_config(context, TaskHandle("config"))

    assert excinfo.value.config_key == "url"


def test_config_check_reports_invalid_port(context: dict[str, object], instance: Instance) -> None:
    """Ports outside the TCP range are rejected."""
    instance.config_path.write_text(
        json.dumps({"url": "https://myblog.example.com", "server": {"port": 70000}}),
        encoding="utf-8",
    )

    with pytest.raises(ConfigError, match="Port must be an integer"):
        checks.check_config(context, TaskHandle("config"))


def test_config_check_skips_running_or_missing_instance(
    context: dict[str, object], instance: Instance
) -> None:
    """Running instances and missing installs are skipped."""
    instance.set_running("production")
    handle = TaskHandle("config")
    checks.check_config(context, handle)
    assert handle.skip_reason == "Instance is currently running"

    handle = TaskHandle("config")
    checks.check_config({**context, "instance": None}, handle)
    assert handle.skip_reason == "Instance not set"


def test_system_stack_requires_linux(
    context: dict[str, object], healthy_host: None, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Non-Linux hosts fail the stack check."""
    monkeypatch.setattr(checks.platform, "system", lambda: "Darwin")

    with pytest.raises(SystemCheckError, match="Operating system is not Linux"):
        checks.check_system_stack(context, TaskHandle("stack"))


def test_system_stack_reports_missing_packages(
    context: dict[str, object], healthy_host: None, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Missing systemd or nginx binaries are listed."""
    monkeypatch.setattr(
        checks.shutil, "which", lambda name, path=None: None if name == "nginx" else name
    )

    with pytest.raises(SystemCheckError, match="Missing package\\(s\\): nginx"):
        checks.check_system_stack(context, TaskHandle("stack"))


def test_mysql_check_fails_without_mysqld(
    context: dict[str, object], monkeypatch: pytest.MonkeyPatch
) -> None:
    """A missing ``mysqld`` binary fails the check."""
    monkeypatch.setattr(checks.shutil, "which", lambda name, path=None: None)

    with pytest.raises(SystemCheckError, match="Local MySQL install not found"):
        checks.check_mysql(context, TaskHandle("mysql"))


def test_folder_permissions_check(
    context: dict[str, object], monkeypatch: pytest.MonkeyPatch
) -> None:
    """Unwritable directories are reported."""
    monkeypatch.setattr(checks.os, "access", lambda path, mode: False)

    with pytest.raises(SystemCheckError, match="incorrect permissions"):
        checks.check_folder_permissions(context, TaskHandle("perms"))


def test_predicates_follow_instance_and_argv(context: dict[str, object], instance: Instance) -> None:
    """Enabled predicates read the database, process and memory options."""
    assert checks._mysql_enabled(context) is False
    instance.config.set("database", {"client": "mysql", "connection": {"host": "localhost"}})
    assert checks._mysql_enabled(context) is True

    no_instance = {**context, "instance": None, "argv": {"dbhost": "db.internal"}}
    assert checks._mysql_enabled(no_instance) is False

    assert checks._memory_enabled({"argv": {"check_mem": False}}) is False
    assert checks._memory_enabled({}) is True
    assert checks._not_local_process({**context, "process_name": "local"}) is False
    assert checks._stack_skipped({"is_doctor_command": False, "argv": {}}) is True


def test_start_category_runs_expected_builtins(
    context: dict[str, object], healthy_host: None
) -> None:
    """The start category selects permissions, config and memory checks."""
    result = run_tasks(checks.BUILTIN_CHECKS, context, categories=["start"])

    assert result.titles == (
        checks.FOLDER_PERMISSIONS_TITLE,
        checks.VALIDATE_CONFIG_TITLE,
        checks.MEMORY_TITLE,
    )
    assert set(result.statuses().values()) == {TaskStatus.SUCCESS}


def test_install_category_on_healthy_host(context: dict[str, object], healthy_host: None) -> None:
    """Install checks pass and skip the MySQL check for sqlite installs."""
    result = run_tasks(checks.BUILTIN_CHECKS, context, categories=["install"])

    assert result.titles == (
        "Checking system Node.js version - found v20.11.0",
        checks.SYSTEM_STACK_TITLE,
        checks.MEMORY_TITLE,
        checks.FREE_SPACE_TITLE,
    )
    assert result.ok is True
