"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import io
import json
import os
from collections.abc import Iterable
from pathlib import Path

import pytest
from rich.console import Console

from ghostctl.config import AppConfig, load_config
from ghostctl.instance import Instance
from ghostctl.ui import UI


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


class RecordingUI(UI):
    """UI writing to an in-memory console and recording logs and prompts."""

    def __init__(self, answers: Iterable[bool] = (), *, allow_prompt: bool = True) -> None:
        super().__init__(Console(file=io.StringIO(), width=200), allow_prompt=allow_prompt)
        self.answers = list(answers)
        self.logged: list[tuple[str, str | None]] = []
        self.prompts: list[str] = []

    def log(self, message: str, style: str | None = None) -> None:
        self.logged.append((message, style))
        super().log(message, style)

    def confirm(self, prompt: str, default: bool = False) -> bool:
        self.prompts.append(prompt)
        if not self.allow_prompt:
            return default
        return self.answers.pop(0) if self.answers else default

    @property
    def output(self) -> str:
        """Return everything printed so far."""
        return self.console.file.getvalue()  # type: ignore[attr-defined]

    def warnings(self) -> list[str]:
        """Return the messages logged in yellow."""
        return [message for message, style in self.logged if style == "yellow"]


@pytest.fixture
def ui() -> RecordingUI:
    """Return a UI that answers prompts with their default."""
    return RecordingUI()


@pytest.fixture
def settings(tmp_path: Path) -> AppConfig:
    """Return a configuration pointing every host path into *tmp_path*."""
    return load_config(
        config_file=tmp_path / "missing.yml",
        env={},
        overrides={
            "logs_dir": str(tmp_path / "logs"),
            "systemd": {"unit_dir": str(tmp_path / "units")},
            "nginx": {
                "sites_available": str(tmp_path / "nginx" / "sites-available"),
                "sites_enabled": str(tmp_path / "nginx" / "sites-enabled"),
            },
        },
    )


def write_instance(
    directory: Path,
    *,
    cli: dict[str, object] | None = None,
    config: dict[str, object] | None = None,
    environment: str = "production",
) -> Instance:
    """Create a Ghost install in *directory* and return its handle."""
    directory.mkdir(parents=True, exist_ok=True)
    cli_values = {"cli-version": "1.14.0", "name": "myblog"}
    cli_values.update(cli or {})
    config_values: dict[str, object] = {
        "url": "http://myblog.example.com",
        "process": "systemd",
        "server": {"port": 2368},
        "database": {"client": "sqlite3"},
    }
    config_values.update(config or {})
    (directory / Instance.CLI_CONFIG_FILE).write_text(json.dumps(cli_values), encoding="utf-8")
    (directory / f"config.{environment}.json").write_text(
        json.dumps(config_values), encoding="utf-8"
    )
    return Instance(directory, environment)


@pytest.fixture
def instance(tmp_path: Path) -> Instance:
    """Return an installed instance named ``myblog``."""
    return write_instance(tmp_path / "ghost")
