"""systemd process manager for Ghost instances."""
from __future__ import annotations

import logging
import shutil
import signal
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import TYPE_CHECKING

from ..errors import ConfigError, ProcessError, SystemCheckError
from .base import ProcessManager
from .hooks import Hook

if TYPE_CHECKING:
    from ..config import AppConfig

log = logging.getLogger(__name__)


def unit_name_for(name: str | None, *, environment: str | None = None) -> str:
    """Return ``ghost_<name>`` or raise :class:`ConfigError` when *name* is empty."""
    if not name:
        raise ConfigError(
            "The instance has no process name; systemd cannot address it.",
            config_key="pname",
            config_value=name,
            environment=environment,
        )
    return f"ghost_{name}"


class SystemdProcessManager(ProcessManager):
    """Start and stop an instance through its ``ghost_<name>`` unit."""

    def init(self) -> None:
        """Verify the unit and reload systemd during ``setup``."""
        self.on(Hook.SETUP, "setup")

    @classmethod
    def will_run(cls, settings: AppConfig | None = None) -> bool:
        """Return ``True`` when the configured ``systemctl`` is available on this host."""
        binary = settings.systemd.systemctl_bin if settings is not None else "systemctl"
        return shutil.which(binary) is not None

    @property
    def systemctl_bin(self) -> str:
        """Return the ``systemctl`` executable to call."""
        return self.settings.systemd.systemctl_bin

    @property
    def unit_name(self) -> str:
        """Return the unit name, ``ghost_<instance name>``."""
        name = self.instance.name if self.instance is not None else None
        return unit_name_for(
            name or self.config.get("pname"),
            environment=getattr(self.config, "environment", None),
        )

    @property
    def unit_path(self) -> Path:
        """Return the full path of the unit file."""
        return self.settings.systemd.unit_dir / f"{self.unit_name}.service"

    def setup(self, context: Mapping[str, object] | None = None, *args: object) -> None:
        """Ensure the unit file is installed and reload systemd."""
        if not self.wants_stage(context):
            return
        path = self.unit_path
        if not path.exists():
            raise SystemCheckError(
                f"Systemd unit file {path} not found.",
                hint="Install the unit file for this instance and re-run setup.",
            )
        self._reload_daemon()

    def start(self, *args: object, **kwargs: object) -> None:
        """Start the instance unit."""
        self._systemctl("start", self.unit_name)

    def stop(self, *args: object, **kwargs: object) -> None:
        """Stop the instance unit."""
        self._systemctl("stop", self.unit_name)

    def restart(self, *args: object, **kwargs: object) -> None:
        """Restart the instance unit."""
        self._systemctl("restart", self.unit_name)

    def is_running(self) -> bool:
        """Return ``True`` when the unit is active."""
        result = self._systemctl("is-active", self.unit_name, check=False)
        return result.returncode == 0 and result.stdout.strip() == "active"

    def is_enabled(self) -> bool:
        """Return ``True`` when the unit starts on boot."""
        result = self._systemctl("is-enabled", self.unit_name, check=False)
        return result.returncode == 0

    def enable(self) -> None:
        """Enable the instance unit."""
        self._systemctl("enable", self.unit_name)

    def disable(self) -> None:
        """Disable the instance unit."""
        self._systemctl("disable", self.unit_name)

    # ------------------------------------------------------------------
    def _reload_daemon(self) -> None:
        self._systemctl("daemon-reload")

    def _systemctl(
        self,
        command: str,
        unit: str | None = None,
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.systemctl_bin, command]
        if unit is not None:
            args.append(unit)
        return self._run_command(args, check=check, error_prefix=f"{self.systemctl_bin} {command}")

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        log.debug("running %s", " ".join(args))
        try:
            result = subprocess.run(  # noqa: S603
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise ProcessError(f"{args[0]} not found: {exc}", command=args) from exc
        if check and result.returncode != 0:
            stdout = result.stdout or ""
            stderr = result.stderr or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise ProcessError(
                f"{error_prefix} failed (exit {result.returncode}): {message}",
                command=args,
                returncode=result.returncode,
                stdout=stdout,
                stderr=stderr,
                killed=result.returncode == -signal.SIGKILL,
            )
        return result


__all__ = ["SystemdProcessManager", "unit_name_for"]
