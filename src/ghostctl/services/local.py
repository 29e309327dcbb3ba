"""Process manager running Ghost as a detached child process."""
from __future__ import annotations

import logging
import os
import signal
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING

from ..errors import ProcessError
from .base import ProcessManager

if TYPE_CHECKING:
    from ..config import AppConfig

log = logging.getLogger(__name__)


class LocalProcessManager(ProcessManager):
    """Run the instance as a detached child tracked through a pid file.

    Always available; used as the fallback when the configured backend
    cannot run on the host.
    """

    @classmethod
    def will_run(cls, settings: AppConfig | None = None) -> bool:
        """The local backend runs everywhere."""
        return True

    def _directory(self, directory: Path | str | None) -> Path:
        if directory is not None:
            return Path(directory)
        if self.instance is not None:
            return self.instance.dir
        return Path.cwd()

    def pid_path(self, directory: Path | str | None = None) -> Path:
        """Return the pid file location for the instance."""
        return self._directory(directory) / self.settings.local.pid_file

    def read_pid(self, directory: Path | str | None = None) -> int | None:
        """Return the recorded pid, or ``None`` when there is none."""
        try:
            raw = self.pid_path(directory).read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        try:
            return int(raw)
        except ValueError:
            return None

    def start(
        self,
        directory: Path | str | None = None,
        environment: str | None = None,
        **kwargs: object,
    ) -> None:
        """Spawn the run command detached and record its pid."""
        if self.is_running(directory):
            return
        cwd = self._directory(directory)
        env = dict(os.environ)
        env["NODE_ENV"] = environment or getattr(self.instance, "environment", None) or "production"
        command = list(self.settings.local.run_command)
        log.debug("spawning %s in %s", " ".join(command), cwd)
        try:
            child = self._spawn(command, cwd, env)
        except OSError as exc:
            raise ProcessError(f"Could not start Ghost: {exc}", command=command) from exc
        self.pid_path(cwd).write_text(f"{child.pid}\n", encoding="utf-8")

    def stop(self, directory: Path | str | None = None, **kwargs: object) -> None:
        """Terminate the recorded process; a missing pid file is not an error."""
        pid = self.read_pid(directory)
        if pid is None:
            return
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            log.debug("process %d already gone", pid)
        except PermissionError as exc:
            raise ProcessError(f"Not allowed to stop process {pid}: {exc}") from exc
        self.pid_path(directory).unlink(missing_ok=True)

    def is_running(self, directory: Path | str | None = None) -> bool:
        """Return ``True`` when the recorded pid is alive; clear stale pid files."""
        pid = self.read_pid(directory)
        if pid is None:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            self.pid_path(directory).unlink(missing_ok=True)
            return False
        except PermissionError:
            return True
        return True

    def _spawn(self, command: list[str], cwd: Path, env: dict[str, str]) -> subprocess.Popen[bytes]:
        return subprocess.Popen(  # noqa: S603
            command,
            cwd=str(cwd),
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )


__all__ = ["LocalProcessManager"]
