"""nginx service: publishes an instance's site configuration during setup."""
from __future__ import annotations

import logging
import shutil
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path
from urllib.parse import urlparse

from ..errors import ConfigError, ProcessError
from .base import BaseService
from .hooks import Hook

log = logging.getLogger(__name__)


class NginxService(BaseService):
    """Link a pre-rendered site file into nginx and reload it."""

    def init(self) -> None:
        """Subscribe to ``setup``."""
        self.on(Hook.SETUP, "setup")

    @property
    def sites_available(self) -> Path:
        return self.settings.nginx.sites_available

    @property
    def sites_enabled(self) -> Path:
        return self.settings.nginx.sites_enabled

    @property
    def nginx_bin(self) -> str:
        return self.settings.nginx.nginx_bin

    def is_supported(self) -> bool:
        """Return ``True`` when nginx is installed."""
        return shutil.which(self.nginx_bin) is not None

    def site_name(self, hostname: str) -> str:
        """Return the site file name for *hostname*."""
        return f"{hostname}.conf"

    def source_path(self, hostname: str) -> Path | None:
        """Return the rendered site file inside the instance directory."""
        if self.instance is None:
            return None
        return self.instance.dir / "system" / "files" / self.site_name(hostname)

    def setup(self, context: Mapping[str, object] | None = None, *args: object) -> None:
        """Publish the site unless the context or the URL rules it out."""
        context = context or {}
        if not self.wants_stage(context) or not context.get("nginx", True):
            log.debug("nginx setup not requested")
            return
        if not self.is_supported():
            self.ui.log("Nginx is not installed. Skipping nginx setup.", "yellow")
            return

        url = self.config.get("url")
        if not url:
            self.ui.log("No url configured. Skipping nginx setup.", "yellow")
            return
        parsed = urlparse(url)
        try:
            port = parsed.port
        except ValueError as exc:
            raise ConfigError(
                f"Invalid URL: {exc}.",
                config_key="url",
                config_value=url,
                environment=getattr(self.config, "environment", None),
            ) from exc
        if port:
            self.ui.log("Your url contains a port. Skipping nginx setup.", "yellow")
            return
        if parsed.path not in ("", "/"):
            self.ui.log(
                "The Nginx service does not support subdirectory configurations yet. "
                "Skipping nginx setup.",
                "yellow",
            )
            return

        hostname = parsed.hostname or ""
        source = self.source_path(hostname)
        if source is None or not source.exists():
            self.ui.log(f"Nginx config for {hostname} has not been generated. Skipping nginx setup.", "yellow")
            return

        available = self.sites_available / self.site_name(hostname)
        if available.exists() and not _points_to(available, source):
            self.ui.log(
                "Nginx configuration already found for this url. Skipping nginx configuration.",
                "yellow",
            )
            return

        self.enable(hostname, source)
        try:
            self.test_config()
        except ProcessError:
            self.disable(hostname)
            raise
        self.reload()
        if self.instance is not None:
            self.instance.cli_config.set("extension.nginx", True).save()

    def enable(self, hostname: str, source: Path) -> None:
        """Link *source* into sites-available and sites-enabled."""
        available = self.sites_available / self.site_name(hostname)
        enabled = self.sites_enabled / self.site_name(hostname)
        _link(available, source)
        _link(enabled, available)

    def disable(self, hostname: str) -> None:
        """Remove both links for *hostname*."""
        for directory in (self.sites_enabled, self.sites_available):
            target = directory / self.site_name(hostname)
            if target.is_symlink():
                target.unlink()

    def is_enabled(self, hostname: str) -> bool:
        """Return ``True`` when the site is linked into sites-enabled."""
        target = self.sites_enabled / self.site_name(hostname)
        return target.is_symlink() and target.exists()

    def test_config(self) -> subprocess.CompletedProcess[str]:
        """Run ``nginx -t``."""
        return self._run_nginx(["-t"])

    def reload(self) -> subprocess.CompletedProcess[str]:
        """Reload nginx to apply configuration changes."""
        return self._run_nginx(["-s", "reload"])

    # ------------------------------------------------------------------
    def _run_nginx(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        command = [self.nginx_bin, *args]
        log.debug("running %s", " ".join(command))
        try:
            result = subprocess.run(  # noqa: S603
                command,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise ProcessError(f"{self.nginx_bin} not found: {exc}", command=command) from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise ProcessError(
                f"{self.nginx_bin} {' '.join(args)} failed (exit {result.returncode}): {message}",
                command=command,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result


def _points_to(link: Path, source: Path) -> bool:
    try:
        return link.resolve() == source.resolve()
    except OSError:
        return False


def _link(target: Path, source: Path) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    if target.is_symlink() or target.exists():
        if _points_to(target, source):
            return
        target.unlink()
    target.symlink_to(source)


__all__ = ["NginxService"]
