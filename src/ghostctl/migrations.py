"""One-shot fixups applied when the CLI itself is upgraded.

A migration with a ``before`` bound only applies to instances first set up by
a CLI older than that version. Migrations without a bound run every time
:func:`select_needed` is consulted, so their actions must be idempotent.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from packaging.version import InvalidVersion, Version

from .errors import UsageError
from .tasks.models import Task, TaskContext, TaskHandle

MigrationAction = Callable[[TaskContext], object]


def parse_version(value: str | Version, *, label: str = "version") -> Version:
    """Parse *value* as a version or raise :class:`UsageError`."""
    if isinstance(value, Version):
        return value
    try:
        return Version(str(value))
    except InvalidVersion as exc:
        raise UsageError(f"Invalid {label} '{value}'.") from exc


@dataclass(slots=True, frozen=True)
class Migration:
    """A fixup and the CLI version from which it is no longer needed."""

    title: str
    action: MigrationAction
    before: str | None = None

    def __post_init__(self) -> None:
        """Reject malformed ``before`` bounds early."""
        if self.before is not None:
            parse_version(self.before, label=f"'before' bound of migration '{self.title}'")

    def applies_to(self, installed: Version | None) -> bool:
        """Return ``True`` when an instance set up at *installed* needs this fixup."""
        if self.before is None or installed is None:
            return True
        return installed < Version(self.before)

    def as_task(self) -> Task:
        """Wrap the migration for a :class:`~ghostctl.tasks.pipeline.TaskPipeline` run."""
        action = self.action

        def run(context: TaskContext, handle: TaskHandle) -> object:
            return action(context)

        return Task(title=self.title, action=run, categories=frozenset({"migrate"}))


def ensure_settings_folder(context: TaskContext) -> None:
    """Create ``content/settings`` inside the instance directory."""
    instance = context.get("instance")
    base = instance.dir if instance is not None else Path.cwd()
    (Path(base) / "content" / "settings").mkdir(parents=True, exist_ok=True)


CORE_MIGRATIONS: tuple[Migration, ...] = (
    Migration(
        title="Create content/settings directory",
        action=ensure_settings_folder,
        before="1.7.0",
    ),
)


def _flatten(catalogs: Iterable[Any]) -> list[Migration]:
    flattened: list[Migration] = []
    for entry in catalogs:
        if not entry:
            continue
        if isinstance(entry, Migration):
            flattened.append(entry)
        elif isinstance(entry, Iterable) and not isinstance(entry, (str, bytes)):
            flattened.extend(_flatten(entry))
        else:
            raise UsageError(f"Unsupported migration catalog entry: {entry!r}")
    return flattened


def select_needed(
    installed_version: str | Version | None,
    target_version: str | Version | None,
    builtin: Sequence[Migration] = CORE_MIGRATIONS,
    extension_catalogs: Iterable[Any] = (),
) -> list[Migration]:
    """Return the migrations an upgrade from *installed_version* must run.

    Built-ins come first, then extension entries (nested lists are
    flattened, empty entries dropped). Catalog order is preserved.
    *target_version* is accepted but not consulted. An unknown installed
    version selects everything.
    """
    installed = None
    if installed_version is not None:
        installed = parse_version(installed_version, label="installed version")
    catalog = [*(migration for migration in builtin if migration), *_flatten(extension_catalogs)]
    return [migration for migration in catalog if migration.applies_to(installed)]


__all__ = [
    "CORE_MIGRATIONS",
    "Migration",
    "MigrationAction",
    "ensure_settings_folder",
    "parse_version",
    "select_needed",
]
