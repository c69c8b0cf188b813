"""Application grouping, display summaries, and lifecycle fan-out.

Applications are rebuilt from the current records on every refresh. Nothing
here is carried across cycles; callers hold on to an application identity
and resolve it again against the next cycle's records.
"""

from __future__ import annotations

import configparser
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from resmon.actions import ActionExecutor, ActionOutcome
from resmon.process import ProcessAction, ProcessRecord

log = structlog.get_logger()

DEFAULT_APP_ICON = "application-x-executable"

# Launchers whose Exec= first word says nothing about the app itself
_WRAPPERS = {"env", "flatpak", "snap", "sh", "bash", "gapplication"}


@dataclass(frozen=True)
class AppInfo:
    """One installed desktop entry."""

    id: str
    name: str
    icon: str
    description: str | None = None
    executables: frozenset[str] = frozenset()


def _exec_basename(command: str) -> str | None:
    try:
        words = shlex.split(command)
    except ValueError:
        words = command.split()
    for word in words:
        if "=" in word and not word.startswith("/"):
            continue  # env-style VAR=value
        name = os.path.basename(word)
        if name in _WRAPPERS:
            return None
        return name or None
    return None


def parse_desktop_entry(path: Path) -> AppInfo | None:
    """Parse a .desktop file, returning None for hidden or invalid entries."""
    parser = configparser.ConfigParser(interpolation=None, strict=False)
    parser.optionxform = str  # type: ignore[assignment,method-assign]
    try:
        parser.read(path, encoding="utf-8")
    except (configparser.Error, UnicodeDecodeError, OSError) as e:
        log.debug("desktop_entry_unreadable", path=str(path), error=str(e))
        return None

    if not parser.has_section("Desktop Entry"):
        return None
    entry = parser["Desktop Entry"]
    if entry.get("Type", "Application") != "Application":
        return None
    if entry.get("NoDisplay", "false").lower() == "true":
        return None
    if entry.get("Hidden", "false").lower() == "true":
        return None

    app_id = path.name.removesuffix(".desktop")
    executables = set()
    for key in ("Exec", "TryExec"):
        if key in entry:
            name = _exec_basename(entry[key])
            if name:
                executables.add(name)

    return AppInfo(
        id=app_id,
        name=entry.get("Name", app_id),
        icon=entry.get("Icon", DEFAULT_APP_ICON),
        description=entry.get("Comment"),
        executables=frozenset(executables),
    )


def desktop_dirs(extra: list[str] | None = None) -> list[Path]:
    """XDG application directories in priority order (user first)."""
    home = Path.home()
    data_home = Path(os.environ.get("XDG_DATA_HOME") or home / ".local" / "share")
    data_dirs = (os.environ.get("XDG_DATA_DIRS") or "/usr/local/share:/usr/share").split(":")

    roots = [
        data_home,
        data_home / "flatpak" / "exports" / "share",
        Path("/var/lib/flatpak/exports/share"),
        *(Path(d) for d in data_dirs if d),
    ]
    dirs = [root / "applications" for root in roots]
    dirs.extend(Path(d) for d in extra or [])
    return dirs


class AppCatalog:
    """Installed applications, indexed by desktop id and executable name."""

    def __init__(self, apps: list[AppInfo] | None = None):
        self._by_id: dict[str, AppInfo] = {}
        self._by_exec: dict[str, str] = {}
        for app in apps or []:
            self.add(app)

    def __len__(self) -> int:
        return len(self._by_id)

    def add(self, app: AppInfo) -> None:
        """Register an app; the first registration of an id or executable wins."""
        if app.id in self._by_id:
            return
        self._by_id[app.id] = app
        for name in app.executables:
            self._by_exec.setdefault(name, app.id)

    def get(self, app_id: str) -> AppInfo | None:
        return self._by_id.get(app_id)

    @classmethod
    def load(cls, dirs: list[Path] | None = None) -> "AppCatalog":
        """Scan desktop entry directories."""
        catalog = cls()
        for directory in dirs if dirs is not None else desktop_dirs():
            if not directory.is_dir():
                continue
            for path in sorted(directory.rglob("*.desktop")):
                app = parse_desktop_entry(path)
                if app is not None:
                    catalog.add(app)
        log.info("app_catalog_loaded", apps=len(catalog))
        return catalog

    def identify(self, record: ProcessRecord) -> str | None:
        """Application identity of a record, or None for the system bucket.

        A launcher scope in the cgroup wins; otherwise the executable name is
        matched against installed desktop entries.
        """
        if record.app_id:
            return record.app_id
        return self._by_exec.get(record.executable_name)


@dataclass(frozen=True)
class DisplaySummary:
    """Display-ready projection of one application for one refresh cycle."""

    id: str | None
    display_name: str
    icon: str
    memory_usage: int
    cpu_time_ratio: float
    processes_amount: int
    description: str | None = None

    @property
    def is_system(self) -> bool:
        return self.id is None


@dataclass(frozen=True)
class Application:
    """Processes sharing one application identity during one refresh cycle."""

    id: str | None
    display_name: str
    icon: str
    description: str | None = None
    processes: tuple[ProcessRecord, ...] = ()
    executor: ActionExecutor | None = field(default=None, compare=False, repr=False)

    @property
    def is_system(self) -> bool:
        return self.id is None

    @property
    def pids(self) -> list[int]:
        return [p.pid for p in self.processes]

    @property
    def processes_amount(self) -> int:
        return len(self.processes)

    def memory_usage(self) -> int:
        return sum(p.memory_usage for p in self.processes)

    def cpu_time_ratio(self) -> float:
        return sum(p.cpu_time_ratio() for p in self.processes)

    def summary(self) -> DisplaySummary:
        return DisplaySummary(
            id=self.id,
            display_name=self.display_name,
            icon=self.icon,
            memory_usage=self.memory_usage(),
            cpu_time_ratio=self.cpu_time_ratio(),
            processes_amount=self.processes_amount,
            description=self.description,
        )

    def execute(self, action: ProcessAction) -> list[ActionOutcome]:
        """Apply action to every member, returning outcomes in member order.

        Raises:
            ValueError: For the system bucket, or without an executor.
        """
        if self.is_system:
            raise ValueError("refusing to act on the system processes bucket")
        if self.executor is None:
            raise ValueError(f"application {self.id!r} has no action executor")

        outcomes = [self.executor.outcome(action, pid) for pid in self.pids]
        log.info(
            "application_action",
            app=self.id,
            action=action.value,
            tried=len(outcomes),
            failed=sum(1 for o in outcomes if not o.ok),
        )
        return outcomes

    def term(self) -> list[ActionOutcome]:
        return self.execute(ProcessAction.TERM)

    def kill(self) -> list[ActionOutcome]:
        return self.execute(ProcessAction.KILL)

    def stop(self) -> list[ActionOutcome]:
        return self.execute(ProcessAction.STOP)

    def cont(self) -> list[ActionOutcome]:
        return self.execute(ProcessAction.CONT)


class Aggregator:
    """Groups records into applications and summarizes them."""

    def __init__(
        self,
        catalog: AppCatalog | None = None,
        executor: ActionExecutor | None = None,
        *,
        system_name: str = "System Processes",
        system_icon: str = "system-processes",
    ):
        self.catalog = catalog or AppCatalog()
        self.executor = executor
        self.system_name = system_name
        self.system_icon = system_icon

    def _make_app(self, app_id: str | None, members: list[ProcessRecord]) -> Application:
        if app_id is None:
            return Application(
                id=None,
                display_name=self.system_name,
                icon=self.system_icon,
                processes=tuple(members),
                executor=self.executor,
            )
        info = self.catalog.get(app_id)
        return Application(
            id=app_id,
            display_name=info.name if info else app_id,
            icon=info.icon if info else DEFAULT_APP_ICON,
            description=info.description if info else None,
            processes=tuple(members),
            executor=self.executor,
        )

    def group(self, records: list[ProcessRecord]) -> dict[str | None, Application]:
        """Group records by identity. The system bucket (key None) is always present."""
        members: dict[str | None, list[ProcessRecord]] = {None: []}
        for record in records:
            members.setdefault(record.app_id, []).append(record)
        return {app_id: self._make_app(app_id, procs) for app_id, procs in members.items()}

    def summarize(self, records: list[ProcessRecord]) -> list[DisplaySummary]:
        """Display summaries for one cycle, sorted by display name."""
        summaries = [app.summary() for app in self.group(records).values()]
        summaries.sort(key=lambda s: (s.display_name.casefold(), s.id or ""))
        return summaries

    def resolve(self, records: list[ProcessRecord], app_id: str | None) -> Application | None:
        """Application with the given identity in this cycle, if it is running."""
        members = [r for r in records if r.app_id == app_id]
        if not members and app_id is not None:
            return None
        return self._make_app(app_id, members)
