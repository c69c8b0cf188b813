"""Configuration system for resmon."""

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit

SANDBOX_MODES = ("auto", "always", "never")


@dataclass
class SystemConfig:
    """Refresh loop and logging configuration."""

    refresh_interval: float = 2.0  # Seconds between refresh ticks
    # Log file rotation
    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep


@dataclass
class HelpersConfig:
    """Locations and launch prefixes for the privileged helpers.

    The collector streams snapshots over stdin/stdout for the lifetime of the
    monitor. The kill helper is spawned once per (action, pid).
    """

    libexec_dir: str = "/usr/libexec/resmon"
    collector_name: str = "resmon-processes"
    kill_name: str = "resmon-kill"
    sandbox: str = "auto"  # "auto" (detect), "always", "never"
    sandbox_app_path: str = "/app"  # Install prefix inside the sandbox
    host_proxy: list[str] = field(default_factory=lambda: ["flatpak-spawn", "--host"])
    elevation: list[str] = field(default_factory=lambda: ["pkexec", "--disable-internal-agent"])
    max_payload_bytes: int = 256 * 1024 * 1024  # Refuse snapshot frames above this size


@dataclass
class AppsConfig:
    """Application grouping configuration."""

    extra_desktop_dirs: list[str] = field(default_factory=list)
    system_name: str = "System Processes"
    system_icon: str = "system-processes"


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


@dataclass
class Config:
    """Main configuration container."""

    system: SystemConfig = field(default_factory=SystemConfig)
    helpers: HelpersConfig = field(default_factory=HelpersConfig)
    apps: AppsConfig = field(default_factory=AppsConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "resmon"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def state_dir(self) -> Path:
        """State directory for logs."""
        return Path.home() / ".local" / "state" / "resmon"

    @property
    def log_path(self) -> Path:
        """Log path (JSON Lines, rotated)."""
        return self.state_dir / "resmon.log"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in ("system", "helpers", "apps"):
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        All defaults come from the dataclass definitions, so Config() and
        Config.load() on a missing file are identical.
        """
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f)
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {path}: {e}") from e

        return cls(
            system=_load_system_config(data.get("system", {})),
            helpers=_load_helpers_config(data.get("helpers", {})),
            apps=_load_apps_config(data.get("apps", {})),
        )


def _load_system_config(data: dict) -> SystemConfig:
    """Load system config from TOML data."""
    d = SystemConfig()
    refresh_interval = data.get("refresh_interval", d.refresh_interval)
    if refresh_interval <= 0:
        raise ValueError(f"refresh_interval must be > 0, got {refresh_interval}")

    return SystemConfig(
        refresh_interval=float(refresh_interval),
        log_max_bytes=data.get("log_max_bytes", d.log_max_bytes),
        log_backup_count=data.get("log_backup_count", d.log_backup_count),
    )


def _load_helpers_config(data: dict) -> HelpersConfig:
    """Load helper config from TOML data, validating the sandbox mode."""
    d = HelpersConfig()

    sandbox = data.get("sandbox", d.sandbox)
    if sandbox not in SANDBOX_MODES:
        raise ValueError(f"Invalid sandbox: {sandbox!r}. Must be one of {SANDBOX_MODES}")

    max_payload_bytes = data.get("max_payload_bytes", d.max_payload_bytes)
    if max_payload_bytes < 1:
        raise ValueError(f"max_payload_bytes must be >= 1, got {max_payload_bytes}")

    return HelpersConfig(
        libexec_dir=data.get("libexec_dir", d.libexec_dir),
        collector_name=data.get("collector_name", d.collector_name),
        kill_name=data.get("kill_name", d.kill_name),
        sandbox=sandbox,
        sandbox_app_path=data.get("sandbox_app_path", d.sandbox_app_path),
        host_proxy=list(data.get("host_proxy", d.host_proxy)),
        elevation=list(data.get("elevation", d.elevation)),
        max_payload_bytes=max_payload_bytes,
    )


def _load_apps_config(data: dict) -> AppsConfig:
    """Load apps config from TOML data."""
    d = AppsConfig()
    return AppsConfig(
        extra_desktop_dirs=list(data.get("extra_desktop_dirs", d.extra_desktop_dirs)),
        system_name=data.get("system_name", d.system_name),
        system_icon=data.get("system_icon", d.system_icon),
    )
