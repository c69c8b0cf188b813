"""Host facts and helper command construction.

Tick rate, logical CPU count and boot time are read once per process; they do
not change while the monitor runs.
"""

import math
import os
from dataclasses import dataclass
from functools import cache
from pathlib import Path

import psutil

from resmon.config import HelpersConfig

# Present inside every Flatpak sandbox
FLATPAK_INFO_PATH = Path("/.flatpak-info")


@cache
def get_tick_rate() -> int:
    """Return the kernel clock tick rate (USER_HZ), usually 100."""
    return os.sysconf("SC_CLK_TCK")


@cache
def get_num_cpus() -> int:
    """Return the number of logical CPUs (at least 1)."""
    return psutil.cpu_count(logical=True) or 1


def get_boot_time() -> float:
    """Return system boot time as Unix timestamp."""
    return psutil.boot_time()


def finite_or_default(value: float, default: float = 0.0) -> float:
    """Return value if it is finite, otherwise default."""
    return value if math.isfinite(value) else default


def is_sandboxed(mode: str = "auto") -> bool:
    """Whether helpers must be reached through the host proxy.

    Args:
        mode: "always", "never", or "auto" (detect a Flatpak sandbox)
    """
    if mode == "always":
        return True
    if mode == "never":
        return False
    return FLATPAK_INFO_PATH.exists()


@dataclass(frozen=True)
class HelperLauncher:
    """Builds argv lists for the collector and the kill helper.

    When sandboxed, every command is prefixed with the host proxy and the
    helper is addressed by its absolute path under the sandbox app prefix,
    since the host cannot see the sandbox's own libexec directory otherwise.
    """

    config: HelpersConfig
    sandboxed: bool

    @classmethod
    def from_config(cls, config: HelpersConfig) -> "HelperLauncher":
        return cls(config=config, sandboxed=is_sandboxed(config.sandbox))

    def _helper_path(self, name: str) -> str:
        if self.sandboxed:
            return str(Path(self.config.sandbox_app_path) / "libexec" / "resmon" / name)
        return str(Path(self.config.libexec_dir) / name)

    def _prefix(self) -> list[str]:
        return list(self.config.host_proxy) if self.sandboxed else []

    @property
    def collector_path(self) -> str:
        return self._helper_path(self.config.collector_name)

    @property
    def kill_path(self) -> str:
        return self._helper_path(self.config.kill_name)

    def collector_argv(self) -> list[str]:
        """Command that starts the long-running collector."""
        return self._prefix() + [self.collector_path]

    def kill_argv(self, action: str, pid: int) -> list[str]:
        """Command that delivers one action to one pid."""
        return self._prefix() + [self.kill_path, action, str(pid)]

    def elevated_kill_argv(self, action: str, pid: int) -> list[str]:
        """Same helper invocation as kill_argv, wrapped by the elevation command."""
        return self._prefix() + list(self.config.elevation) + [self.kill_path, action, str(pid)]
