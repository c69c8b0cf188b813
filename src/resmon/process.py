"""Process records, derived rates, and the record store.

A ProcessRecord pairs the latest RawProcessSample with a mirror of the
previous one. Every rate is computed from the difference between the two,
using saturating subtraction so a counter that goes backwards (pid reuse,
counter reset) yields zero rather than a negative rate.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Callable

import structlog

from resmon.host import finite_or_default, get_boot_time, get_num_cpus, get_tick_rate
from resmon.snapshot import GpuUsageStats, RawProcessSample

log = structlog.get_logger()

DEFAULT_PROCESS_ICON = "generic-process"

# systemd transient scopes created by desktop launchers and Flatpak, e.g.
#   app-flatpak-org.mozilla.firefox-12345.scope
#   app-gnome-org.gnome.Console-4242.scope
#   app-org.kde.konsole@0b1f.service
_SCOPE_RE = re.compile(
    r"app-(?:(?:flatpak|gnome|kde|dbus|snap)-)?(?P<app>[^/]+?)(?:[-@][0-9a-f]+)?\.(?:scope|service)"
)

Identify = Callable[["ProcessRecord"], "str | None"]


class ProcessAction(Enum):
    """Lifecycle actions the kill helper understands."""

    TERM = "TERM"
    STOP = "STOP"
    KILL = "KILL"
    CONT = "CONT"

    @property
    def helper_arg(self) -> str:
        """Argument passed to the kill helper."""
        return _HELPER_ARGS[self]

    @property
    def verb(self) -> str:
        """Past-tense verb for user-facing messages."""
        return _VERBS[self]


_HELPER_ARGS: dict[ProcessAction, str] = {
    ProcessAction.TERM: "TERM",
    ProcessAction.STOP: "STOP",
    ProcessAction.KILL: "KILL",
    ProcessAction.CONT: "CONT",
}

_VERBS: dict[ProcessAction, str] = {
    ProcessAction.TERM: "ended",
    ProcessAction.STOP: "halted",
    ProcessAction.KILL: "killed",
    ProcessAction.CONT: "continued",
}


def _sat_sub(a: int, b: int) -> int:
    return a - b if a > b else 0


def parse_executable(commandline: str) -> tuple[str, str]:
    """Split a command line into (executable_path, executable_name).

    Arguments are normally NUL-separated. Chromium and everything built on it
    rewrite argv into one space-separated string, so the first NUL field is
    additionally cut at the first " --".
    """
    first = commandline.split("\0", 1)[0]
    path = first.split(" --", 1)[0] or commandline
    name = path.rsplit("/", 1)[-1] or commandline
    return path, name


def sanitize_cmdline(cmdline: str) -> str | None:
    """Return a printable command line, or None if it is empty (kernel threads)."""
    if not cmdline:
        return None
    return cmdline.replace("\0", " ")


def app_id_from_cgroup(cgroup: str | None) -> str | None:
    """Extract an application id from a systemd scope in a cgroup path."""
    if not cgroup:
        return None
    match = None
    for match in _SCOPE_RE.finditer(cgroup):
        pass
    if match is None:
        return None
    return match.group("app").replace("\\x2d", "-")


@dataclass
class ProcessRecord:
    """A process as seen across refresh cycles."""

    data: RawProcessSample
    executable_path: str
    executable_name: str
    icon: str = DEFAULT_PROCESS_ICON
    app_id: str | None = None
    # Previous-sample mirror (timestamp_last == 0 means no previous sample)
    cpu_time_last: int = 0
    timestamp_last: int = 0
    read_bytes_last: int | None = None
    write_bytes_last: int | None = None
    gpu_usage_stats_last: dict[str, GpuUsageStats] = field(default_factory=dict)

    @classmethod
    def from_sample(cls, sample: RawProcessSample) -> "ProcessRecord":
        """Create a record for a newly observed process (no previous sample)."""
        executable_path, executable_name = parse_executable(sample.commandline)
        return cls(
            data=sample,
            executable_path=executable_path,
            executable_name=executable_name,
            app_id=app_id_from_cgroup(sample.cgroup),
            read_bytes_last=0 if sample.read_bytes is not None else None,
            write_bytes_last=0 if sample.write_bytes is not None else None,
        )

    def advanced(self, sample: RawProcessSample) -> "ProcessRecord":
        """Return a new record with sample as current and self's counters as the mirror."""
        executable_path, executable_name = parse_executable(sample.commandline)
        return replace(
            self,
            data=sample,
            executable_path=executable_path,
            executable_name=executable_name,
            app_id=app_id_from_cgroup(sample.cgroup),
            cpu_time_last=self.data.cpu_time,
            timestamp_last=self.data.timestamp,
            read_bytes_last=self.data.read_bytes,
            write_bytes_last=self.data.write_bytes,
            gpu_usage_stats_last=dict(self.data.gpu_usage_stats),
        )

    @property
    def pid(self) -> int:
        return self.data.pid

    @property
    def memory_usage(self) -> int:
        return self.data.memory_usage

    @property
    def has_previous(self) -> bool:
        """Whether a previous sample exists to diff against."""
        return self.timestamp_last != 0

    def _delta_ms(self) -> int:
        return _sat_sub(self.data.timestamp, self.timestamp_last)

    def cpu_time_ratio(self) -> float:
        """Share of total machine CPU used since the previous sample (0.0 to 1.0)."""
        if not self.has_previous:
            return 0.0
        delta_cpu = _sat_sub(self.data.cpu_time, self.cpu_time_last) * 1000.0
        denominator = self._delta_ms() * get_tick_rate() * get_num_cpus()
        try:
            ratio = delta_cpu / denominator
        except ZeroDivisionError:
            return 0.0
        return finite_or_default(ratio)

    def _io_speed(self, current: int | None, last: int | None) -> float | None:
        if current is None or last is None:
            return None
        if not self.has_previous:
            return 0.0
        delta_ms = self._delta_ms()
        if delta_ms == 0:
            return 0.0
        return _sat_sub(current, last) / delta_ms * 1000.0

    def read_speed(self) -> float | None:
        """Bytes read per second, None if unsupported for this process."""
        return self._io_speed(self.data.read_bytes, self.read_bytes_last)

    def write_speed(self) -> float | None:
        """Bytes written per second, None if unsupported for this process."""
        return self._io_speed(self.data.write_bytes, self.write_bytes_last)

    def _engine_usage(self, engine: str) -> float:
        """Highest usage fraction of one engine across all GPUs."""
        if not self.has_previous:
            return 0.0
        delta_ms = self._delta_ms()
        highest = 0.0
        for gpu, usage in self.data.gpu_usage_stats.items():
            old_usage = self.gpu_usage_stats_last.get(gpu)
            if old_usage is None:
                continue
            current = getattr(usage, engine)
            previous = getattr(old_usage, engine)
            if usage.nvidia:
                this_usage = current / 100.0
            elif previous == 0 or delta_ms == 0:
                this_usage = 0.0
            else:
                # ns of engine time per ms of wall time, scaled to a fraction
                this_usage = finite_or_default(_sat_sub(current, previous) / delta_ms / 1_000_000.0)
            if this_usage > highest:
                highest = this_usage
        return highest

    def gpu_usage(self) -> float:
        return self._engine_usage("gfx")

    def enc_usage(self) -> float:
        return self._engine_usage("enc")

    def dec_usage(self) -> float:
        return self._engine_usage("dec")

    def gpu_mem_usage(self) -> int:
        """Resident video memory across all GPUs (instantaneous, no delta)."""
        return sum(stats.mem for stats in self.data.gpu_usage_stats.values())

    def starttime(self) -> float:
        """Seconds between boot and process start."""
        return self.data.starttime / get_tick_rate()

    def running_since(self) -> datetime:
        """Wall-clock time the process started."""
        return datetime.fromtimestamp(get_boot_time() + self.starttime())


def merge_records(
    old: dict[int, ProcessRecord],
    samples: list[RawProcessSample],
    identify: Identify | None = None,
) -> dict[int, ProcessRecord]:
    """Build the next record mapping from the previous one and a new snapshot.

    Pure: ``old`` and its records are left untouched. Pids missing from
    ``samples`` are dropped.
    """
    new: dict[int, ProcessRecord] = {}
    for sample in samples:
        previous = old.get(sample.pid)
        if previous is None:
            record = ProcessRecord.from_sample(sample)
        else:
            record = previous.advanced(sample)
        if identify is not None:
            record.app_id = identify(record)
        new[sample.pid] = record
    return new


class ProcessStore:
    """Owns the ProcessRecords between refresh cycles."""

    def __init__(self, identify: Identify | None = None):
        self._records: dict[int, ProcessRecord] = {}
        self._identify = identify

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, pid: object) -> bool:
        return pid in self._records

    def get(self, pid: int) -> ProcessRecord | None:
        return self._records.get(pid)

    @property
    def records(self) -> list[ProcessRecord]:
        """Current records (returns a copy of the list)."""
        return list(self._records.values())

    def merge(self, samples: list[RawProcessSample]) -> list[ProcessRecord]:
        """Install a new snapshot and return the resulting records."""
        new = merge_records(self._records, samples, self._identify)
        exited = len(self._records.keys() - new.keys())
        started = len(new.keys() - self._records.keys())
        self._records = new
        log.debug("store_merged", processes=len(new), started=started, exited=exited)
        return list(new.values())
