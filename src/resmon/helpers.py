"""Privileged helper programs: the snapshot collector and the kill helper.

Both are installed as separate executables (``resmon-processes`` and
``resmon-kill``) so the monitor itself never needs elevated privileges.
The collector writes only protocol frames to stdout; its own logging goes to
stderr.
"""

import os
import signal
import sys
import time
from pathlib import Path
from typing import BinaryIO

import click
import psutil
import structlog

from resmon.actions import EXIT_INVALID, EXIT_NO_PERMISSION, EXIT_NO_SUCH_PROCESS, EXIT_OK
from resmon.host import get_boot_time, get_tick_rate
from resmon.process import ProcessAction
from resmon.snapshot import GpuUsageStats, RawProcessSample, frame_snapshot

log = structlog.get_logger()

PROC = Path("/proc")

SIGNALS: dict[ProcessAction, signal.Signals] = {
    ProcessAction.TERM: signal.SIGTERM,
    ProcessAction.STOP: signal.SIGSTOP,
    ProcessAction.KILL: signal.SIGKILL,
    ProcessAction.CONT: signal.SIGCONT,
}

# fdinfo keys per engine, first match wins (amdgpu, i915/xe, others)
_ENGINE_KEYS = {
    "gfx": ("drm-engine-gfx", "drm-engine-render"),
    "enc": ("drm-engine-enc", "drm-engine-video-enhance"),
    "dec": ("drm-engine-dec", "drm-engine-video"),
}
_MEMORY_KEYS = ("drm-memory-vram", "drm-resident-vram0", "drm-resident-local0", "drm-resident-system0")
_UNITS = {"": 1, "B": 1, "KiB": 1024, "MiB": 1024**2, "GiB": 1024**3}


def _boottime_ms() -> int:
    clock = getattr(time, "CLOCK_BOOTTIME", time.CLOCK_MONOTONIC)
    return time.clock_gettime_ns(clock) // 1_000_000


def _read_cgroup(pid: int) -> str | None:
    try:
        text = (PROC / str(pid) / "cgroup").read_text()
    except OSError:
        return None
    for line in text.splitlines():
        # cgroup v2 unified hierarchy: "0::/user.slice/..."
        if line.startswith("0::"):
            return line[3:]
    return None


def _parse_quantity(value: str) -> int:
    parts = value.split()
    number = int(parts[0])
    unit = parts[1] if len(parts) > 1 else ""
    if unit == "ns":
        return number
    return number * _UNITS.get(unit, 1)


def parse_fdinfo(text: str) -> dict[str, str]:
    """Parse a /proc/<pid>/fdinfo/<fd> file into key/value pairs."""
    fields = {}
    for line in text.splitlines():
        key, sep, value = line.partition(":")
        if sep:
            fields[key.strip()] = value.strip()
    return fields


def gpu_usage_from_fdinfo(entries: list[dict[str, str]]) -> dict[str, GpuUsageStats]:
    """Sum DRM client counters per PCI device.

    A client shared by several file descriptors is counted once.
    """
    seen: set[tuple[str, str]] = set()
    totals: dict[str, dict[str, int]] = {}
    for entry in entries:
        pdev = entry.get("drm-pdev")
        client = entry.get("drm-client-id")
        if pdev is None or client is None or (pdev, client) in seen:
            continue
        seen.add((pdev, client))

        total = totals.setdefault(pdev, {"gfx": 0, "enc": 0, "dec": 0, "mem": 0})
        try:
            for engine, keys in _ENGINE_KEYS.items():
                key = next((k for k in keys if k in entry), None)
                if key is not None:
                    total[engine] += _parse_quantity(entry[key])
            key = next((k for k in _MEMORY_KEYS if k in entry), None)
            if key is not None:
                total["mem"] += _parse_quantity(entry[key])
        except (ValueError, IndexError):
            log.debug("fdinfo_unparseable", pdev=pdev, client=client)

    return {pdev: GpuUsageStats(**counters) for pdev, counters in totals.items()}


def _read_gpu_usage(pid: int) -> dict[str, GpuUsageStats]:
    fdinfo_dir = PROC / str(pid) / "fdinfo"
    entries = []
    try:
        paths = list(fdinfo_dir.iterdir())
    except OSError:
        return {}
    for path in paths:
        try:
            text = path.read_text()
        except OSError:
            continue
        if "drm-client-id" in text:
            entries.append(parse_fdinfo(text))
    return gpu_usage_from_fdinfo(entries)


def sample_process(proc: psutil.Process, boot_time: float, tick_rate: int) -> RawProcessSample:
    """Read one process's counters.

    Raises:
        psutil.NoSuchProcess: If the process exited mid-read.
        psutil.AccessDenied: If basic process info is unreadable.
    """
    with proc.oneshot():
        cpu = proc.cpu_times()
        try:
            io = proc.io_counters()
            read_bytes, write_bytes = io.read_bytes, io.write_bytes
        except (psutil.AccessDenied, AttributeError):
            read_bytes = write_bytes = None
        try:
            commandline = "\0".join(proc.cmdline())
        except psutil.AccessDenied:
            commandline = ""

        return RawProcessSample(
            pid=proc.pid,
            parent_pid=proc.ppid(),
            uid=proc.uids().real,
            comm=proc.name(),
            commandline=commandline,
            cgroup=_read_cgroup(proc.pid),
            user_cpu_time=int(cpu.user * tick_rate),
            system_cpu_time=int(cpu.system * tick_rate),
            memory_usage=proc.memory_info().rss,
            read_bytes=read_bytes,
            write_bytes=write_bytes,
            gpu_usage_stats=_read_gpu_usage(proc.pid),
            starttime=max(0, int((proc.create_time() - boot_time) * tick_rate)),
            timestamp=_boottime_ms(),
        )


def collect_samples() -> list[RawProcessSample]:
    """Sample every process that can be read. Vanished processes are skipped."""
    boot_time = get_boot_time()
    tick_rate = get_tick_rate()
    samples = []
    for proc in psutil.process_iter():
        try:
            samples.append(sample_process(proc, boot_time, tick_rate))
        except (psutil.NoSuchProcess, psutil.ZombieProcess, psutil.AccessDenied):
            continue
    return samples


def serve(stdin: BinaryIO, stdout: BinaryIO) -> int:
    """Answer snapshot requests until stdin closes. Returns the number served."""
    served = 0
    while stdin.read(1):
        stdout.write(frame_snapshot(collect_samples()))
        stdout.flush()
        served += 1
    return served


@click.command()
def collector_main() -> None:
    """Serve process snapshots over stdin/stdout."""
    structlog.configure(logger_factory=structlog.PrintLoggerFactory(sys.stderr))
    try:
        served = serve(sys.stdin.buffer, sys.stdout.buffer)
    except BrokenPipeError:
        return
    log.debug("collector_exiting", served=served)


def deliver(action: ProcessAction, pid: int) -> int:
    """Send action's signal to pid and map the result to a helper exit code."""
    if pid <= 0:
        # 0 and negatives address process groups, never a single process
        return EXIT_INVALID
    try:
        os.kill(pid, SIGNALS[action])
    except PermissionError:
        return EXIT_NO_PERMISSION
    except ProcessLookupError:
        return EXIT_NO_SUCH_PROCESS
    return EXIT_OK


@click.command()
@click.argument("action", type=click.Choice([a.value for a in ProcessAction]))
@click.argument("pid", type=int)
@click.pass_context
def kill_main(ctx: click.Context, action: str, pid: int) -> None:
    """Send ACTION (TERM, STOP, KILL, CONT) to PID."""
    ctx.exit(deliver(ProcessAction(action), pid))
