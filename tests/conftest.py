"""Shared test fixtures for resmon."""

import io
from pathlib import Path

import pytest

from resmon.config import HelpersConfig
from resmon.host import HelperLauncher
from resmon.process import ProcessRecord
from resmon.snapshot import GpuUsageStats, RawProcessSample, frame_snapshot


def make_sample(
    pid: int = 123,
    parent_pid: int = 1,
    uid: int = 1000,
    comm: str = "test_cmd",
    commandline: str = "/usr/bin/test_cmd\0--flag",
    cgroup: str | None = None,
    user_cpu_time: int = 0,
    system_cpu_time: int = 0,
    memory_usage: int = 100,
    read_bytes: int | None = 0,
    write_bytes: int | None = 0,
    gpu_usage_stats: dict[str, GpuUsageStats] | None = None,
    starttime: int = 500,
    timestamp: int = 10_000,
) -> RawProcessSample:
    """Create a RawProcessSample for testing."""
    return RawProcessSample(
        pid=pid,
        parent_pid=parent_pid,
        uid=uid,
        comm=comm,
        commandline=commandline,
        cgroup=cgroup,
        user_cpu_time=user_cpu_time,
        system_cpu_time=system_cpu_time,
        memory_usage=memory_usage,
        read_bytes=read_bytes,
        write_bytes=write_bytes,
        gpu_usage_stats=gpu_usage_stats or {},
        starttime=starttime,
        timestamp=timestamp,
    )


def make_record(
    pid: int = 123,
    app_id: str | None = None,
    memory_usage: int = 100,
    cpu_time_ratio: float | None = None,
    **kwargs,
) -> ProcessRecord:
    """Create a ProcessRecord with a previous sample already mirrored.

    With cpu_time_ratio set, the counters are chosen so the record reports
    that ratio (tick rate and CPU count are patched by the caller or the
    ``fixed_host`` fixture: 100 Hz, 1 CPU).
    """
    if cpu_time_ratio is not None:
        # 1000 ms elapsed at 100 Hz on 1 CPU: ratio = ticks / 100
        first = make_sample(pid=pid, memory_usage=memory_usage, timestamp=10_000, **kwargs)
        second = make_sample(
            pid=pid,
            memory_usage=memory_usage,
            user_cpu_time=round(cpu_time_ratio * 100),
            timestamp=11_000,
            **kwargs,
        )
        record = ProcessRecord.from_sample(first).advanced(second)
    else:
        record = ProcessRecord.from_sample(make_sample(pid=pid, memory_usage=memory_usage, **kwargs))
    record.app_id = app_id
    return record


@pytest.fixture
def fixed_host(monkeypatch: pytest.MonkeyPatch) -> None:
    """Pin tick rate to 100 Hz and CPU count to 1."""
    monkeypatch.setattr("resmon.process.get_tick_rate", lambda: 100)
    monkeypatch.setattr("resmon.process.get_num_cpus", lambda: 1)


@pytest.fixture
def launcher() -> HelperLauncher:
    """Unsandboxed launcher with predictable helper paths."""
    return HelperLauncher(config=HelpersConfig(libexec_dir="/opt/resmon"), sandboxed=False)


class FakeCollector:
    """Stream pair that answers each request byte with a queued frame."""

    def __init__(self, frames: list[bytes] | None = None):
        self.frames = list(frames or [])
        self.requests = 0
        self.stdin = _RequestSink(self)
        self.stdout = io.BytesIO()

    def queue_samples(self, samples: list[RawProcessSample]) -> None:
        self.frames.append(frame_snapshot(samples))

    def on_request(self) -> None:
        self.requests += 1
        position = self.stdout.tell()
        self.stdout.seek(0, io.SEEK_END)
        if self.frames:
            self.stdout.write(self.frames.pop(0))
        self.stdout.seek(position)

    def streams(self) -> tuple["_RequestSink", io.BytesIO]:
        return self.stdin, self.stdout


class _RequestSink(io.RawIOBase):
    def __init__(self, collector: FakeCollector):
        self._collector = collector

    def writable(self) -> bool:
        return True

    def write(self, data) -> int:
        for _ in bytes(data):
            self._collector.on_request()
        return len(data)


@pytest.fixture
def fake_collector() -> FakeCollector:
    """A FakeCollector with no queued frames."""
    return FakeCollector()


@pytest.fixture
def desktop_dir(tmp_path: Path) -> Path:
    """Directory with two desktop entries (one hidden)."""
    apps = tmp_path / "applications"
    apps.mkdir()
    (apps / "org.example.Editor.desktop").write_text(
        "[Desktop Entry]\n"
        "Type=Application\n"
        "Name=Editor\n"
        "Comment=Edit text files\n"
        "Icon=org.example.Editor\n"
        "Exec=/usr/bin/example-editor %F\n"
    )
    (apps / "hidden.desktop").write_text(
        "[Desktop Entry]\nType=Application\nName=Hidden\nExec=hidden\nNoDisplay=true\n"
    )
    return apps
