"""Tests for the collector and kill helper programs."""

import io
import os
import signal
from unittest.mock import MagicMock, patch

import psutil
import pytest
from click.testing import CliRunner

from resmon.helpers import (
    collect_samples,
    deliver,
    gpu_usage_from_fdinfo,
    kill_main,
    parse_fdinfo,
    sample_process,
    serve,
)
from resmon.process import ProcessAction
from resmon.snapshot import LENGTH_PREFIX_SIZE, GpuUsageStats, decode_length, decode_snapshot

from tests.conftest import make_sample

AMDGPU_FDINFO = """\
pos:\t0
flags:\t02100002
drm-driver:\tamdgpu
drm-pdev:\t0000:03:00.0
drm-client-id:\t17
drm-memory-vram:\t2048 KiB
drm-engine-gfx:\t1500000 ns
drm-engine-dec:\t300 ns
"""


class TestDeliver:
    def test_sends_signal(self):
        with patch("resmon.helpers.os.kill") as kill:
            assert deliver(ProcessAction.STOP, 42) == 0
        kill.assert_called_once_with(42, signal.SIGSTOP)

    @pytest.mark.parametrize("pid", [0, -1])
    def test_rejects_group_pids(self, pid: int):
        with patch("resmon.helpers.os.kill") as kill:
            assert deliver(ProcessAction.KILL, pid) == 2
        kill.assert_not_called()

    def test_permission_denied(self):
        with patch("resmon.helpers.os.kill", side_effect=PermissionError):
            assert deliver(ProcessAction.TERM, 1) == 1

    def test_no_such_process(self):
        with patch("resmon.helpers.os.kill", side_effect=ProcessLookupError):
            assert deliver(ProcessAction.TERM, 999_999) == 3

    def test_continue_own_process(self):
        """SIGCONT to ourselves is harmless and succeeds."""
        assert deliver(ProcessAction.CONT, os.getpid()) == 0


class TestKillMain:
    def test_exit_code_is_delivery_result(self):
        runner = CliRunner()
        with patch("resmon.helpers.deliver", return_value=3) as deliver_mock:
            result = runner.invoke(kill_main, ["TERM", "1234"])
        assert result.exit_code == 3
        deliver_mock.assert_called_once_with(ProcessAction.TERM, 1234)

    def test_unknown_action_is_usage_error(self):
        result = CliRunner().invoke(kill_main, ["HUP", "1"])
        assert result.exit_code == 2


class TestFdinfo:
    def test_parse(self):
        fields = parse_fdinfo(AMDGPU_FDINFO)
        assert fields["drm-pdev"] == "0000:03:00.0"
        assert fields["drm-engine-gfx"] == "1500000 ns"

    def test_usage_summed_per_device(self):
        entry = parse_fdinfo(AMDGPU_FDINFO)
        other = dict(entry, **{"drm-client-id": "18", "drm-engine-gfx": "500000 ns"})
        usage = gpu_usage_from_fdinfo([entry, other])
        assert usage == {
            "0000:03:00.0": GpuUsageStats(gfx=2_000_000, mem=4 * 1024 * 1024, dec=600),
        }

    def test_shared_client_counted_once(self):
        entry = parse_fdinfo(AMDGPU_FDINFO)
        usage = gpu_usage_from_fdinfo([entry, dict(entry)])
        assert usage["0000:03:00.0"].gfx == 1_500_000

    def test_entries_without_client_ignored(self):
        assert gpu_usage_from_fdinfo([{"drm-pdev": "x"}]) == {}


def test_sample_own_process():
    """Our own process is always readable."""
    proc = psutil.Process()
    sample = sample_process(proc, psutil.boot_time(), os.sysconf("SC_CLK_TCK"))
    assert sample.pid == os.getpid()
    assert sample.memory_usage > 0
    assert sample.timestamp > 0


def test_collect_samples_skips_vanished():
    good = MagicMock(pid=1)
    gone = MagicMock(pid=2)
    with (
        patch("resmon.helpers.psutil.process_iter", return_value=[gone, good]),
        patch("resmon.helpers.sample_process", side_effect=[psutil.NoSuchProcess(2), make_sample(pid=1)]),
    ):
        samples = collect_samples()
    assert [s.pid for s in samples] == [1]


def test_serve_answers_each_request():
    stdin = io.BytesIO(b"\n\n")
    stdout = io.BytesIO()
    with patch("resmon.helpers.collect_samples", return_value=[make_sample(pid=5)]):
        served = serve(stdin, stdout)

    assert served == 2
    data = stdout.getvalue()
    length = decode_length(data[:LENGTH_PREFIX_SIZE])
    payload = data[LENGTH_PREFIX_SIZE : LENGTH_PREFIX_SIZE + length]
    assert [s.pid for s in decode_snapshot(payload)] == [5]
    assert len(data) == 2 * (LENGTH_PREFIX_SIZE + length)
