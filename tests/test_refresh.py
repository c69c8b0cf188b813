"""Tests for the refresh loop and selection handling."""

import asyncio

import pytest

from resmon.apps import Aggregator, DisplaySummary
from resmon.channel import ChannelFailure, SnapshotChannel
from resmon.process import ProcessStore
from resmon.refresh import Refresher, Selection

from tests.conftest import FakeCollector, make_sample

pytestmark = pytest.mark.usefixtures("fixed_host")


def _refresher(collector: FakeCollector, **kwargs) -> Refresher:
    channel = SnapshotChannel(stream_factory=collector.streams)
    return Refresher(channel, ProcessStore(), Aggregator(), **kwargs)


def _scoped(pid: int, app: str, **kwargs):
    return make_sample(pid=pid, cgroup=f"/app.slice/app-gnome-{app}-{pid}.scope", **kwargs)


@pytest.mark.asyncio
async def test_refresh_publishes_summaries(fake_collector: FakeCollector):
    published: list[list[DisplaySummary]] = []
    fake_collector.queue_samples([_scoped(10, "org.example.A"), make_sample(pid=1)])
    refresher = _refresher(fake_collector, on_publish=published.append)

    assert await refresher.refresh() is True

    assert len(published) == 1
    assert {s.id for s in refresher.summaries} == {"org.example.A", None}
    assert refresher.state.refresh_count == 1
    assert refresher.state.last_refresh_time is not None


@pytest.mark.asyncio
async def test_failed_refresh_keeps_last_summaries(fake_collector: FakeCollector):
    """A channel failure leaves the store and summaries as they were."""
    failures: list[Exception] = []
    fake_collector.queue_samples([_scoped(10, "org.example.A")])
    refresher = _refresher(fake_collector, on_failure=failures.append)
    await refresher.refresh()
    before = refresher.summaries

    # no frame queued: the collector "hangs up"
    assert await refresher.refresh() is False

    assert refresher.summaries == before
    assert 10 in refresher.store
    assert refresher.state.failure_count == 1
    assert isinstance(failures[0], ChannelFailure)
    assert "short read" in refresher.state.last_error


@pytest.mark.asyncio
async def test_cpu_rate_appears_on_second_refresh(fake_collector: FakeCollector):
    fake_collector.queue_samples([_scoped(10, "org.example.A", user_cpu_time=0, timestamp=10_000)])
    fake_collector.queue_samples([_scoped(10, "org.example.A", user_cpu_time=50, timestamp=11_000)])
    refresher = _refresher(fake_collector)

    await refresher.refresh()
    assert refresher.summaries[0].cpu_time_ratio == 0.0
    await refresher.refresh()
    summary = next(s for s in refresher.summaries if s.id == "org.example.A")
    assert summary.cpu_time_ratio == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_resolve_uses_current_records(fake_collector: FakeCollector):
    fake_collector.queue_samples([_scoped(10, "org.example.A"), _scoped(11, "org.example.A")])
    fake_collector.queue_samples([_scoped(11, "org.example.A")])
    refresher = _refresher(fake_collector)

    await refresher.refresh()
    assert refresher.resolve("org.example.A").pids == [10, 11]
    await refresher.refresh()
    assert refresher.resolve("org.example.A").pids == [11]
    assert refresher.resolve("org.example.Gone") is None


@pytest.mark.asyncio
async def test_tick_skips_while_refresh_running():
    """Overlapping ticks are dropped, not queued."""
    gate = asyncio.Event()

    class SlowChannel:
        async def fetch(self):
            await gate.wait()
            return [make_sample(pid=1)]

    refresher = Refresher(SlowChannel(), ProcessStore(), Aggregator())  # type: ignore[arg-type]
    first = asyncio.create_task(refresher.tick())
    await asyncio.sleep(0)
    assert refresher.busy

    assert await refresher.tick() is False
    assert refresher.state.skipped_ticks == 1

    gate.set()
    assert await first is True
    assert not refresher.busy
    assert refresher.state.refresh_count == 1


@pytest.mark.asyncio
async def test_run_stops_after_stop(fake_collector: FakeCollector):
    for pid in range(3):
        fake_collector.queue_samples([make_sample(pid=pid)])
    refresher = _refresher(fake_collector, interval=0.01)

    def on_publish(summaries):
        if refresher.state.refresh_count >= 3:
            refresher.stop()

    refresher.on_publish = on_publish
    await asyncio.wait_for(refresher.run(), timeout=5.0)
    assert refresher.state.refresh_count == 3


def _summary(app_id: str | None, name: str, procs: int = 1) -> DisplaySummary:
    return DisplaySummary(
        id=app_id,
        display_name=name,
        icon="",
        memory_usage=0,
        cpu_time_ratio=0.0,
        processes_amount=procs,
    )


class TestSelection:
    def test_survives_reorder(self):
        """Selection follows the identity, not the position."""
        selection = Selection()
        first = [_summary("a", "Alpha"), _summary("b", "Beta")]
        selection.select(first[1])

        second = [_summary("c", "Aardvark"), _summary("a", "Alpha"), _summary("b", "Beta", procs=3)]
        assert selection.reselect(second) == 2
        assert selection.app_id == "b"
        assert selection.selected.processes_amount == 3

    def test_cleared_when_app_gone(self):
        selection = Selection()
        selection.select(_summary("a", "Alpha"))
        assert selection.reselect([_summary("b", "Beta")]) is None
        assert selection.selected is None

    def test_system_bucket_selectable(self):
        selection = Selection()
        selection.select(_summary(None, "System Processes"))
        assert selection.reselect([_summary("a", "Alpha"), _summary(None, "System Processes")]) == 1

    def test_nothing_selected(self):
        assert Selection().reselect([_summary("a", "Alpha")]) is None


@pytest.mark.parametrize("interval", [0, -1.5])
def test_non_positive_interval_rejected(fake_collector: FakeCollector, interval: float):
    with pytest.raises(ValueError, match="interval must be > 0"):
        _refresher(fake_collector, interval=interval)

    refresher = _refresher(fake_collector)
    with pytest.raises(ValueError, match="interval must be > 0"):
        refresher.interval = interval
    assert refresher.interval == 2.0
