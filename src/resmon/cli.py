"""CLI commands for resmon."""

import asyncio
import signal
import time

import click

from resmon.actions import ActionReport
from resmon.apps import DisplaySummary
from resmon.config import Config
from resmon.process import ProcessAction
from resmon.refresh import Refresher


def _open_refresher(config: Config) -> Refresher:
    """Wire channel, store, aggregator and executor from config."""
    from resmon.actions import ActionExecutor
    from resmon.apps import AppCatalog, Aggregator, desktop_dirs
    from resmon.channel import SnapshotChannel
    from resmon.host import HelperLauncher
    from resmon.process import ProcessStore

    launcher = HelperLauncher.from_config(config.helpers)
    catalog = AppCatalog.load(desktop_dirs(config.apps.extra_desktop_dirs))
    aggregator = Aggregator(
        catalog,
        ActionExecutor(launcher),
        system_name=config.apps.system_name,
        system_icon=config.apps.system_icon,
    )
    channel = SnapshotChannel(launcher, max_payload_bytes=config.helpers.max_payload_bytes)
    return Refresher(
        channel,
        ProcessStore(identify=catalog.identify),
        aggregator,
        interval=config.system.refresh_interval,
    )


def _print_summaries(summaries: list[DisplaySummary]) -> None:
    from resmon.formatting import format_bytes, format_ratio

    click.echo(f"{'Application':32}  {'ID':36}  {'Memory':>10}  {'Processor':>9}  {'Procs':>5}")
    click.echo("-" * 100)
    for s in summaries:
        click.echo(
            f"{s.display_name[:32]:32}  {(s.id or '-')[:36]:36}  "
            f"{format_bytes(s.memory_usage):>10}  {format_ratio(s.cpu_time_ratio):>9}  "
            f"{s.processes_amount:>5}"
        )


@click.group()
@click.version_option(package_name="resmon")
@click.pass_context
def main(ctx: click.Context) -> None:
    """Monitor running applications and control their processes."""
    from resmon.logging import configure

    ctx.ensure_object(dict)
    config = Config.load()
    ctx.obj["config"] = config
    configure(config)


@main.command("list")
@click.option("--delay", "-d", default=1.0, show_default=True, help="Seconds between samples")
@click.pass_context
def list_apps(ctx: click.Context, delay: float) -> None:
    """Show running applications.

    Two snapshots are taken so CPU usage can be computed.
    """
    from resmon import logging as console

    refresher = _open_refresher(ctx.obj["config"])

    async def _run() -> bool:
        if not await refresher.refresh():
            return False
        await asyncio.sleep(delay)
        return await refresher.refresh()

    try:
        ok = asyncio.run(_run())
    finally:
        refresher.channel.close()

    if not ok:
        console.refresh_failed(refresher.state.last_error or "unknown error")
        raise SystemExit(1)
    _print_summaries(refresher.summaries)


@main.command()
@click.option(
    "--interval",
    "-i",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Override refresh interval",
)
@click.option("--count", "-n", type=int, default=0, help="Stop after N refreshes (0 = forever)")
@click.pass_context
def watch(ctx: click.Context, interval: float | None, count: int) -> None:
    """Refresh and print applications periodically."""
    from resmon import logging as console

    refresher = _open_refresher(ctx.obj["config"])
    if interval is not None:
        refresher.interval = interval

    def on_publish(summaries: list[DisplaySummary]) -> None:
        click.echo()
        click.echo(time.strftime("%H:%M:%S"))
        _print_summaries(summaries)
        if count and refresher.state.refresh_count >= count:
            refresher.stop()

    def on_failure(error: Exception) -> None:
        console.refresh_failed(str(error))

    refresher.on_publish = on_publish
    refresher.on_failure = on_failure

    def on_signal(sig: signal.Signals) -> None:
        console.signal_received(sig.name)
        refresher.stop()

    async def _run() -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal, sig)
        await refresher.run()

    try:
        asyncio.run(_run())
    finally:
        refresher.channel.close()


def _act(config: Config, action: ProcessAction, app_id: str) -> None:
    from resmon import logging as console

    refresher = _open_refresher(config)
    try:
        ok = asyncio.run(refresher.refresh())
    finally:
        refresher.channel.close()
    if not ok:
        console.refresh_failed(refresher.state.last_error or "unknown error")
        raise SystemExit(1)

    app = refresher.resolve(app_id)
    if app is None:
        console.app_not_found(app_id)
        raise SystemExit(1)

    report = ActionReport.from_outcomes(action, app.execute(action))
    console.action_report(app.display_name, report)
    if not report.all_ok:
        raise SystemExit(1)


@main.command("end")
@click.argument("app_id")
@click.confirmation_option(prompt="End application? Unsaved work might be lost.")
@click.pass_context
def end_app(ctx: click.Context, app_id: str) -> None:
    """Terminate every process of APP_ID (SIGTERM)."""
    _act(ctx.obj["config"], ProcessAction.TERM, app_id)


@main.command("kill")
@click.argument("app_id")
@click.confirmation_option(prompt="Kill application? This can lose data.")
@click.pass_context
def kill_app(ctx: click.Context, app_id: str) -> None:
    """Kill every process of APP_ID (SIGKILL)."""
    _act(ctx.obj["config"], ProcessAction.KILL, app_id)


@main.command("halt")
@click.argument("app_id")
@click.confirmation_option(prompt="Halt application?")
@click.pass_context
def halt_app(ctx: click.Context, app_id: str) -> None:
    """Stop every process of APP_ID (SIGSTOP)."""
    _act(ctx.obj["config"], ProcessAction.STOP, app_id)


@main.command("continue")
@click.argument("app_id")
@click.pass_context
def continue_app(ctx: click.Context, app_id: str) -> None:
    """Resume every process of APP_ID (SIGCONT)."""
    _act(ctx.obj["config"], ProcessAction.CONT, app_id)


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Display current configuration."""
    cfg: Config = ctx.obj["config"]

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    click.echo()
    click.echo("[system]")
    click.echo(f"  refresh_interval = {cfg.system.refresh_interval}")
    click.echo()
    click.echo("[helpers]")
    click.echo(f"  libexec_dir = {cfg.helpers.libexec_dir}")
    click.echo(f"  sandbox = {cfg.helpers.sandbox}")
    click.echo(f"  elevation = {' '.join(cfg.helpers.elevation)}")
    click.echo()
    click.echo("[apps]")
    click.echo(f"  system_name = {cfg.apps.system_name}")


@config.command("init")
@click.pass_context
def config_init(ctx: click.Context) -> None:
    """Write the default config file if none exists."""
    from resmon import logging as console

    cfg: Config = ctx.obj["config"]
    if cfg.config_path.exists():
        click.echo(f"Config already exists at {cfg.config_path}")
        return
    cfg.save()
    console.config_created(str(cfg.config_path))
