# src/appspawner/apps/cli/app.py
from __future__ import annotations

import json
from typing import Optional

import typer
from rich import print
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from appspawner.domain import SpawnError
from appspawner.services.app_config import load_app_config
from appspawner.services.logging import attach_event_logger, setup_logging
from appspawner.services.settings import Settings
from appspawner.services.spawner.factory import SpawnerFactory, detect_runtime_capabilities
from appspawner.services.spawner.handle import ProcessHandle, WorkerRequestError

app = typer.Typer(help="Spawn application worker processes (preload + fork or direct)")

def _settings(ctx: typer.Context) -> Settings:
    return ctx.obj["settings"]


# -------- composition root --------


@app.callback()
def main(
    ctx: typer.Context,
    base_dir: Optional[str] = typer.Option(None, "--base-dir", help="Logs/state directory (default ~/.appspawner or from .env/ENV)"),
    profile: Optional[str] = typer.Option(None, "--profile", help="Profile name; non-default profiles log to <base-dir>/logs/<profile>"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="DEBUG|INFO|WARNING|ERROR"),
):
    """
    Runs before every subcommand: reads settings and configures logging.
    """
    try:
        settings = Settings.from_sources()
        settings = settings.with_overrides(base_dir=base_dir, profile=profile, log_level=log_level.upper() if log_level else None)
    except ValueError as e:
        raise typer.BadParameter(str(e)) from e
    setup_logging(settings)
    ctx.obj = {"settings": settings}


# -------- commands --------


@app.command("info")
def info(ctx: typer.Context, root: str = typer.Argument(..., help="Application root directory")):
    """Show the resolved application config and what this runtime can do."""
    try:
        cfg = load_app_config(root, _settings(ctx))
    except ValueError as e:
        raise typer.BadParameter(str(e)) from e

    console = Console()
    table = Table(title=f"app {cfg.app_id}", show_header=False)
    table.add_row("root", str(cfg.root_path))
    table.add_row("entrypoint", cfg.entrypoint)
    table.add_row("preload_strategy", cfg.preload_strategy.value)
    table.add_row("runtime_capabilities", ", ".join(sorted(cfg.runtime_capabilities)) or "-")
    table.add_row("detected_capabilities", ", ".join(sorted(detect_runtime_capabilities())) or "-")
    table.add_row("idle_timeout_seconds", str(cfg.idle_timeout_seconds))
    table.add_row("spawn_timeout", str(cfg.spawn_timeout))
    console.print(table)


@app.command("spawn")
def spawn(
    ctx: typer.Context,
    root: str = typer.Argument(..., help="Application root directory"),
    strategy: Optional[str] = typer.Option(None, "--strategy", help="smart | direct"),
    count: int = typer.Option(1, "--count", "-n", min=1, help="How many workers to start"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Per-spawn timeout, sec."),
    idle_timeout: Optional[float] = typer.Option(None, "--idle-timeout", help="Preloader idle timeout, sec. (0 disables)"),
    request: Optional[str] = typer.Option(None, "--request", help="JSON payload sent once to every worker"),
):
    """
    Start workers for the app at ROOT, print what happened, then stop them.
    """
    settings = _settings(ctx)
    if strategy is not None and strategy.lower() not in ("smart", "direct"):
        raise typer.BadParameter("Allowed: smart, direct")
    payload = None
    if request is not None:
        try:
            payload = json.loads(request)
        except json.JSONDecodeError as e:
            raise typer.BadParameter(f"--request is not valid JSON: {e}") from e
    try:
        cfg = load_app_config(
            root,
            settings,
            preload_strategy=strategy.lower() if strategy else None,
            spawn_timeout=timeout,
            idle_timeout_seconds=idle_timeout,
        )
    except ValueError as e:
        raise typer.BadParameter(str(e)) from e

    console = Console()
    handles: list[ProcessHandle] = []
    failed = False
    with SpawnerFactory(settings) as factory:
        attach_event_logger(factory.bus)
        spawner = factory.get_spawner(cfg)
        print(f"[cyan]{type(spawner).__name__}[/cyan] for [bold]{cfg.app_id}[/bold]")

        table = Table("#", "pid", "strategy", "spawn ms", "result")
        try:
            for i in range(count):
                try:
                    handle = spawner.spawn(timeout)
                except SpawnError as e:
                    table.add_row(str(i + 1), str(e.pid or "-"), "-", "-", f"[red]{type(e).__name__}: {escape(str(e))}[/red]")
                    failed = True
                    break
                handles.append(handle)
                result = ""
                if payload is not None:
                    try:
                        result = escape(json.dumps(handle.request(payload, timeout=cfg.spawn_timeout), ensure_ascii=False, default=str))
                    except WorkerRequestError as e:
                        result = f"[red]{escape(str(e))}[/red]"
                        failed = True
                table.add_row(str(i + 1), str(handle.pid), handle.strategy.value, f"{handle.spawn_duration_ms:.1f}", result)
        finally:
            for handle in handles:
                handle.terminate()
        console.print(table)

    if failed:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
