from __future__ import annotations

import asyncio
from typing import List, Optional

import typer

from .config import DEFAULT_CONFIG_PATH, SiteConfig, load_config
from .core import Orchestrator, RunResult
from .errors import SitepipeError
from .logging import get_logger


app = typer.Typer(add_completion=False, help="Static-site build task runner")
log = get_logger("sitepipe.cli")

CONFIG_HELP = "Path to YAML config"


def build_orchestrator(config: SiteConfig) -> Orchestrator:
    from sitetasks.pipelines import build_orchestrator as build

    return build(config)


def watch_rules(config: SiteConfig, full: bool):
    from sitetasks.pipelines import watch_rules as rules

    return rules(config, full=full)


def _split(csv: str) -> List[str]:
    return [x.strip() for x in csv.split(",") if x.strip()]


def _report(result: RunResult) -> None:
    if result.ok:
        typer.echo(f"{result.name}: ok ({result.duration or 0.0:.2f}s)")
        return
    typer.echo(f"{result.name}: FAILED", err=True)
    for leaf in result.failed_leaves():
        typer.echo(f"  {leaf.path}: {leaf.error}", err=True)
    skipped = [r.path for r in result.walk() if r.kind == "task" and not r.started]
    if skipped:
        typer.echo("  not started: " + ", ".join(skipped), err=True)


def _run(name: str, config: str, force: str = "") -> None:
    cfg = load_config(config)
    try:
        orch = build_orchestrator(cfg)
        result = orch.run_sync(name, force=_split(force))
    except SitepipeError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=2)
    _report(result)
    if not result.ok:
        raise typer.Exit(code=1)


@app.command("list")
def list_tasks(config: str = typer.Option(DEFAULT_CONFIG_PATH, help=CONFIG_HELP)):
    """List registered tasks and compositions."""
    orch = build_orchestrator(load_config(config))
    typer.echo("Tasks:")
    for name in sorted(orch.tasks):
        desc = orch.tasks[name].description
        typer.echo(f"- {name}" + (f"  {desc}" if desc else ""))
    typer.echo("Compositions:")
    for name in sorted(orch.compositions):
        typer.echo(f"- {name}")


@app.command("run")
def run_task(
    name: str = typer.Argument(..., help="Task or composition name to run"),
    config: str = typer.Option(DEFAULT_CONFIG_PATH, help=CONFIG_HELP),
    force: str = typer.Option("", help="Comma-separated tasks to run even if cached"),
):
    """Run a single task or composition by name."""
    _run(name, config, force)


@app.command("default")
def default(config: str = typer.Option(DEFAULT_CONFIG_PATH, help=CONFIG_HELP)):
    """Clean, then build scripts, styles, previews and static files."""
    _run("default", config)


@app.command("build")
def build(
    config: str = typer.Option(DEFAULT_CONFIG_PATH, help=CONFIG_HELP),
    force: str = typer.Option("", help="Comma-separated tasks to run even if cached"),
):
    """Full build including image optimisation."""
    _run("build", config, force)


@app.command("deploy-git")
def deploy_git(config: str = typer.Option(DEFAULT_CONFIG_PATH, help=CONFIG_HELP)):
    """Build, validate and publish to GitHub Pages."""
    _run("deploy_git", config)


@app.command("deploy-ftp")
def deploy_ftp(config: str = typer.Option(DEFAULT_CONFIG_PATH, help=CONFIG_HELP)):
    """Build, validate and upload over FTP."""
    _run("deploy_ftp", config)


async def _watch(orch: Orchestrator, rules, debounce: float | None) -> int:
    result = await orch.run("watch")
    _report(result)
    if not result.ok:
        return 1
    watcher = orch.watch(rules, debounce=debounce)
    typer.echo("Watching for changes (Ctrl-C to stop)")
    await watcher.serve_forever()
    return 0


@app.command("watch")
def watch(
    config: str = typer.Option(DEFAULT_CONFIG_PATH, help=CONFIG_HELP),
    full: bool = typer.Option(False, help="Rebuild everything on any change"),
    debounce: Optional[float] = typer.Option(None, help="Seconds to wait for changes to settle"),
):
    """Build, serve, and rebuild on change."""
    cfg = load_config(config)
    try:
        orch = build_orchestrator(cfg)
        code = asyncio.run(_watch(orch, watch_rules(cfg, full), debounce))
    except SitepipeError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=2)
    except KeyboardInterrupt:
        code = 0
    raise typer.Exit(code=code)


def main():  # pragma: no cover
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
