"""CLI for the livepreview runner."""

import json
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .candidates import list_candidates
from .command_safety import explain, is_safe, sanitize
from .config import resolve_config
from .env_resolver import resolve_start_env
from .errors import PreviewError
from .redaction import redact_output

console = Console()


@click.group()
@click.version_option(version=__version__, prog_name="livepreview")
def cli():
    """livepreview – build and serve previews of GitHub repositories."""
    pass


@cli.command()
@click.option("--host", default=None, help="Bind host (default: LIVEPREVIEW_HOST)")
@click.option("--port", "-p", default=None, type=int, help="Bind port (default: LIVEPREVIEW_PORT)")
@click.option("--real/--stub", "real", default=None, help="Clone, build and start apps, or serve stub pages")
@click.option("--config", "config_path", type=click.Path(exists=True), help="YAML settings file")
def serve(host: Optional[str], port: Optional[int], real: Optional[bool], config_path: Optional[str]):
    """Run the control API."""
    import uvicorn
    from dotenv import load_dotenv

    from .config import RunnerSettings
    from .runner_api import create_app, load_settings

    load_dotenv()
    try:
        settings = RunnerSettings.from_yaml(Path(config_path)) if config_path else load_settings()
    except (OSError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    if host:
        settings.host = host
    if port:
        settings.port = port
    if real is not None:
        settings.use_real_build = real

    mode = "REAL (clone, build, start)" if settings.use_real_build else "STUB (placeholder pages)"
    console.print(f"[bold]livepreview[/bold] on http://{settings.host}:{settings.port}")
    console.print(f"  Port pool: {settings.port_min}-{settings.port_max}")
    console.print(f"  Mode: {mode}")
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


@cli.command()
@click.argument("workspace", type=click.Path(exists=True, file_okay=False))
@click.option("--max", "max_candidates", default=8, type=int, help="Maximum candidates to list")
def candidates(workspace: str, max_candidates: int):
    """List app directories that could be previewed, best first."""
    root = Path(workspace)
    found = list_candidates(root, resolve_config(root, root), max_candidates)

    table = Table(title=f"Preview candidates in {root}")
    table.add_column("#", justify="right")
    table.add_column("Directory", style="cyan")
    table.add_column("Source")
    table.add_column("Score", justify="right")
    table.add_column("Scripts")
    table.add_column("Framework")
    for index, candidate in enumerate(found, start=1):
        table.add_row(
            str(index),
            candidate.app_dir_relative,
            candidate.source,
            str(candidate.score),
            ", ".join(candidate.scripts.labels()) or "-",
            candidate.framework_hint,
        )
    console.print(table)


@cli.command("config")
@click.argument("app_dir", type=click.Path(exists=True, file_okay=False))
@click.option("--root", type=click.Path(exists=True, file_okay=False), help="Workspace root (default: APP_DIR)")
def show_config(app_dir: str, root: Optional[str]):
    """Show the build/start configuration resolved for APP_DIR."""
    config = resolve_config(Path(app_dir), Path(root) if root else None)
    console.print_json(json.dumps(config.to_dict()))
    for warning in config.warnings:
        console.print(f"[yellow]⚠ {warning}[/yellow]")


@cli.command("check-command")
@click.argument("command")
def check_command(command: str):
    """Check COMMAND against the allow-list. Exits 1 when it is rejected."""
    table = Table(title="Command segments")
    table.add_column("Segment", style="cyan")
    table.add_column("Allowed because")
    for segment, rationale in explain(command):
        table.add_row(escape(segment), rationale or "[red]not allowed[/red]")
    console.print(table)

    if not is_safe(command):
        console.print("[red]✗ Rejected[/red]")
        sys.exit(1)
    console.print(f"[green]✓ Accepted[/green] as: {sanitize(command)}")


@cli.command("env")
@click.argument("app_dir", type=click.Path(exists=True, file_okay=False))
@click.option("--root", type=click.Path(exists=True, file_okay=False), help="Workspace root (default: APP_DIR)")
@click.option("--inject/--no-inject", "inject", default=None, help="Force Supabase placeholder injection on or off")
def show_env(app_dir: str, root: Optional[str], inject: Optional[bool]):
    """Show the environment a started preview app would receive (secrets redacted)."""
    try:
        config = resolve_config(Path(app_dir), Path(root) if root else None)
        if inject is not None:
            config.inject_placeholders = inject
        start_env = resolve_start_env(Path(app_dir), config)
    except (PreviewError, OSError) as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    table = Table(title=f"Preview environment for {app_dir}")
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    table.add_column("Injected", justify="center")
    for key in sorted(start_env.env):
        value = redact_output(start_env.env[key], start_env.env)
        table.add_row(key, escape(value), "✓" if key in start_env.injected_keys else "")
    console.print(table)
    console.print(f"Backend detected: {start_env.backend_detected}  Placeholder mode: {start_env.placeholder_mode}")


def main(argv=None):
    """Main entry point."""
    cli(argv)


if __name__ == "__main__":
    main()
