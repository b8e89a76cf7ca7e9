"""plugin-runtime CLI - Main entry point."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from plugin_runtime import __version__
from plugin_runtime.config import Settings, configure_logging
from plugin_runtime.errors import CircularDependencyError
from plugin_runtime.models import PluginState, Severity
from plugin_runtime.runtime import PluginRuntime
from plugin_runtime.validation import create_validation_summary

app = typer.Typer(
    name="plugin-runtime",
    help="Discover, validate, load and run plugins",
    add_completion=False,
)
console = Console()

STATE_STYLES = {
    PluginState.ACTIVE: "green",
    PluginState.LOADED: "cyan",
    PluginState.REGISTERED: "blue",
    PluginState.INACTIVE: "dim",
    PluginState.ERROR: "red",
}


def _options(ctx: typer.Context) -> dict[str, Any]:
    return ctx.ensure_object(dict)


def build_settings(ctx: typer.Context, **overrides: Any) -> Settings:
    """Settings from the environment plus the global command-line options."""
    options = _options(ctx)
    values: dict[str, Any] = {}
    if options.get("plugin_dirs"):
        values["plugin_directories"] = [str(Path(p).resolve()) for p in options["plugin_dirs"]]
    if options.get("mode"):
        values["validation_mode"] = options["mode"]
    if options.get("state_dir"):
        values["state_dir"] = options["state_dir"]
    values.update(overrides)
    return Settings(**values)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


@app.command()
def scan(ctx: typer.Context):
    """Scan plugin directories and list what was found."""
    runtime = PluginRuntime(build_settings(ctx, enable_state_persistence=False))
    results = runtime.discover()

    if _options(ctx).get("json"):
        _print_json(
            [
                {
                    "id": r.metadata.id,
                    "name": r.metadata.name,
                    "version": r.metadata.version,
                    "path": str(r.plugin_path),
                    "valid": r.is_valid,
                    "errors": r.errors,
                }
                for r in results
            ]
        )
        return

    if not results:
        console.print("[yellow]No plugins found[/yellow]")
        console.print(
            f"\nSearched: {', '.join(runtime.settings.plugin_directories)}"
        )
        return

    table = Table(title="Discovered Plugins")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="bold")
    table.add_column("Version")
    table.add_column("Dependencies")
    table.add_column("Status")

    for r in results:
        status = "[green]valid[/green]" if r.is_valid else f"[red]{'; '.join(r.errors)}[/red]"
        table.add_row(
            r.metadata.id,
            r.metadata.name or "-",
            r.metadata.version or "-",
            ", ".join(r.metadata.dependencies) or "-",
            status,
        )

    console.print(table)


@app.command()
def validate(ctx: typer.Context):
    """Run every validation rule against the discovered plugins."""
    runtime = PluginRuntime(build_settings(ctx, enable_state_persistence=False))
    validations = [runtime.validator.validate_discovery(r) for r in runtime.discover()]
    summary = create_validation_summary(validations)

    if _options(ctx).get("json"):
        _print_json(
            {
                "summary": summary,
                "plugins": [v.model_dump(mode="json") for v in validations],
            }
        )
    else:
        for validation in validations:
            _print_validation(validation)

        console.print(
            Panel(
                f"Plugins: [bold]{summary['total_plugins']}[/bold]  "
                f"Valid: [green]{summary['valid_plugins']}[/green]  "
                f"Invalid: [red]{summary['invalid_plugins']}[/red]\n"
                f"Errors: {summary['total_errors']}  Warnings: {summary['total_warnings']}\n"
                f"Common issues: {', '.join(summary['common_issues']) or '-'}",
                title="Validation Summary",
                border_style="blue",
            )
        )

    if summary["invalid_plugins"]:
        raise typer.Exit(1)


def _print_validation(validation) -> None:
    lines = []
    for result in validation.results:
        if not result.valid:
            lines.append(f"[red]✗[/red] {result.rule}: {result.message}")
        elif result.severity == Severity.WARNING:
            lines.append(f"[yellow]![/yellow] {result.rule}: {result.message}")
    if not lines:
        lines.append("[green]✓ All rules passed[/green]")

    console.print(
        Panel(
            "\n".join(lines),
            title=validation.plugin_id,
            border_style="green" if validation.valid else "red",
        )
    )


@app.command()
def order(ctx: typer.Context):
    """Show the dependency order plugins would be loaded in."""
    runtime = PluginRuntime(build_settings(ctx, enable_state_persistence=False))
    runtime.discover()

    try:
        ordered = runtime.discovery.sort_plugins_by_dependencies()
    except CircularDependencyError as e:
        if _options(ctx).get("json"):
            _print_json({"error": str(e), "cycle": e.cycle})
        else:
            console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    ids = [r.metadata.id for r in ordered]
    if _options(ctx).get("json"):
        _print_json(ids)
        return

    if not ids:
        console.print("[yellow]No valid plugins found[/yellow]")
        return
    for i, plugin_id in enumerate(ids, 1):
        deps = runtime.discovery.get_plugin_by_id(plugin_id).metadata.dependencies
        suffix = f" [dim](after {', '.join(deps)})[/dim]" if deps else ""
        console.print(f"  {i}. [cyan]{plugin_id}[/cyan]{suffix}")


@app.command()
def run(
    ctx: typer.Context,
    watch: bool = typer.Option(
        False,
        "--watch", "-w",
        help="Keep running with hot reload until interrupted",
    ),
    restore: bool = typer.Option(
        False,
        "--restore",
        help="Only activate the plugins that were active last session",
    ),
):
    """Load and activate plugins, then print the registry state."""
    settings = build_settings(ctx, development=True) if watch else build_settings(ctx)
    json_output = bool(_options(ctx).get("json"))

    try:
        exit_code = asyncio.run(_run(settings, watch, restore, json_output))
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped[/dim]")
        exit_code = 0

    if exit_code:
        raise typer.Exit(exit_code)


async def _run(settings: Settings, watch: bool, restore: bool, json_output: bool) -> int:
    async with PluginRuntime(settings) as runtime:
        report = await runtime.load_all()
        if restore:
            failures = await runtime.activate_previous()
        else:
            failures = await runtime.activate_all()

        if json_output:
            _print_json(
                {
                    "report": report.model_dump(),
                    "activation_failures": failures,
                    "status": runtime.get_status(),
                    "plugins": {
                        p.id: p.state.value for p in runtime.registry.get_all_plugins()
                    },
                }
            )
        else:
            _print_run_summary(runtime, report.failed, failures)

        if watch:
            console.print("[dim]Watching for changes. Press Ctrl+C to stop.[/dim]")
            await asyncio.Event().wait()

    return 1 if report.failed or failures else 0


def _print_run_summary(runtime: PluginRuntime, load_failures: dict, activation_failures: dict) -> None:
    table = Table(title="Plugins")
    table.add_column("ID", style="cyan")
    table.add_column("Version")
    table.add_column("State")
    table.add_column("Error")

    for plugin in runtime.registry.get_all_plugins():
        style = STATE_STYLES.get(plugin.state, "white")
        table.add_row(
            plugin.id,
            plugin.metadata.version,
            f"[{style}]{plugin.state.value}[/{style}]",
            plugin.error or "",
        )
    console.print(table)

    failures = {**load_failures, **activation_failures}
    if failures:
        console.print(
            Panel(
                "\n".join(f"[red]✗[/red] {pid}: {reason}" for pid, reason in failures.items()),
                title="Failures",
                border_style="red",
            )
        )

    stats = runtime.registry.get_stats()
    console.print(
        Panel(
            f"Registered: [bold]{stats['total_plugins']}[/bold]\n"
            f"Active: [bold]{stats['active_plugins']}[/bold]\n"
            f"Errors: [bold]{stats['error_plugins']}[/bold]\n"
            f"Avg Load Time: [bold]{stats['avg_load_time']:.1f}ms[/bold]",
            title="Registry",
            border_style="blue",
        )
    )


@app.command()
def version():
    """Show plugin-runtime version."""
    console.print(f"[bold]plugin-runtime[/bold] v{__version__}")


@app.callback()
def main(
    ctx: typer.Context,
    plugins_dir: Optional[list[Path]] = typer.Option(
        None,
        "--plugins-dir", "-p",
        help="Plugin directory to scan (can be repeated)",
    ),
    mode: Optional[str] = typer.Option(
        None,
        "--mode", "-m",
        help="Validation mode: strict or permissive",
    ),
    state_dir: Optional[Path] = typer.Option(
        None,
        "--state-dir",
        help="Directory for the registry snapshot",
    ),
    json_output: bool = typer.Option(
        False,
        "--json", "-j",
        help="Output as JSON",
    ),
    log_level: str = typer.Option(
        "WARNING",
        "--log-level",
        help="Log level",
    ),
):
    """
    plugin-runtime - discover, validate, load and run plugins.

    Run 'plugin-runtime --help' for available commands.
    """
    if mode is not None and mode not in ("strict", "permissive"):
        console.print(f"[red]Invalid mode:[/red] {mode} (use strict or permissive)")
        raise typer.Exit(2)

    configure_logging(level=log_level, stream=sys.stderr)
    ctx.obj = {
        "plugin_dirs": plugins_dir or [],
        "mode": mode,
        "state_dir": state_dir,
        "json": json_output,
    }


if __name__ == "__main__":
    app()
