"""CLI commands for cachekeep."""

import json
from pathlib import Path

import httpx
import typer
from rich.console import Console
from rich.table import Table

from cachekeep import __logo__, __version__

app = typer.Typer(
    name="cachekeep",
    help=f"{__logo__} cachekeep - prompt cache continuity and compaction",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} cachekeep v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """cachekeep - prompt cache continuity and compaction."""
    pass


def _read_exchanges(path: Path) -> list[tuple[int, object, dict | None]]:
    """Parse a JSONL file of request bodies or ``{"request", "response"}`` pairs."""
    exchanges = []
    with open(path) as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError as e:
                console.print(f"[yellow]Line {line_no}: invalid JSON ({e.msg}), skipped[/yellow]")
                continue
            if isinstance(entry, dict) and "request" in entry:
                response = entry.get("response")
                exchanges.append((line_no, entry["request"], response if isinstance(response, dict) else None))
            else:
                exchanges.append((line_no, entry, None))
    return exchanges


# ============================================================================
# Replay
# ============================================================================


@app.command()
def replay(
    file: Path = typer.Argument(..., help="JSONL file of request bodies or request/response pairs"),
    config_path: Path = typer.Option(None, "--config", "-c", help="Config file (default ~/.cachekeep/config.json)"),
    auto_limit: int = typer.Option(None, "--auto-limit", help="Override the auto compaction token limit"),
    verbose: bool = typer.Option(False, "--verbose", help="Debug logging"),
):
    """Push recorded requests through the pipeline and show the cache keys they get."""
    from cachekeep.config.loader import load_config
    from cachekeep.logging import setup_logging
    from cachekeep.request.pipeline import RequestPipeline

    if not file.exists():
        console.print(f"[red]File not found: {file}[/red]")
        raise typer.Exit(1)

    config = load_config(config_path)
    if auto_limit is not None:
        config.compaction.auto_limit_tokens = auto_limit
    if verbose:
        config.logging.debug = True
    setup_logging(config)

    pipeline = RequestPipeline.from_config(config)

    table = Table(title="Replayed Requests")
    table.add_column("Line", style="dim")
    table.add_column("Session", style="cyan")
    table.add_column("Prompt Cache Key")
    table.add_column("Lineage")
    table.add_column("Compaction")
    table.add_column("Input Items", justify="right")

    for line_no, request, response in _read_exchanges(file):
        prepared = pipeline.prepare(request)
        if prepared is None:
            table.add_row(str(line_no), "-", "-", "[dim]skipped[/dim]", "-", "-")
            continue
        if prepared.handled_locally:
            table.add_row(str(line_no), "-", "-", "[magenta]local command[/magenta]", "-", "-")
            continue

        ctx = prepared.session_context
        items = prepared.body.get("input")
        lineage = "-"
        if ctx is not None:
            lineage = "[green]new[/green]" if ctx.is_new else "continued"
        decision = prepared.compaction_decision
        compaction = decision.mode if decision else "-"

        table.add_row(
            str(line_no),
            ctx.session_id if ctx else "-",
            str(prepared.body.get("prompt_cache_key", "-")),
            lineage,
            compaction,
            str(len(items) if isinstance(items, list) else 0),
        )

        if response is not None:
            pipeline.handle_response(
                prepared,
                httpx.Response(200, json=response, request=httpx.Request("POST", "https://upstream/responses")),
            )

    console.print(table)

    if pipeline.session_manager is None:
        return
    metrics = pipeline.session_manager.get_metrics(limit=10)
    summary = Table(title=f"Sessions ({metrics.total_sessions} tracked)")
    summary.add_column("Session", style="cyan")
    summary.add_column("Prompt Cache Key")
    summary.add_column("Cached Tokens", justify="right")
    for session in metrics.recent_sessions:
        cached = session.last_cached_tokens
        summary.add_row(session.id, session.prompt_cache_key, "-" if cached is None else str(cached))
    console.print(summary)


# ============================================================================
# Config
# ============================================================================


@app.command("config")
def show_config(
    config_path: Path = typer.Option(None, "--config", "-c", help="Config file (default ~/.cachekeep/config.json)"),
):
    """Show the effective configuration."""
    from cachekeep.config.loader import convert_to_camel, get_config_path, load_config

    path = config_path or get_config_path()
    config = load_config(path)

    console.print(f"{__logo__} cachekeep configuration\n")
    console.print(f"Config: {path} {'[green]✓[/green]' if path.exists() else '[dim](defaults)[/dim]'}")
    console.print_json(json.dumps(convert_to_camel(config.model_dump())))


if __name__ == "__main__":
    app()
