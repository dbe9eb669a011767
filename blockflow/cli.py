"""Command-line interface for running batches and inspecting history."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from blockflow.batch import BatchConfig, BatchConfigError, BatchSource
from blockflow.config import DEFAULT_MODEL, DEFAULT_WORKERS, STATE_DIR
from blockflow.engine import Engine
from blockflow.models import Block, Connection, DataFlow, ValidationResult
from blockflow.prompt_parser import ParseResult, parse_file
from blockflow.schemas import BatchRun, HistoryFilter

console = Console()

STATUS_STYLES = {
    "pending": "dim",
    "generating": "blue",
    "running": "blue",
    "completed": "green",
    "failed": "red",
    "cancelled": "yellow",
    "skipped": "dim",
}


def load_graph(path: Path) -> tuple[list[Block], list[Connection]]:
    """Read a {"blocks": [...], "connections": [...]} JSON file."""
    raw = json.loads(path.read_text(encoding="utf-8"))
    blocks = [Block(**b) for b in raw.get("blocks", [])]
    connections = []
    for c in raw.get("connections", []):
        connections.append(Connection(
            id=c["id"],
            from_id=c["from_id"],
            to_id=c["to_id"],
            instruction=c.get("instruction", ""),
            data_flow=DataFlow(enabled=c.get("enabled", True)),
        ))
    return blocks, connections


def _styled(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def _fmt_time(ts: float | None) -> str:
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S") if ts else "-"


def print_parse_result(result: ParseResult):
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("#", style="cyan")
    table.add_column("Prompt", style="green")
    table.add_column("Valid")

    for p in result.prompts:
        text = p.content[:70] + "..." if len(p.content) > 70 else p.content
        valid = "[green]yes[/green]" if p.is_valid else f"[red]{p.validation_error}[/red]"
        table.add_row(str(p.original_index + 1), text, valid)
    console.print(table)

    for warning in result.warnings:
        console.print(f"[yellow]Warning: {warning}[/yellow]")
    for error in result.errors:
        console.print(f"[red]Error: {error}[/red]")


def print_validation(result: ValidationResult):
    if result.is_valid and not result.warnings:
        console.print("[green]Graph is valid.[/green]")
        return
    for issue in result.errors:
        console.print(f"[red]{issue.type}: {issue.message}[/red]")
    for issue in result.warnings:
        console.print(f"[yellow]{issue.type}: {issue.message}[/yellow]")


def print_run(run: BatchRun):
    """Print the per-job outcome of a finished batch."""
    console.print(f"\n[bold cyan]Batch {run.id}: {run.status.value}[/bold cyan]")

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Source", style="cyan")
    table.add_column("Status")
    table.add_column("Retries", style="yellow")
    table.add_column("Time", style="yellow")
    table.add_column("Result / Error")

    for job in run.jobs:
        time_str = f"{job.processing_time:.2f}s" if job.processing_time else "-"
        detail = job.error if job.status.value == "failed" else (job.artifact_url or "")
        detail = detail[:60] + "..." if len(detail) > 60 else detail
        table.add_row(job.source_id, _styled(job.status.value), str(job.retry_count), time_str, detail)

    console.print(table)
    console.print(f"[bold]{run.completed}/{run.total} completed, {run.failed} failed[/bold]")


def print_history(engine: Engine, limit: int):
    records = engine.history.list(HistoryFilter(limit=limit))
    if not records:
        console.print("[dim]No executions recorded.[/dim]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Execution", style="cyan")
    table.add_column("Template", style="green")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Started", style="yellow")
    table.add_column("Blocks")

    for r in records:
        blocks = f"{r.completed_blocks}/{r.total_blocks} ({r.failed_blocks} failed)"
        table.add_row(r.id, r.template_name, r.execution_type, _styled(r.status.value), _fmt_time(r.start_time), blocks)
    console.print(table)


def print_stats(engine: Engine):
    stats = engine.history.statistics()
    body = "\n".join([
        f"[bold]Executions:[/bold] {stats.total_executions} "
        f"({stats.completed_executions} completed, {stats.failed_executions} failed, "
        f"{stats.cancelled_executions} cancelled)",
        f"[bold]Success rate:[/bold] {stats.success_rate:.1f}%",
        f"[bold]Average duration:[/bold] {stats.average_duration:.1f}s",
        f"[bold]Blocks processed:[/bold] {stats.total_blocks_processed}",
        f"[bold]By type:[/bold] " + ", ".join(f"{k}={v}" for k, v in stats.executions_by_type.items()),
    ])
    console.print(Panel(body, title="[bold]Execution statistics[/bold]", border_style="blue"))

    if stats.most_used_templates:
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Template", style="green")
        table.add_column("Runs", style="cyan")
        for usage in stats.most_used_templates:
            table.add_row(usage.template_name, str(usage.count))
        console.print(table)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _make_engine(args) -> Engine:
    return Engine(
        model=args.model,
        state_dir=Path(args.state_dir),
        batch_config=BatchConfig(workers=args.workers),
        auto_download=not args.no_download,
    )


async def run_prompts(args) -> int:
    result = parse_file(args.file)
    print_parse_result(result)
    if not result.valid_prompts:
        console.print("[red]No valid prompts to run.[/red]")
        return 1
    if not args.yes and not Confirm.ask(f"\n[bold]Run {result.valid_count} prompts with {args.model}?[/bold]"):
        console.print("[yellow]Batch cancelled.[/yellow]")
        return 0

    engine = _make_engine(args)
    source = BatchSource.from_prompts(result.valid_prompts)
    return await _run(engine, source, template_name=Path(args.file).stem, reference=args.reference)


async def run_graph(args) -> int:
    blocks, connections = load_graph(Path(args.file))
    engine = _make_engine(args)
    validation = engine.set_graph(blocks, connections)
    print_validation(validation)
    if not args.run:
        return 0 if validation.is_valid else 1
    if not validation.is_valid:
        console.print("[red]Refusing to run an invalid graph.[/red]")
        return 1

    selected = [b for b in blocks if not args.blocks or b.id in args.blocks or b.number in args.blocks]
    return await _run(engine, BatchSource.from_blocks(selected), template_name=Path(args.file).stem)


async def _run(engine: Engine, source: BatchSource, template_name: str, reference: str | None = None) -> int:
    console.print("\n[bold yellow]Running batch...[/bold yellow]")
    try:
        await engine.start_batch(source, reference_artifact=reference, template_name=template_name)
    except BatchConfigError as e:
        console.print(f"[red]ERROR: {e}[/red]")
        return 1

    try:
        await engine.wait()
    except (KeyboardInterrupt, asyncio.CancelledError):
        console.print("\n[yellow]Interrupted, stopping batch.[/yellow]")
        await engine.stop()
        await engine.wait()

    print_run(engine.queue.run)
    downloads = engine.downloads.items()
    if downloads:
        done = [d for d in downloads if d.status == "completed"]
        console.print(f"[dim]Downloaded {len(done)}/{len(downloads)} artifacts to {engine.downloads.config.directory}[/dim]")
    return 0 if engine.queue.run.failed == 0 else 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="blockflow", description="Batch generation over block graphs")
    parser.add_argument("--state-dir", default=str(STATE_DIR), help="Where history and batch state are kept")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    def run_options(p):
        p.add_argument("--model", default=DEFAULT_MODEL, help="provider/model, or 'echo' for a dry run")
        p.add_argument("--workers", type=int, default=DEFAULT_WORKERS)
        p.add_argument("--no-download", action="store_true", help="Do not download generated media")

    p = sub.add_parser("run", help="Run every prompt in a prompt file")
    p.add_argument("file")
    p.add_argument("--reference", help="Reference artifact URL for visual consistency")
    p.add_argument("-y", "--yes", action="store_true", help="Skip the confirmation")
    run_options(p)

    p = sub.add_parser("graph", help="Validate (and optionally run) a block graph JSON file")
    p.add_argument("file")
    p.add_argument("--run", action="store_true")
    p.add_argument("--blocks", nargs="*", help="Block ids or numbers to run (default: all)")
    run_options(p)

    p = sub.add_parser("history", help="List recorded executions")
    p.add_argument("--limit", type=int, default=20)

    sub.add_parser("stats", help="Show execution statistics")
    sub.add_parser("serve", help="Start the API server")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    if args.command == "serve":
        from blockflow.server import main as serve
        serve()
        return 0
    if args.command in ("history", "stats"):
        engine = Engine(model="echo", state_dir=Path(args.state_dir))
        if args.command == "history":
            print_history(engine, args.limit)
        else:
            print_stats(engine)
        return 0

    console.print("[bold magenta]blockflow[/bold magenta]")
    console.print("=" * 60)
    handler = run_prompts if args.command == "run" else run_graph
    try:
        return asyncio.run(handler(args))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user.[/yellow]")
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
