"""Command-line entry point: ``spool-intake``."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from common.config import get_settings
from common.logging import configure_logging

from .errors import IntakeError
from .extraction import VisionExtractionClient
from .normalization import Normalizer, load_rule_set
from .orchestrator import BatchImage, BatchItemResult, BatchOrchestrator
from .reconcile import HttpReviewSource, ReviewItem, SessionReconciler

console = Console()
app = typer.Typer(help="Turn spool label photos into inventory records.")


def _render_results(results: List[BatchItemResult]) -> Table:
    table = Table(title="Extraction Results", show_edge=False, header_style="bold cyan")
    table.add_column("#", justify="right")
    table.add_column("File")
    table.add_column("Manufacturer")
    table.add_column("Material")
    table.add_column("Color")
    table.add_column("Price", justify="right")
    table.add_column("Conf.", justify="right")
    for entry in results:
        if not entry.ok or entry.result is None:
            table.add_row(
                str(entry.index + 1),
                entry.filename or "-",
                f"[red]{entry.error}[/red]",
                "",
                "",
                "",
                "",
            )
            continue
        result = entry.result
        table.add_row(
            str(entry.index + 1),
            entry.filename or "-",
            result.manufacturer or "-",
            result.material or "-",
            result.color_name or "-",
            f"{result.estimated_price:.2f}" if result.estimated_price is not None else "-",
            f"{result.confidence:.2f}",
        )
    return table


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", "--host"),
    port: int = typer.Option(5001, "--port", "-p"),
    reload: bool = typer.Option(False, "--reload"),
) -> None:
    """Run the intake HTTP API."""
    import uvicorn

    uvicorn.run("intake.main:app", host=host, port=port, reload=reload)


@app.command()
def extract(
    paths: List[Path] = typer.Argument(..., exists=True, dir_okay=False, help="Spool photos"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Vision model id"),
    as_json: bool = typer.Option(False, "--json", help="Print results as JSON"),
) -> None:
    """Extract spool attributes from local photos without the API."""
    settings = get_settings()
    configure_logging(settings.log_level, json_output=settings.log_json)
    chosen = model or settings.vision_default_model
    items = [BatchImage(data=path.read_bytes(), filename=path.name) for path in paths]

    async def _run() -> List[BatchItemResult]:
        client = VisionExtractionClient.from_settings(settings)
        orchestrator = BatchOrchestrator.from_settings(
            settings, client, Normalizer(load_rule_set(settings.rules_path))
        )
        try:
            return await orchestrator.run(
                items,
                chosen,
                on_progress=lambda done, total: console.print(f"[dim]{done}/{total} processed[/dim]"),
            )
        finally:
            await client.aclose()

    try:
        results = asyncio.run(_run())
    except IntakeError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1) from exc

    if as_json:
        payload = [
            {
                "file": entry.filename,
                "extractedData": entry.result.model_dump(by_alias=True, exclude_none=True)
                if entry.result is not None
                else None,
                "error": entry.error,
            }
            for entry in results
        ]
        typer.echo(json.dumps(payload, indent=2))
        return
    console.print(_render_results(results))


@app.command()
def watch(
    token: str = typer.Argument(..., help="Upload session token"),
    api_base: str = typer.Option("http://localhost:5001", "--api", help="Intake API base URL"),
    owner: str = typer.Option("local", "--owner", help="Owner id sent as X-Owner-Id"),
    export: Optional[Path] = typer.Option(
        None, "--export", help="Append selected items to this JSON lines file and mark them imported"
    ),
) -> None:
    """Follow an upload session, process new photos and review the results."""
    settings = get_settings()
    configure_logging(settings.log_level, json_output=settings.log_json)

    async def _watch() -> SessionReconciler:
        source = HttpReviewSource(api_base, owner_id=owner)
        reconciler = SessionReconciler.with_cache(
            source,
            token,
            settings.review_cache_dir,
            discovery_interval=settings.discovery_interval_seconds,
            result_interval=settings.result_interval_seconds,
        )
        reconciler.review.min_confidence = settings.review_min_confidence
        await reconciler.start()
        shown = 0
        try:
            while reconciler.running:
                await asyncio.sleep(settings.result_interval_seconds)
                for item in reconciler.review.items[shown:]:
                    _print_item(item)
                shown = len(reconciler.review)
        finally:
            await reconciler.stop()
            if export is not None:
                report = await reconciler.import_selected(lambda item: _append_jsonl(export, item))
                console.print(f"[green]Imported {len(report.imported)} item(s) to {export}[/green]")
            await source.aclose()
        return reconciler

    try:
        reconciler = asyncio.run(_watch())
    except KeyboardInterrupt:
        console.print("[dim]Stopped.[/dim]")
        return
    if reconciler.closed_reason:
        console.print(f"[yellow]{reconciler.closed_reason}[/yellow]")


def _print_item(item: ReviewItem) -> None:
    if item.status == "error":
        console.print(f"[red]✗ {item.original_name or item.image_ref}: {item.error}[/red]")
        return
    data = item.extracted or {}
    mark = "[green]✓[/green]" if item.selected else "[yellow]?[/yellow]"
    console.print(
        f"{mark} {data.get('manufacturer', '-')} {data.get('material', '-')} "
        f"{data.get('colorName', '')} [dim]({data.get('confidence', 0):.2f})[/dim]"
    )


def _append_jsonl(path: Path, item: ReviewItem) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps({"imageRef": item.image_ref, **(item.extracted or {})}) + "\n")


@app.command()
def models() -> None:
    """List the supported vision models."""
    settings = get_settings()
    client = VisionExtractionClient.from_settings(settings)
    table = Table(show_edge=False, header_style="bold cyan")
    table.add_column("Model")
    table.add_column("Name")
    table.add_column("Description")
    for entry in client.models:
        default = " [green](default)[/green]" if entry.id == settings.vision_default_model else ""
        table.add_row(entry.id + default, entry.name, entry.description)
    console.print(table)


if __name__ == "__main__":
    app()
