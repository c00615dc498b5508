import os
import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table

from primer.cli.config_manager import get_config_manager
from primer.core.errors import ConfigurationError, NoDocumentsProcessedError, PrimerError
from primer.core.logging_config import configure_logging
from primer.core.models import BatchIngestSummary, ProcessingProgress
from primer.core.pipeline import RagPipeline, build_pipeline

app = typer.Typer(help="Primer CLI — textbook ingestion and semantic search")
console = Console()

# Initialize structured logging
configure_logging(
    log_level=os.getenv("LOG_LEVEL", "WARNING"),
    json_logs=os.getenv("JSON_LOGS", "false").lower() == "true"
)


def _load_pipeline(on_progress=None, load_index=True) -> RagPipeline:
    """Build the pipeline from stored settings; exits on configuration problems."""
    try:
        config = get_config_manager().pipeline_config()
        return build_pipeline(config, on_progress=on_progress, load_index=load_index)
    except PrimerError as e:
        console.print(f"[red]Configuration error:[/] {e}")
        raise typer.Exit(1)


def _validate_directory(path: str) -> Path:
    input_path = Path(path)
    if not input_path.exists():
        console.print(f"[red]Error:[/] Path {path} does not exist")
        raise typer.Exit(1)
    if not input_path.is_dir():
        console.print(f"[red]Error:[/] Path {path} is not a directory")
        raise typer.Exit(1)
    return input_path


def _print_summary(summary: BatchIngestSummary) -> None:
    table = Table(title="Ingestion Summary")
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Documents processed", str(summary.documents_processed))
    table.add_row("Documents failed", str(summary.documents_failed))
    table.add_row("Chunks", str(summary.total_chunks))
    table.add_row("Embeddings", str(summary.total_embeddings))
    table.add_row("Indexed vectors", str(summary.indexed_vectors))
    table.add_row("Time", f"{summary.processing_time_ms / 1000:.1f}s")
    console.print(table)

    if summary.errors:
        console.print("\n[red]❌ Failed documents:[/]")
        for source, error in summary.errors.items():
            console.print(f"  • {source}: {error}")


def _run_ingest(input_path: Path) -> None:
    status = console.status("[bold green]Processing PDFs...")

    def on_progress(progress: ProcessingProgress) -> None:
        name = Path(progress.document).name if progress.document else ""
        status.update(f"[bold green]{name}: {progress.message} ({progress.percent:.0f}%)")

    def on_document(pdf_path, result, error) -> None:
        if error is not None:
            console.print(f"[red]❌ {pdf_path.name}[/] ({error})")
            return
        line = f"[green]✅ {pdf_path.name}[/] {len(result.chunks)} chunks, {result.indexed_count} indexed"
        if result.embedding_failures:
            line += f" [yellow]({len(result.embedding_failures)} embedding failures)[/]"
        if result.fallback_used:
            line += " [dim](fixed-size chunking)[/]"
        console.print(line)

    pipeline = _load_pipeline(on_progress=on_progress)

    try:
        with status:
            summary = pipeline.ingest_directory(input_path, on_document=on_document)
    except NoDocumentsProcessedError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1)
    except Exception as e:
        console.print(f"[red]Error during ingestion:[/] {e}")
        raise typer.Exit(1)

    _print_summary(summary)

    if summary.documents_failed:
        raise typer.Exit(1)
    console.print("[green]✅ Ingestion complete![/]")


@app.command()
def ingest(path: str = typer.Argument(..., help="Directory containing PDF files")):
    """Ingest all PDF files in a directory into the vector index."""
    console.print(f"[bold]Ingesting PDFs from:[/] {path}")
    _run_ingest(_validate_directory(path))


@app.command()
def query(
    text: str = typer.Argument(..., help="Question or search text"),
    top_k: int = typer.Option(5, "--top-k", "-k", help="Number of results"),
    chapter: Optional[str] = typer.Option(None, help="Only chunks from this chapter"),
    chunk_type: Optional[str] = typer.Option(None, "--type", help="Only this chunk type (e.g. definition)"),
    document: Optional[str] = typer.Option(None, help="Only chunks from this document id"),
    as_json: bool = typer.Option(False, "--json", help="Print results as JSON"),
):
    """Search the indexed textbooks."""
    if top_k < 1:
        console.print("[red]Error:[/] --top-k must be at least 1")
        raise typer.Exit(1)

    metadata_filter = {}
    if chapter:
        metadata_filter["chapter"] = chapter
    if chunk_type:
        metadata_filter["chunk_type"] = chunk_type
    if document:
        metadata_filter["document_id"] = document

    pipeline = _load_pipeline()
    try:
        with console.status("[bold green]Searching..."):
            matches = pipeline.query(text, top_k=top_k, metadata_filter=metadata_filter or None)
    except Exception as e:
        console.print(f"[red]Error during query:[/] {e}")
        raise typer.Exit(1)

    if as_json:
        console.print_json(json.dumps([m.model_dump() for m in matches]))
        return

    if not matches:
        console.print("[yellow]No results found[/]")
        return

    table = Table(title=f"🔍 Results for: {text}")
    table.add_column("#", justify="right")
    table.add_column("Score", justify="right")
    table.add_column("Chapter")
    table.add_column("Section")
    table.add_column("Type")
    table.add_column("Text")
    for rank, match in enumerate(matches, 1):
        meta = match.metadata
        snippet = " ".join(meta.get("text", "").split())
        table.add_row(
            str(rank),
            f"{match.score:.3f}",
            meta.get("chapter", ""),
            meta.get("section", ""),
            meta.get("chunk_type", ""),
            snippet[:120] + ("..." if len(snippet) > 120 else ""),
        )
    console.print(table)


@app.command()
def outline(pdf: str = typer.Argument(..., help="PDF file to analyze")):
    """Show the chapters and sections detected in a PDF."""
    pdf_path = Path(pdf)
    if not pdf_path.is_file():
        console.print(f"[red]Error:[/] File {pdf} does not exist")
        raise typer.Exit(1)

    pipeline = _load_pipeline()
    try:
        with console.status("[bold green]Detecting structure..."):
            result = pipeline.outline(pdf_path)
    except Exception as e:
        console.print(f"[red]Error reading PDF:[/] {e}")
        raise typer.Exit(1)

    console.print(f"[bold]📖 {pdf_path.name}[/] quality score: {result.quality_score:.2f}")
    for warning in result.warnings:
        console.print(f"[yellow]⚠️  {warning}[/]")

    for chapter in result.chapters:
        pages = f"p. {chapter.start_page}-{chapter.end_page}" if chapter.end_page else f"p. {chapter.start_page}"
        console.print(
            f"[bold blue]{chapter.number}. {chapter.title}[/] [dim]({pages}, {chapter.confidence:.2f})[/]"
        )
        for section in result.sections:
            if section.chapter_title == chapter.title:
                indent = "    " * section.level
                console.print(f"{indent}{section.number} {section.title} [dim]({section.confidence:.2f})[/]")


@app.command()
def stats():
    """Show index and embedding statistics."""
    pipeline = _load_pipeline()
    info = pipeline.stats()

    console.print("[bold]🚀 Primer Status[/]")
    console.print()
    console.print("[bold]📊 Vector Index:[/]")
    console.print(f"  Vectors: {info['index']['vector_count']}")
    console.print(f"  Dimensions: {info['index']['dimensions']}")
    console.print(f"  Size: {info['index']['total_size'] / (1024 * 1024):.2f} MB")
    console.print()
    console.print("[bold]🤖 Embeddings:[/]")
    for key, value in info["embedding"].items():
        console.print(f"  {key}: {value}")
    console.print()
    console.print("[bold]✂️  Chunking:[/]")
    for key, value in info["chunking"].items():
        console.print(f"  {key}: {value}")


@app.command()
def clear(yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation")):
    """Delete every vector from the index."""
    if not yes and not Confirm.ask("🗑️  Delete all indexed vectors?", default=False):
        console.print("[yellow]Aborted[/]")
        raise typer.Exit(1)

    pipeline = _load_pipeline(load_index=False)
    pipeline.clear()
    console.print("[green]✅ Index cleared[/]")


@app.command()
def reprocess(
    path: str = typer.Argument(..., help="Directory containing PDF files"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Clear the index and ingest a directory again."""
    input_path = _validate_directory(path)
    if not yes and not Confirm.ask("🔄 Clear the index and reprocess all PDFs?", default=False):
        console.print("[yellow]Aborted[/]")
        raise typer.Exit(1)

    _load_pipeline(load_index=False).clear()
    console.print("[green]✅ Index cleared[/]")
    console.print(f"[bold]Ingesting PDFs from:[/] {path}")
    _run_ingest(input_path)


@app.command()
def config(
    action: str = typer.Argument(..., help="Action: show, set, reset, validate"),
    key: Optional[str] = typer.Argument(None, help="Configuration key"),
    value: Optional[str] = typer.Argument(None, help="Configuration value"),
):
    """Manage primer configuration settings."""
    manager = get_config_manager()

    if action == "show":
        console.print("\n[bold]Current Configuration:[/]")
        for item, setting in manager.get_all().items():
            console.print(f"  [blue]{item}:[/] {setting}")
        console.print(f"  [blue]openai_api_key:[/] {'***' if os.getenv('OPENAI_API_KEY') else 'Not set'}")
    elif action == "set":
        if not key or value is None:
            console.print("[red]Error:[/] Both key and value required for 'set' action")
            raise typer.Exit(1)
        try:
            stored = manager.set(key, value)
        except (KeyError, ValueError, ConfigurationError) as e:
            console.print(f"[red]Error:[/] {e}")
            raise typer.Exit(1)
        console.print(f"[green]✅ Set {key} = {stored}[/]")
    elif action == "reset":
        try:
            manager.reset(key)
        except KeyError as e:
            console.print(f"[red]Error:[/] {e}")
            raise typer.Exit(1)
        console.print(f"[green]✅ Reset {key or 'all settings'} to default[/]")
    elif action == "validate":
        validation = manager.validate()
        for warning in validation["warnings"]:
            console.print(f"[yellow]⚠️  {warning}[/]")
        if not validation["valid"]:
            console.print("\n[red]❌ Configuration issues found:[/]")
            for issue in validation["issues"]:
                console.print(f"  • {issue}")
            raise typer.Exit(1)
        console.print("\n[green]✅ Configuration validation passed![/]")
    else:
        console.print(f"[red]Error:[/] Unknown action: {action}")
        console.print("Available actions: show, set, reset, validate")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
