"""
Rich rendering for lessonrag CLI output.

Kept separate from the pipeline so library callers never import rich
output code they do not need.
"""

from pathlib import Path
from typing import Any, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from lessonrag.indexer.models import IndexingRunResult, RetrievedChunk


def format_duration(seconds: float) -> str:
    """Format a duration as '850ms', '12.3s' or '2m 05s'."""
    if seconds < 1:
        return f"{int(seconds * 1000)}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m {secs:02d}s"


def display_run_summary(
    result: IndexingRunResult,
    console: Console,
    title: str = "Indexing Run",
    duration_seconds: Optional[float] = None,
) -> None:
    """Show the aggregate summary of an indexing or prune run."""
    mode = []
    if result.dry_run:
        mode.append("dry run")
    if result.force:
        mode.append("force")

    content = [
        f"Lessons processed: [cyan]{result.processed_lessons}[/cyan]"
        f" [dim](+{result.skipped_lessons} unchanged)[/dim]",
        f"Chunks total: [cyan]{result.total_chunks:,}[/cyan]",
        f"Chunks embedded: [cyan]{result.embedded_chunks:,}[/cyan]",
        f"Chunks skipped: [cyan]{result.skipped_chunks:,}[/cyan]",
        f"Chunks deleted: [cyan]{result.deleted_chunks:,}[/cyan]",
    ]
    if result.failed_chunks:
        content.append(f"Chunks failed: [red]{result.failed_chunks:,}[/red]")
    if result.stopped_reason:
        content.append(f"Stopped: [yellow]{result.stopped_reason}[/yellow]")
    if duration_seconds is not None:
        content.append(f"Duration: [cyan]{format_duration(duration_seconds)}[/cyan]")

    panel_title = f"[bold]{title}[/bold]"
    if mode:
        panel_title += f" [dim]({', '.join(mode)})[/dim]"
    border = "green" if result.succeeded else "yellow"
    console.print(Panel("\n".join(content), title=panel_title, border_style=border))

    if result.errors:
        table = Table(title="[bold]Errors[/bold]", show_header=True, header_style="bold")
        table.add_column("Lesson", style="cyan", no_wrap=True)
        table.add_column("Error", style="red")
        for error in result.errors:
            table.add_row(error.lesson_id, error.error_message)
        console.print(table)


def display_stats(stats: dict[str, Any], index_db_path: Path, console: Console) -> None:
    """Show index statistics."""
    table = Table(title="[bold]Index Statistics[/bold]", show_header=False)
    table.add_column("", justify="left")
    table.add_column("", justify="right")

    table.add_row("Chunks:", f"[cyan]{stats['chunk_count']:,}[/cyan]")
    table.add_row("Lessons:", f"[cyan]{stats['lesson_count']:,}[/cyan]")
    table.add_row("Courses:", f"[cyan]{stats['course_count']:,}[/cyan]")

    if stats.get("last_indexed_at"):
        table.add_row("Last indexed:", f"[dim]{stats['last_indexed_at']}[/dim]")

    db_size_mb = stats["db_size_bytes"] / (1024 * 1024)
    table.add_row("Index size:", f"[cyan]{db_size_mb:.2f} MB[/cyan]")

    table.add_row()
    table.add_row("Index location:", f"[dim]{index_db_path}[/dim]")

    console.print(table)


def display_retrieval(query: str, chunks: list[RetrievedChunk], console: Console) -> None:
    """Show retrieved chunks, closest first."""
    if not chunks:
        console.print("[yellow]No indexed lesson content matches this scope.[/yellow]")
        console.print("[dim]Run 'lessonrag index' for the course first.[/dim]")
        return

    table = Table(title=f"[bold]Results for:[/bold] {query}", show_header=True)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Lesson", style="cyan", no_wrap=True)
    table.add_column("Chunk", justify="right")
    table.add_column("Distance", justify="right")
    table.add_column("Preview")

    for position, chunk in enumerate(chunks, start=1):
        preview = " ".join(chunk.content.split())
        if len(preview) > 80:
            preview = preview[:77] + "..."
        table.add_row(
            str(position),
            chunk.lesson_id,
            str(chunk.chunk_index),
            f"{chunk.distance:.4f}",
            preview,
        )

    console.print(table)
