#!/usr/bin/env python3
"""
lessonrag CLI entry point.

Usage:
    lessonrag init                              # Create .lessonrag/ config templates
    lessonrag index --recent                    # Index the most recently edited lessons
    lessonrag index --course c1 --dry-run       # Preview what a course run would do
    lessonrag index --lesson l42 --force        # Re-embed one lesson
    lessonrag query "what is a closure" --course c1
    lessonrag stats                             # Show index statistics
    lessonrag prune                             # Drop rows of deleted lessons
"""

import argparse
import json
import logging
import sys
import time
from dataclasses import replace
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from lessonrag import __version__
from lessonrag.config import Settings, init_local_config, load_settings
from lessonrag.display import display_retrieval, display_run_summary, display_stats
from lessonrag.indexer import (
    ConfigurationError,
    EmbeddingStore,
    IndexingOptions,
    LessonSelector,
    LessonRagError,
    RetrievalScope,
    get_embedding_client,
    prune_removed_lessons,
    retrieve,
    run_indexing,
)
from lessonrag.indexer.options import DEFAULT_COURSE_LIMIT, DEFAULT_RECENT_LIMIT
from lessonrag.indexer.retrieval import format_context
from lessonrag.lessons import SQLiteLessonSource

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERRORS = 1
EXIT_CONFIG = 2


def configure_logging(verbose: bool) -> None:
    """Configure root logging for CLI runs."""
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=logging.DEBUG if verbose else logging.WARNING,
    )
    for noisy_logger in ("httpx", "httpcore", "openai"):
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="lessonrag",
        description="lessonrag - lesson embedding index and retrieval",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"lessonrag {__version__}")
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--index-db",
        type=str,
        default=None,
        help="Path to the embedding index database (overrides settings)",
    )
    parser.add_argument(
        "--lessons-db",
        type=str,
        default=None,
        help="Path to the lessons database (overrides settings)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init", help="Create local .lessonrag/ configuration templates")

    # index
    index_parser = subparsers.add_parser("index", help="Embed lessons into the index")
    selector = index_parser.add_mutually_exclusive_group(required=True)
    selector.add_argument("--lesson", metavar="LESSON_ID", help="Index a single lesson")
    selector.add_argument("--course", metavar="COURSE_ID", help="Index lessons of a course")
    selector.add_argument(
        "--recent", action="store_true", help="Index the most recently updated lessons"
    )
    index_parser.add_argument(
        "--lesson-course",
        metavar="COURSE_ID",
        help="With --lesson: only index it if it belongs to this course",
    )
    index_parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help=f"Lesson limit for --course ({DEFAULT_COURSE_LIMIT}) or --recent ({DEFAULT_RECENT_LIMIT})",
    )
    index_parser.add_argument(
        "--dry-run", action="store_true", help="Report what would change without writing"
    )
    index_parser.add_argument(
        "--force", action="store_true", help="Re-embed chunks even when unchanged"
    )
    index_parser.add_argument("--max-chars", type=int, default=None, help="Max chunk size")
    index_parser.add_argument(
        "--max-embeddings",
        type=int,
        default=None,
        help="Max embedding requests in this run",
    )
    index_parser.add_argument(
        "--concurrency", type=int, default=None, help="Parallel embedding requests (1-5)"
    )
    index_parser.add_argument(
        "--retry-attempts", type=int, default=None, help="Retries per transient failure (0-5)"
    )
    index_parser.add_argument(
        "--no-skip-unchanged",
        action="store_true",
        help="Chunk every selected lesson even if none changed since last run",
    )
    index_parser.add_argument("--json", action="store_true", help="Print the summary as JSON")

    # query
    query_parser = subparsers.add_parser("query", help="Retrieve chunks closest to a question")
    query_parser.add_argument("text", help="Question text")
    query_parser.add_argument(
        "--course",
        dest="courses",
        action="append",
        required=True,
        metavar="COURSE_ID",
        help="Course to search (repeatable)",
    )
    query_parser.add_argument("--lesson", metavar="LESSON_ID", help="Restrict to one lesson")
    query_parser.add_argument("--top-k", type=int, default=None, help="Number of chunks")
    query_parser.add_argument(
        "--context",
        action="store_true",
        help="Print retrieved chunks as a numbered prompt context block",
    )
    query_parser.add_argument(
        "--max-context-chars",
        type=int,
        default=None,
        help="With --context: stop adding blocks past this many characters",
    )
    query_parser.add_argument("--json", action="store_true", help="Print results as JSON")

    # stats / prune
    subparsers.add_parser("stats", help="Show index statistics")
    prune_parser = subparsers.add_parser(
        "prune", help="Delete indexed chunks of lessons that no longer exist"
    )
    prune_parser.add_argument(
        "--dry-run", action="store_true", help="Only count what would be deleted"
    )

    return parser


def apply_args_to_settings(args: argparse.Namespace, settings: Settings) -> Settings:
    """Apply global command line overrides to settings."""
    overrides = {"verbose": args.verbose}
    if args.index_db:
        overrides["index_db_path"] = Path(args.index_db)
    if args.lessons_db:
        overrides["lessons_db_path"] = Path(args.lessons_db)
    return replace(settings, **overrides)


def _selector_from_args(args: argparse.Namespace) -> LessonSelector:
    if args.lesson:
        return LessonSelector.lesson(args.lesson, course_id=args.lesson_course)
    if args.course:
        return LessonSelector.course(
            args.course, limit=args.limit if args.limit is not None else DEFAULT_COURSE_LIMIT
        )
    return LessonSelector.recent(
        limit=args.limit if args.limit is not None else DEFAULT_RECENT_LIMIT
    )


def _options_from_args(args: argparse.Namespace, settings: Settings) -> IndexingOptions:
    return IndexingOptions.from_settings(
        settings,
        dry_run=args.dry_run,
        force=args.force,
        skip_unchanged_lessons=not args.no_skip_unchanged,
        max_chars=args.max_chars,
        max_embeddings_per_run=args.max_embeddings,
        concurrency=args.concurrency,
        retry_attempts=args.retry_attempts,
    ).validate()


def _open_lessons(settings: Settings) -> SQLiteLessonSource:
    if settings.lessons_db_path is None:
        raise ConfigurationError(
            "No lessons database configured; set LESSONRAG_LESSONS_DB or pass --lessons-db"
        )
    return SQLiteLessonSource(settings.lessons_db_path)


def _open_store(settings: Settings) -> EmbeddingStore:
    settings.index_db_path.parent.mkdir(parents=True, exist_ok=True)
    return EmbeddingStore(settings.index_db_path, dimension=settings.embedding_dimension)


def run_index_command(args: argparse.Namespace, settings: Settings, console: Console) -> int:
    """Run an indexing batch and print its summary."""
    options = _options_from_args(args, settings)
    selector = _selector_from_args(args)
    client = None if options.dry_run else get_embedding_client(settings)

    started = time.perf_counter()
    with _open_lessons(settings) as lessons, _open_store(settings) as store:
        if args.json:
            result = run_indexing(selector, options, lessons, store, client=client)
        else:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                TimeElapsedColumn(),
                console=console,
                transient=True,
            ) as progress:
                task = progress.add_task(f"[cyan]Indexing {selector.describe()}...", total=None)

                def on_lesson(lesson, lesson_result):
                    progress.update(
                        task,
                        description=f"[cyan]Indexed: {lesson.title or lesson.id}",
                    )

                result = run_indexing(
                    selector, options, lessons, store, client=client, on_lesson=on_lesson
                )

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        display_run_summary(result, console, duration_seconds=time.perf_counter() - started)

    return EXIT_OK if result.succeeded else EXIT_ERRORS


def run_query_command(args: argparse.Namespace, settings: Settings, console: Console) -> int:
    """Retrieve and print the chunks closest to a question."""
    client = get_embedding_client(settings)
    scope = RetrievalScope.for_courses(args.courses, lesson_id=args.lesson)
    top_k = args.top_k if args.top_k is not None else settings.top_k

    with _open_store(settings) as store:
        chunks = retrieve(
            args.text,
            scope,
            top_k,
            client,
            store,
            max_retries=settings.query_retry_attempts,
        )

    if args.json:
        payload = [
            {
                "lesson_id": chunk.lesson_id,
                "course_id": chunk.course_id,
                "chunk_index": chunk.chunk_index,
                "distance": chunk.distance,
                "content": chunk.content,
            }
            for chunk in chunks
        ]
        print(json.dumps(payload, indent=2, ensure_ascii=False))
    elif args.context:
        print(format_context(chunks, max_chars=args.max_context_chars))
    else:
        display_retrieval(args.text, chunks, console)
    return EXIT_OK


def run_stats_command(settings: Settings, console: Console) -> int:
    """Print index statistics."""
    if not settings.index_db_path.exists():
        console.print(
            f"[yellow]No index found at {settings.index_db_path}. "
            "Run 'lessonrag index' first.[/yellow]"
        )
        return EXIT_OK
    with _open_store(settings) as store:
        stats = store.get_stats()
    display_stats(stats, settings.index_db_path, console)
    return EXIT_OK


def run_prune_command(args: argparse.Namespace, settings: Settings, console: Console) -> int:
    """Remove indexed rows of lessons deleted from the lesson store."""
    with _open_lessons(settings) as lessons, _open_store(settings) as store:
        result = prune_removed_lessons(lessons, store, dry_run=args.dry_run)
    display_run_summary(result, console, title="Prune")
    return EXIT_OK if result.succeeded else EXIT_ERRORS


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)
    console = Console()

    if args.command == "init":
        return EXIT_OK if init_local_config() else EXIT_ERRORS

    try:
        settings = apply_args_to_settings(args, load_settings())
        if args.command == "index":
            return run_index_command(args, settings, console)
        if args.command == "query":
            return run_query_command(args, settings, console)
        if args.command == "stats":
            return run_stats_command(settings, console)
        return run_prune_command(args, settings, console)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        return EXIT_CONFIG
    except LessonRagError as e:
        logger.debug("Command failed", exc_info=True)
        console.print(f"[red]Error: {e}[/red]")
        return EXIT_ERRORS


if __name__ == "__main__":
    sys.exit(main())
