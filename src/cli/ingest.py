# =============================================================================
# src/cli/ingest.py — Knowledge Base CLI
# =============================================================================
#
# Standalone CLI for managing an agent's knowledge base: submit sources,
# watch their processing, query the stored chunks and tune the per-agent
# RAG settings.
#
# Supported subcommands:
#
#   submit    — Submit a URL, a text file or inline text and process it
#   status    — Show a source's processing status
#   list      — List an agent's sources
#   query     — Retrieve context for a question (prints the ranked chunks)
#   delete    — Delete a source and its chunks
#   reprocess — Re-run ingestion for an existing source
#   worker    — Process every pending source in the store
#   stats     — Chunk statistics for an agent
#   settings  — Show or update an agent's knowledge settings
#
# The job queue is in-process, so commands that enqueue work (submit,
# reprocess, worker) drain the queue before exiting.
#
# Usage examples:
#   python -m src.cli submit --agent a1 --type web_page --url https://example.com
#   python -m src.cli submit --agent a1 --type plain_text --file notes.txt
#   python -m src.cli query --agent a1 "What is the refund policy?"
#   python -m src.cli settings --agent a1 --set enable_rag=true --set chunk_size=1000
# =============================================================================

"""Standalone CLI for the agent knowledge base.

Usage::

    python -m src.cli submit --agent a1 --type plain_text --file notes.txt

    python -m src.cli query --agent a1 "How do refunds work?"

    python -m src.cli stats --agent a1
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Any

from src.models.knowledge import ProcessingStage, SourceStatus, SourceType


async def _drain(engine) -> None:  # noqa: ANN001
    """Process queued jobs (including redeliveries) until the queue is empty."""
    while engine.queue.pending_count():
        messages = await engine.queue.receive(max_messages=engine.settings.worker_batch_size)
        await engine.supervisor.process_batch(messages)


def _print_progress(source_id: str, stage: ProcessingStage, progress: int, message: str) -> None:
    print(f"  [{progress:>3}%] {stage.value:<12} {message}")


async def _process_with_progress(engine, source_id: str) -> int:  # noqa: ANN001
    engine.progress.register_listener(source_id, _print_progress)
    try:
        await _drain(engine)
    finally:
        engine.progress.unregister_listener(source_id, _print_progress)

    status = await engine.service.get_source_status(source_id)
    print(f"\nFinal status: {status.status.value} - {status.progress_message}")
    return 0 if status.status is SourceStatus.COMPLETED else 1


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


async def _handle_submit(args: argparse.Namespace, engine) -> int:  # noqa: ANN001
    content = args.text
    locator = args.url
    if args.file:
        path = Path(args.file)
        content = path.read_text(encoding="utf-8")
        locator = locator or path.name

    source_id = await engine.service.submit_knowledge_source(
        agent_id=args.agent,
        source_type=SourceType(args.type),
        locator=locator,
        content=content,
        name=args.name,
    )
    print(f"Submitted source {source_id}")
    return await _process_with_progress(engine, source_id)


async def _handle_status(args: argparse.Namespace, engine) -> int:  # noqa: ANN001
    status = await engine.service.get_source_status(args.source_id)
    print(f"Source:   {status.source_id}")
    print(f"Status:   {status.status.value}")
    print(f"Stage:    {status.processing_stage.value}")
    print(f"Progress: {status.progress_percentage}% - {status.progress_message}")
    if status.estimated_seconds_remaining is not None:
        print(f"ETA:      ~{status.estimated_seconds_remaining}s")
    if status.error:
        print(f"Error:    {status.error}")
    return 0


async def _handle_list(args: argparse.Namespace, engine) -> int:  # noqa: ANN001
    status = SourceStatus(args.status) if args.status else None
    sources = await engine.service.list_sources(args.agent, status=status)
    if not sources:
        print("No knowledge sources.")
        return 0
    for source in sources:
        print(
            f"  {source.source_id}  {source.status.value:<10} "
            f"{source.progress_percentage:>3}%  {source.source_type.value:<16} {source.display_name}"
        )
    return 0


async def _handle_query(args: argparse.Namespace, engine) -> int:  # noqa: ANN001
    chunks = await engine.service.retrieve_context(args.agent, args.question)
    if not chunks:
        print("No relevant context found (is RAG enabled for this agent?).")
        return 0
    if args.prompt:
        print(engine.service.build_context_prompt(chunks, args.question))
        return 0
    for i, chunk in enumerate(chunks, start=1):
        print(f"[{i}] score={chunk.score:.3f}  source={chunk.source_name}  index={chunk.chunk_index}")
        print(f"    {chunk.content[:300]}")
    return 0


async def _handle_delete(args: argparse.Namespace, engine) -> int:  # noqa: ANN001
    if not args.yes:
        confirm = input(f"Delete source {args.source_id} and its chunks? [y/N] ")
        if confirm.strip().lower() != "y":
            print("  Aborted.")
            return 0
    removed = await engine.service.delete_knowledge_source(args.source_id)
    print(f"Deleted source {args.source_id} ({removed} chunks removed).")
    return 0


async def _handle_reprocess(args: argparse.Namespace, engine) -> int:  # noqa: ANN001
    await engine.service.reprocess_knowledge_source(args.source_id)
    print(f"Reprocessing source {args.source_id}")
    return await _process_with_progress(engine, args.source_id)


async def _handle_worker(args: argparse.Namespace, engine) -> int:  # noqa: ANN001
    pending = await engine.service.list_sources(args.agent, status=SourceStatus.PENDING)
    for source in pending:
        await engine.service.reprocess_knowledge_source(source.source_id)
    print(f"Processing {len(pending)} pending source(s)")
    await _drain(engine)
    return 0


async def _handle_stats(args: argparse.Namespace, engine) -> int:  # noqa: ANN001
    stats = await engine.service.get_statistics(args.agent)
    print(f"Knowledge Statistics ({args.agent})")
    print("=" * 40)
    print(f"  Total chunks:     {stats.total_chunks}")
    print(f"  Total sources:    {stats.total_sources}")
    for title, counts in (
        ("Content types", stats.content_types),
        ("Source types", stats.source_types),
        ("Languages", stats.languages),
    ):
        if counts:
            print(f"\n  {title}:")
            for key, count in sorted(counts.items(), key=lambda x: -x[1]):
                print(f"    {key:<15} {count}")
    return 0


def _parse_assignment(raw: str) -> tuple[str, Any]:
    key, sep, value = raw.partition("=")
    if not sep:
        msg = f"Expected key=value, got {raw!r}"
        raise argparse.ArgumentTypeError(msg)
    lowered = value.lower()
    if lowered in ("true", "false"):
        return key, lowered == "true"
    return key, value


async def _handle_settings(args: argparse.Namespace, engine) -> int:  # noqa: ANN001
    if args.set:
        settings = await engine.service.update_settings(args.agent, **dict(args.set))
    else:
        settings = await engine.service.get_settings(args.agent)
    for key, value in settings.model_dump(mode="json").items():
        print(f"  {key:<26} {value}")
    return 0


_HANDLERS = {
    "submit": _handle_submit,
    "status": _handle_status,
    "list": _handle_list,
    "query": _handle_query,
    "delete": _handle_delete,
    "reprocess": _handle_reprocess,
    "worker": _handle_worker,
    "stats": _handle_stats,
    "settings": _handle_settings,
}


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m src.cli",
        description="Manage an agent's knowledge base.",
    )
    parser.add_argument("--config", default="config/config.yaml", help="YAML config path")
    subparsers = parser.add_subparsers(dest="command")

    submit = subparsers.add_parser("submit", help="Submit and process a knowledge source")
    submit.add_argument("--agent", required=True, help="Owning agent id")
    submit.add_argument(
        "--type",
        default=SourceType.PLAIN_TEXT.value,
        choices=[t.value for t in SourceType],
        help="Source type",
    )
    origin = submit.add_mutually_exclusive_group(required=True)
    origin.add_argument("--url", help="Web page URL")
    origin.add_argument("--file", help="Path to a UTF-8 text file with extracted content")
    origin.add_argument("--text", help="Inline text content")
    submit.add_argument("--name", help="Display name")

    status = subparsers.add_parser("status", help="Show a source's processing status")
    status.add_argument("source_id")

    list_parser = subparsers.add_parser("list", help="List an agent's sources")
    list_parser.add_argument("--agent", required=True)
    list_parser.add_argument("--status", choices=[s.value for s in SourceStatus])

    query = subparsers.add_parser("query", help="Retrieve context for a question")
    query.add_argument("--agent", required=True)
    query.add_argument("--prompt", action="store_true", help="Print the assembled context prompt")
    query.add_argument("question")

    delete = subparsers.add_parser("delete", help="Delete a source and its chunks")
    delete.add_argument("source_id")
    delete.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")

    reprocess = subparsers.add_parser("reprocess", help="Re-run ingestion for a source")
    reprocess.add_argument("source_id")

    worker = subparsers.add_parser("worker", help="Process every pending source")
    worker.add_argument("--agent", required=True)

    stats = subparsers.add_parser("stats", help="Chunk statistics for an agent")
    stats.add_argument("--agent", required=True)

    settings = subparsers.add_parser("settings", help="Show or update knowledge settings")
    settings.add_argument("--agent", required=True)
    settings.add_argument(
        "--set",
        action="append",
        type=_parse_assignment,
        metavar="KEY=VALUE",
        help="Setting to change (repeatable)",
    )
    return parser


async def _run(args: argparse.Namespace) -> int:
    # Deferred so --help stays fast and does not touch chromadb/openai.
    from src.main import build_knowledge_service, load_settings
    from src.utils.errors import KnowledgeEngineError

    engine = build_knowledge_service(load_settings(args.config))
    await engine.start()
    try:
        return await _HANDLERS[args.command](args, engine)
    except KnowledgeEngineError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        await engine.aclose()


def main(argv: list[str] | None = None) -> None:
    """CLI entry point: parse the subcommand and dispatch to its handler."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    sys.exit(asyncio.run(_run(args)))
