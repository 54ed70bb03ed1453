"""``ghost-lib`` command line: ingest documents and ask questions against a local store."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Sequence

from .config import DistillationConfig, LibrarianSettings
from .errors import GhostLibrarianError
from .ingest import Ingestor, ParagraphSplitter
from .logger import configure_logging, get_logger
from .models import DuplicatePolicy
from .pipeline import ContextDistiller, DistillResult
from .providers import build_embedder_from_env, build_generator_from_env
from .store import ChunkStore

logger = get_logger(__name__)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="ghost-lib",
        description="Local retrieval and context distillation over your own documents.",
    )
    parser.add_argument(
        "--store",
        default=None,
        help="Path to the store file (default: $GHOST_STORE_PATH or ~/.ghost_librarian/store.json).",
    )
    parser.add_argument("--log-level", default=None, help="Logging level (default: $GHOST_LOG_LEVEL or INFO).")
    subcommands = parser.add_subparsers(dest="command", required=True)

    add = subcommands.add_parser("add", help="Ingest a document into the store.")
    add.add_argument("path", help="Path to a .md, .txt, .rst or .pdf document.")
    add.add_argument(
        "--reject",
        action="store_true",
        help="Fail instead of replacing when the document is already indexed.",
    )

    ask = subcommands.add_parser("ask", help="Ask a question against the indexed documents.")
    ask.add_argument("query", help="The question to answer.")
    _add_query_options(ask)
    ask.add_argument(
        "--context-only",
        action="store_true",
        help="Print the distilled context without calling the generation model.",
    )

    subcommands.add_parser("list", help="List indexed documents.")

    delete = subcommands.add_parser("delete", help="Remove a document and all of its chunks.")
    delete.add_argument("document_id", help="Document id as shown by 'list'.")

    subcommands.add_parser("stats", help="Show store statistics.")
    subcommands.add_parser("check", help="Check the generation backend and the store.")

    chat = subcommands.add_parser("chat", help="Interactive question loop. Type 'exit' or 'quit' to leave.")
    _add_query_options(chat)

    return parser.parse_args(argv)


def _add_query_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--model", default=None, help="Generation model (default: $GHOST_MODEL or llama3).")
    parser.add_argument("--budget", type=int, default=None, help="Context token budget (default: 3000).")


def open_store(settings: LibrarianSettings, config: DistillationConfig) -> ChunkStore:
    return ChunkStore.open(settings.store_path, dimension=settings.dimension, chars_per_token=config.chars_per_token)


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------


def cmd_add(args: argparse.Namespace, settings: LibrarianSettings, config: DistillationConfig) -> None:
    store = open_store(settings, config)
    ingestor = Ingestor(
        store,
        build_embedder_from_env(settings),
        ParagraphSplitter(settings.chunk_size),
        chars_per_token=config.chars_per_token,
    )
    policy = DuplicatePolicy.REJECT if args.reject else settings.duplicate_policy
    report = ingestor.ingest_file(args.path, policy=policy)
    store.persist()
    print(f"Indexed '{report.document_id}': {report.chunk_count} chunks, ~{report.token_estimate} tokens")


def cmd_ask(args: argparse.Namespace, settings: LibrarianSettings, config: DistillationConfig) -> None:
    store = open_store(settings, config)
    distiller = ContextDistiller(store, build_embedder_from_env(settings), config)
    result = distiller.distill(args.query, budget=args.budget)
    _print_summary(result)

    if result.is_empty:
        print("No relevant context found. Add documents with 'ghost-lib add <path>'.")
        return
    if args.context_only:
        print(result.context)
        return
    _stream_answer(build_generator_from_env(settings), args.query, result, args.model)


def cmd_list(args: argparse.Namespace, settings: LibrarianSettings, config: DistillationConfig) -> None:
    documents = open_store(settings, config).list_documents()
    if not documents:
        print("No documents indexed.")
        return
    for summary in documents:
        print(f"{summary.document_id}\t{summary.chunk_count} chunks\t{summary.total_bytes} bytes")


def cmd_delete(args: argparse.Namespace, settings: LibrarianSettings, config: DistillationConfig) -> None:
    store = open_store(settings, config)
    removed = store.delete_document(args.document_id)
    if removed:
        store.persist()
        print(f"Deleted '{args.document_id}' ({removed} chunks)")
    else:
        print(f"No document named '{args.document_id}'")


def cmd_stats(args: argparse.Namespace, settings: LibrarianSettings, config: DistillationConfig) -> None:
    stats = open_store(settings, config).stats()
    print(f"Store:      {settings.store_path}")
    print(f"Documents:  {stats.document_count}")
    print(f"Chunks:     {stats.chunk_count}")
    print(f"Text bytes: {stats.total_bytes}")
    print(f"Dimension:  {stats.dimension}")


def cmd_check(args: argparse.Namespace, settings: LibrarianSettings, config: DistillationConfig) -> None:
    generator = build_generator_from_env(settings)
    if generator.health_check():
        models = generator.list_models()
        print(f"Generation backend: OK ({settings.generation_provider})")
        print(f"Available models:   {', '.join(models) if models else '(none)'}")
    else:
        print(f"Generation backend: UNREACHABLE ({settings.generation_provider} at {settings.ollama_url})")

    stats = open_store(settings, config).stats()
    print(f"Store: {stats.document_count} documents, {stats.chunk_count} chunks at {settings.store_path}")


def cmd_chat(args: argparse.Namespace, settings: LibrarianSettings, config: DistillationConfig) -> None:
    store = open_store(settings, config)
    distiller = ContextDistiller(store, build_embedder_from_env(settings), config)
    generator = build_generator_from_env(settings)

    print("Ask questions about your documents. Type 'exit' or 'quit' to leave.\n")

    while True:
        try:
            user_input = input("You: ").strip()
        except (EOFError, KeyboardInterrupt):
            print("\nExiting chat.")
            break

        if not user_input:
            continue
        if user_input.lower() in {"exit", "quit"}:
            print("Goodbye.")
            break

        try:
            result = distiller.distill(user_input, budget=args.budget)
            _print_summary(result)
            if result.is_empty:
                print("Librarian: no relevant context found.")
                continue
            _stream_answer(generator, user_input, result, args.model)
        except GhostLibrarianError as exc:
            # keep the session alive; the next question may succeed
            logger.error("Query failed: %s", exc)
            print(f"Error: {exc}")


# ----------------------------------------------------------------------
# Output helpers
# ----------------------------------------------------------------------


def _print_summary(result: DistillResult) -> None:
    print(
        f"[{result.chunks_retrieved} retrieved, {result.chunks_after_dedup} after dedup, "
        f"{len(result.packed)} packed | {result.original_tokens} -> {result.distilled_tokens} tokens, "
        f"{result.compression_ratio * 100:.1f}% saved]"
    )
    for dropped in result.dropped:
        print(f"  skipped chunk {dropped.chunk_id} of '{dropped.document_id}' ({dropped.stage}): {dropped.reason}")


def _stream_answer(generator, query: str, result: DistillResult, model: str | None) -> None:
    print("Librarian: ", end="", flush=True)
    for token in generator.stream(query, result.context, model=model):
        print(token, end="", flush=True)
    print()


COMMANDS = {
    "add": cmd_add,
    "ask": cmd_ask,
    "list": cmd_list,
    "delete": cmd_delete,
    "stats": cmd_stats,
    "check": cmd_check,
    "chat": cmd_chat,
}


def main(argv: Sequence[str] | None = None) -> None:
    args = parse_args(argv)
    overrides = {"store_path": Path(args.store).expanduser() if args.store else None, "log_level": args.log_level}
    try:
        settings = LibrarianSettings.from_env(**overrides)
        config = DistillationConfig.from_env()
    except ValueError as exc:
        raise SystemExit(f"Invalid configuration: {exc}") from exc

    configure_logging(settings.log_level)
    try:
        COMMANDS[args.command](args, settings, config)
    except (GhostLibrarianError, ValueError, OSError) as exc:
        logger.debug("Command '%s' failed", args.command, exc_info=True)
        print(f"Error: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
