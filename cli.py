from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from ragstream.config import Settings
from ragstream.errors import EmbeddingServiceError, IndexUnavailable
from ragstream.ingestion import IngestionReport
from ragstream.rag_pipeline import RAGPipeline, build_pipeline
from ragstream.generation import ChatMessage
from ragstream.stream_parser import ParserState, StreamParser, StreamUpdate, fetch_answer, fetch_chat
from ragstream.types import SourceSummary


class _LivePrinter:
    """Prints thinking and answer text as it arrives."""

    def __init__(self, show_thinking: bool) -> None:
        self.show_thinking = show_thinking
        self._think_len = 0
        self._answer_len = 0
        self._in_answer = False

    def __call__(self, update: StreamUpdate) -> None:
        if self.show_thinking and len(update.think_content) > self._think_len:
            if self._think_len == 0:
                print("\n[thinking]")
            sys.stdout.write(update.think_content[self._think_len :])
            self._think_len = len(update.think_content)
        if len(update.main_content) > self._answer_len and update.role != "error":
            if not self._in_answer:
                print("\n\nAnswer:")
                self._in_answer = True
            sys.stdout.write(update.main_content[self._answer_len :])
            self._answer_len = len(update.main_content)
        sys.stdout.flush()


def _print_sources(sources: List[SourceSummary], max_chars: int = 240) -> None:
    """Print retrieved source snippets for transparency."""
    if not sources:
        print("No source snippets retrieved.")
        return

    print("\nSources:")
    for idx, item in enumerate(sources, start=1):
        snippet = str(item.get("content", "")).strip().replace("\n", " ")
        if len(snippet) > max_chars:
            snippet = snippet[:max_chars] + "..."
        score = item.get("score")
        if isinstance(score, (int, float)):
            print(f"[{idx}] {item['fileName']} | chunk={item['chunkIndex']} | distance={float(score):.4f}")
        else:
            print(f"[{idx}] {item['fileName']} | chunk={item['chunkIndex']}")
        print(f"    {snippet}")


def _print_report(report: IngestionReport) -> int:
    print(f"\nTotal chunks stored/updated: {report.total_chunks}")
    print(f"Files processed: {len(report.processed)} | skipped: {len(report.skipped)} | failed: {len(report.failed)}")
    for path in report.skipped:
        print(f"- skipped (unsupported type): {path}")
    if report.failed:
        print("Ingestion failures:", file=sys.stderr)
        for path, reason in report.failed.items():
            print(f"- {path}: {reason}", file=sys.stderr)
        return 1
    return 0


def _finish_answer(state: ParserState, args: argparse.Namespace) -> int:
    print()
    if state.role == "error":
        print(state.answer_buffer, file=sys.stderr)
        return 1
    if args.show_sources:
        _print_sources(state.sources, max_chars=args.source_chars)
    return 0


def _ask_once(pipeline: Optional[RAGPipeline], question: str, args: argparse.Namespace) -> int:
    printer = _LivePrinter(show_thinking=args.show_thinking)
    if args.server:
        state = fetch_answer(
            args.server,
            question,
            StreamParser(on_update=printer),
            library_id=args.library,
            top_k=args.top_k,
        )
        return _finish_answer(state, args)

    if pipeline is None:
        print("No local pipeline configured; pass --server to ask a running server.", file=sys.stderr)
        return 2
    try:
        state = pipeline.answer_question(question, top_k=args.top_k, library_id=args.library, on_update=printer)
    except (EmbeddingServiceError, IndexUnavailable) as exc:
        print(f"Retrieval failed: {exc}", file=sys.stderr)
        return 1
    return _finish_answer(state, args)


def _chat_once(pipeline: Optional[RAGPipeline], history: List[ChatMessage], args: argparse.Namespace) -> int:
    """Send the running conversation, then record the reply (or drop the failed turn)."""
    printer = _LivePrinter(show_thinking=args.show_thinking)
    if args.server:
        state = fetch_chat(
            args.server,
            [dict(message) for message in history],
            StreamParser(on_update=printer),
            model=args.model,
        )
    elif pipeline is None:
        print("No local pipeline configured; pass --server to chat with a running server.", file=sys.stderr)
        return 2
    else:
        state = pipeline.chat(history, model=args.model, on_update=printer)

    if state.role == "error" or state.cancelled:
        history.pop()
    else:
        history.append(ChatMessage(role="assistant", content=state.answer_buffer.strip()))
    return _finish_answer(state, args)


def command_ingest(args: argparse.Namespace, settings: Settings) -> int:
    """Ingest one or more documents into the vector index."""
    pipeline = build_pipeline(settings, with_generator=False)
    try:
        report = pipeline.ingest_files([Path(raw).expanduser() for raw in args.files], library_id=args.library)
    except IndexUnavailable as exc:
        print(f"Vector index unavailable: {exc}", file=sys.stderr)
        return 2
    finally:
        pipeline.close()
    return _print_report(report)


def command_ingest_dir(args: argparse.Namespace, settings: Settings) -> int:
    """Ingest every supported file in a directory."""
    pipeline = build_pipeline(settings, with_generator=False)
    try:
        report = pipeline.ingest_directory(Path(args.directory) if args.directory else None)
    except (IndexUnavailable, NotADirectoryError) as exc:
        print(f"Ingestion aborted: {exc}", file=sys.stderr)
        return 2
    finally:
        pipeline.close()
    return _print_report(report)


def command_ask(args: argparse.Namespace, settings: Settings) -> int:
    """Answer a single question against already-ingested documents."""
    if args.server:
        return _ask_once(None, args.question, args)
    pipeline = build_pipeline(settings)
    try:
        return _ask_once(pipeline, args.question, args)
    finally:
        pipeline.close()


def command_chat(args: argparse.Namespace, settings: Settings) -> int:
    """Start an interactive Q&A session in the terminal."""
    pipeline = None if args.server else build_pipeline(settings)
    history: List[ChatMessage] = []
    mode = "plain chat" if args.no_rag else "document Q&A"
    print(f"Interactive {mode} started. Type 'exit' or 'quit' to stop.")
    try:
        while True:
            try:
                question = input("\nYou> ").strip()
            except EOFError:
                print("\nExiting chat.")
                break

            if not question:
                continue
            if question.lower() in {"exit", "quit"}:
                print("Exiting chat.")
                break
            if args.no_rag:
                history.append(ChatMessage(role="user", content=question))
                _chat_once(pipeline, history, args)
            else:
                _ask_once(pipeline, question, args)
    finally:
        if pipeline is not None:
            pipeline.close()
    return 0


def command_tag(args: argparse.Namespace, settings: Settings) -> int:
    """Add model-generated tags to a JSON document."""
    try:
        document = json.loads(Path(args.file).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        print(f"Cannot read JSON document: {exc}", file=sys.stderr)
        return 2
    if not isinstance(document, dict):
        print("JSON document must be an object.", file=sys.stderr)
        return 2

    pipeline = build_pipeline(settings)
    try:
        result, _updates = pipeline.tag_document(document)
    finally:
        pipeline.close()
    print(json.dumps(result, ensure_ascii=False, indent=2))
    return 1 if "error" in result else 0


def command_stats(_: argparse.Namespace, settings: Settings) -> int:
    """Show stored chunk count."""
    pipeline = build_pipeline(settings, with_generator=False)
    try:
        pipeline.initialize()
        print(f"Stored chunks: {pipeline.vector_store.count()}")
        sources = pipeline.vector_store.list_sources()
        if sources:
            print("Indexed files: " + ", ".join(sources))
    except IndexUnavailable as exc:
        print(f"Vector index unavailable: {exc}", file=sys.stderr)
        return 2
    finally:
        pipeline.close()
    print(f"Chroma: {settings.chroma_host or settings.chroma_dir}")
    print(f"Collection: {settings.collection_name} ({settings.distance_space} distance)")
    return 0


def command_clear(args: argparse.Namespace, settings: Settings) -> int:
    """Delete the configured collection and recreate it empty."""
    if not args.yes:
        print("Refusing to clear the index without --yes (this cannot be undone).", file=sys.stderr)
        return 2
    pipeline = build_pipeline(settings, with_generator=False)
    try:
        pipeline.vector_store.clear()
    except IndexUnavailable as exc:
        print(f"Vector index unavailable: {exc}", file=sys.stderr)
        return 2
    finally:
        pipeline.close()
    print("Vector store cleared.")
    return 0


def command_serve(args: argparse.Namespace, _settings: Settings) -> int:
    """Run the HTTP answer server."""
    import uvicorn

    uvicorn.run("app:app", host=args.host, port=args.port)
    return 0


def _add_answer_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--top-k", type=int, default=None, help="Number of chunks to retrieve")
    parser.add_argument("--library", default=None, help="Restrict retrieval to one library id")
    parser.add_argument(
        "--server", default="", help="Endpoint of a running server (/api/rag, or /api/chat with --no-rag)"
    )
    parser.add_argument("--show-thinking", action="store_true", help="Print the model's reasoning as it streams")
    parser.add_argument("--show-sources", action="store_true", help="Print retrieved context snippets")
    parser.add_argument("--source-chars", type=int, default=240, help="Max characters shown per source snippet")


def build_arg_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser."""
    parser = argparse.ArgumentParser(description="ragstream: grounded, streamed document Q&A")
    subparsers = parser.add_subparsers(dest="command", required=True)

    ingest_parser = subparsers.add_parser("ingest", help="Ingest specific files into the vector index")
    ingest_parser.add_argument("files", nargs="+", help="One or more .txt/.md/.json/.pdf files")
    ingest_parser.add_argument("--library", default=None, help="Library id stored with every chunk")

    ingest_dir_parser = subparsers.add_parser("ingest-dir", help="Ingest every file in a directory")
    ingest_dir_parser.add_argument("directory", nargs="?", default=None, help="Defaults to DOCS_DIR")

    ask_parser = subparsers.add_parser("ask", help="Ask one question and stream a grounded answer")
    ask_parser.add_argument("question", help="Question text")
    _add_answer_options(ask_parser)

    chat_parser = subparsers.add_parser("chat", help="Start interactive terminal Q&A")
    _add_answer_options(chat_parser)
    chat_parser.add_argument(
        "--no-rag", action="store_true", help="Chat with the model directly, keeping the conversation history"
    )
    chat_parser.add_argument("--model", default=None, help="Generation model for --no-rag chat")

    tag_parser = subparsers.add_parser("tag", help="Add model-generated tags to a JSON document")
    tag_parser.add_argument("file", help="Path to a JSON object file")

    subparsers.add_parser("stats", help="Show vector index statistics")

    clear_parser = subparsers.add_parser("clear", help="Delete all vectors from the collection")
    clear_parser.add_argument("--yes", action="store_true", help="Confirm the irreversible delete")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP answer server")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8080)
    return parser


COMMANDS = {
    "ingest": command_ingest,
    "ingest-dir": command_ingest_dir,
    "ask": command_ask,
    "chat": command_chat,
    "tag": command_tag,
    "stats": command_stats,
    "clear": command_clear,
    "serve": command_serve,
}


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entrypoint."""
    load_dotenv()
    settings = Settings()
    logging.basicConfig(level=settings.log_level, format="%(levelname)s %(name)s: %(message)s")
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return 2
    return handler(args, settings)


if __name__ == "__main__":
    raise SystemExit(main())
