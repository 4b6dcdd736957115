"""Command line interface for pdfrag.

Usage:
    pdfrag ingest                    # Index new PDFs in the data directory
    pdfrag ask "What is ...?"        # One question, streamed answer
    pdfrag chat                      # Multi-turn conversation
    pdfrag collections               # List ingested documents
    pdfrag open 42                   # Open the document cited as (42)
"""
import argparse
import asyncio
import sys
import webbrowser
from datetime import datetime
from pathlib import Path
import structlog

from pdfrag import config
from pdfrag.db import EmbeddingStore
from pdfrag.llm_client import OllamaClient
from pdfrag.log import configure_logging
from pdfrag.rag.chunker import TextChunker
from pdfrag.rag.ingest import IngestPipeline
from pdfrag.rag.retriever import Retriever
from pdfrag.session import Session

logger = structlog.get_logger()


def _print_error(kind: str):
    def report(message: str) -> None:
        print(f"\n❌ {kind} error: {message}", file=sys.stderr)
    return report


class ProgressReporter:
    """Simple progress reporter for the ingest command."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self.start_time = None

    def start(self, message: str):
        self.start_time = datetime.now()
        print(f"\n{'=' * 60}")
        print(f"  {message}")
        print(f"{'=' * 60}\n")

    def update(self, current: int, total: int, file_path: Path):
        percentage = (current / total) * 100 if total > 0 else 0
        bar_length = 40
        filled = int(bar_length * current / total) if total > 0 else 0
        bar = "█" * filled + "░" * (bar_length - filled)

        print(
            f"\r  [{bar}] {percentage:5.1f}% ({current}/{total}) {file_path.name[:30]:<30}",
            end="",
            flush=True,
        )

        if self.verbose:
            print()

    def finish(self, stats: dict):
        print("\n")
        elapsed_seconds = (datetime.now() - self.start_time).total_seconds()

        print(f"{'=' * 60}")
        print("  Indexing Complete!")
        print(f"{'=' * 60}\n")
        print(f"  📁 Documents processed:  {stats['documents_processed']}")
        print(f"  ⏭️  Documents skipped:    {stats['documents_skipped']}")
        print(f"  ❌ Documents failed:     {stats['documents_failed']}")
        print(f"  📝 Chunks created:       {stats['chunks_created']}")
        print(f"  🧮 Embeddings generated: {stats['embeddings_generated']}")
        print(f"  ⏱️  Time elapsed:         {elapsed_seconds:.1f}s")
        print(f"\n{'=' * 60}\n")

        if stats["documents_failed"] > 0:
            print(f"⚠️  Warning: {stats['documents_failed']} document(s) failed to index.")
            print("   Check logs for details.\n")


def _open_store(args) -> EmbeddingStore:
    return EmbeddingStore(
        db_path=args.db_path,
        index_kind=args.index,
        on_error=_print_error("Database"),
    )


def _open_client(args) -> OllamaClient:
    return OllamaClient(
        api_url=args.api_url,
        model=getattr(args, "model", None),
        on_error=_print_error("Ollama"),
    )


async def cmd_ingest(args) -> int:
    data_dir = args.data_dir or config.DATA_DIR

    print("\n📋 Configuration:")
    print(f"   Data directory:   {data_dir}")
    print(f"   Embedding model:  {config.EMBEDDING_MODEL}")
    print(f"   Chunk size:       {config.CHUNK_SIZE} chars")
    print(f"   Chunk overlap:    {config.CHUNK_OVERLAP} chars")

    progress = ProgressReporter(verbose=args.verbose)
    progress.start("Indexing Documents")

    with _open_store(args) as store:
        pipeline = IngestPipeline(
            store=store,
            client=_open_client(args),
            chunker=TextChunker(),
            data_dir=data_dir,
        )
        stats = await pipeline.ingest_all(progress_callback=progress.update)

    progress.finish(stats)
    return 1 if stats["documents_failed"] else 0


async def _answer(retriever: Retriever, session: Session, question: str) -> Session:
    """Stream one answer to stdout; returns the session to continue with."""
    answer = await retriever.ask(session, question)
    if answer is None:
        print("⚠️  Question could not be processed.")
        return session

    print("\n**Answer:** ", end="", flush=True)
    await answer.stream.run(on_token=lambda token: print(token, end="", flush=True))

    if answer.sources:
        print(f"\n\n**Sources:** {', '.join(answer.citations())}")
    print()
    return answer.session


async def cmd_ask(args) -> int:
    with _open_store(args) as store:
        client = _open_client(args)
        retriever = Retriever(
            store,
            client,
            top_k=args.top_k,
            answer_model=args.model or config.ANSWER_MODEL,
        )
        await _answer(retriever, client.new_session(), args.question)
    return 0


async def cmd_chat(args) -> int:
    with _open_store(args) as store:
        client = _open_client(args)
        client.on_new_session(lambda s: print(f"🆕 New session with {s.model}"))
        retriever = Retriever(store, client, top_k=args.top_k)
        session = client.new_session()

        print("Type a question, /reset, /model NAME, /open N or /quit.")
        while True:
            try:
                line = (await asyncio.to_thread(input, "\n> ")).strip()
            except EOFError:
                break

            if not line:
                continue
            if line in ("/quit", "/exit"):
                break
            if line == "/reset":
                session = client.reset(session)
            elif line.startswith("/model "):
                session = client.switch_model(session, line.split(maxsplit=1)[1])
            elif line.startswith("/open "):
                _open_citation(retriever, line.split(maxsplit=1)[1], args)
            else:
                session = await _answer(retriever, session, line)
    return 0


async def cmd_collections(args) -> int:
    with _open_store(args) as store:
        for index, name in enumerate(store.list_collections()):
            print(f"{index:4d}  {name}")
        stats = store.get_stats()
        print(f"\n{stats['document_count']} chunks, dimension {stats['dimension']}")
    return 0


def _open_citation(retriever: Retriever, sequence: str, args) -> bool:
    try:
        number = int(sequence.strip("()[] "))
    except ValueError:
        print(f"⚠️  Not a citation number: {sequence}")
        return False

    source = retriever.resolve_citation(number)
    if source is None:
        print(f"⚠️  No chunk with sequence {number}")
        return False

    path = Path(args.data_dir or config.DATA_DIR) / source
    print(f"📄 {path}")
    webbrowser.open(path.resolve().as_uri())
    return True


async def cmd_open(args) -> int:
    with _open_store(args) as store:
        retriever = Retriever(store, _open_client(args))
        return 0 if _open_citation(retriever, args.sequence, args) else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pdfrag",
        description="Ask questions about a directory of PDF documents",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--db-path", type=Path, default=None,
                        help=f"Embedding database (default: {config.DB_PATH})")
    parser.add_argument("--api-url", default=None,
                        help=f"Ollama API URL (default: {config.OLLAMA_API_URL})")
    parser.add_argument("--index", choices=["linear", "faiss"], default=None,
                        help=f"Vector index (default: {config.VECTOR_INDEX})")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help=f"PDF directory (default: {config.DATA_DIR})")
    parser.add_argument("--log-level", default=None, help="Log level (default: LOG_LEVEL)")

    sub = parser.add_subparsers(dest="command", required=True)

    ingest = sub.add_parser("ingest", help="Index new PDF documents")
    ingest.add_argument("--verbose", "-v", action="store_true",
                        help="Show verbose progress output")
    ingest.set_defaults(handler=cmd_ingest)

    ask = sub.add_parser("ask", help="Ask a single question")
    ask.add_argument("question")
    ask.add_argument("--top-k", type=int, default=None)
    ask.add_argument("--model", default=None,
                     help=f"Answer model (default: {config.ANSWER_MODEL})")
    ask.set_defaults(handler=cmd_ask)

    chat = sub.add_parser("chat", help="Multi-turn conversation")
    chat.add_argument("--top-k", type=int, default=None)
    chat.add_argument("--model", default=None,
                      help=f"Chat model (default: {config.CHAT_MODEL})")
    chat.set_defaults(handler=cmd_chat)

    collections = sub.add_parser("collections", help="List ingested documents")
    collections.set_defaults(handler=cmd_collections)

    open_cmd = sub.add_parser("open", help="Open the document behind a citation")
    open_cmd.add_argument("sequence")
    open_cmd.set_defaults(handler=cmd_open)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    try:
        return asyncio.run(args.handler(args))
    except KeyboardInterrupt:
        print("\n\n⚠️  Cancelled by user.\n")
        return 1


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
