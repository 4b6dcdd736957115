"""Ingest pipeline for indexing PDF documents.

Orchestrates:
- Document discovery
- Page text extraction
- Text chunking
- Embedding generation (one chunk at a time)
- Chunk and collection storage
"""
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional
import structlog

from pdfrag import config
from pdfrag.db import EmbeddingStore
from pdfrag.errors import DataError, RagError, StoreError
from pdfrag.llm_client import OllamaClient
from pdfrag.rag.chunker import TextChunker
from pdfrag.rag.pdf_reader import discover_documents, read_pages

logger = structlog.get_logger()

ProgressCallback = Callable[[int, int, Path], None]


class IngestPipeline:
    """Pipeline for ingesting documents into the embedding store."""

    def __init__(
        self,
        store: EmbeddingStore,
        client: OllamaClient,
        chunker: Optional[TextChunker] = None,
        data_dir: Path = None,
        page_reader: Callable[[Path], List[str]] = read_pages,
    ):
        """Initialize the ingest pipeline.

        Args:
            store: Destination embedding store
            client: Client used for embedding requests
            chunker: Text chunker (default built from config)
            data_dir: Directory containing PDF files (default config.DATA_DIR)
            page_reader: Function returning the page texts of a file
        """
        self.store = store
        self.client = client
        self.chunker = chunker or TextChunker()
        self.data_dir = Path(data_dir or config.DATA_DIR)
        self.page_reader = page_reader
        self.stats = self._empty_stats()

        logger.info(
            "ingest_pipeline_initialized",
            data_dir=str(self.data_dir),
            embedding_model=self.client.embedding_model,
            chunk_size=self.chunker.chunk_size,
            chunk_overlap=self.chunker.chunk_overlap,
        )

    @staticmethod
    def _empty_stats() -> Dict[str, int]:
        return {
            "documents_processed": 0,
            "documents_skipped": 0,
            "documents_failed": 0,
            "chunks_created": 0,
            "chunks_stored": 0,
            "embeddings_generated": 0,
        }

    async def ingest_document(
        self,
        name: str,
        pages: Iterable[str],
        collection: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Chunk, embed and store one document.

        Already ingested collections are skipped. The collection is recorded
        only after every chunk has been embedded and stored.

        Args:
            name: Document name, used as the chunk id prefix
            pages: Page texts in order
            collection: Collection key (defaults to ``name``)

        Returns:
            Dictionary with ingestion results

        Raises:
            DataError: If a chunk cannot be embedded or has the wrong dimension
            StoreError: If a chunk or the collection cannot be stored
        """
        collection = collection or name

        if self.store.has_collection(collection):
            logger.info("document_already_ingested", collection=collection)
            self.stats["documents_skipped"] += 1
            return {"document": name, "skipped": True, "chunks_created": 0}

        chunks = self.chunker.chunk_pages(name, pages)
        if not chunks:
            logger.warning("no_chunks_created", document=name)

        stored = 0
        for chunk in chunks:
            embedding = await self.client.embeddings(chunk.content)
            if not embedding:
                raise DataError(f"Embedding failed for chunk {chunk.id}")
            self.stats["embeddings_generated"] += 1

            if self.store.insert_document(
                chunk.id,
                chunk.content,
                embedding,
                collection=collection,
                metadata={
                    "page": chunk.page,
                    "char_start": chunk.char_start,
                    "char_end": chunk.char_end,
                },
            ):
                stored += 1

        if not self.store.add_collection(collection, topic=name):
            raise StoreError(f"Could not record collection {collection}")

        self.stats["chunks_created"] += len(chunks)
        self.stats["chunks_stored"] += stored
        self.stats["documents_processed"] += 1

        logger.info(
            "document_ingested",
            document=name,
            chunks_created=len(chunks),
            chunks_stored=stored,
        )

        return {
            "document": name,
            "skipped": False,
            "chunks_created": len(chunks),
            "chunks_stored": stored,
        }

    async def ingest_file(self, path: Path) -> Dict[str, Any]:
        """Ingest a single PDF, keyed by its absolute path."""
        collection = str(path.resolve())
        if self.store.has_collection(collection):
            logger.info("document_already_ingested", collection=collection)
            self.stats["documents_skipped"] += 1
            return {"document": path.name, "skipped": True, "chunks_created": 0}

        pages = self.page_reader(path)
        return await self.ingest_document(path.name, pages, collection=collection)

    async def ingest_all(
        self, progress_callback: Optional[ProgressCallback] = None
    ) -> Dict[str, int]:
        """Ingest every PDF in the data directory.

        A failing document is logged and skipped; the remaining documents
        are still ingested.

        Args:
            progress_callback: Optional callback function(current, total, path)

        Returns:
            Dictionary with ingestion statistics
        """
        logger.info("starting_ingest_all", data_dir=str(self.data_dir))

        self.stats = self._empty_stats()

        if not self.data_dir.exists():
            self.data_dir.mkdir(parents=True)
            logger.warning("data_dir_created_empty", data_dir=str(self.data_dir))
            return self.stats

        documents = discover_documents(self.data_dir)
        if not documents:
            logger.warning("no_documents_found", data_dir=str(self.data_dir))
            return self.stats

        for idx, path in enumerate(documents, 1):
            if progress_callback:
                progress_callback(idx, len(documents), path)

            try:
                await self.ingest_file(path)
            except RagError as e:
                logger.error(
                    "document_ingestion_failed",
                    path=str(path),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                self.stats["documents_failed"] += 1

        logger.info("ingest_all_completed", stats=self.stats)

        return self.stats
