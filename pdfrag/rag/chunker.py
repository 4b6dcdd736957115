"""Text chunking with overlap for the RAG pipeline.

Chunks are character-based and always end on a whitespace character, so
words are never split across a chunk boundary.
"""
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional
import structlog

from pdfrag import config

logger = structlog.get_logger()

_WHITESPACE = re.compile(r"\s")

# Code points PDF text extraction leaves behind (form feed becomes a newline)
_ARTIFACT_TABLE = str.maketrans({
    "\x00": None,
    "\x0c": "\n",
    "\u00ad": None,  # soft hyphen
    "\ufeff": None,  # byte order mark
    "\ufffc": None,  # object replacement character
    "\ufffe": None,
    "\uffff": None,
})


def normalize_text(text: str) -> str:
    """Unify line endings and strip PDF artifact code points.

    Idempotent: ``normalize_text(normalize_text(t)) == normalize_text(t)``.
    """
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    return text.translate(_ARTIFACT_TABLE)


def document_text(pages: Iterable[str]) -> str:
    """Normalized full text of a document, as the chunker sees it."""
    return "".join(normalize_text(page) for page in pages)


@dataclass
class TextChunk:
    """A chunk of document text with its position in the normalized text."""

    id: str
    content: str
    page: int
    chunk_index: int
    char_start: int
    char_end: int


class TextChunker:
    """Whitespace-aligned chunker with overlap support."""

    def __init__(
        self,
        chunk_size: int = None,
        chunk_overlap: int = None,
    ):
        """Initialize the text chunker.

        Args:
            chunk_size: Minimum chunk length in characters (default from config)
            chunk_overlap: Overlap between chunks in characters (default from config)
        """
        self.chunk_size = config.CHUNK_SIZE if chunk_size is None else chunk_size
        self.chunk_overlap = config.CHUNK_OVERLAP if chunk_overlap is None else chunk_overlap

        if self.chunk_size <= 0:
            raise ValueError(f"Chunk size must be positive, got {self.chunk_size}")

        if not 0 <= self.chunk_overlap < self.chunk_size:
            raise ValueError(
                f"Overlap ({self.chunk_overlap}) must be non-negative and less than "
                f"chunk size ({self.chunk_size})"
            )

        logger.debug(
            "chunker_initialized",
            chunk_size=self.chunk_size,
            chunk_overlap=self.chunk_overlap,
        )

    def chunk_pages(self, document_name: str, pages: Iterable[str]) -> List[TextChunk]:
        """Split a document, given page by page, into overlapping chunks.

        Text is accumulated page by page; chunks are cut whenever the buffer
        grows past the chunk size. Ids follow ``<name>:<page>:<index>`` where
        the index restarts on every page. The final residual chunk uses the
        number of chunks already produced as its index.

        Args:
            document_name: Name used as the id prefix
            pages: Page texts in order

        Returns:
            List of TextChunk objects in document order
        """
        chunks: List[TextChunk] = []
        buffer = ""
        offset = 0  # position of buffer[0] in the document text
        page_number = 0

        for page_number, page in enumerate(pages, 1):
            buffer += normalize_text(page)
            index_in_page = 0

            while len(buffer) > self.chunk_size:
                end = self._find_chunk_end(buffer)
                if end is None:
                    # No boundary yet, wait for more text
                    logger.debug(
                        "chunk_boundary_not_found",
                        document=document_name,
                        page=page_number,
                        buffered=len(buffer),
                    )
                    break

                chunks.append(
                    TextChunk(
                        id=f"{document_name}:{page_number}:{index_in_page}",
                        content=buffer[:end],
                        page=page_number,
                        chunk_index=index_in_page,
                        char_start=offset,
                        char_end=offset + end,
                    )
                )

                start = self._find_next_start(buffer, end)
                buffer = buffer[start:]
                offset += start
                index_in_page += 1

        residual_end = offset + len(buffer)
        if buffer and (not chunks or residual_end > chunks[-1].char_end):
            chunks.append(
                TextChunk(
                    id=f"{document_name}:{page_number}:{len(chunks)}",
                    content=buffer,
                    page=page_number,
                    chunk_index=len(chunks),
                    char_start=offset,
                    char_end=residual_end,
                )
            )

        if chunks:
            logger.info(
                "document_chunked",
                document=document_name,
                pages=page_number,
                chunk_count=len(chunks),
                avg_chunk_size=sum(len(c.content) for c in chunks) // len(chunks),
            )

        return chunks

    def _find_chunk_end(self, buffer: str) -> Optional[int]:
        """Index of the first whitespace at or after the chunk size."""
        match = _WHITESPACE.search(buffer, self.chunk_size)
        return match.start() if match else None

    def _find_next_start(self, buffer: str, end: int) -> int:
        """Where the next chunk starts, given the current chunk ends at ``end``.

        Prefers the first whitespace in the overlap window. Falls back to the
        whitespace closest to the middle of the chunk size; ``end`` is
        whitespace itself, so the result is always in ``[1, end]``.
        """
        if self.chunk_overlap == 0:
            return end

        window_start = self.chunk_size - self.chunk_overlap
        match = _WHITESPACE.search(buffer, window_start, min(self.chunk_size, end))
        if match:
            return match.start()

        midpoint = self.chunk_size // 2
        candidates = [m.start() for m in _WHITESPACE.finditer(buffer, 1, end + 1)]
        return min(candidates, key=lambda pos: (abs(pos - midpoint), -pos))

    def get_chunk_stats(self, chunks: List[TextChunk]) -> dict:
        """Get statistics about a set of chunks.

        Args:
            chunks: List of TextChunk objects

        Returns:
            Dictionary with chunk statistics
        """
        if not chunks:
            return {
                "chunk_count": 0,
                "total_chars": 0,
                "avg_chunk_size": 0,
                "min_chunk_size": 0,
                "max_chunk_size": 0,
            }

        chunk_sizes = [len(c.content) for c in chunks]

        return {
            "chunk_count": len(chunks),
            "total_chars": sum(chunk_sizes),
            "avg_chunk_size": sum(chunk_sizes) // len(chunks),
            "min_chunk_size": min(chunk_sizes),
            "max_chunk_size": max(chunk_sizes),
            "overlap": self.chunk_overlap,
        }
