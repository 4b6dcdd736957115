"""PDF discovery and page text extraction."""
from pathlib import Path
from typing import List
import structlog
from pypdf import PdfReader
from pypdf.errors import PyPdfError

from pdfrag.errors import DataError

logger = structlog.get_logger()


def discover_documents(data_dir: Path) -> List[Path]:
    """PDF files directly inside ``data_dir``, sorted by name."""
    return sorted(
        path for path in data_dir.iterdir()
        if path.is_file() and path.suffix.lower() == ".pdf"
    )


def read_pages(path: Path) -> List[str]:
    """Extract the text of every page.

    Raises:
        DataError: If the file cannot be parsed as a PDF
    """
    try:
        reader = PdfReader(str(path))
        pages = [page.extract_text() or "" for page in reader.pages]
    except (PyPdfError, OSError, ValueError) as e:
        raise DataError(f"Cannot read PDF {path.name}: {e}") from e

    logger.debug("pdf_pages_extracted", path=str(path), page_count=len(pages))
    return pages
