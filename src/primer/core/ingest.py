"""PDF text extraction with PyMuPDF and PDF discovery."""

import hashlib
import logging
from pathlib import Path
from typing import List

import fitz  # PyMuPDF

from primer.core.errors import ExtractionError
from primer.core.models import DocumentInfo, ExtractedDocument

logger = logging.getLogger(__name__)


def calculate_sha256(data: bytes) -> str:
    """Calculate SHA256 hash of file content."""
    return hashlib.sha256(data).hexdigest()


def document_id_for(sha256: str) -> str:
    """Document IDs are derived from the content hash, so re-ingesting a file keeps its ID."""
    return f"doc_{sha256[:16]}"


def find_pdfs(directory_path: Path) -> List[Path]:
    """Return the PDF files directly inside a directory, sorted by name."""
    if not directory_path.is_dir():
        raise NotADirectoryError(f"{directory_path} is not a directory")
    return sorted(
        (p for p in directory_path.iterdir() if p.is_file() and p.suffix.lower() == ".pdf"),
        key=lambda p: p.name.lower(),
    )


class PdfTextExtractor:
    """Extract plain text and metadata from PDF bytes."""

    def extract(self, data: bytes, source: str = "<bytes>") -> ExtractedDocument:
        """
        Extract text from a PDF.

        Args:
            data: Raw PDF bytes
            source: Name used in log messages and document metadata

        Returns:
            ExtractedDocument with page-ordered text

        Raises:
            ExtractionError: if the PDF cannot be opened or has no text
        """
        try:
            doc = fitz.open(stream=data, filetype="pdf")
        except Exception as e:
            raise ExtractionError(f"Cannot open PDF {source}: {e}") from e

        try:
            if doc.page_count == 0:
                raise ExtractionError(f"PDF {source} has no pages")

            pages = []
            for page_num in range(doc.page_count):
                try:
                    pages.append(doc[page_num].get_text())
                except Exception as e:
                    raise ExtractionError(
                        f"Failed to read page {page_num + 1} of {source}: {e}"
                    ) from e

            text = "\n".join(pages)
            if not text.strip():
                raise ExtractionError(f"No extractable text in {source} (scanned PDF?)")

            sha256 = calculate_sha256(data)
            metadata = doc.metadata or {}
            info = DocumentInfo(
                id=document_id_for(sha256),
                source=source,
                title=metadata.get("title") or Path(source).stem,
                author=metadata.get("author") or None,
                subject=metadata.get("subject") or None,
                creator=metadata.get("creator") or None,
                producer=metadata.get("producer") or None,
                sha256=sha256,
                pages=doc.page_count,
                file_size=len(data),
            )
            logger.info(f"Extracted {len(text)} characters from {doc.page_count} pages of {source}")
            return ExtractedDocument(text=text, page_count=doc.page_count, document_info=info)
        finally:
            doc.close()

    def extract_file(self, pdf_path: Path) -> ExtractedDocument:
        """Read a PDF from disk and extract it."""
        try:
            data = pdf_path.read_bytes()
        except OSError as e:
            raise ExtractionError(f"Cannot read {pdf_path}: {e}") from e
        return self.extract(data, source=str(pdf_path))

