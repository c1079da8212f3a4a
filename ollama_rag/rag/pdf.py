"""PDF text extraction with page and bounding-box locations."""
from pathlib import Path
from typing import List

import fitz  # PyMuPDF
import structlog

from ollama_rag.rag.chunker import TextBlock

logger = structlog.get_logger()

# Block type reported by PyMuPDF for text (1 is an image)
_TEXT_BLOCK = 0


def extract_blocks(file_path: Path) -> List[TextBlock]:
    """Extract text blocks from a PDF in reading order.

    Args:
        file_path: Path to the PDF

    Returns:
        One TextBlock per non-empty text block, with a 1-based page number
        and its (x0, y0, x1, y1) bounding box in PDF points

    Raises:
        ValueError: If the file is not a readable PDF
    """
    blocks: List[TextBlock] = []

    try:
        doc = fitz.open(str(file_path), filetype="pdf")
    except RuntimeError as e:
        # FileDataError and EmptyFileError both derive from RuntimeError
        raise ValueError(f"Unreadable PDF {file_path}: {e}") from e

    with doc:
        if doc.page_count == 0:
            raise ValueError(f"PDF has no pages: {file_path}")

        for page_num, page in enumerate(doc, 1):
            for x0, y0, x1, y1, text, _block_no, block_type in page.get_text("blocks", sort=True):
                if block_type != _TEXT_BLOCK or not text.strip():
                    continue
                blocks.append(
                    TextBlock(
                        text=text,
                        page=page_num,
                        bbox=(round(x0, 2), round(y0, 2), round(x1, 2), round(y1, 2)),
                    )
                )

        logger.info(
            "pdf_blocks_extracted",
            path=str(file_path),
            pages=doc.page_count,
            blocks=len(blocks),
        )

    return blocks
