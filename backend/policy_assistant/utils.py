import io
from typing import List, Optional

import structlog
from langchain_text_splitters import RecursiveCharacterTextSplitter
from PyPDF2 import PdfReader

from .errors import ChunkingError, ExtractionError
from .models import Chunk, ChunkMetadata, DocumentMetadata, ExtractedTextResult

logger = structlog.get_logger(__name__)


def _info_field(info, name: str) -> Optional[str]:
    if info is None:
        return None
    value = getattr(info, name, None)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def extract_text_from_pdf(data: bytes) -> ExtractedTextResult:
    """Read every page of a PDF buffer into plain text plus title/author/subject."""
    try:
        if not data:
            raise ValueError("empty buffer")
        reader = PdfReader(io.BytesIO(data))
        page_count = len(reader.pages)
        if page_count < 1:
            raise ValueError("document has no pages")
        pages = [p.extract_text() or "" for p in reader.pages]
        info = reader.metadata
        metadata = DocumentMetadata(
            title=_info_field(info, "title"),
            author=_info_field(info, "author"),
            subject=_info_field(info, "subject"),
        )
    except Exception as e:
        raise ExtractionError(f"Failed to extract text from PDF: {e}") from e

    text = "\n\n".join(pages)
    logger.debug("pdf_text_extracted", page_count=page_count, characters=len(text))
    return ExtractedTextResult(text=text, page_count=page_count, metadata=metadata)


def estimate_page(chunk_index: int, total_chunks: int, page_count: int) -> int:
    # Assumes chunks are spread evenly over pages.
    chunks_per_page = max(1, total_chunks // page_count)
    return min(chunk_index // chunks_per_page + 1, page_count)


def chunk_document(
    text: str,
    page_count: int,
    document_id: Optional[str] = None,
    policy_id: Optional[str] = None,
    chunk_size: int = 1000,
    chunk_overlap: int = 200,
) -> List[Chunk]:
    """Split document text into overlapping chunks tagged with an estimated page.

    Splitting prefers paragraph, then line, then word boundaries before cutting
    inside a word. Chunk indices run 0..N-1 in source order.
    """
    if page_count < 1:
        raise ChunkingError(f"page_count must be at least 1, got {page_count}")
    if chunk_size < 1 or chunk_overlap < 0 or chunk_overlap >= chunk_size:
        raise ChunkingError(
            f"Invalid chunk window: size={chunk_size}, overlap={chunk_overlap}"
        )
    if not text or not text.strip():
        return []

    splitter = RecursiveCharacterTextSplitter(
        chunk_size=chunk_size,
        chunk_overlap=chunk_overlap,
    )
    try:
        pieces = splitter.split_text(text)
    except Exception as e:
        raise ChunkingError(f"Failed to split document text: {e}") from e

    total = len(pieces)
    chunks = [
        Chunk(
            text=piece,
            chunk_index=index,
            metadata=ChunkMetadata(
                page_number=estimate_page(index, total, page_count),
                document_id=document_id,
                policy_id=policy_id,
            ),
        )
        for index, piece in enumerate(pieces)
    ]
    logger.debug("document_chunked", document_id=document_id, chunks=total, pages=page_count)
    return chunks


def extract_chunk_texts(chunks: List[Chunk]) -> List[str]:
    return [c.text for c in chunks]
