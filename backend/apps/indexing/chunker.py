"""
Deterministic text chunking for document indexing.

Chunking is designed to be:
- Deterministic: Same input always produces same chunks
- Boundary-aware: Cuts prefer sentence and paragraph breaks
- Overlap-aware: Adjacent chunks share context for retrieval continuity
"""
import re
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from apps.rag.vector_store import UNKNOWN_PROJECT

logger = logging.getLogger(__name__)

# Default chunking parameters
DEFAULT_CHUNK_SIZE = 1000  # characters (approximately 250 tokens)
DEFAULT_CHUNK_OVERLAP = 200  # characters of overlap between chunks

# Break points searched backward from the window end, in no particular order;
# the one closest to the window end wins.
BREAK_SEQUENCES = ('. ', '.\n', '\n\n')


@dataclass(frozen=True)
class Chunk:
    """A bounded span of a document's extracted text."""
    id: str
    document_id: str
    project_id: str
    text: str
    sequence_index: int
    document_name: str = ""
    page_number: Optional[int] = None
    row_index: Optional[int] = None

    @property
    def char_count(self) -> int:
        return len(self.text)

    def to_metadata(self) -> Dict[str, Any]:
        """Metadata stored alongside the chunk's embedding."""
        metadata: Dict[str, Any] = {
            "documentId": self.document_id,
            "documentName": self.document_name,
            "projectId": self.project_id or UNKNOWN_PROJECT,
            "chunkIndex": self.sequence_index,
        }
        if self.page_number is not None:
            metadata["pageNumber"] = self.page_number
        if self.row_index is not None:
            metadata["rowIndex"] = self.row_index
        return metadata


def normalize_whitespace(text: str) -> str:
    """
    Collapse runs of whitespace into single spaces.

    Used for PDF page text, where the layout engine produces
    arbitrary line breaks inside sentences.
    """
    return re.sub(r'\s+', ' ', text).strip()


def find_break_point(text: str, start: int, end: int) -> int:
    """
    Find the cut position for the window ``text[start:end]``.

    Searches backward from ``end`` for the nearest sentence or paragraph
    boundary inside the window and cuts just after its first character
    (after the period, or after the first newline of a paragraph break).

    Args:
        text: The full text being chunked
        start: Window start (inclusive)
        end: Window end (exclusive)

    Returns:
        Cut position; ``end`` itself when the window has no boundary
    """
    candidates = [
        text.rfind(sequence, start, end)
        for sequence in BREAK_SEQUENCES
    ]
    candidates = [index for index in candidates if index > start]

    if not candidates:
        return end

    return max(candidates) + 1


def chunk_text(
    text: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_CHUNK_OVERLAP,
) -> List[str]:
    """
    Split text into overlapping, boundary-aware chunks.

    - Text no longer than ``chunk_size`` is returned unchanged as one chunk
      (this includes the empty string)
    - Each window ends at the nearest sentence/paragraph break, or is cut
      hard at ``chunk_size`` when there is none
    - The next window starts ``overlap`` characters before the previous cut
    - A tail shorter than half a chunk is appended whole and ends the loop

    Args:
        text: The text to chunk
        chunk_size: Maximum window size in characters
        overlap: Characters shared between adjacent chunks

    Returns:
        List of chunk strings (never empty)
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if overlap < 0 or overlap >= chunk_size:
        raise ValueError("overlap must be in [0, chunk_size)")

    if not text or len(text) <= chunk_size:
        return [text or ""]

    chunks: List[str] = []
    start = 0
    length = len(text)

    while start < length:
        end = start + chunk_size
        if end >= length:
            end = length
        else:
            end = find_break_point(text, start, end)

        piece = text[start:end].strip()
        if piece:
            chunks.append(piece)

        if end >= length:
            break

        # Move back by the overlap, but always make progress
        next_start = end - overlap
        if next_start <= start:
            next_start = end
        start = next_start

        # If we're very close to the end, just include the rest
        if length - start < chunk_size / 2:
            tail = text[start:].strip()
            if tail:
                chunks.append(tail)
            break

    if not chunks:
        # Whitespace-only input still yields one (empty) chunk
        return [text.strip()]

    logger.debug(f"Created {len(chunks)} chunks from {length} characters")

    return chunks
