"""
Retrieval service for RAG queries.

Performs project-scoped vector similarity search to find relevant
document chunks for a given query embedding. When the first search
comes back empty it is retried exactly once with a wider k.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from django.conf import settings

from apps.rag.vector_store import QueryResult, VectorStore

logger = logging.getLogger(__name__)

# Default number of chunks to retrieve
DEFAULT_TOP_K = 5

# Multiplier applied to k for the single fallback retry
DEFAULT_RETRY_MULTIPLIER = 3

# Maximum snippet length for citations
SNIPPET_MAX_LENGTH = 350


@dataclass
class Citation:
    """A citation referencing a specific chunk in a document."""
    doc_id: str
    chunk_id: str
    chunk_index: int
    snippet: str  # Truncated text for UI display
    score: float  # Cosine similarity (higher = more similar)
    document_title: str
    source: str = ""  # "name (page N)" / "name (row N)" / "name"

    def to_dict(self) -> dict:
        """Convert to JSON-serializable dict."""
        return {
            "docId": self.doc_id,
            "chunkId": self.chunk_id,
            "chunkIndex": self.chunk_index,
            "snippet": self.snippet,
            "score": round(self.score, 4),
            "documentTitle": self.document_title,
            "source": self.source,
        }


@dataclass
class RetrievalResult:
    """Result of a retrieval query."""
    results: List[QueryResult]
    retried: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.results

    @property
    def citations(self) -> List[Citation]:
        return [citation_from_result(r) for r in self.results]

    def to_dict(self) -> dict:
        return {
            "retried": self.retried,
            "citations": [c.to_dict() for c in self.citations],
        }


def create_snippet(text: str, max_length: int = SNIPPET_MAX_LENGTH) -> str:
    """
    Create a deterministic snippet from chunk text.

    - Takes first N characters
    - Adds ellipsis if truncated
    - Preserves word boundaries when possible

    Args:
        text: Full chunk text
        max_length: Maximum snippet length

    Returns:
        Truncated snippet string
    """
    if len(text) <= max_length:
        return text

    truncated = text[:max_length]
    last_space = truncated.rfind(' ')

    if last_space > max_length * 0.7:  # Only break at space if reasonable
        truncated = truncated[:last_space]

    return truncated.rstrip() + "…"


def source_label(metadata: Dict[str, Any]) -> str:
    """
    Human-readable source of a chunk.

    "report.pdf (page 3)", "data.csv (row 12)" or just "notes.md".
    """
    name = metadata.get("documentName") or metadata.get("documentId") or "Unknown document"
    if metadata.get("pageNumber") is not None:
        return f"{name} (page {metadata['pageNumber']})"
    if metadata.get("rowIndex") is not None:
        return f"{name} (row {metadata['rowIndex']})"
    return name


def citation_from_result(result: QueryResult) -> Citation:
    metadata = result.metadata
    return Citation(
        doc_id=str(metadata.get("documentId", "")),
        chunk_id=result.chunk_id,
        chunk_index=int(metadata.get("chunkIndex", 0)),
        snippet=create_snippet(result.text),
        score=result.score,
        document_title=metadata.get("documentName", ""),
        source=source_label(metadata),
    )


def unique_sources(results: Sequence[QueryResult]) -> List[str]:
    """Source labels in result order, without duplicates."""
    seen = set()
    sources = []
    for result in results:
        label = source_label(result.metadata)
        if label not in seen:
            seen.add(label)
            sources.append(label)
    return sources


def rank_results(results: Sequence[QueryResult]) -> List[QueryResult]:
    """Sort by descending score; ties keep their order."""
    return sorted(results, key=lambda r: r.score, reverse=True)


def retrieve_chunks(
    store: VectorStore,
    query_embedding: List[float],
    project_id: Optional[str] = None,
    top_k: Optional[int] = None,
    retry_multiplier: Optional[int] = None,
) -> RetrievalResult:
    """
    Retrieve the top-k most similar chunks in a project.

    If nothing comes back, retries once with ``top_k * retry_multiplier``.

    Args:
        store: Vector store to search
        query_embedding: Vector embedding of the user's query
        project_id: Project scope (all projects if None)
        top_k: Number of chunks to retrieve (RAG_TOP_K)
        retry_multiplier: Widening factor for the retry (RAG_RETRY_MULTIPLIER)

    Returns:
        RetrievalResult ranked by descending score

    Raises:
        DimensionMismatch: If the query vector does not match stored vectors
    """
    if top_k is None:
        top_k = int(getattr(settings, 'RAG_TOP_K', DEFAULT_TOP_K))
    if retry_multiplier is None:
        retry_multiplier = int(getattr(settings, 'RAG_RETRY_MULTIPLIER', DEFAULT_RETRY_MULTIPLIER))

    results = store.query(query_embedding, k=top_k, project_id=project_id)
    if results:
        logger.info(f"Retrieved {len(results)} chunks (project={project_id}, k={top_k})")
        return RetrievalResult(results=rank_results(results))

    wider_k = top_k * retry_multiplier
    logger.info(f"No chunks found with k={top_k}, retrying once with k={wider_k}")
    results = store.query(query_embedding, k=wider_k, project_id=project_id)
    logger.info(f"Retry retrieved {len(results)} chunks (project={project_id})")
    return RetrievalResult(results=rank_results(results), retried=True)
