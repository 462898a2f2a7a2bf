"""
Document ingestion - takes an uploaded file through the indexing pipeline.

Stages:
1. EXTRACT: Extract text sections (whole text, PDF pages or CSV rows)
2. CHUNK: Split each section into overlapping chunks
3. EMBED: Generate embeddings in batches
4. STORE: Write all records to the vector store in one put

Records are only written after every embedding succeeded, so a failed
document leaves nothing behind.
"""
import logging
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from django.conf import settings

from apps.indexing.chunker import (
    DEFAULT_CHUNK_OVERLAP,
    DEFAULT_CHUNK_SIZE,
    Chunk,
    chunk_text,
)
from apps.indexing.events import IndexProgressEvent, ProgressStage, stage_progress
from apps.indexing.extractor import ExtractionError, Section, extract_sections
from apps.rag.pipeline import get_pipeline
from apps.rag.providers import ProviderType, ProviderUnavailable, yield_control
from apps.rag.storage import StorageError
from apps.rag.vector_store import UNKNOWN_PROJECT, EmbeddingRecord

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[IndexProgressEvent], None]


class IngestionError(Exception):
    """Raised when a document cannot be indexed. The message is user-readable."""

    def __init__(self, message: str, document_id: str = ""):
        super().__init__(message)
        self.document_id = document_id


@dataclass
class IngestResult:
    """Outcome of a successful ingest."""
    document_id: str
    document_name: str
    project_id: str
    chunk_count: int

    def to_dict(self) -> dict:
        return {
            "documentId": self.document_id,
            "documentName": self.document_name,
            "projectId": self.project_id,
            "chunkCount": self.chunk_count,
        }


def read_upload(file) -> Tuple[str, bytes, Optional[str]]:
    """
    Read a path or an uploaded file object.

    Returns:
        (file name, raw bytes, content type or None)
    """
    if isinstance(file, (str, Path)):
        path = Path(file)
        try:
            return path.name, path.read_bytes(), None
        except OSError as e:
            raise ExtractionError(f"File not found: {path}") from e

    name = Path(getattr(file, 'name', '') or 'upload').name
    data = file.read()
    if isinstance(data, str):
        data = data.encode('utf-8')
    return name, data, getattr(file, 'content_type', None)


def build_chunks(
    document_id: str,
    document_name: str,
    project_id: str,
    sections: List[Section],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_CHUNK_OVERLAP,
    start_index: int = 0,
) -> List[Chunk]:
    """
    Chunk every section of a document.

    Chunk ids:
    - {document_id}-page-{n}-chunk-{i} for PDF pages
    - {document_id}-row-{n} for CSV rows (one chunk per row)
    - {document_id}-chunk-{i} otherwise

    A document without any text still yields one empty chunk.
    """
    if not sections:
        sections = [Section(text="")]

    chunks: List[Chunk] = []
    for section in sections:
        if section.row_index is not None:
            pieces = [section.text]
        else:
            pieces = chunk_text(section.text, chunk_size, overlap)

        for i, piece in enumerate(pieces):
            if section.page_number is not None:
                chunk_id = f"{document_id}-page-{section.page_number}-chunk-{i}"
            elif section.row_index is not None:
                chunk_id = f"{document_id}-row-{section.row_index}"
            else:
                chunk_id = f"{document_id}-chunk-{i}"

            chunks.append(Chunk(
                id=chunk_id,
                document_id=document_id,
                project_id=project_id,
                text=piece,
                sequence_index=start_index + len(chunks),
                document_name=document_name,
                page_number=section.page_number,
                row_index=section.row_index,
            ))

    return chunks


async def ingest(
    file,
    on_progress: Optional[ProgressCallback] = None,
    provider=ProviderType.LOCAL,
    embedding_model: Optional[str] = None,
    project_id: Optional[str] = None,
    pipeline=None,
) -> IngestResult:
    """
    Index one document into the vector store.

    Args:
        file: Path or uploaded file object (``.name`` and ``.read()``)
        on_progress: Receives IndexProgressEvent updates
        provider: Embedding provider; must match the one used for queries
        embedding_model: Embedding model id (provider default if None)
        project_id: Project the document belongs to ("unknown" if None)
        pipeline: RAGPipeline owning the store (the default pipeline if None)

    Returns:
        IngestResult with the new document id and chunk count

    Raises:
        IngestionError: If any stage fails; nothing is stored in that case
    """
    if pipeline is None:
        pipeline = get_pipeline()

    document_id = str(uuid.uuid4())
    project_id = project_id or UNKNOWN_PROJECT
    document_name = getattr(file, 'name', None) or str(file)

    def update_progress(stage: ProgressStage, progress: int, message: Optional[str] = None):
        if on_progress:
            on_progress(IndexProgressEvent.progress(
                document_id, document_name, project_id, stage.value, progress, message
            ))

    start_time = time.time()

    try:
        # Stage 1: EXTRACT
        update_progress(ProgressStage.EXTRACT, stage_progress(ProgressStage.EXTRACT, 0))
        document_name, data, content_type = read_upload(file)
        sections = extract_sections(document_name, data, content_type)
        logger.info(f"Extracted {len(sections)} sections from {document_name}")
        update_progress(ProgressStage.EXTRACT, stage_progress(ProgressStage.EXTRACT, 1.0))

        # Stage 2: CHUNK
        chunk_size = int(getattr(settings, 'CHUNK_SIZE', DEFAULT_CHUNK_SIZE))
        overlap = int(getattr(settings, 'CHUNK_OVERLAP', DEFAULT_CHUNK_OVERLAP))

        chunks: List[Chunk] = []
        total_sections = max(1, len(sections))
        for done, section in enumerate(sections or [Section(text="")], 1):
            chunks.extend(build_chunks(
                document_id, document_name, project_id, [section], chunk_size, overlap,
                start_index=len(chunks),
            ))
            update_progress(
                ProgressStage.CHUNK,
                stage_progress(ProgressStage.CHUNK, done / total_sections),
            )
            await yield_control()

        logger.info(f"Created {len(chunks)} chunks from {document_name}")

        # Stage 3: EMBED
        embedder = pipeline.embedding_provider(provider, embedding_model)
        update_progress(
            ProgressStage.EMBED,
            stage_progress(ProgressStage.EMBED, 0),
            f"Embedding {len(chunks)} chunks",
        )
        vectors = await embedder.embed_batch(
            [chunk.text for chunk in chunks],
            on_progress=lambda pct: update_progress(
                ProgressStage.EMBED, stage_progress(ProgressStage.EMBED, pct / 100)
            ),
        )

        # Stage 4: STORE
        update_progress(ProgressStage.STORE, stage_progress(ProgressStage.STORE, 0))
        records = [
            EmbeddingRecord(
                chunk_id=chunk.id,
                vector=vector,
                text=chunk.text,
                metadata=chunk.to_metadata(),
            )
            for chunk, vector in zip(chunks, vectors)
        ]
        pipeline.vector_store.put(records)

    except ExtractionError as e:
        raise _failed(on_progress, document_id, document_name, project_id, f"Extraction error: {e}") from e
    except ProviderUnavailable as e:
        raise _failed(on_progress, document_id, document_name, project_id, f"Embedding error: {e}") from e
    except StorageError as e:
        raise _failed(on_progress, document_id, document_name, project_id, f"Storage error: {e}") from e
    except ValueError as e:
        raise _failed(on_progress, document_id, document_name, project_id, f"Invalid request: {e}") from e

    elapsed_ms = (time.time() - start_time) * 1000
    logger.info(
        f"Indexed {document_name} as {document_id}: {len(records)} chunks "
        f"(dim={embedder.dimension}) in {elapsed_ms:.0f}ms"
    )

    if on_progress:
        on_progress(IndexProgressEvent.complete(document_id, document_name, project_id, len(records)))

    return IngestResult(
        document_id=document_id,
        document_name=document_name,
        project_id=project_id,
        chunk_count=len(records),
    )


def _failed(
    on_progress: Optional[ProgressCallback],
    document_id: str,
    document_name: str,
    project_id: str,
    message: str,
) -> IngestionError:
    logger.error(f"Indexing {document_name} ({document_id}) failed: {message}")
    if on_progress:
        on_progress(IndexProgressEvent.failed(document_id, document_name, project_id, message))
    return IngestionError(message, document_id=document_id)


def delete_document(document_id: str, pipeline=None) -> int:
    """Remove a document's chunks from the vector store. Returns the number removed."""
    if pipeline is None:
        pipeline = get_pipeline()
    return pipeline.vector_store.delete_by_document(document_id)


def delete_project(project_id: str, pipeline=None) -> int:
    """Remove every chunk of a project from the vector store. Returns the number removed."""
    if pipeline is None:
        pipeline = get_pipeline()
    return pipeline.vector_store.delete_by_project(project_id)
