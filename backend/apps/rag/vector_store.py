"""
Project-scoped vector store with cosine similarity search.

Records live in memory and the full set is written to a blob
(see apps.rag.storage) after every mutation. On construction the blob
is read back; a missing or corrupt blob yields an empty store.

Blob schema: [{"id", "embedding", "text", "metadata"}, ...]
"""
import json
import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from django.conf import settings

from apps.rag.storage import BlobStorage

logger = logging.getLogger(__name__)

DEFAULT_STORE_KEY = "docuchat_vector_store"

# Project id assigned to records written without one
UNKNOWN_PROJECT = "unknown"


class DimensionMismatch(Exception):
    """
    Raised when a query vector and a stored vector differ in length.

    This means two embedding providers were mixed inside one project,
    which is a configuration bug rather than a missing match.
    """

    def __init__(self, expected: int, actual: int, record_id: str = ""):
        super().__init__(
            f"Vector dimension mismatch: query has {actual} dimensions, "
            f"stored record {record_id or '?'} has {expected}"
        )
        self.expected = expected
        self.actual = actual
        self.record_id = record_id


@dataclass
class EmbeddingRecord:
    """A chunk's embedding with its text and metadata."""
    chunk_id: str
    vector: List[float]
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def document_id(self) -> Optional[str]:
        return self.metadata.get("documentId")

    @property
    def project_id(self) -> Optional[str]:
        return self.metadata.get("projectId")

    def to_dict(self) -> dict:
        """Serialize to the persisted blob format."""
        return {
            "id": self.chunk_id,
            "embedding": list(self.vector),
            "text": self.text,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'EmbeddingRecord':
        return cls(
            chunk_id=str(data["id"]),
            vector=[float(x) for x in data["embedding"]],
            text=data.get("text", ""),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class QueryResult:
    """A scored match returned by VectorStore.query."""
    chunk_id: str
    text: str
    score: float
    metadata: Dict[str, Any]

    def to_dict(self) -> dict:
        return {
            "chunkId": self.chunk_id,
            "text": self.text,
            "score": round(self.score, 4),
            "metadata": self.metadata,
        }


@dataclass
class VerifyResult:
    """Outcome of VectorStore.verify."""
    exists: bool
    count: int

    def to_dict(self) -> dict:
        return {"exists": self.exists, "count": self.count}


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of two equal-length vectors.

    Returns 0.0 when either vector has zero norm.

    Raises:
        DimensionMismatch: If the vectors differ in length
    """
    if len(a) != len(b):
        raise DimensionMismatch(expected=len(b), actual=len(a))

    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y

    if norm_a == 0 or norm_b == 0:
        return 0.0

    score = dot / (math.sqrt(norm_a) * math.sqrt(norm_b))
    # Clamp float error so results stay inside [-1, 1]
    return max(-1.0, min(1.0, score))


class VectorStore:
    """
    In-memory vector store persisted as a single blob.

    All reads and writes hold one lock, so a query never sees a
    half-applied put or delete.
    """

    def __init__(self, storage: Optional[BlobStorage] = None, key: Optional[str] = None):
        self.storage = storage
        self.key = key or getattr(settings, 'VECTOR_STORE_KEY', DEFAULT_STORE_KEY)
        self._records: List[EmbeddingRecord] = []
        self._lock = threading.RLock()
        self._load()

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _load(self) -> None:
        if self.storage is None:
            return

        try:
            blob = self.storage.load(self.key)
        except Exception as e:
            logger.warning(f"Could not read vector store blob '{self.key}': {e}")
            return

        if not blob:
            logger.info(f"No persisted vector store under '{self.key}', starting empty")
            return

        try:
            data = json.loads(blob)
            if not isinstance(data, list):
                raise ValueError("blob is not a list")
            records = [EmbeddingRecord.from_dict(item) for item in data]
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Corrupt vector store blob '{self.key}', starting empty: {e}")
            return

        self._records = records
        logger.info(f"Loaded {len(records)} records from vector store '{self.key}'")

    def _commit(self, records: List[EmbeddingRecord]) -> None:
        """Persist ``records``, then make them the live set. Caller holds the lock."""
        if self.storage is not None:
            blob = json.dumps([record.to_dict() for record in records])
            self.storage.save(self.key, blob)
            logger.debug(f"Persisted {len(records)} records to '{self.key}'")
        self._records = records

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def put(self, records: Iterable[EmbeddingRecord]) -> int:
        """
        Append records and persist.

        Records without a projectId are tagged "unknown" rather than rejected.

        Returns:
            Number of records added
        """
        records = list(records)
        if not records:
            return 0

        for record in records:
            if not record.metadata.get("projectId"):
                logger.warning(
                    f"Record {record.chunk_id} has no projectId, tagging as '{UNKNOWN_PROJECT}'"
                )
                record.metadata["projectId"] = UNKNOWN_PROJECT

        with self._lock:
            self._commit(self._records + records)

        logger.info(f"Stored {len(records)} records (total {len(self._records)})")
        return len(records)

    def _delete_where(self, field_name: str, value: str) -> int:
        with self._lock:
            kept = [
                record for record in self._records
                if record.metadata.get(field_name) != value
            ]
            deleted = len(self._records) - len(kept)
            if deleted:
                self._commit(kept)
        return deleted

    def delete_by_document(self, document_id: str) -> int:
        """Remove every record of a document. Returns the number removed."""
        deleted = self._delete_where("documentId", document_id)
        logger.info(f"Deleted {deleted} records for document {document_id}")
        return deleted

    def delete_by_project(self, project_id: str) -> int:
        """Remove every record of a project. Returns the number removed."""
        deleted = self._delete_where("projectId", project_id)
        logger.info(f"Deleted {deleted} records for project {project_id}")
        return deleted

    def clear(self) -> None:
        """Remove all records."""
        with self._lock:
            self._commit([])
        logger.info("Vector store cleared")

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def _scoped(self, project_id: Optional[str] = None, document_id: Optional[str] = None) -> List[EmbeddingRecord]:
        records = self._records
        if project_id:
            records = [r for r in records if r.project_id == project_id]
        if document_id:
            records = [r for r in records if r.document_id == document_id]
        return records

    def query(
        self,
        vector: Sequence[float],
        k: int = 5,
        project_id: Optional[str] = None,
    ) -> List[QueryResult]:
        """
        Return the top-k records by cosine similarity.

        Args:
            vector: Query embedding
            k: Maximum number of results
            project_id: Restrict the search to one project (all if None)

        Returns:
            Results sorted by descending score; ties keep insertion order

        Raises:
            DimensionMismatch: If any scoped record has a different length
        """
        if k <= 0:
            return []

        with self._lock:
            scoped = self._scoped(project_id=project_id)

            results = []
            for record in scoped:
                if len(record.vector) != len(vector):
                    raise DimensionMismatch(
                        expected=len(record.vector),
                        actual=len(vector),
                        record_id=record.chunk_id,
                    )
                results.append(QueryResult(
                    chunk_id=record.chunk_id,
                    text=record.text,
                    score=cosine_similarity(vector, record.vector),
                    metadata=dict(record.metadata),
                ))

        # sorted() is stable, so equal scores keep insertion order
        results = sorted(results, key=lambda r: r.score, reverse=True)

        logger.debug(
            f"Query over {len(scoped)} records (project={project_id}) "
            f"returned {min(k, len(results))}"
        )
        return results[:k]

    def count(self, project_id: Optional[str] = None) -> int:
        """Number of records, optionally within one project."""
        with self._lock:
            return len(self._scoped(project_id=project_id))

    def verify(self, document_id: Optional[str] = None, project_id: Optional[str] = None) -> VerifyResult:
        """
        Check whether any records exist for a document and/or project.

        Lets callers tell "nothing indexed" apart from "nothing relevant".
        """
        with self._lock:
            count = len(self._scoped(project_id=project_id, document_id=document_id))
        return VerifyResult(exists=count > 0, count=count)

    def __len__(self) -> int:
        return self.count()
