"""
Indexing progress events.

``ingest`` hands one of these to its ``on_progress`` callback at every
stage boundary; the upload view collects them with ``to_dict`` and
returns them alongside the ingest result.
"""
from dataclasses import dataclass, fields
from enum import Enum
from typing import Optional


class EventType(str, Enum):
    INDEX_PROGRESS = "index_progress"
    INDEX_COMPLETE = "index_complete"
    INDEX_FAILED = "index_failed"


class ProgressStage(str, Enum):
    """
    Ingestion stages, in the order a document passes through them.

    A document ends in COMPLETE or, from any stage, FAILED.
    """
    EXTRACT = "EXTRACT"
    CHUNK = "CHUNK"
    EMBED = "EMBED"
    STORE = "STORE"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


# Slice of the 0-100 bar owned by each working stage
STAGE_RANGES = {
    ProgressStage.EXTRACT: (0, 10),
    ProgressStage.CHUNK: (10, 50),
    ProgressStage.EMBED: (50, 90),
    ProgressStage.STORE: (90, 100),
}


def stage_progress(stage: ProgressStage, fraction: float) -> int:
    """Overall percentage for ``fraction`` (clamped to 0..1) of ``stage``."""
    start, end = STAGE_RANGES[stage]
    fraction = max(0.0, min(fraction, 1.0))
    return int(round(start + fraction * (end - start)))


@dataclass
class IndexProgressEvent:
    """
    One progress update for a document being indexed.

    Field names are camelCase because the dict goes to clients as is:

        {"type": "index_progress", "documentId": "...", "documentName": "a.pdf",
         "projectId": "...", "stage": "EMBED", "progress": 72, "message": "..."}
    """
    type: str
    documentId: str
    documentName: str
    projectId: str
    stage: str
    progress: int
    message: Optional[str] = None

    def to_dict(self) -> dict:
        # message is left out when unset
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }

    @classmethod
    def _build(cls, event_type, document_id, document_name, project_id, stage, progress, message=None):
        return cls(
            type=event_type.value,
            documentId=document_id,
            documentName=document_name,
            projectId=project_id,
            stage=stage.value if isinstance(stage, ProgressStage) else stage,
            progress=progress,
            message=message,
        )

    @classmethod
    def progress(
        cls,
        document_id: str,
        document_name: str,
        project_id: str,
        stage,
        progress: int,
        message: Optional[str] = None,
    ) -> 'IndexProgressEvent':
        return cls._build(
            EventType.INDEX_PROGRESS, document_id, document_name, project_id,
            stage, progress, message,
        )

    @classmethod
    def complete(cls, document_id: str, document_name: str, project_id: str, chunk_count: int):
        return cls._build(
            EventType.INDEX_COMPLETE, document_id, document_name, project_id,
            ProgressStage.COMPLETE, 100, f"Indexing complete ({chunk_count} chunks)",
        )

    @classmethod
    def failed(cls, document_id: str, document_name: str, project_id: str, error_message: str):
        """Failure resets the bar to 0 and carries the error text."""
        return cls._build(
            EventType.INDEX_FAILED, document_id, document_name, project_id,
            ProgressStage.FAILED, 0, error_message,
        )
