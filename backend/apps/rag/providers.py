"""
Shared pieces of the embedding and generation provider layer.

- ProviderType: which backend serves a request
- ProviderUnavailable: network, model-load or out-of-memory failures
- StageProgressReporter: enforces ordered stages and monotonic progress
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Sequence

logger = logging.getLogger(__name__)


class ProviderType(str, Enum):
    """
    Backends available for embedding and generation.

    LOCAL runs models in-process; LMSTUDIO talks to an OpenAI-compatible
    server; OLLAMA talks to the Ollama REST API.
    """
    LOCAL = "local"
    LMSTUDIO = "lmstudio"
    OLLAMA = "ollama"

    @classmethod
    def parse(cls, value) -> 'ProviderType':
        """Accept an enum member or its string value (case-insensitive)."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            allowed = ", ".join(p.value for p in cls)
            raise ValueError(f"Unknown provider: {value!r} (expected one of: {allowed})")


class ProviderUnavailable(Exception):
    """
    Raised when a provider cannot serve a request.

    The message carries the underlying cause (connection refused,
    HTTP status, model load failure, out of memory, ...).
    """
    pass


@dataclass
class StageProgress:
    """A progress update for one named stage."""
    stage: str
    progress: float
    message: str = ""
    status: str = "loading"  # "loading", "success" or "error"

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "progress": round(self.progress, 1),
            "message": self.message,
            "status": self.status,
        }


ProgressCallback = Callable[[StageProgress], None]


class StageProgressReporter:
    """
    Forwards progress updates while keeping them well-formed.

    - Stages follow ``stage_order`` and are never revisited
    - Progress is clamped to [0, 100] and never decreases
    - ``error_stage`` may be reported from any point
    """

    def __init__(
        self,
        callback: Optional[ProgressCallback],
        stage_order: Sequence[str],
        error_stage: str = "error",
    ):
        self.callback = callback
        self.stage_order = list(stage_order)
        self.error_stage = error_stage
        self.current_stage: Optional[str] = None
        self.progress = 0.0
        self._stage_index = -1

    def report(self, stage: str, progress: float, message: str = "", status: str = "loading") -> None:
        if stage == self.error_stage:
            self._emit(StageProgress(stage=stage, progress=self.progress, message=message, status="error"))
            return

        index = self.stage_order.index(stage)
        if index < self._stage_index:
            logger.debug(f"Ignoring progress for past stage {stage} (current {self.current_stage})")
            return

        progress = max(self.progress, min(100.0, max(0.0, float(progress))))
        self._stage_index = index
        self.current_stage = stage
        self.progress = progress
        self._emit(StageProgress(stage=stage, progress=progress, message=message, status=status))

    def _emit(self, update: StageProgress) -> None:
        if self.callback:
            self.callback(update)


async def yield_control() -> None:
    """Give the event loop a chance to run other tasks."""
    await asyncio.sleep(0)
