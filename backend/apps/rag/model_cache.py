"""
In-process cache for locally loaded models.

Only one generation model is "active" at a time: activating a different
model id evicts the previous entry so its weights can be freed before
the next one loads. Embedding models are cached side by side under
their own keys and are never evicted by a generation switch.
"""
import gc
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class CachedModel:
    """A loaded model and (for generation models) its tokenizer."""
    model_id: str
    model: Any
    tokenizer: Any = None
    device: str = "cpu"


class ModelCache:
    """Owned by the pipeline and handed to local providers."""

    def __init__(self):
        self._entries: Dict[str, CachedModel] = {}
        self._active_id: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def active_id(self) -> Optional[str]:
        return self._active_id

    def get(self, key: str) -> Optional[CachedModel]:
        with self._lock:
            return self._entries.get(key)

    def put(self, key: str, entry: CachedModel) -> None:
        with self._lock:
            self._entries[key] = entry

    def activate(self, model_id: str) -> Optional[CachedModel]:
        """
        Make ``model_id`` the active generation model.

        Evicts the previously active model when it differs.

        Returns:
            The cached entry for ``model_id``, or None if it must be loaded
        """
        with self._lock:
            previous = self._active_id
            if previous and previous != model_id:
                logger.info(f"Switching model {previous} -> {model_id}, evicting {previous}")
                self._drop(previous)
            self._active_id = model_id
            return self._entries.get(model_id)

    def evict(self, key: str) -> bool:
        """Drop one entry. Returns True if it was cached."""
        with self._lock:
            if self._active_id == key:
                self._active_id = None
            return self._drop(key)

    def clear(self) -> None:
        with self._lock:
            for key in list(self._entries):
                self._drop(key)
            self._active_id = None
        logger.info("Model cache cleared")

    def _drop(self, key: str) -> bool:
        entry = self._entries.pop(key, None)
        if entry is None:
            return False

        del entry
        gc.collect()
        _empty_cuda_cache()
        return True

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


def _empty_cuda_cache() -> None:
    import torch

    if torch.cuda.is_available():
        torch.cuda.empty_cache()
