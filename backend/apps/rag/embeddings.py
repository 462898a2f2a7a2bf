"""
Embedding providers.

Turns text into vectors for both indexing and querying. Three variants:
- LocalEmbeddingProvider: sentence-transformers model run in-process
- LMStudioEmbeddingProvider: OpenAI-compatible /embeddings endpoint
- OllamaEmbeddingProvider: Ollama /api/embeddings endpoint

Documents and queries in one project must go through the same provider
and model, otherwise vector dimensions differ and queries fail loudly.
"""
import logging
import re
import time
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

import httpx
from asgiref.sync import sync_to_async
from django.conf import settings

from apps.rag.model_cache import CachedModel, ModelCache
from apps.rag.providers import ProviderType, ProviderUnavailable, yield_control

logger = logging.getLogger(__name__)

MAX_QUERY_LENGTH = 2000


class QueryValidationError(Exception):
    """Raised when query validation fails."""
    pass


def normalize_query(query: str) -> str:
    """
    Normalize a user query for embedding.

    - Strip leading/trailing whitespace
    - Collapse multiple whitespace to single space
    - Raise if empty

    Args:
        query: Raw user question

    Returns:
        Normalized query string

    Raises:
        QueryValidationError: If query is empty after normalization
    """
    if not query:
        raise QueryValidationError("Query cannot be empty")

    normalized = re.sub(r'\s+', ' ', query.strip())

    if not normalized:
        raise QueryValidationError("Query cannot be empty")

    if len(normalized) > MAX_QUERY_LENGTH:
        raise QueryValidationError(f"Query too long (max {MAX_QUERY_LENGTH} characters)")

    return normalized


# =============================================================================
# Provider Interface
# =============================================================================

class BaseEmbeddingProvider(ABC):
    """
    Abstract base class for embedding providers.

    Subclasses implement ``_embed_many`` for one batch; batching,
    validation, progress and yielding to the event loop live here.
    """

    provider_type: ProviderType
    batch_size = 1

    def __init__(self, model: str):
        self.model = model
        self.dimension: Optional[int] = None

    @property
    def model_name(self) -> str:
        return self.model

    @abstractmethod
    async def _embed_many(self, texts: List[str]) -> List[List[float]]:
        """Embed one batch. Must return one vector per input text."""
        pass

    async def embed(self, text: str) -> List[float]:
        """
        Embed a single text.

        Raises:
            ProviderUnavailable: If the provider fails or returns no vector
        """
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(
        self,
        texts: List[str],
        on_progress: Optional[Callable[[int], None]] = None,
    ) -> List[List[float]]:
        """
        Embed texts in batches of ``batch_size``.

        Args:
            texts: Texts to embed, order preserved
            on_progress: Called with an integer percentage after each batch

        Returns:
            One vector per text

        Raises:
            ProviderUnavailable: On any failure; no partial result is returned
        """
        total = len(texts)
        embeddings: List[List[float]] = []

        if total == 0:
            if on_progress:
                on_progress(100)
            return embeddings

        start_time = time.time()

        for start in range(0, total, self.batch_size):
            batch = texts[start:start + self.batch_size]

            try:
                vectors = await self._embed_many(batch)
            except ProviderUnavailable:
                raise
            except Exception as e:
                logger.error(f"{self.provider_type.value} embedding failed: {e}")
                raise ProviderUnavailable(f"Embedding failed: {e}") from e

            if len(vectors) != len(batch):
                raise ProviderUnavailable(
                    f"Embedding service returned {len(vectors)} vectors for {len(batch)} texts"
                )
            for vector in vectors:
                self._check_vector(vector)

            embeddings.extend(vectors)

            if on_progress:
                on_progress(int(len(embeddings) * 100 / total))

            await yield_control()

        elapsed_ms = (time.time() - start_time) * 1000
        logger.debug(
            f"Embedded {total} texts with {self.provider_type.value}:{self.model} "
            f"in {elapsed_ms:.0f}ms (dim={self.dimension})"
        )
        return embeddings

    def _check_vector(self, vector: List[float]) -> None:
        if not vector:
            raise ProviderUnavailable("Embedding service returned an empty embedding")

        if self.dimension is None:
            self.dimension = len(vector)
        elif len(vector) != self.dimension:
            raise ProviderUnavailable(
                f"Embedding dimension changed from {self.dimension} to {len(vector)}"
            )


# =============================================================================
# Local (sentence-transformers)
# =============================================================================

class LocalEmbeddingProvider(BaseEmbeddingProvider):
    """
    In-process sentence-transformers model.

    The model is loaded on first use and kept in the shared ModelCache.
    Encoding runs in a worker thread so the event loop stays responsive.
    """

    provider_type = ProviderType.LOCAL
    batch_size = 16

    def __init__(self, model: Optional[str] = None, model_cache: Optional[ModelCache] = None):
        super().__init__(model or getattr(
            settings, 'LOCAL_EMBED_MODEL', 'sentence-transformers/all-MiniLM-L6-v2'
        ))
        self.model_cache = model_cache or ModelCache()

    @property
    def cache_key(self) -> str:
        return f"embedding:{self.model}"

    def _load_model(self) -> CachedModel:
        try:
            import torch
            from sentence_transformers import SentenceTransformer
        except ImportError as e:
            logger.error(f"Failed to import embedding dependencies: {e}")
            raise ProviderUnavailable(
                "sentence-transformers or torch not installed. "
                "Install with: pip install sentence-transformers torch"
            ) from e

        device = getattr(settings, 'LOCAL_DEVICE', '') or (
            "cuda" if torch.cuda.is_available() else "cpu"
        )

        logger.info(f"Loading embedding model {self.model} on {device}")
        start_time = time.time()
        try:
            model = SentenceTransformer(self.model, device=device)
        except Exception as e:
            logger.error(f"Failed to load embedding model {self.model}: {e}")
            raise ProviderUnavailable(f"Failed to load embedding model {self.model}: {e}") from e

        load_time_ms = (time.time() - start_time) * 1000
        logger.info(f"Embedding model loaded in {load_time_ms:.0f}ms")
        return CachedModel(model_id=self.model, model=model, device=device)

    async def _get_model(self):
        entry = self.model_cache.get(self.cache_key)
        if entry is None:
            entry = await sync_to_async(self._load_model, thread_sensitive=False)()
            self.model_cache.put(self.cache_key, entry)
        return entry.model

    @staticmethod
    def _encode(model, texts: List[str]) -> List[List[float]]:
        # Mean-pooled and L2-normalized, as the model card recommends
        vectors = model.encode(
            texts,
            normalize_embeddings=True,
            convert_to_numpy=True,
            show_progress_bar=False,
        )
        return [vector.tolist() for vector in vectors]

    async def _embed_many(self, texts: List[str]) -> List[List[float]]:
        model = await self._get_model()
        return await sync_to_async(self._encode, thread_sensitive=False)(model, texts)


# =============================================================================
# Remote providers
# =============================================================================

class RemoteEmbeddingProvider(BaseEmbeddingProvider):
    """Shared HTTP handling for server-backed embedding providers."""

    def __init__(
        self,
        model: str,
        base_url: str,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(model)
        self.base_url = base_url.rstrip('/')
        self.timeout = float(timeout or getattr(settings, 'EMBED_TIMEOUT', 120))
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    def _headers(self) -> dict:
        return {"Content-Type": "application/json"}

    async def _post(self, path: str, payload: dict) -> dict:
        url = f"{self.base_url}{path}"
        name = self.provider_type.value
        try:
            async with self._client() as client:
                response = await client.post(url, json=payload, headers=self._headers())
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"{name} embedding request failed: {e}")
            raise ProviderUnavailable(
                f"Embedding service error: {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            logger.error(f"{name} embedding request timed out")
            raise ProviderUnavailable("Embedding service timed out") from e
        except httpx.RequestError as e:
            logger.error(f"{name} connection error: {e}")
            raise ProviderUnavailable(f"Could not connect to embedding service at {self.base_url}") from e
        except ValueError as e:
            raise ProviderUnavailable("Invalid JSON from embedding service") from e


class LMStudioEmbeddingProvider(RemoteEmbeddingProvider):
    """OpenAI-compatible embeddings (LM Studio): POST {base}/embeddings."""

    provider_type = ProviderType.LMSTUDIO
    batch_size = 16

    def __init__(self, model: Optional[str] = None, base_url: Optional[str] = None, **kwargs):
        super().__init__(
            model or getattr(settings, 'LMSTUDIO_EMBED_MODEL', 'local-model'),
            base_url or getattr(settings, 'LMSTUDIO_BASE_URL', 'http://localhost:1234/v1'),
            **kwargs,
        )
        self.api_key = getattr(settings, 'LMSTUDIO_API_KEY', '')

    def _headers(self) -> dict:
        headers = super()._headers()
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _embed_many(self, texts: List[str]) -> List[List[float]]:
        data = await self._post("/embeddings", {"model": self.model, "input": texts})

        try:
            items = sorted(data["data"], key=lambda item: item.get("index", 0))
            return [item["embedding"] for item in items]
        except (KeyError, TypeError, AttributeError) as e:
            logger.error(f"Unexpected LM Studio embedding response: {e}")
            raise ProviderUnavailable("Invalid response from embedding service") from e


class OllamaEmbeddingProvider(RemoteEmbeddingProvider):
    """Ollama embeddings: POST {base}/api/embeddings, one prompt per call."""

    provider_type = ProviderType.OLLAMA
    batch_size = 1

    def __init__(self, model: Optional[str] = None, base_url: Optional[str] = None, **kwargs):
        super().__init__(
            model or getattr(settings, 'OLLAMA_EMBED_MODEL', 'nomic-embed-text'),
            base_url or getattr(settings, 'OLLAMA_BASE_URL', 'http://localhost:11434'),
            **kwargs,
        )

    async def _embed_many(self, texts: List[str]) -> List[List[float]]:
        vectors = []
        for text in texts:
            data = await self._post("/api/embeddings", {"model": self.model, "prompt": text})
            # Ollama /api/embeddings returns {"embedding": [...]}
            embedding = data.get("embedding") if isinstance(data, dict) else None
            if not embedding:
                raise ProviderUnavailable("Ollama returned empty embedding")
            vectors.append(embedding)
        return vectors


# =============================================================================
# Provider Factory
# =============================================================================

def get_embedding_provider(
    provider=ProviderType.LOCAL,
    model: Optional[str] = None,
    model_cache: Optional[ModelCache] = None,
) -> BaseEmbeddingProvider:
    """
    Build the embedding provider for a request.

    Args:
        provider: ProviderType or its string value
        model: Embedding model id (provider default if None)
        model_cache: Cache shared with other local providers

    Returns:
        Configured embedding provider
    """
    provider = ProviderType.parse(provider)

    if provider is ProviderType.LMSTUDIO:
        return LMStudioEmbeddingProvider(model=model)
    if provider is ProviderType.OLLAMA:
        return OllamaEmbeddingProvider(model=model)
    return LocalEmbeddingProvider(model=model, model_cache=model_cache)
