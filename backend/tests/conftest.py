"""
Shared test setup.

Configures Django without a database and provides in-memory fakes for
the embedding and generation providers.
"""
import os
import tempfile
from typing import Dict, List, Optional

import django

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')
os.environ.setdefault('VECTOR_STORE_DIR', tempfile.mkdtemp(prefix='docuchat-test-'))
django.setup()

import pytest

from apps.rag.embeddings import BaseEmbeddingProvider
from apps.rag.llm_client import BaseGenerationProvider, GenerationOptions, GenerationStage
from apps.rag.pipeline import RAGPipeline
from apps.rag.providers import ProviderType
from apps.rag.storage import FileBlobStorage
from apps.rag.vector_store import EmbeddingRecord, VectorStore


class FakeEmbeddingProvider(BaseEmbeddingProvider):
    """Looks vectors up by text; unknown texts get ``default``."""

    provider_type = ProviderType.LOCAL
    batch_size = 2

    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None, default=None):
        super().__init__("fake-embed")
        self.vectors = vectors or {}
        self.default = default if default is not None else [0.0, 0.0, 1.0]
        self.calls: List[List[str]] = []

    async def _embed_many(self, texts):
        self.calls.append(list(texts))
        return [list(self.vectors.get(text, self.default)) for text in texts]


class FakeGenerationProvider(BaseGenerationProvider):
    """Streams a fixed list of fragments and records the prompts it saw."""

    provider_type = ProviderType.LOCAL

    def __init__(self, fragments=None, model="fake-model", on_fragment=None):
        super().__init__(model, GenerationOptions(max_tokens=10))
        self.fragments = list(fragments or ["Hello", " world"])
        self.prompts: List[str] = []
        self.on_fragment = on_fragment

    async def _prepare(self, reporter):
        reporter.report(GenerationStage.MODEL_LOAD.value, 50, "Loading fake model")

    async def _stream(self, prompt, interrupt, stream):
        self.prompts.append(prompt)
        for fragment in self.fragments:
            if self.on_fragment:
                self.on_fragment(fragment, interrupt)
            yield fragment


@pytest.fixture
def store(tmp_path):
    """File-backed vector store in a temp directory."""
    return VectorStore(storage=FileBlobStorage(tmp_path))


@pytest.fixture
def embedder():
    return FakeEmbeddingProvider()


@pytest.fixture
def generator():
    return FakeGenerationProvider()


@pytest.fixture
def pipeline(store, embedder, generator):
    """Pipeline wired to the fakes; factories record what they were asked for."""
    requests = {"embedding": [], "generation": []}

    def embedding_factory(provider, model=None, model_cache=None):
        requests["embedding"].append((provider, model))
        return embedder

    def generation_factory(provider, model=None, model_cache=None):
        requests["generation"].append((provider, model))
        generator.model = model or generator.model
        return generator

    rag = RAGPipeline(
        vector_store=store,
        embedding_factory=embedding_factory,
        generation_factory=generation_factory,
        top_k=2,
        retry_multiplier=3,
    )
    rag.factory_requests = requests
    return rag


def make_record(chunk_id, vector, text="text", project_id="p1", document_id="doc-1", **metadata):
    """Build an EmbeddingRecord with the usual metadata."""
    return EmbeddingRecord(
        chunk_id=chunk_id,
        vector=list(vector),
        text=text,
        metadata={
            "documentId": document_id,
            "documentName": f"{document_id}.txt",
            "projectId": project_id,
            "chunkIndex": 0,
            **metadata,
        },
    )


@pytest.fixture
def record_factory():
    return make_record
