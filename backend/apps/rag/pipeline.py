"""
RAG orchestrator.

Runs one question through:
    EMBEDDING -> RETRIEVAL -> PROMPT_BUILD -> GENERATION -> COMPLETE

with ERROR reachable from any stage. Progress is reported on one 0-100
scale: embedding 0-20, retrieval 20-40, prompt build 40, generation
40-100 (the provider's own 0-100 remapped).

Expected failures come back as user-readable strings; only
DimensionMismatch propagates, since it signals mixed embedding
providers inside one project.
"""
import logging
import time
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence

from django.conf import settings

from apps.rag.embeddings import QueryValidationError, get_embedding_provider, normalize_query
from apps.rag.llm_client import InterruptSignal, get_generation_provider
from apps.rag.model_cache import ModelCache
from apps.rag.prompts import (
    PatternTemplatePolicy,
    TemplatePolicy,
    build_conversation_prompt,
    build_prompt,
)
from apps.rag.providers import (
    ProgressCallback,
    ProviderType,
    ProviderUnavailable,
    StageProgress,
    StageProgressReporter,
)
from apps.rag.retrieval import RetrievalResult, retrieve_chunks
from apps.rag.storage import get_blob_storage
from apps.rag.vector_store import DimensionMismatch, VectorStore

logger = logging.getLogger(__name__)


class QueryStage(str, Enum):
    EMBEDDING = "embedding"
    RETRIEVAL = "retrieval"
    PROMPT_BUILD = "prompt-build"
    GENERATION = "generation"
    COMPLETE = "complete"
    ERROR = "error"


QUERY_STAGE_ORDER = [
    QueryStage.EMBEDDING.value,
    QueryStage.RETRIEVAL.value,
    QueryStage.PROMPT_BUILD.value,
    QueryStage.GENERATION.value,
    QueryStage.COMPLETE.value,
]

GENERATION_START = 40.0
GENERATION_SPAN = 60.0


class NoDocumentsIndexed(Exception):
    """Documents were uploaded but nothing is in the vector store for them."""

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or (
            "Your documents haven't been indexed yet, so I can't search them. "
            "Please re-upload them and wait for processing to finish, then ask again."
        ))


class NoRelevantMatch(Exception):
    """The project is indexed but no chunk matched the question."""

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or (
            "I couldn't find any relevant information in your documents to answer this question. "
            "Try rephrasing it or asking about something the documents cover."
        ))


class RAGPipeline:
    """
    Composition root for question answering.

    Owns the vector store and the local model cache; provider
    construction goes through injectable factories so tests can swap
    in fakes.
    """

    def __init__(
        self,
        vector_store: VectorStore,
        model_cache: Optional[ModelCache] = None,
        template_policy: Optional[TemplatePolicy] = None,
        embedding_factory: Callable = get_embedding_provider,
        generation_factory: Callable = get_generation_provider,
        top_k: Optional[int] = None,
        retry_multiplier: Optional[int] = None,
    ):
        self.vector_store = vector_store
        self.model_cache = model_cache or ModelCache()
        self.template_policy = template_policy or PatternTemplatePolicy()
        self.embedding_factory = embedding_factory
        self.generation_factory = generation_factory
        self.top_k = top_k
        self.retry_multiplier = retry_multiplier

    def embedding_provider(self, provider=ProviderType.LOCAL, model: Optional[str] = None):
        return self.embedding_factory(provider, model, model_cache=self.model_cache)

    async def embed_question(
        self,
        question: str,
        provider=ProviderType.LOCAL,
        embedding_model: Optional[str] = None,
    ) -> List[float]:
        """Normalize and embed a question."""
        question = normalize_query(question)
        return await self.embedding_provider(provider, embedding_model).embed(question)

    async def retrieve(
        self,
        question: str,
        project_id: Optional[str] = None,
        provider=ProviderType.LOCAL,
        embedding_model: Optional[str] = None,
        top_k: Optional[int] = None,
    ) -> RetrievalResult:
        """Embed a question and return the matching chunks (no generation)."""
        vector = await self.embed_question(question, provider, embedding_model)
        return retrieve_chunks(
            self.vector_store,
            vector,
            project_id=project_id,
            top_k=top_k or self.top_k,
            retry_multiplier=self.retry_multiplier,
        )

    async def query_documents(
        self,
        question: str,
        documents: Sequence[Any],
        model: str,
        on_progress: Optional[ProgressCallback] = None,
        project_id: Optional[str] = None,
        on_token: Optional[Callable[[str], None]] = None,
        provider=ProviderType.LOCAL,
        embedding_model: Optional[str] = None,
        on_thinking: Optional[Callable[[str], None]] = None,
        interrupt: Optional[InterruptSignal] = None,
    ) -> str:
        """
        Answer a question from the user's documents.

        Args:
            question: Raw user question
            documents: The user's uploaded documents; empty means plain conversation
            model: Generation model id
            on_progress: Receives StageProgress updates on the 0-100 scale
            project_id: Restrict retrieval to one project
            on_token: Receives visible answer fragments as they stream
            provider: ProviderType for both embedding and generation
            embedding_model: Embedding model id (provider default if None)
            on_thinking: Receives each completed <think> block
            interrupt: Stops generation early; the partial answer is returned

        Returns:
            The answer, or a user-readable explanation of why there is none

        Raises:
            DimensionMismatch: If the query embedding does not match stored vectors
        """
        reporter = StageProgressReporter(on_progress, QUERY_STAGE_ORDER, error_stage=QueryStage.ERROR.value)
        start_time = time.time()

        try:
            question = normalize_query(question)
            provider = ProviderType.parse(provider)

            if not documents:
                logger.info("No documents uploaded, answering conversationally")
                prompt = build_conversation_prompt(question)
            else:
                prompt = await self._build_rag_prompt(
                    question, model, reporter, project_id, provider, embedding_model
                )

            answer = await self._generate(
                prompt, model, provider, reporter, on_token, on_thinking, interrupt
            )

        except (NoDocumentsIndexed, NoRelevantMatch) as e:
            logger.info(f"No answer generated: {type(e).__name__}")
            reporter.report(QueryStage.COMPLETE.value, 100, str(e), status="success")
            return str(e)
        except DimensionMismatch as e:
            logger.error(f"Embedding dimension mismatch in project {project_id}: {e}")
            reporter.report(QueryStage.ERROR.value, 0, str(e))
            raise
        except QueryValidationError as e:
            reporter.report(QueryStage.ERROR.value, 0, str(e))
            return f"Error: {e}"
        except ProviderUnavailable as e:
            logger.error(f"Provider unavailable: {e}")
            reporter.report(QueryStage.ERROR.value, 0, str(e))
            return f"Error: {e}"
        except ValueError as e:
            logger.error(f"Invalid query request: {e}")
            reporter.report(QueryStage.ERROR.value, 0, str(e))
            return f"Error: {e}"

        elapsed_ms = (time.time() - start_time) * 1000
        logger.info(f"Answered in {elapsed_ms:.0f}ms ({len(answer)} chars)")
        reporter.report(QueryStage.COMPLETE.value, 100, "Done", status="success")
        return answer

    async def _build_rag_prompt(
        self,
        question: str,
        model: str,
        reporter: StageProgressReporter,
        project_id: Optional[str],
        provider: ProviderType,
        embedding_model: Optional[str],
    ) -> str:
        verify = self.vector_store.verify(project_id=project_id)
        if not verify.exists:
            logger.warning(f"No indexed chunks for project {project_id}")
            raise NoDocumentsIndexed()

        reporter.report(QueryStage.EMBEDDING.value, 0, "Embedding question...")
        vector = await self.embedding_provider(provider, embedding_model).embed(question)
        reporter.report(QueryStage.EMBEDDING.value, 20, "Question embedded")

        reporter.report(QueryStage.RETRIEVAL.value, 20, "Searching documents...")
        retrieval = retrieve_chunks(
            self.vector_store,
            vector,
            project_id=project_id,
            top_k=self.top_k,
            retry_multiplier=self.retry_multiplier,
        )
        if retrieval.is_empty:
            raise NoRelevantMatch()
        reporter.report(QueryStage.RETRIEVAL.value, 40, f"Found {len(retrieval.results)} relevant chunks")

        template = self.template_policy(model)
        prompt = build_prompt(question, retrieval.results, template)
        reporter.report(QueryStage.PROMPT_BUILD.value, 40, "Prompt ready")
        return prompt

    async def _generate(
        self,
        prompt: str,
        model: str,
        provider: ProviderType,
        reporter: StageProgressReporter,
        on_token: Optional[Callable[[str], None]],
        on_thinking: Optional[Callable[[str], None]],
        interrupt: Optional[InterruptSignal],
    ) -> str:
        generator = self.generation_factory(provider, model, model_cache=self.model_cache)

        def on_generation_progress(update: StageProgress) -> None:
            if update.status == "error":
                return
            reporter.report(
                QueryStage.GENERATION.value,
                GENERATION_START + update.progress * GENERATION_SPAN / 100,
                update.message,
            )

        reporter.report(QueryStage.GENERATION.value, GENERATION_START, "Starting generation...")
        return await generator.generate(
            prompt,
            on_progress=on_generation_progress,
            on_token=on_token,
            interrupt=interrupt,
            on_thinking=on_thinking,
        )

    def reset(self) -> None:
        """Drop every cached local model."""
        self.model_cache.clear()


# =============================================================================
# Default pipeline
# =============================================================================

_pipeline_instance: Optional[RAGPipeline] = None


def get_pipeline() -> RAGPipeline:
    """
    Get the process-wide pipeline, building it from settings on first use.

    Returns:
        Shared RAGPipeline instance
    """
    global _pipeline_instance

    if _pipeline_instance is not None:
        return _pipeline_instance

    store = VectorStore(storage=get_blob_storage())
    _pipeline_instance = RAGPipeline(
        vector_store=store,
        top_k=getattr(settings, 'RAG_TOP_K', None),
        retry_multiplier=getattr(settings, 'RAG_RETRY_MULTIPLIER', None),
    )
    logger.info(f"RAG pipeline ready ({len(store)} records in store)")
    return _pipeline_instance


def reset_pipeline():
    """Reset the cached pipeline and free its models. Useful for testing."""
    global _pipeline_instance
    if _pipeline_instance is not None:
        _pipeline_instance.reset()
    _pipeline_instance = None
