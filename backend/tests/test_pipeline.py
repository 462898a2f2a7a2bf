"""
Tests for the RAG pipeline orchestrator.

The pipeline fixture wires a file-backed store to fake embedding and
generation providers (see conftest).
"""
from unittest.mock import patch

import pytest

from apps.rag.llm_client import InterruptSignal
from apps.rag.pipeline import (
    QUERY_STAGE_ORDER,
    NoDocumentsIndexed,
    NoRelevantMatch,
    QueryStage,
    get_pipeline,
    reset_pipeline,
)
from apps.rag.prompts import PromptTemplate
from apps.rag.providers import ProviderUnavailable
from apps.rag.vector_store import DimensionMismatch
from tests.conftest import make_record


DOCUMENTS = [{"id": "doc-1", "name": "doc-1.txt"}]


@pytest.fixture
def indexed(store):
    """Two chunks in project p1, embedded in the fake provider's space."""
    store.put([
        make_record("doc-1-chunk-0", [0.0, 0.0, 1.0], text="The sky is blue."),
        make_record("doc-1-chunk-1", [0.0, 1.0, 0.0], text="Grass is green."),
    ])
    return store


# ============================================================================
# Happy path
# ============================================================================

class TestQueryDocuments:
    """Tests for RAGPipeline.query_documents."""

    @pytest.mark.asyncio
    async def test_answers_from_retrieved_chunks(self, pipeline, indexed, generator):
        """Should answer from a prompt holding the question and the best chunk first."""
        answer = await pipeline.query_documents(
            "What colour is the sky?", DOCUMENTS, "fake-model", project_id="p1"
        )

        assert answer == "Hello world"
        prompt = generator.prompts[0]
        assert "The sky is blue." in prompt
        assert "What colour is the sky?" in prompt
        # Best match comes first in the context
        assert prompt.index("The sky is blue.") < prompt.index("Grass is green.")

    @pytest.mark.asyncio
    async def test_streamed_tokens_equal_answer(self, pipeline, indexed):
        """Should stream tokens that add up to the returned answer."""
        tokens = []

        answer = await pipeline.query_documents(
            "question", DOCUMENTS, "fake-model", project_id="p1", on_token=tokens.append
        )

        assert "".join(tokens) == answer

    @pytest.mark.asyncio
    async def test_progress_is_ordered_and_monotonic(self, pipeline, indexed):
        """Should report stages in order with non-decreasing progress, ending at 100."""
        updates = []

        await pipeline.query_documents(
            "question", DOCUMENTS, "fake-model", project_id="p1", on_progress=updates.append
        )

        stages = [QUERY_STAGE_ORDER.index(u.stage) for u in updates]
        assert stages == sorted(stages)
        progress = [u.progress for u in updates]
        assert progress == sorted(progress)
        assert updates[-1].stage == QueryStage.COMPLETE.value
        assert updates[-1].progress == 100.0

    @pytest.mark.asyncio
    async def test_generation_progress_remapped(self, pipeline, indexed):
        """Should map provider progress 0-100 into the 40-100 band."""
        updates = []

        await pipeline.query_documents(
            "question", DOCUMENTS, "fake-model", project_id="p1", on_progress=updates.append
        )

        generation = [u for u in updates if u.stage == QueryStage.GENERATION.value]
        assert generation
        assert all(40.0 <= u.progress <= 100.0 for u in generation)
        # The fake reports model-load at 50% of its own scale
        assert any(u.progress == pytest.approx(70.0) for u in generation)

    @pytest.mark.asyncio
    async def test_passes_provider_and_models_to_factories(self, pipeline, indexed):
        """Should build providers for the requested provider and models."""
        await pipeline.query_documents(
            "question", DOCUMENTS, "qwen-7b", project_id="p1",
            provider="ollama", embedding_model="nomic-embed-text",
        )

        assert pipeline.factory_requests["embedding"][0][1] == "nomic-embed-text"
        assert pipeline.factory_requests["generation"][0][1] == "qwen-7b"
        assert pipeline.factory_requests["generation"][0][0].value == "ollama"

    @pytest.mark.asyncio
    async def test_template_policy_chooses_prompt(self, pipeline, indexed, generator):
        """Should use the template the policy picks for the model."""
        pipeline.template_policy = lambda model_id: PromptTemplate.STRUCTURED

        await pipeline.query_documents("question", DOCUMENTS, "any-model", project_id="p1")

        assert '<source id="1" ref="doc-1.txt">' in generator.prompts[0]

    @pytest.mark.asyncio
    async def test_thinking_routed_to_callback(self, pipeline, indexed, generator):
        """Should send thinking to on_thinking and keep it out of the answer."""
        generator.fragments = ["<think>look at chunk 1</think>", "Blue."]
        thoughts = []

        answer = await pipeline.query_documents(
            "question", DOCUMENTS, "fake-model", project_id="p1", on_thinking=thoughts.append
        )

        assert answer == "Blue."
        assert thoughts == ["look at chunk 1"]

    @pytest.mark.asyncio
    async def test_interrupt_returns_partial_answer(self, pipeline, indexed, generator):
        """Should return the text produced before an interrupt."""
        generator.fragments = ["one", " two", " three"]
        generator.on_fragment = lambda fragment, interrupt: (
            interrupt.interrupt() if fragment == " three" else None
        )

        answer = await pipeline.query_documents(
            "question", DOCUMENTS, "fake-model", project_id="p1",
            on_token=lambda t: None, interrupt=InterruptSignal(),
        )

        assert answer == "one two"


# ============================================================================
# Without documents
# ============================================================================

class TestConversationMode:
    """Tests for questions asked without any documents."""

    @pytest.mark.asyncio
    async def test_no_documents_skips_retrieval(self, pipeline, generator, embedder):
        """Should skip embedding and answer from the conversation prompt."""
        answer = await pipeline.query_documents("Hi there", [], "fake-model")

        assert answer == "Hello world"
        assert embedder.calls == []
        assert "No documents have been uploaded" in generator.prompts[0]


# ============================================================================
# Expected failures
# ============================================================================

class TestQueryFailures:
    """Tests for failures returned as readable strings, and DimensionMismatch."""

    @pytest.mark.asyncio
    async def test_nothing_indexed(self, pipeline, generator, embedder):
        """Should return the not-indexed message when documents exist but the store is empty."""
        updates = []

        answer = await pipeline.query_documents(
            "question", DOCUMENTS, "fake-model", project_id="p1", on_progress=updates.append
        )

        assert answer == str(NoDocumentsIndexed())
        assert generator.prompts == []
        assert embedder.calls == []
        assert updates[-1].stage == QueryStage.COMPLETE.value

    @pytest.mark.asyncio
    async def test_nothing_indexed_in_this_project(self, pipeline, indexed):
        """Should report nothing indexed when only other projects have records."""
        answer = await pipeline.query_documents("question", DOCUMENTS, "fake-model", project_id="other")
        assert answer == str(NoDocumentsIndexed())

    @pytest.mark.asyncio
    async def test_no_relevant_match_after_retry(self, pipeline, indexed, generator):
        """Should retry once with a wider k, then return the no-match message."""
        with patch.object(indexed, 'query', return_value=[]) as mock_query:
            answer = await pipeline.query_documents("question", DOCUMENTS, "fake-model", project_id="p1")

        assert answer == str(NoRelevantMatch())
        assert [c.kwargs["k"] for c in mock_query.call_args_list] == [2, 6]
        assert generator.prompts == []

    @pytest.mark.asyncio
    async def test_dimension_mismatch_propagates(self, pipeline, store):
        """Should raise DimensionMismatch and report the error stage."""
        store.put([make_record("old", [1.0, 0.0])])
        updates = []

        with pytest.raises(DimensionMismatch):
            await pipeline.query_documents(
                "question", DOCUMENTS, "fake-model", project_id="p1", on_progress=updates.append
            )

        assert updates[-1].stage == QueryStage.ERROR.value

    @pytest.mark.asyncio
    async def test_provider_unavailable_becomes_error_string(self, pipeline, indexed, generator):
        """Should turn ProviderUnavailable into an error string."""
        async def broken_prepare(reporter):
            raise ProviderUnavailable("Could not connect to ollama")

        generator._prepare = broken_prepare
        updates = []

        answer = await pipeline.query_documents(
            "question", DOCUMENTS, "fake-model", project_id="p1", on_progress=updates.append
        )

        assert answer == "Error: Could not connect to ollama"
        assert updates[-1].stage == QueryStage.ERROR.value

    @pytest.mark.asyncio
    async def test_empty_question(self, pipeline):
        """Should return an error string for a blank question."""
        answer = await pipeline.query_documents("   ", DOCUMENTS, "fake-model")
        assert answer == "Error: Query cannot be empty"

    @pytest.mark.asyncio
    async def test_unknown_provider(self, pipeline):
        """Should return an error string for an unknown provider."""
        answer = await pipeline.query_documents("question", DOCUMENTS, "m", provider="openai")
        assert answer.startswith("Error: Unknown provider")


# ============================================================================
# Retrieval only
# ============================================================================

class TestRetrieve:
    """Tests for retrieval without generation."""

    @pytest.mark.asyncio
    async def test_returns_ranked_results(self, pipeline, indexed):
        """Should return ranked results with citations."""
        retrieval = await pipeline.retrieve("sky?", project_id="p1")

        assert [r.chunk_id for r in retrieval.results] == ["doc-1-chunk-0", "doc-1-chunk-1"]
        assert retrieval.citations[0].source == "doc-1.txt"

    @pytest.mark.asyncio
    async def test_top_k_override(self, pipeline, indexed):
        """Should honour an explicit top_k."""
        retrieval = await pipeline.retrieve("sky?", project_id="p1", top_k=1)
        assert len(retrieval.results) == 1


class TestGetPipeline:
    """Tests for the default pipeline singleton."""

    def test_singleton_and_reset(self):
        """Should return one shared pipeline until reset."""
        reset_pipeline()
        try:
            first = get_pipeline()
            assert get_pipeline() is first
        finally:
            reset_pipeline()

        assert get_pipeline() is not first
        reset_pipeline()
