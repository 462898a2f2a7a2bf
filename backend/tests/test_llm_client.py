"""
Tests for the generation providers and the local model cache.
"""
import json
from unittest.mock import MagicMock, patch

import httpx
import pytest
import requests

from apps.rag.llm_client import (
    GENERATION_STAGE_ORDER,
    THINKING_HINT,
    GenerationOptions,
    GenerationStage,
    InterruptSignal,
    LMStudioClient,
    LocalGenerationProvider,
    OllamaClient,
    default_generation_model,
    get_generation_provider,
)
from apps.rag.model_cache import CachedModel, ModelCache
from apps.rag.providers import ProviderType, ProviderUnavailable, StageProgressReporter
from tests.conftest import FakeGenerationProvider


def sse(*chunks, done=True):
    """Build an OpenAI-style SSE body from content deltas."""
    lines = [
        "data: " + json.dumps({"choices": [{"delta": {"content": chunk}}]})
        for chunk in chunks
    ]
    if done:
        lines.append("data: [DONE]")
    return ("\n\n".join(lines) + "\n\n").encode()


def ndjson(*chunks):
    """Build an Ollama NDJSON body, ending with a done record."""
    lines = [json.dumps({"response": chunk, "done": False}) for chunk in chunks]
    lines.append(json.dumps({"response": "", "done": True}))
    return ("\n".join(lines) + "\n").encode()


# ============================================================================
# BaseGenerationProvider.generate
# ============================================================================

class TestGenerate:
    """Tests for the shared generate flow, using the fake provider."""

    @pytest.mark.asyncio
    async def test_return_equals_streamed_tokens(self):
        """Should return exactly the concatenation of streamed tokens."""
        provider = FakeGenerationProvider(["Hel", "lo", " there"])
        tokens = []

        answer = await provider.generate("prompt", on_token=tokens.append)

        assert tokens == ["Hel", "lo", " there"]
        assert answer == "".join(tokens)
        assert provider.prompts == ["prompt"]

    @pytest.mark.asyncio
    async def test_without_on_token_returns_full_answer(self):
        """Should still return the full answer without an on_token callback."""
        provider = FakeGenerationProvider(["a", "b"])
        assert await provider.generate("prompt") == "ab"

    @pytest.mark.asyncio
    async def test_thinking_kept_out_of_answer(self):
        """Should keep thinking out of both the tokens and the answer."""
        provider = FakeGenerationProvider(["<think>plan", "</think>", "Answer"])
        tokens, thoughts = [], []

        answer = await provider.generate("p", on_token=tokens.append, on_thinking=thoughts.append)

        assert answer == "Answer"
        assert tokens == ["Answer"]
        assert thoughts == ["plan"]

    @pytest.mark.asyncio
    async def test_progress_stages_in_order(self):
        """Should report stages in order, ending at complete with 100."""
        provider = FakeGenerationProvider(["a", "b"])
        updates = []

        await provider.generate("p", on_progress=updates.append)

        stages = [u.stage for u in updates]
        assert stages[0] == GenerationStage.MODEL_LOAD.value
        assert stages[-1] == GenerationStage.COMPLETE.value
        assert set(stages[1:-1]) == {GenerationStage.GENERATING.value}
        assert updates[-1].progress == 100.0
        assert updates[-1].status == "success"
        progress = [u.progress for u in updates]
        assert progress == sorted(progress)

    @pytest.mark.asyncio
    async def test_interrupt_stops_at_token_boundary(self):
        """Should return the partial answer once interrupted."""

        def stop_on_second(fragment, interrupt):
            if fragment == " world":
                interrupt.interrupt()

        provider = FakeGenerationProvider(["Hello", " world", "!"], on_fragment=stop_on_second)
        tokens, updates = [], []

        answer = await provider.generate(
            "p",
            on_token=tokens.append,
            on_progress=updates.append,
            interrupt=InterruptSignal(),
        )

        assert answer == "Hello"
        assert tokens == ["Hello"]
        assert updates[-1].message == "Generation stopped"

    @pytest.mark.asyncio
    async def test_already_interrupted_yields_nothing(self):
        """Should return an empty answer when interrupted before starting."""
        interrupt = InterruptSignal()
        interrupt.interrupt()

        answer = await FakeGenerationProvider(["a"]).generate("p", interrupt=interrupt)

        assert answer == ""

    @pytest.mark.asyncio
    async def test_unavailable_reports_error_and_raises(self):
        """Should report the error stage and re-raise ProviderUnavailable."""
        provider = FakeGenerationProvider()
        updates = []

        async def broken_prepare(reporter):
            raise ProviderUnavailable("CUDA out of memory")

        provider._prepare = broken_prepare

        with pytest.raises(ProviderUnavailable):
            await provider.generate("p", on_progress=updates.append)

        assert updates[-1].stage == GenerationStage.ERROR.value
        assert updates[-1].status == "error"
        assert updates[-1].message == "CUDA out of memory"


class TestInterruptSignal:
    """Tests for InterruptSignal."""

    def test_set_and_reset(self):
        """Should flip is_set on interrupt and clear it on reset."""
        signal = InterruptSignal()
        assert signal.is_set is False

        signal.interrupt()
        assert signal.is_set is True

        signal.reset()
        assert signal.is_set is False


# ============================================================================
# LM Studio
# ============================================================================

class TestLMStudioClient:
    """Tests for the LM Studio chat/completions client."""

    def make_client(self, handler, **kwargs):
        return LMStudioClient(
            model="qwen-7b",
            base_url="http://lmstudio:1234/v1",
            options=GenerationOptions(temperature=0.2, top_p=0.9, max_tokens=64),
            transport=httpx.MockTransport(handler),
            **kwargs,
        )

    @pytest.mark.asyncio
    async def test_streams_sse_deltas(self):
        """Should stream SSE content deltas and send the chat payload."""
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, content=sse("The ", "answer", "."))

        tokens = []
        answer = await self.make_client(handler).generate("question", on_token=tokens.append)

        assert answer == "The answer."
        assert tokens == ["The ", "answer", "."]
        assert seen[0]["stream"] is True
        assert seen[0]["messages"] == [{"role": "user", "content": "question"}]
        assert seen[0]["max_tokens"] == 64
        assert seen[0]["temperature"] == 0.2

    @pytest.mark.asyncio
    async def test_thinking_split_from_stream(self):
        """Should split thinking out of the streamed deltas."""
        handler = lambda request: httpx.Response(200, content=sse("<thi", "nk>hmm</think>", "Yes"))
        thoughts = []

        answer = await self.make_client(handler).generate("q", on_token=lambda t: None, on_thinking=thoughts.append)

        assert answer == "Yes"
        assert thoughts == ["hmm"]

    @pytest.mark.asyncio
    async def test_non_streaming_response(self):
        """Should read the whole answer from a non-streaming response."""
        def handler(request):
            assert json.loads(request.content)["stream"] is False
            return httpx.Response(200, json={"choices": [{"message": {"content": "Full answer"}}]})

        assert await self.make_client(handler).generate("q") == "Full answer"

    @pytest.mark.asyncio
    async def test_skips_malformed_sse_lines(self):
        """Should skip data lines that are not valid JSON."""
        body = b"data: {broken\n\n" + sse("ok")
        answer = await self.make_client(lambda request: httpx.Response(200, content=body)).generate(
            "q", on_token=lambda t: None
        )
        assert answer == "ok"

    @pytest.mark.asyncio
    async def test_http_error_is_unavailable(self):
        """Should raise ProviderUnavailable on an HTTP error status."""
        updates = []
        client = self.make_client(lambda request: httpx.Response(503))

        with pytest.raises(ProviderUnavailable, match="503"):
            await client.generate("q", on_token=lambda t: None, on_progress=updates.append)

        assert updates[-1].stage == GenerationStage.ERROR.value

    @pytest.mark.asyncio
    async def test_connection_error_is_unavailable(self):
        """Should raise ProviderUnavailable when the server cannot be reached."""
        def handler(request):
            raise httpx.ConnectError("refused")

        with pytest.raises(ProviderUnavailable, match="Could not connect"):
            await self.make_client(handler).generate("q")

    @pytest.mark.asyncio
    async def test_missing_choices_is_unavailable(self):
        """Should raise ProviderUnavailable when the response has no choices."""
        client = self.make_client(lambda request: httpx.Response(200, json={"choices": []}))

        with pytest.raises(ProviderUnavailable):
            await client.generate("q")

    @patch('apps.rag.llm_client.requests.get')
    def test_check_connection_lists_models(self, mock_get):
        """Should list the server's models from /models."""
        mock_get.return_value.json.return_value = {"data": [{"id": "qwen-7b"}, {"id": "llama"}]}

        status = LMStudioClient(base_url="http://lmstudio:1234/v1").check_connection()

        assert status.success is True
        assert status.models == ["qwen-7b", "llama"]
        assert mock_get.call_args.args[0] == "http://lmstudio:1234/v1/models"

    @patch('apps.rag.llm_client.requests.get')
    def test_check_connection_failure(self, mock_get):
        """Should report failure instead of raising when the server is down."""
        mock_get.side_effect = requests.ConnectionError("refused")

        status = LMStudioClient(base_url="http://lmstudio:1234/v1").check_connection()

        assert status.success is False
        assert "Could not connect" in status.message


# ============================================================================
# Ollama
# ============================================================================

class TestOllamaClient:
    """Tests for the Ollama generate client."""

    def make_client(self, handler):
        return OllamaClient(
            model="llama3.2",
            base_url="http://ollama:11434",
            options=GenerationOptions(temperature=0.5, top_p=0.8, max_tokens=32),
            transport=httpx.MockTransport(handler),
        )

    @pytest.mark.asyncio
    async def test_streams_ndjson(self):
        """Should stream NDJSON responses and map options to Ollama's names."""
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            assert request.url.path == "/api/generate"
            return httpx.Response(200, content=ndjson("Para", "ris"))

        tokens = []
        answer = await self.make_client(handler).generate("Capital of France?", on_token=tokens.append)

        assert answer == "Pararis"
        assert tokens == ["Para", "ris"]
        assert seen[0]["prompt"] == "Capital of France?"
        assert seen[0]["options"] == {"temperature": 0.5, "top_p": 0.8, "num_predict": 32}

    @pytest.mark.asyncio
    async def test_stops_at_done(self):
        """Should stop reading at the done record."""
        body = ndjson("a") + json.dumps({"response": "ignored", "done": False}).encode() + b"\n"
        answer = await self.make_client(lambda request: httpx.Response(200, content=body)).generate(
            "q", on_token=lambda t: None
        )
        assert answer == "a"

    @pytest.mark.asyncio
    async def test_non_streaming_response(self):
        """Should read the whole answer from a non-streaming response."""
        handler = lambda request: httpx.Response(200, json={"response": "whole", "done": True})
        assert await self.make_client(handler).generate("q") == "whole"

    @pytest.mark.asyncio
    async def test_http_error_is_unavailable(self):
        """Should raise ProviderUnavailable on an HTTP error status."""
        with pytest.raises(ProviderUnavailable, match="404"):
            await self.make_client(lambda request: httpx.Response(404)).generate("q")

    @patch('apps.rag.llm_client.requests.get')
    def test_check_connection_empty(self, mock_get):
        """Should succeed with a hint when no models are pulled."""
        mock_get.return_value.json.return_value = {"models": []}

        status = OllamaClient(base_url="http://ollama:11434").check_connection()

        assert status.success is True
        assert status.models == []
        assert "no models" in status.message


# ============================================================================
# Local
# ============================================================================

class TestLocalGenerationProvider:
    """Tests for the in-process transformers provider."""

    @pytest.mark.asyncio
    async def test_cached_model_skips_loading(self):
        """Should reuse a cached model without reporting any load progress."""
        cache = ModelCache()
        entry = CachedModel(model_id="tiny", model=MagicMock(), tokenizer=MagicMock())
        cache.put("tiny", entry)
        provider = LocalGenerationProvider(model="tiny", model_cache=cache)
        updates = []

        await provider._prepare(StageProgressReporter(updates.append, GENERATION_STAGE_ORDER))

        assert provider._entry is entry
        assert updates == []
        assert cache.active_id == "tiny"

    @pytest.mark.asyncio
    async def test_load_failure_is_unavailable(self):
        """Should raise ProviderUnavailable and cache nothing when loading fails."""
        provider = LocalGenerationProvider(model="does-not-exist", model_cache=ModelCache())
        updates = []

        def missing(name):
            raise OSError(f"{name} not found")

        with patch('transformers.AutoTokenizer.from_pretrained', missing):
            with pytest.raises(ProviderUnavailable, match="does-not-exist"):
                await provider.generate("q", on_progress=updates.append)

        assert updates[0].stage == GenerationStage.TOKENIZER_LOAD.value
        assert updates[-1].stage == GenerationStage.ERROR.value
        assert "does-not-exist" not in provider.model_cache

    def test_build_inputs_uses_chat_template_and_hint(self):
        """Should apply the chat template and append the thinking hint."""
        tokenizer = MagicMock()
        tokenizer.chat_template = "{{ messages }}"
        tokenizer.apply_chat_template.return_value = "templated"
        provider = LocalGenerationProvider(model="tiny", model_cache=ModelCache())
        provider._entry = CachedModel(model_id="tiny", model=MagicMock(), tokenizer=tokenizer)

        provider._build_inputs("Question?")

        messages = tokenizer.apply_chat_template.call_args.args[0]
        assert messages == [{"role": "user", "content": "Question?" + THINKING_HINT}]
        tokenizer.assert_called_once_with("templated", return_tensors="pt")

    def test_build_inputs_without_template(self):
        """Should tokenize the raw prompt when there is no chat template."""
        tokenizer = MagicMock()
        tokenizer.chat_template = None
        provider = LocalGenerationProvider(model="tiny", model_cache=ModelCache())
        provider._entry = CachedModel(model_id="tiny", model=MagicMock(), tokenizer=tokenizer)

        provider._build_inputs("Already has <think> in it")

        tokenizer.apply_chat_template.assert_not_called()
        tokenizer.assert_called_once_with("Already has <think> in it", return_tensors="pt")


# ============================================================================
# ModelCache
# ============================================================================

@patch('apps.rag.model_cache._empty_cuda_cache')
class TestModelCache:
    """Tests for ModelCache eviction on model switch."""

    def test_activate_unknown_returns_none(self, mock_empty):
        """Should return None for a model that is not cached yet."""
        cache = ModelCache()
        assert cache.activate("a") is None
        assert cache.active_id == "a"

    def test_switching_evicts_previous(self, mock_empty):
        """Should evict the previous generation model and free CUDA memory."""
        cache = ModelCache()
        cache.put("a", CachedModel(model_id="a", model=object()))
        cache.activate("a")

        cache.activate("b")

        assert "a" not in cache
        assert cache.active_id == "b"
        mock_empty.assert_called_once()

    def test_reactivating_same_model_keeps_it(self, mock_empty):
        """Should keep the cached entry when the same model is activated again."""
        cache = ModelCache()
        entry = CachedModel(model_id="a", model=object())
        cache.put("a", entry)
        cache.activate("a")

        assert cache.activate("a") is entry
        mock_empty.assert_not_called()

    def test_embedding_models_survive_switch(self, mock_empty):
        """Should keep embedding models when the generation model changes."""
        cache = ModelCache()
        cache.put("embedding:mini", CachedModel(model_id="mini", model=object()))
        cache.put("a", CachedModel(model_id="a", model=object()))
        cache.activate("a")

        cache.activate("b")

        assert "embedding:mini" in cache
        assert len(cache) == 1

    def test_evict_and_clear(self, mock_empty):
        """Should evict single entries and clear the whole cache."""
        cache = ModelCache()
        cache.put("a", CachedModel(model_id="a", model=object()))
        cache.put("b", CachedModel(model_id="b", model=object()))
        cache.activate("a")

        assert cache.evict("a") is True
        assert cache.active_id is None
        assert cache.evict("a") is False

        cache.clear()
        assert len(cache) == 0


# ============================================================================
# Factory
# ============================================================================

class TestGetGenerationProvider:
    """Tests for the generation provider factory."""

    @pytest.mark.parametrize("provider,expected", [
        ("local", LocalGenerationProvider),
        ("lmstudio", LMStudioClient),
        (ProviderType.OLLAMA, OllamaClient),
    ])
    def test_selects_provider(self, provider, expected):
        """Should build the provider class for each provider name."""
        assert isinstance(get_generation_provider(provider), expected)

    def test_default_models_from_settings(self):
        """Should use the configured default model unless one is passed."""
        assert get_generation_provider("ollama").model == default_generation_model("ollama")
        assert get_generation_provider("lmstudio", model="custom").model == "custom"

    def test_local_shares_cache(self):
        """Should hand the local provider the given model cache."""
        cache = ModelCache()
        assert get_generation_provider("local", model_cache=cache).model_cache is cache
