"""
Generation providers.

Provides a unified streaming interface for answer generation that can
switch between:
- Local inference (transformers, model cached in-process)
- LM Studio (OpenAI-compatible /chat/completions, SSE stream)
- Ollama (/api/generate, NDJSON stream)

Every provider pipes its raw output through a ThinkingSplitter, so
``on_token`` only ever sees answer text and <think> blocks go to
``on_thinking``. The returned string is exactly what ``on_token`` saw.
"""
import json
import logging
import queue
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Callable, List, Optional

import httpx
import requests
from asgiref.sync import sync_to_async
from django.conf import settings

from apps.rag.model_cache import CachedModel, ModelCache
from apps.rag.providers import (
    ProgressCallback,
    ProviderType,
    ProviderUnavailable,
    StageProgressReporter,
    yield_control,
)
from apps.rag.thinking import OPEN_TAG, ThinkingSplitter

logger = logging.getLogger(__name__)

THINKING_HINT = "\n\nYou can use <think>...</think> tags to show your thinking process."


class GenerationStage(str, Enum):
    TOKENIZER_LOAD = "tokenizer-load"
    MODEL_LOAD = "model-load"
    WARMUP = "warmup"
    GENERATING = "generating"
    COMPLETE = "complete"
    ERROR = "error"


GENERATION_STAGE_ORDER = [
    GenerationStage.TOKENIZER_LOAD.value,
    GenerationStage.MODEL_LOAD.value,
    GenerationStage.WARMUP.value,
    GenerationStage.GENERATING.value,
    GenerationStage.COMPLETE.value,
]


class InterruptSignal:
    """
    Cooperative cancellation flag for one generation call.

    Set from any thread; providers check it at every token boundary.
    """

    def __init__(self):
        self._event = threading.Event()

    def interrupt(self) -> None:
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    @property
    def is_set(self) -> bool:
        return self._event.is_set()


@dataclass
class GenerationOptions:
    """Sampling options shared by all providers."""
    temperature: float = 0.7
    top_p: float = 0.95
    max_tokens: int = 1024

    @classmethod
    def from_settings(cls) -> 'GenerationOptions':
        return cls(
            temperature=float(getattr(settings, 'LLM_TEMPERATURE', 0.7)),
            top_p=float(getattr(settings, 'LLM_TOP_P', 0.95)),
            max_tokens=int(getattr(settings, 'LLM_MAX_TOKENS', 1024)),
        )


@dataclass
class ConnectionStatus:
    """Result of a provider connectivity check."""
    success: bool
    message: str
    models: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"success": self.success, "message": self.message, "models": self.models}


# =============================================================================
# Provider Interface
# =============================================================================

class BaseGenerationProvider(ABC):
    """
    Abstract base class for generation providers.

    ``generate`` drives the shared flow (prepare, stream, split thinking,
    report progress, honour interrupts); subclasses implement ``_prepare``
    and ``_stream``.
    """

    provider_type: ProviderType
    # Progress reached once the model is ready and generation starts
    generating_start = 0.0

    def __init__(self, model: str, options: Optional[GenerationOptions] = None):
        self.model = model
        self.options = options or GenerationOptions.from_settings()

    @property
    def model_name(self) -> str:
        return self.model

    async def _prepare(self, reporter: StageProgressReporter) -> None:
        """Load whatever the provider needs before streaming. No-op by default."""
        pass

    @abstractmethod
    def _stream(self, prompt: str, interrupt: InterruptSignal, stream: bool) -> AsyncIterator[str]:
        """
        Yield raw text fragments (thinking tags included).

        With ``stream`` False the provider may yield the whole response once.
        """
        pass

    async def generate(
        self,
        prompt: str,
        on_progress: Optional[ProgressCallback] = None,
        on_token: Optional[Callable[[str], None]] = None,
        interrupt: Optional[InterruptSignal] = None,
        on_thinking: Optional[Callable[[str], None]] = None,
    ) -> str:
        """
        Generate an answer for ``prompt``.

        Args:
            prompt: Fully assembled prompt
            on_progress: Receives StageProgress updates
            on_token: Receives each visible answer fragment (enables streaming)
            interrupt: Stops generation at the next token boundary when set
            on_thinking: Receives each completed <think> block

        Returns:
            The visible answer (partial if interrupted)

        Raises:
            ProviderUnavailable: If the backend or model cannot be reached/loaded
        """
        reporter = StageProgressReporter(on_progress, GENERATION_STAGE_ORDER)
        interrupt = interrupt or InterruptSignal()
        splitter = ThinkingSplitter(on_thinking=on_thinking)
        delivered: List[str] = []

        def deliver(text: str) -> None:
            if text:
                delivered.append(text)
                if on_token:
                    on_token(text)

        logger.info(f"Generating with {self.provider_type.value}:{self.model}")
        start_time = time.time()
        fragments = 0

        try:
            await self._prepare(reporter)
            reporter.report(GenerationStage.GENERATING.value, self.generating_start, "Generating response...")

            stream = self._stream(prompt, interrupt, stream=on_token is not None)
            try:
                async for fragment in stream:
                    if interrupt.is_set:
                        break
                    deliver(splitter.feed(fragment))
                    fragments += 1
                    reporter.report(
                        GenerationStage.GENERATING.value,
                        self._generating_progress(fragments),
                        "Generating response...",
                    )
                    if interrupt.is_set:
                        break
            finally:
                await stream.aclose()

            deliver(splitter.flush())

        except ProviderUnavailable as e:
            reporter.report(GenerationStage.ERROR.value, 0, str(e))
            raise

        elapsed_ms = (time.time() - start_time) * 1000
        if interrupt.is_set:
            logger.info(f"Generation interrupted after {fragments} fragments ({elapsed_ms:.0f}ms)")
            message = "Generation stopped"
        else:
            logger.info(f"Generation finished: {fragments} fragments in {elapsed_ms:.0f}ms")
            message = "Generation complete"

        reporter.report(GenerationStage.COMPLETE.value, 100, message, status="success")
        return "".join(delivered)

    def _generating_progress(self, fragments: int) -> float:
        # Token count against the budget; never reaches 100 before completion
        span = 99.0 - self.generating_start
        ratio = min(1.0, fragments / max(1, self.options.max_tokens))
        return self.generating_start + span * ratio


# =============================================================================
# Local (transformers)
# =============================================================================

class LocalGenerationProvider(BaseGenerationProvider):
    """
    In-process causal LM via transformers.

    The tokenizer/model pair lives in the injected ModelCache; asking for
    a different model id evicts the previous pair before loading.
    """

    provider_type = ProviderType.LOCAL
    generating_start = 90.0

    def __init__(
        self,
        model: Optional[str] = None,
        model_cache: Optional[ModelCache] = None,
        options: Optional[GenerationOptions] = None,
    ):
        super().__init__(
            model or default_generation_model(ProviderType.LOCAL),
            options,
        )
        self.model_cache = model_cache or ModelCache()
        self.timeout = float(getattr(settings, 'LLM_TIMEOUT', 600))
        self._entry: Optional[CachedModel] = None

    async def _prepare(self, reporter: StageProgressReporter) -> None:
        entry = self.model_cache.activate(self.model)
        if entry is not None:
            logger.debug(f"Using cached model {self.model}")
            self._entry = entry
            return

        try:
            import torch
            from transformers import AutoTokenizer
        except ImportError as e:
            raise ProviderUnavailable(
                "transformers or torch not installed. "
                "Install with: pip install transformers torch"
            ) from e

        device = getattr(settings, 'LOCAL_DEVICE', '') or (
            "cuda" if torch.cuda.is_available() else "cpu"
        )

        try:
            reporter.report(GenerationStage.TOKENIZER_LOAD.value, 0, f"Loading tokenizer for {self.model}")
            tokenizer = await sync_to_async(AutoTokenizer.from_pretrained, thread_sensitive=False)(self.model)
            reporter.report(GenerationStage.TOKENIZER_LOAD.value, 30, "Tokenizer loaded")

            reporter.report(GenerationStage.MODEL_LOAD.value, 30, f"Loading {self.model} on {device}")
            model = await sync_to_async(self._load_model, thread_sensitive=False)(device)
            reporter.report(GenerationStage.MODEL_LOAD.value, 80, "Model loaded")

            reporter.report(GenerationStage.WARMUP.value, 80, "Warming up model")
            await sync_to_async(self._warmup, thread_sensitive=False)(model, tokenizer)
            reporter.report(GenerationStage.WARMUP.value, 90, "Model ready")
        except Exception as e:
            logger.error(f"Failed to load local model {self.model}: {e}")
            raise ProviderUnavailable(f"Failed to load model {self.model}: {e}") from e

        self._entry = CachedModel(model_id=self.model, model=model, tokenizer=tokenizer, device=device)
        self.model_cache.put(self.model, self._entry)

    def _load_model(self, device: str):
        from transformers import AutoModelForCausalLM

        model = AutoModelForCausalLM.from_pretrained(self.model, torch_dtype="auto")
        model.to(device)
        model.eval()
        return model

    @staticmethod
    def _warmup(model, tokenizer) -> None:
        inputs = tokenizer("Hello", return_tensors="pt").to(model.device)
        model.generate(**inputs, max_new_tokens=1, do_sample=False)

    def _build_inputs(self, prompt: str):
        tokenizer = self._entry.tokenizer
        if OPEN_TAG not in prompt:
            prompt += THINKING_HINT

        if getattr(tokenizer, 'chat_template', None):
            text = tokenizer.apply_chat_template(
                [{"role": "user", "content": prompt}],
                tokenize=False,
                add_generation_prompt=True,
            )
        else:
            text = prompt

        return tokenizer(text, return_tensors="pt").to(self._entry.model.device)

    async def _stream(self, prompt: str, interrupt: InterruptSignal, stream: bool) -> AsyncIterator[str]:
        import torch
        from transformers import StoppingCriteria, StoppingCriteriaList, TextIteratorStreamer

        class InterruptCriteria(StoppingCriteria):
            def __call__(self, input_ids, scores, **kwargs):
                return torch.full(
                    (input_ids.shape[0],), interrupt.is_set, dtype=torch.bool, device=input_ids.device
                )

        model = self._entry.model
        tokenizer = self._entry.tokenizer
        inputs = self._build_inputs(prompt)
        streamer = TextIteratorStreamer(
            tokenizer, skip_prompt=True, skip_special_tokens=True, timeout=self.timeout
        )
        pad_token_id = tokenizer.pad_token_id
        if pad_token_id is None:
            pad_token_id = tokenizer.eos_token_id
        errors: List[Exception] = []

        def run():
            try:
                model.generate(
                    **inputs,
                    streamer=streamer,
                    max_new_tokens=self.options.max_tokens,
                    do_sample=True,
                    temperature=self.options.temperature,
                    top_p=self.options.top_p,
                    stopping_criteria=StoppingCriteriaList([InterruptCriteria()]),
                    pad_token_id=pad_token_id,
                )
            except Exception as e:
                errors.append(e)
                # Unblock the consumer loop
                streamer.end()

        thread = threading.Thread(target=run, daemon=True)
        thread.start()

        next_fragment = sync_to_async(next, thread_sensitive=False)
        iterator = iter(streamer)
        while True:
            try:
                fragment = await next_fragment(iterator, None)
            except queue.Empty as e:
                interrupt.interrupt()
                raise ProviderUnavailable(f"Local generation timed out after {self.timeout:.0f}s") from e
            if fragment is None:
                break
            if fragment:
                yield fragment
            await yield_control()

        await sync_to_async(thread.join, thread_sensitive=False)()
        if errors:
            raise ProviderUnavailable(f"Local generation failed: {errors[0]}") from errors[0]


# =============================================================================
# Remote providers
# =============================================================================

class RemoteGenerationProvider(BaseGenerationProvider):
    """Shared HTTP handling for server-backed providers."""

    def __init__(
        self,
        model: str,
        base_url: str,
        options: Optional[GenerationOptions] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(model, options)
        self.base_url = base_url.rstrip('/')
        self.timeout = float(getattr(settings, 'LLM_TIMEOUT', 600))
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    def _headers(self) -> dict:
        return {"Content-Type": "application/json"}

    @abstractmethod
    def _payload(self, prompt: str, stream: bool) -> dict:
        pass

    @abstractmethod
    def _endpoint(self) -> str:
        pass

    @abstractmethod
    def _parse_complete(self, data: dict) -> str:
        """Extract the text of a non-streaming response."""
        pass

    @abstractmethod
    def _parse_line(self, line: str):
        """
        Parse one streamed line.

        Returns:
            (text, done) where text may be empty
        """
        pass

    async def _stream(self, prompt: str, interrupt: InterruptSignal, stream: bool) -> AsyncIterator[str]:
        name = self.provider_type.value
        url = f"{self.base_url}{self._endpoint()}"
        payload = self._payload(prompt, stream)

        try:
            async with self._client() as client:
                if not stream:
                    response = await client.post(url, json=payload, headers=self._headers())
                    response.raise_for_status()
                    content = self._parse_complete(response.json())
                    logger.info(f"{name} response: {len(content)} chars")
                    yield content
                    return

                async with client.stream("POST", url, json=payload, headers=self._headers()) as response:
                    response.raise_for_status()
                    async for line in response.aiter_lines():
                        if interrupt.is_set:
                            break
                        line = line.strip()
                        if not line:
                            continue
                        text, done = self._parse_line(line)
                        if text:
                            yield text
                        if done:
                            break

        except httpx.HTTPStatusError as e:
            logger.error(f"{name} HTTP error: {e}")
            raise ProviderUnavailable(f"{name} service error: {e.response.status_code}") from e
        except httpx.TimeoutException as e:
            logger.error(f"{name} request timed out")
            raise ProviderUnavailable(f"{name} service timed out") from e
        except httpx.RequestError as e:
            logger.error(f"{name} connection error: {e}")
            raise ProviderUnavailable(f"Could not connect to {name} at {self.base_url}") from e
        except (KeyError, IndexError, TypeError, ValueError) as e:
            logger.error(f"Unexpected {name} response format: {e}")
            raise ProviderUnavailable(f"Invalid response from {name}") from e

    @abstractmethod
    def check_connection(self) -> ConnectionStatus:
        pass


class LMStudioClient(RemoteGenerationProvider):
    """OpenAI-compatible chat completions (LM Studio)."""

    provider_type = ProviderType.LMSTUDIO

    def __init__(self, model: Optional[str] = None, base_url: Optional[str] = None, **kwargs):
        super().__init__(
            model or default_generation_model(ProviderType.LMSTUDIO),
            base_url or getattr(settings, 'LMSTUDIO_BASE_URL', 'http://localhost:1234/v1'),
            **kwargs,
        )
        self.api_key = getattr(settings, 'LMSTUDIO_API_KEY', '')

    def _headers(self) -> dict:
        headers = super()._headers()
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _endpoint(self) -> str:
        return "/chat/completions"

    def _payload(self, prompt: str, stream: bool) -> dict:
        return {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": self.options.temperature,
            "top_p": self.options.top_p,
            "max_tokens": self.options.max_tokens,
            "stream": stream,
        }

    def _parse_complete(self, data: dict) -> str:
        choices = data.get("choices", [])
        if not choices:
            raise ProviderUnavailable("No choices in LM Studio response")
        return choices[0].get("message", {}).get("content") or ""

    def _parse_line(self, line: str):
        # Server-sent events: "data: {...}" lines, terminated by "data: [DONE]"
        if not line.startswith("data:"):
            return "", False

        data = line[len("data:"):].strip()
        if data == "[DONE]":
            return "", True

        try:
            parsed = json.loads(data)
        except json.JSONDecodeError:
            logger.warning(f"Skipping malformed SSE line: {data[:80]}")
            return "", False

        choices = parsed.get("choices") or [{}]
        delta = choices[0].get("delta") or {}
        return delta.get("content") or "", False

    def check_connection(self) -> ConnectionStatus:
        """List the models loaded in LM Studio."""
        try:
            response = requests.get(f"{self.base_url}/models", headers=self._headers(), timeout=5)
            response.raise_for_status()
            models = [m.get("id", "") for m in response.json().get("data", [])]
        except requests.RequestException as e:
            logger.warning(f"LM Studio connection check failed: {e}")
            return ConnectionStatus(False, f"Could not connect to LM Studio at {self.base_url}: {e}")
        except ValueError:
            return ConnectionStatus(False, "Invalid response from LM Studio")

        if not models:
            return ConnectionStatus(True, "Connected, but no models are loaded")
        return ConnectionStatus(True, f"Connected ({len(models)} models available)", models)


class OllamaClient(RemoteGenerationProvider):
    """Ollama text generation via /api/generate."""

    provider_type = ProviderType.OLLAMA

    def __init__(self, model: Optional[str] = None, base_url: Optional[str] = None, **kwargs):
        super().__init__(
            model or default_generation_model(ProviderType.OLLAMA),
            base_url or getattr(settings, 'OLLAMA_BASE_URL', 'http://localhost:11434'),
            **kwargs,
        )

    def _endpoint(self) -> str:
        return "/api/generate"

    def _payload(self, prompt: str, stream: bool) -> dict:
        return {
            "model": self.model,
            "prompt": prompt,
            "stream": stream,
            "options": {
                "temperature": self.options.temperature,
                "top_p": self.options.top_p,
                "num_predict": self.options.max_tokens,
            },
        }

    def _parse_complete(self, data: dict) -> str:
        return data.get("response", "")

    def _parse_line(self, line: str):
        # Newline-delimited JSON: {"response": "...", "done": false}
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            logger.warning(f"Skipping malformed NDJSON line: {line[:80]}")
            return "", False
        return parsed.get("response") or "", bool(parsed.get("done"))

    def check_connection(self) -> ConnectionStatus:
        """List the models pulled into Ollama."""
        try:
            response = requests.get(f"{self.base_url}/api/tags", timeout=5)
            response.raise_for_status()
            models = [m.get("name", "") for m in response.json().get("models", [])]
        except requests.RequestException as e:
            logger.warning(f"Ollama connection check failed: {e}")
            return ConnectionStatus(False, f"Could not connect to Ollama at {self.base_url}: {e}")
        except ValueError:
            return ConnectionStatus(False, "Invalid response from Ollama")

        if not models:
            return ConnectionStatus(True, "Connected, but no models are installed")
        return ConnectionStatus(True, f"Connected ({len(models)} models available)", models)


# =============================================================================
# Provider Factory
# =============================================================================

def get_generation_provider(
    provider=ProviderType.LOCAL,
    model: Optional[str] = None,
    model_cache: Optional[ModelCache] = None,
) -> BaseGenerationProvider:
    """
    Build the generation provider for a request.

    Args:
        provider: ProviderType or its string value
        model: Model id (provider default if None)
        model_cache: Cache for local models, shared across requests

    Returns:
        Configured generation provider
    """
    provider = ProviderType.parse(provider)

    if provider is ProviderType.LMSTUDIO:
        return LMStudioClient(model=model)
    if provider is ProviderType.OLLAMA:
        return OllamaClient(model=model)
    return LocalGenerationProvider(model=model, model_cache=model_cache)


def default_generation_model(provider=ProviderType.LOCAL) -> str:
    """Configured default model id for a provider."""
    provider = ProviderType.parse(provider)
    if provider is ProviderType.LMSTUDIO:
        return getattr(settings, 'LMSTUDIO_MODEL', 'local-model')
    if provider is ProviderType.OLLAMA:
        return getattr(settings, 'OLLAMA_CHAT_MODEL', 'llama3.2')
    return getattr(settings, 'LOCAL_LLM_MODEL', 'Qwen/Qwen2.5-0.5B-Instruct')
