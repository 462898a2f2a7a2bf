"""
RAG API views.

Provides endpoints for:
- Ask endpoint (full RAG with generation, optionally streamed as NDJSON)
- Query retrieval (get relevant chunks)
- Index verification for a document or project
- Provider connectivity status
"""
import asyncio
import json
import logging

from asgiref.sync import sync_to_async
from django.http import JsonResponse, StreamingHttpResponse
from django.utils.decorators import method_decorator
from django.views import View
from django.views.decorators.csrf import csrf_exempt

from apps.rag.embeddings import QueryValidationError, normalize_query
from apps.rag.llm_client import InterruptSignal, default_generation_model, get_generation_provider
from apps.rag.pipeline import get_pipeline
from apps.rag.providers import ProviderType, ProviderUnavailable
from apps.rag.vector_store import DimensionMismatch

logger = logging.getLogger(__name__)

MAX_TOP_K = 20


def parse_json_body(request):
    """Returns (body, error_response)."""
    try:
        body = json.loads(request.body or b"{}")
    except json.JSONDecodeError:
        return None, JsonResponse({"error": "Invalid JSON"}, status=400)
    if not isinstance(body, dict):
        return None, JsonResponse({"error": "Request body must be a JSON object"}, status=400)
    return body, None


def parse_provider(value):
    """Returns (provider, error_response)."""
    try:
        return ProviderType.parse(value or ProviderType.LOCAL), None
    except ValueError as e:
        return None, JsonResponse({"error": str(e), "code": "INVALID_PROVIDER"}, status=400)


def dimension_mismatch_response(e: DimensionMismatch) -> JsonResponse:
    return JsonResponse(
        {
            "error": str(e),
            "code": "DIMENSION_MISMATCH",
            "expected": e.expected,
            "actual": e.actual,
        },
        status=409,
    )


async def stream_answer(pipeline, interrupt: InterruptSignal, **query_kwargs):
    """
    Run a query and yield its events as NDJSON lines.

    Event types: "progress", "token", "thinking", "done", "error".
    Closing the stream early interrupts generation.
    """
    events: asyncio.Queue = asyncio.Queue()

    def emit(event_type: str, **data):
        events.put_nowait({"type": event_type, **data})

    async def run():
        try:
            answer = await pipeline.query_documents(
                on_progress=lambda update: emit("progress", **update.to_dict()),
                on_token=lambda text: emit("token", text=text),
                on_thinking=lambda text: emit("thinking", text=text),
                interrupt=interrupt,
                **query_kwargs,
            )
            emit("done", answer=answer)
        except DimensionMismatch as e:
            emit("error", error=str(e), code="DIMENSION_MISMATCH")
        finally:
            events.put_nowait(None)

    task = asyncio.create_task(run())
    try:
        while True:
            event = await events.get()
            if event is None:
                break
            yield json.dumps(event) + "\n"
    finally:
        if not task.done():
            logger.info("Answer stream closed early, interrupting generation")
            interrupt.interrupt()
        await task


@method_decorator(csrf_exempt, name='dispatch')
class AskView(View):
    """
    POST /api/rag/ask

    Full RAG pipeline: retrieve + generation.

    Request body:
        {
            "question": "What is the main topic?",
            "documents": [{"id": "...", "name": "report.pdf"}],  // empty = plain chat
            "model": "qwen2.5-7b-instruct",  // optional, provider default
            "provider": "local|lmstudio|ollama",  // optional, default local
            "embeddingModel": "...",  // optional
            "projectId": "...",  // optional
            "stream": false  // optional, NDJSON events when true
        }

    Response (non-streaming):
        {
            "answer": "...",
            "thinking": ["..."],
            "model": "...",
            "provider": "local"
        }
    """

    async def post(self, request):
        body, error = parse_json_body(request)
        if error:
            return error

        provider, error = parse_provider(body.get("provider"))
        if error:
            return error

        try:
            question = normalize_query(body.get("question", ""))
        except QueryValidationError as e:
            return JsonResponse({"error": str(e)}, status=400)

        documents = body.get("documents") or []
        if not isinstance(documents, list):
            return JsonResponse({"error": "documents must be a list"}, status=400)

        model = body.get("model") or default_generation_model(provider)
        query_kwargs = {
            "question": question,
            "documents": documents,
            "model": model,
            "project_id": body.get("projectId"),
            "provider": provider,
            "embedding_model": body.get("embeddingModel"),
        }

        pipeline = get_pipeline()
        logger.info(
            f"Ask: provider={provider.value}, model={model}, project={query_kwargs['project_id']}, "
            f"documents={len(documents)}"
        )

        if body.get("stream"):
            return StreamingHttpResponse(
                stream_answer(pipeline, InterruptSignal(), **query_kwargs),
                content_type="application/x-ndjson",
            )

        thinking = []
        try:
            answer = await pipeline.query_documents(on_thinking=thinking.append, **query_kwargs)
        except DimensionMismatch as e:
            return dimension_mismatch_response(e)

        return JsonResponse({
            "answer": answer,
            "thinking": thinking,
            "model": model,
            "provider": provider.value,
        })


@method_decorator(csrf_exempt, name='dispatch')
class RetrieveView(View):
    """
    POST /api/rag/retrieve

    Retrieve relevant document chunks for a query.
    Used for testing retrieval before full RAG.

    Request body:
        {
            "question": "What is the main topic?",
            "projectId": "...",  // optional
            "topK": 5,  // optional
            "provider": "local",  // optional
            "embeddingModel": "..."  // optional
        }

    Response:
        {
            "query": "What is the main topic?",
            "retried": false,
            "citations": [
                {
                    "docId": "...",
                    "chunkId": "...",
                    "chunkIndex": 3,
                    "snippet": "...",
                    "score": 0.8123,
                    "documentTitle": "file.pdf",
                    "source": "file.pdf (page 2)"
                }
            ]
        }
    """

    async def post(self, request):
        body, error = parse_json_body(request)
        if error:
            return error

        provider, error = parse_provider(body.get("provider"))
        if error:
            return error

        top_k = body.get("topK")
        if top_k is not None and (
            not isinstance(top_k, int) or isinstance(top_k, bool) or top_k < 1 or top_k > MAX_TOP_K
        ):
            return JsonResponse(
                {"error": f"topK must be an integer between 1 and {MAX_TOP_K}"},
                status=400
            )

        try:
            query = normalize_query(body.get("question", ""))
        except QueryValidationError as e:
            return JsonResponse({"error": str(e)}, status=400)

        try:
            result = await get_pipeline().retrieve(
                query,
                project_id=body.get("projectId"),
                provider=provider,
                embedding_model=body.get("embeddingModel"),
                top_k=top_k,
            )
        except ProviderUnavailable as e:
            logger.error(f"Embedding failed: {e}")
            return JsonResponse({"error": f"Failed to process query: {e}"}, status=503)
        except DimensionMismatch as e:
            return dimension_mismatch_response(e)

        return JsonResponse({"query": query, **result.to_dict()})


@method_decorator(csrf_exempt, name='dispatch')
class VerifyView(View):
    """
    GET /api/rag/verify?documentId=...&projectId=...

    Check whether chunks are indexed for a document and/or project.

    Response:
        {"exists": true, "count": 42}
    """

    async def get(self, request):
        store = get_pipeline().vector_store
        result = await sync_to_async(store.verify)(
            document_id=request.GET.get("documentId") or None,
            project_id=request.GET.get("projectId") or None,
        )
        return JsonResponse(result.to_dict())


@method_decorator(csrf_exempt, name='dispatch')
class ProviderStatusView(View):
    """
    GET /api/rag/providers/<provider>/status

    Connectivity check for a provider; lists the models it offers.
    """

    async def get(self, request, provider):
        provider, error = parse_provider(provider)
        if error:
            return error

        if provider is ProviderType.LOCAL:
            pipeline = get_pipeline()
            active = pipeline.model_cache.active_id
            return JsonResponse({
                "success": True,
                "message": "Local models run in-process",
                "models": [active] if active else [],
            })

        client = get_generation_provider(provider)
        status = await sync_to_async(client.check_connection, thread_sensitive=False)()
        return JsonResponse(status.to_dict(), status=200 if status.success else 503)
