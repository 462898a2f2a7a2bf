"""
Health check endpoints for Kubernetes/Docker probes.

- /healthz - Liveness (is process running?)
- /readyz - Readiness (can we serve traffic?)
"""
import logging
from datetime import datetime, timezone

import httpx
import redis
from django.conf import settings
from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET

from apps.rag.pipeline import get_pipeline

logger = logging.getLogger(__name__)


def get_timestamp() -> str:
    """Get current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat()


@csrf_exempt
@require_GET
def healthz(request):
    """
    Liveness probe endpoint.

    Returns 200 if the Django process is running.
    Does NOT check dependencies - that's for readiness.
    """
    return JsonResponse({
        'status': 'healthy',
        'timestamp': get_timestamp()
    })


def check_vector_store() -> tuple[str, bool]:
    """Check the vector store loaded and report its size."""
    try:
        count = len(get_pipeline().vector_store)
        return f'ok ({count} records)', True
    except Exception as e:
        logger.error(f"Vector store health check failed: {e}")
        return f'error: {str(e)[:50]}', False


def check_redis() -> tuple[str, bool]:
    """Check Redis connectivity (only required for the redis backend)."""
    if getattr(settings, 'VECTOR_STORE_BACKEND', 'file').lower() != 'redis':
        return 'not used', True
    try:
        redis_url = getattr(settings, 'REDIS_URL', 'redis://localhost:6379/0')
        client = redis.from_url(redis_url, socket_timeout=3)
        client.ping()
        return 'ok', True
    except redis.RedisError as e:
        logger.error(f"Redis health check failed: {e}")
        return f'error: {str(e)[:50]}', False


def check_remote(name: str, url: str) -> tuple[str, bool]:
    """
    Check a remote provider is reachable (optional, degrades gracefully).

    A provider being down shouldn't prevent serving other providers.
    """
    try:
        with httpx.Client(timeout=5.0) as client:
            response = client.get(url)
            return f'status: {response.status_code}', True
    except httpx.HTTPError as e:
        logger.warning(f"{name} health check failed: {e}")
        return 'unreachable', True


@csrf_exempt
@require_GET
def readyz(request):
    """
    Readiness probe endpoint.

    Returns 200 when the vector store (and Redis, if used) is available,
    503 otherwise. Remote providers are reported but never fail readiness.
    """
    store_status, store_ok = check_vector_store()
    redis_status, redis_ok = check_redis()
    lmstudio_status, _ = check_remote(
        'LM Studio', f"{getattr(settings, 'LMSTUDIO_BASE_URL', 'http://localhost:1234/v1')}/models"
    )
    ollama_status, _ = check_remote(
        'Ollama', f"{getattr(settings, 'OLLAMA_BASE_URL', 'http://localhost:11434')}/api/version"
    )

    ready = store_ok and redis_ok
    return JsonResponse(
        {
            'status': 'ready' if ready else 'not ready',
            'timestamp': get_timestamp(),
            'checks': {
                'vector_store': store_status,
                'redis': redis_status,
                'lmstudio': lmstudio_status,
                'ollama': ollama_status,
            }
        },
        status=200 if ready else 503
    )
