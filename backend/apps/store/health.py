"""
Health check endpoints for Kubernetes/Docker probes.

- /healthz - Liveness (is process running?)
- /readyz - Readiness (can we serve traffic?)
"""
import logging
from datetime import datetime, timezone
from typing import Optional

import httpx
from django.conf import settings
from django.http import JsonResponse
from django.views.decorators.http import require_GET
from django.views.decorators.csrf import csrf_exempt

from apps.rag.embeddings import get_embedder
from .gateway import ConfigError, REST_PREFIX, get_store_config

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


def check_store(transport: Optional[httpx.BaseTransport] = None) -> tuple[str, bool]:
    """Check that the Supabase REST endpoint answers."""
    try:
        config = get_store_config()
    except ConfigError as e:
        return f'error: {e}', False

    try:
        with httpx.Client(timeout=5.0, transport=transport) as client:
            response = client.get(f'{config.url}{REST_PREFIX}/', headers={'apikey': config.anon_key})
        if response.status_code >= 500:
            return f'status: {response.status_code}', False
        return 'ok', True
    except httpx.HTTPError as e:
        logger.error(f"Store health check failed: {e}")
        return f'error: {str(e)[:50]}', False


def check_embedding_model() -> tuple[str, bool]:
    """Check that query embeddings can be served without waiting on a load."""
    embedder = get_embedder()
    if embedder.is_ready:
        return 'ok', True
    if getattr(embedder, 'is_loading', False):
        return 'loading', False
    last_error = getattr(embedder, 'last_error', None)
    if last_error is not None:
        return f'error: {str(last_error)[:50]}', False
    # Not loaded yet; the first chat request loads it synchronously.
    return 'not_loaded', True


def check_ollama(transport: Optional[httpx.BaseTransport] = None) -> tuple[str, bool]:
    """
    Check Ollama connectivity (optional, degrades gracefully).

    Ollama being down shouldn't prevent listing or uploading documents.
    """
    try:
        ollama_url = getattr(settings, 'OLLAMA_BASE_URL', 'http://ollama:11434')
        with httpx.Client(timeout=5.0, transport=transport) as client:
            response = client.get(f'{ollama_url}/api/version')
            if response.status_code == 200:
                return 'ok', True
            return f'status: {response.status_code}', True  # Still "ok" - Ollama is reachable
    except httpx.HTTPError as e:
        logger.warning(f"Ollama health check failed: {e}")
        # Ollama failure is not critical for readiness
        return f'degraded: {str(e)[:30]}', True


def uses_ollama() -> bool:
    return (
        getattr(settings, 'LLM_PROVIDER', 'openai') == 'ollama'
        or getattr(settings, 'EMBEDDING_MODE', 'local') == 'remote'
    )


@csrf_exempt
@require_GET
def readyz(request):
    """
    Readiness probe endpoint.

    Returns 200 only if all critical dependencies are reachable.
    Used to determine if the pod should receive traffic.
    """
    checks = {}
    all_ok = True

    # Check Supabase (critical)
    status, ok = check_store()
    checks['store'] = status
    if not ok:
        all_ok = False

    # Check embedding model (critical while a preload is running or has failed)
    status, ok = check_embedding_model()
    checks['embedding'] = status
    if not ok:
        all_ok = False

    # Check Ollama (optional - doesn't block readiness)
    if uses_ollama():
        status, _ = check_ollama()
        checks['ollama'] = status

    response_data = {
        'status': 'ready' if all_ok else 'not_ready',
        'timestamp': get_timestamp(),
        'checks': checks
    }

    return JsonResponse(response_data, status=200 if all_ok else 503)
