"""
Tests for liveness/readiness probes.
"""
from unittest.mock import patch

import httpx
import pytest

from apps.rag.embeddings import ModelUnavailable, get_embedder
from apps.store.health import check_ollama, check_store


class TestHealthz:

    def test_always_healthy(self, client):
        response = client.get('/healthz')

        assert response.status_code == 200
        assert response.json()['status'] == 'healthy'


class TestCheckStore:

    def test_reachable(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={})

        assert check_store(httpx.MockTransport(handler)) == ('ok', True)
        assert seen[0].headers['apikey'] == 'anon-key'

    def test_server_error(self):
        status, ok = check_store(httpx.MockTransport(lambda r: httpx.Response(503)))

        assert ok is False
        assert status == 'status: 503'

    def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        status, ok = check_store(httpx.MockTransport(handler))

        assert ok is False
        assert status.startswith('error:')

    def test_missing_config(self, settings):
        settings.SUPABASE_URL = ''

        assert check_store()[1] is False


class TestCheckOllama:

    def test_down_is_not_critical(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        status, ok = check_ollama(httpx.MockTransport(handler))

        assert ok is True
        assert status.startswith('degraded')


class TestReadyz:

    @patch('apps.store.health.check_store', return_value=('ok', True))
    def test_ready(self, mock_store, client):
        response = client.get('/readyz')

        assert response.status_code == 200
        assert response.json()['checks'] == {'store': 'ok', 'embedding': 'not_loaded'}

    @patch('apps.store.health.check_store', return_value=('error: refused', False))
    def test_store_down(self, mock_store, client):
        response = client.get('/readyz')

        assert response.status_code == 503
        assert response.json()['status'] == 'not_ready'

    @patch('apps.store.health.check_store', return_value=('ok', True))
    def test_embedding_model_failed(self, mock_store, client):
        def failing_loader(name):
            raise OSError("no weights")

        embedder = get_embedder()
        embedder._loader = failing_loader
        with pytest.raises(ModelUnavailable):
            embedder.load()

        response = client.get('/readyz')

        assert response.status_code == 503
        assert response.json()['checks']['embedding'].startswith('error')
