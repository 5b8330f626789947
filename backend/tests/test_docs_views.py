"""
Tests for the document endpoints.

The store is a MockTransport behind a real StoreGateway, so the views,
orchestrator, lifecycle manager and storage client all run for real.
"""
import json
import threading
from unittest.mock import patch

import httpx
import pytest
from django.core.files.uploadedfile import SimpleUploadedFile
from django.test.client import BOUNDARY, MULTIPART_CONTENT, encode_multipart

from apps.store.gateway import StoreConfig, StoreGateway


class StoreStub:
    """Routes store requests to per-path responses."""

    def __init__(self):
        self.fail_names = set()
        self.storage_remove_status = 200
        self.documents = []
        self.requests = []
        self.transport = httpx.MockTransport(self.handle)

    def handle(self, request):
        self.requests.append(request)
        path = request.url.path
        if request.method == 'POST' and path.startswith('/storage/v1/object/sign/'):
            return httpx.Response(200, json={"signedURL": "/object/sign/files/abc/notes.md?token=t"})
        if request.method == 'POST' and path.startswith('/storage/v1/object/'):
            if any(path.endswith(f"/{name}") for name in self.fail_names):
                return httpx.Response(400, json={"message": "The resource already exists"})
            return httpx.Response(200, json={"Key": path})
        if request.method == 'DELETE' and path == '/storage/v1/object/files':
            return httpx.Response(self.storage_remove_status, json=[])
        if request.method == 'GET' and path == '/rest/v1/documents_with_storage_path':
            return httpx.Response(200, json=self.documents)
        if request.method == 'DELETE' and path == '/rest/v1/documents':
            return httpx.Response(204)
        return httpx.Response(404, json={"message": f"unexpected {request.method} {path}"})

    def gateway(self, authorization):
        return StoreGateway(
            authorization,
            config=StoreConfig(url='https://project.supabase.co', anon_key='anon-key'),
            transport=self.transport,
        )


@pytest.fixture
def store():
    stub = StoreStub()
    with patch('apps.docs.views.StoreGateway', side_effect=stub.gateway):
        yield stub


def upload(client, auth_header, *names, query=''):
    files = [SimpleUploadedFile(name, b"# heading\ntext", content_type='text/markdown') for name in names]
    return client.post(f'/api/docs/upload{query}', data={'files': files}, HTTP_AUTHORIZATION=auth_header)


class TestUploadView:
    """Tests for POST /api/docs/upload."""

    def test_requires_authorization(self, client, store):
        response = client.post('/api/docs/upload', data={})

        assert response.status_code == 401

    def test_no_files(self, client, auth_header, store):
        response = client.post('/api/docs/upload', data={}, HTTP_AUTHORIZATION=auth_header)

        assert response.status_code == 400
        assert response.json()['code'] == 'MISSING_FILE'

    def test_all_uploaded(self, client, auth_header, store):
        response = upload(client, auth_header, 'a.md', 'b.txt')

        data = response.json()
        assert response.status_code == 200
        assert data['successCount'] == 2
        assert data['message'] == 'Successfully uploaded 2 files!'
        assert data['navigateTo'] == '/chat'
        assert all(r.headers['authorization'] == auth_header for r in store.requests)

    def test_mixed_batch(self, client, auth_header, store):
        store.fail_names = {'b.md'}

        data = upload(client, auth_header, 'a.md', 'b.md').json()

        assert data['successCount'] == 1
        assert data['failCount'] == 1
        assert data['summary'] == 'mixed'
        assert data['message'] == 'Uploaded 1 file, 1 failed.'
        assert [o['fileName'] for o in data['outcomes']] == ['a.md', 'b.md']

    def test_all_failed(self, client, auth_header, store):
        store.fail_names = {'a.md'}

        data = upload(client, auth_header, 'a.md').json()

        assert data['summary'] == 'failure'
        assert data['refreshListing'] is False
        assert data['navigateTo'] is None

    def test_streaming_progress(self, client, auth_header, store):
        store.fail_names = {'b.md'}

        response = upload(client, auth_header, 'a.md', 'b.md', query='?stream=1')
        body = b''.join(response.streaming_content).decode()

        assert response['Content-Type'] == 'text/event-stream'
        events = [block.split('\n')[0] for block in body.strip().split('\n\n')]
        assert events == [
            'event: progress', 'event: file',
            'event: progress', 'event: file',
            'event: complete',
        ]
        complete = json.loads(body.strip().split('\n\n')[-1].split('data: ', 1)[1])
        assert complete['message'] == 'Uploaded 1 file, 1 failed.'

    def test_missing_store_config(self, client, auth_header, settings):
        settings.SUPABASE_ANON_KEY = ''

        response = upload(client, auth_header, 'a.md')

        assert response.status_code == 500
        assert response.json()['error'] == 'Missing environment variables.'


class TestUploadStreamOverASGI:
    """Tests for ?stream=1 uploads served through the ASGI handler."""

    def upload_request(self, asgi_request, auth_header, *names, **kwargs):
        files = [SimpleUploadedFile(name, b"# heading\ntext", content_type='text/markdown') for name in names]
        return asgi_request(
            'POST', '/api/docs/upload',
            body=encode_multipart(BOUNDARY, {'files': files}),
            headers={'content-type': MULTIPART_CONTENT, 'authorization': auth_header},
            query_string=b'stream=1',
            **kwargs
        )

    def test_progress_sent_before_later_files_upload(self, auth_header, store, asgi_request):
        first_event_sent = threading.Event()
        sent_before_second_upload = []

        def handle(request):
            if request.url.path.endswith('/b.md'):
                sent_before_second_upload.append(first_event_sent.wait(timeout=5))
            return store.handle(request)

        store.transport = httpx.MockTransport(handle)

        exchange = self.upload_request(
            asgi_request, auth_header, 'a.md', 'b.md',
            on_chunk=lambda chunk: first_event_sent.set(),
        )

        body = b''.join(exchange.chunks).decode()
        events = [block.split('\n')[0] for block in body.strip().split('\n\n')]
        assert exchange.status == 200
        assert exchange.headers['content-type'] == 'text/event-stream'
        assert sent_before_second_upload == [True]
        assert events == [
            'event: progress', 'event: file',
            'event: progress', 'event: file',
            'event: complete',
        ]

    def test_client_disconnect_does_not_stop_batch(self, auth_header, store, asgi_request):
        audited = threading.Event()

        with patch('apps.docs.views.audit_batch', side_effect=lambda *args: audited.set()) as mock_audit:
            self.upload_request(asgi_request, auth_header, 'a.md', 'b.md', 'c.md',
                                disconnect_after_first_chunk=True)
            assert audited.wait(timeout=5)

        batch = mock_audit.call_args[0][1]
        assert [o.file_name for o in batch.outcomes] == ['a.md', 'b.md', 'c.md']
        assert batch.success_count == 3
        uploads = [r for r in store.requests if r.url.path.startswith('/storage/v1/object/files/')]
        assert len(uploads) == 3


class TestListView:
    """Tests for GET /api/docs."""

    def test_lists_documents(self, client, auth_header, store):
        store.documents = [
            {"id": 1, "name": "a.md", "storage_object_path": "u/a.md", "created_at": "2024-01-01T00:00:00Z"},
        ]

        response = client.get('/api/docs/', HTTP_AUTHORIZATION=auth_header)

        assert response.status_code == 200
        assert response.json() == {'documents': [{
            'id': 1,
            'name': 'a.md',
            'storagePath': 'u/a.md',
            'createdAt': '2024-01-01T00:00:00+00:00',
        }]}

    def test_invalid_token_rejected(self, client, settings, store, token_factory, jwt_secret):
        settings.SUPABASE_JWT_SECRET = jwt_secret
        bad = token_factory(secret='a-completely-different-signing-key')

        response = client.get('/api/docs/', HTTP_AUTHORIZATION=f'Bearer {bad}')

        assert response.status_code == 401
        assert store.requests == []


class TestDeleteView:
    """Tests for POST /api/docs/<id>/delete."""

    def test_deletes_object_then_metadata(self, client, auth_header, store):
        response = client.post(
            '/api/docs/7/delete',
            data=json.dumps({'storagePath': 'abc/notes.md'}),
            content_type='application/json',
            HTTP_AUTHORIZATION=auth_header,
        )

        assert response.status_code == 200
        assert response.json()['storageRemoved'] is True
        assert [(r.method, r.url.path) for r in store.requests] == [
            ('DELETE', '/storage/v1/object/files'),
            ('DELETE', '/rest/v1/documents'),
        ]

    def test_missing_path(self, client, auth_header, store):
        response = client.post(
            '/api/docs/7/delete',
            data=json.dumps({'storagePath': None}),
            content_type='application/json',
            HTTP_AUTHORIZATION=auth_header,
        )

        assert response.status_code == 400
        assert response.json() == {'error': 'Cannot delete: file path not found.', 'code': 'MISSING_PATH'}
        assert store.requests == []

    def test_storage_failure_reported_not_fatal(self, client, auth_header, store):
        store.storage_remove_status = 500

        response = client.post(
            '/api/docs/7/delete',
            data=json.dumps({'storagePath': 'abc/notes.md'}),
            content_type='application/json',
            HTTP_AUTHORIZATION=auth_header,
        )

        assert response.status_code == 200
        assert response.json()['storageRemoved'] is False
        assert len(store.requests) == 2


class TestDownloadView:
    """Tests for GET /api/docs/download."""

    def test_signed_url(self, client, auth_header, store):
        response = client.get('/api/docs/download', {'path': 'abc/notes.md'}, HTTP_AUTHORIZATION=auth_header)

        assert response.status_code == 200
        assert response.json()['url'].startswith('https://project.supabase.co/storage/v1/object/sign/')

    def test_missing_path(self, client, auth_header, store):
        response = client.get('/api/docs/download', HTTP_AUTHORIZATION=auth_header)

        assert response.status_code == 400
        assert response.json()['code'] == 'MISSING_PATH'
