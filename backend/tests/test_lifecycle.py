"""
Tests for document listing, deletion and download links.
"""
import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import httpx
import pytest

from apps.docs.lifecycle import DocumentLifecycleManager, MissingPath
from apps.docs.models import Document
from apps.docs.repository import DocumentRepository, MetadataError
from apps.docs.storage import ObjectStorage, StorageError


def mock_manager():
    storage = MagicMock(spec=ObjectStorage)
    repository = MagicMock(spec=DocumentRepository)
    parent = MagicMock()
    parent.attach_mock(storage, 'storage')
    parent.attach_mock(repository, 'repository')
    return DocumentLifecycleManager(storage, repository), storage, repository, parent


class TestDeleteDocument:
    """Tests for DocumentLifecycleManager.delete_document."""

    def test_removes_object_once_then_deletes_metadata(self):
        manager, storage, repository, parent = mock_manager()

        result = manager.delete_document(7, "abc/notes.md")

        assert [c[0] for c in parent.mock_calls] == ['storage.remove', 'repository.delete_document']
        storage.remove.assert_called_once_with(["abc/notes.md"])
        repository.delete_document.assert_called_once_with(7)
        assert result.storage_removed is True
        assert result.storage_error is None

    def test_storage_failure_still_deletes_metadata(self):
        manager, storage, repository, _ = mock_manager()
        storage.remove.side_effect = StorageError("Storage error 500: boom")

        result = manager.delete_document(7, "abc/notes.md")

        storage.remove.assert_called_once()
        repository.delete_document.assert_called_once_with(7)
        assert result.storage_removed is False
        assert "boom" in result.storage_error

    @pytest.mark.parametrize("path", [None, ""])
    def test_missing_path_has_no_side_effects(self, path):
        manager, storage, repository, _ = mock_manager()

        with pytest.raises(MissingPath):
            manager.delete_document(7, path)

        storage.remove.assert_not_called()
        repository.delete_document.assert_not_called()

    def test_metadata_failure_propagates(self):
        manager, storage, repository, _ = mock_manager()
        repository.delete_document.side_effect = MetadataError("Document query failed: denied")

        with pytest.raises(MetadataError):
            manager.delete_document(7, "abc/notes.md")
        storage.remove.assert_called_once()


class TestDownloadUrl:
    """Tests for signed download links."""

    def test_signed_url(self, settings):
        settings.SIGNED_URL_TTL = 60
        manager, storage, _, _ = mock_manager()
        storage.create_signed_url.return_value = "https://signed"

        assert manager.download_url("abc/notes.md") == "https://signed"
        storage.create_signed_url.assert_called_once_with("abc/notes.md", 60)

    def test_missing_path(self):
        manager, storage, _, _ = mock_manager()

        with pytest.raises(MissingPath):
            manager.download_url(None)
        storage.create_signed_url.assert_not_called()


class TestStoreRequests:
    """Tests for the wire requests made on deletion and listing."""

    def test_delete_wire_order(self, make_gateway):
        gateway, transport = make_gateway(lambda request: httpx.Response(200, json=[]))
        manager = DocumentLifecycleManager.for_gateway(gateway)

        manager.delete_document(42, "abc/notes.md")

        remove, delete = transport.requests
        assert remove.method == 'DELETE'
        assert remove.url.path == '/storage/v1/object/files'
        assert json.loads(remove.content) == {"prefixes": ["abc/notes.md"]}
        assert delete.method == 'DELETE'
        assert delete.url.path == '/rest/v1/documents'
        assert delete.url.params['id'] == 'eq.42'
        assert all(r.headers['authorization'] == 'Bearer user-token' for r in transport.requests)

    def test_storage_error_then_metadata_delete(self, make_gateway):
        def handler(request):
            if request.url.path.startswith('/storage'):
                return httpx.Response(500, json={"message": "storage down"})
            return httpx.Response(204)

        gateway, transport = make_gateway(handler)

        result = DocumentLifecycleManager.for_gateway(gateway).delete_document(42, "abc/notes.md")

        assert len(transport.requests) == 2
        assert result.storage_removed is False

    def test_list_documents(self, make_gateway):
        rows = [
            {"id": 1, "name": "a.md", "storage_object_path": "u1/a.md", "created_at": "2024-01-01T10:00:00Z"},
            {"id": 2, "name": "b.md", "storage_object_path": None, "created_at": "2024-01-02T10:00:00+00:00"},
        ]
        gateway, transport = make_gateway(lambda request: httpx.Response(200, json=rows))

        documents = DocumentLifecycleManager.for_gateway(gateway).list_documents()

        assert transport.requests[0].url.path == '/rest/v1/documents_with_storage_path'
        assert [d.name for d in documents] == ["a.md", "b.md"]
        assert documents[0].created_at == datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
        assert documents[1].storage_object_path is None

    def test_list_error(self, make_gateway):
        gateway, _ = make_gateway(lambda request: httpx.Response(401, json={"message": "JWT expired"}))

        with pytest.raises(MetadataError):
            DocumentLifecycleManager.for_gateway(gateway).list_documents()

    def test_signed_url_is_absolute(self, make_gateway):
        gateway, transport = make_gateway(
            lambda request: httpx.Response(200, json={"signedURL": "/object/sign/files/abc/notes.md?token=t"})
        )

        url = ObjectStorage(gateway).create_signed_url("abc/notes.md", 60)

        assert url == "https://project.supabase.co/storage/v1/object/sign/files/abc/notes.md?token=t"
        assert json.loads(transport.requests[0].content) == {"expiresIn": 60}

    def test_signed_url_missing(self, make_gateway):
        gateway, _ = make_gateway(lambda request: httpx.Response(200, json={}))

        with pytest.raises(StorageError):
            ObjectStorage(gateway).create_signed_url("abc/notes.md", 60)


class TestDocument:
    """Tests for the Document row type."""

    def test_to_dict(self):
        doc = Document(id=1, name="a.md", storage_object_path="u/a.md",
                       created_at=datetime(2024, 1, 1, tzinfo=timezone.utc))

        assert doc.to_dict() == {
            'id': 1,
            'name': 'a.md',
            'storagePath': 'u/a.md',
            'createdAt': '2024-01-01T00:00:00+00:00',
        }

    @pytest.mark.parametrize("created_at,microsecond", [
        ("2024-05-01T12:34:56.12345+00:00", 123450),
        ("2024-05-01T12:34:56.1+00:00", 100000),
        ("2024-05-01T12:34:56.1234+00:00", 123400),
    ])
    def test_from_row_trimmed_fractional_seconds(self, created_at, microsecond):
        doc = Document.from_row({"id": 1, "name": "a.md", "storage_object_path": "u/a.md",
                                 "created_at": created_at})

        assert doc.created_at == datetime(2024, 5, 1, 12, 34, 56, microsecond, tzinfo=timezone.utc)

    def test_from_row_without_timestamp(self):
        doc = Document.from_row({"id": 1, "name": "a.md", "storage_object_path": None})

        assert doc.created_at is None
        assert doc.to_dict()['createdAt'] is None
