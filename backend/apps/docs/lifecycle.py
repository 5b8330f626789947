"""
Document lifecycle: listing, deletion and download links.

Deletion is two-phase and ordered: the storage object is removed first,
then the metadata row. A failed storage removal is logged and deletion
continues, which can leave an orphaned object in storage. That window is
accepted and not reconciled here.
"""
import logging
from typing import Any, List, Optional

from django.conf import settings

from apps.store.gateway import StoreGateway
from .models import DeleteResult, Document
from .repository import DocumentRepository
from .storage import ObjectStorage, StorageError

logger = logging.getLogger(__name__)


class MissingPath(Exception):
    """Raised when an operation needs a storage path the document lacks."""
    pass


class DocumentLifecycleManager:
    """Coordinates object storage and document metadata for one caller."""

    def __init__(self, storage: ObjectStorage, repository: DocumentRepository):
        self.storage = storage
        self.repository = repository

    @classmethod
    def for_gateway(cls, gateway: StoreGateway) -> 'DocumentLifecycleManager':
        return cls(ObjectStorage(gateway), DocumentRepository(gateway))

    def list_documents(self) -> List[Document]:
        """Current documents as reported by the store (no caching)."""
        return self.repository.list_documents()

    def delete_document(self, document_id: Any, storage_path: Optional[str]) -> DeleteResult:
        """
        Delete a document's storage object, then its metadata row.

        Args:
            document_id: Document identifier
            storage_path: Storage key of the document's object

        Returns:
            DeleteResult; storage_removed is False when the object was left behind

        Raises:
            MissingPath: If storage_path is empty (nothing is deleted)
            MetadataError: If the metadata delete fails
        """
        if not storage_path:
            raise MissingPath("Cannot delete: file path not found.")

        storage_removed = True
        storage_error = None
        try:
            self.storage.remove([storage_path])
        except StorageError as e:
            storage_removed = False
            storage_error = str(e)
            logger.error(f"Storage delete error for {storage_path}: {e}")

        self.repository.delete_document(document_id)

        if not storage_removed:
            logger.warning(
                f"Document {document_id} deleted but storage object {storage_path} "
                f"was not removed (orphaned)"
            )

        return DeleteResult(
            document_id=document_id,
            storage_path=storage_path,
            storage_removed=storage_removed,
            storage_error=storage_error,
        )

    def download_url(self, storage_path: Optional[str], ttl_seconds: Optional[int] = None) -> str:
        """
        Create a signed download URL for a document's object.

        Raises:
            MissingPath: If storage_path is empty
            StorageError: If signing fails
        """
        if not storage_path:
            raise MissingPath("Cannot download: file path not found.")
        ttl = ttl_seconds or getattr(settings, 'SIGNED_URL_TTL', 60)
        return self.storage.create_signed_url(storage_path, ttl)
