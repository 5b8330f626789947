"""
Document metadata access through PostgREST.

Reads go through the documents_with_storage_path view; deletes target the
documents table, whose foreign keys cascade to document_sections.
"""
import logging
from typing import Any, List

import httpx

from apps.store.gateway import StoreGateway, REST_PREFIX
from .models import Document

logger = logging.getLogger(__name__)

DOCUMENTS_TABLE = 'documents'
DOCUMENTS_VIEW = 'documents_with_storage_path'


class MetadataError(Exception):
    """Raised when a document metadata query fails."""
    pass


class DocumentRepository:
    """Document metadata queries scoped to the calling user."""

    def __init__(self, gateway: StoreGateway):
        self.gateway = gateway

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            with self.gateway.client() as client:
                response = client.request(method, f"{REST_PREFIX}/{path}", **kwargs)
        except httpx.TimeoutException:
            raise MetadataError("Document query timed out")
        except httpx.RequestError as e:
            raise MetadataError(f"Could not connect to document store: {e}")

        if response.is_error:
            detail = StoreGateway.error_detail(response)
            logger.error(f"Document query failed ({response.status_code}): {detail}")
            raise MetadataError(f"Document query failed: {detail}")
        return response

    def list_documents(self) -> List[Document]:
        """
        Return every visible document, one row per document, in store order.

        Raises:
            MetadataError: If the query fails
        """
        response = self._request('GET', DOCUMENTS_VIEW, params={'select': '*'})
        try:
            rows = response.json()
        except ValueError:
            raise MetadataError("Invalid response from document store")

        if not isinstance(rows, list):
            raise MetadataError("Invalid response from document store")

        return [Document.from_row(row) for row in rows]

    def delete_document(self, document_id: Any) -> None:
        """
        Delete one document row. Sections are removed by the store's cascade.

        Raises:
            MetadataError: If the delete fails
        """
        self._request('DELETE', DOCUMENTS_TABLE, params={'id': f'eq.{document_id}'})
        logger.info(f"Deleted document metadata: {document_id}")
