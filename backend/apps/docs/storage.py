"""
Object storage service for document uploads.

Talks to Supabase Storage through the request's StoreGateway, so bucket
policies apply to the calling user.
"""
import logging
from typing import List, Optional
from urllib.parse import quote

import httpx

from apps.store.gateway import StoreGateway, STORAGE_PREFIX

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


def _object_path(key: str) -> str:
    return quote(key, safe='/')


class ObjectStorage:
    """
    Supabase Storage bucket client.

    Objects are addressed by key inside the configured bucket
    (e.g. "<uuid>/notes.md").
    """

    def __init__(self, gateway: StoreGateway, bucket: Optional[str] = None):
        self.gateway = gateway
        self.bucket = bucket or gateway.bucket

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            with self.gateway.client() as client:
                response = client.request(method, f"{STORAGE_PREFIX}{path}", **kwargs)
        except httpx.TimeoutException:
            raise StorageError("Storage request timed out")
        except httpx.RequestError as e:
            raise StorageError(f"Could not connect to storage: {e}")

        if response.is_error:
            raise StorageError(
                f"Storage error {response.status_code}: {StoreGateway.error_detail(response)}"
            )
        return response

    def upload(self, key: str, data: bytes, content_type: str = 'application/octet-stream') -> str:
        """
        Store bytes under a key.

        Returns:
            The key the object was stored under

        Raises:
            StorageError: If the object cannot be stored
        """
        self._request(
            'POST',
            f"/object/{self.bucket}/{_object_path(key)}",
            content=data,
            headers={'Content-Type': content_type, 'x-upsert': 'false'},
        )
        logger.info(f"Stored object: {key} ({len(data)} bytes)")
        return key

    def remove(self, keys: List[str]) -> None:
        """
        Delete objects by key.

        Raises:
            StorageError: If the removal request fails
        """
        self._request('DELETE', f"/object/{self.bucket}", json={'prefixes': keys})
        logger.info(f"Removed objects: {', '.join(keys)}")

    def create_signed_url(self, key: str, ttl_seconds: int) -> str:
        """
        Create a time-limited download URL for an object.

        Raises:
            StorageError: If signing fails
        """
        response = self._request(
            'POST',
            f"/object/sign/{self.bucket}/{_object_path(key)}",
            json={'expiresIn': ttl_seconds},
        )
        try:
            signed_path = response.json().get('signedURL')
        except (ValueError, AttributeError):
            signed_path = None

        if not signed_path:
            raise StorageError("Storage returned no signed URL")

        return f"{self.gateway.config.url}{STORAGE_PREFIX}{signed_path}"
