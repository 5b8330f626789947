"""
Supabase gateway for PostgREST and Storage calls.

Every call made on behalf of a user carries that user's Authorization header
unchanged, so row-level security is enforced by the store and never
re-implemented here.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Optional

import httpx
from django.conf import settings

logger = logging.getLogger(__name__)

REST_PREFIX = '/rest/v1'
STORAGE_PREFIX = '/storage/v1'


class ConfigError(Exception):
    """Raised when required store settings are missing."""
    pass


@dataclass
class StoreConfig:
    """Connection settings for the Supabase project."""
    url: str
    anon_key: str
    bucket: str = 'files'
    timeout: float = 30.0


def get_store_config() -> StoreConfig:
    """
    Build the store configuration from Django settings.

    Raises:
        ConfigError: If SUPABASE_URL or SUPABASE_ANON_KEY is empty
    """
    url = getattr(settings, 'SUPABASE_URL', '')
    anon_key = getattr(settings, 'SUPABASE_ANON_KEY', '')

    if not url or not anon_key:
        missing = [
            name for name, value in (('SUPABASE_URL', url), ('SUPABASE_ANON_KEY', anon_key))
            if not value
        ]
        logger.error(f"Store configuration incomplete, missing: {', '.join(missing)}")
        raise ConfigError('Missing environment variables.')

    return StoreConfig(
        url=url.rstrip('/'),
        anon_key=anon_key,
        bucket=getattr(settings, 'STORAGE_BUCKET', 'files'),
        timeout=float(getattr(settings, 'STORE_TIMEOUT', 30)),
    )


class StoreGateway:
    """
    Request-scoped handle on the store.

    Holds the caller's Authorization header and hands out short-lived
    httpx clients pre-configured with the project URL and API key.
    """

    def __init__(
        self,
        authorization: str,
        config: Optional[StoreConfig] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.authorization = authorization
        self.config = config or get_store_config()
        self._transport = transport

    @property
    def bucket(self) -> str:
        return self.config.bucket

    def headers(self) -> Dict[str, str]:
        """Headers sent with every store request."""
        return {
            'apikey': self.config.anon_key,
            'Authorization': self.authorization,
        }

    def client(self) -> httpx.Client:
        """Create an httpx client bound to the project URL."""
        return httpx.Client(
            base_url=self.config.url,
            headers=self.headers(),
            timeout=self.config.timeout,
            transport=self._transport,
        )

    @staticmethod
    def error_detail(response: httpx.Response) -> str:
        """Best-effort extraction of an error message from a store response."""
        try:
            data = response.json()
        except ValueError:
            return response.text[:200] or f"HTTP {response.status_code}"

        if isinstance(data, dict):
            for key in ('message', 'error', 'msg', 'hint'):
                if data.get(key):
                    return str(data[key])
        return f"HTTP {response.status_code}"
