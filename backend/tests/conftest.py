"""
Shared fixtures for the backend test suite.

No test touches a real store, model or LLM provider: HTTP collaborators
are replaced with httpx.MockTransport and the embedding model with a fake
loader.
"""
import asyncio

import httpx
import jwt
import pytest
from asgiref.sync import async_to_sync
from django.core.handlers.asgi import ASGIHandler

from apps.rag.embeddings import reset_embedder
from apps.rag.llm_client import reset_llm_client
from apps.store.gateway import StoreConfig, StoreGateway

STORE_URL = 'https://project.supabase.co'
ANON_KEY = 'anon-key'
JWT_SECRET = 'super-secret-jwt-key-for-tests-only'


@pytest.fixture(autouse=True)
def store_settings(settings):
    settings.SUPABASE_URL = STORE_URL
    settings.SUPABASE_ANON_KEY = ANON_KEY
    settings.SUPABASE_JWT_SECRET = ''
    settings.STORAGE_BUCKET = 'files'
    settings.MATCH_THRESHOLD = 0.8
    settings.MATCH_LIMIT = 5
    settings.EMBEDDING_MODE = 'local'
    settings.EMBEDDING_PRELOAD = False
    settings.LLM_PROVIDER = 'openai'
    settings.OPENAI_API_KEY = 'sk-test'
    settings.OPENAI_BASE_URL = 'https://api.openai.test/v1'
    settings.OPENAI_MODEL = 'gpt-3.5-turbo-0125'
    settings.CHAT_MAX_TOKENS = 1024
    settings.RAG_SYSTEM_PROMPT = ''
    return settings


@pytest.fixture(autouse=True)
def reset_singletons():
    reset_embedder()
    reset_llm_client()
    yield
    reset_embedder()
    reset_llm_client()


def make_token(secret: str = JWT_SECRET, **claims) -> str:
    payload = {'sub': 'user-123', 'email': 'user@example.com', 'role': 'authenticated', 'aud': 'authenticated'}
    payload.update(claims)
    return jwt.encode(payload, secret, algorithm='HS256')


@pytest.fixture
def token():
    return make_token()


@pytest.fixture
def auth_header(token):
    return f'Bearer {token}'


class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every request it handled, in order."""

    def __init__(self, handler):
        self.requests = []

        def record(request):
            self.requests.append(request)
            return handler(request)

        super().__init__(record)


@pytest.fixture
def make_gateway():
    def factory(handler, authorization='Bearer user-token'):
        transport = RecordingTransport(handler)
        gateway = StoreGateway(
            authorization,
            config=StoreConfig(url=STORE_URL, anon_key=ANON_KEY, bucket='files'),
            transport=transport,
        )
        return gateway, transport

    return factory


@pytest.fixture
def token_factory():
    return make_token


@pytest.fixture
def jwt_secret():
    return JWT_SECRET


class ASGIExchange:
    """
    One HTTP request driven through Django's ASGI handler.

    Records every message the application sends. on_chunk is called with each
    non-empty body chunk as it is sent; with disconnect_after_first_chunk the
    client goes away as soon as the first chunk arrives.
    """

    def __init__(self, method, path, body=b'', headers=None, query_string=b'',
                 on_chunk=None, disconnect_after_first_chunk=False):
        self.scope = {
            'type': 'http',
            'asgi': {'version': '3.0'},
            'http_version': '1.1',
            'method': method,
            'scheme': 'http',
            'path': path,
            'raw_path': path.encode(),
            'root_path': '',
            'query_string': query_string,
            'headers': [(b'host', b'testserver'), (b'content-length', str(len(body)).encode())] + [
                (name.lower().encode(), value.encode()) for name, value in (headers or {}).items()
            ],
            'client': ('127.0.0.1', 50000),
            'server': ('testserver', 80),
        }
        self.body = body
        self.on_chunk = on_chunk
        self.disconnect_after_first_chunk = disconnect_after_first_chunk
        self.messages = []
        self._body_sent = False
        self._first_chunk = None

    async def run(self):
        self._first_chunk = asyncio.Event()
        await ASGIHandler()(self.scope, self.receive, self.send)

    async def receive(self):
        if not self._body_sent:
            self._body_sent = True
            return {'type': 'http.request', 'body': self.body, 'more_body': False}
        if self.disconnect_after_first_chunk:
            await self._first_chunk.wait()
            return {'type': 'http.disconnect'}
        # Client stays connected until the application is done
        await asyncio.Event().wait()

    async def send(self, message):
        self.messages.append(message)
        if message['type'] == 'http.response.body' and message.get('body'):
            if self.on_chunk is not None:
                self.on_chunk(message['body'])
            self._first_chunk.set()

    @property
    def status(self):
        return next(m['status'] for m in self.messages if m['type'] == 'http.response.start')

    @property
    def headers(self):
        start = next(m for m in self.messages if m['type'] == 'http.response.start')
        return {name.decode().lower(): value.decode() for name, value in start['headers']}

    @property
    def chunks(self):
        return [
            m['body'] for m in self.messages
            if m['type'] == 'http.response.body' and m.get('body')
        ]


@pytest.fixture
def asgi_request():
    """Run one request through the ASGI application; returns the ASGIExchange."""
    def run(method, path, **kwargs):
        exchange = ASGIExchange(method, path, **kwargs)
        async_to_sync(exchange.run)()
        return exchange

    return run
