"""
RAG chat view.

POST /chat embeds the latest question (unless the client already did),
retrieves matching document sections, and relays the model's answer as a
plain-text stream.
"""
import json
import logging
from typing import List, Optional

from asgiref.sync import sync_to_async
from django.core.handlers.asgi import ASGIRequest
from django.http import HttpResponse, JsonResponse, StreamingHttpResponse
from django.views import View
from django.views.decorators.csrf import csrf_exempt
from django.utils.decorators import method_decorator

from apps.authn.middleware import authenticate, AuthError
from apps.authn.audit import audit_auth_rejected, audit_rag_query
from apps.store.gateway import StoreGateway, ConfigError, get_store_config
from apps.rag.chat import (
    MessageValidationError,
    assemble_messages,
    last_user_message,
    parse_messages,
)
from apps.rag.embeddings import (
    EmbeddingError,
    ModelUnavailable,
    QueryValidationError,
    embed_query,
    normalize_query,
)
from apps.rag.llm_client import (
    CompletionStream,
    GenerationError,
    StreamState,
    get_llm_client,
)
from apps.rag.retrieval import RetrievalError, SimilarityRetriever

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Headers': 'authorization, x-client-info, apikey, content-type',
}

RETRIEVAL_ERROR_MESSAGE = 'There was an error reading your documents, please try again.'


def with_cors(response: HttpResponse) -> HttpResponse:
    for header, value in CORS_HEADERS.items():
        response[header] = value
    return response


def error_response(message: str, status: int, code: Optional[str] = None) -> HttpResponse:
    data = {'error': message}
    if code:
        data['code'] = code
    return with_cors(JsonResponse(data, status=status))


def parse_embedding(raw) -> Optional[List[float]]:
    """
    Accept a query embedding as a JSON list or a JSON-encoded string.

    Returns None when the client sent none.

    Raises:
        ValueError: If the value is not a list of numbers
    """
    if raw is None:
        return None
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            raise ValueError("embedding must be a list of numbers")
    if not isinstance(raw, list) or not raw:
        raise ValueError("embedding must be a list of numbers")
    if not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in raw):
        raise ValueError("embedding must be a list of numbers")
    return [float(v) for v in raw]


def relay(stream: CompletionStream):
    """
    Yield completion fragments to the client.

    A generation failure ends the body; fragments already sent stay with
    the client. If the client goes away mid-answer, the upstream stream is
    cancelled.
    """
    try:
        for fragment in stream:
            yield fragment
    except GenerationError as e:
        logger.error(f"Chat answer ended early after {stream.fragment_count} fragments: {e}")
    finally:
        if stream.state is StreamState.STREAMING:
            stream.cancel()


def read_fragment(stream: CompletionStream) -> Optional[str]:
    """Next fragment, or None once the stream has ended."""
    return next(stream, None)


async def arelay(stream: CompletionStream):
    """
    Async counterpart of relay for ASGI servers.

    Each blocking read runs on a worker thread so every fragment is sent as
    soon as it arrives. A client disconnect cancels the response task, which
    cancels the upstream stream.
    """
    read = sync_to_async(read_fragment, thread_sensitive=False)
    try:
        while True:
            try:
                fragment = await read(stream)
            except GenerationError as e:
                logger.error(f"Chat answer ended early after {stream.fragment_count} fragments: {e}")
                return
            if fragment is None:
                return
            yield fragment
    finally:
        if stream.state is StreamState.STREAMING:
            stream.cancel()


def answer_body(request, stream: CompletionStream):
    """Response body for the server the request came through."""
    if isinstance(request, ASGIRequest):
        return arelay(stream)
    return relay(stream)


@method_decorator(csrf_exempt, name='dispatch')
class ChatView(View):
    """
    POST /chat

    Request body:
        {
            "messages": [{"role": "user", "content": "What is in my notes?"}],
            "embedding": [0.01, ...]   // optional, list or JSON string
        }

    Response: text/plain stream of the assistant's answer.
    """

    http_method_names = ['post', 'options']

    def options(self, request, *args, **kwargs):
        return with_cors(HttpResponse('ok'))

    def http_method_not_allowed(self, request, *args, **kwargs):
        return with_cors(super().http_method_not_allowed(request, *args, **kwargs))

    def post(self, request):
        try:
            get_store_config()
        except ConfigError as e:
            return error_response(str(e), 500, 'CONFIG_ERROR')

        try:
            authenticate(request)
        except AuthError as e:
            audit_auth_rejected(request, str(e))
            return error_response(str(e), 500, 'AUTH_ERROR')

        try:
            body = json.loads(request.body)
        except json.JSONDecodeError:
            return error_response('Invalid JSON', 400, 'INVALID_JSON')

        if not isinstance(body, dict):
            return error_response('Invalid JSON', 400, 'INVALID_JSON')

        try:
            messages = parse_messages(body.get('messages'))
            query_vector = parse_embedding(body.get('embedding'))
        except (MessageValidationError, ValueError) as e:
            return error_response(str(e), 400, 'VALIDATION_ERROR')

        try:
            llm = get_llm_client()
        except ConfigError as e:
            return error_response(str(e), 500, 'CONFIG_ERROR')

        if query_vector is None:
            try:
                query_vector = embed_query(normalize_query(last_user_message(messages)))
            except QueryValidationError as e:
                return error_response(str(e), 400, 'VALIDATION_ERROR')
            except ModelUnavailable as e:
                logger.warning(f"Embedding model unavailable: {e}")
                return error_response(
                    'Embedding model is still loading, please try again shortly.',
                    503,
                    'MODEL_UNAVAILABLE'
                )
            except EmbeddingError as e:
                logger.error(f"Query embedding failed: {e}")
                return error_response('Failed to embed question', 500, 'EMBEDDING_ERROR')

        try:
            retriever = SimilarityRetriever(StoreGateway(request.authorization))
            sections = retriever.retrieve(query_vector)
        except RetrievalError as e:
            logger.error(f"Retrieval failed: {e}")
            return error_response(RETRIEVAL_ERROR_MESSAGE, 500, 'RETRIEVAL_ERROR')
        except Exception as e:
            logger.exception(f"Unexpected retrieval error: {e}")
            return error_response('Internal server error', 500, 'INTERNAL_ERROR')

        logger.info(f"Chat request: {len(messages)} messages, {len(sections)} sections retrieved")
        audit_rag_query(request, len(messages), len(sections))

        stream = llm.generate(assemble_messages(sections, messages))

        response = StreamingHttpResponse(answer_body(request, stream), content_type='text/plain; charset=utf-8')
        response['Cache-Control'] = 'no-cache'
        response['X-Accel-Buffering'] = 'no'  # Disable nginx buffering
        return with_cors(response)
