"""
LLM Client Abstraction Layer.

Streams chat completions from an upstream provider and relays the text
fragments as they arrive:
- OpenAI-compatible APIs (Server-Sent Events, "[DONE]" marker)
- Ollama (newline-delimited JSON, "done" flag)

Sampling is deterministic (temperature 0) and output length is capped.
"""
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Sequence

import httpx
from django.conf import settings

from apps.rag.chat import ChatMessage
from apps.rag.retry import GENERATION_RETRY_POLICY, RetryExhausted, RetryPolicy, open_with_retry
from apps.store.gateway import ConfigError

logger = logging.getLogger(__name__)

# Fixed sampling parameters
TEMPERATURE = 0
DEFAULT_MAX_TOKENS = 1024


class GenerationError(Exception):
    """Raised when a completion request or stream fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class StreamState(str, Enum):
    """Lifecycle of a completion stream."""
    IDLE = 'idle'
    STREAMING = 'streaming'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


TERMINAL_STATES = (StreamState.COMPLETED, StreamState.FAILED, StreamState.CANCELLED)


@dataclass
class ModelConfig:
    """Per-request model settings."""
    model: str
    max_tokens: int = DEFAULT_MAX_TOKENS
    temperature: float = TEMPERATURE


class CompletionStream:
    """
    Lazy, cancellable sequence of completion fragments.

    Nothing is sent upstream until the first fragment is requested. Opening
    the upstream stream may be retried; once a fragment has been handed to
    the caller, errors end the stream in FAILED and fragments already
    delivered remain a valid partial answer.
    """

    def __init__(
        self,
        open_fragments: Callable[[], Iterator[str]],
        retry_policy: Optional[RetryPolicy] = GENERATION_RETRY_POLICY,
    ):
        self._open_fragments = open_fragments
        self._retry_policy = retry_policy
        self._iterator: Optional[Iterator[str]] = None
        self._pending: Optional[str] = None
        self._parts: List[str] = []
        self._callbacks: List[Callable[['CompletionStream'], None]] = []
        self.state = StreamState.IDLE
        self.error: Optional[GenerationError] = None

    def __iter__(self) -> 'CompletionStream':
        return self

    def __next__(self) -> str:
        if self.state in TERMINAL_STATES:
            raise StopIteration

        if self.state is StreamState.IDLE:
            self.state = StreamState.STREAMING
            try:
                self._iterator, self._pending = self._start()
            except GenerationError as e:
                if self.state is StreamState.CANCELLED:
                    raise StopIteration
                self._fail(e)
                raise
            except Exception as e:
                if self.state is StreamState.CANCELLED:
                    raise StopIteration
                logger.exception("Unexpected error while opening completion stream")
                error = GenerationError(f"Completion stream failed: {e}")
                self._fail(error)
                raise error from e

            if self.state is StreamState.CANCELLED:
                self._pending = None
                self._close_upstream()
                raise StopIteration

        if self._pending is not None:
            fragment, self._pending = self._pending, None
            self._parts.append(fragment)
            return fragment

        try:
            fragment = next(self._iterator)
        except StopIteration:
            if self.state is StreamState.STREAMING:
                self._complete()
            raise
        except GenerationError as e:
            if self.state is StreamState.CANCELLED:
                raise StopIteration
            self._fail(e)
            raise
        except Exception as e:
            if self.state is StreamState.CANCELLED:
                raise StopIteration
            logger.exception("Unexpected error while reading completion stream")
            error = GenerationError(f"Completion stream failed: {e}")
            self._fail(error)
            raise error from e

        if self.state is StreamState.CANCELLED:
            # Cancelled from another thread while this read was in flight
            self._close_upstream()
            raise StopIteration

        self._parts.append(fragment)
        return fragment

    @property
    def text(self) -> str:
        """All fragments delivered so far."""
        return ''.join(self._parts)

    @property
    def fragment_count(self) -> int:
        return len(self._parts)

    def on_complete(self, callback: Callable[['CompletionStream'], None]) -> None:
        """Register a callback fired only when the stream completes normally."""
        self._callbacks.append(callback)

    def cancel(self) -> None:
        """Stop consuming the upstream stream. No completion callback fires."""
        if self.state in TERMINAL_STATES:
            return
        self.state = StreamState.CANCELLED
        self._pending = None
        self._close_upstream()
        logger.info(f"Completion stream cancelled after {len(self._parts)} fragments")

    def _close_upstream(self) -> None:
        close = getattr(self._iterator, 'close', None)
        if close is None:
            return
        try:
            close()
        except ValueError:
            # A read is in progress on another thread; it closes the
            # upstream itself once it sees the CANCELLED state.
            logger.debug("Upstream busy; closing after the in-flight read")

    def _start(self):
        """Open the upstream stream and read its first fragment."""
        def attempt():
            iterator = self._open_fragments()
            try:
                first = next(iterator)
            except StopIteration:
                return iterator, None
            except BaseException:
                close = getattr(iterator, 'close', None)
                if close is not None:
                    close()
                raise
            return iterator, first

        if self._retry_policy is None:
            return attempt()

        try:
            return open_with_retry(attempt, self._retry_policy, exceptions=(GenerationError,))
        except RetryExhausted as e:
            raise GenerationError(
                f"LLM service temporarily unavailable after {e.attempts} attempts",
                status_code=getattr(e.last_exception, 'status_code', None),
            ) from e.last_exception

    def _complete(self) -> None:
        self.state = StreamState.COMPLETED
        logger.info(f"Completion stream finished: {len(self._parts)} fragments, {len(self.text)} chars")
        for callback in self._callbacks:
            callback(self)

    def _fail(self, error: GenerationError) -> None:
        self.state = StreamState.FAILED
        self.error = error
        logger.error(f"Completion stream failed after {len(self._parts)} fragments: {error}")


class BaseLLMClient(ABC):
    """Abstract base class for streaming LLM clients."""

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Return the model name being used."""
        pass

    @abstractmethod
    def stream_chat(
        self,
        messages: Sequence[ChatMessage],
        config: ModelConfig,
    ) -> Iterator[str]:
        """
        Yield non-empty text fragments from a streaming completion.

        Raises:
            GenerationError: If the request fails or the stream breaks
        """
        pass

    def model_config(self, max_tokens: Optional[int] = None) -> ModelConfig:
        """Default per-request settings for this client."""
        return ModelConfig(
            model=self.model_name,
            max_tokens=max_tokens or getattr(settings, 'CHAT_MAX_TOKENS', DEFAULT_MAX_TOKENS),
        )

    def generate(
        self,
        messages: Sequence[ChatMessage],
        config: Optional[ModelConfig] = None,
        retry_policy: Optional[RetryPolicy] = GENERATION_RETRY_POLICY,
    ) -> CompletionStream:
        """
        Create a lazy completion stream for the given messages.

        Temperature is always forced to 0 regardless of the config passed in.
        """
        config = config or self.model_config()
        config = ModelConfig(model=config.model, max_tokens=config.max_tokens, temperature=TEMPERATURE)
        logger.info(
            f"Preparing completion stream: model={config.model}, "
            f"max_tokens={config.max_tokens}, messages={len(messages)}"
        )
        return CompletionStream(
            lambda: self.stream_chat(messages, config),
            retry_policy=retry_policy,
        )


def parse_sse_data(line: str) -> Optional[str]:
    """
    Extract the payload of an SSE "data:" line.

    Returns None for blank lines, comments and other fields.
    """
    line = line.strip()
    if not line or line.startswith(':') or not line.startswith('data:'):
        return None
    return line[len('data:'):].strip()


class OpenAICompatibleClient(BaseLLMClient):
    """
    Streaming client for OpenAI-compatible APIs.

    Works with: OpenAI, Azure OpenAI, Groq, Together, local servers, etc.
    """

    DONE_MARKER = '[DONE]'

    def __init__(self, transport: Optional[httpx.BaseTransport] = None):
        self.api_key = getattr(settings, 'OPENAI_API_KEY', '')
        self.base_url = getattr(settings, 'OPENAI_BASE_URL', 'https://api.openai.com/v1')
        self.model = getattr(settings, 'OPENAI_MODEL', 'gpt-3.5-turbo-0125')
        self.timeout = getattr(settings, 'OPENAI_TIMEOUT', 120)
        self._transport = transport

        if not self.api_key:
            raise ConfigError("OPENAI_API_KEY not configured")

    @property
    def model_name(self) -> str:
        return self.model

    def stream_chat(
        self,
        messages: Sequence[ChatMessage],
        config: ModelConfig,
    ) -> Iterator[str]:
        logger.info(f"Calling OpenAI API (stream): model={config.model}, temp={config.temperature}")

        payload = {
            "model": config.model,
            "messages": [m.to_dict() for m in messages],
            "max_tokens": config.max_tokens,
            "temperature": config.temperature,
            "stream": True,
        }

        try:
            with httpx.Client(timeout=float(self.timeout), transport=self._transport) as client:
                with client.stream(
                    "POST",
                    f"{self.base_url}/chat/completions",
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                ) as response:
                    if response.is_error:
                        response.read()
                        logger.error(f"OpenAI HTTP error: {response.status_code} {response.text[:200]}")
                        raise GenerationError(
                            f"OpenAI API error: {response.status_code}",
                            status_code=response.status_code,
                        )

                    for line in response.iter_lines():
                        data = parse_sse_data(line)
                        if data is None:
                            continue
                        if data == self.DONE_MARKER:
                            return
                        fragment = self._parse_chunk(data)
                        if fragment:
                            yield fragment

        except httpx.TimeoutException:
            logger.error("OpenAI request timed out")
            raise GenerationError("OpenAI API timed out")
        except httpx.RequestError as e:
            logger.error(f"OpenAI connection error: {e}")
            raise GenerationError("Could not connect to OpenAI API")

        raise GenerationError("OpenAI stream ended without completion marker")

    @staticmethod
    def _parse_chunk(data: str) -> str:
        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            raise GenerationError("Invalid chunk in OpenAI stream")

        if chunk.get("error"):
            message = chunk["error"].get("message", "unknown error") if isinstance(chunk["error"], dict) else chunk["error"]
            raise GenerationError(f"OpenAI stream error: {message}")

        choices = chunk.get("choices") or []
        if not choices:
            return ""
        delta = choices[0].get("delta") or {}
        return delta.get("content") or ""


class OllamaClient(BaseLLMClient):
    """Streaming client for Ollama local inference."""

    def __init__(self, transport: Optional[httpx.BaseTransport] = None):
        self.base_url = getattr(settings, 'OLLAMA_BASE_URL', 'http://ollama:11434')
        self.model = getattr(settings, 'OLLAMA_CHAT_MODEL', 'llama3.2')
        self.timeout = getattr(settings, 'OLLAMA_CHAT_TIMEOUT', 600)
        self._transport = transport

    @property
    def model_name(self) -> str:
        return self.model

    def stream_chat(
        self,
        messages: Sequence[ChatMessage],
        config: ModelConfig,
    ) -> Iterator[str]:
        logger.info(f"Calling Ollama chat (stream): model={config.model}, temp={config.temperature}")

        payload = {
            "model": config.model,
            "messages": [m.to_dict() for m in messages],
            "stream": True,
            "options": {
                "temperature": config.temperature,
                "num_predict": config.max_tokens,
            }
        }

        try:
            with httpx.Client(timeout=float(self.timeout), transport=self._transport) as client:
                with client.stream("POST", f"{self.base_url}/api/chat", json=payload) as response:
                    if response.is_error:
                        response.read()
                        logger.error(f"Ollama HTTP error: {response.status_code}")
                        raise GenerationError(
                            f"Ollama service error: {response.status_code}",
                            status_code=response.status_code,
                        )

                    for line in response.iter_lines():
                        if not line.strip():
                            continue
                        try:
                            chunk: Dict = json.loads(line)
                        except json.JSONDecodeError:
                            raise GenerationError("Invalid chunk in Ollama stream")

                        if chunk.get("error"):
                            raise GenerationError(f"Ollama stream error: {chunk['error']}")

                        fragment = (chunk.get("message") or {}).get("content") or ""
                        if fragment:
                            yield fragment
                        if chunk.get("done"):
                            return

        except httpx.TimeoutException:
            logger.error("Ollama request timed out")
            raise GenerationError("Ollama service timed out")
        except httpx.RequestError as e:
            logger.error(f"Ollama connection error: {e}")
            raise GenerationError("Could not connect to Ollama")

        raise GenerationError("Ollama stream ended without done flag")


# =============================================================================
# Client Factory
# =============================================================================

_client_instance: Optional[BaseLLMClient] = None


def get_llm_client() -> BaseLLMClient:
    """
    Get the configured LLM client instance.

    Uses LLM_PROVIDER setting to determine which client to use:
    - "openai" (default): OpenAI or compatible API
    - "ollama": Local Ollama inference

    Raises:
        ConfigError: If the selected provider is missing credentials
    """
    global _client_instance

    if _client_instance is not None:
        return _client_instance

    provider = getattr(settings, 'LLM_PROVIDER', 'openai').lower()

    if provider == 'ollama':
        logger.info("Using Ollama for LLM inference")
        _client_instance = OllamaClient()
    else:
        logger.info("Using OpenAI-compatible API for LLM inference")
        _client_instance = OpenAICompatibleClient()

    return _client_instance


def reset_llm_client():
    """Reset the cached client instance. Useful for testing."""
    global _client_instance
    _client_instance = None
