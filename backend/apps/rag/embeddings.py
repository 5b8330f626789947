"""
Embedding service for RAG queries.

Turns a user question into a fixed-length vector comparable with the
document_sections embeddings. Two backends are supported:

- local: a sentence-transformers model loaded once per process. Token
  embeddings are mean-pooled and L2-normalized here.
- remote: Ollama's embedding endpoint (one HTTP call per query).
"""
import logging
import re
import threading
import time
from typing import Any, Callable, List, Optional

import httpx
import numpy as np
from django.conf import settings

logger = logging.getLogger(__name__)

# Must match the dimension of document_sections.embedding
EMBEDDING_DIMENSION = 384

MAX_QUERY_LENGTH = 2000


class EmbeddingError(Exception):
    """Raised when embedding generation fails."""
    pass


class ModelUnavailable(EmbeddingError):
    """Raised when the embedding model has not finished initializing."""
    pass


class QueryValidationError(Exception):
    """Raised when query validation fails."""
    pass


def normalize_query(query: str) -> str:
    """
    Normalize a user query for embedding.

    - Strip leading/trailing whitespace
    - Collapse multiple whitespace to single space
    - Raise if empty

    Args:
        query: Raw user question

    Returns:
        Normalized query string

    Raises:
        QueryValidationError: If query is empty after normalization
    """
    if not query:
        raise QueryValidationError("Query cannot be empty")

    normalized = re.sub(r'\s+', ' ', query.strip())

    if not normalized:
        raise QueryValidationError("Query cannot be empty")

    if len(normalized) > MAX_QUERY_LENGTH:
        raise QueryValidationError(f"Query too long (max {MAX_QUERY_LENGTH} characters)")

    return normalized


def _to_numpy(values: Any) -> np.ndarray:
    """Convert a tensor or nested list to a float32 numpy array."""
    if hasattr(values, 'detach'):
        values = values.detach().cpu().numpy()
    return np.asarray(values, dtype=np.float32)


def mean_pool(token_embeddings: Any) -> np.ndarray:
    """
    Average token-level vectors into a single sentence vector.

    A 1-D input is treated as an already pooled vector.
    """
    array = _to_numpy(token_embeddings)
    if array.ndim == 1:
        return array
    if array.ndim != 2 or array.shape[0] == 0:
        raise EmbeddingError(f"Unexpected token embedding shape: {array.shape}")
    return array.mean(axis=0)


def l2_normalize(vector: Any) -> np.ndarray:
    """Scale a vector to unit length (zero vectors are returned unchanged)."""
    array = _to_numpy(vector)
    norm = float(np.linalg.norm(array))
    if norm == 0.0:
        return array
    return array / norm


def _check_dimension(vector: List[float]) -> None:
    """The similarity RPC only compares vectors of the stored dimension."""
    expected = getattr(settings, 'EMBEDDING_DIMENSION', EMBEDDING_DIMENSION)
    if len(vector) != expected:
        logger.error(f"Embedding dimension mismatch: expected {expected}, got {len(vector)}")
        raise EmbeddingError(
            f"Embedding has {len(vector)} dimensions, document sections use {expected}"
        )


def _load_sentence_transformer(model_name: str):
    """Load a sentence-transformers model on the best available device."""
    import torch
    from sentence_transformers import SentenceTransformer

    device = "cuda" if torch.cuda.is_available() else "cpu"
    logger.info(f"Loading embedding model {model_name} on {device}")
    return SentenceTransformer(model_name, device=device)


class LocalEmbeddingModel:
    """
    Process-wide feature-extraction model.

    Loading happens at most once at a time: concurrent first callers wait on
    the same lock and share the loaded model. While a background load is in
    progress, embed() raises ModelUnavailable instead of blocking.
    """

    def __init__(
        self,
        model_name: str,
        loader: Optional[Callable[[str], Any]] = None,
    ):
        self.model_name = model_name
        self._loader = loader or _load_sentence_transformer
        self._model = None
        self._last_error: Optional[Exception] = None
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_ready(self) -> bool:
        return self._model is not None

    @property
    def is_loading(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def last_error(self) -> Optional[Exception]:
        return self._last_error

    def load(self) -> None:
        """
        Load the model if it is not loaded yet.

        Raises:
            ModelUnavailable: If the model cannot be loaded
        """
        with self._lock:
            if self._model is not None:
                return

            start_time = time.time()
            try:
                self._model = self._loader(self.model_name)
            except Exception as e:
                self._last_error = e
                logger.error(f"Failed to load embedding model {self.model_name}: {e}")
                raise ModelUnavailable(f"Embedding model failed to load: {e}") from e

            self._last_error = None
            load_time_ms = (time.time() - start_time) * 1000
            logger.info(f"Embedding model {self.model_name} loaded in {load_time_ms:.0f}ms")

    def start_background_load(self) -> threading.Thread:
        """Begin loading in a daemon thread (idempotent)."""
        with self._lock:
            if self._thread is None and self._model is None:
                self._thread = threading.Thread(
                    target=self._background_load,
                    name='embedding-model-load',
                    daemon=True,
                )
                self._thread.start()
            return self._thread

    def _background_load(self) -> None:
        try:
            self.load()
        except ModelUnavailable:
            # Recorded in last_error; the next embed() call retries the load.
            pass
        finally:
            self._thread = None

    def embed(self, text: str) -> List[float]:
        """
        Generate a mean-pooled, L2-normalized embedding.

        Raises:
            ModelUnavailable: If the model is still loading or failed to load
            EmbeddingError: If inference fails or the vector has the wrong dimension
        """
        if self._model is None:
            if self.is_loading:
                raise ModelUnavailable("Embedding model is still loading")
            self.load()

        try:
            token_embeddings = self._model.encode(text, output_value='token_embeddings')
        except Exception as e:
            logger.error(f"Embedding inference failed: {e}")
            raise EmbeddingError(f"Embedding inference failed: {e}") from e

        vector = l2_normalize(mean_pool(token_embeddings)).tolist()
        _check_dimension(vector)
        logger.debug(f"Generated query embedding with {len(vector)} dimensions")
        return vector


class RemoteEmbeddingClient:
    """Embedding client backed by Ollama's /api/embeddings endpoint."""

    is_ready = True

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url or getattr(settings, 'OLLAMA_BASE_URL', 'http://ollama:11434')
        self.model_name = model or getattr(settings, 'OLLAMA_EMBED_MODEL', 'all-minilm')
        self.timeout = float(timeout or getattr(settings, 'OLLAMA_EMBED_TIMEOUT', 120))
        self._transport = transport

    def embed(self, text: str) -> List[float]:
        """
        Generate an embedding with a single Ollama call.

        Raises:
            EmbeddingError: If the Ollama call fails or the vector has the wrong dimension
        """
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(
                    f"{self.base_url}/api/embeddings",
                    json={
                        "model": self.model_name,
                        "prompt": text
                    }
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Ollama embedding request failed: {e}")
            raise EmbeddingError(f"Embedding service error: {e.response.status_code}")
        except httpx.RequestError as e:
            logger.error(f"Ollama connection error: {e}")
            raise EmbeddingError("Could not connect to embedding service")
        except ValueError as e:
            logger.error(f"Unexpected Ollama response format: {e}")
            raise EmbeddingError("Invalid response from embedding service")

        # Ollama /api/embeddings returns {"embedding": [...]}
        embedding = data.get("embedding") if isinstance(data, dict) else None
        if not embedding:
            raise EmbeddingError("Ollama returned empty embedding")

        vector = l2_normalize(embedding).tolist()
        _check_dimension(vector)
        return vector


# =============================================================================
# Shared instance
# =============================================================================

_embedder = None
_embedder_lock = threading.Lock()


def get_embedder():
    """
    Get the process-wide embedding client.

    Uses EMBEDDING_MODE to pick the backend:
    - "local" (default): sentence-transformers model in this process
    - "remote": Ollama embeddings endpoint
    """
    global _embedder

    if _embedder is not None:
        return _embedder

    with _embedder_lock:
        if _embedder is None:
            mode = getattr(settings, 'EMBEDDING_MODE', 'local').lower()
            if mode == 'remote':
                logger.info("Using Ollama for query embeddings")
                _embedder = RemoteEmbeddingClient()
            else:
                model_name = getattr(settings, 'EMBEDDING_MODEL', 'thenlper/gte-small')
                logger.info(f"Using local model {model_name} for query embeddings")
                _embedder = LocalEmbeddingModel(model_name)

    return _embedder


def reset_embedder():
    """Reset the shared embedder. Useful for testing."""
    global _embedder
    _embedder = None


def embed_query(query: str) -> List[float]:
    """
    Generate an embedding vector for a normalized user query.

    Raises:
        ModelUnavailable: If the local model is not ready
        EmbeddingError: If embedding fails
    """
    return get_embedder().embed(query)
