"""
Retrieval service for RAG queries.

Delegates nearest-neighbour search to the store's match_document_sections
RPC. The store sorts candidates by descending similarity and drops those
below the threshold; rows are returned here exactly as received.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional

import httpx
from django.conf import settings

from apps.store.gateway import StoreGateway, REST_PREFIX

logger = logging.getLogger(__name__)

MATCH_FUNCTION = 'match_document_sections'

# Defaults used when settings do not override them
DEFAULT_MATCH_THRESHOLD = 0.8
DEFAULT_MATCH_LIMIT = 5


class RetrievalError(Exception):
    """Raised when the similarity search RPC fails."""
    pass


@dataclass
class RetrievedSection:
    """A document section returned by the similarity search."""
    content: str
    similarity: Optional[float] = None

    def to_dict(self) -> dict:
        result = {"content": self.content}
        if self.similarity is not None:
            result["similarity"] = round(self.similarity, 4)
        return result


class SimilarityRetriever:
    """
    Calls the match_document_sections RPC on behalf of one caller.

    The caller's Authorization header travels with the gateway, so the
    store applies row-level security to the search.
    """

    def __init__(self, gateway: StoreGateway):
        self.gateway = gateway

    def retrieve(
        self,
        query_vector: List[float],
        threshold: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> List[RetrievedSection]:
        """
        Retrieve the sections most similar to a query vector.

        Args:
            query_vector: Query embedding (same dimension as the sections)
            threshold: Minimum similarity in [0, 1], passed to the RPC unchanged
            limit: Maximum number of rows

        Returns:
            Sections in the order returned by the store. An empty list means
            no section matched.

        Raises:
            ValueError: If threshold or limit is out of range
            RetrievalError: On transport, RPC or response-format errors
        """
        if threshold is None:
            threshold = getattr(settings, 'MATCH_THRESHOLD', DEFAULT_MATCH_THRESHOLD)
        if limit is None:
            limit = getattr(settings, 'MATCH_LIMIT', DEFAULT_MATCH_LIMIT)

        if not 0.0 <= threshold <= 1.0:
            raise ValueError("threshold must be between 0 and 1")
        if not isinstance(limit, int) or limit < 1:
            raise ValueError("limit must be a positive integer")

        try:
            with self.gateway.client() as client:
                response = client.post(
                    f"{REST_PREFIX}/rpc/{MATCH_FUNCTION}",
                    params={"select": "content", "limit": str(limit)},
                    json={
                        "embedding": query_vector,
                        "match_threshold": threshold,
                    },
                )
        except httpx.TimeoutException:
            logger.error("Similarity search timed out")
            raise RetrievalError("Similarity search timed out")
        except httpx.RequestError as e:
            logger.error(f"Similarity search connection error: {e}")
            raise RetrievalError("Could not connect to document store")

        if response.is_error:
            detail = StoreGateway.error_detail(response)
            logger.error(f"Similarity search failed ({response.status_code}): {detail}")
            raise RetrievalError(f"Similarity search failed: {detail}")

        try:
            rows = response.json()
        except ValueError:
            logger.error("Similarity search returned invalid JSON")
            raise RetrievalError("Invalid response from document store")

        if not isinstance(rows, list):
            logger.error(f"Similarity search returned {type(rows).__name__}, expected list")
            raise RetrievalError("Invalid response from document store")

        sections = []
        for row in rows:
            if not isinstance(row, dict) or not isinstance(row.get("content"), str):
                raise RetrievalError("Invalid section row from document store")
            similarity = row.get("similarity")
            sections.append(RetrievedSection(
                content=row["content"],
                similarity=float(similarity) if similarity is not None else None,
            ))

        logger.info(
            f"Retrieved {len(sections)} sections "
            f"(threshold={threshold}, limit={limit})"
        )
        return sections
