import logging
from typing import List, Optional, Sequence

import httpx

from labor_live.errors import SearchBackendError
from labor_live.main_utils import config
from labor_live.models import SearchResult

logger = logging.getLogger(__name__)

MIN_LIMIT = 1
MAX_LIMIT = 100


class SearchClient:
    """
    Async client for the document search backend.

    Endpoints:
        POST /api/search  {query_vector: float[768], limit?: 1..100} -> {results, count}
        GET  /api/health  -> {status, collection, ...}
    """
    def __init__(self, base_url: str = config.BACKEND_URL, timeout: float = config.SEARCH_TIMEOUT,
                 client: Optional[httpx.AsyncClient] = None,
                 dimensions: int = config.EMBEDDING_DIMENSIONS):
        self.base_url = base_url.rstrip("/")
        self.dimensions = dimensions
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
        logger.info(f"SearchClient initialized with backend URL: {self.base_url}")

    def _validate(self, query_vector: Sequence[float], limit: Optional[int]):
        if len(query_vector) != self.dimensions:
            raise ValueError(f"query_vector must have exactly {self.dimensions} dimensions")
        if limit is not None and not (MIN_LIMIT <= limit <= MAX_LIMIT):
            raise ValueError(f"limit must be a number between {MIN_LIMIT} and {MAX_LIMIT}")

    async def search(self, query_vector: Sequence[float], limit: Optional[int] = None) -> List[SearchResult]:
        """Vector similarity search. Results come back best match first."""
        self._validate(query_vector, limit)
        body = {"query_vector": [float(v) for v in query_vector]}
        if limit is not None:
            body["limit"] = limit

        data = await self._request("POST", f"{self.base_url}/api/search", json=body)
        results = [SearchResult.from_dict(item) for item in data.get("results") or []]
        logger.info(f"Search returned {len(results)} result(s)")
        return results

    async def health(self) -> dict:
        """Backend and collection status."""
        return await self._request("GET", f"{self.base_url}/api/health")

    async def _request(self, method: str, url: str, **kwargs) -> dict:
        try:
            response = await self._client.request(method, url, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            detail = _error_detail(e.response)
            logger.error(f"Search backend returned {e.response.status_code} for {method} {url}: {detail}")
            raise SearchBackendError(detail, status_code=e.response.status_code) from e
        except httpx.RequestError as e:
            logger.error(f"Could not reach search backend at {self.base_url}: {e}")
            raise SearchBackendError(f"Search backend unreachable: {e}") from e
        except ValueError as e:
            raise SearchBackendError(f"Search backend sent invalid JSON: {e}") from e

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    message = data.get("error") or f"HTTP {response.status_code}"
    if data.get("message"):
        message = f"{message}: {data['message']}"
    return message
