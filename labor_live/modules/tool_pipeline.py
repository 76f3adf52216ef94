import asyncio
import json
import logging
from typing import List, Sequence

from labor_live.errors import EmbeddingError, SearchBackendError
from labor_live.main_utils import config
from labor_live.models import PendingToolCall, SearchResult, ToolResponse

logger = logging.getLogger(__name__)

SEARCH_DOCUMENTS = "search_documents"
NO_RESULTS_TEXT = "No relevant documents found in the knowledge base for this query."


class ToolCallDispatcher:
    """
    Answers tool calls issued by the model mid-conversation.

    The model holds its turn until it sees a response for a call id, so
    dispatch() always produces exactly one ToolResponse per call, turning
    every failure into an error payload instead of raising.
    """

    def __init__(self, search_client, embedder, limit: int = config.SEARCH_LIMIT, excerpt_chars: int = 600):
        self.search_client = search_client
        self.embedder = embedder
        self.limit = limit
        self.excerpt_chars = excerpt_chars

    async def dispatch(self, call: PendingToolCall) -> ToolResponse:
        try:
            logger.info(f"Tool call {call.id}: {call.name}({json.dumps(call.args, default=str)[:200]})")
            if call.name != SEARCH_DOCUMENTS:
                raise ValueError(f"Unknown tool: {call.name}")
            query = (call.args or {}).get("query")
            if not isinstance(query, str) or not query.strip():
                raise ValueError("search_documents requires a non-empty 'query' string")

            text = await self.search_documents(query.strip())
            return ToolResponse(id=call.id, name=call.name, result=text)

        except asyncio.CancelledError:
            raise
        except (ValueError, EmbeddingError, SearchBackendError) as e:
            logger.warning(f"Tool call {call.id} ({call.name}) failed: {e}")
            return ToolResponse(id=call.id, name=call.name, error=str(e))
        except Exception as e:
            logger.exception(f"Unexpected error in tool call {call.id} ({call.name})")
            return ToolResponse(id=call.id, name=call.name, error=f"Tool execution failed: {e}")

    async def search_documents(self, query: str) -> str:
        vector = await self.embedder.embed(query)
        results = await self.search_client.search(vector, limit=self.limit)
        logger.info(f"search_documents('{query}') -> {len(results)} result(s)")
        return self.format_results(results)

    def format_results(self, results: Sequence[SearchResult]) -> str:
        """Renders search hits as one text block the model can read aloud from."""
        results = list(results)[: self.limit]
        if not results:
            return NO_RESULTS_TEXT

        blocks: List[str] = [f"Found {len(results)} relevant document excerpt(s):"]
        for rank, result in enumerate(results, start=1):
            header = f"{rank}. [{result.score * 100:.1f}% match] Source: {result.source}"
            if result.chunk_index is not None and result.total_chunks:
                header += f" (chunk {int(result.chunk_index) + 1}/{result.total_chunks})"
            blocks.append(f"{header}\n{self._excerpt(result.text)}")
        return "\n\n".join(blocks)

    def _excerpt(self, text: str) -> str:
        text = " ".join(text.split())
        if len(text) <= self.excerpt_chars:
            return text
        return text[: self.excerpt_chars].rstrip() + "..."
