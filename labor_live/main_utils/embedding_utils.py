import logging
from typing import List

from google import genai
from google.genai import types

from labor_live.errors import EmbeddingError
from labor_live.main_utils import config

logger = logging.getLogger(__name__)


class QueryEmbedder:
    """
    Turns a search query into the vector the document index was built with.
    Uses the Gemini embedding endpoint so queries and stored chunks share a space.
    """
    def __init__(self, client: genai.Client, model_name: str = config.EMBEDDING_MODEL,
                 dimensions: int = config.EMBEDDING_DIMENSIONS):
        self.client = client
        self.model_name = model_name
        self.dimensions = dimensions

    async def embed(self, text: str) -> List[float]:
        """Generates an embedding vector for the given text."""
        if not text or not text.strip():
            raise EmbeddingError("Cannot embed an empty query")

        try:
            response = await self.client.aio.models.embed_content(
                model=self.model_name,
                contents=[text],
                config=types.EmbedContentConfig(output_dimensionality=self.dimensions),
            )
        except Exception as e:
            logger.error(f"Embedding failed for model {self.model_name}: {e}")
            raise EmbeddingError(f"Embedding request failed: {e}") from e

        embeddings = getattr(response, "embeddings", None) or []
        values = list(embeddings[0].values or []) if embeddings else []
        if not values:
            raise EmbeddingError("Embedding generation returned an empty vector")
        if len(values) != self.dimensions:
            raise EmbeddingError(
                f"Embedding has {len(values)} dimensions, expected {self.dimensions}"
            )
        return values
