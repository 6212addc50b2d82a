import logging
from typing import List, Optional

from memgate.embeddings.base import BaseEmbedder
from memgate.exceptions import ExternalUnavailable

logger = logging.getLogger(__name__)


class OpenAIEmbedder(BaseEmbedder):
    def __init__(self, config: Optional[dict] = None):
        super().__init__(config)
        from openai import OpenAI

        timeout = self.config.get("timeout", 30)
        self.client = OpenAI(timeout=timeout)
        self.model = self.config.get("model", "text-embedding-3-small")

    def embed(self, text: str) -> List[float]:
        try:
            response = self.client.embeddings.create(model=self.model, input=text)
            return response.data[0].embedding
        except Exception as exc:
            logger.error("OpenAI embedding failed (model=%s): %s", self.model, exc)
            raise ExternalUnavailable(
                "embedding_comparator", f"OpenAI embedding failed (model={self.model}): {exc}"
            ) from exc

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Native batch embedding: single API call for N texts."""
        if not texts:
            return []
        if len(texts) == 1:
            return [self.embed(texts[0])]
        try:
            response = self.client.embeddings.create(model=self.model, input=texts)
            sorted_data = sorted(response.data, key=lambda d: d.index)
            return [d.embedding for d in sorted_data]
        except Exception as exc:
            logger.warning("OpenAI batch embedding failed, falling back to sequential: %s", exc)
            return [self.embed(t) for t in texts]
