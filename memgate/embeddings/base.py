from abc import ABC, abstractmethod
from typing import List, Optional


class BaseEmbedder(ABC):
    def __init__(self, config: Optional[dict] = None):
        self.config = config or {}

    @abstractmethod
    def embed(self, text: str) -> List[float]:
        pass

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed multiple texts. Default: sequential fallback."""
        return [self.embed(text) for text in texts]
