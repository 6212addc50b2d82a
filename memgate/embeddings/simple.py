"""Deterministic hashing embedder for local use and tests.

Character trigrams and word tokens are hashed into a fixed-size vector, so
names that share spelling land close together without any model download.
"""

import hashlib
import math
from typing import List, Optional

from memgate.core.matching import name_tokens
from memgate.embeddings.base import BaseEmbedder


class SimpleEmbedder(BaseEmbedder):
    def __init__(self, config: Optional[dict] = None):
        super().__init__(config)
        self.dims = int(self.config.get("dims", 256))

    def _bucket(self, feature: str) -> int:
        digest = hashlib.md5(feature.encode("utf-8")).digest()
        return int.from_bytes(digest[:4], "little") % self.dims

    def embed(self, text: str) -> List[float]:
        vector = [0.0] * self.dims
        tokens = name_tokens(text or "")
        for token in tokens:
            vector[self._bucket(f"w:{token}")] += 1.0
            padded = f"#{token}#"
            for i in range(len(padded) - 2):
                vector[self._bucket(f"c:{padded[i:i + 3]}")] += 0.5
        norm = math.sqrt(sum(v * v for v in vector))
        if norm:
            vector = [v / norm for v in vector]
        return vector
