"""Semantic comparators for the last resolver stage.

The resolver only depends on the :class:`SemanticComparator` protocol, so
callers can plug in any scoring function (raw cosine, a calibrated model).
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from typing import Dict, List, Protocol, Sequence

from memgate.embeddings.base import BaseEmbedder
from memgate.utils.math import clamp_unit, cosine_similarity


class SemanticComparator(Protocol):
    def score(self, query: str, candidates: Sequence[str]) -> List[float]:
        """Similarity of *query* to each candidate, each in [0, 1]."""
        ...


class EmbeddingComparator:
    """Cosine similarity over embeddings, clamped to [0, 1].

    Embeddings are cached per text (LRU, ``cache_size`` entries).
    """

    def __init__(self, embedder: BaseEmbedder, cache_size: int = 2048):
        self.embedder = embedder
        self._cache_size = max(0, int(cache_size))
        self._cache: "OrderedDict[str, List[float]]" = OrderedDict()
        self._lock = threading.Lock()

    def _embed_all(self, texts: Sequence[str]) -> List[List[float]]:
        known: Dict[str, List[float]] = {}
        missing: List[str] = []
        with self._lock:
            for text in texts:
                if text in self._cache:
                    self._cache.move_to_end(text)
                    known[text] = self._cache[text]
                elif text not in missing:
                    missing.append(text)
        if missing:
            fresh = self.embedder.embed_batch(missing)
            with self._lock:
                for text, vector in zip(missing, fresh):
                    known[text] = vector
                    self._cache[text] = vector
                    while len(self._cache) > self._cache_size:
                        self._cache.popitem(last=False)
        return [known[text] for text in texts]

    def score(self, query: str, candidates: Sequence[str]) -> List[float]:
        if not candidates:
            return []
        vectors = self._embed_all([query, *candidates])
        query_vec, candidate_vecs = vectors[0], vectors[1:]
        return [clamp_unit(cosine_similarity(query_vec, vec)) for vec in candidate_vecs]


def create_embedder(provider: str, config: dict) -> BaseEmbedder:
    if provider == "simple":
        from memgate.embeddings.simple import SimpleEmbedder

        return SimpleEmbedder(config)
    if provider == "openai":
        from memgate.embeddings.openai import OpenAIEmbedder

        return OpenAIEmbedder(config)
    raise ValueError(f"Unsupported embedder provider: {provider}")
