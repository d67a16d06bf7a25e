"""Memory-bounded embedding cache shared by the embedder."""

import hashlib
from collections import OrderedDict
from threading import Lock
from typing import List, Optional, Tuple


class EmbeddingCache:
    """Thread-safe LRU cache for embeddings with size limit.

    Entries are keyed by ``(model, sha256(text))`` so two texts sharing a
    prefix never collide and vectors from different models never mix.
    """

    def __init__(self, max_size: int = 10000):
        self._cache: "OrderedDict[Tuple[str, str], List[float]]" = OrderedDict()
        self._max_size = max(1, max_size)
        self._lock = Lock()
        self.hits = 0
        self.misses = 0

    def add(self, model: str, text: str, embedding: List[float]) -> None:
        """Add an embedding to the cache with LRU eviction."""
        key = self._make_key(model, text)
        with self._lock:
            if key in self._cache:
                self._cache.move_to_end(key)
            self._cache[key] = list(embedding)
            while len(self._cache) > self._max_size:
                self._cache.popitem(last=False)

    def get(self, model: str, text: str) -> Optional[List[float]]:
        """Retrieve an embedding from the cache, updating access order."""
        key = self._make_key(model, text)
        with self._lock:
            embedding = self._cache.get(key)
            if embedding is None:
                self.misses += 1
                return None
            self._cache.move_to_end(key)
            self.hits += 1
            return list(embedding)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self.hits = 0
            self.misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    @staticmethod
    def _make_key(model: str, text: str) -> Tuple[str, str]:
        return model, hashlib.sha256(text.encode("utf-8")).hexdigest()
