"""Semantic retrieval over embedded chunks.

Candidate selection (filters, visibility, validation gate) is pushed down to
SQLite; scoring happens against a pluggable vector index. Embeddings whose
model differs from their knowledge base's declared model are stale and never
scored.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

import db
from env_validation import get_env_bool
from errors import InvalidParameters
from rag import Embedder, cosine_similarity, get_embedder
from schemas import SearchFilters, SearchResult

logger = logging.getLogger(__name__)

MIN_LIMIT = 1
MAX_LIMIT = 50


class VectorIndex(Protocol):
    """Storage for chunk vectors, queried against an explicit candidate set."""

    def upsert(self, records: Sequence[Mapping[str, Any]]) -> None:
        ...

    def delete(self, chunk_ids: Sequence[str]) -> None:
        ...

    def score(self, query_vector: Sequence[float], candidate_ids: Sequence[str]) -> Dict[str, float]:
        ...


class SQLiteVectorIndex:
    """Vectors live in the ``embeddings`` table next to their filter columns."""

    def upsert(self, records: Sequence[Mapping[str, Any]]) -> None:
        db.upsert_embeddings(records)

    def delete(self, chunk_ids: Sequence[str]) -> None:
        db.delete_embeddings(chunk_ids)

    def score(self, query_vector: Sequence[float], candidate_ids: Sequence[str]) -> Dict[str, float]:
        vectors = db.get_embedding_vectors(candidate_ids)
        return {chunk_id: cosine_similarity(query_vector, vector) for chunk_id, vector in vectors.items()}


class ChromaVectorIndex:
    """Persistent chromadb collection holding the vectors.

    The ``embeddings`` table still records model, filter columns and usage
    counters, so candidate selection and staleness checks stay in SQLite.
    """

    def __init__(self, path: str, collection_name: str = "edurag_chunks") -> None:
        import chromadb

        self.client = chromadb.PersistentClient(path=path)
        self.collection = self.client.get_or_create_collection(
            collection_name, metadata={"hnsw:space": "cosine"}
        )

    def upsert(self, records: Sequence[Mapping[str, Any]]) -> None:
        if not records:
            return
        db.upsert_embeddings(records)
        self.collection.upsert(
            ids=[record["chunk_id"] for record in records],
            embeddings=[list(record["vector"]) for record in records],
            metadatas=[
                {
                    "model": record["model"],
                    "subject": record.get("subject") or "",
                    "grade": record.get("grade") or "",
                    "difficulty": record.get("difficulty") or "",
                }
                for record in records
            ],
        )

    def delete(self, chunk_ids: Sequence[str]) -> None:
        if not chunk_ids:
            return
        db.delete_embeddings(chunk_ids)
        self.collection.delete(ids=list(chunk_ids))

    def score(self, query_vector: Sequence[float], candidate_ids: Sequence[str]) -> Dict[str, float]:
        if not candidate_ids:
            return {}
        found = self.collection.get(ids=list(candidate_ids), include=["embeddings"])
        return {
            chunk_id: cosine_similarity(query_vector, [float(value) for value in vector])
            for chunk_id, vector in zip(found["ids"], found["embeddings"])
        }


def build_vector_index() -> VectorIndex:
    backend = (os.getenv("RAG_VECTOR_BACKEND") or "sqlite").lower()
    if backend == "chroma":
        return ChromaVectorIndex(os.getenv("RAG_CHROMA_PATH") or "chroma_store")
    return SQLiteVectorIndex()


_default_index: Optional[VectorIndex] = None


def get_vector_index() -> VectorIndex:
    global _default_index
    if _default_index is None:
        _default_index = build_vector_index()
    return _default_index


def set_vector_index(index: Optional[VectorIndex]) -> None:
    global _default_index
    _default_index = index


# Single worker keeps counter updates ordered and off the request path.
_usage_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="rag-usage")


def _record_usage(chunk_ids: List[str]) -> None:
    try:
        db.increment_embedding_usage(chunk_ids)
    except sqlite3.Error as exc:
        logger.warning("Failed to update usage counters for %d chunks: %s", len(chunk_ids), exc)


def wait_for_usage_updates(timeout: Optional[float] = 5.0) -> None:
    """Block until previously scheduled usage updates have run."""
    _usage_executor.submit(lambda: None).result(timeout=timeout)


def _check_limit(limit: int) -> int:
    if not isinstance(limit, int) or isinstance(limit, bool) or not MIN_LIMIT <= limit <= MAX_LIMIT:
        raise InvalidParameters(
            f"limit must be between {MIN_LIMIT} and {MAX_LIMIT}",
            details={"limit": limit},
        )
    return limit


def _concept_overlap(chunk_concepts: Sequence[str], wanted: Sequence[str]) -> bool:
    wanted_keys = {concept.strip().lower() for concept in wanted if concept.strip()}
    if not wanted_keys:
        return True
    return any(concept.lower() in wanted_keys for concept in chunk_concepts)


class Retriever:
    def __init__(
        self,
        embedder: Optional[Embedder] = None,
        index: Optional[VectorIndex] = None,
        *,
        allow_unvalidated: Optional[bool] = None,
    ) -> None:
        self._embedder = embedder
        self._index = index
        self._allow_unvalidated = allow_unvalidated

    @property
    def embedder(self) -> Embedder:
        return self._embedder or get_embedder()

    @property
    def index(self) -> VectorIndex:
        return self._index or get_vector_index()

    @property
    def allow_unvalidated(self) -> bool:
        if self._allow_unvalidated is not None:
            return self._allow_unvalidated
        return get_env_bool("RAG_ALLOW_UNVALIDATED", True)

    # ------------------------------------------------------------------
    def candidates(self, filters: Optional[SearchFilters] = None) -> List[Dict[str, Any]]:
        """Eligible, fresh candidates matching ``filters``."""
        filters = filters or SearchFilters()
        rows = db.list_candidates(filters, allow_unvalidated=self.allow_unvalidated)
        if filters.concepts:
            rows = [row for row in rows if _concept_overlap(row["chunk"].concepts, filters.concepts)]
        fresh = [row for row in rows if row["model"] == row["kb_model"]]
        stale = len(rows) - len(fresh)
        if stale:
            logger.warning("Skipped %d stale embeddings during retrieval", stale)
        return fresh

    def _rank(self, scored: List[tuple[Dict[str, Any], float]], limit: int) -> List[SearchResult]:
        scored.sort(key=lambda item: (-item[1], -item[0]["rowid"], item[0]["chunk"].id))
        results = [SearchResult(chunk=row["chunk"], similarity=similarity) for row, similarity in scored[:limit]]
        if results:
            _usage_executor.submit(_record_usage, [result.chunk.id for result in results])
        return results

    def _score(self, query_vector: Sequence[float], rows: List[Dict[str, Any]]) -> List[tuple[Dict[str, Any], float]]:
        scores = self.index.score(query_vector, [row["chunk"].id for row in rows])
        return [(row, scores[row["chunk"].id]) for row in rows if row["chunk"].id in scores]

    def retrieve(
        self,
        query_vector: Sequence[float],
        filters: Optional[SearchFilters] = None,
        limit: int = 10,
        model: Optional[str] = None,
    ) -> List[SearchResult]:
        """Rank candidates embedded with ``model`` against ``query_vector``."""
        limit = _check_limit(limit)
        rows = self.candidates(filters)
        if model is not None:
            rows = [row for row in rows if row["model"] == model]
        return self._rank(self._score(query_vector, rows), limit)

    def search(
        self,
        query_text: str,
        filters: Optional[SearchFilters] = None,
        limit: int = 10,
    ) -> List[SearchResult]:
        """Embed ``query_text`` once per model present among candidates and rank."""
        limit = _check_limit(limit)
        if not query_text or not query_text.strip():
            raise InvalidParameters("query must not be empty")
        rows = self.candidates(filters)
        by_model: Dict[str, List[Dict[str, Any]]] = {}
        for row in rows:
            by_model.setdefault(row["model"], []).append(row)
        scored: List[tuple[Dict[str, Any], float]] = []
        for model, model_rows in by_model.items():
            query_vector = self.embedder.embed(query_text, model)
            scored.extend(self._score(query_vector, model_rows))
        return self._rank(scored, limit)

    def search_by_concept(
        self,
        concept: str,
        filters: Optional[SearchFilters] = None,
        limit: int = 10,
    ) -> List[SearchResult]:
        base = filters or SearchFilters()
        scoped = base.model_copy(update={"concepts": [concept, *(base.concepts or [])]})
        return self.search(concept, scoped, limit)

    def search_by_objective(
        self,
        objective: str,
        filters: Optional[SearchFilters] = None,
        limit: int = 10,
    ) -> List[SearchResult]:
        """Semantic search, with chunks declaring the objective ranked first."""
        results = self.search(objective, filters, MAX_LIMIT)
        wanted = objective.strip().lower()
        declared = [r for r in results if any(wanted in o.lower() for o in r.chunk.learning_objectives)]
        others = [r for r in results if r not in declared]
        return (declared + others)[:_check_limit(limit)]
