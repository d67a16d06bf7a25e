import sys
from pathlib import Path
from typing import List

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


KEYWORDS = ("newton", "force", "motion", "acceleration", "fraction", "photosynthesis", "cell", "energy")


class KeywordEmbedding:
    """Deterministic backend: one dimension per keyword plus a bias term."""

    def embed(self, text: str) -> List[float]:
        lower = text.lower()
        return [float(lower.count(word)) for word in KEYWORDS] + [0.1]


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db
    from engines import retrieval

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))
    monkeypatch.delenv("EMBED_MODEL", raising=False)
    monkeypatch.delenv("RAG_VECTOR_BACKEND", raising=False)
    monkeypatch.delenv("GUARDRAIL_BLOCKED_TOPICS", raising=False)

    # Reset the connection pool for each test
    db._pool = db.SQLiteConnectionPool(str(db_path), max_connections=10)
    retrieval.set_vector_index(None)
    db.init()
    yield str(db_path)
    # Usage counters are written off the request path; let them land first.
    retrieval.wait_for_usage_updates()


@pytest.fixture
def keyword_embedder():
    import rag

    embedder = rag.Embedder(timeout=5.0, max_retries=0, retry_backoff=0.0)
    embedder.register("keywords", KeywordEmbedding())
    embedder.register(rag.HASHING_MODEL, rag.HashEmbeddingBackend(64))
    yield embedder
    embedder.close()


@pytest.fixture
def kb_service(temp_db, keyword_embedder):
    from engines.retrieval import SQLiteVectorIndex
    from knowledge_base import KnowledgeBaseService

    return KnowledgeBaseService(embedder=keyword_embedder, index=SQLiteVectorIndex())


@pytest.fixture
def retriever(temp_db, keyword_embedder):
    from engines.retrieval import Retriever, SQLiteVectorIndex

    return Retriever(embedder=keyword_embedder, index=SQLiteVectorIndex())


def make_kb(service, owner="teacher-1", **overrides):
    payload = {
        "name": "Physics basics",
        "subject": "physics",
        "grade": "9",
        "difficulty": "beginner",
        "embedding_model": "keywords",
        "chunk_size": 400,
        "chunk_overlap": 40,
        "is_public": True,
    }
    payload.update(overrides)
    return service.create(owner, payload)
