"""Knowledge-base management: CRUD, content processing and embedding upkeep."""

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence
from uuid import uuid4

import db
from engines.retrieval import VectorIndex, get_vector_index
from env_validation import get_env_int
from errors import ChunkNotFound, InvalidParameters, KnowledgeBaseNotFound, UnauthorizedError
from rag import (
    DEFAULT_CHUNK_OVERLAP,
    DEFAULT_CHUNK_SIZE,
    Embedder,
    check_chunk_parameters,
    chunk_document,
    default_embed_model,
    get_embedder,
)
from schemas import DIFFICULTY_LEVELS, Chunk, ChunkMetadata, KnowledgeBase, normalize_terms

logger = logging.getLogger(__name__)

_ALIGNMENT_FIELDS = {
    "learning_objectives",
    "concepts",
    "prerequisites",
    "standards_alignment",
    "assessment_criteria",
    "difficulty",
    "course_id",
    "lesson_id",
    "estimated_minutes",
}


def _embedding_record(kb: KnowledgeBase, chunk: Chunk, vector: List[float]) -> Dict[str, Any]:
    return {
        "chunk_id": chunk.id,
        "vector": vector,
        "model": kb.embedding_model,
        "subject": kb.subject,
        "grade": kb.grade,
        "difficulty": chunk.difficulty,
        "concepts": chunk.concepts,
    }


class KnowledgeBaseService:
    def __init__(self, embedder: Optional[Embedder] = None, index: Optional[VectorIndex] = None) -> None:
        self._embedder = embedder
        self._index = index

    @property
    def embedder(self) -> Embedder:
        return self._embedder or get_embedder()

    @property
    def index(self) -> VectorIndex:
        return self._index or get_vector_index()

    # ---- access ----
    def get(self, kb_id: str, viewer_id: Optional[str] = None) -> KnowledgeBase:
        """Fetch a knowledge base; private ones are invisible to non-owners."""
        kb = db.get_knowledge_base(kb_id)
        if kb is None or (viewer_id is not None and not kb.is_public and kb.created_by != viewer_id):
            raise KnowledgeBaseNotFound(kb_id)
        return kb

    def _owned(self, kb_id: str, user_id: str, *, is_admin: bool = False) -> KnowledgeBase:
        kb = db.get_knowledge_base(kb_id)
        if kb is None:
            raise KnowledgeBaseNotFound(kb_id)
        if not is_admin and kb.created_by != user_id:
            raise UnauthorizedError(
                "Only the owner may modify this knowledge base",
                details={"knowledge_base_id": kb_id},
            )
        return kb

    def _check_model(self, model: str) -> None:
        if not self.embedder.is_registered(model):
            raise InvalidParameters(
                f"Unknown embedding model {model!r}",
                details={"embedding_model": model, "available": self.embedder.models()},
            )

    # ---- CRUD ----
    def create(self, owner_id: str, payload: Mapping[str, Any]) -> KnowledgeBase:
        chunk_size = int(payload.get("chunk_size") or get_env_int("RAG_CHUNK_SIZE", DEFAULT_CHUNK_SIZE))
        chunk_overlap = payload.get("chunk_overlap")
        if chunk_overlap is None:
            chunk_overlap = get_env_int("RAG_CHUNK_OVERLAP", DEFAULT_CHUNK_OVERLAP)
        chunk_overlap = int(chunk_overlap)
        if chunk_overlap >= chunk_size and payload.get("chunk_overlap") is None:
            chunk_overlap = chunk_size // 5
        check_chunk_parameters(chunk_size, chunk_overlap)
        model = payload.get("embedding_model") or default_embed_model()
        self._check_model(model)

        kb = db.create_knowledge_base(
            {
                **payload,
                "id": f"kb_{uuid4().hex}",
                "tags": normalize_terms(payload.get("tags")),
                "embedding_model": model,
                "chunk_size": chunk_size,
                "chunk_overlap": chunk_overlap,
                "created_by": owner_id,
            }
        )
        logger.info("Created knowledge base %s (%s/%s) for %s", kb.id, kb.subject, kb.grade, owner_id)
        return kb

    def update(
        self,
        kb_id: str,
        user_id: str,
        changes: Mapping[str, Any],
        *,
        is_admin: bool = False,
    ) -> KnowledgeBase:
        kb = self._owned(kb_id, user_id, is_admin=is_admin)
        changes = {key: value for key, value in changes.items() if value is not None}
        if "chunk_size" in changes or "chunk_overlap" in changes:
            check_chunk_parameters(
                int(changes.get("chunk_size", kb.chunk_size)),
                int(changes.get("chunk_overlap", kb.chunk_overlap)),
            )
        model_changed = "embedding_model" in changes and changes["embedding_model"] != kb.embedding_model
        vectors: Dict[str, List[float]] = {}
        if model_changed:
            new_model = changes["embedding_model"]
            self._check_model(new_model)
            # Embed under the new model before committing it; a model that
            # cannot load leaves the knowledge base and its vectors untouched.
            self.embedder.backend(new_model)
            existing = db.get_chunks(kb.chunk_ids)
            vectors = self.embedder.embed_many({chunk.id: chunk.text for chunk in existing}, new_model)
        if "tags" in changes:
            changes["tags"] = normalize_terms(changes["tags"])

        updated = db.update_knowledge_base(kb_id, changes)
        if updated is None:
            raise KnowledgeBaseNotFound(kb_id)
        if "difficulty" in changes and changes["difficulty"] != kb.difficulty:
            db.cascade_knowledge_base_difficulty(kb_id, changes["difficulty"])
        if vectors:
            chunks = db.get_chunks(list(vectors))
            self.index.upsert([_embedding_record(updated, chunk, vectors[chunk.id]) for chunk in chunks])
        if model_changed:
            logger.info(
                "Embedding model of %s changed to %s (%d vectors rebuilt)", kb_id, updated.embedding_model, len(vectors)
            )
        return updated

    def delete(self, kb_id: str, user_id: str, *, is_admin: bool = False) -> None:
        kb = self._owned(kb_id, user_id, is_admin=is_admin)
        if kb.chunk_ids:
            self.index.delete(kb.chunk_ids)
        db.delete_knowledge_base(kb_id)
        logger.info("Deleted knowledge base %s with %d chunks", kb_id, len(kb.chunk_ids))

    def list(
        self,
        viewer_id: str,
        *,
        subject: Optional[str] = None,
        grade: Optional[str] = None,
        difficulty: Optional[str] = None,
        is_public: Optional[bool] = None,
        limit: int = 20,
    ) -> List[KnowledgeBase]:
        if not 1 <= limit <= 100:
            raise InvalidParameters("limit must be between 1 and 100", details={"limit": limit})
        return db.list_knowledge_bases(
            viewer_id,
            subject=subject,
            grade=grade,
            difficulty=difficulty,
            is_public=is_public,
            limit=limit,
        )

    def stats(self, kb_id: str, viewer_id: Optional[str] = None) -> Dict[str, Any]:
        kb = self.get(kb_id, viewer_id)
        return {
            "knowledge_base_id": kb.id,
            "name": kb.name,
            "quality_score": kb.quality_score,
            "last_validated": kb.last_validated.isoformat() if kb.last_validated else None,
            "last_updated": kb.updated_at.isoformat(),
            **db.knowledge_base_stats(kb_id),
        }

    # ---- content ----
    def process_content(
        self,
        kb_id: str,
        user_id: str,
        content: str,
        metadata: Optional[ChunkMetadata] = None,
        *,
        is_admin: bool = False,
    ) -> List[Chunk]:
        """Chunk, embed and store ``content``; nothing is stored if embedding fails."""
        kb = self._owned(kb_id, user_id, is_admin=is_admin)
        metadata = metadata or ChunkMetadata()
        drafts = list(chunk_document(content, kb.chunk_size, kb.chunk_overlap))
        if not drafts or not content.strip():
            raise InvalidParameters("content must not be empty", details={"knowledge_base_id": kb_id})

        difficulty = metadata.difficulty or kb.difficulty
        start_position = len(kb.chunk_ids)
        records = [
            {
                "id": f"chunk_{uuid4().hex}",
                "knowledge_base_id": kb_id,
                "text": draft.text,
                "abstract": metadata.abstract,
                "learning_objectives": metadata.learning_objectives,
                "concepts": metadata.concepts,
                "prerequisites": metadata.prerequisites,
                "standards_alignment": metadata.standards_alignment,
                "assessment_criteria": metadata.assessment_criteria,
                "difficulty": difficulty,
                "difficulty_override": difficulty != kb.difficulty,
                "course_id": metadata.course_id,
                "lesson_id": metadata.lesson_id,
                "position": start_position + draft.position,
                "start_offset": draft.start,
                "end_offset": draft.end,
                "source": metadata.source,
                "content_type": metadata.content_type,
                "estimated_minutes": metadata.estimated_minutes,
                "user_id": user_id,
            }
            for draft in drafts
        ]
        vectors = self.embedder.embed_many({record["id"]: record["text"] for record in records}, kb.embedding_model)
        chunks = db.insert_chunks(records)
        self.index.upsert([_embedding_record(kb, chunk, vectors[chunk.id]) for chunk in chunks])
        logger.info("Processed %d chunks into knowledge base %s", len(chunks), kb_id)
        return chunks

    def regenerate_embeddings(
        self,
        kb_id: str,
        chunk_ids: Optional[Sequence[str]] = None,
    ) -> int:
        """(Re)embed chunks that have no vector or a stale one. Returns the count."""
        kb = db.get_knowledge_base(kb_id)
        if kb is None:
            raise KnowledgeBaseNotFound(kb_id)
        pending = db.list_chunks_needing_embedding(kb_id, chunk_ids)
        if not pending:
            return 0
        vectors = self.embedder.embed_many({chunk.id: chunk.text for chunk in pending}, kb.embedding_model)
        self.index.upsert([_embedding_record(kb, chunk, vectors[chunk.id]) for chunk in pending])
        logger.info("Regenerated %d embeddings for %s with %s", len(pending), kb_id, kb.embedding_model)
        return len(pending)

    def generate_embeddings(
        self,
        kb_id: str,
        user_id: str,
        chunk_ids: Optional[Sequence[str]] = None,
        *,
        is_admin: bool = False,
    ) -> int:
        self._owned(kb_id, user_id, is_admin=is_admin)
        return self.regenerate_embeddings(kb_id, chunk_ids)

    def align_curriculum(
        self,
        chunk_id: str,
        user_id: str,
        alignment: Mapping[str, Any],
        *,
        is_admin: bool = False,
    ) -> Chunk:
        """Update a chunk's curriculum metadata (objectives, concepts, scope)."""
        chunk = db.get_chunk(chunk_id)
        if chunk is None:
            raise ChunkNotFound(chunk_id)
        kb = self._owned(chunk.knowledge_base_id, user_id, is_admin=is_admin)
        changes: Dict[str, Any] = {key: value for key, value in alignment.items() if key in _ALIGNMENT_FIELDS and value is not None}
        for key in ("learning_objectives", "concepts", "prerequisites", "standards_alignment", "assessment_criteria"):
            if key in changes:
                changes[key] = normalize_terms(changes[key])
        if "difficulty" in changes:
            if changes["difficulty"] not in DIFFICULTY_LEVELS:
                raise InvalidParameters("Unknown difficulty", details={"difficulty": changes["difficulty"]})
            changes["difficulty_override"] = changes["difficulty"] != kb.difficulty
        updated = db.update_chunk(chunk_id, changes)
        if updated is None:
            raise ChunkNotFound(chunk_id)
        return updated
