import json
import os
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from db_pool import SQLiteConnectionPool
from errors import (
    ConflictError,
    InteractionNotFound,
    LearningPathNotFound,
    SessionNotActive,
    SessionNotFound,
)
from schemas import (
    Chunk,
    ContentValidation,
    EmbeddingRecord,
    Interaction,
    InteractionFeedback,
    KnowledgeBase,
    LearningPath,
    PathProgress,
    SearchFilters,
    SessionFeedback,
    TutorSession,
)

DB_PATH = os.getenv("DB_PATH", "edurag.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur

def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False)


def _decode_json_field(value: Optional[str], default: Any = None) -> Any:
    if value is None or value == "":
        return default
    try:
        return json.loads(value)
    except (TypeError, json.JSONDecodeError):
        return default


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


# -------------- schema helpers --------------
def _add_column_if_missing(con: sqlite3.Connection, table: str, column: str, definition: str) -> None:
    info = con.execute(f"PRAGMA table_info({table})").fetchall()
    existing = {row[1] for row in info}
    if column not in existing:
        con.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


def init():
    with _conn() as con:
        con.executescript(
            """
            CREATE TABLE IF NOT EXISTS courses (
              id          TEXT PRIMARY KEY,
              title       TEXT NOT NULL,
              subject     TEXT,
              created_at  TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS lessons (
              id          TEXT PRIMARY KEY,
              course_id   TEXT NOT NULL REFERENCES courses(id) ON DELETE CASCADE,
              title       TEXT NOT NULL,
              position    INTEGER DEFAULT 0,
              created_at  TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS knowledge_bases (
              id               TEXT PRIMARY KEY,
              name             TEXT NOT NULL,
              description      TEXT,
              subject          TEXT NOT NULL,
              grade            TEXT NOT NULL,
              difficulty       TEXT NOT NULL DEFAULT 'beginner',
              content_type     TEXT DEFAULT 'text',
              tags             TEXT,
              language         TEXT DEFAULT 'en',
              embedding_model  TEXT NOT NULL,
              chunk_size       INTEGER DEFAULT 1000,
              chunk_overlap    INTEGER DEFAULT 200,
              created_by       TEXT,
              is_public        INTEGER DEFAULT 0,
              quality_score    REAL,
              last_validated   TEXT,
              created_at       TEXT NOT NULL,
              updated_at       TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_kb_subject ON knowledge_bases(subject);
            CREATE INDEX IF NOT EXISTS idx_kb_grade ON knowledge_bases(grade);
            CREATE INDEX IF NOT EXISTS idx_kb_created_by ON knowledge_bases(created_by);

            CREATE TABLE IF NOT EXISTS chunks (
              id                   TEXT PRIMARY KEY,
              knowledge_base_id    TEXT NOT NULL REFERENCES knowledge_bases(id) ON DELETE CASCADE,
              text                 TEXT NOT NULL,
              abstract             TEXT,
              learning_objectives  TEXT,
              concepts             TEXT,
              prerequisites        TEXT,
              difficulty           TEXT NOT NULL DEFAULT 'beginner',
              difficulty_override  INTEGER DEFAULT 0,
              course_id            TEXT,
              lesson_id            TEXT,
              position             INTEGER DEFAULT 0,
              start_offset         INTEGER DEFAULT 0,
              end_offset           INTEGER DEFAULT 0,
              source               TEXT,
              content_type         TEXT DEFAULT 'text',
              is_validated         INTEGER DEFAULT 0,
              validation_status    TEXT,
              validated_by         TEXT,
              validated_at         TEXT,
              user_id              TEXT,
              created_at           TEXT NOT NULL,
              updated_at           TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_chunks_kb ON chunks(knowledge_base_id);
            CREATE INDEX IF NOT EXISTS idx_chunks_course ON chunks(course_id);
            CREATE INDEX IF NOT EXISTS idx_chunks_lesson ON chunks(lesson_id);

            CREATE TABLE IF NOT EXISTS embeddings (
              chunk_id     TEXT PRIMARY KEY REFERENCES chunks(id) ON DELETE CASCADE,
              vector       TEXT NOT NULL,
              dimensions   INTEGER NOT NULL,
              model        TEXT NOT NULL,
              subject      TEXT,
              grade        TEXT,
              difficulty   TEXT,
              concepts     TEXT,
              usage_count  INTEGER NOT NULL DEFAULT 0,
              last_used    TEXT,
              created_at   TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_embeddings_subject ON embeddings(subject);
            CREATE INDEX IF NOT EXISTS idx_embeddings_grade ON embeddings(grade);

            CREATE TABLE IF NOT EXISTS content_validations (
              id                     TEXT PRIMARY KEY,
              chunk_id               TEXT NOT NULL REFERENCES chunks(id) ON DELETE CASCADE,
              validator_id           TEXT NOT NULL,
              validation_type        TEXT NOT NULL,
              accuracy_score         REAL,
              relevance_score        REAL,
              clarity_score          REAL,
              appropriateness_score  REAL,
              overall_score          REAL NOT NULL,
              status                 TEXT NOT NULL,
              feedback               TEXT,
              suggestions            TEXT,
              flagged_issues         TEXT,
              validated_at           TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_validations_chunk ON content_validations(chunk_id);
            CREATE INDEX IF NOT EXISTS idx_validations_status ON content_validations(status);

            CREATE TABLE IF NOT EXISTS tutor_sessions (
              id                 TEXT PRIMARY KEY,
              learner_id         TEXT NOT NULL,
              course_id          TEXT,
              lesson_id          TEXT,
              knowledge_base_id  TEXT REFERENCES knowledge_bases(id) ON DELETE SET NULL,
              topic              TEXT,
              difficulty         TEXT,
              tutor_personality  TEXT NOT NULL DEFAULT 'encouraging',
              session_type       TEXT NOT NULL DEFAULT 'study',
              language_model     TEXT,
              embedding_model    TEXT,
              status             TEXT NOT NULL DEFAULT 'active',
              started_at         TEXT NOT NULL,
              ended_at           TEXT,
              duration_minutes   INTEGER,
              total_interactions INTEGER NOT NULL DEFAULT 0,
              retrieval_queries  INTEGER NOT NULL DEFAULT 0,
              helpful_votes      INTEGER NOT NULL DEFAULT 0,
              unhelpful_votes    INTEGER NOT NULL DEFAULT 0,
              overall_rating     INTEGER,
              feedback_comments  TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_sessions_learner ON tutor_sessions(learner_id);
            CREATE INDEX IF NOT EXISTS idx_sessions_status ON tutor_sessions(status);

            CREATE TABLE IF NOT EXISTS tutor_interactions (
              id                   TEXT PRIMARY KEY,
              session_id           TEXT NOT NULL REFERENCES tutor_sessions(id) ON DELETE CASCADE,
              sequence             INTEGER NOT NULL,
              user_query           TEXT NOT NULL,
              rewritten_query      TEXT,
              ai_response          TEXT NOT NULL,
              retrieved_chunks     TEXT,
              context_used         TEXT,
              retrieval_model      TEXT,
              interaction_type     TEXT DEFAULT 'question',
              concepts             TEXT,
              response_time_ms     INTEGER DEFAULT 0,
              similarity_score     REAL DEFAULT 0,
              user_feedback        TEXT,
              is_correct_answer    INTEGER,
              comprehension_level  TEXT,
              feedback_comments    TEXT,
              created_at           TEXT NOT NULL,
              UNIQUE(session_id, sequence)
            );
            CREATE INDEX IF NOT EXISTS idx_interactions_session ON tutor_interactions(session_id);

            CREATE TABLE IF NOT EXISTS learning_paths (
              id                 TEXT PRIMARY KEY,
              learner_id         TEXT NOT NULL,
              target_objectives  TEXT NOT NULL,
              current_knowledge  TEXT,
              assumed_knowledge  TEXT,
              difficulty         TEXT,
              steps              TEXT NOT NULL,
              estimated_duration INTEGER NOT NULL DEFAULT 0,
              time_constraint    INTEGER,
              progress           TEXT,
              created_at         TEXT NOT NULL,
              updated_at         TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_paths_learner ON learning_paths(learner_id);
            """
        )
        # Columns introduced after the first schema revision.
        _add_column_if_missing(con, "chunks", "estimated_minutes", "INTEGER")
        _add_column_if_missing(con, "chunks", "standards_alignment", "TEXT")
        _add_column_if_missing(con, "chunks", "assessment_criteria", "TEXT")
        _add_column_if_missing(con, "tutor_sessions", "last_activity_at", "TEXT")
        con.commit()


# -------------- courses & lessons --------------
def upsert_course(course_id: str, title: str, subject: Optional[str] = None) -> None:
    _exec(
        """
        INSERT INTO courses (id, title, subject, created_at) VALUES (?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET title = excluded.title, subject = excluded.subject
        """,
        (course_id, title, subject, _now_iso()),
    )


def get_course(course_id: str) -> Optional[sqlite3.Row]:
    rows = _query("SELECT * FROM courses WHERE id = ?", (course_id,))
    return rows[0] if rows else None


def upsert_lesson(lesson_id: str, course_id: str, title: str, position: int = 0) -> None:
    _exec(
        """
        INSERT INTO lessons (id, course_id, title, position, created_at) VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            course_id = excluded.course_id,
            title = excluded.title,
            position = excluded.position
        """,
        (lesson_id, course_id, title, position, _now_iso()),
    )


def get_lesson(lesson_id: str) -> Optional[sqlite3.Row]:
    rows = _query("SELECT * FROM lessons WHERE id = ?", (lesson_id,))
    return rows[0] if rows else None


# -------------- knowledge bases --------------
def _kb_from_row(row: sqlite3.Row, chunk_ids: Optional[List[str]] = None) -> KnowledgeBase:
    return KnowledgeBase(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        subject=row["subject"],
        grade=row["grade"],
        difficulty=row["difficulty"],
        content_type=row["content_type"] or "text",
        tags=_decode_json_field(row["tags"], []),
        language=row["language"] or "en",
        embedding_model=row["embedding_model"],
        chunk_size=row["chunk_size"],
        chunk_overlap=row["chunk_overlap"],
        created_by=row["created_by"],
        is_public=bool(row["is_public"]),
        quality_score=row["quality_score"],
        last_validated=row["last_validated"],
        chunk_ids=chunk_ids or [],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def create_knowledge_base(record: Mapping[str, Any]) -> KnowledgeBase:
    now = _now_iso()
    _exec(
        """
        INSERT INTO knowledge_bases
        (id, name, description, subject, grade, difficulty, content_type, tags, language,
         embedding_model, chunk_size, chunk_overlap, created_by, is_public, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            record["id"],
            record["name"],
            record.get("description"),
            record["subject"],
            record["grade"],
            record.get("difficulty") or "beginner",
            record.get("content_type") or "text",
            json_dumps(list(record.get("tags") or [])),
            record.get("language") or "en",
            record["embedding_model"],
            int(record.get("chunk_size") or 1000),
            int(record.get("chunk_overlap") if record.get("chunk_overlap") is not None else 200),
            record.get("created_by"),
            1 if record.get("is_public") else 0,
            now,
            now,
        ),
    )
    created = get_knowledge_base(record["id"])
    assert created is not None
    return created


def get_knowledge_base(kb_id: str) -> Optional[KnowledgeBase]:
    rows = _query("SELECT * FROM knowledge_bases WHERE id = ?", (kb_id,))
    if not rows:
        return None
    return _kb_from_row(rows[0], list_chunk_ids(kb_id))


def list_chunk_ids(kb_id: str) -> List[str]:
    rows = _query(
        "SELECT id FROM chunks WHERE knowledge_base_id = ? ORDER BY position, rowid",
        (kb_id,),
    )
    return [row["id"] for row in rows]


_KB_UPDATABLE = {
    "name",
    "description",
    "subject",
    "grade",
    "difficulty",
    "content_type",
    "tags",
    "language",
    "embedding_model",
    "chunk_size",
    "chunk_overlap",
    "is_public",
}


def update_knowledge_base(kb_id: str, changes: Mapping[str, Any]) -> Optional[KnowledgeBase]:
    """Apply ``changes`` and refresh the denormalized embedding filter columns."""
    assignments: List[str] = []
    params: List[Any] = []
    for key, value in changes.items():
        if key not in _KB_UPDATABLE:
            continue
        if key == "tags":
            value = json_dumps(list(value or []))
        elif key == "is_public":
            value = 1 if value else 0
        assignments.append(f"{key} = ?")
        params.append(value)
    if not assignments:
        return get_knowledge_base(kb_id)

    assignments.append("updated_at = ?")
    params.append(_now_iso())
    with _conn() as con:
        con.execute("BEGIN IMMEDIATE")
        cur = con.execute(
            f"UPDATE knowledge_bases SET {', '.join(assignments)} WHERE id = ?",
            [*params, kb_id],
        )
        if cur.rowcount == 0:
            con.rollback()
            return None
        if "subject" in changes or "grade" in changes:
            con.execute(
                """
                UPDATE embeddings SET
                    subject = (SELECT subject FROM knowledge_bases WHERE id = ?),
                    grade = (SELECT grade FROM knowledge_bases WHERE id = ?)
                WHERE chunk_id IN (SELECT id FROM chunks WHERE knowledge_base_id = ?)
                """,
                (kb_id, kb_id, kb_id),
            )
        con.commit()
    return get_knowledge_base(kb_id)


def delete_knowledge_base(kb_id: str) -> bool:
    cur = _exec("DELETE FROM knowledge_bases WHERE id = ?", (kb_id,))
    return cur.rowcount > 0


def list_knowledge_bases(
    viewer_id: Optional[str] = None,
    *,
    subject: Optional[str] = None,
    grade: Optional[str] = None,
    difficulty: Optional[str] = None,
    is_public: Optional[bool] = None,
    limit: int = 20,
) -> List[KnowledgeBase]:
    clauses: List[str] = []
    params: List[Any] = []
    if viewer_id is not None:
        clauses.append("(is_public = 1 OR created_by = ?)")
        params.append(viewer_id)
    if subject:
        clauses.append("subject = ?")
        params.append(subject)
    if grade:
        clauses.append("grade = ?")
        params.append(grade)
    if difficulty:
        clauses.append("difficulty = ?")
        params.append(difficulty)
    if is_public is not None:
        clauses.append("is_public = ?")
        params.append(1 if is_public else 0)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = _query(
        f"SELECT * FROM knowledge_bases {where} ORDER BY created_at DESC, rowid DESC LIMIT ?",
        [*params, int(limit)],
    )
    return [_kb_from_row(row) for row in rows]


def knowledge_base_stats(kb_id: str) -> Dict[str, Any]:
    chunk_rows = _query(
        "SELECT concepts, validation_status FROM chunks WHERE knowledge_base_id = ?",
        (kb_id,),
    )
    concepts: List[str] = []
    seen: set[str] = set()
    for row in chunk_rows:
        for concept in _decode_json_field(row["concepts"], []):
            key = concept.lower()
            if key not in seen:
                seen.add(key)
                concepts.append(concept)
    validation_row = _query(
        """
        SELECT COUNT(DISTINCT v.chunk_id) AS validated, AVG(v.overall_score) AS avg_score
        FROM content_validations v JOIN chunks c ON c.id = v.chunk_id
        WHERE c.knowledge_base_id = ?
        """,
        (kb_id,),
    )[0]
    embedding_row = _query(
        """
        SELECT COUNT(e.chunk_id) AS embedded,
               SUM(CASE WHEN e.model != kb.embedding_model THEN 1 ELSE 0 END) AS stale
        FROM chunks c
        JOIN knowledge_bases kb ON kb.id = c.knowledge_base_id
        LEFT JOIN embeddings e ON e.chunk_id = c.id
        WHERE c.knowledge_base_id = ?
        """,
        (kb_id,),
    )[0]
    return {
        "total_chunks": len(chunk_rows),
        "validated_chunks": validation_row["validated"] or 0,
        "approved_chunks": sum(1 for row in chunk_rows if row["validation_status"] == "approved"),
        "average_quality_score": round(validation_row["avg_score"] or 0.0, 2),
        "concepts_covered": concepts,
        "embedded_chunks": embedding_row["embedded"] or 0,
        "stale_embeddings": embedding_row["stale"] or 0,
    }


# -------------- chunks --------------
_CHUNK_LIST_FIELDS = (
    "learning_objectives",
    "concepts",
    "prerequisites",
    "standards_alignment",
    "assessment_criteria",
)


def _chunk_from_row(row: sqlite3.Row) -> Chunk:
    return Chunk(
        id=row["id"],
        knowledge_base_id=row["knowledge_base_id"],
        text=row["text"],
        abstract=row["abstract"],
        learning_objectives=_decode_json_field(row["learning_objectives"], []),
        concepts=_decode_json_field(row["concepts"], []),
        prerequisites=_decode_json_field(row["prerequisites"], []),
        standards_alignment=_decode_json_field(row["standards_alignment"], []),
        assessment_criteria=_decode_json_field(row["assessment_criteria"], []),
        difficulty=row["difficulty"],
        difficulty_override=bool(row["difficulty_override"]),
        course_id=row["course_id"],
        lesson_id=row["lesson_id"],
        position=row["position"],
        start_offset=row["start_offset"],
        end_offset=row["end_offset"],
        source=row["source"],
        content_type=row["content_type"] or "text",
        estimated_minutes=row["estimated_minutes"],
        is_validated=bool(row["is_validated"]),
        validation_status=row["validation_status"],
        validated_by=row["validated_by"],
        validated_at=row["validated_at"],
        user_id=row["user_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def insert_chunks(records: Sequence[Mapping[str, Any]]) -> List[Chunk]:
    """Insert chunk rows in one transaction and return them in input order."""
    if not records:
        return []
    now = _now_iso()
    with _conn() as con:
        con.execute("BEGIN IMMEDIATE")
        for record in records:
            con.execute(
                """
                INSERT INTO chunks
                (id, knowledge_base_id, text, abstract, learning_objectives, concepts, prerequisites,
                 difficulty, difficulty_override, course_id, lesson_id, position, start_offset,
                 end_offset, source, content_type, estimated_minutes, standards_alignment,
                 assessment_criteria, user_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record["id"],
                    record["knowledge_base_id"],
                    record["text"],
                    record.get("abstract"),
                    json_dumps(list(record.get("learning_objectives") or [])),
                    json_dumps(list(record.get("concepts") or [])),
                    json_dumps(list(record.get("prerequisites") or [])),
                    record.get("difficulty") or "beginner",
                    1 if record.get("difficulty_override") else 0,
                    record.get("course_id"),
                    record.get("lesson_id"),
                    int(record.get("position") or 0),
                    int(record.get("start_offset") or 0),
                    int(record.get("end_offset") or 0),
                    record.get("source"),
                    record.get("content_type") or "text",
                    record.get("estimated_minutes"),
                    json_dumps(list(record.get("standards_alignment") or [])),
                    json_dumps(list(record.get("assessment_criteria") or [])),
                    record.get("user_id"),
                    now,
                    now,
                ),
            )
        con.commit()
    return get_chunks([record["id"] for record in records])


def get_chunk(chunk_id: str) -> Optional[Chunk]:
    rows = _query("SELECT * FROM chunks WHERE id = ?", (chunk_id,))
    return _chunk_from_row(rows[0]) if rows else None


def get_chunks(chunk_ids: Sequence[str]) -> List[Chunk]:
    """Return chunks for ``chunk_ids`` in the requested order, skipping unknown ids."""
    if not chunk_ids:
        return []
    rows = _query(
        f"SELECT * FROM chunks WHERE id IN ({_placeholders(chunk_ids)})",
        list(chunk_ids),
    )
    by_id = {row["id"]: _chunk_from_row(row) for row in rows}
    return [by_id[chunk_id] for chunk_id in chunk_ids if chunk_id in by_id]


_CHUNK_UPDATABLE = {
    "text",
    "abstract",
    "learning_objectives",
    "concepts",
    "prerequisites",
    "standards_alignment",
    "assessment_criteria",
    "difficulty",
    "difficulty_override",
    "course_id",
    "lesson_id",
    "estimated_minutes",
}


def update_chunk(chunk_id: str, changes: Mapping[str, Any]) -> Optional[Chunk]:
    assignments: List[str] = []
    params: List[Any] = []
    for key, value in changes.items():
        if key not in _CHUNK_UPDATABLE:
            continue
        if key in _CHUNK_LIST_FIELDS:
            value = json_dumps(list(value or []))
        elif key == "difficulty_override":
            value = 1 if value else 0
        assignments.append(f"{key} = ?")
        params.append(value)
    if assignments:
        assignments.append("updated_at = ?")
        params.append(_now_iso())
        _exec(f"UPDATE chunks SET {', '.join(assignments)} WHERE id = ?", [*params, chunk_id])
        if "concepts" in changes or "difficulty" in changes:
            _refresh_embedding_filters(chunk_id)
    return get_chunk(chunk_id)


def _refresh_embedding_filters(chunk_id: str) -> None:
    _exec(
        """
        UPDATE embeddings SET
            concepts = (SELECT concepts FROM chunks WHERE id = ?),
            difficulty = (SELECT difficulty FROM chunks WHERE id = ?)
        WHERE chunk_id = ?
        """,
        (chunk_id, chunk_id, chunk_id),
    )


def list_chunks_needing_embedding(kb_id: str, chunk_ids: Optional[Sequence[str]] = None) -> List[Chunk]:
    """Chunks with no embedding or one produced by a different model than the KB declares."""
    params: List[Any] = [kb_id]
    extra = ""
    if chunk_ids:
        extra = f" AND c.id IN ({_placeholders(chunk_ids)})"
        params.extend(chunk_ids)
    rows = _query(
        f"""
        SELECT c.* FROM chunks c
        JOIN knowledge_bases kb ON kb.id = c.knowledge_base_id
        LEFT JOIN embeddings e ON e.chunk_id = c.id
        WHERE c.knowledge_base_id = ? AND (e.chunk_id IS NULL OR e.model != kb.embedding_model){extra}
        ORDER BY c.position, c.rowid
        """,
        params,
    )
    return [_chunk_from_row(row) for row in rows]


# -------------- embeddings --------------
def upsert_embeddings(records: Sequence[Mapping[str, Any]]) -> None:
    """Insert or replace embeddings; usage counters survive regeneration."""
    if not records:
        return
    now = _now_iso()
    with _conn() as con:
        con.execute("BEGIN IMMEDIATE")
        for record in records:
            vector = list(record["vector"])
            con.execute(
                """
                INSERT INTO embeddings
                (chunk_id, vector, dimensions, model, subject, grade, difficulty, concepts, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(chunk_id) DO UPDATE SET
                    vector = excluded.vector,
                    dimensions = excluded.dimensions,
                    model = excluded.model,
                    subject = excluded.subject,
                    grade = excluded.grade,
                    difficulty = excluded.difficulty,
                    concepts = excluded.concepts,
                    created_at = excluded.created_at
                """,
                (
                    record["chunk_id"],
                    json_dumps(vector),
                    len(vector),
                    record["model"],
                    record.get("subject"),
                    record.get("grade"),
                    record.get("difficulty"),
                    json_dumps(list(record.get("concepts") or [])),
                    now,
                ),
            )
        con.commit()


def get_embedding(chunk_id: str) -> Optional[EmbeddingRecord]:
    rows = _query("SELECT * FROM embeddings WHERE chunk_id = ?", (chunk_id,))
    if not rows:
        return None
    row = rows[0]
    return EmbeddingRecord(
        chunk_id=row["chunk_id"],
        model=row["model"],
        dimensions=row["dimensions"],
        subject=row["subject"],
        grade=row["grade"],
        difficulty=row["difficulty"],
        concepts=_decode_json_field(row["concepts"], []),
        usage_count=row["usage_count"],
        last_used=row["last_used"],
        created_at=row["created_at"],
    )


def get_embedding_vectors(chunk_ids: Sequence[str]) -> Dict[str, List[float]]:
    if not chunk_ids:
        return {}
    rows = _query(
        f"SELECT chunk_id, vector FROM embeddings WHERE chunk_id IN ({_placeholders(chunk_ids)})",
        list(chunk_ids),
    )
    return {row["chunk_id"]: _decode_json_field(row["vector"], []) for row in rows}


def increment_embedding_usage(chunk_ids: Sequence[str]) -> None:
    if not chunk_ids:
        return
    _exec(
        f"""
        UPDATE embeddings SET usage_count = usage_count + 1, last_used = ?
        WHERE chunk_id IN ({_placeholders(chunk_ids)})
        """,
        [_now_iso(), *chunk_ids],
    )


def list_candidates(
    filters: SearchFilters,
    *,
    allow_unvalidated: bool,
    require_embedding: bool = True,
) -> List[Dict[str, Any]]:
    """Return retrieval-eligible chunks matching ``filters``.

    Each entry holds the ``chunk``, the stored embedding ``model`` (or None),
    the knowledge base's declared ``kb_model`` and the chunk ``rowid`` used as
    the recency tie-breaker. Concept overlap is left to the caller.
    """
    clauses = ["(c.validation_status = 'approved' OR (c.validation_status IS NULL AND ?))"]
    params: List[Any] = [1 if allow_unvalidated else 0]
    if require_embedding:
        clauses.append("e.chunk_id IS NOT NULL")
    if filters.course_id:
        clauses.append("c.course_id = ?")
        params.append(filters.course_id)
    if filters.lesson_id:
        clauses.append("c.lesson_id = ?")
        params.append(filters.lesson_id)
    if filters.subject:
        clauses.append("COALESCE(e.subject, kb.subject) = ?")
        params.append(filters.subject)
    if filters.grade:
        clauses.append("COALESCE(e.grade, kb.grade) = ?")
        params.append(filters.grade)
    if filters.difficulty:
        clauses.append("c.difficulty = ?")
        params.append(filters.difficulty)
    if filters.knowledge_base_ids is not None:
        if not filters.knowledge_base_ids:
            return []
        clauses.append(f"c.knowledge_base_id IN ({_placeholders(filters.knowledge_base_ids)})")
        params.extend(filters.knowledge_base_ids)
    if filters.viewer_id is not None:
        clauses.append("(kb.is_public = 1 OR kb.created_by = ?)")
        params.append(filters.viewer_id)

    rows = _query(
        f"""
        SELECT c.*, c.rowid AS chunk_rowid, e.model AS embedding_model,
               kb.embedding_model AS kb_model, kb.subject AS kb_subject, kb.grade AS kb_grade
        FROM chunks c
        JOIN knowledge_bases kb ON kb.id = c.knowledge_base_id
        LEFT JOIN embeddings e ON e.chunk_id = c.id
        WHERE {' AND '.join(clauses)}
        """,
        params,
    )
    return [
        {
            "chunk": _chunk_from_row(row),
            "model": row["embedding_model"],
            "kb_model": row["kb_model"],
            "subject": row["kb_subject"],
            "grade": row["kb_grade"],
            "rowid": row["chunk_rowid"],
        }
        for row in rows
    ]


# -------------- content validations --------------
def _validation_from_row(row: sqlite3.Row) -> ContentValidation:
    return ContentValidation(
        id=row["id"],
        chunk_id=row["chunk_id"],
        validator_id=row["validator_id"],
        validation_type=row["validation_type"],
        accuracy_score=row["accuracy_score"],
        relevance_score=row["relevance_score"],
        clarity_score=row["clarity_score"],
        appropriateness_score=row["appropriateness_score"],
        overall_score=row["overall_score"],
        status=row["status"],
        feedback=row["feedback"],
        suggestions=row["suggestions"],
        flagged_issues=_decode_json_field(row["flagged_issues"], []),
        validated_at=row["validated_at"],
    )


def insert_validation(record: Mapping[str, Any]) -> ContentValidation:
    """Append a validation and refresh the chunk gate and KB quality score atomically."""
    validated_at = _now_iso()
    with _conn() as con:
        con.execute("BEGIN IMMEDIATE")
        con.execute(
            """
            INSERT INTO content_validations
            (id, chunk_id, validator_id, validation_type, accuracy_score, relevance_score,
             clarity_score, appropriateness_score, overall_score, status, feedback, suggestions,
             flagged_issues, validated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record["id"],
                record["chunk_id"],
                record["validator_id"],
                record["validation_type"],
                record.get("accuracy_score"),
                record.get("relevance_score"),
                record.get("clarity_score"),
                record.get("appropriateness_score"),
                record["overall_score"],
                record["status"],
                record.get("feedback"),
                record.get("suggestions"),
                json_dumps(list(record.get("flagged_issues") or [])),
                validated_at,
            ),
        )
        con.execute(
            """
            UPDATE chunks SET is_validated = 1, validation_status = ?, validated_by = ?, validated_at = ?
            WHERE id = ?
            """,
            (record["status"], record["validator_id"], validated_at, record["chunk_id"]),
        )
        con.execute(
            """
            UPDATE knowledge_bases SET
                quality_score = (
                    SELECT AVG(v.overall_score) FROM content_validations v
                    JOIN chunks c ON c.id = v.chunk_id
                    WHERE c.knowledge_base_id = knowledge_bases.id
                ),
                last_validated = ?
            WHERE id = (SELECT knowledge_base_id FROM chunks WHERE id = ?)
            """,
            (validated_at, record["chunk_id"]),
        )
        con.commit()
    rows = _query("SELECT * FROM content_validations WHERE id = ?", (record["id"],))
    return _validation_from_row(rows[0])


def list_validations(chunk_id: str) -> List[ContentValidation]:
    """Validation history, newest first."""
    rows = _query(
        "SELECT * FROM content_validations WHERE chunk_id = ? ORDER BY validated_at DESC, rowid DESC",
        (chunk_id,),
    )
    return [_validation_from_row(row) for row in rows]


def get_latest_validation(chunk_id: str) -> Optional[ContentValidation]:
    history = list_validations(chunk_id)
    return history[0] if history else None


def content_quality_metrics(kb_id: Optional[str] = None) -> Dict[str, Any]:
    where = "WHERE c.knowledge_base_id = ?" if kb_id else ""
    params: List[Any] = [kb_id] if kb_id else []
    rows = _query(
        f"""
        SELECT v.* FROM content_validations v JOIN chunks c ON c.id = v.chunk_id
        {where}
        """,
        params,
    )
    by_status: Dict[str, int] = {}
    dimension_totals: Dict[str, List[float]] = {
        "accuracy": [],
        "relevance": [],
        "clarity": [],
        "appropriateness": [],
    }
    issue_counts: Dict[str, int] = {}
    overall: List[float] = []
    for row in rows:
        by_status[row["status"]] = by_status.get(row["status"], 0) + 1
        overall.append(row["overall_score"])
        for dimension, values in dimension_totals.items():
            value = row[f"{dimension}_score"]
            if value is not None:
                values.append(value)
        for issue in _decode_json_field(row["flagged_issues"], []):
            issue_counts[issue] = issue_counts.get(issue, 0) + 1
    return {
        "total_validations": len(rows),
        "by_status": by_status,
        "average_overall_score": round(sum(overall) / len(overall), 2) if overall else None,
        "average_by_dimension": {
            dimension: round(sum(values) / len(values), 2) if values else None
            for dimension, values in dimension_totals.items()
        },
        "flagged_issues": dict(sorted(issue_counts.items(), key=lambda item: (-item[1], item[0]))),
    }


# -------------- tutor sessions --------------
def _session_from_row(row: sqlite3.Row) -> TutorSession:
    return TutorSession(
        id=row["id"],
        learner_id=row["learner_id"],
        course_id=row["course_id"],
        lesson_id=row["lesson_id"],
        knowledge_base_id=row["knowledge_base_id"],
        topic=row["topic"],
        difficulty=row["difficulty"],
        tutor_personality=row["tutor_personality"],
        session_type=row["session_type"],
        language_model=row["language_model"],
        embedding_model=row["embedding_model"],
        status=row["status"],
        started_at=row["started_at"],
        ended_at=row["ended_at"],
        last_activity_at=row["last_activity_at"] or row["started_at"],
        duration_minutes=row["duration_minutes"],
        total_interactions=row["total_interactions"],
        retrieval_queries=row["retrieval_queries"],
        helpful_votes=row["helpful_votes"],
        unhelpful_votes=row["unhelpful_votes"],
        overall_rating=row["overall_rating"],
        feedback_comments=row["feedback_comments"],
    )


def create_session(record: Mapping[str, Any]) -> TutorSession:
    now = _now_iso()
    _exec(
        """
        INSERT INTO tutor_sessions
        (id, learner_id, course_id, lesson_id, knowledge_base_id, topic, difficulty,
         tutor_personality, session_type, language_model, embedding_model, status,
         started_at, last_activity_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'active', ?, ?)
        """,
        (
            record["id"],
            record["learner_id"],
            record.get("course_id"),
            record.get("lesson_id"),
            record.get("knowledge_base_id"),
            record.get("topic"),
            record.get("difficulty"),
            record.get("tutor_personality") or "encouraging",
            record.get("session_type") or "study",
            record.get("language_model"),
            record.get("embedding_model"),
            now,
            now,
        ),
    )
    created = get_session(record["id"])
    assert created is not None
    return created


def get_session(session_id: str) -> Optional[TutorSession]:
    rows = _query("SELECT * FROM tutor_sessions WHERE id = ?", (session_id,))
    return _session_from_row(rows[0]) if rows else None


def list_active_session_ids(learner_id: str) -> List[str]:
    rows = _query(
        "SELECT id FROM tutor_sessions WHERE learner_id = ? AND status = 'active' ORDER BY started_at",
        (learner_id,),
    )
    return [row["id"] for row in rows]


def list_idle_session_ids(cutoff_iso: str) -> List[str]:
    rows = _query(
        """
        SELECT id FROM tutor_sessions
        WHERE status = 'active' AND COALESCE(last_activity_at, started_at) < ?
        """,
        (cutoff_iso,),
    )
    return [row["id"] for row in rows]


def finish_session(
    session_id: str,
    status: str,
    feedback: Optional[SessionFeedback] = None,
) -> TutorSession:
    """Move an active session to ``status``; terminal sessions are rejected."""
    ended_at = datetime.now(timezone.utc)
    with _conn() as con:
        con.execute("BEGIN IMMEDIATE")
        row = con.execute(
            "SELECT status, started_at FROM tutor_sessions WHERE id = ?", (session_id,)
        ).fetchone()
        if row is None:
            raise SessionNotFound(session_id)
        if row["status"] != "active":
            raise SessionNotActive(session_id, row["status"])
        started = datetime.fromisoformat(row["started_at"])
        duration = max(0, int((ended_at - started).total_seconds() // 60))
        con.execute(
            """
            UPDATE tutor_sessions SET
                status = ?, ended_at = ?, duration_minutes = ?,
                helpful_votes = helpful_votes + ?,
                unhelpful_votes = unhelpful_votes + ?,
                overall_rating = COALESCE(?, overall_rating),
                feedback_comments = COALESCE(?, feedback_comments)
            WHERE id = ?
            """,
            (
                status,
                ended_at.isoformat(),
                duration,
                feedback.helpful_votes if feedback else 0,
                feedback.unhelpful_votes if feedback else 0,
                feedback.overall_rating if feedback else None,
                feedback.comments if feedback else None,
                session_id,
            ),
        )
        con.commit()
    finished = get_session(session_id)
    assert finished is not None
    return finished


def session_analytics(
    *,
    learner_id: Optional[str] = None,
    course_id: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    top_queries: int = 5,
) -> Dict[str, Any]:
    clauses: List[str] = []
    params: List[Any] = []
    if learner_id:
        clauses.append("s.learner_id = ?")
        params.append(learner_id)
    if course_id:
        clauses.append("s.course_id = ?")
        params.append(course_id)
    if date_from:
        clauses.append("s.started_at >= ?")
        params.append(date_from)
    if date_to:
        clauses.append("s.started_at <= ?")
        params.append(date_to)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    summary = _query(
        f"""
        SELECT COUNT(*) AS sessions,
               AVG(s.duration_minutes) AS avg_duration,
               SUM(s.total_interactions) AS interactions,
               SUM(s.helpful_votes) AS helpful,
               SUM(s.unhelpful_votes) AS unhelpful,
               SUM(CASE WHEN s.status = 'active' THEN 1 ELSE 0 END) AS active,
               SUM(CASE WHEN s.status = 'completed' THEN 1 ELSE 0 END) AS completed,
               SUM(CASE WHEN s.status = 'abandoned' THEN 1 ELSE 0 END) AS abandoned
        FROM tutor_sessions s {where}
        """,
        params,
    )[0]
    query_rows = _query(
        f"""
        SELECT LOWER(TRIM(i.user_query)) AS question, COUNT(*) AS frequency,
               AVG(i.similarity_score) AS avg_score
        FROM tutor_interactions i JOIN tutor_sessions s ON s.id = i.session_id
        {where}
        GROUP BY LOWER(TRIM(i.user_query))
        ORDER BY frequency DESC, question
        LIMIT ?
        """,
        [*params, int(top_queries)],
    )
    sessions = summary["sessions"] or 0
    helpful = summary["helpful"] or 0
    unhelpful = summary["unhelpful"] or 0
    votes = helpful + unhelpful
    return {
        "total_sessions": sessions,
        "by_status": {
            "active": summary["active"] or 0,
            "completed": summary["completed"] or 0,
            "abandoned": summary["abandoned"] or 0,
        },
        "average_session_duration": round(summary["avg_duration"] or 0.0, 2),
        "interaction_rate": round((summary["interactions"] or 0) / sessions, 2) if sessions else 0.0,
        "satisfaction_score": round(helpful / votes, 3) if votes else None,
        "common_questions": [
            {
                "question": row["question"],
                "frequency": row["frequency"],
                "average_score": round(row["avg_score"] or 0.0, 3),
            }
            for row in query_rows
        ],
    }


# -------------- interactions --------------
def _interaction_from_row(row: sqlite3.Row) -> Interaction:
    correct = row["is_correct_answer"]
    return Interaction(
        id=row["id"],
        session_id=row["session_id"],
        sequence=row["sequence"],
        user_query=row["user_query"],
        rewritten_query=row["rewritten_query"],
        ai_response=row["ai_response"],
        retrieved_chunks=_decode_json_field(row["retrieved_chunks"], []),
        context_used=row["context_used"],
        retrieval_model=row["retrieval_model"],
        interaction_type=row["interaction_type"] or "question",
        concepts=_decode_json_field(row["concepts"], []),
        response_time_ms=row["response_time_ms"] or 0,
        similarity_score=row["similarity_score"] or 0.0,
        user_feedback=row["user_feedback"],
        is_correct_answer=None if correct is None else bool(correct),
        comprehension_level=row["comprehension_level"],
        feedback_comments=row["feedback_comments"],
        created_at=row["created_at"],
    )


def record_interaction(record: Mapping[str, Any]) -> Interaction:
    """Insert an interaction and bump session counters in one transaction.

    The session must still be active when the write lock is taken; the
    sequence number is derived from the counter inside the same transaction.
    """
    session_id = record["session_id"]
    now = _now_iso()
    with _conn() as con:
        con.execute("BEGIN IMMEDIATE")
        row = con.execute(
            "SELECT status, total_interactions FROM tutor_sessions WHERE id = ?", (session_id,)
        ).fetchone()
        if row is None:
            raise SessionNotFound(session_id)
        if row["status"] != "active":
            raise SessionNotActive(session_id, row["status"])
        sequence = row["total_interactions"] + 1
        con.execute(
            """
            INSERT INTO tutor_interactions
            (id, session_id, sequence, user_query, rewritten_query, ai_response, retrieved_chunks,
             context_used, retrieval_model, interaction_type, concepts, response_time_ms,
             similarity_score, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record["id"],
                session_id,
                sequence,
                record["user_query"],
                record.get("rewritten_query"),
                record["ai_response"],
                json_dumps(list(record.get("retrieved_chunks") or [])),
                record.get("context_used"),
                record.get("retrieval_model"),
                record.get("interaction_type") or "question",
                json_dumps(list(record.get("concepts") or [])),
                int(record.get("response_time_ms") or 0),
                float(record.get("similarity_score") or 0.0),
                now,
            ),
        )
        con.execute(
            """
            UPDATE tutor_sessions SET
                total_interactions = ?,
                retrieval_queries = retrieval_queries + ?,
                last_activity_at = ?
            WHERE id = ?
            """,
            (sequence, int(record.get("retrieval_queries", 1)), now, session_id),
        )
        con.commit()
    interaction = get_interaction(record["id"])
    assert interaction is not None
    return interaction


def get_interaction(interaction_id: str) -> Optional[Interaction]:
    rows = _query("SELECT * FROM tutor_interactions WHERE id = ?", (interaction_id,))
    return _interaction_from_row(rows[0]) if rows else None


def list_interactions(session_id: str, *, last: Optional[int] = None) -> List[Interaction]:
    """Interactions in recorded order; ``last`` keeps only the most recent N."""
    if last is not None:
        rows = _query(
            """
            SELECT * FROM (
                SELECT * FROM tutor_interactions WHERE session_id = ? ORDER BY sequence DESC LIMIT ?
            ) ORDER BY sequence
            """,
            (session_id, int(last)),
        )
    else:
        rows = _query(
            "SELECT * FROM tutor_interactions WHERE session_id = ? ORDER BY sequence",
            (session_id,),
        )
    return [_interaction_from_row(row) for row in rows]


def attach_interaction_feedback(interaction_id: str, feedback: InteractionFeedback) -> Interaction:
    """Attach delayed learner feedback once; votes roll up into the session."""
    with _conn() as con:
        con.execute("BEGIN IMMEDIATE")
        row = con.execute(
            """
            SELECT session_id, user_feedback, is_correct_answer, comprehension_level, feedback_comments
            FROM tutor_interactions WHERE id = ?
            """,
            (interaction_id,),
        ).fetchone()
        if row is None:
            raise InteractionNotFound(interaction_id)
        if any(
            row[column] is not None
            for column in ("user_feedback", "is_correct_answer", "comprehension_level", "feedback_comments")
        ):
            raise ConflictError(
                "Feedback already recorded for this interaction",
                details={"interaction_id": interaction_id},
            )
        con.execute(
            """
            UPDATE tutor_interactions SET
                user_feedback = ?, is_correct_answer = ?, comprehension_level = ?, feedback_comments = ?
            WHERE id = ?
            """,
            (
                feedback.user_feedback,
                None if feedback.is_correct_answer is None else int(feedback.is_correct_answer),
                feedback.comprehension_level,
                feedback.comments,
                interaction_id,
            ),
        )
        if feedback.user_feedback in {"helpful", "unhelpful"}:
            column = "helpful_votes" if feedback.user_feedback == "helpful" else "unhelpful_votes"
            con.execute(
                f"UPDATE tutor_sessions SET {column} = {column} + 1 WHERE id = ?",
                (row["session_id"],),
            )
        con.commit()
    interaction = get_interaction(interaction_id)
    assert interaction is not None
    return interaction


# -------------- learning paths --------------
def _path_from_row(row: sqlite3.Row) -> LearningPath:
    return LearningPath(
        id=row["id"],
        learner_id=row["learner_id"],
        target_objectives=_decode_json_field(row["target_objectives"], []),
        current_knowledge=_decode_json_field(row["current_knowledge"], []),
        assumed_knowledge=_decode_json_field(row["assumed_knowledge"], []),
        difficulty=row["difficulty"],
        steps=_decode_json_field(row["steps"], []),
        estimated_duration=row["estimated_duration"],
        time_constraint=row["time_constraint"],
        progress=_decode_json_field(row["progress"], {}),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def save_learning_path(path: LearningPath) -> LearningPath:
    _exec(
        """
        INSERT INTO learning_paths
        (id, learner_id, target_objectives, current_knowledge, assumed_knowledge, difficulty,
         steps, estimated_duration, time_constraint, progress, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            path.id,
            path.learner_id,
            json_dumps(path.target_objectives),
            json_dumps(path.current_knowledge),
            json_dumps(path.assumed_knowledge),
            path.difficulty,
            json_dumps([step.model_dump() for step in path.steps]),
            path.estimated_duration,
            path.time_constraint,
            json_dumps(path.progress.model_dump()),
            path.created_at.isoformat(),
            path.updated_at.isoformat(),
        ),
    )
    return path


def get_learning_path(path_id: str) -> Optional[LearningPath]:
    rows = _query("SELECT * FROM learning_paths WHERE id = ?", (path_id,))
    return _path_from_row(rows[0]) if rows else None


def list_learning_paths(learner_id: str, limit: int = 20) -> List[LearningPath]:
    rows = _query(
        "SELECT * FROM learning_paths WHERE learner_id = ? ORDER BY created_at DESC LIMIT ?",
        (learner_id, int(limit)),
    )
    return [_path_from_row(row) for row in rows]


def update_learning_path_progress(path_id: str, progress: PathProgress) -> LearningPath:
    cur = _exec(
        "UPDATE learning_paths SET progress = ?, updated_at = ? WHERE id = ?",
        (json_dumps(progress.model_dump()), _now_iso(), path_id),
    )
    if cur.rowcount == 0:
        raise LearningPathNotFound(path_id)
    path = get_learning_path(path_id)
    assert path is not None
    return path


def delete_embeddings(chunk_ids: Sequence[str]) -> None:
    if not chunk_ids:
        return
    _exec(
        f"DELETE FROM embeddings WHERE chunk_id IN ({_placeholders(chunk_ids)})",
        list(chunk_ids),
    )


def cascade_knowledge_base_difficulty(kb_id: str, difficulty: str) -> int:
    """Apply a new KB difficulty to chunks that do not override it."""
    with _conn() as con:
        con.execute("BEGIN IMMEDIATE")
        cur = con.execute(
            """
            UPDATE chunks SET difficulty = ?, updated_at = ?
            WHERE knowledge_base_id = ? AND difficulty_override = 0
            """,
            (difficulty, _now_iso(), kb_id),
        )
        con.execute(
            """
            UPDATE embeddings SET difficulty = ?
            WHERE chunk_id IN (
                SELECT id FROM chunks WHERE knowledge_base_id = ? AND difficulty_override = 0
            )
            """,
            (difficulty, kb_id),
        )
        con.commit()
        return cur.rowcount
