# app.py — EduRAG Tutor API
# - Identity arrives from the upstream auth layer as X-User-Id / X-User-Role
# - Pipeline errors map to HTTP by kind (see errors.HTTP_STATUS_BY_KIND)

import asyncio
import json
import logging
import sqlite3
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

import db
from engines.path_planner import LearningPathPlanner
from engines.recommendation import RecommendationEngine
from engines.response_generator import ResponseGenerator
from engines.retrieval import Retriever
from engines.session_manager import TutorSessionManager
from engines.validation import ContentValidator
from env_validation import get_env_float, validate_environment
from errors import HTTP_STATUS_BY_KIND, EduRagError, InteractionNotFound, UnauthorizedError
from knowledge_base import KnowledgeBaseService
from schemas import (
    ChunkMetadata,
    Difficulty,
    InteractionFeedback,
    LearnerProfile,
    RecommendationScope,
    SearchFilters,
    SessionFeedback,
    SessionScope,
    SessionType,
    TutorPersonality,
    ValidationScores,
    ValidationType,
)

logger = logging.getLogger(__name__)

KNOWLEDGE_BASES = KnowledgeBaseService()
RETRIEVER = Retriever()
SESSIONS = TutorSessionManager()
RESPONDER = ResponseGenerator(SESSIONS, RETRIEVER)
VALIDATOR = ContentValidator()
PLANNER = LearningPathPlanner()
RECOMMENDER = RecommendationEngine(RETRIEVER)


async def _sweep_stale_sessions(interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(SESSIONS.abandon_stale)
        except sqlite3.Error as exc:
            logger.warning("Stale session sweep failed: %s", exc)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        # Validate environment variables first
        validate_environment()
        db.init()
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise
    sweeper = asyncio.create_task(_sweep_stale_sessions(get_env_float("TUTOR_SWEEP_INTERVAL_SECONDS", 300.0)))
    try:
        yield
    finally:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
        db._pool.close_all()


app = FastAPI(title="EduRAG Tutor", version="0.1.0", lifespan=_lifespan)

ROLES = frozenset({"student", "teacher", "parent", "admin"})
_PROTECTED_PREFIXES = ("/rag", "/tutor", "/learning-paths", "/recommendations")


@dataclass(frozen=True)
class Identity:
    user_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def _unauthenticated(message: str) -> Response:
    return Response(
        status_code=401,
        content=json.dumps({"error": {"kind": "unauthenticated", "code": "missing_identity", "message": message, "details": {}}}),
        media_type="application/json",
    )


@app.middleware("http")
async def _attach_identity(request: Request, call_next):
    if request.url.path.startswith(_PROTECTED_PREFIXES):
        user_id = (request.headers.get("x-user-id") or "").strip()
        role = (request.headers.get("x-user-role") or "student").strip().lower()
        if not user_id:
            return _unauthenticated("missing user identity")
        if role not in ROLES:
            return _unauthenticated(f"unknown role {role!r}")
        request.state.identity = Identity(user_id=user_id, role=role)
    return await call_next(request)


@app.exception_handler(EduRagError)
async def _edurag_error_handler(request: Request, exc: EduRagError):
    status = HTTP_STATUS_BY_KIND.get(exc.kind, 500)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status, content={"error": exc.to_dict()})


def _identity(request: Request) -> Identity:
    return request.state.identity


def _require_role(identity: Identity, *roles: str) -> None:
    if identity.role not in roles:
        raise UnauthorizedError(
            f"Role {identity.role!r} may not perform this operation",
            details={"required_roles": list(roles)},
        )


def _dump(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(mode="json")


# ---------- Request bodies ----------
class KnowledgeBaseCreateBody(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    subject: str = Field(min_length=1)
    grade: str = Field(min_length=1)
    difficulty: Difficulty = "beginner"
    content_type: str = "text"
    tags: List[str] = Field(default_factory=list)
    language: str = "en"
    embedding_model: Optional[str] = None
    chunk_size: Optional[int] = Field(default=None, ge=1)
    chunk_overlap: Optional[int] = Field(default=None, ge=0)
    is_public: bool = False


class KnowledgeBaseUpdateBody(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    subject: Optional[str] = None
    grade: Optional[str] = None
    difficulty: Optional[Difficulty] = None
    content_type: Optional[str] = None
    tags: Optional[List[str]] = None
    language: Optional[str] = None
    embedding_model: Optional[str] = None
    chunk_size: Optional[int] = Field(default=None, ge=1)
    chunk_overlap: Optional[int] = Field(default=None, ge=0)
    is_public: Optional[bool] = None


class ProcessContentBody(BaseModel):
    knowledge_base_id: str
    content: str = Field(min_length=1)
    metadata: ChunkMetadata = Field(default_factory=ChunkMetadata)


class GenerateEmbeddingsBody(BaseModel):
    knowledge_base_id: str
    chunk_ids: Optional[List[str]] = None


class AlignmentBody(BaseModel):
    learning_objectives: Optional[List[str]] = None
    concepts: Optional[List[str]] = None
    prerequisites: Optional[List[str]] = None
    standards_alignment: Optional[List[str]] = None
    assessment_criteria: Optional[List[str]] = None
    difficulty: Optional[Difficulty] = None
    course_id: Optional[str] = None
    lesson_id: Optional[str] = None
    estimated_minutes: Optional[int] = Field(default=None, ge=1)


class SearchBody(BaseModel):
    query: str = Field(min_length=1)
    filters: SearchFilters = Field(default_factory=SearchFilters)
    limit: int = 10


class ConceptSearchBody(BaseModel):
    concept: str = Field(min_length=1)
    filters: SearchFilters = Field(default_factory=SearchFilters)
    limit: int = 10


class ObjectiveSearchBody(BaseModel):
    objective: str = Field(min_length=1)
    filters: SearchFilters = Field(default_factory=SearchFilters)
    limit: int = 10


class StartSessionBody(BaseModel):
    course_id: Optional[str] = None
    lesson_id: Optional[str] = None
    knowledge_base_id: Optional[str] = None
    topic: Optional[str] = None
    difficulty: Optional[Difficulty] = None
    tutor_personality: TutorPersonality = "encouraging"
    session_type: SessionType = "study"


class EndSessionBody(BaseModel):
    feedback: Optional[SessionFeedback] = None


class TutorQueryBody(BaseModel):
    session_id: str
    query: str = Field(min_length=1, max_length=4000)
    context: Optional[Dict[str, Any]] = None


class ValidationBody(BaseModel):
    chunk_id: str
    validation_type: ValidationType
    scores: ValidationScores = Field(default_factory=ValidationScores)
    feedback: Optional[str] = None
    suggestions: Optional[str] = None
    flagged_issues: List[str] = Field(default_factory=list)


class ApprovalBody(BaseModel):
    feedback: Optional[str] = None
    validation_type: ValidationType = "accuracy"


class RejectionBody(BaseModel):
    reason: str
    suggestions: Optional[str] = None
    validation_type: ValidationType = "accuracy"


class LearningPathBody(BaseModel):
    learner_id: Optional[str] = None
    target_objectives: List[str] = Field(min_length=1)
    current_knowledge: List[str] = Field(default_factory=list)
    mastery: Dict[str, float] = Field(default_factory=dict)
    difficulty: Optional[Difficulty] = None
    time_constraint: Optional[int] = Field(default=None, ge=1)
    knowledge_base_ids: Optional[List[str]] = None


class DifficultyAdaptationBody(BaseModel):
    learner_id: Optional[str] = None
    course_id: str
    current_performance: float
    time_spent: Optional[int] = None
    learning_style: Optional[str] = None
    limit: int = 5


class RecommendationBody(BaseModel):
    learner_id: Optional[str] = None
    current_knowledge: List[str] = Field(default_factory=list)
    mastery: Dict[str, float] = Field(default_factory=dict)
    focus_subject: Optional[str] = None
    grade: Optional[str] = None
    scope: RecommendationScope = Field(default_factory=RecommendationScope)
    limit: int = 5


def _learner_for(identity: Identity, requested: Optional[str]) -> str:
    """Students act for themselves; other roles may name a learner."""
    if requested and requested != identity.user_id:
        _require_role(identity, "teacher", "parent", "admin")
        return requested
    return identity.user_id


def _search_filters(identity: Identity, filters: SearchFilters) -> SearchFilters:
    if identity.is_admin:
        return filters
    return filters.model_copy(update={"viewer_id": identity.user_id})


def _search_payload(results) -> Dict[str, Any]:
    return {
        "results": [
            {"chunk": _dump(result.chunk), "similarity": round(result.similarity, 6)}
            for result in results
        ],
        "count": len(results),
    }


# ---------- Knowledge bases ----------
@app.post("/rag/knowledge-bases", status_code=201)
def create_knowledge_base(body: KnowledgeBaseCreateBody, request: Request):
    identity = _identity(request)
    _require_role(identity, "teacher", "admin")
    kb = KNOWLEDGE_BASES.create(identity.user_id, body.model_dump())
    return _dump(kb)


@app.get("/rag/knowledge-bases")
def list_knowledge_bases(
    request: Request,
    subject: Optional[str] = None,
    grade: Optional[str] = None,
    difficulty: Optional[str] = None,
    is_public: Optional[bool] = None,
    limit: int = 20,
):
    identity = _identity(request)
    items = KNOWLEDGE_BASES.list(
        None if identity.is_admin else identity.user_id,
        subject=subject,
        grade=grade,
        difficulty=difficulty,
        is_public=is_public,
        limit=limit,
    )
    return {"knowledge_bases": [_dump(kb) for kb in items], "count": len(items)}


@app.patch("/rag/knowledge-bases/{kb_id}")
def update_knowledge_base(kb_id: str, body: KnowledgeBaseUpdateBody, request: Request):
    identity = _identity(request)
    kb = KNOWLEDGE_BASES.update(kb_id, identity.user_id, body.model_dump(exclude_unset=True), is_admin=identity.is_admin)
    return _dump(kb)


@app.delete("/rag/knowledge-bases/{kb_id}")
def delete_knowledge_base(kb_id: str, request: Request):
    identity = _identity(request)
    KNOWLEDGE_BASES.delete(kb_id, identity.user_id, is_admin=identity.is_admin)
    return {"deleted": kb_id}


@app.get("/rag/knowledge-bases/{kb_id}/stats")
def knowledge_base_stats(kb_id: str, request: Request):
    identity = _identity(request)
    return KNOWLEDGE_BASES.stats(kb_id, None if identity.is_admin else identity.user_id)


@app.post("/rag/content", status_code=201)
def process_content(body: ProcessContentBody, request: Request):
    identity = _identity(request)
    chunks = KNOWLEDGE_BASES.process_content(
        body.knowledge_base_id,
        identity.user_id,
        body.content,
        body.metadata,
        is_admin=identity.is_admin,
    )
    return {
        "knowledge_base_id": body.knowledge_base_id,
        "chunks_created": len(chunks),
        "chunk_ids": [chunk.id for chunk in chunks],
    }


@app.post("/rag/embeddings")
def generate_embeddings(body: GenerateEmbeddingsBody, request: Request):
    identity = _identity(request)
    count = KNOWLEDGE_BASES.generate_embeddings(
        body.knowledge_base_id, identity.user_id, body.chunk_ids, is_admin=identity.is_admin
    )
    return {"knowledge_base_id": body.knowledge_base_id, "embeddings_generated": count}


@app.post("/rag/chunks/{chunk_id}/alignment")
def align_chunk(chunk_id: str, body: AlignmentBody, request: Request):
    identity = _identity(request)
    chunk = KNOWLEDGE_BASES.align_curriculum(
        chunk_id, identity.user_id, body.model_dump(exclude_unset=True), is_admin=identity.is_admin
    )
    return _dump(chunk)


# ---------- Search ----------
@app.post("/rag/search")
def semantic_search(body: SearchBody, request: Request):
    identity = _identity(request)
    results = RETRIEVER.search(body.query, _search_filters(identity, body.filters), body.limit)
    return _search_payload(results)


@app.post("/rag/search/concept")
def search_by_concept(body: ConceptSearchBody, request: Request):
    identity = _identity(request)
    results = RETRIEVER.search_by_concept(body.concept, _search_filters(identity, body.filters), body.limit)
    return _search_payload(results)


@app.post("/rag/search/objective")
def search_by_objective(body: ObjectiveSearchBody, request: Request):
    identity = _identity(request)
    results = RETRIEVER.search_by_objective(body.objective, _search_filters(identity, body.filters), body.limit)
    return _search_payload(results)


# ---------- Tutor ----------
@app.post("/tutor/sessions", status_code=201)
def start_tutor_session(body: StartSessionBody, request: Request):
    identity = _identity(request)
    scope = SessionScope(
        course_id=body.course_id,
        lesson_id=body.lesson_id,
        knowledge_base_id=body.knowledge_base_id,
        topic=body.topic,
        difficulty=body.difficulty,
    )
    session = SESSIONS.start(identity.user_id, scope, body.tutor_personality, body.session_type)
    return _dump(session)


def _owned_session(identity: Identity, session_id: str):
    session = SESSIONS.get(session_id)
    if session.learner_id != identity.user_id and not identity.is_admin:
        raise UnauthorizedError("Session belongs to another learner", details={"session_id": session_id})
    return session


@app.post("/tutor/sessions/{session_id}/end")
def end_tutor_session(session_id: str, request: Request, body: Optional[EndSessionBody] = None):
    identity = _identity(request)
    _owned_session(identity, session_id)
    session = SESSIONS.end(session_id, body.feedback if body else None)
    return _dump(session)


@app.post("/tutor/query")
async def query_ai_tutor(body: TutorQueryBody, request: Request):
    identity = _identity(request)
    await asyncio.to_thread(_owned_session, identity, body.session_id)
    interaction = await RESPONDER.respond(body.session_id, body.query, body.context)
    refs = interaction.retrieved_chunks
    chunks = {chunk.id: chunk for chunk in await asyncio.to_thread(db.get_chunks, [ref.chunk_id for ref in refs])}
    context = [
        {
            "chunk_id": ref.chunk_id,
            "similarity": ref.similarity,
            "knowledge_base_id": chunks[ref.chunk_id].knowledge_base_id if ref.chunk_id in chunks else None,
            "text": chunks[ref.chunk_id].text if ref.chunk_id in chunks else None,
        }
        for ref in refs
    ]
    return {
        "response": interaction.ai_response,
        "interaction": _dump(interaction),
        "context": context,
        "no_relevant_content": not context,
    }


@app.post("/tutor/interactions/{interaction_id}/feedback")
def provide_tutor_feedback(interaction_id: str, body: InteractionFeedback, request: Request):
    identity = _identity(request)
    interaction = db.get_interaction(interaction_id)
    if interaction is None:
        raise InteractionNotFound(interaction_id)
    _owned_session(identity, interaction.session_id)
    return _dump(SESSIONS.provide_feedback(interaction_id, body))


@app.get("/tutor/analytics")
def tutor_session_analytics(
    request: Request,
    learner_id: Optional[str] = None,
    course_id: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
):
    identity = _identity(request)
    _require_role(identity, "teacher", "parent", "admin")
    return SESSIONS.analytics(learner_id=learner_id, course_id=course_id, date_from=date_from, date_to=date_to)


# ---------- Validation ----------
@app.post("/rag/validations", status_code=201)
def validate_content(body: ValidationBody, request: Request):
    identity = _identity(request)
    _require_role(identity, "teacher", "admin")
    record = VALIDATOR.validate(
        body.chunk_id,
        identity.user_id,
        body.validation_type,
        body.scores,
        feedback=body.feedback,
        suggestions=body.suggestions,
        flagged_issues=body.flagged_issues,
    )
    return _dump(record)


@app.post("/rag/chunks/{chunk_id}/approve", status_code=201)
def approve_content(chunk_id: str, body: ApprovalBody, request: Request):
    identity = _identity(request)
    _require_role(identity, "teacher", "admin")
    return _dump(VALIDATOR.approve(chunk_id, identity.user_id, feedback=body.feedback, dimension=body.validation_type))


@app.post("/rag/chunks/{chunk_id}/reject", status_code=201)
def reject_content(chunk_id: str, body: RejectionBody, request: Request):
    identity = _identity(request)
    _require_role(identity, "teacher", "admin")
    record = VALIDATOR.reject(
        chunk_id,
        identity.user_id,
        body.reason,
        suggestions=body.suggestions,
        dimension=body.validation_type,
    )
    return _dump(record)


@app.get("/rag/chunks/{chunk_id}/validation")
def validation_status(chunk_id: str, request: Request):
    _identity(request)
    latest = VALIDATOR.status(chunk_id)
    return {
        "chunk_id": chunk_id,
        "status": latest.status if latest else "pending",
        "latest": _dump(latest) if latest else None,
        "history": [_dump(entry) for entry in VALIDATOR.history(chunk_id)],
    }


@app.get("/rag/quality")
def content_quality_metrics(request: Request, knowledge_base_id: Optional[str] = None):
    _identity(request)
    return VALIDATOR.quality_metrics(knowledge_base_id)


# ---------- Paths & recommendations ----------
@app.post("/learning-paths", status_code=201)
def generate_learning_path(body: LearningPathBody, request: Request):
    identity = _identity(request)
    profile = LearnerProfile(
        learner_id=_learner_for(identity, body.learner_id),
        current_knowledge=body.current_knowledge,
        mastery=body.mastery,
        difficulty=body.difficulty,
    )
    path = PLANNER.generate(
        profile,
        body.target_objectives,
        body.time_constraint,
        knowledge_base_ids=body.knowledge_base_ids,
    )
    return _dump(path)


@app.post("/learning-paths/{path_id}/steps/{step_id}/complete")
def complete_learning_path_step(path_id: str, step_id: str, request: Request):
    identity = _identity(request)
    path = PLANNER.get(path_id)
    _learner_for(identity, path.learner_id)
    return _dump(PLANNER.complete_step(path_id, step_id))


@app.post("/learning-paths/adapt-difficulty")
def adapt_content_difficulty(body: DifficultyAdaptationBody, request: Request):
    identity = _identity(request)
    adjustment = PLANNER.adapt_difficulty(
        _learner_for(identity, body.learner_id),
        body.course_id,
        body.current_performance,
        time_spent=body.time_spent,
        learning_style=body.learning_style,
        limit=body.limit,
    )
    return _dump(adjustment)


@app.post("/recommendations")
def personalized_recommendations(body: RecommendationBody, request: Request):
    identity = _identity(request)
    profile = LearnerProfile(
        learner_id=_learner_for(identity, body.learner_id),
        current_knowledge=body.current_knowledge,
        mastery=body.mastery,
        focus_subject=body.focus_subject,
        grade=body.grade,
    )
    items = RECOMMENDER.recommend(profile, body.scope, body.limit)
    return {"recommendations": [_dump(item) for item in items], "count": len(items)}


@app.get("/healthz")
def healthz() -> Dict[str, Literal["ok"]]:
    return {"status": "ok"}
