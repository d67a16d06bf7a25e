"""Pydantic schemas for the RAG domain entities and typed metadata."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

__all__ = [
    "DIFFICULTY_LEVELS",
    "Difficulty",
    "TutorPersonality",
    "SessionType",
    "SessionStatus",
    "ValidationType",
    "ValidationStatus",
    "ChunkMetadata",
    "KnowledgeBase",
    "Chunk",
    "ChunkDraft",
    "EmbeddingRecord",
    "SearchFilters",
    "SearchResult",
    "SessionScope",
    "SessionFeedback",
    "TutorSession",
    "RetrievedChunkRef",
    "Interaction",
    "InteractionFeedback",
    "ValidationScores",
    "ContentValidation",
    "LearnerProfile",
    "RecommendationScope",
    "Recommendation",
    "StepResource",
    "LearningPathStep",
    "PathProgress",
    "LearningPath",
    "DifficultyAdjustment",
    "normalize_terms",
]

DIFFICULTY_LEVELS: Tuple[str, ...] = ("beginner", "intermediate", "advanced", "expert")

Difficulty = Literal["beginner", "intermediate", "advanced", "expert"]
TutorPersonality = Literal["encouraging", "challenging", "patient", "enthusiastic"]
SessionType = Literal["study", "practice", "assessment", "help"]
SessionStatus = Literal["active", "completed", "abandoned"]
ValidationType = Literal["accuracy", "relevance", "appropriateness", "clarity"]
ValidationStatus = Literal["approved", "needs_revision"]
LearnerFeedback = Literal["helpful", "unhelpful", "neutral"]
ComprehensionLevel = Literal["low", "medium", "high"]


def normalize_terms(values: Optional[List[str]]) -> List[str]:
    """Strip, drop empties and de-duplicate case-insensitively, keeping order."""
    seen: set[str] = set()
    cleaned: List[str] = []
    for value in values or []:
        text = str(value).strip()
        if not text:
            continue
        key = text.lower()
        if key in seen:
            continue
        seen.add(key)
        cleaned.append(text)
    return cleaned


class ChunkMetadata(BaseModel):
    """Curriculum metadata attached to ingested content (schema version 1)."""

    schema_version: int = 1
    learning_objectives: List[str] = Field(default_factory=list)
    concepts: List[str] = Field(default_factory=list)
    prerequisites: List[str] = Field(default_factory=list)
    standards_alignment: List[str] = Field(default_factory=list)
    assessment_criteria: List[str] = Field(default_factory=list)
    difficulty: Optional[Difficulty] = None
    course_id: Optional[str] = None
    lesson_id: Optional[str] = None
    content_type: str = "text"
    estimated_minutes: Optional[int] = Field(default=None, ge=1)
    abstract: Optional[str] = None
    source: Optional[str] = None

    @field_validator("learning_objectives", "concepts", "prerequisites")
    @classmethod
    def _clean_terms(cls, value: List[str]) -> List[str]:
        return normalize_terms(value)


class KnowledgeBase(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    subject: str
    grade: str
    difficulty: Difficulty = "beginner"
    content_type: str = "text"
    tags: List[str] = Field(default_factory=list)
    language: str = "en"
    embedding_model: str
    chunk_size: int = 1000
    chunk_overlap: int = 200
    created_by: Optional[str] = None
    is_public: bool = False
    quality_score: Optional[float] = None
    last_validated: Optional[datetime] = None
    chunk_ids: List[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class ChunkDraft(BaseModel):
    """A segment cut from a source document, before persistence."""

    position: int
    start: int
    end: int
    text: str


class Chunk(BaseModel):
    id: str
    knowledge_base_id: str
    text: str
    abstract: Optional[str] = None
    learning_objectives: List[str] = Field(default_factory=list)
    concepts: List[str] = Field(default_factory=list)
    prerequisites: List[str] = Field(default_factory=list)
    standards_alignment: List[str] = Field(default_factory=list)
    assessment_criteria: List[str] = Field(default_factory=list)
    difficulty: Difficulty = "beginner"
    difficulty_override: bool = False
    course_id: Optional[str] = None
    lesson_id: Optional[str] = None
    position: int = 0
    start_offset: int = 0
    end_offset: int = 0
    source: Optional[str] = None
    content_type: str = "text"
    estimated_minutes: Optional[int] = None
    is_validated: bool = False
    validation_status: Optional[ValidationStatus] = None
    validated_by: Optional[str] = None
    validated_at: Optional[datetime] = None
    user_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class EmbeddingRecord(BaseModel):
    chunk_id: str
    model: str
    dimensions: int
    subject: Optional[str] = None
    grade: Optional[str] = None
    difficulty: Optional[str] = None
    concepts: List[str] = Field(default_factory=list)
    usage_count: int = 0
    last_used: Optional[datetime] = None
    created_at: datetime


class SearchFilters(BaseModel):
    """Retrieval filters; unset options impose no restriction."""

    course_id: Optional[str] = None
    lesson_id: Optional[str] = None
    subject: Optional[str] = None
    grade: Optional[str] = None
    difficulty: Optional[Difficulty] = None
    knowledge_base_ids: Optional[List[str]] = None
    concepts: Optional[List[str]] = None
    viewer_id: Optional[str] = None


class SearchResult(BaseModel):
    chunk: Chunk
    similarity: float


class SessionScope(BaseModel):
    schema_version: int = 1
    course_id: Optional[str] = None
    lesson_id: Optional[str] = None
    knowledge_base_id: Optional[str] = None
    topic: Optional[str] = None
    difficulty: Optional[Difficulty] = None


class SessionFeedback(BaseModel):
    overall_rating: Optional[int] = Field(default=None, ge=1, le=5)
    comments: Optional[str] = None
    helpful_votes: int = Field(default=0, ge=0)
    unhelpful_votes: int = Field(default=0, ge=0)


class TutorSession(BaseModel):
    id: str
    learner_id: str
    course_id: Optional[str] = None
    lesson_id: Optional[str] = None
    knowledge_base_id: Optional[str] = None
    topic: Optional[str] = None
    difficulty: Optional[Difficulty] = None
    tutor_personality: TutorPersonality = "encouraging"
    session_type: SessionType = "study"
    language_model: Optional[str] = None
    embedding_model: Optional[str] = None
    status: SessionStatus = "active"
    started_at: datetime
    ended_at: Optional[datetime] = None
    last_activity_at: datetime
    duration_minutes: Optional[int] = None
    total_interactions: int = 0
    retrieval_queries: int = 0
    helpful_votes: int = 0
    unhelpful_votes: int = 0
    overall_rating: Optional[int] = None
    feedback_comments: Optional[str] = None

    @property
    def scope(self) -> SessionScope:
        return SessionScope(
            course_id=self.course_id,
            lesson_id=self.lesson_id,
            knowledge_base_id=self.knowledge_base_id,
            topic=self.topic,
            difficulty=self.difficulty,
        )


class RetrievedChunkRef(BaseModel):
    chunk_id: str
    similarity: float


class Interaction(BaseModel):
    id: str
    session_id: str
    sequence: int
    user_query: str
    rewritten_query: Optional[str] = None
    ai_response: str
    retrieved_chunks: List[RetrievedChunkRef] = Field(default_factory=list)
    context_used: Optional[str] = None
    retrieval_model: Optional[str] = None
    interaction_type: str = "question"
    concepts: List[str] = Field(default_factory=list)
    response_time_ms: int = 0
    similarity_score: float = 0.0
    user_feedback: Optional[LearnerFeedback] = None
    is_correct_answer: Optional[bool] = None
    comprehension_level: Optional[ComprehensionLevel] = None
    feedback_comments: Optional[str] = None
    created_at: datetime


class InteractionFeedback(BaseModel):
    user_feedback: Optional[LearnerFeedback] = None
    is_correct_answer: Optional[bool] = None
    comprehension_level: Optional[ComprehensionLevel] = None
    comments: Optional[str] = None


class ValidationScores(BaseModel):
    """Component quality scores; absent components are ignored."""

    accuracy: Optional[float] = None
    relevance: Optional[float] = None
    clarity: Optional[float] = None
    appropriateness: Optional[float] = None

    def provided(self) -> Dict[str, float]:
        return {
            name: float(value)
            for name, value in (
                ("accuracy", self.accuracy),
                ("relevance", self.relevance),
                ("clarity", self.clarity),
                ("appropriateness", self.appropriateness),
            )
            if value is not None
        }


class ContentValidation(BaseModel):
    id: str
    chunk_id: str
    validator_id: str
    validation_type: ValidationType
    accuracy_score: Optional[float] = None
    relevance_score: Optional[float] = None
    clarity_score: Optional[float] = None
    appropriateness_score: Optional[float] = None
    overall_score: float
    status: ValidationStatus
    feedback: Optional[str] = None
    suggestions: Optional[str] = None
    flagged_issues: List[str] = Field(default_factory=list)
    validated_at: datetime


class LearnerProfile(BaseModel):
    """Learner state supplied by the caller (profile service is external)."""

    schema_version: int = 1
    learner_id: str
    current_knowledge: List[str] = Field(default_factory=list)
    mastery: Dict[str, float] = Field(default_factory=dict)
    focus_subject: Optional[str] = None
    grade: Optional[str] = None
    difficulty: Optional[Difficulty] = None

    @field_validator("mastery")
    @classmethod
    def _clamp_mastery(cls, value: Dict[str, float]) -> Dict[str, float]:
        return {str(k).strip(): max(0.0, min(1.0, float(v))) for k, v in value.items() if str(k).strip()}


class RecommendationScope(BaseModel):
    course_id: Optional[str] = None
    subject: Optional[str] = None
    grade: Optional[str] = None
    knowledge_base_ids: Optional[List[str]] = None


class Recommendation(BaseModel):
    chunk_id: str
    knowledge_base_id: str
    title: str
    description: str
    subject: Optional[str] = None
    grade: Optional[str] = None
    difficulty: str
    concepts: List[str] = Field(default_factory=list)
    learning_objectives: List[str] = Field(default_factory=list)
    estimated_minutes: int
    relevance_score: float
    reasoning: str


class StepResource(BaseModel):
    id: str
    title: str
    type: Literal["content", "exercise", "assessment", "video", "reading"] = "content"
    description: Optional[str] = None


class LearningPathStep(BaseModel):
    id: str
    order: int
    title: str
    description: str
    chunk_id: str
    knowledge_base_id: str
    learning_objectives: List[str] = Field(default_factory=list)
    prerequisites: List[str] = Field(default_factory=list)
    assessment_criteria: List[str] = Field(default_factory=list)
    estimated_minutes: int
    resources: List[StepResource] = Field(default_factory=list)
    distance: int = 0
    is_target: bool = False


class PathProgress(BaseModel):
    completed_steps: List[str] = Field(default_factory=list)
    current_step_id: Optional[str] = None
    overall_progress: float = 0.0


class LearningPath(BaseModel):
    id: str
    learner_id: str
    target_objectives: List[str]
    current_knowledge: List[str] = Field(default_factory=list)
    assumed_knowledge: List[str] = Field(default_factory=list)
    difficulty: Optional[str] = None
    steps: List[LearningPathStep] = Field(default_factory=list)
    estimated_duration: int = 0
    time_constraint: Optional[int] = None
    progress: PathProgress = Field(default_factory=PathProgress)
    created_at: datetime
    updated_at: datetime


class DifficultyAdjustment(BaseModel):
    """Difficulty change suggested for a learner within one course."""

    learner_id: str
    course_id: str
    current_performance: float
    time_spent: Optional[int] = None
    learning_style: Optional[str] = None
    current_difficulty: Difficulty
    recommended_difficulty: Difficulty
    direction: Literal["increase", "decrease", "maintain"]
    reasoning: str
    resources: List[StepResource] = Field(default_factory=list)
