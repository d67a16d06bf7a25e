"""Content quality validation for chunks.

Reviewers submit component scores on a 0-100 scale; the overall score is the
mean of the provided components and decides whether the chunk passes the
quality gate that retrieval reads.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

import db
from errors import ChunkNotFound, InvalidParameters, NoScoresProvided
from schemas import ContentValidation, ValidationScores

logger = logging.getLogger(__name__)

APPROVAL_THRESHOLD = 80.0
SCORE_MIN = 0.0
SCORE_MAX = 100.0
VALIDATION_TYPES = ("accuracy", "relevance", "appropriateness", "clarity")


def validate_scores(scores: ValidationScores, chunk_id: str) -> Dict[str, float]:
    """Return the provided component scores.

    Raises NoScoresProvided when every component is absent and
    InvalidParameters when a score falls outside 0-100.
    """
    provided = scores.provided()
    if not provided:
        raise NoScoresProvided(chunk_id)
    out_of_range = {name: value for name, value in provided.items() if not SCORE_MIN <= value <= SCORE_MAX}
    if out_of_range:
        raise InvalidParameters(
            "Scores must be between 0 and 100",
            details={"chunk_id": chunk_id, "scores": out_of_range},
        )
    return provided


def overall_score(provided: Dict[str, float]) -> float:
    return sum(provided.values()) / len(provided)


class ContentValidator:
    def __init__(self, approval_threshold: float = APPROVAL_THRESHOLD) -> None:
        self.approval_threshold = approval_threshold

    def validate(
        self,
        chunk_id: str,
        validator_id: str,
        dimension: str,
        scores: ValidationScores,
        feedback: Optional[str] = None,
        suggestions: Optional[str] = None,
        flagged_issues: Optional[Iterable[str]] = None,
    ) -> ContentValidation:
        if dimension not in VALIDATION_TYPES:
            raise InvalidParameters(
                f"Unknown validation type {dimension!r}",
                details={"allowed": list(VALIDATION_TYPES)},
            )
        if db.get_chunk(chunk_id) is None:
            raise ChunkNotFound(chunk_id)
        provided = validate_scores(scores, chunk_id)
        overall = overall_score(provided)
        status = "approved" if overall >= self.approval_threshold else "needs_revision"
        record = db.insert_validation(
            {
                "id": f"val_{uuid4().hex}",
                "chunk_id": chunk_id,
                "validator_id": validator_id,
                "validation_type": dimension,
                "accuracy_score": provided.get("accuracy"),
                "relevance_score": provided.get("relevance"),
                "clarity_score": provided.get("clarity"),
                "appropriateness_score": provided.get("appropriateness"),
                "overall_score": overall,
                "status": status,
                "feedback": feedback,
                "suggestions": suggestions,
                "flagged_issues": [issue.strip() for issue in flagged_issues or [] if issue.strip()],
            }
        )
        logger.info("Chunk %s validated by %s: %.1f (%s)", chunk_id, validator_id, overall, status)
        return record

    def approve(
        self,
        chunk_id: str,
        validator_id: str,
        feedback: Optional[str] = None,
        dimension: str = "accuracy",
    ) -> ContentValidation:
        """Reviewer sign-off: full marks on every component."""
        full_marks = ValidationScores(
            accuracy=SCORE_MAX, relevance=SCORE_MAX, clarity=SCORE_MAX, appropriateness=SCORE_MAX
        )
        return self.validate(chunk_id, validator_id, dimension, full_marks, feedback=feedback)

    def reject(
        self,
        chunk_id: str,
        validator_id: str,
        reason: str,
        suggestions: Optional[str] = None,
        dimension: str = "accuracy",
    ) -> ContentValidation:
        """Send the chunk back for revision; the reason is flagged as an issue."""
        if not reason or not reason.strip():
            raise InvalidParameters("A rejection needs a reason", details={"chunk_id": chunk_id})
        no_marks = ValidationScores(
            accuracy=SCORE_MIN, relevance=SCORE_MIN, clarity=SCORE_MIN, appropriateness=SCORE_MIN
        )
        return self.validate(
            chunk_id,
            validator_id,
            dimension,
            no_marks,
            feedback=reason.strip(),
            suggestions=suggestions,
            flagged_issues=[reason],
        )

    def history(self, chunk_id: str) -> List[ContentValidation]:
        if db.get_chunk(chunk_id) is None:
            raise ChunkNotFound(chunk_id)
        return db.list_validations(chunk_id)

    def status(self, chunk_id: str) -> Optional[ContentValidation]:
        """Latest validation of the chunk, or None if it was never reviewed."""
        if db.get_chunk(chunk_id) is None:
            raise ChunkNotFound(chunk_id)
        return db.get_latest_validation(chunk_id)

    def quality_metrics(self, knowledge_base_id: Optional[str] = None) -> Dict[str, Any]:
        return db.content_quality_metrics(knowledge_base_id)
