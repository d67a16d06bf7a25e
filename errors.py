"""Error taxonomy shared by the RAG core and the HTTP boundary.

Every failure raised by the pipeline carries a ``kind`` (one of
``not_found``, ``unauthorized``, ``invalid_input``, ``unavailable``,
``conflict``, ``infeasible``) and a stable ``code`` so callers can branch on
the error programmatically instead of parsing messages.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

__all__ = [
    "EduRagError",
    "NotFoundError",
    "UnauthorizedError",
    "InvalidInputError",
    "UnavailableError",
    "ConflictError",
    "InfeasibleError",
    "KnowledgeBaseNotFound",
    "ChunkNotFound",
    "ScopeNotFound",
    "SessionNotFound",
    "InteractionNotFound",
    "LearningPathNotFound",
    "SessionNotActive",
    "InvalidParameters",
    "NoScoresProvided",
    "GuardrailRejection",
    "EmbeddingUnavailable",
    "GenerationUnavailable",
    "UnreachableObjective",
    "CyclicPrerequisites",
    "InfeasibleTimeConstraint",
    "HTTP_STATUS_BY_KIND",
]


class EduRagError(Exception):
    """Base class for all pipeline errors."""

    kind = "internal"
    code = "internal_error"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class NotFoundError(EduRagError):
    kind = "not_found"
    code = "not_found"


class UnauthorizedError(EduRagError):
    kind = "unauthorized"
    code = "unauthorized"


class InvalidInputError(EduRagError):
    kind = "invalid_input"
    code = "invalid_input"


class UnavailableError(EduRagError):
    kind = "unavailable"
    code = "unavailable"


class ConflictError(EduRagError):
    kind = "conflict"
    code = "conflict"


class InfeasibleError(EduRagError):
    kind = "infeasible"
    code = "infeasible"


# ---------- not found ----------
class KnowledgeBaseNotFound(NotFoundError):
    code = "knowledge_base_not_found"

    def __init__(self, knowledge_base_id: str) -> None:
        super().__init__(
            f"Knowledge base {knowledge_base_id!r} not found",
            details={"knowledge_base_id": knowledge_base_id},
        )


class ChunkNotFound(NotFoundError):
    code = "chunk_not_found"

    def __init__(self, chunk_id: str) -> None:
        super().__init__(f"Chunk {chunk_id!r} not found", details={"chunk_id": chunk_id})


class ScopeNotFound(NotFoundError):
    code = "scope_not_found"

    def __init__(self, scope_type: str, scope_id: str) -> None:
        super().__init__(
            f"{scope_type} {scope_id!r} does not exist",
            details={"scope_type": scope_type, "scope_id": scope_id},
        )


class SessionNotFound(NotFoundError):
    code = "session_not_found"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Tutor session {session_id!r} not found", details={"session_id": session_id})


class InteractionNotFound(NotFoundError):
    code = "interaction_not_found"

    def __init__(self, interaction_id: str) -> None:
        super().__init__(
            f"Interaction {interaction_id!r} not found",
            details={"interaction_id": interaction_id},
        )


class LearningPathNotFound(NotFoundError):
    code = "learning_path_not_found"

    def __init__(self, path_id: str, step_id: Optional[str] = None) -> None:
        details: Dict[str, Any] = {"path_id": path_id}
        if step_id:
            details["step_id"] = step_id
        target = f"step {step_id!r} of learning path {path_id!r}" if step_id else f"learning path {path_id!r}"
        super().__init__(f"{target[0].upper()}{target[1:]} not found", details=details)


# ---------- conflict ----------
class SessionNotActive(ConflictError):
    code = "session_not_active"

    def __init__(self, session_id: str, status: str) -> None:
        super().__init__(
            f"Tutor session {session_id!r} is {status}, not active",
            details={"session_id": session_id, "status": status},
        )


# ---------- invalid input ----------
class InvalidParameters(InvalidInputError):
    code = "invalid_parameters"


class NoScoresProvided(InvalidInputError):
    code = "no_scores_provided"

    def __init__(self, chunk_id: str) -> None:
        super().__init__(
            "At least one component score is required",
            details={"chunk_id": chunk_id},
        )


class GuardrailRejection(InvalidInputError):
    code = "guardrail_rejection"

    def __init__(self, stage: str, reasons: Iterable[str]) -> None:
        reason_list = list(reasons)
        super().__init__(
            f"Content rejected by safety policy during {stage}",
            details={"stage": stage, "reasons": reason_list},
        )


# ---------- unavailable ----------
class EmbeddingUnavailable(UnavailableError):
    code = "embedding_unavailable"

    def __init__(self, model: str, reason: str) -> None:
        super().__init__(
            f"Embedding model {model!r} unavailable: {reason}",
            details={"model": model, "reason": reason},
        )


class GenerationUnavailable(UnavailableError):
    code = "generation_unavailable"

    def __init__(self, model: str, reason: str, *, attempts: int = 1) -> None:
        super().__init__(
            "Could not generate a response",
            details={"model": model, "reason": reason, "attempts": attempts},
        )


# ---------- infeasible ----------
class UnreachableObjective(InfeasibleError):
    code = "unreachable_objective"

    def __init__(self, objective: str, *, missing_prerequisite: Optional[str] = None) -> None:
        details: Dict[str, Any] = {"objective": objective}
        message = f"No reachable content teaches objective {objective!r}"
        if missing_prerequisite:
            details["missing_prerequisite"] = missing_prerequisite
            message += f" (prerequisite {missing_prerequisite!r} is not covered)"
        super().__init__(message, details=details)


class CyclicPrerequisites(InfeasibleError):
    code = "cyclic_prerequisites"

    def __init__(self, step_ids: Iterable[str], titles: Iterable[str] = ()) -> None:
        ids = sorted(step_ids)
        names = list(titles)
        super().__init__(
            "Prerequisites form a cycle among: " + ", ".join(names or ids),
            details={"chunk_ids": ids, "titles": names},
        )


class InfeasibleTimeConstraint(InfeasibleError):
    code = "infeasible_time_constraint"

    def __init__(self, time_constraint: int, minimum_minutes: int) -> None:
        super().__init__(
            f"Target objectives need at least {minimum_minutes} minutes; budget is {time_constraint}",
            details={"time_constraint": time_constraint, "minimum_minutes": minimum_minutes},
        )


HTTP_STATUS_BY_KIND = {
    "not_found": 404,
    "unauthorized": 403,
    "invalid_input": 422,
    "unavailable": 503,
    "conflict": 409,
    "infeasible": 422,
    "internal": 500,
}
