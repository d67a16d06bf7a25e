"""Tutor session lifecycle: ``active`` -> ``completed`` | ``abandoned``."""

from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

import db
from env_validation import get_env_bool, get_env_int
from errors import ScopeNotFound, SessionNotActive, SessionNotFound
from rag import default_embed_model
from schemas import Interaction, InteractionFeedback, SessionFeedback, SessionScope, TutorSession

logger = logging.getLogger(__name__)

TerminationListener = Callable[[str], None]


class TutorSessionManager:
    """Creates and terminates tutor sessions.

    Terminal states are final: ending or abandoning a session that is no
    longer active raises SessionNotActive. Listeners registered with
    ``on_terminate`` are told about every session that leaves ``active`` so
    in-flight work for it can be cancelled.
    """

    def __init__(self, *, auto_abandon_previous: Optional[bool] = None) -> None:
        self._auto_abandon_previous = auto_abandon_previous
        self._listeners: List[TerminationListener] = []

    def on_terminate(self, listener: TerminationListener) -> None:
        self._listeners.append(listener)

    def _notify(self, session_id: str) -> None:
        for listener in self._listeners:
            listener(session_id)

    @property
    def auto_abandon_previous(self) -> bool:
        if self._auto_abandon_previous is not None:
            return self._auto_abandon_previous
        return get_env_bool("TUTOR_AUTO_ABANDON_PREVIOUS", True)

    # ------------------------------------------------------------------
    def _check_scope(self, learner_id: str, scope: SessionScope) -> Optional[str]:
        """Verify every referenced scope exists; return the embedding model to use."""
        if scope.course_id and db.get_course(scope.course_id) is None:
            raise ScopeNotFound("course", scope.course_id)
        if scope.lesson_id:
            lesson = db.get_lesson(scope.lesson_id)
            if lesson is None or (scope.course_id and lesson["course_id"] != scope.course_id):
                raise ScopeNotFound("lesson", scope.lesson_id)
        if scope.knowledge_base_id:
            kb = db.get_knowledge_base(scope.knowledge_base_id)
            if kb is None or not (kb.is_public or kb.created_by == learner_id):
                raise ScopeNotFound("knowledge_base", scope.knowledge_base_id)
            return kb.embedding_model
        return None

    def start(
        self,
        learner_id: str,
        scope: Optional[SessionScope] = None,
        personality: str = "encouraging",
        session_type: str = "study",
        *,
        language_model: Optional[str] = None,
    ) -> TutorSession:
        scope = scope or SessionScope()
        embedding_model = self._check_scope(learner_id, scope) or default_embed_model()

        if self.auto_abandon_previous:
            for previous_id in db.list_active_session_ids(learner_id):
                try:
                    self.abandon(previous_id)
                except SessionNotActive:
                    logger.debug("Session %s ended concurrently before auto-abandon", previous_id)

        session = db.create_session(
            {
                "id": f"sess_{uuid4().hex}",
                "learner_id": learner_id,
                "course_id": scope.course_id,
                "lesson_id": scope.lesson_id,
                "knowledge_base_id": scope.knowledge_base_id,
                "topic": scope.topic,
                "difficulty": scope.difficulty,
                "tutor_personality": personality,
                "session_type": session_type,
                "language_model": language_model or os.getenv("MODEL_ID"),
                "embedding_model": embedding_model,
            }
        )
        logger.info("Started tutor session %s for learner %s", session.id, learner_id)
        return session

    def get(self, session_id: str) -> TutorSession:
        session = db.get_session(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def history(self, session_id: str, last: Optional[int] = None) -> List[Interaction]:
        self.get(session_id)
        return db.list_interactions(session_id, last=last)

    def end(self, session_id: str, feedback: Optional[SessionFeedback] = None) -> TutorSession:
        session = db.finish_session(session_id, "completed", feedback)
        self._notify(session_id)
        logger.info("Completed tutor session %s after %s minutes", session_id, session.duration_minutes)
        return session

    def abandon(self, session_id: str) -> TutorSession:
        session = db.finish_session(session_id, "abandoned")
        self._notify(session_id)
        logger.info("Abandoned tutor session %s", session_id)
        return session

    def abandon_stale(self, max_idle_minutes: Optional[int] = None) -> List[str]:
        """Abandon active sessions with no activity for ``max_idle_minutes``."""
        idle = max_idle_minutes if max_idle_minutes is not None else get_env_int("TUTOR_SESSION_TIMEOUT_MINUTES", 60)
        cutoff = (datetime.now(timezone.utc) - timedelta(minutes=idle)).isoformat()
        abandoned: List[str] = []
        for session_id in db.list_idle_session_ids(cutoff):
            try:
                self.abandon(session_id)
            except SessionNotActive:
                continue
            abandoned.append(session_id)
        if abandoned:
            logger.info("Abandoned %d idle tutor sessions", len(abandoned))
        return abandoned

    def provide_feedback(self, interaction_id: str, feedback: InteractionFeedback) -> Interaction:
        return db.attach_interaction_feedback(interaction_id, feedback)

    def analytics(
        self,
        *,
        learner_id: Optional[str] = None,
        course_id: Optional[str] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
    ) -> Dict[str, Any]:
        return db.session_analytics(
            learner_id=learner_id,
            course_id=course_id,
            date_from=date_from,
            date_to=date_to,
        )
