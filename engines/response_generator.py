"""Grounded tutor responses: guardrail, rewrite, retrieve, generate, record.

Calls for one session are serialized by a per-session ``asyncio.Lock`` while
different sessions proceed in parallel. Each call runs as its own task so a
session ending mid-flight can cancel it; the final write is shielded, so once
recording has started the interaction stands and is returned to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Set
from uuid import uuid4

import db
import tutor
from engines.retrieval import Retriever
from engines.session_manager import TutorSessionManager
from env_validation import get_env_int
from errors import InvalidParameters, SessionNotActive
from guardrails import Guardrail, KeywordGuardrail, enforce
from schemas import Interaction, SearchFilters, SearchResult, TutorSession, normalize_terms

logger = logging.getLogger(__name__)

GenerateFn = Callable[[List[Dict[str, str]]], Awaitable[str]]


class ResponseGenerator:
    def __init__(
        self,
        sessions: TutorSessionManager,
        retriever: Retriever,
        generate: Optional[GenerateFn] = None,
        guardrail: Optional[Guardrail] = None,
        *,
        retrieval_k: Optional[int] = None,
        history_turns: Optional[int] = None,
    ) -> None:
        self.sessions = sessions
        self.retriever = retriever
        self._generate = generate
        self.guardrail = guardrail or KeywordGuardrail()
        self.retrieval_k = retrieval_k or get_env_int("TUTOR_RETRIEVAL_K", 6)
        self.history_turns = history_turns if history_turns is not None else get_env_int("TUTOR_HISTORY_TURNS", 4)
        self._registry_lock = threading.Lock()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._inflight: Dict[str, Set[asyncio.Task]] = {}
        self._terminated: Set[asyncio.Task] = set()
        self._recordings: Dict[asyncio.Task, asyncio.Future] = {}
        sessions.on_terminate(self.cancel_inflight)

    @property
    def generate(self) -> GenerateFn:
        if self._generate is None:
            self._generate = tutor.LLMClient()
        return self._generate

    # ---- bookkeeping ----
    def _acquire_lock(self, session_id: str) -> asyncio.Lock:
        with self._registry_lock:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = self._locks[session_id] = asyncio.Lock()
            self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
            return lock

    def _release_lock(self, session_id: str) -> None:
        with self._registry_lock:
            remaining = self._lock_users.get(session_id, 1) - 1
            if remaining <= 0:
                self._lock_users.pop(session_id, None)
                self._locks.pop(session_id, None)
            else:
                self._lock_users[session_id] = remaining

    def _track(self, session_id: str, task: asyncio.Task) -> None:
        with self._registry_lock:
            self._inflight.setdefault(session_id, set()).add(task)

    def _untrack(self, session_id: str, task: asyncio.Task) -> None:
        with self._registry_lock:
            tasks = self._inflight.get(session_id)
            if tasks is not None:
                tasks.discard(task)
                if not tasks:
                    self._inflight.pop(session_id, None)
            self._terminated.discard(task)
            self._recordings.pop(task, None)

    def inflight(self, session_id: str) -> int:
        with self._registry_lock:
            return len(self._inflight.get(session_id, ()))

    def cancel_inflight(self, session_id: str) -> int:
        """Cancel running ``respond`` calls for a session; safe from any thread."""
        with self._registry_lock:
            tasks = list(self._inflight.get(session_id, ()))
            self._terminated.update(tasks)
        for task in tasks:
            task.get_loop().call_soon_threadsafe(task.cancel)
        if tasks:
            logger.info("Cancelling %d in-flight responses for session %s", len(tasks), session_id)
        return len(tasks)

    # ---- pipeline ----
    async def respond(
        self,
        session_id: str,
        query: str,
        context: Optional[Mapping[str, Any]] = None,
    ) -> Interaction:
        if not query or not query.strip():
            raise InvalidParameters("query must not be empty")
        lock = self._acquire_lock(session_id)
        try:
            async with lock:
                task = asyncio.ensure_future(self._respond_locked(session_id, query, context))
                self._track(session_id, task)
                try:
                    return await task
                except asyncio.CancelledError:
                    with self._registry_lock:
                        terminated = task in self._terminated
                    if not terminated:
                        raise
                    with self._registry_lock:
                        recording = self._recordings.get(task)
                    if recording is not None:
                        # The write was already under way; it either stands or
                        # fails on its own status re-check.
                        return await recording
                    session = await asyncio.to_thread(db.get_session, session_id)
                    raise SessionNotActive(session_id, session.status if session else "completed") from None
                finally:
                    self._untrack(session_id, task)
        finally:
            self._release_lock(session_id)

    @staticmethod
    def filters_for(session: TutorSession) -> SearchFilters:
        return SearchFilters(
            course_id=session.course_id,
            lesson_id=session.lesson_id,
            difficulty=session.difficulty,
            knowledge_base_ids=[session.knowledge_base_id] if session.knowledge_base_id else None,
            viewer_id=session.learner_id,
        )

    def _rewrite(self, query: str, history: Sequence[Interaction]) -> str:
        try:
            return tutor.rewrite_query(query, history)
        except (ValueError, TypeError, AttributeError) as exc:
            logger.warning("Query rewrite failed, using original query: %s", exc)
            return query.strip()

    async def _respond_locked(
        self,
        session_id: str,
        query: str,
        context: Optional[Mapping[str, Any]],
    ) -> Interaction:
        started = time.perf_counter()
        session = await asyncio.to_thread(self.sessions.get, session_id)
        if session.status != "active":
            raise SessionNotActive(session_id, session.status)

        enforce(self.guardrail.check_query(query, learner_id=session.learner_id), "query", learner_id=session.learner_id)

        history = await asyncio.to_thread(db.list_interactions, session_id, last=self.history_turns)
        rewritten = self._rewrite(query, history)

        results: List[SearchResult] = await asyncio.to_thread(
            self.retriever.search, rewritten, self.filters_for(session), self.retrieval_k
        )

        system_prompt = tutor.build_system_prompt(
            session.tutor_personality,
            session.session_type,
            session.difficulty,
            session.topic,
        )
        messages = tutor.build_messages(system_prompt, rewritten, results, history, context)
        answer = await self.generate(messages)

        enforce(
            self.guardrail.check_response(answer, learner_id=session.learner_id),
            "response",
            learner_id=session.learner_id,
        )

        similarities = [result.similarity for result in results]
        concepts = normalize_terms([concept for result in results for concept in result.chunk.concepts])
        record = {
            "id": f"int_{uuid4().hex}",
            "session_id": session_id,
            "user_query": query,
            "rewritten_query": rewritten if rewritten != query.strip() else None,
            "ai_response": answer,
            "retrieved_chunks": [
                {"chunk_id": result.chunk.id, "similarity": result.similarity} for result in results
            ],
            "context_used": tutor.format_context(results) if results else None,
            "retrieval_model": session.embedding_model,
            "interaction_type": "question",
            "concepts": concepts,
            "response_time_ms": int((time.perf_counter() - started) * 1000),
            "similarity_score": sum(similarities) / len(similarities) if similarities else 0.0,
            "retrieval_queries": 1,
        }
        recording = asyncio.ensure_future(asyncio.to_thread(db.record_interaction, record))
        current = asyncio.current_task()
        if current is not None:
            with self._registry_lock:
                self._recordings[current] = recording
        interaction = await asyncio.shield(recording)
        if not results:
            logger.info("Session %s answered without retrieved context", session_id)
        return interaction
