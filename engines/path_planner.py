"""Prerequisite-aware learning path planner over ingested chunks."""

from __future__ import annotations

import heapq
import logging
from collections import Counter, deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional, Sequence, Set, Tuple
from uuid import uuid4

import db
from env_validation import get_env_bool, get_env_float
from errors import (
    CyclicPrerequisites,
    InfeasibleTimeConstraint,
    InvalidParameters,
    LearningPathNotFound,
    ScopeNotFound,
    UnreachableObjective,
)
from rag import Embedder, cosine_similarity, estimate_minutes, get_embedder
from tutor import log_json
from schemas import (
    DIFFICULTY_LEVELS,
    Chunk,
    DifficultyAdjustment,
    LearnerProfile,
    LearningPath,
    LearningPathStep,
    PathProgress,
    SearchFilters,
    StepResource,
    normalize_terms,
)

logger = logging.getLogger(__name__)

DEFAULT_MATCH_THRESHOLD = 0.75
ADVANCE_PERFORMANCE = 85.0
SUPPORT_PERFORMANCE = 60.0
SLOW_PACE_FACTOR = 1.5

# Content types each learning style works through first.
STYLE_CONTENT_TYPES: Dict[str, Set[str]] = {
    "visual": {"video", "image", "diagram"},
    "auditory": {"audio", "podcast"},
    "kinesthetic": {"exercise", "interactive", "simulation"},
    "reading": {"text", "markdown"},
}


def _norm(text: str) -> str:
    return " ".join(text.lower().split())


def objective_matches(objective: str, declared: str) -> bool:
    """Normalized containment in either direction."""
    a, b = _norm(objective), _norm(declared)
    return bool(a and b) and (a in b or b in a)


def _step_title(chunk: Chunk) -> str:
    if chunk.learning_objectives:
        return chunk.learning_objectives[0]
    if chunk.abstract:
        return chunk.abstract[:80]
    words = chunk.text.split()
    return " ".join(words[:8]) + ("..." if len(words) > 8 else "")


def _resource_type(content_type: str) -> str:
    if content_type in {"text", "markdown"}:
        return "reading"
    if content_type == "video":
        return "video"
    if content_type in STYLE_CONTENT_TYPES["kinesthetic"]:
        return "exercise"
    return "content"


class LearningPathPlanner:
    def __init__(
        self,
        embedder: Optional[Embedder] = None,
        *,
        match_threshold: Optional[float] = None,
        allow_unvalidated: Optional[bool] = None,
    ) -> None:
        self._embedder = embedder
        self.match_threshold = (
            match_threshold
            if match_threshold is not None
            else get_env_float("PATH_OBJECTIVE_MATCH_THRESHOLD", DEFAULT_MATCH_THRESHOLD)
        )
        self._allow_unvalidated = allow_unvalidated

    @property
    def embedder(self) -> Embedder:
        return self._embedder or get_embedder()

    @property
    def allow_unvalidated(self) -> bool:
        if self._allow_unvalidated is not None:
            return self._allow_unvalidated
        return get_env_bool("RAG_ALLOW_UNVALIDATED", True)

    # ------------------------------------------------------------------
    def _candidates(self, profile: LearnerProfile, knowledge_base_ids: Optional[List[str]]) -> List[Dict[str, Any]]:
        filters = SearchFilters(viewer_id=profile.learner_id, knowledge_base_ids=knowledge_base_ids)
        rows = db.list_candidates(filters, allow_unvalidated=self.allow_unvalidated, require_embedding=False)
        rows.sort(key=lambda row: row["rowid"])
        return rows

    def _semantic_provider(self, objective: str, rows: List[Dict[str, Any]]) -> Optional[Chunk]:
        fresh = [row for row in rows if row["model"] is not None and row["model"] == row["kb_model"]]
        if not fresh:
            return None
        vectors = db.get_embedding_vectors([row["chunk"].id for row in fresh])
        query_vectors: Dict[str, List[float]] = {}
        best: Optional[Tuple[float, Chunk]] = None
        for row in fresh:
            vector = vectors.get(row["chunk"].id)
            if not vector:
                continue
            model = row["model"]
            if model not in query_vectors:
                query_vectors[model] = self.embedder.embed(objective, model)
            score = cosine_similarity(query_vectors[model], vector)
            if score >= self.match_threshold and (best is None or score > best[0]):
                best = (score, row["chunk"])
        return best[1] if best else None

    def _provider(self, objective: str, rows: List[Dict[str, Any]], cache: Dict[str, Optional[Chunk]]) -> Optional[Chunk]:
        key = _norm(objective)
        if key in cache:
            return cache[key]
        matches = [
            row["chunk"]
            for row in rows
            if any(objective_matches(objective, declared) for declared in row["chunk"].learning_objectives)
        ]
        if matches:
            # Prefer reviewed content, then the one with fewest prerequisites.
            matches.sort(key=lambda chunk: (chunk.validation_status != "approved", len(chunk.prerequisites)))
            provider: Optional[Chunk] = matches[0]
        else:
            provider = self._semantic_provider(objective, rows)
        cache[key] = provider
        return provider

    # ------------------------------------------------------------------
    def generate(
        self,
        profile: LearnerProfile,
        target_objectives: Sequence[str],
        time_constraint: Optional[int] = None,
        *,
        knowledge_base_ids: Optional[List[str]] = None,
    ) -> LearningPath:
        targets = normalize_terms(list(target_objectives))
        if not targets:
            raise InvalidParameters("At least one target objective is required")
        if time_constraint is not None and time_constraint <= 0:
            raise InvalidParameters("time_constraint must be positive", details={"time_constraint": time_constraint})

        known = {_norm(item) for item in profile.current_knowledge}
        rows = self._candidates(profile, knowledge_base_ids)
        cache: Dict[str, Optional[Chunk]] = {}

        selected: Dict[str, Chunk] = {}
        distance: Dict[str, int] = {}
        provider_of: Dict[str, str] = {}
        queue: Deque[Tuple[str, int, str]] = deque((target, 0, target) for target in targets)
        while queue:
            objective, dist, root = queue.popleft()
            key = _norm(objective)
            if dist > 0 and (key in known or key in provider_of):
                continue
            chunk = self._provider(objective, rows, cache)
            if chunk is None:
                if dist == 0:
                    raise UnreachableObjective(objective)
                raise UnreachableObjective(root, missing_prerequisite=objective)
            provider_of[key] = chunk.id
            if chunk.id in selected:
                continue
            selected[chunk.id] = chunk
            distance[chunk.id] = dist
            for prerequisite in chunk.prerequisites:
                if any(objective_matches(prerequisite, declared) for declared in chunk.learning_objectives):
                    continue
                queue.append((prerequisite, dist + 1, root))

        target_ids = {provider_of[_norm(target)] for target in targets}
        ordered_ids = self._topological_order(selected, distance, provider_of, known)

        minutes = {
            chunk_id: selected[chunk_id].estimated_minutes or estimate_minutes(selected[chunk_id].text)
            for chunk_id in ordered_ids
        }
        assumed: List[str] = []
        if time_constraint is not None:
            ordered_ids, assumed = self._fit_budget(
                ordered_ids, minutes, distance, target_ids, provider_of, selected, time_constraint
            )

        now = datetime.now(timezone.utc)
        steps: List[LearningPathStep] = []
        for order, chunk_id in enumerate(ordered_ids, start=1):
            chunk = selected[chunk_id]
            title = _step_title(chunk)
            steps.append(
                LearningPathStep(
                    id=f"step_{uuid4().hex[:12]}",
                    order=order,
                    title=title,
                    description=chunk.abstract or chunk.text[:200].strip(),
                    chunk_id=chunk.id,
                    knowledge_base_id=chunk.knowledge_base_id,
                    learning_objectives=list(chunk.learning_objectives),
                    prerequisites=list(chunk.prerequisites),
                    assessment_criteria=list(chunk.assessment_criteria),
                    estimated_minutes=minutes[chunk_id],
                    resources=[
                        StepResource(
                            id=chunk.id,
                            title=title,
                            type=_resource_type(chunk.content_type),
                            description=chunk.source,
                        )
                    ],
                    distance=distance[chunk_id],
                    is_target=chunk_id in target_ids,
                )
            )

        path = LearningPath(
            id=f"path_{uuid4().hex}",
            learner_id=profile.learner_id,
            target_objectives=targets,
            current_knowledge=list(profile.current_knowledge),
            assumed_knowledge=assumed,
            difficulty=profile.difficulty,
            steps=steps,
            estimated_duration=sum(step.estimated_minutes for step in steps),
            time_constraint=time_constraint,
            progress=PathProgress(current_step_id=steps[0].id if steps else None),
            created_at=now,
            updated_at=now,
        )
        db.save_learning_path(path)
        log_json(
            "learning_path_generated",
            {
                "path_id": path.id,
                "learner_id": profile.learner_id,
                "targets": targets,
                "steps": len(steps),
                "estimated_duration": path.estimated_duration,
                "time_constraint": time_constraint,
                "assumed_knowledge": assumed,
            },
            logger,
        )
        return path

    # ------------------------------------------------------------------
    @staticmethod
    def _topological_order(
        selected: Dict[str, Chunk],
        distance: Dict[str, int],
        provider_of: Dict[str, str],
        known: Set[str],
    ) -> List[str]:
        """Kahn's algorithm; farthest prerequisites first among ready steps."""
        dependents: Dict[str, Set[str]] = {chunk_id: set() for chunk_id in selected}
        indegree: Dict[str, int] = {chunk_id: 0 for chunk_id in selected}
        for chunk_id, chunk in selected.items():
            for prerequisite in chunk.prerequisites:
                key = _norm(prerequisite)
                if key in known:
                    continue
                source = provider_of.get(key)
                if source is None or source == chunk_id or chunk_id in dependents[source]:
                    continue
                dependents[source].add(chunk_id)
                indegree[chunk_id] += 1

        def priority(chunk_id: str) -> Tuple[int, int, str]:
            return (-distance[chunk_id], selected[chunk_id].position, chunk_id)

        ready = [priority(chunk_id) for chunk_id, degree in indegree.items() if degree == 0]
        heapq.heapify(ready)
        ordered: List[str] = []
        while ready:
            chunk_id = heapq.heappop(ready)[2]
            ordered.append(chunk_id)
            for dependent in sorted(dependents[chunk_id]):
                indegree[dependent] -= 1
                if indegree[dependent] == 0:
                    heapq.heappush(ready, priority(dependent))

        if len(ordered) < len(selected):
            remaining = [chunk_id for chunk_id in selected if chunk_id not in set(ordered)]
            raise CyclicPrerequisites(remaining, [_step_title(selected[chunk_id]) for chunk_id in sorted(remaining)])
        return ordered

    @staticmethod
    def _fit_budget(
        ordered_ids: List[str],
        minutes: Dict[str, int],
        distance: Dict[str, int],
        target_ids: Set[str],
        provider_of: Dict[str, str],
        selected: Dict[str, Chunk],
        budget: int,
    ) -> Tuple[List[str], List[str]]:
        """Drop the steps farthest from a target until the path fits ``budget``."""
        total = sum(minutes[chunk_id] for chunk_id in ordered_ids)
        if total <= budget:
            return ordered_ids, []
        target_minutes = sum(minutes[chunk_id] for chunk_id in ordered_ids if chunk_id in target_ids)
        if target_minutes > budget:
            raise InfeasibleTimeConstraint(budget, target_minutes)

        droppable = sorted(
            (chunk_id for chunk_id in ordered_ids if chunk_id not in target_ids),
            key=lambda chunk_id: (-distance[chunk_id], -minutes[chunk_id], -ordered_ids.index(chunk_id)),
        )
        dropped: Set[str] = set()
        for chunk_id in droppable:
            if total <= budget:
                break
            dropped.add(chunk_id)
            total -= minutes[chunk_id]

        assumed: List[str] = []
        for chunk_id in ordered_ids:
            if chunk_id not in dropped:
                continue
            assumed.extend(selected[chunk_id].learning_objectives)
            assumed.extend(objective for objective, source in provider_of.items() if source == chunk_id)
        return [chunk_id for chunk_id in ordered_ids if chunk_id not in dropped], normalize_terms(assumed)

    # ------------------------------------------------------------------
    def get(self, path_id: str) -> LearningPath:
        path = db.get_learning_path(path_id)
        if path is None:
            raise LearningPathNotFound(path_id)
        return path

    def complete_step(self, path_id: str, step_id: str) -> LearningPath:
        path = self.get(path_id)
        step_ids = [step.id for step in path.steps]
        if step_id not in step_ids:
            raise LearningPathNotFound(path_id, step_id)
        completed = list(path.progress.completed_steps)
        if step_id not in completed:
            completed.append(step_id)
        remaining = [sid for sid in step_ids if sid not in completed]
        progress = PathProgress(
            completed_steps=completed,
            current_step_id=remaining[0] if remaining else None,
            overall_progress=round(100.0 * len(completed) / len(step_ids), 1) if step_ids else 100.0,
        )
        updated = db.update_learning_path_progress(path_id, progress)
        log_json(
            "learning_path_step_completed",
            {"path_id": path_id, "step_id": step_id, "overall_progress": progress.overall_progress},
            logger,
        )
        return updated

    # ------------------------------------------------------------------
    def adapt_difficulty(
        self,
        learner_id: str,
        course_id: str,
        current_performance: float,
        time_spent: Optional[int] = None,
        learning_style: Optional[str] = None,
        limit: int = 5,
    ) -> DifficultyAdjustment:
        """Suggest the next difficulty level for ``learner_id`` in a course.

        ``current_performance`` is a 0-100 score and ``time_spent`` the minutes
        taken on the course so far. The learner's current level is the level
        most of the course content sits at. A strong score moves one level up
        unless the learner took far longer than the content's reading time; a
        weak score moves one level down. Suggested content comes from the
        course itself, preferring content types that suit ``learning_style``.
        """
        if not 0.0 <= current_performance <= 100.0:
            raise InvalidParameters(
                "current_performance must be between 0 and 100",
                details={"current_performance": current_performance},
            )
        if time_spent is not None and time_spent < 0:
            raise InvalidParameters("time_spent must not be negative", details={"time_spent": time_spent})

        filters = SearchFilters(course_id=course_id, viewer_id=learner_id)
        rows = db.list_candidates(filters, allow_unvalidated=self.allow_unvalidated, require_embedding=False)
        if not rows and db.get_course(course_id) is None:
            raise ScopeNotFound("course", course_id)
        rows.sort(key=lambda row: row["rowid"])
        chunks: List[Chunk] = [row["chunk"] for row in rows]

        counts = Counter(chunk.difficulty for chunk in chunks)
        current = (
            min(counts, key=lambda level: (-counts[level], DIFFICULTY_LEVELS.index(level))) if counts else "beginner"
        )
        level = DIFFICULTY_LEVELS.index(current)
        expected = sum(
            chunk.estimated_minutes or estimate_minutes(chunk.text) for chunk in chunks if chunk.difficulty == current
        )
        score = f"{current_performance:.0f}%"

        if current_performance >= ADVANCE_PERFORMANCE:
            if time_spent is not None and expected and time_spent > expected * SLOW_PACE_FACTOR:
                direction = "maintain"
                reasoning = (
                    f"Scored {score} but needed {time_spent} min for about {expected} min of "
                    f"{current} material; consolidate before moving up."
                )
            elif level == len(DIFFICULTY_LEVELS) - 1:
                direction = "maintain"
                reasoning = f"Scored {score} and already working at the {current} level."
            else:
                direction = "increase"
                reasoning = f"Scored {score}; ready for {DIFFICULTY_LEVELS[level + 1]} material."
        elif current_performance < SUPPORT_PERFORMANCE:
            if level == 0:
                direction = "maintain"
                reasoning = f"Scored {score}; keep practising at the {current} level."
            else:
                direction = "decrease"
                reasoning = f"Scored {score}; revisit {DIFFICULTY_LEVELS[level - 1]} material first."
        else:
            direction = "maintain"
            reasoning = f"Scored {score}; the {current} level is a good fit."

        step = {"increase": 1, "decrease": -1, "maintain": 0}[direction]
        target = level + step
        recommended = DIFFICULTY_LEVELS[target]
        preferred = STYLE_CONTENT_TYPES.get((learning_style or "").strip().lower(), set())
        ranked = sorted(
            range(len(chunks)),
            key=lambda i: (
                abs(DIFFICULTY_LEVELS.index(chunks[i].difficulty) - target),
                chunks[i].content_type not in preferred,
                i,
            ),
        )
        resources = [
            StepResource(
                id=chunks[i].id,
                title=_step_title(chunks[i]),
                type=_resource_type(chunks[i].content_type),
                description=chunks[i].abstract or chunks[i].source,
            )
            for i in ranked[: max(0, limit)]
        ]

        adjustment = DifficultyAdjustment(
            learner_id=learner_id,
            course_id=course_id,
            current_performance=current_performance,
            time_spent=time_spent,
            learning_style=learning_style,
            current_difficulty=current,
            recommended_difficulty=recommended,
            direction=direction,
            reasoning=reasoning,
            resources=resources,
        )
        log_json(
            "difficulty_adapted",
            {
                "learner_id": learner_id,
                "course_id": course_id,
                "performance": current_performance,
                "from": current,
                "to": recommended,
                "direction": direction,
            },
            logger,
        )
        return adjustment
