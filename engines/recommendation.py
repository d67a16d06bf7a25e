"""Personalized content recommendations driven by learner mastery."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

import db
from engines.retrieval import MAX_LIMIT, Retriever
from errors import InvalidParameters
from rag import estimate_minutes
from tutor import log_json
from schemas import KnowledgeBase, LearnerProfile, Recommendation, RecommendationScope, SearchFilters

logger = logging.getLogger(__name__)

WEAK_MASTERY_THRESHOLD = 0.6
MASTERED_THRESHOLD = 0.85
RECENCY_HALF_LIFE_DAYS = 30.0
APPROVED_BONUS = 0.05

SIMILARITY_WEIGHT = 0.7
RECENCY_WEIGHT = 0.2
WEAK_OVERLAP_WEIGHT = 0.1


def weak_concepts(profile: LearnerProfile, threshold: float = WEAK_MASTERY_THRESHOLD) -> List[str]:
    """Concepts below ``threshold``, weakest first."""
    weak = [(value, concept) for concept, value in profile.mastery.items() if value < threshold]
    return [concept for _, concept in sorted(weak)]


def recency_score(created_at: datetime, now: datetime, half_life_days: float = RECENCY_HALF_LIFE_DAYS) -> float:
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    age_days = max(0.0, (now - created_at).total_seconds() / 86400.0)
    return 0.5 ** (age_days / half_life_days)


class RecommendationEngine:
    def __init__(
        self,
        retriever: Optional[Retriever] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.retriever = retriever or Retriever()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def recommend(
        self,
        profile: LearnerProfile,
        scope: Optional[RecommendationScope] = None,
        limit: int = 5,
    ) -> List[Recommendation]:
        if not 1 <= limit <= MAX_LIMIT:
            raise InvalidParameters(f"limit must be between 1 and {MAX_LIMIT}", details={"limit": limit})
        scope = scope or RecommendationScope()
        weak = weak_concepts(profile)
        subject = scope.subject or profile.focus_subject
        query = " ".join(weak) or subject
        if not query:
            logger.info("No weak concepts or focus subject for learner %s; nothing to recommend", profile.learner_id)
            return []

        filters = SearchFilters(
            course_id=scope.course_id,
            subject=subject,
            grade=scope.grade or profile.grade,
            knowledge_base_ids=scope.knowledge_base_ids,
            viewer_id=profile.learner_id,
        )
        results = self.retriever.search(query, filters, min(MAX_LIMIT, limit * 3))

        now = self._clock()
        weak_keys = {concept.lower() for concept in weak}
        mastered = {concept.lower() for concept, value in profile.mastery.items() if value >= MASTERED_THRESHOLD}
        knowledge_bases: Dict[str, Optional[KnowledgeBase]] = {}
        scored: List[Recommendation] = []
        for result in results:
            chunk = result.chunk
            concept_keys = {concept.lower() for concept in chunk.concepts}
            if concept_keys and concept_keys <= mastered:
                continue
            overlap = concept_keys & weak_keys
            relevance = (
                SIMILARITY_WEIGHT * max(0.0, result.similarity)
                + RECENCY_WEIGHT * recency_score(chunk.created_at, now)
                + WEAK_OVERLAP_WEIGHT * (len(overlap) / len(weak_keys) if weak_keys else 0.0)
            )
            if chunk.validation_status == "approved":
                relevance += APPROVED_BONUS
            if chunk.knowledge_base_id not in knowledge_bases:
                knowledge_bases[chunk.knowledge_base_id] = db.get_knowledge_base(chunk.knowledge_base_id)
            kb = knowledge_bases[chunk.knowledge_base_id]

            if overlap:
                matched = [concept for concept in chunk.concepts if concept.lower() in overlap]
                reasoning = f"Practises concepts you are still building: {', '.join(matched)}"
            elif weak:
                reasoning = "Closely related to the concepts you are working on"
            else:
                reasoning = f"Matches your focus on {subject}"

            words = chunk.text.split()
            scored.append(
                Recommendation(
                    chunk_id=chunk.id,
                    knowledge_base_id=chunk.knowledge_base_id,
                    title=chunk.learning_objectives[0] if chunk.learning_objectives else " ".join(words[:8]),
                    description=chunk.abstract or chunk.text[:200].strip(),
                    subject=kb.subject if kb else None,
                    grade=kb.grade if kb else None,
                    difficulty=chunk.difficulty,
                    concepts=list(chunk.concepts),
                    learning_objectives=list(chunk.learning_objectives),
                    estimated_minutes=chunk.estimated_minutes or estimate_minutes(chunk.text),
                    relevance_score=round(relevance, 4),
                    reasoning=reasoning,
                )
            )

        scored.sort(key=lambda item: (-item.relevance_score, item.chunk_id))
        recommendations = scored[:limit]
        log_json(
            "recommendations_generated",
            {
                "learner_id": profile.learner_id,
                "weak_concepts": weak,
                "candidates": len(results),
                "returned": [item.chunk_id for item in recommendations],
            },
            logger,
        )
        return recommendations
