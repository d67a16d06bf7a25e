from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_kb
from engines.recommendation import RecommendationEngine, recency_score, weak_concepts
from errors import InvalidParameters
from schemas import ChunkMetadata, LearnerProfile, RecommendationScope


@pytest.fixture
def library(kb_service):
    physics = make_kb(kb_service)
    maths = make_kb(kb_service, name="Maths", subject="mathematics", grade="5")

    def add(kb, text, concepts, objectives=()):
        [chunk] = kb_service.process_content(
            kb.id,
            kb.created_by,
            text,
            ChunkMetadata(concepts=concepts, learning_objectives=list(objectives)),
        )
        return chunk

    return {
        "newton": add(physics, "A net force causes acceleration; force is measured in newtons.", ["force"],
                      ["Relate force and acceleration"]),
        "energy": add(physics, "Kinetic energy depends on motion and mass.", ["energy"]),
        "untagged": add(physics, "Friction is a force that opposes motion.", []),
        "fraction": add(maths, "A fraction describes equal parts of a whole.", ["fractions"]),
    }


@pytest.fixture
def engine(retriever):
    return RecommendationEngine(retriever)


def test_weak_concepts_are_sorted_by_mastery():
    profile = LearnerProfile(learner_id="l1", mastery={"energy": 0.5, "force": 0.2, "cells": 0.9})
    assert weak_concepts(profile) == ["force", "energy"]


def test_recency_score_halves_each_half_life():
    now = datetime(2025, 1, 31, tzinfo=timezone.utc)
    assert recency_score(now, now) == pytest.approx(1.0)
    assert recency_score(now - timedelta(days=30), now) == pytest.approx(0.5)


def test_recommends_content_for_weak_concepts(engine, library):
    profile = LearnerProfile(
        learner_id="learner-1",
        mastery={"force": 0.3, "energy": 0.9, "fractions": 0.95},
    )

    items = engine.recommend(profile, limit=5)
    ids = [item.chunk_id for item in items]

    assert ids[0] == library["newton"].id
    assert library["energy"].id not in ids
    assert library["fraction"].id not in ids
    top = items[0]
    assert top.title == "Relate force and acceleration"
    assert "force" in top.reasoning
    assert top.subject == "physics"
    assert top.estimated_minutes >= 5
    scores = [item.relevance_score for item in items]
    assert scores == sorted(scores, reverse=True)


def test_focus_subject_without_weak_concepts(engine, library):
    profile = LearnerProfile(learner_id="learner-1", focus_subject="mathematics")

    items = engine.recommend(profile)

    assert [item.chunk_id for item in items] == [library["fraction"].id]
    assert items[0].reasoning == "Matches your focus on mathematics"


def test_scope_narrows_candidates(engine, library):
    profile = LearnerProfile(learner_id="learner-1", mastery={"force": 0.1})
    items = engine.recommend(profile, RecommendationScope(subject="mathematics"))
    assert [item.chunk_id for item in items] == [library["fraction"].id]


def test_nothing_to_recommend(engine, library):
    assert engine.recommend(LearnerProfile(learner_id="learner-1", mastery={"force": 0.95})) == []


def test_limit_is_validated(engine, library):
    with pytest.raises(InvalidParameters):
        engine.recommend(LearnerProfile(learner_id="learner-1", mastery={"force": 0.1}), limit=0)
