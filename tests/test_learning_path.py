import json
import logging

import pytest

import db
from conftest import make_kb
from engines.path_planner import LearningPathPlanner, objective_matches
from errors import (
    CyclicPrerequisites,
    InfeasibleTimeConstraint,
    InvalidParameters,
    LearningPathNotFound,
    ScopeNotFound,
    UnreachableObjective,
)
from schemas import ChunkMetadata, LearnerProfile

TARGET = "Apply Newton's second law"


def _add(service, kb, text, objective, prerequisites=(), minutes=10):
    [chunk] = service.process_content(
        kb.id,
        kb.created_by,
        text,
        ChunkMetadata(
            learning_objectives=[objective],
            prerequisites=list(prerequisites),
            estimated_minutes=minutes,
        ),
    )
    return chunk


@pytest.fixture
def mechanics(kb_service):
    kb = make_kb(kb_service)
    force = _add(kb_service, kb, "Force is a push or pull on an object.", "Define force")
    second_law = _add(
        kb_service,
        kb,
        "Newton's second law: force equals mass times acceleration.",
        TARGET,
        ["Define force", "Define mass"],
        minutes=15,
    )
    mass = _add(kb_service, kb, "Mass resists acceleration and changes in motion.", "Define mass")
    return {"kb": kb, "force": force, "second_law": second_law, "mass": mass}


@pytest.fixture
def planner(temp_db, keyword_embedder):
    return LearningPathPlanner(embedder=keyword_embedder)


def _profile(*known):
    return LearnerProfile(learner_id="learner-1", current_knowledge=list(known))


def _assert_topologically_valid(path):
    covered = {item.lower() for item in path.current_knowledge + path.assumed_knowledge}
    for step in path.steps:
        for prerequisite in step.prerequisites:
            assert prerequisite.lower() in covered, f"{prerequisite} not covered before {step.title}"
        covered.update(objective.lower() for objective in step.learning_objectives)


def test_objective_matching_is_normalized_containment():
    assert objective_matches("define  FORCE", "Define force")
    assert objective_matches("Define force", "Define force and weight")
    assert not objective_matches("Define mass", "Define force")
    assert not objective_matches("", "Define force")


def test_prerequisites_come_first(planner, mechanics):
    path = planner.generate(_profile(), [TARGET])

    assert [step.chunk_id for step in path.steps] == [
        mechanics["force"].id,
        mechanics["mass"].id,
        mechanics["second_law"].id,
    ]
    assert [step.order for step in path.steps] == [1, 2, 3]
    assert path.steps[-1].is_target
    assert path.steps[0].distance == 1
    assert path.estimated_duration == 35
    assert path.progress.current_step_id == path.steps[0].id
    _assert_topologically_valid(path)
    assert db.get_learning_path(path.id).steps == path.steps


def test_known_objectives_are_skipped(planner, mechanics):
    path = planner.generate(_profile("define force"), [TARGET])

    assert [step.chunk_id for step in path.steps] == [mechanics["mass"].id, mechanics["second_law"].id]
    _assert_topologically_valid(path)


def test_thirty_minute_budget_drops_farthest_steps(planner, mechanics):
    path = planner.generate(_profile(), [TARGET], time_constraint=30)

    assert path.estimated_duration <= 30
    assert path.steps[-1].chunk_id == mechanics["second_law"].id
    assert len(path.steps) == 2
    assert path.assumed_knowledge == ["Define mass"]
    assert path.time_constraint == 30
    _assert_topologically_valid(path)


def test_budget_below_target_is_infeasible(planner, mechanics):
    with pytest.raises(InfeasibleTimeConstraint) as excinfo:
        planner.generate(_profile(), [TARGET], time_constraint=10)
    assert excinfo.value.details["minimum_minutes"] == 15


def test_unreachable_objective(planner, mechanics):
    with pytest.raises(UnreachableObjective) as excinfo:
        planner.generate(_profile(), ["Explain quantum tunnelling"])
    assert excinfo.value.details["objective"] == "Explain quantum tunnelling"


def test_missing_prerequisite_is_reported(kb_service, planner):
    kb = make_kb(kb_service)
    _add(kb_service, kb, "Projectile motion under constant acceleration.", "Solve projectile motion problems",
         ["Vector decomposition"])

    with pytest.raises(UnreachableObjective) as excinfo:
        planner.generate(_profile(), ["Solve projectile motion problems"], knowledge_base_ids=[kb.id])
    assert excinfo.value.details["missing_prerequisite"] == "Vector decomposition"


def test_cyclic_prerequisites(kb_service, planner):
    kb = make_kb(kb_service)
    _add(kb_service, kb, "Energy notes part one.", "Topic alpha", ["Topic beta"])
    _add(kb_service, kb, "Energy notes part two.", "Topic beta", ["Topic alpha"])

    with pytest.raises(CyclicPrerequisites) as excinfo:
        planner.generate(_profile(), ["Topic alpha"], knowledge_base_ids=[kb.id])
    assert sorted(excinfo.value.details["titles"]) == ["Topic alpha", "Topic beta"]


def test_invalid_requests(planner, mechanics):
    with pytest.raises(InvalidParameters):
        planner.generate(_profile(), [" "])
    with pytest.raises(InvalidParameters):
        planner.generate(_profile(), [TARGET], time_constraint=0)


def test_complete_step_tracks_progress(planner, mechanics):
    path = planner.generate(_profile(), [TARGET])
    first, second, _ = path.steps

    updated = planner.complete_step(path.id, first.id)
    assert updated.progress.completed_steps == [first.id]
    assert updated.progress.current_step_id == second.id
    assert updated.progress.overall_progress == pytest.approx(33.3)

    again = planner.complete_step(path.id, first.id)
    assert again.progress.completed_steps == [first.id]

    with pytest.raises(LearningPathNotFound):
        planner.complete_step(path.id, "step_missing")
    with pytest.raises(LearningPathNotFound):
        planner.get("path_missing")


def test_planner_events_are_logged_as_json(planner, mechanics, caplog):
    with caplog.at_level(logging.INFO, logger="engines.path_planner"):
        path = planner.generate(_profile(), [TARGET])
        planner.complete_step(path.id, path.steps[0].id)

    events = [json.loads(record.getMessage()) for record in caplog.records if record.name == "engines.path_planner"]
    assert [event["event"] for event in events] == ["learning_path_generated", "learning_path_step_completed"]
    assert events[0]["path_id"] == path.id
    assert events[0]["steps"] == 3
    assert events[1]["step_id"] == path.steps[0].id


@pytest.fixture
def course(kb_service):
    db.upsert_course("course-mech", "Mechanics", "physics")
    kb = make_kb(kb_service)
    chunks = {}
    for name, text, difficulty, content_type in (
        ("intro", "Forces push and pull objects around.", "beginner", "text"),
        ("laws", "Newton's laws relate force and motion.", "intermediate", "text"),
        ("lab", "Measure acceleration on a ramp with a cart.", "intermediate", "exercise"),
        ("momentum", "Momentum is conserved in collisions.", "advanced", "text"),
        ("demo", "Watch two carts collide on an air track.", "advanced", "video"),
    ):
        [chunks[name]] = kb_service.process_content(
            kb.id,
            kb.created_by,
            text,
            ChunkMetadata(
                course_id="course-mech",
                difficulty=difficulty,
                content_type=content_type,
                estimated_minutes=10,
            ),
        )
    return chunks


def test_strong_performance_moves_up_a_level(planner, course):
    adjustment = planner.adapt_difficulty("learner-1", "course-mech", 92, learning_style="visual")

    assert adjustment.current_difficulty == "intermediate"
    assert adjustment.recommended_difficulty == "advanced"
    assert adjustment.direction == "increase"
    assert [resource.id for resource in adjustment.resources[:2]] == [course["demo"].id, course["momentum"].id]
    assert adjustment.resources[0].type == "video"


def test_weak_performance_moves_down_a_level(planner, course):
    adjustment = planner.adapt_difficulty("learner-1", "course-mech", 40, limit=1)

    assert adjustment.direction == "decrease"
    assert adjustment.recommended_difficulty == "beginner"
    assert [resource.id for resource in adjustment.resources] == [course["intro"].id]


def test_slow_pace_holds_the_level(planner, course):
    adjustment = planner.adapt_difficulty("learner-1", "course-mech", 90, time_spent=60, learning_style="kinesthetic")

    assert adjustment.direction == "maintain"
    assert adjustment.recommended_difficulty == "intermediate"
    assert "60 min" in adjustment.reasoning
    assert adjustment.resources[0].id == course["lab"].id
    assert adjustment.resources[0].type == "exercise"


def test_middling_performance_keeps_the_level(planner, course):
    adjustment = planner.adapt_difficulty("learner-1", "course-mech", 70)
    assert adjustment.direction == "maintain"
    assert adjustment.recommended_difficulty == adjustment.current_difficulty == "intermediate"


def test_adapt_difficulty_rejects_bad_input(planner, course):
    with pytest.raises(InvalidParameters):
        planner.adapt_difficulty("learner-1", "course-mech", 101)
    with pytest.raises(InvalidParameters):
        planner.adapt_difficulty("learner-1", "course-mech", 50, time_spent=-5)
    with pytest.raises(ScopeNotFound):
        planner.adapt_difficulty("learner-1", "course-unknown", 50)


def test_empty_course_starts_at_beginner(planner, temp_db):
    db.upsert_course("course-empty", "Empty", "physics")
    adjustment = planner.adapt_difficulty("learner-1", "course-empty", 95)
    assert adjustment.current_difficulty == "beginner"
    assert adjustment.recommended_difficulty == "intermediate"
    assert adjustment.resources == []
