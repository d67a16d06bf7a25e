"""FastAPI endpoint tests driven straight through the ASGI interface.

New routes should get cases here that go through `_run_app` with an identity,
so the middleware and error mapping are exercised along with the handler.
"""

import asyncio
import json
from typing import Optional
from urllib.parse import urlencode

import pytest

import app
from errors import GenerationUnavailable

NEWTON = "Newton's first law: an object in motion stays in motion unless a net force acts on it."


def _serialize_response(messages):
    status = 500
    body_bytes = b""
    for message in messages:
        if message["type"] == "http.response.start":
            status = message["status"]
        elif message["type"] == "http.response.body":
            body_bytes += message.get("body", b"")
    data = json.loads(body_bytes.decode("utf-8") or "{}")
    return status, data


def _run_app(
    method: str,
    path: str,
    *,
    payload: Optional[dict] = None,
    query: Optional[dict] = None,
    user: Optional[str] = "teacher-1",
    role: Optional[str] = "teacher",
):
    body = b""
    headers = [(b"host", b"testserver")]
    if user is not None:
        headers.append((b"x-user-id", user.encode()))
    if role is not None:
        headers.append((b"x-user-role", role.encode()))
    if payload is not None:
        body = json.dumps(payload).encode("utf-8")
        headers.extend(
            [
                (b"content-type", b"application/json"),
                (b"content-length", str(len(body)).encode()),
            ]
        )
    query_string = urlencode(query or {}, doseq=True).encode()
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method.upper(),
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "scheme": "http",
        "query_string": query_string,
        "headers": headers,
        "client": ("testclient", 12345),
        "server": ("testserver", 80),
        "state": {},
    }

    messages = []
    delivered = False

    async def receive():
        nonlocal delivered
        if not delivered:
            delivered = True
            return {"type": "http.request", "body": body, "more_body": False}
        return {"type": "http.disconnect"}

    async def send(message):
        messages.append(message)

    async def _call():
        await app.app(scope, receive, send)
        return _serialize_response(messages)

    return asyncio.run(_call())


class FakeGenerate:
    def __init__(self, answer="An object keeps moving unless a force acts on it [1]."):
        self.answer = answer
        self.calls = []

    async def __call__(self, messages):
        self.calls.append(messages)
        return self.answer


@pytest.fixture
def generate(temp_db, monkeypatch):
    fake = FakeGenerate()
    monkeypatch.setattr(app.RESPONDER, "_generate", fake)
    return fake


def _create_kb(**overrides):
    payload = {"name": "Mechanics", "subject": "physics", "grade": "9", "is_public": True}
    payload.update(overrides)
    status, data = _run_app("POST", "/rag/knowledge-bases", payload=payload)
    assert status == 201, data
    return data


def _add_content(kb_id, content=NEWTON, **metadata):
    status, data = _run_app(
        "POST",
        "/rag/content",
        payload={"knowledge_base_id": kb_id, "content": content, "metadata": metadata},
    )
    assert status == 201, data
    return data


def test_healthz_needs_no_identity():
    status, data = _run_app("GET", "/healthz", user=None, role=None)
    assert status == 200
    assert data == {"status": "ok"}


def test_missing_identity_is_rejected(temp_db):
    status, data = _run_app("GET", "/rag/knowledge-bases", user=None)
    assert status == 401
    assert data["error"]["code"] == "missing_identity"

    status, data = _run_app("GET", "/rag/knowledge-bases", role="janitor")
    assert status == 401


def test_students_cannot_create_knowledge_bases(temp_db):
    status, data = _run_app(
        "POST",
        "/rag/knowledge-bases",
        payload={"name": "Mine", "subject": "physics", "grade": "9"},
        user="student-1",
        role="student",
    )
    assert status == 403
    assert data["error"]["kind"] == "unauthorized"


def test_create_rejects_invalid_body(temp_db):
    status, _ = _run_app("POST", "/rag/knowledge-bases", payload={"name": "No subject", "grade": "9"})
    assert status == 422

    status, data = _run_app(
        "POST",
        "/rag/knowledge-bases",
        payload={"name": "Bad", "subject": "physics", "grade": "9", "chunk_size": 100, "chunk_overlap": 100},
    )
    assert status == 422
    assert data["error"]["code"] == "invalid_parameters"


def test_ingest_and_search(temp_db):
    kb = _create_kb()
    created = _add_content(kb["id"], concepts=["Newton's laws"], learning_objectives=["State Newton's first law"])
    assert created["chunks_created"] == 1
    [chunk_id] = created["chunk_ids"]

    status, data = _run_app(
        "POST",
        "/rag/search",
        payload={"query": "Newton's laws of motion", "filters": {"subject": "physics"}, "limit": 5},
        user="student-1",
        role="student",
    )
    assert status == 200
    assert data["count"] == 1
    assert data["results"][0]["chunk"]["id"] == chunk_id
    assert -1.0 <= data["results"][0]["similarity"] <= 1.0

    status, data = _run_app(
        "POST",
        "/rag/search/concept",
        payload={"concept": "newton's laws"},
        user="student-1",
        role="student",
    )
    assert status == 200
    assert [item["chunk"]["id"] for item in data["results"]] == [chunk_id]

    status, stats = _run_app("GET", f"/rag/knowledge-bases/{kb['id']}/stats")
    assert status == 200
    assert stats["total_chunks"] == 1


def test_content_requires_ownership(temp_db):
    kb = _create_kb()
    status, data = _run_app(
        "POST",
        "/rag/content",
        payload={"knowledge_base_id": kb["id"], "content": NEWTON},
        user="teacher-2",
    )
    assert status == 403

    status, data = _run_app("POST", "/rag/content", payload={"knowledge_base_id": "kb_missing", "content": NEWTON})
    assert status == 404
    assert data["error"]["code"] == "knowledge_base_not_found"


def test_private_knowledge_bases_are_not_searchable_by_others(temp_db):
    kb = _create_kb(is_public=False)
    _add_content(kb["id"])

    status, data = _run_app(
        "POST", "/rag/search", payload={"query": "force"}, user="student-1", role="student"
    )
    assert status == 200
    assert data["count"] == 0

    status, data = _run_app("POST", "/rag/search", payload={"query": "force"}, user="admin-1", role="admin")
    assert data["count"] == 1


def test_tutor_session_flow(generate):
    kb = _create_kb()
    _add_content(kb["id"], concepts=["Newton's laws"])
    student = {"user": "student-1", "role": "student"}

    status, session = _run_app(
        "POST", "/tutor/sessions", payload={"knowledge_base_id": kb["id"], "tutor_personality": "patient"}, **student
    )
    assert status == 201
    assert session["status"] == "active"

    status, data = _run_app(
        "POST", "/tutor/query", payload={"session_id": session["id"], "query": "Why do things keep moving?"}, **student
    )
    assert status == 200
    assert data["response"] == generate.answer
    assert data["no_relevant_content"] is False
    assert data["context"][0]["text"] == NEWTON
    assert data["context"][0]["knowledge_base_id"] == kb["id"]
    interaction = data["interaction"]
    assert interaction["sequence"] == 1

    status, data = _run_app(
        "POST", f"/tutor/interactions/{interaction['id']}/feedback", payload={"user_feedback": "helpful"}, **student
    )
    assert status == 200
    assert data["user_feedback"] == "helpful"

    status, data = _run_app(
        "POST", f"/tutor/interactions/{interaction['id']}/feedback", payload={"user_feedback": "unhelpful"}, **student
    )
    assert status == 409

    status, ended = _run_app("POST", f"/tutor/sessions/{session['id']}/end", payload={}, **student)
    assert status == 200
    assert ended["status"] == "completed"

    status, data = _run_app("POST", f"/tutor/sessions/{session['id']}/end", payload={}, **student)
    assert status == 409
    assert data["error"]["code"] == "session_not_active"

    status, data = _run_app(
        "POST", "/tutor/query", payload={"session_id": session["id"], "query": "One more?"}, **student
    )
    assert status == 409
    assert len(generate.calls) == 1

    status, _ = _run_app("GET", "/tutor/analytics", **student)
    assert status == 403

    status, analytics = _run_app("GET", "/tutor/analytics", query={"learner_id": "student-1"})
    assert status == 200
    assert analytics["total_sessions"] == 1
    assert analytics["by_status"]["completed"] == 1
    assert analytics["satisfaction_score"] == 1.0


def test_query_without_content_flags_no_relevant_content(generate):
    status, session = _run_app("POST", "/tutor/sessions", payload={}, user="student-1", role="student")
    assert status == 201

    status, data = _run_app(
        "POST",
        "/tutor/query",
        payload={"session_id": session["id"], "query": "What is photosynthesis?"},
        user="student-1",
        role="student",
    )
    assert status == 200
    assert data["context"] == []
    assert data["no_relevant_content"] is True


def test_sessions_are_private_to_their_learner(generate):
    status, session = _run_app("POST", "/tutor/sessions", payload={}, user="student-1", role="student")

    status, data = _run_app(
        "POST",
        "/tutor/query",
        payload={"session_id": session["id"], "query": "Hello?"},
        user="student-2",
        role="student",
    )
    assert status == 403
    assert generate.calls == []

    status, data = _run_app("POST", "/tutor/sessions/sess_missing/end", payload={}, user="student-1", role="student")
    assert status == 404


def test_generation_failure_maps_to_503(temp_db, monkeypatch):
    async def failing(messages):
        raise GenerationUnavailable("gpt-test", "HTTP 503", attempts=3)

    monkeypatch.setattr(app.RESPONDER, "_generate", failing)
    status, session = _run_app("POST", "/tutor/sessions", payload={}, user="student-1", role="student")

    status, data = _run_app(
        "POST",
        "/tutor/query",
        payload={"session_id": session["id"], "query": "What is force?"},
        user="student-1",
        role="student",
    )
    assert status == 503
    assert data["error"]["code"] == "generation_unavailable"


def test_validation_endpoints(temp_db):
    kb = _create_kb()
    [chunk_id] = _add_content(kb["id"])["chunk_ids"]

    status, data = _run_app(
        "POST", "/rag/validations", payload={"chunk_id": chunk_id, "validation_type": "accuracy", "scores": {}}
    )
    assert status == 422
    assert data["error"]["code"] == "no_scores_provided"

    status, data = _run_app(
        "POST",
        "/rag/validations",
        payload={"chunk_id": chunk_id, "validation_type": "accuracy", "scores": {"accuracy": 90}},
        user="student-1",
        role="student",
    )
    assert status == 403

    status, status_before = _run_app("GET", f"/rag/chunks/{chunk_id}/validation")
    assert status_before["status"] == "pending"
    assert status_before["history"] == []

    status, record = _run_app(
        "POST",
        "/rag/validations",
        payload={"chunk_id": chunk_id, "validation_type": "accuracy", "scores": {"accuracy": 90, "clarity": 80}},
    )
    assert status == 201
    assert record["overall_score"] == 85.0
    assert record["status"] == "approved"

    status, data = _run_app("GET", f"/rag/chunks/{chunk_id}/validation")
    assert data["status"] == "approved"
    assert len(data["history"]) == 1

    status, quality = _run_app("GET", "/rag/quality", query={"knowledge_base_id": kb["id"]})
    assert status == 200


def test_learning_path_endpoints(temp_db):
    kb = _create_kb()
    _add_content(
        kb["id"],
        "Force is a push or pull on an object.",
        learning_objectives=["Define force"],
        estimated_minutes=10,
    )
    _add_content(
        kb["id"],
        "Newton's second law: force equals mass times acceleration.",
        learning_objectives=["Apply Newton's second law"],
        prerequisites=["Define force"],
        estimated_minutes=15,
    )
    student = {"user": "student-1", "role": "student"}

    status, path = _run_app(
        "POST", "/learning-paths", payload={"target_objectives": ["Apply Newton's second law"]}, **student
    )
    assert status == 201
    assert path["learner_id"] == "student-1"
    assert [step["title"] for step in path["steps"]] == ["Define force", "Apply Newton's second law"]
    assert path["estimated_duration"] == 25

    first = path["steps"][0]["id"]
    status, updated = _run_app("POST", f"/learning-paths/{path['id']}/steps/{first}/complete", **student)
    assert status == 200
    assert updated["progress"]["completed_steps"] == [first]

    status, data = _run_app(
        "POST",
        "/learning-paths",
        payload={"target_objectives": ["Apply Newton's second law"], "time_constraint": 10},
        **student,
    )
    assert status == 422
    assert data["error"]["code"] == "infeasible_time_constraint"

    status, data = _run_app(
        "POST", "/learning-paths", payload={"target_objectives": ["Explain quantum tunnelling"]}, **student
    )
    assert status == 422
    assert data["error"]["code"] == "unreachable_objective"

    status, _ = _run_app(
        "POST",
        "/learning-paths",
        payload={"learner_id": "student-2", "target_objectives": ["Define force"]},
        **student,
    )
    assert status == 403


def test_recommendations_endpoint(temp_db):
    kb = _create_kb()
    [chunk_id] = _add_content(kb["id"], concepts=["force"])["chunk_ids"]

    status, data = _run_app(
        "POST",
        "/recommendations",
        payload={"mastery": {"force": 0.2}, "limit": 3},
        user="student-1",
        role="student",
    )
    assert status == 200
    assert data["count"] == 1
    assert data["recommendations"][0]["chunk_id"] == chunk_id

    status, data = _run_app(
        "POST", "/recommendations", payload={"mastery": {"force": 0.2}, "limit": 0}, user="student-1", role="student"
    )
    assert status == 422


def test_approve_and_reject_endpoints(temp_db):
    kb = _create_kb()
    [chunk_id] = _add_content(kb["id"])["chunk_ids"]

    status, _ = _run_app(
        "POST", f"/rag/chunks/{chunk_id}/approve", payload={}, user="student-1", role="student"
    )
    assert status == 403

    status, record = _run_app("POST", f"/rag/chunks/{chunk_id}/approve", payload={"feedback": "Accurate"})
    assert status == 201
    assert record["status"] == "approved"
    assert record["overall_score"] == 100.0

    status, data = _run_app("POST", f"/rag/chunks/{chunk_id}/reject", payload={"reason": " "})
    assert status == 422
    assert data["error"]["code"] == "invalid_parameters"

    status, record = _run_app(
        "POST",
        f"/rag/chunks/{chunk_id}/reject",
        payload={"reason": "States the law imprecisely", "suggestions": "Mention net force"},
        user="admin-1",
        role="admin",
    )
    assert status == 201
    assert record["status"] == "needs_revision"
    assert record["flagged_issues"] == ["States the law imprecisely"]

    status, data = _run_app("GET", f"/rag/chunks/{chunk_id}/validation")
    assert data["status"] == "needs_revision"
    assert len(data["history"]) == 2

    status, data = _run_app("POST", "/rag/chunks/chunk_missing/approve", payload={})
    assert status == 404


def test_alignment_endpoint_records_standards(temp_db):
    kb = _create_kb()
    [chunk_id] = _add_content(kb["id"])["chunk_ids"]

    status, chunk = _run_app(
        "POST",
        f"/rag/chunks/{chunk_id}/alignment",
        payload={
            "standards_alignment": ["NGSS HS-PS2-1"],
            "assessment_criteria": ["Predicts motion without a net force", ""],
            "course_id": "physics-9",
        },
    )
    assert status == 200
    assert chunk["standards_alignment"] == ["NGSS HS-PS2-1"]
    assert chunk["assessment_criteria"] == ["Predicts motion without a net force"]
    assert chunk["course_id"] == "physics-9"


def test_adapt_difficulty_endpoint(temp_db):
    kb = _create_kb()
    _add_content(kb["id"], "Forces push and pull objects.", course_id="physics-9", difficulty="beginner")
    [laws] = _add_content(kb["id"], NEWTON, course_id="physics-9", difficulty="intermediate")["chunk_ids"]
    student = {"user": "student-1", "role": "student"}

    status, data = _run_app(
        "POST",
        "/learning-paths/adapt-difficulty",
        payload={"course_id": "physics-9", "current_performance": 70, "limit": 1},
        **student,
    )
    assert status == 200, data
    assert data["learner_id"] == "student-1"
    assert data["direction"] == "maintain"
    assert data["recommended_difficulty"] == "beginner"

    status, data = _run_app(
        "POST",
        "/learning-paths/adapt-difficulty",
        payload={"course_id": "physics-9", "current_performance": 95, "time_spent": 1},
        **student,
    )
    assert data["direction"] == "increase"
    assert data["recommended_difficulty"] == "intermediate"
    assert data["resources"][0]["id"] == laws

    status, data = _run_app(
        "POST",
        "/learning-paths/adapt-difficulty",
        payload={"course_id": "physics-9", "current_performance": 120},
        **student,
    )
    assert status == 422
    assert data["error"]["code"] == "invalid_parameters"

    status, data = _run_app(
        "POST", "/learning-paths/adapt-difficulty", payload={"course_id": "chemistry-9", "current_performance": 50}
    )
    assert status == 404
    assert data["error"]["code"] == "scope_not_found"

    status, _ = _run_app(
        "POST",
        "/learning-paths/adapt-difficulty",
        payload={"learner_id": "student-2", "course_id": "physics-9", "current_performance": 50},
        **student,
    )
    assert status == 403
