import asyncio
import json
import logging

import httpx
import pytest

import tutor
from errors import GenerationUnavailable

URL = "http://llm.test/v1/chat/completions"
MESSAGES = [{"role": "user", "content": "What is inertia?"}]


def _ok(content="Inertia resists changes in motion."):
    return httpx.Response(
        200,
        json={
            "choices": [{"message": {"role": "assistant", "content": content}}],
            "usage": {"prompt_tokens": 12, "completion_tokens": 7},
        },
    )


class Script:
    """Replays queued responses (or exceptions) and records requests."""

    def __init__(self, *steps):
        self.steps = list(steps)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        step = self.steps.pop(0) if len(self.steps) > 1 else self.steps[0]
        if isinstance(step, Exception):
            raise step
        return step


def _client(script, **kwargs):
    kwargs.setdefault("max_retries", 2)
    return tutor.LLMClient(
        URL,
        "gpt-test",
        timeout=1.0,
        retry_backoff=0.0,
        transport=httpx.MockTransport(script),
        **kwargs,
    )


def test_successful_completion():
    script = Script(_ok())
    client = _client(script, api_key="secret", temperature=0.2, max_tokens=100)

    answer = asyncio.run(client.generate(MESSAGES))

    assert answer == "Inertia resists changes in motion."
    [request] = script.requests
    body = json.loads(request.content)
    assert body["model"] == "gpt-test"
    assert body["messages"] == MESSAGES
    assert body["temperature"] == 0.2
    assert body["max_tokens"] == 100
    assert request.headers["Authorization"] == "Bearer secret"


def test_transient_errors_are_retried():
    script = Script(httpx.Response(503), httpx.ConnectError("connection refused"), _ok())

    assert asyncio.run(_client(script)(MESSAGES)) == "Inertia resists changes in motion."
    assert len(script.requests) == 3


def test_retries_are_bounded():
    script = Script(httpx.Response(429))

    with pytest.raises(GenerationUnavailable) as excinfo:
        asyncio.run(_client(script).generate(MESSAGES))

    assert len(script.requests) == 3
    assert excinfo.value.code == "generation_unavailable"
    assert excinfo.value.details["attempts"] == 3
    assert excinfo.value.details["reason"] == "HTTP 429"


def test_client_errors_are_not_retried():
    script = Script(httpx.Response(400, json={"error": "bad request"}))

    with pytest.raises(GenerationUnavailable):
        asyncio.run(_client(script).generate(MESSAGES))
    assert len(script.requests) == 1


def test_malformed_response_is_unavailable():
    script = Script(httpx.Response(200, json={"unexpected": True}))

    with pytest.raises(GenerationUnavailable) as excinfo:
        asyncio.run(_client(script).generate(MESSAGES))
    assert "malformed" in excinfo.value.details["reason"]


def test_every_call_emits_one_json_log_line(caplog):
    llm_logger = logging.getLogger("edurag.llm")
    llm_logger.addHandler(caplog.handler)
    try:
        with caplog.at_level(logging.INFO, logger="edurag.llm"):
            asyncio.run(_client(Script(httpx.Response(500), _ok())).generate(MESSAGES, request_id="req-1"))
    finally:
        llm_logger.removeHandler(caplog.handler)

    events = [json.loads(record.getMessage()) for record in caplog.records if record.name == "edurag.llm"]
    assert len(events) == 1
    event = events[0]
    assert event["event"] == "llm_call"
    assert event["request_id"] == "req-1"
    assert event["attempts"] == 2
    assert event["status"] == "ok"
    assert event["tokens_in"] == 12
    assert event["tokens_out"] == 7


def test_system_prompt_reflects_personality_and_session():
    prompt = tutor.build_system_prompt("challenging", "assessment", "advanced", "Optics")
    assert "demanding tutor" in prompt
    assert "preparing for an assessment" in prompt
    assert "Level: advanced. Topic: Optics." in prompt
    assert tutor.build_system_prompt("unknown") == tutor.build_system_prompt("encouraging")
