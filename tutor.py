import asyncio
import json
import logging
import os
import re
import threading
import time
from functools import lru_cache
from typing import Any, Dict, List, Mapping, Optional, Sequence
from uuid import uuid4

import httpx

from env_validation import get_env_float, get_env_int
from errors import GenerationUnavailable
from schemas import Interaction, SearchResult

logger = logging.getLogger(__name__)

GENERATION_URL = os.getenv("GENERATION_URL", "http://127.0.0.1:4891/v1/chat/completions")
MODEL_ID = os.getenv("MODEL_ID", "gpt-4o-mini")

_LLM_LOGGER = logging.getLogger("edurag.llm")
if not _LLM_LOGGER.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(message)s"))
    _LLM_LOGGER.addHandler(_handler)
_LLM_LOGGER.setLevel(logging.INFO)
_LLM_LOGGER.propagate = False

PERSONALITY_PROMPTS = {
    "encouraging": (
        "You are a warm, encouraging tutor. Celebrate progress, normalise mistakes "
        "and keep the learner motivated."
    ),
    "challenging": (
        "You are a demanding tutor. Push the learner to justify answers, ask probing "
        "follow-up questions and avoid giving solutions away too early."
    ),
    "patient": (
        "You are a calm, patient tutor. Explain step by step, check understanding "
        "often and repeat ideas in different words when needed."
    ),
    "enthusiastic": (
        "You are an enthusiastic tutor who loves the subject. Use vivid examples "
        "and connect ideas to everyday life."
    ),
}

SESSION_TYPE_GUIDANCE = {
    "study": "The learner is studying new material; explain concepts clearly.",
    "practice": "The learner is practising; prefer hints and worked examples over full answers.",
    "assessment": "The learner is preparing for an assessment; check understanding with short questions.",
    "help": "The learner is stuck; address the specific difficulty directly.",
}

SYSTEM_TUTOR_TEMPLATE = """{personality}

{session_guidance}
Level: {difficulty}. Topic: {topic}.

Ground every answer in the numbered context passages you are given and cite
them as [1], [2], ... after the sentences they support. If the context does not
cover the question, say so plainly and give only a brief general orientation.
Never invent facts, sources or citations."""


# Cache configuration for the system prompt builder
_BUILD_SYSTEM_PROMPT_CACHE_TTL_SECONDS = 5 * 60
_build_system_prompt_cache_lock = threading.Lock()
_build_system_prompt_cache_last_cleared = time.monotonic()


@lru_cache(maxsize=256)
def _build_system_prompt_cached(
    personality: str,
    session_type: str,
    difficulty: str,
    topic: str,
) -> str:
    return SYSTEM_TUTOR_TEMPLATE.format(
        personality=PERSONALITY_PROMPTS.get(personality, PERSONALITY_PROMPTS["encouraging"]),
        session_guidance=SESSION_TYPE_GUIDANCE.get(session_type, SESSION_TYPE_GUIDANCE["study"]),
        difficulty=difficulty,
        topic=topic,
    )


# --------- System-Prompt Builder ---------
def build_system_prompt(
    personality: str,
    session_type: str = "study",
    difficulty: Optional[str] = None,
    topic: Optional[str] = None,
) -> str:
    """Compose the tutor system prompt for a session's personality and scope."""

    now = time.monotonic()
    with _build_system_prompt_cache_lock:
        global _build_system_prompt_cache_last_cleared
        if now - _build_system_prompt_cache_last_cleared >= _BUILD_SYSTEM_PROMPT_CACHE_TTL_SECONDS:
            _build_system_prompt_cached.cache_clear()
            _build_system_prompt_cache_last_cleared = now
            logger.debug("build_system_prompt cache cleared after TTL expiry")

        prompt = _build_system_prompt_cached(
            personality,
            session_type,
            difficulty or "any",
            (topic or "general").strip() or "general",
        )
    return prompt


def format_context(results: Sequence[SearchResult]) -> str:
    if not results:
        return "No relevant knowledge chunks found."
    blocks = []
    for number, result in enumerate(results, start=1):
        label = result.chunk.source or result.chunk.knowledge_base_id
        blocks.append(f"[{number}] ({label})\n{result.chunk.text.strip()}")
    return "\n\n".join(blocks)


def _format_learner_context(context: Optional[Mapping[str, Any]]) -> Optional[str]:
    if not context:
        return None
    lines = []
    for key, value in context.items():
        if value in (None, "", [], {}):
            continue
        if isinstance(value, (list, tuple)):
            value = ", ".join(str(item) for item in value)
        lines.append(f"- {key}: {value}")
    return "\n".join(lines) or None


def build_messages(
    system_prompt: str,
    question: str,
    results: Sequence[SearchResult],
    history: Sequence[Interaction] = (),
    learner_context: Optional[Mapping[str, Any]] = None,
) -> List[Dict[str, str]]:
    """Chat-completions messages: system prompt, prior turns, grounded question."""
    messages: List[Dict[str, str]] = [{"role": "system", "content": system_prompt}]
    for turn in history:
        messages.append({"role": "user", "content": turn.user_query})
        messages.append({"role": "assistant", "content": turn.ai_response})

    parts = [f"Context:\n{format_context(results)}"]
    learner_text = _format_learner_context(learner_context)
    if learner_text:
        parts.append(f"Learner context:\n{learner_text}")
    parts.append(f"Question: {question}\nAnswer:")
    messages.append({"role": "user", "content": "\n\n".join(parts)})
    return messages


# ---------- Query rewriting ----------
_FOLLOW_UP = re.compile(
    r"^\s*(?:and\s+)?(?:it|its|it's|this|that|these|those|they|them|their|he|she|"
    r"what about|how about|why|why not|same|more)\b",
    re.IGNORECASE,
)


def _previous_topic(turn: Interaction) -> str:
    if turn.concepts:
        return ", ".join(turn.concepts)
    text = turn.rewritten_query or turn.user_query
    return text.strip().rstrip("?!.").strip()


def rewrite_query(query: str, recent: Sequence[Interaction]) -> str:
    """Resolve a pronoun-led follow-up by naming the previous topic.

    Queries that stand on their own, or arrive with no history, are returned
    unchanged.
    """
    cleaned = query.strip()
    if not recent or not _FOLLOW_UP.match(cleaned):
        return cleaned
    topic = _previous_topic(recent[-1])
    if not topic or topic.lower() in cleaned.lower():
        return cleaned
    return f"{cleaned} (regarding: {topic})"


# ---------- LLM client ----------
def log_json(event: str, payload: Dict[str, Any], target: Optional[logging.Logger] = None) -> None:
    """Emit one JSON line for ``event``; defaults to the ``edurag.llm`` logger."""
    record = {"event": event, **payload}
    try:
        message = json.dumps(record, ensure_ascii=False, sort_keys=True)
    except (TypeError, ValueError):
        message = json.dumps(
            {"event": event, "error": "serialization_failed", "payload_repr": repr(payload)},
            ensure_ascii=False,
            sort_keys=True,
        )
    (target or _LLM_LOGGER).info(message)


def _coerce_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class LLMClient:
    """OpenAI-style chat completions client with bounded retries.

    Timeouts, transport errors, 429 and 5xx responses are retried with
    exponential backoff. Other 4xx responses and malformed payloads fail
    immediately. Every failure surfaces as GenerationUnavailable.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        model: Optional[str] = None,
        *,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_backoff: Optional[float] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url or os.getenv("GENERATION_URL") or GENERATION_URL
        self.model = model or os.getenv("MODEL_ID") or MODEL_ID
        self.api_key = api_key if api_key is not None else os.getenv("LLM_API_KEY")
        self.timeout = timeout if timeout is not None else get_env_float("LLM_TIMEOUT", 60.0)
        self.max_retries = max(0, max_retries if max_retries is not None else get_env_int("LLM_MAX_RETRIES", 2))
        self.retry_backoff = retry_backoff if retry_backoff is not None else get_env_float("LLM_RETRY_BACKOFF", 0.5)
        self.temperature = temperature if temperature is not None else get_env_float("LLM_TEMPERATURE", 0.3)
        self.max_tokens = max_tokens if max_tokens is not None else get_env_int("LLM_MAX_TOKENS", 800)
        self._transport = transport

    def _payload(self, messages: Sequence[Mapping[str, str]]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": list(messages),
            "temperature": self.temperature,
        }
        if self.max_tokens:
            payload["max_tokens"] = int(self.max_tokens)
        return payload

    @staticmethod
    def _extract_content(data: Any) -> str:
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            try:
                content = data["choices"][0]["text"]
            except (KeyError, IndexError, TypeError) as exc:
                raise ValueError("unexpected response shape") from exc
        if not isinstance(content, str) or not content.strip():
            raise ValueError("empty completion")
        return content.strip()

    async def generate(self, messages: Sequence[Mapping[str, str]], *, request_id: Optional[str] = None) -> str:
        call_request_id = request_id or str(uuid4())
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = self._payload(messages)
        attempts = self.max_retries + 1
        reason = "unknown error"
        tokens_in: Optional[int] = None
        tokens_out: Optional[int] = None
        start = time.perf_counter()
        attempt = 0
        status = "error"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                for attempt in range(1, attempts + 1):
                    try:
                        response = await client.post(self.url, json=payload, headers=headers)
                    except httpx.TimeoutException:
                        reason = f"timed out after {self.timeout}s"
                    except httpx.TransportError as exc:
                        reason = f"transport error: {exc}"
                    else:
                        if response.status_code == 429 or response.status_code >= 500:
                            reason = f"HTTP {response.status_code}"
                        elif response.status_code >= 400:
                            raise GenerationUnavailable(
                                self.model, f"HTTP {response.status_code}", attempts=attempt
                            )
                        else:
                            try:
                                data = response.json()
                                content = self._extract_content(data)
                            except ValueError as exc:
                                raise GenerationUnavailable(
                                    self.model, f"malformed response: {exc}", attempts=attempt
                                ) from exc
                            usage = data.get("usage") if isinstance(data, dict) else None
                            if isinstance(usage, dict):
                                tokens_in = _coerce_int(usage.get("prompt_tokens"))
                                tokens_out = _coerce_int(usage.get("completion_tokens"))
                            status = "ok"
                            return content

                    if attempt < attempts:
                        delay = self.retry_backoff * (2 ** (attempt - 1))
                        logger.warning(
                            "Generation attempt %d/%d for %s failed (%s); retrying in %.2fs",
                            attempt,
                            attempts,
                            self.model,
                            reason,
                            delay,
                        )
                        await asyncio.sleep(delay)
            raise GenerationUnavailable(self.model, reason, attempts=attempts)
        finally:
            log_json(
                "llm_call",
                {
                    "request_id": call_request_id,
                    "model": self.model,
                    "latency_ms": int((time.perf_counter() - start) * 1000),
                    "attempts": attempt,
                    "tokens_in": tokens_in,
                    "tokens_out": tokens_out,
                    "status": status,
                },
            )

    async def __call__(self, messages: Sequence[Mapping[str, str]]) -> str:
        return await self.generate(messages)
