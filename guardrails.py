"""Content-safety gate for tutor queries and responses.

The full policy engine lives outside this service; only its pass/fail
interface is modelled here. The default policy rejects text mentioning any
topic listed in ``GUARDRAIL_BLOCKED_TOPICS``.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Sequence

from env_validation import get_env_list
from errors import GuardrailRejection

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GuardrailVerdict:
    allowed: bool
    reasons: List[str] = field(default_factory=list)


ALLOW = GuardrailVerdict(True)


class Guardrail(Protocol):
    def check_query(self, text: str, *, learner_id: Optional[str] = None) -> GuardrailVerdict:
        ...

    def check_response(self, text: str, *, learner_id: Optional[str] = None) -> GuardrailVerdict:
        ...


class KeywordGuardrail:
    """Reject text containing any blocked topic as a whole word or phrase."""

    def __init__(self, blocked_topics: Optional[Sequence[str]] = None) -> None:
        topics = blocked_topics if blocked_topics is not None else get_env_list("GUARDRAIL_BLOCKED_TOPICS")
        self.blocked_topics = [topic.strip().lower() for topic in topics if topic.strip()]
        self._patterns = [
            (topic, re.compile(rf"\b{re.escape(topic)}\b", re.IGNORECASE)) for topic in self.blocked_topics
        ]

    def _check(self, text: str) -> GuardrailVerdict:
        hits = [f"blocked topic: {topic}" for topic, pattern in self._patterns if pattern.search(text or "")]
        return GuardrailVerdict(False, hits) if hits else ALLOW

    def check_query(self, text: str, *, learner_id: Optional[str] = None) -> GuardrailVerdict:
        return self._check(text)

    def check_response(self, text: str, *, learner_id: Optional[str] = None) -> GuardrailVerdict:
        return self._check(text)


def enforce(verdict: GuardrailVerdict, stage: str, *, learner_id: Optional[str] = None) -> None:
    """Raise GuardrailRejection for a failed verdict."""
    if verdict.allowed:
        return
    logger.warning("Guardrail rejected %s for learner %s: %s", stage, learner_id, "; ".join(verdict.reasons))
    raise GuardrailRejection(stage, verdict.reasons)
