"""
Memory distillation.

Two entry points share one upstream gateway:

- ``extract_fact`` asks the model for at most one new permanent fact.
- ``summarize`` asks for a full replacement of the structured summary.

Both are best-effort. Upstream replies must match a strict JSON schema;
anything else is reported as MALFORMED and changes nothing.
"""
from typing import Dict, Any, List, Optional
from dataclasses import dataclass
from enum import Enum
import re

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from memory_relay.domain.models.session_state import content_text
from memory_relay.domain.streaming.relay_streamer import RelayStreamer, UpstreamError
from memory_relay.domain.streaming.sse import completion_text
from memory_relay.infrastructure.observability.logging import relay_logger, metrics

logger = structlog.get_logger(__name__)


SUMMARY_SECTIONS = [
    ("events", "Events"),
    ("relationship_progression", "Relationship Progression"),
    ("secrets_confessions", "Secrets / Confessions"),
    ("traits_preferences", "Traits / Preferences"),
    ("symbolic_markers", "Symbolic Markers"),
    ("unresolved_threads", "Unresolved Threads"),
]

FACT_SYSTEM_PROMPT = (
    "You maintain the permanent memory of a long-running story conversation. "
    "Read the recent messages and decide whether a new permanent fact was established "
    "that is not already in the known facts. Respond with JSON only: "
    "{\"fact\": \"<one short sentence>\"} if there is a new fact, or {\"fact\": null} if there is none."
)

SUMMARY_SYSTEM_PROMPT = (
    "You maintain the long-term summary of a story conversation. Merge the previous summary "
    "and the new messages into one complete replacement summary. Keep every detail already "
    "recorded in the previous summary; add what the new messages establish. Respond with JSON "
    "only, an object with exactly these keys, each a list of short strings: "
    + ", ".join(key for key, _ in SUMMARY_SECTIONS) + "."
)

_FENCE = re.compile(r"^\s*```(?:json)?\s*(.*?)\s*```\s*$", re.DOTALL | re.IGNORECASE)


class FactProposal(BaseModel):
    """Fact extraction reply; a null fact is the "no fact" sentinel"""
    model_config = ConfigDict(extra="forbid")

    fact: Optional[str] = Field(..., max_length=500)


class StructuredSummary(BaseModel):
    """Summary reply, one list of entries per fixed section"""
    model_config = ConfigDict(extra="forbid")

    events: List[str] = Field(default_factory=list)
    relationship_progression: List[str] = Field(default_factory=list)
    secrets_confessions: List[str] = Field(default_factory=list)
    traits_preferences: List[str] = Field(default_factory=list)
    symbolic_markers: List[str] = Field(default_factory=list)
    unresolved_threads: List[str] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not any(getattr(self, key) for key, _ in SUMMARY_SECTIONS)

    def render(self) -> str:
        """Summary text under fixed section headers"""
        blocks = []
        for key, title in SUMMARY_SECTIONS:
            entries = [entry.strip() for entry in getattr(self, key) if entry.strip()]
            lines = [f"## {title}"]
            if entries:
                lines.extend(f"- {entry}" for entry in entries)
            else:
                lines.append("- (none)")
            blocks.append("\n".join(lines))
        return "STORY SUMMARY:\n\n" + "\n\n".join(blocks)


class DistillOutcome(str, Enum):
    """How a distillation call ended"""
    PROPOSED = "proposed"
    NO_FACT = "no_fact"
    UPDATED = "updated"
    MALFORMED = "malformed"
    FAILED = "failed"


@dataclass
class FactResult:
    outcome: DistillOutcome
    fact: Optional[str] = None


@dataclass
class SummaryResult:
    outcome: DistillOutcome
    summary: Optional[str]

    @property
    def ok(self) -> bool:
        return self.outcome == DistillOutcome.UPDATED


def strip_code_fence(text: str) -> str:
    match = _FENCE.match(text)
    return match.group(1) if match else text.strip()


def format_transcript(messages: List[Dict[str, Any]]) -> str:
    return "\n".join(f"{m.get('role', 'unknown')}: {content_text(m.get('content'))}" for m in messages)


class MemoryDistiller:
    """Compresses history into structured memory via the upstream model"""

    def __init__(
        self,
        streamer: RelayStreamer,
        model: Optional[str] = None,
        max_tokens: int = 1024,
        temperature: float = 0.3
    ):
        self.streamer = streamer
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature

    async def extract_fact(
        self,
        recent_messages: List[Dict[str, Any]],
        known_facts: List[str],
        model: Optional[str] = None
    ) -> FactResult:
        """Ask for one new permanent fact, or the no-fact sentinel"""

        facts_text = "\n".join(f"- {fact}" for fact in known_facts) or "(none)"
        messages = [
            {"role": "system", "content": FACT_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": f"Known facts:\n{facts_text}\n\nRecent messages:\n{format_transcript(recent_messages)}"
            },
        ]

        reply = await self._call(messages, model, purpose="fact_extraction")
        if reply is None:
            return FactResult(DistillOutcome.FAILED)

        try:
            proposal = FactProposal.model_validate_json(strip_code_fence(reply))
        except ValidationError as e:
            metrics.increment_counter("distill.malformed", tags={"purpose": "fact_extraction"})
            logger.warning("Malformed fact extraction reply", errors=e.error_count(), reply=reply[:200])
            return FactResult(DistillOutcome.MALFORMED)

        fact = (proposal.fact or "").strip()
        if not fact or fact in known_facts:
            return FactResult(DistillOutcome.NO_FACT)

        return FactResult(DistillOutcome.PROPOSED, fact)

    async def summarize(
        self,
        previous_summary: Optional[str],
        messages: List[Dict[str, Any]],
        model: Optional[str] = None
    ) -> SummaryResult:
        """Produce a full replacement summary; previous summary on any failure"""

        prompt = [
            {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": (
                    f"Previous summary:\n{previous_summary or '(none)'}\n\n"
                    f"New messages:\n{format_transcript(messages)}"
                )
            },
        ]

        reply = await self._call(prompt, model, purpose="summarization")
        if reply is None:
            return SummaryResult(DistillOutcome.FAILED, previous_summary)

        try:
            summary = StructuredSummary.model_validate_json(strip_code_fence(reply))
        except ValidationError as e:
            metrics.increment_counter("distill.malformed", tags={"purpose": "summarization"})
            logger.warning("Malformed summary reply", errors=e.error_count(), reply=reply[:200])
            return SummaryResult(DistillOutcome.MALFORMED, previous_summary)

        if summary.is_empty():
            logger.warning("Empty summary reply, keeping previous summary")
            return SummaryResult(DistillOutcome.MALFORMED, previous_summary)

        return SummaryResult(DistillOutcome.UPDATED, summary.render())

    async def _call(self, messages: List[Dict[str, Any]], model: Optional[str], purpose: str) -> Optional[str]:
        """Buffered upstream call returning the reply text, or None on failure"""

        payload: Dict[str, Any] = {
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        chosen_model = self.model or model
        if chosen_model:
            payload["model"] = chosen_model

        try:
            body = await self.streamer.complete(payload)
        except (UpstreamError, httpx.HTTPError) as e:
            metrics.increment_counter("distill.failed", tags={"purpose": purpose})
            logger.warning("Distillation call failed", purpose=purpose, error=str(e))
            return None

        text = completion_text(body)
        relay_logger.logger.debug("Distillation reply", purpose=purpose, length=len(text))
        return text
