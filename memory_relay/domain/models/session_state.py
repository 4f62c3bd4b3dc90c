from typing import Dict, Any, List, Optional
from enum import Enum

from pydantic import BaseModel, Field, model_validator


class ConfirmationState(str, Enum):
    """Outstanding yes/no decision for a conversation"""
    IDLE = "idle"
    AWAITING_FACT_CONFIRMATION = "awaiting_fact_confirmation"
    AWAITING_COMPRESSION_CONFIRMATION = "awaiting_compression_confirmation"


def content_text(content: Any) -> str:
    """Plain text of a chat message content (string or list of parts)"""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
            elif isinstance(part, str):
                parts.append(part)
        return "\n".join(parts)
    return str(content)


class HistoryMessage(BaseModel):
    """Verbatim message kept in a session's raw history"""
    role: str
    content: Any = ""


class Session(BaseModel):
    """Durable memory record for one conversation"""
    id: str = ""
    canonical_facts: List[str] = Field(default_factory=list, description="Permanently retained facts, in insertion order")
    structured_summary: Optional[str] = Field(None, description="Sectioned narrative of folded history")
    raw_history: List[HistoryMessage] = Field(default_factory=list, description="Messages not yet folded into the summary")
    turn_counter: int = Field(default=0, ge=0, description="Turns since the last fact-extraction pass")
    pending_memory: Optional[str] = Field(None, description="Proposed fact awaiting confirmation")
    compression_pending: bool = False
    compression_cooldown: int = Field(default=0, ge=0, description="Requests left before compression may be offered again")

    @model_validator(mode="after")
    def _single_confirmation(self) -> "Session":
        if self.pending_memory and self.compression_pending:
            raise ValueError("pending_memory and compression_pending are mutually exclusive")
        return self

    @property
    def confirmation_state(self) -> ConfirmationState:
        """Current state of the confirmation machine"""
        if self.pending_memory:
            return ConfirmationState.AWAITING_FACT_CONFIRMATION
        if self.compression_pending:
            return ConfirmationState.AWAITING_COMPRESSION_CONFIRMATION
        return ConfirmationState.IDLE

    def add_fact(self, fact: str) -> bool:
        """Append a fact unless it is blank or already canonical"""
        fact = fact.strip()
        if not fact or fact in self.canonical_facts:
            return False
        self.canonical_facts.append(fact)
        return True

    def append_history(self, role: str, content: Any):
        """Record a message in raw history"""
        self.raw_history.append(HistoryMessage(role=role, content=content))

    def history_dicts(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Raw history as plain role/content dicts, newest `limit` only"""
        messages = self.raw_history[-limit:] if limit else self.raw_history
        return [message.model_dump() for message in messages]

    def log_fields(self) -> Dict[str, Any]:
        """Compact view of the record for request logs"""
        return {
            "state": self.confirmation_state.value,
            "facts": len(self.canonical_facts),
            "has_summary": bool(self.structured_summary),
            "history_messages": len(self.raw_history),
            "turn_counter": self.turn_counter,
        }
