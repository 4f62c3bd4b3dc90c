from typing import Dict, List, Any, Optional
import hashlib
import json

import structlog

from memory_relay.domain.models.session_state import Session

logger = structlog.get_logger(__name__)

MEMORY_BLOCK_HEADER = "CANON MEMORY:"


def resolve_conversation_id(conversation_id: Optional[str], messages: List[Dict[str, Any]]) -> str:
    """Client-supplied id, or a content hash of the first message"""

    if conversation_id:
        return conversation_id

    base: Any = "default"
    if messages:
        first = messages[0].get("content")
        if first:
            base = first
    if not isinstance(base, str):
        base = json.dumps(base, sort_keys=True, ensure_ascii=False)

    return hashlib.sha256(base.encode("utf-8")).hexdigest()


class ContextAssembler:
    """Assembles the upstream message list from memory and recent turns"""

    def __init__(self, master_prompt: Optional[str] = None, history_window: int = 100):
        self.master_prompt = master_prompt
        self.history_window = history_window

    def build_messages(
        self,
        session: Session,
        client_messages: List[Dict[str, Any]],
        confirmation_notice: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Build the ordered message list sent upstream"""

        messages: List[Dict[str, Any]] = []

        if self.master_prompt:
            messages.append({"role": "system", "content": self.master_prompt})

        memory_block = self.memory_block(session)
        if memory_block:
            messages.append({"role": "system", "content": memory_block})

        if session.structured_summary:
            messages.append({"role": "system", "content": session.structured_summary})

        if confirmation_notice:
            messages.append({"role": "system", "content": confirmation_notice})

        # Older client turns stay out of the prompt; the session keeps its own copy
        recent = client_messages[-self.history_window:]
        messages.extend(recent)

        logger.debug(
            "Assembled context",
            conversation_id=session.id,
            facts=len(session.canonical_facts),
            has_summary=bool(session.structured_summary),
            forwarded=len(recent),
            omitted=len(client_messages) - len(recent)
        )

        return messages

    @staticmethod
    def memory_block(session: Session) -> str:
        """Canonical facts rendered as a bullet list"""

        if not session.canonical_facts:
            return ""
        return MEMORY_BLOCK_HEADER + "\n" + "\n".join(f"- {fact}" for fact in session.canonical_facts)
