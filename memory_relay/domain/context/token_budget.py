"""
Token estimation for history size checks.

The relay never tokenizes for the upstream model; it only needs a stable,
cheap estimate to decide when raw history has grown past the compression
threshold.
"""
from typing import Any, Dict, Iterable

from memory_relay.domain.models.session_state import content_text

# Approximate characters per token for English chat text
CHARS_PER_TOKEN = 4


def estimate_text_tokens(text: str) -> int:
    """Estimate tokens in a piece of text"""
    if not text:
        return 0
    return len(text) // CHARS_PER_TOKEN


def estimate_tokens(messages: Iterable[Dict[str, Any]]) -> int:
    """Estimate tokens across chat messages, including a small per-message overhead"""
    total = 0
    for message in messages:
        total += estimate_text_tokens(content_text(message.get("content"))) + 4
    return total
