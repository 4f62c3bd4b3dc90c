"""Server-sent event framing helpers for chat-completion streams."""
from typing import Any, Dict, List
import json

from memory_relay.domain.models.session_state import content_text

KEEPALIVE_FRAME = b'data: {"choices":[{"delta":{"content":""}}]}\n\n'
DONE_FRAME = b"data: [DONE]\n\n"


def data_frame(event: Dict[str, Any]) -> bytes:
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n".encode("utf-8")


def synthetic_stream(text: str) -> List[bytes]:
    """Frames for an assistant reply produced by the relay itself"""
    return [
        data_frame({
            "object": "chat.completion.chunk",
            "choices": [{"index": 0, "delta": {"role": "assistant", "content": text}, "finish_reason": None}]
        }),
        data_frame({
            "object": "chat.completion.chunk",
            "choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}]
        }),
        DONE_FRAME,
    ]


def synthetic_completion(text: str) -> Dict[str, Any]:
    """Buffered completion object for an assistant reply produced by the relay"""
    return {
        "object": "chat.completion",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": text},
                "finish_reason": "stop"
            }
        ]
    }


def extract_stream_text(raw: bytes) -> str:
    """Concatenate the delta content carried by a raw SSE byte stream"""

    pieces: List[str] = []
    for line in raw.decode("utf-8", errors="replace").splitlines():
        line = line.strip()
        if not line.startswith("data:"):
            continue
        data = line[len("data:"):].strip()
        if not data or data == "[DONE]":
            continue
        try:
            event = json.loads(data)
        except ValueError:
            continue
        if not isinstance(event, dict):
            continue
        for choice in event.get("choices") or []:
            if not isinstance(choice, dict):
                continue
            delta = choice.get("delta") or {}
            content = delta.get("content") if isinstance(delta, dict) else None
            if isinstance(content, str):
                pieces.append(content)
    return "".join(pieces)


def completion_text(body: Any) -> str:
    """Assistant text of a buffered completion object"""

    if not isinstance(body, dict):
        return ""
    choices = body.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return ""
    message = choices[0].get("message") or {}
    if not isinstance(message, dict):
        return ""
    return content_text(message.get("content"))
