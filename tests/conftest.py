"""
Shared fixtures: a scripted fake upstream served through httpx.MockTransport.
"""
import asyncio
import json
from typing import List, Optional

import httpx
import pytest

from memory_relay.domain.context.memory.session_store import ConversationStore
from memory_relay.domain.memory.memory_distiller import (
    FACT_SYSTEM_PROMPT, SUMMARY_SYSTEM_PROMPT, MemoryDistiller
)
from memory_relay.domain.orchestration.relay_service import RelayService
from memory_relay.domain.streaming.relay_streamer import RelayStreamer
from memory_relay.infrastructure.config.settings import RelaySettings

UPSTREAM_URL = "http://upstream.test/v1/chat/completions"


def sse_frames(*texts: str) -> List[bytes]:
    frames = [
        f"data: {json.dumps({'choices': [{'index': 0, 'delta': {'content': text}}]})}\n\n".encode("utf-8")
        for text in texts
    ]
    frames.append(b"data: [DONE]\n\n")
    return frames


def completion_body(text: str) -> dict:
    return {
        "id": "cmpl-test",
        "object": "chat.completion",
        "choices": [{"index": 0, "message": {"role": "assistant", "content": text}, "finish_reason": "stop"}],
    }


async def _frames(chunks: List[bytes], stall_after: Optional[int] = None, error_after: Optional[int] = None):
    for index, chunk in enumerate(chunks):
        if stall_after is not None and index == stall_after:
            await asyncio.sleep(3600)
        if error_after is not None and index == error_after:
            raise httpx.ReadError("connection reset")
        yield chunk


class FakeUpstream:
    """Scripted chat-completions endpoint recording every payload it receives"""

    def __init__(self):
        self.chat_payloads: List[dict] = []
        self.fact_payloads: List[dict] = []
        self.summary_payloads: List[dict] = []
        self.attempts = 0

        self.reply_text = "Hello there"
        self.stream_chunks = sse_frames("Hello", " there")
        self.fact_reply = '{"fact": null}'
        self.summary_reply: Optional[str] = None
        self.connect_failures = 0
        self.status_code = 200
        self.delay = 0.0
        self.stall_after: Optional[int] = None
        self.error_after: Optional[int] = None

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.attempts += 1
        payload = json.loads(request.content)
        messages = payload.get("messages") or []
        system = messages[0]["content"] if messages and messages[0].get("role") == "system" else None

        if system == FACT_SYSTEM_PROMPT:
            self.fact_payloads.append(payload)
            return httpx.Response(200, json=completion_body(self.fact_reply))
        if system == SUMMARY_SYSTEM_PROMPT:
            self.summary_payloads.append(payload)
            reply = self.summary_reply if self.summary_reply is not None else self.echo_summary(payload)
            return httpx.Response(200, json=completion_body(reply))

        self.chat_payloads.append(payload)
        if self.connect_failures > 0:
            self.connect_failures -= 1
            raise httpx.ConnectError("connection refused", request=request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.status_code >= 400:
            return httpx.Response(self.status_code, json={"error": "unavailable"})

        if payload.get("stream"):
            return httpx.Response(
                200,
                headers={"content-type": "text/event-stream"},
                content=_frames(list(self.stream_chunks), self.stall_after, self.error_after)
            )
        return httpx.Response(200, json=completion_body(self.reply_text))

    @staticmethod
    def echo_summary(payload: dict) -> str:
        """Deterministic summary: every input line becomes an event"""
        lines = [line.strip() for line in payload["messages"][1]["content"].splitlines() if line.strip()]
        return json.dumps({"events": lines})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def settings(tmp_path):
    return RelaySettings(
        upstream_url=UPSTREAM_URL,
        upstream_api_key="test-key",
        sessions_dir=str(tmp_path / "sessions"),
        idle_timeout_seconds=0.3,
        watchdog_interval_seconds=0.05,
        request_timeout_seconds=5.0,
        compression_cooldown=0,
    )


@pytest.fixture
def store(settings):
    return ConversationStore(settings.sessions_dir)


def make_streamer(settings: RelaySettings, upstream: FakeUpstream) -> RelayStreamer:
    return RelayStreamer(
        upstream.client(),
        upstream_url=settings.upstream_url,
        api_key=settings.upstream_api_key,
        max_attempts=settings.max_upstream_attempts,
        idle_timeout=settings.idle_timeout_seconds,
        watchdog_interval=settings.watchdog_interval_seconds,
        request_timeout=settings.request_timeout_seconds,
        keepalive=settings.keepalive_enabled,
    )


def make_service(settings: RelaySettings, upstream: FakeUpstream) -> RelayService:
    streamer = make_streamer(settings, upstream)
    distiller = MemoryDistiller(streamer)
    return RelayService(settings, ConversationStore(settings.sessions_dir), streamer, distiller)


@pytest.fixture
def streamer(settings, upstream):
    return make_streamer(settings, upstream)


@pytest.fixture
def service(settings, upstream):
    return make_service(settings, upstream)


@pytest.fixture
def service_factory(settings, upstream):
    """Build a service with some settings overridden"""
    def factory(**overrides):
        return make_service(settings.model_copy(update=overrides), upstream)
    return factory
