from typing import Dict, Any, List, Optional, AsyncIterator, Set, Coroutine
from dataclasses import dataclass
import asyncio
import math

import structlog

from memory_relay.domain.confirmation.confirmation_machine import (
    ConfirmationStateMachine, ResolutionOutcome, extract_pin, is_reset_command
)
from memory_relay.domain.context.context_assembler import ContextAssembler, resolve_conversation_id
from memory_relay.domain.context.memory.session_store import ConversationStore
from memory_relay.domain.context.state.session_locks import SessionLockRegistry
from memory_relay.domain.memory.memory_distiller import DistillOutcome, MemoryDistiller
from memory_relay.domain.models.session_state import Session, content_text
from memory_relay.domain.streaming.relay_streamer import RelayStreamer, UpstreamStream
from memory_relay.domain.streaming.sse import completion_text, synthetic_completion, synthetic_stream
from memory_relay.infrastructure.config.settings import RelaySettings
from memory_relay.infrastructure.observability.logging import relay_logger, metrics

logger = structlog.get_logger(__name__)

RESET_ACKNOWLEDGEMENT = "(OOC: Memory reset for this conversation.)"


@dataclass
class TurnContext:
    """What the request phase decided, carried into the finalize pass"""
    outcome: ResolutionOutcome
    notice: Optional[str] = None
    model: Optional[str] = None


@dataclass
class RelayResult:
    """Buffered body or streamed byte iterator for the client"""
    conversation_id: str
    body: Optional[Dict[str, Any]] = None
    stream: Optional[AsyncIterator[bytes]] = None
    upstream: Optional[UpstreamStream] = None

    @property
    def is_stream(self) -> bool:
        return self.stream is not None

    async def aclose(self):
        """Settle the upstream stream whether or not `stream` was ever iterated"""
        if self.upstream is not None:
            self.upstream.finish()
            await self.upstream.wait_closed()


async def _iterate_frames(frames: List[bytes]) -> AsyncIterator[bytes]:
    for frame in frames:
        yield frame


class RelayService:
    """Orchestrates one relayed request against a conversation's memory.

    The per-conversation lock is taken before the session is loaded and is
    held until the detached finalize pass has saved it, so the next request
    for the same id always loads the finalized record.
    """

    def __init__(
        self,
        settings: RelaySettings,
        store: ConversationStore,
        streamer: RelayStreamer,
        distiller: MemoryDistiller,
        assembler: Optional[ContextAssembler] = None,
        machine: Optional[ConfirmationStateMachine] = None,
        locks: Optional[SessionLockRegistry] = None
    ):
        self.settings = settings
        self.store = store
        self.streamer = streamer
        self.distiller = distiller
        self.assembler = assembler or ContextAssembler(settings.master_prompt, settings.history_window)
        self.machine = machine or ConfirmationStateMachine(
            settings.compression_threshold_tokens,
            settings.compression_cooldown
        )
        self.locks = locks or SessionLockRegistry()
        self._tasks: Set[asyncio.Task] = set()

    async def handle(
        self,
        messages: List[Dict[str, Any]],
        conversation_id: Optional[str] = None,
        stream: bool = False,
        passthrough: Optional[Dict[str, Any]] = None
    ) -> RelayResult:
        """Relay one chat-completion request"""

        conversation_id = resolve_conversation_id(conversation_id, messages)
        passthrough = dict(passthrough or {})
        latest = messages[-1]
        # Inherited by the finalize task spawned from this request
        structlog.contextvars.bind_contextvars(conversation_id=conversation_id)
        log = logger.bind(stream=stream)
        metrics.increment_counter("relay.requests", tags={"stream": str(stream).lower()})

        await self.locks.acquire(conversation_id)
        handed_off = False
        try:
            if is_reset_command(content_text(latest.get("content"))):
                existed = await self.store.delete(conversation_id)
                relay_logger.log_memory_event("reset", conversation_id, {"existed": existed})
                return self._reset_result(conversation_id, stream)

            session = await self.store.load(conversation_id)
            turn = self._begin_turn(session, latest, passthrough.get("model"))
            payload = self._build_payload(session, messages, turn, passthrough)

            if stream:
                upstream = await self.streamer.open_stream(
                    payload,
                    on_complete=lambda s: self._spawn(self._finish_stream(conversation_id, session, turn, s))
                )
                handed_off = True
                log.info("Relaying stream", **session.log_fields())
                return RelayResult(conversation_id, stream=upstream.relay(), upstream=upstream)

            body = await self.streamer.complete(payload)
            handed_off = True
            self._spawn(self._finalize(conversation_id, session, turn, completion_text(body)))
            log.info("Relayed buffered completion", **session.log_fields())
            return RelayResult(conversation_id, body=body)
        finally:
            # Without a hand-off nothing is saved: the request did not happen
            if not handed_off:
                self.locks.release(conversation_id)

    def _begin_turn(self, session: Session, latest: Dict[str, Any], model: Optional[str]) -> TurnContext:
        """Apply the inbound message to the session before the upstream call"""

        text = content_text(latest.get("content"))
        candidate = session.pending_memory
        outcome = self.machine.resolve(session, text)

        pinned = extract_pin(text)
        if pinned and session.add_fact(pinned):
            relay_logger.log_memory_event("fact_pinned", session.id, {"fact": pinned})

        session.append_history(latest.get("role", "user"), latest.get("content"))
        session.turn_counter += 1

        notices = [self.machine.resolution_notice(outcome, candidate)]
        if outcome not in (ResolutionOutcome.COMPRESSION_ACCEPTED, ResolutionOutcome.COMPRESSION_DECLINED):
            if self.machine.maybe_offer_compression(session):
                notices.append(self.machine.offer_notice(session))

        notice = "\n\n".join(n for n in notices if n) or None
        return TurnContext(outcome=outcome, notice=notice, model=model)

    def _build_payload(
        self,
        session: Session,
        messages: List[Dict[str, Any]],
        turn: TurnContext,
        passthrough: Dict[str, Any]
    ) -> Dict[str, Any]:
        payload = dict(passthrough)
        payload["messages"] = self.assembler.build_messages(session, messages, turn.notice)
        if self.settings.max_tokens and "max_tokens" not in payload:
            payload["max_tokens"] = self.settings.max_tokens
        return payload

    def _reset_result(self, conversation_id: str, stream: bool) -> RelayResult:
        if stream:
            return RelayResult(conversation_id, stream=_iterate_frames(synthetic_stream(RESET_ACKNOWLEDGEMENT)))
        return RelayResult(conversation_id, body=synthetic_completion(RESET_ACKNOWLEDGEMENT))

    async def _finish_stream(self, conversation_id: str, session: Session, turn: TurnContext, upstream: UpstreamStream):
        """Close upstream, then finalize with the relayed reply"""

        try:
            await upstream.wait_closed()
        except Exception:
            logger.exception("Failed to close upstream stream", conversation_id=conversation_id)

        logger.info(
            "Stream finished",
            conversation_id=conversation_id,
            completed=upstream.completed,
            idle_tripped=upstream.idle_tripped,
            chunks=upstream.chunks_received
        )
        await self._finalize(conversation_id, session, turn, upstream.text())

    async def _finalize(self, conversation_id: str, session: Session, turn: TurnContext, reply_text: str):
        """Record the reply, run due distillation, save, release the lock"""

        try:
            if reply_text:
                session.append_history("assistant", reply_text)

            try:
                if turn.outcome == ResolutionOutcome.COMPRESSION_ACCEPTED:
                    await self._compress(session, turn.model)
                if session.turn_counter >= self.settings.fact_interval:
                    await self._extract_fact(session, turn.model)
            except Exception:
                # Distillation is best-effort; the turn itself is still saved
                logger.exception("Memory distillation failed", conversation_id=conversation_id)

            await self.store.save(conversation_id, session)
        finally:
            self.locks.release(conversation_id)

    async def _compress(self, session: Session, model: Optional[str]):
        """Fold the oldest part of raw history into the structured summary"""

        history = session.history_dicts()
        keep = max(1, math.ceil(len(history) * self.settings.compression_keep_ratio))
        fold = len(history) - keep
        if fold <= 0:
            return

        result = await self.distiller.summarize(session.structured_summary, history[:fold], model)
        if not result.ok:
            relay_logger.log_memory_event("compression_failed", session.id, {"outcome": result.outcome.value})
            return

        # Summary replacement and truncation happen together or not at all
        session.structured_summary = result.summary
        session.raw_history = session.raw_history[fold:]
        relay_logger.log_memory_event("compressed", session.id, {"folded": fold, "kept": keep})

    async def _extract_fact(self, session: Session, model: Optional[str]):
        recent = session.history_dicts(limit=self.settings.fact_interval)
        session.turn_counter = 0

        result = await self.distiller.extract_fact(recent, list(session.canonical_facts), model)
        relay_logger.log_memory_event("fact_extraction", session.id, {"outcome": result.outcome.value})
        if result.outcome == DistillOutcome.PROPOSED and result.fact:
            self.machine.propose_fact(session, result.fact)

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Background task failed", error=str(error), exc_info=error)

    async def drain(self):
        """Wait for detached finalize passes to complete"""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
