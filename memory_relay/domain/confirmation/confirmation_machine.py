from typing import Optional
from enum import Enum
import re

import structlog

from memory_relay.domain.context.token_budget import estimate_tokens
from memory_relay.domain.models.session_state import ConfirmationState, Session
from memory_relay.infrastructure.observability.logging import relay_logger

logger = structlog.get_logger(__name__)

RESET_COMMAND = "/reset"

_AFFIRMATIVE = {"yes", "y"}
_NEGATIVE = {"no", "n"}

_PIN_PATTERN = re.compile(
    r"(?:lock this memory|remember this permanently)\s*[:\-]?\s*(.*)",
    re.IGNORECASE | re.DOTALL
)

FACT_ACCEPTED_TEMPLATE = (
    "(OOC instruction) After your reply, tell the user out of character that this "
    "is now remembered permanently: \"{fact}\"."
)

FACT_DISCARDED_TEMPLATE = (
    "(OOC instruction) After your reply, tell the user out of character that a "
    "suggested memory was not saved: \"{fact}\". They can keep it by writing "
    "\"remember this permanently: {fact}\"."
)

COMPRESSION_OFFER_TEXT = (
    "(OOC instruction) After your reply, tell the user out of character that the "
    "conversation history is getting long and ask whether older turns should be "
    "compressed into long-term memory. Tell them to answer yes or no."
)


class ResolutionOutcome(str, Enum):
    """Result of feeding an inbound message to the state machine"""
    NONE = "none"
    FACT_ACCEPTED = "fact_accepted"
    FACT_DISCARDED = "fact_discarded"
    COMPRESSION_ACCEPTED = "compression_accepted"
    COMPRESSION_DECLINED = "compression_declined"


def is_reset_command(text: str) -> bool:
    return text.strip().lower() == RESET_COMMAND


def parse_yes_no(text: Optional[str]) -> Optional[bool]:
    """True for yes/y, False for no/n, None for anything else"""
    if not text:
        return None
    token = text.strip().lower()
    if token in _AFFIRMATIVE:
        return True
    if token in _NEGATIVE:
        return False
    return None


def extract_pin(text: Optional[str]) -> Optional[str]:
    """Text following a "remember this permanently" / "lock this memory" trigger"""
    if not text:
        return None
    match = _PIN_PATTERN.search(text)
    if not match:
        return None
    remainder = match.group(1).strip()
    return remainder or None


class ConfirmationStateMachine:
    """Single resolver for pending fact and compression decisions.

    A decision is raised (IDLE -> AWAITING_*) and resolved by the next
    inbound message, which always returns the session to IDLE. Compression
    is offered in the response of the turn that raised it; a fact proposed
    after a reply is reported in the response of the turn that resolves it.
    """

    def __init__(self, compression_threshold_tokens: int, compression_cooldown: int = 0):
        self.compression_threshold_tokens = compression_threshold_tokens
        self.compression_cooldown = compression_cooldown

    def resolve(self, session: Session, message_text: str) -> ResolutionOutcome:
        """Resolve the pending decision using the latest user message"""

        state = session.confirmation_state
        if state == ConfirmationState.IDLE:
            return ResolutionOutcome.NONE

        accepted = parse_yes_no(message_text) is True

        if state == ConfirmationState.AWAITING_FACT_CONFIRMATION:
            candidate = session.pending_memory
            session.pending_memory = None
            if accepted and candidate:
                session.add_fact(candidate)
                outcome = ResolutionOutcome.FACT_ACCEPTED
            else:
                outcome = ResolutionOutcome.FACT_DISCARDED
            relay_logger.log_memory_event(outcome.value, session.id, {"fact": candidate})
        else:
            session.compression_pending = False
            if accepted:
                outcome = ResolutionOutcome.COMPRESSION_ACCEPTED
            else:
                session.compression_cooldown = self.compression_cooldown
                outcome = ResolutionOutcome.COMPRESSION_DECLINED

        relay_logger.log_state_transition(session.id, state.value, ConfirmationState.IDLE.value, outcome.value)
        return outcome

    def maybe_offer_compression(self, session: Session) -> bool:
        """Raise and offer a compression decision when raw history is over budget"""

        if session.compression_cooldown > 0:
            session.compression_cooldown -= 1
            return False

        if session.confirmation_state != ConfirmationState.IDLE:
            return False

        # Compression must leave history strictly shorter
        if len(session.raw_history) < 2:
            return False

        tokens = estimate_tokens(session.history_dicts())
        if tokens <= self.compression_threshold_tokens:
            return False

        session.compression_pending = True
        relay_logger.log_state_transition(
            session.id,
            ConfirmationState.IDLE.value,
            ConfirmationState.AWAITING_COMPRESSION_CONFIRMATION.value,
            f"history_tokens={tokens}"
        )
        return True

    def propose_fact(self, session: Session, fact: str) -> bool:
        """Raise a fact decision; ignored unless the session is idle"""

        if session.confirmation_state != ConfirmationState.IDLE:
            logger.info(
                "Dropping fact proposal, another decision is pending",
                conversation_id=session.id,
                state=session.confirmation_state.value
            )
            return False

        session.pending_memory = fact
        relay_logger.log_state_transition(
            session.id,
            ConfirmationState.IDLE.value,
            ConfirmationState.AWAITING_FACT_CONFIRMATION.value,
            "fact_proposed"
        )
        return True

    @staticmethod
    def offer_notice(session: Session) -> Optional[str]:
        """Instruction asking the model to put a pending compression to the user"""

        if session.confirmation_state == ConfirmationState.AWAITING_COMPRESSION_CONFIRMATION:
            return COMPRESSION_OFFER_TEXT
        return None

    @staticmethod
    def resolution_notice(outcome: ResolutionOutcome, candidate: Optional[str]) -> Optional[str]:
        """Instruction reporting what happened to a resolved fact candidate"""

        if not candidate:
            return None
        if outcome == ResolutionOutcome.FACT_ACCEPTED:
            return FACT_ACCEPTED_TEMPLATE.format(fact=candidate)
        if outcome == ResolutionOutcome.FACT_DISCARDED:
            return FACT_DISCARDED_TEMPLATE.format(fact=candidate)
        return None
