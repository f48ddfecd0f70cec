"""Termination signal detection.

Checks run in a fixed priority order and the first match wins:

1. done command          -> HandoverSpecialist
2. skip command          -> next agent in sequence
3. explicit finish       -> HandoverSpecialist
4. completion phrase     -> HandoverSpecialist (only with enough data)
5. message limit         -> HandoverSpecialist
6. completeness >= 80    -> HandoverSpecialist

Overlapping vocabularies ("I'm done" is both a done command and a finish
request) resolve to whichever check comes first.
"""

import logging
from typing import Callable, NamedTuple, Tuple

from intake.agents.router import next_agent
from intake.config.settings import settings
from intake.models.assessment import TerminationResult
from intake.models.triage import AgentRole, TerminationReason
from intake.utils.phrases import (
    COMPLETION_PHRASES,
    DONE_PHRASES,
    EXPLICIT_FINISH_PHRASES,
    SKIP_PHRASES,
    MatchMode,
    matches_any,
    normalize,
)

logger = logging.getLogger(__name__)

ACK_DONE = "Wrapping up your intake. Let me prepare your summary..."
ACK_EXPLICIT = "Great! Let me wrap up your intake and prepare for booking..."
ACK_COMPLETION = "Thank you, that gives me what I need. Let me put your summary together..."
ACK_MESSAGE_LIMIT = "I have enough information to proceed. Let me summarize what we've discussed..."
ACK_COMPLETENESS = "I think I have a good picture now. Let me summarize what you've shared..."


class TurnSignals(NamedTuple):
    """Inputs to a termination check for one patient message."""

    text: str
    current_agent: AgentRole
    ai_message_count: int
    completeness: int
    has_chief_complaint: bool
    has_hpi: bool


class TerminationRule(NamedTuple):
    reason: TerminationReason
    matches: Callable[[TurnSignals], bool]
    target: Callable[[TurnSignals], AgentRole]
    acknowledgment: Callable[[AgentRole], str]


def _is_done(s: TurnSignals) -> bool:
    return matches_any(s.text, DONE_PHRASES, MatchMode.EXACT_OR_PREFIX)


def _is_skip(s: TurnSignals) -> bool:
    return matches_any(s.text, SKIP_PHRASES, MatchMode.EXACT_OR_PREFIX)


def _is_explicit_finish(s: TurnSignals) -> bool:
    return not _is_done(s) and matches_any(s.text, EXPLICIT_FINISH_PHRASES, MatchMode.SUBSTRING)


def _is_completion(s: TurnSignals) -> bool:
    if not matches_any(s.text, COMPLETION_PHRASES, MatchMode.SUBSTRING):
        return False
    return s.completeness >= settings.completion_completeness_threshold or (
        s.has_chief_complaint and s.has_hpi
    )


def _over_message_limit(s: TurnSignals) -> bool:
    return s.ai_message_count >= settings.force_handover_messages


def _over_completeness(s: TurnSignals) -> bool:
    return s.completeness >= settings.handover_completeness_threshold


def _to_handover(s: TurnSignals) -> AgentRole:
    return AgentRole.HANDOVER_SPECIALIST


def _to_next(s: TurnSignals) -> AgentRole:
    return next_agent(s.current_agent)


def _skip_ack(target: AgentRole) -> str:
    if target == AgentRole.HANDOVER_SPECIALIST:
        return "Skipping to final review..."
    return "Skipping to the next section..."


TERMINATION_RULES: Tuple[TerminationRule, ...] = (
    TerminationRule(TerminationReason.DONE_COMMAND, _is_done, _to_handover, lambda _: ACK_DONE),
    TerminationRule(TerminationReason.SKIP_COMMAND, _is_skip, _to_next, _skip_ack),
    TerminationRule(TerminationReason.EXPLICIT_REQUEST, _is_explicit_finish, _to_handover, lambda _: ACK_EXPLICIT),
    TerminationRule(TerminationReason.COMPLETION_PHRASE, _is_completion, _to_handover, lambda _: ACK_COMPLETION),
    TerminationRule(TerminationReason.MESSAGE_LIMIT, _over_message_limit, _to_handover, lambda _: ACK_MESSAGE_LIMIT),
    TerminationRule(TerminationReason.COMPLETENESS_THRESHOLD, _over_completeness, _to_handover, lambda _: ACK_COMPLETENESS),
)


def detect(
    message: str,
    current_agent: AgentRole,
    ai_message_count: int,
    completeness: int,
    has_chief_complaint: bool,
    has_hpi: bool,
) -> TerminationResult:
    """
    Detect whether the patient's message (or the session counters) ends the current phase.

    Args:
        message: Latest patient message
        current_agent: Agent active when the message arrived
        ai_message_count: AI messages sent so far in the session
        completeness: 0-100 completeness score
        has_chief_complaint: Whether a chief complaint has been recorded
        has_hpi: Whether a usable HPI has been recorded

    Returns:
        TerminationResult; ``reason``/``target_agent`` are None when nothing matched
    """
    signals = TurnSignals(
        text=normalize(message),
        current_agent=current_agent,
        ai_message_count=ai_message_count,
        completeness=completeness,
        has_chief_complaint=has_chief_complaint,
        has_hpi=has_hpi,
    )

    for rule in TERMINATION_RULES:
        if rule.matches(signals):
            target = rule.target(signals)
            logger.info(
                f"Termination signal: reason={rule.reason.value}, "
                f"agent={current_agent.value} -> {target.value}"
            )
            return TerminationResult(
                should_terminate=True,
                reason=rule.reason,
                target_agent=target,
                acknowledgment=rule.acknowledgment(target),
            )

    return TerminationResult()


def should_offer_conclusion(ai_message_count: int) -> bool:
    return settings.offer_conclusion_messages <= ai_message_count < settings.force_handover_messages


def should_force_handover(ai_message_count: int) -> bool:
    return ai_message_count >= settings.force_handover_messages
