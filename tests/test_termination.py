import pytest

from intake.agents.termination import (
    TERMINATION_RULES,
    detect,
    should_force_handover,
    should_offer_conclusion,
)
from intake.models.triage import AgentRole, TerminationReason
from intake.utils.phrases import DONE_PHRASES


def check(message, agent=AgentRole.CLINICAL_INVESTIGATOR, count=3, completeness=20, cc=True, hpi=False):
    return detect(
        message,
        current_agent=agent,
        ai_message_count=count,
        completeness=completeness,
        has_chief_complaint=cc,
        has_hpi=hpi,
    )


@pytest.mark.parametrize("phrase", DONE_PHRASES)
@pytest.mark.parametrize("agent", list(AgentRole))
def test_done_phrase_always_goes_to_handover(phrase, agent):
    result = check(phrase, agent=agent, count=25, completeness=95)

    assert result.should_terminate
    assert result.reason == TerminationReason.DONE_COMMAND
    assert result.target_agent == AgentRole.HANDOVER_SPECIALIST


def test_done_wins_over_explicit_finish():
    result = check("I'm done")

    assert result.reason == TerminationReason.DONE_COMMAND


@pytest.mark.parametrize("message", ["  DONE  ", "I’m done", "stop please"])
def test_matching_is_normalised(message):
    assert check(message).reason == TerminationReason.DONE_COMMAND


def test_done_word_inside_a_sentence_is_not_a_command():
    result = check("the pain is ending slowly")

    assert not result.should_terminate


def test_skip_moves_to_next_agent():
    result = check("skip this one", agent=AgentRole.RECORDS_CLERK)

    assert result.reason == TerminationReason.SKIP_COMMAND
    assert result.target_agent == AgentRole.HISTORY_SPECIALIST
    assert result.acknowledgment == "Skipping to the next section..."


def test_skip_from_handover_stays_at_handover():
    result = check("next", agent=AgentRole.HANDOVER_SPECIALIST)

    assert result.target_agent == AgentRole.HANDOVER_SPECIALIST
    assert result.acknowledgment == "Skipping to final review..."


def test_explicit_finish_request():
    result = check("Can we wrap up now? I want to book")

    assert result.reason == TerminationReason.EXPLICIT_REQUEST
    assert result.target_agent == AgentRole.HANDOVER_SPECIALIST


def test_completion_phrase_with_enough_data():
    result = check("ok that's everything, thanks", completeness=65, cc=False)

    assert result.should_terminate
    assert result.reason == TerminationReason.COMPLETION_PHRASE
    assert result.target_agent == AgentRole.HANDOVER_SPECIALIST


def test_completion_phrase_with_chief_complaint_and_hpi():
    result = check("that's all", completeness=40, cc=True, hpi=True)

    assert result.reason == TerminationReason.COMPLETION_PHRASE


def test_completion_phrase_without_enough_data_is_ignored():
    result = check("that's all", completeness=20, cc=True, hpi=False)

    assert not result.should_terminate
    assert result.reason is None
    assert result.target_agent is None


@pytest.mark.parametrize("count", [20, 21, 40])
def test_message_limit_forces_handover(count):
    result = check("I also have a rash on my arm", count=count)

    assert result.reason == TerminationReason.MESSAGE_LIMIT
    assert result.target_agent == AgentRole.HANDOVER_SPECIALIST


def test_message_limit_applies_in_handover_too():
    result = check("hello", agent=AgentRole.HANDOVER_SPECIALIST, count=20)

    assert result.reason == TerminationReason.MESSAGE_LIMIT


def test_completeness_threshold():
    result = check("it hurts when I swallow", completeness=85)

    assert result.reason == TerminationReason.COMPLETENESS_THRESHOLD


def test_ordinary_message_does_not_terminate():
    result = check("It started on Monday after a long run", count=19, completeness=79)

    assert result.should_terminate is False


def test_every_termination_has_an_acknowledgment():
    messages = ["done", "skip", "let's book", "that's it", "fine", "fine"]
    kwargs = [{}, {}, {}, {"completeness": 70}, {"count": 22}, {"completeness": 90}]

    reasons = set()
    for message, extra in zip(messages, kwargs):
        result = check(message, **extra)
        assert result.should_terminate
        assert result.acknowledgment
        reasons.add(result.reason)

    assert reasons == {rule.reason for rule in TERMINATION_RULES}


def test_conclusion_offer_window():
    assert not should_offer_conclusion(14)
    assert should_offer_conclusion(15)
    assert should_offer_conclusion(19)
    assert not should_offer_conclusion(20)
    assert should_force_handover(20)
    assert not should_force_handover(19)
