from conftest import HPI, FakeCompletionService, make_session, normal_vitals, past_vitals
from intake.agents.orchestrator import IntakeOrchestrator
from intake.models.session import MedicalData, Temperature, TrackingState, VitalsData
from intake.models.triage import (
    AgentRole,
    BookingStatus,
    SessionStatus,
    TerminationReason,
    TriageDecision,
)
from intake.services.completion_service import CompletionError, CompletionResult


def session_at(agent: AgentRole, tracking: TrackingState = None, **fields):
    fields.setdefault("vitals_data", past_vitals())
    return make_session(MedicalData(current_agent=agent, **fields), tracking)


VITALS_UPDATE = {
    "vitals_data": {
        "patient_name": "Alex",
        "patient_age": 34,
        "temperature": {"value": 36.8, "unit": "celsius"},
        "weight": {"value": 70, "unit": "kg"},
        "blood_pressure": {"systolic": 120, "diastolic": 80},
        "current_status": "mild sore throat",
        "vitals_collected": True,
    }
}


class TestVitalsStage:
    async def test_collected_vitals_run_triage_and_open_triage_stage(self, orchestrator, fake_completion):
        fake_completion.replies = [
            CompletionResult(reply="Thanks Alex. What brings you in today?", updated_data=VITALS_UPDATE)
        ]

        outcome = await orchestrator.process_turn(
            make_session(), "I'm Alex, 34, temp 36.8, bp 120/80, weight 70kg"
        )

        vitals = outcome.medical_data.vitals_data
        assert fake_completion.calls[0]["agent"] == AgentRole.VITALS_TRIAGE
        assert vitals.vitals_stage_completed
        assert vitals.triage_decision == TriageDecision.DIRECT_TO_DIAGNOSIS
        assert outcome.active_agent == AgentRole.TRIAGE
        assert outcome.medical_data.current_agent == AgentRole.TRIAGE
        assert outcome.tracking.ai_message_count == 1
        assert outcome.tracking.follow_up_counts == {"vitals": 1}
        assert outcome.emergency is None

    async def test_partial_vitals_keep_the_gate_closed(self, orchestrator, fake_completion):
        fake_completion.replies = [
            CompletionResult(
                reply="And your blood pressure?",
                updated_data={"vitals_data": {"temperature": {"value": 37.0}}},
            )
        ]

        outcome = await orchestrator.process_turn(make_session(), "my temperature is 37")

        assert outcome.active_agent == AgentRole.VITALS_TRIAGE
        assert outcome.medical_data.vitals_data.temperature.value == 37.0
        assert outcome.medical_data.vitals_data.triage_decision == TriageDecision.PENDING

    async def test_model_cannot_set_triage(self, orchestrator, fake_completion):
        fake_completion.replies = [
            CompletionResult(
                reply="Noted.",
                updated_data={"vitals_data": {"triage_decision": "direct-to-diagnosis"}},
            )
        ]

        outcome = await orchestrator.process_turn(make_session(), "hello there, I'm Alex")

        assert outcome.medical_data.vitals_data.triage_decision == TriageDecision.PENDING

    async def test_emergency_vitals_halt_the_workflow(self, orchestrator, fake_completion):
        update = {"vitals_data": {"temperature": {"value": 40.2}, "vitals_collected": True}}
        fake_completion.replies = [CompletionResult(reply="Thank you.", updated_data=update)]

        outcome = await orchestrator.process_turn(make_session(), "my temperature is 40.2")

        assert outcome.emergency is not None
        assert outcome.active_agent is None
        assert outcome.medical_data.vitals_data.triage_decision == TriageDecision.EMERGENCY
        assert "Seek immediate medical attention" in outcome.reply
        assert outcome.ai_message.content == outcome.reply

    async def test_halted_session_does_not_call_the_model(self, orchestrator, fake_completion):
        vitals = normal_vitals(
            temperature=Temperature(value=40.2),
            vitals_stage_completed=True,
            triage_decision=TriageDecision.EMERGENCY,
            triage_reason="Emergency condition detected: Dangerously high temperature detected",
        )
        session = session_at(AgentRole.VITALS_TRIAGE, vitals_data=vitals)

        outcome = await orchestrator.process_turn(session, "can we keep going?")

        assert fake_completion.calls == []
        assert outcome.emergency.reason == vitals.triage_reason
        assert outcome.medical_data == session.medical_data

    async def test_acknowledged_emergency_resumes_at_triage(self, orchestrator, fake_completion):
        vitals = normal_vitals(
            temperature=Temperature(value=40.2),
            vitals_stage_completed=True,
            triage_decision=TriageDecision.EMERGENCY,
        )
        session = orchestrator.acknowledge_emergency(
            session_at(AgentRole.VITALS_TRIAGE, vitals_data=vitals)
        )

        outcome = await orchestrator.process_turn(session, "I understand, my throat hurts")

        assert session.medical_data.vitals_data.emergency_acknowledged
        assert session.medical_data.current_agent == AgentRole.TRIAGE
        assert fake_completion.calls[0]["agent"] == AgentRole.TRIAGE
        assert outcome.emergency is None

    async def test_skip_during_vitals_completes_stage_without_model(self, orchestrator, fake_completion):
        outcome = await orchestrator.process_turn(make_session(), "skip")

        assert fake_completion.calls == []
        assert outcome.reply == "Skipping to the next section..."
        assert outcome.termination.reason == TerminationReason.SKIP_COMMAND
        assert outcome.medical_data.vitals_data.vitals_stage_completed
        assert outcome.medical_data.vitals_data.triage_decision == TriageDecision.DIRECT_TO_DIAGNOSIS
        assert any("not collected" in f for f in outcome.medical_data.vitals_data.triage_factors)
        assert outcome.active_agent == AgentRole.TRIAGE
        assert outcome.tracking.termination_reason == TerminationReason.SKIP_COMMAND


class TestConversation:
    async def test_done_jumps_to_handover_without_model(self, orchestrator, fake_completion):
        session = session_at(AgentRole.TRIAGE)

        outcome = await orchestrator.process_turn(session, "done")

        assert fake_completion.calls == []
        assert outcome.active_agent == AgentRole.HANDOVER_SPECIALIST
        assert outcome.termination.reason == TerminationReason.DONE_COMMAND
        assert outcome.reply == outcome.termination.acknowledgment

    async def test_completion_phrase_moves_to_handover(self, orchestrator, fake_completion):
        session = session_at(
            AgentRole.CLINICAL_INVESTIGATOR,
            tracking=TrackingState(completeness=65, current_agent=AgentRole.CLINICAL_INVESTIGATOR),
            chief_complaint="sore throat",
        )

        outcome = await orchestrator.process_turn(session, "ok that's everything, thanks")

        assert fake_completion.calls[0]["agent"] == AgentRole.HANDOVER_SPECIALIST
        assert outcome.termination.reason == TerminationReason.COMPLETION_PHRASE
        assert outcome.active_agent == AgentRole.HANDOVER_SPECIALIST
        assert outcome.reply.startswith(outcome.termination.acknowledgment)

    async def test_message_limit_forces_handover(self, orchestrator, fake_completion):
        session = session_at(
            AgentRole.TRIAGE,
            tracking=TrackingState(ai_message_count=20, current_agent=AgentRole.TRIAGE),
        )

        outcome = await orchestrator.process_turn(session, "I also have a rash on my arm")

        assert outcome.termination.reason == TerminationReason.MESSAGE_LIMIT
        assert fake_completion.calls[0]["agent"] == AgentRole.HANDOVER_SPECIALIST

    async def test_negative_reply_completes_records_check(self, orchestrator, fake_completion):
        session = session_at(AgentRole.RECORDS_CLERK, chief_complaint="sore throat", hpi=HPI)

        outcome = await orchestrator.process_turn(session, "no")

        assert outcome.medical_data.records_check_completed
        assert fake_completion.calls[0]["agent"] == AgentRole.HISTORY_SPECIALIST
        assert outcome.active_agent == AgentRole.HISTORY_SPECIALIST
        assert "medical records" in outcome.tracking.answered_topics

    async def test_negative_reply_to_history_reaches_ready_handover(self, orchestrator, fake_completion):
        session = session_at(
            AgentRole.HISTORY_SPECIALIST,
            chief_complaint="sore throat",
            hpi=HPI,
            records_check_completed=True,
        )

        outcome = await orchestrator.process_turn(session, "none")

        assert outcome.medical_data.history_check_completed
        assert outcome.active_agent == AgentRole.HANDOVER_SPECIALIST
        assert outcome.is_ready
        assert outcome.medical_data.booking_status == BookingStatus.READY
        assert outcome.tracking.completeness == 80

    async def test_follow_up_limit_without_new_information_advances(self, orchestrator, fake_completion):
        session = session_at(
            AgentRole.CLINICAL_INVESTIGATOR,
            tracking=TrackingState(follow_up_counts={"symptoms": 2}),
            chief_complaint="sore throat",
            hpi="since monday",
        )

        outcome = await orchestrator.process_turn(
            session, "It started on Monday after a long run in the rain"
        )

        assert fake_completion.calls[0]["agent"] == AgentRole.RECORDS_CLERK
        assert outcome.active_agent == AgentRole.RECORDS_CLERK

    async def test_update_is_merged_and_routed(self, orchestrator, fake_completion):
        fake_completion.replies = [
            CompletionResult(
                reply="How long has it been going on?",
                updated_data={"chief_complaint": "sore throat"},
            )
        ]
        session = session_at(AgentRole.TRIAGE)

        outcome = await orchestrator.process_turn(session, "My throat has been really sore")

        assert outcome.medical_data.chief_complaint == "sore throat"
        assert outcome.active_agent == AgentRole.CLINICAL_INVESTIGATOR
        assert outcome.tracking.completeness == 20
        assert outcome.tracking.follow_up_counts == {"triage": 1}

    async def test_conclusion_is_offered_once(self, orchestrator, fake_completion):
        tracking = TrackingState(ai_message_count=15, current_agent=AgentRole.CLINICAL_INVESTIGATOR)
        session = session_at(AgentRole.CLINICAL_INVESTIGATOR, tracking=tracking, chief_complaint="cough")

        first = await orchestrator.process_turn(session, "It also hurts at night when I lie down")
        session = orchestrator.apply_turn(session, first)
        await orchestrator.process_turn(session, "It is worse after drinking cold water")

        assert fake_completion.calls[0]["offer_conclusion"] is True
        assert first.tracking.has_offered_conclusion
        assert fake_completion.calls[1]["offer_conclusion"] is False

    async def test_turn_does_not_mutate_the_session(self, orchestrator, fake_completion):
        fake_completion.replies = [
            CompletionResult(reply="Thanks.", updated_data={"chief_complaint": "cough"})
        ]
        session = session_at(AgentRole.TRIAGE)
        before = session.model_dump()

        await orchestrator.process_turn(session, "I have had a cough for a week")

        assert session.model_dump() == before


class TestCompletionFailure:
    async def test_failure_uses_fallback_and_does_not_advance(self):
        fake = FakeCompletionService(error=CompletionError("Completion timed out"))
        orchestrator = IntakeOrchestrator(completion_service=fake)
        session = session_at(
            AgentRole.CLINICAL_INVESTIGATOR,
            tracking=TrackingState(ai_message_count=4, current_agent=AgentRole.CLINICAL_INVESTIGATOR),
            chief_complaint="sore throat",
        )

        outcome = await orchestrator.process_turn(session, "Can we wrap up? It hurts when I swallow")

        assert outcome.used_fallback
        assert outcome.medical_data == session.medical_data
        assert outcome.active_agent == AgentRole.CLINICAL_INVESTIGATOR
        assert outcome.tracking.ai_message_count == 4
        assert outcome.tracking.consecutive_errors == 1
        assert outcome.tracking.follow_up_counts == {}
        assert outcome.reply.startswith('I heard you mention "Can we wrap up?')

    async def test_repeated_failures_ask_to_rephrase(self):
        orchestrator = IntakeOrchestrator(completion_service=FakeCompletionService(error=RuntimeError("down")))
        session = session_at(AgentRole.TRIAGE, tracking=TrackingState(consecutive_errors=2))

        outcome = await orchestrator.process_turn(session, "my head")

        assert outcome.tracking.consecutive_errors == 3
        assert "rephrasing" in outcome.reply

    async def test_success_resets_error_count(self, orchestrator):
        session = session_at(AgentRole.TRIAGE, tracking=TrackingState(consecutive_errors=2))

        outcome = await orchestrator.process_turn(session, "My throat has been really sore")

        assert outcome.tracking.consecutive_errors == 0


class TestSessionOperations:
    def test_submit_vitals_runs_triage(self, orchestrator):
        outcome = orchestrator.submit_vitals(make_session(), normal_vitals())

        assert outcome.triage.decision == TriageDecision.DIRECT_TO_DIAGNOSIS
        assert outcome.current_agent == AgentRole.TRIAGE
        assert outcome.medical_data.vitals_data.vitals_collected
        assert outcome.medical_data.vitals_data.vitals_stage_completed

    def test_submit_emergency_vitals(self, orchestrator):
        vitals = VitalsData(temperature=Temperature(value=40.0))

        outcome = orchestrator.submit_vitals(make_session(), vitals)

        assert outcome.triage.decision == TriageDecision.EMERGENCY
        assert outcome.emergency is not None
        assert outcome.current_agent == AgentRole.VITALS_TRIAGE

    def test_submit_vitals_without_closing_stage(self, orchestrator):
        outcome = orchestrator.submit_vitals(make_session(), normal_vitals(), complete_stage=False)

        assert outcome.current_agent == AgentRole.VITALS_TRIAGE
        assert outcome.medical_data.vitals_data.triage_decision == TriageDecision.DIRECT_TO_DIAGNOSIS

    def test_reset_returns_initial_state(self, orchestrator):
        session = session_at(
            AgentRole.HANDOVER_SPECIALIST,
            tracking=TrackingState(ai_message_count=12, completeness=90),
            chief_complaint="cough",
        )

        fresh = orchestrator.reset_session(session)

        assert fresh.session_id == session.session_id
        assert fresh.user_id == session.user_id
        assert fresh.medical_data.current_agent == AgentRole.VITALS_TRIAGE
        assert fresh.medical_data.vitals_data.vitals_stage_completed is False
        assert fresh.tracking == TrackingState()
        assert fresh.messages == []

    async def test_apply_turn_appends_messages(self, orchestrator):
        session = session_at(AgentRole.TRIAGE)

        outcome = await orchestrator.process_turn(session, "My throat has been really sore")
        updated = orchestrator.apply_turn(session, outcome)

        assert [m.role for m in updated.messages] == ["user", "model"]
        assert updated.message_count == 2
        assert updated.status == SessionStatus.IN_PROGRESS
        assert session.messages == []
