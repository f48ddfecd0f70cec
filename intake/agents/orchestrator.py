"""Intake orchestrator: runs one patient turn through the decision modules.

A turn flows through question tracking, termination detection, the vitals
triage gate and the agent router before (and after) the text-completion call.
Every step works on copies; the session passed in is never mutated.
"""

import logging
from typing import List, Optional

from intake.agents import question_tracker, termination
from intake.agents.router import (
    calculate_completeness,
    emergency_halt,
    has_usable_hpi,
    initial_medical_data,
    later_of,
    meets_ready_criteria,
    merge_medical_data,
    next_agent,
    route,
)
from intake.agents.vitals_triage import apply_triage, evaluate
from intake.models.assessment import (
    EmergencyHalt,
    TerminationResult,
    TurnOutcome,
    VitalsOutcome,
)
from intake.models.session import (
    ChatMessage,
    IntakeSession,
    MedicalData,
    TrackingState,
    VitalsData,
    utc_now,
)
from intake.models.triage import (
    AgentRole,
    BookingStatus,
    SessionStatus,
    TerminationReason,
)
from intake.services.completion_service import CompletionService, LangChainCompletionService

logger = logging.getLogger(__name__)

# Terminations answered with their acknowledgment alone
COMMAND_TERMINATIONS = (TerminationReason.DONE_COMMAND, TerminationReason.SKIP_COMMAND)

WELCOME_MESSAGE = (
    "Hello! I'll help you get ready for your appointment. "
    "Let's start with a few basics: what's your name, and how are you feeling today?"
)
ACKNOWLEDGED_MESSAGE = (
    "Thank you for confirming. If your symptoms get worse, please seek emergency care right away. "
    "Let's continue with your intake."
)


def format_emergency_reply(halt: EmergencyHalt) -> str:
    lines = [
        "⚠️ Based on what you've shared, you may need urgent medical care.",
        halt.reason,
        "",
    ]
    lines.extend(f"- {recommendation}" for recommendation in halt.recommendations)
    lines.append("")
    lines.append("Please confirm once you have read this so we can continue.")
    return "\n".join(lines)


def complete_vitals_stage(medical_data: MedicalData) -> MedicalData:
    """Close the vitals stage and store the triage decision on whatever was collected."""
    vitals = medical_data.vitals_data
    result = evaluate(vitals)
    logger.info(f"🩺 Vitals triage: {result.decision.value} ({result.reason})")

    vitals = apply_triage(vitals, result).model_copy(update={"vitals_stage_completed": True})
    return medical_data.model_copy(update={"vitals_data": vitals})


def _vitals_ready(medical_data: MedicalData) -> bool:
    vitals = medical_data.vitals_data
    return vitals.vitals_collected or vitals.vitals_stage_completed


def _advance(medical_data: MedicalData, agent: AgentRole) -> MedicalData:
    """Move past ``agent``'s stage regardless of what the fields say."""
    if not medical_data.vitals_data.vitals_stage_completed:
        return complete_vitals_stage(medical_data)
    target = later_of(next_agent(agent), medical_data.current_agent)
    return medical_data.model_copy(update={"current_agent": target})


class IntakeOrchestrator:
    """Drives the intake conversation one patient message at a time."""

    def __init__(self, completion_service: Optional[CompletionService] = None):
        self.completion_service = completion_service or LangChainCompletionService()

    async def process_turn(
        self,
        session: IntakeSession,
        message: str,
        images: Optional[List[str]] = None,
        temp_id: Optional[str] = None,
    ) -> TurnOutcome:
        """
        Run one patient turn.

        Args:
            session: Session as it stood before the message (not modified)
            message: Patient's message
            images: Optional image URLs sent with the message
            temp_id: Client idempotency key, stored on the user message

        Returns:
            TurnOutcome with the reply, the next agent (or an emergency halt)
            and the new medical data and tracking state
        """
        medical_data = session.medical_data
        tracking = session.tracking
        agent = medical_data.current_agent
        user_message = ChatMessage(
            role="user", content=message, images=images, active_agent=agent, temp_id=temp_id
        )

        logger.info(f"📨 Turn for session {session.session_id} (agent={agent.value})")

        # An unacknowledged emergency blocks the workflow
        if medical_data.vitals_data.vitals_stage_completed:
            halt = emergency_halt(medical_data.vitals_data)
            if halt is not None:
                return self._halted(halt, medical_data, tracking, user_message)

        # 1. Question tracking
        tracking = question_tracker.apply_patient_response(tracking, agent, message)

        # 2. A "no" to the records or history question completes that check
        if question_tracker.detect_negative_response(message):
            if agent == AgentRole.RECORDS_CLERK:
                logger.info("Negative reply to RecordsClerk, records check complete")
                medical_data = medical_data.model_copy(update={"records_check_completed": True})
            elif agent == AgentRole.HISTORY_SPECIALIST:
                logger.info("Negative reply to HistorySpecialist, history check complete")
                medical_data = medical_data.model_copy(update={"history_check_completed": True})
                medical_data = _advance(medical_data, agent)

        # 3. Out of follow-ups and nothing new: move on
        if question_tracker.is_follow_up_limit_reached_for_agent(
            tracking.follow_up_counts, agent
        ) and not question_tracker.contains_new_information(
            message, session.tracking.answered_topics
        ):
            logger.info(f"Follow-up limit reached for {agent.value}, advancing stage")
            medical_data = _advance(medical_data, agent)

        # 4. Termination signals
        verdict = termination.detect(
            message,
            current_agent=agent,
            ai_message_count=tracking.ai_message_count,
            completeness=tracking.completeness,
            has_chief_complaint=bool((medical_data.chief_complaint or "").strip()),
            has_hpi=has_usable_hpi(medical_data),
        )
        if verdict.should_terminate:
            if verdict.reason in COMMAND_TERMINATIONS and not medical_data.vitals_data.vitals_stage_completed:
                medical_data = complete_vitals_stage(medical_data)
            medical_data = medical_data.model_copy(
                update={"current_agent": later_of(verdict.target_agent, medical_data.current_agent)}
            )
            tracking = tracking.model_copy(update={"termination_reason": verdict.reason})

            if verdict.reason in COMMAND_TERMINATIONS:
                return self._acknowledge(verdict, medical_data, tracking, user_message)

        # 5-6. Vitals gate and emergency halt
        active = route(medical_data)
        if isinstance(active, EmergencyHalt):
            return self._halted(active, medical_data, tracking, user_message, verdict)
        medical_data = medical_data.model_copy(update={"current_agent": active})

        offer_conclusion = (
            termination.should_offer_conclusion(tracking.ai_message_count)
            and not tracking.has_offered_conclusion
        )

        # 7. Completion call; on failure nothing advances
        try:
            result = await self.completion_service.complete(
                active,
                medical_data,
                tracking,
                session.messages,
                message,
                offer_conclusion=offer_conclusion,
            )
        except Exception as e:
            logger.error(f"Completion failed for session {session.session_id}: {e}", exc_info=True)
            return self._fallback(session, agent, message, user_message, verdict)

        # 8. Merge, route and bookkeeping
        medical_data = merge_medical_data(medical_data, result.updated_data)
        if active == AgentRole.VITALS_TRIAGE and _vitals_ready(medical_data):
            medical_data = complete_vitals_stage(medical_data)

        tracking = question_tracker.record_follow_up(tracking, active)
        tracking = tracking.model_copy(
            update={
                "ai_message_count": tracking.ai_message_count + 1,
                "consecutive_errors": question_tracker.reset_consecutive_errors(),
                "has_offered_conclusion": tracking.has_offered_conclusion or offer_conclusion,
            }
        )

        next_step = route(medical_data)
        if isinstance(next_step, EmergencyHalt):
            return self._halted(next_step, medical_data, tracking, user_message, verdict)

        medical_data = medical_data.model_copy(update={"current_agent": next_step})
        is_ready = meets_ready_criteria(medical_data)
        if is_ready and medical_data.booking_status == BookingStatus.COLLECTING:
            medical_data = medical_data.model_copy(update={"booking_status": BookingStatus.READY})
        tracking = tracking.model_copy(
            update={
                "current_agent": next_step,
                "completeness": calculate_completeness(medical_data),
            }
        )

        reply = result.reply
        if verdict.should_terminate and agent != next_step:
            reply = f"{verdict.acknowledgment}\n\n{reply}"

        if next_step != agent:
            logger.info(f"➡️ Agent transition: {agent.value} -> {next_step.value}")

        return TurnOutcome(
            reply=reply,
            active_agent=next_step,
            termination=verdict,
            medical_data=medical_data,
            tracking=tracking,
            user_message=user_message,
            ai_message=ChatMessage(role="model", content=reply, active_agent=next_step),
            is_ready=is_ready,
        )

    def _acknowledge(
        self,
        verdict: TerminationResult,
        medical_data: MedicalData,
        tracking: TrackingState,
        user_message: ChatMessage,
    ) -> TurnOutcome:
        """Answer a skip/done command with its acknowledgment, without a completion call."""
        next_step = route(medical_data)
        if isinstance(next_step, EmergencyHalt):
            return self._halted(next_step, medical_data, tracking, user_message, verdict)

        medical_data = medical_data.model_copy(update={"current_agent": next_step})
        tracking = tracking.model_copy(
            update={
                "current_agent": next_step,
                "ai_message_count": tracking.ai_message_count + 1,
                "completeness": calculate_completeness(medical_data),
            }
        )
        return TurnOutcome(
            reply=verdict.acknowledgment,
            active_agent=next_step,
            termination=verdict,
            medical_data=medical_data,
            tracking=tracking,
            user_message=user_message,
            ai_message=ChatMessage(
                role="model", content=verdict.acknowledgment, active_agent=next_step
            ),
            is_ready=meets_ready_criteria(medical_data),
        )

    def _halted(
        self,
        halt: EmergencyHalt,
        medical_data: MedicalData,
        tracking: TrackingState,
        user_message: ChatMessage,
        verdict: Optional[TerminationResult] = None,
    ) -> TurnOutcome:
        logger.warning(f"🚨 Intake halted for emergency: {halt.reason}")
        reply = format_emergency_reply(halt)
        return TurnOutcome(
            reply=reply,
            active_agent=None,
            emergency=halt,
            termination=verdict or TerminationResult(),
            medical_data=medical_data,
            tracking=tracking,
            user_message=user_message,
            ai_message=ChatMessage(role="model", content=reply),
        )

    def _fallback(
        self,
        session: IntakeSession,
        agent: AgentRole,
        message: str,
        user_message: ChatMessage,
        verdict: TerminationResult,
    ) -> TurnOutcome:
        errors = question_tracker.increment_consecutive_errors(session.tracking.consecutive_errors)
        reply = question_tracker.get_fallback_message(agent, message, errors)
        tracking = session.tracking.model_copy(update={"consecutive_errors": errors})
        logger.warning(f"Using fallback reply for {agent.value} (consecutive errors: {errors})")
        return TurnOutcome(
            reply=reply,
            active_agent=agent,
            termination=verdict,
            medical_data=session.medical_data,
            tracking=tracking,
            user_message=user_message,
            ai_message=ChatMessage(role="model", content=reply, active_agent=agent),
            used_fallback=True,
        )

    def submit_vitals(
        self,
        session: IntakeSession,
        vitals: VitalsData,
        complete_stage: bool = True,
    ) -> VitalsOutcome:
        """
        Record vitals from the structured form and run triage on them.

        Triage fields on ``vitals`` are ignored; only the engine sets them.

        Args:
            session: Current session (not modified)
            vitals: Readings entered by the patient
            complete_stage: Close the vitals stage after triage

        Returns:
            VitalsOutcome with the triage result and the routing decision
        """
        update = vitals.model_dump(exclude_none=True, exclude={"vitals_stage_completed"})
        update["vitals_collected"] = True
        medical_data = merge_medical_data(session.medical_data, {"vitals_data": update})

        result = evaluate(medical_data.vitals_data)
        vitals_data = apply_triage(medical_data.vitals_data, result)
        if complete_stage:
            vitals_data = vitals_data.model_copy(update={"vitals_stage_completed": True})
        medical_data = medical_data.model_copy(update={"vitals_data": vitals_data})

        next_step = route(medical_data)
        if isinstance(next_step, EmergencyHalt):
            return VitalsOutcome(
                triage=result,
                emergency=next_step,
                medical_data=medical_data,
                current_agent=medical_data.current_agent,
            )

        medical_data = medical_data.model_copy(update={"current_agent": next_step})
        return VitalsOutcome(
            triage=result,
            medical_data=medical_data,
            current_agent=next_step,
        )

    def acknowledge_emergency(self, session: IntakeSession) -> IntakeSession:
        """Record that the patient saw the emergency advice and resume routing."""
        vitals = session.medical_data.vitals_data.model_copy(
            update={"emergency_acknowledged": True}
        )
        medical_data = session.medical_data.model_copy(update={"vitals_data": vitals})

        next_step = route(medical_data)
        medical_data = medical_data.model_copy(update={"current_agent": next_step})
        tracking = session.tracking.model_copy(update={"current_agent": next_step})
        logger.info(f"Emergency acknowledged for session {session.session_id}, resuming at {next_step.value}")

        return session.model_copy(
            update={"medical_data": medical_data, "tracking": tracking, "updated_at": utc_now()}
        )

    def reset_session(self, session: IntakeSession) -> IntakeSession:
        """A fresh session for the same patient: initial medical data, zeroed tracking."""
        now = utc_now()
        return IntakeSession(
            session_id=session.session_id,
            user_id=session.user_id,
            name=session.name,
            status=SessionStatus.NOT_STARTED,
            created_at=now,
            updated_at=now,
            medical_data=initial_medical_data(),
            tracking=TrackingState(),
        )

    @staticmethod
    def apply_turn(session: IntakeSession, outcome: TurnOutcome) -> IntakeSession:
        """Fold a turn's outcome into a new copy of the session."""
        if outcome.is_ready:
            status = SessionStatus.READY
        else:
            status = SessionStatus.IN_PROGRESS
        now = utc_now()

        return session.model_copy(
            update={
                "status": status,
                "messages": [*session.messages, outcome.user_message, outcome.ai_message],
                "message_count": session.message_count + 2,
                "medical_data": outcome.medical_data,
                "tracking": outcome.tracking,
                "updated_at": now,
                "completed_at": now if outcome.is_ready else session.completed_at,
            }
        )
