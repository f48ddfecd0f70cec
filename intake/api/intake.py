"""Intake API endpoints.

The patient talks to one intake agent at a time:
- VitalsTriageAgent: demographics and vital signs, then triage
- Triage / ClinicalInvestigator: chief complaint and history of present illness
- RecordsClerk / HistorySpecialist: records, medications, allergies, history
- HandoverSpecialist: clinical summary for the doctor

An emergency triage halts the conversation until the patient acknowledges it.
"""

from fastapi import APIRouter, Depends, HTTPException, status
from intake.api.dependencies import get_current_user, get_orchestrator
from intake.agents.orchestrator import (
    ACKNOWLEDGED_MESSAGE,
    WELCOME_MESSAGE,
    IntakeOrchestrator,
    format_emergency_reply,
)
from intake.agents.router import emergency_halt
from intake.config.settings import settings
from intake.models.assessment import TerminationResult
from intake.models.messages import (
    MessageRequest,
    MessageResponse,
    SessionDetailsResponse,
    StartSessionResponse,
    VitalsResponse,
    VitalsSubmission,
)
from intake.models.session import ChatMessage, IntakeSession, utc_now
from intake.models.triage import AgentRole, SessionStatus
from intake.services.session_service import SessionService, get_session_service
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/intake", tags=["Intake"])

CLOSED_STATUSES = (SessionStatus.READY, SessionStatus.ABANDONED)


async def _load_owned_session(
    session_service: SessionService, session_id: str, current_user: Dict[str, str]
) -> IntakeSession:
    session = await session_service.get_session(session_id)
    if not session:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")

    if session.user_id != current_user["user_id"]:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access denied to this session",
        )
    return session


def _welcome(session: IntakeSession) -> IntakeSession:
    message = ChatMessage(role="model", content=WELCOME_MESSAGE, active_agent=AgentRole.VITALS_TRIAGE)
    return session.model_copy(
        update={"messages": [message], "message_count": 1}
    )


def _as_utc(value: datetime) -> datetime:
    # Motor hands back naive datetimes that are already UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _delivered_turn(
    session: IntakeSession, temp_id: Optional[str]
) -> Optional[Tuple[ChatMessage, ChatMessage]]:
    """The stored user message for ``temp_id`` and the reply that followed it."""
    if not temp_id:
        return None
    for index, message in enumerate(session.messages):
        if message.role == "user" and message.temp_id == temp_id:
            reply = next(
                (m for m in session.messages[index + 1:] if m.role != "user"),
                None,
            )
            if reply is not None:
                return message, reply
    return None


def _is_recent_duplicate(session: IntakeSession, content: str) -> bool:
    """Same content from the patient inside the duplicate window."""
    cutoff = utc_now() - timedelta(seconds=settings.duplicate_message_window_seconds)
    return any(
        message.role == "user"
        and message.content == content
        and _as_utc(message.timestamp) >= cutoff
        for message in reversed(session.messages)
    )


@router.post("/sessions", response_model=StartSessionResponse)
async def start_session(
    current_user: Dict[str, str] = Depends(get_current_user),
    session_service: SessionService = Depends(get_session_service),
):
    """
    Start a new intake session.

    The session begins with the vitals stage; no other agent is reachable
    until it is complete.
    """
    session = await session_service.create_session(user_id=current_user["user_id"])
    await session_service.update_session(_welcome(session))

    return StartSessionResponse(
        session_id=session.session_id,
        status=session.status,
        current_agent=session.medical_data.current_agent,
        message=WELCOME_MESSAGE,
    )


@router.get("/sessions/{session_id}", response_model=SessionDetailsResponse)
async def get_session_details(
    session_id: str,
    current_user: Dict[str, str] = Depends(get_current_user),
    session_service: SessionService = Depends(get_session_service),
):
    """Get the full record of an intake session."""
    session = await _load_owned_session(session_service, session_id, current_user)

    return SessionDetailsResponse(
        session_id=session.session_id,
        status=session.status,
        created_at=session.created_at,
        updated_at=session.updated_at,
        message_count=session.message_count,
        messages=session.messages,
        medical_data=session.medical_data,
        tracking=session.tracking,
    )


@router.post("/sessions/{session_id}/messages", response_model=MessageResponse)
async def send_message(
    session_id: str,
    request: MessageRequest,
    current_user: Dict[str, str] = Depends(get_current_user),
    session_service: SessionService = Depends(get_session_service),
    orchestrator: IntakeOrchestrator = Depends(get_orchestrator),
):
    """
    Send a patient message and get the active agent's reply.

    A failed reply generation still answers (with a fallback message) and
    leaves the intake state where it was. Resending a ``temp_id`` that was
    already processed returns the stored turn instead of running it again.
    """
    session = await _load_owned_session(session_service, session_id, current_user)

    delivered = _delivered_turn(session, request.temp_id)
    if delivered is not None:
        user_message, ai_message = delivered
        logger.info(f"Replaying stored turn for {request.temp_id} in session {session_id}")
        halt = emergency_halt(session.medical_data.vitals_data)
        return MessageResponse(
            user_message=user_message,
            ai_message=ai_message,
            active_agent=None if halt else session.medical_data.current_agent,
            emergency=halt,
            termination=TerminationResult(),
            completeness=session.tracking.completeness,
            is_ready=session.status == SessionStatus.READY,
        )

    if session.status in CLOSED_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Session is {session.status.value}",
        )

    if _is_recent_duplicate(session, request.content):
        logger.warning(f"Duplicate message rejected for session {session_id}")
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Duplicate message",
        )

    try:
        outcome = await orchestrator.process_turn(
            session, request.content, request.images, temp_id=request.temp_id
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error processing turn for session {session_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process message",
        )

    updated = IntakeOrchestrator.apply_turn(session, outcome)
    await session_service.update_session(updated)

    return MessageResponse(
        user_message=outcome.user_message,
        ai_message=outcome.ai_message,
        active_agent=outcome.active_agent,
        emergency=outcome.emergency,
        termination=outcome.termination,
        completeness=outcome.tracking.completeness,
        is_ready=outcome.is_ready,
    )


@router.post("/sessions/{session_id}/vitals", response_model=VitalsResponse)
async def submit_vitals(
    session_id: str,
    submission: VitalsSubmission,
    current_user: Dict[str, str] = Depends(get_current_user),
    session_service: SessionService = Depends(get_session_service),
    orchestrator: IntakeOrchestrator = Depends(get_orchestrator),
):
    """Submit the structured vitals form and get the triage decision."""
    session = await _load_owned_session(session_service, session_id, current_user)

    if session.status in CLOSED_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Session is {session.status.value}",
        )

    outcome = orchestrator.submit_vitals(session, submission.vitals, submission.complete_stage)

    update = {
        "medical_data": outcome.medical_data,
        "tracking": session.tracking.model_copy(update={"current_agent": outcome.current_agent}),
        "status": SessionStatus.IN_PROGRESS,
    }
    if outcome.emergency is not None:
        alert = ChatMessage(role="model", content=format_emergency_reply(outcome.emergency))
        update["messages"] = [*session.messages, alert]
        update["message_count"] = session.message_count + 1
    await session_service.update_session(session.model_copy(update=update))

    return VitalsResponse(
        triage=outcome.triage,
        emergency=outcome.emergency,
        current_agent=outcome.current_agent,
    )


@router.post("/sessions/{session_id}/emergency/acknowledge", response_model=StartSessionResponse)
async def acknowledge_emergency(
    session_id: str,
    current_user: Dict[str, str] = Depends(get_current_user),
    session_service: SessionService = Depends(get_session_service),
    orchestrator: IntakeOrchestrator = Depends(get_orchestrator),
):
    """Confirm the patient has seen the emergency advice and resume the intake."""
    session = await _load_owned_session(session_service, session_id, current_user)

    if emergency_halt(session.medical_data.vitals_data) is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="No emergency to acknowledge",
        )

    updated = orchestrator.acknowledge_emergency(session)
    message = ChatMessage(
        role="model",
        content=ACKNOWLEDGED_MESSAGE,
        active_agent=updated.medical_data.current_agent,
        timestamp=utc_now(),
    )
    updated = updated.model_copy(
        update={
            "messages": [*updated.messages, message],
            "message_count": updated.message_count + 1,
        }
    )
    await session_service.update_session(updated)

    return StartSessionResponse(
        session_id=updated.session_id,
        status=updated.status,
        current_agent=updated.medical_data.current_agent,
        message=ACKNOWLEDGED_MESSAGE,
    )


@router.post("/sessions/{session_id}/reset", response_model=StartSessionResponse)
async def reset_session(
    session_id: str,
    current_user: Dict[str, str] = Depends(get_current_user),
    session_service: SessionService = Depends(get_session_service),
    orchestrator: IntakeOrchestrator = Depends(get_orchestrator),
):
    """
    Start the intake over.

    The current session is marked abandoned and a new one is created at the
    vitals stage.
    """
    session = await _load_owned_session(session_service, session_id, current_user)

    fresh = _welcome(orchestrator.reset_session(session))
    new_session = await session_service.reset_session(session, fresh)
    logger.info(f"Session {session_id} reset to {new_session.session_id}")

    return StartSessionResponse(
        session_id=new_session.session_id,
        status=new_session.status,
        current_agent=new_session.medical_data.current_agent,
        message=WELCOME_MESSAGE,
    )
