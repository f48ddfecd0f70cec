"""API request and response models."""

from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime
from intake.models.assessment import EmergencyHalt, TerminationResult, TriageResult
from intake.models.session import ChatMessage, MedicalData, TrackingState, VitalsData
from intake.models.triage import AgentRole, SessionStatus


class StartSessionResponse(BaseModel):
    """Response when starting (or resetting) an intake session."""

    session_id: str
    status: SessionStatus
    current_agent: AgentRole
    message: str


class MessageRequest(BaseModel):
    """Request to send a patient message in an intake session."""

    content: str = Field(..., min_length=1, max_length=4000, description="Patient message")
    images: Optional[List[str]] = Field(
        None, description="URLs of images uploaded with the message"
    )
    temp_id: Optional[str] = Field(
        None,
        max_length=100,
        description="Client-generated id; resending the same id returns the stored reply",
    )


class MessageResponse(BaseModel):
    """Result of one intake turn."""

    user_message: ChatMessage
    ai_message: ChatMessage
    active_agent: Optional[AgentRole] = None
    emergency: Optional[EmergencyHalt] = None
    termination: TerminationResult
    completeness: int
    is_ready: bool = False


class VitalsSubmission(BaseModel):
    """Structured vitals form submitted outside the chat."""

    vitals: VitalsData
    complete_stage: bool = True


class VitalsResponse(BaseModel):
    triage: TriageResult
    emergency: Optional[EmergencyHalt] = None
    current_agent: AgentRole


class SessionDetailsResponse(BaseModel):
    """Full session details response."""

    session_id: str
    status: SessionStatus
    created_at: datetime
    updated_at: datetime
    message_count: int
    messages: List[ChatMessage]
    medical_data: MedicalData
    tracking: TrackingState
