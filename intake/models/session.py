"""MongoDB schema for intake sessions."""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict
from datetime import datetime, timezone
from intake.models.triage import (
    AgentRole,
    BookingStatus,
    SessionStatus,
    TemperatureUnit,
    TerminationReason,
    TriageDecision,
    WeightUnit,
)
import uuid


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Temperature(BaseModel):
    value: Optional[float] = None
    unit: TemperatureUnit = TemperatureUnit.CELSIUS


class Weight(BaseModel):
    value: Optional[float] = None
    unit: WeightUnit = WeightUnit.KG


class BloodPressure(BaseModel):
    systolic: Optional[int] = None
    diastolic: Optional[int] = None


class VitalsData(BaseModel):
    """Demographics and vital signs collected by the VitalsTriageAgent.

    Missing readings stay ``None``; a missing value is never read as normal.
    """

    patient_name: Optional[str] = None
    patient_age: Optional[int] = Field(default=None, ge=0, le=130)
    patient_gender: Optional[str] = None
    temperature: Temperature = Field(default_factory=Temperature)
    weight: Weight = Field(default_factory=Weight)
    blood_pressure: BloodPressure = Field(default_factory=BloodPressure)
    current_status: Optional[str] = None

    vitals_collected: bool = False
    vitals_stage_completed: bool = False
    triage_decision: TriageDecision = TriageDecision.PENDING
    triage_reason: Optional[str] = None
    triage_factors: List[str] = Field(default_factory=list)
    emergency_acknowledged: bool = False


class MedicalData(BaseModel):
    """Clinical fields accumulated over the intake conversation."""

    chief_complaint: Optional[str] = None
    hpi: Optional[str] = None
    medical_records: List[str] = Field(default_factory=list)
    records_check_completed: bool = False
    history_check_completed: bool = False
    medications: List[str] = Field(default_factory=list)
    allergies: List[str] = Field(default_factory=list)
    past_medical_history: List[str] = Field(default_factory=list)
    family_history: Optional[str] = None
    social_history: Optional[str] = None
    review_of_systems: List[str] = Field(default_factory=list)
    clinical_handover: Optional[Dict[str, str]] = None  # SBAR sections
    booking_status: BookingStatus = BookingStatus.COLLECTING

    current_agent: AgentRole = AgentRole.VITALS_TRIAGE
    vitals_data: VitalsData = Field(default_factory=VitalsData)


class TrackingState(BaseModel):
    """Question-tracking and termination bookkeeping, threaded through every turn."""

    follow_up_counts: Dict[str, int] = Field(default_factory=dict)
    answered_topics: List[str] = Field(default_factory=list)
    ai_message_count: int = Field(default=0, ge=0)
    completeness: int = Field(default=0, ge=0, le=100)
    current_agent: AgentRole = AgentRole.VITALS_TRIAGE
    consecutive_errors: int = Field(default=0, ge=0)
    has_offered_conclusion: bool = False
    termination_reason: Optional[TerminationReason] = None


class ChatMessage(BaseModel):
    """Individual message in a session."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    role: str  # "user" or "model"
    content: str
    images: Optional[List[str]] = None
    timestamp: datetime = Field(default_factory=utc_now)
    active_agent: Optional[AgentRole] = None
    temp_id: Optional[str] = None  # client idempotency key (user messages only)


class IntakeSession(BaseModel):
    """Intake session document."""

    session_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    name: Optional[str] = None
    status: SessionStatus = SessionStatus.NOT_STARTED
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    message_count: int = 0
    messages: List[ChatMessage] = Field(default_factory=list)

    medical_data: MedicalData = Field(default_factory=MedicalData)
    tracking: TrackingState = Field(default_factory=TrackingState)

    class Config:
        json_schema_extra = {
            "example": {
                "session_id": "123e4567-e89b-12d3-a456-426614174000",
                "user_id": "user123",
                "status": "in_progress",
                "message_count": 4,
                "medical_data": {
                    "chief_complaint": "sore throat",
                    "current_agent": "ClinicalInvestigator",
                },
            }
        }
