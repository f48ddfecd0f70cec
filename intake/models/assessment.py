"""Decision outputs produced by the intake orchestrator."""

from pydantic import BaseModel, Field
from typing import List, Optional
from intake.models.session import ChatMessage, MedicalData, TrackingState
from intake.models.triage import (
    AgentRole,
    IndicatorType,
    TerminationReason,
    TriageDecision,
)


class EmergencyIndicator(BaseModel):
    """A single vital or symptom that crossed an emergency threshold."""

    type: IndicatorType
    value: str
    threshold: str
    message: str


class EmergencyResult(BaseModel):
    is_emergency: bool
    indicators: List[EmergencyIndicator] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class ComplexityResult(BaseModel):
    score: int = 0
    factors: List[str] = Field(default_factory=list)
    needs_agent_assistance: bool = False


class TriageResult(BaseModel):
    """Outcome of a vitals triage pass."""

    decision: TriageDecision
    reason: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    factors: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)

    @property
    def is_emergency(self) -> bool:
        return self.decision == TriageDecision.EMERGENCY


class EmergencyHalt(BaseModel):
    """Router output when an unacknowledged emergency blocks the workflow."""

    reason: str
    factors: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class TerminationResult(BaseModel):
    """Whether the patient's message (or session counters) ends the current phase."""

    should_terminate: bool = False
    reason: Optional[TerminationReason] = None
    target_agent: Optional[AgentRole] = None
    acknowledgment: Optional[str] = None


class TurnOutcome(BaseModel):
    """Everything the API needs to answer one patient turn."""

    reply: str
    active_agent: Optional[AgentRole] = None
    emergency: Optional[EmergencyHalt] = None
    termination: TerminationResult = Field(default_factory=TerminationResult)
    medical_data: MedicalData
    tracking: TrackingState
    user_message: ChatMessage
    ai_message: ChatMessage
    used_fallback: bool = False
    is_ready: bool = False


class VitalsOutcome(BaseModel):
    """Result of submitting the structured vitals form."""

    triage: TriageResult
    emergency: Optional[EmergencyHalt] = None
    medical_data: MedicalData
    current_agent: AgentRole
