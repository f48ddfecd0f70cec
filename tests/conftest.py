"""Shared fixtures for the intake test suite."""

from typing import List, Optional

import pytest

from intake.agents.orchestrator import IntakeOrchestrator
from intake.agents.router import initial_medical_data
from intake.models.session import (
    BloodPressure,
    ChatMessage,
    IntakeSession,
    MedicalData,
    Temperature,
    TrackingState,
    VitalsData,
    Weight,
)
from intake.models.triage import AgentRole, TriageDecision
from intake.services.completion_service import CompletionResult


class FakeCompletionService:
    """Scripted completion service; records every call it receives."""

    def __init__(self, replies: Optional[List[CompletionResult]] = None, error: Optional[Exception] = None):
        self.replies = list(replies or [])
        self.error = error
        self.calls = []

    async def complete(
        self,
        agent: AgentRole,
        medical_data: MedicalData,
        tracking: TrackingState,
        history: List[ChatMessage],
        message: str,
        offer_conclusion: bool = False,
    ) -> CompletionResult:
        self.calls.append(
            {
                "agent": agent,
                "medical_data": medical_data,
                "tracking": tracking,
                "message": message,
                "offer_conclusion": offer_conclusion,
            }
        )
        if self.error is not None:
            raise self.error
        if self.replies:
            return self.replies.pop(0)
        return CompletionResult(reply=f"{agent.value} asks a question")


def normal_vitals(**overrides) -> VitalsData:
    values = dict(
        patient_name="Alex",
        patient_age=34,
        temperature=Temperature(value=36.8),
        weight=Weight(value=70),
        blood_pressure=BloodPressure(systolic=120, diastolic=80),
        current_status="mild sore throat",
    )
    values.update(overrides)
    return VitalsData(**values)


def past_vitals(**overrides) -> VitalsData:
    """Vitals with the stage already closed and a non-emergency triage."""
    return normal_vitals(
        vitals_collected=True,
        vitals_stage_completed=True,
        triage_decision=TriageDecision.DIRECT_TO_DIAGNOSIS,
        **overrides,
    )


def make_session(
    medical_data: Optional[MedicalData] = None,
    tracking: Optional[TrackingState] = None,
) -> IntakeSession:
    return IntakeSession(
        session_id="session-1",
        user_id="user-1",
        medical_data=medical_data or initial_medical_data(),
        tracking=tracking or TrackingState(),
    )


HPI = "Sore throat for three days, worse when swallowing, low grade fever at night."


@pytest.fixture
def fake_completion():
    return FakeCompletionService()


@pytest.fixture
def orchestrator(fake_completion):
    return IntakeOrchestrator(completion_service=fake_completion)
