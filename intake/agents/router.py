"""Deterministic agent routing for the intake sequence.

Priority:
0. VitalsTriageAgent while the vitals stage is incomplete (absolute gate)
1. Emergency halt while an emergency triage is unacknowledged
2. Triage -> ClinicalInvestigator -> RecordsClerk -> HistorySpecialist ->
   HandoverSpecialist, by the first missing field group

Routing is monotonic: the router never returns an agent earlier in the
sequence than the session's current agent.
"""

import logging
from typing import Dict, Optional, Tuple, Union

from pydantic import ValidationError

from intake.agents.vitals_triage import evaluate
from intake.config.settings import settings
from intake.models.assessment import EmergencyHalt
from intake.models.session import MedicalData, VitalsData
from intake.models.triage import AgentRole, TriageDecision

logger = logging.getLogger(__name__)

AGENT_SEQUENCE: Tuple[AgentRole, ...] = (
    AgentRole.VITALS_TRIAGE,
    AgentRole.TRIAGE,
    AgentRole.CLINICAL_INVESTIGATOR,
    AgentRole.RECORDS_CLERK,
    AgentRole.HISTORY_SPECIALIST,
    AgentRole.HANDOVER_SPECIALIST,
)

AGENT_STAGE_LABELS: Dict[AgentRole, str] = {
    AgentRole.VITALS_TRIAGE: "vitals",
    AgentRole.TRIAGE: "triage",
    AgentRole.CLINICAL_INVESTIGATOR: "investigation",
    AgentRole.RECORDS_CLERK: "records",
    AgentRole.HISTORY_SPECIALIST: "profile",
    AgentRole.HANDOVER_SPECIALIST: "summary",
}

RouteResult = Union[AgentRole, EmergencyHalt]

_ENGINE_OWNED_VITALS = (
    "triage_decision",
    "triage_reason",
    "triage_factors",
    "emergency_acknowledged",
)


def agent_index(agent: AgentRole) -> int:
    return AGENT_SEQUENCE.index(agent)


def next_agent(agent: AgentRole) -> AgentRole:
    """The following agent in sequence, capped at HandoverSpecialist."""
    index = min(agent_index(agent) + 1, len(AGENT_SEQUENCE) - 1)
    return AGENT_SEQUENCE[index]


def later_of(a: AgentRole, b: AgentRole) -> AgentRole:
    return a if agent_index(a) >= agent_index(b) else b


def agent_to_stage(agent: AgentRole) -> str:
    return AGENT_STAGE_LABELS[agent]


def _has_text(value: Optional[str]) -> bool:
    return bool(value and value.strip())


def has_usable_hpi(medical_data: MedicalData) -> bool:
    return len((medical_data.hpi or "").strip()) >= settings.min_hpi_length


def needs_history(medical_data: MedicalData) -> bool:
    """History is needed until it is checked or anything at all was recorded."""
    return not (
        medical_data.history_check_completed
        or medical_data.medications
        or medical_data.allergies
        or medical_data.past_medical_history
    )


def determine_agent(medical_data: MedicalData) -> AgentRole:
    """Earliest conversational agent whose field group is still incomplete."""
    if not _has_text(medical_data.chief_complaint):
        return AgentRole.TRIAGE
    if not has_usable_hpi(medical_data):
        return AgentRole.CLINICAL_INVESTIGATOR
    if not medical_data.records_check_completed:
        return AgentRole.RECORDS_CLERK
    if needs_history(medical_data):
        return AgentRole.HISTORY_SPECIALIST
    return AgentRole.HANDOVER_SPECIALIST


def emergency_halt(vitals_data: VitalsData) -> Optional[EmergencyHalt]:
    """Halt signal for an unacknowledged emergency triage, else None."""
    if vitals_data.triage_decision != TriageDecision.EMERGENCY:
        return None
    if vitals_data.emergency_acknowledged:
        return None

    result = evaluate(vitals_data)
    return EmergencyHalt(
        reason=vitals_data.triage_reason or result.reason,
        factors=list(vitals_data.triage_factors) or result.factors,
        recommendations=result.recommendations or ["Seek immediate medical attention"],
    )


def route(medical_data: MedicalData, vitals_data: Optional[VitalsData] = None) -> RouteResult:
    """
    Pick the single active agent for the next turn.

    Args:
        medical_data: Collected clinical fields (``current_agent`` included)
        vitals_data: Vitals state; defaults to ``medical_data.vitals_data``

    Returns:
        The next AgentRole, or an EmergencyHalt when an emergency triage has
        not been acknowledged
    """
    vitals = vitals_data if vitals_data is not None else medical_data.vitals_data

    if not vitals.vitals_stage_completed:
        return AgentRole.VITALS_TRIAGE

    halt = emergency_halt(vitals)
    if halt is not None:
        logger.warning(f"🚨 Routing halted for emergency triage: {halt.reason}")
        return halt

    agent = later_of(determine_agent(medical_data), medical_data.current_agent)
    if agent == AgentRole.VITALS_TRIAGE:
        agent = AgentRole.TRIAGE
    return agent


def calculate_completeness(medical_data: Optional[MedicalData]) -> int:
    """Weighted 0-100 score of how much required information is collected."""
    if medical_data is None:
        return 0

    history_satisfied = medical_data.records_check_completed or medical_data.history_check_completed
    score = 0

    if _has_text(medical_data.chief_complaint):
        score += 20
    if _has_text(medical_data.hpi):
        score += 20
    if medical_data.records_check_completed:
        score += 10
    if medical_data.medications or history_satisfied:
        score += 10
    if medical_data.allergies or history_satisfied:
        score += 10
    if medical_data.past_medical_history or history_satisfied:
        score += 10
    if _has_text(medical_data.family_history):
        score += 5
    if _has_text(medical_data.social_history):
        score += 5
    if medical_data.clinical_handover:
        score += 10

    return min(score, 100)


def meets_ready_criteria(medical_data: MedicalData) -> bool:
    return (
        determine_agent(medical_data) == AgentRole.HANDOVER_SPECIALIST
        and _has_text(medical_data.chief_complaint)
        and has_usable_hpi(medical_data)
        and medical_data.records_check_completed
    )


def initial_medical_data() -> MedicalData:
    return MedicalData(current_agent=AgentRole.VITALS_TRIAGE, vitals_data=VitalsData())


def merge_medical_data(existing: MedicalData, update: Optional[dict]) -> MedicalData:
    """
    Merge a partial update from the completion service into ``existing``.

    None/missing values never overwrite, list fields are replaced wholesale,
    ``history_check_completed`` only ever turns on, and ``vitals_data`` is
    merged field by field. Unknown keys and triage fields are ignored; the
    triage decision only ever comes from the vitals triage engine. An update
    that does not validate leaves ``existing`` untouched.
    """
    if not update:
        return existing

    merged = existing.model_dump()
    for key, value in update.items():
        if key not in merged or value is None or key in ("vitals_data", "current_agent"):
            continue
        if key == "history_check_completed":
            merged[key] = bool(merged[key] or value)
        elif isinstance(merged[key], list) and not isinstance(value, list):
            continue
        else:
            merged[key] = value

    vitals_update = update.get("vitals_data")
    if isinstance(vitals_update, dict):
        vitals = merged["vitals_data"]
        for key, value in vitals_update.items():
            if key not in vitals or value is None or key in _ENGINE_OWNED_VITALS:
                continue
            if isinstance(vitals[key], dict) and isinstance(value, dict):
                vitals[key] = {**vitals[key], **{k: v for k, v in value.items() if v is not None}}
            else:
                vitals[key] = value

    try:
        return MedicalData.model_validate(merged)
    except ValidationError as e:
        logger.warning(f"Discarding malformed medical data update: {e}")
        return existing
