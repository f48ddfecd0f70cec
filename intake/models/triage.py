"""Agent, triage and termination enums."""

from enum import Enum


class AgentRole(str, Enum):
    """Conversational agent personas, in intake order."""

    VITALS_TRIAGE = "VitalsTriageAgent"
    TRIAGE = "Triage"
    CLINICAL_INVESTIGATOR = "ClinicalInvestigator"
    RECORDS_CLERK = "RecordsClerk"
    HISTORY_SPECIALIST = "HistorySpecialist"
    HANDOVER_SPECIALIST = "HandoverSpecialist"


class TriageDecision(str, Enum):
    """Vitals-based urgency/complexity classification."""

    PENDING = "pending"
    EMERGENCY = "emergency"
    AGENT_ASSISTED = "agent-assisted"
    DIRECT_TO_DIAGNOSIS = "direct-to-diagnosis"


class IndicatorType(str, Enum):
    """What triggered an emergency indicator."""

    TEMPERATURE = "temperature"
    BLOOD_PRESSURE = "blood_pressure"
    SYMPTOMS = "symptoms"


class TerminationReason(str, Enum):
    """Why the current phase should end."""

    COMPLETION_PHRASE = "completion_phrase"
    EXPLICIT_REQUEST = "explicit_request"
    SKIP_COMMAND = "skip_command"
    DONE_COMMAND = "done_command"
    MESSAGE_LIMIT = "message_limit"
    COMPLETENESS_THRESHOLD = "completeness_threshold"


class ResponseKind(str, Enum):
    """Rough shape of a patient reply, used for question tracking."""

    DETAILED = "detailed"
    BRIEF = "brief"
    UNCERTAIN = "uncertain"
    NEGATIVE = "negative"


class TemperatureUnit(str, Enum):
    CELSIUS = "celsius"
    FAHRENHEIT = "fahrenheit"


class WeightUnit(str, Enum):
    KG = "kg"
    LBS = "lbs"


class SessionStatus(str, Enum):
    """Intake session status."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    READY = "ready"
    ABANDONED = "abandoned"


class BookingStatus(str, Enum):
    COLLECTING = "collecting"
    READY = "ready"
    BOOKED = "booked"
