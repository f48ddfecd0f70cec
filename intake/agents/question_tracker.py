"""Question tracking: follow-up counters, answered topics and fallback replies.

Every function takes the prior value and returns the next one; nothing here
holds state between calls.
"""

import re
from typing import Dict, List

from intake.config.settings import settings
from intake.models.session import TrackingState
from intake.models.triage import AgentRole, ResponseKind
from intake.utils.phrases import (
    NEGATIVE_RESPONSES,
    UNCERTAINTY_PHRASES,
    MatchMode,
    matches_any,
    normalize,
)

BRIEF_RESPONSE_LENGTH = 10

AGENT_TO_STAGE: Dict[AgentRole, str] = {
    AgentRole.VITALS_TRIAGE: "vitals",
    AgentRole.TRIAGE: "triage",
    AgentRole.CLINICAL_INVESTIGATOR: "symptoms",
    AgentRole.RECORDS_CLERK: "records",
    AgentRole.HISTORY_SPECIALIST: "history",
    AgentRole.HANDOVER_SPECIALIST: "review",
}

# Topic recorded when a stage gets a brief/uncertain/negative answer
STAGE_TOPICS: Dict[str, List[str]] = {
    "vitals": ["vitals"],
    "triage": ["chief complaint"],
    "symptoms": ["symptom details"],
    "records": ["medical records"],
    "history": ["medications", "allergies", "past medical history"],
    "review": ["summary review"],
}

SYMPTOM_TOPIC_KEYWORDS: Dict[str, List[str]] = {
    "fever": ["fever", "temperature", "hot", "burning up"],
    "chills": ["chills", "shivering", "cold"],
    "cough": ["cough", "coughing"],
    "congestion": ["runny nose", "stuffy", "congestion", "blocked nose"],
    "headache": ["headache", "head pain", "head hurts"],
    "fatigue": ["tired", "fatigue", "exhausted", "weak"],
    "nausea": ["nausea", "nauseous", "sick to stomach"],
    "pain": ["pain", "hurts", "ache", "sore"],
    "rash": ["rash", "skin", "spots", "bumps"],
    "swelling": ["swelling", "swollen", "lumps", "lymph nodes"],
}

HISTORY_TOPIC_KEYWORDS: Dict[str, List[str]] = {
    "medications": ["medication", "medicine", "pills"],
    "allergies": ["allerg"],
    "smoking": ["smoke", "smoking", "tobacco"],
    "alcohol": ["drink", "alcohol"],
}

_NEGATED_SYMPTOM = re.compile(
    r"\b(?:no|don'?t have)\s+(fever|chills|cough|headache|nausea|rash|swelling)\b"
)

CONTEXTUAL_FALLBACKS: Dict[str, str] = {
    "vitals": "Let's start with a few basics. Could you share your temperature or blood pressure if you have them?",
    "triage": "I understand you're not feeling well. Could you describe your main concern in a few words?",
    "symptoms": "Thanks for sharing that. To help narrow things down, are you experiencing any other symptoms?",
    "records": "Got it. Do you have any recent test results or medical records to share?",
    "history": "Thanks. Do you have any ongoing medical conditions or take any regular medications?",
    "review": "I have the information I need. Let me summarize what you've told me.",
}
REPHRASE_MESSAGE = (
    "I'm having some difficulty understanding. "
    "Could you try rephrasing your response in simpler terms?"
)


# --- Answered topics ---


def mark_topic_answered(topics: List[str], topic: str) -> List[str]:
    """Add ``topic``; returns ``topics`` itself when it is already present."""
    if topic in topics:
        return topics
    return [*topics, topic]


def mark_topics_answered(topics: List[str], new_topics: List[str]) -> List[str]:
    fresh = [t for t in dict.fromkeys(new_topics) if t not in topics]
    if not fresh:
        return topics
    return [*topics, *fresh]


def is_topic_answered(topics: List[str], topic: str) -> bool:
    return topic in topics


def extract_answered_topics(message: str) -> List[str]:
    """Topics a patient message speaks to, including negated mentions ("no fever")."""
    text = normalize(message)
    topics = []

    for topic, keywords in SYMPTOM_TOPIC_KEYWORDS.items():
        if any(keyword in text for keyword in keywords):
            topics.append(topic)

    for symptom in _NEGATED_SYMPTOM.findall(text):
        if symptom not in topics:
            topics.append(symptom)

    for topic, keywords in HISTORY_TOPIC_KEYWORDS.items():
        if any(keyword in text for keyword in keywords):
            topics.append(topic)

    return topics


def contains_new_information(message: str, topics: List[str]) -> bool:
    return any(topic not in topics for topic in extract_answered_topics(message))


# --- Response classification ---


def is_brief_response(message: str) -> bool:
    return len((message or "").strip()) < BRIEF_RESPONSE_LENGTH


def detect_uncertainty_phrase(message: str) -> bool:
    return matches_any(normalize(message), UNCERTAINTY_PHRASES, MatchMode.SUBSTRING)


def detect_negative_response(message: str) -> bool:
    return matches_any(normalize(message), NEGATIVE_RESPONSES, MatchMode.LEADING)


def classify_response(message: str) -> ResponseKind:
    if detect_negative_response(message):
        return ResponseKind.NEGATIVE
    if detect_uncertainty_phrase(message):
        return ResponseKind.UNCERTAIN
    if is_brief_response(message):
        return ResponseKind.BRIEF
    return ResponseKind.DETAILED


# --- Follow-up counters ---


def get_follow_up_count(counts: Dict[str, int], stage: str) -> int:
    return counts.get(stage, 0)


def get_follow_up_count_for_agent(counts: Dict[str, int], agent: AgentRole) -> int:
    return get_follow_up_count(counts, AGENT_TO_STAGE[agent])


def increment_follow_up_count(counts: Dict[str, int], stage: str) -> Dict[str, int]:
    return {**counts, stage: counts.get(stage, 0) + 1}


def increment_follow_up_count_for_agent(counts: Dict[str, int], agent: AgentRole) -> Dict[str, int]:
    return increment_follow_up_count(counts, AGENT_TO_STAGE[agent])


def reset_follow_up_count(counts: Dict[str, int], stage: str) -> Dict[str, int]:
    return {key: value for key, value in counts.items() if key != stage}


def is_follow_up_limit_reached(counts: Dict[str, int], stage: str) -> bool:
    return get_follow_up_count(counts, stage) >= settings.max_followups_per_stage


def is_follow_up_limit_reached_for_agent(counts: Dict[str, int], agent: AgentRole) -> bool:
    return is_follow_up_limit_reached(counts, AGENT_TO_STAGE[agent])


# --- State threading ---


def apply_patient_response(tracking: TrackingState, agent: AgentRole, message: str) -> TrackingState:
    """
    Fold a patient reply into the tracking state.

    Topics mentioned in the message are marked answered. Brief, uncertain and
    negative replies are accepted as answers too: the active stage's topics
    are marked answered so the same question is never asked again.

    Args:
        tracking: Tracking state before this turn
        agent: Agent that asked the question being answered
        message: Patient's reply

    Returns:
        New TrackingState (``tracking`` is returned unchanged when nothing moves)
    """
    topics = mark_topics_answered(tracking.answered_topics, extract_answered_topics(message))

    if classify_response(message) != ResponseKind.DETAILED:
        topics = mark_topics_answered(topics, STAGE_TOPICS[AGENT_TO_STAGE[agent]])

    if topics is tracking.answered_topics:
        return tracking
    return tracking.model_copy(update={"answered_topics": topics})


def record_follow_up(tracking: TrackingState, agent: AgentRole) -> TrackingState:
    return tracking.model_copy(
        update={
            "follow_up_counts": increment_follow_up_count_for_agent(
                tracking.follow_up_counts, agent
            )
        }
    )


# --- Consecutive errors / fallbacks ---


def increment_consecutive_errors(count: int) -> int:
    return count + 1


def reset_consecutive_errors() -> int:
    return 0


def should_suggest_rephrasing(consecutive_errors: int) -> bool:
    return consecutive_errors >= settings.rephrase_after_errors


def _message_snippet(message: str):
    cleaned = (message or "").strip()
    if not cleaned:
        return None
    if len(cleaned) <= 50:
        return cleaned
    return cleaned[:47] + "..."


def get_fallback_message(agent: AgentRole, patient_message: str, consecutive_errors: int) -> str:
    """Stage-aware reply used when the model fails or returns nothing."""
    if should_suggest_rephrasing(consecutive_errors):
        return REPHRASE_MESSAGE

    base = CONTEXTUAL_FALLBACKS.get(AGENT_TO_STAGE.get(agent, "symptoms"), CONTEXTUAL_FALLBACKS["symptoms"])
    snippet = _message_snippet(patient_message)
    if snippet:
        return f'I heard you mention "{snippet}". {base}'
    return base
