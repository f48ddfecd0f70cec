"""Critical-symptom detection for the vitals triage pass."""

import re
from typing import Dict, List, Optional, Tuple


# Critical symptom patterns by category; any hit is an emergency.
CRITICAL_SYMPTOM_PATTERNS: Dict[str, List[str]] = {
    "cardiac": [
        r"chest pain",
        r"crushing.*chest",
        r"pressure.*chest",
    ],
    "respiratory": [
        r"difficulty breathing",
        r"can'?t breathe",
        r"cannot breathe",
        r"shortness of breath",
        r"throat closing",
    ],
    "neurological": [
        r"loss of consciousness",
        r"unconscious",
        r"passed out",
        r"stroke",
        r"face drooping",
        r"arm weakness",
        r"speech difficulty",
        r"worst headache",
        r"severe headache",
        r"seizure",
        r"convulsion",
    ],
    "bleeding": [
        r"severe bleeding",
        r"bleeding heavily",
        r"uncontrolled bleeding",
    ],
    "allergic": [
        r"severe allergic reaction",
        r"anaphylaxis",
    ],
    "psychiatric": [
        r"suicidal",
        r"self-harm",
    ],
}

CATEGORY_RECOMMENDATIONS: Dict[str, List[str]] = {
    "cardiac": [
        "Call emergency services immediately - possible heart attack",
        "Chew aspirin if available and not allergic",
    ],
    "respiratory": [
        "Call emergency services immediately",
        "Sit upright and try to remain calm",
    ],
    "neurological": [
        "Call emergency services immediately - time is critical for stroke",
        "Note the time symptoms started",
    ],
    "bleeding": [
        "Call emergency services immediately",
        "Apply firm pressure to the wound",
    ],
    "allergic": [
        "Call emergency services immediately",
        "Use an epinephrine auto-injector if one is prescribed",
    ],
    "psychiatric": [
        "Contact a crisis line or emergency services now",
        "Stay with someone you trust until help arrives",
    ],
}

_DEFAULT_RECOMMENDATION = "Call emergency services or go to emergency room immediately"


def detect_critical_symptoms(text: Optional[str]) -> List[Tuple[str, str]]:
    """
    Find critical symptom mentions in free text.

    Args:
        text: Patient's status / symptom description (may be None)

    Returns:
        List of (category, matched_text) pairs, one per category, in
        declaration order
    """
    if not text or not text.strip():
        return []

    text_lower = text.lower()
    detected = []

    for category, patterns in CRITICAL_SYMPTOM_PATTERNS.items():
        for pattern in patterns:
            match = re.search(pattern, text_lower)
            if match:
                detected.append((category, match.group(0)))
                break  # Only add category once

    return detected


def get_category_recommendations(category: str) -> List[str]:
    """Recommendations for a critical symptom category."""
    return CATEGORY_RECOMMENDATIONS.get(category, [_DEFAULT_RECOMMENDATION])
