"""Vitals triage engine.

Classifies collected vital signs into one of three pathways:

- ``emergency``: a reading or symptom crossed a critical threshold; the
  normal intake workflow must stop until the caller acknowledges it.
- ``agent-assisted``: multiple symptoms, sub-emergency abnormal vitals or a
  chronic condition; the patient goes through the full agent sequence.
- ``direct-to-diagnosis``: a simple presentation.

``evaluate`` is pure and deterministic. Missing readings never raise and never
count as normal; they are listed in a "not collected" factor instead.
"""

import logging
from typing import List, Optional

from intake.models.assessment import (
    ComplexityResult,
    EmergencyIndicator,
    EmergencyResult,
    TriageResult,
)
from intake.models.session import Temperature, VitalsData
from intake.models.triage import IndicatorType, TemperatureUnit, TriageDecision
from intake.utils.red_flags import detect_critical_symptoms, get_category_recommendations

logger = logging.getLogger(__name__)

# Emergency thresholds
TEMP_HIGH_C = 39.5
TEMP_LOW_C = 35.0
SYSTOLIC_HIGH = 180
SYSTOLIC_LOW = 90
DIASTOLIC_HIGH = 120
DIASTOLIC_LOW = 60

AGENT_ASSIST_SCORE = 3

CONFIDENCE = {
    TriageDecision.EMERGENCY: 1.0,
    TriageDecision.AGENT_ASSISTED: 0.8,
    TriageDecision.DIRECT_TO_DIAGNOSIS: 0.7,
}

SYMPTOM_KEYWORDS = (
    "pain", "fever", "cough", "nausea", "vomiting", "diarrhea",
    "headache", "dizziness", "fatigue", "weakness", "swelling",
    "rash", "bleeding", "shortness of breath", "chest", "abdomen",
)
CONJUNCTIONS = (",", " and ", " also ", " plus ", " with ", " along with ")
CHRONIC_KEYWORDS = (
    "chronic", "ongoing", "persistent", "recurring", "history of",
    "diagnosed with", "taking medication for", "previously had",
)
MEDICATION_KEYWORDS = ("medication", "medicine", "pills", "prescription", "taking")


def to_celsius(temperature: Temperature) -> Optional[float]:
    if temperature.value is None:
        return None
    if temperature.unit == TemperatureUnit.FAHRENHEIT:
        return (temperature.value - 32) * 5 / 9
    return temperature.value


def _format_temperature(temperature: Temperature) -> str:
    symbol = "F" if temperature.unit == TemperatureUnit.FAHRENHEIT else "C"
    return f"{temperature.value}°{symbol}"


def missing_vitals(vitals: VitalsData) -> List[str]:
    """Names of readings that were not collected (a half blood pressure counts as missing)."""
    missing = []
    if vitals.temperature.value is None:
        missing.append("temperature")
    if vitals.weight.value is None:
        missing.append("weight")
    if vitals.blood_pressure.systolic is None or vitals.blood_pressure.diastolic is None:
        missing.append("blood pressure")
    return missing


def _check_temperature(vitals: VitalsData) -> List[EmergencyIndicator]:
    celsius = to_celsius(vitals.temperature)
    if celsius is None:
        return []
    if celsius > TEMP_HIGH_C:
        return [
            EmergencyIndicator(
                type=IndicatorType.TEMPERATURE,
                value=_format_temperature(vitals.temperature),
                threshold=f">{TEMP_HIGH_C}°C",
                message="Dangerously high temperature detected",
            )
        ]
    if celsius < TEMP_LOW_C:
        return [
            EmergencyIndicator(
                type=IndicatorType.TEMPERATURE,
                value=_format_temperature(vitals.temperature),
                threshold=f"<{TEMP_LOW_C}°C",
                message="Dangerously low temperature detected (hypothermia risk)",
            )
        ]
    return []


def _check_blood_pressure(vitals: VitalsData) -> List[EmergencyIndicator]:
    systolic = vitals.blood_pressure.systolic
    diastolic = vitals.blood_pressure.diastolic
    reading = f"{systolic if systolic is not None else '?'}/{diastolic if diastolic is not None else '?'} mmHg"
    indicators = []

    if systolic is not None:
        if systolic > SYSTOLIC_HIGH:
            indicators.append(
                EmergencyIndicator(
                    type=IndicatorType.BLOOD_PRESSURE,
                    value=reading,
                    threshold=f"Systolic >{SYSTOLIC_HIGH} mmHg",
                    message="Dangerously high blood pressure (hypertensive crisis)",
                )
            )
        elif systolic < SYSTOLIC_LOW:
            indicators.append(
                EmergencyIndicator(
                    type=IndicatorType.BLOOD_PRESSURE,
                    value=reading,
                    threshold=f"Systolic <{SYSTOLIC_LOW} mmHg",
                    message="Dangerously low blood pressure (hypotension)",
                )
            )

    if diastolic is not None:
        if diastolic > DIASTOLIC_HIGH:
            indicators.append(
                EmergencyIndicator(
                    type=IndicatorType.BLOOD_PRESSURE,
                    value=reading,
                    threshold=f"Diastolic >{DIASTOLIC_HIGH} mmHg",
                    message="Dangerously high diastolic pressure",
                )
            )
        elif diastolic < DIASTOLIC_LOW:
            indicators.append(
                EmergencyIndicator(
                    type=IndicatorType.BLOOD_PRESSURE,
                    value=reading,
                    threshold=f"Diastolic <{DIASTOLIC_LOW} mmHg",
                    message="Dangerously low diastolic pressure",
                )
            )

    return indicators


def _check_symptoms(vitals: VitalsData) -> List[EmergencyIndicator]:
    return [
        EmergencyIndicator(
            type=IndicatorType.SYMPTOMS,
            value=category,
            threshold="Critical symptom keyword",
            message=f"Critical symptom detected: {matched}",
        )
        for category, matched in detect_critical_symptoms(vitals.current_status)
    ]


def _recommendations_for(indicators: List[EmergencyIndicator]) -> List[str]:
    recommendations = ["Seek immediate medical attention"]

    for indicator in indicators:
        if indicator.type == IndicatorType.TEMPERATURE:
            if "high" in indicator.message:
                recommendations += [
                    "Call emergency services or go to the nearest emergency room",
                    "Stay hydrated and in a cool environment",
                ]
            else:
                recommendations += [
                    "Call emergency services immediately",
                    "Keep warm with blankets while waiting for help",
                ]
        elif indicator.type == IndicatorType.BLOOD_PRESSURE:
            if "high" in indicator.message:
                recommendations += [
                    "Call emergency services - this may be a hypertensive crisis",
                    "Sit down and remain calm while waiting for help",
                ]
            else:
                recommendations += [
                    "Call emergency services - severe hypotension requires immediate care",
                    "Lie down with legs elevated if possible",
                ]
        else:
            recommendations += get_category_recommendations(indicator.value)

    # dict.fromkeys keeps first-seen order
    return list(dict.fromkeys(recommendations))


def detect_emergency(vitals: VitalsData) -> EmergencyResult:
    """Collect every emergency indicator in the vitals and status text."""
    indicators = (
        _check_temperature(vitals) + _check_blood_pressure(vitals) + _check_symptoms(vitals)
    )
    return EmergencyResult(
        is_emergency=bool(indicators),
        indicators=indicators,
        recommendations=_recommendations_for(indicators) if indicators else [],
    )


def evaluate_complexity(vitals: VitalsData) -> ComplexityResult:
    """Score how much agent assistance the case needs."""
    factors = []
    score = 0
    forced = False

    text = vitals.current_status or ""
    text_lower = text.lower()

    if len(text) > 200:
        factors.append("Detailed symptom description suggests complex case")
        score += 2
    elif len(text) > 100:
        factors.append("Moderate symptom description length")
        score += 1

    keyword_count = sum(1 for keyword in SYMPTOM_KEYWORDS if keyword in text_lower)
    if keyword_count >= 3:
        factors.append(f"Multiple symptoms reported ({keyword_count} symptom keywords)")
        score += 3
        forced = True
    elif keyword_count == 2:
        factors.append(f"Several symptoms mentioned ({keyword_count} symptom keywords)")
        score += 2
        forced = True

    if sum(1 for conj in CONJUNCTIONS if conj in text_lower) >= 2:
        factors.append("Multiple interconnected symptoms")
        score += 1

    if any(keyword in text_lower for keyword in CHRONIC_KEYWORDS):
        factors.append("Chronic or ongoing condition mentioned")
        score += 2
        forced = True

    if any(keyword in text_lower for keyword in MEDICATION_KEYWORDS):
        factors.append("Current medication use mentioned")
        score += 1

    celsius = to_celsius(vitals.temperature)
    if celsius is not None:
        if 38.5 < celsius <= TEMP_HIGH_C:
            factors.append(f"Elevated temperature ({celsius:.1f}°C) approaching concerning levels")
            score += 2
            forced = True
        elif 37.5 < celsius <= 38.5:
            factors.append(f"Mild fever detected ({celsius:.1f}°C)")
            score += 1
            forced = True
        elif TEMP_LOW_C <= celsius < 36.0:
            factors.append(f"Low temperature ({celsius:.1f}°C) approaching concerning levels")
            score += 2
            forced = True

    systolic = vitals.blood_pressure.systolic
    if systolic is not None:
        if 140 < systolic <= SYSTOLIC_HIGH:
            factors.append(f"Elevated systolic blood pressure ({systolic} mmHg)")
            score += 2
            forced = True
        elif SYSTOLIC_LOW <= systolic < 100:
            factors.append(f"Low systolic blood pressure ({systolic} mmHg)")
            score += 2
            forced = True

    diastolic = vitals.blood_pressure.diastolic
    if diastolic is not None:
        if 90 < diastolic <= DIASTOLIC_HIGH:
            factors.append(f"Elevated diastolic blood pressure ({diastolic} mmHg)")
            score += 2
            forced = True
        elif DIASTOLIC_LOW <= diastolic < 70:
            factors.append(f"Low diastolic blood pressure ({diastolic} mmHg)")
            score += 2
            forced = True

    if vitals.patient_age is not None:
        if vitals.patient_age < 5:
            factors.append("Young child - requires careful assessment")
            score += 1
        elif vitals.patient_age > 65:
            factors.append("Elderly patient - may require additional consideration")
            score += 1

    return ComplexityResult(
        score=score,
        factors=factors,
        needs_agent_assistance=forced or score >= AGENT_ASSIST_SCORE,
    )


def _simple_factors(vitals: VitalsData) -> List[str]:
    factors = []

    celsius = to_celsius(vitals.temperature)
    if celsius is not None and 36.0 <= celsius <= 37.5:
        factors.append("Normal temperature")

    systolic = vitals.blood_pressure.systolic
    diastolic = vitals.blood_pressure.diastolic
    if systolic is not None and diastolic is not None:
        if 100 <= systolic <= 140 and 70 <= diastolic <= 90:
            factors.append("Normal blood pressure")

    text = vitals.current_status or ""
    if 0 < len(text) <= 100:
        factors.append("Clear, concise symptom description")

    if not factors:
        factors.append("Straightforward presentation based on available data")
    return factors


def evaluate(vitals: VitalsData) -> TriageResult:
    """
    Classify vitals into emergency / agent-assisted / direct-to-diagnosis.

    Args:
        vitals: Collected vitals (any reading may be None)

    Returns:
        TriageResult with decision, confidence, ordered factors and, for
        emergencies, per-indicator recommendations
    """
    missing = missing_vitals(vitals)
    missing_note = [f"Note: {', '.join(missing)} not collected"] if missing else []

    emergency = detect_emergency(vitals)
    if emergency.is_emergency:
        messages = [indicator.message for indicator in emergency.indicators]
        logger.warning(f"🚨 Emergency vitals detected: {messages}")
        return TriageResult(
            decision=TriageDecision.EMERGENCY,
            reason=f"Emergency condition detected: {', '.join(messages)}",
            confidence=CONFIDENCE[TriageDecision.EMERGENCY],
            factors=messages + missing_note,
            recommendations=emergency.recommendations,
        )

    complexity = evaluate_complexity(vitals)
    if complexity.needs_agent_assistance:
        return TriageResult(
            decision=TriageDecision.AGENT_ASSISTED,
            reason=(
                "Case complexity requires agent-assisted intake. "
                f"{complexity.factors[0]}"
            ),
            confidence=CONFIDENCE[TriageDecision.AGENT_ASSISTED],
            factors=complexity.factors + missing_note,
        )

    return TriageResult(
        decision=TriageDecision.DIRECT_TO_DIAGNOSIS,
        reason="Straightforward case - proceeding directly to diagnosis based on available data",
        confidence=CONFIDENCE[TriageDecision.DIRECT_TO_DIAGNOSIS],
        factors=_simple_factors(vitals) + missing_note,
    )


def apply_triage(vitals: VitalsData, result: TriageResult) -> VitalsData:
    """Return a copy of ``vitals`` carrying the triage decision."""
    return vitals.model_copy(
        update={
            "triage_decision": result.decision,
            "triage_reason": result.reason,
            "triage_factors": list(result.factors),
        }
    )
