# backend/nivarna/risk_rules.py
"""
Deterministic visit risk rules.

``classify`` is a pure function of the patient, the current visit and at most
three previous visits. Each guard can only raise the level; soft signals
(low hemoglobin, fever with diarrhea, elevated BP without history, missed
medication) are capped at ``monitor``.
"""
from typing import List, Sequence

from .domain import (
    AdultVisit,
    Category,
    ChildVisit,
    Patient,
    PregnantVisit,
    RiskLevel,
    RiskVerdict,
    Visit,
)

HISTORY_LIMIT = 3
CONSISTENT_BP_VISITS = 2  # elevated previous readings needed to call BP "consistent"

NO_ANOMALY_REASON = "All vital signs within normal range"
HIGH_RISK_RECOMMENDATIONS = ["Visit PHC immediately", "Continue monitoring symptoms"]
ROUTINE_RECOMMENDATIONS = ["Continue regular checkups", "Maintain healthy lifestyle"]


class RiskEngineError(Exception):
    """Base class for errors raised by the risk engine."""


class UnknownCategoryError(RiskEngineError):
    """A category (or visit shape) the rules have no branch for."""


class _Assessment:
    """Running state while the guards are applied."""

    def __init__(self):
        self.level = RiskLevel.normal
        self.reasons: List[str] = []
        self.review = False

    def escalate(self, level: RiskLevel, reason: str, review: bool = False):
        if level.rank > self.level.rank:
            self.level = level
        self.reasons.append(reason)
        if review:
            self.review = True


# -------------------------------------------------
#             CATEGORY RULES
# -------------------------------------------------
def _pregnant_rules(a: _Assessment, visit: PregnantVisit, previous: Sequence[Visit]):
    if visit.bp and visit.bp.is_elevated:
        a.escalate(RiskLevel.high, "Blood pressure elevated above normal range (140/90)", review=True)

    if "bleeding" in visit.symptoms:
        a.escalate(RiskLevel.high, "Bleeding symptoms detected", review=True)

    if visit.hb and visit.hb < 11:
        a.escalate(RiskLevel.monitor, "Low hemoglobin level detected")


def _child_rules(a: _Assessment, visit: ChildVisit, previous: Sequence[Visit]):
    if visit.nutrition_status == "severe":
        a.escalate(RiskLevel.high, "Severe malnutrition detected", review=True)

    if "fever" in visit.symptoms and "diarrhea" in visit.symptoms:
        a.escalate(RiskLevel.monitor, "Multiple symptoms present (fever and diarrhea)")


def _previous_bp_elevated(v: Visit) -> bool:
    details = v.details
    return isinstance(details, AdultVisit) and details.bp is not None and details.bp.is_elevated


def _adult_rules(a: _Assessment, visit: AdultVisit, previous: Sequence[Visit]):
    if visit.bp and visit.bp.is_elevated:
        high_bp_count = sum(1 for v in previous if _previous_bp_elevated(v))
        if high_bp_count >= CONSISTENT_BP_VISITS:
            a.escalate(
                RiskLevel.high,
                f"Blood pressure consistently elevated over {high_bp_count + 1} visits",
                review=True,
            )
        else:
            a.escalate(RiskLevel.monitor, "Blood pressure elevated")

    if visit.sugar and visit.sugar.in_diabetic_range:
        a.escalate(RiskLevel.high, "Blood sugar levels in diabetic range", review=True)

    if visit.medication_adherence is False:
        a.escalate(RiskLevel.monitor, "Medication non-adherence reported")


_RULES = {
    Category.pregnant: (PregnantVisit, _pregnant_rules),
    Category.child: (ChildVisit, _child_rules),
    Category.adult: (AdultVisit, _adult_rules),
}


# -------------------------------------------------
#             PUBLIC API
# -------------------------------------------------
def recommendations_for(level: RiskLevel) -> List[str]:
    if level == RiskLevel.high:
        return list(HIGH_RISK_RECOMMENDATIONS)
    return list(ROUTINE_RECOMMENDATIONS)


def classify(patient: Patient, current_visit: Visit, previous_visits: Sequence[Visit] = ()) -> RiskVerdict:
    """
    Score one visit for one patient.

    Raises UnknownCategoryError when the patient's category has no rule branch
    or the visit carries another category's shape.
    """
    try:
        visit_type, rules = _RULES[Category(patient.category)]
    except (KeyError, ValueError):
        raise UnknownCategoryError(f"No risk rules for category {patient.category!r}")

    details = current_visit.details
    if not isinstance(details, visit_type):
        raise UnknownCategoryError(
            f"Visit shape {type(details).__name__} does not match category {patient.category!r}"
        )

    a = _Assessment()
    rules(a, details, list(previous_visits)[:HISTORY_LIMIT])

    reasons = a.reasons or [NO_ANOMALY_REASON]
    return RiskVerdict(
        risk_level=a.level,
        reasons=reasons,
        recommendations=recommendations_for(a.level),
        requires_doctor_review=a.review,
    )
