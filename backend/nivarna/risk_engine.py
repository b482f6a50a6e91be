# backend/nivarna/risk_engine.py
"""
Visit risk orchestration: AI verdict first, rule engine as the fallback.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol, Sequence

from . import risk_rules
from .domain import AdultVisit, Patient, PatientStateUpdate, PregnantVisit, RiskVerdict, Visit
from .risk_rules import HISTORY_LIMIT, RiskEngineError

log = logging.getLogger("uvicorn.error")

RULE_BASED_MODEL = "rule-based"


class RiskInputError(RiskEngineError, ValueError):
    """Caller passed an incomplete patient or visit."""


class VisitClassifier(Protocol):
    model: str

    async def classify(
        self, patient: Patient, current_visit: Visit, previous_visits: Sequence[Visit]
    ) -> Optional[RiskVerdict]:
        ...


PreviousVisitsLookup = Callable[[int], Sequence[Visit]]


@dataclass(frozen=True)
class RiskOutcome:
    verdict: RiskVerdict
    patient_update: PatientStateUpdate
    source: str  # "ai" | "rules"
    ai_model: str


def check_inputs(patient: Optional[Patient], visit: Optional[Visit]) -> None:
    if patient is None:
        raise RiskInputError("patient is required")
    if patient.category is None:
        raise RiskInputError("patient.category is required")
    if visit is None:
        raise RiskInputError("visit is required")
    if visit.details is None:
        raise RiskInputError("visit.details is required")
    if visit.category != patient.category.value:
        raise RiskInputError(
            f"visit.category {visit.category!r} does not match patient category {patient.category.value!r}"
        )


def patient_update_for(visit: Visit, verdict: RiskVerdict, now: datetime) -> PatientStateUpdate:
    details = visit.details
    latest_bp = None
    latest_sugar = None
    if isinstance(details, (PregnantVisit, AdultVisit)) and details.bp and details.bp.is_complete:
        latest_bp = details.bp
    if isinstance(details, AdultVisit) and details.sugar and details.sugar.value:
        latest_sugar = details.sugar
    return PatientStateUpdate(
        current_risk_level=verdict.risk_level,
        last_risk_update=now,
        latest_bp=latest_bp,
        latest_sugar=latest_sugar,
    )


async def _try_ai(
    classifier: VisitClassifier, patient: Patient, visit: Visit, previous: Sequence[Visit]
) -> Optional[RiskVerdict]:
    try:
        verdict = await classifier.classify(patient, visit, previous)
    except Exception as e:
        log.warning(f"[RISK] AI classifier raised {type(e).__name__}: {e}")
        return None
    if verdict is not None and not isinstance(verdict, RiskVerdict):
        log.warning(f"[RISK] AI classifier returned {type(verdict).__name__}, expected RiskVerdict")
        return None
    return verdict


async def assess_visit(
    patient: Patient,
    visit: Visit,
    fetch_previous: PreviousVisitsLookup,
    ai_classifier: Optional[VisitClassifier] = None,
    now: Optional[datetime] = None,
) -> RiskOutcome:
    """
    Produce exactly one verdict for ``visit`` plus the patient mutations.

    ``fetch_previous(limit)`` returns the patient's other visits, most recent
    first. AI failures never surface; they fall through to the rules.
    """
    check_inputs(patient, visit)
    previous = list(fetch_previous(HISTORY_LIMIT))[:HISTORY_LIMIT]

    verdict = None
    if ai_classifier is not None:
        verdict = await _try_ai(ai_classifier, patient, visit, previous)
        if verdict is None:
            log.info(f"[RISK] visit={visit.id} AI verdict unavailable; falling back to rules")

    if verdict is not None:
        source, model_name = "ai", getattr(ai_classifier, "model", "ai")
    else:
        verdict = risk_rules.classify(patient, visit, previous)
        source, model_name = "rules", RULE_BASED_MODEL

    now = now or datetime.now(timezone.utc)
    log.info(
        f"[RISK] visit={visit.id} patient={patient.id} → {verdict.risk_level.value}; "
        f"review={verdict.requires_doctor_review} source={source}"
    )
    return RiskOutcome(
        verdict=verdict,
        patient_update=patient_update_for(visit, verdict, now),
        source=source,
        ai_model=model_name,
    )
