# backend/nivarna/visits.py
import logging
from datetime import datetime, timezone
from functools import partial
from typing import Any, Dict, List, Optional

import anyio
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from . import domain
from .db import get_db, utcnow
from .domain import Category, RiskLevel, VisitDetails
from .models import Patient, Visit
from .models_risk import RiskAssessment
from .patients import get_patient_or_404, to_domain_patient
from .risk_engine import RiskInputError, VisitClassifier, assess_visit
from .risk_rules import HISTORY_LIMIT

router = APIRouter(prefix="/visits", tags=["visits"])
log = logging.getLogger("uvicorn.error")


# ----------------- Schemas -----------------

class VisitIn(BaseModel):
    patient_id: int = Field(..., gt=0)
    details: VisitDetails
    notes: Optional[str] = Field(None, max_length=5000)
    visit_date: Optional[datetime] = None
    recorded_by: Optional[str] = None
    local_id: Optional[str] = Field(None, max_length=64)
    device_timestamp: Optional[datetime] = None


class AssessmentOut(BaseModel):
    risk_level: RiskLevel
    reasons: List[str]
    recommendations: List[str] = []
    requires_doctor_review: bool = False
    trend_analysis: Optional[dict] = None


class VisitRef(BaseModel):
    id: int
    visit_code: Optional[str] = None
    visit_date: datetime


class VisitCreatedOut(BaseModel):
    visit: VisitRef
    risk_assessment: AssessmentOut


class VisitRiskOut(BaseModel):
    risk_level: RiskLevel
    reasons: List[str]


class VisitHistoryItem(BaseModel):
    id: int
    visit_code: Optional[str] = None
    visit_date: datetime
    category: str
    details: Dict[str, Any]
    notes: Optional[str] = None
    recorded_by: Optional[str] = None
    risk_assessment: Optional[VisitRiskOut] = None


class BatchSyncIn(BaseModel):
    visits: List[Dict[str, Any]]


class ItemResult(BaseModel):
    success: bool
    visit_id: Optional[int] = None
    visit_code: Optional[str] = None
    local_id: Optional[str] = None
    risk_level: Optional[RiskLevel] = None
    error: Optional[str] = None


# ----------------- Helpers -----------------

def get_ai_classifier(request: Request) -> Optional[VisitClassifier]:
    """The AI classifier wired at startup, or None for rules only."""
    return getattr(request.app.state, "ai_classifier", None)


def _naive_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def to_domain_visit(row: Visit) -> domain.Visit:
    return domain.Visit(
        id=row.id,
        patient_id=row.patient_id,
        visit_date=row.visit_date,
        notes=row.notes,
        details=row.details,
    )


def _before(visit_date: datetime, visit_id: int):
    """Visits ordered strictly before (visit_date, visit_id)."""
    return or_(Visit.visit_date < visit_date, and_(Visit.visit_date == visit_date, Visit.id < visit_id))


def _after(visit_date: datetime, visit_id: int):
    return or_(Visit.visit_date > visit_date, and_(Visit.visit_date == visit_date, Visit.id > visit_id))


def previous_visits_lookup(db: Session, patient_id: int, visit_id: int, until: Optional[datetime] = None):
    """Other visits of the patient, most recent first, optionally only those ordered before ``until``."""
    def fetch(limit: int) -> List[domain.Visit]:
        q = db.query(Visit).filter(Visit.patient_id == patient_id, Visit.id != visit_id)
        if until is not None:
            q = q.filter(_before(until, visit_id))
        rows = q.order_by(Visit.visit_date.desc(), Visit.id.desc()).limit(limit).all()
        return [to_domain_visit(r) for r in rows]
    return fetch


def _new_visit(payload: VisitIn) -> Visit:
    return Visit(
        patient_id=payload.patient_id,
        recorded_by=payload.recorded_by,
        visit_date=_naive_utc(payload.visit_date) or utcnow(),
        category=Category(payload.details.category),
        details=payload.details.model_dump(mode="json"),
        notes=payload.notes.strip() if payload.notes else None,
        local_id=payload.local_id,
        sync_status="synced",
        device_timestamp=_naive_utc(payload.device_timestamp),
    )


def is_newest_assessed(db: Session, visit: Visit) -> bool:
    """True when no later visit of the patient already carries an assessment."""
    newer = (
        db.query(Visit.id)
        .join(RiskAssessment, RiskAssessment.visit_id == Visit.id)
        .filter(Visit.patient_id == visit.patient_id, _after(visit.visit_date, visit.id))
        .first()
    )
    return newer is None


def assess_and_store(
    db: Session,
    patient: Patient,
    visit: Visit,
    classifier: Optional[VisitClassifier],
    until: Optional[datetime] = None,
) -> RiskAssessment:
    """
    Run the engine for a flushed visit and add its assessment. The patient's
    risk and vitals only move when this is the patient's newest assessed
    visit, so a backdated visit never overrides a later verdict. The caller
    commits.

    Runs in the endpoint's worker thread. History is read here and only the
    engine coroutine is handed to the event loop.
    """
    previous = previous_visits_lookup(db, patient.id, visit.id, until)(HISTORY_LIMIT)
    outcome = anyio.from_thread.run(
        partial(
            assess_visit,
            to_domain_patient(patient),
            to_domain_visit(visit),
            lambda limit: previous[:limit],
            ai_classifier=classifier,
            now=utcnow(),
        )
    )
    verdict = outcome.verdict
    assessment = RiskAssessment(
        patient_id=patient.id,
        visit_id=visit.id,
        risk_level=verdict.risk_level,
        reasons=list(verdict.reasons),
        recommendations=list(verdict.recommendations),
        trend_analysis=verdict.trend_analysis.model_dump(mode="json") if verdict.trend_analysis else None,
        requires_doctor_review=verdict.requires_doctor_review,
        ai_model=outcome.ai_model,
    )
    db.add(assessment)

    if not is_newest_assessed(db, visit):
        log.info(f"[VISITS] visit {visit.id} predates an assessed visit; patient {patient.id} state kept")
        return assessment

    update = outcome.patient_update
    patient.latest_vitals = update.apply_to_vitals(patient.latest_vitals)
    patient.current_risk_level = update.current_risk_level
    patient.last_risk_update = update.last_risk_update
    return assessment


def _assessment_out(a: RiskAssessment) -> AssessmentOut:
    return AssessmentOut(
        risk_level=a.risk_level,
        reasons=a.reasons or [],
        recommendations=a.recommendations or [],
        requires_doctor_review=bool(a.requires_doctor_review),
        trend_analysis=a.trend_analysis,
    )


# ----------------- Endpoints -----------------

@router.post("", response_model=VisitCreatedOut, status_code=201)
def add_visit(
    payload: VisitIn,
    db: Session = Depends(get_db),
    classifier: Optional[VisitClassifier] = Depends(get_ai_classifier),
):
    """
    Records a visit and its risk assessment. The visit, the assessment and
    the patient's risk/vitals update are committed together.
    """
    patient = get_patient_or_404(db, payload.patient_id)

    visit = _new_visit(payload)
    db.add(visit)
    db.flush()

    try:
        assessment = assess_and_store(db, patient, visit, classifier)
    except RiskInputError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        db.rollback()
        raise

    db.commit()
    db.refresh(visit)
    db.refresh(assessment)

    return VisitCreatedOut(
        visit=VisitRef(id=visit.id, visit_code=visit.visit_code, visit_date=visit.visit_date),
        risk_assessment=_assessment_out(assessment),
    )


@router.get("/patient/{patient_id}", response_model=List[VisitHistoryItem])
def visit_history(patient_id: int, db: Session = Depends(get_db)):
    get_patient_or_404(db, patient_id)

    rows = (
        db.query(Visit, RiskAssessment)
        .outerjoin(RiskAssessment, RiskAssessment.visit_id == Visit.id)
        .filter(Visit.patient_id == patient_id)
        .order_by(Visit.visit_date.desc(), Visit.id.desc())
        .all()
    )
    return [
        VisitHistoryItem(
            id=v.id,
            visit_code=v.visit_code,
            visit_date=v.visit_date,
            category=v.category.value,
            details=v.details,
            notes=v.notes,
            recorded_by=v.recorded_by,
            risk_assessment=VisitRiskOut(risk_level=a.risk_level, reasons=a.reasons or []) if a else None,
        )
        for v, a in rows
    ]


@router.post("/sync-batch", response_model=List[ItemResult])
def sync_batch_visits(body: BatchSyncIn, db: Session = Depends(get_db)):
    """
    Stores visits collected offline. They are not assessed here; run
    /visits/reconcile afterwards.
    """
    results: List[ItemResult] = []
    for raw in body.visits:
        local_id = raw.get("local_id") if isinstance(raw, dict) else None
        try:
            payload = VisitIn.model_validate(raw)
        except ValidationError as e:
            results.append(ItemResult(success=False, local_id=local_id, error=f"Invalid visit: {e.error_count()} error(s)"))
            continue

        patient = db.query(Patient).filter(Patient.id == payload.patient_id).first()
        if not patient:
            results.append(ItemResult(success=False, local_id=local_id, error="Patient not found"))
            continue
        if payload.details.category != patient.category.value:
            results.append(ItemResult(success=False, local_id=local_id, error="Visit category does not match patient"))
            continue
        if payload.local_id and db.query(Visit.id).filter(Visit.local_id == payload.local_id).first():
            results.append(ItemResult(success=False, local_id=local_id, error="Visit already synced"))
            continue

        visit = _new_visit(payload)
        db.add(visit)
        db.commit()
        db.refresh(visit)
        results.append(ItemResult(success=True, visit_id=visit.id, visit_code=visit.visit_code, local_id=local_id))

    ok = sum(1 for r in results if r.success)
    log.info(f"[VISITS] batch sync stored {ok}/{len(results)} visits")
    return results


@router.post("/reconcile", response_model=List[ItemResult])
def reconcile_visits(
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
    classifier: Optional[VisitClassifier] = Depends(get_ai_classifier),
):
    """
    Assesses visits that have no risk assessment yet (batch-synced visits,
    or requests aborted before the verdict), oldest first.
    """
    pending = (
        db.query(Visit)
        .outerjoin(RiskAssessment, RiskAssessment.visit_id == Visit.id)
        .filter(RiskAssessment.id.is_(None))
        .order_by(Visit.visit_date.asc(), Visit.id.asc())
        .limit(limit)
        .all()
    )

    results: List[ItemResult] = []
    for visit in pending:
        patient = db.query(Patient).filter(Patient.id == visit.patient_id).first()
        if patient is None:
            results.append(ItemResult(success=False, visit_id=visit.id, local_id=visit.local_id, error="Patient not found"))
            continue
        try:
            # history is what was known at the time of this visit
            assessment = assess_and_store(db, patient, visit, classifier, until=visit.visit_date)
            db.commit()
        except RiskInputError as e:
            db.rollback()
            results.append(ItemResult(success=False, visit_id=visit.id, local_id=visit.local_id, error=str(e)))
            continue
        results.append(
            ItemResult(
                success=True,
                visit_id=visit.id,
                visit_code=visit.visit_code,
                local_id=visit.local_id,
                risk_level=assessment.risk_level,
            )
        )

    log.info(f"[VISITS] reconciled {sum(1 for r in results if r.success)}/{len(results)} pending visits")
    return results
