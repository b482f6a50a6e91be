# backend/nivarna/risk.py
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from .db import get_db
from .domain import RiskLevel
from .models import Visit
from .models_risk import RiskAssessment
from .patients import get_patient_or_404

router = APIRouter(prefix="/risk", tags=["risk"])

HISTORY_SIZE = 10


class RiskOut(BaseModel):
    has_assessment: bool
    id: Optional[int] = None
    visit_id: Optional[int] = None
    risk_level: Optional[RiskLevel] = None
    reasons: List[str] = []
    recommendations: List[str] = []
    requires_doctor_review: Optional[bool] = None
    trend_analysis: Optional[dict] = None
    alert_sent: Optional[bool] = None
    created_at: Optional[datetime] = None


def risk_out(rec: RiskAssessment) -> RiskOut:
    return RiskOut(
        has_assessment=True,
        id=rec.id,
        visit_id=rec.visit_id,
        risk_level=rec.risk_level,
        reasons=rec.reasons if isinstance(rec.reasons, list) else [],
        recommendations=rec.recommendations if isinstance(rec.recommendations, list) else [],
        requires_doctor_review=bool(rec.requires_doctor_review),
        trend_analysis=rec.trend_analysis,
        alert_sent=bool(rec.alert_sent),
        created_at=rec.created_at,
    )


def patient_assessments(db: Session, patient_id: int):
    """Assessments of a patient, newest visit first (not newest write)."""
    return (
        db.query(RiskAssessment)
        .join(Visit, Visit.id == RiskAssessment.visit_id)
        .filter(RiskAssessment.patient_id == patient_id)
        .order_by(Visit.visit_date.desc(), Visit.id.desc())
    )


@router.get("/patient/{patient_id}/latest", response_model=RiskOut)
def latest_patient_risk(patient_id: int, db: Session = Depends(get_db)) -> RiskOut:
    get_patient_or_404(db, patient_id)
    rec = patient_assessments(db, patient_id).first()
    if not rec:
        return RiskOut(has_assessment=False, reasons=[])
    return risk_out(rec)


@router.get("/patient/{patient_id}/history", response_model=List[RiskOut])
def patient_risk_history(patient_id: int, db: Session = Depends(get_db)):
    get_patient_or_404(db, patient_id)
    return [risk_out(r) for r in patient_assessments(db, patient_id).limit(HISTORY_SIZE).all()]
