# backend/nivarna/doctor.py
from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import case
from sqlalchemy.orm import Session

from .db import get_db, utcnow
from .domain import Category, RiskLevel
from .models import Patient
from .models_risk import DoctorNote, RiskAssessment
from .patients import get_patient_or_404, last_visit_date
from .risk import patient_assessments

router = APIRouter(prefix="/doctor", tags=["doctor"])


# ---------- Schemas ----------
class RiskPatientOut(BaseModel):
    id: int
    patient_code: Optional[str] = None
    name: str
    age: int
    category: Category
    village: str
    current_risk_level: RiskLevel
    last_risk_update: Optional[datetime] = None
    last_visit_date: Optional[datetime] = None
    latest_risk_reasons: List[str] = []


class ReviewItemOut(BaseModel):
    assessment_id: int
    patient_id: int
    patient_name: str
    visit_id: int
    risk_level: RiskLevel
    reasons: List[str] = []
    recommendations: List[str] = []
    created_at: datetime


class ReviewedOut(BaseModel):
    ok: bool
    patient_id: int
    cleared: int


class NoteIn(BaseModel):
    patient_id: int = Field(..., gt=0)
    notes: str = Field(..., min_length=3, max_length=5000)
    doctor_name: Optional[str] = Field(None, max_length=255)
    advice: Optional[str] = Field(None, max_length=5000)
    escalation: bool = False
    escalation_details: Optional[str] = Field(None, max_length=5000)
    follow_up_required: bool = False
    follow_up_date: Optional[date] = None


class NoteOut(BaseModel):
    id: int
    patient_id: int
    doctor_name: Optional[str] = None
    notes: str
    advice: Optional[str] = None
    escalation: bool
    escalation_details: Optional[str] = None
    follow_up_required: bool
    follow_up_date: Optional[date] = None
    created_at: datetime


def note_out(n: DoctorNote) -> NoteOut:
    return NoteOut(
        id=n.id,
        patient_id=n.patient_id,
        doctor_name=n.doctor_name,
        notes=n.notes,
        advice=n.advice,
        escalation=bool(n.escalation),
        escalation_details=n.escalation_details,
        follow_up_required=bool(n.follow_up_required),
        follow_up_date=n.follow_up_date,
        created_at=n.created_at,
    )


# ---------- Endpoints ----------)

@router.get("/patients", response_model=List[RiskPatientOut])
def patients_by_risk(
    risk: Optional[RiskLevel] = None,
    category: Optional[Category] = None,
    village: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """
    Active patients by current risk; monitor and high when no level is given.
    Highest risk first, then most recently updated.
    """
    q = db.query(Patient).filter(Patient.is_active.is_(True))
    if risk:
        q = q.filter(Patient.current_risk_level == risk)
    else:
        q = q.filter(Patient.current_risk_level.in_([RiskLevel.monitor, RiskLevel.high]))
    if category:
        q = q.filter(Patient.category == category)
    if village:
        q = q.filter(Patient.village.ilike(f"%{village.strip()}%"))

    risk_rank = case(
        (Patient.current_risk_level == RiskLevel.high, 2),
        (Patient.current_risk_level == RiskLevel.monitor, 1),
        else_=0,
    )
    patients = q.order_by(risk_rank.desc(), Patient.last_risk_update.desc()).all()

    out = []
    for p in patients:
        latest = patient_assessments(db, p.id).first()
        out.append(RiskPatientOut(
            id=p.id,
            patient_code=p.patient_code,
            name=p.name,
            age=p.age,
            category=p.category,
            village=p.village,
            current_risk_level=p.current_risk_level,
            last_risk_update=p.last_risk_update,
            last_visit_date=last_visit_date(db, p.id),
            latest_risk_reasons=(latest.reasons or []) if latest else [],
        ))
    return out


@router.get("/review-queue", response_model=List[ReviewItemOut])
def review_queue(limit: int = Query(50, ge=1, le=500), db: Session = Depends(get_db)):
    # Returns latest first
    rows = (
        db.query(RiskAssessment, Patient.name)
        .join(Patient, Patient.id == RiskAssessment.patient_id)
        .filter(RiskAssessment.requires_doctor_review.is_(True), Patient.is_active.is_(True))
        .order_by(RiskAssessment.created_at.desc(), RiskAssessment.id.desc())
        .limit(limit)
        .all()
    )
    return [
        ReviewItemOut(
            assessment_id=a.id,
            patient_id=a.patient_id,
            patient_name=name,
            visit_id=a.visit_id,
            risk_level=a.risk_level,
            reasons=a.reasons or [],
            recommendations=a.recommendations or [],
            created_at=a.created_at,
        )
        for a, name in rows
    ]


@router.put("/review/{patient_id}", response_model=ReviewedOut)
def mark_patient_reviewed(patient_id: int, db: Session = Depends(get_db)):
    """
    Clears the review flag on every pending assessment of the patient, which
    takes them out of the review queue. Levels are left as they are.
    """
    get_patient_or_404(db, patient_id)

    pending = (
        db.query(RiskAssessment)
        .filter(RiskAssessment.patient_id == patient_id, RiskAssessment.requires_doctor_review.is_(True))
        .all()
    )
    now = utcnow()
    for a in pending:
        a.requires_doctor_review = False
        a.reviewed_at = now
    db.commit()
    return ReviewedOut(ok=True, patient_id=patient_id, cleared=len(pending))


@router.post("/notes", response_model=NoteOut, status_code=201)
def add_doctor_note(body: NoteIn, db: Session = Depends(get_db)):
    get_patient_or_404(db, body.patient_id)

    note = DoctorNote(
        patient_id=body.patient_id,
        doctor_name=body.doctor_name.strip() if body.doctor_name else None,
        notes=body.notes.strip(),
        advice=body.advice.strip() if body.advice else None,
        escalation=body.escalation,
        escalation_details=body.escalation_details,
        follow_up_required=body.follow_up_required,
        follow_up_date=body.follow_up_date,
    )
    db.add(note)
    db.commit()
    db.refresh(note)
    return note_out(note)


@router.get("/notes/{patient_id}", response_model=List[NoteOut])
def list_doctor_notes(patient_id: int, db: Session = Depends(get_db)):
    # Returns latest first
    get_patient_or_404(db, patient_id)
    rows = (
        db.query(DoctorNote)
        .filter(DoctorNote.patient_id == patient_id)
        .order_by(DoctorNote.created_at.desc(), DoctorNote.id.desc())
        .all()
    )
    return [note_out(n) for n in rows]
