# backend/nivarna/patients.py
from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import or_
from sqlalchemy.orm import Session

from . import domain
from .db import get_db
from .domain import Category, Gender, RiskLevel
from .models import Patient, Visit

router = APIRouter(prefix="/patients", tags=["patients"])


# ---------- Schemas ----------
class PregnancyDetails(BaseModel):
    lmp: Optional[date] = None
    edd: Optional[date] = None
    trimester: Optional[int] = Field(None, ge=1, le=3)


class ChildDetails(BaseModel):
    age_in_months: Optional[int] = Field(None, ge=0, le=216)
    birth_weight: Optional[float] = Field(None, gt=0)


class PatientIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    age: int = Field(..., ge=0, le=120)
    gender: Gender
    village: str = Field(..., min_length=1, max_length=255)
    category: Category
    phone_number: Optional[str] = Field(None, max_length=32)
    chronic_conditions: List[str] = []
    pregnancy_details: Optional[PregnancyDetails] = None
    child_details: Optional[ChildDetails] = None


class PatientUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    age: Optional[int] = Field(None, ge=0, le=120)
    phone_number: Optional[str] = Field(None, max_length=32)
    village: Optional[str] = Field(None, min_length=1, max_length=255)
    chronic_conditions: Optional[List[str]] = None
    pregnancy_details: Optional[PregnancyDetails] = None
    child_details: Optional[ChildDetails] = None
    # accepted only when it repeats the stored category
    category: Optional[Category] = None


class PatientRow(BaseModel):
    id: int
    patient_code: Optional[str] = None
    name: str
    age: int
    gender: Gender
    category: Category
    village: str
    current_risk_level: RiskLevel
    last_visit_date: Optional[datetime] = None


class PatientOut(BaseModel):
    id: int
    patient_code: Optional[str] = None
    health_card_id: Optional[str] = None
    name: str
    age: int
    gender: Gender
    village: str
    category: Category
    phone_number: Optional[str] = None
    chronic_conditions: List[str] = []
    current_risk_level: RiskLevel
    last_risk_update: Optional[datetime] = None
    latest_vitals: Optional[dict] = None


# ---------- Helpers ----------
def get_patient_or_404(db: Session, patient_id: int) -> Patient:
    patient = db.query(Patient).filter(Patient.id == patient_id).first()
    if not patient:
        raise HTTPException(status_code=404, detail="Patient not found")
    return patient


def last_visit_date(db: Session, patient_id: int) -> Optional[datetime]:
    row = (
        db.query(Visit.visit_date)
        .filter(Visit.patient_id == patient_id)
        .order_by(Visit.visit_date.desc())
        .first()
    )
    return row[0] if row else None


def to_domain_patient(row: Patient) -> domain.Patient:
    return domain.Patient(
        id=row.id,
        category=row.category,
        age=row.age,
        gender=row.gender,
        chronic_conditions=list(row.chronic_conditions or []),
    )


def _check_details_category(category: Category, pregnancy_details, child_details) -> None:
    if pregnancy_details and category != Category.pregnant:
        raise HTTPException(status_code=400, detail="Pregnancy details only apply to pregnant patients")
    if child_details and category != Category.child:
        raise HTTPException(status_code=400, detail="Child details only apply to child patients")


def _clean_conditions(conditions: List[str]) -> List[str]:
    return [c.strip() for c in conditions if c.strip()]


def patient_out(row: Patient) -> PatientOut:
    return PatientOut(
        id=row.id,
        patient_code=row.patient_code,
        health_card_id=row.health_card_id,
        name=row.name,
        age=row.age,
        gender=row.gender,
        village=row.village,
        category=row.category,
        phone_number=row.phone_number,
        chronic_conditions=list(row.chronic_conditions or []),
        current_risk_level=row.current_risk_level,
        last_risk_update=row.last_risk_update,
        latest_vitals=row.latest_vitals,
    )


# ---------- Endpoints ----------
@router.post("", response_model=PatientOut, status_code=201)
def register_patient(payload: PatientIn, db: Session = Depends(get_db)):
    _check_details_category(payload.category, payload.pregnancy_details, payload.child_details)

    patient = Patient(
        name=payload.name.strip(),
        age=payload.age,
        gender=payload.gender,
        village=payload.village.strip(),
        category=payload.category,
        phone_number=payload.phone_number,
        chronic_conditions=_clean_conditions(payload.chronic_conditions),
        pregnancy_details=payload.pregnancy_details.model_dump(mode="json") if payload.pregnancy_details else None,
        child_details=payload.child_details.model_dump(mode="json") if payload.child_details else None,
        current_risk_level=RiskLevel.normal,
    )
    db.add(patient)
    db.commit()
    db.refresh(patient)
    return patient_out(patient)


@router.get("", response_model=List[PatientRow])
def list_patients(
    search: Optional[str] = None,
    category: Optional[Category] = None,
    risk: Optional[RiskLevel] = None,
    village: Optional[str] = None,
    limit: int = Query(200, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    """
    Active patients, newest registration first. ``search`` matches the name
    or the patient code, case-insensitively.
    """
    q = db.query(Patient).filter(Patient.is_active.is_(True))
    if search and search.strip():
        like = f"%{search.strip()}%"
        q = q.filter(or_(Patient.name.ilike(like), Patient.patient_code.ilike(like)))
    if category:
        q = q.filter(Patient.category == category)
    if risk:
        q = q.filter(Patient.current_risk_level == risk)
    if village and village.strip():
        q = q.filter(Patient.village.ilike(f"%{village.strip()}%"))

    rows = q.order_by(Patient.created_at.desc(), Patient.id.desc()).limit(limit).all()
    return [
        PatientRow(
            id=p.id,
            patient_code=p.patient_code,
            name=p.name,
            age=p.age,
            gender=p.gender,
            category=p.category,
            village=p.village,
            current_risk_level=p.current_risk_level,
            last_visit_date=last_visit_date(db, p.id),
        )
        for p in rows
    ]


@router.get("/{patient_id}", response_model=PatientOut)
def patient_detail(patient_id: int, db: Session = Depends(get_db)):
    return patient_out(get_patient_or_404(db, patient_id))


@router.put("/{patient_id}", response_model=PatientOut)
def update_patient(patient_id: int, payload: PatientUpdate, db: Session = Depends(get_db)):
    """
    Partial update. The category is fixed at registration: it selects the
    visit shape and the scoring rules, so a different value is rejected.
    """
    patient = get_patient_or_404(db, patient_id)

    if payload.category is not None and payload.category != patient.category:
        raise HTTPException(status_code=400, detail="Patient category cannot be changed")
    _check_details_category(patient.category, payload.pregnancy_details, payload.child_details)

    if payload.name is not None:
        patient.name = payload.name.strip()
    if payload.age is not None:
        patient.age = payload.age
    if payload.phone_number is not None:
        patient.phone_number = payload.phone_number
    if payload.village is not None:
        patient.village = payload.village.strip()
    if payload.chronic_conditions is not None:
        patient.chronic_conditions = _clean_conditions(payload.chronic_conditions)
    # details merge into what is stored
    if payload.pregnancy_details is not None:
        patient.pregnancy_details = {
            **(patient.pregnancy_details or {}),
            **payload.pregnancy_details.model_dump(mode="json", exclude_unset=True),
        }
    if payload.child_details is not None:
        patient.child_details = {
            **(patient.child_details or {}),
            **payload.child_details.model_dump(mode="json", exclude_unset=True),
        }

    db.commit()
    db.refresh(patient)
    return patient_out(patient)
