from sqlalchemy import (
    Column,
    Integer,
    String,
    Enum,
    Boolean,
    DateTime,
    ForeignKey,
    Text,
    JSON,
    Index,
    event,
)
from sqlalchemy.orm.attributes import set_committed_value

from .db import Base, utcnow
from .domain import Category, Gender, RiskLevel


# -------------------------
# Patients
# -------------------------
class Patient(Base):
    __tablename__ = "patients"

    id = Column(Integer, primary_key=True, index=True)

    # Human-facing identifiers, filled on insert (PAT000001 / HC000001)
    patient_code = Column(String(16), unique=True, index=True, nullable=True)
    health_card_id = Column(String(16), unique=True, nullable=True)

    name = Column(String(255), nullable=False)
    age = Column(Integer, nullable=False)
    gender = Column(Enum(Gender, name="gender_enum"), nullable=False)
    phone_number = Column(String(32), nullable=True)
    village = Column(String(255), nullable=False, index=True)

    # Fixed at registration; selects the visit shape and scoring rules
    category = Column(Enum(Category, name="category_enum"), nullable=False, index=True)

    # {"lmp": date, "edd": date, "trimester": 1-3}
    pregnancy_details = Column(JSON, nullable=True)
    # {"age_in_months": int, "birth_weight": float}
    child_details = Column(JSON, nullable=True)
    chronic_conditions = Column(JSON, nullable=False, default=list)

    current_risk_level = Column(
        Enum(RiskLevel, name="risk_level_enum"),
        default=RiskLevel.normal,
        nullable=False,
        index=True,
    )
    last_risk_update = Column(DateTime, nullable=True)
    # {"bp": {...}, "sugar_level": {...}}; last write wins
    latest_vitals = Column(JSON, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_patients_category_risk", "category", "current_risk_level"),
        Index("ix_patients_village_category", "village", "category"),
    )


# -------------------------
# Visits (append-only)
# -------------------------
class Visit(Base):
    __tablename__ = "visits"

    id = Column(Integer, primary_key=True, index=True)
    visit_code = Column(String(16), unique=True, index=True, nullable=True)
    patient_id = Column(Integer, ForeignKey("patients.id", ondelete="CASCADE"), nullable=False, index=True)
    recorded_by = Column(String(255), nullable=True)

    visit_date = Column(DateTime, default=utcnow, nullable=False, index=True)
    category = Column(Enum(Category, name="category_enum"), nullable=False)
    # Category-specific fields, stored as the validated variant dump
    details = Column(JSON, nullable=False)
    notes = Column(Text, nullable=True)

    # Offline sync metadata
    local_id = Column(String(64), unique=True, nullable=True)
    sync_status = Column(String(16), default="synced", nullable=False)
    device_timestamp = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_visits_patient_date", "patient_id", "visit_date"),
    )


def _assign_code(connection, target, width: int, **prefixes) -> None:
    """Write prefix + zero-padded primary key into each code column of a fresh row."""
    table = target.__table__
    values = {col: f"{prefix}{str(target.id).zfill(width)}" for col, prefix in prefixes.items()}
    connection.execute(table.update().where(table.c.id == target.id).values(**values))
    for col, value in values.items():
        set_committed_value(target, col, value)


@event.listens_for(Patient, "after_insert")
def _assign_patient_codes(mapper, connection, target):
    if not target.patient_code:
        _assign_code(connection, target, 6, patient_code="PAT", health_card_id="HC")


@event.listens_for(Visit, "after_insert")
def _assign_visit_code(mapper, connection, target):
    if not target.visit_code:
        _assign_code(connection, target, 8, visit_code="VIS")
