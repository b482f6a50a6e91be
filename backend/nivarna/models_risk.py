# backend/nivarna/models_risk.py
from sqlalchemy import Column, Integer, String, Boolean, Date, DateTime, Enum, ForeignKey, JSON, Index, Text

from .db import Base, utcnow
from .domain import RiskLevel


class RiskAssessment(Base):
    __tablename__ = "risk_assessments"
    id = Column(Integer, primary_key=True, index=True)

    # Who / which visit (exactly one assessment per visit)
    patient_id = Column(Integer, ForeignKey("patients.id", ondelete="CASCADE"), nullable=False, index=True)
    visit_id = Column(Integer, ForeignKey("visits.id", ondelete="CASCADE"), nullable=False, unique=True)

    # Verdict
    risk_level = Column(Enum(RiskLevel, name="risk_level_enum"), nullable=False, index=True)
    reasons = Column(JSON, nullable=False, default=list)
    recommendations = Column(JSON, nullable=False, default=list)
    trend_analysis = Column(JSON, nullable=True)  # {"metric", "trend", "description"}
    requires_doctor_review = Column(Boolean, default=False, nullable=False, index=True)
    reviewed_at = Column(DateTime, nullable=True)  # set when a doctor clears the review flag

    # "rule-based" or the model name that produced the verdict
    ai_model = Column(String(64), nullable=False, default="rule-based")

    # Written only by the alerting subsystem
    alert_sent = Column(Boolean, default=False, nullable=False)
    alert_sent_at = Column(DateTime, nullable=True)
    alert_method = Column(String(16), nullable=True)  # "sms" | "whatsapp" | "both"

    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    __table_args__ = (
        Index("ix_risk_patient_created", "patient_id", "created_at"),
        Index("ix_risk_level_review", "risk_level", "requires_doctor_review"),
    )


class DoctorNote(Base):
    __tablename__ = "doctor_notes"
    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id", ondelete="CASCADE"), nullable=False, index=True)
    doctor_name = Column(String(255), nullable=True)

    notes = Column(Text, nullable=False)
    advice = Column(Text, nullable=True)
    escalation = Column(Boolean, default=False, nullable=False, index=True)
    escalation_details = Column(Text, nullable=True)
    follow_up_required = Column(Boolean, default=False, nullable=False)
    follow_up_date = Column(Date, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_doctor_notes_patient_created", "patient_id", "created_at"),
    )
