# backend/nivarna/domain.py
"""
Value shapes shared by the risk engine and the routers.

Visits are a tagged union on ``category``: a pregnant, child or adult visit
each carry their own fields, and pydantic picks the variant from the tag.
"""
from datetime import datetime
from enum import Enum as PyEnum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# -------------------------
# Enumerations
# -------------------------
class Category(str, PyEnum):
    pregnant = "pregnant"
    child = "child"
    adult = "adult"


class RiskLevel(str, PyEnum):
    normal = "normal"
    monitor = "monitor"
    high = "high"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]


_RISK_RANK = {RiskLevel.normal: 0, RiskLevel.monitor: 1, RiskLevel.high: 2}


class Gender(str, PyEnum):
    male = "male"
    female = "female"
    other = "other"


class NutritionStatus(str, PyEnum):
    normal = "normal"
    moderate = "moderate"
    severe = "severe"


class SugarType(str, PyEnum):
    fasting = "fasting"
    random = "random"


PregnantSymptom = Literal["swelling", "dizziness", "bleeding", "headache", "vomiting", "other"]
ChildSymptom = Literal["fever", "diarrhea", "cough", "rash", "vomiting", "other"]
AdultSymptom = Literal["chest_pain", "breathlessness", "fatigue", "dizziness", "other"]


# -------------------------
# Vitals
# -------------------------
class BloodPressure(BaseModel):
    systolic: Optional[float] = Field(None, ge=40, le=300)
    diastolic: Optional[float] = Field(None, ge=20, le=200)

    @property
    def is_elevated(self) -> bool:
        """At or above 140/90 on either reading."""
        return (self.systolic is not None and self.systolic >= 140) or (
            self.diastolic is not None and self.diastolic >= 90
        )

    @property
    def is_complete(self) -> bool:
        return bool(self.systolic) and bool(self.diastolic)


class SugarReading(BaseModel):
    type: Optional[SugarType] = None
    value: Optional[float] = Field(None, ge=0, le=1000)

    @property
    def in_diabetic_range(self) -> bool:
        if self.value is None:
            return False
        if self.type == SugarType.fasting:
            return self.value >= 126
        if self.type == SugarType.random:
            return self.value >= 200
        return False


class Supplements(BaseModel):
    iron: Optional[bool] = None
    calcium: Optional[bool] = None


# -------------------------
# Visit variants
# -------------------------
class PregnantVisit(BaseModel):
    category: Literal["pregnant"] = "pregnant"
    pregnancy_month: Optional[int] = Field(None, ge=1, le=10)
    anc_visit_count: Optional[int] = Field(None, ge=0)
    bp: Optional[BloodPressure] = None
    weight: Optional[float] = Field(None, gt=0)
    hb: Optional[float] = Field(None, ge=0, le=25)
    tt_injection: Optional[bool] = None
    supplements: Optional[Supplements] = None
    symptoms: List[PregnantSymptom] = []


class ChildVisit(BaseModel):
    category: Literal["child"] = "child"
    age_in_months: Optional[int] = Field(None, ge=0, le=216)
    weight: Optional[float] = Field(None, gt=0)
    height: Optional[float] = Field(None, gt=0)
    vaccinations: List[str] = []
    nutrition_status: Optional[NutritionStatus] = None
    symptoms: List[ChildSymptom] = []


class AdultVisit(BaseModel):
    category: Literal["adult"] = "adult"
    bp: Optional[BloodPressure] = None
    sugar: Optional[SugarReading] = None
    chronic_condition: Optional[str] = None
    medication_adherence: Optional[bool] = None
    symptoms: List[AdultSymptom] = []


VisitDetails = Annotated[
    Union[PregnantVisit, ChildVisit, AdultVisit],
    Field(discriminator="category"),
]


class Visit(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    patient_id: Optional[int] = None
    visit_date: Optional[datetime] = None
    notes: Optional[str] = None
    details: Optional[VisitDetails] = None

    @property
    def category(self) -> Optional[str]:
        return self.details.category if self.details is not None else None


# -------------------------
# Patient
# -------------------------
class Patient(BaseModel):
    """Read-only view of a patient as the engine sees it."""

    id: Optional[int] = None
    category: Optional[Category] = None
    age: Optional[int] = None
    gender: Optional[Gender] = None
    chronic_conditions: List[str] = []


class LatestVitals(BaseModel):
    bp: Optional[BloodPressure] = None
    sugar_level: Optional[SugarReading] = None


class PatientStateUpdate(BaseModel):
    """Mutations the caller must apply to the patient alongside the assessment."""

    current_risk_level: RiskLevel
    last_risk_update: datetime
    latest_bp: Optional[BloodPressure] = None
    latest_sugar: Optional[SugarReading] = None

    def apply_to_vitals(self, latest_vitals: Optional[dict]) -> dict:
        """Last write wins; fields not carried by this visit are left alone."""
        vitals = dict(latest_vitals or {})
        if self.latest_bp is not None:
            vitals["bp"] = self.latest_bp.model_dump(mode="json")
        if self.latest_sugar is not None:
            vitals["sugar_level"] = self.latest_sugar.model_dump(mode="json")
        return vitals


# -------------------------
# Verdict
# -------------------------
class TrendAnalysis(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    metric: Literal["bp", "sugar", "weight", "hb", "vaccination"]
    trend: Literal["increasing", "decreasing", "stable", "irregular"]
    description: Optional[str] = None


class RiskVerdict(BaseModel):
    # camelCase keys are accepted so model output in either style validates
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    risk_level: RiskLevel
    reasons: List[str] = Field(..., min_length=1)
    recommendations: List[str]
    requires_doctor_review: bool = False
    trend_analysis: Optional[TrendAnalysis] = None
