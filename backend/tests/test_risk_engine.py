"""
Orchestration: AI first, rule fallback, input checks and patient mutations.
"""
import asyncio
import json
from datetime import datetime

import pytest

from nivarna.domain import Patient, RiskLevel, RiskVerdict, Visit
from nivarna.risk_ai import AIRiskClassifier
from nivarna.risk_engine import RULE_BASED_MODEL, RiskInputError, assess_visit
from nivarna.risk_rules import classify

from helpers import (
    FakeAnthropic,
    StubClassifier,
    adult_history,
    adult_visit,
    make_patient,
    pregnant_visit,
)

NOW = datetime(2026, 3, 1, 10, 30)

AI_VERDICT = RiskVerdict(
    risk_level=RiskLevel.monitor,
    reasons=["Gradual rise in systolic pressure"],
    recommendations=["Recheck in two weeks"],
    requires_doctor_review=False,
    trend_analysis={"metric": "bp", "trend": "increasing", "description": "rising"},
)


def history(*visits):
    """Lookup returning the given visits and recording the requested limit."""
    calls = []

    def fetch(limit):
        calls.append(limit)
        return list(visits)
    fetch.calls = calls
    return fetch


def assess(patient, visit, fetch=None, classifier=None):
    return asyncio.run(assess_visit(patient, visit, fetch or history(), ai_classifier=classifier, now=NOW))


class TestFallback:

    def test_rules_when_no_classifier(self):
        outcome = assess(make_patient("pregnant"), pregnant_visit(bp={"systolic": 150, "diastolic": 95}))

        assert outcome.source == "rules"
        assert outcome.ai_model == RULE_BASED_MODEL
        assert outcome.verdict.risk_level == RiskLevel.high

    def test_ai_verdict_used_as_is(self):
        stub = StubClassifier(verdict=AI_VERDICT)
        outcome = assess(make_patient("adult"), adult_visit(bp={"systolic": 150, "diastolic": 95}), classifier=stub)

        assert outcome.source == "ai"
        assert outcome.ai_model == "stub-model"
        assert outcome.verdict == AI_VERDICT
        assert len(stub.calls) == 1

    @pytest.mark.parametrize("stub", [
        StubClassifier(exc=RuntimeError("quota exceeded")),
        StubClassifier(exc=asyncio.TimeoutError()),
        StubClassifier(verdict=None),
        StubClassifier(verdict={"riskLevel": "high"}),
    ])
    def test_ai_failure_equals_rule_verdict(self, stub):
        patient = make_patient("adult")
        visit = adult_visit(bp={"systolic": 142, "diastolic": 92}, medication_adherence=False)
        previous = adult_history((150, 95), (145, 91))

        outcome = assess(patient, visit, history(*previous), classifier=stub)

        assert outcome.source == "rules"
        assert outcome.verdict == classify(patient, visit, previous)
        assert len(stub.calls) == 1

    @pytest.mark.parametrize("text", [
        "Sorry, I can't do that.",
        json.dumps({"riskLevel": "critical", "reasons": ["x"], "recommendations": []}),
        '{"riskLevel": "high", "reasons": [',
    ])
    def test_unusable_model_output_falls_back(self, text):
        classifier = AIRiskClassifier(client=FakeAnthropic(text=text), model="test-model")
        patient = make_patient("pregnant")
        visit = pregnant_visit(hb=9.0)

        outcome = assess(patient, visit, classifier=classifier)

        assert outcome.source == "rules"
        assert outcome.verdict == classify(patient, visit, [])


class TestHistory:

    def test_lookup_bounded_to_three(self):
        fetch = history(*adult_history((150, 95), (150, 95), (150, 95), (150, 95), (150, 95)))
        stub = StubClassifier(verdict=None)

        outcome = assess(make_patient("adult"), adult_visit(bp={"systolic": 142, "diastolic": 92}), fetch, stub)

        assert fetch.calls == [3]
        assert len(stub.calls[0][2]) == 3
        assert outcome.verdict.reasons == ["Blood pressure consistently elevated over 4 visits"]

    def test_history_order_preserved(self):
        previous = adult_history((150, 95), (120, 80))
        stub = StubClassifier(verdict=AI_VERDICT)
        assess(make_patient("adult"), adult_visit(), history(*previous), stub)
        assert [v.id for v in stub.calls[0][2]] == [100, 101]


class TestInputErrors:

    @pytest.mark.parametrize("patient,visit,field", [
        (None, pregnant_visit(), "patient"),
        (Patient(id=1, age=30), pregnant_visit(), "patient.category"),
        (make_patient("pregnant"), None, "visit"),
        (make_patient("pregnant"), Visit(id=5), "visit.details"),
        (make_patient("adult"), pregnant_visit(), "visit.category"),
    ])
    def test_rejected_before_classifiers(self, patient, visit, field):
        stub = StubClassifier(verdict=AI_VERDICT)
        fetch = history()

        with pytest.raises(RiskInputError, match=field):
            assess(patient, visit, fetch, stub)

        assert stub.calls == []
        assert fetch.calls == []

    def test_input_error_is_value_error(self):
        with pytest.raises(ValueError):
            assess(None, pregnant_visit())


class TestPatientUpdate:

    def test_risk_fields_always_set(self):
        outcome = assess(make_patient("pregnant"), pregnant_visit())

        update = outcome.patient_update
        assert update.current_risk_level == RiskLevel.normal
        assert update.last_risk_update == NOW
        assert update.latest_bp is None
        assert update.latest_sugar is None

    def test_pregnant_bp_snapshot(self):
        outcome = assess(make_patient("pregnant"), pregnant_visit(bp={"systolic": 150, "diastolic": 95}))
        assert outcome.patient_update.latest_bp.systolic == 150
        assert outcome.patient_update.current_risk_level == RiskLevel.high

    def test_partial_bp_not_recorded(self):
        outcome = assess(make_patient("pregnant"), pregnant_visit(bp={"systolic": 150}))
        assert outcome.patient_update.latest_bp is None

    def test_adult_sugar_snapshot(self):
        outcome = assess(make_patient("adult"), adult_visit(sugar={"type": "random", "value": 140}))
        assert outcome.patient_update.latest_sugar.value == 140
        assert outcome.patient_update.latest_bp is None

    def test_level_follows_ai_verdict(self):
        outcome = assess(make_patient("adult"), adult_visit(), classifier=StubClassifier(verdict=AI_VERDICT))
        assert outcome.patient_update.current_risk_level == RiskLevel.monitor

    def test_vitals_last_write_wins(self):
        outcome = assess(make_patient("pregnant"), pregnant_visit(bp={"systolic": 130, "diastolic": 85}))
        existing = {
            "bp": {"systolic": 150.0, "diastolic": 95.0},
            "sugar_level": {"type": "fasting", "value": 110.0},
        }

        vitals = outcome.patient_update.apply_to_vitals(existing)

        assert vitals["bp"] == {"systolic": 130.0, "diastolic": 85.0}
        assert vitals["sugar_level"] == {"type": "fasting", "value": 110.0}
        assert existing["bp"]["systolic"] == 150.0
