"""
AI classifier adapter: prompt, JSON extraction, validation and failure handling.
"""
import asyncio
import json

import pytest

from nivarna.domain import RiskLevel
from nivarna.risk_ai import AIRiskClassifier, build_prompt, extract_json_object, parse_verdict

from helpers import FakeAnthropic, adult_history, adult_visit, make_patient

GOOD_RESPONSE = {
    "riskLevel": "monitor",
    "reasons": ["Blood pressure rising across visits", "Reports fatigue"],
    "trendAnalysis": {"metric": "bp", "trend": "increasing", "description": "Systolic up 15 mmHg"},
    "recommendations": ["Recheck BP in one week"],
    "requiresDoctorReview": False,
}


def run(coro):
    return asyncio.run(coro)


class TestExtractJson:

    def test_plain_object(self):
        assert extract_json_object('{"a": 1}') == '{"a": 1}'

    def test_surrounding_prose_and_fences(self):
        text = 'Here you go:\n```json\n{"a": {"b": 2}}\n```\nThanks'
        assert extract_json_object(text) == '{"a": {"b": 2}}'

    def test_first_of_two_objects(self):
        assert extract_json_object('{"a": 1} and {"b": 2}') == '{"a": 1}'

    def test_braces_inside_strings(self):
        text = '{"reason": "BP {high} \\" }", "x": 1} trailing }'
        assert json.loads(extract_json_object(text)) == {"reason": 'BP {high} " }', "x": 1}

    @pytest.mark.parametrize("text", ["", "no json here", '{"a": 1', "}{"])
    def test_none_when_missing_or_unbalanced(self, text):
        assert extract_json_object(text) is None


class TestParseVerdict:

    def test_camel_case(self):
        verdict = parse_verdict("Result: " + json.dumps(GOOD_RESPONSE))

        assert verdict.risk_level == RiskLevel.monitor
        assert verdict.reasons[0] == "Blood pressure rising across visits"
        assert verdict.trend_analysis.metric == "bp"
        assert verdict.requires_doctor_review is False

    def test_snake_case(self):
        data = {"risk_level": "high", "reasons": ["x"], "recommendations": [], "requires_doctor_review": True}
        verdict = parse_verdict(json.dumps(data))
        assert verdict.risk_level == RiskLevel.high
        assert verdict.requires_doctor_review is True

    def test_review_flag_defaults_false(self):
        data = {"riskLevel": "normal", "reasons": ["fine"], "recommendations": []}
        assert parse_verdict(json.dumps(data)).requires_doctor_review is False

    @pytest.mark.parametrize("data", [
        {**GOOD_RESPONSE, "riskLevel": "critical"},
        {**GOOD_RESPONSE, "reasons": []},
        {k: v for k, v in GOOD_RESPONSE.items() if k != "riskLevel"},
        {k: v for k, v in GOOD_RESPONSE.items() if k != "recommendations"},
        {**GOOD_RESPONSE, "trendAnalysis": {"metric": "mood", "trend": "up"}},
    ])
    def test_invalid_fields_rejected(self, data):
        assert parse_verdict(json.dumps(data)) is None

    @pytest.mark.parametrize("text", ["", "I cannot help with that.", "{riskLevel: high}", "[1, 2]"])
    def test_unusable_text(self, text):
        assert parse_verdict(text) is None


class TestPrompt:

    def test_includes_patient_and_visits(self):
        patient = make_patient("adult", age=54, chronic_conditions=["hypertension"])
        visit = adult_visit(bp={"systolic": 142, "diastolic": 92})
        prompt = build_prompt(patient, visit, adult_history((150, 95)))

        assert "Patient Category: adult" in prompt
        assert "Patient Age: 54" in prompt
        assert "Chronic Conditions: hypertension" in prompt
        assert '"systolic": 142.0' in prompt
        assert '"systolic": 150.0' in prompt
        assert '"normal", "monitor" or "high"' in prompt


class TestAIRiskClassifier:

    def _classify(self, client, timeout=5.0):
        classifier = AIRiskClassifier(client=client, model="test-model", timeout=timeout)
        return run(classifier.classify(make_patient("adult"), adult_visit(bp={"systolic": 142, "diastolic": 92}), []))

    def test_success(self):
        client = FakeAnthropic(text=json.dumps(GOOD_RESPONSE))
        verdict = self._classify(client)

        assert verdict.risk_level == RiskLevel.monitor
        call = client.messages.calls[0]
        assert call["model"] == "test-model"
        assert call["messages"][0]["role"] == "user"

    def test_transport_error_returns_none(self):
        assert self._classify(FakeAnthropic(exc=ConnectionError("unreachable"))) is None

    def test_timeout_returns_none(self):
        assert self._classify(FakeAnthropic(text=json.dumps(GOOD_RESPONSE), delay=0.5), timeout=0.05) is None

    def test_malformed_output_returns_none(self):
        assert self._classify(FakeAnthropic(text="Risk looks high to me.")) is None

    def test_requires_key_without_client(self, monkeypatch):
        monkeypatch.setattr("nivarna.config.ANTHROPIC_API_KEY", "")
        with pytest.raises(ValueError):
            AIRiskClassifier()
