"""
Builders and fakes shared by the test modules.
"""
import asyncio
from datetime import datetime, timedelta
from types import SimpleNamespace

from nivarna.domain import AdultVisit, ChildVisit, Patient, PregnantVisit, Visit

BASE_DATE = datetime(2026, 3, 1, 9, 0)


def make_patient(category="pregnant", age=26, gender="female", **kw) -> Patient:
    return Patient(id=kw.pop("id", 1), category=category, age=age, gender=gender, **kw)


def pregnant_visit(visit_id=None, days_ago=0, **fields) -> Visit:
    return Visit(id=visit_id, patient_id=1, visit_date=BASE_DATE - timedelta(days=days_ago),
                 details=PregnantVisit(**fields))


def child_visit(visit_id=None, days_ago=0, **fields) -> Visit:
    return Visit(id=visit_id, patient_id=1, visit_date=BASE_DATE - timedelta(days=days_ago),
                 details=ChildVisit(**fields))


def adult_visit(visit_id=None, days_ago=0, **fields) -> Visit:
    return Visit(id=visit_id, patient_id=1, visit_date=BASE_DATE - timedelta(days=days_ago),
                 details=AdultVisit(**fields))


def adult_history(*bps):
    """Previous adult visits, most recent first, one per (systolic, diastolic)."""
    return [
        adult_visit(visit_id=100 + i, days_ago=30 * (i + 1), bp={"systolic": s, "diastolic": d})
        for i, (s, d) in enumerate(bps)
    ]


class StubClassifier:
    """Stands in for the AI classifier; returns a fixed verdict or raises."""

    model = "stub-model"

    def __init__(self, verdict=None, exc=None):
        self.verdict = verdict
        self.exc = exc
        self.calls = []

    async def classify(self, patient, current_visit, previous_visits):
        self.calls.append((patient, current_visit, list(previous_visits)))
        if self.exc is not None:
            raise self.exc
        return self.verdict


class FakeMessages:
    def __init__(self, text="", exc=None, delay=0.0):
        self.text = text
        self.exc = exc
        self.delay = delay
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.exc is not None:
            raise self.exc
        return SimpleNamespace(content=[SimpleNamespace(type="text", text=self.text)])


class FakeAnthropic:
    """Minimal async Anthropic client: ``client.messages.create(...)``."""

    def __init__(self, text="", exc=None, delay=0.0):
        self.messages = FakeMessages(text=text, exc=exc, delay=delay)
