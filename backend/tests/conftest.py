import os

# Must be set before nivarna is imported: engine and AI wiring read them at import
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RISK_AI_ENABLED"] = "false"

import pytest
from fastapi.testclient import TestClient

from nivarna.db import Base, engine
from nivarna.main import app


@pytest.fixture
def client():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    app.dependency_overrides.clear()
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def register_patient(client):
    def _register(category="pregnant", **overrides):
        body = {
            "name": "Asha Devi",
            "age": 26,
            "gender": "female",
            "village": "Rampur",
            "category": category,
        }
        if category == "child":
            body.update(age=2, gender="male", name="Ravi")
        elif category == "adult":
            body.update(age=54, name="Sunita")
        body.update(overrides)
        res = client.post("/patients", json=body)
        assert res.status_code == 201, res.text
        return res.json()
    return _register
