# backend/nivarna/main.py
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import config
from .db import Base, engine
from .doctor import router as doctor_router
from .patients import router as patients_router
from .risk import router as risk_router
from .risk_ai import build_ai_classifier
from .visits import router as visits_router
from . import models, models_risk  # noqa: F401  (register tables)

app = FastAPI(title=config.APP_NAME)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Create tables
Base.metadata.create_all(bind=engine)

# None when AI scoring is disabled; visits are then scored by the rules alone
app.state.ai_classifier = build_ai_classifier()


@app.get("/status")
def status():
    return {"ok": True}


# Routers
app.include_router(patients_router)
app.include_router(visits_router)
app.include_router(risk_router)
app.include_router(doctor_router)
