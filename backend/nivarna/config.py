# backend/nivarna/config.py
import os
from pathlib import Path

from dotenv import load_dotenv

ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=ENV_PATH)

BOOL_POS = {"1", "true", "t", "yes", "y"}


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in BOOL_POS


APP_NAME = os.getenv("APP_NAME", "Nivarna Health")

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./nivarna.db")

# AI-assisted scoring (falls back to the rule engine when disabled or failing)
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
RISK_AI_ENABLED = _env_bool("RISK_AI_ENABLED", "true")
RISK_AI_MODEL = os.getenv("RISK_AI_MODEL", "claude-sonnet-4-20250514")
RISK_AI_TIMEOUT = float(os.getenv("RISK_AI_TIMEOUT", "20"))
RISK_AI_MAX_TOKENS = int(os.getenv("RISK_AI_MAX_TOKENS", "1024"))

CORS_ORIGINS = [
    o.strip()
    for o in os.getenv("CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173").split(",")
    if o.strip()
]
