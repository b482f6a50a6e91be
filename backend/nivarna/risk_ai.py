# backend/nivarna/risk_ai.py
"""
AI-assisted visit classifier.

Asks Claude for a verdict in the same shape the rule engine produces. Any
failure (network, timeout, unparsable or invalid output) is logged and
reported as ``None`` so the caller can fall back to the rules.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Sequence

from anthropic import AsyncAnthropic
from pydantic import ValidationError

from . import config
from .domain import Patient, RiskVerdict, Visit

log = logging.getLogger("uvicorn.error")

SYSTEM_PROMPT = (
    "You are a healthcare risk assessment assistant for community health workers "
    "in rural India. You answer with a single JSON object and nothing else."
)

PROMPT_TEMPLATE = """Analyze this patient's visit data.

Patient Category: {category}
Patient Age: {age}
Gender: {gender}
Chronic Conditions: {chronic_conditions}

Current Visit Data:
{current_visit}

Previous Visits (most recent first, at most 3):
{previous_visits}

Provide:
1. Risk Level: choose ONLY one of "normal", "monitor" or "high"
2. Reasons: 2-3 specific points explaining the risk level
3. Trend Analysis: if applicable, describe any concerning trend
4. Recommendations: 2-3 actionable recommendations

Respond ONLY with valid JSON in this exact format:
{{
  "riskLevel": "normal|monitor|high",
  "reasons": ["reason1", "reason2"],
  "trendAnalysis": {{
    "metric": "bp|sugar|weight|hb|vaccination",
    "trend": "increasing|decreasing|stable|irregular",
    "description": "brief description"
  }},
  "recommendations": ["recommendation1", "recommendation2"],
  "requiresDoctorReview": true
}}
Omit "trendAnalysis" when there is no trend to report."""


def _visit_payload(visit: Visit) -> dict:
    return visit.model_dump(mode="json", exclude_none=True, exclude={"id", "patient_id"})


def build_prompt(patient: Patient, current_visit: Visit, previous_visits: Sequence[Visit]) -> str:
    category = patient.category.value if patient.category is not None else "unknown"
    gender = patient.gender.value if patient.gender is not None else "unknown"
    return PROMPT_TEMPLATE.format(
        category=category,
        age=patient.age if patient.age is not None else "unknown",
        gender=gender,
        chronic_conditions=", ".join(patient.chronic_conditions) or "none",
        current_visit=json.dumps(_visit_payload(current_visit), indent=2),
        previous_visits=json.dumps([_visit_payload(v) for v in previous_visits], indent=2),
    )


def extract_json_object(text: str) -> str | None:
    """Return the first balanced ``{...}`` substring of ``text``, if any."""
    start = text.find("{")
    if start == -1:
        return None
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def parse_verdict(text: str) -> RiskVerdict | None:
    """Parse raw model output into a verdict, or None when it is unusable."""
    raw = extract_json_object(text or "")
    if raw is None:
        log.warning("[RISK] AI response contained no JSON object")
        return None
    try:
        data: Any = json.loads(raw)
    except json.JSONDecodeError as e:
        log.warning(f"[RISK] AI response JSON invalid: {e}")
        return None
    if not isinstance(data, dict):
        return None
    try:
        return RiskVerdict.model_validate(data)
    except ValidationError as e:
        log.warning(f"[RISK] AI verdict rejected: {e.error_count()} validation error(s)")
        return None


class AIRiskClassifier:
    """
    Claude-backed classifier. ``classify`` never raises; ``None`` means
    "no verdict, use the rules".
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str = config.RISK_AI_MODEL,
        timeout: float = config.RISK_AI_TIMEOUT,
        max_tokens: int = config.RISK_AI_MAX_TOKENS,
        client: Any = None,
    ):
        self.model = model
        self.timeout = timeout
        self.max_tokens = max_tokens
        if client is None:
            api_key = api_key or config.ANTHROPIC_API_KEY
            if not api_key:
                raise ValueError("ANTHROPIC_API_KEY not set")
            # one attempt per evaluation; the rules are the retry
            client = AsyncAnthropic(api_key=api_key, timeout=timeout, max_retries=0)
        self.client = client

    async def _complete(self, prompt: str) -> str:
        response = await self.client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            system=SYSTEM_PROMPT,
            messages=[{"role": "user", "content": prompt}],
            temperature=0.2,
        )
        return "".join(
            block.text for block in response.content if getattr(block, "type", "text") == "text"
        )

    async def classify(
        self, patient: Patient, current_visit: Visit, previous_visits: Sequence[Visit]
    ) -> RiskVerdict | None:
        prompt = build_prompt(patient, current_visit, previous_visits)
        try:
            text = await asyncio.wait_for(self._complete(prompt), timeout=self.timeout)
        except asyncio.TimeoutError:
            log.warning(f"[RISK] AI classification timed out after {self.timeout}s")
            return None
        except Exception as e:
            log.warning(f"[RISK] AI classification failed: {type(e).__name__}: {e}")
            return None
        return parse_verdict(text)


def build_ai_classifier() -> AIRiskClassifier | None:
    """Classifier from configuration, or None when AI scoring is off."""
    if not config.RISK_AI_ENABLED:
        log.info("[RISK] AI scoring disabled; using rule engine only")
        return None
    if not config.ANTHROPIC_API_KEY:
        log.info("[RISK] ANTHROPIC_API_KEY not set; using rule engine only")
        return None
    return AIRiskClassifier()
