"""Maps an intent's declared attributes to its initial flow template and risk seed."""

from __future__ import annotations

from dataclasses import dataclass

from intentflow.models import ANALYZE, AUDIT, IMPLEMENT, REPORT, REVIEW, RISK_ORDER, Intent

DEFAULT_TEMPLATE = (ANALYZE, IMPLEMENT, REVIEW)

FLOW_TEMPLATES: dict[str, tuple[str, ...]] = {
    "feature": DEFAULT_TEMPLATE,
    "fix": DEFAULT_TEMPLATE,
    "refactor": DEFAULT_TEMPLATE,
    "test": DEFAULT_TEMPLATE,
    "docs": DEFAULT_TEMPLATE,
    "audit": (AUDIT, REPORT),
}

KIND_RISK: dict[str, str] = {
    "fix": "low",
    "test": "low",
    "docs": "low",
    "audit": "low",
    "feature": "medium",
    "refactor": "medium",
}

HIGH_RISK_LABELS = {"security", "breaking"}


@dataclass(frozen=True, slots=True)
class Classification:
    template: tuple[str, ...]
    risk: str


def _max_risk(first: str, second: str) -> str:
    return first if RISK_ORDER[first] >= RISK_ORDER[second] else second


def classify(intent: Intent) -> Classification:
    kind = (intent.kind or "").strip().lower()
    template = FLOW_TEMPLATES.get(kind, DEFAULT_TEMPLATE)

    declared = (intent.risk or "").strip().lower()
    if declared in RISK_ORDER:
        return Classification(template=template, risk=declared)

    risk = KIND_RISK.get(kind, "medium")
    labels = {label.strip().lower() for label in intent.labels}
    if labels & HIGH_RISK_LABELS:
        risk = "high"
    if intent.origin == "automated":
        risk = _max_risk(risk, "medium")
    return Classification(template=template, risk=risk)
