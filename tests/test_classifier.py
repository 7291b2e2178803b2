import pytest

from intentflow.classifier import classify
from intentflow.models import Intent


@pytest.mark.parametrize("kind", ["feature", "fix", "refactor", "test", "docs"])
def test_code_change_kinds_use_analyze_implement_review(kind: str) -> None:
    result = classify(Intent(id="x", title="x", kind=kind))

    assert result.template == ("analyze", "implement", "review")


def test_audit_kind_uses_audit_report() -> None:
    assert classify(Intent(id="x", title="x", kind="audit")).template == ("audit", "report")


def test_unknown_kind_falls_back_to_default_template_and_medium_risk() -> None:
    result = classify(Intent(id="x", title="x", kind="chore"))

    assert result.template == ("analyze", "implement", "review")
    assert result.risk == "medium"


def test_risk_seed_by_kind() -> None:
    assert classify(Intent(id="a", title="a", kind="fix")).risk == "low"
    assert classify(Intent(id="b", title="b", kind="docs")).risk == "low"
    assert classify(Intent(id="c", title="c", kind="feature")).risk == "medium"
    assert classify(Intent(id="d", title="d", kind="refactor")).risk == "medium"


def test_declared_risk_wins_over_seed() -> None:
    intent = Intent(id="x", title="x", kind="fix", risk="high", labels=["security"])

    assert classify(intent).risk == "high"
    assert classify(Intent(id="y", title="y", kind="feature", risk="low")).risk == "low"


def test_sensitive_labels_and_automated_origin_raise_risk() -> None:
    assert classify(Intent(id="a", title="a", kind="fix", labels=["Security"])).risk == "high"
    assert classify(Intent(id="b", title="b", kind="docs", labels=["breaking"])).risk == "high"
    assert classify(Intent(id="c", title="c", kind="fix", origin="automated")).risk == "medium"


def test_classification_is_deterministic() -> None:
    intent = Intent(id="x", title="x", kind="refactor", labels=["perf"])

    assert classify(intent) == classify(intent)
