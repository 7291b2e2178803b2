from intentflow.flow import (
    Continue,
    FlowState,
    Halt,
    InsertAndContinue,
    PauseForHuman,
    RetryStep,
    adjust,
    aggregate_status,
    settle,
    with_structural_steps,
)
from intentflow.models import StepOutcome


def _outcome(kind: str, result: str, **payload) -> StepOutcome:
    return StepOutcome(kind=kind, result=result, payload=payload)


def test_rebase_is_inserted_between_implement_and_review() -> None:
    assert with_structural_steps(["analyze", "implement", "review"]) == [
        "analyze",
        "implement",
        "rebase",
        "review",
    ]
    assert with_structural_steps(["audit", "report"]) == ["audit", "report"]


def test_analyze_outcomes_map_to_decisions_in_rule_order() -> None:
    flow = FlowState.for_intent(["analyze", "implement", "review"], max_retries=2)

    clarify = _outcome("analyze", "needs_clarification", questions=["Which API?"])
    pause = adjust(flow, "analyze", clarify)
    assert isinstance(pause, PauseForHuman)
    assert pause.questions == ("Which API?",)

    split = adjust(flow, "analyze", _outcome("analyze", "produced_sub_intents"))
    assert split == Halt("done", "decomposed into sub-intents")

    tasks = _outcome("analyze", "produced_subtasks")
    assert adjust(flow, "analyze", tasks) == Continue("implement")

    failed = adjust(flow, "analyze", _outcome("analyze", "failed", error="agent crashed"))
    assert failed == Halt("error", "agent crashed")


def test_review_rejection_retries_until_budget_is_spent() -> None:
    flow = FlowState.for_task(max_retries=2)
    flow.cursor = flow.steps.index("review")
    rejection = _outcome("review", "rejected", issues=["missing null check"])

    first = adjust(flow, "review", rejection)
    assert first == RetryStep("implement", {"feedback": ["missing null check"]})
    flow.apply(first, "review")
    assert flow.current == "implement"
    assert flow.retries == 1

    flow.cursor = flow.steps.index("review")
    second = adjust(flow, "review", rejection)
    assert isinstance(second, RetryStep)
    flow.apply(second, "review")
    assert flow.retries == 2

    flow.cursor = flow.steps.index("review")
    third = adjust(flow, "review", rejection)
    assert third == Halt("failed", "retries exhausted: missing null check")


def test_failed_implement_consumes_the_same_budget() -> None:
    flow = FlowState.for_task(max_retries=0)

    decision = adjust(flow, "implement", _outcome("implement", "failed", issues=["no commits"]))

    assert decision == Halt("failed", "retries exhausted: no commits")


def test_task_flow_happy_path_walks_every_step() -> None:
    flow = FlowState.for_task(max_retries=2)
    results = {
        "implement": "succeeded",
        "rebase": "succeeded",
        "review": "approved",
        "integrate": "succeeded",
    }
    visited = []
    while not flow.finished:
        step = flow.current
        visited.append(step)
        flow.apply(adjust(flow, step, _outcome(step, results[step])), step)

    assert visited == ["implement", "rebase", "review", "integrate"]
    assert flow.halted == "done"
    assert [entry["decision"] for entry in flow.adjustments] == [
        "Continue",
        "Continue",
        "Continue",
        "Halt",
    ]


def test_reimplemented_integration_reruns_review_and_integrate() -> None:
    flow = FlowState.for_task(max_retries=2)
    flow.cursor = flow.steps.index("integrate")

    decision = adjust(flow, "integrate", _outcome("integrate", "succeeded", reimplemented=True))
    assert decision == InsertAndContinue(("review", "integrate"))
    flow.apply(decision, "integrate")

    assert flow.steps == ["implement", "rebase", "review", "integrate", "review", "integrate"]
    assert flow.current == "review"

    # A later rejection still walks back to the nearest implement step.
    flow.apply(adjust(flow, "review", _outcome("review", "rejected", issues=["x"])), "review")
    assert flow.current == "implement"


def test_rebase_and_integrate_failures_halt_the_task() -> None:
    flow = FlowState.for_task(max_retries=2)

    conflict = _outcome("rebase", "failed", error="conflict unresolved")
    assert adjust(flow, "rebase", conflict) == Halt("failed", "conflict unresolved")
    assert adjust(flow, "integrate", _outcome("integrate", "failed")) == Halt(
        "failed", "conflict unresolved"
    )


def test_aggregate_status_ignores_deferred_tasks() -> None:
    assert aggregate_status({"a": "done", "b": "done"}) == "done"
    assert aggregate_status({"a": "done", "b": "failed"}) == "blocked"
    assert aggregate_status({"a": "failed"}) == "error"
    assert aggregate_status({"a": "done", "b": "pending"}) == "done"
    assert aggregate_status({}) == "error"


def test_settle_inserts_reflect_once_then_halts() -> None:
    flow = FlowState.for_intent(["analyze", "implement", "review"], max_retries=2)
    flow.apply(Continue("implement"), "analyze")
    flow.note_task("t1", "done")

    first = settle(flow)
    assert first == InsertAndContinue(("reflect",))
    flow.apply(first, "implement")
    assert flow.current == "reflect"
    assert flow.steps.count("reflect") == 1

    assert settle(flow) == Halt("done")
    assert adjust(flow, "reflect", _outcome("reflect", "succeeded")) == Halt("done")


def test_settle_skips_reflect_for_parent_with_sub_intents() -> None:
    flow = FlowState.for_intent(["analyze", "implement", "review"], max_retries=2)
    flow.has_sub_intents = True
    flow.note_task("t1", "done")

    assert settle(flow) == Halt("done")
    assert "reflect" not in flow.steps


def test_generic_intent_steps_continue_then_halt() -> None:
    flow = FlowState.for_intent(["audit", "report"], max_retries=2)

    decision = adjust(flow, "audit", _outcome("audit", "produced_sub_intents"))
    assert decision == Continue("report")
    flow.apply(decision, "audit")

    assert adjust(flow, "report", _outcome("report", "succeeded")) == Halt("done")
    failed = _outcome("report", "failed", error="boom")
    assert adjust(flow, "report", failed) == Halt("error", "boom")


def test_adjustment_log_records_retry_budget() -> None:
    flow = FlowState.for_task(max_retries=1)
    flow.cursor = flow.steps.index("review")
    flow.apply(RetryStep("implement", {"feedback": []}), "review")

    entry = flow.adjustments[-1]
    assert entry["decision"] == "RetryStep"
    assert entry["retry"] == 1
    assert entry["budget"] == 1
    assert entry["scope"] == "task"
