"""Flow state and the adjustment rules applied after every completed step.

The adjuster is a pure function of the flow state and the outcome of the step that
just finished. It never performs I/O; the runner applies the returned decision with
:meth:`FlowState.apply` and persists records around it.

Rules are evaluated in a fixed order and the first match wins:

1. ``analyze`` needing clarification pauses the intent for a human.
2. ``analyze`` producing sub-intents halts the parent without reflection.
3. ``analyze`` producing tasks continues into the per-task implement cycle.
4. A rejected (or failed) implement/review attempt retries ``implement`` while the
   retry budget lasts.
5. Once the budget is exhausted the task halts as ``failed``.
6. An approved review continues into integration.
7. When every non-deferred task is terminal, ``reflect`` runs once and the intent
   halts with the aggregated status (see :func:`settle`).
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from intentflow.models import (
    ANALYZE,
    APPROVED,
    BLOCKED,
    DONE,
    ERROR,
    FAILED,
    IMPLEMENT,
    INTEGRATE,
    NEEDS_CLARIFICATION,
    PRODUCED_SUB_INTENTS,
    PRODUCED_SUBTASKS,
    REBASE,
    REFLECT,
    REJECTED,
    REVIEW,
    TASK_DONE,
    TASK_FAILED,
    TASK_STEPS,
    StepOutcome,
    utcnow_iso,
)


@dataclass(frozen=True, slots=True)
class Continue:
    next_step: str


@dataclass(frozen=True, slots=True)
class InsertAndContinue:
    steps: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class PauseForHuman:
    reason: str
    questions: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class RetryStep:
    step: str
    extra_context: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Halt:
    final_status: str
    reason: str | None = None


FlowDecision = Continue | InsertAndContinue | PauseForHuman | RetryStep | Halt


def with_structural_steps(template: Iterable[str]) -> list[str]:
    """Insert the fixed ``rebase`` step between ``implement`` and ``review``."""
    steps: list[str] = []
    for step in template:
        if step == REVIEW and IMPLEMENT in steps and REBASE not in steps:
            steps.append(REBASE)
        steps.append(step)
    return steps


def aggregate_status(task_statuses: Mapping[str, str]) -> str:
    terminal = [status for status in task_statuses.values() if status in {TASK_DONE, TASK_FAILED}]
    done = sum(1 for status in terminal if status == TASK_DONE)
    failed = len(terminal) - done
    if done and not failed:
        return DONE
    if done and failed:
        return BLOCKED
    return ERROR


@dataclass(slots=True)
class FlowState:
    steps: list[str]
    scope: str = "intent"
    cursor: int = 0
    max_retries: int = 2
    retries: int = 0
    has_sub_intents: bool = False
    reflected: bool = False
    halted: str | None = None
    halt_reason: str | None = None
    task_statuses: dict[str, str] = field(default_factory=dict)
    adjustments: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def for_intent(cls, template: Iterable[str], *, max_retries: int) -> FlowState:
        return cls(steps=with_structural_steps(template), scope="intent", max_retries=max_retries)

    @classmethod
    def for_task(cls, *, max_retries: int) -> FlowState:
        return cls(steps=list(TASK_STEPS), scope="task", max_retries=max_retries)

    @property
    def current(self) -> str | None:
        if self.halted is not None or self.cursor >= len(self.steps):
            return None
        return self.steps[self.cursor]

    @property
    def finished(self) -> bool:
        return self.current is None

    def seek(self, step: str) -> None:
        """Move the cursor to the first occurrence of ``step`` (crash recovery)."""
        if step in self.steps:
            self.cursor = self.steps.index(step)

    def note_task(self, task_id: str, status: str) -> None:
        self.task_statuses[task_id] = status

    def _phase_end(self) -> int:
        if self.scope != "intent" or self.current not in TASK_STEPS:
            return self.cursor
        index = self.cursor
        while index + 1 < len(self.steps) and self.steps[index + 1] in TASK_STEPS:
            index += 1
        return index

    def _log(self, completed_step: str | None, decision: FlowDecision, **details: Any) -> None:
        entry: dict[str, Any] = {
            "scope": self.scope,
            "step": completed_step,
            "decision": type(decision).__name__,
            "at": utcnow_iso(),
        }
        entry.update(details)
        self.adjustments.append(entry)

    def apply(self, decision: FlowDecision, completed_step: str | None = None) -> None:
        if isinstance(decision, Continue):
            try:
                self.cursor = self.steps.index(decision.next_step, self.cursor + 1)
            except ValueError:
                self.steps.insert(self.cursor + 1, decision.next_step)
                self.cursor += 1
            self._log(completed_step, decision, next_step=decision.next_step)
        elif isinstance(decision, InsertAndContinue):
            anchor = self._phase_end()
            for offset, step in enumerate(decision.steps, start=1):
                self.steps.insert(anchor + offset, step)
            self.cursor = anchor + 1
            if REFLECT in decision.steps:
                self.reflected = True
            self._log(completed_step, decision, inserted=list(decision.steps))
        elif isinstance(decision, PauseForHuman):
            self._log(
                completed_step,
                decision,
                reason=decision.reason,
                questions=list(decision.questions),
            )
        elif isinstance(decision, RetryStep):
            target = self.cursor
            while target > 0 and self.steps[target] != decision.step:
                target -= 1
            self.cursor = target
            self.retries += 1
            self._log(
                completed_step,
                decision,
                retry_step=decision.step,
                retry=self.retries,
                budget=self.max_retries,
            )
        elif isinstance(decision, Halt):
            self.halted = decision.final_status
            self.halt_reason = decision.reason
            self.cursor = len(self.steps)
            self._log(
                completed_step,
                decision,
                final_status=decision.final_status,
                reason=decision.reason,
            )
        else:
            raise TypeError(f"Unsupported flow decision: {decision!r}")


def _issues(outcome: StepOutcome) -> list[str]:
    issues = outcome.payload.get("issues")
    if isinstance(issues, list):
        return [str(item) for item in issues if str(item).strip()]
    error = outcome.payload.get("error")
    if error:
        return [str(error)]
    return []


def _retry_or_fail(flow: FlowState, outcome: StepOutcome) -> FlowDecision:
    issues = _issues(outcome)
    if flow.retries < flow.max_retries:
        return RetryStep(IMPLEMENT, {"feedback": issues})
    reason = "retries exhausted"
    if issues:
        reason = f"retries exhausted: {issues[0]}"
    return Halt(TASK_FAILED, reason)


def adjust(flow: FlowState, completed_step: str, outcome: StepOutcome) -> FlowDecision:
    result = outcome.result

    if completed_step == ANALYZE:
        if result == NEEDS_CLARIFICATION:
            questions = tuple(str(item) for item in outcome.payload.get("questions", []))
            return PauseForHuman("analysis needs clarification", questions)
        if result == PRODUCED_SUB_INTENTS:
            return Halt(DONE, "decomposed into sub-intents")
        if result == PRODUCED_SUBTASKS:
            return Continue(IMPLEMENT)
        return Halt(ERROR, str(outcome.payload.get("error") or "analysis produced no tasks"))

    if completed_step == REVIEW:
        if result == APPROVED:
            return Continue(INTEGRATE)
        return _retry_or_fail(flow, outcome)

    if completed_step == IMPLEMENT:
        if result == FAILED:
            return _retry_or_fail(flow, outcome)
        return Continue(REBASE)

    if completed_step == REBASE:
        if result == FAILED:
            return Halt(TASK_FAILED, str(outcome.payload.get("error") or "conflict unresolved"))
        return Continue(REVIEW)

    if completed_step == INTEGRATE:
        if result == FAILED:
            return Halt(TASK_FAILED, str(outcome.payload.get("error") or "conflict unresolved"))
        if outcome.payload.get("reimplemented"):
            return InsertAndContinue((REVIEW, INTEGRATE))
        return Halt(TASK_DONE)

    if completed_step == REFLECT:
        return Halt(aggregate_status(flow.task_statuses))

    # Intent-scoped steps declared by a template (audit, report, ...).
    if result in {FAILED, REJECTED}:
        return Halt(ERROR, str(outcome.payload.get("error") or f"{completed_step} failed"))
    try:
        position = flow.steps.index(completed_step, flow.cursor)
    except ValueError:
        position = flow.cursor
    if position + 1 < len(flow.steps):
        return Continue(flow.steps[position + 1])
    return Halt(DONE)


def settle(flow: FlowState) -> FlowDecision:
    """Decision once every non-deferred task of the intent is terminal."""
    if flow.has_sub_intents or flow.reflected:
        return Halt(aggregate_status(flow.task_statuses))
    return InsertAndContinue((REFLECT,))
