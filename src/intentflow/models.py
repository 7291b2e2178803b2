from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

# Step kinds
ANALYZE = "analyze"
IMPLEMENT = "implement"
REBASE = "rebase"
REVIEW = "review"
INTEGRATE = "integrate"
REFLECT = "reflect"
AUDIT = "audit"
REPORT = "report"

TASK_STEPS = (IMPLEMENT, REBASE, REVIEW, INTEGRATE)

# Step results
PRODUCED_SUBTASKS = "produced_subtasks"
PRODUCED_SUB_INTENTS = "produced_sub_intents"
NEEDS_CLARIFICATION = "needs_clarification"
APPROVED = "approved"
REJECTED = "rejected"
SUCCEEDED = "succeeded"
FAILED = "failed"

STEP_RESULTS = {
    PRODUCED_SUBTASKS,
    PRODUCED_SUB_INTENTS,
    NEEDS_CLARIFICATION,
    APPROVED,
    REJECTED,
    SUCCEEDED,
    FAILED,
}

# Intent statuses
PROPOSED = "proposed"
INTENT_APPROVED = "approved"
EXECUTING = "executing"
DONE = "done"
BLOCKED = "blocked"
ERROR = "error"

INTENT_STATUSES = (PROPOSED, INTENT_APPROVED, EXECUTING, DONE, BLOCKED, ERROR)
TERMINAL_INTENT_STATUSES = {DONE, BLOCKED, ERROR}

# Task statuses
PENDING = "pending"
RUNNING = "running"
TASK_DONE = "done"
TASK_FAILED = "failed"

TERMINAL_TASK_STATUSES = {TASK_DONE, TASK_FAILED}

RISK_ORDER = {"low": 0, "medium": 1, "high": 2}
COMPLEXITY_TIERS = ("low", "medium", "high")


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def slugify(title: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    return slug[:60].rstrip("-") or "intent"


def risk_at_least(risk: str, threshold: str) -> bool:
    return RISK_ORDER.get(risk, 1) >= RISK_ORDER.get(threshold, 1)


@dataclass(slots=True)
class Clarification:
    question: str
    answer: str | None = None

    @property
    def answered(self) -> bool:
        return self.answer is not None and bool(self.answer.strip())


@dataclass(slots=True)
class Intent:
    id: str
    title: str
    body: str = ""
    kind: str = "feature"
    labels: list[str] = field(default_factory=list)
    origin: str = "human"
    risk: str | None = None
    status: str = PROPOSED
    parent_id: str | None = None
    pending_questions: list[Clarification] = field(default_factory=list)
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str | None = None
    failure_reason: str | None = None
    resume_token: str | None = None
    last_issues: list[str] = field(default_factory=list)

    @property
    def paused(self) -> bool:
        return any(not item.answered for item in self.pending_questions)

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_INTENT_STATUSES

    def answered_questions(self) -> list[dict[str, str]]:
        return [
            {"question": item.question, "answer": str(item.answer)}
            for item in self.pending_questions
            if item.answered
        ]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Intent:
        questions = [
            Clarification(question=str(item.get("question", "")), answer=item.get("answer"))
            for item in payload.get("pending_questions", [])
            if isinstance(item, dict)
        ]
        return cls(
            id=str(payload["id"]),
            title=str(payload.get("title", payload["id"])),
            body=str(payload.get("body", "")),
            kind=str(payload.get("kind") or "feature"),
            labels=[str(label) for label in payload.get("labels", [])],
            origin=str(payload.get("origin", "human")),
            risk=payload.get("risk"),
            status=str(payload.get("status", PROPOSED)),
            parent_id=payload.get("parent_id"),
            pending_questions=questions,
            created_at=str(payload.get("created_at") or utcnow_iso()),
            updated_at=payload.get("updated_at"),
            failure_reason=payload.get("failure_reason"),
            resume_token=payload.get("resume_token"),
            last_issues=[str(item) for item in payload.get("last_issues", [])],
        )


@dataclass(slots=True)
class Task:
    id: str
    intent_id: str
    plan: str
    title: str = ""
    relevant_paths: list[str] = field(default_factory=list)
    steps: list[str] = field(default_factory=list)
    complexity: str = "medium"
    depends_on: list[str] = field(default_factory=list)
    status: str = PENDING
    attempts: int = 0
    conflict_cycles: int = 0
    isolate_path: str | None = None
    branch: str | None = None
    failure_reason: str | None = None
    last_issues: list[str] = field(default_factory=list)
    resume_token: str | None = None
    created_at: str = field(default_factory=utcnow_iso)
    started_at: str | None = None
    completed_at: str | None = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        return cls(
            id=str(payload["id"]),
            intent_id=str(payload["intent_id"]),
            plan=str(payload.get("plan", "")),
            title=str(payload.get("title", "")),
            relevant_paths=[str(item) for item in payload.get("relevant_paths", [])],
            steps=[str(item) for item in payload.get("steps", [])],
            complexity=str(payload.get("complexity") or "medium"),
            depends_on=[str(item) for item in payload.get("depends_on", [])],
            status=str(payload.get("status", PENDING)),
            attempts=int(payload.get("attempts", 0)),
            conflict_cycles=int(payload.get("conflict_cycles", 0)),
            isolate_path=payload.get("isolate_path"),
            branch=payload.get("branch"),
            failure_reason=payload.get("failure_reason"),
            last_issues=[str(item) for item in payload.get("last_issues", [])],
            resume_token=payload.get("resume_token"),
            created_at=str(payload.get("created_at") or utcnow_iso()),
            started_at=payload.get("started_at"),
            completed_at=payload.get("completed_at"),
        )


@dataclass(slots=True)
class StepOutcome:
    kind: str
    result: str
    payload: dict[str, Any] = field(default_factory=dict)
    duration_ms: int = 0
    resume_token: str | None = None
    task_id: str | None = None

    def __post_init__(self) -> None:
        if self.result not in STEP_RESULTS:
            raise ValueError(f"Unknown step result: {self.result}")
