from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from intentflow.backends.base import AgentBackend
from intentflow.classifier import classify
from intentflow.config import IntentflowConfig
from intentflow.coordinator import AGENT, ISOLATE, ConcurrencyCoordinator
from intentflow.flow import (
    FlowDecision,
    FlowState,
    Halt,
    PauseForHuman,
    RetryStep,
    adjust,
    aggregate_status,
    settle,
)
from intentflow.gateway import AgentGateway, StepFailure, StepResult
from intentflow.isolate import IsolateError, IsolateHandle, IsolateManager
from intentflow.models import (
    ANALYZE,
    APPROVED,
    AUDIT,
    BLOCKED,
    COMPLEXITY_TIERS,
    DONE,
    ERROR,
    EXECUTING,
    FAILED,
    IMPLEMENT,
    INTEGRATE,
    INTENT_APPROVED,
    NEEDS_CLARIFICATION,
    PENDING,
    PRODUCED_SUB_INTENTS,
    PRODUCED_SUBTASKS,
    PROPOSED,
    REBASE,
    REFLECT,
    REJECTED,
    REPORT,
    REVIEW,
    RISK_ORDER,
    RUNNING,
    SUCCEEDED,
    TASK_DONE,
    TASK_FAILED,
    TASK_STEPS,
    Clarification,
    Intent,
    StepOutcome,
    Task,
    risk_at_least,
    slugify,
    utcnow_iso,
)
from intentflow.resolver import ConflictResolver, Reimplement
from intentflow.state.history import HistoryRecord, HistoryRecorder, KnowledgeLog
from intentflow.state.store import InboxItem, IntentStore

LOGGER = logging.getLogger(__name__)

INSUFFICIENT_ANALYSIS = (
    "The analysis could not settle on an implementation plan. "
    "Which behaviour should change, and in which part of the code?"
)


class RunnerError(RuntimeError):
    """Raised for invalid human actions and unknown intent ids."""


@dataclass(slots=True)
class RunSummary:
    started_at: str
    ended_at: str = ""
    outcomes: dict[str, str] = field(default_factory=dict)
    steps: int = 0

    @property
    def processed(self) -> int:
        return len(self.outcomes)


@dataclass(slots=True)
class _IntentRun:
    intent: Intent
    flow: FlowState
    record: HistoryRecord
    findings: list[str] = field(default_factory=list)
    paused: bool = False


def _intent_view(intent: Intent) -> dict[str, Any]:
    return {
        "id": intent.id,
        "title": intent.title,
        "body": intent.body,
        "kind": intent.kind,
        "labels": list(intent.labels),
        "risk": intent.risk,
    }


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if str(item).strip()]


class Runner:
    """Drives approved intents through their flows until no runnable work remains."""

    def __init__(
        self,
        store: IntentStore,
        gateway: AgentGateway,
        isolates: IsolateManager,
        coordinator: ConcurrencyCoordinator,
        history: HistoryRecorder,
        knowledge: KnowledgeLog,
        config: IntentflowConfig,
        *,
        reports_dir: Path | None = None,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.isolates = isolates
        self.coordinator = coordinator
        self.history = history
        self.knowledge = knowledge
        self.config = config
        self.reports_dir = reports_dir
        self.resolver = ConflictResolver(
            isolates,
            coordinator,
            setup_commands=config.project.setup_commands,
            max_conflict_cycles=config.workflow.max_conflict_cycles,
        )

    @classmethod
    def from_config(
        cls,
        config: IntentflowConfig,
        repo_root: Path,
        backend: AgentBackend,
    ) -> Runner:
        state_dir = config.state_dir(repo_root)
        return cls(
            store=IntentStore(state_dir),
            gateway=AgentGateway.from_backend(backend, config),
            isolates=IsolateManager(repo_root, config.isolate_root(repo_root)),
            coordinator=ConcurrencyCoordinator.from_config(
                config.concurrency.agent_permits,
                config.concurrency.isolate_permits,
            ),
            history=HistoryRecorder(state_dir / "history.jsonl"),
            knowledge=KnowledgeLog(state_dir / "knowledge.jsonl"),
            config=config,
            reports_dir=state_dir / "reports",
        )

    # Human actions

    def create_intent(
        self,
        title: str,
        body: str = "",
        *,
        kind: str = "feature",
        labels: list[str] | None = None,
        risk: str | None = None,
        origin: str = "human",
        parent_id: str | None = None,
        status: str = PROPOSED,
    ) -> Intent:
        if not title.strip():
            raise RunnerError("An intent needs a title.")
        if risk is not None and risk not in RISK_ORDER:
            raise RunnerError(f"Unknown risk level: {risk}")
        intent = Intent(
            id=self.store.new_intent_id(title),
            title=title.strip(),
            body=body,
            kind=kind,
            labels=list(labels or []),
            origin=origin,
            risk=risk,
            status=status,
            parent_id=parent_id,
        )
        intent.risk = classify(intent).risk
        self.store.put(intent)
        LOGGER.info("created intent %s (kind=%s, risk=%s)", intent.id, intent.kind, intent.risk)
        return intent

    def _require(self, intent_id: str) -> Intent:
        intent = self.store.get(intent_id)
        if intent is None:
            raise RunnerError(f"Unknown intent: {intent_id}")
        return intent

    def approve(self, intent_id: str) -> Intent:
        intent = self._require(intent_id)
        if intent.status != PROPOSED:
            raise RunnerError(f"Intent {intent_id} is {intent.status}, not proposed.")
        intent.status = INTENT_APPROVED
        self.store.put(intent)
        LOGGER.info("approved intent %s", intent_id)
        return intent

    def answer(self, intent_id: str, question_index: int, text: str) -> Intent:
        intent = self._require(intent_id)
        if not text.strip():
            raise RunnerError("An answer cannot be empty.")
        if not 0 <= question_index < len(intent.pending_questions):
            raise RunnerError(f"Intent {intent_id} has no question #{question_index + 1}.")
        question = intent.pending_questions[question_index]
        if question.answered:
            raise RunnerError(f"Question #{question_index + 1} of {intent_id} is already answered.")
        question.answer = text.strip()
        self.store.put(intent)
        return intent

    def retry(self, intent_id: str) -> Intent:
        intent = self._require(intent_id)
        if intent.status not in {BLOCKED, ERROR}:
            raise RunnerError(
                f"Intent {intent_id} is {intent.status}; only blocked or error can retry."
            )
        base_ref = self.config.project.base_ref
        for task in self.store.tasks_for(intent_id):
            if task.status != TASK_FAILED:
                continue
            if task.isolate_path:
                self.isolates.destroy(self.isolates.handle_for(task.id, base_ref))
            task.status = PENDING
            task.attempts = 0
            task.conflict_cycles = 0
            task.failure_reason = None
            task.last_issues = []
            task.resume_token = None
            task.isolate_path = None
            task.started_at = None
            task.completed_at = None
            self.store.put_task(task)
        intent.status = INTENT_APPROVED
        intent.failure_reason = None
        self.store.put(intent)
        LOGGER.info("intent %s queued for retry", intent_id)
        return intent

    def inbox(self) -> list[InboxItem]:
        return self.store.inbox()

    def status(self) -> dict[str, Any]:
        intents = []
        for intent in self.store.list_where():
            tasks = self.store.tasks_for(intent.id)
            intents.append(
                {
                    "id": intent.id,
                    "title": intent.title,
                    "kind": intent.kind,
                    "risk": intent.risk,
                    "status": intent.status,
                    "paused": intent.paused,
                    "parent_id": intent.parent_id,
                    "failure_reason": intent.failure_reason,
                    "tasks": [
                        {
                            "id": task.id,
                            "status": task.status,
                            "attempts": task.attempts,
                            "isolate_path": task.isolate_path,
                            "failure_reason": task.failure_reason,
                        }
                        for task in tasks
                    ],
                }
            )
        return {
            "intents": intents,
            "inbox": len(self.store.inbox()),
            "concurrency": self.coordinator.snapshot(),
        }

    def clean(self) -> list[str]:
        """Destroy isolates of terminal tasks and isolates no task owns."""
        base_ref = self.config.project.base_ref
        live: set[str] = set()
        removed: list[str] = []
        for task in self.store.all_tasks():
            if not task.terminal:
                live.add(task.id)
                continue
            if task.isolate_path:
                self.isolates.destroy(self.isolates.handle_for(task.id, base_ref))
                task.isolate_path = None
                self.store.put_task(task)
                removed.append(task.id)
        for name in self.isolates.list_names():
            if name not in live and name not in removed:
                self.isolates.destroy(self.isolates.handle_for(name, base_ref))
                removed.append(name)
        return removed

    # Loop

    def runnable_intents(self) -> list[Intent]:
        return self.store.list_where(
            lambda intent: intent.status in {INTENT_APPROVED, EXECUTING} and not intent.paused
        )

    def _apply_approval_gate(self) -> None:
        threshold = self.config.workflow.auto_approve_risk
        for intent in self.store.list_where(lambda item: item.status == PROPOSED):
            risk = intent.risk or classify(intent).risk
            if risk_at_least(threshold, risk):
                intent.status = INTENT_APPROVED
                self.store.put(intent)
                LOGGER.info("auto-approved %s (risk=%s)", intent.id, risk)

    def _recover_interrupted(self) -> None:
        for task in self.store.all_tasks():
            if task.status == RUNNING:
                LOGGER.warning("task %s was interrupted; returning it to pending", task.id)
                task.status = PENDING
                task.started_at = None
                self.store.put_task(task)

    async def run_once(self) -> RunSummary:
        summary = RunSummary(started_at=utcnow_iso())
        self._recover_interrupted()
        seen: set[str] = set()
        while True:
            self._apply_approval_gate()
            batch = [intent for intent in self.runnable_intents() if intent.id not in seen]
            if not batch:
                break
            seen.update(intent.id for intent in batch)
            runs = await asyncio.gather(*(self._run_intent(intent) for intent in batch))
            for run in runs:
                summary.outcomes[run.intent.id] = run.record.outcome
                summary.steps += len(run.record.steps)
        summary.ended_at = utcnow_iso()
        return summary

    async def watch(self, *, max_cycles: int | None = None) -> list[RunSummary]:
        summaries: list[RunSummary] = []
        while True:
            summaries.append(await self.run_once())
            if max_cycles is not None and len(summaries) >= max_cycles:
                return summaries
            await asyncio.sleep(self.config.workflow.poll_interval_seconds)

    async def _isolate_call(self, label: str, func: Callable[..., Any], *args: Any) -> Any:
        async with self.coordinator.permit(ISOLATE, label):
            return await asyncio.to_thread(func, *args)

    async def _invoke(
        self,
        label: str,
        step_kind: str,
        step_input: dict[str, Any],
        resume_token: str | None = None,
        *,
        working_directory: Path | None = None,
        model: str | None = None,
    ) -> StepResult | StepFailure:
        async with self.coordinator.permit(AGENT, label):
            return await self.gateway.invoke(
                step_kind,
                step_input,
                resume_token,
                working_directory=str(working_directory) if working_directory else None,
                model=model,
            )

    def _apply(
        self,
        flow: FlowState,
        decision: FlowDecision,
        step: str,
        outcome: StepOutcome,
        record: HistoryRecord,
        *,
        label: str,
    ) -> None:
        flow.apply(decision, step)
        record.add_step(
            step,
            outcome.result,
            task_id=outcome.task_id,
            duration_ms=outcome.duration_ms,
            adjustment=type(decision).__name__,
        )
        entry = dict(flow.adjustments[-1])
        entry["task_id"] = outcome.task_id
        record.adjustments.append(entry)
        LOGGER.info(
            "%s %s -> %s (%d ms) [%s]",
            label,
            step,
            outcome.result,
            outcome.duration_ms,
            type(decision).__name__,
        )

    # Intent scope

    async def _run_intent(self, intent: Intent) -> _IntentRun:
        classification = classify(intent)
        flow = FlowState.for_intent(
            classification.template,
            max_retries=self.config.workflow.max_review_retries,
        )
        run = _IntentRun(intent=intent, flow=flow, record=HistoryRecord(intent_id=intent.id))
        if intent.status == INTENT_APPROVED:
            intent.status = EXECUTING
            self.store.put(intent)

        if self.store.tasks_for(intent.id) and IMPLEMENT in flow.steps:
            # Analysis already ran in an earlier pass; continue with its tasks.
            flow.seek(IMPLEMENT)

        while not flow.finished:
            step = flow.current
            if step in TASK_STEPS:
                await self._run_task_phase(run)
                flow.apply(settle(flow), step)
                run.record.adjustments.append(dict(flow.adjustments[-1], task_id=None))
                continue

            started = time.monotonic()
            if step == ANALYZE:
                outcome = await self._analyze(run)
            elif step == REFLECT:
                outcome = await self._reflect(run)
            elif step == AUDIT:
                outcome = await self._audit(run)
            elif step == REPORT:
                outcome = await self._report(run)
            else:
                outcome = StepOutcome(step, FAILED, {"error": f"no handler for step '{step}'"})
            outcome.duration_ms = int((time.monotonic() - started) * 1000)

            decision = adjust(flow, step, outcome)
            if isinstance(decision, PauseForHuman):
                intent.pending_questions.extend(
                    Clarification(question=question) for question in decision.questions
                )
                intent.resume_token = outcome.resume_token or intent.resume_token
                run.paused = True
            self._apply(flow, decision, step, outcome, run.record, label=intent.id)
            self.store.put(intent)
            if run.paused:
                break

        self._finish_intent(run)
        return run

    def _finish_intent(self, run: _IntentRun) -> None:
        intent, flow, record = run.intent, run.flow, run.record
        if run.paused:
            record.outcome = "paused"
            LOGGER.info("%s paused for clarification", intent.id)
        else:
            final = flow.halted or aggregate_status(flow.task_statuses)
            intent.status = final
            intent.failure_reason = None if final == DONE else flow.halt_reason
            issues: list[str] = []
            for task in self.store.tasks_for(intent.id):
                if task.status == TASK_FAILED:
                    issues.extend(task.last_issues or [task.failure_reason or "failed"])
                    if intent.failure_reason is None:
                        intent.failure_reason = f"task {task.id}: {task.failure_reason}"
            intent.last_issues = issues
            record.outcome = final
            record.failure_reason = intent.failure_reason
            LOGGER.info("%s finished: %s", intent.id, final)
        self.store.put(intent)
        self.history.append(record)

    def _active_work(self, intent_id: str) -> list[dict[str, Any]]:
        active: list[dict[str, Any]] = []
        for other in self.store.list_where(lambda item: item.status == EXECUTING):
            if other.id == intent_id:
                continue
            for task in self.store.tasks_for(other.id):
                if task.status == RUNNING:
                    active.append(
                        {
                            "intent_id": other.id,
                            "task_id": task.id,
                            "title": task.title,
                            "relevant_paths": list(task.relevant_paths),
                        }
                    )
        return active

    async def _analyze(self, run: _IntentRun) -> StepOutcome:
        intent = run.intent
        clarifications = intent.answered_questions()
        step_input = {
            "intent": _intent_view(intent),
            "clarifications": clarifications,
            "active_work": self._active_work(intent.id),
        }
        resume_token = intent.resume_token if clarifications else None
        result = await self._invoke(
            f"{intent.id}:analyze",
            ANALYZE,
            step_input,
            resume_token,
            working_directory=self.isolates.repo_root,
            model=self.config.agents.analyze_model,
        )
        if isinstance(result, StepFailure):
            return StepOutcome(ANALYZE, FAILED, {"error": result.reason})
        outcome = self._interpret_analysis(run, result)
        if outcome is not None:
            return outcome

        # Insufficient plan: one fresh pass on the complex model before asking a human.
        LOGGER.info(
            "%s: analysis insufficient, escalating to %s",
            intent.id,
            self.config.agents.complex_model,
        )
        deep = await self._invoke(
            f"{intent.id}:architect",
            ANALYZE,
            {**step_input, "previous_analysis": result.outputs},
            None,
            working_directory=self.isolates.repo_root,
            model=self.config.agents.complex_model,
        )
        if isinstance(deep, StepFailure):
            return StepOutcome(ANALYZE, FAILED, {"error": deep.reason})
        outcome = self._interpret_analysis(run, deep)
        if outcome is not None:
            outcome.payload["escalated"] = True
            return outcome
        message = str(deep.outputs.get("message", "")).strip() or INSUFFICIENT_ANALYSIS
        return StepOutcome(
            ANALYZE,
            NEEDS_CLARIFICATION,
            {"questions": [message], "escalated": True},
            resume_token=deep.resume_token,
        )

    def _interpret_analysis(self, run: _IntentRun, result: StepResult) -> StepOutcome | None:
        """Map an analyze reply to an outcome, or None when the plan is insufficient."""
        intent = run.intent
        outputs = result.outputs
        risk = str(outputs.get("risk", "")).strip().lower()
        if risk in RISK_ORDER:
            intent.risk = risk

        questions = _string_list(outputs.get("questions"))
        if questions:
            return StepOutcome(
                ANALYZE,
                NEEDS_CLARIFICATION,
                {"questions": questions},
                resume_token=result.resume_token,
            )

        sub_intents = outputs.get("sub_intents")
        if isinstance(sub_intents, list) and sub_intents:
            created = self._register_children(intent, sub_intents)
            if created:
                run.flow.has_sub_intents = True
                return StepOutcome(ANALYZE, PRODUCED_SUB_INTENTS, {"sub_intents": created})

        tasks = self._tasks_from_outputs(intent, outputs)
        if not tasks or not all(task.plan.strip() for task in tasks):
            return None
        for task in tasks:
            self.store.put_task(task)
        intent.resume_token = result.resume_token or intent.resume_token
        return StepOutcome(
            ANALYZE,
            PRODUCED_SUBTASKS,
            {"tasks": [task.id for task in tasks]},
            resume_token=result.resume_token,
        )

    def _register_children(
        self,
        parent: Intent,
        drafts: list[Any],
        *,
        origin: str | None = None,
    ) -> list[str]:
        created: list[str] = []
        for draft in drafts:
            if not isinstance(draft, dict) or not str(draft.get("title", "")).strip():
                continue
            child = self.create_intent(
                str(draft["title"]),
                str(draft.get("body", "")),
                kind=str(draft.get("kind") or parent.kind),
                labels=_string_list(draft.get("labels")),
                origin=origin or parent.origin,
                parent_id=parent.id,
            )
            created.append(child.id)
        return created

    def _tasks_from_outputs(self, intent: Intent, outputs: dict[str, Any]) -> list[Task]:
        drafts = outputs.get("tasks")
        if not isinstance(drafts, list) or not drafts:
            if not str(outputs.get("plan", "")).strip():
                return []
            # Single-plan answer: one task covering the whole intent.
            drafts = [
                {
                    "id": "t1",
                    "title": intent.title,
                    "plan": outputs["plan"],
                    "relevant_paths": outputs.get("relevant_files", []),
                    "steps": outputs.get("implementation_steps", []),
                    "complexity": outputs.get("complexity"),
                }
            ]

        entries = [draft for draft in drafts if isinstance(draft, dict)]
        local_ids = [str(draft.get("id") or f"t{index}") for index, draft in enumerate(entries, 1)]
        id_map = {local: f"{intent.id}--{slugify(local)}" for local in local_ids}
        tasks: list[Task] = []
        for local, draft in zip(local_ids, entries, strict=True):
            complexity = str(draft.get("complexity") or "medium").lower()
            if complexity not in COMPLEXITY_TIERS:
                complexity = "medium"
            tasks.append(
                Task(
                    id=id_map[local],
                    intent_id=intent.id,
                    title=str(draft.get("title") or local),
                    plan=str(draft.get("plan", "")),
                    relevant_paths=_string_list(
                        draft.get("relevant_paths", draft.get("relevant_files"))
                    ),
                    steps=_string_list(draft.get("steps", draft.get("implementation_steps"))),
                    complexity=complexity,
                    depends_on=[
                        id_map.get(dep, dep) for dep in _string_list(draft.get("depends_on"))
                    ],
                )
            )
        return tasks

    async def _reflect(self, run: _IntentRun) -> StepOutcome:
        intent = run.intent
        aggregate = aggregate_status(run.flow.task_statuses)
        step_input = {
            "intent": _intent_view(intent),
            "outcome": aggregate,
            "tasks": [
                {
                    "id": task.id,
                    "title": task.title,
                    "status": task.status,
                    "attempts": task.attempts,
                    "conflict_cycles": task.conflict_cycles,
                    "failure_reason": task.failure_reason,
                    "last_issues": task.last_issues,
                }
                for task in self.store.tasks_for(intent.id)
            ],
        }
        result = await self._invoke(
            f"{intent.id}:reflect",
            REFLECT,
            step_input,
            working_directory=self.isolates.repo_root,
            model=self.config.agents.default_model,
        )
        if isinstance(result, StepFailure):
            return StepOutcome(REFLECT, FAILED, {"error": result.reason})
        observations = _string_list(result.outputs.get("observations"))
        if observations:
            self.knowledge.append(intent.id, observations, outcome=aggregate)
        return StepOutcome(REFLECT, SUCCEEDED, {"observations": observations})

    async def _audit(self, run: _IntentRun) -> StepOutcome:
        intent = run.intent
        result = await self._invoke(
            f"{intent.id}:audit",
            AUDIT,
            {"intent": _intent_view(intent)},
            working_directory=self.isolates.repo_root,
            model=self.config.agents.analyze_model,
        )
        if isinstance(result, StepFailure):
            return StepOutcome(AUDIT, FAILED, {"error": result.reason})
        run.findings = _string_list(result.outputs.get("findings"))
        drafts = result.outputs.get("intents")
        discovered: list[str] = []
        if isinstance(drafts, list):
            discovered = self._register_children(intent, drafts, origin="automated")
        payload = {"findings": run.findings, "discovered": discovered}
        return StepOutcome(AUDIT, PRODUCED_SUB_INTENTS if discovered else SUCCEEDED, payload)

    async def _report(self, run: _IntentRun) -> StepOutcome:
        intent = run.intent
        discovered = [child.id for child in self.store.children_of(intent.id)]
        result = await self._invoke(
            f"{intent.id}:report",
            REPORT,
            {"intent": _intent_view(intent), "findings": run.findings, "discovered": discovered},
            working_directory=self.isolates.repo_root,
            model=self.config.agents.default_model,
        )
        if isinstance(result, StepFailure):
            return StepOutcome(REPORT, FAILED, {"error": result.reason})
        summary = str(result.outputs.get("summary", "")).strip()
        payload: dict[str, Any] = {"summary": summary}
        if self.reports_dir is not None:
            self.reports_dir.mkdir(parents=True, exist_ok=True)
            path = self.reports_dir / f"{intent.id}.md"
            path.write_text(summary + "\n", encoding="utf-8")
            payload["path"] = str(path)
        return StepOutcome(REPORT, SUCCEEDED, payload)

    # Task scope

    @staticmethod
    def _ready_tasks(tasks: dict[str, Task], running: set[str]) -> list[Task]:
        ready: list[Task] = []
        for task in tasks.values():
            if task.status != PENDING or task.id in running:
                continue
            if all(
                dep_id in tasks and tasks[dep_id].status == TASK_DONE
                for dep_id in task.depends_on
            ):
                ready.append(task)
        return ready

    async def _run_task_phase(self, run: _IntentRun) -> None:
        tasks = {task.id: task for task in self.store.tasks_for(run.intent.id)}
        for task in tasks.values():
            if task.terminal:
                run.flow.note_task(task.id, task.status)

        running: dict[str, asyncio.Task[Task]] = {}
        while True:
            for task in self._ready_tasks(tasks, set(running)):
                run.record.dispatch_order.append(task.id)
                task.status = RUNNING
                task.started_at = utcnow_iso()
                self.store.put_task(task)
                running[task.id] = asyncio.create_task(self._run_task(run, task))
            if not running:
                break
            finished, _ = await asyncio.wait(running.values(), return_when=asyncio.FIRST_COMPLETED)
            for future in finished:
                task = future.result()
                running.pop(task.id)
                tasks[task.id] = task
                run.flow.note_task(task.id, task.status)

        deferred = [task.id for task in tasks.values() if task.status == PENDING]
        if deferred:
            LOGGER.warning(
                "%s: deferred tasks with unmet dependencies: %s", run.intent.id, deferred
            )

    def _model_for(self, task: Task) -> str:
        if task.complexity == "high":
            return self.config.agents.complex_model
        return self.config.agents.default_model

    async def _prepare_isolate(self, task: Task) -> IsolateHandle:
        handle = await self._isolate_call(
            f"{task.id}:create",
            self.isolates.create,
            task.id,
            self.config.project.base_ref,
        )
        if self.config.project.setup_commands:
            await self._isolate_call(
                f"{task.id}:setup",
                self.isolates.run_setup,
                handle,
                self.config.project.setup_commands,
            )
        return handle

    async def _run_task(self, run: _IntentRun, task: Task) -> Task:
        label = f"{run.intent.id}/{task.id}"
        flow = FlowState.for_task(max_retries=self.config.workflow.max_review_retries)
        try:
            handle = await self._prepare_isolate(task)
        except IsolateError as exc:
            outcome = StepOutcome(IMPLEMENT, FAILED, {"error": str(exc)}, task_id=task.id)
            decision = Halt(TASK_FAILED, f"isolate: {exc}")
            self._apply(flow, decision, IMPLEMENT, outcome, run.record, label=label)
            return self._settle_task(task, flow, None)
        task.isolate_path = str(handle.path)
        task.branch = handle.branch
        self.store.put_task(task)

        feedback: list[str] = list(task.last_issues)
        current: IsolateHandle | None = handle
        while current is not None and not flow.finished:
            step = flow.current
            started = time.monotonic()
            try:
                if step == IMPLEMENT:
                    outcome = await self._implement(run, task, current, feedback, task.resume_token)
                elif step == REBASE:
                    outcome, current = await self._rebase(run, task, current)
                elif step == REVIEW:
                    outcome = await self._review(run, task, current)
                else:
                    outcome, current = await self._integrate(run, task, current)
            except IsolateError as exc:
                LOGGER.error("%s: isolate failure during %s: %s", label, step, exc)
                outcome = StepOutcome(step, FAILED, {"error": str(exc)}, task_id=task.id)
                outcome.duration_ms = int((time.monotonic() - started) * 1000)
                halt = Halt(TASK_FAILED, f"isolate: {exc}")
                self._apply(flow, halt, step, outcome, run.record, label=label)
                break
            outcome.task_id = task.id
            if not outcome.duration_ms:
                outcome.duration_ms = int((time.monotonic() - started) * 1000)

            decision = adjust(flow, step, outcome)
            if isinstance(decision, RetryStep):
                feedback = list(decision.extra_context.get("feedback", []))
                task.last_issues = feedback
            self._apply(flow, decision, step, outcome, run.record, label=label)
            self.store.put_task(task)

        return await self._finish_task(task, flow, current)

    def _settle_task(self, task: Task, flow: FlowState, handle: IsolateHandle | None) -> Task:
        task.status = TASK_DONE if flow.halted == TASK_DONE else TASK_FAILED
        task.failure_reason = None if task.status == TASK_DONE else flow.halt_reason
        task.completed_at = utcnow_iso()
        task.isolate_path = str(handle.path) if handle is not None else None
        self.store.put_task(task)
        return task

    async def _finish_task(
        self, task: Task, flow: FlowState, handle: IsolateHandle | None
    ) -> Task:
        if flow.halted != TASK_DONE or handle is None:
            return self._settle_task(task, flow, handle)
        task.last_issues = []
        try:
            await self._isolate_call(f"{task.id}:destroy", self.isolates.destroy, handle)
        except IsolateError as exc:
            # Already merged; `clean` removes the leftover worktree later.
            LOGGER.warning("%s: could not remove isolate %s: %s", task.id, handle.path, exc)
            return self._settle_task(task, flow, handle)
        return self._settle_task(task, flow, None)

    async def _implement(
        self,
        run: _IntentRun,
        task: Task,
        handle: IsolateHandle,
        feedback: list[str],
        resume_token: str | None,
    ) -> StepOutcome:
        task.attempts += 1
        before = await self._isolate_call(f"{task.id}:count", self.isolates.commit_count, handle)
        result = await self._invoke(
            f"{task.id}:implement",
            IMPLEMENT,
            {"intent": _intent_view(run.intent), "task": task.to_dict(), "feedback": feedback},
            resume_token,
            working_directory=handle.path,
            model=self._model_for(task),
        )
        if isinstance(result, StepFailure):
            return StepOutcome(IMPLEMENT, FAILED, {"issues": [f"agent failure: {result.reason}"]})
        task.resume_token = result.resume_token or task.resume_token

        after = await self._isolate_call(f"{task.id}:count", self.isolates.commit_count, handle)
        if after <= before:
            return StepOutcome(
                IMPLEMENT,
                FAILED,
                {"issues": ["implementation produced no new commits"]},
                resume_token=task.resume_token,
            )

        test_command = self.config.project.test_command
        if test_command:
            check = await self._isolate_call(
                f"{task.id}:test", self.isolates.run_command, handle, test_command
            )
            if not check.ok:
                return StepOutcome(
                    IMPLEMENT,
                    FAILED,
                    {"issues": [f"`{test_command}` failed:\n{check.output_tail()}"]},
                    resume_token=task.resume_token,
                )
        return StepOutcome(
            IMPLEMENT,
            SUCCEEDED,
            {"summary": result.outputs.get("summary", ""), "commits": after},
            resume_token=task.resume_token,
        )

    def _reimplementer(self, run: _IntentRun) -> Reimplement:
        async def _reimplement(current: Task, handle: IsolateHandle) -> bool:
            started = time.monotonic()
            # The previous session belongs to the discarded isolate; start a fresh one.
            current.resume_token = None
            outcome = await self._implement(
                run,
                current,
                handle,
                ["The base moved and your earlier work no longer applies cleanly. "
                 "Implement the same plan again on top of the current base."],
                None,
            )
            outcome.task_id = current.id
            outcome.duration_ms = int((time.monotonic() - started) * 1000)
            run.record.add_step(
                IMPLEMENT,
                outcome.result,
                task_id=current.id,
                duration_ms=outcome.duration_ms,
                adjustment="ConflictReimplement",
            )
            current.isolate_path = str(handle.path)
            self.store.put_task(current)
            return outcome.result == SUCCEEDED

        return _reimplement

    async def _rebase(
        self, run: _IntentRun, task: Task, handle: IsolateHandle
    ) -> tuple[StepOutcome, IsolateHandle | None]:
        status = await self._isolate_call(f"{task.id}:rebase", self.isolates.rebase, handle)
        if status == "ok":
            return StepOutcome(REBASE, SUCCEEDED), handle
        resolution = await self.resolver.resolve(
            task, handle, merge=False, reimplement=self._reimplementer(run)
        )
        payload = {"resolution": resolution.status, "stage": resolution.stage}
        if not resolution.ok:
            payload["error"] = resolution.reason
            return StepOutcome(REBASE, FAILED, payload), resolution.handle
        return StepOutcome(REBASE, SUCCEEDED, payload), resolution.handle

    async def _review(self, run: _IntentRun, task: Task, handle: IsolateHandle) -> StepOutcome:
        diff = await self._isolate_call(f"{task.id}:diff", self.isolates.diff, handle)
        result = await self._invoke(
            f"{task.id}:review",
            REVIEW,
            {"intent": _intent_view(run.intent), "task": task.to_dict(), "diff": diff},
            working_directory=handle.path,
            model=self.config.agents.default_model,
        )
        if isinstance(result, StepFailure):
            return StepOutcome(REVIEW, FAILED, {"issues": [f"review failed: {result.reason}"]})
        issues = _string_list(result.outputs.get("issues"))
        payload = {"issues": issues, "suggestions": _string_list(result.outputs.get("suggestions"))}
        if result.outputs.get("approved") is True:
            return StepOutcome(REVIEW, APPROVED, payload)
        if not issues:
            payload["issues"] = ["review rejected without listing issues"]
        return StepOutcome(REVIEW, REJECTED, payload)

    async def _integrate(
        self, run: _IntentRun, task: Task, handle: IsolateHandle
    ) -> tuple[StepOutcome, IsolateHandle | None]:
        status = await self._isolate_call(f"{task.id}:merge", self.isolates.merge_into_base, handle)
        if status == "ok":
            return StepOutcome(INTEGRATE, SUCCEEDED), handle
        resolution = await self.resolver.resolve(
            task, handle, merge=True, reimplement=self._reimplementer(run)
        )
        payload: dict[str, Any] = {"resolution": resolution.status, "stage": resolution.stage}
        if not resolution.ok:
            payload["error"] = resolution.reason
            return StepOutcome(INTEGRATE, FAILED, payload), resolution.handle
        if resolution.status == "reimplemented":
            payload["reimplemented"] = True
        return StepOutcome(INTEGRATE, SUCCEEDED, payload), resolution.handle
