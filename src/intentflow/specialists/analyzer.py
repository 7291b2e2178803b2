from __future__ import annotations

import json
from typing import Any

from intentflow.models import ANALYZE
from intentflow.specialists.base import READ_ONLY_TOOLS, SpecialistAgent


class AnalyzerAgent(SpecialistAgent):
    role = "analyzer"
    step_kind = ANALYZE
    default_tools = READ_ONLY_TOOLS
    fallback_prompt = """
You are the Analyzer specialist.
Read the repository and turn the intent into an implementation plan.
You produce plans, not code.

Answer with a single JSON object and nothing else. Use exactly one of these shapes:

{"questions": ["..."]}
  when the intent is too ambiguous to plan without a maintainer's answer.

{"sub_intents": [{"title": "...", "body": "...", "kind": "feature"}]}
  when the intent is too large and must be split into independent intents.

{"risk": "low|medium|high", "tasks": [{"id": "t1", "title": "...", "plan": "...",
  "relevant_paths": ["..."], "steps": ["..."], "complexity": "low|medium|high",
  "depends_on": []}]}
  otherwise. depends_on lists ids of tasks in the same answer that must land first.
  Every task needs a non-empty plan.

{"message": "..."}
  only when a previous attempt is shown and you still cannot produce a plan; say what
  a maintainer has to clarify.

Avoid tasks that touch files other active work is already changing.
""".strip()

    def build_instruction(self, step_input: dict[str, Any]) -> str:
        intent = step_input.get("intent", {})
        labels = ", ".join(intent.get("labels", [])) or "(none)"
        parts = [
            f"Intent {intent.get('id')}: {intent.get('title')}",
            f"Kind: {intent.get('kind')}  Labels: {labels}",
            "",
            str(intent.get("body", "")).strip(),
        ]
        answers = step_input.get("clarifications") or []
        if answers:
            parts.append("\n## Clarification from maintainer")
            for item in answers:
                parts.append(f"Q: {item['question']}\nA: {item['answer']}")
            parts.append(
                "\nUse your previous analysis as a starting point and update the plan."
            )
        active = step_input.get("active_work") or []
        if active:
            parts.append("\n## Work already in progress")
            for entry in active:
                paths = ", ".join(entry.get("relevant_paths", [])) or "-"
                parts.append(f"- {entry.get('intent_id')} / {entry.get('task_id')}: {paths}")
        previous = step_input.get("previous_analysis")
        if previous:
            parts.append("\n## Previous analysis attempt (insufficient)")
            parts.append(json.dumps(previous, ensure_ascii=False, indent=2))
            parts.append("\nProduce a complete plan this time, or explain what is missing.")
        return "\n".join(parts).strip()
