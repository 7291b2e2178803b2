from __future__ import annotations

from typing import Any

from intentflow.models import IMPLEMENT
from intentflow.specialists.base import SpecialistAgent, bullet_list


class ImplementerAgent(SpecialistAgent):
    role = "implementer"
    step_kind = IMPLEMENT
    fallback_prompt = """
You are the Implementer specialist working inside an isolated git worktree.
Implement exactly what was planned and match repository conventions.
Commit your work with git before you finish; uncommitted changes are discarded.
Finish with a short summary of what changed.
""".strip()

    def build_instruction(self, step_input: dict[str, Any]) -> str:
        task = step_input.get("task", {})
        parts = [
            f"## Task {task.get('id')}: {task.get('title')}",
            "",
            "## Plan",
            str(task.get("plan", "")).strip(),
            "",
            "## Steps",
            bullet_list([str(item) for item in task.get("steps", [])]),
            "",
            "## Relevant files",
            bullet_list([str(item) for item in task.get("relevant_paths", [])]),
        ]
        feedback = step_input.get("feedback") or []
        if feedback:
            parts.extend(
                [
                    "",
                    "## Review feedback from the previous attempt",
                    bullet_list([str(item) for item in feedback]),
                    "",
                    "Address every point above, then commit again.",
                ]
            )
        return "\n".join(parts).strip()
