from __future__ import annotations

from typing import Any

from intentflow.models import REVIEW
from intentflow.specialists.base import READ_ONLY_TOOLS, SpecialistAgent

MAX_DIFF_CHARS = 50_000


def truncate_diff(diff: str, limit: int = MAX_DIFF_CHARS) -> str:
    if len(diff) <= limit:
        return diff
    return diff[:limit] + f"\n... (diff truncated, {len(diff) - limit} more characters)"


class ReviewerAgent(SpecialistAgent):
    role = "reviewer"
    step_kind = REVIEW
    default_tools = READ_ONLY_TOOLS
    fallback_prompt = """
You are the Reviewer specialist.
Check the diff against the plan for correctness, maintainability, and security issues.
Answer with a single JSON object and nothing else:
{"approved": true|false, "issues": ["..."], "suggestions": ["..."]}
Only list blocking problems under issues.
""".strip()

    def build_instruction(self, step_input: dict[str, Any]) -> str:
        intent = step_input.get("intent", {})
        task = step_input.get("task", {})
        diff = truncate_diff(str(step_input.get("diff", "")))
        return "\n".join(
            [
                f"## Intent {intent.get('id')}: {intent.get('title')}",
                "",
                str(intent.get("body", "")).strip(),
                "",
                "## Implementation plan",
                str(task.get("plan", "")).strip(),
                "",
                "## Diff",
                "",
                "```diff",
                diff,
                "```",
            ]
        ).strip()
