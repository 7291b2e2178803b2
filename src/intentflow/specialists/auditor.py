from __future__ import annotations

from typing import Any

from intentflow.models import AUDIT
from intentflow.specialists.base import READ_ONLY_TOOLS, SpecialistAgent


class AuditorAgent(SpecialistAgent):
    role = "auditor"
    step_kind = AUDIT
    default_tools = READ_ONLY_TOOLS
    fallback_prompt = """
You are the Auditor specialist.
Inspect the code base for bugs, missing tests, and risky code.
Do not change any files.
Answer with a single JSON object and nothing else:
{"findings": ["..."], "intents": [{"title": "...", "body": "...", "kind": "fix",
  "labels": ["..."]}]}
Only propose intents that are concrete and independently actionable.
""".strip()

    def build_instruction(self, step_input: dict[str, Any]) -> str:
        intent = step_input.get("intent", {})
        body = str(intent.get("body", "")).strip()
        return body or "Audit the whole repository."
