from __future__ import annotations

import json
from typing import Any

from intentflow.models import REPORT
from intentflow.specialists.base import SpecialistAgent


class ReporterAgent(SpecialistAgent):
    role = "reporter"
    step_kind = REPORT
    fallback_prompt = """
You are the Reporter specialist.
Summarize audit findings for a maintainer in a few short paragraphs of Markdown.
""".strip()

    def build_instruction(self, step_input: dict[str, Any]) -> str:
        return "Write the audit report for these results:\n\n" + json.dumps(
            step_input, ensure_ascii=False, indent=2
        )
