from __future__ import annotations

import json
from typing import Any

from intentflow.models import REFLECT
from intentflow.specialists.base import SpecialistAgent


class ReflectorAgent(SpecialistAgent):
    role = "reflector"
    step_kind = REFLECT
    fallback_prompt = """
You are the Reflector specialist.
Look back at a finished intent and record what future runs should know.
Answer with a single JSON object and nothing else:
{"observations": ["..."]}
""".strip()

    def build_instruction(self, step_input: dict[str, Any]) -> str:
        return "Reflect on this finished intent:\n\n" + json.dumps(
            step_input, ensure_ascii=False, indent=2
        )
