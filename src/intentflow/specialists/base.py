from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from intentflow.backends.base import AgentBackend

TOOL_POLICY_ALLOWLIST = {
    "Bash",
    "Read",
    "Write",
    "Edit",
    "MultiEdit",
    "Glob",
    "Grep",
    "LS",
    "NotebookEdit",
    "TodoWrite",
    "WebFetch",
    "WebSearch",
}

READ_ONLY_TOOLS = ["Read", "Glob", "Grep", "LS"]


@dataclass(slots=True)
class SpecialistResponse:
    role: str
    content: str
    resume_token: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class SpecialistAgent:
    """One agent capability bound to a step kind.

    Subclasses provide the system prompt and turn the structured step input into the
    user prompt sent to the backend.
    """

    role: str = "specialist"
    step_kind: str = ""
    fallback_prompt: str = "You are a software specialist."
    default_tools: list[str] | None = None

    def __init__(self, backend: AgentBackend, *, model: str | None = None) -> None:
        self.backend = backend
        self.model = model
        self.system_prompt = self.fallback_prompt.strip()

    @staticmethod
    def _normalize_allowed_tools(allowed_tools: list[str] | None) -> list[str] | None:
        if not allowed_tools:
            return None
        normalized = sorted({str(tool).strip() for tool in allowed_tools if str(tool).strip()})
        unknown = [tool for tool in normalized if tool not in TOOL_POLICY_ALLOWLIST]
        if unknown:
            raise RuntimeError(
                "Tool policy rejected unknown tools for specialist run: "
                + ", ".join(unknown)
            )
        return normalized

    def build_instruction(self, step_input: dict[str, Any]) -> str:
        return json.dumps(step_input, ensure_ascii=False, indent=2)

    async def run(
        self,
        step_input: dict[str, Any],
        *,
        working_directory: str | None = None,
        allowed_tools: list[str] | None = None,
        resume_token: str | None = None,
        model: str | None = None,
    ) -> SpecialistResponse:
        run_context: dict[str, Any] = {}
        chosen_model = model or self.model
        if chosen_model:
            run_context["model"] = chosen_model
        if working_directory:
            run_context["_working_directory"] = working_directory
        tools = self._normalize_allowed_tools(
            allowed_tools if allowed_tools is not None else self.default_tools
        )

        instruction = self.build_instruction(step_input)
        reply = await self.backend.execute(
            system_prompt=self.system_prompt,
            user_prompt=instruction,
            context=run_context,
            tools=tools,
            resume_token=resume_token,
        )
        return SpecialistResponse(
            role=self.role,
            content=reply.content.strip(),
            resume_token=reply.resume_token,
            metadata={
                "step_kind": self.step_kind,
                "backend": reply.backend,
                "tool_mode": bool(tools),
                "allowed_tools": list(tools or []),
                "resumed": bool(resume_token),
            },
        )


def bullet_list(items: list[str]) -> str:
    return "\n".join(f"- {item}" for item in items) or "- (none)"
