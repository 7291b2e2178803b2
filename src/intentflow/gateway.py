"""Agent Gateway: runs one step kind through its specialist and structures the reply."""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any

from intentflow.backends.base import AgentBackend, BackendExecutionError
from intentflow.config import IntentflowConfig
from intentflow.models import ANALYZE, AUDIT, IMPLEMENT, REFLECT, REPORT, REVIEW
from intentflow.specialists import (
    AnalyzerAgent,
    AuditorAgent,
    ImplementerAgent,
    ReflectorAgent,
    ReporterAgent,
    ReviewerAgent,
    SpecialistAgent,
)

LOGGER = logging.getLogger(__name__)

JSON_STEPS = {ANALYZE, REVIEW, REFLECT, AUDIT}

FENCED_JSON = re.compile(r"```(?:json)?\s*\n(.*?)```", re.DOTALL)


@dataclass(slots=True)
class StepResult:
    outputs: dict[str, Any]
    resume_token: str | None = None
    raw: str = ""
    duration_ms: int = 0


@dataclass(slots=True)
class StepFailure:
    reason: str
    retriable: bool = True
    raw: str = ""
    duration_ms: int = 0
    details: dict[str, Any] = field(default_factory=dict)


def extract_json(text: str) -> dict[str, Any] | None:
    """Pull the first JSON object out of an agent reply.

    Accepts a bare object, an object inside a fenced code block, or an object
    embedded in surrounding prose.
    """
    candidates = [text.strip()]
    candidates.extend(match.group(1).strip() for match in FENCED_JSON.finditer(text))
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start : end + 1])
    for candidate in candidates:
        if not candidate:
            continue
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


class AgentGateway:
    def __init__(
        self,
        specialists: dict[str, SpecialistAgent],
        *,
        allowed_tools: list[str] | None = None,
    ) -> None:
        self.specialists = specialists
        self.allowed_tools = list(allowed_tools or [])

    @classmethod
    def from_backend(cls, backend: AgentBackend, config: IntentflowConfig) -> AgentGateway:
        agents = config.agents
        return cls(
            {
                ANALYZE: AnalyzerAgent(backend, model=agents.analyze_model),
                IMPLEMENT: ImplementerAgent(backend, model=agents.default_model),
                REVIEW: ReviewerAgent(backend, model=agents.default_model),
                REFLECT: ReflectorAgent(backend, model=agents.default_model),
                AUDIT: AuditorAgent(backend, model=agents.analyze_model),
                REPORT: ReporterAgent(backend, model=agents.default_model),
            },
            allowed_tools=agents.allowed_tools,
        )

    async def invoke(
        self,
        step_kind: str,
        step_input: dict[str, Any],
        resume_token: str | None = None,
        *,
        working_directory: str | None = None,
        model: str | None = None,
    ) -> StepResult | StepFailure:
        specialist = self.specialists.get(step_kind)
        if specialist is None:
            return StepFailure(f"No agent configured for step '{step_kind}'", retriable=False)

        tools = self.allowed_tools if step_kind == IMPLEMENT else None
        started = time.monotonic()
        try:
            response = await specialist.run(
                step_input,
                working_directory=working_directory,
                allowed_tools=tools,
                resume_token=resume_token,
                model=model,
            )
        except BackendExecutionError as exc:
            elapsed = int((time.monotonic() - started) * 1000)
            LOGGER.warning("%s agent failed: %s", step_kind, exc)
            return StepFailure(str(exc), retriable=exc.retriable, duration_ms=elapsed)
        except RuntimeError as exc:
            elapsed = int((time.monotonic() - started) * 1000)
            return StepFailure(str(exc), retriable=False, duration_ms=elapsed)
        elapsed = int((time.monotonic() - started) * 1000)

        if step_kind not in JSON_STEPS:
            return StepResult(
                outputs={"summary": response.content},
                resume_token=response.resume_token,
                raw=response.content,
                duration_ms=elapsed,
            )

        parsed = extract_json(response.content)
        if parsed is None:
            LOGGER.warning("%s agent returned no JSON object", step_kind)
            return StepFailure(
                f"{step_kind} agent returned no JSON object",
                raw=response.content,
                duration_ms=elapsed,
                details={"resume_token": response.resume_token},
            )
        return StepResult(
            outputs=parsed,
            resume_token=response.resume_token,
            raw=response.content,
            duration_ms=elapsed,
        )
