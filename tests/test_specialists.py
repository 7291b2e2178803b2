import asyncio
from typing import Any

import pytest

from intentflow.backends.base import AgentBackend, AgentReply
from intentflow.specialists import AnalyzerAgent, AuditorAgent, ImplementerAgent, ReviewerAgent
from intentflow.specialists.reviewer import truncate_diff


class FakeBackend(AgentBackend):
    def __init__(self) -> None:
        self.execute_calls = 0
        self.last_prompt: str | None = None
        self.last_context: dict[str, Any] | None = None
        self.last_tools: list[str] | None = None
        self.last_resume_token: str | None = None

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
        resume_token: str | None = None,
    ) -> AgentReply:
        _ = system_prompt
        self.execute_calls += 1
        self.last_prompt = user_prompt
        self.last_context = context
        self.last_tools = tools
        self.last_resume_token = resume_token
        return AgentReply(content="  done  ", resume_token="claude:s-1", backend="claude")


def _intent(**overrides: Any) -> dict[str, Any]:
    intent = {
        "id": "add-sso",
        "title": "Add SSO",
        "body": "Support GitHub login.",
        "kind": "feature",
        "labels": ["auth"],
    }
    intent.update(overrides)
    return intent


def test_analyzer_uses_read_only_tools_and_context() -> None:
    backend = FakeBackend()
    analyzer = AnalyzerAgent(backend, model="sonnet")

    response = asyncio.run(
        analyzer.run(
            {"intent": _intent(), "clarifications": [], "active_work": []},
            working_directory="/repo",
            resume_token="claude:prev",
        )
    )

    assert response.role == "analyzer"
    assert response.content == "done"
    assert response.resume_token == "claude:s-1"
    assert response.metadata["resumed"] is True
    assert backend.last_tools == ["Glob", "Grep", "LS", "Read"]
    assert backend.last_context == {"model": "sonnet", "_working_directory": "/repo"}
    assert backend.last_resume_token == "claude:prev"
    assert backend.last_prompt is not None
    assert backend.last_prompt.startswith("Intent add-sso: Add SSO")


def test_analyzer_instruction_includes_answers_and_active_work() -> None:
    analyzer = AnalyzerAgent(FakeBackend())

    instruction = analyzer.build_instruction(
        {
            "intent": _intent(),
            "clarifications": [{"question": "Which provider?", "answer": "GitHub"}],
            "active_work": [
                {"intent_id": "fix-login", "task_id": "fix-login--t1", "relevant_paths": ["a.py"]}
            ],
        }
    )

    assert "Q: Which provider?\nA: GitHub" in instruction
    assert "- fix-login / fix-login--t1: a.py" in instruction
    assert "Previous analysis attempt" not in instruction


def test_analyzer_instruction_shows_previous_attempt() -> None:
    analyzer = AnalyzerAgent(FakeBackend())

    instruction = analyzer.build_instruction(
        {
            "intent": _intent(),
            "clarifications": [],
            "active_work": [],
            "previous_analysis": {"tasks": [{"id": "t1", "plan": ""}]},
        }
    )

    assert "## Previous analysis attempt (insufficient)" in instruction
    assert '"id": "t1"' in instruction


def test_implementer_lists_feedback_and_uses_given_tools() -> None:
    backend = FakeBackend()
    implementer = ImplementerAgent(backend)

    asyncio.run(
        implementer.run(
            {
                "task": {"id": "t1", "title": "Do it", "plan": "Edit", "steps": ["one"]},
                "feedback": ["missing tests"],
            },
            allowed_tools=["Edit", "Bash", "Edit"],
            model="opus",
        )
    )

    assert backend.last_tools == ["Bash", "Edit"]
    assert backend.last_context == {"model": "opus"}
    assert backend.last_prompt is not None
    assert "- missing tests" in backend.last_prompt
    assert "- one" in backend.last_prompt


def test_specialist_rejects_unknown_tools() -> None:
    backend = FakeBackend()
    implementer = ImplementerAgent(backend)

    with pytest.raises(RuntimeError, match="Tool policy rejected unknown tools"):
        asyncio.run(implementer.run({"task": {}}, allowed_tools=["Read", "rm_rf"]))

    assert backend.execute_calls == 0


def test_reviewer_truncates_large_diffs() -> None:
    reviewer = ReviewerAgent(FakeBackend())
    diff = "+" * 60_000

    instruction = reviewer.build_instruction(
        {"intent": _intent(), "task": {"plan": "Edit"}, "diff": diff}
    )

    assert "diff truncated, 10000 more characters" in instruction
    assert truncate_diff("small") == "small"


def test_auditor_defaults_to_whole_repository() -> None:
    auditor = AuditorAgent(FakeBackend())

    assert auditor.build_instruction({"intent": _intent(body="")}) == "Audit the whole repository."
    assert auditor.build_instruction({"intent": _intent(body="Audit src/")}) == "Audit src/"
