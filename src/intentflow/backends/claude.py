from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Any

from intentflow.backends.base import (
    AgentBackend,
    AgentReply,
    BackendExecutionError,
    BackendProcessError,
)


class ClaudeCodeBackend(AgentBackend):
    def __init__(self, binary: str = "claude", working_directory: Path | None = None) -> None:
        self.binary = binary
        self.working_directory = working_directory

    def build_command(
        self,
        system_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
        resume_token: str | None = None,
    ) -> list[str]:
        command = [self.binary, "-p", "--output-format", "json"]
        requested_model = context.get("model")
        if isinstance(requested_model, str) and requested_model.strip():
            command.extend(["--model", requested_model.strip()])
        if system_prompt:
            command.extend(["--append-system-prompt", system_prompt])
        if tools:
            command.extend(["--allowedTools", ",".join(tools)])
        if resume_token:
            command.extend(["--resume", resume_token])
        return command

    @staticmethod
    def _render_prompt(user_prompt: str, context: dict[str, Any]) -> str:
        visible = {key: value for key, value in context.items() if not key.startswith("_")}
        visible.pop("model", None)
        if not visible:
            return user_prompt
        return (
            f"{user_prompt}\n\nContext JSON:\n"
            f"{json.dumps(visible, ensure_ascii=False, indent=2)}"
        )

    @staticmethod
    def parse_output(raw: str) -> AgentReply:
        text = raw.strip()
        try:
            wrapper = json.loads(text)
        except json.JSONDecodeError:
            return AgentReply(content=text, backend="claude")
        if not isinstance(wrapper, dict):
            return AgentReply(content=text, backend="claude")
        if wrapper.get("is_error"):
            raise BackendExecutionError(
                f"Claude reported an error result: {str(wrapper.get('result', ''))[:400]}",
                backend="claude",
                retriable=True,
            )
        result = wrapper.get("result")
        session_id = wrapper.get("session_id")
        return AgentReply(
            content=result if isinstance(result, str) else text,
            resume_token=session_id if isinstance(session_id, str) else None,
            backend="claude",
        )

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
        resume_token: str | None = None,
    ) -> AgentReply:
        command = self.build_command(system_prompt, context, tools, resume_token)
        cwd_override = context.get("_working_directory")
        if isinstance(cwd_override, str) and cwd_override.strip():
            cwd = cwd_override
        else:
            cwd = str(self.working_directory) if self.working_directory else None

        env = os.environ.copy()
        # Allow nested invocation from inside another agent session.
        env.pop("CLAUDECODE", None)
        env.pop("CLAUDE_CODE_ENTRYPOINT", None)

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=cwd,
                env=env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Claude binary not found: {self.binary}",
                backend="claude",
                retriable=False,
            ) from exc

        prompt = self._render_prompt(user_prompt, context)
        try:
            stdout, stderr = await process.communicate(prompt.encode("utf-8"))
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        if process.returncode != 0:
            stderr_output = stderr.decode("utf-8", errors="replace").strip()
            raise BackendExecutionError(
                f"Claude backend failed with exit code {process.returncode}: {stderr_output}",
                backend="claude",
                exit_code=process.returncode,
                retriable=True,
            )
        return self.parse_output(stdout.decode("utf-8", errors="replace"))
