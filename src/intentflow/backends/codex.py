from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

from intentflow.backends.base import (
    AgentBackend,
    AgentReply,
    BackendExecutionError,
    BackendProcessError,
)


class CodexBackend(AgentBackend):
    def __init__(
        self,
        binary: str = "codex",
        working_directory: Path | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
        resume_token: str | None = None,
    ) -> list[str]:
        rendered_prompt = self._build_user_prompt(user_prompt, context, tools)
        requested_model = context.get("model")
        command = [
            self.binary,
            "exec",
            "--json",
            "-c",
            f"instructions={json.dumps(system_prompt, ensure_ascii=False)}",
        ]
        if isinstance(requested_model, str) and requested_model.strip():
            command.extend(["-m", requested_model.strip()])
        if resume_token:
            command.extend(["resume", resume_token])
        command.append(rendered_prompt)
        return command

    @staticmethod
    def _build_user_prompt(
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None,
    ) -> str:
        parts = [user_prompt]
        visible = {key: value for key, value in context.items() if not key.startswith("_")}
        visible.pop("model", None)
        if visible:
            parts.append("Context JSON:")
            parts.append(json.dumps(visible, ensure_ascii=False, indent=2))
        if tools:
            parts.append("Allowed tools:")
            parts.append(json.dumps(tools, ensure_ascii=False))
        return "\n\n".join(parts)

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        item = event.get("item")
        if isinstance(item, dict):
            if item.get("type") not in (None, "agent_message", "assistant_message"):
                return ""
            text = item.get("text")
            if isinstance(text, str):
                return text

        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for entry in content:
                if isinstance(entry, dict):
                    text = entry.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)

        message = event.get("message")
        if isinstance(message, str):
            return message
        if isinstance(message, dict):
            msg_content = message.get("content")
            if isinstance(msg_content, str):
                return msg_content

        return ""

    @staticmethod
    def _extract_thread_id(event: dict[str, Any]) -> str | None:
        for key in ("thread_id", "session_id"):
            value = event.get(key)
            if isinstance(value, str) and value:
                return value
        return None

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    def parse_events(self, lines: list[str]) -> AgentReply:
        chunks: list[str] = []
        thread_id: str | None = None
        parse_buffer = ""
        for raw in lines:
            line = raw.strip()
            if not line:
                continue
            candidate = f"{parse_buffer}{line}" if parse_buffer else line
            try:
                event = json.loads(candidate)
                parse_buffer = ""
            except json.JSONDecodeError:
                if self._appears_partial_json(candidate):
                    parse_buffer = candidate
                    self._emit({"event": "codex_json_partial", "bytes": len(candidate)})
                    continue
                parse_buffer = ""
                self._emit({"event": "codex_json_parse_fallback", "line": line[:200]})
                continue
            if not isinstance(event, dict):
                continue
            thread_id = thread_id or self._extract_thread_id(event)
            content = self._extract_content(event)
            self._emit(
                {
                    "event": "codex_json_event",
                    "type": str(event.get("type", "")),
                    "has_content": bool(content),
                }
            )
            if content:
                chunks.append(content)
        if parse_buffer:
            self._emit({"event": "codex_json_buffer_flush", "bytes": len(parse_buffer)})
        # The final agent message carries the answer; earlier ones are progress notes.
        content = chunks[-1] if chunks else ""
        return AgentReply(content=content.strip(), resume_token=thread_id, backend="codex")

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
        resume_token: str | None = None,
    ) -> AgentReply:
        command = self.build_command(system_prompt, user_prompt, context, tools, resume_token)
        cwd_override = context.get("_working_directory")
        if isinstance(cwd_override, str) and cwd_override.strip():
            cwd = cwd_override
        else:
            cwd = str(self.working_directory) if self.working_directory else None
        self._emit(
            {
                "event": "codex_cli_start",
                "command": command[:4],
                "resume": bool(resume_token),
                "tool_mode": bool(tools),
                "model": context.get("model"),
            }
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Codex binary not found: {self.binary}",
                backend="codex",
                retriable=False,
            ) from exc

        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        stderr_output = stderr.decode("utf-8", errors="replace").strip()
        if process.returncode != 0:
            self._emit(
                {
                    "event": "codex_cli_exit",
                    "exit_code": process.returncode,
                    "stderr": stderr_output[:400],
                }
            )
            raise BackendExecutionError(
                f"Codex backend failed with exit code {process.returncode}: {stderr_output}",
                backend="codex",
                exit_code=process.returncode,
                retriable=True,
            )
        self._emit({"event": "codex_cli_exit", "exit_code": 0})
        lines = stdout.decode("utf-8", errors="replace").splitlines()
        return self.parse_events(lines)
