"""Interactive operator session over the intent inbox.

The operator is a regular agent CLI session started in the foreground. It manages
intents through the ``intentflow`` commands and never edits source files itself.
"""

from __future__ import annotations

import json
import logging
import subprocess
from pathlib import Path

from intentflow.config import BackendName
from intentflow.state.store import InboxItem

LOGGER = logging.getLogger(__name__)

OPERATOR_PROMPT = """
You are the operator of a repository managed by intentflow.
Help the maintainer steer work through the `intentflow` command line:
`status`, `inbox`, `create`, `approve`, `answer`, `retry`, `run` and `clean`.
Confirm approvals with the maintainer first. Do not edit source files yourself; code
changes land through `intentflow run`.
""".strip()


class OperatorError(RuntimeError):
    pass


def greeting(items: list[InboxItem]) -> str:
    if not items:
        return "intentflow is ready. The inbox is empty."
    lines = [f"intentflow is ready. {len(items)} item(s) need attention:"]
    for item in items:
        lines.append(f"- [{item.reason}] {item.intent.id}: {item.intent.title}")
    return "\n".join(lines)


def build_command(
    backend: BackendName,
    message: str,
    *,
    model: str | None = None,
    binary: str | None = None,
) -> list[str]:
    if backend == "codex":
        command = [
            binary or "codex",
            "-c",
            f"instructions={json.dumps(OPERATOR_PROMPT, ensure_ascii=False)}",
        ]
        if model:
            command.extend(["-m", model])
    else:
        command = [
            binary or "claude",
            "--append-system-prompt",
            OPERATOR_PROMPT,
            "--allowedTools",
            "Bash",
        ]
        if model:
            command.extend(["--model", model])
    command.append(message)
    return command


def launch(command: list[str], repo_root: Path) -> int:
    LOGGER.info("starting operator session with %s", command[0])
    try:
        proc = subprocess.run(command, cwd=repo_root, check=False)
    except FileNotFoundError as exc:
        raise OperatorError(f"Operator binary not found: {command[0]}") from exc
    return proc.returncode
