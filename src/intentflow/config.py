from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["codex", "claude"]
RiskName = Literal["low", "medium", "high"]


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    base_ref: str = "main"
    setup_commands: list[str] = field(default_factory=list)
    test_command: str = ""
    isolate_dir: str = ".intentflow/isolates"


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 1200.0


@dataclass(slots=True)
class AgentsConfig:
    analyze_model: str = "sonnet"
    default_model: str = "sonnet"
    complex_model: str = "opus"
    allowed_tools: list[str] = field(
        default_factory=lambda: ["Bash", "Read", "Write", "Edit", "Glob", "Grep"]
    )


@dataclass(slots=True)
class WorkflowConfig:
    max_review_retries: int = 2
    max_conflict_cycles: int = 1
    auto_approve_risk: RiskName = "low"
    poll_interval_seconds: float = 300.0


@dataclass(slots=True)
class ConcurrencyConfig:
    agent_permits: int = 4
    isolate_permits: int = 2


@dataclass(slots=True)
class StateConfig:
    directory: str = ".intentflow"


@dataclass(slots=True)
class IntentflowConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    concurrency: ConcurrencyConfig = field(default_factory=ConcurrencyConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> IntentflowConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> IntentflowConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            backend=BackendConfig(**data.get("backend", {})),
            agents=AgentsConfig(**data.get("agents", {})),
            workflow=WorkflowConfig(**data.get("workflow", {})),
            concurrency=ConcurrencyConfig(**data.get("concurrency", {})),
            state=StateConfig(**data.get("state", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "base_ref": self.project.base_ref,
                "setup_commands": list(self.project.setup_commands),
                "test_command": self.project.test_command,
                "isolate_dir": self.project.isolate_dir,
            },
            "backend": {
                "primary": self.backend.primary,
                "fallback": self.backend.fallback,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "agents": {
                "analyze_model": self.agents.analyze_model,
                "default_model": self.agents.default_model,
                "complex_model": self.agents.complex_model,
                "allowed_tools": list(self.agents.allowed_tools),
            },
            "workflow": {
                "max_review_retries": self.workflow.max_review_retries,
                "max_conflict_cycles": self.workflow.max_conflict_cycles,
                "auto_approve_risk": self.workflow.auto_approve_risk,
                "poll_interval_seconds": self.workflow.poll_interval_seconds,
            },
            "concurrency": {
                "agent_permits": self.concurrency.agent_permits,
                "isolate_permits": self.concurrency.isolate_permits,
            },
            "state": {
                "directory": self.state.directory,
            },
        }

    def state_dir(self, repo_root: Path) -> Path:
        path = Path(self.state.directory)
        if not path.is_absolute():
            path = repo_root / path
        return path

    def isolate_root(self, repo_root: Path) -> Path:
        path = Path(self.project.isolate_dir)
        if not path.is_absolute():
            path = repo_root / path
        return path


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: IntentflowConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "backend", "agents", "workflow", "concurrency", "state"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> IntentflowConfig:
    if not path.exists():
        return IntentflowConfig.default()
    return IntentflowConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: IntentflowConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
