import tomllib
from pathlib import Path

import pytest

from intentflow import __version__
from intentflow.config import IntentflowConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "intentflow.toml"
    config = IntentflowConfig.default()
    config.project.name = "intentflow-test"
    config.project.setup_commands = ["npm ci", "make deps"]
    config.project.test_command = "pytest -q"
    config.backend.primary = "codex"
    config.backend.fallback = "claude"
    config.backend.max_retries = 3
    config.backend.retry_backoff_seconds = 1.5
    config.agents.complex_model = "opus"
    config.workflow.max_review_retries = 4
    config.workflow.max_conflict_cycles = 2
    config.workflow.auto_approve_risk = "medium"
    config.concurrency.agent_permits = 8
    config.concurrency.isolate_permits = 3

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.project.name == "intentflow-test"
    assert loaded.project.setup_commands == ["npm ci", "make deps"]
    assert loaded.project.test_command == "pytest -q"
    assert loaded.backend.primary == "codex"
    assert loaded.backend.fallback == "claude"
    assert loaded.backend.max_retries == 3
    assert loaded.backend.retry_backoff_seconds == 1.5
    assert loaded.workflow.max_review_retries == 4
    assert loaded.workflow.max_conflict_cycles == 2
    assert loaded.workflow.auto_approve_risk == "medium"
    assert loaded.concurrency.agent_permits == 8
    assert loaded.concurrency.isolate_permits == 3


def test_missing_config_file_uses_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded.project.base_ref == "main"
    assert loaded.backend.timeout_seconds == 1200.0
    assert loaded.workflow.max_review_retries == 2
    assert loaded.workflow.max_conflict_cycles == 1
    assert loaded.workflow.auto_approve_risk == "low"
    assert loaded.concurrency.agent_permits == 4
    assert loaded.concurrency.isolate_permits == 2
    assert "Bash" in loaded.agents.allowed_tools


def test_toml_dump_is_valid_toml_with_all_sections() -> None:
    rendered = dumps_toml(IntentflowConfig.default())
    parsed = tomllib.loads(rendered)

    assert set(parsed) == {"project", "backend", "agents", "workflow", "concurrency", "state"}
    assert isinstance(parsed["backend"]["retry_backoff_seconds"], float)
    assert isinstance(parsed["workflow"]["poll_interval_seconds"], float)
    assert parsed["state"]["directory"] == ".intentflow"


def test_unknown_config_key_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "intentflow.toml"
    config_path.write_text("[workflow]\nmax_rounds = 3\n", encoding="utf-8")

    with pytest.raises(TypeError):
        load_config(config_path)


def test_relative_directories_resolve_against_repo_root(tmp_path: Path) -> None:
    config = IntentflowConfig.default()

    assert config.state_dir(tmp_path) == tmp_path / ".intentflow"
    assert config.isolate_root(tmp_path) == tmp_path / ".intentflow" / "isolates"

    config.state.directory = str(tmp_path / "elsewhere")
    assert config.state_dir(Path("/unused")) == tmp_path / "elsewhere"


def test_version_string_present() -> None:
    assert __version__
