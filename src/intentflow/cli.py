from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from intentflow import operator
from intentflow.backends import (
    ClaudeCodeBackend,
    CodexBackend,
    ResilientBackend,
    RetryPolicy,
)
from intentflow.config import BackendName, IntentflowConfig, load_config, save_config
from intentflow.isolate import IsolateError
from intentflow.runner import Runner, RunnerError, RunSummary
from intentflow.state.store import StateError

LOGGER = logging.getLogger("intentflow")

DEFAULT_CONFIG = "intentflow.toml"


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: IntentflowConfig
    runner: Runner


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _log_backend_event(event: dict[str, Any]) -> None:
    name = event.get("event", "backend_event")
    details = {key: value for key, value in event.items() if key != "event"}
    if name == "backend_attempt_failed":
        LOGGER.warning("%s %s", name, details)
    else:
        LOGGER.debug("%s %s", name, details)


def _build_single_backend(
    backend_name: BackendName, repo_root: Path
) -> CodexBackend | ClaudeCodeBackend:
    if backend_name == "codex":
        return CodexBackend(working_directory=repo_root, event_hook=_log_backend_event)
    return ClaudeCodeBackend(working_directory=repo_root)


def _build_backend(config: IntentflowConfig, repo_root: Path) -> ResilientBackend:
    primary_name = config.backend.primary
    fallback_name = config.backend.fallback
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=primary_name,
        primary_backend=_build_single_backend(primary_name, repo_root),
        fallback_name=fallback_name,
        fallback_backend=_build_single_backend(fallback_name, repo_root),
        retry_policy=policy,
        event_hook=_log_backend_event,
    )


def _load(config_path: Path) -> IntentflowConfig:
    try:
        return load_config(config_path)
    except (TypeError, ValueError) as exc:
        raise click.ClickException(f"Invalid config {config_path}: {exc}") from exc


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = _load(config_path)
    backend = _build_backend(config, repo_root)
    try:
        runner = Runner.from_config(config, repo_root, backend)
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    return Runtime(repo_root=repo_root, config_path=config_path, config=config, runner=runner)


def _runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    return _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))


def _echo_summary(summary: RunSummary) -> None:
    if not summary.outcomes:
        click.echo("Nothing to run.")
        return
    for intent_id, outcome in summary.outcomes.items():
        click.echo(f"{intent_id}: {outcome}")
    click.echo(f"Intents: {summary.processed}  Steps: {summary.steps}")


def _exclude_state_dir(repo_root: Path, config: IntentflowConfig) -> None:
    exclude_file = repo_root / ".git" / "info" / "exclude"
    if not exclude_file.parent.is_dir():
        return
    entry = f"/{config.state.directory.strip('/')}/"
    existing = exclude_file.read_text(encoding="utf-8") if exclude_file.exists() else ""
    if entry in existing.splitlines():
        return
    with exclude_file.open("a", encoding="utf-8") as handle:
        if existing and not existing.endswith("\n"):
            handle.write("\n")
        handle.write(entry + "\n")


config_option = click.option(
    "--config", "config_value", default=DEFAULT_CONFIG, show_default=True
)


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Intentflow CLI."""
    _configure_logging(verbose)


@cli.command("init")
@click.option("--backend", type=click.Choice(["codex", "claude"]), default=None)
@config_option
def init_command(backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = _load(config_path)
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
    save_config(config_path, config)

    config.state_dir(repo_root).mkdir(parents=True, exist_ok=True)
    _exclude_state_dir(repo_root, config)

    click.echo(f"Initialized intentflow in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.backend.primary}")


@cli.command("create")
@click.argument("title")
@click.argument("body", required=False, default="")
@click.option("--kind", default="feature", show_default=True)
@click.option("--risk", type=click.Choice(["low", "medium", "high"]), default=None)
@click.option("--label", "labels", multiple=True)
@click.option("--origin", type=click.Choice(["human", "automated"]), default="human")
@config_option
def create_command(
    title: str,
    body: str,
    kind: str,
    risk: str | None,
    labels: tuple[str, ...],
    origin: str,
    config_value: str,
) -> None:
    runtime = _runtime(config_value)
    try:
        intent = runtime.runner.create_intent(
            title, body, kind=kind, labels=list(labels), risk=risk, origin=origin
        )
    except (RunnerError, StateError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Created {intent.id} (kind={intent.kind}, risk={intent.risk}, {intent.status})")


@cli.command("run")
@config_option
def run_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        summary = asyncio.run(runtime.runner.run_once())
    except (RunnerError, StateError, IsolateError) as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_summary(summary)


@cli.command("watch")
@click.option("--max-cycles", type=int, default=None)
@config_option
def watch_command(max_cycles: int | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    click.echo(
        f"Watching every {runtime.config.workflow.poll_interval_seconds:g}s (Ctrl-C to stop)"
    )
    try:
        summaries = asyncio.run(runtime.runner.watch(max_cycles=max_cycles))
    except KeyboardInterrupt:
        click.echo("Stopped.")
        return
    except (RunnerError, StateError, IsolateError) as exc:
        raise click.ClickException(str(exc)) from exc
    for summary in summaries:
        _echo_summary(summary)


@cli.command("status")
@config_option
def status_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    click.echo(json.dumps(runtime.runner.status(), ensure_ascii=False, indent=2))


@cli.command("inbox")
@config_option
def inbox_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    items = runtime.runner.inbox()
    if not items:
        click.echo("Inbox is empty.")
        return
    for item in items:
        intent = item.intent
        click.echo(f"[{item.reason}] {intent.id}: {intent.title} (risk={intent.risk})")
        for index, question in enumerate(intent.pending_questions, start=1):
            if not question.answered:
                click.echo(f"    {index}. {question.question}")
        if intent.failure_reason:
            click.echo(f"    reason: {intent.failure_reason}")
        for issue in intent.last_issues:
            click.echo(f"    - {issue}")


@cli.command("approve")
@click.argument("intent_ids")
@config_option
def approve_command(intent_ids: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    for intent_id in [item.strip() for item in intent_ids.split(",") if item.strip()]:
        try:
            runtime.runner.approve(intent_id)
        except RunnerError as exc:
            raise click.ClickException(str(exc)) from exc
        click.echo(f"Approved {intent_id}")


@cli.command("answer")
@click.argument("intent_id")
@click.argument("question_number", type=click.IntRange(min=1))
@click.argument("text")
@config_option
def answer_command(intent_id: str, question_number: int, text: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        intent = runtime.runner.answer(intent_id, question_number - 1, text)
    except RunnerError as exc:
        raise click.ClickException(str(exc)) from exc
    if intent.paused:
        remaining = sum(1 for item in intent.pending_questions if not item.answered)
        click.echo(f"Answered. {remaining} question(s) still open for {intent_id}.")
    else:
        click.echo(f"Answered. {intent_id} will resume on the next run.")


@cli.command("retry")
@click.argument("intent_id")
@config_option
def retry_command(intent_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        runtime.runner.retry(intent_id)
    except RunnerError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"{intent_id} queued for retry.")


@cli.command("audit")
@click.argument("path", required=False, default=".")
@click.option("--run/--no-run", "run_now", default=True, show_default=True)
@config_option
def audit_command(path: str, run_now: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        intent = runtime.runner.create_intent(
            f"Audit {path}",
            f"Audit scope: {path}",
            kind="audit",
        )
    except (RunnerError, StateError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Created {intent.id}")
    if not run_now:
        return
    try:
        summary = asyncio.run(runtime.runner.run_once())
    except (RunnerError, StateError, IsolateError) as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_summary(summary)


@cli.command("parent")
@click.option("--model", default=None, help="Model for the operator session.")
@config_option
def parent_command(model: str | None, config_value: str) -> None:
    """Open an interactive operator session seeded with the inbox."""
    runtime = _runtime(config_value)
    message = operator.greeting(runtime.runner.inbox())
    command = operator.build_command(runtime.config.backend.primary, message, model=model)
    try:
        exit_code = operator.launch(command, runtime.repo_root)
    except operator.OperatorError as exc:
        raise click.ClickException(str(exc)) from exc
    if exit_code != 0:
        raise SystemExit(exit_code)


@cli.command("clean")
@config_option
def clean_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    removed = runtime.runner.clean()
    if not removed:
        click.echo("No isolates to remove.")
        return
    for name in removed:
        click.echo(f"Removed {name}")
