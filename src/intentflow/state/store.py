from __future__ import annotations

import json
import os
import tempfile
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from intentflow.models import (
    BLOCKED,
    ERROR,
    PROPOSED,
    Intent,
    Task,
    risk_at_least,
    slugify,
    utcnow_iso,
)


class StateError(RuntimeError):
    """Raised when intent or task records cannot be read or written."""


@dataclass(slots=True)
class InboxItem:
    intent: Intent
    reason: str


class IntentStore:
    """Durable intent and task records kept as JSON envelopes in the state directory.

    Every write replaces the whole file atomically while holding an exclusive lock
    file, so a reader in another process sees either the old or the new record set.
    """

    NAMESPACES = {"intents", "tasks"}
    SCHEMA_VERSION = 1

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.state_dir / ".lock"

    def _file(self, namespace: str) -> Path:
        if namespace not in self.NAMESPACES:
            raise StateError(f"Unsupported namespace: {namespace}")
        return self.state_dir / f"{namespace}.json"

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 5.0) -> Iterator[None]:
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise StateError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def get_envelope(self, namespace: str) -> dict[str, Any]:
        path = self._file(namespace)
        if not path.exists():
            return {
                "schema_version": self.SCHEMA_VERSION,
                "revision": 0,
                "updated_at": utcnow_iso(),
                "data": {},
            }
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StateError(f"Corrupt state file: {path}") from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("data"), dict):
            raise StateError(f"Unexpected state layout in {path}")
        return payload

    def _write_envelope(self, namespace: str, envelope: dict[str, Any]) -> None:
        path = self._file(namespace)
        fd, tmp_path = tempfile.mkstemp(prefix=f".{namespace}-", dir=self.state_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(envelope, handle, ensure_ascii=False, indent=2)
            os.replace(tmp_path, path)
        except OSError as exc:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass
            raise StateError(f"Failed to write {path}: {exc}") from exc

    def update(
        self,
        namespace: str,
        updater: Callable[[dict[str, Any]], dict[str, Any]],
    ) -> dict[str, Any]:
        with self._state_lock():
            current = self.get_envelope(namespace)
            data = updater(dict(current["data"]))
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": int(current.get("revision", 0)) + 1,
                "updated_at": utcnow_iso(),
                "data": data,
            }
            self._write_envelope(namespace, envelope)
        return data

    def _records(self, namespace: str) -> dict[str, Any]:
        return self.get_envelope(namespace)["data"]

    # Intents

    def new_intent_id(self, title: str) -> str:
        base = slugify(title)
        existing = self._records("intents")
        candidate = base
        suffix = 2
        while candidate in existing:
            candidate = f"{base}-{suffix}"
            suffix += 1
        return candidate

    def put(self, intent: Intent) -> Intent:
        intent.updated_at = utcnow_iso()
        record = intent.to_dict()

        def _updater(data: dict[str, Any]) -> dict[str, Any]:
            data[intent.id] = record
            return data

        self.update("intents", _updater)
        return intent

    def get(self, intent_id: str) -> Intent | None:
        record = self._records("intents").get(intent_id)
        if record is None:
            return None
        return Intent.from_dict(record)

    def list_where(self, predicate: Callable[[Intent], bool] | None = None) -> list[Intent]:
        intents = [Intent.from_dict(record) for record in self._records("intents").values()]
        if predicate is None:
            return intents
        return [intent for intent in intents if predicate(intent)]

    def children_of(self, intent_id: str) -> list[Intent]:
        return self.list_where(lambda intent: intent.parent_id == intent_id)

    def inbox(self) -> list[InboxItem]:
        items: list[InboxItem] = []
        for intent in self.list_where():
            if intent.paused:
                items.append(InboxItem(intent, "needs clarification"))
            elif intent.status == PROPOSED and risk_at_least(intent.risk or "medium", "medium"):
                items.append(InboxItem(intent, "awaiting approval"))
            elif intent.status in {BLOCKED, ERROR}:
                items.append(InboxItem(intent, intent.status))
        return items

    # Tasks

    def put_task(self, task: Task) -> Task:
        record = task.to_dict()

        def _updater(data: dict[str, Any]) -> dict[str, Any]:
            data[task.id] = record
            return data

        self.update("tasks", _updater)
        return task

    def get_task(self, task_id: str) -> Task | None:
        record = self._records("tasks").get(task_id)
        if record is None:
            return None
        return Task.from_dict(record)

    def tasks_for(self, intent_id: str) -> list[Task]:
        return [
            Task.from_dict(record)
            for record in self._records("tasks").values()
            if record.get("intent_id") == intent_id
        ]

    def all_tasks(self) -> list[Task]:
        return [Task.from_dict(record) for record in self._records("tasks").values()]
