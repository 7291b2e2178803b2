from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from intentflow.models import utcnow_iso

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class HistoryRecord:
    intent_id: str
    outcome: str = ""
    steps: list[dict[str, Any]] = field(default_factory=list)
    adjustments: list[dict[str, Any]] = field(default_factory=list)
    dispatch_order: list[str] = field(default_factory=list)
    failure_reason: str | None = None
    created_at: str = field(default_factory=utcnow_iso)
    finished_at: str | None = None

    def add_step(
        self,
        kind: str,
        result: str,
        *,
        task_id: str | None = None,
        duration_ms: int = 0,
        adjustment: str | None = None,
    ) -> None:
        self.steps.append(
            {
                "kind": kind,
                "task_id": task_id,
                "result": result,
                "duration_ms": duration_ms,
                "adjustment": adjustment,
                "at": utcnow_iso(),
            }
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class _JsonLinesLog:
    def __init__(self, path: Path) -> None:
        self.path = path

    def _append(self, payload: dict[str, Any]) -> bool:
        try:
            line = json.dumps(payload, ensure_ascii=False, default=str)
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except (OSError, TypeError, ValueError) as exc:
            LOGGER.error("failed to append to %s: %s", self.path, exc)
            return False
        return True

    def read(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        entries: list[dict[str, Any]] = []
        for raw_line in self.path.read_text(encoding="utf-8").splitlines():
            line = raw_line.strip()
            if not line:
                continue
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                LOGGER.warning("skipping malformed line in %s", self.path)
                continue
            if isinstance(parsed, dict):
                entries.append(parsed)
        return entries


class HistoryRecorder(_JsonLinesLog):
    """Append-only log of intent execution passes. Recording never fails a flow."""

    def append(self, record: HistoryRecord) -> bool:
        if record.finished_at is None:
            record.finished_at = utcnow_iso()
        return self._append(record.to_dict())

    def records_for(self, intent_id: str) -> list[dict[str, Any]]:
        return [entry for entry in self.read() if entry.get("intent_id") == intent_id]


class KnowledgeLog(_JsonLinesLog):
    def append(self, intent_id: str, observations: list[str], *, outcome: str) -> bool:
        return self._append(
            {
                "intent_id": intent_id,
                "outcome": outcome,
                "observations": observations,
                "recorded_at": utcnow_iso(),
            }
        )
