"""Staged recovery for rebase and merge conflicts of a single task.

Stage 1 rebases the isolate onto the current base again (and retries the merge when
called from integration). Stage 2 throws the isolate away, recreates it from the
current base and re-runs only the implement step with the task's existing plan.
Stage 3 gives up: the task fails as ``conflict unresolved`` and the isolate stays on
disk for manual action. If stage 2 removed the isolate but could not recreate it, the
escalation carries no handle.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal

from intentflow.coordinator import ISOLATE, ConcurrencyCoordinator
from intentflow.isolate import IsolateError, IsolateHandle, IsolateManager
from intentflow.models import Task

LOGGER = logging.getLogger(__name__)

CONFLICT_UNRESOLVED = "conflict unresolved"

ResolutionStatus = Literal["resolved", "reimplemented", "escalated"]
Reimplement = Callable[[Task, IsolateHandle], Awaitable[bool]]


@dataclass(slots=True)
class Resolution:
    status: ResolutionStatus
    handle: IsolateHandle | None
    stage: int
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.status != "escalated"


class ConflictResolver:
    def __init__(
        self,
        isolates: IsolateManager,
        coordinator: ConcurrencyCoordinator,
        *,
        setup_commands: list[str] | None = None,
        max_conflict_cycles: int = 1,
    ) -> None:
        self.isolates = isolates
        self.coordinator = coordinator
        self.setup_commands = list(setup_commands or [])
        self.max_conflict_cycles = max_conflict_cycles

    async def _isolate_call(self, label: str, func: Callable[..., Any], *args: Any) -> Any:
        async with self.coordinator.permit(ISOLATE, label):
            return await asyncio.to_thread(func, *args)

    async def _direct(self, task: Task, handle: IsolateHandle, merge: bool) -> bool:
        status = await self._isolate_call(f"{task.id}:rebase", self.isolates.rebase, handle)
        if status != "ok":
            return False
        if not merge:
            return True
        merged = await self._isolate_call(
            f"{task.id}:merge", self.isolates.merge_into_base, handle
        )
        return merged == "ok"

    async def resolve(
        self,
        task: Task,
        handle: IsolateHandle,
        *,
        merge: bool,
        reimplement: Reimplement,
    ) -> Resolution:
        if await self._direct(task, handle, merge):
            LOGGER.info("conflict for %s resolved by direct rebase", task.id)
            return Resolution("resolved", handle, stage=1)

        if task.conflict_cycles >= self.max_conflict_cycles:
            LOGGER.warning("conflict for %s escalated: re-implementation budget spent", task.id)
            return Resolution("escalated", handle, stage=3, reason=CONFLICT_UNRESOLVED)

        task.conflict_cycles += 1
        LOGGER.info(
            "re-implementing %s from current base (cycle %d/%d)",
            task.id,
            task.conflict_cycles,
            self.max_conflict_cycles,
        )
        try:
            await self._isolate_call(f"{task.id}:destroy", self.isolates.destroy, handle)
        except IsolateError as exc:
            LOGGER.error("could not remove isolate for %s: %s", task.id, exc)
            return Resolution("escalated", handle, stage=3, reason=f"{CONFLICT_UNRESOLVED}: {exc}")
        try:
            fresh = await self._isolate_call(
                f"{task.id}:create", self.isolates.create, handle.name, handle.base_ref
            )
        except IsolateError as exc:
            # The old worktree is already gone; report that no isolate remains.
            LOGGER.error("isolate for %s was removed and could not be recreated: %s", task.id, exc)
            return Resolution(
                "escalated",
                None,
                stage=3,
                reason=f"{CONFLICT_UNRESOLVED}: isolate removed, recreate failed: {exc}",
            )
        if self.setup_commands:
            try:
                await self._isolate_call(
                    f"{task.id}:setup", self.isolates.run_setup, fresh, self.setup_commands
                )
            except IsolateError as exc:
                LOGGER.error("setup failed in recreated isolate for %s: %s", task.id, exc)
                return Resolution(
                    "escalated", fresh, stage=3, reason=f"{CONFLICT_UNRESOLVED}: {exc}"
                )

        if not await reimplement(task, fresh):
            return Resolution(
                "escalated",
                fresh,
                stage=3,
                reason=f"{CONFLICT_UNRESOLVED}: re-implementation failed",
            )

        status = await self._isolate_call(f"{task.id}:rebase", self.isolates.rebase, fresh)
        if status != "ok":
            return Resolution("escalated", fresh, stage=3, reason=CONFLICT_UNRESOLVED)
        return Resolution("reimplemented", fresh, stage=2)
