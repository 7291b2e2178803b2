import asyncio
from pathlib import Path

import pytest

from intentflow.coordinator import ConcurrencyCoordinator
from intentflow.isolate import IsolateError, IsolateHandle
from intentflow.models import Task
from intentflow.resolver import CONFLICT_UNRESOLVED, ConflictResolver


class ScriptedIsolates:
    def __init__(self, root: Path) -> None:
        self.root = root
        self.rebase_results: list[str] = []
        self.merge_results: list[str] = []
        self.calls: list[str] = []
        self.fail_create = False
        self.fail_setup = False

    def _handle(self, name: str, base_ref: str) -> IsolateHandle:
        return IsolateHandle(
            name=name, path=self.root / name, branch=f"intentflow/{name}", base_ref=base_ref
        )

    def create(self, name: str, base_ref: str) -> IsolateHandle:
        self.calls.append(f"create:{name}")
        if self.fail_create:
            raise IsolateError("worktree add failed")
        return self._handle(name, base_ref)

    def run_setup(self, handle: IsolateHandle, commands: list[str]) -> None:
        self.calls.append(f"setup:{len(commands)}")
        if self.fail_setup:
            raise IsolateError("make deps failed")

    def rebase(self, handle: IsolateHandle) -> str:
        self.calls.append("rebase")
        return self.rebase_results.pop(0) if self.rebase_results else "ok"

    def merge_into_base(self, handle: IsolateHandle) -> str:
        self.calls.append("merge")
        return self.merge_results.pop(0) if self.merge_results else "ok"

    def destroy(self, handle: IsolateHandle) -> None:
        self.calls.append(f"destroy:{handle.name}")


def _resolver(
    isolates: ScriptedIsolates, *, setup: list[str] | None = None
) -> ConflictResolver:
    coordinator = ConcurrencyCoordinator.from_config(agent_permits=1, isolate_permits=1)
    return ConflictResolver(
        isolates,  # type: ignore[arg-type]
        coordinator,
        setup_commands=setup,
        max_conflict_cycles=1,
    )


def _task() -> Task:
    return Task(id="fix-login--t1", intent_id="fix-login", plan="Fix it")


def _reimplementer(result: bool, seen: list[IsolateHandle]):
    async def _reimplement(task: Task, handle: IsolateHandle) -> bool:
        seen.append(handle)
        return result

    return _reimplement


def test_direct_rebase_and_merge_resolves_at_first_stage(tmp_path: Path) -> None:
    isolates = ScriptedIsolates(tmp_path)
    task = _task()
    handle = isolates.create(task.id, "main")
    isolates.calls.clear()
    seen: list[IsolateHandle] = []

    resolution = asyncio.run(
        _resolver(isolates).resolve(
            task, handle, merge=True, reimplement=_reimplementer(True, seen)
        )
    )

    assert resolution.status == "resolved"
    assert resolution.stage == 1
    assert isolates.calls == ["rebase", "merge"]
    assert seen == []
    assert task.conflict_cycles == 0


def test_persistent_conflict_reimplements_from_fresh_isolate(tmp_path: Path) -> None:
    isolates = ScriptedIsolates(tmp_path)
    isolates.rebase_results = ["conflict", "ok"]
    task = _task()
    handle = isolates.create(task.id, "main")
    isolates.calls.clear()
    seen: list[IsolateHandle] = []

    resolution = asyncio.run(
        _resolver(isolates, setup=["make deps"]).resolve(
            task, handle, merge=False, reimplement=_reimplementer(True, seen)
        )
    )

    assert resolution.status == "reimplemented"
    assert resolution.ok is True
    assert resolution.stage == 2
    assert task.conflict_cycles == 1
    assert isolates.calls == [
        "rebase",
        f"destroy:{task.id}",
        f"create:{task.id}",
        "setup:1",
        "rebase",
    ]
    assert len(seen) == 1
    assert resolution.handle == seen[0]


def test_spent_cycle_budget_escalates_without_touching_isolate(tmp_path: Path) -> None:
    isolates = ScriptedIsolates(tmp_path)
    isolates.merge_results = ["conflict"]
    task = _task()
    task.conflict_cycles = 1
    handle = isolates.create(task.id, "main")
    isolates.calls.clear()
    seen: list[IsolateHandle] = []

    resolution = asyncio.run(
        _resolver(isolates).resolve(
            task, handle, merge=True, reimplement=_reimplementer(True, seen)
        )
    )

    assert resolution.status == "escalated"
    assert resolution.stage == 3
    assert resolution.reason == CONFLICT_UNRESOLVED
    assert resolution.handle is handle
    assert isolates.calls == ["rebase", "merge"]
    assert seen == []


@pytest.mark.parametrize(
    ("reimplement_ok", "rebase_results", "reason"),
    [
        (False, ["conflict"], f"{CONFLICT_UNRESOLVED}: re-implementation failed"),
        (True, ["conflict", "conflict"], CONFLICT_UNRESOLVED),
    ],
)
def test_failed_second_stage_escalates_and_keeps_fresh_isolate(
    tmp_path: Path, reimplement_ok: bool, rebase_results: list[str], reason: str
) -> None:
    isolates = ScriptedIsolates(tmp_path)
    isolates.rebase_results = list(rebase_results)
    task = _task()
    handle = isolates.create(task.id, "main")
    seen: list[IsolateHandle] = []

    resolution = asyncio.run(
        _resolver(isolates).resolve(
            task, handle, merge=False, reimplement=_reimplementer(reimplement_ok, seen)
        )
    )

    assert resolution.status == "escalated"
    assert resolution.reason == reason
    assert resolution.handle == seen[0]
    assert task.conflict_cycles == 1


def test_recreate_failure_escalates(tmp_path: Path) -> None:
    isolates = ScriptedIsolates(tmp_path)
    isolates.rebase_results = ["conflict"]
    task = _task()
    handle = isolates.create(task.id, "main")
    isolates.fail_create = True
    seen: list[IsolateHandle] = []

    resolution = asyncio.run(
        _resolver(isolates).resolve(
            task, handle, merge=False, reimplement=_reimplementer(True, seen)
        )
    )

    assert resolution.status == "escalated"
    assert resolution.reason is not None
    assert "worktree add failed" in resolution.reason
    assert seen == []
    assert resolution.handle is None
    assert "isolate removed" in resolution.reason
    assert isolates.calls[-2:] == [f"destroy:{task.id}", f"create:{task.id}"]


def test_setup_failure_escalates_with_recreated_isolate(tmp_path: Path) -> None:
    isolates = ScriptedIsolates(tmp_path)
    isolates.rebase_results = ["conflict"]
    task = _task()
    handle = isolates.create(task.id, "main")
    isolates.fail_setup = True
    seen: list[IsolateHandle] = []

    resolution = asyncio.run(
        _resolver(isolates, setup=["make deps"]).resolve(
            task, handle, merge=False, reimplement=_reimplementer(True, seen)
        )
    )

    assert resolution.status == "escalated"
    assert resolution.handle is not None
    assert resolution.handle.name == task.id
    assert resolution.reason == f"{CONFLICT_UNRESOLVED}: make deps failed"
    assert seen == []
