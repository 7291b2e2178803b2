from __future__ import annotations

import logging
import shutil
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

LOGGER = logging.getLogger(__name__)

BRANCH_PREFIX = "intentflow"

IntegrationStatus = Literal["ok", "conflict"]


class IsolateError(RuntimeError):
    """Raised when an isolated working copy cannot be created or prepared."""


@dataclass(slots=True)
class IsolateHandle:
    name: str
    path: Path
    branch: str
    base_ref: str


@dataclass(slots=True)
class CommandResult:
    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def output_tail(self, limit: int = 4000) -> str:
        combined = "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)
        return combined[-limit:]


class IsolateManager:
    """Creates one git worktree per task under ``root`` and integrates it back.

    All methods block; callers run them off the event loop.
    """

    def __init__(self, repo_root: Path, root: Path) -> None:
        self.repo_root = repo_root.resolve()
        self.root = root if root.is_absolute() else self.repo_root / root
        self._merge_lock = threading.Lock()

    def _run_git(
        self,
        args: list[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=cwd or self.repo_root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise IsolateError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    @staticmethod
    def branch_name(name: str) -> str:
        return f"{BRANCH_PREFIX}/{name}"

    @staticmethod
    def _full_ref(ref: str) -> str:
        return ref if ref.startswith("refs/") else f"refs/heads/{ref}"

    def handle_for(self, name: str, base_ref: str) -> IsolateHandle:
        return IsolateHandle(
            name=name,
            path=self.root / name,
            branch=self.branch_name(name),
            base_ref=base_ref,
        )

    def exists(self, handle: IsolateHandle) -> bool:
        return (handle.path / ".git").exists()

    def create(self, name: str, base_ref: str) -> IsolateHandle:
        handle = self.handle_for(name, base_ref)
        if self.exists(handle):
            LOGGER.info("isolate already exists: %s", handle.path)
            return handle

        verify = self._run_git(["rev-parse", "--verify", f"{base_ref}^{{commit}}"], check=False)
        if verify.returncode != 0:
            raise IsolateError(f"Base ref '{base_ref}' does not resolve to a commit.")

        handle.path.parent.mkdir(parents=True, exist_ok=True)
        LOGGER.info("creating isolate: %s", handle.path)
        proc = self._run_git(
            ["worktree", "add", "-b", handle.branch, str(handle.path), base_ref],
            check=False,
        )
        if proc.returncode != 0:
            if "already exists" not in proc.stderr:
                raise IsolateError(f"worktree add failed: {proc.stderr.strip()}")
            LOGGER.debug("branch %s already exists, reusing it", handle.branch)
            retry = self._run_git(
                ["worktree", "add", str(handle.path), handle.branch],
                check=False,
            )
            if retry.returncode != 0:
                raise IsolateError(f"worktree add failed: {retry.stderr.strip()}")
        return handle

    def run_command(self, handle: IsolateHandle, command: str) -> CommandResult:
        proc = subprocess.run(
            command,
            shell=True,
            cwd=handle.path,
            text=True,
            capture_output=True,
        )
        return CommandResult(
            command=command,
            exit_code=proc.returncode,
            stdout=proc.stdout,
            stderr=proc.stderr,
        )

    def run_setup(self, handle: IsolateHandle, commands: list[str]) -> None:
        for command in commands:
            LOGGER.info("setup in %s: %s", handle.name, command)
            result = self.run_command(handle, command)
            if not result.ok:
                raise IsolateError(
                    f"Setup command failed ({result.exit_code}): {command}\n{result.output_tail()}"
                )

    def head(self, handle: IsolateHandle) -> str:
        return self._run_git(["rev-parse", "HEAD"], cwd=handle.path).stdout.strip()

    def commit_count(self, handle: IsolateHandle) -> int:
        proc = self._run_git(
            ["rev-list", "--count", f"{handle.base_ref}..HEAD"],
            cwd=handle.path,
        )
        return int(proc.stdout.strip() or 0)

    def diff(self, handle: IsolateHandle) -> str:
        proc = self._run_git(["diff", f"{handle.base_ref}...HEAD"], cwd=handle.path, check=False)
        return proc.stdout

    def _is_ancestor(self, ancestor: str, descendant: str, cwd: Path) -> bool:
        proc = self._run_git(
            ["merge-base", "--is-ancestor", ancestor, descendant],
            cwd=cwd,
            check=False,
        )
        return proc.returncode == 0

    def rebase(self, handle: IsolateHandle, base_ref: str | None = None) -> IntegrationStatus:
        base = base_ref or handle.base_ref
        if self._is_ancestor(base, "HEAD", handle.path):
            LOGGER.debug("isolate %s already contains %s", handle.name, base)
            return "ok"
        LOGGER.info("rebasing %s onto %s", handle.name, base)
        proc = self._run_git(["rebase", base], cwd=handle.path, check=False)
        if proc.returncode == 0:
            return "ok"
        LOGGER.warning("rebase conflict in %s: %s", handle.name, proc.stderr.strip()[:400])
        self._run_git(["rebase", "--abort"], cwd=handle.path, check=False)
        return "conflict"

    def _checked_out_branch(self) -> str | None:
        proc = self._run_git(["symbolic-ref", "--quiet", "--short", "HEAD"], check=False)
        if proc.returncode != 0:
            return None
        return proc.stdout.strip()

    def merge_into_base(self, handle: IsolateHandle) -> IntegrationStatus:
        """Fast-forward the base ref to the isolate's HEAD."""
        with self._merge_lock:
            head = self.head(handle)
            if not self._is_ancestor(handle.base_ref, head, self.repo_root):
                return "conflict"
            if self._checked_out_branch() == handle.base_ref:
                proc = self._run_git(["merge", "--ff-only", head], check=False)
            else:
                old = self._run_git(["rev-parse", handle.base_ref]).stdout.strip()
                proc = self._run_git(
                    ["update-ref", self._full_ref(handle.base_ref), head, old],
                    check=False,
                )
            if proc.returncode != 0:
                LOGGER.warning(
                    "merge of %s into %s failed: %s",
                    handle.name,
                    handle.base_ref,
                    proc.stderr.strip()[:400],
                )
                return "conflict"
        LOGGER.info("merged %s into %s", handle.branch, handle.base_ref)
        return "ok"

    def destroy(self, handle: IsolateHandle) -> None:
        if handle.path.exists():
            LOGGER.info("removing isolate: %s", handle.path)
            proc = self._run_git(
                ["worktree", "remove", "--force", str(handle.path)],
                check=False,
            )
            if proc.returncode != 0 and handle.path.exists():
                shutil.rmtree(handle.path)
        self._run_git(["worktree", "prune"], check=False)
        self._run_git(["branch", "-D", handle.branch], check=False)

    def list_names(self) -> list[str]:
        proc = self._run_git(["worktree", "list", "--porcelain"], check=False)
        names: list[str] = []
        for line in proc.stdout.splitlines():
            if not line.startswith("worktree "):
                continue
            path = Path(line.removeprefix("worktree ")).resolve()
            if path.parent == self.root.resolve():
                names.append(path.name)
        return sorted(names)
