from __future__ import annotations

import asyncio
import logging
import os
import subprocess
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

from taskcore.abort import AbortSignal
from taskcore.exceptions import StepAbortedError, TaskcoreError
from taskcore.workflow import CommandOutput

logger = logging.getLogger(__name__)

CHECKPOINT_REF = "refs/taskcore/checkpoints"
OUTPUT_TAIL_CHARS = 8000


class HostError(TaskcoreError):
    """Raised when a host capability fails."""


class HostEnvironment(ABC):
    @abstractmethod
    async def create_checkpoint(self, label: str, *, force: bool = False) -> str | None:
        """Snapshot the workspace and return a checkpoint handle.

        Without ``force`` the host may return ``None`` when nothing changed
        since the previous checkpoint.
        """

    @abstractmethod
    async def execute_command(
        self,
        command: str,
        abort_signal: AbortSignal | None = None,
    ) -> CommandOutput:
        """Run a shell command in the workspace."""


class LocalHost(HostEnvironment):
    """Workspace on the local disk, checkpointed into a private git ref.

    Checkpoints are commits built from a throwaway index, so neither HEAD,
    the user's index nor the working tree are touched.
    """

    def __init__(
        self,
        workspace: Path,
        *,
        command_timeout_seconds: float = 60.0,
        checkpoint_ref: str = CHECKPOINT_REF,
        excluded_paths: list[str] | None = None,
    ) -> None:
        self.workspace = workspace.resolve()
        self.command_timeout_seconds = command_timeout_seconds
        self.checkpoint_ref = checkpoint_ref
        self.excluded_paths = list(excluded_paths or [])
        self._git_enabled: bool | None = None

    @property
    def git_enabled(self) -> bool:
        if self._git_enabled is None:
            proc = subprocess.run(
                ["git", "--no-pager", "rev-parse", "--is-inside-work-tree"],
                cwd=self.workspace,
                text=True,
                capture_output=True,
            )
            self._git_enabled = proc.returncode == 0 and proc.stdout.strip() == "true"
        return self._git_enabled

    def _run_git(
        self,
        args: list[str],
        input_text: str | None = None,
        env: dict[str, str] | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=self.workspace,
            text=True,
            capture_output=True,
            input=input_text,
            env=env,
        )
        if check and proc.returncode != 0:
            raise HostError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def _pathspec(self) -> list[str]:
        return [".", *(f":(exclude){path}" for path in self.excluded_paths)]

    def _resolve_ref(self, ref: str) -> str | None:
        proc = self._run_git(["rev-parse", "--verify", "--quiet", ref], check=False)
        if proc.returncode != 0:
            return None
        return proc.stdout.strip() or None

    def _snapshot(self, label: str, force: bool) -> str | None:
        parent_commit = self._resolve_ref(self.checkpoint_ref)
        parent_tree = self._resolve_ref(f"{parent_commit}^{{tree}}") if parent_commit else None

        with tempfile.NamedTemporaryFile(prefix="taskcore-ckpt-index-", delete=False) as index:
            index_path = index.name
        try:
            env = os.environ.copy()
            env["GIT_INDEX_FILE"] = index_path
            Path(index_path).unlink(missing_ok=True)
            self._run_git(["add", "--all", "--", *self._pathspec()], env=env)
            tree = self._run_git(["write-tree"], env=env).stdout.strip()
            if not force and tree == parent_tree:
                return None
            commit_args = ["commit-tree", tree]
            if parent_commit:
                commit_args.extend(["-p", parent_commit])
            commit = self._run_git(
                commit_args,
                input_text=f"{label}\n",
                env={**env, **_checkpoint_identity()},
            ).stdout.strip()
            self._run_git(["update-ref", self.checkpoint_ref, commit])
            return commit
        finally:
            try:
                os.unlink(index_path)
            except OSError:
                pass

    async def create_checkpoint(self, label: str, *, force: bool = False) -> str | None:
        if not self.git_enabled:
            logger.debug("Skipping checkpoint label=%s reason=no-git", label)
            return None
        commit = await asyncio.to_thread(self._snapshot, label, force)
        logger.debug("Checkpoint label=%s commit=%s force=%s", label, commit, force)
        return commit

    async def restore_checkpoint(self, commit: str) -> None:
        await asyncio.to_thread(
            self._run_git,
            ["restore", "--source", commit, "--worktree", "--", *self._pathspec()],
        )

    async def execute_command(
        self,
        command: str,
        abort_signal: AbortSignal | None = None,
    ) -> CommandOutput:
        if abort_signal is not None:
            abort_signal.raise_if_aborted()
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(self.workspace),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        communicate = asyncio.wait_for(
            process.communicate(), timeout=self.command_timeout_seconds
        )
        try:
            if abort_signal is not None:
                stdout, stderr = await abort_signal.guard(communicate)
            else:
                stdout, stderr = await communicate
        except TimeoutError:
            _kill(process)
            await process.wait()
            return CommandOutput(
                output="",
                error=f"Command timed out after {self.command_timeout_seconds:.1f}s",
            )
        except StepAbortedError:
            _kill(process)
            await process.wait()
            raise
        except BaseException:
            _kill(process)
            raise

        output = _tail(stdout.decode("utf-8", errors="replace"))
        error_text = _tail(stderr.decode("utf-8", errors="replace")).strip()
        if process.returncode != 0:
            error_text = error_text or f"Command exited with code {process.returncode}"
            return CommandOutput(output=output, error=error_text)
        return CommandOutput(output=output, error=error_text or None)


def _checkpoint_identity() -> dict[str, str]:
    return {
        "GIT_AUTHOR_NAME": "taskcore",
        "GIT_AUTHOR_EMAIL": "taskcore@localhost",
        "GIT_COMMITTER_NAME": "taskcore",
        "GIT_COMMITTER_EMAIL": "taskcore@localhost",
    }


def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass


def _tail(text: str) -> str:
    if len(text) <= OUTPUT_TAIL_CHARS:
        return text.rstrip("\n")
    return text[-OUTPUT_TAIL_CHARS:].rstrip("\n")
