"""Execution of the three task variants on a worker.

Each runner returns the task output as JSON-ready data or raises
:class:`PipelineError`. Resources a runner creates are released before
it returns, on every path.
"""

from __future__ import annotations

import asyncio
import json
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import structlog

from supercluster.cluster.errors import PipelineError
from supercluster.cluster.models import FileTask, FunctionTask, RepositoryOutput, RepositoryTask
from supercluster.execution.code_task import build_callable
from supercluster.execution.pipeline import (
    cleanup,
    ensure_dir,
    run_command,
    run_commands,
    spawn_and_capture,
    write_staged_file,
)

logger = structlog.get_logger(__name__)

# Interpreter by file extension when a file task names none
INTERPRETERS: dict[str, str] = {
    ".sh": "sh",
    ".py": sys.executable,
    ".js": "node",
}


# ── Function tasks ────────────────────────────────────────────────


async def run_function_task(task: FunctionTask) -> Any:
    """Rebuild the function, call it with ``task.args`` and return its value."""
    try:
        func = build_callable(task.name, task.params, task.body)
    except (SyntaxError, ValueError) as e:
        raise PipelineError("decode", f"{type(e).__name__}: {e}") from e

    try:
        value = await asyncio.to_thread(func, *task.args)
    except (Exception, SystemExit) as e:
        raise PipelineError("invoke", f"{type(e).__name__}: {e}") from e

    try:
        json.dumps(value)
    except (TypeError, ValueError) as e:
        raise PipelineError("serialize", f"result is not JSON serializable: {e}") from e
    return value


# ── File tasks ────────────────────────────────────────────────────


def launch_command(task: FileTask, staged: Path) -> tuple[str, list[str], bool]:
    """Work out how to start a staged file.

    Returns:
        ``(program, args, needs_exec_bit)``.
    """
    interpreter = task.interpreter or INTERPRETERS.get(staged.suffix.lower())
    if interpreter:
        return interpreter, [task.file_name, *task.args], False
    return str(staged), list(task.args), True


async def run_file_task(task: FileTask, staging_dir: str | Path, task_id: str) -> dict[str, Any]:
    """Stage ``task.contents`` under ``staging_dir/task_id`` and run it.

    The staged file and its directory are removed afterwards unless
    ``keep_file`` is set, including when writing or spawning failed.
    """
    directory = await ensure_dir(Path(staging_dir) / task_id)
    staged = directory / task.file_name
    program, args, executable = launch_command(task, staged)

    try:
        await write_staged_file(staged, task.contents, mode=0o755 if executable else None)
        output = await spawn_and_capture(program, args, cwd=directory)
    finally:
        if not task.keep_file:
            await cleanup(staged)
            await cleanup(directory)

    await logger.ainfo(
        "file_task_finished",
        task_id=task_id,
        file_name=task.file_name,
        exit_code=output.exit_code,
        kept=task.keep_file,
    )
    return output.model_dump()


# ── Repository tasks ──────────────────────────────────────────────


def clone_url(git_base_url: str, owner: str, repo: str) -> str:
    return f"{git_base_url.rstrip('/')}/{owner}/{repo}.git"


async def _clone(url: str, parent: Path, clone_dir: Path) -> None:
    output = await spawn_and_capture("git", ["clone", "--quiet", url, str(clone_dir)], cwd=parent)
    if output.exit_code != 0:
        raise PipelineError(
            "clone",
            f"git clone {url} exited with {output.exit_code}: {output.stderr.strip()}",
            output=output.model_dump(),
        )


@dataclass
class _CloneLease:
    """Tasks currently using one clone directory."""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0
    keep: bool = False


# Clone path -> lease; a clone is removed only when its last user is done
_clone_leases: dict[Path, _CloneLease] = {}


async def _release_clone(clone_dir: Path, lease: _CloneLease) -> None:
    lease.users -= 1
    if lease.users:
        return
    async with lease.lock:
        # A task may have joined while the lock was being acquired
        if lease.users:
            return
        if not lease.keep:
            await cleanup(clone_dir)
        _clone_leases.pop(clone_dir, None)


async def run_repository_task(
    task: RepositoryTask,
    work_dir: str | Path,
    git_base_url: str,
    task_id: Optional[str] = None,
) -> dict[str, Any]:
    """Clone ``owner/repo`` and run its pre, main and post commands.

    Every command runs with the clone as its working directory. A clone
    that already exists is reused, and concurrent tasks for the same repo
    share it: cloning happens under a per-directory lock and the clone is
    removed only after the last task using it finishes, unless any of
    them set ``keep_clone``. A failing pre command stops the task; failing
    post commands are only logged.
    """
    parent = await ensure_dir(task.work_dir or work_dir)
    clone_dir = (parent / task.repo).resolve()

    lease = _clone_leases.setdefault(clone_dir, _CloneLease())
    lease.users += 1
    lease.keep = lease.keep or task.keep_clone

    try:
        async with lease.lock:
            if clone_dir.exists():
                await logger.ainfo("clone_skipped", task_id=task_id, path=str(clone_dir))
            else:
                await _clone(clone_url(git_base_url, task.owner, task.repo), parent, clone_dir)

        pre = await run_commands(task.pre_commands, clone_dir, stop_on_failure=True)
        if pre and pre[-1].exit_code != 0:
            failed = task.pre_commands[len(pre) - 1]
            raise PipelineError(
                "pre_commands",
                f"{failed.program} exited with {pre[-1].exit_code}",
                output=RepositoryOutput(pre_commands=pre).model_dump(),
            )

        main = await run_command(task.main_command, clone_dir)

        post = []
        try:
            post = await run_commands(task.post_commands, clone_dir, stop_on_failure=False)
        except PipelineError as e:
            await logger.awarning("post_command_failed", task_id=task_id, error=str(e))
        for command, output in zip(task.post_commands, post):
            if output.exit_code != 0:
                await logger.awarning(
                    "post_command_nonzero_exit",
                    task_id=task_id,
                    program=command.program,
                    exit_code=output.exit_code,
                )

        return RepositoryOutput(
            stdout=main.stdout,
            stderr=main.stderr,
            exit_code=main.exit_code,
            pre_commands=pre,
            post_commands=post,
        ).model_dump()
    finally:
        await _release_clone(clone_dir, lease)
