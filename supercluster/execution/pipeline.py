"""Execution pipeline primitives shared by file and repository tasks.

Each step either completes or raises :class:`PipelineError` naming the
step, except :func:`cleanup`, which only logs. Subprocesses always get an
explicit ``cwd``; nothing here changes the process-wide working directory.
"""

from __future__ import annotations

import asyncio
import os
import shutil
from pathlib import Path
from typing import Optional, Sequence

import structlog

from supercluster.cluster.errors import PipelineError
from supercluster.cluster.models import Command, CommandOutput

logger = structlog.get_logger(__name__)

_READ_CHUNK = 64 * 1024


async def ensure_dir(path: str | Path) -> Path:
    """Create ``path`` and its parents if missing. Idempotent."""
    try:
        await asyncio.to_thread(os.makedirs, path, exist_ok=True)
    except OSError as e:
        raise PipelineError("ensure_dir", f"cannot create {path}: {e}") from e
    return Path(path)


async def write_staged_file(path: str | Path, data: bytes, mode: Optional[int] = None) -> Path:
    """Create or truncate ``path`` with ``data``; optionally chmod it."""

    def _write() -> None:
        with open(path, "wb") as f:
            f.write(data)
        if mode is not None:
            os.chmod(path, mode)

    try:
        await asyncio.to_thread(_write)
    except OSError as e:
        raise PipelineError("write_file", f"cannot write {path}: {e}") from e
    return Path(path)


async def _drain(
    stream: Optional[asyncio.StreamReader], chunks: list[bytes], program: str, name: str
) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            return
        chunks.append(chunk)
        logger.debug("subprocess_output", program=program, stream=name, size=len(chunk))


async def spawn_and_capture(
    program: str,
    args: Optional[Sequence[str]] = None,
    cwd: Optional[str | Path] = None,
) -> CommandOutput:
    """Run ``program`` with the inherited environment in ``cwd``.

    stdout and stderr are read as the data arrives. A non-zero exit code
    is returned as data, not raised.

    Raises:
        PipelineError: If the process cannot be started at all.
    """
    argv = [str(a) for a in (args or [])]
    try:
        process = await asyncio.create_subprocess_exec(
            program,
            *argv,
            cwd=str(cwd) if cwd is not None else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise PipelineError("spawn", f"cannot start {program!r}: {e}") from e

    logger.debug("subprocess_started", program=program, args=argv, cwd=str(cwd), pid=process.pid)
    stdout: list[bytes] = []
    stderr: list[bytes] = []
    await asyncio.gather(
        _drain(process.stdout, stdout, program, "stdout"),
        _drain(process.stderr, stderr, program, "stderr"),
    )
    exit_code = await process.wait()
    logger.debug("subprocess_exited", program=program, exit_code=exit_code)

    return CommandOutput(
        stdout=b"".join(stdout).decode("utf-8", errors="replace"),
        stderr=b"".join(stderr).decode("utf-8", errors="replace"),
        exit_code=exit_code,
    )


async def cleanup(path: str | Path) -> bool:
    """Best-effort recursive removal.

    Returns:
        True if something was removed. Failures are logged, never raised.
    """

    def _remove() -> bool:
        target = Path(path)
        if target.is_dir() and not target.is_symlink():
            shutil.rmtree(target)
            return True
        if target.exists() or target.is_symlink():
            target.unlink()
            return True
        return False

    try:
        removed = await asyncio.to_thread(_remove)
    except OSError as e:
        logger.warning("cleanup_failed", path=str(path), error=str(e))
        return False
    if removed:
        logger.debug("cleanup_done", path=str(path))
    return removed


def _command_dir(command: Command, base: Path) -> Path:
    if not command.cwd:
        return base
    target = (base / command.cwd).resolve()
    if target != base.resolve() and base.resolve() not in target.parents:
        raise PipelineError("command_cwd", f"cwd {command.cwd!r} escapes {base}")
    return target


async def run_command(command: Command, base: str | Path) -> CommandOutput:
    """Run one :class:`Command` relative to ``base``."""
    return await spawn_and_capture(command.program, command.args, _command_dir(command, Path(base)))


async def run_commands(
    commands: Sequence[Command], base: str | Path, stop_on_failure: bool = True
) -> list[CommandOutput]:
    """Run ``commands`` in order.

    With ``stop_on_failure`` the sequence ends at the first non-zero exit;
    the failing command's output is the last element.
    """
    outputs: list[CommandOutput] = []
    for command in commands:
        output = await run_command(command, base)
        outputs.append(output)
        if stop_on_failure and output.exit_code != 0:
            break
    return outputs
