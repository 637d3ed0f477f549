"""Tests for the execution pipeline primitives."""

import os
import stat
import sys

import pytest

from supercluster.cluster.errors import PipelineError
from supercluster.cluster.models import Command
from supercluster.execution.pipeline import (
    cleanup,
    ensure_dir,
    run_command,
    run_commands,
    spawn_and_capture,
    write_staged_file,
)

PY = sys.executable


class TestFilesystem:
    @pytest.mark.asyncio
    async def test_ensure_dir_is_idempotent(self, tmp_path) -> None:
        target = tmp_path / "a" / "b"
        assert await ensure_dir(target) == target
        assert await ensure_dir(target) == target
        assert target.is_dir()

    @pytest.mark.asyncio
    async def test_ensure_dir_over_a_file_fails(self, tmp_path) -> None:
        blocker = tmp_path / "file"
        blocker.write_text("x")
        with pytest.raises(PipelineError) as exc_info:
            await ensure_dir(blocker / "child")
        assert exc_info.value.step == "ensure_dir"

    @pytest.mark.asyncio
    async def test_write_truncates_and_sets_mode(self, tmp_path) -> None:
        path = tmp_path / "run.sh"
        path.write_bytes(b"old contents that are longer")

        await write_staged_file(path, b"new", mode=0o755)

        assert path.read_bytes() == b"new"
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o755

    @pytest.mark.asyncio
    async def test_write_into_missing_dir_fails(self, tmp_path) -> None:
        with pytest.raises(PipelineError, match="write_file"):
            await write_staged_file(tmp_path / "missing" / "f", b"x")

    @pytest.mark.asyncio
    async def test_cleanup(self, tmp_path) -> None:
        tree = tmp_path / "tree"
        (tree / "sub").mkdir(parents=True)
        (tree / "sub" / "f").write_text("x")
        single = tmp_path / "single"
        single.write_text("x")

        assert await cleanup(tree) is True
        assert await cleanup(single) is True
        assert await cleanup(tmp_path / "never-existed") is False
        assert not tree.exists() and not single.exists()


class TestSpawn:
    @pytest.mark.asyncio
    async def test_captures_both_streams(self, tmp_path) -> None:
        output = await spawn_and_capture(
            PY,
            ["-c", "import sys; print('out'); print('err', file=sys.stderr); sys.exit(3)"],
            cwd=tmp_path,
        )

        assert output.stdout.strip() == "out"
        assert output.stderr.strip() == "err"
        assert output.exit_code == 3

    @pytest.mark.asyncio
    async def test_runs_in_given_cwd(self, tmp_path) -> None:
        before = os.getcwd()
        output = await spawn_and_capture(PY, ["-c", "import os; print(os.getcwd())"], cwd=tmp_path)

        assert os.path.realpath(output.stdout.strip()) == os.path.realpath(tmp_path)
        assert os.getcwd() == before

    @pytest.mark.asyncio
    async def test_large_output_does_not_deadlock(self, tmp_path) -> None:
        script = "import sys; sys.stdout.write('x' * 300000); sys.stderr.write('y' * 300000)"
        output = await spawn_and_capture(PY, ["-c", script], cwd=tmp_path)

        assert len(output.stdout) == 300000
        assert len(output.stderr) == 300000

    @pytest.mark.asyncio
    async def test_missing_program(self, tmp_path) -> None:
        with pytest.raises(PipelineError) as exc_info:
            await spawn_and_capture("definitely-not-a-real-program-xyz", [], cwd=tmp_path)
        assert exc_info.value.step == "spawn"


class TestCommands:
    @pytest.mark.asyncio
    async def test_command_cwd_is_relative_to_base(self, tmp_path) -> None:
        (tmp_path / "sub").mkdir()
        command = Command(program=PY, args=["-c", "import os; print(os.getcwd())"], cwd="sub")

        output = await run_command(command, tmp_path)

        assert os.path.realpath(output.stdout.strip()) == os.path.realpath(tmp_path / "sub")

    @pytest.mark.asyncio
    async def test_command_cwd_cannot_escape(self, tmp_path) -> None:
        command = Command(program=PY, args=["-c", "pass"], cwd="../..")
        with pytest.raises(PipelineError, match="command_cwd"):
            await run_command(command, tmp_path)

    @pytest.mark.asyncio
    async def test_stop_on_failure(self, tmp_path) -> None:
        commands = [
            Command(program=PY, args=["-c", "print(1)"]),
            Command(program=PY, args=["-c", "raise SystemExit(2)"]),
            Command(program=PY, args=["-c", "print(3)"]),
        ]

        stopped = await run_commands(commands, tmp_path, stop_on_failure=True)
        everything = await run_commands(commands, tmp_path, stop_on_failure=False)

        assert [o.exit_code for o in stopped] == [0, 2]
        assert [o.exit_code for o in everything] == [0, 2, 0]
