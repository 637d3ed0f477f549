"""Tests for the wire models: peers, task descriptors, envelopes, results."""

import base64

import pytest

from supercluster.cluster.errors import InvalidTaskError
from supercluster.cluster.models import (
    FileTask,
    FunctionTask,
    PeerInfo,
    RepositoryTask,
    Role,
    TaskEnvelope,
    TaskResult,
    parse_task,
    peer_id,
)


def multiply(a, b):
    return a * b


@pytest.fixture
def master_peer() -> PeerInfo:
    return PeerInfo(id="10.0.0.1:44402", role=Role.MASTER, address="10.0.0.1", rest_api_port=44402)


@pytest.fixture
def worker_peer() -> PeerInfo:
    return PeerInfo(id="10.0.0.5:44401", role=Role.WORKER, address="10.0.0.5", rest_api_port=44401)


class TestPeerInfo:
    def test_from_announcement(self, make_announcement) -> None:
        peer = PeerInfo.from_announcement(make_announcement("10.0.0.9", 5000, "master"))

        assert peer.id == peer_id("10.0.0.9", 5000) == "10.0.0.9:5000"
        assert peer.role == Role.MASTER
        assert peer.base_url == "http://10.0.0.9:5000"

    @pytest.mark.parametrize(
        "payload",
        [
            {"address": "10.0.0.9"},
            {"address": "", "data": {"role": "worker", "rest_api_port": 1}},
            {"address": "10.0.0.9", "data": {"role": "worker", "rest_api_port": True}},
            {"address": "10.0.0.9", "data": {"role": "worker", "rest_api_port": 0}},
            {"address": "10.0.0.9", "data": {"role": "scheduler", "rest_api_port": 1}},
        ],
    )
    def test_rejects_incomplete_announcements(self, payload) -> None:
        with pytest.raises(ValueError):
            PeerInfo.from_announcement(payload)


class TestParseTask:
    def test_function_variant(self) -> None:
        task = parse_task({"type": "function", "name": "f", "params": ["x"], "body": "return x"})
        assert isinstance(task, FunctionTask)
        assert task.args == []

    def test_file_variant_decodes_base64(self) -> None:
        encoded = base64.b64encode(b"echo hi\n").decode()
        task = parse_task({"type": "file", "file_name": "t.sh", "contents": encoded})

        assert isinstance(task, FileTask)
        assert task.contents == b"echo hi\n"

    def test_repository_variant(self) -> None:
        task = parse_task(
            {
                "type": "repository",
                "owner": "octo",
                "repo": "demo",
                "main_command": {"program": "make", "args": ["test"]},
            }
        )
        assert isinstance(task, RepositoryTask)
        assert task.main_command.program == "make"
        assert task.pre_commands == []

    def test_model_instances_pass_through(self) -> None:
        task = FileTask(file_name="run.py", contents=b"print(1)")
        assert parse_task(task) == task

    @pytest.mark.parametrize(
        "raw",
        [
            {"name": "f", "body": "return 1"},
            {"type": "shell", "command": "ls"},
            {"type": "function", "name": "f"},
            {"type": "function", "name": "f", "body": "return 1", "file_name": "x.sh"},
            {"type": "file", "file_name": "../escape.sh", "contents": ""},
            {"type": "file", "file_name": "t.sh", "contents": "not base64!"},
            {"type": "repository", "owner": "a/b", "repo": "c", "main_command": {"program": "x"}},
            {"type": "repository", "owner": "a", "repo": "c"},
            "function",
        ],
    )
    def test_invalid_descriptors(self, raw) -> None:
        with pytest.raises(InvalidTaskError):
            parse_task(raw)


class TestFunctionTask:
    def test_from_callable(self) -> None:
        task = FunctionTask.from_callable(multiply, [2, 3])

        assert task.name == "multiply"
        assert task.params == ["a", "b"]
        assert task.args == [2, 3]
        assert "return a * b" in task.body

    def test_from_lambda_is_invalid(self) -> None:
        with pytest.raises(InvalidTaskError):
            FunctionTask.from_callable(lambda: 1)

    def test_duplicate_params_rejected(self) -> None:
        with pytest.raises(ValueError):
            FunctionTask(name="f", params=["x", "x"], body="return x")


class TestFileTask:
    def test_json_dump_encodes_contents(self) -> None:
        task = FileTask(file_name="t.sh", contents=b"\x00\xffdata")
        dumped = task.model_dump(mode="json")

        assert dumped["contents"] == base64.b64encode(b"\x00\xffdata").decode()
        assert FileTask.model_validate(dumped).contents == b"\x00\xffdata"

    def test_from_path(self, tmp_path) -> None:
        script = tmp_path / "job.sh"
        script.write_text("echo job\n")

        task = FileTask.from_path(script, args=["--fast"], keep_file=True)

        assert task.file_name == "job.sh"
        assert task.contents == b"echo job\n"
        assert task.args == ["--fast"]
        assert task.keep_file is True


class TestEnvelope:
    def test_build_fills_origin_and_id(self, master_peer, worker_peer) -> None:
        task = FunctionTask(name="f", body="return 1")
        envelope = TaskEnvelope.build(task, master_peer, worker_peer)

        assert envelope.origin_role == Role.MASTER
        assert envelope.task_type == "function"
        assert envelope.task["name"] == "f"
        assert len(envelope.task_id) == 36

    def test_ids_are_unique(self, master_peer, worker_peer) -> None:
        task = FunctionTask(name="f", body="return 1")
        ids = {TaskEnvelope.build(task, master_peer, worker_peer).task_id for _ in range(20)}
        assert len(ids) == 20

    def test_unknown_type_survives_until_descriptor(self, master_peer, worker_peer) -> None:
        envelope = TaskEnvelope(
            task={"type": "quantum", "qubits": 4},
            origin_role=Role.MASTER,
            origin_peer=master_peer,
            target_peer=worker_peer,
        )

        assert envelope.task_type == "quantum"
        with pytest.raises(InvalidTaskError):
            envelope.descriptor()

    def test_missing_type_rejected(self, master_peer, worker_peer) -> None:
        with pytest.raises(ValueError):
            TaskEnvelope(
                task={"name": "f"},
                origin_role=Role.MASTER,
                origin_peer=master_peer,
                target_peer=worker_peer,
            )

    def test_result_echoes_envelope(self, master_peer, worker_peer) -> None:
        envelope = TaskEnvelope.build(
            FileTask(file_name="t.sh", contents=b"echo"), master_peer, worker_peer
        )
        result = TaskResult(envelope=envelope, success=True, output={"exit_code": 0})

        restored = TaskResult.model_validate(result.model_dump(mode="json"))

        assert restored.envelope == envelope
        assert restored.task_id == envelope.task_id
        assert restored.error_message is None
