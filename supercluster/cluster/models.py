"""Wire models shared by masters and workers.

Peers, the three task variants, the envelope a master sends to a worker
and the result a worker posts back. Everything here serialises to plain
JSON with ``model_dump(mode="json")``.
"""

from __future__ import annotations

import base64
import binascii
import keyword
import uuid
from enum import Enum
from pathlib import Path, PurePath
from typing import Annotated, Any, Callable, Literal, Optional, Sequence, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_serializer,
    field_validator,
)

from supercluster.cluster.errors import InvalidTaskError
from supercluster.execution.code_task import encode_callable


class Role(str, Enum):
    """Node roles taking part in the protocol.

    Attributes:
        MASTER: Dispatches tasks.
        WORKER: Executes tasks.
    """

    MASTER = "master"
    WORKER = "worker"


def peer_id(address: str, rest_api_port: int) -> str:
    """Stable peer key: ``address:rest_api_port``."""
    return f"{address}:{rest_api_port}"


class PeerInfo(BaseModel):
    """A node known through discovery (or the local node itself).

    Attributes:
        id: ``address:rest_api_port``, recomputed on every observation.
        role: The peer's role.
        address: IP address the peer announced from.
        rest_api_port: Port of the peer's REST API.
        announcement: Raw discovery payload the entry was built from.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    role: Role
    address: str = Field(min_length=1)
    rest_api_port: int = Field(gt=0, lt=65536)
    announcement: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_announcement(cls, announcement: dict[str, Any]) -> "PeerInfo":
        """Build a PeerInfo from a discovery announcement.

        Raises:
            ValueError: If the announcement lacks an address, role or port.
        """
        data = announcement.get("data")
        if not isinstance(data, dict):
            raise ValueError("announcement has no data object")
        address = announcement.get("address")
        if not isinstance(address, str) or not address:
            raise ValueError("announcement has no address")
        port = data.get("rest_api_port")
        if isinstance(port, bool) or not isinstance(port, int):
            raise ValueError(f"bad rest_api_port: {port!r}")
        return cls(
            id=peer_id(address, port),
            role=Role(data.get("role")),
            address=address,
            rest_api_port=port,
            announcement=announcement,
        )

    @property
    def base_url(self) -> str:
        return f"http://{self.address}:{self.rest_api_port}"


# ── Task descriptors ──────────────────────────────────────────────


class _TaskModel(BaseModel):
    # Unknown keys are rejected so a descriptor can never carry the
    # fields of two variants at once.
    model_config = ConfigDict(extra="forbid")


def _check_identifier(value: str) -> str:
    if not value.isidentifier() or keyword.iskeyword(value):
        raise ValueError(f"not a valid identifier: {value!r}")
    return value


class FunctionTask(_TaskModel):
    """A function shipped as source plus its invocation arguments."""

    type: Literal["function"] = "function"
    name: str
    params: list[str] = Field(default_factory=list)
    body: str = Field(min_length=1)
    args: list[Any] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _valid_name(cls, value: str) -> str:
        return _check_identifier(value)

    @field_validator("params")
    @classmethod
    def _valid_params(cls, value: list[str]) -> list[str]:
        for param in value:
            _check_identifier(param)
        if len(set(value)) != len(value):
            raise ValueError("duplicate parameter names")
        return value

    @classmethod
    def from_callable(
        cls, func: Callable[..., Any], args: Optional[Sequence[Any]] = None
    ) -> "FunctionTask":
        """Encode a plain Python function into a task.

        Raises:
            InvalidTaskError: If the function's source cannot be encoded.
        """
        try:
            code = encode_callable(func)
        except (TypeError, ValueError, OSError) as exc:
            raise InvalidTaskError(f"Cannot encode function: {exc}") from exc
        return cls(name=code.name, params=code.params, body=code.body, args=list(args or []))


class FileTask(_TaskModel):
    """A script file to stage on the worker and run with arguments.

    ``contents`` travels as base64 on the wire.
    """

    type: Literal["file"] = "file"
    file_name: str
    contents: bytes
    args: list[str] = Field(default_factory=list)
    keep_file: bool = False
    interpreter: Optional[str] = None

    @field_validator("file_name")
    @classmethod
    def _bare_file_name(cls, value: str) -> str:
        if not value or value in (".", "..") or "\\" in value or PurePath(value).name != value:
            raise ValueError(f"file_name must be a bare file name: {value!r}")
        return value

    @field_validator("contents", mode="before")
    @classmethod
    def _decode_contents(cls, value: Any) -> Any:
        if isinstance(value, str):
            try:
                return base64.b64decode(value, validate=True)
            except binascii.Error as exc:
                raise ValueError(f"contents is not valid base64: {exc}") from exc
        return value

    @field_serializer("contents", when_used="json")
    def _encode_contents(self, value: bytes) -> str:
        return base64.b64encode(value).decode("ascii")

    @classmethod
    def from_path(
        cls,
        path: str | Path,
        args: Optional[Sequence[str]] = None,
        keep_file: bool = False,
        interpreter: Optional[str] = None,
    ) -> "FileTask":
        """Read a local script into a task. Raises OSError if unreadable."""
        source = Path(path)
        return cls(
            file_name=source.name,
            contents=source.read_bytes(),
            args=list(args or []),
            keep_file=keep_file,
            interpreter=interpreter,
        )


class Command(_TaskModel):
    """A program plus arguments; ``cwd`` is relative to the repository clone."""

    program: str = Field(min_length=1)
    args: list[str] = Field(default_factory=list)
    cwd: Optional[str] = None


class RepositoryTask(_TaskModel):
    """Clone a repository and run commands inside it."""

    type: Literal["repository"] = "repository"
    owner: str
    repo: str
    work_dir: Optional[str] = None
    pre_commands: list[Command] = Field(default_factory=list)
    main_command: Command
    post_commands: list[Command] = Field(default_factory=list)
    keep_clone: bool = False

    @field_validator("owner", "repo")
    @classmethod
    def _single_path_segment(cls, value: str) -> str:
        if not value or value in (".", "..") or "/" in value or "\\" in value:
            raise ValueError(f"must be a single path segment: {value!r}")
        return value


TaskDescriptor = Annotated[
    Union[FunctionTask, FileTask, RepositoryTask],
    Field(discriminator="type"),
]

TASK_TYPES = ("function", "file", "repository")

_task_adapter: TypeAdapter = TypeAdapter(TaskDescriptor)


def parse_task(raw: Any) -> Union[FunctionTask, FileTask, RepositoryTask]:
    """Validate a raw descriptor against the tagged union.

    The ``type`` tag selects the variant; fields from any other variant
    make the descriptor invalid.

    Raises:
        InvalidTaskError: On a missing/unknown tag or bad fields.
    """
    if isinstance(raw, (FunctionTask, FileTask, RepositoryTask)):
        raw = raw.model_dump(mode="json")
    try:
        return _task_adapter.validate_python(raw)
    except ValidationError as exc:
        raise InvalidTaskError(f"Invalid task descriptor: {exc}") from exc


# ── Envelope and result ───────────────────────────────────────────


class TaskEnvelope(BaseModel):
    """What a master sends to a worker; echoed back inside the result.

    ``task`` holds the raw JSON descriptor so that a worker can return it
    untouched even when it cannot classify it.
    """

    model_config = ConfigDict(frozen=True)

    task_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    task: dict[str, Any]
    origin_role: Role
    origin_peer: PeerInfo
    target_peer: PeerInfo

    @field_validator("task")
    @classmethod
    def _has_type_tag(cls, value: dict[str, Any]) -> dict[str, Any]:
        tag = value.get("type")
        if not isinstance(tag, str) or not tag:
            raise ValueError("task.type must be a non-empty string")
        return value

    @classmethod
    def build(
        cls,
        task: Union[FunctionTask, FileTask, RepositoryTask],
        origin_peer: PeerInfo,
        target_peer: PeerInfo,
    ) -> "TaskEnvelope":
        return cls(
            task=task.model_dump(mode="json"),
            origin_role=origin_peer.role,
            origin_peer=origin_peer,
            target_peer=target_peer,
        )

    @property
    def task_type(self) -> str:
        return self.task["type"]

    def descriptor(self) -> Union[FunctionTask, FileTask, RepositoryTask]:
        """Parse the carried task. Raises InvalidTaskError."""
        return parse_task(self.task)


class CommandOutput(BaseModel):
    """Captured output of one subprocess."""

    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None


class RepositoryOutput(CommandOutput):
    """Main command output plus the outputs of its pre and post commands."""

    pre_commands: list[CommandOutput] = Field(default_factory=list)
    post_commands: list[CommandOutput] = Field(default_factory=list)


class TaskResult(BaseModel):
    """What a worker posts back to the master's ``/taskResult`` route.

    Attributes:
        envelope: The envelope as received, unmodified.
        success: False only when the task protocol itself failed. A
            program exiting non-zero is still a success.
        output: Command output (file/repository) or the function's value.
        error_message: Why the task failed, when it did.
    """

    envelope: TaskEnvelope
    success: bool
    output: Any = None
    error_message: Optional[str] = None

    @property
    def task_id(self) -> str:
        return self.envelope.task_id
