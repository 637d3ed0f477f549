"""Error taxonomy for dispatch, transport and execution failures."""

from __future__ import annotations

from typing import Any, Optional


class ClusterError(Exception):
    """Base class for every error raised by the cluster layer."""


class InvalidTaskError(ClusterError):
    """Raised when a task descriptor or envelope is malformed.

    Detected before any network I/O takes place.
    """


class UnknownPeerError(ClusterError):
    """Raised when a dispatch target does not resolve to a known worker."""

    def __init__(self, peer_id: str) -> None:
        self.peer_id = peer_id
        super().__init__(f"Unknown worker peer: {peer_id!r}")


class TransportError(ClusterError):
    """Raised when the acknowledgement POST fails at the network level.

    Delivery is at-most-once with no retry, so a caller cannot tell
    whether the peer never received the task or received it and the
    acknowledgement was lost on the way back. A task that raised this
    error may still run and report a result later.
    """

    def __init__(self, url: str, detail: str) -> None:
        self.url = url
        self.detail = detail
        super().__init__(f"Transport error for {url}: {detail}")


class RemoteRejectedError(ClusterError):
    """Raised when a peer answers the acknowledgement POST with a non-2xx code."""

    def __init__(self, status_code: int, detail: Any = None) -> None:
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"HTTP {status_code}: {detail}")


class PipelineError(ClusterError):
    """Raised by an execution pipeline step.

    Attributes:
        step: Name of the failing step (``ensure_dir``, ``spawn``, ...).
        output: Partial output collected before the failure, if any.
    """

    def __init__(self, step: str, message: str, output: Optional[Any] = None) -> None:
        self.step = step
        self.message = message
        self.output = output
        super().__init__(f"{step}: {message}")
