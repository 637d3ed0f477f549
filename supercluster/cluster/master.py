"""Master: builds task envelopes, sends them to workers and collects results.

Sending a task only waits for the worker's acknowledgement. The result
arrives later as a separate POST on ``/taskResult``, which resolves the
future of the matching :class:`DispatchReceipt` and raises the
``task_complete`` event.

Usage::

    master = Master(load_config())
    master.on("task_complete", lambda result: print(result.output))
    await master.start()
    receipt = await master.dispatch(worker_id, FileTask.from_path("job.sh"))
    result = await asyncio.wait_for(receipt.result, timeout=60)
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence, Union

import httpx
import structlog
from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse

from supercluster.cluster.discovery import Discovery
from supercluster.cluster.errors import ClusterError, UnknownPeerError
from supercluster.cluster.models import (
    FileTask,
    FunctionTask,
    PeerInfo,
    RepositoryTask,
    Role,
    TaskEnvelope,
    TaskResult,
    parse_task,
)
from supercluster.cluster.role_base import RoleBase
from supercluster.config import ClusterConfig

logger = structlog.get_logger(__name__)

TaskInput = Union[dict[str, Any], FunctionTask, FileTask, RepositoryTask, Callable[..., Any]]


@dataclass
class DispatchReceipt:
    """An acknowledged dispatch.

    Attributes:
        envelope: The envelope that was sent.
        result: Resolves with the :class:`TaskResult` when the worker replies.
            It never resolves if the reply is lost; apply your own timeout.
            Cancelling it (as ``asyncio.wait_for`` does on timeout) drops
            the task from the master's pending table.
        acknowledgement: The worker's acknowledgement body.
    """

    envelope: TaskEnvelope
    result: "asyncio.Future[TaskResult]"
    acknowledgement: Any = None

    @property
    def task_id(self) -> str:
        return self.envelope.task_id


class Master(RoleBase):
    """Dispatches tasks to the workers found through discovery.

    Events: ``worker_available``, ``worker_unavailable`` (from the
    registry) and ``task_complete(result)``.
    """

    role = Role.MASTER

    def __init__(
        self,
        config: Optional[ClusterConfig] = None,
        *,
        discovery: Optional[Discovery] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.config = config or ClusterConfig()
        self._pending_results: dict[str, asyncio.Future] = {}
        super().__init__(
            self.config.master,
            self.config.discovery,
            discovery=discovery,
            http_client=http_client,
        )

    def add_routes(self) -> None:
        self.rest_api.add_route("post", "/taskResult", self._on_task_result)

    # ── Queries ───────────────────────────────────────────────────

    @property
    def workers(self) -> list[PeerInfo]:
        return self.registry.list_peers(Role.WORKER)

    def get_worker(self, worker_id: str) -> Optional[PeerInfo]:
        return self.registry.get_peer(Role.WORKER, worker_id)

    @property
    def pending_tasks(self) -> list[str]:
        return list(self._pending_results)

    # ── Dispatch ──────────────────────────────────────────────────

    def _descriptor(self, task: TaskInput, args: Optional[Sequence[Any]]) -> Any:
        if inspect.isfunction(task):
            return FunctionTask.from_callable(task, args)
        return parse_task(task)

    def build_envelope(
        self, worker_id: str, task: TaskInput, args: Optional[Sequence[Any]] = None
    ) -> TaskEnvelope:
        """Validate the task and the target and wrap them in an envelope.

        Raises:
            InvalidTaskError: If the descriptor is malformed.
            UnknownPeerError: If ``worker_id`` is not a known worker.
        """
        descriptor = self._descriptor(task, args)
        worker = self.get_worker(worker_id)
        if worker is None:
            raise UnknownPeerError(worker_id)
        return TaskEnvelope.build(descriptor, self.peer, worker)

    async def dispatch(
        self, worker_id: str, task: TaskInput, args: Optional[Sequence[Any]] = None
    ) -> DispatchReceipt:
        """Send one task to one worker and wait for its acknowledgement.

        Args:
            worker_id: ``address:rest_api_port`` of a known worker.
            task: A task model, a raw descriptor dict, or a plain function.
            args: Arguments when ``task`` is a function.

        Raises:
            InvalidTaskError, UnknownPeerError: Before any network I/O.
            TransportError, RemoteRejectedError: If the POST fails.
        """
        envelope = self.build_envelope(worker_id, task, args)
        task_id = envelope.task_id
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending_results[task_id] = future
        # A caller timeout cancels the future; forget it then too
        future.add_done_callback(lambda _: self._pending_results.pop(task_id, None))

        url = f"{envelope.target_peer.base_url}/task"
        try:
            ack = await self.post_json(url, envelope.model_dump(mode="json"))
        except ClusterError as e:
            self._pending_results.pop(task_id, None)
            future.cancel()
            await logger.awarning(
                "dispatch_failed",
                task_id=envelope.task_id,
                worker_id=worker_id,
                error=str(e),
            )
            raise

        await logger.ainfo(
            "task_dispatched",
            task_id=envelope.task_id,
            task_type=envelope.task_type,
            worker_id=worker_id,
        )
        return DispatchReceipt(envelope=envelope, result=future, acknowledgement=ack)

    async def _dispatch_one(
        self, worker_id: str, task: TaskInput
    ) -> Union[DispatchReceipt, ClusterError]:
        try:
            return await self.dispatch(worker_id, task)
        except ClusterError as e:
            return e

    async def dispatch_to_all(
        self, task: TaskInput, args: Optional[Sequence[Any]] = None
    ) -> dict[str, Union[DispatchReceipt, ClusterError]]:
        """Send ``task`` to every currently known worker.

        A failure for one worker does not stop the others.

        Returns:
            Per worker id, either the receipt or the error raised for it.

        Raises:
            InvalidTaskError: If the task is malformed (nothing is sent).
        """
        descriptor = self._descriptor(task, args)
        workers = self.workers
        if not workers:
            await logger.awarning("dispatch_to_all_no_workers")
            return {}

        outcomes = await asyncio.gather(
            *(self._dispatch_one(worker.id, descriptor) for worker in workers)
        )
        return {worker.id: outcome for worker, outcome in zip(workers, outcomes)}

    # ── Inbound results ───────────────────────────────────────────

    async def _on_task_result(self, request: Request, body: Any) -> JSONResponse:
        try:
            result = TaskResult.model_validate(body)
        except ValidationError as e:
            await logger.awarning("task_result_rejected", error=str(e))
            return JSONResponse({"success": False, "msg": "Bad task result."}, status_code=400)

        self.handle_task_result(result)
        return JSONResponse({"success": True})

    def handle_task_result(self, result: TaskResult) -> None:
        """Resolve the pending dispatch (if any) and emit ``task_complete``."""
        envelope = result.envelope
        if envelope.origin_peer.id != self.peer.id:
            logger.warning(
                "task_result_foreign_origin",
                task_id=envelope.task_id,
                origin_peer=envelope.origin_peer.id,
            )

        future = self._pending_results.pop(envelope.task_id, None)
        if future is None:
            logger.warning("task_result_orphaned", task_id=envelope.task_id)
        elif not future.done():
            future.set_result(result)

        logger.info(
            "task_complete",
            task_id=envelope.task_id,
            worker_id=envelope.target_peer.id,
            success=result.success,
        )
        self.emit("task_complete", result)
