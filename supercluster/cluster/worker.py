"""Worker: accepts task envelopes, runs them and posts the results back.

``POST /task`` only validates and acknowledges; execution is scheduled as
an independent asyncio task so a slow job never holds the HTTP request
open. Every accepted task ends with exactly one reply POST to the
envelope's ``origin_peer``.
"""

from __future__ import annotations

import asyncio
import functools
from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog
from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse

from supercluster.cluster.discovery import Discovery
from supercluster.cluster.errors import ClusterError, InvalidTaskError, PipelineError
from supercluster.cluster.models import (
    TASK_TYPES,
    FileTask,
    FunctionTask,
    PeerInfo,
    RepositoryTask,
    Role,
    TaskEnvelope,
    TaskResult,
)
from supercluster.cluster.role_base import RoleBase
from supercluster.config import ClusterConfig
from supercluster.execution.runners import run_file_task, run_function_task, run_repository_task

logger = structlog.get_logger(__name__)

Executor = Callable[[], Awaitable[Any]]


class Worker(RoleBase):
    """Executes function, file and repository tasks sent by masters.

    Events: ``master_available``, ``master_unavailable`` (from the
    registry).
    """

    role = Role.WORKER

    def __init__(
        self,
        config: Optional[ClusterConfig] = None,
        *,
        discovery: Optional[Discovery] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.config = config or ClusterConfig()
        self.settings = self.config.worker
        self._running: dict[str, asyncio.Task] = {}
        super().__init__(
            self.settings,
            self.config.discovery,
            discovery=discovery,
            http_client=http_client,
        )

    def add_routes(self) -> None:
        self.rest_api.add_route("post", "/task", self._on_add_task)

    @property
    def masters(self) -> list[PeerInfo]:
        return self.registry.list_peers(Role.MASTER)

    @property
    def active_tasks(self) -> list[str]:
        return list(self._running)

    # ── Inbound tasks ─────────────────────────────────────────────

    async def _on_add_task(self, request: Request, body: Any) -> JSONResponse:
        try:
            envelope = TaskEnvelope.model_validate(body)
        except ValidationError as e:
            await logger.awarning("task_rejected", error=str(e))
            return JSONResponse(
                {"accepted": False, "msg": "Bad task envelope.", "error": str(e)},
                status_code=400,
            )

        if envelope.task_id in self._running:
            await logger.awarning("task_duplicate", task_id=envelope.task_id)
            return JSONResponse(
                {"accepted": False, "msg": "Task already running."}, status_code=409
            )

        self.submit(envelope)
        await logger.ainfo(
            "task_accepted",
            task_id=envelope.task_id,
            task_type=envelope.task_type,
            origin_peer=envelope.origin_peer.id,
        )
        return JSONResponse({"accepted": True, "task_id": envelope.task_id})

    def submit(self, envelope: TaskEnvelope) -> asyncio.Task:
        """Schedule ``envelope`` for execution and return the asyncio task."""
        task_id = envelope.task_id
        task = asyncio.create_task(self.run_task(envelope), name=f"task-{task_id}")
        self._running[task_id] = task
        task.add_done_callback(lambda _: self._running.pop(task_id, None))
        return task

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait until every accepted task has replied.

        Args:
            timeout: Seconds to wait in total; None waits indefinitely.

        Returns:
            False if tasks were still running when the timeout expired.
            Those tasks are left running.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._running:
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            _, pending = await asyncio.wait(list(self._running.values()), timeout=remaining)
            if pending:
                return False
        return True

    async def stop(self) -> None:
        """Let running tasks reply, then stop serving.

        Tasks still running after ``shutdown_timeout`` are cancelled and
        never reply.
        """
        if self._running:
            await logger.ainfo("worker_draining", active=len(self._running))
            if not await self.drain(self.settings.shutdown_timeout):
                abandoned = list(self._running)
                for task in list(self._running.values()):
                    task.cancel()
                await asyncio.gather(*list(self._running.values()), return_exceptions=True)
                await logger.awarning("worker_tasks_cancelled", task_ids=abandoned)
        await super().stop()

    # ── Execution ─────────────────────────────────────────────────

    async def run_task(self, envelope: TaskEnvelope) -> TaskResult:
        """Execute one envelope and reply to its origin."""
        result = await self.execute(envelope)
        await self.reply(result)
        return result

    def classify(self, envelope: TaskEnvelope) -> Executor:
        """Pick the executor for the envelope's task.

        Raises:
            InvalidTaskError: On an unknown ``type`` or fields that do not
                match it.
        """
        if envelope.task_type not in TASK_TYPES:
            raise InvalidTaskError(f"Unknown task type: {envelope.task_type!r}")

        task = envelope.descriptor()
        if isinstance(task, FunctionTask):
            return functools.partial(run_function_task, task)
        if isinstance(task, FileTask):
            return functools.partial(
                run_file_task, task, self.settings.staging_dir, envelope.task_id
            )
        if isinstance(task, RepositoryTask):
            return functools.partial(
                run_repository_task,
                task,
                self.settings.work_dir,
                self.settings.git_base_url,
                envelope.task_id,
            )
        raise InvalidTaskError(f"Unhandled task variant: {type(task).__name__}")

    async def execute(self, envelope: TaskEnvelope) -> TaskResult:
        """Run the task; every failure becomes ``success=False``."""
        task_id = envelope.task_id
        try:
            executor = self.classify(envelope)
            output = await executor()
        except PipelineError as e:
            await logger.awarning("task_failed", task_id=task_id, step=e.step, error=e.message)
            return TaskResult(envelope=envelope, success=False, output=e.output, error_message=str(e))
        except InvalidTaskError as e:
            await logger.awarning("task_invalid", task_id=task_id, error=str(e))
            return TaskResult(envelope=envelope, success=False, error_message=str(e))
        except Exception as e:
            await logger.aerror("task_crashed", task_id=task_id, error=str(e), exc_info=True)
            return TaskResult(
                envelope=envelope,
                success=False,
                error_message=f"{type(e).__name__}: {e}",
            )

        await logger.ainfo("task_succeeded", task_id=task_id, task_type=envelope.task_type)
        return TaskResult(envelope=envelope, success=True, output=output)

    async def reply(self, result: TaskResult) -> bool:
        """POST ``result`` to the origin's ``/taskResult``. No retry.

        Returns:
            True if the origin acknowledged it. Failures are only logged;
            the master then never sees the result.
        """
        origin = result.envelope.origin_peer
        url = f"{origin.base_url}/taskResult"
        try:
            await self.post_json(url, result.model_dump(mode="json"))
        except ClusterError as e:
            await logger.aerror(
                "task_reply_failed",
                task_id=result.task_id,
                origin_peer=origin.id,
                error=str(e),
            )
            return False
        await logger.adebug("task_replied", task_id=result.task_id, origin_peer=origin.id)
        return True
