"""Minimal JSON-over-HTTP router used by masters and workers.

Handlers are registered per verb and path. The router parses the request
body as JSON before calling the handler; a body that is not valid JSON
gets a 500 ``{"success": false, "msg": "Bad task."}`` and never reaches
the handler. Unknown routes get a JSON 404.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional

import structlog
import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

logger = structlog.get_logger(__name__)

Handler = Callable[[Request, Any], Awaitable[Response]]

_VERBS = ["GET", "POST", "PUT", "PATCH", "DELETE"]
_BODY_VERBS = ("POST", "PUT", "PATCH")


class RestApi:
    """Route table plus the uvicorn server that exposes it.

    Args:
        host: Address to bind.
        port: Port to bind.
    """

    def __init__(self, host: str = "0.0.0.0", port: int = 44401) -> None:
        self.host = host
        self.port = port
        self.routes: dict[str, dict[str, Handler]] = {}
        self.app = Starlette(
            routes=[Route("/{path:path}", self._dispatch, methods=_VERBS)],
        )
        self._server: Optional[uvicorn.Server] = None
        self._serve_task: Optional[asyncio.Task] = None

    def add_route(self, verb: str, path: str, handler: Handler) -> None:
        """Register ``handler(request, body)`` for ``verb`` + ``path``."""
        http_verb = verb.upper()
        logger.debug("route_added", verb=http_verb, path=path)
        self.routes.setdefault(http_verb, {})[path] = handler

    async def _dispatch(self, request: Request) -> Response:
        handler = self.routes.get(request.method, {}).get(request.url.path)
        if handler is None:
            return JSONResponse(
                {"status": 404, "message": "Content not found."}, status_code=404
            )

        body: Any = None
        raw = await request.body()
        if raw or request.method in _BODY_VERBS:
            try:
                body = json.loads(raw)
            except ValueError:
                await logger.awarning(
                    "bad_json_body", path=request.url.path, size=len(raw)
                )
                return JSONResponse({"success": False, "msg": "Bad task."}, status_code=500)

        try:
            return await handler(request, body)
        except Exception as e:
            await logger.aerror(
                "route_handler_failed", path=request.url.path, error=str(e), exc_info=True
            )
            return JSONResponse({"success": False, "msg": "Internal error."}, status_code=500)

    # ── Server lifecycle ──────────────────────────────────────────

    async def start(self) -> None:
        """Start serving in the background and wait until bound.

        Raises:
            OSError: If the server cannot bind its port.
        """
        config = uvicorn.Config(
            app=self.app,
            host=self.host,
            port=self.port,
            log_level="warning",
            access_log=False,
        )
        self._server = uvicorn.Server(config)
        self._serve_task = asyncio.create_task(self._serve())

        while not self._server.started:
            if self._serve_task.done():
                self._serve_task.result()
                raise OSError(f"REST API stopped during startup on {self.host}:{self.port}")
            await asyncio.sleep(0.05)
        await logger.ainfo("rest_api_listening", host=self.host, port=self.port)

    async def _serve(self) -> None:
        server = self._server
        if server is None:
            return
        try:
            await server.serve()
        except SystemExit as exc:
            # uvicorn exits the process when it cannot bind
            raise OSError(f"REST API could not bind {self.host}:{self.port}") from exc

    async def stop(self) -> None:
        if self._server is None or self._serve_task is None:
            return
        self._server.should_exit = True
        try:
            await self._serve_task
        except OSError:
            pass
        self._server = None
        self._serve_task = None
        await logger.ainfo("rest_api_stopped", port=self.port)
