"""Lifecycle shared by masters and workers.

A node owns a membership registry (fed by discovery), a REST API for
inbound calls and an HTTP client for outbound ones. Subclasses set
``role`` and register their routes in :meth:`RoleBase.add_routes`.
"""

from __future__ import annotations

import socket
from typing import Any, Optional

import httpx
import structlog
from starlette.requests import Request
from starlette.responses import JSONResponse

from supercluster.cluster.discovery import Discovery
from supercluster.cluster.errors import RemoteRejectedError, TransportError
from supercluster.cluster.models import PeerInfo, Role, peer_id
from supercluster.cluster.registry import MembershipRegistry
from supercluster.cluster.rest_api import RestApi
from supercluster.config import DiscoveryConfig, NodeConfig
from supercluster.core.events import EventEmitter

logger = structlog.get_logger(__name__)


def detect_local_address() -> str:
    """Best guess at the address peers can reach this machine on."""
    try:
        return socket.gethostbyname(socket.gethostname())
    except OSError:
        return "127.0.0.1"


class RoleBase(EventEmitter):
    """Common base for :class:`Master` and :class:`Worker`.

    Args:
        node_config: REST API settings for this role.
        discovery_config: Discovery settings.
        discovery: Discovery collaborator to use instead of a UDP one.
        http_client: Client for outbound requests; one is created (and
            closed on :meth:`stop`) if omitted.
    """

    role: Role

    def __init__(
        self,
        node_config: NodeConfig,
        discovery_config: DiscoveryConfig,
        *,
        discovery: Optional[Discovery] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__()
        self.node_config = node_config
        self.discovery_config = discovery_config

        self.address = node_config.advertise_address or detect_local_address()
        self.rest_api_port = node_config.rest_api_port
        self.peer = PeerInfo(
            id=peer_id(self.address, self.rest_api_port),
            role=self.role,
            address=self.address,
            rest_api_port=self.rest_api_port,
            announcement={"data": self.data},
        )

        self.registry = MembershipRegistry(
            self.role,
            discovery or Discovery(discovery_config),
            emitter=self,
        )
        self.rest_api = RestApi(node_config.host, self.rest_api_port)
        self.rest_api.add_route("get", "/ping", self._ping)
        self.add_routes()

        self._http_client = http_client
        self._owns_client = http_client is None
        self._started = False
        self._closed = False

    @property
    def data(self) -> dict[str, Any]:
        """What this node announces through discovery."""
        return {"role": self.role.value, "rest_api_port": self.rest_api_port}

    @property
    def app(self):
        """The ASGI application serving this node's routes."""
        return self.rest_api.app

    def add_routes(self) -> None:
        """Register role-specific routes on ``self.rest_api``."""

    async def _ping(self, request: Request, body: Any) -> JSONResponse:
        return JSONResponse({"success": True, "pong": "pong"})

    # ── Lifecycle ─────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the REST API, then begin announcing.

        Raises:
            OSError: If the REST port or the discovery port cannot be bound.
        """
        self._closed = False
        await self.rest_api.start()
        try:
            await self.registry.start(self.data, self.discovery_config.announce_interval_ms)
        except Exception:
            await self.rest_api.stop()
            raise
        self._started = True
        await logger.ainfo("node_started", role=self.role.value, peer_id=self.peer.id)

    async def stop(self) -> None:
        await self.registry.stop()
        await self.rest_api.stop()
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
        self._started = False
        self._closed = True
        await logger.ainfo("node_stopped", role=self.role.value, peer_id=self.peer.id)

    async def __aenter__(self) -> "RoleBase":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # ── Outbound HTTP ─────────────────────────────────────────────

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.node_config.request_timeout),
                headers={"Content-Type": "application/json"},
            )
        return self._http_client

    async def post_json(self, url: str, payload: dict[str, Any]) -> Any:
        """POST ``payload`` and return the decoded JSON acknowledgement.

        Raises:
            TransportError: On any connection-level failure, or once the
                node has been stopped.
            RemoteRejectedError: On a non-2xx response.
        """
        if self._closed:
            raise TransportError(url, "node is stopped")
        try:
            response = await self.http.post(url, json=payload)
        except httpx.HTTPError as e:
            raise TransportError(url, f"{type(e).__name__}: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = response.text

        if not response.is_success:
            raise RemoteRejectedError(response.status_code, body)
        return body
