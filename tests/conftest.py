"""Shared fixtures: configs with temporary directories and an in-process
HTTP transport that routes requests to node ASGI apps by port."""

from typing import Any

import httpx
import pytest

from supercluster.config import ClusterConfig, DiscoveryConfig, MasterConfig, WorkerConfig

MASTER_PORT = 44402
WORKER_PORT = 44401


class ClusterTransport(httpx.AsyncBaseTransport):
    """Deliver each request to the ASGI app registered for its port.

    Ports with no app behave like a refused connection.
    """

    def __init__(self) -> None:
        self.apps: dict[int, httpx.ASGITransport] = {}
        self.requests: list[httpx.Request] = []

    def add(self, port: int, app: Any) -> None:
        self.apps[port] = httpx.ASGITransport(app=app)

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        transport = self.apps.get(request.url.port)
        if transport is None:
            raise httpx.ConnectError(f"Connection refused: {request.url}", request=request)
        return await transport.handle_async_request(request)


def announcement(
    address: str = "10.0.0.5",
    port: int = WORKER_PORT,
    role: str = "worker",
    **extra: Any,
) -> dict[str, Any]:
    """A discovery announcement as the registry receives it."""
    return {
        "instance": f"instance-{address}-{port}",
        "name": f"node-{address}",
        "address": address,
        "data": {"role": role, "rest_api_port": port, **extra},
    }


@pytest.fixture
def cluster_config(tmp_path) -> ClusterConfig:
    return ClusterConfig(
        discovery=DiscoveryConfig(announce_interval_ms=100),
        master=MasterConfig(advertise_address="127.0.0.1", rest_api_port=MASTER_PORT),
        worker=WorkerConfig(
            advertise_address="127.0.0.1",
            rest_api_port=WORKER_PORT,
            staging_dir=str(tmp_path / "staging"),
            work_dir=str(tmp_path / "repos"),
        ),
    )


@pytest.fixture
def transport() -> ClusterTransport:
    return ClusterTransport()


@pytest.fixture
def make_announcement():
    return announcement
