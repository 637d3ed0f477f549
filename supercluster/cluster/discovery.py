"""UDP broadcast discovery.

Every node periodically broadcasts a small JSON ``hello`` datagram
carrying its role data and listens for the datagrams of others. Peers
that stop announcing are reported unavailable after a timeout; a node
that shuts down cleanly broadcasts ``bye`` so peers drop it at once.

Events (see :class:`~supercluster.core.events.EventEmitter`):
  - ``available(name, announcement, reason)`` with reason ``new`` or
    ``dataChanged``.
  - ``unavailable(name, announcement, reason)`` with reason ``timedOut``
    or ``goodbye``.

``announcement`` is ``{instance, name, address, data}``.
"""

from __future__ import annotations

import asyncio
import json
import socket
import time
import uuid
from dataclasses import dataclass
from typing import Any, Optional

import structlog

from supercluster.config import DiscoveryConfig
from supercluster.core.events import EventEmitter

logger = structlog.get_logger(__name__)


@dataclass
class _KnownInstance:
    announcement: dict[str, Any]
    last_seen: float


class _DiscoveryProtocol(asyncio.DatagramProtocol):
    def __init__(self, discovery: "Discovery") -> None:
        self.discovery = discovery

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        self.discovery.handle_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        logger.warning("discovery_socket_error", error=str(exc))


class Discovery(EventEmitter):
    """Announce this node and track the announcements of others.

    Args:
        config: Port, broadcast address and timing.
        name: Human readable node name; defaults to the hostname.
    """

    def __init__(self, config: Optional[DiscoveryConfig] = None, name: str = "") -> None:
        super().__init__()
        self.config = config or DiscoveryConfig()
        self.name = name or socket.gethostname()
        self.instance = str(uuid.uuid4())

        self._role: Optional[str] = None
        self._data: dict[str, Any] = {}
        self._interval_ms = self.config.announce_interval_ms
        self._known: dict[str, _KnownInstance] = {}

        self._transport: Optional[asyncio.DatagramTransport] = None
        self._announce_task: Optional[asyncio.Task] = None
        self._sweep_task: Optional[asyncio.Task] = None
        self._running = False

    # ── Announcing ────────────────────────────────────────────────

    def announce(self, role: str, data: dict[str, Any], interval_ms: int) -> None:
        """Set what this node announces and how often.

        Takes effect from the next announcement; call :meth:`start` to
        begin broadcasting.
        """
        self._role = role
        self._data = dict(data)
        self._interval_ms = max(10, int(interval_ms))

    @property
    def timeout_seconds(self) -> float:
        return self._interval_ms * self.config.timeout_multiplier / 1000.0

    async def start(self) -> None:
        """Bind the UDP socket and start announcing.

        Raises:
            OSError: If the discovery port cannot be bound.
        """
        if self._running:
            return
        loop = asyncio.get_running_loop()
        self._transport, _ = await loop.create_datagram_endpoint(
            lambda: _DiscoveryProtocol(self),
            local_addr=(self.config.bind_address, self.config.port),
            allow_broadcast=True,
            reuse_port=hasattr(socket, "SO_REUSEPORT"),
        )
        self._running = True
        self._announce_task = asyncio.create_task(self._announce_loop())
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        await logger.ainfo(
            "discovery_started",
            port=self.config.port,
            instance=self.instance,
            role=self._role,
            interval_ms=self._interval_ms,
        )

    async def stop(self) -> None:
        """Broadcast ``bye`` and close the socket."""
        if not self._running:
            return
        self._running = False
        self._send("bye")

        for task in [self._announce_task, self._sweep_task]:
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        if self._transport is not None:
            self._transport.close()
            self._transport = None
        await logger.ainfo("discovery_stopped", instance=self.instance)

    def build_message(self, event: str) -> bytes:
        return json.dumps(
            {
                "event": event,
                "instance": self.instance,
                "name": self.name,
                "data": dict(self._data, role=self._role),
            }
        ).encode("utf-8")

    def _send(self, event: str) -> None:
        if self._transport is None or self._role is None:
            return
        try:
            self._transport.sendto(
                self.build_message(event),
                (self.config.broadcast_address, self.config.port),
            )
        except OSError as e:
            logger.warning("discovery_send_failed", discovery_event=event, error=str(e))

    async def _announce_loop(self) -> None:
        while self._running:
            self._send("hello")
            await asyncio.sleep(self._interval_ms / 1000.0)

    async def _sweep_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._interval_ms / 1000.0)
            self.sweep()

    # ── Receiving ─────────────────────────────────────────────────

    def handle_datagram(
        self, data: bytes, addr: tuple[str, int], now: Optional[float] = None
    ) -> None:
        """Process one received datagram. Malformed datagrams are dropped."""
        now = time.monotonic() if now is None else now
        try:
            message = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning("discovery_bad_datagram", source=addr[0], error=str(e))
            return

        if not isinstance(message, dict) or not message.get("instance"):
            logger.warning("discovery_bad_datagram", source=addr[0], error="missing instance")
            return

        instance = str(message["instance"])
        if instance == self.instance:
            return

        event = message.get("event")
        name = message.get("name")
        announcement = {
            "instance": instance,
            "name": name,
            "address": addr[0],
            "data": message.get("data"),
        }

        if event == "hello":
            known = self._known.get(instance)
            if known is None:
                self._known[instance] = _KnownInstance(announcement, now)
                self.emit("available", name, announcement, "new")
            elif known.announcement != announcement:
                known.announcement = announcement
                known.last_seen = now
                self.emit("available", name, announcement, "dataChanged")
            else:
                known.last_seen = now
        elif event == "bye":
            known = self._known.pop(instance, None)
            if known is not None:
                self.emit("unavailable", name, known.announcement, "goodbye")
        else:
            logger.warning("discovery_unknown_event", source=addr[0], discovery_event=event)

    def sweep(self, now: Optional[float] = None) -> list[str]:
        """Drop instances silent for longer than the timeout.

        Returns:
            The instance ids reported unavailable.
        """
        now = time.monotonic() if now is None else now
        expired = [
            instance
            for instance, known in self._known.items()
            if now - known.last_seen > self.timeout_seconds
        ]
        for instance in expired:
            known = self._known.pop(instance)
            self.emit(
                "unavailable",
                known.announcement.get("name"),
                known.announcement,
                "timedOut",
            )
        return expired

    @property
    def known_instances(self) -> list[str]:
        return list(self._known)
