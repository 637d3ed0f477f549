"""Membership registry: the local view of which peers exist.

Discovery delivers raw, unreliable announcements. The registry validates
them, keeps one entry per ``address:rest_api_port`` for every peer of the
other role, and publishes typed ``<role>_available`` /
``<role>_unavailable`` events once the table has been updated.
"""

from __future__ import annotations

import threading
from typing import Any, Optional

import structlog

from supercluster.cluster.discovery import Discovery
from supercluster.cluster.models import PeerInfo, Role
from supercluster.core.events import EventEmitter

logger = structlog.get_logger(__name__)


class MembershipRegistry:
    """Thread-safe table of known peers, keyed by role then peer id.

    The table is only written by :meth:`on_available` and
    :meth:`on_unavailable`, under a lock. Readers get immutable
    :class:`PeerInfo` snapshots, never the live mapping. Events are
    emitted after the lock is released, so a listener always sees the
    table already updated.

    Args:
        role: The local node's role. Announcements of the same role are
            ignored.
        discovery: Discovery collaborator; created on :meth:`start` if
            not provided.
        emitter: Where events are published; a private emitter if omitted.
    """

    def __init__(
        self,
        role: Role,
        discovery: Optional[Discovery] = None,
        emitter: Optional[EventEmitter] = None,
    ) -> None:
        self.role = role
        self.discovery = discovery
        self.events = emitter if emitter is not None else EventEmitter()
        self.local_data: dict[str, Any] = {}
        self.dropped_announcements = 0

        self._peers: dict[Role, dict[str, PeerInfo]] = {r: {} for r in Role}
        self._lock = threading.Lock()

    # ── Lifecycle ─────────────────────────────────────────────────

    async def start(self, local_data: dict[str, Any], announce_interval_ms: int) -> None:
        """Begin announcing ``local_data`` and listening for peers.

        Raises:
            OSError: If the discovery transport cannot bind.
        """
        if self.discovery is None:
            self.discovery = Discovery()
        self.local_data = dict(local_data, role=self.role.value)

        self.discovery.on("available", self.on_available)
        self.discovery.on("unavailable", self.on_unavailable)
        self.discovery.announce(self.role.value, self.local_data, announce_interval_ms)
        await self.discovery.start()

    async def stop(self) -> None:
        if self.discovery is None:
            return
        self.discovery.off("available", self.on_available)
        self.discovery.off("unavailable", self.on_unavailable)
        await self.discovery.stop()

    # ── Discovery events ──────────────────────────────────────────

    def _validate(self, handler: str, name: Any, announcement: Any) -> Optional[PeerInfo]:
        """Turn a raw announcement into a PeerInfo, or None if it is dropped."""
        if not isinstance(name, str) or not name:
            self._drop(handler, "bad name", name=repr(name))
            return None

        data = announcement.get("data") if isinstance(announcement, dict) else None
        role = data.get("role") if isinstance(data, dict) else None
        if not isinstance(role, str) or not role:
            self._drop(handler, "bad announcement", name=name)
            return None

        if role == self.role.value:
            return None

        try:
            return PeerInfo.from_announcement(announcement)
        except ValueError as e:
            self._drop(handler, str(e), name=name)
            return None

    def _drop(self, handler: str, reason: str, **context: Any) -> None:
        self.dropped_announcements += 1
        logger.warning("announcement_dropped", handler=handler, reason=reason, **context)

    def on_available(self, name: Any, announcement: Any, reason: Any = None) -> None:
        """Insert or wholesale-replace a peer. Never raises."""
        peer = self._validate("available", name, announcement)
        if peer is None:
            return

        with self._lock:
            table = self._peers[peer.role]
            refreshed = peer.id in table
            table[peer.id] = peer

        logger.info(
            "peer_available",
            peer_id=peer.id,
            peer_role=peer.role.value,
            name=name,
            reason=reason,
            refreshed=refreshed,
        )
        self.events.emit(f"{peer.role.value}_available", name, peer, reason)

    def on_unavailable(self, name: Any, announcement: Any, reason: Any = None) -> None:
        """Remove a peer if present; unknown peers are a no-op. Never raises."""
        peer = self._validate("unavailable", name, announcement)
        if peer is None:
            return

        with self._lock:
            removed = self._peers[peer.role].pop(peer.id, None)

        logger.info(
            "peer_unavailable",
            peer_id=peer.id,
            peer_role=peer.role.value,
            name=name,
            reason=reason,
            was_known=removed is not None,
        )
        self.events.emit(f"{peer.role.value}_unavailable", name, removed or peer, reason)

    # ── Queries ───────────────────────────────────────────────────

    def get_peer(self, role: Role, peer_id: str) -> Optional[PeerInfo]:
        """Look up a peer by role and id; None if unknown."""
        with self._lock:
            return self._peers[role].get(peer_id)

    def list_peers(self, role: Role) -> list[PeerInfo]:
        """Snapshot of the peers currently known for ``role``."""
        with self._lock:
            return list(self._peers[role].values())

    def peer_count(self, role: Role) -> int:
        with self._lock:
            return len(self._peers[role])

    def summary(self) -> dict[str, Any]:
        """Counts per role, for health endpoints and logs."""
        with self._lock:
            return {
                "role": self.role.value,
                "peers": {r.value: len(peers) for r, peers in self._peers.items()},
                "dropped_announcements": self.dropped_announcements,
            }
