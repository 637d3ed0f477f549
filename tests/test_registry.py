"""Tests for the membership registry."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from supercluster.cluster.models import PeerInfo, Role
from supercluster.cluster.registry import MembershipRegistry
from supercluster.core.events import EventEmitter


class TestOnAvailable:
    """Announcements of the other role populate the table."""

    @pytest.fixture
    def registry(self) -> MembershipRegistry:
        return MembershipRegistry(Role.MASTER)

    def test_peer_id_is_address_and_port(self, registry, make_announcement) -> None:
        registry.on_available("node-a", make_announcement("10.0.0.5", 44401), "new")

        peer = registry.get_peer(Role.WORKER, "10.0.0.5:44401")
        assert peer is not None
        assert peer.id == "10.0.0.5:44401"
        assert peer.address == "10.0.0.5"
        assert peer.rest_api_port == 44401
        assert peer.role == Role.WORKER

    def test_reannouncement_replaces_entry(self, registry, make_announcement) -> None:
        registry.on_available("node-a", make_announcement(version=1, label="old"), "new")
        registry.on_available("node-a", make_announcement(version=2), "dataChanged")

        peer = registry.get_peer(Role.WORKER, "10.0.0.5:44401")
        data = peer.announcement["data"]
        assert data["version"] == 2
        assert "label" not in data
        assert registry.peer_count(Role.WORKER) == 1

    def test_same_role_is_ignored_silently(self, registry, make_announcement) -> None:
        registry.on_available("other-master", make_announcement(role="master"), "new")

        assert registry.peer_count(Role.MASTER) == 0
        assert registry.dropped_announcements == 0

    @pytest.mark.parametrize(
        "name,payload",
        [
            ("", {"address": "10.0.0.5", "data": {"role": "worker", "rest_api_port": 1}}),
            (None, {"address": "10.0.0.5", "data": {"role": "worker", "rest_api_port": 1}}),
            ("node", None),
            ("node", {"address": "10.0.0.5"}),
            ("node", {"address": "10.0.0.5", "data": {"role": "", "rest_api_port": 1}}),
            ("node", {"address": "10.0.0.5", "data": {"role": "tracker", "rest_api_port": 1}}),
            ("node", {"address": "10.0.0.5", "data": {"role": "worker", "rest_api_port": "x"}}),
            ("node", {"data": {"role": "worker", "rest_api_port": 44401}}),
        ],
    )
    def test_malformed_input_is_dropped(self, registry, name, payload) -> None:
        events = []
        registry.events.on("worker_available", lambda *args: events.append(args))

        registry.on_available(name, payload, "new")

        assert registry.list_peers(Role.WORKER) == []
        assert registry.dropped_announcements == 1
        assert events == []

    def test_event_fires_after_table_update(self, make_announcement) -> None:
        emitter = EventEmitter()
        registry = MembershipRegistry(Role.MASTER, emitter=emitter)
        seen = []

        def listener(name: str, peer: PeerInfo, reason: str) -> None:
            seen.append((name, reason, registry.get_peer(Role.WORKER, peer.id)))

        emitter.on("worker_available", listener)
        registry.on_available("node-a", make_announcement(), "new")

        assert len(seen) == 1
        name, reason, stored = seen[0]
        assert (name, reason) == ("node-a", "new")
        assert stored is not None and stored.id == "10.0.0.5:44401"

    def test_list_peers_is_a_snapshot(self, registry, make_announcement) -> None:
        registry.on_available("node-a", make_announcement(), "new")
        snapshot = registry.list_peers(Role.WORKER)
        snapshot.clear()

        assert registry.peer_count(Role.WORKER) == 1


class TestOnUnavailable:
    @pytest.fixture
    def registry(self) -> MembershipRegistry:
        return MembershipRegistry(Role.MASTER)

    def test_removes_known_peer(self, registry, make_announcement) -> None:
        registry.on_available("node-a", make_announcement(), "new")
        registry.on_unavailable("node-a", make_announcement(), "timedOut")

        assert registry.get_peer(Role.WORKER, "10.0.0.5:44401") is None

    def test_unknown_peer_is_noop(self, registry, make_announcement) -> None:
        events = []
        registry.events.on("worker_unavailable", lambda *args: events.append(args))

        registry.on_unavailable("ghost", make_announcement("10.9.9.9"), "timedOut")

        assert registry.peer_count(Role.WORKER) == 0
        assert len(events) == 1
        assert events[0][1].id == "10.9.9.9:44401"

    def test_malformed_input_does_not_raise(self, registry) -> None:
        registry.on_unavailable("", {"bogus": True}, None)
        assert registry.dropped_announcements == 1


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_announces_and_subscribes(self) -> None:
        discovery = MagicMock()
        discovery.start = AsyncMock()
        registry = MembershipRegistry(Role.WORKER, discovery=discovery)

        await registry.start({"rest_api_port": 44401}, 500)

        discovery.announce.assert_called_once_with(
            "worker", {"rest_api_port": 44401, "role": "worker"}, 500
        )
        discovery.on.assert_any_call("available", registry.on_available)
        discovery.on.assert_any_call("unavailable", registry.on_unavailable)
        discovery.start.assert_awaited_once()

    def test_summary_counts(self, make_announcement) -> None:
        registry = MembershipRegistry(Role.MASTER)
        registry.on_available("a", make_announcement("10.0.0.1"), "new")
        registry.on_available("b", make_announcement("10.0.0.2"), "new")

        summary = registry.summary()
        assert summary["role"] == "master"
        assert summary["peers"] == {"master": 0, "worker": 2}
