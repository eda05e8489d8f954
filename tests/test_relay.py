"""Tests for the relay service and its end-to-end behaviour with clients."""

import asyncio
import json

import pytest

from smartpark.models import SPOTS, SharedState, Zone
from smartpark.relay import Relay
from smartpark.sync import SyncManager

from helpers import make_spots, relay_connector, spots_payload, wait_until


class Inbox:
    """Records every message the relay sends to one peer."""

    def __init__(self):
        self.messages: list[dict] = []

    async def send(self, text: str) -> None:
        self.messages.append(json.loads(text))

    def of_type(self, msg_type: str) -> list[dict]:
        return [m for m in self.messages if m["type"] == msg_type]


def _msg(msg_type: str, payload: dict) -> str:
    return json.dumps({"type": msg_type, "payload": payload})


async def _connect(relay: Relay, count: int):
    inboxes = [Inbox() for _ in range(count)]
    peers = [await relay.connect(inbox.send) for inbox in inboxes]
    await relay.flush()
    return peers, inboxes


class TestRelayConnect:
    """Tests for peers joining and leaving."""

    @pytest.mark.asyncio
    async def test_new_peer_gets_init(self):
        """Test a new peer receives the full document as INIT."""
        relay = Relay()

        _, (inbox,) = await _connect(relay, 1)

        assert len(inbox.messages) == 1
        init = inbox.messages[0]
        assert init["type"] == "INIT"
        assert init["payload"]["spots"] == []
        assert init["payload"]["spotLocations"] == {}
        assert init["payload"]["mapImage"] is None

    @pytest.mark.asyncio
    async def test_init_not_sent_to_others(self):
        """Test INIT goes only to the joining peer."""
        relay = Relay()
        _, (first,) = await _connect(relay, 1)

        await _connect(relay, 1)

        assert len(first.messages) == 1

    @pytest.mark.asyncio
    async def test_disconnect_removes_peer(self):
        """Test a disconnected peer is no longer counted."""
        relay = Relay()
        (a, b), (inbox_a, _) = await _connect(relay, 2)

        await relay.disconnect(b)
        await relay.handle_text(a, _msg("UPDATE", {"zones": []}))
        await relay.flush()

        assert relay.peer_count == 1
        assert relay.snapshot()["zones"] == []


class TestRelayUpdate:
    """Tests for UPDATE handling."""

    @pytest.mark.asyncio
    async def test_update_applied_and_stamped(self):
        """Test an UPDATE is applied and stamps lastUpdated."""
        relay = Relay()
        (a,), _ = await _connect(relay, 1)
        before = relay.snapshot()["lastUpdated"]

        await asyncio.sleep(0.002)
        await relay.handle_text(a, _msg("UPDATE", {"spots": spots_payload(2)}))

        snapshot = relay.snapshot()
        assert snapshot["spots"] == spots_payload(2)
        assert snapshot["lastUpdated"] >= before
        assert relay.updates_applied == 1

    @pytest.mark.asyncio
    async def test_fan_out_to_all_other_peers(self):
        """Test an UPDATE reaches every other peer."""
        relay = Relay()
        (a, *_), inboxes = await _connect(relay, 4)
        payload = {"spots": spots_payload(3, occupied=("C-01",))}

        await relay.handle_text(a, _msg("UPDATE", payload))
        await relay.flush()

        for inbox in inboxes[1:]:
            assert inbox.of_type("UPDATE") == [{"type": "UPDATE", "payload": payload}]

    @pytest.mark.asyncio
    async def test_no_self_echo(self):
        """Test the sender does not get its own UPDATE back."""
        relay = Relay()
        (a, _), (inbox_a, _) = await _connect(relay, 2)

        await relay.handle_text(a, _msg("UPDATE", {"mapImage": "img"}))
        await relay.flush()

        assert inbox_a.of_type("UPDATE") == []

    @pytest.mark.asyncio
    async def test_broadcast_is_verbatim_payload(self):
        """Test the broadcast carries the payload as received."""
        relay = Relay()
        (a, _), (_, inbox_b) = await _connect(relay, 2)
        payload = {"zones": [], "extra": {"kept": True}}

        await relay.handle_text(a, _msg("UPDATE", payload))
        await relay.flush()

        assert inbox_b.of_type("UPDATE")[0]["payload"] == payload

    @pytest.mark.asyncio
    async def test_per_peer_order_preserved(self):
        """Test each peer sees updates in the order applied."""
        relay = Relay()
        (a, _), (_, inbox_b) = await _connect(relay, 2)

        for i in range(10):
            await relay.handle_text(a, _msg("UPDATE", {"mapImage": f"v{i}"}))
        await relay.flush()

        images = [m["payload"]["mapImage"] for m in inbox_b.of_type("UPDATE")]
        assert images == [f"v{i}" for i in range(10)]
        assert relay.snapshot()["mapImage"] == "v9"

    @pytest.mark.asyncio
    async def test_last_update_per_field_wins(self):
        """Test the last UPDATE of a field wins."""
        relay = Relay()
        (a, b), _ = await _connect(relay, 2)

        await relay.handle_text(a, _msg("UPDATE", {"spots": spots_payload(1)}))
        await relay.handle_text(b, _msg("UPDATE", {"zones": []}))
        await relay.handle_text(b, _msg("UPDATE", {"spots": spots_payload(4)}))

        assert relay.snapshot()["spots"] == spots_payload(4)

    @pytest.mark.asyncio
    async def test_concurrent_updates_serialized(self):
        """Test concurrent updates are applied one at a time."""
        relay = Relay()
        peers, _ = await _connect(relay, 5)

        await asyncio.gather(*(
            relay.handle_text(peer, _msg("UPDATE", {"spots": spots_payload(i + 1)}))
            for i, peer in enumerate(peers)
        ))

        assert relay.updates_applied == 5
        assert len(relay.snapshot()["spots"]) in range(1, 6)


class TestRelaySeed:
    """Tests for SYNC_INITIAL seeding."""

    @pytest.mark.asyncio
    async def test_seed_once(self):
        """Test only the first seed is accepted."""
        relay = Relay()
        (a, b), _ = await _connect(relay, 2)

        await relay.handle_text(a, _msg("SYNC_INITIAL", {"spots": spots_payload(5)}))
        await relay.handle_text(b, _msg("SYNC_INITIAL", {"spots": spots_payload(9)}))

        assert relay.snapshot()["spots"] == spots_payload(5)

    @pytest.mark.asyncio
    async def test_seed_not_broadcast(self):
        """Test a seed is not broadcast to other peers."""
        relay = Relay()
        (a, _), (_, inbox_b) = await _connect(relay, 2)

        await relay.handle_text(a, _msg("SYNC_INITIAL", {"spots": spots_payload(5)}))
        await relay.flush()

        assert [m["type"] for m in inbox_b.messages] == ["INIT"]

    @pytest.mark.asyncio
    async def test_seed_ignored_when_spots_present(self):
        """Test a seed is ignored once spots exist."""
        relay = Relay()
        (a,), _ = await _connect(relay, 1)
        await relay.handle_text(a, _msg("UPDATE", {"spots": spots_payload(2)}))

        await relay.handle_text(a, _msg("SYNC_INITIAL", {"spots": spots_payload(8), "zones": []}))

        assert len(relay.snapshot()["spots"]) == 2

    @pytest.mark.asyncio
    async def test_seed_with_empty_spots_leaves_relay_seedable(self):
        """Test a seed without spots leaves the relay seedable."""
        relay = Relay()
        (a,), _ = await _connect(relay, 1)

        await relay.handle_text(a, _msg("SYNC_INITIAL", {"spots": [], "mapImage": "img"}))
        await relay.handle_text(a, _msg("SYNC_INITIAL", {"spots": spots_payload(3)}))

        assert len(relay.snapshot()["spots"]) == 3


class TestRelayRobustness:
    """Tests for bad input and misbehaving peers."""

    @pytest.mark.asyncio
    async def test_malformed_message_discarded(self, caplog):
        """Test malformed messages are logged and dropped."""
        relay = Relay()
        (a, _), (_, inbox_b) = await _connect(relay, 2)

        await relay.handle_text(a, "{{{")
        await relay.handle_text(a, json.dumps({"payload": {"spots": []}}))
        await relay.flush()

        assert relay.updates_applied == 0
        assert [m["type"] for m in inbox_b.messages] == ["INIT"]
        assert "malformed" in caplog.text.lower()

    @pytest.mark.asyncio
    async def test_oversized_input_discarded(self):
        """Test input too deep or too large to parse is dropped and later updates still flow."""
        relay = Relay()
        (a, _), (_, inbox_b) = await _connect(relay, 2)
        huge = "9" * 400

        await relay.handle_text(a, "[" * 100000)
        await relay.handle_text(a, '{"type": "UPDATE", "payload": {"mapImage": ' + "9" * 5000 + "}}")
        await relay.handle_text(
            a, '{"type": "UPDATE", "payload": {"spotLocations": {"C-01": {"x": ' + huge + ', "y": 1}}}}'
        )
        await relay.handle_text(a, _msg("UPDATE", {"zones": []}))
        await relay.flush()

        assert relay.updates_applied == 1
        assert [m["type"] for m in inbox_b.messages] == ["INIT", "UPDATE"]

    @pytest.mark.asyncio
    async def test_init_from_client_ignored(self):
        """Test an INIT sent by a client is ignored."""
        relay = Relay()
        (a,), _ = await _connect(relay, 1)

        await relay.handle_text(a, _msg("INIT", {"spots": spots_payload(3)}))

        assert relay.snapshot()["spots"] == []

    @pytest.mark.asyncio
    async def test_failing_peer_skipped(self):
        """Test a peer whose send fails is closed and skipped."""
        relay = Relay()
        healthy = Inbox()

        async def broken(text):
            raise ConnectionResetError("gone")

        a = await relay.connect(healthy.send)
        bad = await relay.connect(broken)
        c_inbox = Inbox()
        await relay.connect(c_inbox.send)
        await relay.flush()

        await relay.handle_text(a, _msg("UPDATE", {"zones": []}))
        await relay.flush()

        assert bad.closed
        assert len(c_inbox.of_type("UPDATE")) == 1

    @pytest.mark.asyncio
    async def test_slow_peer_does_not_block(self):
        """Test a stuck peer does not hold up the others."""
        relay = Relay(peer_queue_size=2)
        release = asyncio.Event()
        fast = Inbox()

        async def stuck(text):
            await release.wait()

        a = await relay.connect(fast.send)
        slow = await relay.connect(stuck)
        other = Inbox()
        await relay.connect(other.send)

        for i in range(5):
            await relay.handle_text(a, _msg("UPDATE", {"mapImage": f"v{i}"}))

        await wait_until(lambda: len(other.of_type("UPDATE")) == 5)
        assert slow.dropped > 0
        release.set()
        await relay.flush()


class TestRelayWithClients:
    """Scenarios with real sync managers linked to an in-process relay."""

    @pytest.mark.asyncio
    async def test_first_client_seeds_second_receives(self):
        """Test the first client seeds and the second receives the state."""
        relay = Relay()
        seed_state = SharedState(spots=make_spots(5))

        client1 = SyncManager("ws://relay", initial_state=seed_state, connector=relay_connector(relay))
        await client1.connect()
        task1 = asyncio.create_task(client1.serve())
        await wait_until(lambda: len(relay.snapshot()["spots"]) == 5)

        client2 = SyncManager("ws://relay", connector=relay_connector(relay))
        await client2.connect()
        task2 = asyncio.create_task(client2.serve())
        await wait_until(lambda: len(client2.document.spots) == 5)

        assert client2.document.spots == make_spots(5)

        await client1.close()
        await client2.close()
        await asyncio.gather(task1, task2)

    @pytest.mark.asyncio
    async def test_update_reaches_other_client_only(self):
        """Test a commit reaches the other client without echo."""
        relay = Relay()
        zones = [Zone("z1", "Entrance", 0, 0, 10, 10, "#22c55e")]
        base = SharedState(spots=make_spots(3), zones=zones, map_image="plan")

        c1 = SyncManager("ws://relay", initial_state=base, connector=relay_connector(relay))
        c2 = SyncManager("ws://relay", initial_state=base, connector=relay_connector(relay))
        received = []
        c1.add_listener(lambda fields, source: received.append(fields))

        await c1.connect()
        t1 = asyncio.create_task(c1.serve())
        await wait_until(lambda: len(relay.snapshot()["spots"]) == 3)
        await c2.connect()
        t2 = asyncio.create_task(c2.serve())
        await relay.flush()
        await wait_until(lambda: relay.peer_count == 2)

        toggled = make_spots(3, occupied=("C-01",))
        await c1.commit({SPOTS: toggled})
        await wait_until(lambda: c2.document.spots == toggled)
        await relay.flush()

        assert c2.document.zones == zones
        assert c2.document.map_image == "plan"
        # c1 applied its own change locally and never got it echoed back
        assert received == [[SPOTS]]

        await c1.close()
        await c2.close()
        await asyncio.gather(t1, t2)

    @pytest.mark.asyncio
    async def test_server_wins_over_offline_edit(self, store):
        """Test the relay state replaces an unsynced offline edit on reconnect."""
        relay = Relay()
        (seeder,), _ = await _connect(relay, 1)
        await relay.handle_text(seeder, _msg("SYNC_INITIAL", {"spots": spots_payload(4)}))

        links = []
        client = SyncManager(
            "ws://relay",
            store=store,
            initial_state=SharedState(spots=make_spots(4)),
            connector=relay_connector(relay, links),
        )

        # Offline: toggle a spot, the fallback store records it
        offline = make_spots(4, occupied=("C-02",))
        await client.commit({SPOTS: offline})
        assert store.load_field(SPOTS) == offline

        # Reconnect: the relay's INIT replaces the unsynced edit
        await client.connect()
        task = asyncio.create_task(client.serve())
        await wait_until(lambda: client.document.spots == make_spots(4))

        assert store.load_field(SPOTS) == make_spots(4)
        await client.close()
        await task
