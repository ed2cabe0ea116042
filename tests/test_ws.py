# test_ws.py -- ConnectionHub presence broadcast and message routing

from __future__ import annotations

import asyncio

import pytest

from relay_chat.presence import Connection
from relay_chat.ws import EVENT_NEW_MESSAGE, EVENT_ONLINE_USERS, ConnectionHub

from conftest import FakeWebSocket


def _message(sender: str = "alice", receiver: str = "bob", text: str = "hi") -> dict:
    return {
        "_id": "m1",
        "senderId": sender,
        "receiverId": receiver,
        "text": text,
        "image": None,
        "createdAt": "2026-01-01T00:00:00.000+00:00",
        "updatedAt": "2026-01-01T00:00:00.000+00:00",
    }


@pytest.mark.asyncio
async def test_each_mutation_broadcasts_once() -> None:
    hub = ConnectionHub()
    ws1 = FakeWebSocket()
    c1 = Connection(ws1)

    await hub.register("alice", c1)
    assert ws1.events(EVENT_ONLINE_USERS) == [["alice"]]

    ws2 = FakeWebSocket()
    c2 = Connection(ws2)
    await hub.register("bob", c2)
    assert ws1.events(EVENT_ONLINE_USERS) == [["alice"], ["alice", "bob"]]
    assert ws2.events(EVENT_ONLINE_USERS) == [["alice", "bob"]]

    await hub.deregister("bob", c2)
    assert ws1.events(EVENT_ONLINE_USERS)[-1] == ["alice"]
    assert len(ws1.events(EVENT_ONLINE_USERS)) == 3
    # The departed connection hears nothing after it left
    assert len(ws2.events(EVENT_ONLINE_USERS)) == 1


@pytest.mark.asyncio
async def test_two_tabs_scenario() -> None:
    hub = ConnectionHub()
    ws1, ws2, ws3 = FakeWebSocket(), FakeWebSocket(), FakeWebSocket()
    c1, c2, c3 = Connection(ws1), Connection(ws2), Connection(ws3)

    await hub.register("alice", c1)
    await hub.register("alice", c2)
    assert hub.registry.connections_for("alice") == {c1, c2}
    assert ws2.events(EVENT_ONLINE_USERS) == [["alice"]]

    await hub.register("bob", c3)
    for ws in (ws1, ws2, ws3):
        assert ws.events(EVENT_ONLINE_USERS)[-1] == ["alice", "bob"]

    # One tab closes, alice stays online
    await hub.deregister("alice", c1)
    assert ws3.events(EVENT_ONLINE_USERS)[-1] == ["alice", "bob"]
    assert hub.registry.connections_for("alice") == {c2}


@pytest.mark.asyncio
async def test_broadcast_survives_dead_connection() -> None:
    hub = ConnectionHub()
    ws_dead = FakeWebSocket(fail_on_send=True)
    ws_ok = FakeWebSocket()
    await hub.register("alice", Connection(ws_dead))
    await hub.register("bob", Connection(ws_ok))
    assert ws_ok.events(EVENT_ONLINE_USERS) == [["alice", "bob"]]
    # Failed sends don't deregister anyone; the lifecycle handler does that
    assert hub.registry.online_user_ids() == {"alice", "bob"}


@pytest.mark.asyncio
async def test_broadcast_empty_no_op() -> None:
    hub = ConnectionHub()
    await hub.broadcast_presence()  # Should not raise


@pytest.mark.asyncio
async def test_disconnect_then_new_user_never_reports_stale_online() -> None:
    hub = ConnectionHub()
    ws_a, ws_b, ws_c = FakeWebSocket(), FakeWebSocket(), FakeWebSocket()
    c_a, c_b = Connection(ws_a), Connection(ws_b)
    await hub.register("alice", c_a)
    await hub.register("bob", c_b)

    await hub.deregister("bob", c_b)
    await hub.register("carol", Connection(ws_c))

    assert ws_a.events(EVENT_ONLINE_USERS)[-1] == ["alice", "carol"]
    assert ws_c.events(EVENT_ONLINE_USERS) == [["alice", "carol"]]


class TestRouteMessage:
    @pytest.mark.asyncio
    async def test_delivers_to_every_receiver_connection(self) -> None:
        hub = ConnectionHub()
        ws_sender = FakeWebSocket()
        ws_b1, ws_b2 = FakeWebSocket(), FakeWebSocket()
        await hub.register("alice", Connection(ws_sender))
        await hub.register("bob", Connection(ws_b1))
        await hub.register("bob", Connection(ws_b2))

        delivered = await hub.route_message(_message())

        assert delivered == 2
        for ws in (ws_b1, ws_b2):
            [msg] = ws.events(EVENT_NEW_MESSAGE)
            assert msg["senderId"] == "alice"
            assert msg["receiverId"] == "bob"
            assert msg["text"] == "hi"
        assert ws_sender.events(EVENT_NEW_MESSAGE) == []

    @pytest.mark.asyncio
    async def test_offline_receiver_is_silent(self) -> None:
        hub = ConnectionHub()
        ws_a = FakeWebSocket()
        await hub.register("alice", Connection(ws_a))
        delivered = await hub.route_message(_message())
        assert delivered == 0
        assert ws_a.events(EVENT_NEW_MESSAGE) == []

    @pytest.mark.asyncio
    async def test_receiver_gone_after_disconnect(self) -> None:
        hub = ConnectionHub()
        ws_b = FakeWebSocket()
        c_b = Connection(ws_b)
        await hub.register("bob", c_b)
        await hub.deregister("bob", c_b)
        assert await hub.route_message(_message()) == 0
        assert ws_b.events(EVENT_NEW_MESSAGE) == []

    @pytest.mark.asyncio
    async def test_one_failing_tab_does_not_block_the_other(self) -> None:
        hub = ConnectionHub()
        ws_ok = FakeWebSocket()
        await hub.register("bob", Connection(FakeWebSocket(fail_on_send=True)))
        await hub.register("bob", Connection(ws_ok))
        assert await hub.route_message(_message()) == 1
        assert len(ws_ok.events(EVENT_NEW_MESSAGE)) == 1

    @pytest.mark.asyncio
    async def test_message_without_receiver_is_ignored(self) -> None:
        hub = ConnectionHub()
        assert await hub.route_message({"_id": "m1", "text": "hi"}) == 0


@pytest.mark.asyncio
async def test_close_all_closes_sockets() -> None:
    hub = ConnectionHub()
    ws1, ws2 = FakeWebSocket(), FakeWebSocket()
    await hub.register("alice", Connection(ws1))
    await hub.register("bob", Connection(ws2))
    await hub.close_all()
    assert ws1.closed_with == 1001
    assert ws2.closed_with == 1001


class TestStalledClient:
    @pytest.mark.asyncio
    async def test_route_to_healthy_user_ignores_stalled_socket(self) -> None:
        hub = ConnectionHub(send_timeout=30)
        hub.registry.register("alice", Connection(FakeWebSocket(stall_on_send=True)))
        ws_bob = FakeWebSocket()
        hub.registry.register("bob", Connection(ws_bob))

        # A presence broadcast stuck on alice's socket is still in flight
        pending = asyncio.create_task(hub.broadcast_presence())
        await asyncio.sleep(0)

        delivered = await asyncio.wait_for(hub.route_message(_message()), timeout=1.0)

        assert delivered == 1
        assert ws_bob.events(EVENT_NEW_MESSAGE)[0]["text"] == "hi"
        await asyncio.sleep(0.01)
        assert ws_bob.events(EVENT_ONLINE_USERS) == [["alice", "bob"]]
        pending.cancel()
        with pytest.raises(asyncio.CancelledError):
            await pending

    @pytest.mark.asyncio
    async def test_stalled_push_times_out_as_failure(self) -> None:
        hub = ConnectionHub(send_timeout=0.05)
        ws_stuck = FakeWebSocket(stall_on_send=True)
        ws_ok = FakeWebSocket()
        await hub.register("alice", Connection(ws_stuck))
        await hub.register("bob", Connection(ws_ok))

        assert ws_ok.events(EVENT_ONLINE_USERS) == [["alice", "bob"]]
        assert ws_stuck.messages == []
        # Timing out is a failed push, not a disconnect
        assert hub.registry.online_user_ids() == {"alice", "bob"}

    @pytest.mark.asyncio
    async def test_stalled_receiver_route_returns_zero(self) -> None:
        hub = ConnectionHub(send_timeout=0.05)
        hub.registry.register("bob", Connection(FakeWebSocket(stall_on_send=True)))
        assert await hub.route_message(_message()) == 0


class TestPresenceOrdering:
    @pytest.mark.asyncio
    async def test_older_snapshot_is_dropped_after_newer(self) -> None:
        ws = FakeWebSocket()
        conn = Connection(ws)
        assert await conn.send(EVENT_ONLINE_USERS, ["alice", "bob"], presence_seq=2)
        assert not await conn.send(EVENT_ONLINE_USERS, ["alice"], presence_seq=1)
        assert ws.events(EVENT_ONLINE_USERS) == [["alice", "bob"]]

    @pytest.mark.asyncio
    async def test_concurrent_broadcasts_end_on_latest_state(self) -> None:
        hub = ConnectionHub()
        ws_a = FakeWebSocket()
        c_b = Connection(FakeWebSocket())
        hub.registry.register("alice", Connection(ws_a))
        hub.registry.register("bob", c_b)

        first = asyncio.create_task(hub.broadcast_presence())
        await asyncio.sleep(0)  # first snapshot still has bob
        hub.registry.deregister("bob", c_b)
        second = asyncio.create_task(hub.broadcast_presence())
        await asyncio.gather(first, second)

        assert ws_a.events(EVENT_ONLINE_USERS)[-1] == ["alice"]
