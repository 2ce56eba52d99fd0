"""
Tests for the realtime event hub.

Covers:
- Registration: multiple channels per user, connected/connectedUsers frames
- Unregistration: exactly one handle, offline listeners, idempotence
- Publish: fan-out to every channel of every target, exclusion, best effort
- Back-pressure: a full channel drops its own frames only
- Liveness: heartbeat sweep, pruning silent channels
- Maintenance ticks, status snapshot and concurrent registry access

The hub here is a private instance with a fake clock and its own in-memory
channel layer, so no test depends on wall time or on the process-wide hub.
"""

import asyncio
import json
import threading

import pytest
from channels.layers import InMemoryChannelLayer

from chat.events import ConversationDeleted, TypingStart
from chat.hub import CLOSE_MESSAGE_TYPE, EventHub, user_group
from chat.tests.layer_helpers import PushChannel


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def layer():
    return InMemoryChannelLayer(capacity=4)


@pytest.fixture
def hub(clock, layer):
    return EventHub(
        heartbeat_interval=30.0,
        liveness_window=75.0,
        tick=0.5,
        clock=clock,
        channel_layer=layer,
    )


@pytest.fixture
def open_channel(hub, layer):
    def _open(user_id, drain=True):
        channel = PushChannel(hub, layer, user_id)
        if drain:
            channel.messages()
        return channel

    return _open


def deleted(conversation_id="1"):
    return ConversationDeleted(conversation_id=conversation_id)


# =============================================================================
# Registration
# =============================================================================


class TestRegister:
    def test_first_frames_are_connected_then_snapshot(self, open_channel):
        """
        A new channel starts with connected, then the online-user snapshot.

        Why it matters: Clients treat "connected" as the start of a session
        and trigger their resync on it.
        """
        channel = open_channel(7, drain=False)

        frames = channel.frames()
        assert [f["type"] for f in frames] == ["connected", "connectedUsers"]
        assert frames[0]["data"] == {"user_id": "7", "heartbeat_interval": 30.0}
        assert frames[1]["data"]["user_ids"] == ["7"]

    def test_channel_joins_user_group(self, open_channel, layer):
        channel = open_channel(7)

        assert channel.name in layer.groups[user_group(7)]

    def test_user_may_hold_several_channels(self, hub, open_channel):
        """
        Registering again never closes the user's other channels.

        Why it matters: One person may have several tabs and devices open.
        """
        first = open_channel(7)
        second = open_channel(7)

        assert hub.channel_count(7) == 2
        assert first.handle.closed is False
        assert second.handle.closed is False

    def test_coming_online_is_broadcast(self, open_channel):
        watcher = open_channel(1)

        open_channel(2)

        assert watcher.frames() == [
            {"type": "connectedUsers", "data": {"user_ids": ["1", "2"]}}
        ]

    def test_second_channel_does_not_rebroadcast(self, open_channel):
        watcher = open_channel(1)
        open_channel(2)
        watcher.messages()

        open_channel(2)

        assert watcher.messages() == []


# =============================================================================
# Unregistration
# =============================================================================


class TestUnregister:
    def test_removes_exactly_that_handle(self, hub, open_channel, layer):
        first = open_channel(7)
        second = open_channel(7)

        assert hub.unregister(first.handle) is True

        assert hub.channel_count(7) == 1
        assert first.handle.closed is True
        assert second.handle.closed is False
        assert hub.is_online(7) is True
        assert set(layer.groups[user_group(7)]) == {second.name}

    def test_unregister_twice_is_harmless(self, hub, open_channel):
        channel = open_channel(7)
        hub.unregister(channel.handle)

        assert hub.unregister(channel.handle) is False

    def test_last_channel_runs_offline_listeners(self, hub, open_channel):
        """
        Offline listeners run when a user's last channel closes.

        Why it matters: Typing indicators of a disconnected user are cleared.
        """
        offline = []
        hub.add_offline_listener(offline.append)
        first = open_channel(7)
        second = open_channel(7)

        hub.unregister(first.handle)
        assert offline == []

        hub.unregister(second.handle)
        assert offline == ["7"]
        assert hub.is_online(7) is False

    def test_going_offline_is_broadcast(self, hub, open_channel):
        watcher = open_channel(1)
        leaving = open_channel(2)
        watcher.messages()

        hub.unregister(leaving.handle)

        assert watcher.frames() == [
            {"type": "connectedUsers", "data": {"user_ids": ["1"]}}
        ]

    def test_unregistered_channel_stops_receiving(self, hub, open_channel):
        channel = open_channel(7)
        hub.unregister(channel.handle)

        hub.publish(deleted(), [7])

        assert channel.messages() == []


# =============================================================================
# Publish
# =============================================================================


class TestPublish:
    def test_reaches_every_channel_of_every_target(self, hub, open_channel):
        a1 = open_channel("a")
        a2 = open_channel("a")
        b = open_channel("b")
        c = open_channel("c")
        for channel in (a1, a2, b, c):
            channel.messages()

        addressed = hub.publish(deleted(), ["a", "b"])

        assert addressed == 2
        assert a1.types() == ["conversationDeleted"]
        assert a2.types() == ["conversationDeleted"]
        assert b.types() == ["conversationDeleted"]
        assert c.types() == []

    def test_exclude_leaves_out_one_user(self, hub, open_channel):
        a = open_channel("a")
        b = open_channel("b")
        a.messages()

        hub.publish(
            TypingStart(conversation_id="1", user_id="a"), ["a", "b"], exclude="a"
        )

        assert a.types() == []
        assert b.types() == ["typingStart"]

    def test_offline_targets_are_not_an_error(self, hub):
        """
        Publishing to users without channels is not an error.

        Why it matters: There is no queue for offline users; they re-fetch.
        """
        assert hub.publish(deleted(), ["nobody"]) == 1
        assert hub.publish(deleted(), []) == 0

    def test_targets_accept_ints_and_strings(self, hub, open_channel):
        channel = open_channel(5)

        hub.publish(deleted("1"), [5])
        hub.publish(deleted("2"), ["5"])

        assert [f["data"]["conversation_id"] for f in channel.frames()] == ["1", "2"]

    def test_full_channel_drops_without_affecting_others(self, hub, open_channel):
        """
        A slow channel loses frames; the others keep receiving.

        Why it matters: One stalled tab must never stall everyone else.
        """
        slow = open_channel("slow", drain=False)
        fast = open_channel("fast")
        # slow now holds connected + two connectedUsers snapshots

        for n in range(4):
            hub.publish(deleted(str(n)), ["slow", "fast"])

        slow_frames = slow.frames()
        assert len(slow_frames) == 4
        assert slow_frames[-1] == {
            "type": "conversationDeleted",
            "data": {"conversation_id": "0"},
        }
        assert fast.types() == ["conversationDeleted"] * 4

    def test_direct_send_to_full_channel_counts_drop(self, hub, open_channel, clock):
        slow = open_channel("slow", drain=False)
        open_channel("other")
        hub.publish(deleted(), ["slow"])

        hub.sweep(clock.now + 10)

        assert slow.handle.dropped_frames == 1

    def test_broadcast_reaches_every_local_channel(self, hub, open_channel):
        open_channel("a")
        open_channel("b")

        assert hub.broadcast(deleted()) == 2


class TestAsyncPublish:
    @pytest.mark.asyncio
    async def test_apublish_from_running_loop(self, layer):
        """
        Async callers publish without leaving the event loop.

        Why it matters: publish() uses async_to_sync, which cannot run on
        the loop thread itself.
        """
        hub = EventHub(channel_layer=layer)
        channel_name = await layer.new_channel()
        await layer.group_add(user_group(3), channel_name)

        addressed = await hub.apublish(deleted("9"), [3])
        message = await asyncio.wait_for(layer.receive(channel_name), timeout=1)

        assert addressed == 1
        assert message["type"] == "hub.event"
        assert json.loads(message["frame"])["data"] == {"conversation_id": "9"}


# =============================================================================
# Liveness
# =============================================================================


class TestSweep:
    def test_live_channels_get_heartbeat(self, hub, open_channel, clock):
        channel = open_channel(7)

        pruned = hub.sweep(clock.now + 10)

        assert pruned == 0
        assert channel.types() == ["heartbeat"]

    def test_silent_channel_is_pruned(self, hub, open_channel, clock):
        """
        A channel that has not answered within the liveness window is pruned
        and its consumer is told to close with 4008.

        Why it matters: Half-open sockets would otherwise receive frames forever.
        """
        stale = open_channel(7)
        clock.now += 60
        fresh = open_channel(8)
        stale.messages()
        clock.now += 20

        pruned = hub.sweep()

        assert pruned == 1
        assert stale.handle.closed is True
        assert stale.handle.was_pruned is True
        assert fresh.handle.closed is False
        assert hub.is_online(7) is False
        assert stale.messages() == [{"type": CLOSE_MESSAGE_TYPE, "code": 4008}]

    def test_touch_keeps_channel_alive(self, hub, open_channel, clock):
        channel = open_channel(7)
        clock.now += 60
        hub.touch(channel.handle)
        clock.now += 60

        assert hub.sweep() == 0
        assert channel.handle.closed is False


class TestTick:
    def test_tick_runs_listeners_every_time(self, hub, clock):
        ticks = []
        hub.add_tick_listener(ticks.append)

        hub.tick_once(clock.now + 1)
        hub.tick_once(clock.now + 2)

        assert ticks == [clock.now + 1, clock.now + 2]

    def test_tick_sweeps_on_heartbeat_interval(self, hub, open_channel, clock):
        channel = open_channel(7)

        hub.tick_once(clock.now + 10)
        assert channel.types() == []

        hub.tick_once(clock.now + 30)
        assert channel.types() == ["heartbeat"]

    @pytest.mark.asyncio
    async def test_ensure_maintenance_starts_one_task(self, hub):
        hub.ensure_maintenance()
        task = hub._maintenance_task

        hub.ensure_maintenance()

        assert task is not None
        assert hub._maintenance_task is task
        hub.stop_maintenance()
        assert hub._maintenance_task is None


# =============================================================================
# Status / reset
# =============================================================================


class TestStatus:
    def test_status_snapshot(self, hub, open_channel):
        open_channel(1)
        open_channel(1)
        open_channel(2)

        assert hub.status() == {
            "connected_users": 2,
            "channels": 3,
            "users": [
                {"user_id": "1", "channels": 2},
                {"user_id": "2", "channels": 1},
            ],
        }

    def test_reset_forgets_everything(self, hub, open_channel):
        channel = open_channel(1)

        hub.reset()

        assert channel.handle.closed is True
        assert hub.channel_count() == 0


# =============================================================================
# Concurrent registry access
# =============================================================================


class ThreadSafeLayer:
    """Records layer calls from any thread; the hub's registry is under test."""

    def __init__(self):
        self._lock = threading.Lock()
        self.groups: dict[str, set[str]] = {}
        self.group_sends = 0
        self.sends = 0

    async def group_add(self, group, channel):
        with self._lock:
            self.groups.setdefault(group, set()).add(channel)

    async def group_discard(self, group, channel):
        with self._lock:
            members = self.groups.get(group, set())
            members.discard(channel)
            if not members:
                self.groups.pop(group, None)

    async def group_send(self, group, message):
        with self._lock:
            self.group_sends += 1

    async def send(self, channel, message):
        with self._lock:
            self.sends += 1


class TestConcurrentRegistry:
    def test_publish_and_status_during_register_churn(self):
        """
        Readers see consistent snapshots while other threads register and
        unregister channels.

        Why it matters: Consumers register from the loop's worker thread
        while views publish and the status endpoint reads from others; a
        half-mutated registry would crash a reader or corrupt the counts.
        """
        layer = ThreadSafeLayer()
        hub = EventHub(channel_layer=layer)
        errors = []
        snapshots = []
        done = threading.Event()

        def churn(worker):
            try:
                for n in range(40):
                    handle = hub.register(f"u{worker % 3}", f"chan.{worker}.{n}")
                    hub.touch(handle)
                    assert hub.unregister(handle) is True
            except Exception as exc:  # noqa: BLE001
                errors.append(exc)

        def read():
            try:
                while not done.is_set():
                    hub.publish(deleted(), ["u0", "u1", "u2"])
                    hub.broadcast(deleted())
                    snapshots.append(hub.status())
            except Exception as exc:  # noqa: BLE001
                errors.append(exc)

        workers = [threading.Thread(target=churn, args=(i,)) for i in range(6)]
        reader = threading.Thread(target=read)
        reader.start()
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()
        done.set()
        reader.join()

        assert errors == []
        assert hub.channel_count() == 0
        assert hub.connected_user_ids() == []
        assert layer.groups == {}
        assert snapshots
        for status in snapshots:
            assert status["channels"] == sum(u["channels"] for u in status["users"])
            assert status["connected_users"] == len(status["users"])
            assert all(u["channels"] > 0 for u in status["users"])
