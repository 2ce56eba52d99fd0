"""
Realtime event hub for the push channel.

Fan-out goes through the Django Channels layer: every open push channel
joins its user's group (``user_<id>``) and publish() sends one group
message per target user, so any worker holding a socket for that user
delivers it. The hub itself keeps the presence and liveness registry of
the channels opened on this process.

Architecture:
    EventStreamConsumer (one per websocket, has a layer channel_name)
        └── ChannelHandle (registry entry: owner, channel_name, last_seen)
    EventHub
        ├── registry: user_id -> set[ChannelHandle]
        ├── publish(): group_send to user_<id> for every target
        └── maintenance loop: typing expiry every tick, heartbeat sweep

Design Decisions:
    - Delivery is best effort: no queuing for offline users, no replay.
      Clients resynchronize by re-fetching after a reconnect.
    - Copy-on-read: status, sweep and broadcast copy the registry while
      holding the lock and talk to the layer after releasing it, so a
      concurrent register or unregister never exposes a half-mutated set.
    - Per-channel back-pressure is the layer's channel capacity
      (CHANNEL_LAYERS "capacity"). A full channel drops the frame for that
      channel only.
    - All methods are synchronous and reach the layer through
      async_to_sync, so services, views and Celery tasks publish directly.
      Async callers go through apublish() or sync_to_async.
    - Presence (connectedUsers) covers the channels of this process.

Usage:
    from chat.realtime import get_hub

    hub = get_hub()
    handle = hub.register(user.id, channel_name)
    hub.publish(NewMessage(message=payload), targets=participant_ids)
    hub.unregister(handle)
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from typing import TYPE_CHECKING

from asgiref.sync import async_to_sync, sync_to_async
from channels.exceptions import ChannelFull
from channels.layers import DEFAULT_CHANNEL_LAYER, get_channel_layer

from chat.constants import CLOSE_CODES, HUB_CONFIG
from chat.events import Connected, ConnectedUsers, Heartbeat, encode_event

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from chat.events import Event

logger = logging.getLogger(__name__)

# Layer message types, handled by EventStreamConsumer.hub_event / hub_close
EVENT_MESSAGE_TYPE = "hub.event"
CLOSE_MESSAGE_TYPE = "hub.close"


def user_group(user_id) -> str:
    """Channel layer group holding every push channel of ``user_id``."""
    return f"user_{user_id}"


class ChannelHandle:
    """
    One open push channel belonging to one user.

    Attributes:
        user_id: Owner of the channel (string id)
        channel_name: Channel layer name of the consumer
        channel_id: Short random id, used in logs and hub status
        last_seen: Clock reading of the last inbound traffic
        closed: Whether the hub has released this handle
        close_reason: "unregistered" or "pruned"
        dropped_frames: Frames the layer refused because the channel was full
    """

    def __init__(self, user_id: str, channel_name: str, now: float):
        self.user_id = user_id
        self.channel_name = channel_name
        self.channel_id = uuid.uuid4().hex[:12]
        self.last_seen = now
        self.closed = False
        self.close_reason = ""
        self.dropped_frames = 0

    def __repr__(self) -> str:
        return f"ChannelHandle(user={self.user_id}, channel={self.channel_id})"

    @property
    def was_pruned(self) -> bool:
        return self.close_reason == "pruned"


class EventHub:
    """
    Presence registry and best-effort publisher.

    Owned by the chat AppConfig; reach it through chat.realtime.get_hub().

    Args:
        heartbeat_interval: Seconds between heartbeat sweeps
        liveness_window: Seconds without inbound traffic before pruning
        tick: Seconds between maintenance ticks
        clock: Monotonic clock, injectable for tests
        channel_layer: Layer to use; defaults to the configured layer
    """

    def __init__(
        self,
        heartbeat_interval: float = HUB_CONFIG.HEARTBEAT_INTERVAL_SECONDS,
        liveness_window: float = HUB_CONFIG.LIVENESS_WINDOW_SECONDS,
        tick: float = HUB_CONFIG.TICK_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        channel_layer=None,
    ):
        self.heartbeat_interval = heartbeat_interval
        self.liveness_window = liveness_window
        self.tick = tick
        self.clock = clock
        self._channel_layer = channel_layer

        self._lock = threading.RLock()
        self._channels: dict[str, set[ChannelHandle]] = {}
        self._offline_listeners: list[Callable[[str], None]] = []
        self._tick_listeners: list[Callable[[float], None]] = []
        self._maintenance_task: asyncio.Task | None = None
        self._last_sweep = clock()

    @property
    def channel_layer(self):
        if self._channel_layer is not None:
            return self._channel_layer
        return get_channel_layer(DEFAULT_CHANNEL_LAYER)

    # =========================================================================
    # Listeners
    # =========================================================================

    def add_offline_listener(self, listener: Callable[[str], None]) -> None:
        """Call ``listener(user_id)`` when a user's last channel goes away."""
        self._offline_listeners.append(listener)

    def add_tick_listener(self, listener: Callable[[float], None]) -> None:
        """Call ``listener(now)`` on every maintenance tick."""
        self._tick_listeners.append(listener)

    # =========================================================================
    # Registration
    # =========================================================================

    def register(self, user_id, channel_name: str) -> ChannelHandle:
        """
        Record a new push channel for ``user_id`` and join its user group.

        Never closes the user's other channels. The new channel receives a
        ``connected`` frame first, then the online-user snapshot. When the
        user just came online, every local channel gets the snapshot.
        """
        user_id = str(user_id)
        handle = ChannelHandle(user_id, channel_name, self.clock())
        with self._lock:
            handles = self._channels.setdefault(user_id, set())
            came_online = not handles
            handles.add(handle)
            channel_total = len(handles)

        async_to_sync(self.channel_layer.group_add)(user_group(user_id), channel_name)
        self._send(
            handle,
            Connected(user_id=user_id, heartbeat_interval=self.heartbeat_interval),
        )
        if came_online:
            self._broadcast_connected_users()
        else:
            self._send(handle, self._connected_users_event())

        logger.info(
            f"Registered channel {handle.channel_id} for user {user_id} "
            f"({channel_total} open)"
        )
        return handle

    def unregister(self, handle: ChannelHandle, reason: str = "unregistered") -> bool:
        """
        Remove exactly ``handle`` and leave its user group.

        Returns False if the handle was not registered (already removed).
        A pruned handle's consumer is told to close with 4008. On the
        user's last channel the user goes offline: offline listeners run
        and the online-user snapshot is re-broadcast.
        """
        with self._lock:
            handles = self._channels.get(handle.user_id)
            if not handles or handle not in handles:
                return False
            handles.discard(handle)
            went_offline = not handles
            if went_offline:
                del self._channels[handle.user_id]

        handle.closed = True
        handle.close_reason = reason
        layer = self.channel_layer
        async_to_sync(layer.group_discard)(
            user_group(handle.user_id), handle.channel_name
        )
        if handle.was_pruned:
            self._layer_send(
                handle,
                {"type": CLOSE_MESSAGE_TYPE, "code": CLOSE_CODES.PRUNED},
            )

        logger.info(
            f"Unregistered channel {handle.channel_id} for user {handle.user_id} "
            f"({reason})"
        )

        if went_offline:
            for listener in list(self._offline_listeners):
                listener(handle.user_id)
            self._broadcast_connected_users()
        return True

    def touch(self, handle: ChannelHandle) -> None:
        """Record inbound traffic (heartbeat ack or any client frame)."""
        handle.last_seen = self.clock()

    # =========================================================================
    # Delivery
    # =========================================================================

    async def apublish(self, event: Event, targets: Iterable, exclude=None) -> int:
        """
        Deliver ``event`` to every push channel of every target user.

        Best effort: a target with no open channel is a no-op in the layer
        and a full channel drops the frame.

        Args:
            event: Event dataclass to serialize
            targets: User ids to deliver to
            exclude: Optional user id to leave out (e.g. the typist)

        Returns:
            Number of user groups addressed
        """
        target_ids = {str(user_id) for user_id in targets}
        if exclude is not None:
            target_ids.discard(str(exclude))
        if not target_ids:
            return 0

        message = {"type": EVENT_MESSAGE_TYPE, "frame": encode_event(event)}
        layer = self.channel_layer
        for user_id in sorted(target_ids):
            await layer.group_send(user_group(user_id), message)

        logger.debug(f"{event.TYPE}: sent to {len(target_ids)} user groups")
        return len(target_ids)

    def publish(self, event: Event, targets: Iterable, exclude=None) -> int:
        """Synchronous apublish() for services, views and tasks."""
        return async_to_sync(self.apublish)(event, targets, exclude=exclude)

    def broadcast(self, event: Event) -> int:
        """Deliver ``event`` to every channel registered on this process."""
        with self._lock:
            snapshot = [h for handles in self._channels.values() for h in handles]
        return sum(1 for handle in snapshot if self._send(handle, event))

    def _send(self, handle: ChannelHandle, event: Event) -> bool:
        return self._layer_send(
            handle, {"type": EVENT_MESSAGE_TYPE, "frame": encode_event(event)}
        )

    def _layer_send(self, handle: ChannelHandle, message: dict) -> bool:
        try:
            async_to_sync(self.channel_layer.send)(handle.channel_name, message)
        except ChannelFull:
            handle.dropped_frames += 1
            logger.warning(
                f"Channel {handle.channel_id} for user {handle.user_id} is full, "
                f"dropping {message['type']}"
            )
            return False
        return True

    def _connected_users_event(self) -> ConnectedUsers:
        return ConnectedUsers(user_ids=tuple(self.connected_user_ids()))

    def _broadcast_connected_users(self) -> None:
        self.broadcast(self._connected_users_event())

    # =========================================================================
    # Liveness
    # =========================================================================

    def sweep(self, now: float | None = None) -> int:
        """
        Run one heartbeat pass.

        Channels silent for longer than the liveness window are pruned
        (their consumers close the socket); the rest get a heartbeat frame.

        Returns:
            Number of pruned channels
        """
        now = self.clock() if now is None else now
        with self._lock:
            snapshot = [h for handles in self._channels.values() for h in handles]

        stale = [h for h in snapshot if now - h.last_seen > self.liveness_window]
        for handle in stale:
            logger.warning(
                f"Pruning channel {handle.channel_id} for user {handle.user_id}: "
                f"silent for {now - handle.last_seen:.1f}s"
            )
            self.unregister(handle, reason="pruned")

        heartbeat = Heartbeat(timestamp=time.time())
        for handle in snapshot:
            if not handle.closed:
                self._send(handle, heartbeat)
        return len(stale)

    def tick_once(self, now: float | None = None) -> None:
        """One maintenance tick: tick listeners, then a sweep when due."""
        now = self.clock() if now is None else now
        for listener in list(self._tick_listeners):
            listener(now)
        if now - self._last_sweep >= self.heartbeat_interval:
            self._last_sweep = now
            self.sweep(now)

    async def run_maintenance(self) -> None:
        """Tick forever; started by the first consumer through ensure_maintenance."""
        logger.info(
            f"Hub maintenance started (tick={self.tick}s, "
            f"heartbeat={self.heartbeat_interval}s)"
        )
        while True:
            await asyncio.sleep(self.tick)
            try:
                await sync_to_async(self.tick_once)()
            except Exception:
                # A failing tick must not stop heartbeats for everyone else
                logger.exception("Hub maintenance tick failed")

    def ensure_maintenance(self) -> None:
        """Start the maintenance task on the running loop unless one is alive."""
        task = self._maintenance_task
        if task is not None and not task.done() and not task.get_loop().is_closed():
            return
        loop = asyncio.get_running_loop()
        self._maintenance_task = loop.create_task(self.run_maintenance())

    def stop_maintenance(self) -> None:
        """Cancel the maintenance task, if any."""
        task = self._maintenance_task
        self._maintenance_task = None
        if task is not None and not task.done() and not task.get_loop().is_closed():
            task.cancel()

    # =========================================================================
    # Status
    # =========================================================================

    def connected_user_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._channels)

    def channel_count(self, user_id=None) -> int:
        with self._lock:
            if user_id is not None:
                return len(self._channels.get(str(user_id), ()))
            return sum(len(handles) for handles in self._channels.values())

    def is_online(self, user_id) -> bool:
        with self._lock:
            return str(user_id) in self._channels

    def status(self) -> dict:
        """Snapshot for the staff status endpoint and health check."""
        with self._lock:
            users = {
                user_id: len(handles) for user_id, handles in self._channels.items()
            }
        return {
            "connected_users": len(users),
            "channels": sum(users.values()),
            "users": [
                {"user_id": user_id, "channels": count}
                for user_id, count in sorted(users.items())
            ],
        }

    def reset(self) -> None:
        """Forget all registrations without touching the layer."""
        self.stop_maintenance()
        with self._lock:
            handles = [h for hs in self._channels.values() for h in hs]
            self._channels.clear()
        for handle in handles:
            handle.closed = True
            handle.close_reason = "unregistered"
