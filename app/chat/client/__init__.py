"""
Framework-free client core for the chat push channel.

Everything here runs in any asyncio program (a desktop shell, a bot, a
test) and imports nothing from Django. The server side lives in the rest
of the chat app.

Modules:
    api: ChatApi protocol and the aiohttp REST implementation
    stream: EventStreamClient (push channel reader with reconnect)
    typing_signal: TypingSignaler (outgoing typing debounce)
    synchronizer: ClientSynchronizer (local conversation/message state)
    notifier: NotificationDispatcher (sound and OS alerts)

Usage:
    from chat.client import ClientSynchronizer, EventStreamClient, HttpChatApi

    api = HttpChatApi("https://portal.example.org/api/v1/chat/", token)
    sync = ClientSynchronizer(api, viewer_id="12", notifier=dispatcher)
    stream = EventStreamClient(ws_url, token, sync.handle_event,
                               on_reconnect=sync.resync)
    await sync.resync()
    await stream.run()
"""

from chat.client.api import ChatApi, ChatApiError, HttpChatApi
from chat.client.notifier import (
    Alert,
    AlertSink,
    NotificationDispatcher,
    NotificationPermission,
    NotificationPreferences,
)
from chat.client.stream import EventStreamClient
from chat.client.synchronizer import ClientSynchronizer, SyncNotice, Timeline
from chat.client.typing_signal import TypingSignaler

__all__ = [
    "Alert",
    "AlertSink",
    "ChatApi",
    "ChatApiError",
    "ClientSynchronizer",
    "EventStreamClient",
    "HttpChatApi",
    "NotificationDispatcher",
    "NotificationPermission",
    "NotificationPreferences",
    "SyncNotice",
    "Timeline",
    "TypingSignaler",
]
