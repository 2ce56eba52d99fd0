"""
Tests for the push channel consumer.

Tests cover:
- Connection authentication (anonymous and inactive users rejected)
- The connected/connectedUsers frames every new channel receives
- Hub events written to the socket
- Client frames: heartbeat_ack, typing, read, malformed and unknown
- Unregistering on disconnect, closing pruned channels with 4008

Connections run through JWTAuthMiddleware, as in config/asgi.py, without
the origin validator.
"""

import time

import pytest
from asgiref.sync import sync_to_async
from channels.db import database_sync_to_async
from channels.routing import URLRouter
from channels.testing import WebsocketCommunicator
from rest_framework_simplejwt.tokens import AccessToken

from authentication.tests.factories import UserFactory
from chat.constants import CLOSE_CODES
from chat.events import ConversationDeleted, TypingStop
from chat.middleware import JWTAuthMiddleware
from chat.realtime import get_hub
from chat.routing import websocket_urlpatterns
from chat.services import ConversationService
from chat.tests.factories import MessageFactory

application = JWTAuthMiddleware(URLRouter(websocket_urlpatterns))


def _token(user) -> str:
    return str(AccessToken.for_user(user))


async def _open(user):
    communicator = WebsocketCommunicator(
        application, f"/ws/events/?token={_token(user)}"
    )
    connected, _ = await communicator.connect()
    assert connected
    return communicator


async def _receive_until(communicator, event_type):
    """Skip frames until one of ``event_type`` arrives."""
    while True:
        frame = await communicator.receive_json_from()
        if frame["type"] == event_type:
            return frame


@pytest.mark.asyncio
@pytest.mark.django_db(transaction=True)
class TestConnect:
    async def test_anonymous_rejected(self):
        """
        A connection without a token is closed with 4001.

        Why it matters: The client treats 4001 as "log in again" and stops
        reconnecting.
        """
        communicator = WebsocketCommunicator(application, "/ws/events/")

        connected, code = await communicator.connect()

        assert connected is False
        assert code == CLOSE_CODES.UNAUTHENTICATED

    async def test_invalid_token_rejected(self):
        communicator = WebsocketCommunicator(application, "/ws/events/?token=nope")

        connected, code = await communicator.connect()

        assert connected is False
        assert code == CLOSE_CODES.UNAUTHENTICATED

    async def test_inactive_user_rejected(self):
        user = await database_sync_to_async(UserFactory)(is_active=False)
        communicator = WebsocketCommunicator(
            application, f"/ws/events/?token={_token(user)}"
        )

        connected, code = await communicator.connect()

        assert connected is False
        assert code == CLOSE_CODES.UNAUTHENTICATED

    async def test_connected_frame_first(self):
        """
        The first frame is "connected", followed by the online snapshot.

        Why it matters: The client uses "connected" to reset its backoff
        and trigger a resync after a reconnect.
        """
        user = await database_sync_to_async(UserFactory)()
        communicator = await _open(user)

        first = await communicator.receive_json_from()
        second = await communicator.receive_json_from()

        assert first["type"] == "connected"
        assert first["data"]["user_id"] == str(user.id)
        assert first["data"]["heartbeat_interval"] > 0
        assert second == {"type": "connectedUsers", "data": {"user_ids": [str(user.id)]}}
        await communicator.disconnect()

    async def test_subprotocol_echoed(self):
        user = await database_sync_to_async(UserFactory)()
        communicator = WebsocketCommunicator(
            application, "/ws/events/", subprotocols=["jwt", _token(user)]
        )

        connected, subprotocol = await communicator.connect()

        assert connected is True
        assert subprotocol == "jwt"
        await communicator.disconnect()

    async def test_disconnect_unregisters(self):
        user = await database_sync_to_async(UserFactory)()
        communicator = await _open(user)
        assert get_hub().is_online(user.id)

        await communicator.disconnect()

        assert not get_hub().is_online(user.id)


@pytest.mark.asyncio
@pytest.mark.django_db(transaction=True)
class TestFrames:
    async def test_hub_event_written_to_socket(self):
        user = await database_sync_to_async(UserFactory)()
        communicator = await _open(user)
        await _receive_until(communicator, "connectedUsers")

        await get_hub().apublish(TypingStop(conversation_id="7", user_id="9"), [user.id])

        frame = await communicator.receive_json_from()
        assert frame == {
            "type": "typingStop",
            "data": {"conversation_id": "7", "user_id": "9"},
        }
        await communicator.disconnect()

    async def test_publish_from_worker_thread_reaches_socket(self):
        """
        A publish from sync code (a view or service thread) reaches the socket.

        Why it matters: REST writes publish through async_to_sync into the
        user's channel layer group.
        """
        user = await database_sync_to_async(UserFactory)()
        communicator = await _open(user)
        await _receive_until(communicator, "connectedUsers")

        await sync_to_async(get_hub().publish)(
            ConversationDeleted(conversation_id="3"), [user.id]
        )

        frame = await communicator.receive_json_from()
        assert frame == {"type": "conversationDeleted", "data": {"conversation_id": "3"}}
        await communicator.disconnect()

    async def test_every_socket_of_the_user_receives(self):
        user = await database_sync_to_async(UserFactory)()
        phone = await _open(user)
        laptop = await _open(user)
        await _receive_until(phone, "connectedUsers")
        await _receive_until(laptop, "connectedUsers")

        await get_hub().apublish(ConversationDeleted(conversation_id="3"), [user.id])

        assert (await _receive_until(phone, "conversationDeleted"))["data"] == {
            "conversation_id": "3"
        }
        assert (await _receive_until(laptop, "conversationDeleted"))["data"] == {
            "conversation_id": "3"
        }
        await phone.disconnect()
        await laptop.disconnect()

    async def test_pruned_channel_closed_with_4008(self):
        """
        A channel the hub prunes for silence is closed with 4008.

        Why it matters: The client reconnects and resyncs instead of
        waiting on a dead socket.
        """
        user = await database_sync_to_async(UserFactory)()
        communicator = await _open(user)
        await _receive_until(communicator, "connectedUsers")
        hub = get_hub()

        pruned = await sync_to_async(hub.sweep)(time.monotonic() + 3600)

        assert pruned == 1
        output = await communicator.receive_output()
        assert output == {"type": "websocket.close", "code": CLOSE_CODES.PRUNED}
        assert not hub.is_online(user.id)
        await communicator.disconnect()

    async def test_heartbeat_ack_gets_no_reply(self):
        user = await database_sync_to_async(UserFactory)()
        communicator = await _open(user)
        await _receive_until(communicator, "connectedUsers")

        await communicator.send_json_to({"type": "heartbeat_ack"})

        assert await communicator.receive_nothing()
        await communicator.disconnect()

    async def test_unknown_type(self):
        user = await database_sync_to_async(UserFactory)()
        communicator = await _open(user)
        await _receive_until(communicator, "connectedUsers")

        await communicator.send_json_to({"type": "dance"})

        frame = await _receive_until(communicator, "error")
        assert frame["data"]["error_code"] == "UNKNOWN_TYPE"
        await communicator.disconnect()

    async def test_malformed_frame(self):
        """
        Invalid JSON is answered with an error; the channel stays open.

        Why it matters: One bad frame from a buggy client must not drop
        the user's live updates.
        """
        user = await database_sync_to_async(UserFactory)()
        communicator = await _open(user)
        await _receive_until(communicator, "connectedUsers")

        await communicator.send_to(text_data="{not json")

        frame = await _receive_until(communicator, "error")
        assert frame["data"]["error_code"] == "INVALID_FRAME"

        await communicator.send_json_to({"type": "dance"})
        assert (await _receive_until(communicator, "error"))["data"][
            "error_code"
        ] == "UNKNOWN_TYPE"
        await communicator.disconnect()

    async def test_typing_for_missing_conversation(self):
        user = await database_sync_to_async(UserFactory)()
        communicator = await _open(user)
        await _receive_until(communicator, "connectedUsers")

        await communicator.send_json_to(
            {"type": "typing", "conversation_id": "999999", "is_typing": True}
        )

        frame = await _receive_until(communicator, "error")
        assert frame["data"]["error_code"] == "NOT_FOUND"
        await communicator.disconnect()

    async def test_typing_reaches_other_participants(self):
        """
        A typing frame from one member shows up on the other member's socket.

        Why it matters: This is the low-latency path for typing indicators.
        """
        owner = await database_sync_to_async(UserFactory)()
        member = await database_sync_to_async(UserFactory)()
        result = await database_sync_to_async(ConversationService.create_group)(
            owner, "Choir", [member]
        )
        conversation = result.data

        owner_socket = await _open(owner)
        member_socket = await _open(member)

        await member_socket.send_json_to(
            {
                "type": "typing",
                "conversation_id": str(conversation.id),
                "is_typing": True,
            }
        )

        frame = await _receive_until(owner_socket, "typingStart")
        assert frame["data"]["conversation_id"] == str(conversation.id)
        assert frame["data"]["user_id"] == str(member.id)
        await owner_socket.disconnect()
        await member_socket.disconnect()

    async def test_read_acknowledges_messages(self):
        owner = await database_sync_to_async(UserFactory)()
        member = await database_sync_to_async(UserFactory)()
        result = await database_sync_to_async(ConversationService.create_group)(
            owner, "Choir", [member]
        )
        conversation = result.data
        message = await database_sync_to_async(MessageFactory)(
            conversation=conversation, sender=owner
        )

        member_socket = await _open(member)
        await member_socket.send_json_to(
            {"type": "read", "conversation_id": str(conversation.id)}
        )

        frame = await _receive_until(member_socket, "messageUpdated")
        assert frame["data"]["message"]["id"] == str(message.id)
        assert str(member.id) in frame["data"]["message"]["read_by"]
        await member_socket.disconnect()
