"""
WebSocket consumer for the realtime push channel.

One long-lived connection per client (tab or device) carries every chat
event for that user, across all conversations. Events reach the consumer
through the channel layer: the hub adds its channel to the user's group
and publishes ``hub.event`` messages there; this consumer writes them out.

Consumers:
    EventStreamConsumer: Push channel at ws/events/

Authentication:
    Users are authenticated via JWT (see middleware.py). Anonymous
    connections are closed with 4001 before any frame is sent.

Lifecycle:
    connect    -> accept, hub.register() (joins user_<id>), maintenance
    receive    -> hub.touch() on every frame, then dispatch
    hub.close  -> the hub pruned the channel, close with 4008
    disconnect -> hub.unregister() (leaves user_<id>)

Message Types (from client):
    - heartbeat_ack: Liveness answer to a heartbeat frame
    - typing: {"conversation_id", "is_typing"}
    - read: {"conversation_id"} acknowledge all unread messages

Message Types (to client):
    - Every event in chat.events, as {"type", "data"}
    - error: {"type": "error", "data": {"message", "error_code"}}
"""

from __future__ import annotations

import asyncio
import json
import logging

from asgiref.sync import sync_to_async
from channels.db import database_sync_to_async
from channels.generic.websocket import AsyncJsonWebsocketConsumer

from chat.constants import CLOSE_CODES, HUB_CONFIG, get_hub_setting
from chat.models import Conversation
from chat.realtime import get_hub
from chat.services import ConversationService, MessageService

logger = logging.getLogger(__name__)


class EventStreamConsumer(AsyncJsonWebsocketConsumer):
    """
    Push channel for one client session.

    Attributes:
        handle: ChannelHandle returned by the hub (after connect)
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.hub = None
        self.handle = None
        self.write_timeout = get_hub_setting(
            "WRITE_TIMEOUT_SECONDS", HUB_CONFIG.WRITE_TIMEOUT_SECONDS
        )

    async def connect(self):
        """
        Handle WebSocket connection.

        Rejects anonymous users with 4001. Otherwise accepts (echoing the
        "jwt" subprotocol when the token came that way) and registers the
        channel with the hub.
        """
        user = self.scope.get("user")

        if not user or not user.is_authenticated:
            logger.warning("Rejected unauthenticated push channel connection")
            await self.close(code=CLOSE_CODES.UNAUTHENTICATED)
            return

        subprotocol = "jwt" if "jwt" in self.scope.get("subprotocols", []) else None
        await self.accept(subprotocol=subprotocol)

        self.hub = get_hub()
        self.handle = await sync_to_async(self.hub.register)(
            user.id, self.channel_name
        )
        self.hub.ensure_maintenance()

        logger.info(
            f"User {user.id} opened push channel {self.handle.channel_id}"
        )

    async def disconnect(self, close_code):
        """Unregister the channel."""
        if self.handle is not None:
            await sync_to_async(self.hub.unregister)(self.handle)
            logger.info(
                f"User {self.handle.user_id} closed push channel "
                f"{self.handle.channel_id} (code {close_code})"
            )

    @classmethod
    async def decode_json(cls, text_data):
        # Malformed frames are answered with an error, not a crash
        try:
            return json.loads(text_data)
        except ValueError:
            return None

    async def receive_json(self, content, **kwargs):
        """
        Handle incoming client frames.

        Expected message format:
            {"type": "heartbeat_ack"}
            {"type": "typing", "conversation_id": "12", "is_typing": true}
            {"type": "read", "conversation_id": "12"}
        """
        if self.handle is None:
            return

        self.hub.touch(self.handle)

        if not isinstance(content, dict):
            await self._send_error("Frames must be JSON objects", "INVALID_FRAME")
            return

        message_type = content.get("type")

        if message_type == "heartbeat_ack":
            return
        if message_type == "typing":
            await self._handle_typing(content)
        elif message_type == "read":
            await self._handle_read(content)
        else:
            await self._send_error(
                f"Unknown message type: {message_type}", "UNKNOWN_TYPE"
            )

    async def hub_event(self, event):
        """
        Handle hub.event messages from the channel layer.

        Each write is bounded by the write timeout; a frame that times out
        is dropped.
        """
        try:
            await asyncio.wait_for(
                self.send(text_data=event["frame"]), timeout=self.write_timeout
            )
        except asyncio.TimeoutError:
            if self.handle is not None:
                self.handle.dropped_frames += 1
            logger.warning(
                f"Write to channel {self.channel_name} timed out after "
                f"{self.write_timeout}s, frame dropped"
            )

    async def hub_close(self, event):
        """Handle hub.close messages: the hub pruned this channel."""
        await self.close(code=event.get("code", CLOSE_CODES.PRUNED))

    async def _handle_typing(self, content):
        conversation_id = content.get("conversation_id")
        is_typing = bool(content.get("is_typing", True))

        result = await self._set_typing(conversation_id, is_typing)
        if not result.success:
            await self._send_error(result.error, result.error_code)

    async def _handle_read(self, content):
        result = await self._mark_read(content.get("conversation_id"))
        if not result.success:
            await self._send_error(result.error, result.error_code)

    async def _send_error(self, message: str, error_code: str | None):
        await self.send_json(
            {
                "type": "error",
                "data": {"message": message, "error_code": error_code},
            }
        )

    @database_sync_to_async
    def _get_conversation(self, conversation_id):
        try:
            return Conversation.objects.get(id=int(conversation_id), is_deleted=False)
        except (TypeError, ValueError, Conversation.DoesNotExist):
            return None

    async def _set_typing(self, conversation_id, is_typing):
        from core.services import ServiceResult

        conversation = await self._get_conversation(conversation_id)
        if conversation is None:
            return ServiceResult.failure(
                "Conversation not found", error_code="NOT_FOUND"
            )
        return await database_sync_to_async(ConversationService.set_typing)(
            conversation, self.scope["user"], is_typing
        )

    async def _mark_read(self, conversation_id):
        from core.services import ServiceResult

        conversation = await self._get_conversation(conversation_id)
        if conversation is None:
            return ServiceResult.failure(
                "Conversation not found", error_code="NOT_FOUND"
            )
        return await database_sync_to_async(MessageService.mark_as_read)(
            conversation, self.scope["user"]
        )
