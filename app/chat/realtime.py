"""
Realtime publishing for chat services.

Services never touch the channel layer. They call RealtimePublisher, which
builds the event dataclass from model instances (through the same
serializers the REST surface uses) and hands it to EventHub.publish with
the target user ids the service derived from participants.

Failure semantics:
    Publishing happens after the triggering write committed. Any failure
    here is logged and swallowed: a message send succeeds even when no
    peer is reachable. Clients recover missed events by re-fetching.

Usage:
    from chat.realtime import RealtimePublisher, get_hub

    RealtimePublisher.new_message(message, targets=participant_ids)
    get_hub().status()
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from django.apps import apps

from chat.events import (
    ConversationCreated,
    ConversationDeleted,
    ConversationUpdated,
    MessageUpdated,
    NewBroadcastChannel,
    NewBroadcastMessage,
    NewMessage,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from chat.events import Event
    from chat.hub import EventHub
    from chat.models import Conversation, Message
    from chat.typing_indicators import TypingCoordinator

logger = logging.getLogger(__name__)


def get_hub() -> EventHub:
    """Return the hub owned by the chat app config."""
    return apps.get_app_config("chat").hub


def get_typing() -> TypingCoordinator:
    """Return the typing coordinator owned by the chat app config."""
    return apps.get_app_config("chat").typing


class RealtimePublisher:
    """
    Builds and publishes chat events.

    Every method returns the number of user groups addressed (0 on failure).
    """

    @classmethod
    def _publish(cls, event_factory, targets: Iterable, description: str) -> int:
        targets = list(targets)
        if not targets:
            return 0
        try:
            event: Event = event_factory()
            return get_hub().publish(event, targets)
        except Exception as e:
            logger.exception(f"Error publishing {description}: {e}")
            return 0

    @classmethod
    def new_message(cls, message: Message, targets: Iterable) -> int:
        """
        Publish a new message, then the conversation's new last message.

        BROADCAST conversations use newBroadcastMessage so clients can
        route it to their broadcast inbox.
        """
        from chat.serializers import conversation_payload, message_payload

        targets = list(targets)
        conversation = message.conversation

        def build_message_event():
            payload = message_payload(message)
            if conversation.is_broadcast:
                return NewBroadcastMessage(
                    message=payload, conversation_name=conversation.name
                )
            return NewMessage(message=payload)

        delivered = cls._publish(
            build_message_event, targets, f"new message {message.id}"
        )
        cls._publish(
            lambda: ConversationUpdated(
                conversation=conversation_payload(conversation)
            ),
            targets,
            f"conversation update {conversation.id}",
        )
        return delivered

    @classmethod
    def message_updated(cls, message: Message, targets: Iterable) -> int:
        """Publish an edit, reaction, read acknowledgment, pin or delete."""
        from chat.serializers import message_payload

        return cls._publish(
            lambda: MessageUpdated(message=message_payload(message)),
            targets,
            f"message update {message.id}",
        )

    @classmethod
    def conversation_created(cls, conversation: Conversation, targets: Iterable) -> int:
        from chat.serializers import conversation_payload

        def build():
            payload = conversation_payload(conversation)
            if conversation.is_broadcast:
                return NewBroadcastChannel(conversation=payload)
            return ConversationCreated(conversation=payload)

        return cls._publish(build, targets, f"conversation {conversation.id} created")

    @classmethod
    def conversation_updated(cls, conversation: Conversation, targets: Iterable) -> int:
        from chat.serializers import conversation_payload

        return cls._publish(
            lambda: ConversationUpdated(
                conversation=conversation_payload(conversation)
            ),
            targets,
            f"conversation update {conversation.id}",
        )

    @classmethod
    def conversation_deleted(cls, conversation_id, targets: Iterable) -> int:
        return cls._publish(
            lambda: ConversationDeleted(conversation_id=str(conversation_id)),
            targets,
            f"conversation {conversation_id} deleted",
        )
