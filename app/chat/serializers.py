"""
Serializers for chat API.

This module provides serializers for the chat system:
- Message serializers (read, create, update)
- Participant serializer (read)
- Conversation serializers (read, create, update)
- Small action serializers (reactions, typing)

Serializer Hierarchy:
    MessageSerializer: Message as delivered over REST and push
    MessageCreateSerializer: Send new message
    MessageUpdateSerializer: Edit message content

    ParticipantSerializer: Participant with display info

    ConversationSerializer: Conversation with participants, last message
        and the viewer's unread count
    ConversationCreateSerializer: Create any kind of conversation
    ConversationUpdateSerializer: Rename / change image

    ReactionToggleSerializer: Toggle an emoji reaction
    TypingSerializer: REST typing fallback

Design Decisions:
    - Read serializers emit exactly the shapes of chat.events payloads,
      so REST responses and push frames decode the same way
    - Ids are emitted as strings
    - Soft-deleted message content is replaced with a placeholder
    - The unread count needs a viewer (context["viewer"] or the request
      user); without one it is None, which tells clients to derive it
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from django.contrib.auth import get_user_model
from rest_framework import serializers

from chat.constants import MESSAGE_CONFIG, REACTION_CONFIG
from chat.events import ConversationPayload, MessagePayload
from chat.models import (
    Conversation,
    ConversationKind,
    Message,
    Participant,
    SystemMessageEvent,
)

if TYPE_CHECKING:
    from authentication.models import User

User = get_user_model()


# =============================================================================
# Helper Functions
# =============================================================================


def format_system_message(content: str) -> str:
    """
    Format system message content for display.

    Args:
        content: JSON string with {event, data}

    Returns:
        Human-readable message string
    """
    try:
        data = json.loads(content)
        event = data.get("event", "")
        event_data = data.get("data", {})

        formatters = {
            SystemMessageEvent.CONVERSATION_CREATED: lambda d: f'"{d.get("name", "")}" was created',
            SystemMessageEvent.PARTICIPANT_JOINED: lambda d: "A member joined",
            SystemMessageEvent.PARTICIPANT_LEFT: lambda d: "A member left",
            SystemMessageEvent.RENAMED: lambda d: f'Renamed to "{d.get("new_name", "")}"',
        }

        formatter = formatters.get(event)
        if formatter:
            return formatter(event_data)
        return "System message"

    except (json.JSONDecodeError, TypeError, KeyError, AttributeError):
        return "System message"


def _viewer_from_context(context: dict) -> User | None:
    viewer = context.get("viewer")
    if viewer is not None:
        return viewer
    request = context.get("request")
    if request is not None and request.user.is_authenticated:
        return request.user
    return None


# =============================================================================
# Message Serializers
# =============================================================================


class MessageSerializer(serializers.ModelSerializer):
    """
    Full message serializer.

    Includes sender name/avatar (so a receiver can render a notification
    without another request), reactions and the read-by set.
    Reactions and receipts are read through prefetch caches when present.
    """

    id = serializers.CharField(read_only=True)
    conversation_id = serializers.CharField(read_only=True)
    sender_id = serializers.CharField(read_only=True, allow_null=True)
    sender_name = serializers.SerializerMethodField(
        help_text="Display name of the message sender"
    )
    sender_avatar = serializers.SerializerMethodField(
        help_text="Avatar URL of the message sender"
    )
    content = serializers.SerializerMethodField(
        help_text="Message content (replaced if deleted)"
    )
    reply_to_id = serializers.CharField(read_only=True, allow_null=True)
    reactions = serializers.SerializerMethodField(
        help_text="List of {user_id, emoji} pairs"
    )
    read_by = serializers.SerializerMethodField(
        help_text="User ids that have acknowledged this message"
    )

    class Meta:
        model = Message
        fields = [
            "id",
            "conversation_id",
            "sender_id",
            "sender_name",
            "sender_avatar",
            "message_type",
            "content",
            "reply_to_id",
            "client_id",
            "reactions",
            "read_by",
            "is_edited",
            "edited_at",
            "is_pinned",
            "is_deleted",
            "created_at",
        ]
        read_only_fields = fields

    def get_sender_name(self, obj: Message) -> str:
        if obj.sender is None:
            return ""
        return obj.sender.get_full_name()

    def get_sender_avatar(self, obj: Message) -> str:
        if obj.sender is None:
            return ""
        return obj.sender.avatar_url

    def get_content(self, obj: Message) -> str:
        """
        Get display content.

        - Deleted messages: "[Message deleted]"
        - System messages: Formatted event description
        - Text messages: Original content
        """
        if obj.is_deleted:
            return MESSAGE_CONFIG.DELETED_PLACEHOLDER
        if obj.is_system_message:
            return format_system_message(obj.content)
        return obj.content

    def get_reactions(self, obj: Message) -> list[dict]:
        if obj.is_deleted:
            return []
        return [
            {"user_id": str(reaction.user_id), "emoji": reaction.emoji}
            for reaction in obj.reactions.all()
        ]

    def get_read_by(self, obj: Message) -> list[str]:
        return sorted(str(receipt.user_id) for receipt in obj.read_receipts.all())


class MessageCreateSerializer(serializers.Serializer):
    """
    Serializer for sending messages.

    Content rules (empty, too long) are enforced by MessageService so the
    error codes match the push path.
    """

    content = serializers.CharField(
        allow_blank=True,
        trim_whitespace=False,
        help_text=f"Message content (max {MESSAGE_CONFIG.MAX_CONTENT_LENGTH:,} characters)",
    )
    reply_to_id = serializers.IntegerField(
        required=False,
        allow_null=True,
        help_text="Message being replied to (same conversation)",
    )
    client_id = serializers.CharField(
        max_length=64,
        required=False,
        allow_blank=True,
        default="",
        help_text="Client temporary id, echoed back on the push event",
    )


class MessageUpdateSerializer(serializers.Serializer):
    """Serializer for editing message content."""

    content = serializers.CharField(
        allow_blank=True,
        trim_whitespace=False,
        help_text="New message content",
    )


# =============================================================================
# Participant Serializers
# =============================================================================


class ParticipantSerializer(serializers.ModelSerializer):
    """Participant with the display info a client needs."""

    user_id = serializers.CharField(read_only=True)
    name = serializers.SerializerMethodField()
    avatar_url = serializers.SerializerMethodField()

    class Meta:
        model = Participant
        fields = ["user_id", "name", "avatar_url", "role"]
        read_only_fields = fields

    def get_name(self, obj: Participant) -> str:
        return obj.user.get_full_name()

    def get_avatar_url(self, obj: Participant) -> str:
        return obj.user.avatar_url


# =============================================================================
# Conversation Serializers
# =============================================================================


class ConversationSerializer(serializers.ModelSerializer):
    """
    Conversation for list, detail and push.

    Computed fields:
    - participants: Active participants
    - last_message: Newest message (None if the viewer cleared past it)
    - unread_count: For the viewer; None without one
    - updated_at: Bumped by every new message
    """

    id = serializers.CharField(read_only=True)
    participants = serializers.SerializerMethodField(
        help_text="All active participants"
    )
    last_message = serializers.SerializerMethodField(
        help_text="Most recent message"
    )
    unread_count = serializers.SerializerMethodField(
        help_text="Number of unread messages for the requesting user"
    )

    class Meta:
        model = Conversation
        fields = [
            "id",
            "kind",
            "name",
            "image_url",
            "description",
            "participants",
            "last_message",
            "unread_count",
            "updated_at",
            "is_deleted",
        ]
        read_only_fields = fields

    def _viewer_participant(self, obj: Conversation) -> Participant | None:
        viewer = _viewer_from_context(self.context)
        if viewer is None:
            return None
        for participant in obj.participants.all():
            if participant.user_id == viewer.id and participant.left_at is None:
                return participant
        return None

    def get_participants(self, obj: Conversation) -> list[dict]:
        participants = [p for p in obj.participants.all() if p.left_at is None]
        return ParticipantSerializer(participants, many=True).data

    def get_last_message(self, obj: Conversation) -> dict | None:
        message = obj.last_message
        if message is None:
            return None
        participant = self._viewer_participant(obj)
        if (
            participant is not None
            and participant.cleared_at
            and message.created_at <= participant.cleared_at
        ):
            return None
        return MessageSerializer(message).data

    def get_unread_count(self, obj: Conversation) -> int | None:
        annotated = getattr(obj, "unread_count", None)
        if annotated is not None:
            return annotated
        participant = self._viewer_participant(obj)
        if participant is None:
            return None
        return participant.unread_messages().count()


class ConversationCreateSerializer(serializers.Serializer):
    """
    Serializer for creating conversations.

    - DIRECT: exactly one other participant; returns the existing
      conversation for the pair if there is one
    - GROUP/CHANNEL/BROADCAST: a name is required (checked by the service)
    """

    kind = serializers.ChoiceField(
        choices=ConversationKind.choices,
        help_text="Kind of conversation to create",
    )
    participant_ids = serializers.ListField(
        child=serializers.IntegerField(),
        required=False,
        default=list,
        help_text="Other users to include (subscribers for broadcast)",
    )
    name = serializers.CharField(
        max_length=100,
        required=False,
        allow_blank=True,
        default="",
        help_text="Display name (required except for direct)",
    )
    image_url = serializers.URLField(
        max_length=500,
        required=False,
        allow_blank=True,
        default="",
    )
    description = serializers.CharField(
        max_length=500,
        required=False,
        allow_blank=True,
        default="",
        help_text="Topic line (channels)",
    )

    def validate(self, attrs: dict) -> dict:
        if attrs["kind"] == ConversationKind.DIRECT:
            if len(set(attrs["participant_ids"])) != 1:
                raise serializers.ValidationError(
                    {
                        "participant_ids": "Direct conversations require exactly one other participant"
                    }
                )
        return attrs

    def validate_participant_ids(self, value: list[int]) -> list[int]:
        """Ensure all participant IDs are active users."""
        existing = set(
            User.objects.filter(id__in=value, is_active=True).values_list(
                "id", flat=True
            )
        )
        invalid = [uid for uid in value if uid not in existing]
        if invalid:
            raise serializers.ValidationError(f"Users not found or inactive: {invalid}")
        return list(dict.fromkeys(value))


class ConversationUpdateSerializer(serializers.Serializer):
    """Rename and/or change the image of a non-DIRECT conversation."""

    name = serializers.CharField(max_length=100, required=False)
    image_url = serializers.URLField(max_length=500, required=False, allow_blank=True)

    def validate(self, attrs: dict) -> dict:
        if not attrs:
            raise serializers.ValidationError("Provide a name or an image_url")
        return attrs


# =============================================================================
# Action Serializers
# =============================================================================


class ReactionToggleSerializer(serializers.Serializer):
    emoji = serializers.CharField(
        max_length=16,
        help_text=f"Emoji, e.g. one of {' '.join(REACTION_CONFIG.QUICK_REACTIONS)}",
    )


class TypingSerializer(serializers.Serializer):
    is_typing = serializers.BooleanField(default=True)


# =============================================================================
# Payload builders
# =============================================================================


def message_payload(message: Message) -> MessagePayload:
    """Build the push payload for ``message``."""
    return MessagePayload.from_dict(MessageSerializer(message).data)


def conversation_payload(
    conversation: Conversation, viewer: User | None = None
) -> ConversationPayload:
    """Build the push payload for ``conversation`` (unread_count None without a viewer)."""
    data = ConversationSerializer(conversation, context={"viewer": viewer}).data
    return ConversationPayload.from_dict(data)
