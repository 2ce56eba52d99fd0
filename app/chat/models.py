"""
Chat system models.

This module defines the data model shared by every conversation kind:
- DIRECT: exactly two participants, unique per unordered user pair
- GROUP: multi-party, everyone can write
- BROADCAST: one writer (the owner), many read-only subscribers
- CHANNEL: topic-based multi-party, open to join

Models:
    Conversation: Container for messages between participants
    DirectConversationPair: Enforces one DIRECT conversation per user pair
    Participant: User participation with role, read and clear tracking
    Message: Individual message within a conversation
    MessageReaction: (message, user, emoji) reaction
    MessageReadReceipt: Per-message acknowledgment by a user

Design Decisions:
    - DIRECT delete is viewer-local: it stamps Participant.cleared_at and
      hides history up to that instant for that viewer only
    - Read receipts are rows, never deleted by the read path, so a
      message's read_by set only grows
    - Message.client_id stores the sender's temporary id so the sender's
      own push echo can be matched to its optimistic placeholder
    - Soft delete preserves reply chains and receipts while hiding content
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from django.conf import settings
from django.db import models
from django.db.models import F, Q

from chat.constants import MESSAGE_CONFIG
from core.model_mixins import SoftDeleteMixin
from core.models import BaseModel

if TYPE_CHECKING:
    from authentication.models import User


class ConversationKind(models.TextChoices):
    """
    Kind of conversation.

    DIRECT: Exactly two participants, no name, no roles
    GROUP: Named, multi-party, all participants write
    BROADCAST: Named, only the owner writes, others subscribe
    CHANNEL: Named topic, anyone may join and write
    """

    DIRECT = "direct", "Direct Message"
    GROUP = "group", "Group"
    BROADCAST = "broadcast", "Broadcast"
    CHANNEL = "channel", "Channel"


class ParticipantRole(models.TextChoices):
    """
    Role within a non-DIRECT conversation.

    OWNER: Creator; renames, deletes, and is the only BROADCAST writer
    ADMIN: Can rename
    MEMBER: Can write (GROUP/CHANNEL)
    SUBSCRIBER: Read-only BROADCAST audience

    Note: DIRECT participants have no role (NULL).
    """

    OWNER = "owner", "Owner"
    ADMIN = "admin", "Admin"
    MEMBER = "member", "Member"
    SUBSCRIBER = "subscriber", "Subscriber"


class MessageType(models.TextChoices):
    """
    Type of message content.

    TEXT: User-authored text message
    SYSTEM: Auto-generated event message (e.g., "Member joined")
    """

    TEXT = "text", "Text"
    SYSTEM = "system", "System"


class SystemMessageEvent:
    """
    System message event types.

    System messages store {"event": "<event_type>", "data": {...}} as JSON.

    Events:
        CONVERSATION_CREATED: data: {"name": str, "kind": str}
        PARTICIPANT_JOINED: data: {"user_id": str}
        PARTICIPANT_LEFT: data: {"user_id": str}
        RENAMED: data: {"old_name": str, "new_name": str, "changed_by_id": str}
    """

    CONVERSATION_CREATED = "conversation_created"
    PARTICIPANT_JOINED = "participant_joined"
    PARTICIPANT_LEFT = "participant_left"
    RENAMED = "renamed"


class Conversation(SoftDeleteMixin, BaseModel):
    """
    A conversation between two or more users.

    Soft Delete Behavior:
        Only non-DIRECT conversations are soft deleted, by their owner,
        globally and irreversibly. DIRECT conversations are cleared per
        viewer and purged once both sides have cleared them.

    Fields:
        kind: Conversation kind (direct, group, broadcast, channel)
        name: Display name (required for non-DIRECT kinds)
        image_url: Optional display image
        description: Topic line for channels
        created_by: Creator (null for DIRECT)
        last_message: Denormalized pointer to the newest message
        last_message_at: Timestamp of the newest message (for sorting)
    """

    kind = models.CharField(
        max_length=10,
        choices=ConversationKind.choices,
        default=ConversationKind.GROUP,
        db_index=True,
        help_text="Kind of conversation",
    )

    name = models.CharField(
        max_length=100,
        blank=True,
        default="",
        help_text="Display name (empty for direct conversations)",
    )

    image_url = models.URLField(
        max_length=500,
        blank=True,
        default="",
        help_text="Optional display image",
    )

    description = models.CharField(
        max_length=500,
        blank=True,
        default="",
        help_text="Topic line for channels",
    )

    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="created_conversations",
        help_text="User who created this conversation (null for direct)",
    )

    last_message = models.ForeignKey(
        "Message",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
        help_text="Most recent message (denormalized for list views)",
    )

    last_message_at = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        help_text="Timestamp of most recent message (for sorting conversation lists)",
    )

    class Meta:
        db_table = "chat_conversation"
        ordering = ["-last_message_at", "-created_at"]
        indexes = [
            models.Index(
                fields=["kind", "is_deleted"],
                name="chat_conv_kind_deleted_idx",
            ),
        ]

    def __str__(self) -> str:
        if self.kind == ConversationKind.DIRECT:
            return f"Direct({self.pk})"
        return f"{self.get_kind_display()}: {self.name}"

    @property
    def is_direct(self) -> bool:
        return self.kind == ConversationKind.DIRECT

    @property
    def is_broadcast(self) -> bool:
        return self.kind == ConversationKind.BROADCAST

    @property
    def is_joinable(self) -> bool:
        """CHANNEL and BROADCAST conversations accept self-service joins."""
        return self.kind in (ConversationKind.CHANNEL, ConversationKind.BROADCAST)

    def get_active_participants(self):
        """Return queryset of participants that have not left."""
        return self.participants.filter(left_at__isnull=True)

    def get_active_participant_for_user(self, user: User) -> Participant | None:
        """Return the user's active participation, or None."""
        return self.participants.filter(user=user, left_at__isnull=True).first()


class DirectConversationPair(models.Model):
    """
    Enforces uniqueness of direct conversations between two users.

    Stores the pair in canonical order (lower user id first), so whichever
    side starts the conversation finds the same row.

    Constraints:
        - UniqueConstraint(user_lower, user_higher): One conversation per pair
        - CheckConstraint(user_lower_id < user_higher_id): Canonical order
    """

    conversation = models.OneToOneField(
        Conversation,
        on_delete=models.CASCADE,
        primary_key=True,
        related_name="direct_pair",
        help_text="The direct conversation this pair represents",
    )

    user_lower = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="+",
        help_text="User with lower ID in this conversation pair",
    )

    user_higher = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="+",
        help_text="User with higher ID in this conversation pair",
    )

    class Meta:
        db_table = "chat_direct_conversation_pair"
        constraints = [
            models.UniqueConstraint(
                fields=["user_lower", "user_higher"],
                name="unique_direct_conversation_pair",
            ),
            models.CheckConstraint(
                condition=Q(user_lower_id__lt=F("user_higher_id")),
                name="user_lower_less_than_higher",
            ),
        ]

    def __str__(self) -> str:
        return f"DirectPair({self.user_lower_id}, {self.user_higher_id})"

    @staticmethod
    def canonical(user_a: User, user_b: User) -> tuple[User, User]:
        """Return the two users ordered lower id first."""
        return (user_a, user_b) if user_a.id < user_b.id else (user_b, user_a)


class Participant(BaseModel):
    """
    Tracks user participation in conversations.

    Membership Lifecycle:
        1. User joins: Participant created with left_at=NULL
        2. User leaves: left_at set (the conversation survives for the rest)
        3. User rejoins: a NEW Participant record is created

    Fields:
        conversation: Conversation this participation belongs to
        user: User participating in the conversation
        role: Role (NULL for direct)
        joined_at: When the user joined
        left_at: When the user left (NULL if still active)
        last_read_at: Last time the user acknowledged the conversation
        cleared_at: DIRECT only; messages up to this instant are hidden
            from this user
        is_hidden: DIRECT only; the conversation is left out of this user's
            list until a newer message arrives or the user re-opens it

    Constraints:
        - One active participation per user per conversation
    """

    conversation = models.ForeignKey(
        Conversation,
        on_delete=models.CASCADE,
        related_name="participants",
        help_text="Conversation this participation belongs to",
    )

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="conversation_participations",
        help_text="User participating in the conversation",
    )

    role = models.CharField(
        max_length=10,
        choices=ParticipantRole.choices,
        null=True,
        blank=True,
        help_text="Role (null for direct conversations)",
    )

    joined_at = models.DateTimeField(
        auto_now_add=True,
        help_text="When the user joined this conversation",
    )

    left_at = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        help_text="When the user left (null if still active)",
    )

    last_read_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Last time user marked conversation as read",
    )

    cleared_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Direct only: history up to this instant is hidden for this user",
    )

    is_hidden = models.BooleanField(
        default=False,
        help_text="Direct only: removed from this user's list until a new message or re-open",
    )

    class Meta:
        db_table = "chat_participant"
        ordering = ["joined_at"]
        indexes = [
            models.Index(
                fields=["conversation", "left_at"],
                name="chat_part_conv_active_idx",
            ),
            models.Index(
                fields=["user", "left_at"],
                name="chat_part_user_active_idx",
            ),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["conversation", "user"],
                condition=Q(left_at__isnull=True),
                name="unique_active_participation",
            ),
        ]

    def __str__(self) -> str:
        status = "active" if self.is_active else "left"
        role_str = f" ({self.role})" if self.role else ""
        return f"Participant: {self.user_id} in {self.conversation_id}{role_str} [{status}]"

    @property
    def is_active(self) -> bool:
        return self.left_at is None

    @property
    def is_owner(self) -> bool:
        return self.role == ParticipantRole.OWNER

    @property
    def is_admin_or_owner(self) -> bool:
        return self.role in (ParticipantRole.OWNER, ParticipantRole.ADMIN)

    @property
    def can_write(self) -> bool:
        """BROADCAST conversations accept messages from the owner only."""
        if self.conversation.is_broadcast:
            return self.is_owner
        return self.role != ParticipantRole.SUBSCRIBER

    def visible_messages(self):
        """Messages this participant can see (history they cleared is hidden)."""
        queryset = self.conversation.messages.all()
        if self.cleared_at:
            queryset = queryset.filter(created_at__gt=self.cleared_at)
        return queryset

    def unread_messages(self):
        """
        Visible text messages from others this participant has not acknowledged.

        Messages from before the participant joined never count.
        """
        return (
            self.visible_messages()
            .filter(
                is_deleted=False,
                message_type=MessageType.TEXT,
                created_at__gte=self.joined_at,
            )
            .exclude(sender_id=self.user_id)
            .exclude(read_receipts__user_id=self.user_id)
        )


class Message(SoftDeleteMixin, BaseModel):
    """
    A message within a conversation.

    Lifecycle:
        Created by a send; afterwards mutated only by edit, reaction,
        read acknowledgment, pin and soft delete. Never reordered.

    Fields:
        conversation: Conversation this message belongs to
        sender: Author (NULL for system messages)
        message_type: Type of message (text or system)
        content: Message text or system event JSON
        reply_to: Message being replied to (same conversation only)
        client_id: Sender's temporary id for optimistic reconciliation
        is_edited / edited_at: Edit tracking
        is_pinned: Whether the message is pinned in its conversation
    """

    conversation = models.ForeignKey(
        Conversation,
        on_delete=models.CASCADE,
        related_name="messages",
        help_text="Conversation this message belongs to",
    )

    sender = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="sent_messages",
        help_text="User who sent this message (null for system messages)",
    )

    message_type = models.CharField(
        max_length=10,
        choices=MessageType.choices,
        default=MessageType.TEXT,
        help_text="Type of message (text or system)",
    )

    content = models.TextField(
        help_text="Message content (text for user messages, JSON for system messages)",
    )

    reply_to = models.ForeignKey(
        "self",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="replies",
        help_text="Message this one replies to (same conversation)",
    )

    client_id = models.CharField(
        max_length=64,
        blank=True,
        default="",
        help_text="Sender's temporary id, echoed back for optimistic reconciliation",
    )

    is_edited = models.BooleanField(
        default=False,
        help_text="Whether the content was edited after sending",
    )

    edited_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the message was last edited",
    )

    is_pinned = models.BooleanField(
        default=False,
        help_text="Whether the message is pinned in its conversation",
    )

    class Meta:
        db_table = "chat_message"
        ordering = ["created_at", "id"]
        indexes = [
            models.Index(
                fields=["conversation", "created_at", "id"],
                name="chat_msg_conv_order_idx",
            ),
            models.Index(
                fields=["sender", "-created_at"],
                name="chat_msg_sender_idx",
            ),
        ]

    def __str__(self) -> str:
        sender_str = f"User {self.sender_id}" if self.sender_id else "System"
        content_preview = (
            self.content[:50] + "..." if len(self.content) > 50 else self.content
        )
        deleted_str = " [deleted]" if self.is_deleted else ""
        return f"{sender_str}: {content_preview}{deleted_str}"

    @property
    def is_system_message(self) -> bool:
        return self.message_type == MessageType.SYSTEM

    def get_system_event_data(self) -> dict | None:
        """Parse system message content, or None for text/invalid content."""
        if not self.is_system_message:
            return None
        try:
            return json.loads(self.content)
        except (json.JSONDecodeError, TypeError):
            return None

    def get_display_content(self) -> str:
        """Content suitable for display; soft-deleted messages show a placeholder."""
        if self.is_deleted:
            return MESSAGE_CONFIG.DELETED_PLACEHOLDER
        return self.content


class MessageReaction(BaseModel):
    """
    A user's emoji reaction to a message.

    Constraints:
        - UniqueConstraint(message, user, emoji)
    """

    message = models.ForeignKey(
        Message,
        on_delete=models.CASCADE,
        related_name="reactions",
        help_text="Message being reacted to",
    )

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="message_reactions",
        help_text="User who reacted",
    )

    emoji = models.CharField(
        max_length=16,
        help_text="Emoji character(s)",
    )

    class Meta:
        db_table = "chat_message_reaction"
        ordering = ["created_at", "id"]
        constraints = [
            models.UniqueConstraint(
                fields=["message", "user", "emoji"],
                name="unique_message_user_emoji",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.user_id} reacted {self.emoji} to {self.message_id}"


class MessageReadReceipt(models.Model):
    """
    Acknowledgment of a message by one user.

    Rows are only ever inserted by the read path (ignore_conflicts), so the
    set of readers per message grows monotonically.
    """

    message = models.ForeignKey(
        Message,
        on_delete=models.CASCADE,
        related_name="read_receipts",
        help_text="Message that was read",
    )

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="message_read_receipts",
        help_text="User who read the message",
    )

    read_at = models.DateTimeField(
        auto_now_add=True,
        help_text="When the message was first acknowledged",
    )

    class Meta:
        db_table = "chat_message_read_receipt"
        ordering = ["read_at", "id"]
        constraints = [
            models.UniqueConstraint(
                fields=["message", "user"],
                name="unique_message_read_receipt",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.user_id} read {self.message_id}"
