"""
Chat system service layer.

This module provides the business logic for the chat system, encapsulating
all operations on conversations, participants, messages and reactions.

Services:
    ConversationService: Conversation lifecycle (create, rename, delete,
        join, leave, list) and cached participant ids for fan-out
    MessageService: Message operations (send, fetch, edit, delete, pin,
        mark as read, unread count)
    ReactionService: Emoji reaction toggling

Design Principles:
    - Services are stateless (use class methods)
    - Expected failures return ServiceResult.failure()
    - Unexpected failures raise exceptions
    - All database writes use transactions where appropriate
    - Realtime events are published after the write, through
      chat.realtime.RealtimePublisher; publishing never fails a request
    - System messages are generated for significant membership events

Usage:
    from chat.services import ConversationService, MessageService

    # Create (or find) a direct conversation
    result = ConversationService.create_direct(user1, user2)
    if result.success:
        conversation = result.data

    # Send a message, echoing the client's temporary id
    result = MessageService.send_message(
        conversation=conversation,
        sender=user1,
        content="Hello!",
        client_id="temp-1718000000000",
    )
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from django.core.cache import cache
from django.db import IntegrityError, transaction
from django.db.models import F, Prefetch
from django.utils import timezone

from chat.constants import HUB_CONFIG, MESSAGE_CONFIG, REACTION_CONFIG
from chat.models import (
    Conversation,
    ConversationKind,
    DirectConversationPair,
    Message,
    MessageReaction,
    MessageReadReceipt,
    MessageType,
    Participant,
    ParticipantRole,
    SystemMessageEvent,
)
from chat.realtime import RealtimePublisher, get_typing
from core.services import BaseService, ServiceResult

if TYPE_CHECKING:
    from authentication.models import User

logger = logging.getLogger(__name__)


def message_queryset():
    """Messages with everything MessageSerializer reads."""
    return Message.objects.select_related("sender__profile").prefetch_related(
        "reactions", "read_receipts"
    )


def conversation_queryset():
    """Conversations with everything ConversationSerializer reads."""
    return Conversation.objects.select_related(
        "last_message__sender__profile"
    ).prefetch_related(
        Prefetch(
            "participants",
            queryset=Participant.objects.filter(left_at__isnull=True).select_related(
                "user__profile"
            ),
        ),
        "last_message__reactions",
        "last_message__read_receipts",
    )


class ConversationService(BaseService):
    """
    Service for conversation lifecycle operations.

    Methods:
        create_direct: Create or retrieve direct conversation between two users
        create_group: Create a group (everyone writes)
        create_broadcast: Create a broadcast (owner writes, subscribers read)
        create_channel: Create a topic channel (open to join)
        rename: Change name and/or image of a non-direct conversation
        delete_for_user: Viewer-local clear (direct) or global delete (others)
        join: Self-service join of a channel or broadcast
        leave: Leave a non-direct conversation
        conversations_for: Visible conversations for a user, newest first
        participant_ids: Cached active participant ids for fan-out
        purge_if_cleared: Hard delete a direct conversation both sides cleared
    """

    # =========================================================================
    # Fan-out targets
    # =========================================================================

    @staticmethod
    def _participants_cache_key(conversation_id) -> str:
        return f"chat:participants:{conversation_id}"

    @classmethod
    def participant_ids(cls, conversation_id) -> list[str]:
        """
        Return active participant user ids as strings.

        Cached briefly; every membership change invalidates the entry.
        """
        key = cls._participants_cache_key(conversation_id)
        user_ids = cache.get(key)
        if user_ids is None:
            user_ids = [
                str(user_id)
                for user_id in Participant.objects.filter(
                    conversation_id=conversation_id,
                    left_at__isnull=True,
                ).values_list("user_id", flat=True)
            ]
            cache.set(key, user_ids, HUB_CONFIG.PARTICIPANT_CACHE_SECONDS)
        return user_ids

    @classmethod
    def invalidate_participants(cls, conversation_id) -> None:
        cache.delete(cls._participants_cache_key(conversation_id))

    # =========================================================================
    # Creation
    # =========================================================================

    @classmethod
    def create_direct(
        cls,
        user1: User,
        user2: User,
    ) -> ServiceResult[Conversation]:
        """
        Create or retrieve a direct conversation between two users.

        Direct conversations are unique per user pair. If a conversation
        already exists between the two users, it is returned instead of
        creating a duplicate, and it is put back on ``user1``'s list if
        ``user1`` had deleted it (their cleared history stays hidden).

        Args:
            user1: Requesting participant
            user2: Other participant

        Returns:
            ServiceResult with Conversation (existing or new)

        Error codes:
            SAME_USER: Cannot create direct conversation with yourself
        """
        if user1.id == user2.id:
            return ServiceResult.failure(
                "Cannot create a direct conversation with yourself",
                error_code="SAME_USER",
            )

        user_lower, user_higher = DirectConversationPair.canonical(user1, user2)

        try:
            existing_pair = DirectConversationPair.objects.select_related(
                "conversation"
            ).get(user_lower=user_lower, user_higher=user_higher)
        except DirectConversationPair.DoesNotExist:
            existing_pair = None

        if existing_pair is not None:
            return ServiceResult.success(cls._reuse_direct(existing_pair, user1))

        try:
            with transaction.atomic():
                conversation = Conversation.objects.create(
                    kind=ConversationKind.DIRECT,
                    name="",
                    created_by=None,
                )
                DirectConversationPair.objects.create(
                    conversation=conversation,
                    user_lower=user_lower,
                    user_higher=user_higher,
                )
                Participant.objects.bulk_create(
                    [
                        Participant(
                            conversation=conversation, user=user_lower, role=None
                        ),
                        Participant(
                            conversation=conversation, user=user_higher, role=None
                        ),
                    ]
                )
        except IntegrityError:
            # Another request created the pair between the lookup and the insert
            existing_pair = DirectConversationPair.objects.select_related(
                "conversation"
            ).get(user_lower=user_lower, user_higher=user_higher)
            return ServiceResult.success(cls._reuse_direct(existing_pair, user1))

        cls.get_logger().info(
            f"Created direct conversation {conversation.id} "
            f"between users {user_lower.id} and {user_higher.id}"
        )

        RealtimePublisher.conversation_created(
            conversation, [str(user_lower.id), str(user_higher.id)]
        )
        return ServiceResult.success(conversation)

    @classmethod
    def _reuse_direct(
        cls, pair: DirectConversationPair, user: User
    ) -> Conversation:
        """Return the pair's conversation, un-hiding it for ``user``."""
        conversation = pair.conversation
        Participant.objects.filter(
            conversation=conversation,
            user=user,
            left_at__isnull=True,
            is_hidden=True,
        ).update(is_hidden=False, updated_at=timezone.now())
        cls.get_logger().debug(
            f"Found existing direct conversation {conversation.id} "
            f"between users {pair.user_lower_id} and {pair.user_higher_id}"
        )
        return conversation

    @classmethod
    def create_group(
        cls,
        creator: User,
        name: str,
        members: list[User] | None = None,
        image_url: str | None = None,
    ) -> ServiceResult[Conversation]:
        """
        Create a group conversation; the creator becomes owner, members write.

        Error codes:
            NAME_REQUIRED: Name is empty
        """
        return cls._create_multi_party(
            kind=ConversationKind.GROUP,
            creator=creator,
            name=name,
            members=members,
            member_role=ParticipantRole.MEMBER,
            image_url=image_url,
        )

    @classmethod
    def create_broadcast(
        cls,
        creator: User,
        name: str,
        subscribers: list[User] | None = None,
        image_url: str | None = None,
    ) -> ServiceResult[Conversation]:
        """
        Create a broadcast; only the creator (owner) can write.

        Subscribers receive a newBroadcastChannel event.

        Error codes:
            NAME_REQUIRED: Name is empty
        """
        return cls._create_multi_party(
            kind=ConversationKind.BROADCAST,
            creator=creator,
            name=name,
            members=subscribers,
            member_role=ParticipantRole.SUBSCRIBER,
            image_url=image_url,
        )

    @classmethod
    def create_channel(
        cls,
        creator: User,
        name: str,
        members: list[User] | None = None,
        image_url: str | None = None,
        description: str = "",
    ) -> ServiceResult[Conversation]:
        """
        Create a topic channel; anyone may join later.

        Error codes:
            NAME_REQUIRED: Name is empty
        """
        return cls._create_multi_party(
            kind=ConversationKind.CHANNEL,
            creator=creator,
            name=name,
            members=members,
            member_role=ParticipantRole.MEMBER,
            image_url=image_url,
            description=description,
        )

    @classmethod
    def _create_multi_party(
        cls,
        kind: str,
        creator: User,
        name: str,
        members: list[User] | None,
        member_role: str,
        image_url: str | None = None,
        description: str = "",
    ) -> ServiceResult[Conversation]:
        name = name.strip() if name else ""
        if not name:
            return ServiceResult.failure(
                "A name is required for this kind of conversation",
                error_code="NAME_REQUIRED",
            )

        unique_members = {
            member.id: member for member in (members or []) if member.id != creator.id
        }

        with transaction.atomic():
            conversation = Conversation.objects.create(
                kind=kind,
                name=name,
                image_url=image_url or "",
                description=description or "",
                created_by=creator,
            )
            Participant.objects.bulk_create(
                [
                    Participant(
                        conversation=conversation,
                        user=creator,
                        role=ParticipantRole.OWNER,
                    )
                ]
                + [
                    Participant(conversation=conversation, user=member, role=member_role)
                    for member in unique_members.values()
                ]
            )
            MessageService._create_system_message(
                conversation,
                SystemMessageEvent.CONVERSATION_CREATED,
                {"name": name, "kind": kind},
            )

        cls.get_logger().info(
            f"User {creator.id} created {kind} conversation {conversation.id} "
            f"with {len(unique_members) + 1} participants"
        )

        RealtimePublisher.conversation_created(
            conversation, cls.participant_ids(conversation.id)
        )
        return ServiceResult.success(conversation)

    # =========================================================================
    # Updates
    # =========================================================================

    @classmethod
    def rename(
        cls,
        conversation: Conversation,
        user: User,
        name: str | None = None,
        image_url: str | None = None,
    ) -> ServiceResult[Conversation]:
        """
        Change the name and/or image of a non-direct conversation.

        Only owners and admins may rename.

        Error codes:
            INVALID_KIND: Direct conversations have no name
            CONVERSATION_DELETED: Conversation was deleted
            NOT_PARTICIPANT: User is not in this conversation
            PERMISSION_DENIED: User is not owner/admin
            NAME_REQUIRED: Name given but empty
        """
        if conversation.is_direct:
            return ServiceResult.failure(
                "Direct conversations cannot be renamed",
                error_code="INVALID_KIND",
            )

        if conversation.is_deleted:
            return ServiceResult.failure(
                "Conversation has been deleted",
                error_code="CONVERSATION_DELETED",
            )

        participant = conversation.get_active_participant_for_user(user)
        if not participant:
            return ServiceResult.failure(
                "You are not a participant in this conversation",
                error_code="NOT_PARTICIPANT",
            )

        if not participant.is_admin_or_owner:
            return ServiceResult.failure(
                "Only owners and admins can rename this conversation",
                error_code="PERMISSION_DENIED",
            )

        update_fields = ["updated_at"]
        old_name = conversation.name

        if name is not None:
            name = name.strip()
            if not name:
                return ServiceResult.failure(
                    "Name cannot be empty",
                    error_code="NAME_REQUIRED",
                )
            conversation.name = name
            update_fields.append("name")

        if image_url is not None:
            conversation.image_url = image_url
            update_fields.append("image_url")

        with transaction.atomic():
            conversation.save(update_fields=update_fields)
            if name is not None and name != old_name:
                MessageService._create_system_message(
                    conversation,
                    SystemMessageEvent.RENAMED,
                    {
                        "old_name": old_name,
                        "new_name": name,
                        "changed_by_id": str(user.id),
                    },
                )

        cls.get_logger().info(
            f"User {user.id} updated conversation {conversation.id} "
            f"({', '.join(update_fields[1:]) or 'no changes'})"
        )

        RealtimePublisher.conversation_updated(
            conversation, cls.participant_ids(conversation.id)
        )
        return ServiceResult.success(conversation)

    # =========================================================================
    # Deletion
    # =========================================================================

    @classmethod
    def delete_for_user(
        cls,
        conversation: Conversation,
        user: User,
    ) -> ServiceResult[dict]:
        """
        Delete a conversation from ``user``'s point of view.

        DIRECT: viewer-local. History up to now is hidden for ``user`` and
        the conversation leaves their list until a new message arrives.
        When both sides have deleted it with nothing sent since, a purge
        task hard deletes it.

        Other kinds: owner only, global and irreversible (soft delete).

        Returns:
            ServiceResult with {"conversation_id", "scope", "purge_scheduled"}

        Error codes:
            NOT_PARTICIPANT: User is not in this conversation
            PERMISSION_DENIED: Only the owner can delete for everyone
            ALREADY_DELETED: Conversation was already deleted
        """
        participant = conversation.get_active_participant_for_user(user)
        if not participant:
            return ServiceResult.failure(
                "You are not a participant in this conversation",
                error_code="NOT_PARTICIPANT",
            )

        if conversation.is_direct:
            return cls._clear_direct_for_user(conversation, participant)

        if conversation.is_deleted:
            return ServiceResult.failure(
                "Conversation is already deleted",
                error_code="ALREADY_DELETED",
            )

        if not participant.is_owner:
            return ServiceResult.failure(
                "Only the owner can delete this conversation",
                error_code="PERMISSION_DENIED",
            )

        targets = cls.participant_ids(conversation.id)
        conversation.soft_delete()
        cls.invalidate_participants(conversation.id)

        cls.get_logger().info(
            f"User {user.id} deleted {conversation.kind} conversation {conversation.id}"
        )

        RealtimePublisher.conversation_deleted(conversation.id, targets)
        return ServiceResult.success(
            {
                "conversation_id": str(conversation.id),
                "scope": "global",
                "purge_scheduled": False,
            }
        )

    @classmethod
    def _clear_direct_for_user(
        cls,
        conversation: Conversation,
        participant: Participant,
    ) -> ServiceResult[dict]:
        now = timezone.now()
        participant.cleared_at = now
        participant.is_hidden = True
        participant.save(update_fields=["cleared_at", "is_hidden", "updated_at"])

        both_cleared = not conversation.participants.filter(
            left_at__isnull=True, is_hidden=False
        ).exists()

        cls.get_logger().info(
            f"User {participant.user_id} cleared direct conversation {conversation.id}"
            + (" (both sides cleared)" if both_cleared else "")
        )

        # Only the clearing user's other sessions drop the conversation
        RealtimePublisher.conversation_deleted(
            conversation.id, [str(participant.user_id)]
        )

        purge_scheduled = False
        if both_cleared:
            purge_scheduled = cls._schedule_purge(conversation.id)

        return ServiceResult.success(
            {
                "conversation_id": str(conversation.id),
                "scope": "viewer",
                "purge_scheduled": purge_scheduled,
            }
        )

    @classmethod
    def _schedule_purge(cls, conversation_id) -> bool:
        from chat.tasks import purge_cleared_direct_conversation

        try:
            purge_cleared_direct_conversation.delay(conversation_id)
        except Exception as e:
            # The periodic sweeper picks up pairs whose purge never ran
            logger.exception(
                f"Error scheduling purge for conversation {conversation_id}: {e}"
            )
            return False
        return True

    @classmethod
    def purge_if_cleared(cls, conversation_id) -> ServiceResult[bool]:
        """
        Hard delete a direct conversation both participants cleared.

        Re-checks the condition under a row lock: a message sent after the
        purge was scheduled un-hides the conversation and cancels the purge.

        Returns:
            ServiceResult with True if purged, False if the condition no
            longer holds (or the conversation is gone)
        """
        with transaction.atomic():
            conversation = (
                Conversation.objects.select_for_update()
                .filter(id=conversation_id, kind=ConversationKind.DIRECT)
                .first()
            )
            if conversation is None:
                return ServiceResult.success(False)

            participants = list(conversation.participants.filter(left_at__isnull=True))
            if len(participants) != 2 or not all(p.is_hidden for p in participants):
                return ServiceResult.success(False)

            latest_clear = max(p.cleared_at for p in participants)
            if (
                conversation.last_message_at is not None
                and conversation.last_message_at > latest_clear
            ):
                return ServiceResult.success(False)

            conversation.hard_delete()

        cls.invalidate_participants(conversation_id)
        cls.get_logger().info(
            f"Purged direct conversation {conversation_id} (cleared by both sides)"
        )
        return ServiceResult.success(True)

    @classmethod
    def cleared_direct_conversation_ids(cls) -> list[int]:
        """Direct conversations every participant has hidden."""
        return list(
            Conversation.objects.filter(kind=ConversationKind.DIRECT)
            .exclude(participants__is_hidden=False)
            .filter(participants__isnull=False)
            .values_list("id", flat=True)
            .distinct()
        )

    # =========================================================================
    # Membership
    # =========================================================================

    @classmethod
    def join(
        cls,
        conversation: Conversation,
        user: User,
    ) -> ServiceResult[Participant]:
        """
        Join a channel (as member) or subscribe to a broadcast.

        Error codes:
            NOT_JOINABLE: Only channels and broadcasts accept joins
            CONVERSATION_DELETED: Conversation was deleted
            ALREADY_PARTICIPANT: User is already active
        """
        if not conversation.is_joinable:
            return ServiceResult.failure(
                "Only channels and broadcasts can be joined",
                error_code="NOT_JOINABLE",
            )

        if conversation.is_deleted:
            return ServiceResult.failure(
                "Conversation has been deleted",
                error_code="CONVERSATION_DELETED",
            )

        if conversation.get_active_participant_for_user(user):
            return ServiceResult.failure(
                "You are already a participant in this conversation",
                error_code="ALREADY_PARTICIPANT",
            )

        role = (
            ParticipantRole.SUBSCRIBER
            if conversation.is_broadcast
            else ParticipantRole.MEMBER
        )

        with transaction.atomic():
            participant = Participant.objects.create(
                conversation=conversation,
                user=user,
                role=role,
            )
            if not conversation.is_broadcast:
                MessageService._create_system_message(
                    conversation,
                    SystemMessageEvent.PARTICIPANT_JOINED,
                    {"user_id": str(user.id)},
                )

        cls.invalidate_participants(conversation.id)
        cls.get_logger().info(
            f"User {user.id} joined {conversation.kind} {conversation.id} as {role}"
        )

        RealtimePublisher.conversation_updated(
            conversation, cls.participant_ids(conversation.id)
        )
        return ServiceResult.success(participant)

    @classmethod
    def leave(
        cls,
        conversation: Conversation,
        user: User,
    ) -> ServiceResult[None]:
        """
        Leave a group, channel or broadcast.

        The conversation survives for the remaining participants. An owner
        leaving a group or channel hands ownership to the longest-standing
        admin, or failing that the longest-standing member.

        Error codes:
            INVALID_KIND: Direct conversations are deleted, not left
            NOT_PARTICIPANT: User is not in this conversation
            OWNER_CANNOT_LEAVE: Broadcast owners must delete instead
        """
        if conversation.is_direct:
            return ServiceResult.failure(
                "Direct conversations are deleted, not left",
                error_code="INVALID_KIND",
            )

        participant = conversation.get_active_participant_for_user(user)
        if not participant:
            return ServiceResult.failure(
                "You are not a participant in this conversation",
                error_code="NOT_PARTICIPANT",
            )

        if conversation.is_broadcast and participant.is_owner:
            return ServiceResult.failure(
                "The broadcast owner cannot leave; delete the broadcast instead",
                error_code="OWNER_CANNOT_LEAVE",
            )

        with transaction.atomic():
            participant.left_at = timezone.now()
            participant.save(update_fields=["left_at", "updated_at"])

            if participant.is_owner:
                cls._transfer_ownership_on_departure(conversation)

            if not conversation.is_broadcast:
                MessageService._create_system_message(
                    conversation,
                    SystemMessageEvent.PARTICIPANT_LEFT,
                    {"user_id": str(user.id)},
                )

        cls.invalidate_participants(conversation.id)
        get_typing().stop(conversation.id, user.id)

        cls.get_logger().info(
            f"User {user.id} left {conversation.kind} {conversation.id}"
        )

        RealtimePublisher.conversation_deleted(conversation.id, [str(user.id)])
        RealtimePublisher.conversation_updated(
            conversation, cls.participant_ids(conversation.id)
        )
        return ServiceResult.success(None)

    @classmethod
    def _transfer_ownership_on_departure(cls, conversation: Conversation) -> None:
        """
        Internal: Promote a successor when the owner leaves.

        Called within the leave transaction.
        """
        active = conversation.get_active_participants().order_by("joined_at", "id")
        successor = (
            active.filter(role=ParticipantRole.ADMIN).first()
            or active.filter(role=ParticipantRole.MEMBER).first()
        )
        if successor is None:
            return
        successor.role = ParticipantRole.OWNER
        successor.save(update_fields=["role", "updated_at"])
        cls.get_logger().info(
            f"Ownership of conversation {conversation.id} "
            f"transferred to user {successor.user_id}"
        )

    # =========================================================================
    # Typing
    # =========================================================================

    @classmethod
    def set_typing(
        cls,
        conversation: Conversation,
        user: User,
        is_typing: bool,
    ) -> ServiceResult[bool]:
        """
        Start or stop the user's typing indicator.

        Shared by the push channel and the REST fallback. Returns whether
        an event went out (False for a repeated start or a stray stop).

        Error codes:
            NOT_PARTICIPANT: User is not in this conversation
            READ_ONLY: Broadcast subscribers cannot type
        """
        participant = conversation.get_active_participant_for_user(user)
        if not participant:
            return ServiceResult.failure(
                "You are not a participant in this conversation",
                error_code="NOT_PARTICIPANT",
            )

        typing = get_typing()
        if not is_typing:
            return ServiceResult.success(typing.stop(conversation.id, user.id))

        if not participant.can_write:
            return ServiceResult.failure(
                "Only the owner can post in this broadcast",
                error_code="READ_ONLY",
            )

        return ServiceResult.success(
            typing.start(
                conversation.id,
                user.id,
                targets=cls.participant_ids(conversation.id),
                user_name=user.get_full_name(),
            )
        )

    # =========================================================================
    # Queries
    # =========================================================================

    @classmethod
    def conversations_for(cls, user: User):
        """
        Conversations visible to ``user``, most recent activity first.

        Excludes conversations the user left, globally deleted ones, and
        direct conversations the user deleted with nothing new since.
        """
        visible_ids = Participant.objects.filter(
            user=user,
            left_at__isnull=True,
            is_hidden=False,
        ).values("conversation_id")

        return (
            conversation_queryset()
            .filter(id__in=visible_ids, is_deleted=False)
            .order_by(F("last_message_at").desc(nulls_last=True), "-created_at")
        )

    @classmethod
    def get_for_participant(
        cls, conversation_id, user: User
    ) -> ServiceResult[Conversation]:
        """
        Fetch a conversation the user actively participates in.

        Error codes:
            NOT_FOUND: Missing, deleted, or not a participant
        """
        conversation = (
            conversation_queryset()
            .filter(
                id=conversation_id,
                is_deleted=False,
                participants__user=user,
                participants__left_at__isnull=True,
            )
            .first()
        )
        if conversation is None:
            return ServiceResult.failure(
                "Conversation not found",
                error_code="NOT_FOUND",
            )
        return ServiceResult.success(conversation)


class MessageService(BaseService):
    """
    Service for message operations.

    Methods:
        send_message: Send a text message (optionally a reply)
        messages_for: Ordered history visible to a user (with polling cursor)
        edit_message: Edit own message within the edit window
        delete_message: Soft delete a message
        toggle_pin: Pin or unpin a message
        mark_as_read: Acknowledge every unread message in a conversation
        get_unread_count: Count unread messages for a user
    """

    @classmethod
    def send_message(
        cls,
        conversation: Conversation,
        sender: User,
        content: str,
        reply_to_id: int | None = None,
        client_id: str | None = None,
    ) -> ServiceResult[Message]:
        """
        Send a text message to a conversation.

        The message is pushed to every active participant, the sender's
        other sessions included; ``client_id`` rides along so the sending
        client can match the echo to its optimistic placeholder. Direct
        conversations that a participant had deleted reappear for them.

        Args:
            conversation: Target conversation
            sender: User sending the message
            content: Message text
            reply_to_id: Optional ID of a message in the same conversation
            client_id: Optional client-side temporary id

        Returns:
            ServiceResult with new Message

        Error codes:
            CONVERSATION_DELETED: Cannot send to deleted conversation
            NOT_PARTICIPANT: User is not active in conversation
            READ_ONLY: Broadcast subscribers cannot write
            EMPTY_CONTENT: Message content cannot be empty
            CONTENT_TOO_LONG: Content exceeds the maximum length
            INVALID_REPLY: Replied-to message not in this conversation
        """
        if conversation.is_deleted:
            return ServiceResult.failure(
                "Cannot send messages to a deleted conversation",
                error_code="CONVERSATION_DELETED",
            )

        participant = conversation.get_active_participant_for_user(sender)
        if not participant:
            return ServiceResult.failure(
                "You are not a participant in this conversation",
                error_code="NOT_PARTICIPANT",
            )

        if not participant.can_write:
            return ServiceResult.failure(
                "Only the owner can post in this broadcast",
                error_code="READ_ONLY",
            )

        content = content.strip() if content else ""
        if not content:
            return ServiceResult.failure(
                "Message content cannot be empty",
                error_code="EMPTY_CONTENT",
            )

        if len(content) > MESSAGE_CONFIG.MAX_CONTENT_LENGTH:
            return ServiceResult.failure(
                f"Message exceeds {MESSAGE_CONFIG.MAX_CONTENT_LENGTH} characters",
                error_code="CONTENT_TOO_LONG",
            )

        reply_to = None
        if reply_to_id:
            reply_to = Message.objects.filter(
                id=reply_to_id, conversation=conversation
            ).first()
            if reply_to is None:
                return ServiceResult.failure(
                    "Replied-to message not found in this conversation",
                    error_code="INVALID_REPLY",
                )

        with transaction.atomic():
            message = Message.objects.create(
                conversation=conversation,
                sender=sender,
                message_type=MessageType.TEXT,
                content=content,
                reply_to=reply_to,
                client_id=client_id or "",
            )
            cls._bump_conversation(conversation, message)

            if conversation.is_direct:
                Participant.objects.filter(
                    conversation=conversation,
                    left_at__isnull=True,
                    is_hidden=True,
                ).update(is_hidden=False, updated_at=timezone.now())

        cls.get_logger().debug(
            f"User {sender.id} sent message {message.id} "
            f"to conversation {conversation.id}"
        )

        get_typing().stop(conversation.id, sender.id)
        RealtimePublisher.new_message(
            message, ConversationService.participant_ids(conversation.id)
        )
        return ServiceResult.success(message)

    @classmethod
    def messages_for(
        cls,
        conversation: Conversation,
        user: User,
        after_id: int | None = None,
    ) -> ServiceResult[list[Message]]:
        """
        Return the ordered history ``user`` can see.

        History the user cleared (direct delete) is left out. ``after_id``
        is the polling cursor: only messages strictly newer are returned.

        Error codes:
            NOT_PARTICIPANT: User is not active in conversation
        """
        participant = conversation.get_active_participant_for_user(user)
        if not participant:
            return ServiceResult.failure(
                "You are not a participant in this conversation",
                error_code="NOT_PARTICIPANT",
            )

        queryset = message_queryset().filter(
            id__in=participant.visible_messages().values("id")
        )
        if after_id is not None:
            queryset = queryset.filter(id__gt=after_id)

        return ServiceResult.success(list(queryset.order_by("created_at", "id")))

    @classmethod
    def edit_message(
        cls,
        user: User,
        message_id: int,
        new_content: str,
    ) -> ServiceResult[Message]:
        """
        Edit a message within the allowed time window.

        Only the original author can edit their message.

        Error codes:
            EMPTY_CONTENT: Content cannot be empty
            CONTENT_TOO_LONG: Content exceeds the maximum length
            MESSAGE_NOT_FOUND: Message does not exist
            MESSAGE_DELETED: Cannot edit deleted messages
            NOT_AUTHOR: User is not the message author
            EDIT_TIME_EXPIRED: Edit time window has passed
        """
        new_content = new_content.strip() if new_content else ""
        if not new_content:
            return ServiceResult.failure(
                "Message content cannot be empty",
                error_code="EMPTY_CONTENT",
            )

        if len(new_content) > MESSAGE_CONFIG.MAX_CONTENT_LENGTH:
            return ServiceResult.failure(
                f"Message exceeds {MESSAGE_CONFIG.MAX_CONTENT_LENGTH} characters",
                error_code="CONTENT_TOO_LONG",
            )

        try:
            message = Message.objects.select_related("conversation").get(id=message_id)
        except Message.DoesNotExist:
            return ServiceResult.failure(
                "Message not found",
                error_code="MESSAGE_NOT_FOUND",
            )

        if message.is_deleted:
            return ServiceResult.failure(
                "Cannot edit deleted messages",
                error_code="MESSAGE_DELETED",
            )

        if message.sender_id != user.id:
            return ServiceResult.failure(
                "You can only edit your own messages",
                error_code="NOT_AUTHOR",
            )

        time_since_creation = timezone.now() - message.created_at
        if time_since_creation.total_seconds() > MESSAGE_CONFIG.EDIT_TIME_LIMIT_SECONDS:
            return ServiceResult.failure(
                "Edit time window has expired",
                error_code="EDIT_TIME_EXPIRED",
            )

        message.content = new_content
        message.is_edited = True
        message.edited_at = timezone.now()
        message.save(update_fields=["content", "is_edited", "edited_at", "updated_at"])

        cls.get_logger().info(f"User {user.id} edited message {message.id}")

        cls._publish_update(message)
        return ServiceResult.success(message)

    @classmethod
    def delete_message(
        cls,
        user: User,
        message_id: int,
    ) -> ServiceResult[Message]:
        """
        Soft delete a message.

        Users can delete their own messages. Owners of group, channel and
        broadcast conversations can delete any message in them.

        Error codes:
            MESSAGE_NOT_FOUND: Message does not exist
            NOT_PARTICIPANT: User is not in this conversation
            ALREADY_DELETED: Message is already deleted
            PERMISSION_DENIED: Can only delete own messages
        """
        try:
            message = Message.objects.select_related("conversation").get(id=message_id)
        except Message.DoesNotExist:
            return ServiceResult.failure(
                "Message not found",
                error_code="MESSAGE_NOT_FOUND",
            )

        conversation = message.conversation
        participant = conversation.get_active_participant_for_user(user)
        if not participant:
            return ServiceResult.failure(
                "You are not a participant in this conversation",
                error_code="NOT_PARTICIPANT",
            )

        if message.is_deleted:
            return ServiceResult.failure(
                "Message is already deleted",
                error_code="ALREADY_DELETED",
            )

        is_author = message.sender_id == user.id
        is_moderator = not conversation.is_direct and participant.is_owner
        if not (is_author or is_moderator):
            return ServiceResult.failure(
                "You can only delete your own messages",
                error_code="PERMISSION_DENIED",
            )

        message.is_pinned = False
        message.save(update_fields=["is_pinned", "updated_at"])
        message.soft_delete()

        cls.get_logger().info(f"User {user.id} deleted message {message.id}")

        targets = ConversationService.participant_ids(conversation.id)
        cls._publish_update(message, targets)
        if conversation.last_message_id == message.id:
            RealtimePublisher.conversation_updated(conversation, targets)
        return ServiceResult.success(message)

    @classmethod
    def toggle_pin(
        cls,
        user: User,
        message_id: int,
    ) -> ServiceResult[Message]:
        """
        Pin or unpin a message.

        Error codes:
            MESSAGE_NOT_FOUND: Message does not exist
            NOT_PARTICIPANT: User is not in this conversation
            READ_ONLY: Broadcast subscribers cannot pin
            MESSAGE_DELETED: Deleted messages cannot be pinned
        """
        try:
            message = Message.objects.select_related("conversation").get(id=message_id)
        except Message.DoesNotExist:
            return ServiceResult.failure(
                "Message not found",
                error_code="MESSAGE_NOT_FOUND",
            )

        participant = message.conversation.get_active_participant_for_user(user)
        if not participant:
            return ServiceResult.failure(
                "You are not a participant in this conversation",
                error_code="NOT_PARTICIPANT",
            )

        if not participant.can_write:
            return ServiceResult.failure(
                "Only the owner can pin in this broadcast",
                error_code="READ_ONLY",
            )

        if message.is_deleted:
            return ServiceResult.failure(
                "Cannot pin deleted messages",
                error_code="MESSAGE_DELETED",
            )

        message.is_pinned = not message.is_pinned
        message.save(update_fields=["is_pinned", "updated_at"])

        cls.get_logger().debug(
            f"User {user.id} {'pinned' if message.is_pinned else 'unpinned'} "
            f"message {message.id}"
        )

        cls._publish_update(message)
        return ServiceResult.success(message)

    @classmethod
    def mark_as_read(
        cls,
        conversation: Conversation,
        user: User,
    ) -> ServiceResult[list[int]]:
        """
        Acknowledge every unread message in a conversation for a user.

        Idempotent: receipts are inserted with conflicts ignored, and a
        second call finds nothing unread, publishes nothing and returns an
        empty list. Each newly acknowledged message is pushed as
        messageUpdated so senders see the read-by set grow.

        Returns:
            ServiceResult with the ids of newly acknowledged messages

        Error codes:
            NOT_PARTICIPANT: User is not in this conversation
        """
        participant = conversation.get_active_participant_for_user(user)
        if not participant:
            return ServiceResult.failure(
                "You are not a participant in this conversation",
                error_code="NOT_PARTICIPANT",
            )

        unread_ids = list(
            participant.unread_messages()
            .order_by("created_at", "id")
            .values_list("id", flat=True)
        )

        with transaction.atomic():
            if unread_ids:
                MessageReadReceipt.objects.bulk_create(
                    [
                        MessageReadReceipt(message_id=message_id, user=user)
                        for message_id in unread_ids
                    ],
                    ignore_conflicts=True,
                )
            participant.last_read_at = timezone.now()
            participant.save(update_fields=["last_read_at", "updated_at"])

        cls.get_logger().debug(
            f"User {user.id} marked conversation {conversation.id} as read "
            f"({len(unread_ids)} new)"
        )

        if unread_ids:
            targets = ConversationService.participant_ids(conversation.id)
            for message in message_queryset().filter(id__in=unread_ids).order_by(
                "created_at", "id"
            ):
                RealtimePublisher.message_updated(message, targets)

        return ServiceResult.success(unread_ids)

    @classmethod
    def get_unread_count(
        cls,
        conversation: Conversation,
        user: User,
    ) -> int:
        """
        Get count of unread messages for a user in a conversation.

        Unread messages are visible text messages from others with no read
        receipt by the user.

        Returns:
            Number of unread messages (0 if user is not a participant)
        """
        participant = conversation.get_active_participant_for_user(user)
        if not participant:
            return 0
        return participant.unread_messages().count()

    @classmethod
    def _bump_conversation(cls, conversation: Conversation, message: Message) -> None:
        conversation.last_message = message
        conversation.last_message_at = message.created_at
        conversation.save(
            update_fields=["last_message", "last_message_at", "updated_at"]
        )

    @classmethod
    def _publish_update(cls, message: Message, targets: list[str] | None = None) -> None:
        if targets is None:
            targets = ConversationService.participant_ids(message.conversation_id)
        message = message_queryset().get(id=message.id)
        RealtimePublisher.message_updated(message, targets)

    @classmethod
    def _create_system_message(
        cls,
        conversation: Conversation,
        event: str,
        data: dict,
    ) -> Message:
        """
        Internal: Create a system event message.

        System messages have:
        - sender = None (system-generated)
        - message_type = SYSTEM
        - content = JSON with {event, data}

        This method should be called within an existing transaction.
        """
        message = Message.objects.create(
            conversation=conversation,
            sender=None,
            message_type=MessageType.SYSTEM,
            content=json.dumps({"event": event, "data": data}),
        )
        cls._bump_conversation(conversation, message)
        return message


# =============================================================================
# ReactionService
# =============================================================================


class ReactionService(BaseService):
    """
    Service for managing message reactions.

    A reaction is a (message, user, emoji) triple; toggling adds it when
    absent and removes it when present.
    """

    @classmethod
    def _validate_emoji(cls, emoji: str) -> bool:
        """
        Validate that emoji is a valid reaction emoji.

        Returns:
            True if valid, False otherwise
        """
        if not emoji or not emoji.strip():
            return False

        emoji = emoji.strip()

        # Check max length to prevent abuse
        if len(emoji) > REACTION_CONFIG.MAX_EMOJI_LENGTH:
            return False

        if REACTION_CONFIG.ALLOWED_EMOJIS is not None:
            return emoji in REACTION_CONFIG.ALLOWED_EMOJIS

        return True

    @classmethod
    def toggle_reaction(
        cls,
        user: User,
        message_id: int,
        emoji: str,
    ) -> ServiceResult[list[MessageReaction]]:
        """
        Toggle a reaction on a message.

        Returns:
            ServiceResult with the message's updated reaction list

        Error codes:
            INVALID_EMOJI: Empty or oversized emoji
            MESSAGE_NOT_FOUND: Message does not exist
            MESSAGE_DELETED: Cannot react to deleted messages
            NOT_PARTICIPANT: User is not in this conversation
        """
        if not cls._validate_emoji(emoji):
            return ServiceResult.failure(
                "Invalid emoji",
                error_code="INVALID_EMOJI",
            )
        emoji = emoji.strip()

        try:
            message = Message.objects.select_related("conversation").get(id=message_id)
        except Message.DoesNotExist:
            return ServiceResult.failure(
                "Message not found",
                error_code="MESSAGE_NOT_FOUND",
            )

        if message.is_deleted:
            return ServiceResult.failure(
                "Cannot react to deleted messages",
                error_code="MESSAGE_DELETED",
            )

        participant = message.conversation.get_active_participant_for_user(user)
        if not participant:
            return ServiceResult.failure(
                "You are not a participant in this conversation",
                error_code="NOT_PARTICIPANT",
            )

        with transaction.atomic():
            removed, _ = MessageReaction.objects.filter(
                message=message, user=user, emoji=emoji
            ).delete()
            if not removed:
                MessageReaction.objects.get_or_create(
                    message=message, user=user, emoji=emoji
                )

        cls.get_logger().debug(
            f"User {user.id} {'removed' if removed else 'added'} {emoji} "
            f"on message {message.id}"
        )

        MessageService._publish_update(message)
        return ServiceResult.success(
            list(message.reactions.order_by("created_at", "id"))
        )
