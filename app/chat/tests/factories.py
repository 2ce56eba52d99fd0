"""
Factory Boy factories for chat models.

Provides realistic test data generation for:
- Conversation: Group, channel, broadcast and direct conversations
- DirectConversationPair: Helper for direct conversation uniqueness
- Participant: User participation in conversations
- Message: Text and system messages

Usage:
    from chat.tests.factories import (
        DirectConversationFactory,
        GroupConversationFactory,
        MessageFactory,
        ParticipantFactory,
    )

    # Group conversation with its owner
    conversation = GroupConversationFactory()

    # Direct conversation between two users
    conversation = DirectConversationFactory(user1=alice, user2=bob)

    # Message in a conversation (also bumps last_message)
    message = MessageFactory(conversation=conversation, sender=alice)
"""

import json

import factory

from authentication.tests.factories import UserFactory
from chat.models import (
    Conversation,
    ConversationKind,
    DirectConversationPair,
    Message,
    MessageType,
    Participant,
    ParticipantRole,
    SystemMessageEvent,
)


class ConversationFactory(factory.django.DjangoModelFactory):
    """
    Base factory for Conversation model.

    Creates a bare group conversation with no participants.
    Use GroupConversationFactory or DirectConversationFactory for
    conversations that are ready to use.
    """

    class Meta:
        model = Conversation
        skip_postgeneration_save = True

    kind = ConversationKind.GROUP
    name = factory.Sequence(lambda n: f"Group Chat {n}")
    created_by = factory.SubFactory(UserFactory)
    last_message_at = None
    is_deleted = False
    deleted_at = None


class GroupConversationFactory(ConversationFactory):
    """
    Factory for named conversations with an owner participant.

    Examples:
        conversation = GroupConversationFactory()
        channel = GroupConversationFactory(kind=ConversationKind.CHANNEL)
        broadcast = BroadcastConversationFactory(created_by=pastor)
    """

    @factory.post_generation
    def add_owner(self, create, extracted, **kwargs):
        """Add the creator as owner after conversation is created."""
        if not create:
            return

        ParticipantFactory(
            conversation=self,
            user=self.created_by,
            role=ParticipantRole.OWNER,
        )


class ChannelConversationFactory(GroupConversationFactory):
    kind = ConversationKind.CHANNEL
    name = factory.Sequence(lambda n: f"Channel {n}")
    description = "Weekly topics"


class BroadcastConversationFactory(GroupConversationFactory):
    kind = ConversationKind.BROADCAST
    name = factory.Sequence(lambda n: f"Announcements {n}")


class DirectConversationFactory(factory.django.DjangoModelFactory):
    """
    Factory for direct (1:1) conversations.

    Creates the conversation, its DirectConversationPair and both
    participants.

    Examples:
        conversation = DirectConversationFactory()
        conversation = DirectConversationFactory(user1=alice, user2=bob)
    """

    class Meta:
        model = Conversation

    kind = ConversationKind.DIRECT
    name = ""
    created_by = None
    last_message_at = None
    is_deleted = False
    deleted_at = None

    @classmethod
    def _create(cls, model_class, *args, **kwargs):
        """Create direct conversation with participants and pair."""
        user1 = kwargs.pop("user1", None) or UserFactory()
        user2 = kwargs.pop("user2", None) or UserFactory()

        user_lower, user_higher = DirectConversationPair.canonical(user1, user2)

        conversation = super()._create(model_class, *args, **kwargs)
        DirectConversationPair.objects.create(
            conversation=conversation,
            user_lower=user_lower,
            user_higher=user_higher,
        )
        ParticipantFactory(conversation=conversation, user=user_lower, role=None)
        ParticipantFactory(conversation=conversation, user=user_higher, role=None)
        return conversation


class ParticipantFactory(factory.django.DjangoModelFactory):
    """
    Factory for Participant model.

    Examples:
        ParticipantFactory(conversation=group, user=member)
        ParticipantFactory(conversation=broadcast, role=ParticipantRole.SUBSCRIBER)
    """

    class Meta:
        model = Participant

    conversation = factory.SubFactory(ConversationFactory)
    user = factory.SubFactory(UserFactory)
    role = ParticipantRole.MEMBER
    left_at = None
    last_read_at = None
    cleared_at = None
    is_hidden = False


class MessageFactory(factory.django.DjangoModelFactory):
    """
    Factory for text messages.

    Keeps the conversation's last_message pointer current, as
    MessageService.send_message does.
    """

    class Meta:
        model = Message
        skip_postgeneration_save = True

    conversation = factory.SubFactory(GroupConversationFactory)
    sender = factory.SubFactory(UserFactory)
    message_type = MessageType.TEXT
    content = factory.Faker("sentence")
    client_id = ""

    @factory.post_generation
    def bump_conversation(self, create, extracted, **kwargs):
        if not create:
            return
        conversation = self.conversation
        conversation.last_message = self
        conversation.last_message_at = self.created_at
        conversation.save(update_fields=["last_message", "last_message_at", "updated_at"])


class SystemMessageFactory(MessageFactory):
    """Factory for system event messages (no sender)."""

    sender = None
    message_type = MessageType.SYSTEM
    content = factory.LazyFunction(
        lambda: json.dumps(
            {"event": SystemMessageEvent.PARTICIPANT_JOINED, "data": {"user_id": "1"}}
        )
    )
