"""
Tests for chat Celery tasks.

Tests cover:
- Purging a direct conversation both sides deleted
- The periodic sweep for purges that never ran
"""

from datetime import timedelta

from django.utils import timezone

from authentication.tests.factories import UserFactory
from chat.models import Conversation, Participant
from chat.tasks import (
    purge_cleared_direct_conversation,
    purge_cleared_direct_conversations,
)
from chat.tests.factories import DirectConversationFactory, MessageFactory


def _clear(conversation, *users, at=None):
    Participant.objects.filter(conversation=conversation, user__in=users).update(
        is_hidden=True, cleared_at=at or timezone.now()
    )


class TestPurgeClearedDirectConversation:
    def test_purges_when_both_cleared(self, direct_conversation, owner_user, member_user):
        """
        Both sides deleted the conversation: it is removed for good.

        Why it matters: Nobody can see it any more, so keeping it only
        retains personal messages.
        """
        MessageFactory(conversation=direct_conversation, sender=owner_user)
        _clear(direct_conversation, owner_user, member_user)

        assert purge_cleared_direct_conversation(direct_conversation.id) is True
        assert not Conversation.objects.filter(id=direct_conversation.id).exists()

    def test_keeps_when_one_side_cleared(self, direct_conversation, owner_user):
        _clear(direct_conversation, owner_user)

        assert purge_cleared_direct_conversation(direct_conversation.id) is False
        assert Conversation.objects.filter(id=direct_conversation.id).exists()

    def test_keeps_when_message_arrived_after_clear(
        self, direct_conversation, owner_user, member_user
    ):
        """
        A message newer than both clears cancels the purge.

        Why it matters: The purge runs asynchronously; a reply sent in the
        meantime must survive.
        """
        _clear(
            direct_conversation,
            owner_user,
            member_user,
            at=timezone.now() - timedelta(minutes=5),
        )
        Conversation.objects.filter(id=direct_conversation.id).update(
            last_message_at=timezone.now()
        )

        assert purge_cleared_direct_conversation(direct_conversation.id) is False

    def test_missing_conversation(self, db):
        assert purge_cleared_direct_conversation(999999) is False

    def test_group_never_purged(self, group_conversation):
        Participant.objects.filter(conversation=group_conversation).update(
            is_hidden=True, cleared_at=timezone.now()
        )

        assert purge_cleared_direct_conversation(group_conversation.id) is False


class TestPurgeClearedDirectConversations:
    def test_sweeps_only_fully_cleared(self, owner_user, member_user, other_user):
        cleared = DirectConversationFactory(user1=owner_user, user2=member_user)
        half = DirectConversationFactory(user1=owner_user, user2=other_user)
        _clear(cleared, owner_user, member_user)
        _clear(half, owner_user)

        assert purge_cleared_direct_conversations() == 1
        assert not Conversation.objects.filter(id=cleared.id).exists()
        assert Conversation.objects.filter(id=half.id).exists()

    def test_nothing_to_sweep(self, db):
        UserFactory()

        assert purge_cleared_direct_conversations() == 0
