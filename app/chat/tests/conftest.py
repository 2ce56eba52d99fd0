"""
Test configuration and fixtures for chat tests.

This module provides:
- User fixtures (owner, member, outsider)
- Conversation fixtures (direct, group, channel, broadcast)
- API client helpers for authenticated requests
- Hub helpers for reading the frames a user would receive

Usage:
    def test_example(group_conversation, owner_client):
        response = owner_client.get(f'/api/v1/chat/conversations/{group_conversation.id}/')
        assert response.status_code == 200
"""

import pytest
from channels.layers import get_channel_layer
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import RefreshToken

from authentication.tests.factories import UserFactory
from chat.models import ParticipantRole
from chat.realtime import get_hub
from chat.tests.factories import (
    BroadcastConversationFactory,
    ChannelConversationFactory,
    DirectConversationFactory,
    GroupConversationFactory,
    ParticipantFactory,
)
from chat.tests.layer_helpers import new_channel_name, receive_frames


# =============================================================================
# User Fixtures
# =============================================================================


@pytest.fixture
def owner_user(db):
    """User who owns the group, channel and broadcast fixtures."""
    return UserFactory(first_name="Olive", last_name="Owner")


@pytest.fixture
def member_user(db):
    """User who is a member (or subscriber) of the conversation fixtures."""
    return UserFactory(first_name="Mark", last_name="Member")


@pytest.fixture
def other_user(db):
    """User who participates in nothing."""
    return UserFactory(first_name="Otto", last_name="Outsider")


# =============================================================================
# Conversation Fixtures
# =============================================================================


@pytest.fixture
def group_conversation(owner_user, member_user):
    """Group owned by owner_user with member_user as member."""
    conversation = GroupConversationFactory(created_by=owner_user, name="Choir")
    ParticipantFactory(
        conversation=conversation, user=member_user, role=ParticipantRole.MEMBER
    )
    return conversation


@pytest.fixture
def channel_conversation(owner_user):
    """Channel owned by owner_user, nobody else joined yet."""
    return ChannelConversationFactory(created_by=owner_user, name="Prayer requests")


@pytest.fixture
def broadcast_conversation(owner_user, member_user):
    """Broadcast owned by owner_user with member_user subscribed."""
    conversation = BroadcastConversationFactory(
        created_by=owner_user, name="Sunday notices"
    )
    ParticipantFactory(
        conversation=conversation, user=member_user, role=ParticipantRole.SUBSCRIBER
    )
    return conversation


@pytest.fixture
def direct_conversation(owner_user, member_user):
    """Direct conversation between owner_user and member_user."""
    return DirectConversationFactory(user1=owner_user, user2=member_user)


# =============================================================================
# API Client Fixtures
# =============================================================================


def _client_for(user) -> APIClient:
    client = APIClient()
    refresh = RefreshToken.for_user(user)
    client.credentials(HTTP_AUTHORIZATION=f"Bearer {refresh.access_token}")
    return client


@pytest.fixture
def api_client():
    """Unauthenticated API client."""
    return APIClient()


@pytest.fixture
def owner_client(owner_user):
    return _client_for(owner_user)


@pytest.fixture
def member_client(member_user):
    return _client_for(member_user)


@pytest.fixture
def other_client(other_user):
    return _client_for(other_user)


# =============================================================================
# Hub Fixtures
# =============================================================================


@pytest.fixture
def hub():
    """The process hub (reset around every test by the root conftest)."""
    return get_hub()


@pytest.fixture
def listen(hub):
    """
    Register a push channel for a user and return a frame reader.

    Usage:
        read = listen(member_user)
        ...
        assert [f["type"] for f in read()] == ["newMessage", ...]

    The reader skips the connected/connectedUsers frames every new
    channel receives.
    """
    layer = get_channel_layer()

    def _listen(user):
        channel_name = new_channel_name(layer)
        handle = hub.register(user.id, channel_name)
        receive_frames(layer, channel_name)

        def read(event_type=None):
            frames = receive_frames(layer, channel_name)
            frames = [f for f in frames if f["type"] != "connectedUsers"]
            if event_type is not None:
                frames = [f for f in frames if f["type"] == event_type]
            return frames

        read.handle = handle
        return read

    return _listen
