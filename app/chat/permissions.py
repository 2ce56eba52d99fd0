"""
Permission classes for chat API.

This module provides DRF permission classes for the chat system:
- IsConversationParticipant: User is an active participant

Role rules (who may rename, delete, write to a broadcast) live in the
services, which return error codes the client can act on. Permissions here
only keep non-participants away from conversation objects.

Design Decisions:
    - Permissions check against Participant model, not User
    - Active participant = left_at IS NULL
    - View-level permissions use get_object() for efficiency
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rest_framework import permissions

from chat.models import Conversation, Message, Participant

if TYPE_CHECKING:
    from rest_framework.request import Request
    from rest_framework.views import APIView


class IsConversationParticipant(permissions.BasePermission):
    """
    Allows access only to active participants of the conversation.

    This is the base permission for most chat endpoints.
    Accepts a Conversation or a Message object.
    """

    message = "You are not a participant in this conversation."

    def has_object_permission(
        self, request: Request, view: APIView, obj: Conversation | Message
    ) -> bool:
        """Check if user is an active participant."""
        if not request.user.is_authenticated:
            return False

        conversation_id = obj.conversation_id if isinstance(obj, Message) else obj.pk

        return Participant.objects.filter(
            conversation_id=conversation_id,
            user=request.user,
            left_at__isnull=True,
        ).exists()
