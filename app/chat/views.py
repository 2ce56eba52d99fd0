"""
ViewSets for chat API.

This module provides REST API endpoints for the chat system:
- ConversationViewSet: Conversation CRUD and actions
- ConversationMessageViewSet: History and sending (nested under conversation)
- MessageViewSet: Edit, delete, reactions and pins by message id
- HubStatusView: Staff view of the realtime hub

URL Structure:
    /api/v1/chat/conversations/                          GET, POST
    /api/v1/chat/conversations/{id}/                     GET, PATCH, DELETE
    /api/v1/chat/conversations/{id}/read/                POST
    /api/v1/chat/conversations/{id}/join/                POST
    /api/v1/chat/conversations/{id}/leave/               POST
    /api/v1/chat/conversations/{id}/typing/              POST
    /api/v1/chat/conversations/{id}/messages/            GET, POST
    /api/v1/chat/messages/{id}/                          PATCH, DELETE
    /api/v1/chat/messages/{id}/reactions/toggle/         POST
    /api/v1/chat/messages/{id}/pin/                      POST
    /api/v1/chat/hub/status/                             GET

Design Decisions:
    - No pagination: clients do a full ordered fetch and then follow the
      push stream (or poll with ?after=<message id>)
    - All operations use service layer for business logic
    - Service failures map to {"error", "error_code"}: 404 for missing
      objects, 403 for permission codes, 400 otherwise
"""

from __future__ import annotations

from django.contrib.auth import get_user_model
from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import (
    OpenApiParameter,
    extend_schema,
    extend_schema_view,
)
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import NotFound
from rest_framework.permissions import IsAdminUser, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from chat.models import ConversationKind
from chat.permissions import IsConversationParticipant
from chat.realtime import get_hub
from chat.serializers import (
    ConversationCreateSerializer,
    ConversationSerializer,
    ConversationUpdateSerializer,
    MessageCreateSerializer,
    MessageSerializer,
    MessageUpdateSerializer,
    ReactionToggleSerializer,
    TypingSerializer,
)
from chat.services import (
    ConversationService,
    MessageService,
    ReactionService,
    conversation_queryset,
    message_queryset,
)

User = get_user_model()

NOT_FOUND_CODES = frozenset({"NOT_FOUND", "MESSAGE_NOT_FOUND"})
FORBIDDEN_CODES = frozenset(
    {"NOT_PARTICIPANT", "PERMISSION_DENIED", "NOT_AUTHOR", "READ_ONLY"}
)


def error_response(result) -> Response:
    """Translate a failed ServiceResult into an error Response."""
    if result.error_code in NOT_FOUND_CODES:
        status_code = status.HTTP_404_NOT_FOUND
    elif result.error_code in FORBIDDEN_CODES:
        status_code = status.HTTP_403_FORBIDDEN
    else:
        status_code = status.HTTP_400_BAD_REQUEST
    return Response(result.to_response(), status=status_code)


@extend_schema_view(
    list=extend_schema(
        operation_id="list_conversations",
        summary="List conversations",
        tags=["Chat - Conversations"],
    ),
    create=extend_schema(
        operation_id="create_conversation",
        summary="Create conversation",
        request=ConversationCreateSerializer,
        responses={201: ConversationSerializer},
        tags=["Chat - Conversations"],
    ),
    retrieve=extend_schema(
        operation_id="get_conversation",
        summary="Get conversation",
        tags=["Chat - Conversations"],
    ),
    partial_update=extend_schema(
        operation_id="update_conversation",
        summary="Rename conversation or change its image",
        request=ConversationUpdateSerializer,
        responses={200: ConversationSerializer},
        tags=["Chat - Conversations"],
    ),
    destroy=extend_schema(
        operation_id="delete_conversation",
        summary="Delete conversation",
        tags=["Chat - Conversations"],
    ),
)
class ConversationViewSet(viewsets.ModelViewSet):
    """
    ViewSet for conversation operations.

    list:
        All conversations visible to the current user, newest activity
        first, with last message and unread count.

    create:
        Create a conversation of any kind.
        For direct: returns existing if found, creates if not.

    retrieve:
        Conversation details including all participants.

    partial_update:
        Rename or change image. Owners and admins only.

    destroy:
        Direct: removes it for the current user only.
        Others: owner only, deletes for everyone.

    read / join / leave / typing:
        See the individual actions.
    """

    serializer_class = ConversationSerializer
    permission_classes = [IsAuthenticated]
    pagination_class = None
    lookup_value_regex = r"\d+"
    http_method_names = ["get", "post", "patch", "delete", "head", "options"]

    def get_queryset(self):
        if not self.request.user.is_authenticated:
            return conversation_queryset().none()
        if self.action == "list":
            return ConversationService.conversations_for(self.request.user)
        return conversation_queryset().filter(is_deleted=False)

    def get_permissions(self):
        """Everything except list, create and join needs active participation."""
        if self.action in ("list", "create", "join"):
            return [IsAuthenticated()]
        return [IsAuthenticated(), IsConversationParticipant()]

    def create(self, request):
        """Create a conversation."""
        serializer = ConversationCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        data = serializer.validated_data
        kind = data["kind"]
        members = list(User.objects.filter(id__in=data["participant_ids"]))

        if kind == ConversationKind.DIRECT:
            result = ConversationService.create_direct(
                user1=request.user,
                user2=members[0],
            )
        elif kind == ConversationKind.GROUP:
            result = ConversationService.create_group(
                creator=request.user,
                name=data["name"],
                members=members,
                image_url=data["image_url"],
            )
        elif kind == ConversationKind.BROADCAST:
            result = ConversationService.create_broadcast(
                creator=request.user,
                name=data["name"],
                subscribers=members,
                image_url=data["image_url"],
            )
        else:
            result = ConversationService.create_channel(
                creator=request.user,
                name=data["name"],
                members=members,
                image_url=data["image_url"],
                description=data["description"],
            )

        if not result.success:
            return error_response(result)

        conversation = conversation_queryset().get(id=result.data.id)
        output_serializer = ConversationSerializer(
            conversation, context={"request": request}
        )
        return Response(output_serializer.data, status=status.HTTP_201_CREATED)

    def partial_update(self, request, pk=None):
        """Rename or change the image of a conversation."""
        conversation = self.get_object()
        serializer = ConversationUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = ConversationService.rename(
            conversation=conversation,
            user=request.user,
            name=serializer.validated_data.get("name"),
            image_url=serializer.validated_data.get("image_url"),
        )

        if not result.success:
            return error_response(result)

        output_serializer = ConversationSerializer(
            conversation_queryset().get(id=conversation.id),
            context={"request": request},
        )
        return Response(output_serializer.data)

    def destroy(self, request, pk=None):
        """Delete for the current user (direct) or for everyone (others)."""
        conversation = self.get_object()

        result = ConversationService.delete_for_user(
            conversation=conversation,
            user=request.user,
        )

        if not result.success:
            return error_response(result)

        return Response(result.data)

    @extend_schema(
        operation_id="mark_conversation_read",
        summary="Mark conversation as read",
        description="Idempotent: acknowledging already-read messages is a no-op.",
        request=None,
        tags=["Chat - Conversations"],
    )
    @action(detail=True, methods=["post"])
    def read(self, request, pk=None):
        """Acknowledge every unread message in the conversation."""
        conversation = self.get_object()

        result = MessageService.mark_as_read(
            conversation=conversation,
            user=request.user,
        )

        if not result.success:
            return error_response(result)

        return Response(
            {
                "status": "read",
                "message_ids": [str(message_id) for message_id in result.data],
            }
        )

    @extend_schema(
        operation_id="join_conversation",
        summary="Join a channel or subscribe to a broadcast",
        request=None,
        tags=["Chat - Conversations"],
    )
    @action(detail=True, methods=["post"])
    def join(self, request, pk=None):
        """Join a channel or broadcast."""
        conversation = self.get_object()

        result = ConversationService.join(
            conversation=conversation,
            user=request.user,
        )

        if not result.success:
            return error_response(result)

        output_serializer = ConversationSerializer(
            conversation_queryset().get(id=conversation.id),
            context={"request": request},
        )
        return Response(output_serializer.data)

    @extend_schema(
        operation_id="leave_conversation",
        summary="Leave conversation",
        request=None,
        tags=["Chat - Conversations"],
    )
    @action(detail=True, methods=["post"])
    def leave(self, request, pk=None):
        """Leave the conversation."""
        conversation = self.get_object()

        result = ConversationService.leave(
            conversation=conversation,
            user=request.user,
        )

        if not result.success:
            return error_response(result)

        return Response({"status": "left"})

    @extend_schema(
        operation_id="set_typing",
        summary="Typing indicator (fallback for clients without a push channel)",
        request=TypingSerializer,
        tags=["Chat - Conversations"],
    )
    @action(detail=True, methods=["post"])
    def typing(self, request, pk=None):
        """Start or stop the current user's typing indicator."""
        conversation = self.get_object()
        serializer = TypingSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = ConversationService.set_typing(
            conversation=conversation,
            user=request.user,
            is_typing=serializer.validated_data["is_typing"],
        )

        if not result.success:
            return error_response(result)

        return Response({"status": "ok", "published": result.data})


@extend_schema_view(
    list=extend_schema(
        operation_id="list_messages",
        summary="List messages",
        parameters=[
            OpenApiParameter(
                name="after",
                type=OpenApiTypes.INT,
                location=OpenApiParameter.QUERY,
                description="Only return messages with a greater id (polling)",
                required=False,
            ),
        ],
        tags=["Chat - Messages"],
    ),
    create=extend_schema(
        operation_id="send_message",
        summary="Send message",
        request=MessageCreateSerializer,
        responses={201: MessageSerializer},
        tags=["Chat - Messages"],
    ),
)
class ConversationMessageViewSet(viewsets.GenericViewSet):
    """
    ViewSet for a conversation's messages.

    list:
        Full ordered history visible to the current user.
        ?after=<id> returns only newer messages (polling fallback).

    create:
        Send a message. client_id is echoed on the push event.
    """

    serializer_class = MessageSerializer
    permission_classes = [IsAuthenticated]
    pagination_class = None

    def get_conversation(self):
        """Get parent conversation from URL; 404 unless the user participates."""
        result = ConversationService.get_for_participant(
            self.kwargs.get("conversation_pk"), self.request.user
        )
        if not result.success:
            raise NotFound(result.error)
        return result.data

    def list(self, request, conversation_pk=None):
        """Get messages in conversation."""
        conversation = self.get_conversation()

        after = request.query_params.get("after")
        try:
            after_id = int(after) if after else None
        except ValueError:
            return Response(
                {"error": "after must be a message id", "error_code": "INVALID_CURSOR"},
                status=status.HTTP_400_BAD_REQUEST,
            )

        result = MessageService.messages_for(
            conversation=conversation,
            user=request.user,
            after_id=after_id,
        )

        if not result.success:
            return error_response(result)

        return Response(MessageSerializer(result.data, many=True).data)

    def create(self, request, conversation_pk=None):
        """Send a message to the conversation."""
        conversation = self.get_conversation()
        serializer = MessageCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = MessageService.send_message(
            conversation=conversation,
            sender=request.user,
            content=serializer.validated_data["content"],
            reply_to_id=serializer.validated_data.get("reply_to_id"),
            client_id=serializer.validated_data.get("client_id"),
        )

        if not result.success:
            return error_response(result)

        message = message_queryset().get(id=result.data.id)
        return Response(MessageSerializer(message).data, status=status.HTTP_201_CREATED)


@extend_schema_view(
    partial_update=extend_schema(
        operation_id="edit_message",
        summary="Edit message",
        description="Author only, within 5 minutes of sending.",
        request=MessageUpdateSerializer,
        responses={200: MessageSerializer},
        tags=["Chat - Messages"],
    ),
    destroy=extend_schema(
        operation_id="delete_message",
        summary="Delete message",
        tags=["Chat - Messages"],
    ),
)
class MessageViewSet(viewsets.GenericViewSet):
    """
    ViewSet for operations on a single message.

    partial_update:
        Edit content (author, within the edit window).

    destroy:
        Soft delete (author, or owner of a non-direct conversation).

    toggle_reaction:
        Add or remove an emoji; returns the updated reaction list.

    pin:
        Pin or unpin.
    """

    serializer_class = MessageSerializer
    permission_classes = [IsAuthenticated]
    lookup_value_regex = r"\d+"

    def partial_update(self, request, pk=None):
        serializer = MessageUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = MessageService.edit_message(
            user=request.user,
            message_id=pk,
            new_content=serializer.validated_data["content"],
        )

        if not result.success:
            return error_response(result)

        message = message_queryset().get(id=result.data.id)
        return Response(MessageSerializer(message).data)

    def destroy(self, request, pk=None):
        result = MessageService.delete_message(user=request.user, message_id=pk)

        if not result.success:
            return error_response(result)

        message = message_queryset().get(id=result.data.id)
        return Response(MessageSerializer(message).data)

    @extend_schema(
        operation_id="toggle_reaction",
        summary="Toggle reaction",
        request=ReactionToggleSerializer,
        tags=["Chat - Messages"],
    )
    @action(detail=True, methods=["post"], url_path="reactions/toggle")
    def toggle_reaction(self, request, pk=None):
        serializer = ReactionToggleSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = ReactionService.toggle_reaction(
            user=request.user,
            message_id=pk,
            emoji=serializer.validated_data["emoji"],
        )

        if not result.success:
            return error_response(result)

        return Response(
            {
                "message_id": str(pk),
                "reactions": [
                    {"user_id": str(reaction.user_id), "emoji": reaction.emoji}
                    for reaction in result.data
                ],
            }
        )

    @extend_schema(
        operation_id="toggle_pin",
        summary="Pin or unpin message",
        request=None,
        responses={200: MessageSerializer},
        tags=["Chat - Messages"],
    )
    @action(detail=True, methods=["post"])
    def pin(self, request, pk=None):
        result = MessageService.toggle_pin(user=request.user, message_id=pk)

        if not result.success:
            return error_response(result)

        message = message_queryset().get(id=result.data.id)
        return Response(MessageSerializer(message).data)


class HubStatusView(APIView):
    """
    Realtime hub status (staff only).

    GET: connected users and open channel counts for this process.
    """

    permission_classes = [IsAdminUser]

    @extend_schema(
        operation_id="hub_status",
        summary="Realtime hub status",
        responses={200: OpenApiTypes.OBJECT},
        tags=["Chat - Realtime"],
    )
    def get(self, request):
        return Response(get_hub().status())
