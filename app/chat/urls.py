"""
URL configuration for chat API.

URL Structure:
    Conversations:
        /conversations/                          GET, POST
        /conversations/{id}/                     GET, PATCH, DELETE
        /conversations/{id}/read/                POST
        /conversations/{id}/join/                POST
        /conversations/{id}/leave/               POST
        /conversations/{id}/typing/              POST

    Messages:
        /conversations/{id}/messages/            GET (?after=<id>), POST
        /messages/{id}/                          PATCH, DELETE
        /messages/{id}/reactions/toggle/         POST
        /messages/{id}/pin/                      POST

    Realtime:
        /hub/status/                             GET (staff)

All URLs are prefixed with /api/v1/chat/ in the main URL configuration.
The push channel itself is served at ws/events/ (see routing.py).
"""

from django.urls import include, path
from rest_framework.routers import DefaultRouter

from chat.views import (
    ConversationMessageViewSet,
    ConversationViewSet,
    HubStatusView,
    MessageViewSet,
)

router = DefaultRouter()
router.register(r"conversations", ConversationViewSet, basename="conversation")
router.register(r"messages", MessageViewSet, basename="message")

app_name = "chat"

urlpatterns = [
    path("", include(router.urls)),
    # Nested routes for messages
    path(
        "conversations/<int:conversation_pk>/messages/",
        ConversationMessageViewSet.as_view({"get": "list", "post": "create"}),
        name="conversation-message-list",
    ),
    path("hub/status/", HubStatusView.as_view(), name="hub-status"),
]
