"""
WebSocket URL routing for the chat application.

This module defines the URL patterns for WebSocket connections,
mapping paths to their corresponding consumers.

URL Patterns:
    ws/events/ - The per-client push channel (all conversations)

Authentication:
    JWT token should be passed as query parameter (?token=<jwt_access_token>)
    or as the "jwt, <token>" subprotocol. JWTAuthMiddleware validates the
    token and attaches the user to the consumer's scope.
"""

from django.urls import path

from chat import consumers

websocket_urlpatterns = [
    path("ws/events/", consumers.EventStreamConsumer.as_asgi()),
]
