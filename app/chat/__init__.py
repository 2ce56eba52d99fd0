"""
Chat app for real-time messaging.

This app handles:
- Conversations (direct, group, broadcast and channel)
- Message sending, history, edits, reactions and pins
- Read receipts and unread counts
- The push channel (one WebSocket per client) and typing indicators

Related apps:
    - authentication: User model for participants

WebSocket Support:
    Uses Django Channels for the push channel transport.
    See hub.py for fan-out, consumers.py for the WebSocket handler
    and routing.py for the URL pattern.

Client Side:
    chat.client holds the framework-free client core: the REST API
    client, the push stream reader, the local synchronizer and the
    notification dispatcher.

Usage:
    from chat.services import ConversationService, MessageService

    # Create conversation
    result = ConversationService.create_direct(user, other_user)

    # Send message
    result = MessageService.send_message(
        conversation=result.data,
        sender=user,
        content="Hello!",
    )
"""
