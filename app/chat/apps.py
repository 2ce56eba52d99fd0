"""
Chat application configuration.

This app provides the messaging core:
- Direct, group, broadcast and channel conversations
- Message sending, editing, reactions, pins and soft deletion
- Read receipts and unread counts
- The realtime event hub and typing indicators (owned here)
"""

from django.apps import AppConfig

from chat.constants import HUB_CONFIG, TYPING_CONFIG, get_hub_setting


class ChatConfig(AppConfig):
    """
    Configuration for the chat application.

    The EventHub registry and TypingCoordinator live on this config
    instance. Code reaches them through chat.realtime.get_hub() and
    get_typing() rather than module globals.
    """

    default_auto_field = "django.db.models.BigAutoField"
    name = "chat"
    verbose_name = "Chat"

    hub = None
    typing = None

    def ready(self):
        from chat.hub import EventHub
        from chat.typing_indicators import TypingCoordinator

        self.hub = EventHub(
            heartbeat_interval=get_hub_setting(
                "HEARTBEAT_INTERVAL_SECONDS", HUB_CONFIG.HEARTBEAT_INTERVAL_SECONDS
            ),
            liveness_window=get_hub_setting(
                "LIVENESS_WINDOW_SECONDS", HUB_CONFIG.LIVENESS_WINDOW_SECONDS
            ),
            tick=get_hub_setting("TICK_SECONDS", HUB_CONFIG.TICK_SECONDS),
        )
        self.typing = TypingCoordinator(
            self.hub,
            quiet_period=get_hub_setting(
                "TYPING_QUIET_PERIOD_SECONDS", TYPING_CONFIG.QUIET_PERIOD_SECONDS
            ),
        )
